"""
Book studio: staged generation of illustrated children's books.
"""

from .common import CancelToken, PipelineSettings, ProjectStage
from .pdf_generation import PDFExporter, StorybookPDFBuilder
from .pipeline import (
    BookPipeline,
    InMemoryCreditLedger,
    InMemoryProjectStore,
    PipelineReport,
    StageRunner,
    YamlProjectStore,
)

__all__ = [
    "BookPipeline",
    "CancelToken",
    "InMemoryCreditLedger",
    "InMemoryProjectStore",
    "PDFExporter",
    "PipelineReport",
    "PipelineSettings",
    "ProjectStage",
    "StageRunner",
    "StorybookPDFBuilder",
    "YamlProjectStore",
]
