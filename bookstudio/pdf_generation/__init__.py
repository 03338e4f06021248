from .builder import DEFAULT_LAYOUT, TRIM_PAGE_SIZES, ExportedFile, PageLayoutConfig, StorybookPDFBuilder
from .export import BookExporter, ExportBundle, PDFExporter
from .layout import (
    DEFAULT_SETTINGS,
    WORDS_PER_PAGE,
    ContentBlock,
    LayoutArtifact,
    LayoutChapter,
    LayoutSettings,
    PageLayout,
    Spread,
    TextFlow,
    calculate_text_pages,
    compose_book_layout,
    settings_for_trim_size,
)

__all__ = [
    "BookExporter",
    "ContentBlock",
    "DEFAULT_LAYOUT",
    "DEFAULT_SETTINGS",
    "ExportBundle",
    "ExportedFile",
    "LayoutArtifact",
    "LayoutChapter",
    "LayoutSettings",
    "PDFExporter",
    "PageLayout",
    "PageLayoutConfig",
    "Spread",
    "StorybookPDFBuilder",
    "TRIM_PAGE_SIZES",
    "TextFlow",
    "WORDS_PER_PAGE",
    "calculate_text_pages",
    "compose_book_layout",
    "settings_for_trim_size",
]
