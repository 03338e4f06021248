"""
Export collaborator handed a complete artifact set by the stage runner.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .builder import ExportedFile, StorybookPDFBuilder
from .layout import LayoutArtifact


@dataclass(frozen=True)
class ExportBundle:
    project_id: str
    title: str
    layout: LayoutArtifact
    front_cover_url: str | None = None
    back_cover_url: str | None = None


class BookExporter(Protocol):
    async def export(self, bundle: ExportBundle) -> list[ExportedFile]: ...


class PDFExporter:
    """Writes ``<output_dir>/<project_id>.pdf`` off the event loop."""

    def __init__(self, output_dir: Path | str, *, builder: StorybookPDFBuilder | None = None) -> None:
        self._output_dir = Path(output_dir)
        self._builder = builder

    async def export(self, bundle: ExportBundle) -> list[ExportedFile]:
        builder = self._builder or StorybookPDFBuilder()
        exported = await asyncio.to_thread(
            builder.build,
            bundle.layout,
            self._output_dir / f"{bundle.project_id}.pdf",
            title=bundle.title,
            front_cover_url=bundle.front_cover_url,
            back_cover_url=bundle.back_cover_url,
        )
        return [exported]
