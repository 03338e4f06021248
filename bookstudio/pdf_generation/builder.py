"""
Render a composed book layout into a printable PDF.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import requests
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import inch, mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFError, TTFont
from reportlab.pdfgen import canvas
from reportlab.platypus import Frame, Paragraph

from .layout import LayoutArtifact, PageLayout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageLayoutConfig:
    text_background: colors.Color
    image_background: colors.Color
    cover_background: colors.Color
    accent_color: colors.Color
    text_color: colors.Color
    caption_color: colors.Color


DEFAULT_LAYOUT = PageLayoutConfig(
    text_background=colors.HexColor("#FFF8EC"),
    image_background=colors.HexColor("#E8F5FF"),
    cover_background=colors.HexColor("#2E6B5E"),
    accent_color=colors.HexColor("#E9B949"),
    text_color=colors.HexColor("#2F2A40"),
    caption_color=colors.HexColor("#4B506D"),
)


TRIM_PAGE_SIZES: Mapping[str, tuple[float, float]] = {
    "6x9": (6 * inch, 9 * inch),
    "7x10": (7 * inch, 10 * inch),
    "8.5x11": (8.5 * inch, 11 * inch),
}


@dataclass(frozen=True)
class ExportedFile:
    format: str
    path: str
    file_size: int

    def to_dict(self) -> dict[str, Any]:
        return {"format": self.format, "path": self.path, "file_size": self.file_size}


class StorybookPDFBuilder:
    """
    Render a :class:`LayoutArtifact` into a PDF.

    The output is: the front cover (when provided), every layout page in
    reading order, then the back cover. The page size follows the layout's
    trim size.
    """

    def __init__(
        self,
        *,
        margin_mm: float = 18.0,
        layout: PageLayoutConfig = DEFAULT_LAYOUT,
        request_timeout: float = 30.0,
    ) -> None:
        self.margin = margin_mm * mm
        self.layout = layout
        self.request_timeout = request_timeout

        self.body_font, self.body_bold_font = self._configure_story_fonts()

        self.title_style = ParagraphStyle(
            name="BookTitle",
            fontName="Helvetica-Bold",
            fontSize=28,
            leading=32,
            alignment=TA_CENTER,
            textColor=colors.white,
            spaceAfter=12,
        )
        self.subtitle_style = ParagraphStyle(
            name="BookSubtitle",
            fontName="Helvetica",
            fontSize=16,
            leading=20,
            alignment=TA_CENTER,
            textColor=colors.white,
            spaceAfter=18,
        )
        self.inner_title_style = ParagraphStyle(
            name="InnerTitle",
            parent=self.title_style,
            textColor=self.layout.text_color,
        )
        self.chapter_title_style = ParagraphStyle(
            name="ChapterTitle",
            fontName=self.body_bold_font,
            fontSize=22,
            leading=26,
            alignment=TA_CENTER,
            textColor=self.layout.text_color,
            spaceAfter=14,
        )
        self.body_style = ParagraphStyle(
            name="Body",
            fontName=self.body_font,
            fontSize=14,
            leading=21,
            alignment=TA_JUSTIFY,
            textColor=self.layout.text_color,
            spaceAfter=12,
        )
        self.footer_style = ParagraphStyle(
            name="Footer",
            fontName="Helvetica-Oblique",
            fontSize=9,
            leading=11,
            alignment=TA_CENTER,
            textColor=self.layout.caption_color,
        )

    def build(
        self,
        layout: LayoutArtifact,
        output_path: Path | str,
        *,
        title: str,
        front_cover_url: str | None = None,
        back_cover_url: str | None = None,
    ) -> ExportedFile:
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        page_size = TRIM_PAGE_SIZES.get(layout.settings.trim_size, TRIM_PAGE_SIZES["6x9"])
        width, height = page_size
        self._body_style_for(layout)

        pdf = canvas.Canvas(str(output_file), pagesize=page_size)
        pdf.setTitle(title)

        self._draw_cover_page(pdf, title, front_cover_url, width, height)
        for page in layout.pages:
            self._draw_page(pdf, title, page, width, height)
        if back_cover_url:
            self._draw_cover_page(pdf, None, back_cover_url, width, height)

        pdf.save()
        file_size = output_file.stat().st_size
        logger.info("Rendered %s pages to %s (%s bytes).", layout.page_count, output_file, file_size)
        return ExportedFile(format="pdf", path=str(output_file), file_size=file_size)

    def _body_style_for(self, layout: LayoutArtifact) -> None:
        font_size = layout.settings.font_size
        self.body_style = ParagraphStyle(
            name="Body",
            parent=self.body_style,
            fontSize=font_size,
            leading=font_size * layout.settings.line_height,
        )

    # ------------------------------------------------------------------ cover rendering

    def _draw_cover_page(
        self,
        pdf: canvas.Canvas,
        title: str | None,
        image_url: str | None,
        width: float,
        height: float,
    ) -> None:
        pdf.setFillColor(self.layout.cover_background)
        pdf.rect(0, 0, width, height, stroke=0, fill=1)

        image_reader = self._fetch_image(image_url) if image_url else None
        if image_reader is not None:
            self._draw_full_bleed(pdf, image_reader, width, height)

        if title:
            frame = Frame(
                self.margin,
                height * 0.7,
                width - 2 * self.margin,
                height * 0.3 - self.margin,
                showBoundary=0,
            )
            frame.addFromList([Paragraph(title, self.title_style)], pdf)
        pdf.showPage()

    # ------------------------------------------------------------------ interior pages

    def _draw_page(
        self,
        pdf: canvas.Canvas,
        title: str,
        page: PageLayout,
        width: float,
        height: float,
    ) -> None:
        if page.type == "image":
            self._draw_image_page(pdf, page, width, height)
        elif page.type == "text":
            self._draw_text_page(pdf, page, width, height)
        elif page.type == "title":
            self._draw_plain_page(pdf, page, self.inner_title_style, height * 0.4, width, height)
        elif page.type == "copyright":
            self._draw_plain_page(pdf, page, self.footer_style, self.margin, width, height)
        else:
            pdf.setFillColor(colors.white)
            pdf.rect(0, 0, width, height, stroke=0, fill=1)

        if page.type in {"text", "image"}:
            self._draw_footer(pdf, f"{page.page_number} | {title}", width)
        pdf.showPage()

    def _draw_plain_page(
        self,
        pdf: canvas.Canvas,
        page: PageLayout,
        style: ParagraphStyle,
        y: float,
        width: float,
        height: float,
    ) -> None:
        pdf.setFillColor(colors.white)
        pdf.rect(0, 0, width, height, stroke=0, fill=1)
        frame = Frame(self.margin, y, width - 2 * self.margin, height * 0.2, showBoundary=0)
        text = " ".join(block.content or "" for block in page.blocks if block.type == "text")
        frame.addFromList([Paragraph(text, style)], pdf)

    def _draw_text_page(
        self,
        pdf: canvas.Canvas,
        page: PageLayout,
        width: float,
        height: float,
    ) -> None:
        pdf.setFillColor(self.layout.text_background)
        pdf.rect(0, 0, width, height, stroke=0, fill=1)

        bubble_width = width - (self.margin * 2 * 0.6)
        bubble_height = height - (self.margin * 2 * 0.6)
        bubble_x = (width - bubble_width) / 2
        bubble_y = (height - bubble_height) / 2

        pdf.saveState()
        pdf.setFillColor(self._lighten(self.layout.accent_color, 0.8))
        pdf.roundRect(bubble_x, bubble_y, bubble_width, bubble_height, 20, stroke=0, fill=1)
        pdf.restoreState()

        content_width = bubble_width - (self.margin * 2 * 0.3)
        content_height = bubble_height - (self.margin * 2 * 0.3)
        frame = Frame(
            bubble_x + (bubble_width - content_width) / 2,
            bubble_y + (bubble_height - content_height) / 2,
            content_width,
            content_height,
            showBoundary=0,
        )

        flowables = []
        if page.chapter_title:
            flowables.append(Paragraph(page.chapter_title, self.chapter_title_style))
        for block in page.blocks:
            if block.type != "text" or not block.content:
                continue
            for paragraph in filter(None, (part.strip() for part in block.content.split("\n\n"))):
                flowables.append(Paragraph(paragraph.replace("\n", "<br/>"), self.body_style))

        frame.addFromList(flowables, pdf)

    def _draw_image_page(
        self,
        pdf: canvas.Canvas,
        page: PageLayout,
        width: float,
        height: float,
    ) -> None:
        pdf.setFillColor(self.layout.image_background)
        pdf.rect(0, 0, width, height, stroke=0, fill=1)

        urls = [block.image_url for block in page.blocks if block.type == "image" and block.image_url]
        image_reader = self._fetch_image(urls[0]) if urls else None
        if image_reader is not None:
            self._draw_full_bleed(pdf, image_reader, width, height)

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _draw_full_bleed(pdf: canvas.Canvas, image_reader: ImageReader, width: float, height: float) -> None:
        img_width, img_height = image_reader.getSize()
        scale = max(width / img_width, height / img_height)
        draw_width = img_width * scale
        draw_height = img_height * scale
        pdf.drawImage(
            image_reader,
            (width - draw_width) / 2,
            (height - draw_height) / 2,
            draw_width,
            draw_height,
            preserveAspectRatio=True,
            mask="auto",
        )

    def _draw_footer(self, pdf: canvas.Canvas, text: str, width: float) -> None:
        footer_frame = Frame(
            self.margin,
            10,
            width - 2 * self.margin,
            20,
            showBoundary=0,
        )
        footer_frame.addFromList([Paragraph(text, self.footer_style)], pdf)

    def _fetch_image(self, url: str) -> Optional[ImageReader]:
        try:
            response = requests.get(url, timeout=self.request_timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Could not download %s, leaving the page without an image: %s", url, exc)
            return None
        return ImageReader(BytesIO(response.content))

    @staticmethod
    def _lighten(color: colors.Color, amount: float = 0.5) -> colors.Color:
        amount = max(0.0, min(amount, 1.0))
        r = color.red + (1 - color.red) * amount
        g = color.green + (1 - color.green) * amount
        b = color.blue + (1 - color.blue) * amount
        return colors.Color(r, g, b)

    def _configure_story_fonts(self) -> tuple[str, str]:
        candidates = [
            (
                "Andika",
                "Andika-Bold",
                ["Andika-Regular.ttf", "andika/Andika-Regular.ttf"],
                ["Andika-Bold.ttf", "andika/Andika-Bold.ttf"],
            ),
            (
                "ComicSansMS",
                "ComicSansMS-Bold",
                ["Comic Sans MS.ttf", "ComicSansMS.ttf"],
                ["Comic Sans MS Bold.ttf", "ComicSansMS-Bold.ttf"],
            ),
        ]

        search_roots = [
            Path("/Library/Fonts"),
            Path("/System/Library/Fonts"),
            Path.home() / "Library" / "Fonts",
            Path("C:/Windows/Fonts"),
            Path("/usr/share/fonts/truetype"),
            Path("/usr/share/fonts"),
        ]

        for regular_name, bold_name, regular_files, bold_files in candidates:
            regular_ready = self._register_font_if_available(regular_name, regular_files, search_roots)
            bold_ready = self._register_font_if_available(bold_name, bold_files, search_roots)
            if regular_ready and bold_ready:
                return regular_name, bold_name

        return "Helvetica", "Helvetica-Bold"

    @staticmethod
    def _register_font_if_available(
        font_name: str,
        candidate_filenames: Sequence[str],
        search_roots: Sequence[Path],
    ) -> bool:
        if font_name in pdfmetrics.getRegisteredFontNames():
            return True

        for root in search_roots:
            for candidate in candidate_filenames:
                font_path = root / candidate
                if not font_path.exists():
                    continue
                try:
                    pdfmetrics.registerFont(TTFont(font_name, str(font_path)))
                except (OSError, TTFError) as exc:
                    logger.debug("Skipping font %s: %s", font_path, exc)
                    continue
                return True
        return False
