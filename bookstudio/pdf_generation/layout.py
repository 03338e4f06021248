"""
Compose printable page spreads from chapter text and selected illustrations.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class LayoutSettings:
    """Margins are in points (1/72 inch)."""

    trim_size: str
    margin_top: int
    margin_bottom: int
    margin_inner: int
    margin_outer: int
    font_size: int
    line_height: float
    words_per_page: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "trim_size": self.trim_size,
            "margin_top": self.margin_top,
            "margin_bottom": self.margin_bottom,
            "margin_inner": self.margin_inner,
            "margin_outer": self.margin_outer,
            "font_size": self.font_size,
            "line_height": self.line_height,
            "words_per_page": self.words_per_page,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LayoutSettings":
        defaults = settings_for_trim_size(str(data.get("trim_size") or DEFAULT_TRIM_SIZE))
        values = defaults.to_dict()
        values.update({key: data[key] for key in values if data.get(key) is not None})
        return cls(**values)


DEFAULT_TRIM_SIZE = "6x9"

WORDS_PER_PAGE: Mapping[str, int] = {
    "6x9": 100,
    "7x10": 150,
    "8.5x11": 200,
}

DEFAULT_SETTINGS: Mapping[str, LayoutSettings] = {
    "6x9": LayoutSettings("6x9", 54, 54, 72, 54, 14, 1.5, WORDS_PER_PAGE["6x9"]),
    "7x10": LayoutSettings("7x10", 54, 54, 72, 54, 14, 1.5, WORDS_PER_PAGE["7x10"]),
    "8.5x11": LayoutSettings("8.5x11", 72, 72, 90, 72, 16, 1.6, WORDS_PER_PAGE["8.5x11"]),
}


def settings_for_trim_size(trim_size: str) -> LayoutSettings:
    """Unknown trim sizes fall back to 6x9."""
    return DEFAULT_SETTINGS.get(trim_size, DEFAULT_SETTINGS[DEFAULT_TRIM_SIZE])


@dataclass(frozen=True)
class ContentBlock:
    type: str
    position: str
    content: str | None = None
    image_url: str | None = None
    caption: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "position": self.position}
        if self.content is not None:
            payload["content"] = self.content
        if self.image_url is not None:
            payload["image_url"] = self.image_url
        if self.caption is not None:
            payload["caption"] = self.caption
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ContentBlock":
        return cls(
            type=str(data.get("type") or "text"),
            position=str(data.get("position") or "full"),
            content=data.get("content"),
            image_url=data.get("image_url"),
            caption=data.get("caption"),
        )


@dataclass(frozen=True)
class PageLayout:
    page_number: int
    position: str
    type: str
    blocks: tuple[ContentBlock, ...] = ()
    chapter_number: int | None = None
    chapter_title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "page_number": self.page_number,
            "position": self.position,
            "type": self.type,
            "blocks": [block.to_dict() for block in self.blocks],
        }
        if self.chapter_number is not None:
            payload["chapter_number"] = self.chapter_number
        if self.chapter_title is not None:
            payload["chapter_title"] = self.chapter_title
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PageLayout":
        try:
            page_number = int(data["page_number"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid page entry: {dict(data)!r}") from exc
        chapter_number = data.get("chapter_number")
        return cls(
            page_number=page_number,
            position=str(data.get("position") or "right"),
            type=str(data.get("type") or "blank"),
            blocks=tuple(ContentBlock.from_mapping(block) for block in data.get("blocks") or ()),
            chapter_number=int(chapter_number) if chapter_number is not None else None,
            chapter_title=data.get("chapter_title"),
        )


@dataclass(frozen=True)
class Spread:
    spread_number: int
    left_page: PageLayout
    right_page: PageLayout

    def to_dict(self) -> dict[str, Any]:
        return {
            "spread_number": self.spread_number,
            "left_page": self.left_page.to_dict(),
            "right_page": self.right_page.to_dict(),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Spread":
        return cls(
            spread_number=int(data.get("spread_number", 0)),
            left_page=PageLayout.from_mapping(data["left_page"]),
            right_page=PageLayout.from_mapping(data["right_page"]),
        )


@dataclass(frozen=True)
class LayoutArtifact:
    page_count: int
    spreads: tuple[Spread, ...]
    settings: LayoutSettings
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def pages(self) -> list[PageLayout]:
        """Pages in reading order."""
        ordered: list[PageLayout] = []
        for spread in self.spreads:
            ordered.extend((spread.left_page, spread.right_page))
        return ordered

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_count": self.page_count,
            "spreads": [spread.to_dict() for spread in self.spreads],
            "settings": self.settings.to_dict(),
            "generated_at": self.generated_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LayoutArtifact":
        if "spreads" not in data:
            raise ValueError("Layout payload must include 'spreads'.")
        return cls(
            page_count=int(data.get("page_count", 0)),
            spreads=tuple(Spread.from_mapping(spread) for spread in data["spreads"]),
            settings=LayoutSettings.from_mapping(data.get("settings") or {}),
            generated_at=str(data.get("generated_at") or ""),
        )


@dataclass(frozen=True)
class LayoutChapter:
    chapter_number: int
    title: str
    text: str


@dataclass(frozen=True)
class TextFlow:
    pages: tuple[str, ...]
    total_words: int


def _word_count(text: str) -> int:
    return len(text.split())


def calculate_text_pages(chapter_text: str, words_per_page: int) -> TextFlow:
    """
    Flow ``chapter_text`` into pages of at most ``words_per_page`` words.

    Paragraphs stay together when they fit; a paragraph longer than a page is
    split on sentence boundaries.
    """
    if words_per_page < 1:
        raise ValueError("words_per_page must be at least 1.")

    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(chapter_text or "") if p.strip()]
    pages: list[str] = []
    current: list[str] = []
    current_words = 0

    for paragraph in paragraphs:
        words = _word_count(paragraph)

        if words > words_per_page:
            if current:
                pages.append("\n\n".join(current))
                current, current_words = [], 0

            chunk: list[str] = []
            chunk_words = 0
            for sentence in _SENTENCE_SPLIT_RE.split(paragraph):
                sentence_words = _word_count(sentence)
                if chunk and chunk_words + sentence_words > words_per_page:
                    pages.append(" ".join(chunk))
                    chunk, chunk_words = [], 0
                chunk.append(sentence)
                chunk_words += sentence_words

            if chunk:
                current = [" ".join(chunk)]
                current_words = chunk_words
        elif current_words + words > words_per_page:
            if current:
                pages.append("\n\n".join(current))
            current, current_words = [paragraph], words
        else:
            current.append(paragraph)
            current_words += words

    if current:
        pages.append("\n\n".join(current))

    return TextFlow(pages=tuple(pages), total_words=sum(_word_count(p) for p in paragraphs))


def _blank(page_number: int, position: str) -> PageLayout:
    return PageLayout(page_number=page_number, position=position, type="blank")


def _text_page(
    page_number: int,
    position: str,
    text: str,
    *,
    chapter_number: int | None = None,
    chapter_title: str | None = None,
) -> PageLayout:
    return PageLayout(
        page_number=page_number,
        position=position,
        type="text",
        blocks=(ContentBlock(type="text", position="full", content=text),),
        chapter_number=chapter_number,
        chapter_title=chapter_title,
    )


def _image_page(page_number: int, position: str, image_url: str, caption: str | None = None) -> PageLayout:
    return PageLayout(
        page_number=page_number,
        position=position,
        type="image",
        blocks=(ContentBlock(type="image", position="full", image_url=image_url, caption=caption),),
    )


def compose_book_layout(
    *,
    chapters: Sequence[LayoutChapter],
    illustration_urls: Mapping[int, str],
    trim_size: str,
    project_title: str,
    author_name: str | None = None,
) -> LayoutArtifact:
    """
    Lay the book out as two-page spreads.

    Spread 1 is the title page, spread 2 the copyright page. Each chapter then
    opens with its selected illustration on the left and its first text page
    on the right; remaining text pages fill further spreads.
    """
    settings = settings_for_trim_size(trim_size)
    images = {number: url for number, url in illustration_urls.items() if url}

    spreads: list[Spread] = []
    page_number = 0

    def add_spread(left: PageLayout, right: PageLayout) -> None:
        spreads.append(Spread(len(spreads) + 1, left, right))

    page_number += 2
    add_spread(
        _blank(page_number - 1, "left"),
        PageLayout(
            page_number=page_number,
            position="right",
            type="title",
            blocks=(ContentBlock(type="text", position="center", content=project_title),),
        ),
    )

    page_number += 2
    holder = author_name or project_title
    add_spread(
        PageLayout(
            page_number=page_number - 1,
            position="left",
            type="copyright",
            blocks=(
                ContentBlock(
                    type="text",
                    position="bottom",
                    content=f"Copyright {datetime.now(timezone.utc).year} {holder}. All rights reserved.",
                ),
            ),
        ),
        _blank(page_number, "right"),
    )

    for chapter in sorted(chapters, key=lambda c: c.chapter_number):
        flow = calculate_text_pages(chapter.text, settings.words_per_page)
        first_text = flow.pages[0] if flow.pages else ""

        page_number += 2
        image_url = images.get(chapter.chapter_number)
        left = (
            _image_page(page_number - 1, "left", image_url)
            if image_url
            else _blank(page_number - 1, "left")
        )
        add_spread(
            left,
            _text_page(
                page_number,
                "right",
                first_text,
                chapter_number=chapter.chapter_number,
                chapter_title=chapter.title,
            ),
        )

        remaining = flow.pages[1:]
        for index in range(0, len(remaining), 2):
            page_number += 2
            left_text = remaining[index]
            right_text = remaining[index + 1] if index + 1 < len(remaining) else ""
            add_spread(
                _text_page(page_number - 1, "left", left_text),
                _text_page(page_number, "right", right_text) if right_text else _blank(page_number, "right"),
            )

    return LayoutArtifact(page_count=page_number, spreads=tuple(spreads), settings=settings)
