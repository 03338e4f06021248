from __future__ import annotations

import pytest
import requests

from bookstudio.pdf_generation import builder as builder_module
from bookstudio.pdf_generation.builder import StorybookPDFBuilder
from bookstudio.pdf_generation.export import ExportBundle, PDFExporter
from bookstudio.pdf_generation.layout import (
    LayoutArtifact,
    LayoutChapter,
    calculate_text_pages,
    compose_book_layout,
    settings_for_trim_size,
)


def words(count: int, *, word: str = "word") -> str:
    return " ".join([word] * count)


def test_text_flows_by_paragraph():
    text = "\n\n".join(words(50) for _ in range(5))
    flow = calculate_text_pages(text, 100)

    assert [len(page.split()) for page in flow.pages] == [100, 100, 50]
    assert flow.total_words == 250


def test_long_paragraph_splits_on_sentences():
    sentence = words(30) + "."
    paragraph = " ".join([sentence] * 5)
    flow = calculate_text_pages(paragraph, 100)

    assert [len(page.split()) for page in flow.pages] == [90, 60]
    assert all(page.endswith(".") for page in flow.pages)


def test_text_flow_rejects_empty_page_size():
    with pytest.raises(ValueError):
        calculate_text_pages("text", 0)
    assert calculate_text_pages("", 100).pages == ()


def test_unknown_trim_size_falls_back():
    assert settings_for_trim_size("8.5x11").words_per_page == 200
    assert settings_for_trim_size("a4").trim_size == "6x9"


def test_compose_layout_places_images_opposite_chapter_openers():
    layout = compose_book_layout(
        chapters=[
            LayoutChapter(2, "The Storm", words(20)),
            LayoutChapter(1, "Seeds", words(75) + "\n\n" + words(75)),
        ],
        illustration_urls={1: "https://images.test/1.png"},
        trim_size="6x9",
        project_title="Amina and the Little Garden",
        author_name="Teta Huda",
    )

    assert layout.page_count == 10
    assert [spread.spread_number for spread in layout.spreads] == [1, 2, 3, 4, 5]
    assert layout.spreads[0].right_page.type == "title"
    assert "Teta Huda" in layout.spreads[1].left_page.blocks[0].content

    opener = layout.spreads[2]
    assert opener.left_page.type == "image"
    assert opener.left_page.blocks[0].image_url == "https://images.test/1.png"
    assert opener.right_page.chapter_title == "Seeds"

    continuation = layout.spreads[3]
    assert continuation.left_page.type == "text"
    assert continuation.right_page.type == "blank"

    assert layout.spreads[4].left_page.type == "blank"
    assert layout.spreads[4].right_page.chapter_number == 2
    assert [page.page_number for page in layout.pages] == list(range(1, 11))


def test_layout_survives_storage_format():
    layout = compose_book_layout(
        chapters=[LayoutChapter(1, "Seeds", words(10))],
        illustration_urls={},
        trim_size="7x10",
        project_title="T",
    )
    restored = LayoutArtifact.from_mapping(layout.to_dict())

    assert restored == layout
    with pytest.raises(ValueError):
        LayoutArtifact.from_mapping({"page_count": 2})


@pytest.fixture
def offline_images(monkeypatch):
    requested: list[str] = []

    def fake_get(url, timeout):
        requested.append(url)
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(builder_module.requests, "get", fake_get)
    return requested


def _small_layout() -> LayoutArtifact:
    return compose_book_layout(
        chapters=[LayoutChapter(1, "Seeds", "Amina planted seeds.\n\nTeta smiled.")],
        illustration_urls={1: "https://images.test/1.png"},
        trim_size="8.5x11",
        project_title="Amina",
    )


def test_pdf_builder_writes_every_page(tmp_path, offline_images):
    exported = StorybookPDFBuilder().build(
        _small_layout(),
        tmp_path / "out" / "book.pdf",
        title="Amina",
        front_cover_url="https://images.test/front.png",
        back_cover_url="https://images.test/back.png",
    )

    data = (tmp_path / "out" / "book.pdf").read_bytes()
    assert data.startswith(b"%PDF")
    assert exported.format == "pdf"
    assert exported.file_size == len(data)
    # Missing images leave the page in place instead of failing the export.
    assert offline_images == [
        "https://images.test/front.png",
        "https://images.test/1.png",
        "https://images.test/back.png",
    ]


@pytest.mark.asyncio
async def test_pdf_exporter_names_file_after_project(tmp_path, offline_images):
    exporter = PDFExporter(tmp_path)
    files = await exporter.export(
        ExportBundle(project_id="book-1", title="Amina", layout=_small_layout())
    )

    assert [exported.path for exported in files] == [str(tmp_path / "book-1.pdf")]
    assert (tmp_path / "book-1.pdf").exists()
