"""
Derive an image-ready scene description from a chapter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

VISUAL_KEYWORDS = (
    "looked",
    "saw",
    "watched",
    "smiled",
    "walked",
    "ran",
    "sat",
    "stood",
    "held",
    "opened",
)

MIN_SENTENCE_CHARS = 20

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


@dataclass(frozen=True)
class SceneDescription:
    """
    Represents the distilled prompt for a single illustrated scene.
    """

    chapter_number: int
    scene_description: str
    source: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "chapter_number": self.chapter_number,
            "scene_description": self.scene_description,
            "source": self.source,
        }


def derive_scene_description(
    *,
    chapter_number: int,
    chapter_title: str,
    chapter_text: str,
    key_scene: str | None = None,
) -> SceneDescription:
    """
    Pick the outline's key scene, else the first visual sentence of the
    chapter, else its first substantial sentence, else a title placeholder.
    """
    if key_scene and key_scene.strip():
        return SceneDescription(chapter_number, key_scene.strip(), "key_scene")

    sentences = [
        sentence.strip()
        for sentence in _SENTENCE_SPLIT_RE.split(chapter_text or "")
        if len(sentence.strip()) > MIN_SENTENCE_CHARS
    ]

    for sentence in sentences:
        lowered = sentence.lower()
        if any(keyword in lowered for keyword in VISUAL_KEYWORDS):
            return SceneDescription(chapter_number, sentence, "visual_sentence")

    if sentences:
        return SceneDescription(chapter_number, sentences[0], "first_sentence")

    return SceneDescription(chapter_number, f"Scene from {chapter_title}", "title")
