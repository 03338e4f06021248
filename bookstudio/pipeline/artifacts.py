"""
Stage artifacts as persisted in the project store.

Stored artifacts are plain JSON-compatible mappings. Text-stage artifacts
carry ``_needsReview`` and, when structured parsing failed, ``_rawText``;
every artifact carries the project's usage snapshot under ``_aiUsage``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, MutableMapping, Sequence

NEEDS_REVIEW_KEY = "_needsReview"
RAW_TEXT_KEY = "_rawText"
USAGE_KEY = "_aiUsage"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_variant_id() -> str:
    return uuid.uuid4().hex[:12]


def mark_needs_review(content: MutableMapping[str, Any], raw_text: str | None) -> MutableMapping[str, Any]:
    content[NEEDS_REVIEW_KEY] = True
    if raw_text is not None:
        content[RAW_TEXT_KEY] = raw_text
    return content


def needs_review(content: Mapping[str, Any] | None) -> bool:
    return bool(content and content.get(NEEDS_REVIEW_KEY))


@dataclass
class IllustrationVariant:
    """One generated image; several may exist per item for human selection."""

    image_url: str
    seed: int | None
    created_at: str = field(default_factory=utc_timestamp)
    id: str = field(default_factory=new_variant_id)
    provider: str | None = None
    processing_time_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "image_url": self.image_url,
            "seed": self.seed,
            "created_at": self.created_at,
            "provider": self.provider,
            "processing_time_ms": self.processing_time_ms,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IllustrationVariant":
        if not data.get("image_url"):
            raise ValueError(f"Illustration variant is missing 'image_url': {dict(data)!r}")
        seed = data.get("seed")
        return cls(
            image_url=str(data["image_url"]),
            seed=int(seed) if seed is not None else None,
            created_at=str(data.get("created_at") or utc_timestamp()),
            id=str(data.get("id") or new_variant_id()),
            provider=data.get("provider"),
            processing_time_ms=data.get("processing_time_ms"),
        )


@dataclass
class IllustrationItem:
    """
    The illustration for one chapter.

    Attributes
    ----------
    references:
        URLs handed to the image provider, consistency reference first.
    selected_variant_id:
        The human (or default) choice among ``variants``.
    image_url:
        Denormalized URL of the selected variant.
    """

    chapter_number: int
    scene_description: str
    variants: list[IllustrationVariant] = field(default_factory=list)
    references: tuple[str, ...] = ()
    reference_strength: float | None = None
    selected_variant_id: str | None = None
    image_url: str | None = None
    status: str = "completed"
    errors: tuple[str, ...] = ()

    @property
    def selected_variant(self) -> IllustrationVariant | None:
        for variant in self.variants:
            if variant.id == self.selected_variant_id:
                return variant
        return None

    @property
    def selected_image_url(self) -> str | None:
        """Selected variant's URL, falling back to the stored ``image_url``."""
        selected = self.selected_variant
        if selected is not None and selected.image_url:
            return selected.image_url
        return self.image_url

    def select_variant(self, variant_id: str) -> None:
        for variant in self.variants:
            if variant.id == variant_id:
                self.selected_variant_id = variant.id
                self.image_url = variant.image_url
                return
        raise ValueError(f"Unknown variant {variant_id!r} for chapter {self.chapter_number}.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "chapter_number": self.chapter_number,
            "scene_description": self.scene_description,
            "variants": [variant.to_dict() for variant in self.variants],
            "references": list(self.references),
            "reference_strength": self.reference_strength,
            "selected_variant_id": self.selected_variant_id,
            "image_url": self.image_url,
            "status": self.status,
            "errors": list(self.errors),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IllustrationItem":
        try:
            chapter_number = int(data["chapter_number"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid illustration entry: {dict(data)!r}") from exc
        return cls(
            chapter_number=chapter_number,
            scene_description=str(data.get("scene_description", "")),
            variants=[IllustrationVariant.from_mapping(v) for v in data.get("variants") or []],
            references=tuple(str(ref) for ref in data.get("references") or ()),
            reference_strength=data.get("reference_strength"),
            selected_variant_id=data.get("selected_variant_id"),
            image_url=data.get("image_url"),
            status=str(data.get("status") or "completed"),
            errors=tuple(str(err) for err in data.get("errors") or ()),
        )


@dataclass
class CoverItem:
    cover_type: str
    variants: list[IllustrationVariant] = field(default_factory=list)
    references: tuple[str, ...] = ()
    reference_strength: float | None = None
    selected_variant_id: str | None = None
    image_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cover_type": self.cover_type,
            "variants": [variant.to_dict() for variant in self.variants],
            "references": list(self.references),
            "reference_strength": self.reference_strength,
            "selected_variant_id": self.selected_variant_id,
            "image_url": self.image_url,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CoverItem":
        return cls(
            cover_type=str(data.get("cover_type") or "front"),
            variants=[IllustrationVariant.from_mapping(v) for v in data.get("variants") or []],
            references=tuple(str(ref) for ref in data.get("references") or ()),
            reference_strength=data.get("reference_strength"),
            selected_variant_id=data.get("selected_variant_id"),
            image_url=data.get("image_url"),
        )


def illustrations_from_artifact(content: Mapping[str, Any] | None) -> list[IllustrationItem]:
    if not content:
        return []
    return [IllustrationItem.from_mapping(item) for item in content.get("items") or []]


def illustrations_to_artifact(items: Sequence[IllustrationItem]) -> dict[str, Any]:
    ordered = sorted(items, key=lambda item: item.chapter_number)
    return {"items": [item.to_dict() for item in ordered]}


def chapters_from_artifact(content: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    """Chapter entries ordered by chapter number."""
    if not content:
        return []
    chapters = [dict(chapter) for chapter in content.get("chapters") or []]
    return sorted(chapters, key=lambda chapter: int(chapter.get("chapter_number", 0)))


def chapter_text(chapter: Mapping[str, Any]) -> str:
    """Body text of a chapter entry; needs-review entries fall back to raw text."""
    return str(
        chapter.get("edited_text")
        or chapter.get("text")
        or chapter.get(RAW_TEXT_KEY)
        or ""
    )
