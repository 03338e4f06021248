"""
Structured JSON outputs of the text stages and their validators.
"""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from typing import Any, Callable, Generic, Mapping, TypeVar

T = TypeVar("T")

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

OUTLINE_SCHEMA = """{
  "book_title": "string",
  "one_liner": "string",
  "moral": "string",
  "chapters": [{"title":"string","goal":"string","key_scene":"string","dua_or_ayah_hint":"string"}]
}"""

CHAPTER_SCHEMA = """{
  "chapter_title": "string",
  "chapter_number": number,
  "text": "string",
  "vocabulary_notes": ["string"],
  "islamic_adab_checks": ["string"]
}"""

HUMANIZE_SCHEMA = """{
  "chapter_title": "string",
  "chapter_number": number,
  "edited_text": "string",
  "changes_made": ["string"]
}"""


class SchemaValidationError(ValueError):
    """Parsed JSON does not match the expected shape."""


@dataclass(frozen=True)
class OutlineChapter:
    title: str
    goal: str
    key_scene: str
    dua_or_ayah_hint: str = "None"


@dataclass(frozen=True)
class OutlineOutput:
    book_title: str
    one_liner: str
    moral: str
    chapters: tuple[OutlineChapter, ...]

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["chapters"] = [asdict(chapter) for chapter in self.chapters]
        return payload


@dataclass(frozen=True)
class ChapterOutput:
    chapter_title: str
    chapter_number: int
    text: str
    vocabulary_notes: tuple[str, ...] = ()
    islamic_adab_checks: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["vocabulary_notes"] = list(self.vocabulary_notes)
        payload["islamic_adab_checks"] = list(self.islamic_adab_checks)
        return payload


@dataclass(frozen=True)
class HumanizeOutput:
    chapter_title: str
    chapter_number: int
    edited_text: str
    changes_made: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["changes_made"] = list(self.changes_made)
        return payload


def parse_json_response(text: str) -> Any:
    """
    Decode a model response that should be JSON.

    Accepts a bare JSON document, one wrapped in a Markdown code fence, or one
    surrounded by prose. Raises :class:`json.JSONDecodeError` otherwise.
    """
    candidate = (text or "").strip()
    fenced = _CODE_FENCE_RE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(candidate[start : end + 1])


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise SchemaValidationError(f"{what} must be a JSON object.")
    return data


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise SchemaValidationError(f"Missing or empty string field '{key}'.")
    return value.strip()


def _optional_str(data: Mapping[str, Any], key: str, default: str) -> str:
    value = data.get(key)
    if value is None:
        return default
    return str(value).strip() or default


def _require_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise SchemaValidationError(f"Field '{key}' must be a number.")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise SchemaValidationError(f"Field '{key}' must be a number.") from exc


def _string_list(data: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        raise SchemaValidationError(f"Field '{key}' must be a list of strings.")
    return tuple(str(item).strip() for item in value if str(item).strip())


def validate_outline(data: Any) -> OutlineOutput:
    payload = _require_mapping(data, "Outline")
    raw_chapters = payload.get("chapters")
    if not isinstance(raw_chapters, list) or not raw_chapters:
        raise SchemaValidationError("Outline must include a non-empty 'chapters' list.")

    chapters = []
    for index, entry in enumerate(raw_chapters, start=1):
        chapter = _require_mapping(entry, f"Outline chapter {index}")
        chapters.append(
            OutlineChapter(
                title=_require_str(chapter, "title"),
                goal=_optional_str(chapter, "goal", ""),
                key_scene=_optional_str(chapter, "key_scene", ""),
                dua_or_ayah_hint=_optional_str(chapter, "dua_or_ayah_hint", "None"),
            )
        )

    return OutlineOutput(
        book_title=_require_str(payload, "book_title"),
        one_liner=_optional_str(payload, "one_liner", ""),
        moral=_optional_str(payload, "moral", ""),
        chapters=tuple(chapters),
    )


def validate_chapter(data: Any) -> ChapterOutput:
    payload = _require_mapping(data, "Chapter")
    return ChapterOutput(
        chapter_title=_require_str(payload, "chapter_title"),
        chapter_number=_require_int(payload, "chapter_number"),
        text=_require_str(payload, "text"),
        vocabulary_notes=_string_list(payload, "vocabulary_notes"),
        islamic_adab_checks=_string_list(payload, "islamic_adab_checks"),
    )


def validate_humanize(data: Any) -> HumanizeOutput:
    payload = _require_mapping(data, "Humanized chapter")
    return HumanizeOutput(
        chapter_title=_require_str(payload, "chapter_title"),
        chapter_number=_require_int(payload, "chapter_number"),
        edited_text=_require_str(payload, "edited_text"),
        changes_made=_string_list(payload, "changes_made"),
    )


@dataclass(frozen=True)
class OutputSchema(Generic[T]):
    """Schema text shown to the repair prompt plus the validator enforcing it."""

    name: str
    schema_text: str
    validator: Callable[[Any], T]

    def parse(self, text: str) -> T:
        """Decode and validate; raises ``ValueError`` on any mismatch."""
        return self.validator(parse_json_response(text))


OUTLINE_OUTPUT = OutputSchema("outline", OUTLINE_SCHEMA, validate_outline)
CHAPTER_OUTPUT = OutputSchema("chapter", CHAPTER_SCHEMA, validate_chapter)
HUMANIZE_OUTPUT = OutputSchema("humanize", HUMANIZE_SCHEMA, validate_humanize)
