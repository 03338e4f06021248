"""
Structured representations of a book project, its cast and knowledge-base rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence

from bookstudio.common.stages import ProjectStage

DEFAULT_ILLUSTRATION_SIZE = (1024, 1024)
DEFAULT_COVER_SIZE = (1024, 1536)


def _normalize_string_list(value: Any, *, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()

    if isinstance(value, str):
        parts = [item.strip() for item in value.split(",")]
    elif isinstance(value, Sequence):
        parts = [str(item).strip() for item in value]
    else:
        raise TypeError(f"{field_name} must be a string or sequence of strings.")

    return tuple(filter(None, parts))


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _coerce_int(value: Any, *, field_name: str, default: int) -> int:
    if value is None or value == "":
        return default

    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected an integer-compatible value for {field_name}, got {value!r}") from exc


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


@dataclass(frozen=True)
class VisualDNA:
    """Appearance facts restated in every image prompt for a character."""

    skin_tone: str | None = None
    hair_or_hijab: str | None = None
    appearance: str | None = None
    color_palette: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "VisualDNA":
        if not data:
            return cls()
        return cls(
            skin_tone=_coerce_optional_str(_first(data, "skin_tone", "skinTone")),
            hair_or_hijab=_coerce_optional_str(_first(data, "hair_or_hijab", "hairOrHijab")),
            appearance=_coerce_optional_str(_first(data, "appearance", "description")),
            color_palette=_normalize_string_list(
                _first(data, "color_palette", "colorPalette"), field_name="color_palette"
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "skin_tone": self.skin_tone,
            "hair_or_hijab": self.hair_or_hijab,
            "appearance": self.appearance,
            "color_palette": list(self.color_palette),
        }


@dataclass(frozen=True)
class ModestyRules:
    hijab_style: str | None = None
    outfit_length: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "ModestyRules":
        if not data:
            return cls()
        return cls(
            hijab_style=_coerce_optional_str(_first(data, "hijab_style", "hijabStyle")),
            outfit_length=_coerce_optional_str(_first(data, "outfit_length", "outfitLength")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"hijab_style": self.hijab_style, "outfit_length": self.outfit_length}


@dataclass(frozen=True)
class Character:
    """
    A recurring member of the book's cast.

    Attributes
    ----------
    id:
        Stable identifier referenced by ``Project.character_ids``.
    name / role:
        Display name and narrative role (e.g. "protagonist", "grandmother").
    traits:
        Personality traits used in text prompts.
    speaking_style:
        How the character talks; text prompts fall back to a friendly default.
    visual_prompt:
        Free-text appearance description; trimmed before reaching prompts.
    visual_dna / modesty_rules:
        Structured appearance and dress rules for image prompts.
    pose_sheet_url:
        Reference image URL passed to the image model for every illustration.
    """

    id: str
    name: str
    role: str = "supporting"
    age_range: str | None = None
    traits: tuple[str, ...] = ()
    speaking_style: str | None = None
    visual_prompt: str | None = None
    visual_dna: VisualDNA = field(default_factory=VisualDNA)
    modesty_rules: ModestyRules = field(default_factory=ModestyRules)
    pose_sheet_url: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Character":
        if "id" not in data or not str(data["id"]).strip():
            raise ValueError("Character data must include a non-empty 'id' field.")
        if "name" not in data or not str(data["name"]).strip():
            raise ValueError("Character data must include a non-empty 'name' field.")

        return cls(
            id=str(data["id"]).strip(),
            name=str(data["name"]).strip(),
            role=_coerce_optional_str(data.get("role")) or "supporting",
            age_range=_coerce_optional_str(_first(data, "age_range", "ageRange")),
            traits=_normalize_string_list(data.get("traits"), field_name="traits"),
            speaking_style=_coerce_optional_str(_first(data, "speaking_style", "speakingStyle")),
            visual_prompt=_coerce_optional_str(_first(data, "visual_prompt", "visualPrompt")),
            visual_dna=VisualDNA.from_mapping(_first(data, "visual_dna", "visualDNA")),
            modesty_rules=ModestyRules.from_mapping(_first(data, "modesty_rules", "modestyRules")),
            pose_sheet_url=_coerce_optional_str(
                _first(data, "pose_sheet_url", "poseSheetUrl", "reference_image_url")
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "age_range": self.age_range,
            "traits": list(self.traits),
            "speaking_style": self.speaking_style,
            "visual_prompt": self.visual_prompt,
            "visual_dna": self.visual_dna.to_dict(),
            "modesty_rules": self.modesty_rules.to_dict(),
            "pose_sheet_url": self.pose_sheet_url,
        }


@dataclass(frozen=True)
class KnowledgeBaseSummary:
    """Faith, vocabulary and illustration rules attached to a project."""

    name: str = "Knowledge base"
    faith_rules: tuple[str, ...] = ()
    vocabulary_rules: tuple[str, ...] = ()
    illustration_rules: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "KnowledgeBaseSummary":
        return cls(
            name=_coerce_optional_str(_first(data, "name", "kb_name", "kbName")) or "Knowledge base",
            faith_rules=_normalize_rules(_first(data, "faith_rules", "faithRules")),
            vocabulary_rules=_normalize_rules(_first(data, "vocabulary_rules", "vocabularyRules")),
            illustration_rules=_normalize_rules(
                _first(data, "illustration_rules", "illustrationRules")
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "faith_rules": list(self.faith_rules),
            "vocabulary_rules": list(self.vocabulary_rules),
            "illustration_rules": list(self.illustration_rules),
        }


def _normalize_rules(value: Any) -> tuple[str, ...]:
    # Rules may contain commas, so a bare string is split on newlines.
    if value is None:
        return ()
    if isinstance(value, str):
        lines = value.replace("\r", "\n").split("\n")
    elif isinstance(value, Sequence):
        lines = [str(item) for item in value]
    else:
        raise TypeError("Knowledge base rules must be a string or sequence of strings.")
    return tuple(line.strip(" \t-•") for line in lines if line.strip(" \t-•"))


@dataclass(frozen=True)
class Project:
    """
    A book in progress.

    ``artifacts`` maps a stage name to the JSON-compatible content persisted
    for it; only the project store replaces a project with an updated copy.
    """

    id: str
    title: str
    age_range: str = "4-7"
    setting: str | None = None
    learning_objective: str | None = None
    synopsis: str | None = None
    template_type: str = "adventure"
    layout_style: str = "picture-book"
    trim_size: str = "8.5x11"
    character_ids: tuple[str, ...] = ()
    current_stage: ProjectStage = ProjectStage.OUTLINE
    artifacts: Mapping[str, Any] = field(default_factory=dict)
    illustration_width: int = DEFAULT_ILLUSTRATION_SIZE[0]
    illustration_height: int = DEFAULT_ILLUSTRATION_SIZE[1]
    cover_width: int = DEFAULT_COVER_SIZE[0]
    cover_height: int = DEFAULT_COVER_SIZE[1]
    universe_description: str | None = None
    universe_style: str | None = None
    author_name: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Project":
        """
        Build a project from a dict-like object (e.g., parsed JSON/YAML).
        """
        if "id" not in data or not str(data["id"]).strip():
            raise ValueError("Project data must include a non-empty 'id' field.")
        if "title" not in data or not str(data["title"]).strip():
            raise ValueError("Project data must include a non-empty 'title' field.")

        raw_stage = _first(data, "current_stage", "currentStage") or ProjectStage.OUTLINE.value
        try:
            stage = ProjectStage(str(raw_stage))
        except ValueError as exc:
            raise ValueError(f"Unknown project stage {raw_stage!r}") from exc

        artifacts = data.get("artifacts") or {}
        if not isinstance(artifacts, Mapping):
            raise ValueError("Project 'artifacts' must be a mapping of stage name to content.")

        return cls(
            id=str(data["id"]).strip(),
            title=str(data["title"]).strip(),
            age_range=_coerce_optional_str(_first(data, "age_range", "ageRange")) or "4-7",
            setting=_coerce_optional_str(data.get("setting")),
            learning_objective=_coerce_optional_str(
                _first(data, "learning_objective", "learningObjective", "lesson")
            ),
            synopsis=_coerce_optional_str(data.get("synopsis")),
            template_type=_coerce_optional_str(_first(data, "template_type", "templateType"))
            or "adventure",
            layout_style=_coerce_optional_str(_first(data, "layout_style", "layoutStyle"))
            or "picture-book",
            trim_size=_coerce_optional_str(_first(data, "trim_size", "trimSize")) or "8.5x11",
            character_ids=_normalize_string_list(
                _first(data, "character_ids", "characterIds"), field_name="character_ids"
            ),
            current_stage=stage,
            artifacts=dict(artifacts),
            illustration_width=_coerce_int(
                data.get("illustration_width"), field_name="illustration_width",
                default=DEFAULT_ILLUSTRATION_SIZE[0],
            ),
            illustration_height=_coerce_int(
                data.get("illustration_height"), field_name="illustration_height",
                default=DEFAULT_ILLUSTRATION_SIZE[1],
            ),
            cover_width=_coerce_int(
                data.get("cover_width"), field_name="cover_width", default=DEFAULT_COVER_SIZE[0]
            ),
            cover_height=_coerce_int(
                data.get("cover_height"), field_name="cover_height", default=DEFAULT_COVER_SIZE[1]
            ),
            universe_description=_coerce_optional_str(data.get("universe_description")),
            universe_style=_coerce_optional_str(data.get("universe_style")),
            author_name=_coerce_optional_str(data.get("author_name")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "age_range": self.age_range,
            "setting": self.setting,
            "learning_objective": self.learning_objective,
            "synopsis": self.synopsis,
            "template_type": self.template_type,
            "layout_style": self.layout_style,
            "trim_size": self.trim_size,
            "character_ids": list(self.character_ids),
            "current_stage": self.current_stage.value,
            "artifacts": dict(self.artifacts),
            "illustration_width": self.illustration_width,
            "illustration_height": self.illustration_height,
            "cover_width": self.cover_width,
            "cover_height": self.cover_height,
            "universe_description": self.universe_description,
            "universe_style": self.universe_style,
            "author_name": self.author_name,
        }

    def artifact(self, stage: ProjectStage | str) -> Any:
        return self.artifacts.get(ProjectStage(stage).value)

    def with_updates(
        self,
        *,
        current_stage: ProjectStage | None = None,
        artifacts: Mapping[str, Any] | None = None,
    ) -> "Project":
        """Return a copy with the given stage pointer and merged artifacts."""
        merged = dict(self.artifacts)
        if artifacts:
            merged.update(artifacts)
        return replace(
            self,
            current_stage=current_stage or self.current_stage,
            artifacts=merged,
        )
