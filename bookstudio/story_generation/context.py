"""
Trim a project's full state into the small context a single stage needs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from bookstudio.common.stages import AIStage

from .project import Character, KnowledgeBaseSummary, Project

MAX_VISUAL_DESCRIPTION_CHARS = 200
MAX_RULES_PER_CATEGORY = 5
DEFAULT_SPEAKING_STYLE = "friendly and warm"


@dataclass(frozen=True)
class ContextCharacter:
    name: str
    role: str
    traits: tuple[str, ...]
    speaking_style: str
    visual_description: str


@dataclass(frozen=True)
class ContextKnowledgeBase:
    name: str
    faith_rules: tuple[str, ...]
    vocabulary_rules: tuple[str, ...]
    illustration_rules: tuple[str, ...]


@dataclass(frozen=True)
class StageContext:
    """Everything a prompt for ``stage`` may draw on."""

    stage: AIStage
    project_title: str
    age_range: str
    learning_objective: str | None
    setting: str | None
    active_characters: tuple[ContextCharacter, ...]
    knowledge_base: ContextKnowledgeBase | None


def build_stage_context(
    stage: AIStage | str,
    project: Project,
    characters: Iterable[Character],
    kb_summary: KnowledgeBaseSummary | None = None,
) -> StageContext:
    """
    Keep only the project's selected characters, reduced to prompt-relevant
    fields, and at most five rules per knowledge-base category.
    """
    selected = set(project.character_ids)
    active = tuple(
        ContextCharacter(
            name=character.name,
            role=character.role,
            traits=tuple(character.traits),
            speaking_style=character.speaking_style or DEFAULT_SPEAKING_STYLE,
            visual_description=(character.visual_prompt or "")[:MAX_VISUAL_DESCRIPTION_CHARS],
        )
        for character in characters
        if character.id in selected
    )

    knowledge_base = None
    if kb_summary is not None:
        knowledge_base = ContextKnowledgeBase(
            name=kb_summary.name,
            faith_rules=tuple(kb_summary.faith_rules[:MAX_RULES_PER_CATEGORY]),
            vocabulary_rules=tuple(kb_summary.vocabulary_rules[:MAX_RULES_PER_CATEGORY]),
            illustration_rules=tuple(kb_summary.illustration_rules[:MAX_RULES_PER_CATEGORY]),
        )

    return StageContext(
        stage=AIStage(stage),
        project_title=project.title,
        age_range=project.age_range,
        learning_objective=project.learning_objective,
        setting=project.setting,
        active_characters=active,
        knowledge_base=knowledge_base,
    )


def select_project_characters(project: Project, characters: Iterable[Character]) -> list[Character]:
    """Full character records for the project's selection, in selection order."""
    by_id = {character.id: character for character in characters}
    return [by_id[character_id] for character_id in project.character_ids if character_id in by_id]
