"""
Pipeline stage identifiers and the order in which a book moves through them.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping


class ProjectStage(str, Enum):
    """Steps of the book-generation pipeline, in execution order."""

    OUTLINE = "outline"
    CHAPTERS = "chapters"
    ILLUSTRATIONS = "illustrations"
    HUMANIZE = "humanize"
    LAYOUT = "layout"
    COVER = "cover"
    EXPORT = "export"
    COMPLETED = "completed"


class AIStage(str, Enum):
    """Stages that issue remote AI calls and therefore carry a budget."""

    OUTLINE = "outline"
    CHAPTERS = "chapters"
    HUMANIZE = "humanize"
    ILLUSTRATIONS = "illustrations"
    COVER = "cover"
    JSON_REPAIR = "json_repair"


STAGE_ORDER: tuple[ProjectStage, ...] = tuple(ProjectStage)

STAGE_DEPENDENCIES: Mapping[ProjectStage, ProjectStage | None] = {
    ProjectStage.OUTLINE: None,
    ProjectStage.CHAPTERS: ProjectStage.OUTLINE,
    ProjectStage.ILLUSTRATIONS: ProjectStage.CHAPTERS,
    # Humanize only needs chapters, so it may run before illustrations.
    ProjectStage.HUMANIZE: ProjectStage.CHAPTERS,
    ProjectStage.LAYOUT: ProjectStage.ILLUSTRATIONS,
    ProjectStage.COVER: ProjectStage.LAYOUT,
    ProjectStage.EXPORT: ProjectStage.COVER,
    ProjectStage.COMPLETED: ProjectStage.EXPORT,
}


def next_stage(current: ProjectStage | str) -> ProjectStage | None:
    """Return the stage after ``current`` or ``None`` when the book is complete."""
    stage = ProjectStage(current)
    index = STAGE_ORDER.index(stage)
    if index >= len(STAGE_ORDER) - 1:
        return None
    return STAGE_ORDER[index + 1]


def stage_index(stage: ProjectStage | str) -> int:
    return STAGE_ORDER.index(ProjectStage(stage))


def can_run_stage(stage: ProjectStage | str, completed: set[ProjectStage] | frozenset[ProjectStage]) -> bool:
    """
    Check whether ``stage`` has its prerequisite among the ``completed`` stages.
    """
    dependency = STAGE_DEPENDENCIES[ProjectStage(stage)]
    return dependency is None or dependency in completed
