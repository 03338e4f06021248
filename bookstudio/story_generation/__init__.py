"""
Story generation utilities: project model, stage context and text prompts.
"""

from .context import StageContext, build_stage_context, select_project_characters
from .project import Character, KnowledgeBaseSummary, ModestyRules, Project, VisualDNA
from .prompting import (
    ChapterBrief,
    TextPrompt,
    build_chapter_prompt,
    build_humanize_prompt,
    build_json_repair_prompt,
    build_outline_prompt,
)
from .scene_builder import SceneDescription, derive_scene_description
from .schemas import (
    CHAPTER_OUTPUT,
    HUMANIZE_OUTPUT,
    OUTLINE_OUTPUT,
    ChapterOutput,
    HumanizeOutput,
    OutlineOutput,
    OutputSchema,
    parse_json_response,
)

__all__ = [
    "CHAPTER_OUTPUT",
    "HUMANIZE_OUTPUT",
    "OUTLINE_OUTPUT",
    "ChapterBrief",
    "ChapterOutput",
    "Character",
    "HumanizeOutput",
    "KnowledgeBaseSummary",
    "ModestyRules",
    "OutlineOutput",
    "OutputSchema",
    "Project",
    "SceneDescription",
    "StageContext",
    "TextPrompt",
    "VisualDNA",
    "build_chapter_prompt",
    "build_humanize_prompt",
    "build_json_repair_prompt",
    "build_outline_prompt",
    "build_stage_context",
    "derive_scene_description",
    "parse_json_response",
    "select_project_characters",
]
