"""
Prompt construction utilities for illustration and cover generation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal, Mapping, Sequence

from bookstudio.common.budget import CHARS_PER_TOKEN, AI_TOKEN_BUDGETS, clamp_texts_proportionally
from bookstudio.common.stages import AIStage
from bookstudio.story_generation.context import MAX_RULES_PER_CATEGORY, MAX_VISUAL_DESCRIPTION_CHARS
from bookstudio.story_generation.project import Character, KnowledgeBaseSummary, Project

CoverType = Literal["front", "back"]

IMAGE_STYLE = "pixar-3d"
MAX_COVER_CHARACTERS = 2

ILLUSTRATION_NEGATIVE_PROMPT = (
    "text, words, letters, numbers, watermark, signature, "
    "different face, changed appearance, wrong skin tone, inconsistent character, "
    "missing hijab, different hair color, wrong clothing, character variation, "
    "blurry, distorted, low quality, artifacts, bad anatomy, deformed, "
    "scary, violent, inappropriate, revealing clothing"
)

COVER_NEGATIVE_PROMPT = (
    "text, words, letters, numbers, title, author, signature, watermark, logo, barcode, ISBN, "
    "typography, font, writing, "
    "blurry, distorted, low quality, pixelated, artifacts, "
    "bad anatomy, deformed, ugly, mutated, disfigured, "
    "scary, violent, inappropriate, revealing clothing, tight clothing, "
    "horizontal, landscape orientation"
)

BASE_MODESTY_CONSTRAINTS = (
    "Islamic modesty standards",
    "appropriate dress for Muslim children's book",
    "no revealing clothing",
)


@dataclass(frozen=True)
class ImagePrompt:
    """Positive prompt, side-channel negative prompt and pose-sheet references."""

    positive: str
    negative: str
    references: tuple[str, ...] = ()
    style: str = IMAGE_STYLE


def build_character_description(character: Character) -> str:
    parts: list[str] = [character.name]

    if character.age_range:
        parts.append(f"({character.age_range})")

    dna = character.visual_dna
    if dna.skin_tone:
        parts.append(f"{dna.skin_tone} skin")
    if dna.hair_or_hijab:
        parts.append(dna.hair_or_hijab)

    modesty = character.modesty_rules
    if modesty.hijab_style and modesty.hijab_style.lower() != "none":
        parts.append(f"wearing {modesty.hijab_style} hijab")
    if modesty.outfit_length:
        parts.append(f"{modesty.outfit_length} modest clothing")

    appearance = dna.appearance or character.visual_prompt
    if appearance:
        parts.append(appearance[:MAX_VISUAL_DESCRIPTION_CHARS])

    if dna.color_palette:
        parts.append("palette: " + "/".join(dna.color_palette))

    return ", ".join(parts)


def build_modesty_constraints(kb_summary: KnowledgeBaseSummary | None) -> str:
    constraints = list(BASE_MODESTY_CONSTRAINTS)
    if kb_summary is not None:
        constraints.extend(kb_summary.illustration_rules[:MAX_RULES_PER_CATEGORY])
    return ", ".join(constraints)


def build_universe_hints(project: Project) -> list[str]:
    hints: list[str] = []
    if project.universe_description:
        hints.append(f"Universe Context: {project.universe_description}")
    if project.universe_style:
        hints.append(f"Visual Style: {project.universe_style}")
    return hints


def _collect_pose_sheets(characters: Sequence[Character]) -> tuple[str, ...]:
    return tuple(character.pose_sheet_url for character in characters if character.pose_sheet_url)


def _format_bullet_section(title: str, lines: Sequence[str]) -> str:
    bullet_block = "\n".join(f"- {line}" for line in lines if line.strip())
    return f"{title}\n{bullet_block}"


def _fit_image_prompt(
    stage: AIStage,
    render: Callable[[Mapping[str, str]], str],
    fields: Mapping[str, str],
) -> str:
    prompt = render(fields)
    max_chars = AI_TOKEN_BUDGETS[stage].max_prompt_tokens * CHARS_PER_TOKEN
    if len(prompt) <= max_chars:
        return prompt

    fixed_length = len(render({key: "" for key in fields}))
    room = max_chars - fixed_length - 3 * len(fields)
    if room <= 0:
        return prompt
    keys = list(fields)
    clamped = clamp_texts_proportionally([fields[key] for key in keys], room)
    return render(dict(zip(keys, clamped)))


def build_illustration_prompt(
    *,
    project: Project,
    scene_description: str,
    characters: Sequence[Character],
    kb_summary: KnowledgeBaseSummary | None = None,
) -> ImagePrompt:
    """
    Build the illustration prompt for one chapter scene.

    ``characters`` should already be limited to the project's selection.
    """
    if not scene_description or not scene_description.strip():
        raise ValueError("scene_description must be a non-empty string.")

    def render(fields: Mapping[str, str]) -> str:
        sections = [
            f"Pixar-style 3D children's book illustration for ages {project.age_range}",
            f"Scene: {fields['scene']}",
            f"Characters: {fields['characters']}",
            _format_bullet_section(
                "Style requirements:",
                [
                    "Warm, inviting lighting",
                    "Soft shadows",
                    "Vibrant but not harsh colors",
                    "Child-friendly expressions",
                    "Clear focal point",
                ],
            ),
            _format_bullet_section(
                "Cultural requirements:",
                [fields["modesty"], "Culturally appropriate Islamic setting"],
            ),
            _format_bullet_section(
                "Technical requirements:",
                [
                    "High detail on character faces",
                    "Consistent character design with reference images",
                    "No text or words in the image",
                    "Professional children's book quality",
                ],
            ),
        ]
        if fields["universe"]:
            sections.append(fields["universe"])
        return "\n\n".join(sections)

    positive = _fit_image_prompt(
        AIStage.ILLUSTRATIONS,
        render,
        {
            "scene": scene_description.strip(),
            "characters": "; ".join(build_character_description(c) for c in characters)
            or "No named characters",
            "modesty": build_modesty_constraints(kb_summary),
            "universe": "\n".join(build_universe_hints(project)),
        },
    )
    return ImagePrompt(
        positive=positive,
        negative=ILLUSTRATION_NEGATIVE_PROMPT,
        references=_collect_pose_sheets(characters),
    )


def build_cover_prompt(
    *,
    project: Project,
    characters: Sequence[Character],
    kb_summary: KnowledgeBaseSummary | None = None,
    cover_type: CoverType = "front",
    moral: str | None = None,
) -> ImagePrompt:
    """
    Build a front or back cover prompt; only the first two characters appear.
    """
    main_characters = list(characters)[:MAX_COVER_CHARACTERS]
    modesty = build_modesty_constraints(kb_summary)

    if cover_type == "front":
        lines = [
            "Pixar-style 3D children's book FRONT COVER illustration",
            f'Title: "{project.title}"',
            f"for ages {project.age_range}",
            "",
            "Main characters: "
            + ("; ".join(build_character_description(c) for c in main_characters) or "none"),
            "",
            _format_bullet_section(
                "Cover composition:",
                [
                    "Characters prominently featured",
                    "Eye-catching, dynamic pose",
                    "Warm, inviting atmosphere",
                    "Space at top for title text (leave blank)",
                    "Vibrant, appealing colors",
                ],
            ),
            "",
            f"Setting hint: {project.setting or 'Islamic/Middle Eastern inspired'}",
            "",
            _format_bullet_section(
                "Requirements:",
                [
                    modesty,
                    "Professional book cover quality",
                    "No text or words - title will be added separately",
                    "Vertical portrait orientation (2:3 ratio)",
                ],
            ),
        ]
    elif cover_type == "back":
        lines = [
            "Pixar-style 3D children's book BACK COVER illustration",
            f"for ages {project.age_range}",
            "",
            _format_bullet_section(
                "Back cover composition:",
                [
                    "Softer, complementary scene",
                    "Can show secondary moment or setting",
                    "Space in center for synopsis text (leave blank)",
                    "Cohesive with front cover style",
                ],
            ),
            "",
            f"Theme: {moral or project.learning_objective or 'Islamic values'}",
            "",
            _format_bullet_section(
                "Requirements:",
                [
                    modesty,
                    "Professional book cover quality",
                    "No text or words",
                    "Vertical portrait orientation (2:3 ratio)",
                ],
            ),
        ]
    else:
        raise ValueError(f"Unknown cover type {cover_type!r}; expected 'front' or 'back'.")

    universe = build_universe_hints(project)
    if universe:
        lines.extend(["", *universe])

    return ImagePrompt(
        positive="\n".join(lines),
        negative=COVER_NEGATIVE_PROMPT,
        references=_collect_pose_sheets(main_characters),
    )
