"""
Prompt construction utilities for the text stages of the book pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping

from bookstudio.common.budget import (
    CHARS_PER_TOKEN,
    clamp_text_length,
    clamp_texts_proportionally,
    get_stage_budget,
)
from bookstudio.common.stages import AIStage

from .context import StageContext
from .project import Project

MAX_SYNOPSIS_CHARS = 500
MAX_PREVIOUS_SUMMARY_CHARS = 300
MAX_HUMANIZE_TEXT_CHARS = 4000
MAX_REPAIR_OUTPUT_CHARS = 3000
OUTLINE_CHAPTER_COUNT = 4

_ELLIPSIS_ALLOWANCE = len("...")

OUTLINE_SYSTEM_PROMPT = """You are an expert Islamic children's book author. You create engaging, age-appropriate stories that teach Islamic values through compelling narratives.

You MUST output valid JSON matching this exact schema:
{
  "book_title": "string",
  "one_liner": "string (one sentence summary)",
  "moral": "string (the Islamic teaching/moral)",
  "chapters": [
    {
      "title": "string",
      "goal": "string (what this chapter accomplishes)",
      "key_scene": "string (the main scene/event)",
      "dua_or_ayah_hint": "string (relevant dua or ayah reference, or 'None')"
    }
  ]
}

IMPORTANT RULES:
- Output ONLY the JSON, no markdown code blocks, no explanations
- Age range determines vocabulary complexity and scene intensity
- All content must align with Islamic values
- Characters should model good Islamic adab (manners)"""

CHAPTER_SYSTEM_PROMPT = """You are an expert Islamic children's book author writing engaging chapter content.

You MUST output valid JSON matching this exact schema:
{
  "chapter_title": "string",
  "chapter_number": number,
  "text": "string (the full chapter text, 300-600 words)",
  "vocabulary_notes": ["string (Islamic terms used with brief explanations)"],
  "islamic_adab_checks": ["string (Islamic manners/values demonstrated)"]
}

IMPORTANT RULES:
- Output ONLY the JSON, no markdown code blocks
- Write age-appropriate content for the specified age range
- Use dialogue to make characters come alive
- Include sensory details for engaging storytelling
- Naturally incorporate Islamic concepts without being preachy
- If a dua or ayah is referenced, present it respectfully"""

HUMANIZE_SYSTEM_PROMPT = """You are an expert editor specializing in Islamic children's literature. Your job is to humanize and polish AI-generated text while preserving its meaning and Islamic content.

You MUST output valid JSON matching this exact schema:
{
  "chapter_title": "string",
  "chapter_number": number,
  "edited_text": "string (the improved chapter text)",
  "changes_made": ["string (brief description of each change)"]
}

IMPORTANT RULES:
- Output ONLY the JSON, no markdown code blocks
- Preserve all Islamic content and references
- Make dialogue more natural and age-appropriate
- Improve flow and readability
- Fix any awkward phrasing
- Ensure proper adab in character interactions"""

JSON_REPAIR_SYSTEM_PROMPT = """You are a JSON repair assistant. Your only job is to fix malformed JSON to match the required schema.

RULES:
- Output ONLY valid JSON, nothing else
- Do not add explanations or markdown
- Preserve as much of the original content as possible
- If content is missing, use reasonable defaults"""


@dataclass(frozen=True)
class TextPrompt:
    """
    Container for the system and user prompts passed to the text model.
    """

    system: str
    user: str


@dataclass(frozen=True)
class ChapterBrief:
    """Outline entry plus running context for one chapter prompt."""

    chapter_number: int
    title: str
    goal: str
    key_scene: str
    dua_or_ayah_hint: str = "None"
    previous_chapter_summary: str | None = None


def build_character_summary(context: StageContext) -> str:
    if not context.active_characters:
        return "No characters provided."

    lines = []
    for character in context.active_characters:
        traits = ", ".join(character.traits) or "kind, curious"
        lines.append(
            f"- {character.name} ({character.role}): {traits}. "
            f"Speaking style: {character.speaking_style}"
        )
    return "\n".join(lines)


def build_kb_rules_summary(context: StageContext) -> str:
    kb = context.knowledge_base
    if kb is None:
        return "No knowledge base rules provided."

    sections: list[str] = []
    if kb.faith_rules:
        sections.append(_rules_section("FAITH RULES (must follow):", kb.faith_rules))
    if kb.vocabulary_rules:
        sections.append(_rules_section("VOCABULARY RULES (language guidelines):", kb.vocabulary_rules))
    if kb.illustration_rules:
        sections.append(
            _rules_section("ILLUSTRATION RULES (for scene descriptions):", kb.illustration_rules)
        )
    return "\n\n".join(sections) if sections else "No specific rules."


def _rules_section(title: str, rules: tuple[str, ...]) -> str:
    return title + "\n" + "\n".join(f"- {rule}" for rule in rules)


def _fit_free_text(
    stage: AIStage,
    render: Callable[[Mapping[str, str]], str],
    fields: Mapping[str, str],
) -> str:
    """
    Render a prompt, shrinking the free-text ``fields`` by a common ratio when
    the result would exceed the stage's prompt budget.

    Fixed template text is never clamped, so a prompt can still be rejected by
    the budget guard when the fixed part alone is too large.
    """
    prompt = render(fields)
    budget = get_stage_budget(stage)
    if budget is None:
        return prompt

    max_chars = budget.max_prompt_tokens * CHARS_PER_TOKEN
    if len(prompt) <= max_chars:
        return prompt

    fixed_length = len(render({key: "" for key in fields}))
    room = max_chars - fixed_length - _ELLIPSIS_ALLOWANCE * len(fields)
    if room <= 0:
        return prompt

    keys = list(fields)
    clamped = clamp_texts_proportionally([fields[key] for key in keys], room)
    return render(dict(zip(keys, clamped)))


def build_outline_prompt(context: StageContext, project: Project) -> TextPrompt:
    """
    Build the prompt pair requesting a four-chapter outline as JSON.
    """
    learning_objective = context.learning_objective or "General Islamic values"

    def render(fields: Mapping[str, str]) -> str:
        return f"""Create a book outline for:

BOOK DETAILS:
- Title: {context.project_title}
- Age Range: {context.age_range}
- Template Type: {project.template_type}
- Setting: {fields["setting"]}
- Learning Objective: {fields["learning_objective"]}
- Synopsis: {fields["synopsis"]}

CHARACTERS:
{fields["characters"]}

KNOWLEDGE BASE RULES:
{fields["kb_rules"]}

Generate a {OUTLINE_CHAPTER_COUNT}-chapter outline that:
1. Has a clear beginning, challenge, learning, and resolution
2. Features the characters appropriately for their roles
3. Incorporates at least one dua or ayah reference naturally
4. Is appropriate for the {context.age_range} age range
5. Teaches: {fields["learning_objective"]}"""

    user = _fit_free_text(
        AIStage.OUTLINE,
        render,
        {
            "setting": context.setting or "Not specified",
            "learning_objective": learning_objective,
            "synopsis": clamp_text_length(project.synopsis or "", MAX_SYNOPSIS_CHARS),
            "characters": build_character_summary(context),
            "kb_rules": build_kb_rules_summary(context),
        },
    )
    return TextPrompt(system=OUTLINE_SYSTEM_PROMPT, user=user)


def build_chapter_prompt(
    context: StageContext,
    project: Project,
    brief: ChapterBrief,
) -> TextPrompt:
    def render(fields: Mapping[str, str]) -> str:
        previous = (
            f"\nPREVIOUS CHAPTER SUMMARY:\n{fields['previous']}" if fields["previous"] else ""
        )
        return f"""Write Chapter {brief.chapter_number} for:

BOOK: {context.project_title}
AGE RANGE: {context.age_range}
LAYOUT STYLE: {project.layout_style} (consider pacing for this format)

CHAPTER DETAILS:
- Title: {brief.title}
- Goal: {fields["goal"]}
- Key Scene: {fields["key_scene"]}
- Dua/Ayah Reference: {brief.dua_or_ayah_hint}
{previous}

CHARACTERS:
{fields["characters"]}

KNOWLEDGE BASE RULES:
{fields["kb_rules"]}

Write this chapter with:
1. An engaging opening hook
2. Character dialogue that sounds natural for their age
3. The key scene as the centerpiece
4. If applicable, the dua/ayah woven naturally into the narrative
5. A transition that leads to the next chapter or resolution"""

    previous_summary = ""
    if brief.previous_chapter_summary:
        previous_summary = clamp_text_length(
            brief.previous_chapter_summary, MAX_PREVIOUS_SUMMARY_CHARS
        )

    user = _fit_free_text(
        AIStage.CHAPTERS,
        render,
        {
            "goal": brief.goal,
            "key_scene": brief.key_scene,
            "previous": previous_summary,
            "characters": build_character_summary(context),
            "kb_rules": build_kb_rules_summary(context),
        },
    )
    return TextPrompt(system=CHAPTER_SYSTEM_PROMPT, user=user)


def build_humanize_prompt(
    context: StageContext,
    *,
    chapter_number: int,
    chapter_text: str,
) -> TextPrompt:
    def render(fields: Mapping[str, str]) -> str:
        return f"""Edit and humanize this chapter:

BOOK: {context.project_title}
AGE RANGE: {context.age_range}
CHAPTER: {chapter_number}

KNOWLEDGE BASE RULES TO VERIFY:
{fields["kb_rules"]}

ORIGINAL TEXT:
{fields["text"]}

Please:
1. Make dialogue sound more natural for the age range
2. Improve sentence variety and flow
3. Ensure Islamic terms are used correctly
4. Add small sensory details if needed
5. Verify adab (manners) are modeled correctly
6. Keep the same story beats and length"""

    user = _fit_free_text(
        AIStage.HUMANIZE,
        render,
        {
            "kb_rules": build_kb_rules_summary(context),
            "text": clamp_text_length(chapter_text, MAX_HUMANIZE_TEXT_CHARS),
        },
    )
    return TextPrompt(system=HUMANIZE_SYSTEM_PROMPT, user=user)


def build_json_repair_prompt(original_output: str, expected_schema: str) -> TextPrompt:
    """Schema-aware repair request carrying the offending raw output."""
    user = f"""The following output should be valid JSON but has errors. Fix it to match this schema:

EXPECTED SCHEMA:
{expected_schema}

BROKEN OUTPUT:
{clamp_text_length(original_output, MAX_REPAIR_OUTPUT_CHARS)}

Output the fixed JSON only:"""
    return TextPrompt(system=JSON_REPAIR_SYSTEM_PROMPT, user=user)


def summarize_chapter(chapter_number: int, chapter_title: str, text: str) -> str:
    """Running summary handed to the next chapter's prompt."""
    return f"Chapter {chapter_number} ({chapter_title}): {text[:200]}..."
