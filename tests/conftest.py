from __future__ import annotations

import json
from typing import Any, Callable

import pytest

from bookstudio.ai_generation import ReplicateImageGenerator, TextGenerator
from bookstudio.common import ChatResult, PipelineSettings, RetryPolicy
from bookstudio.pipeline import (
    BookPipeline,
    InMemoryCreditLedger,
    InMemoryProjectStore,
    StageRunner,
    UsageLedger,
)
from bookstudio.story_generation import Character, KnowledgeBaseSummary, Project

NO_RETRY = RetryPolicy(max_retries=0, base_delay=0.0, timeout=None)


async def no_sleep(_: float) -> None:
    return None


def outline_json(chapter_count: int = 3) -> str:
    return json.dumps(
        {
            "book_title": "Amina and the Little Garden",
            "one_liner": "A girl learns that sharing makes a garden grow.",
            "moral": "Kindness to neighbours is part of faith.",
            "chapters": [
                {
                    "title": f"Chapter Title {number}",
                    "goal": f"Goal {number}",
                    "key_scene": f"Amina kneels by garden bed {number}",
                    "dua_or_ayah_hint": "Bismillah",
                }
                for number in range(1, chapter_count + 1)
            ],
        }
    )


def chapter_json(number: int) -> str:
    return json.dumps(
        {
            "chapter_title": f"Chapter Title {number}",
            "chapter_number": number,
            "text": f"Amina smiled at the seedlings in chapter {number}. She said Bismillah and began to dig.",
            "vocabulary_notes": ["Bismillah: In the name of Allah"],
            "islamic_adab_checks": ["Starting with Bismillah"],
        }
    )


def humanize_json(number: int) -> str:
    return json.dumps(
        {
            "chapter_title": f"Chapter Title {number}",
            "chapter_number": number,
            "edited_text": f"Amina grinned at her tiny seedlings. This is polished chapter {number}.",
            "changes_made": ["Smoother dialogue"],
        }
    )


def _chapter_number(prompt: str, marker: str) -> int:
    tail = prompt.split(marker, 1)[1]
    digits = ""
    for char in tail.strip():
        if not char.isdigit():
            break
        digits += char
    return int(digits)


class FakeCompletion:
    """
    LiteLLM-compatible async completion callable.

    Answers each stage with valid JSON by default; ``overrides`` maps a stage
    name ("outline", "chapter", "humanize", "repair") to a list of raw
    responses consumed in order before falling back to the default.
    """

    def __init__(self, *, chapter_count: int = 3, overrides: dict[str, list[str]] | None = None) -> None:
        self.chapter_count = chapter_count
        self.overrides = {key: list(value) for key, value in (overrides or {}).items()}
        self.calls: list[dict[str, Any]] = []
        self.before_return: Callable[[], None] | None = None

    def _stage(self, system: str, prompt: str) -> str:
        if system.startswith("You are a JSON repair assistant"):
            return "repair"
        if prompt.startswith("Create a book outline"):
            return "outline"
        if prompt.startswith("Write Chapter"):
            return "chapter"
        if prompt.startswith("Edit and humanize"):
            return "humanize"
        raise AssertionError(f"Unexpected prompt: {prompt[:60]!r}")

    async def __call__(self, *, model: str, messages: list[dict[str, str]], **kwargs: Any) -> ChatResult:
        system, prompt = messages[0]["content"], messages[1]["content"]
        stage = self._stage(system, prompt)
        self.calls.append({"stage": stage, "model": model, "prompt": prompt, **kwargs})

        queued = self.overrides.get(stage)
        if queued:
            text = queued.pop(0)
        elif stage == "outline":
            text = outline_json(self.chapter_count)
        elif stage == "chapter":
            text = chapter_json(_chapter_number(prompt, "Write Chapter"))
        elif stage == "humanize":
            text = humanize_json(_chapter_number(prompt, "CHAPTER:"))
        else:
            text = "still not json"

        if self.before_return is not None:
            self.before_return()
        return ChatResult(text=text, raw=None, input_tokens=100, output_tokens=200, finish_reason="stop")

    def stages(self) -> list[str]:
        return [call["stage"] for call in self.calls]


class FakeReplicateClient:
    """Stands in for ``replicate.Client``; returns a new URL per call."""

    def __init__(self, *, failures: list[BaseException] | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.failures = list(failures or [])
        self.before_return: Callable[[], None] | None = None

    async def async_run(self, model: str, input: dict[str, Any]) -> list[str]:
        self.calls.append({"model": model, "input": dict(input)})
        if self.failures:
            raise self.failures.pop(0)
        if self.before_return is not None:
            self.before_return()
        return [f"https://images.test/{len(self.calls)}.png"]


@pytest.fixture
def characters() -> list[Character]:
    return [
        Character.from_mapping(
            {
                "id": "amina",
                "name": "Amina",
                "role": "protagonist",
                "traits": ["curious", "kind"],
                "speaking_style": "Excited questions",
                "visual_prompt": "Small girl in a yellow hijab and green apron",
                "visual_dna": {
                    "skin_tone": "warm olive",
                    "hair_or_hijab": "yellow hijab",
                    "appearance": "round cheeks, green apron",
                },
                "modesty_rules": {"hijab_style": "wrapped", "outfit_length": "ankle-length"},
                "pose_sheet_url": "https://refs.test/amina-pose.png",
            }
        ),
        Character.from_mapping(
            {
                "id": "teta",
                "name": "Teta Huda",
                "role": "grandmother",
                "traits": ["patient"],
            }
        ),
        Character.from_mapping({"id": "stranger", "name": "Not Selected"}),
    ]


@pytest.fixture
def kb_summary() -> KnowledgeBaseSummary:
    return KnowledgeBaseSummary.from_mapping(
        {
            "name": "Family values",
            "faith_rules": [f"Faith rule {n}" for n in range(1, 8)],
            "vocabulary_rules": ["Short sentences"],
            "illustration_rules": ["Modest clothing"],
        }
    )


@pytest.fixture
def project() -> Project:
    return Project.from_mapping(
        {
            "id": "book-1",
            "title": "Amina and the Little Garden",
            "age_range": "4-7",
            "setting": "A courtyard garden",
            "learning_objective": "Kindness to neighbours",
            "trim_size": "6x9",
            "character_ids": ["amina", "teta"],
        }
    )


@pytest.fixture
def store(project: Project, characters: list[Character], kb_summary: KnowledgeBaseSummary) -> InMemoryProjectStore:
    return InMemoryProjectStore([project], characters=characters, kb_summaries={project.id: kb_summary})


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger({"default": 1000})


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(variants_per_illustration=1, cover_variants=1, provider_base_delay_seconds=0.0)


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion(chapter_count=3)


@pytest.fixture
def replicate_client() -> FakeReplicateClient:
    return FakeReplicateClient()


@pytest.fixture
def make_runner(store, ledger, settings, completion, replicate_client):
    def _make(**overrides: Any) -> StageRunner:
        options: dict[str, Any] = {
            "store": store,
            "text_generator": TextGenerator(
                api_key="test-key",
                completion_fn=completion,
                retry_policy=NO_RETRY,
                sleep=no_sleep,
            ),
            "image_generator": ReplicateImageGenerator(
                client=replicate_client,
                retry_policy=NO_RETRY,
                sleep=no_sleep,
            ),
            "credit_ledger": ledger,
            "usage_ledger": UsageLedger(),
            "settings": settings,
            "sleep": no_sleep,
        }
        options.update(overrides)
        return StageRunner(**options)

    return _make


@pytest.fixture
def runner(make_runner) -> StageRunner:
    return make_runner()


@pytest.fixture
def pipeline(runner: StageRunner) -> BookPipeline:
    return BookPipeline(runner=runner)
