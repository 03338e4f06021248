"""
Structured text call with exactly one schema-repair attempt.

Each call walks ``PENDING -> CALLED -> DONE`` or
``PENDING -> CALLED -> PARSE_FAILED -> REPAIRING -> DONE | NEEDS_REVIEW``.
Any other transition raises, so a third remote call cannot happen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

from bookstudio.ai_generation.text_service import TextGeneration, TextGenerationRequest, TextGenerator
from bookstudio.common.cancellation import CancelToken
from bookstudio.common.stages import AIStage
from bookstudio.story_generation.prompting import TextPrompt, build_json_repair_prompt
from bookstudio.story_generation.schemas import OutputSchema

logger = logging.getLogger(__name__)

T = TypeVar("T")

BeforeCallHook = Callable[[AIStage, str], None]
GenerationHook = Callable[[AIStage, TextGeneration], Awaitable[None]]
RepairPromptBuilder = Callable[[str, str], TextPrompt]


class StructuredCallPhase(str, Enum):
    PENDING = "pending"
    CALLED = "called"
    PARSE_FAILED = "parse_failed"
    REPAIRING = "repairing"
    DONE = "done"
    NEEDS_REVIEW = "needs_review"


_TRANSITIONS: dict[StructuredCallPhase, frozenset[StructuredCallPhase]] = {
    StructuredCallPhase.PENDING: frozenset({StructuredCallPhase.CALLED}),
    StructuredCallPhase.CALLED: frozenset({StructuredCallPhase.DONE, StructuredCallPhase.PARSE_FAILED}),
    StructuredCallPhase.PARSE_FAILED: frozenset({StructuredCallPhase.REPAIRING}),
    StructuredCallPhase.REPAIRING: frozenset(
        {StructuredCallPhase.DONE, StructuredCallPhase.NEEDS_REVIEW}
    ),
    StructuredCallPhase.DONE: frozenset(),
    StructuredCallPhase.NEEDS_REVIEW: frozenset(),
}


@dataclass
class StructuredCallResult(Generic[T]):
    phase: StructuredCallPhase
    data: T | None
    raw_text: str
    error: str | None = None
    generations: list[TextGeneration] = field(default_factory=list)

    @property
    def needs_review(self) -> bool:
        return self.phase is StructuredCallPhase.NEEDS_REVIEW

    @property
    def repaired(self) -> bool:
        return self.phase is StructuredCallPhase.DONE and len(self.generations) > 1

    @property
    def remote_calls(self) -> int:
        return len(self.generations)


class StructuredCall(Generic[T]):
    """
    One structured text request and its optional repair.

    Parameters
    ----------
    stage:
        Budget stage of the primary call; the repair runs under ``json_repair``.
    schema:
        Expected output shape; its text is embedded in the repair prompt.
    """

    MAX_REMOTE_CALLS = 2

    def __init__(
        self,
        *,
        stage: AIStage,
        schema: OutputSchema[T],
        repair_prompt_builder: RepairPromptBuilder = build_json_repair_prompt,
    ) -> None:
        self.stage = stage
        self.schema = schema
        self._repair_prompt_builder = repair_prompt_builder
        self._phase = StructuredCallPhase.PENDING
        self.history: list[StructuredCallPhase] = [self._phase]
        self.remote_calls = 0
        self.active_stage: AIStage = stage

    @property
    def phase(self) -> StructuredCallPhase:
        return self._phase

    def _advance(self, phase: StructuredCallPhase) -> None:
        if phase not in _TRANSITIONS[self._phase]:
            raise RuntimeError(f"Illegal structured call transition {self._phase.value} -> {phase.value}.")
        self._phase = phase
        self.history.append(phase)

    async def _call(
        self,
        generator: TextGenerator,
        stage: AIStage,
        prompt: TextPrompt,
        *,
        cancel_token: CancelToken | None,
        before_call: BeforeCallHook | None,
        on_generation: GenerationHook | None,
    ) -> TextGeneration:
        if self.remote_calls >= self.MAX_REMOTE_CALLS:
            raise RuntimeError("Structured call already used its remote call allowance.")
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if before_call is not None:
            before_call(stage, prompt.user)

        self.active_stage = stage
        self.remote_calls += 1
        generation = await generator.generate_text(
            TextGenerationRequest(system=prompt.system, prompt=prompt.user, stage=stage)
        )
        if cancel_token is not None:
            # In-flight results that land after cancellation are discarded.
            cancel_token.raise_if_cancelled()
        if on_generation is not None:
            await on_generation(stage, generation)
        return generation

    async def run(
        self,
        generator: TextGenerator,
        prompt: TextPrompt,
        *,
        cancel_token: CancelToken | None = None,
        before_call: BeforeCallHook | None = None,
        on_generation: GenerationHook | None = None,
    ) -> StructuredCallResult[T]:
        first = await self._call(
            generator,
            self.stage,
            prompt,
            cancel_token=cancel_token,
            before_call=before_call,
            on_generation=on_generation,
        )
        self._advance(StructuredCallPhase.CALLED)
        generations = [first]

        try:
            data = self.schema.parse(first.text)
        except ValueError as exc:
            self._advance(StructuredCallPhase.PARSE_FAILED)
            first_error = str(exc)
            logger.warning("%s output failed schema validation, attempting repair: %s", self.stage.value, exc)
        else:
            self._advance(StructuredCallPhase.DONE)
            return StructuredCallResult(self._phase, data, first.text, generations=generations)

        self._advance(StructuredCallPhase.REPAIRING)
        repair_prompt = self._repair_prompt_builder(first.text, self.schema.schema_text)
        repaired = await self._call(
            generator,
            AIStage.JSON_REPAIR,
            repair_prompt,
            cancel_token=cancel_token,
            before_call=before_call,
            on_generation=on_generation,
        )
        generations.append(repaired)

        try:
            data = self.schema.parse(repaired.text)
        except ValueError as exc:
            self._advance(StructuredCallPhase.NEEDS_REVIEW)
            logger.error("%s output still invalid after repair: %s", self.stage.value, exc)
            return StructuredCallResult(
                self._phase,
                None,
                first.text,
                error=f"Could not parse AI response as valid JSON after retry: {exc} (first error: {first_error})",
                generations=generations,
            )

        self._advance(StructuredCallPhase.DONE)
        return StructuredCallResult(self._phase, data, repaired.text, generations=generations)


async def generate_text_with_json_retry(
    generator: TextGenerator,
    prompt: TextPrompt,
    schema: OutputSchema[T],
    *,
    stage: AIStage,
    repair_prompt_builder: RepairPromptBuilder = build_json_repair_prompt,
    cancel_token: CancelToken | None = None,
    before_call: BeforeCallHook | None = None,
    on_generation: GenerationHook | None = None,
) -> StructuredCallResult[T]:
    call: StructuredCall[T] = StructuredCall(
        stage=stage, schema=schema, repair_prompt_builder=repair_prompt_builder
    )
    return await call.run(
        generator,
        prompt,
        cancel_token=cancel_token,
        before_call=before_call,
        on_generation=on_generation,
    )
