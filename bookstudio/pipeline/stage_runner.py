"""
Runs one pipeline stage for one project.

Every stage follows the same shape: re-read the project from the store,
check the stage's prerequisite, pre-check prompt budgets, the run's token
ceiling and the credit balance, issue the remote calls (checking the cancel
token before each one), then persist the artifact. The stage pointer only
moves forward when the stage is complete; a failure leaves it unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

from bookstudio.ai_generation.prompting import ImagePrompt, build_cover_prompt, build_illustration_prompt
from bookstudio.ai_generation.replicate_service import ImageGenerationRequest, ReplicateImageGenerator
from bookstudio.ai_generation.text_service import TextGeneration, TextGenerationRequest, TextGenerator
from bookstudio.common.budget import (
    AI_TOKEN_BUDGETS,
    GLOBAL_LIMITS,
    IMAGE_LIMITS,
    TokenCeiling,
    call_token_requirement,
    require_within_budget,
)
from bookstudio.common.cancellation import CancelToken
from bookstudio.common.config import PipelineSettings
from bookstudio.common.errors import (
    AIServiceError,
    BookStudioError,
    CancelledError,
    ErrorCode,
    InsufficientCreditsError,
    NotFoundError,
    RateLimitError,
    StorageError,
    ValidationError,
)
from bookstudio.common.retry import SleepFn
from bookstudio.common.stages import (
    STAGE_DEPENDENCIES,
    STAGE_ORDER,
    AIStage,
    ProjectStage,
    can_run_stage,
    next_stage,
    stage_index,
)
from bookstudio.pdf_generation.export import BookExporter, ExportBundle
from bookstudio.pdf_generation.layout import LayoutArtifact, LayoutChapter, compose_book_layout
from bookstudio.story_generation.context import build_stage_context
from bookstudio.story_generation.project import Character, KnowledgeBaseSummary, Project
from bookstudio.story_generation.prompting import (
    ChapterBrief,
    TextPrompt,
    build_chapter_prompt,
    build_humanize_prompt,
    build_outline_prompt,
    summarize_chapter,
)
from bookstudio.story_generation.scene_builder import derive_scene_description
from bookstudio.story_generation.schemas import (
    CHAPTER_OUTPUT,
    HUMANIZE_OUTPUT,
    OUTLINE_OUTPUT,
    OutputSchema,
)

from .artifacts import (
    NEEDS_REVIEW_KEY,
    USAGE_KEY,
    CoverItem,
    IllustrationItem,
    IllustrationVariant,
    chapter_text,
    chapters_from_artifact,
    illustrations_from_artifact,
    illustrations_to_artifact,
    mark_needs_review,
    needs_review,
    utc_timestamp,
)
from .continuity import (
    ConsistencyChain,
    ConsistencyConfig,
    ReferenceDirectives,
    create_diagnostic_report,
    validate_consistency_setup,
)
from .outcomes import (
    StageCancelled,
    StageFailed,
    StageNeedsReview,
    StageOutcome,
    StageRejected,
    StageSucceeded,
)
from .store import ProjectPatch, ProjectStore, persist_with_retry
from .structured import StructuredCall, StructuredCallResult
from .usage import CreditLedger, UsageLedger, UsageRecord

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict[str, Any]], None]

# Provider failures a single image variant may absorb without failing the stage.
_TOLERATED_VARIANT_ERRORS = (RateLimitError, AIServiceError)


def completed_stages(project: Project) -> frozenset[ProjectStage]:
    """Stages strictly before the project's stage pointer."""
    current = stage_index(project.current_stage)
    return frozenset(stage for stage in STAGE_ORDER if stage_index(stage) < current)


@dataclass
class RunState:
    """
    State shared by every stage of one pipeline run.

    Attributes
    ----------
    run_id:
        Prefix of every credit attempt id charged during the run.
    ceiling:
        Global token cap for the run.
    """

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    cancel_token: CancelToken = field(default_factory=CancelToken)
    ceiling: TokenCeiling = field(default_factory=TokenCeiling)
    progress: ProgressCallback | None = None

    def notify(self, event: str, **payload: Any) -> None:
        if self.progress is not None:
            self.progress(event, payload)


@dataclass
class _StageWork:
    """What one stage invocation produced so far."""

    stage: ProjectStage
    content: dict[str, Any] | None = None
    complete: bool = True
    remaining: int = 0
    produced: int = 0
    remote_calls: int = 0
    credits_charged: int = 0
    warnings: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    raw_text: str | None = None
    review_error: str | None = None

    @property
    def needs_review(self) -> bool:
        return self.review_error is not None


class _MeteredTextGenerator:
    """Records usage for every text call that reached the provider."""

    def __init__(self, inner: TextGenerator, usage: UsageLedger, project_id: str) -> None:
        self._inner = inner
        self._usage = usage
        self._project_id = project_id

    async def generate_text(self, request: TextGenerationRequest) -> TextGeneration:
        started = time.perf_counter()
        try:
            generation = await self._inner.generate_text(request)
        except ValidationError:
            raise
        except BookStudioError:
            self._usage.record(
                UsageRecord(
                    project_id=self._project_id,
                    stage=request.stage.value,
                    provider=self._inner.provider_name,
                    processing_time_ms=int((time.perf_counter() - started) * 1000),
                    success=False,
                )
            )
            raise
        self._usage.record(
            UsageRecord(
                project_id=self._project_id,
                stage=request.stage.value,
                provider=generation.provider,
                input_tokens=generation.input_tokens,
                output_tokens=generation.output_tokens,
                processing_time_ms=generation.processing_time_ms,
            )
        )
        return generation


class StageRunner:
    """
    Executes individual stages against a project store.

    Parameters
    ----------
    store:
        Authoritative project store; re-read at the start of every stage.
    text_generator / image_generator:
        Provider clients. They raise; the runner turns failures into outcomes.
    credit_ledger:
        Charged once per accepted billable call, keyed by attempt id.
    usage_ledger:
        Shared usage accumulator; a fresh one is created when omitted.
    exporter:
        Export collaborator used by the export stage.
    """

    def __init__(
        self,
        *,
        store: ProjectStore,
        text_generator: TextGenerator,
        image_generator: ReplicateImageGenerator,
        credit_ledger: CreditLedger,
        usage_ledger: UsageLedger | None = None,
        settings: PipelineSettings | None = None,
        exporter: BookExporter | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._store = store
        self._text = text_generator
        self._images = image_generator
        self._ledger = credit_ledger
        self._usage = usage_ledger or UsageLedger()
        self._settings = settings or PipelineSettings()
        self._exporter = exporter
        self._sleep = sleep
        self._handlers: Mapping[ProjectStage, Callable[[Project, _StageWork, RunState], Awaitable[None]]] = {
            ProjectStage.OUTLINE: self._run_outline,
            ProjectStage.CHAPTERS: self._run_chapters,
            ProjectStage.ILLUSTRATIONS: self._run_illustrations,
            ProjectStage.HUMANIZE: self._run_humanize,
            ProjectStage.LAYOUT: self._run_layout,
            ProjectStage.COVER: self._run_cover,
            ProjectStage.EXPORT: self._run_export,
        }

    @property
    def store(self) -> ProjectStore:
        return self._store

    @property
    def usage(self) -> UsageLedger:
        return self._usage

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    def new_run(
        self,
        *,
        cancel_token: CancelToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> RunState:
        return RunState(
            cancel_token=cancel_token or CancelToken(),
            ceiling=TokenCeiling(self._settings.total_book_max_tokens),
            progress=progress,
        )

    # ------------------------------------------------------------------ entry point

    async def run_stage(
        self,
        project_id: str,
        stage: ProjectStage | str,
        *,
        run: RunState | None = None,
        reuse_existing: bool = False,
    ) -> StageOutcome:
        """
        Run ``stage`` once and report a tagged outcome.

        With ``reuse_existing`` a complete stored artifact is returned as is
        and no remote call is made; an incomplete one (missing chapters,
        illustrations or cover types) is finished by a normal run.
        """
        stage = ProjectStage(stage)
        run = run or self.new_run()

        if stage is ProjectStage.COMPLETED:
            return StageRejected(stage, "The book is already complete; there is nothing to run.")

        try:
            project = await self._store.get_project(project_id)
        except NotFoundError as exc:
            return StageRejected(stage, exc.message, exc.code)

        if not can_run_stage(stage, completed_stages(project)):
            required = STAGE_DEPENDENCIES[stage]
            return StageRejected(
                stage,
                f"Stage {stage.value} requires {required.value} to be completed first "
                f"(current stage: {project.current_stage.value}).",
                details={"required_stage": required.value, "current_stage": project.current_stage.value},
            )

        existing = project.artifact(stage)
        if reuse_existing and existing:
            if self._is_reusable(project, stage, existing):
                return await self._reuse(project, stage, existing, run)
            logger.info("Stored %s artifact for %s is incomplete; running the stage.", stage.value, project.id)

        self._usage.seed_project(project.id, _latest_usage_snapshot(project))
        run.notify("stage:started", project_id=project.id, stage=stage.value)

        work = _StageWork(stage)
        try:
            await self._handlers[stage](project, work, run)
        except CancelledError as exc:
            logger.info("Stage %s for %s cancelled: %s", stage.value, project.id, exc.message)
            outcome: StageOutcome = StageCancelled(stage, exc.message, work.credits_charged)
            return await self._finish_unsuccessful(project, work, run, outcome)
        except BookStudioError as exc:
            if work.remote_calls == 0 and exc.code in {
                ErrorCode.VALIDATION_ERROR,
                ErrorCode.INSUFFICIENT_CREDITS,
            }:
                logger.warning("Stage %s for %s rejected: %s", stage.value, project.id, exc.message)
                outcome = StageRejected(stage, exc.message, exc.code, dict(exc.details))
            else:
                logger.error("Stage %s for %s failed: %s", stage.value, project.id, exc.message)
                outcome = StageFailed(stage, exc.message, exc.code, work.credits_charged)
            return await self._finish_unsuccessful(project, work, run, outcome)

        return await self._finish_successful(project, work, run)

    async def select_illustration_variant(
        self,
        project_id: str,
        chapter_number: int,
        variant_id: str,
    ) -> IllustrationItem:
        """Record a human choice among an illustration's variants."""
        project = await self._store.get_project(project_id)
        items = illustrations_from_artifact(project.artifact(ProjectStage.ILLUSTRATIONS))
        for item in items:
            if item.chapter_number == chapter_number:
                try:
                    item.select_variant(variant_id)
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
                content = dict(project.artifact(ProjectStage.ILLUSTRATIONS) or {})
                content.update(illustrations_to_artifact(items))
                await self._persist(project.id, ProjectStage.ILLUSTRATIONS, content, advance=False)
                return item
        raise NotFoundError(f"Chapter {chapter_number} has no illustration to select from.")

    # ------------------------------------------------------------------ completion

    def _is_reusable(self, project: Project, stage: ProjectStage, existing: Any) -> bool:
        """A stored artifact can stand in for a run only when nothing is left to generate."""
        if stage is ProjectStage.CHAPTERS:
            expected = len(_outline_chapters(project.artifact(ProjectStage.OUTLINE), strict=False))
            return expected > 0 and set(range(1, expected + 1)) <= _chapter_numbers(existing)
        wanted = _chapter_numbers(project.artifact(ProjectStage.CHAPTERS))
        if stage is ProjectStage.HUMANIZE:
            return bool(wanted) and wanted <= _chapter_numbers(existing)
        if stage is ProjectStage.ILLUSTRATIONS:
            illustrated = {item.chapter_number for item in illustrations_from_artifact(existing) if item.variants}
            return bool(wanted) and wanted <= illustrated
        if stage is ProjectStage.COVER:
            cover_types = {"front", "back"} if self._settings.include_back_cover else {"front"}
            stored_types = {
                item.cover_type
                for item in (CoverItem.from_mapping(entry) for entry in (existing or {}).get("items") or [])
                if item.variants
            }
            return cover_types <= stored_types
        return True

    async def _reuse(
        self,
        project: Project,
        stage: ProjectStage,
        existing: Any,
        run: RunState,
    ) -> StageOutcome:
        advance = project.current_stage is stage
        if advance:
            try:
                await self._persist(project.id, stage, existing, advance=True)
            except (StorageError, NotFoundError) as exc:
                return StageFailed(stage, exc.message, exc.code, artifact=existing)
        run.notify("stage:reused", project_id=project.id, stage=stage.value)
        return StageSucceeded(stage, existing, warnings=("Reused existing artifact.",))

    async def _finish_successful(self, project: Project, work: _StageWork, run: RunState) -> StageOutcome:
        stage = work.stage
        content = self._with_usage(project.id, work.content or {})
        advance = work.complete and project.current_stage is stage

        try:
            await self._persist(project.id, stage, content, advance=advance)
        except (StorageError, NotFoundError) as exc:
            run.notify("stage:failed", project_id=project.id, stage=stage.value, error=exc.message)
            return StageFailed(
                stage,
                exc.message,
                exc.code,
                work.credits_charged,
                artifact=content,
                needs_review=work.needs_review,
            )

        run.notify(
            "stage:completed",
            project_id=project.id,
            stage=stage.value,
            complete=work.complete,
            remaining=work.remaining,
            credits=work.credits_charged,
            needs_review=work.needs_review,
        )
        if work.needs_review:
            return StageNeedsReview(
                stage,
                content,
                raw_text=work.raw_text or "",
                error=work.review_error or "Output needs review.",
                credits_charged=work.credits_charged,
                complete=work.complete,
            )
        return StageSucceeded(
            stage,
            content,
            credits_charged=work.credits_charged,
            warnings=tuple(work.warnings),
            issues=tuple(work.issues),
            complete=work.complete,
            remaining=work.remaining,
        )

    async def _finish_unsuccessful(
        self,
        project: Project,
        work: _StageWork,
        run: RunState,
        outcome: StageOutcome,
    ) -> StageOutcome:
        """Keep partial work (finished chapters or illustrations) without moving the pointer."""
        event = "stage:cancelled" if isinstance(outcome, StageCancelled) else "stage:failed"
        if work.produced and work.content is not None:
            content = self._with_usage(project.id, work.content)
            try:
                await self._persist(project.id, work.stage, content, advance=False)
            except (StorageError, NotFoundError) as exc:
                run.notify(event, project_id=project.id, stage=work.stage.value, error=exc.message)
                return StageFailed(
                    work.stage,
                    exc.message,
                    exc.code,
                    work.credits_charged,
                    artifact=content,
                    needs_review=work.needs_review,
                )
        run.notify(event, project_id=project.id, stage=work.stage.value, outcome=type(outcome).__name__)
        return outcome

    def _with_usage(self, project_id: str, content: Mapping[str, Any]) -> dict[str, Any]:
        payload = dict(content)
        payload[USAGE_KEY] = self._usage.snapshot(project_id)
        return payload

    async def _persist(
        self,
        project_id: str,
        stage: ProjectStage,
        content: Any,
        *,
        advance: bool,
    ) -> Project:
        patch = ProjectPatch(
            current_stage=next_stage(stage) if advance else None,
            artifacts={stage.value: content},
        )
        return await persist_with_retry(
            self._store,
            project_id,
            patch,
            attempts=self._settings.persist_attempts,
            base_delay=self._settings.provider_base_delay_seconds,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------ shared call plumbing

    async def _ensure_credits(self, ai_stage: AIStage, calls: int) -> int:
        """Refuse the stage before any call when the balance cannot cover it."""
        needed = AI_TOKEN_BUDGETS[ai_stage].credit_cost * calls
        if needed <= 0:
            return 0
        balance = await self._ledger.get_balance(self._settings.account_id)
        if balance < needed:
            raise InsufficientCreditsError(
                f"Not enough credits for {ai_stage.value}: need {needed}, have {balance}.",
                details={"stage": ai_stage.value, "required": needed, "balance": balance},
            )
        return needed

    async def _charge(
        self,
        project: Project,
        work: _StageWork,
        run: RunState,
        ai_stage: AIStage,
        item: str,
        variant: int = 0,
    ) -> None:
        cost = AI_TOKEN_BUDGETS[ai_stage].credit_cost
        if cost <= 0:
            return
        attempt_id = f"{run.run_id}:{ai_stage.value}:{item}:{variant}"
        result = await self._ledger.deduct_credits(self._settings.account_id, cost, attempt_id)
        if not result.ok:
            raise InsufficientCreditsError(
                f"Not enough credits to pay for {ai_stage.value} ({cost} needed, {result.balance} left).",
                details={"stage": ai_stage.value, "attempt_id": attempt_id, "balance": result.balance},
            )
        if not result.duplicate:
            work.credits_charged += cost
            self._usage.add_credits(project.id, ai_stage.value, cost)

    def _before_call_hook(self, work: _StageWork, run: RunState) -> Callable[[AIStage, str], None]:
        def before_call(ai_stage: AIStage, prompt: str) -> None:
            run.ceiling.charge(call_token_requirement(ai_stage, prompt), stage=ai_stage)
            work.remote_calls += 1

        return before_call

    async def _structured_call(
        self,
        project: Project,
        work: _StageWork,
        run: RunState,
        ai_stage: AIStage,
        schema: OutputSchema[Any],
        prompt: TextPrompt,
        *,
        item: str,
    ) -> StructuredCallResult[Any]:
        async def on_generation(call_stage: AIStage, generation: TextGeneration) -> None:
            await self._charge(project, work, run, call_stage, item)

        call: StructuredCall[Any] = StructuredCall(stage=ai_stage, schema=schema)
        result = await call.run(
            _MeteredTextGenerator(self._text, self._usage, project.id),  # type: ignore[arg-type]
            prompt,
            cancel_token=run.cancel_token,
            before_call=self._before_call_hook(work, run),
            on_generation=on_generation,
        )
        if result.needs_review:
            work.raw_text = result.raw_text
            work.review_error = result.error
        return result

    async def _generate_variant(
        self,
        project: Project,
        work: _StageWork,
        run: RunState,
        *,
        ai_stage: AIStage,
        prompt: ImagePrompt,
        directives: ReferenceDirectives,
        seed: int,
        width: int,
        height: int,
        item: str,
        variant_index: int,
    ) -> IllustrationVariant:
        run.cancel_token.raise_if_cancelled()
        self._before_call_hook(work, run)(ai_stage, prompt.positive)

        request = ImageGenerationRequest(
            prompt=prompt.positive,
            negative_prompt=prompt.negative,
            width=width,
            height=height,
            seed=seed,
            references=directives.references,
            reference_strength=directives.reference_strength,
            stage=ai_stage,
        )
        started = time.perf_counter()
        try:
            generation = await self._images.generate_image(request)
        except BookStudioError:
            self._usage.record(
                UsageRecord(
                    project_id=project.id,
                    stage=ai_stage.value,
                    provider=self._images.provider_name,
                    processing_time_ms=int((time.perf_counter() - started) * 1000),
                    success=False,
                )
            )
            raise
        self._usage.record(
            UsageRecord(
                project_id=project.id,
                stage=ai_stage.value,
                provider=generation.provider,
                processing_time_ms=generation.processing_time_ms,
            )
        )

        # Results that land after cancellation are discarded and never charged.
        run.cancel_token.raise_if_cancelled()
        await self._charge(project, work, run, ai_stage, item, variant_index)
        return IllustrationVariant(
            image_url=generation.image_url,
            seed=generation.seed,
            provider=generation.provider,
            processing_time_ms=generation.processing_time_ms,
        )

    async def _generate_variants(
        self,
        project: Project,
        work: _StageWork,
        run: RunState,
        *,
        ai_stage: AIStage,
        prompt: ImagePrompt,
        directives: ReferenceDirectives,
        chain: ConsistencyChain,
        count: int,
        width: int,
        height: int,
        item: str,
    ) -> tuple[list[IllustrationVariant], list[str]]:
        """
        Sequential variant loop; a failed variant is skipped unless all fail.
        """
        variants: list[IllustrationVariant] = []
        errors: list[str] = []
        for index in range(count):
            run.notify(
                "illustration:variant",
                project_id=project.id,
                stage=ai_stage.value,
                item=item,
                variant_index=index,
                variant_count=count,
            )
            try:
                variant = await self._generate_variant(
                    project,
                    work,
                    run,
                    ai_stage=ai_stage,
                    prompt=prompt,
                    directives=directives,
                    seed=chain.seed_for_variant(index),
                    width=width,
                    height=height,
                    item=item,
                    variant_index=index,
                )
            except _TOLERATED_VARIANT_ERRORS as exc:
                logger.exception("Variant %s of %s failed; continuing with the rest.", index + 1, item)
                errors.append(f"Variant {index + 1}: {exc}")
                continue
            variants.append(variant)

        if not variants:
            raise AIServiceError(
                f"All {count} image variants failed for {item}.",
                details={"item": item, "errors": errors},
            )
        return variants, errors

    async def _load_inputs(self, project: Project) -> tuple[list[Character], KnowledgeBaseSummary | None]:
        characters = await self._store.get_characters(project.id)
        kb_summary = await self._store.get_kb_summary(project.id)
        return characters, kb_summary

    # ------------------------------------------------------------------ text stages

    async def _run_outline(self, project: Project, work: _StageWork, run: RunState) -> None:
        characters, kb_summary = await self._load_inputs(project)
        context = build_stage_context(AIStage.OUTLINE, project, characters, kb_summary)
        prompt = build_outline_prompt(context, project)

        require_within_budget(AIStage.OUTLINE, prompt.user)
        run.ceiling.ensure_room(call_token_requirement(AIStage.OUTLINE, prompt.user), stage=AIStage.OUTLINE)
        await self._ensure_credits(AIStage.OUTLINE, 1)

        run.notify("outline:generating", project_id=project.id)
        result = await self._structured_call(
            project, work, run, AIStage.OUTLINE, OUTLINE_OUTPUT, prompt, item="outline"
        )
        if result.needs_review:
            work.content = dict(mark_needs_review({}, result.raw_text))
        else:
            work.content = result.data.to_dict()
            work.content[NEEDS_REVIEW_KEY] = False
        work.produced = 1

    async def _run_chapters(self, project: Project, work: _StageWork, run: RunState) -> None:
        outline = project.artifact(ProjectStage.OUTLINE)
        outline_chapters = _outline_chapters(outline)

        chapters = {int(entry["chapter_number"]): entry for entry in chapters_from_artifact(project.artifact(ProjectStage.CHAPTERS))}
        missing = [number for number in range(1, len(outline_chapters) + 1) if number not in chapters]
        batch = missing[: GLOBAL_LIMITS.max_chapters_per_run]
        work.remaining = len(missing) - len(batch)
        work.complete = work.remaining == 0
        work.content = _chapters_content(chapters)
        if not batch:
            return

        characters, kb_summary = await self._load_inputs(project)
        context = build_stage_context(AIStage.CHAPTERS, project, characters, kb_summary)

        def brief_for(number: int) -> ChapterBrief:
            entry = outline_chapters[number - 1]
            previous = chapters.get(number - 1)
            summary = None
            if previous is not None:
                summary = summarize_chapter(
                    number - 1, str(previous.get("chapter_title", "")), chapter_text(previous)
                )
            return ChapterBrief(
                chapter_number=number,
                title=str(entry.get("title", f"Chapter {number}")),
                goal=str(entry.get("goal", "")),
                key_scene=str(entry.get("key_scene", "")),
                dua_or_ayah_hint=str(entry.get("dua_or_ayah_hint") or "None"),
                previous_chapter_summary=summary,
            )

        first_prompt = build_chapter_prompt(context, project, brief_for(batch[0]))
        require_within_budget(AIStage.CHAPTERS, first_prompt.user)
        run.ceiling.ensure_room(
            len(batch) * call_token_requirement(AIStage.CHAPTERS, first_prompt.user),
            stage=AIStage.CHAPTERS,
        )
        await self._ensure_credits(AIStage.CHAPTERS, len(batch))

        for number in batch:
            brief = brief_for(number)
            prompt = first_prompt if number == batch[0] else build_chapter_prompt(context, project, brief)
            require_within_budget(AIStage.CHAPTERS, prompt.user)

            run.notify(
                "chapter:generating",
                project_id=project.id,
                chapter_number=number,
                total_chapters=len(outline_chapters),
            )
            result = await self._structured_call(
                project, work, run, AIStage.CHAPTERS, CHAPTER_OUTPUT, prompt, item=f"chapter-{number}"
            )
            if result.needs_review:
                entry = dict(
                    mark_needs_review({"chapter_number": number, "chapter_title": brief.title}, result.raw_text)
                )
            else:
                entry = result.data.to_dict()
                entry["chapter_number"] = number
            chapters[number] = entry
            work.produced += 1
            work.content = _chapters_content(chapters)
            run.notify("chapter:completed", project_id=project.id, chapter_number=number)

    async def _run_humanize(self, project: Project, work: _StageWork, run: RunState) -> None:
        chapters = chapters_from_artifact(project.artifact(ProjectStage.CHAPTERS))
        if not chapters:
            raise ValidationError("No chapters to humanize.")

        edited = {
            int(entry["chapter_number"]): entry
            for entry in chapters_from_artifact(project.artifact(ProjectStage.HUMANIZE))
        }
        pending = [chapter for chapter in chapters if int(chapter["chapter_number"]) not in edited]
        work.content = _chapters_content(edited)
        if not pending:
            return

        characters, kb_summary = await self._load_inputs(project)
        context = build_stage_context(AIStage.HUMANIZE, project, characters, kb_summary)
        prompts = [
            build_humanize_prompt(
                context,
                chapter_number=int(chapter["chapter_number"]),
                chapter_text=chapter_text(chapter),
            )
            for chapter in pending
        ]
        for prompt in prompts:
            require_within_budget(AIStage.HUMANIZE, prompt.user)
        run.ceiling.ensure_room(
            sum(call_token_requirement(AIStage.HUMANIZE, prompt.user) for prompt in prompts),
            stage=AIStage.HUMANIZE,
        )
        await self._ensure_credits(AIStage.HUMANIZE, len(pending))

        for chapter, prompt in zip(pending, prompts):
            number = int(chapter["chapter_number"])
            run.notify("humanize:generating", project_id=project.id, chapter_number=number)
            result = await self._structured_call(
                project, work, run, AIStage.HUMANIZE, HUMANIZE_OUTPUT, prompt, item=f"chapter-{number}"
            )
            if result.needs_review:
                entry = dict(
                    mark_needs_review(
                        {
                            "chapter_number": number,
                            "chapter_title": chapter.get("chapter_title", ""),
                            "text": chapter_text(chapter),
                        },
                        result.raw_text,
                    )
                )
            else:
                entry = result.data.to_dict()
                entry["chapter_number"] = number
            edited[number] = entry
            work.produced += 1
            work.content = _chapters_content(edited)

    # ------------------------------------------------------------------ image stages

    def _consistency_config(self) -> ConsistencyConfig:
        return ConsistencyConfig(
            locked_seed=self._settings.locked_seed,
            vary_seed_per_variant=self._settings.vary_seed_per_variant,
        )

    async def _run_illustrations(self, project: Project, work: _StageWork, run: RunState) -> None:
        chapters = chapters_from_artifact(project.artifact(ProjectStage.CHAPTERS))
        if not chapters:
            raise ValidationError("No chapters to illustrate.")
        key_scenes = {
            index: str(entry.get("key_scene") or "")
            for index, entry in enumerate(_outline_chapters(project.artifact(ProjectStage.OUTLINE), strict=False), start=1)
        }

        items = {item.chapter_number: item for item in illustrations_from_artifact(project.artifact(ProjectStage.ILLUSTRATIONS))}
        pending = [
            chapter
            for chapter in chapters
            if not (items.get(int(chapter["chapter_number"])) and items[int(chapter["chapter_number"])].variants)
        ]
        batch = pending[: GLOBAL_LIMITS.max_illustrations_per_run]
        work.remaining = len(pending) - len(batch)
        work.complete = work.remaining == 0

        chain = ConsistencyChain(project=project, existing=list(items.values()), config=self._consistency_config())
        work.content = _illustrations_content(items, chain)
        if batch:
            self._images.ensure_supported_model()
            variant_count = _clamp(self._settings.variants_per_illustration, IMAGE_LIMITS.illustrations)
            characters, kb_summary = await self._load_inputs(project)

            planned: list[tuple[int, str, ImagePrompt]] = []
            for chapter in batch:
                number = int(chapter["chapter_number"])
                scene = derive_scene_description(
                    chapter_number=number,
                    chapter_title=str(chapter.get("chapter_title", "")),
                    chapter_text=chapter_text(chapter),
                    key_scene=key_scenes.get(number),
                )
                prompt = build_illustration_prompt(
                    project=project,
                    scene_description=scene.scene_description,
                    characters=characters,
                    kb_summary=kb_summary,
                )
                require_within_budget(AIStage.ILLUSTRATIONS, prompt.positive)
                planned.append((number, scene.scene_description, prompt))

            run.ceiling.ensure_room(
                sum(call_token_requirement(AIStage.ILLUSTRATIONS, p.positive) for _, _, p in planned)
                * variant_count,
                stage=AIStage.ILLUSTRATIONS,
            )
            await self._ensure_credits(AIStage.ILLUSTRATIONS, len(planned) * variant_count)

            for number, scene_description, prompt in planned:
                directives = chain.directives_for_chapter(number, prompt.references)
                run.notify(
                    "illustration:generating",
                    project_id=project.id,
                    chapter_number=number,
                    variant_count=variant_count,
                    reference_strength=directives.reference_strength,
                )
                variants, errors = await self._generate_variants(
                    project,
                    work,
                    run,
                    ai_stage=AIStage.ILLUSTRATIONS,
                    prompt=prompt,
                    directives=directives,
                    chain=chain,
                    count=variant_count,
                    width=project.illustration_width,
                    height=project.illustration_height,
                    item=f"chapter-{number}",
                )
                item = IllustrationItem(
                    chapter_number=number,
                    scene_description=scene_description,
                    variants=variants,
                    references=directives.references,
                    reference_strength=directives.reference_strength,
                    errors=tuple(errors),
                )
                item.select_variant(variants[0].id)
                items[number] = item
                chain.record(item)
                work.produced += 1
                work.content = _illustrations_content(items, chain)
                run.notify("illustration:completed", project_id=project.id, chapter_number=number)

        if work.complete:
            ordered = [items[number] for number in sorted(items)]
            report = validate_consistency_setup(ordered)
            work.issues.extend(report.issues)
            work.warnings.extend(report.warnings)
            logger.debug("Illustration consistency for %s:\n%s", project.id, create_diagnostic_report(ordered))

    async def _run_cover(self, project: Project, work: _StageWork, run: RunState) -> None:
        cover_types = ["front", "back"] if self._settings.include_back_cover else ["front"]
        covers = {
            item.cover_type: item
            for item in (CoverItem.from_mapping(entry) for entry in (project.artifact(ProjectStage.COVER) or {}).get("items") or [])
            if item.variants
        }
        pending = [cover_type for cover_type in cover_types if cover_type not in covers]
        work.content = _covers_content(covers)
        if not pending:
            return

        self._images.ensure_supported_model()
        outline = project.artifact(ProjectStage.OUTLINE) or {}
        illustrations = illustrations_from_artifact(project.artifact(ProjectStage.ILLUSTRATIONS))
        chain = ConsistencyChain(project=project, existing=illustrations, config=self._consistency_config())
        characters, kb_summary = await self._load_inputs(project)
        variant_count = _clamp(self._settings.cover_variants, IMAGE_LIMITS.cover)

        prompts = {
            cover_type: build_cover_prompt(
                project=project,
                characters=characters,
                kb_summary=kb_summary,
                cover_type=cover_type,
                moral=outline.get("moral") or None,
            )
            for cover_type in pending
        }
        for prompt in prompts.values():
            require_within_budget(AIStage.COVER, prompt.positive)
        run.ceiling.ensure_room(
            sum(call_token_requirement(AIStage.COVER, p.positive) for p in prompts.values()) * variant_count,
            stage=AIStage.COVER,
        )
        await self._ensure_credits(AIStage.COVER, len(pending) * variant_count)

        for cover_type, prompt in prompts.items():
            directives = chain.directives_for_cover(prompt.references)
            run.notify("cover:generating", project_id=project.id, cover_type=cover_type)
            variants, _ = await self._generate_variants(
                project,
                work,
                run,
                ai_stage=AIStage.COVER,
                prompt=prompt,
                directives=directives,
                chain=chain,
                count=variant_count,
                width=project.cover_width,
                height=project.cover_height,
                item=f"cover-{cover_type}",
            )
            cover = CoverItem(
                cover_type=cover_type,
                variants=variants,
                references=directives.references,
                reference_strength=directives.reference_strength,
                selected_variant_id=variants[0].id,
                image_url=variants[0].image_url,
            )
            covers[cover_type] = cover
            work.produced += 1
            work.content = _covers_content(covers)

    # ------------------------------------------------------------------ layout and export

    async def _run_layout(self, project: Project, work: _StageWork, run: RunState) -> None:
        chapters = chapters_from_artifact(project.artifact(ProjectStage.CHAPTERS))
        if not chapters:
            raise ValidationError("No chapters to lay out.")
        humanized = {
            int(entry["chapter_number"]): entry
            for entry in chapters_from_artifact(project.artifact(ProjectStage.HUMANIZE))
        }
        illustrations = illustrations_from_artifact(project.artifact(ProjectStage.ILLUSTRATIONS))

        layout_chapters = []
        for chapter in chapters:
            number = int(chapter["chapter_number"])
            source = humanized.get(number, chapter)
            if needs_review(source):
                work.warnings.append(f"Chapter {number} text still needs review.")
            layout_chapters.append(
                LayoutChapter(
                    chapter_number=number,
                    title=str(source.get("chapter_title") or chapter.get("chapter_title") or f"Chapter {number}"),
                    text=chapter_text(source),
                )
            )

        urls = {item.chapter_number: item.selected_image_url for item in illustrations if item.selected_image_url}
        for chapter in layout_chapters:
            if chapter.chapter_number not in urls:
                work.warnings.append(f"Chapter {chapter.chapter_number} has no illustration.")

        run.notify("layout:composing", project_id=project.id, chapters=len(layout_chapters))
        layout = compose_book_layout(
            chapters=layout_chapters,
            illustration_urls=urls,
            trim_size=project.trim_size,
            project_title=project.title,
            author_name=project.author_name,
        )
        work.content = layout.to_dict()
        work.produced = 1

    async def _run_export(self, project: Project, work: _StageWork, run: RunState) -> None:
        if self._exporter is None:
            raise ValidationError("No exporter is configured for this pipeline.")

        bundle = self._export_bundle(project)
        run.cancel_token.raise_if_cancelled("Export")
        run.notify("export:rendering", project_id=project.id)
        try:
            files = await self._exporter.export(bundle)
        except OSError as exc:
            raise StorageError(f"Export failed: {exc}") from exc

        work.content = {"files": [exported.to_dict() for exported in files], "exported_at": utc_timestamp()}
        work.produced = 1
        run.notify("export:completed", project_id=project.id, files=[f.path for f in files])

    def _export_bundle(self, project: Project) -> ExportBundle:
        """Check the artifact set is complete and hand it over as one bundle."""
        problems: list[str] = []
        outline_chapters = _outline_chapters(project.artifact(ProjectStage.OUTLINE), strict=False)
        chapters = chapters_from_artifact(project.artifact(ProjectStage.CHAPTERS))
        numbers = {int(chapter["chapter_number"]) for chapter in chapters}
        expected = set(range(1, len(outline_chapters) + 1)) or numbers
        if not chapters:
            problems.append("chapters are missing")
        elif expected - numbers:
            problems.append(f"chapters {sorted(expected - numbers)} are missing")

        illustrated = {
            item.chapter_number
            for item in illustrations_from_artifact(project.artifact(ProjectStage.ILLUSTRATIONS))
            if item.selected_image_url
        }
        if numbers - illustrated:
            problems.append(f"illustrations for chapters {sorted(numbers - illustrated)} are missing")

        layout_content = project.artifact(ProjectStage.LAYOUT)
        layout = None
        if not layout_content:
            problems.append("layout is missing")
        else:
            try:
                layout = LayoutArtifact.from_mapping(layout_content)
            except (KeyError, TypeError, ValueError) as exc:
                problems.append(f"layout is invalid ({exc})")

        covers = {
            item.cover_type: item
            for item in (CoverItem.from_mapping(entry) for entry in (project.artifact(ProjectStage.COVER) or {}).get("items") or [])
        }
        front = covers.get("front")
        if front is None or not front.image_url:
            problems.append("front cover is missing")

        if problems or layout is None:
            raise ValidationError(
                "Cannot export an incomplete book: " + "; ".join(problems) + ".",
                details={"problems": problems},
            )

        back = covers.get("back")
        return ExportBundle(
            project_id=project.id,
            title=project.title,
            layout=layout,
            front_cover_url=front.image_url if front else None,
            back_cover_url=back.image_url if back else None,
        )


# ------------------------------------------------------------------ helpers


def _clamp(requested: int, upper: int) -> int:
    return max(1, min(requested, upper))


def _outline_chapters(outline: Mapping[str, Any] | None, *, strict: bool = True) -> list[Mapping[str, Any]]:
    if not outline or needs_review(outline) or not outline.get("chapters"):
        if strict:
            raise ValidationError(
                "A parsed outline is required; fix the outline marked for review and retry.",
                details={"stage": ProjectStage.OUTLINE.value},
            )
        return []
    return list(outline["chapters"])


def _chapter_numbers(content: Mapping[str, Any] | None) -> set[int]:
    return {int(entry["chapter_number"]) for entry in chapters_from_artifact(content)}


def _chapters_content(chapters: Mapping[int, Mapping[str, Any]]) -> dict[str, Any]:
    ordered = [dict(chapters[number]) for number in sorted(chapters)]
    return {
        "chapters": ordered,
        NEEDS_REVIEW_KEY: any(needs_review(chapter) for chapter in ordered),
    }


def _illustrations_content(items: Mapping[int, IllustrationItem], chain: ConsistencyChain) -> dict[str, Any]:
    content = illustrations_to_artifact(list(items.values()))
    content["global_seed"] = chain.base_seed
    content["consistency_reference"] = chain.consistency_reference
    return content


def _covers_content(covers: Mapping[str, CoverItem]) -> dict[str, Any]:
    order = {"front": 0, "back": 1}
    ordered = sorted(covers.values(), key=lambda cover: order.get(cover.cover_type, 2))
    return {"items": [cover.to_dict() for cover in ordered]}


def _latest_usage_snapshot(project: Project) -> Mapping[str, Any] | None:
    snapshots: Sequence[Mapping[str, Any]] = [
        content[USAGE_KEY]
        for content in project.artifacts.values()
        if isinstance(content, Mapping) and isinstance(content.get(USAGE_KEY), Mapping)
    ]
    if not snapshots:
        return None
    return max(snapshots, key=lambda snapshot: str(snapshot.get("updated_at") or ""))
