"""
Drives a book through every stage, one project run at a time.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from bookstudio.ai_generation import ReplicateImageGenerator, TextGenerator
from bookstudio.common import CancelToken, CompletionCallable, PipelineSettings
from bookstudio.common.errors import NotFoundError, ProjectBusyError
from bookstudio.common.stages import ProjectStage
from bookstudio.pdf_generation import BookExporter

from .outcomes import StageFailed, StageNeedsReview, StageOutcome, StageRejected, StageSucceeded
from .stage_runner import ProgressCallback, RunState, StageRunner
from .store import ProjectStore
from .usage import CreditLedger, UsageLedger

logger = logging.getLogger(__name__)

# Upper bound on stage invocations in one book run; batched stages re-run until complete.
DEFAULT_MAX_INVOCATIONS = 32


@dataclass
class PipelineReport:
    """Every outcome of one book run, in invocation order."""

    project_id: str
    run_id: str
    outcomes: list[StageOutcome] = field(default_factory=list)
    final_stage: ProjectStage | None = None

    @property
    def ok(self) -> bool:
        return bool(self.outcomes) and all(outcome.ok for outcome in self.outcomes)

    @property
    def completed(self) -> bool:
        return self.final_stage is ProjectStage.COMPLETED

    @property
    def last_outcome(self) -> StageOutcome | None:
        return self.outcomes[-1] if self.outcomes else None

    @property
    def credits_charged(self) -> int:
        return sum(getattr(outcome, "credits_charged", 0) for outcome in self.outcomes)

    @property
    def needs_review(self) -> list[ProjectStage]:
        return [outcome.stage for outcome in self.outcomes if isinstance(outcome, StageNeedsReview)]


class BookPipeline:
    """
    High-level coordinator that chains the stage runner across a whole book.

    A project may only have one run in flight; a second concurrent request for
    the same project fails fast with ``PROJECT_BUSY``.
    """

    def __init__(
        self,
        *,
        runner: StageRunner,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        self._runner = runner
        self._progress_callback = progress_callback
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(
        cls,
        *,
        store: ProjectStore,
        credit_ledger: CreditLedger,
        settings: PipelineSettings | None = None,
        exporter: BookExporter | None = None,
        usage_ledger: UsageLedger | None = None,
        completion_fn: CompletionCallable | None = None,
        text_generator: TextGenerator | None = None,
        image_generator: ReplicateImageGenerator | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> "BookPipeline":
        """
        Build the provider clients from ``settings`` and wire a stage runner.
        """
        settings = settings or PipelineSettings.from_env()
        problems = settings.validate()
        if problems:
            raise ValueError("Invalid pipeline settings: " + "; ".join(problems))

        text_generator = text_generator or TextGenerator(
            model=settings.text_model,
            completion_fn=completion_fn,
            retry_policy=settings.text_retry_policy(),
            temperature=settings.temperature,
        )
        image_generator = image_generator or ReplicateImageGenerator(
            model_identifier=settings.image_model,
            retry_policy=settings.image_retry_policy(),
        )
        runner = StageRunner(
            store=store,
            text_generator=text_generator,
            image_generator=image_generator,
            credit_ledger=credit_ledger,
            usage_ledger=usage_ledger,
            settings=settings,
            exporter=exporter,
        )
        return cls(runner=runner, progress_callback=progress_callback)

    @property
    def runner(self) -> StageRunner:
        return self._runner

    def is_running(self, project_id: str) -> bool:
        lock = self._locks.get(project_id)
        return lock is not None and lock.locked()

    async def _acquire(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        if lock.locked():
            raise ProjectBusyError(
                f"Project {project_id} already has a pipeline run in progress.",
                details={"project_id": project_id},
            )
        await lock.acquire()
        return lock

    def _new_run(
        self,
        cancel_token: CancelToken | None,
        progress_callback: ProgressCallback | None,
    ) -> RunState:
        return self._runner.new_run(
            cancel_token=cancel_token,
            progress=progress_callback or self._progress_callback,
        )

    async def run_stage(
        self,
        project_id: str,
        stage: ProjectStage | str,
        *,
        cancel_token: CancelToken | None = None,
        reuse_existing: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> StageOutcome:
        """Run a single stage under the project's run lock."""
        stage = ProjectStage(stage)
        try:
            lock = await self._acquire(project_id)
        except ProjectBusyError as exc:
            logger.warning(exc.message)
            return StageFailed(stage, exc.message, exc.code)
        try:
            run = self._new_run(cancel_token, progress_callback)
            return await self._runner.run_stage(project_id, stage, run=run, reuse_existing=reuse_existing)
        finally:
            lock.release()

    async def run_book(
        self,
        project_id: str,
        *,
        cancel_token: CancelToken | None = None,
        stop_after: ProjectStage | str | None = None,
        reuse_existing: bool = False,
        max_invocations: int = DEFAULT_MAX_INVOCATIONS,
        progress_callback: ProgressCallback | None = None,
    ) -> PipelineReport:
        """
        Run stages from the project's current stage until the book is
        complete, a stage does not succeed, or ``stop_after`` has completed.

        Batched stages (chapters, illustrations) are invoked repeatedly until
        they report completion. All invocations share one token ceiling.
        """
        stop = ProjectStage(stop_after) if stop_after is not None else None
        run = self._new_run(cancel_token, progress_callback)
        report = PipelineReport(project_id=project_id, run_id=run.run_id)

        try:
            lock = await self._acquire(project_id)
        except ProjectBusyError as exc:
            logger.warning(exc.message)
            report.outcomes.append(StageFailed(ProjectStage.OUTLINE, exc.message, exc.code))
            return report

        try:
            run.notify("pipeline:started", project_id=project_id, run_id=run.run_id)
            for _ in range(max_invocations):
                try:
                    project = await self._runner.store.get_project(project_id)
                except NotFoundError as exc:
                    report.outcomes.append(StageRejected(ProjectStage.OUTLINE, exc.message, exc.code))
                    break

                stage = project.current_stage
                report.final_stage = stage
                if stage is ProjectStage.COMPLETED:
                    break

                outcome = await self._runner.run_stage(project_id, stage, run=run, reuse_existing=reuse_existing)
                report.outcomes.append(outcome)
                if not outcome.ok:
                    break
                if stop is not None and stage is stop and _is_complete(outcome):
                    break
            else:
                logger.warning("Project %s did not finish within %s stage invocations.", project_id, max_invocations)

            last = report.last_outcome
            if last is not None and last.ok:
                report.final_stage = (await self._runner.store.get_project(project_id)).current_stage

            run.notify(
                "pipeline:complete" if report.completed else "pipeline:stopped",
                project_id=project_id,
                final_stage=report.final_stage.value if report.final_stage else None,
                credits=report.credits_charged,
                usage=self._runner.usage.snapshot(project_id),
            )
            return report
        finally:
            lock.release()

    async def select_illustration_variant(self, project_id: str, chapter_number: int, variant_id: str) -> None:
        lock = await self._acquire(project_id)
        try:
            await self._runner.select_illustration_variant(project_id, chapter_number, variant_id)
        finally:
            lock.release()


def _is_complete(outcome: StageOutcome) -> bool:
    if isinstance(outcome, (StageSucceeded, StageNeedsReview)):
        return outcome.complete
    return False


def load_mapping_file(path: Path | str) -> Mapping[str, Any]:
    """Load a YAML or JSON file that must deserialize to a mapping."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in {".yaml", ".yml", ".json"}:
        raise ValueError("Unsupported project file format. Use YAML or JSON.")
    text = path.read_text(encoding="utf-8")
    data = json.loads(text) if suffix == ".json" else yaml.safe_load(text)
    if not isinstance(data, Mapping):
        raise ValueError(f"{path} must deserialize to a mapping.")
    return data
