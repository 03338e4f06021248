"""
CLI to run the book pipeline for one project file.

Usage:
    python scripts/run_full_pipeline.py \
        --project sample_projects/little_helper.yaml \
        --workdir book_projects \
        --output-dir exports
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Any, Dict

from tqdm.auto import tqdm

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from bookstudio import (  # noqa: E402
    BookPipeline,
    CancelToken,
    InMemoryCreditLedger,
    PDFExporter,
    PipelineSettings,
    ProjectStage,
    YamlProjectStore,
)
from bookstudio.common.budget import estimate_run_credits  # noqa: E402
from bookstudio.pipeline import (  # noqa: E402
    IllustrationItem,
    PipelineReport,
    StageCancelled,
    StageFailed,
    StageNeedsReview,
    StageRejected,
    StageSucceeded,
    create_diagnostic_report,
    load_mapping_file,
)
from bookstudio.story_generation import Project  # noqa: E402
from bookstudio.story_generation.prompting import OUTLINE_CHAPTER_COUNT  # noqa: E402

STAGE_COUNT = len(ProjectStage) - 1


class ProgressTracker:
    """
    Command-line progress updates for the book pipeline.
    """

    def __init__(self) -> None:
        self._variant_bar: tqdm | None = None

    def __call__(self, stage: str, payload: Dict[str, Any]) -> None:
        match stage:
            case "pipeline:started":
                self._write(f"Starting run {payload.get('run_id')} for {payload.get('project_id')}.")
            case "stage:started":
                name = payload.get("stage", "")
                position = _stage_position(name)
                self._write(f"[{position}/{STAGE_COUNT}] Running {name}...")
            case "stage:reused":
                self._write(f"  Reusing the stored {payload.get('stage')} artifact.")
            case "outline:generating":
                self._write("  Drafting the outline...")
            case "chapter:generating":
                self._write(
                    f"  Writing chapter {payload.get('chapter_number')}"
                    f" of {payload.get('total_chapters')}..."
                )
            case "humanize:generating":
                self._write(f"  Polishing chapter {payload.get('chapter_number')}...")
            case "illustration:generating" | "cover:generating":
                self.close()
                label = (
                    f"Chapter {payload.get('chapter_number')}"
                    if stage.startswith("illustration")
                    else f"{str(payload.get('cover_type', '')).title()} cover"
                )
                self._variant_bar = tqdm(
                    total=payload.get("variant_count") or None,
                    desc=label,
                    unit="variant",
                )
            case "illustration:variant":
                if self._variant_bar is not None:
                    if self._variant_bar.total is None:
                        self._variant_bar.total = payload.get("variant_count")
                    self._variant_bar.update(1)
            case "illustration:completed":
                self.close()
            case "layout:composing":
                self._write(f"  Flowing {payload.get('chapters')} chapters into pages...")
            case "export:completed":
                for path in payload.get("files") or []:
                    self._write(f"  Wrote {path}")
            case "stage:completed":
                self.close()
                suffix = "" if payload.get("complete", True) else f" ({payload.get('remaining')} remaining)"
                review = " - needs review" if payload.get("needs_review") else ""
                self._write(
                    f"  {payload.get('stage')} done, {payload.get('credits', 0)} credits{suffix}{review}."
                )
            case "stage:failed" | "stage:cancelled":
                self.close()
                self._write(f"  {payload.get('stage')} stopped: {payload.get('error') or payload.get('outcome')}")
            case "pipeline:complete":
                self._write(f"Book complete. {payload.get('credits', 0)} credits charged in this run.")
            case "pipeline:stopped":
                self._write(f"Run stopped at {payload.get('final_stage')}.")

    def close(self) -> None:
        if self._variant_bar is not None:
            self._variant_bar.close()
            self._variant_bar = None

    @staticmethod
    def _write(message: str) -> None:
        tqdm.write(message)


def _stage_position(name: str) -> int:
    try:
        return list(ProjectStage).index(ProjectStage(name)) + 1
    except ValueError:
        return 0


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the book generation pipeline for a project.")
    parser.add_argument(
        "--project",
        required=True,
        help="Path to a project YAML/JSON file (project fields plus optional "
        "'characters' and 'knowledge_base').",
    )
    parser.add_argument(
        "--workdir",
        default="book_projects",
        help="Directory holding the per-project YAML store (default: book_projects).",
    )
    parser.add_argument(
        "--output-dir",
        default="exports",
        help="Directory for exported PDFs (default: exports).",
    )
    parser.add_argument(
        "--stage",
        choices=[stage.value for stage in ProjectStage if stage is not ProjectStage.COMPLETED],
        default=None,
        help="Run a single stage instead of the whole book.",
    )
    parser.add_argument(
        "--until",
        choices=[stage.value for stage in ProjectStage if stage is not ProjectStage.COMPLETED],
        default=None,
        help="Stop once this stage has completed.",
    )
    parser.add_argument(
        "--credits",
        type=int,
        default=None,
        help="Starting credit balance (default: the estimated cost of a full run).",
    )
    parser.add_argument(
        "--variants",
        type=int,
        default=None,
        help="Variants per illustration (clamped to 1-4).",
    )
    parser.add_argument(
        "--cover-variants",
        type=int,
        default=None,
        help="Variants per cover (clamped to 1-2).",
    )
    parser.add_argument(
        "--back-cover",
        action="store_true",
        help="Also generate a back cover.",
    )
    parser.add_argument(
        "--reuse",
        action="store_true",
        help="Reuse stored artifacts instead of regenerating them.",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Overwrite the stored project with the input file, discarding its artifacts.",
    )
    parser.add_argument(
        "--report",
        default=None,
        help="Optional path for the illustration consistency report.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args()


def build_settings(args: argparse.Namespace) -> PipelineSettings:
    settings = PipelineSettings.from_env()
    overrides: dict[str, Any] = {}
    if args.variants is not None:
        overrides["variants_per_illustration"] = args.variants
    if args.cover_variants is not None:
        overrides["cover_variants"] = args.cover_variants
    if args.back_cover:
        overrides["include_back_cover"] = True
    return dataclasses.replace(settings, **overrides) if overrides else settings


def prepare_store(args: argparse.Namespace) -> tuple[YamlProjectStore, Project]:
    data = load_mapping_file(args.project)
    project = Project.from_mapping(data)
    store = YamlProjectStore(args.workdir)
    if args.reset or not store.path_for(project.id).exists():
        extra: dict[str, Any] = {"characters": list(data.get("characters") or [])}
        if data.get("knowledge_base"):
            extra["knowledge_base"] = data["knowledge_base"]
        store.save_project(project, **extra)
        tqdm.write(f"Stored project {project.id} in {store.path_for(project.id)}")
    return store, project


def print_report(report: PipelineReport) -> None:
    for outcome in report.outcomes:
        match outcome:
            case StageSucceeded():
                status = "ok" if outcome.complete else f"partial ({outcome.remaining} remaining)"
                tqdm.write(f"  {outcome.stage.value:<14} {status}, {outcome.credits_charged} credits")
                for issue in outcome.issues:
                    tqdm.write(f"      issue: {issue}")
                for warning in outcome.warnings:
                    tqdm.write(f"      warning: {warning}")
            case StageNeedsReview():
                tqdm.write(f"  {outcome.stage.value:<14} needs review: {outcome.error}")
            case StageRejected():
                tqdm.write(f"  {outcome.stage.value:<14} rejected [{outcome.code.value}]: {outcome.reason}")
            case StageCancelled():
                tqdm.write(f"  {outcome.stage.value:<14} cancelled: {outcome.message}")
            case StageFailed():
                tqdm.write(f"  {outcome.stage.value:<14} failed [{outcome.code.value}]: {outcome.error}")


async def run(args: argparse.Namespace) -> int:
    settings = build_settings(args)
    store, project = prepare_store(args)

    starting_credits = args.credits
    if starting_credits is None:
        starting_credits = estimate_run_credits(
            chapter_count=OUTLINE_CHAPTER_COUNT,
            variants_per_illustration=settings.variants_per_illustration,
            cover_variants=settings.cover_variants,
            cover_count=2 if settings.include_back_cover else 1,
        )
    ledger = InMemoryCreditLedger({settings.account_id: starting_credits})
    tracker = ProgressTracker()
    pipeline = BookPipeline.from_settings(
        store=store,
        credit_ledger=ledger,
        settings=settings,
        exporter=PDFExporter(args.output_dir),
        progress_callback=tracker,
    )

    cancel_token = CancelToken()
    try:
        if args.stage:
            outcome = await pipeline.run_stage(
                project.id,
                args.stage,
                cancel_token=cancel_token,
                reuse_existing=args.reuse,
            )
            report = PipelineReport(project_id=project.id, run_id="single-stage", outcomes=[outcome])
        else:
            report = await pipeline.run_book(
                project.id,
                cancel_token=cancel_token,
                stop_after=args.until,
                reuse_existing=args.reuse,
            )
    finally:
        tracker.close()

    tqdm.write("Summary:")
    print_report(report)
    tqdm.write(f"Credits left: {await ledger.get_balance(settings.account_id)}")

    if args.report:
        stored = await store.get_project(project.id)
        items = [
            IllustrationItem.from_mapping(entry)
            for entry in (stored.artifact(ProjectStage.ILLUSTRATIONS) or {}).get("items") or []
        ]
        Path(args.report).write_text(create_diagnostic_report(items), encoding="utf-8")
        tqdm.write(f"Saved consistency report to {args.report}")

    return 0 if report.ok else 1


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
