from __future__ import annotations

import pytest
import yaml

from bookstudio.common import NotFoundError, ProjectStage, StorageError
from bookstudio.pipeline import (
    InMemoryCreditLedger,
    ProjectPatch,
    UsageLedger,
    UsageRecord,
    YamlProjectStore,
    persist_with_retry,
)
from bookstudio.story_generation import Project

from conftest import no_sleep


@pytest.mark.asyncio
async def test_yaml_store_round_trips_project_and_keeps_extras(tmp_path, project, characters, kb_summary):
    store = YamlProjectStore(tmp_path / "projects")
    store.save_project(
        project,
        characters=[character.to_dict() for character in characters],
        knowledge_base=kb_summary.to_dict(),
    )

    updated = await store.update_project(
        project.id,
        ProjectPatch(current_stage=ProjectStage.CHAPTERS, artifacts={"outline": {"book_title": "B"}}),
    )
    assert updated.current_stage is ProjectStage.CHAPTERS

    reloaded = await store.get_project(project.id)
    assert reloaded.artifact(ProjectStage.OUTLINE) == {"book_title": "B"}
    assert [c.id for c in await store.get_characters(project.id)] == ["amina", "teta"]
    assert (await store.get_kb_summary(project.id)).faith_rules[0] == "Faith rule 1"

    raw = yaml.safe_load(store.path_for(project.id).read_text(encoding="utf-8"))
    assert "characters" in raw
    assert raw["current_stage"] == "chapters"


@pytest.mark.asyncio
async def test_yaml_store_missing_and_corrupt_files(tmp_path):
    store = YamlProjectStore(tmp_path)
    with pytest.raises(NotFoundError):
        await store.get_project("nope")

    store.path_for("broken").write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(StorageError, match="mapping"):
        await store.get_project("broken")


@pytest.mark.asyncio
async def test_in_memory_store_merges_artifacts(store, project):
    await store.update_project(project.id, ProjectPatch(artifacts={"outline": {"a": 1}}))
    updated = await store.update_project(project.id, ProjectPatch(artifacts={"chapters": {"b": 2}}))

    assert updated.current_stage is ProjectStage.OUTLINE
    assert set(updated.artifacts) == {"outline", "chapters"}
    assert store.update_count == 2


class FlakyStore:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def update_project(self, project_id: str, patch: ProjectPatch) -> Project:
        self.calls += 1
        if self.calls <= self.failures:
            raise StorageError("disk full")
        return Project(id=project_id, title="Saved", current_stage=patch.current_stage or ProjectStage.OUTLINE)


@pytest.mark.asyncio
async def test_persist_with_retry_recovers():
    store = FlakyStore(failures=2)
    saved = await persist_with_retry(store, "p", ProjectPatch(), attempts=3, sleep=no_sleep)
    assert saved.title == "Saved"
    assert store.calls == 3


@pytest.mark.asyncio
async def test_persist_with_retry_gives_up():
    store = FlakyStore(failures=5)
    with pytest.raises(StorageError, match="after 3 attempts") as excinfo:
        await persist_with_retry(store, "p", ProjectPatch(), attempts=3, sleep=no_sleep)
    assert store.calls == 3
    assert excinfo.value.details == {"project_id": "p", "attempts": 3}


@pytest.mark.asyncio
async def test_credit_deductions_are_idempotent_per_attempt():
    ledger = InMemoryCreditLedger({"acct": 10})

    first = await ledger.deduct_credits("acct", 3, "run:chapters:1:0")
    replay = await ledger.deduct_credits("acct", 3, "run:chapters:1:0")

    assert first.ok and first.balance == 7
    assert replay.duplicate and replay.balance == 7
    assert ledger.total_charged("acct") == 3
    assert len(ledger.entries) == 1


@pytest.mark.asyncio
async def test_credit_deduction_refuses_overdraft():
    ledger = InMemoryCreditLedger({"acct": 2})
    result = await ledger.deduct_credits("acct", 3, "a")

    assert not result.ok
    assert await ledger.get_balance("acct") == 2
    assert await ledger.add_credits("acct", 5) == 7
    with pytest.raises(ValueError):
        await ledger.deduct_credits("acct", -1, "b")


def test_usage_ledger_totals_by_stage_and_provider():
    usage = UsageLedger()
    usage.record(UsageRecord("p", "outline", "litellm", input_tokens=100, output_tokens=50, processing_time_ms=10))
    usage.record(UsageRecord("p", "chapters", "litellm", input_tokens=200, output_tokens=100))
    usage.record(UsageRecord("p", "illustrations", "replicate", success=False))
    usage.add_credits("p", "outline", 1)

    snapshot = usage.snapshot("p")

    assert snapshot["total"]["input_tokens"] == 300
    assert snapshot["total"]["calls"] == 2
    assert snapshot["total"]["failed_calls"] == 1
    assert snapshot["total"]["credits"] == 1
    assert snapshot["by_provider"]["replicate"]["failed_calls"] == 1
    assert snapshot["by_stage"]["outline"]["credits"] == 1
    assert snapshot["estimated_cost_usd"] == pytest.approx(300 * 3 / 1_000_000 + 150 * 15 / 1_000_000)
    assert usage.snapshot("other")["total"]["calls"] == 0


def test_usage_ledger_resumes_from_snapshot():
    previous = UsageLedger()
    previous.record(UsageRecord("p", "outline", "litellm", input_tokens=10, output_tokens=5))

    resumed = UsageLedger()
    resumed.seed_project("p", previous.snapshot("p"))
    resumed.record(UsageRecord("p", "chapters", "litellm", input_tokens=1, output_tokens=1))

    assert resumed.snapshot("p")["total"]["input_tokens"] == 11
    assert resumed.snapshot("p")["by_stage"]["outline"]["calls"] == 1
