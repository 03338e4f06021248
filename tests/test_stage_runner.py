from __future__ import annotations

import json
from dataclasses import replace

import pytest

from bookstudio.ai_generation import ReplicateImageGenerator, TextGenerator
from bookstudio.common import (
    CancelToken,
    ErrorCode,
    NotFoundError,
    PipelineSettings,
    ProjectStage,
    StorageError,
    ValidationError,
)
from bookstudio.pipeline import (
    InMemoryCreditLedger,
    InMemoryProjectStore,
    ProjectPatch,
    StageCancelled,
    StageFailed,
    StageNeedsReview,
    StageRejected,
    StageSucceeded,
)

from conftest import NO_RETRY, FakeCompletion, FakeReplicateClient, chapter_json, no_sleep, outline_json


async def seed_stage(store, project_id: str, stage: ProjectStage, *, chapters: int = 3, artifacts=None):
    """Put the project at ``stage`` with a parsed outline and written chapters."""
    content = {
        "outline": {**json.loads(outline_json(chapters)), "_needsReview": False},
        "chapters": {
            "chapters": [json.loads(chapter_json(n)) for n in range(1, chapters + 1)],
            "_needsReview": False,
        },
    }
    content.update(artifacts or {})
    await store.update_project(project_id, ProjectPatch(current_stage=stage, artifacts=content))


def image_runner(make_runner, client, **settings_overrides):
    settings = PipelineSettings(
        variants_per_illustration=1, cover_variants=1, provider_base_delay_seconds=0.0
    )
    return make_runner(
        image_generator=ReplicateImageGenerator(client=client, retry_policy=NO_RETRY, sleep=no_sleep),
        settings=replace(settings, **settings_overrides),
    )


# ------------------------------------------------------------------ text stages


@pytest.mark.asyncio
async def test_outline_success_charges_once_and_advances(runner, store, ledger, completion):
    outcome = await runner.run_stage("book-1", "outline")

    assert isinstance(outcome, StageSucceeded)
    assert outcome.credits_charged == 1
    assert outcome.artifact["book_title"] == "Amina and the Little Garden"
    assert outcome.artifact["_needsReview"] is False
    assert outcome.artifact["_aiUsage"]["total"]["calls"] == 1
    assert completion.stages() == ["outline"]
    assert completion.calls[0]["max_tokens"] == 1200
    assert await ledger.get_balance("default") == 999

    project = await store.get_project("book-1")
    assert project.current_stage is ProjectStage.CHAPTERS


@pytest.mark.asyncio
async def test_oversized_outline_prompt_is_rejected_before_any_call(runner, store, project, ledger, completion):
    store.add_project(replace(project, title="x" * 60000))

    outcome = await runner.run_stage("book-1", ProjectStage.OUTLINE)

    assert isinstance(outcome, StageRejected)
    assert outcome.code is ErrorCode.VALIDATION_ERROR
    assert "Maximum allowed for outline is 3000" in outcome.reason
    assert outcome.details["limit"] == 3000
    assert completion.calls == []
    assert ledger.total_charged() == 0
    assert (await store.get_project("book-1")).current_stage is ProjectStage.OUTLINE


@pytest.mark.asyncio
async def test_outline_repair_is_free(make_runner, store, ledger):
    completion = FakeCompletion(overrides={"outline": ["Here is the outline: {"], "repair": [outline_json(3)]})
    runner = make_runner(
        text_generator=TextGenerator(api_key="k", completion_fn=completion, retry_policy=NO_RETRY, sleep=no_sleep)
    )

    outcome = await runner.run_stage("book-1", "outline")

    assert isinstance(outcome, StageSucceeded)
    assert completion.stages() == ["outline", "repair"]
    assert outcome.credits_charged == 1
    assert runner.usage.snapshot("book-1")["by_stage"]["json_repair"]["calls"] == 1


@pytest.mark.asyncio
async def test_unparseable_outline_needs_review_then_blocks_chapters(make_runner, store):
    completion = FakeCompletion(overrides={"outline": ["not json"]})
    runner = make_runner(
        text_generator=TextGenerator(api_key="k", completion_fn=completion, retry_policy=NO_RETRY, sleep=no_sleep)
    )

    outcome = await runner.run_stage("book-1", "outline")

    assert isinstance(outcome, StageNeedsReview)
    assert outcome.raw_text == "not json"
    assert outcome.artifact["_needsReview"] is True
    assert outcome.artifact["_rawText"] == "not json"
    assert completion.stages() == ["outline", "repair"]

    chapters = await runner.run_stage("book-1", "chapters")
    assert isinstance(chapters, StageRejected)
    assert "outline marked for review" in chapters.reason
    assert completion.stages() == ["outline", "repair"]


@pytest.mark.asyncio
async def test_chapters_are_written_two_per_invocation(runner, store, ledger, completion):
    await runner.run_stage("book-1", "outline")

    first = await runner.run_stage("book-1", "chapters")
    assert isinstance(first, StageSucceeded)
    assert (first.complete, first.remaining) == (False, 1)
    assert [c["chapter_number"] for c in first.artifact["chapters"]] == [1, 2]
    assert first.credits_charged == 6
    assert (await store.get_project("book-1")).current_stage is ProjectStage.CHAPTERS

    second = await runner.run_stage("book-1", "chapters")
    assert second.complete
    assert [c["chapter_number"] for c in second.artifact["chapters"]] == [1, 2, 3]
    assert (await store.get_project("book-1")).current_stage is ProjectStage.ILLUSTRATIONS

    chapter_prompts = [call["prompt"] for call in completion.calls if call["stage"] == "chapter"]
    assert len(chapter_prompts) == 3
    assert "PREVIOUS CHAPTER SUMMARY" not in chapter_prompts[0]
    assert "PREVIOUS CHAPTER SUMMARY:\nChapter 2 (Chapter Title 2)" in chapter_prompts[2]
    assert "Key Scene: Amina kneels by garden bed 3" in chapter_prompts[2]
    assert await ledger.get_balance("default") == 1000 - 1 - 9


@pytest.mark.asyncio
async def test_humanize_may_run_before_illustrations_without_moving_the_pointer(runner, store, completion):
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS)

    outcome = await runner.run_stage("book-1", "humanize")

    assert isinstance(outcome, StageSucceeded)
    assert [c["edited_text"].endswith(f"chapter {c['chapter_number']}.") for c in outcome.artifact["chapters"]] == [True] * 3
    assert outcome.credits_charged == 6
    assert (await store.get_project("book-1")).current_stage is ProjectStage.ILLUSTRATIONS
    assert all(call["max_tokens"] == 2500 for call in completion.calls)


# ------------------------------------------------------------------ guards


@pytest.mark.asyncio
async def test_dependency_rejection_names_the_missing_stage(runner, completion):
    outcome = await runner.run_stage("book-1", "illustrations")

    assert isinstance(outcome, StageRejected)
    assert outcome.reason == (
        "Stage illustrations requires chapters to be completed first (current stage: outline)."
    )
    assert completion.calls == []


@pytest.mark.asyncio
async def test_unknown_project_and_completed_stage_are_rejected(runner):
    missing = await runner.run_stage("nope", "outline")
    assert isinstance(missing, StageRejected)
    assert missing.code is ErrorCode.NOT_FOUND

    done = await runner.run_stage("book-1", ProjectStage.COMPLETED)
    assert isinstance(done, StageRejected)


@pytest.mark.asyncio
async def test_insufficient_credits_are_rejected_before_calling(make_runner, completion):
    runner = make_runner(credit_ledger=InMemoryCreditLedger({"default": 0}))

    outcome = await runner.run_stage("book-1", "outline")

    assert isinstance(outcome, StageRejected)
    assert outcome.code is ErrorCode.INSUFFICIENT_CREDITS
    assert outcome.details == {"stage": "outline", "required": 1, "balance": 0}
    assert completion.calls == []


@pytest.mark.asyncio
async def test_token_ceiling_rejects_run_that_cannot_fit(make_runner, completion):
    runner = make_runner(settings=PipelineSettings(total_book_max_tokens=1000, provider_base_delay_seconds=0.0))

    outcome = await runner.run_stage("book-1", "outline")

    assert isinstance(outcome, StageRejected)
    assert outcome.details["limit"] == 1000
    assert completion.calls == []


@pytest.mark.asyncio
async def test_reuse_returns_stored_artifact_without_calls(runner, completion):
    await runner.run_stage("book-1", "outline")
    calls_before = len(completion.calls)

    outcome = await runner.run_stage("book-1", "outline", reuse_existing=True)

    assert isinstance(outcome, StageSucceeded)
    assert outcome.warnings == ("Reused existing artifact.",)
    assert outcome.credits_charged == 0
    assert len(completion.calls) == calls_before


def _illustration_entry(number: int, url: str) -> dict:
    return {
        "chapter_number": number,
        "scene_description": f"scene {number}",
        "variants": [{"id": f"v{number}", "image_url": url, "seed": 5}],
        "selected_variant_id": f"v{number}",
        "image_url": url,
    }


@pytest.mark.asyncio
async def test_reuse_keeps_writing_when_chapters_are_missing(runner, store, completion):
    partial = {"chapters": [json.loads(chapter_json(1))], "_needsReview": False}
    await seed_stage(store, "book-1", ProjectStage.CHAPTERS, chapters=5, artifacts={"chapters": partial})

    outcome = await runner.run_stage("book-1", "chapters", reuse_existing=True)

    assert isinstance(outcome, StageSucceeded)
    assert "Reused existing artifact." not in outcome.warnings
    assert (outcome.complete, outcome.remaining) == (False, 2)
    assert [c["chapter_number"] for c in outcome.artifact["chapters"]] == [1, 2, 3]
    assert completion.stages() == ["chapter", "chapter"]
    assert (await store.get_project("book-1")).current_stage is ProjectStage.CHAPTERS


@pytest.mark.asyncio
async def test_reuse_illustrates_chapters_left_out_of_the_stored_artifact(make_runner, store):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client)
    stored = {"items": [_illustration_entry(1, "https://images.test/anchor.png")]}
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS, artifacts={"illustrations": stored})

    outcome = await runner.run_stage("book-1", "illustrations", reuse_existing=True)

    assert outcome.complete
    assert [item["chapter_number"] for item in outcome.artifact["items"]] == [1, 2, 3]
    assert [call["input"]["input_image"] for call in client.calls] == ["https://images.test/anchor.png"] * 2
    assert (await store.get_project("book-1")).current_stage is ProjectStage.HUMANIZE


@pytest.mark.asyncio
async def test_reuse_accepts_a_fully_illustrated_book_without_calls(make_runner, store):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client)
    stored = {"items": [_illustration_entry(n, f"https://images.test/{n}.png") for n in (1, 2, 3)]}
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS, artifacts={"illustrations": stored})

    outcome = await runner.run_stage("book-1", "illustrations", reuse_existing=True)

    assert outcome.warnings == ("Reused existing artifact.",)
    assert client.calls == []
    assert (await store.get_project("book-1")).current_stage is ProjectStage.HUMANIZE


@pytest.mark.asyncio
async def test_reuse_generates_a_missing_back_cover(make_runner, store):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client, include_back_cover=True)
    front = {"cover_type": "front", "variants": [{"id": "f", "image_url": "https://images.test/front.png", "seed": 1}]}
    await seed_stage(
        store,
        "book-1",
        ProjectStage.COVER,
        artifacts={
            "illustrations": {"items": [_illustration_entry(1, "https://images.test/anchor.png")]},
            "cover": {"items": [front]},
        },
    )

    outcome = await runner.run_stage("book-1", "cover", reuse_existing=True)

    assert [item["cover_type"] for item in outcome.artifact["items"]] == ["front", "back"]
    assert len(client.calls) == 1
    assert outcome.credits_charged == 5


class FailingWritesStore(InMemoryProjectStore):
    async def update_project(self, project_id, patch):
        raise StorageError("database unavailable")


@pytest.mark.asyncio
async def test_storage_failure_returns_generated_content(make_runner, project, characters, kb_summary):
    store = FailingWritesStore([project], characters=characters, kb_summaries={project.id: kb_summary})
    runner = make_runner(store=store)

    outcome = await runner.run_stage("book-1", "outline")

    assert isinstance(outcome, StageFailed)
    assert outcome.code is ErrorCode.STORAGE_ERROR
    assert outcome.credits_charged == 1
    assert outcome.artifact["book_title"] == "Amina and the Little Garden"
    assert (await store.get_project("book-1")).current_stage is ProjectStage.OUTLINE


# ------------------------------------------------------------------ image stages


@pytest.mark.asyncio
async def test_illustrations_chain_chapter_one_as_reference(make_runner, store):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client)
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS)

    outcome = await runner.run_stage("book-1", "illustrations")

    assert isinstance(outcome, StageSucceeded)
    assert outcome.warnings == ()
    assert outcome.credits_charged == 24
    inputs = [call["input"] for call in client.calls]
    assert inputs[0]["input_image"] == "https://refs.test/amina-pose.png"
    assert inputs[1]["input_image"] == "https://images.test/1.png"
    assert inputs[2]["input_image"] == "https://images.test/1.png"
    assert len({payload["seed"] for payload in inputs}) == 1
    assert "Amina kneels by garden bed 2" in inputs[1]["prompt"]

    items = outcome.artifact["items"]
    assert [item["reference_strength"] for item in items] == [0.85, 0.95, 0.95]
    assert all(item["image_url"] == item["variants"][0]["image_url"] for item in items)
    assert outcome.artifact["consistency_reference"] == "https://images.test/1.png"
    assert (await store.get_project("book-1")).current_stage is ProjectStage.HUMANIZE


@pytest.mark.asyncio
async def test_illustrations_are_capped_per_invocation(make_runner, store):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client)
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS, chapters=5)

    first = await runner.run_stage("book-1", "illustrations")
    assert (first.complete, first.remaining) == (False, 1)
    assert len(client.calls) == 4

    second = await runner.run_stage("book-1", "illustrations")
    assert second.complete
    assert client.calls[-1]["input"]["input_image"] == "https://images.test/1.png"


@pytest.mark.asyncio
async def test_failed_variant_is_skipped(make_runner, store):
    client = FakeReplicateClient(failures=[RuntimeError("model crashed")])
    runner = image_runner(make_runner, client, variants_per_illustration=2)
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS, chapters=1)

    outcome = await runner.run_stage("book-1", "illustrations")

    assert isinstance(outcome, StageSucceeded)
    item = outcome.artifact["items"][0]
    assert [variant["image_url"] for variant in item["variants"]] == ["https://images.test/2.png"]
    assert item["errors"][0].startswith("Variant 1:")
    assert outcome.credits_charged == 8


@pytest.mark.asyncio
async def test_all_variants_failing_fails_the_stage(make_runner, store):
    client = FakeReplicateClient(failures=[RuntimeError("model crashed")])
    runner = image_runner(make_runner, client)
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS, chapters=1)

    outcome = await runner.run_stage("book-1", "illustrations")

    assert isinstance(outcome, StageFailed)
    assert outcome.code is ErrorCode.AI_SERVICE_ERROR
    assert outcome.credits_charged == 0
    assert runner.usage.snapshot("book-1")["by_provider"]["replicate"]["failed_calls"] == 1


@pytest.mark.asyncio
async def test_cancel_before_start_issues_no_image_call(make_runner, store, ledger):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client)
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS)
    token = CancelToken()
    token.cancel("user pressed stop")

    outcome = await runner.run_stage("book-1", "illustrations", run=runner.new_run(cancel_token=token))

    assert isinstance(outcome, StageCancelled)
    assert "cancel" in outcome.message.lower()
    assert outcome.code is ErrorCode.CANCELLED
    assert client.calls == []
    assert ledger.total_charged() == 0


@pytest.mark.asyncio
async def test_result_landing_after_cancel_is_discarded(make_runner, store, ledger):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client)
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS)
    token = CancelToken()
    client.before_return = lambda: token.cancel()

    outcome = await runner.run_stage("book-1", "illustrations", run=runner.new_run(cancel_token=token))

    assert isinstance(outcome, StageCancelled)
    assert outcome.message == "Generation cancelled"
    assert len(client.calls) == 1
    assert ledger.total_charged() == 0
    assert (await store.get_project("book-1")).artifact(ProjectStage.ILLUSTRATIONS) is None


@pytest.mark.asyncio
async def test_partial_illustrations_survive_cancellation(make_runner, store, ledger):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client)
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS)
    token = CancelToken()

    def cancel_after_second_call():
        if len(client.calls) == 2:
            token.cancel("closing")

    client.before_return = cancel_after_second_call

    outcome = await runner.run_stage("book-1", "illustrations", run=runner.new_run(cancel_token=token))

    assert isinstance(outcome, StageCancelled)
    assert outcome.credits_charged == 8
    project = await store.get_project("book-1")
    assert project.current_stage is ProjectStage.ILLUSTRATIONS
    assert [item["chapter_number"] for item in project.artifact(ProjectStage.ILLUSTRATIONS)["items"]] == [1]


@pytest.mark.asyncio
async def test_cover_uses_moral_and_chapter_one_reference(make_runner, store):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client, include_back_cover=True)
    illustrations = {
        "items": [
            {
                "chapter_number": 1,
                "scene_description": "garden",
                "variants": [{"id": "a", "image_url": "https://images.test/anchor.png", "seed": 5}],
                "selected_variant_id": "a",
                "image_url": "https://images.test/anchor.png",
            }
        ]
    }
    await seed_stage(store, "book-1", ProjectStage.COVER, artifacts={"illustrations": illustrations})

    outcome = await runner.run_stage("book-1", "cover")

    assert isinstance(outcome, StageSucceeded)
    assert [item["cover_type"] for item in outcome.artifact["items"]] == ["front", "back"]
    assert outcome.credits_charged == 10
    front, back = (call["input"] for call in client.calls)
    assert front["input_image"] == "https://images.test/anchor.png"
    assert 'Title: "Amina and the Little Garden"' in front["prompt"]
    assert "Theme: Kindness to neighbours is part of faith." in back["prompt"]
    assert front["aspect_ratio"] == "2:3"


# ------------------------------------------------------------------ layout, export, selection


@pytest.mark.asyncio
async def test_layout_prefers_humanized_text_and_warns_on_gaps(runner, store):
    humanized = {"chapters": [{"chapter_number": 1, "chapter_title": "Polished", "edited_text": "Polished text."}]}
    illustrations = {
        "items": [
            {
                "chapter_number": 1,
                "scene_description": "garden",
                "variants": [{"id": "a", "image_url": "https://images.test/1.png", "seed": 5}],
                "selected_variant_id": "a",
                "image_url": "https://images.test/1.png",
            }
        ]
    }
    await seed_stage(
        store, "book-1", ProjectStage.LAYOUT, chapters=2,
        artifacts={"humanize": humanized, "illustrations": illustrations},
    )

    outcome = await runner.run_stage("book-1", "layout")

    assert isinstance(outcome, StageSucceeded)
    assert outcome.warnings == ("Chapter 2 has no illustration.",)
    opener = outcome.artifact["spreads"][2]
    assert opener["left_page"]["blocks"][0]["image_url"] == "https://images.test/1.png"
    assert opener["right_page"]["blocks"][0]["content"] == "Polished text."
    assert outcome.artifact["settings"]["trim_size"] == "6x9"


@pytest.mark.asyncio
async def test_export_requires_an_exporter_and_a_complete_book(make_runner, runner, store):
    await seed_stage(store, "book-1", ProjectStage.EXPORT)

    no_exporter = await runner.run_stage("book-1", "export")
    assert isinstance(no_exporter, StageRejected)
    assert "No exporter" in no_exporter.reason

    class NeverCalled:
        async def export(self, bundle):
            raise AssertionError("exporter should not run")

    incomplete = await make_runner(exporter=NeverCalled()).run_stage("book-1", "export")
    assert isinstance(incomplete, StageRejected)
    assert incomplete.reason.startswith("Cannot export an incomplete book:")
    assert "front cover is missing" in incomplete.details["problems"]


@pytest.mark.asyncio
async def test_select_illustration_variant(runner, store):
    illustrations = {
        "items": [
            {
                "chapter_number": 1,
                "scene_description": "garden",
                "variants": [
                    {"id": "a", "image_url": "https://images.test/a.png", "seed": 5},
                    {"id": "b", "image_url": "https://images.test/b.png", "seed": 5},
                ],
                "selected_variant_id": "a",
                "image_url": "https://images.test/a.png",
            }
        ]
    }
    await seed_stage(store, "book-1", ProjectStage.HUMANIZE, artifacts={"illustrations": illustrations})

    item = await runner.select_illustration_variant("book-1", 1, "b")

    assert item.image_url == "https://images.test/b.png"
    stored = (await store.get_project("book-1")).artifact(ProjectStage.ILLUSTRATIONS)
    assert stored["items"][0]["selected_variant_id"] == "b"
    with pytest.raises(ValidationError):
        await runner.select_illustration_variant("book-1", 1, "zzz")


class VanishingStore(InMemoryProjectStore):
    async def update_project(self, project_id, patch):
        raise NotFoundError(f"Project {project_id!r} was deleted.")


@pytest.mark.asyncio
async def test_project_deleted_mid_run_returns_generated_content(make_runner, project, characters, kb_summary):
    store = VanishingStore([project], characters=characters, kb_summaries={project.id: kb_summary})
    runner = make_runner(store=store)

    outcome = await runner.run_stage("book-1", "outline")

    assert isinstance(outcome, StageFailed)
    assert outcome.code is ErrorCode.NOT_FOUND
    assert outcome.artifact["book_title"] == "Amina and the Little Garden"
    assert outcome.credits_charged == 1


@pytest.mark.asyncio
async def test_unsupported_image_model_is_rejected_before_any_token_charge(make_runner, store):
    client = FakeReplicateClient()
    runner = make_runner(
        image_generator=ReplicateImageGenerator(
            client=client, model_identifier="stability-ai/sdxl", retry_policy=NO_RETRY, sleep=no_sleep
        )
    )
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS)
    run = runner.new_run()

    outcome = await runner.run_stage("book-1", "illustrations", run=run)

    assert isinstance(outcome, StageRejected)
    assert outcome.code is ErrorCode.VALIDATION_ERROR
    assert "stability-ai/sdxl" in outcome.reason
    assert run.ceiling.requested == 0
    assert client.calls == []
    assert (await store.get_project("book-1")).current_stage is ProjectStage.ILLUSTRATIONS


@pytest.mark.asyncio
async def test_consistency_issues_are_reported_apart_from_warnings(make_runner, store):
    client = FakeReplicateClient()
    runner = image_runner(make_runner, client)
    later_chapters = {
        "chapters": [json.loads(chapter_json(n)) for n in (2, 3)],
        "_needsReview": False,
    }
    await seed_stage(store, "book-1", ProjectStage.ILLUSTRATIONS, artifacts={"chapters": later_chapters})

    outcome = await runner.run_stage("book-1", "illustrations")

    assert isinstance(outcome, StageSucceeded)
    assert outcome.issues == (
        "First chapter illustration is missing",
        "Character consistency reference is missing or invalid",
    )
    assert outcome.warnings == ()
