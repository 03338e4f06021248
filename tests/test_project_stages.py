from __future__ import annotations

import pytest

from bookstudio.common import CancelledError, CancelToken, ProjectStage, can_run_stage, next_stage
from bookstudio.pipeline.stage_runner import completed_stages
from bookstudio.story_generation import Character, KnowledgeBaseSummary, Project


def test_stage_order_and_dependencies():
    assert next_stage("outline") is ProjectStage.CHAPTERS
    assert next_stage(ProjectStage.ILLUSTRATIONS) is ProjectStage.HUMANIZE
    assert next_stage(ProjectStage.COMPLETED) is None

    assert can_run_stage(ProjectStage.OUTLINE, set())
    assert can_run_stage(ProjectStage.HUMANIZE, {ProjectStage.OUTLINE, ProjectStage.CHAPTERS})
    assert not can_run_stage(ProjectStage.LAYOUT, {ProjectStage.OUTLINE, ProjectStage.CHAPTERS})


def test_completed_stages_follow_the_pointer():
    project = Project(id="p", title="T", current_stage=ProjectStage.HUMANIZE)
    assert completed_stages(project) == {
        ProjectStage.OUTLINE,
        ProjectStage.CHAPTERS,
        ProjectStage.ILLUSTRATIONS,
    }


def test_project_accepts_camel_case_keys():
    project = Project.from_mapping(
        {
            "id": " p1 ",
            "title": "Book",
            "ageRange": "8-10",
            "characterIds": "amina, teta",
            "currentStage": "layout",
            "trimSize": "7x10",
        }
    )
    assert project.id == "p1"
    assert project.age_range == "8-10"
    assert project.character_ids == ("amina", "teta")
    assert project.current_stage is ProjectStage.LAYOUT
    assert project.trim_size == "7x10"


@pytest.mark.parametrize(
    "data, message",
    [
        ({"title": "x"}, "id"),
        ({"id": "p"}, "title"),
        ({"id": "p", "title": "x", "current_stage": "printing"}, "printing"),
    ],
)
def test_project_validation(data, message):
    with pytest.raises(ValueError, match=message):
        Project.from_mapping(data)


def test_with_updates_merges_artifacts():
    project = Project(id="p", title="T", artifacts={"outline": {"a": 1}})
    updated = project.with_updates(current_stage=ProjectStage.CHAPTERS, artifacts={"chapters": {}})

    assert updated.current_stage is ProjectStage.CHAPTERS
    assert set(updated.artifacts) == {"outline", "chapters"}
    assert project.artifacts == {"outline": {"a": 1}}


def test_character_and_rules_parsing():
    character = Character.from_mapping(
        {"id": "a", "name": "Amina", "visualDNA": {"skinTone": "olive"}, "poseSheetUrl": "https://x/p.png"}
    )
    assert character.visual_dna.skin_tone == "olive"
    assert character.pose_sheet_url == "https://x/p.png"

    kb = KnowledgeBaseSummary.from_mapping({"faithRules": "- Say Bismillah\n- Be kind, always\n\n"})
    assert kb.faith_rules == ("Say Bismillah", "Be kind, always")


def test_cancel_token():
    token = CancelToken()
    token.raise_if_cancelled()
    token.cancel("tab closed")
    with pytest.raises(CancelledError, match="Generation cancelled: tab closed"):
        token.raise_if_cancelled()
    token.reset()
    assert not token.cancelled
