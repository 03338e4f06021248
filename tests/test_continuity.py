from __future__ import annotations

import pytest

from bookstudio.pipeline import (
    ConsistencyChain,
    ConsistencyConfig,
    IllustrationItem,
    IllustrationVariant,
    calculate_reference_strength,
    create_diagnostic_report,
    get_character_consistency_reference,
    get_illustration_stats,
    validate_consistency_setup,
)
from bookstudio.pipeline.continuity import build_enhanced_references, derive_book_seed

POSE = "https://refs.test/amina-pose.png"


def make_item(chapter_number: int, url: str, *, seed: int = 7, references=()) -> IllustrationItem:
    variant = IllustrationVariant(image_url=url, seed=seed, id=f"v{chapter_number}")
    return IllustrationItem(
        chapter_number=chapter_number,
        scene_description=f"Scene {chapter_number}",
        variants=[variant],
        references=tuple(references),
        selected_variant_id=variant.id,
        image_url=url,
    )


def test_reference_strength_by_chapter():
    assert calculate_reference_strength(1, True) == 0.85
    assert calculate_reference_strength(2, True) == 0.95
    assert calculate_reference_strength(3, False) == 0.85


def test_enhanced_references_put_anchor_first_without_duplicates():
    refs = build_enhanced_references([POSE, "https://a.test/1.png"], "https://a.test/1.png", is_first_chapter=False)
    assert refs == ("https://a.test/1.png", POSE)
    assert build_enhanced_references([POSE], "https://a.test/1.png", is_first_chapter=True) == (POSE,)


def test_consistency_reference_prefers_selected_variant():
    item = make_item(1, "https://a.test/1.png")
    item.variants.append(IllustrationVariant(image_url="https://a.test/1b.png", seed=7, id="other"))
    item.select_variant("other")

    assert get_character_consistency_reference([make_item(2, "https://a.test/2.png"), item]) == "https://a.test/1b.png"
    assert get_character_consistency_reference([make_item(2, "https://a.test/2.png")]) is None


def test_chain_uses_chapter_one_for_later_chapters(project):
    chain = ConsistencyChain(project=project)

    first = chain.directives_for_chapter(1, [POSE])
    assert first.references == (POSE,)
    assert first.reference_strength == 0.85
    assert first.consistency_reference is None

    chain.record(make_item(1, "https://a.test/1.png"))
    second = chain.directives_for_chapter(2, [POSE])
    assert second.references == ("https://a.test/1.png", POSE)
    assert second.reference_strength == 0.95

    cover = chain.directives_for_cover([POSE])
    assert cover.references[0] == "https://a.test/1.png"


def test_chain_without_anchor_falls_back_to_pose_sheets(project):
    directives = ConsistencyChain(project=project).directives_for_chapter(3, [POSE])
    assert directives.references == (POSE,)
    assert directives.reference_strength == 0.85


def test_seed_resolution(project):
    derived = ConsistencyChain(project=project).base_seed
    assert derived == derive_book_seed(project)
    assert 0 < derived < 2_147_483_647

    resumed = ConsistencyChain(project=project, existing=[make_item(1, "https://a.test/1.png", seed=1234)])
    assert resumed.base_seed == 1234

    locked = ConsistencyChain(project=project, config=ConsistencyConfig(locked_seed=99, vary_seed_per_variant=True))
    assert [locked.seed_for_variant(i) for i in range(3)] == [99, 100, 101]
    assert ConsistencyChain(project=project).seed_for_variant(2) == derived


def test_validation_flags_missing_anchor_and_seed_drift():
    assert validate_consistency_setup([]).issues == ("No illustrations found",)

    items = [
        make_item(1, "https://a.test/1.png", seed=1),
        make_item(2, "https://a.test/2.png", seed=2, references=[POSE]),
        make_item(3, "https://a.test/3.png", seed=1),
    ]
    report = validate_consistency_setup(items)

    assert report.valid
    assert "Chapter 2 doesn't include character consistency reference" in report.warnings
    assert "Chapter 3 has no references" in report.warnings
    assert any(warning.startswith("Multiple seeds detected (2 unique seeds)") for warning in report.warnings)

    missing_first = validate_consistency_setup([make_item(2, "https://a.test/2.png")])
    assert "First chapter illustration is missing" in missing_first.issues
    assert not missing_first.valid


def test_stats_and_diagnostic_report():
    items = [
        make_item(1, "https://a.test/1.png", references=[POSE]),
        make_item(2, "https://a.test/2.png", references=["https://a.test/1.png", POSE]),
    ]
    stats = get_illustration_stats(items)
    assert stats.total_illustrations == 2
    assert stats.illustrations_with_reference == 1
    assert stats.average_variants_per_illustration == pytest.approx(1.0)
    assert stats.global_seed == 7

    report = create_diagnostic_report(items)
    assert "Validation: PASSED" in report
    assert "Chapter 2: 1 variants, 2 refs, seed=7, img2img=yes" in report
    assert "Chapter 1: 1 variants, 1 refs, seed=7, img2img=no" in report
