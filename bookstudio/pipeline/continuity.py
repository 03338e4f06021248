"""
Consistency chain that keeps a book's characters looking the same across illustrations.

Chapter 1 is generated from pose-sheet references only. Every later
illustration (and each cover) puts chapter 1's selected image at the head of
its references and uses a stronger reference strength. One seed is shared by
the whole book.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Sequence

from bookstudio.story_generation.project import Project

from .artifacts import IllustrationItem

logger = logging.getLogger(__name__)

FIRST_CHAPTER_STRENGTH = 0.85
CONSISTENCY_STRENGTH = 0.95
DEFAULT_STRENGTH = 0.85

_SEED_MOD = 2_147_483_647


@dataclass(frozen=True)
class ConsistencyConfig:
    """
    Attributes
    ----------
    locked_seed:
        Seed used for every image. When unset, chapter 1's recorded seed is
        reused, else one is derived from the project.
    vary_seed_per_variant:
        Offset the book seed by the variant index so variants differ while
        staying reproducible.
    """

    locked_seed: int | None = None
    vary_seed_per_variant: bool = False


@dataclass(frozen=True)
class ReferenceDirectives:
    """Fully-resolved reference inputs for one image request."""

    references: tuple[str, ...]
    reference_strength: float
    consistency_reference: str | None = None


@dataclass(frozen=True)
class IllustrationStats:
    total_illustrations: int
    illustrations_with_reference: int
    average_variants_per_illustration: float
    consistency_reference_url: str | None = None
    global_seed: int | None = None


@dataclass(frozen=True)
class ValidationReport:
    issues: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.issues


def _chapter_one(illustrations: Sequence[IllustrationItem]) -> IllustrationItem | None:
    for item in illustrations:
        if item.chapter_number == 1:
            return item
    return None


def get_character_consistency_reference(illustrations: Sequence[IllustrationItem]) -> str | None:
    """Chapter 1's selected variant URL, falling back to its stored image URL."""
    first = _chapter_one(illustrations)
    if first is None:
        return None
    return first.selected_image_url or None


def build_enhanced_references(
    base_references: Sequence[str],
    character_reference: str | None,
    *,
    is_first_chapter: bool,
) -> tuple[str, ...]:
    if is_first_chapter or not character_reference:
        return tuple(base_references)
    rest = [ref for ref in base_references if ref != character_reference]
    return (character_reference, *rest)


def calculate_reference_strength(chapter_number: int, has_character_reference: bool) -> float:
    if chapter_number == 1:
        return FIRST_CHAPTER_STRENGTH
    if has_character_reference:
        return CONSISTENCY_STRENGTH
    return DEFAULT_STRENGTH


def derive_book_seed(project: Project) -> int:
    """Deterministic seed from the project's identity and cast."""
    hasher = hashlib.blake2b(digest_size=8)
    hasher.update(project.id.strip().lower().encode("utf-8"))
    hasher.update(project.title.strip().lower().encode("utf-8"))
    if project.character_ids:
        joined = ",".join(sorted(item.strip().lower() for item in project.character_ids))
        hasher.update(joined.encode("utf-8"))
    seed = int.from_bytes(hasher.digest(), "big") % _SEED_MOD
    return seed or 1


class ConsistencyChain:
    """
    Tracks the consistency reference and seed while a stage renders images.
    """

    def __init__(
        self,
        *,
        project: Project,
        existing: Sequence[IllustrationItem] = (),
        config: ConsistencyConfig | None = None,
    ) -> None:
        self._config = config or ConsistencyConfig()
        self._items: dict[int, IllustrationItem] = {item.chapter_number: item for item in existing}
        self._base_seed = self._resolve_seed(project)

    @property
    def base_seed(self) -> int:
        return self._base_seed

    @property
    def consistency_reference(self) -> str | None:
        return get_character_consistency_reference(list(self._items.values()))

    def _resolve_seed(self, project: Project) -> int:
        if self._config.locked_seed is not None:
            return int(self._config.locked_seed) % _SEED_MOD or 1
        first = self._items.get(1)
        if first is not None:
            for variant in first.variants:
                if variant.seed is not None:
                    return variant.seed
        return derive_book_seed(project)

    def seed_for_variant(self, variant_index: int) -> int:
        if not self._config.vary_seed_per_variant:
            return self._base_seed
        seed = (self._base_seed + max(variant_index, 0)) % _SEED_MOD
        return seed or self._base_seed or 1

    def directives_for_chapter(
        self,
        chapter_number: int,
        pose_references: Sequence[str],
    ) -> ReferenceDirectives:
        is_first = chapter_number == 1
        reference = None if is_first else self.consistency_reference
        if not is_first and reference is None:
            logger.warning(
                "Chapter %s has no chapter-1 consistency reference; using pose sheets only.",
                chapter_number,
            )
        return ReferenceDirectives(
            references=build_enhanced_references(pose_references, reference, is_first_chapter=is_first),
            reference_strength=calculate_reference_strength(chapter_number, reference is not None),
            consistency_reference=reference,
        )

    def directives_for_cover(self, pose_references: Sequence[str]) -> ReferenceDirectives:
        reference = self.consistency_reference
        return ReferenceDirectives(
            references=build_enhanced_references(pose_references, reference, is_first_chapter=False),
            reference_strength=CONSISTENCY_STRENGTH if reference else DEFAULT_STRENGTH,
            consistency_reference=reference,
        )

    def record(self, item: IllustrationItem) -> None:
        self._items[item.chapter_number] = item


# ------------------------------------------------------------------ validation


def get_illustration_stats(illustrations: Sequence[IllustrationItem]) -> IllustrationStats:
    total = len(illustrations)
    reference = get_character_consistency_reference(illustrations)
    with_reference = sum(
        1 for item in illustrations if reference is not None and reference in item.references
    )
    total_variants = sum(len(item.variants) for item in illustrations)

    global_seed = None
    if illustrations and illustrations[0].variants:
        global_seed = illustrations[0].variants[0].seed

    return IllustrationStats(
        total_illustrations=total,
        illustrations_with_reference=with_reference,
        average_variants_per_illustration=(total_variants / total) if total else 0.0,
        consistency_reference_url=reference,
        global_seed=global_seed,
    )


def validate_consistency_setup(illustrations: Sequence[IllustrationItem]) -> ValidationReport:
    """
    Fatal issues: no illustrations, chapter 1 missing, no consistency
    reference. Warnings: later chapters without the reference, multiple seeds.
    """
    if not illustrations:
        return ValidationReport(issues=("No illustrations found",))

    issues: list[str] = []
    warnings: list[str] = []

    if _chapter_one(illustrations) is None:
        issues.append("First chapter illustration is missing")

    reference = get_character_consistency_reference(illustrations)
    if not reference:
        issues.append("Character consistency reference is missing or invalid")

    for item in illustrations:
        if item.chapter_number <= 1:
            continue
        if not item.references:
            warnings.append(f"Chapter {item.chapter_number} has no references")
        elif reference and reference not in item.references:
            warnings.append(
                f"Chapter {item.chapter_number} doesn't include character consistency reference"
            )

    seeds = {variant.seed for item in illustrations for variant in item.variants if variant.seed is not None}
    if len(seeds) > 1:
        warnings.append(
            f"Multiple seeds detected ({len(seeds)} unique seeds). This may reduce consistency."
        )

    return ValidationReport(issues=tuple(issues), warnings=tuple(warnings))


def create_diagnostic_report(illustrations: Sequence[IllustrationItem]) -> str:
    stats = get_illustration_stats(illustrations)
    validation = validate_consistency_setup(illustrations)

    reference = stats.consistency_reference_url
    lines = [
        "=== Illustration Consistency Report ===",
        "",
        "Statistics:",
        f"  Total Illustrations: {stats.total_illustrations}",
        f"  Using Character Reference: {stats.illustrations_with_reference}",
        f"  Average Variants per Illustration: {stats.average_variants_per_illustration:.1f}",
        f"  Global Seed: {stats.global_seed if stats.global_seed is not None else 'Not set'}",
        f"  Character Reference URL: {reference[:60] + '...' if reference else 'Not set'}",
        "",
    ]

    if validation.valid:
        lines.append("Validation: PASSED")
    else:
        lines.append("Validation: FAILED")
        lines.append("")
        lines.append("Issues:")
        lines.extend(f"  - {issue}" for issue in validation.issues)

    if validation.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {warning}" for warning in validation.warnings)

    lines.append("")
    lines.append("Per-Chapter Details:")
    for item in illustrations:
        uses_reference = bool(reference) and reference in item.references
        seed = item.variants[0].seed if item.variants and item.variants[0].seed is not None else "N/A"
        lines.append(
            f"  Chapter {item.chapter_number}: {len(item.variants)} variants, "
            f"{len(item.references)} refs, seed={seed}, img2img={'yes' if uses_reference else 'no'}"
        )

    return "\n".join(lines)
