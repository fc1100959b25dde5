"""
Archetype Filter Pipeline

Strictly ordered categorical gates over the catalog. Each stage works on the
survivors of the previous one and records its count in FilteringStats.

Stage     | Kind   | On empty result
----------|--------|------------------------------------------------
sex       | hard   | later stages see nothing
muscular  | hard   | never relaxed ("zero muscular mismatch")
bmi       | relax  | widen tolerance step by step, up to a bound
morphotype| soft   | skipped, previous set kept
semantic  | soft   | skipped, previous set kept

No exception is raised here; an empty final set is reported upward.
"""

import logging
from typing import List, Optional, Tuple

from .config import ScanMatchSettings
from .models import Archetype, FilteringStats, SexCode, UserQueryProfile
from .vocabulary import labels_equal

logger = logging.getLogger(__name__)


def filter_by_sex(archetypes: List[Archetype], sex_code: SexCode) -> List[Archetype]:
    """Exact sex match. Non-relaxable."""
    return [a for a in archetypes if a.sex_code == sex_code]


def apply_muscular_gating(archetypes: List[Archetype], muscularity: Optional[str]) -> List[Archetype]:
    """
    Exact muscularity category match. Non-relaxable.

    `muscularity` is expected already normalized to the catalog vocabulary.
    """
    return [a for a in archetypes if labels_equal(a.muscularity_category, muscularity)]


def _within_bmi(archetype: Archetype, bmi: float, tolerance: float) -> bool:
    if archetype.bmi_range is None:
        return False
    return archetype.bmi_range.contains(bmi, tolerance)


def filter_by_bmi(
    archetypes: List[Archetype],
    bmi: float,
    settings: ScanMatchSettings,
) -> Tuple[List[Archetype], int, float]:
    """
    Keep archetypes whose BMI range contains `bmi` (within bmi_epsilon).

    When nothing fits, the window is widened by bmi_relaxation_step and the
    check retried, at most bmi_max_relaxation_steps times. Archetypes with no
    usable BMI range never pass.

    Returns:
        (survivors, relaxation_steps_used, tolerance_used)
    """
    tolerance = settings.bmi_epsilon
    survivors = [a for a in archetypes if _within_bmi(a, bmi, tolerance)]
    steps = 0

    while not survivors and archetypes and steps < settings.bmi_max_relaxation_steps:
        steps += 1
        tolerance = settings.bmi_epsilon + steps * settings.bmi_relaxation_step
        survivors = [a for a in archetypes if _within_bmi(a, bmi, tolerance)]
        logger.warning(
            f"BMI relaxation step {steps}/{settings.bmi_max_relaxation_steps}: "
            f"bmi={bmi} tolerance={tolerance} -> {len(survivors)} candidates"
        )

    return survivors, steps, tolerance


def filter_by_morphotype(archetypes: List[Archetype], morphotype: Optional[str]) -> Tuple[List[Archetype], bool]:
    """
    Soft morphotype filter.

    Returns the input unchanged (applied=False) when no morphotype was
    declared or when the filter would empty the set.
    """
    if not morphotype or not archetypes:
        return archetypes, False
    kept = [a for a in archetypes if labels_equal(a.morphotype_code, morphotype)]
    if not kept:
        logger.warning(f"Morphotype filter '{morphotype}' would empty {len(archetypes)} candidates, skipped")
        return archetypes, False
    return kept, True


def filter_by_semantic_labels(
    archetypes: List[Archetype],
    obesity: Optional[str],
    level: Optional[str],
) -> Tuple[List[Archetype], bool]:
    """
    Soft semantic filter: obesity category and level must both match.

    Skipped when neither label was declared. A label the user did not
    declare is not compared.
    """
    if (not obesity and not level) or not archetypes:
        return archetypes, False

    def _matches(a: Archetype) -> bool:
        if obesity and not labels_equal(a.obesity_category, obesity):
            return False
        if level and not labels_equal(a.level, level):
            return False
        return True

    kept = [a for a in archetypes if _matches(a)]
    if not kept:
        logger.warning(
            f"Semantic filter (obesity={obesity!r}, level={level!r}) would empty "
            f"{len(archetypes)} candidates, skipped"
        )
        return archetypes, False
    return kept, True


def run_filter_pipeline(
    catalog: List[Archetype],
    profile: UserQueryProfile,
    settings: ScanMatchSettings,
) -> Tuple[List[Archetype], FilteringStats]:
    """
    Run all five stages in order.

    Catalog order is preserved throughout; ranking relies on it for
    tie-breaks. `final_selected` is left at 0 for the ranker to fill.
    """
    semantic = profile.semantic_profile
    stats = FilteringStats(total=len(catalog))

    candidates = filter_by_sex(catalog, profile.sex_code)
    stats.after_sex_filter = len(candidates)

    candidates = apply_muscular_gating(candidates, semantic.muscularity_category)
    stats.after_muscular_gating = len(candidates)

    candidates, steps, tolerance = filter_by_bmi(candidates, profile.estimated_bmi, settings)
    stats.after_bmi_filter = len(candidates)
    stats.bmi_relaxation_applied = steps > 0
    stats.bmi_relaxation_steps = steps
    stats.bmi_tolerance_used = tolerance

    candidates, stats.morphotype_filter_applied = filter_by_morphotype(
        candidates, semantic.morphotype_code
    )
    stats.after_morphotype_filter = len(candidates)

    candidates, stats.semantic_filter_applied = filter_by_semantic_labels(
        candidates, semantic.obesity_category, semantic.level
    )
    stats.after_semantic_filter = len(candidates)

    logger.info(
        f"Filter funnel: total={stats.total} sex={stats.after_sex_filter} "
        f"muscular={stats.after_muscular_gating} bmi={stats.after_bmi_filter} "
        f"morphotype={stats.after_morphotype_filter} semantic={stats.after_semantic_filter}"
    )
    return candidates, stats
