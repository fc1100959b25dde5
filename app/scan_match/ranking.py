"""
Distance Ranker

Orders filtered candidates by weighted index distance to the user and keeps
the K closest.

    d(a) = w1 * |morph_index_user - morph_index_a| + w2 * |muscle_index_user - muscle_index_a|

Ties keep catalog order (stable sort). An archetype without an index counts
as 0 for that index.
"""

from typing import List

from .config import ScanMatchSettings
from .models import (
    Archetype,
    FilteringStats,
    SelectionResult,
    SelectionStrategy,
    UserQueryProfile,
)


def calculate_distance(
    archetype: Archetype,
    profile: UserQueryProfile,
    settings: ScanMatchSettings,
) -> float:
    morph_diff = abs(profile.morph_index - (archetype.morph_index or 0.0))
    muscle_diff = abs(profile.muscle_index - (archetype.muscle_index or 0.0))
    return settings.morph_index_weight * morph_diff + settings.muscle_index_weight * muscle_diff


def calculate_coherence_score(distances: List[float]) -> float:
    """
    Normalized inverse of the mean distance: 1 / (1 + mean).

    1.0 for a perfect match, towards 0 as matches get worse, 0 when empty.
    """
    if not distances:
        return 0.0
    mean_distance = sum(distances) / len(distances)
    return round(1.0 / (1.0 + mean_distance), 4)


def select_strategy(stats: FilteringStats, selected_count: int) -> SelectionStrategy:
    if selected_count == 0:
        return SelectionStrategy.LOGICAL_FAILURE
    if stats.bmi_relaxation_applied:
        return SelectionStrategy.BMI_RELAXED
    return SelectionStrategy.STRICT


def rank_candidates(
    candidates: List[Archetype],
    profile: UserQueryProfile,
    stats: FilteringStats,
    settings: ScanMatchSettings,
) -> SelectionResult:
    """
    Sort by ascending distance and truncate to min(K, len(candidates)).

    Zero candidates is not an error here; the result is simply empty and
    labelled as a logical failure for the orchestrator to classify.
    """
    scored = [
        a.model_copy(update={"distance": calculate_distance(a, profile, settings)})
        for a in candidates
    ]
    # sorted() is stable: equal distances keep catalog order
    ranked = sorted(scored, key=lambda a: a.distance)
    selected = ranked[:profile.requested_limit]

    final_stats = stats.model_copy(update={"final_selected": len(selected)})

    return SelectionResult(
        selected_archetypes=selected,
        strategy_used=select_strategy(final_stats, len(selected)),
        semantic_coherence_score=calculate_coherence_score([a.distance for a in selected]),
        filtering_stats=final_stats,
    )
