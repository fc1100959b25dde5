"""
Scan Match Orchestrator

One request/response cycle:

1. Validate the request into a UserQueryProfile (fail fast)
2. Resolve the gender mapping (catalog, else hardcoded fallback)
3. Read and parse the archetype catalog
4. Filter pipeline -> distance ranking
5. Build the K=5 envelope and validate its integrity
6. Assemble response + diagnostics

Stateless: every collaborator is an argument, nothing survives the call.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .catalog import CatalogRepository, parse_catalog
from .config import ScanMatchSettings, get_settings
from .envelope import build_k5_envelope, new_trace_id, validate_envelope_integrity
from .errors import CatalogUnavailableError, NoMatchError, ScanMatchError, ScanValidationError
from .filters import run_filter_pipeline
from .mapping import FallbackProvider, resolve_gender_mapping
from .fallback_mapping import get_hardcoded_mapping_fallback
from .models import (
    FilteringStats,
    MatchOutcome,
    ScanMatchDiagnostics,
    ScanMatchRequest,
    ScanMatchResponse,
    SelectionStrategy,
    SemanticProfile,
    SexCode,
    UserQueryProfile,
    UserSemanticProfileEcho,
)
from .ranking import rank_candidates
from .vocabulary import normalize_muscularity_term

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ["sex", "morph_index", "muscle_index", "estimated_bmi"]


@dataclass
class ScanMatchOutcome:
    outcome: MatchOutcome
    response: ScanMatchResponse

    @property
    def http_status(self) -> int:
        return 200 if self.outcome == MatchOutcome.SUCCESS else 422


# =============================================================================
# REQUEST VALIDATION
# =============================================================================

def _received_echo(payload: Dict[str, Any]) -> Dict[str, Any]:
    def _get(section: str, key: str) -> Any:
        block = payload.get(section)
        return block.get(key) if isinstance(block, dict) else None

    return {
        "sex": _get("matching_config", "gender"),
        "estimated_bmi": _get("extracted_data", "estimated_bmi"),
        "morph_index": _get("user_semantic_indices", "morph_index"),
        "muscle_index": _get("user_semantic_indices", "muscle_index"),
    }


def _is_finite(value: Optional[float]) -> bool:
    if value is None:
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # int too large for a float
        return False


def parse_scan_request(
    payload: Any,
    settings: Optional[ScanMatchSettings] = None,
) -> UserQueryProfile:
    """
    Validate the raw request body and resolve it into a UserQueryProfile.

    Required: sex (matching_config.gender), morph_index, muscle_index and
    estimated_bmi as finite numbers. Booleans and numeric strings are
    rejected. Muscularity is normalized to the catalog vocabulary here so
    the gate can compare exactly.

    Raises:
        ScanValidationError: missing or wrong-typed required fields
    """
    settings = settings or get_settings()
    if not isinstance(payload, dict):
        raise ScanValidationError("Request body must be a JSON object", fields=REQUIRED_FIELDS)

    received = _received_echo(payload)
    try:
        request = ScanMatchRequest.model_validate(payload)
    except ValidationError as e:
        # loc is (section, field, [union member]); report the field
        bad_fields = sorted({
            str(err["loc"][1] if len(err["loc"]) > 1 else err["loc"][0])
            for err in e.errors() if err.get("loc")
        })
        raise ScanValidationError(
            f"Invalid request fields: {', '.join(bad_fields)}",
            fields=bad_fields,
            received=received,
        ) from e

    sex_code = SexCode.from_gender(request.matching_config.gender)
    bmi = request.extracted_data.estimated_bmi
    morph_index = request.user_semantic_indices.morph_index
    muscle_index = request.user_semantic_indices.muscle_index

    missing = []
    if sex_code is None:
        missing.append("sex")
    if not _is_finite(morph_index):
        missing.append("morph_index")
    if not _is_finite(muscle_index):
        missing.append("muscle_index")
    if not _is_finite(bmi):
        missing.append("estimated_bmi")
    if missing:
        raise ScanValidationError(
            f"Missing required fields: {', '.join(missing)}",
            fields=missing,
            received=received,
        )

    semantic = request.semantic_profile
    return UserQueryProfile(
        sex_code=sex_code,
        estimated_bmi=float(bmi),
        semantic_profile=SemanticProfile(
            obesity_category=semantic.obesity,
            muscularity_category=normalize_muscularity_term(semantic.muscularity),
            level=semantic.level,
            morphotype_code=semantic.morphotype,
        ),
        morph_index=float(morph_index),
        muscle_index=float(muscle_index),
        requested_limit=settings.resolve_limit(request.matching_config.limit),
    )


# =============================================================================
# PIPELINE
# =============================================================================

def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def resolve_scan_match(
    profile: UserQueryProfile,
    repository: CatalogRepository,
    settings: Optional[ScanMatchSettings] = None,
    fallback_provider: FallbackProvider = get_hardcoded_mapping_fallback,
) -> ScanMatchOutcome:
    """
    Run the full matching pipeline for one resolved profile.

    Returns a ScanMatchOutcome for both success and logical failure (zero
    candidates). Configuration faults raise.

    Raises:
        MappingUnavailableError: neither catalog nor fallback mapping
        CatalogUnavailableError: the archetype catalog could not be read
    """
    settings = settings or get_settings()
    started = time.perf_counter()

    mapping, mapping_metadata = resolve_gender_mapping(
        repository, profile.sex_code, fallback_provider=fallback_provider
    )

    try:
        rows = repository.list_archetypes()
    except CatalogUnavailableError:
        raise
    except Exception as e:
        raise CatalogUnavailableError(f"Failed to fetch archetypes: {type(e).__name__}: {e}") from e
    catalog = parse_catalog(rows)

    candidates, stats = run_filter_pipeline(catalog, profile, settings)
    selection = rank_candidates(candidates, profile, stats, settings)
    echo = UserSemanticProfileEcho.from_profile(profile)
    final_stats = selection.filtering_stats

    if not selection.selected_archetypes:
        logger.error(
            f"No archetypes selected after filtering: sex={profile.sex_code.value} "
            f"bmi={profile.estimated_bmi} muscularity={profile.semantic_profile.muscularity_category!r} "
            f"funnel={final_stats.funnel()}"
        )
        response = ScanMatchResponse(
            selected_archetypes=[],
            k5_envelope=None,
            strategy_used=SelectionStrategy.LOGICAL_FAILURE,
            semantic_coherence_score=0.0,
            filtering_stats=final_stats,
            mapping_metadata=mapping_metadata,
            user_semantic_profile=echo,
            match_hash=ScanMatchResponse.compute_hash([], SelectionStrategy.LOGICAL_FAILURE),
            diagnostics=ScanMatchDiagnostics(
                outcome=MatchOutcome.LOGICAL_FAILURE,
                processing_time_ms=_elapsed_ms(started),
                selection_strategy=SelectionStrategy.LOGICAL_FAILURE,
                bmi_relaxation_applied=final_stats.bmi_relaxation_applied,
                morphotype_filter_applied=final_stats.morphotype_filter_applied,
                semantic_filter_applied=final_stats.semantic_filter_applied,
                degraded_mode=mapping_metadata.fallback_used,
            ),
            error="No suitable archetypes found after all filtering steps",
        )
        return ScanMatchOutcome(outcome=MatchOutcome.LOGICAL_FAILURE, response=response)

    trace_id = new_trace_id()
    envelope = build_k5_envelope(selection.selected_archetypes, mapping, settings, trace_id=trace_id)
    integrity = validate_envelope_integrity(envelope, settings)
    final_envelope = integrity.corrected_envelope or envelope

    response = ScanMatchResponse(
        selected_archetypes=selection.selected_archetypes,
        k5_envelope=final_envelope,
        strategy_used=selection.strategy_used,
        semantic_coherence_score=selection.semantic_coherence_score,
        filtering_stats=final_stats,
        mapping_metadata=mapping_metadata,
        user_semantic_profile=echo,
        envelope_integrity=integrity.model_copy(update={"corrected_envelope": None}),
        match_hash=ScanMatchResponse.compute_hash(
            selection.selected_archetypes, selection.strategy_used
        ),
        diagnostics=ScanMatchDiagnostics(
            outcome=MatchOutcome.SUCCESS,
            processing_time_ms=_elapsed_ms(started),
            selection_strategy=selection.strategy_used,
            bmi_relaxation_applied=final_stats.bmi_relaxation_applied,
            morphotype_filter_applied=final_stats.morphotype_filter_applied,
            semantic_filter_applied=final_stats.semantic_filter_applied,
            k5_envelope_built=True,
            envelope_integrity_valid=integrity.is_valid,
            envelope_fallback_ratio=round(final_envelope.envelope_metadata.fallback_ratio, 4),
            degraded_mode=mapping_metadata.fallback_used,
        ),
    )

    logger.info(
        f"[{trace_id}] Scan match completed: {len(selection.selected_archetypes)} archetypes, "
        f"strategy={selection.strategy_used.value}, "
        f"coherence={selection.semantic_coherence_score:.3f}, "
        f"mapping={mapping_metadata.mapping_source.value}"
    )
    return ScanMatchOutcome(outcome=MatchOutcome.SUCCESS, response=response)


def raise_for_outcome(outcome: ScanMatchOutcome) -> ScanMatchResponse:
    """Return the response on success, raise NoMatchError on logical failure."""
    if outcome.outcome == MatchOutcome.LOGICAL_FAILURE:
        raise NoMatchError(
            "No suitable archetypes found after all filtering steps",
            response=outcome.response,
        )
    return outcome.response


def build_error_response(
    error: Exception,
    profile: Optional[UserQueryProfile] = None,
    processing_time_ms: float = 0.0,
) -> ScanMatchResponse:
    """
    Empty, well-formed response for server errors.

    Callers get the same schema as on success, with the error attached.
    """
    if isinstance(error, ScanMatchError):
        error_type = error.error_code.value
        message = error.message
    else:
        error_type = type(error).__name__
        message = str(error) or error_type

    return ScanMatchResponse(
        selected_archetypes=[],
        k5_envelope=None,
        strategy_used=SelectionStrategy.SERVER_ERROR,
        semantic_coherence_score=0.0,
        filtering_stats=FilteringStats(),
        mapping_metadata=None,
        user_semantic_profile=(
            UserSemanticProfileEcho.from_profile(profile) if profile else UserSemanticProfileEcho()
        ),
        diagnostics=ScanMatchDiagnostics(
            processing_time_ms=processing_time_ms,
            selection_strategy=SelectionStrategy.SERVER_ERROR,
            muscular_gating_applied=False,
            error_type=error_type,
            error_message=message,
        ),
        error="Internal server error - fallback response provided",
        details=message,
    )


def validation_error_details(error: ScanValidationError) -> Dict[str, Any]:
    return {
        "error": error.message,
        "error_code": error.error_code.value,
        "required_fields": REQUIRED_FIELDS,
        "invalid_fields": error.fields,
        "received": error.received,
    }
