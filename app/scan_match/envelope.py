"""
K=5 Envelope Builder and Integrity Validator

Turns the selected archetypes into per-parameter bounds for the AI
refinement step.

For every key of the gender mapping:
- two or more distinct archetype values: [min - margin, max + margin]
  clipped to the catalog range, source "archetypes"
- otherwise: the catalog range itself, source "catalog_fallback"

Margin is a share of the archetype spread: 10% for shape parameters, 5% for
limb masses. The validator then repairs inverted or non-finite ranges; it
never fails the request.
"""

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .config import ScanMatchSettings
from .models import (
    Archetype,
    EnvelopeIntegrityReport,
    EnvelopeMetadata,
    EnvelopeRange,
    EnvelopeSource,
    GenderMapping,
    K5Envelope,
    ValueRange,
)

logger = logging.getLogger(__name__)

SHAPE_PARAMS = "shape_params"
LIMB_MASSES = "limb_masses"


def new_trace_id() -> str:
    return f"envelope_{uuid.uuid4().hex[:12]}"


def collect_values(archetypes: List[Archetype], field: str, key: str) -> List[float]:
    """Values of `key` across archetypes that define it, in selection order."""
    values = []
    for archetype in archetypes:
        value = getattr(archetype, field).get(key)
        if value is not None:
            values.append(value)
    return values


def build_range(values: List[float], catalog_range: ValueRange, margin_ratio: float) -> EnvelopeRange:
    """
    One envelope range.

    Fewer than two distinct values cannot describe a spread, so the catalog
    range is used as is.
    """
    if len(set(values)) >= 2:
        archetype_min = min(values)
        archetype_max = max(values)
        margin = (archetype_max - archetype_min) * margin_ratio
        return EnvelopeRange(
            min=max(catalog_range.min, archetype_min - margin),
            max=min(catalog_range.max, archetype_max + margin),
            archetype_min=archetype_min,
            archetype_max=archetype_max,
            source=EnvelopeSource.ARCHETYPES,
        )

    return EnvelopeRange(
        min=catalog_range.min,
        max=catalog_range.max,
        archetype_min=catalog_range.min,
        archetype_max=catalog_range.max,
        source=EnvelopeSource.CATALOG_FALLBACK,
    )


def _build_section(
    archetypes: List[Archetype],
    catalog_ranges: Dict[str, ValueRange],
    field: str,
    margin_ratio: float,
) -> Dict[str, EnvelopeRange]:
    return {
        key: build_range(collect_values(archetypes, field, key), catalog_range, margin_ratio)
        for key, catalog_range in catalog_ranges.items()
    }


def build_k5_envelope(
    archetypes: List[Archetype],
    mapping: GenderMapping,
    settings: ScanMatchSettings,
    trace_id: Optional[str] = None,
) -> K5Envelope:
    trace_id = trace_id or new_trace_id()

    shape = _build_section(archetypes, mapping.morph_values, "morph_values", settings.shape_margin_ratio)
    limbs = _build_section(archetypes, mapping.limb_masses, "limb_masses", settings.limb_margin_ratio)

    all_ranges = list(shape.values()) + list(limbs.values())
    from_archetypes = sum(1 for r in all_ranges if r.source == EnvelopeSource.ARCHETYPES)

    metadata = EnvelopeMetadata(
        archetypes_used=[a.id for a in archetypes],
        total_keys_processed=len(all_ranges),
        keys_with_archetype_data=from_archetypes,
        keys_using_db_fallback=len(all_ranges) - from_archetypes,
        envelope_generation_timestamp=datetime.now(timezone.utc).isoformat(),
        trace_id=trace_id,
    )

    logger.info(
        f"[{trace_id}] K5 envelope built: {len(shape)} shape params, {len(limbs)} limb masses, "
        f"{from_archetypes} from archetypes, {metadata.keys_using_db_fallback} from catalog"
    )
    if metadata.total_keys_processed and metadata.fallback_ratio > 0.5:
        logger.warning(
            f"[{trace_id}] Envelope mostly catalog-sourced ({metadata.fallback_ratio:.0%}): "
            f"selected archetypes too sparse or homogeneous"
        )

    return K5Envelope(
        shape_params_envelope=shape,
        limb_masses_envelope=limbs,
        envelope_metadata=metadata,
    )


# =============================================================================
# INTEGRITY
# =============================================================================

def _repair_range(
    key: str,
    label: str,
    envelope_range: EnvelopeRange,
    default_min: float,
    default_max: float,
) -> Tuple[EnvelopeRange, List[str]]:
    issues = []
    low, high = envelope_range.min, envelope_range.max

    if not math.isfinite(low) or not math.isfinite(high):
        issues.append(f"Non-finite values in {label} range: {key}")
        low = low if math.isfinite(low) else default_min
        high = high if math.isfinite(high) else default_max

    if low > high:
        issues.append(f"Invalid {label} range: {key} min > max")
        low, high = high, low

    # archetype bounds fall back to the repaired range
    archetype_min, archetype_max = envelope_range.archetype_min, envelope_range.archetype_max
    if not math.isfinite(archetype_min) or not math.isfinite(archetype_max):
        issues.append(f"Non-finite archetype bounds in {label} range: {key}")
        archetype_min = archetype_min if math.isfinite(archetype_min) else low
        archetype_max = archetype_max if math.isfinite(archetype_max) else high

    if not issues:
        return envelope_range, issues
    return envelope_range.model_copy(update={
        "min": low,
        "max": high,
        "archetype_min": archetype_min,
        "archetype_max": archetype_max,
    }), issues


def validate_envelope_integrity(
    envelope: K5Envelope,
    settings: ScanMatchSettings,
) -> EnvelopeIntegrityReport:
    """
    Scan both sections for inverted or non-finite ranges and repair them.

    Non-finite bounds are replaced first (shape: -1/1, limb: 0.8/1.2 by
    default), then inverted bounds are swapped, so every repaired range ends
    up finite with min <= max. Non-finite archetype bounds take the repaired
    min or max. A corrected copy is returned only when at
    least one correction was made.
    """
    sections = (
        ("shape_params_envelope", "shape param", settings.shape_default_min, settings.shape_default_max),
        ("limb_masses_envelope", "limb mass", settings.limb_default_min, settings.limb_default_max),
    )

    issues: List[str] = []
    corrections = 0
    corrected_sections: Dict[str, Dict[str, EnvelopeRange]] = {}

    for attr, label, default_min, default_max in sections:
        corrected: Dict[str, EnvelopeRange] = {}
        for key, envelope_range in getattr(envelope, attr).items():
            repaired, range_issues = _repair_range(key, label, envelope_range, default_min, default_max)
            corrected[key] = repaired
            if range_issues:
                issues.extend(range_issues)
                corrections += 1
        corrected_sections[attr] = corrected

    trace_id = envelope.envelope_metadata.trace_id
    if issues:
        logger.warning(f"[{trace_id}] Envelope integrity: {corrections} ranges corrected: {issues[:5]}")
        return EnvelopeIntegrityReport(
            is_valid=False,
            issues=issues,
            corrections_made=corrections,
            corrected_envelope=envelope.model_copy(update=corrected_sections, deep=True),
        )

    return EnvelopeIntegrityReport(is_valid=True, issues=[], corrections_made=0)
