"""
K5 Envelope Tests

Tests validate:
- Range from archetype spread with margin, clipped to the catalog range
- Catalog fallback for keys without a usable spread
- Envelope metadata counts over both sections
- Integrity validator: idempotence on valid envelopes, repair of inverted
  and non-finite ranges

Version: scan_match_v1
"""

import json
import math

import pytest

from app.scan_match.config import ScanMatchSettings
from app.scan_match.envelope import (
    build_k5_envelope,
    build_range,
    validate_envelope_integrity,
)
from app.scan_match.models import (
    ENVELOPE_VERSION,
    Archetype,
    EnvelopeMetadata,
    EnvelopeRange,
    EnvelopeSource,
    GenderMapping,
    K5Envelope,
    SexCode,
    ValueRange,
)


# ============================================================================
# Test Fixtures
# ============================================================================

def make_archetype(archetype_id: str, morph_values=None, limb_masses=None) -> Archetype:
    return Archetype(
        id=archetype_id,
        sex_code=SexCode.MALE,
        muscularity_category="Normal",
        morph_values=morph_values or {},
        limb_masses=limb_masses or {},
    )


def make_mapping() -> GenderMapping:
    return GenderMapping(
        morph_values={
            "K": ValueRange(min=-0.5, max=1.0),
            "bigHips": ValueRange(min=-0.5, max=1.0),
        },
        limb_masses={
            "upperarm": ValueRange(min=0.8, max=1.2),
        },
    )


def make_range(low: float, high: float) -> EnvelopeRange:
    return EnvelopeRange(
        min=low,
        max=high,
        archetype_min=low,
        archetype_max=high,
        source=EnvelopeSource.ARCHETYPES,
    )


def make_envelope(shape: dict, limbs: dict) -> K5Envelope:
    return K5Envelope(
        shape_params_envelope=shape,
        limb_masses_envelope=limbs,
        envelope_metadata=EnvelopeMetadata(
            archetypes_used=["A"],
            total_keys_processed=len(shape) + len(limbs),
            keys_with_archetype_data=len(shape) + len(limbs),
            keys_using_db_fallback=0,
            envelope_generation_timestamp="2026-01-01T00:00:00+00:00",
            trace_id="envelope_test",
        ),
    )


def assert_all_ranges_sound(envelope: K5Envelope):
    ranges = list(envelope.shape_params_envelope.values()) + list(envelope.limb_masses_envelope.values())
    for r in ranges:
        assert math.isfinite(r.min)
        assert math.isfinite(r.max)
        assert math.isfinite(r.archetype_min)
        assert math.isfinite(r.archetype_max)
        assert r.min <= r.max


@pytest.fixture
def settings():
    return ScanMatchSettings()


# ============================================================================
# Range Construction
# ============================================================================

class TestBuildRange:

    def test_three_values_with_ten_percent_margin(self, settings):
        catalog = ValueRange(min=-0.5, max=1.0)
        result = build_range([0.1, 0.3, 0.5], catalog, settings.shape_margin_ratio)

        assert result.archetype_min == pytest.approx(0.1)
        assert result.archetype_max == pytest.approx(0.5)
        assert result.min == pytest.approx(0.06)
        assert result.max == pytest.approx(0.54)
        assert result.source == EnvelopeSource.ARCHETYPES

    def test_clipped_to_catalog_range(self, settings):
        catalog = ValueRange(min=-0.5, max=1.0)
        result = build_range([-0.5, 1.0], catalog, settings.shape_margin_ratio)

        assert result.min == pytest.approx(-0.5)
        assert result.max == pytest.approx(1.0)
        assert result.source == EnvelopeSource.ARCHETYPES

    def test_single_value_falls_back_to_catalog(self, settings):
        catalog = ValueRange(min=-0.5, max=1.0)
        result = build_range([0.3], catalog, settings.shape_margin_ratio)

        assert (result.min, result.max) == (-0.5, 1.0)
        assert result.source == EnvelopeSource.CATALOG_FALLBACK

    def test_identical_values_fall_back_to_catalog(self, settings):
        """No spread means no information: the catalog range is used."""
        catalog = ValueRange(min=-0.5, max=1.0)
        result = build_range([0.3, 0.3, 0.3], catalog, settings.shape_margin_ratio)

        assert (result.min, result.max) == (-0.5, 1.0)
        assert result.source == EnvelopeSource.CATALOG_FALLBACK

    def test_limb_margin_five_percent(self, settings):
        catalog = ValueRange(min=0.8, max=1.2)
        result = build_range([0.9, 1.1], catalog, settings.limb_margin_ratio)

        assert result.min == pytest.approx(0.89)
        assert result.max == pytest.approx(1.11)


# ============================================================================
# Envelope
# ============================================================================

class TestBuildEnvelope:

    def test_keys_follow_mapping(self, settings):
        archetypes = [
            make_archetype("A", {"K": 0.1, "unknownKey": 3.0}, {"upperarm": 0.9}),
            make_archetype("B", {"K": 0.5}, {"upperarm": 1.1}),
        ]
        envelope = build_k5_envelope(archetypes, make_mapping(), settings)

        assert set(envelope.shape_params_envelope) == {"K", "bigHips"}
        assert set(envelope.limb_masses_envelope) == {"upperarm"}

    def test_metadata_counts_both_sections(self, settings):
        archetypes = [
            make_archetype("A", {"K": 0.1}, {"upperarm": 0.9}),
            make_archetype("B", {"K": 0.5}, {"upperarm": 0.9}),
        ]
        envelope = build_k5_envelope(archetypes, make_mapping(), settings, trace_id="envelope_abc")
        meta = envelope.envelope_metadata

        assert meta.archetypes_used == ["A", "B"]
        assert meta.total_keys_processed == 3
        assert meta.keys_with_archetype_data == 1
        # bigHips (no data) + upperarm (identical values)
        assert meta.keys_using_db_fallback == 2
        assert meta.fallback_ratio == pytest.approx(2 / 3)
        assert meta.envelope_version == ENVELOPE_VERSION
        assert meta.trace_id == "envelope_abc"

    def test_fallback_ranges_equal_catalog(self, settings):
        mapping = make_mapping()
        envelope = build_k5_envelope([make_archetype("A", {"K": 0.2})], mapping, settings)

        for key, r in envelope.shape_params_envelope.items():
            assert r.source == EnvelopeSource.CATALOG_FALLBACK
            assert r.min == mapping.morph_values[key].min
            assert r.max == mapping.morph_values[key].max

    def test_archetype_ranges_inside_catalog(self, settings):
        mapping = make_mapping()
        archetypes = [
            make_archetype("A", {"K": -0.5, "bigHips": 0.0}),
            make_archetype("B", {"K": 1.0, "bigHips": 0.9}),
            make_archetype("C", {"K": 0.2, "bigHips": 0.4}),
        ]
        envelope = build_k5_envelope(archetypes, mapping, settings)

        for key, r in envelope.shape_params_envelope.items():
            assert r.source == EnvelopeSource.ARCHETYPES
            assert mapping.morph_values[key].min <= r.min
            assert r.max <= mapping.morph_values[key].max


# ============================================================================
# Integrity Validator
# ============================================================================

class TestIntegrityValidator:

    def test_valid_envelope_is_untouched(self, settings):
        envelope = make_envelope({"K": make_range(0.06, 0.54)}, {"upperarm": make_range(0.9, 1.1)})
        report = validate_envelope_integrity(envelope, settings)

        assert report.is_valid is True
        assert report.issues == []
        assert report.corrections_made == 0
        assert report.corrected_envelope is None

    def test_built_envelope_passes_validation(self, settings):
        archetypes = [
            make_archetype("A", {"K": 0.1}, {"upperarm": 0.9}),
            make_archetype("B", {"K": 0.5}, {"upperarm": 1.1}),
        ]
        envelope = build_k5_envelope(archetypes, make_mapping(), settings)
        assert validate_envelope_integrity(envelope, settings).is_valid is True

    def test_inverted_range_swapped(self, settings):
        envelope = make_envelope({"K": make_range(0.7, 0.2)}, {})
        report = validate_envelope_integrity(envelope, settings)

        assert report.is_valid is False
        assert report.corrections_made == 1
        assert report.issues == ["Invalid shape param range: K min > max"]
        fixed = report.corrected_envelope.shape_params_envelope["K"]
        assert (fixed.min, fixed.max) == (0.2, 0.7)

    def test_non_finite_replaced_with_class_defaults(self, settings):
        envelope = make_envelope(
            {"K": make_range(float("nan"), float("inf"))},
            {"upperarm": make_range(float("-inf"), float("nan"))},
        )
        report = validate_envelope_integrity(envelope, settings)

        shape = report.corrected_envelope.shape_params_envelope["K"]
        limb = report.corrected_envelope.limb_masses_envelope["upperarm"]
        assert (shape.min, shape.max) == (-1.0, 1.0)
        assert (limb.min, limb.max) == (0.8, 1.2)
        assert report.corrections_made == 2

    def test_non_finite_archetype_bounds_follow_repaired_range(self, settings):
        bad = EnvelopeRange(
            min=0.6,
            max=0.1,
            archetype_min=float("nan"),
            archetype_max=float("inf"),
            source=EnvelopeSource.ARCHETYPES,
        )
        report = validate_envelope_integrity(make_envelope({"K": bad}, {}), settings)

        fixed = report.corrected_envelope.shape_params_envelope["K"]
        assert (fixed.min, fixed.max) == (0.1, 0.6)
        assert (fixed.archetype_min, fixed.archetype_max) == (0.1, 0.6)
        assert report.corrections_made == 1
        assert "Non-finite archetype bounds in shape param range: K" in report.issues

    def test_finite_archetype_bounds_kept(self, settings):
        envelope = make_envelope({"K": make_range(0.2, 0.5).model_copy(update={"archetype_max": float("nan")})}, {})
        report = validate_envelope_integrity(envelope, settings)

        fixed = report.corrected_envelope.shape_params_envelope["K"]
        assert (fixed.archetype_min, fixed.archetype_max) == (0.2, 0.5)
        json.dumps(report.corrected_envelope.model_dump(mode="json"), allow_nan=False)

    def test_adversarial_ranges_end_sound(self, settings):
        nan, inf = float("nan"), float("inf")
        envelope = make_envelope(
            {
                "a": make_range(nan, 0.5),
                "b": make_range(inf, -inf),
                "c": make_range(0.5, -inf),
                "d": make_range(3.0, -3.0),
                "e": make_range(0.0, 0.1),
            },
            {
                "upperarm": make_range(nan, 0.5),
                "thigh": make_range(1.5, 1.0),
            },
        )
        report = validate_envelope_integrity(envelope, settings)

        assert report.is_valid is False
        assert report.corrections_made == 6
        assert_all_ranges_sound(report.corrected_envelope)
        assert report.corrected_envelope.shape_params_envelope["e"].max == 0.1

    def test_validator_idempotent_on_corrected_output(self, settings):
        envelope = make_envelope({"K": make_range(float("nan"), -5.0)}, {})
        first = validate_envelope_integrity(envelope, settings)
        second = validate_envelope_integrity(first.corrected_envelope, settings)

        assert second.is_valid is True
        assert second.corrections_made == 0

    def test_original_envelope_not_mutated(self, settings):
        envelope = make_envelope({"K": make_range(0.9, 0.1)}, {})
        validate_envelope_integrity(envelope, settings)
        assert envelope.shape_params_envelope["K"].min == 0.9
