"""
Scan Match Models

Pydantic models for archetype matching inputs, the K=5 morphological
envelope, and the audit/diagnostics returned with every scan-match run.

This layer takes a measured body profile and resolves it against the
archetype catalog.

Version: scan_match_v1
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, StrictFloat, StrictInt, field_validator

from app.shared.hashing import short_hash


SCAN_MATCH_VERSION = "scan_match_v1"
ENVELOPE_VERSION = "v1.0-k5-envelope"

StrictNumber = Union[StrictInt, StrictFloat]


class SexCode(str, Enum):
    MALE = "male"
    FEMALE = "female"

    @classmethod
    def from_gender(cls, gender: Optional[str]) -> Optional["SexCode"]:
        """Map the catalog/request gender label (masculine/feminine) to a sex code."""
        if gender is None:
            return None
        value = str(gender).strip().lower()
        if value in ("masculine", "male", "mas"):
            return cls.MALE
        if value in ("feminine", "female", "fem"):
            return cls.FEMALE
        return None

    @property
    def gender_label(self) -> str:
        return "masculine" if self is SexCode.MALE else "feminine"


class SelectionStrategy(str, Enum):
    """Which relaxation path the filter pipeline took."""
    STRICT = "strict_bmi_muscular_gated"
    BMI_RELAXED = "bmi_relaxed_muscular_gated"
    LOGICAL_FAILURE = "logical_failure_no_suitable_archetypes"
    SERVER_ERROR = "server_error_fallback"


class MatchOutcome(str, Enum):
    SUCCESS = "success"
    LOGICAL_FAILURE = "logical_failure"


class MappingSource(str, Enum):
    CATALOG = "catalog"
    HARDCODED_FALLBACK = "hardcoded_fallback"


class EnvelopeSource(str, Enum):
    ARCHETYPES = "archetypes"
    CATALOG_FALLBACK = "catalog_fallback"


# =============================================================================
# CATALOG RECORDS
# =============================================================================

class ValueRange(BaseModel):
    """Canonical {min, max} range for one parameter."""
    min: float
    max: float

    class Config:
        extra = "ignore"


class BmiRange(BaseModel):
    min: float
    max: float

    class Config:
        extra = "forbid"

    def contains(self, bmi: float, tolerance: float = 0.0) -> bool:
        return self.min - tolerance <= bmi <= self.max + tolerance


class Archetype(BaseModel):
    """
    A catalog reference morphology.

    Built by the repository boundary (see catalog.parse_archetype_row); the
    numeric maps only ever hold finite floats once they get here.
    """
    id: str
    name: str = ""
    sex_code: SexCode
    bmi_range: Optional[BmiRange] = None
    obesity_category: Optional[str] = None
    muscularity_category: Optional[str] = None
    level: Optional[str] = None
    morphotype_code: Optional[str] = None
    morph_values: Dict[str, float] = Field(default_factory=dict)
    limb_masses: Dict[str, float] = Field(default_factory=dict)
    morph_index: Optional[float] = None
    muscle_index: Optional[float] = None
    distance: Optional[float] = Field(
        default=None,
        description="Weighted index distance to the user, set by ranking"
    )

    class Config:
        extra = "forbid"
        frozen = True


class SemanticProfile(BaseModel):
    """User's semantic classification from the scan (vision + DB validation)."""
    obesity_category: Optional[str] = None
    muscularity_category: Optional[str] = None
    level: Optional[str] = None
    morphotype_code: Optional[str] = None

    class Config:
        extra = "forbid"
        frozen = True


class UserQueryProfile(BaseModel):
    """Resolved per-request query. Never mutated after construction."""
    sex_code: SexCode
    estimated_bmi: float
    semantic_profile: SemanticProfile
    morph_index: float
    muscle_index: float
    requested_limit: int = Field(ge=1)

    class Config:
        extra = "forbid"
        frozen = True


class GenderMapping(BaseModel):
    """
    Per-sex canonical ranges for every shape parameter and limb mass.

    Envelope keys are exactly the keys of morph_values and limb_masses.
    """
    morph_values: Dict[str, ValueRange]
    limb_masses: Dict[str, ValueRange]
    bmi_range: Optional[ValueRange] = None
    height_range: Optional[ValueRange] = None
    weight_range: Optional[ValueRange] = None
    morph_index_range: Optional[ValueRange] = None
    muscle_index_range: Optional[ValueRange] = None
    levels: List[str] = Field(default_factory=list)
    obesity: List[str] = Field(default_factory=list)
    morphotypes: List[str] = Field(default_factory=list)
    muscularity: List[str] = Field(default_factory=list)

    class Config:
        extra = "ignore"


class MappingMetadata(BaseModel):
    """Provenance of the gender mapping used for envelope construction."""
    mapping_source: MappingSource
    fallback_used: bool
    fallback_reason: Optional[str] = None
    mapping_version: str = "v1.0-scan-match"
    checksum: Optional[str] = None
    generated_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    total_archetypes_analyzed: int = 0

    class Config:
        extra = "forbid"


# =============================================================================
# SELECTION
# =============================================================================

class FilteringStats(BaseModel):
    """
    Funnel counters, one per pipeline stage, in stage order.

    Each counter is <= the one before it.
    """
    total: int = 0
    after_sex_filter: int = 0
    after_muscular_gating: int = 0
    after_bmi_filter: int = 0
    after_morphotype_filter: int = 0
    after_semantic_filter: int = 0
    final_selected: int = 0
    bmi_relaxation_applied: bool = False
    bmi_relaxation_steps: int = 0
    bmi_tolerance_used: float = 0.0
    morphotype_filter_applied: bool = False
    semantic_filter_applied: bool = False

    class Config:
        extra = "forbid"

    def funnel(self) -> List[int]:
        return [
            self.total,
            self.after_sex_filter,
            self.after_muscular_gating,
            self.after_bmi_filter,
            self.after_morphotype_filter,
            self.after_semantic_filter,
            self.final_selected,
        ]

    def is_monotonic(self) -> bool:
        counts = self.funnel()
        return all(later <= earlier for earlier, later in zip(counts, counts[1:]))


class SelectionResult(BaseModel):
    selected_archetypes: List[Archetype] = Field(
        description="Ordered by ascending distance"
    )
    strategy_used: SelectionStrategy
    semantic_coherence_score: float = Field(ge=0.0, le=1.0)
    filtering_stats: FilteringStats

    class Config:
        extra = "forbid"


# =============================================================================
# ENVELOPE
# =============================================================================

class EnvelopeRange(BaseModel):
    min: float
    max: float
    archetype_min: float
    archetype_max: float
    source: EnvelopeSource

    class Config:
        extra = "forbid"


class EnvelopeMetadata(BaseModel):
    archetypes_used: List[str]
    total_keys_processed: int
    keys_with_archetype_data: int
    keys_using_db_fallback: int
    envelope_generation_timestamp: str
    envelope_version: str = ENVELOPE_VERSION
    trace_id: Optional[str] = None

    class Config:
        extra = "forbid"

    @property
    def fallback_ratio(self) -> float:
        """Share of keys that could not be constrained by archetypes."""
        if self.total_keys_processed == 0:
            return 0.0
        return self.keys_using_db_fallback / self.total_keys_processed


class K5Envelope(BaseModel):
    """Dynamic per-parameter bounds for the downstream AI refinement step."""
    shape_params_envelope: Dict[str, EnvelopeRange]
    limb_masses_envelope: Dict[str, EnvelopeRange]
    envelope_metadata: EnvelopeMetadata

    class Config:
        extra = "forbid"


class EnvelopeIntegrityReport(BaseModel):
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    corrections_made: int = 0
    corrected_envelope: Optional[K5Envelope] = Field(
        default=None,
        description="Only set when at least one correction was made"
    )

    class Config:
        extra = "forbid"


# =============================================================================
# REQUEST / RESPONSE
# =============================================================================

class MatchingConfigInput(BaseModel):
    gender: Optional[str] = Field(
        default=None,
        description="masculine or feminine"
    )
    limit: Optional[StrictNumber] = Field(
        default=None,
        description="K, number of archetypes to select (default 5, floored)"
    )

    class Config:
        extra = "allow"


class ExtractedDataInput(BaseModel):
    estimated_bmi: Optional[StrictNumber] = None

    class Config:
        extra = "allow"


class SemanticProfileInput(BaseModel):
    obesity: Optional[str] = None
    muscularity: Optional[str] = None
    level: Optional[str] = None
    morphotype: Optional[str] = None

    class Config:
        extra = "allow"


class UserSemanticIndicesInput(BaseModel):
    morph_index: Optional[StrictNumber] = None
    muscle_index: Optional[StrictNumber] = None

    class Config:
        extra = "allow"


class ScanMatchRequest(BaseModel):
    """
    Scan-match request as sent by the body-scan pipeline.

    Everything is optional at the model level so that missing fields are
    reported together by parse_scan_request instead of one at a time.
    """
    matching_config: MatchingConfigInput = Field(default_factory=MatchingConfigInput)
    extracted_data: ExtractedDataInput = Field(default_factory=ExtractedDataInput)
    semantic_profile: SemanticProfileInput = Field(default_factory=SemanticProfileInput)
    user_semantic_indices: UserSemanticIndicesInput = Field(
        default_factory=UserSemanticIndicesInput
    )

    class Config:
        extra = "allow"

    @field_validator(
        "matching_config",
        "extracted_data",
        "semantic_profile",
        "user_semantic_indices",
        mode="before",
    )
    @classmethod
    def null_section_is_empty(cls, v):
        """An explicit null section means the same as an omitted one."""
        return {} if v is None else v


class UserSemanticProfileEcho(BaseModel):
    """Echo of the resolved query, for client-side validation."""
    morph_index: float = 0.0
    muscle_index: float = 0.0
    estimated_bmi: Optional[float] = None
    obesity: Optional[str] = None
    muscularity: Optional[str] = None
    level: Optional[str] = None
    morphotype: Optional[str] = None
    sex: Optional[SexCode] = None
    requested_limit: Optional[int] = None

    class Config:
        extra = "forbid"

    @classmethod
    def from_profile(cls, profile: UserQueryProfile) -> "UserSemanticProfileEcho":
        semantic = profile.semantic_profile
        return cls(
            morph_index=profile.morph_index,
            muscle_index=profile.muscle_index,
            estimated_bmi=profile.estimated_bmi,
            obesity=semantic.obesity_category,
            muscularity=semantic.muscularity_category,
            level=semantic.level,
            morphotype=semantic.morphotype_code,
            sex=profile.sex_code,
            requested_limit=profile.requested_limit,
        )


class ScanMatchDiagnostics(BaseModel):
    """Structured diagnostics; the caller decides how to emit them."""
    outcome: Optional[MatchOutcome] = None
    processing_time_ms: float = 0.0
    selection_strategy: SelectionStrategy
    muscular_gating_applied: bool = True
    bmi_relaxation_applied: bool = False
    morphotype_filter_applied: bool = False
    semantic_filter_applied: bool = False
    k5_envelope_built: bool = False
    envelope_integrity_valid: Optional[bool] = None
    envelope_fallback_ratio: Optional[float] = None
    degraded_mode: bool = False
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    class Config:
        extra = "forbid"


class ScanMatchResponse(BaseModel):
    """
    Complete output of the scan-match layer.

    Same shape for success, logical failure and server error so callers can
    rely on a stable schema.
    """
    selected_archetypes: List[Archetype] = Field(default_factory=list)
    k5_envelope: Optional[K5Envelope] = None
    strategy_used: SelectionStrategy
    semantic_coherence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    filtering_stats: FilteringStats = Field(default_factory=FilteringStats)
    mapping_metadata: Optional[MappingMetadata] = None
    user_semantic_profile: UserSemanticProfileEcho = Field(
        default_factory=UserSemanticProfileEcho
    )
    envelope_integrity: Optional[EnvelopeIntegrityReport] = None
    match_hash: Optional[str] = None
    diagnostics: ScanMatchDiagnostics
    version: str = SCAN_MATCH_VERSION
    error: Optional[str] = None
    details: Optional[Any] = None

    class Config:
        extra = "forbid"

    @classmethod
    def compute_hash(
        cls,
        selected: List[Archetype],
        strategy: SelectionStrategy,
    ) -> str:
        """
        Deterministic hash of the selection.

        Archetype order is part of the hash since it is a ranking.
        """
        return short_hash({
            "selected": [a.id for a in selected],
            "strategy": strategy.value,
        })


class ScanMatchHealthResponse(BaseModel):
    status: str = "ok"
    module: str = "scan_match"
    version: str = SCAN_MATCH_VERSION
    envelope_version: str = ENVELOPE_VERSION
    database_configured: bool = False
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
