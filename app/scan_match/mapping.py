"""
Gender Mapping Resolver

Obtains the canonical per-sex mapping for a request. A repository failure
switches immediately to the hardcoded fallback (degraded mode); there is no
retry. Only when the fallback cannot serve the requested sex either does the
request fail.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from app.shared.hashing import short_hash

from .catalog import CatalogRepository
from .errors import MappingUnavailableError
from .fallback_mapping import FALLBACK_MAPPING_VERSION, get_hardcoded_mapping_fallback
from .models import GenderMapping, MappingMetadata, MappingSource, SexCode

logger = logging.getLogger(__name__)

CATALOG_MAPPING_VERSION = "v1.0-scan-match-catalog"

FallbackProvider = Callable[[], Optional[Dict[str, Dict[str, Any]]]]


def mapping_checksum(mapping: GenderMapping) -> str:
    """Checksum over the canonical ranges only (vocabularies excluded)."""
    return short_hash({
        "morph_values": mapping.morph_values,
        "limb_masses": mapping.limb_masses,
        "bmi_range": mapping.bmi_range,
    })


def _validate_record(record: Dict[str, Any]) -> GenderMapping:
    mapping = GenderMapping.model_validate(record)
    if not mapping.morph_values and not mapping.limb_masses:
        raise ValueError("mapping record has no shape parameter or limb mass ranges")
    return mapping


def _load_fallback(
    sex_code: SexCode,
    reason: str,
    fallback_provider: FallbackProvider,
) -> Tuple[GenderMapping, MappingMetadata]:
    logger.warning(
        f"DEGRADED MODE: using hardcoded {sex_code.value} mapping (reason={reason})"
    )
    try:
        tables = fallback_provider() or {}
        record = tables.get(sex_code.value)
        if record is None:
            raise MappingUnavailableError(
                f"No fallback mapping for sex '{sex_code.value}' after {reason}"
            )
        mapping = _validate_record(record)
    except (ValidationError, ValueError) as e:
        raise MappingUnavailableError(
            f"Fallback mapping for sex '{sex_code.value}' is invalid: {e}"
        ) from e

    metadata = MappingMetadata(
        mapping_source=MappingSource.HARDCODED_FALLBACK,
        fallback_used=True,
        fallback_reason=reason,
        mapping_version=FALLBACK_MAPPING_VERSION,
        checksum=mapping_checksum(mapping),
        total_archetypes_analyzed=0,
    )
    return mapping, metadata


def resolve_gender_mapping(
    repository: CatalogRepository,
    sex_code: SexCode,
    fallback_provider: FallbackProvider = get_hardcoded_mapping_fallback,
) -> Tuple[GenderMapping, MappingMetadata]:
    """
    Resolve the mapping for `sex_code`.

    Fallback reasons:
    - repository_error: the repository raised
    - mapping_record_missing: the repository had no record for this sex
    - mapping_record_invalid: the record failed validation

    Raises:
        MappingUnavailableError: the fallback cannot serve this sex either
    """
    try:
        record = repository.get_gender_mapping(sex_code)
    except Exception as e:
        logger.warning(f"Gender mapping read failed for {sex_code.value}: {type(e).__name__}: {e}")
        return _load_fallback(sex_code, "repository_error", fallback_provider)

    if record is None:
        return _load_fallback(sex_code, "mapping_record_missing", fallback_provider)

    try:
        mapping = _validate_record(record)
    except (ValidationError, ValueError) as e:
        logger.warning(f"Gender mapping record for {sex_code.value} is invalid: {e}")
        return _load_fallback(sex_code, "mapping_record_invalid", fallback_provider)

    metadata = MappingMetadata(
        mapping_source=MappingSource.CATALOG,
        fallback_used=False,
        mapping_version=CATALOG_MAPPING_VERSION,
        checksum=mapping_checksum(mapping),
        total_archetypes_analyzed=int(record.get("total_archetypes_analyzed") or 0),
    )
    return mapping, metadata
