"""
Scan Match Endpoints

POST /api/v1/scan-match/resolve            - Match a scan to K archetypes + K5 envelope
POST /api/v1/scan-match/envelope/validate  - Integrity check/repair of an envelope
GET  /api/v1/scan-match/health             - Health check

Status mapping for /resolve:
- 200 success
- 400 missing or wrong-typed required fields
- 422 no archetype survived filtering (logical failure, full stats returned)
- 500 mapping/catalog unavailable or unexpected error (empty well-formed body)
"""

import logging
import time
from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from .catalog import DATABASE_URL, CatalogRepository, PostgresCatalogRepository
from .config import ScanMatchSettings, get_settings
from .envelope import validate_envelope_integrity
from .errors import ScanMatchError, ScanValidationError
from .fallback_mapping import get_hardcoded_mapping_fallback
from .mapping import FallbackProvider
from .models import EnvelopeIntegrityReport, K5Envelope, ScanMatchHealthResponse
from .orchestrate import (
    build_error_response,
    parse_scan_request,
    resolve_scan_match,
    validation_error_details,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/scan-match",
    tags=["scan-match"],
)


def get_repository() -> CatalogRepository:
    return PostgresCatalogRepository()


def get_fallback_provider() -> FallbackProvider:
    return get_hardcoded_mapping_fallback


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@router.get("/health", response_model=ScanMatchHealthResponse)
async def scan_match_health():
    """Health check for the scan-match module. Does not touch the database."""
    return ScanMatchHealthResponse(database_configured=bool(DATABASE_URL))


@router.post("/resolve")
def resolve_scan_match_endpoint(
    payload: Any = Body(default=None),
    repository: CatalogRepository = Depends(get_repository),
    fallback_provider: FallbackProvider = Depends(get_fallback_provider),
    settings: ScanMatchSettings = Depends(get_settings),
):
    """
    Resolve a body scan against the archetype catalog.

    The body is validated here rather than by a typed parameter so that
    missing fields answer 400; 422 is reserved for "no suitable archetype".
    """
    started = time.perf_counter()
    profile = None
    try:
        profile = parse_scan_request(payload, settings)
        outcome = resolve_scan_match(profile, repository, settings, fallback_provider=fallback_provider)
        return JSONResponse(
            status_code=outcome.http_status,
            content=outcome.response.model_dump(mode="json"),
        )

    except ScanValidationError as e:
        logger.warning(f"Scan match request rejected: {e.message}")
        return JSONResponse(status_code=e.http_code, content=validation_error_details(e))

    except ScanMatchError as e:
        logger.error(f"Scan match failed: {e}")
        response = build_error_response(e, profile, processing_time_ms=_elapsed_ms(started))
        return JSONResponse(status_code=e.http_code, content=response.model_dump(mode="json"))

    except Exception as e:
        logger.exception(f"Unexpected scan match error: {type(e).__name__}: {e}")
        response = build_error_response(e, profile, processing_time_ms=_elapsed_ms(started))
        return JSONResponse(status_code=500, content=response.model_dump(mode="json"))


@router.post("/envelope/validate", response_model=EnvelopeIntegrityReport)
async def validate_envelope_endpoint(
    envelope: K5Envelope,
    settings: ScanMatchSettings = Depends(get_settings),
):
    """
    Run the integrity validator on a caller-supplied envelope.

    Inverted and non-finite ranges are repaired; the corrected envelope is
    returned only when something was fixed.
    """
    return validate_envelope_integrity(envelope, settings)
