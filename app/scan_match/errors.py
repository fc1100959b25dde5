"""
Scan Match Errors

Every failure the layer can surface, with the HTTP status the router
answers with. Envelope integrity problems are not here: they are corrected
in place and reported as issues on a successful response.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ScanMatchErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_MATCH = "NO_MATCH"
    MAPPING_UNAVAILABLE = "MAPPING_UNAVAILABLE"
    CATALOG_UNAVAILABLE = "CATALOG_UNAVAILABLE"


class ScanMatchError(Exception):
    """Base exception for scan-match failures."""

    def __init__(self, error_code: ScanMatchErrorCode, message: str, http_code: int = 500):
        self.error_code = error_code
        self.message = message
        self.http_code = http_code
        super().__init__(f"{error_code.value}: {message}")


class ScanValidationError(ScanMatchError):
    """Required field missing or wrong type. No computation is attempted."""

    def __init__(
        self,
        message: str,
        fields: Optional[List[str]] = None,
        received: Optional[Dict[str, Any]] = None,
    ):
        self.fields = fields or []
        self.received = received or {}
        super().__init__(ScanMatchErrorCode.VALIDATION_ERROR, message, http_code=400)


class NoMatchError(ScanMatchError):
    """
    Zero candidates survived filtering.

    A valid business outcome, not a fault; `response` carries the full
    filtering stats for diagnosis.
    """

    def __init__(self, message: str, response=None):
        self.response = response
        super().__init__(ScanMatchErrorCode.NO_MATCH, message, http_code=422)


class MappingUnavailableError(ScanMatchError):
    """Neither the catalog mapping nor the hardcoded fallback produced data."""

    def __init__(self, message: str):
        super().__init__(ScanMatchErrorCode.MAPPING_UNAVAILABLE, message, http_code=500)


class CatalogUnavailableError(ScanMatchError):
    """The archetype catalog itself could not be read."""

    def __init__(self, message: str):
        super().__init__(ScanMatchErrorCode.CATALOG_UNAVAILABLE, message, http_code=500)
