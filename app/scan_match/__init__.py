"""
Scan Match Layer

Body Scan → Archetype Matching (K=5 Morphological Envelope)

This module answers: "Which catalog morphologies look like this body, and
within which bounds may the refinement step move its parameters?"

- Takes the measured profile from the scan (sex, BMI, semantic labels, indices)
- Filters the archetype catalog through strict categorical gates
  (sex and muscularity never relaxed, BMI relaxed step by step)
- Ranks survivors by weighted index distance and keeps the K closest
- Builds per-parameter bounds from their spread, clipped to catalog ranges
- Repairs any inverted or non-finite bound before it leaves the layer

PRINCIPLE: Zero muscular mismatch. An empty result beats a wrong archetype.

Version: scan_match_v1
"""

from .models import (
    Archetype,
    FilteringStats,
    K5Envelope,
    ScanMatchRequest,
    ScanMatchResponse,
    SelectionStrategy,
    UserQueryProfile,
)
from .catalog import InMemoryCatalogRepository, PostgresCatalogRepository
from .envelope import build_k5_envelope, validate_envelope_integrity
from .orchestrate import parse_scan_request, resolve_scan_match

__all__ = [
    "Archetype",
    "FilteringStats",
    "K5Envelope",
    "ScanMatchRequest",
    "ScanMatchResponse",
    "SelectionStrategy",
    "UserQueryProfile",
    "InMemoryCatalogRepository",
    "PostgresCatalogRepository",
    "build_k5_envelope",
    "validate_envelope_integrity",
    "parse_scan_request",
    "resolve_scan_match",
]

__version__ = "scan_match_v1"
