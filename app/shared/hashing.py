"""
Canonical Hashing Layer
Single source of truth for checksums on mappings, envelopes and selections.
"""

import hashlib
import json
import math
from typing import Any

# Fields to exclude from hashing (volatile/generated)
VOLATILE_FIELDS = frozenset([
    "generated_at",
    "envelope_generation_timestamp",
    "timestamp",
    "trace_id",
    "processing_time_ms",
])


def canonicalize(obj: Any, exclude_volatile: bool = True) -> str:
    """
    Convert object to canonical JSON string.
    Deterministic: same input always produces same output.
    """
    def _clean(o: Any) -> Any:
        if hasattr(o, "model_dump"):
            o = o.model_dump(mode="json")
        if isinstance(o, dict):
            return {
                str(k): _clean(v)
                for k, v in sorted(o.items(), key=lambda item: str(item[0]))
                if not (exclude_volatile and k in VOLATILE_FIELDS)
            }
        elif isinstance(o, (list, tuple)):
            return [_clean(i) for i in o]
        elif isinstance(o, float):
            if not math.isfinite(o):
                return str(o)
            # Normalize floats to avoid precision issues
            return round(o, 10)
        return o

    cleaned = _clean(obj)
    return json.dumps(cleaned, sort_keys=True, separators=(',', ':'), ensure_ascii=True)


def canonicalize_and_hash(obj: Any, exclude_volatile: bool = True) -> str:
    """
    Returns: "sha256:<64-char-hex>"
    """
    canonical = canonicalize(obj, exclude_volatile)
    digest = hashlib.sha256(canonical.encode('utf-8')).hexdigest()
    return f"sha256:{digest}"


def short_hash(obj: Any, length: int = 16) -> str:
    """Truncated form used in response payloads: "sha256:<16-char-hex>"."""
    return canonicalize_and_hash(obj)[:7 + length]
