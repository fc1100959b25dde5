"""
Scan Match Configuration

Tuning constants for the filter pipeline, ranking and envelope builder,
read from the environment. Defaults are pinned by regression tests.
"""

import logging
import math
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ScanMatchSettings:
    default_limit: int = 5
    max_limit: int = 20

    # BMI containment tolerance, then relaxation step/bound when nothing fits
    bmi_epsilon: float = 0.5
    bmi_relaxation_step: float = 2.0
    bmi_max_relaxation_steps: int = 4

    # Distance weights: d = w1*|dMorph| + w2*|dMuscle|
    morph_index_weight: float = 0.5
    muscle_index_weight: float = 0.5

    shape_margin_ratio: float = 0.10
    limb_margin_ratio: float = 0.05

    # Class defaults used to repair non-finite envelope bounds
    shape_default_min: float = -1.0
    shape_default_max: float = 1.0
    limb_default_min: float = 0.8
    limb_default_max: float = 1.2

    def resolve_limit(self, requested: Optional[float]) -> int:
        """
        K from the request; 0, missing or non-finite means the default.

        Fractional limits are floored. The result is always in [1, max_limit].
        """
        default = max(1, min(self.default_limit, self.max_limit))
        if not requested:
            return default
        if isinstance(requested, float):
            if not math.isfinite(requested):
                return default
            requested = math.floor(requested)
        return max(1, min(int(requested), self.max_limit))


def _env(name: str, cast: Callable[[str], T], default: T, minimum: Optional[float] = None) -> T:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}={raw!r}, using default {default}")
        return default
    if isinstance(value, float) and not math.isfinite(value):
        logger.warning(f"Non-finite value for {name}={raw!r}, using default {default}")
        return default
    if minimum is not None and value < minimum:
        logger.warning(f"{name}={value} below minimum {minimum}, using default {default}")
        return default
    return value


def load_settings() -> ScanMatchSettings:
    """Build settings from SCAN_MATCH_* environment variables."""
    max_limit = _env("SCAN_MATCH_MAX_LIMIT", int, 20, minimum=1)
    default_limit = _env("SCAN_MATCH_DEFAULT_LIMIT", int, 5, minimum=1)
    if default_limit > max_limit:
        logger.warning(
            f"SCAN_MATCH_DEFAULT_LIMIT={default_limit} above SCAN_MATCH_MAX_LIMIT={max_limit}, clamped"
        )
        default_limit = max_limit

    return ScanMatchSettings(
        default_limit=default_limit,
        max_limit=max_limit,
        bmi_epsilon=_env("SCAN_MATCH_BMI_EPSILON", float, 0.5, minimum=0),
        bmi_relaxation_step=_env("SCAN_MATCH_BMI_RELAXATION_STEP", float, 2.0, minimum=0),
        bmi_max_relaxation_steps=_env("SCAN_MATCH_BMI_MAX_RELAXATION_STEPS", int, 4, minimum=0),
        morph_index_weight=_env("SCAN_MATCH_MORPH_INDEX_WEIGHT", float, 0.5, minimum=0),
        muscle_index_weight=_env("SCAN_MATCH_MUSCLE_INDEX_WEIGHT", float, 0.5, minimum=0),
        shape_margin_ratio=_env("SCAN_MATCH_SHAPE_MARGIN_RATIO", float, 0.10, minimum=0),
        limb_margin_ratio=_env("SCAN_MATCH_LIMB_MARGIN_RATIO", float, 0.05, minimum=0),
    )


@lru_cache(maxsize=1)
def get_settings() -> ScanMatchSettings:
    """Cached environment settings for the HTTP layer."""
    return load_settings()
