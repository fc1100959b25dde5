"""
Archetype Catalog Repository

Read-only access to the morph_archetypes catalog and the per-sex gender
mapping derived from it.

Rows come back loosely typed: numeric maps may be dicts or JSON text, BMI
ranges may be arrays, objects or text. parse_archetype_row is the single
typed deserialization step. It fails closed: a bad field is dropped and
logged, never raised mid-computation.
"""

import json
import logging
import math
import os
from typing import Any, Dict, Iterable, List, Optional, Protocol

import psycopg2
from psycopg2.extras import RealDictCursor

from .errors import CatalogUnavailableError
from .models import Archetype, BmiRange, SexCode

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")

ARCHETYPE_COLUMNS = """
    id, name, gender, obesity, muscularity, level, morphotype,
    morph_index, muscle_index, bmi_range, height_range, weight_range,
    morph_values, limb_masses
"""


class CatalogRepository(Protocol):
    """What the scan-match pipeline needs from the catalog."""

    def list_archetypes(self) -> List[Dict[str, Any]]:
        ...

    def get_gender_mapping(self, sex_code: SexCode) -> Optional[Dict[str, Any]]:
        ...


# =============================================================================
# ROW PARSING
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_finite_number(value: Any) -> Optional[float]:
    """Finite int/float as float, anything else None. Booleans are not numbers."""
    if not _is_number(value):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    if not math.isfinite(number):
        return None
    return number


def _decode_json_text(raw: Any, field_name: str, archetype_id: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Archetype {archetype_id}: unparseable {field_name} ({e}), field excluded")
        return None


def parse_numeric_map(raw: Any, field_name: str, archetype_id: Any = None) -> Dict[str, float]:
    """
    Decode a per-archetype numeric map.

    Unparseable text yields {}. Individual non-numeric or non-finite entries
    are dropped one key at a time, so a single bad key never hides the others.
    """
    data = _decode_json_text(raw, field_name, archetype_id)
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(
            f"Archetype {archetype_id}: {field_name} is {type(data).__name__}, expected object"
        )
        return {}

    parsed: Dict[str, float] = {}
    dropped: List[str] = []
    for key, value in data.items():
        number = parse_finite_number(value)
        if number is None:
            dropped.append(str(key))
            continue
        parsed[str(key)] = number

    if dropped:
        logger.warning(
            f"Archetype {archetype_id}: dropped non-numeric {field_name} keys {sorted(dropped)}"
        )
    return parsed


def _coerce_bound(value: Any) -> Optional[float]:
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    return parse_finite_number(value)


def parse_bmi_range(raw: Any, archetype_id: Any = None, field_name: str = "bmi_range") -> Optional[BmiRange]:
    """
    Accepts [min, max], {"min": .., "max": ..} or JSON text of either.

    Bounds stored as numeric strings ("18.5") are accepted, as Postgres
    numeric arrays often arrive that way. Anything else is None.
    """
    data = _decode_json_text(raw, field_name, archetype_id)
    if isinstance(data, dict):
        low, high = data.get("min"), data.get("max")
    elif isinstance(data, (list, tuple)) and len(data) == 2:
        low, high = data
    else:
        if data is not None:
            logger.warning(f"Archetype {archetype_id}: invalid {field_name} {raw!r}")
        return None

    low, high = _coerce_bound(low), _coerce_bound(high)
    if low is None or high is None:
        logger.warning(f"Archetype {archetype_id}: non-numeric {field_name} bounds {raw!r}")
        return None
    if low > high:
        low, high = high, low
    return BmiRange(min=low, max=high)


def _optional_label(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_archetype_row(row: Dict[str, Any]) -> Optional[Archetype]:
    """
    Typed view of one catalog row.

    Returns None (and logs) when the row cannot be attributed: missing id or
    unknown gender. Every other anomaly only drops the affected field.
    """
    archetype_id = row.get("id")
    if archetype_id is None or str(archetype_id).strip() == "":
        logger.warning(f"Skipping catalog row without id: name={row.get('name')!r}")
        return None

    sex_code = SexCode.from_gender(row.get("gender") or row.get("sex_code"))
    if sex_code is None:
        logger.warning(f"Skipping archetype {archetype_id}: unknown gender {row.get('gender')!r}")
        return None

    return Archetype(
        id=str(archetype_id),
        name=str(row.get("name") or ""),
        sex_code=sex_code,
        bmi_range=parse_bmi_range(row.get("bmi_range"), archetype_id),
        obesity_category=_optional_label(row.get("obesity")),
        muscularity_category=_optional_label(row.get("muscularity")),
        level=_optional_label(row.get("level")),
        morphotype_code=_optional_label(row.get("morphotype")),
        morph_values=parse_numeric_map(row.get("morph_values"), "morph_values", archetype_id),
        limb_masses=parse_numeric_map(row.get("limb_masses"), "limb_masses", archetype_id),
        morph_index=parse_finite_number(row.get("morph_index")),
        muscle_index=parse_finite_number(row.get("muscle_index")),
    )


def parse_catalog(rows: Iterable[Dict[str, Any]]) -> List[Archetype]:
    """Parse rows in catalog order, skipping the ones that cannot be attributed."""
    archetypes = []
    for row in rows:
        archetype = parse_archetype_row(row)
        if archetype is not None:
            archetypes.append(archetype)
    return archetypes


# =============================================================================
# GENDER MAPPING DERIVATION
# =============================================================================

def _widen(ranges: Dict[str, Dict[str, float]], key: str, value: float) -> None:
    current = ranges.get(key)
    if current is None:
        ranges[key] = {"min": value, "max": value}
    else:
        current["min"] = min(current["min"], value)
        current["max"] = max(current["max"], value)


def _scalar_range(values: List[float]) -> Optional[Dict[str, float]]:
    if not values:
        return None
    return {"min": min(values), "max": max(values)}


def _range_bounds(raw: Any, field_name: str, archetype_id: Any) -> List[float]:
    parsed = parse_bmi_range(raw, archetype_id, field_name)
    if parsed is None:
        return []
    return [parsed.min, parsed.max]


def build_gender_mapping(rows: Iterable[Dict[str, Any]], sex_code: SexCode) -> Optional[Dict[str, Any]]:
    """
    Derive the canonical mapping record for one sex from raw catalog rows.

    Ranges are min/max over every archetype of that sex; vocabularies are
    the sorted distinct labels. None when the catalog has no such archetype.
    """
    sex_rows = [r for r in rows if SexCode.from_gender(r.get("gender")) == sex_code]
    if not sex_rows:
        return None

    morph_values: Dict[str, Dict[str, float]] = {}
    limb_masses: Dict[str, Dict[str, float]] = {}
    bmi, height, weight, morph_idx, muscle_idx = [], [], [], [], []

    for row in sex_rows:
        archetype_id = row.get("id")
        for key, value in parse_numeric_map(row.get("morph_values"), "morph_values", archetype_id).items():
            _widen(morph_values, key, value)
        for key, value in parse_numeric_map(row.get("limb_masses"), "limb_masses", archetype_id).items():
            _widen(limb_masses, key, value)

        bmi.extend(_range_bounds(row.get("bmi_range"), "bmi_range", archetype_id))
        height.extend(_range_bounds(row.get("height_range"), "height_range", archetype_id))
        weight.extend(_range_bounds(row.get("weight_range"), "weight_range", archetype_id))

        morph_index = parse_finite_number(row.get("morph_index"))
        if morph_index is not None:
            morph_idx.append(morph_index)
        muscle_index = parse_finite_number(row.get("muscle_index"))
        if muscle_index is not None:
            muscle_idx.append(muscle_index)

    def _labels(column: str) -> List[str]:
        return sorted({str(r[column]).strip() for r in sex_rows if r.get(column)})

    return {
        "levels": _labels("level"),
        "obesity": _labels("obesity"),
        "morphotypes": _labels("morphotype"),
        "muscularity": _labels("muscularity"),
        "bmi_range": _scalar_range(bmi),
        "height_range": _scalar_range(height),
        "weight_range": _scalar_range(weight),
        "morph_index_range": _scalar_range(morph_idx),
        "muscle_index_range": _scalar_range(muscle_idx),
        "morph_values": morph_values,
        "limb_masses": limb_masses,
        "total_archetypes_analyzed": len(sex_rows),
    }


# =============================================================================
# REPOSITORIES
# =============================================================================

class PostgresCatalogRepository:
    """
    Catalog backed by the morph_archetypes table.

    One connection per call; nothing is cached between requests.
    """

    def __init__(self, database_url: Optional[str] = None):
        self._database_url = database_url or DATABASE_URL

    def _get_conn(self):
        if not self._database_url:
            raise CatalogUnavailableError("DATABASE_URL is not configured")
        try:
            return psycopg2.connect(self._database_url, cursor_factory=RealDictCursor)
        except psycopg2.Error as e:
            logger.error(f"Database connection error: {e}")
            raise CatalogUnavailableError(f"Database connection failed: {e}") from e

    def _fetch(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(query, params)
            rows = [dict(row) for row in cur.fetchall()]
            cur.close()
            return rows
        except psycopg2.Error as e:
            logger.error(f"Catalog query failed: {e}")
            raise CatalogUnavailableError(f"Catalog query failed: {e}") from e
        finally:
            conn.close()

    def list_archetypes(self) -> List[Dict[str, Any]]:
        return self._fetch(f"SELECT {ARCHETYPE_COLUMNS} FROM morph_archetypes ORDER BY id")

    def get_gender_mapping(self, sex_code: SexCode) -> Optional[Dict[str, Any]]:
        rows = self._fetch(
            f"SELECT {ARCHETYPE_COLUMNS} FROM morph_archetypes WHERE gender = %s ORDER BY id",
            (sex_code.gender_label,),
        )
        return build_gender_mapping(rows, sex_code)


class InMemoryCatalogRepository:
    """
    Catalog held in memory, for tests and local runs.

    Mapping records are taken from `mappings` when given, otherwise derived
    from the rows the same way the Postgres repository does.
    """

    def __init__(
        self,
        rows: Optional[List[Dict[str, Any]]] = None,
        mappings: Optional[Dict[SexCode, Optional[Dict[str, Any]]]] = None,
    ):
        self._rows = list(rows or [])
        self._mappings = mappings

    def list_archetypes(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._rows]

    def get_gender_mapping(self, sex_code: SexCode) -> Optional[Dict[str, Any]]:
        if self._mappings is not None:
            return self._mappings.get(sex_code)
        return build_gender_mapping(self._rows, sex_code)
