"""
Hardcoded Gender Mapping Fallback

Canonical parameter ranges used in degraded mode, when the catalog-backed
mapping cannot be read. Snapshot of the production catalog.
"""

import copy
from typing import Any, Dict

FALLBACK_MAPPING_VERSION = "v1.0-scan-match-fallback"


def _r(min_value: float, max_value: float) -> Dict[str, float]:
    return {"min": min_value, "max": max_value}


HARDCODED_MAPPING_FALLBACK: Dict[str, Dict[str, Any]] = {
    "male": {
        "levels": ["Émacié", "Mince", "Normal", "Obèse", "Obèse morbide", "Obèse sévère", "Surpoids"],
        "obesity": ["Non obèse", "Obèse", "Obésité morbide", "Surpoids"],
        "morphotypes": ["OVA", "POI", "POM", "REC", "SAB", "TRI"],
        "muscularity": ["Atrophié sévère", "Légèrement atrophié", "Moyen musclé", "Musclé", "Normal costaud"],
        "bmi_range": _r(15.9, 48.1),
        "height_range": _r(164, 191),
        "weight_range": _r(50, 175),
        "morph_index_range": _r(-0.6, 2),
        "muscle_index_range": _r(-0.92, 1.45),
        "morph_values": {
            "bigHips": _r(-0.5, 1),
            "nipples": _r(0, 0),
            "assLarge": _r(-0.6, 1.1),
            "dollBody": _r(0, 0.7),
            "pregnant": _r(0, 0),
            "animeNeck": _r(0, 0.8),
            "emaciated": _r(-2.2, 1.5),
            "animeWaist": _r(-1, 1),
            "breastsSag": _r(-1, 1.3),
            "pearFigure": _r(-0.5, 2),
            "narrowWaist": _r(-2, 0),
            "superBreast": _r(-0.5, 0),
            "breastsSmall": _r(0, 2),
            "animeProportion": _r(0, 0),
            "bodybuilderSize": _r(-0.8, 1.5),
            "bodybuilderDetails": _r(-1.5, 2.5),
            "FaceLowerEyelashLength": _r(0, 1),
        },
        "limb_masses": {
            "gate": _r(1, 1),
            "armMass": _r(0.3, 1.8),
            "calfMass": _r(0.3, 1.75),
            "neckMass": _r(0.2, 1.6),
            "thighMass": _r(0.4, 1.95),
            "torsoMass": _r(0.3, 1.95),
            "forearmMass": _r(0.2, 1.6),
        },
    },
    "female": {
        "levels": ["Émacié", "Normal", "Obèse", "Obèse morbide", "Obèse sévère", "Surpoids"],
        "obesity": ["Non obèse", "Obèse", "Obésité morbide", "Surpoids"],
        "morphotypes": ["OVA", "POI", "POM", "REC", "SAB", "TRI"],
        "muscularity": ["Atrophiée sévère", "Moins musclée", "Moyennement musclée", "Musclée", "Normal costaud"],
        "bmi_range": _r(16.5, 47),
        "height_range": _r(158, 178),
        "weight_range": _r(43, 140),
        "morph_index_range": _r(-0.16, 1.92),
        "muscle_index_range": _r(-0.79, 1.08),
        "morph_values": {
            "bigHips": _r(-1, 0.9),
            "nipples": _r(0, 0),
            "assLarge": _r(-0.8, 1.2),
            "dollBody": _r(0, 0.6),
            "pregnant": _r(0, 0),
            "animeNeck": _r(0, 0),
            "emaciated": _r(-2.3, 0.3),
            "animeWaist": _r(-0.5, 0.8),
            "breastsSag": _r(-0.8, 0.95),
            "pearFigure": _r(-0.4, 1.8),
            "narrowWaist": _r(-1.8, 1),
            "superBreast": _r(0, 0.3),
            "breastsSmall": _r(0, 1),
            "animeProportion": _r(0, 0),
            "bodybuilderSize": _r(-0.8, 1.2),
            "bodybuilderDetails": _r(-1, 0.8),
            "FaceLowerEyelashLength": _r(1, 1),
        },
        "limb_masses": {
            "gate": _r(1, 1),
            "armMass": _r(0.862, 1.325),
            "calfMass": _r(0.9, 1.35),
            "neckMass": _r(0.889, 1.25),
            "thighMass": _r(0.935, 1.525),
            "torsoMass": _r(0.745, 1.375),
            "forearmMass": _r(0.759, 1.2),
        },
    },
}


def get_hardcoded_mapping_fallback() -> Dict[str, Dict[str, Any]]:
    """Deep copy of the fallback tables, keyed by sex code."""
    return copy.deepcopy(HARDCODED_MAPPING_FALLBACK)
