"""
Semantic vocabulary normalization.

The vision step reports muscularity in free text (accents dropped, gender
agreement lost, synonyms). The catalog stores a fixed French vocabulary.
Muscular gating compares by exact equality, so the user's term is folded
onto the catalog spelling first.
"""

import logging
import unicodedata
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MUSCULARITY = "Normal"

# Keys are accent-free, lower-case
MUSCULARITY_CANONICAL_TERMS = {
    # Atrophied spectrum
    "atrophie": "Atrophié",
    "atrophiee": "Atrophié",
    "atrophie severe": "Atrophié sévère",
    "atrophiee severe": "Atrophiée sévère",
    "legerement atrophie": "Légèrement atrophié",
    "legerement atrophiee": "Légèrement atrophié",
    "moins musclee": "Moins musclée",
    "moins muscle": "Moins musclée",
    # Normal
    "normal": "Normal",
    "normale": "Normal",
    "normal costaud": "Normal costaud",
    "normale costaud": "Normal costaud",
    # Medium
    "moyen muscle": "Moyen musclé",
    "moyennement muscle": "Moyennement musclée",
    "moyennement musclee": "Moyennement musclée",
    # Athletic
    "muscle": "Musclé",
    "musclee": "Musclée",
    "athletique": "Athlétique",
}


def strip_accents(term: str) -> str:
    """Lower-case, trim and drop diacritics."""
    decomposed = unicodedata.normalize("NFD", term.strip().lower())
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def _closest_muscularity(folded: str) -> str:
    # Keyword order matters: "severe" before "atrophi", "moyen" before "muscl"
    if "severe" in folded:
        return "Atrophié sévère"
    if "atrophi" in folded:
        return "Légèrement atrophié" if "leger" in folded else "Atrophié"
    if "moyen" in folded or "medium" in folded:
        return "Moyen musclé"
    if "athleti" in folded:
        return "Athlétique"
    if "muscl" in folded:
        return "Musclé"
    return DEFAULT_MUSCULARITY


def normalize_muscularity_term(term: Optional[str]) -> str:
    """
    Map a free-form muscularity term to the catalog's canonical label.

    Missing or non-string terms resolve to "Normal". Unknown terms go
    through keyword matching before defaulting.
    """
    if not term or not isinstance(term, str):
        logger.warning(f"Muscularity term missing or invalid ({term!r}), using {DEFAULT_MUSCULARITY}")
        return DEFAULT_MUSCULARITY

    folded = " ".join(strip_accents(term).split())
    canonical = MUSCULARITY_CANONICAL_TERMS.get(folded)
    if canonical:
        return canonical

    closest = _closest_muscularity(folded)
    logger.warning(f"Unknown muscularity term {term!r}, closest match {closest!r}")
    return closest


def labels_equal(left: Optional[str], right: Optional[str]) -> bool:
    """Exact label comparison, tolerant only of surrounding whitespace."""
    if left is None or right is None:
        return False
    return left.strip() == right.strip()
