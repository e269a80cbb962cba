"""
String and numeric comparators shared by the stage matchers.
"""

import re
from typing import Any, Optional

from rapidfuzz.distance import Levenshtein

_NUMBER = re.compile(r"-?\d*\.?\d+")


def similarity(s1: Optional[str], s2: Optional[str]) -> float:
    """
    Normalized edit-distance similarity in [0, 1].

    Case and surrounding whitespace are ignored. Missing or empty input
    scores 0.
    """
    if not s1 or not s2:
        return 0.0

    a = s1.lower().strip()
    b = s2.lower().strip()
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    # (longer - distance) / longer
    return Levenshtein.normalized_similarity(a, b)


def parse_numeric(value: Any) -> Optional[float]:
    """
    Parse a number out of free text ("3 ton", "16.0 SEER", "96%").

    Returns None when nothing numeric is present.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER.search(value.replace(",", ""))
        return float(match.group()) if match else None
    return None


def relative_difference(theirs: float, ours: float) -> float:
    """Difference relative to our value."""
    if ours == 0:
        return 0.0 if theirs == 0 else float("inf")
    return abs(theirs - ours) / abs(ours)


def within_tolerance(theirs: Optional[float], ours: Optional[float], tolerance: float) -> bool:
    """True when both values are present and differ by at most ``tolerance`` of ours."""
    if theirs is None or ours is None:
        return False
    return relative_difference(theirs, ours) <= tolerance
