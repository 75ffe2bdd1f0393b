"""
Fouling metrics derived from a vessel's general-arrangement inspection data.

A general arrangement is a list of components (hull, propellers, sea chests,
...). Each component carries zero or more rating entries, each with a fouling
rating level FR0-FR5 and the percentage of the component it covers:

    {"name": "Port Propeller",
     "frRatingData": [{"foulingRatingType": "FR3", "foulingCoverage": "80%"}]}

Two scores are derived, both on a 0-100 scale where 100 is clean:

  Navigability: weighted penalty per entry, penalty = FR^1.5 x coverage x
  weight, normalized by the number of assessed entries and capped at 50.

  Hull performance: coverage-weighted average FR mapped through a drag
  table (FR0 = 0 %, FR1 = 3 %, ..., FR5 = 25 %) with linear interpolation.

All functions are pure and total: malformed values parse as 0 and never
raise.
"""
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

# First matching substring of the lower-cased component name wins.
COMPONENT_WEIGHTS: Tuple[Tuple[str, float], ...] = (
    ("hull", 1.0),
    ("bow", 1.2),
    ("stern", 1.2),
    ("propeller", 2.0),
    ("rudder", 1.8),
    ("sea chest", 1.8),
    ("grille", 1.5),
    ("sonar", 2.0),
    ("dome", 1.8),
    ("niche", 1.5),
    ("waterline", 1.3),
)
DEFAULT_WEIGHT = 1.0

# Percent drag added at integer FR levels 0..5
DRAG_TABLE = (0, 3, 7, 12, 18, 25)
MAX_FR_LEVEL = float(len(DRAG_TABLE) - 1)

MAX_NORMALIZED_PENALTY = 50.0
PENALTY_NORMALIZER = 0.5

_LEVEL_KEYS = ("foulingRatingType", "foulingRating", "frType", "fr", "type")
_COVERAGE_KEYS = ("foulingCoverage", "coverage", "coveragePercent", "area")

_FR_PATTERN = re.compile(r"FR(\d+)", re.IGNORECASE)
_INT_PATTERN = re.compile(r"(\d+)")
_NUMBER_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _first_present(entry: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if entry.get(key) is not None:
            return entry[key]
    return None


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def extract_fouling_level(entry: Dict[str, Any]) -> float:
    """Fouling level of one rating entry, clamped to 0-5.
    "FR3" and "3" both parse as 3."""
    value = _first_present(entry, _LEVEL_KEYS)
    if isinstance(value, str):
        match = _INT_PATTERN.search(value)
        level = float(match.group(1)) if match else 0.0
    else:
        level = _to_float(value)
    return max(0.0, min(MAX_FR_LEVEL, level))


def parse_coverage(value: Any) -> Optional[float]:
    """Coverage percentage from "25%", "25" or 25. None when absent."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        match = _NUMBER_PATTERN.search(value)
        return _to_float(match.group(1)) if match else None
    return _to_float(value)


def extract_coverage(entry: Dict[str, Any]) -> float:
    """Coverage percentage of one rating entry, 0 when unparseable."""
    return parse_coverage(_first_present(entry, _COVERAGE_KEYS)) or 0.0


def rating_entries(component: Dict[str, Any]) -> List[Dict[str, Any]]:
    """frRatingData when non-empty, else items, else []."""
    for key in ("frRatingData", "items"):
        entries = component.get(key)
        if isinstance(entries, list) and entries:
            return [e for e in entries if isinstance(e, dict)]
    return []


def component_weight(name: Optional[str]) -> float:
    lower = (name or "").lower()
    for substring, weight in COMPONENT_WEIGHTS:
        if substring in lower:
            return weight
    return DEFAULT_WEIGHT


def _component_name(component: Dict[str, Any]) -> str:
    return str(component.get("name") or component.get("GAComponent") or "")


def _components(general_arrangement: Any) -> List[Dict[str, Any]]:
    if not isinstance(general_arrangement, list):
        return []
    return [c for c in general_arrangement if isinstance(c, dict)]


def navigability_score(general_arrangement: Any) -> Optional[int]:
    """
    Navigability score 0-100, or None when no entry is assessed.

    An entry is assessed when its level or its coverage is positive.

    Example:
        One "Port Propeller" entry at FR3 over 80 %:
        3^1.5 x 0.8 x 2.0 = 8.31, / (1 x 0.5) = 16.63, 100 - 16.63 -> 83
    """
    total = 0.0
    assessed = 0
    for component in _components(general_arrangement):
        weight = component_weight(_component_name(component))
        for entry in rating_entries(component):
            level = extract_fouling_level(entry)
            coverage = extract_coverage(entry)
            if level > 0 or coverage > 0:
                total += (level ** 1.5) * (coverage / 100) * weight
                assessed += 1

    if assessed == 0:
        return None
    normalized = min(total / (assessed * PENALTY_NORMALIZER), MAX_NORMALIZED_PENALTY)
    return max(0, min(100, _round_half_up(100 - normalized)))


def drag_penalty(level: float) -> float:
    """Percent drag for a (possibly fractional) FR level, interpolated."""
    level = max(0.0, min(MAX_FR_LEVEL, level))
    low = int(math.floor(level))
    high = min(low + 1, len(DRAG_TABLE) - 1)
    return DRAG_TABLE[low] + (level - low) * (DRAG_TABLE[high] - DRAG_TABLE[low])


def hull_performance(general_arrangement: Any) -> Optional[int]:
    """
    Hull performance 0-100, or None when no entry has nonzero coverage.

    Entries without coverage are ignored: they say nothing about how much of
    the hull is fouled.
    """
    weighted = 0.0
    total_weight = 0.0
    for component in _components(general_arrangement):
        for entry in rating_entries(component):
            coverage = extract_coverage(entry)
            if coverage > 0:
                weight = coverage / 100
                weighted += extract_fouling_level(entry) * weight
                total_weight += weight

    if total_weight == 0:
        return None
    average = weighted / total_weight
    return max(0, _round_half_up(100 - drag_penalty(average)))


def average_fouling_rating(general_arrangement: Any) -> Optional[float]:
    """Coverage-weighted mean FR to one decimal; entries without coverage
    count with weight 1. None when there are no entries."""
    weighted = 0.0
    total_weight = 0.0
    count = 0
    for component in _components(general_arrangement):
        for entry in rating_entries(component):
            coverage = extract_coverage(entry)
            weight = coverage / 100 if coverage > 0 else 1.0
            weighted += extract_fouling_level(entry) * weight
            total_weight += weight
            count += 1

    if count == 0:
        return None
    return _round_half_up(weighted / total_weight * 10) / 10


def categorize_component(name: Optional[str]) -> str:
    """Bucket a component name into hull / propeller / rudder / niche / other."""
    if not name:
        return "other"
    lower = str(name).lower()
    if "hull" in lower or "boot" in lower:
        return "hull"
    if "propeller" in lower or "prop" in lower:
        return "propeller"
    if "rudder" in lower:
        return "rudder"
    niche_markers = (
        "sea chest", "grating", "keel", "bilge", "anode", "iccp", "intake", "discharge",
    )
    if any(marker in lower for marker in niche_markers):
        return "niche"
    return "other"


def parse_fouling_rating(value: Any) -> Optional[int]:
    """Numeric level of a symbolic rating: "FR3" -> 3. None otherwise."""
    if not isinstance(value, str):
        return None
    match = _FR_PATTERN.search(value)
    return int(match.group(1)) if match else None
