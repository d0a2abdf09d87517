"""
Detect which columns carry an event's title, description, timestamp and location.

Matching is by column name first (earlier patterns score higher), then the
observed field statistics must look plausible for the role. Dataset
overrides always win over detection.
"""
import logging
import re
from typing import Dict, List, Optional, Pattern

from app.api.schemas.datasets import FieldMappingOverrides
from app.domain.imports.coordinates import parse_coordinate
from app.domain.imports.schema_builder import FieldStatistics

logger = logging.getLogger(__name__)

MAPPING_KEYS = (
    "title_path",
    "description_path",
    "location_name_path",
    "timestamp_path",
    "latitude_path",
    "longitude_path",
    "location_path",
)


def _patterns(*expressions: str) -> List[Pattern]:
    return [re.compile(expression, re.IGNORECASE) for expression in expressions]


FIELD_PATTERNS: Dict[str, List[Pattern]] = {
    "title_path": _patterns(r"^title$", r"^name$", r"^event.?name$", r"^event.?title$", r"^label$", r"^event$"),
    "description_path": _patterns(
        r"^description$", r"^details$", r"^summary$", r"^notes$", r"^text$", r"^content$", r"^event.?description$"
    ),
    "location_name_path": _patterns(
        r"^venue$", r"^venue.?name$", r"^place$", r"^place.?name$", r"^location.?name$", r"^site$", r"^where$"
    ),
    "timestamp_path": _patterns(
        r"^date$",
        r"^timestamp$",
        r"^datetime$",
        r"^date.?time$",
        r"^created.?at$",
        r"^event.?date$",
        r"^event.?time$",
        r"^start.?date$",
        r"^time$",
        r"^when$",
    ),
    "latitude_path": _patterns(r"^lat$", r"^latitude$", r"^lat.?deg", r"^y$", r"^.*[_\-]lat(itude)?$"),
    "longitude_path": _patterns(r"^lng$", r"^lon$", r"^long$", r"^longitude$", r"^x$", r"^.*[_\-](lng|lon|longitude)$"),
    "location_path": _patterns(
        r"^address$", r"^location$", r"^full.?address$", r"^street.?address$", r"^city$", r"^place$", r"^venue$"
    ),
}


def _string_ratio(stats: FieldStatistics) -> float:
    non_null = stats.non_null_count
    if non_null <= 0:
        return 0.0
    types = stats.type_distribution
    return (types.get("string", 0) + types.get("date", 0)) / non_null


def _average_sample_length(stats: FieldStatistics) -> Optional[float]:
    strings = [s for s in stats.samples if isinstance(s, str)]
    if not strings:
        return None
    return sum(len(s) for s in strings) / len(strings)


def _coordinate_score(stats: FieldStatistics, bound: float) -> float:
    values = [parse_coordinate(sample) for sample in stats.samples]
    values = [v for v in values if v is not None]
    if not values:
        return 0.0
    in_range = sum(1 for v in values if -bound <= v <= bound)
    return in_range / len(values) if in_range / len(values) >= 0.8 else 0.0


def _plausibility(stats: FieldStatistics, role: str) -> float:
    """0 disqualifies the field for ``role``; otherwise up to 1."""
    if stats.non_null_count <= 0:
        return 0.0

    if role == "title_path":
        if _string_ratio(stats) < 0.8:
            return 0.0
        length = _average_sample_length(stats)
        if length is None:
            return 0.5
        if 3 <= length <= 200:
            return 1.0
        return 0.3

    if role in ("description_path", "location_name_path", "location_path"):
        return 1.0 if _string_ratio(stats) >= 0.7 else 0.0

    if role == "timestamp_path":
        types = stats.type_distribution
        dated = types.get("date", 0) + stats.formats.get("date", 0) + stats.formats.get("date_time", 0)
        if dated:
            return 1.0
        if types.get("integer", 0) or types.get("string", 0):
            return 0.5
        return 0.0

    if role == "latitude_path":
        return _coordinate_score(stats, 90)
    if role == "longitude_path":
        return _coordinate_score(stats, 180)
    return 0.0


def _best_match(field_stats: Dict[str, FieldStatistics], role: str, taken: set) -> Optional[str]:
    patterns = FIELD_PATTERNS[role]
    best_path, best_score = None, 0.0
    for path, stats in field_stats.items():
        if path in taken:
            continue
        name = path.split(".")[-1]
        index = next((i for i, pattern in enumerate(patterns) if pattern.search(name)), None)
        if index is None:
            continue
        plausibility = _plausibility(stats, role)
        if plausibility == 0:
            continue
        score = (1 - index / len(patterns)) * 0.6 + plausibility * 0.4
        if score > best_score:
            best_path, best_score = path, score
    return best_path


def detect_field_mappings(
    field_stats: Dict[str, FieldStatistics],
    overrides: Optional[FieldMappingOverrides] = None,
) -> Dict[str, Optional[str]]:
    """Return a path (or None) for every mapping key."""
    override_values = overrides.model_dump() if overrides else {}
    mappings: Dict[str, Optional[str]] = {}
    taken = {value for value in override_values.values() if value}

    for role in ("latitude_path", "longitude_path", "timestamp_path", "title_path",
                 "description_path", "location_name_path", "location_path"):
        override = override_values.get(role)
        if override:
            mappings[role] = override
            continue
        detected = _best_match(field_stats, role, taken)
        mappings[role] = detected
        if detected:
            taken.add(detected)

    if bool(mappings["latitude_path"]) != bool(mappings["longitude_path"]):
        logger.info("Only one coordinate column detected; ignoring %s", mappings)
        if not override_values.get("latitude_path"):
            mappings["latitude_path"] = None
        if not override_values.get("longitude_path"):
            mappings["longitude_path"] = None

    return {key: mappings.get(key) for key in MAPPING_KEYS}
