"""
Coordinate parsing and validation for imported rows.
"""
import math
import re
from typing import Any, Optional, Tuple

_HEMISPHERE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*°?\s*([NSEWnsew])?\s*$")


def parse_coordinate(value: Any) -> Optional[float]:
    """Parse a single decimal-degree value; ``"40.7 N"`` and ``"74.0 W"`` are accepted."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    match = _HEMISPHERE_RE.match(str(value))
    if not match:
        return None
    number = float(match.group(1))
    hemisphere = (match.group(2) or "").upper()
    if hemisphere in ("S", "W"):
        number = -abs(number)
    return number if math.isfinite(number) else None


def validate_coordinates(latitude: Any, longitude: Any) -> Optional[Tuple[float, float]]:
    """
    Return ``(lat, lng)`` when both parse and lie in range, otherwise None.

    (0, 0) is treated as a placeholder and rejected.
    """
    lat = parse_coordinate(latitude)
    lng = parse_coordinate(longitude)
    if lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    if lat == 0 and lng == 0:
        return None
    return lat, lng
