"""Geographic utility functions for the pipeline."""

import math


def is_valid_coordinates(lat: float, lon: float) -> bool:
    """Check if latitude and longitude are valid.

    Args:
        lat: Latitude in degrees
        lon: Longitude in degrees

    Returns:
        True if coordinates are valid, False otherwise
    """
    return -90 <= lat <= 90 and -180 <= lon <= 180


def normalize_number(value) -> float | None:
    """Parse a submitted coordinate.

    Numbers and numeric strings are accepted; None, "" and anything
    non-finite become None.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def has_coordinates(lat: float | None, lon: float | None) -> bool:
    """True when both values are present and finite."""
    return (
        lat is not None
        and lon is not None
        and math.isfinite(lat)
        and math.isfinite(lon)
    )
