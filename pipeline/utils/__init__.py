"""Utility modules for the pipeline."""

from pipeline.utils.geo import (
    has_coordinates,
    is_valid_coordinates,
    normalize_number,
)
from pipeline.utils.http import HTTPError, RateLimitError, fetch_with_retry
from pipeline.utils.logging import setup_logging
from pipeline.utils.text import (
    clean_text,
    is_valid_email,
    is_valid_url,
    slugify,
)

__all__ = [
    # HTTP utilities
    "fetch_with_retry",
    "HTTPError",
    "RateLimitError",
    # Logging
    "setup_logging",
    # Geographic utilities
    "is_valid_coordinates",
    "normalize_number",
    "has_coordinates",
    # Text utilities
    "slugify",
    "clean_text",
    "is_valid_email",
    "is_valid_url",
]
