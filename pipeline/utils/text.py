"""Text processing utility functions for the pipeline."""

import re


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

URL_PATTERN = re.compile(r"^(https?://)?([\w-]+\.)+[\w-]+(/[\w\-./?%&=]*)?$", re.IGNORECASE)


def slugify(name: str | None) -> str:
    """Lowercase, collapse runs of non-alphanumerics to "-", trim dashes.

    Anything that is not a string slugs to "".

    >>> slugify("Acme U. (Berlin)")
    'acme-u-berlin'
    """
    if not isinstance(name, str):
        return ""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def clean_text(value) -> str:
    """Coerce an optional form value to a stripped string ("" when missing)."""
    if value is None:
        return ""
    return str(value).strip()


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def is_valid_url(value: str) -> bool:
    return bool(URL_PATTERN.match(value))
