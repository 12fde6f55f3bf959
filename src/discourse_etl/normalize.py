"""Normalization functions for topic CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime

DEFAULT_DATETIME_FORMAT = "%d/%m/%Y %H:%M"
DEFAULT_TAG_DELIMITER = "|"


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address.

    Discourse stores user_emails.email downcased, so lookups use this form.
    """
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: slug_name  (topics.slug)
# ---------------------------------------------------------------------------

def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators, as used for topic slugs."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 5: parse_datetime
# ---------------------------------------------------------------------------

def parse_datetime(
    value: str | None,
    fmt: str = DEFAULT_DATETIME_FORMAT,
) -> datetime | None:
    """Parse a timestamp in the strict CSV format ('%d/%m/%Y %H:%M' by default).

    Anything blank or not matching the format exactly → None.
    """
    v = trim(value)
    if v is None:
        return None
    try:
        return datetime.strptime(v, fmt)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 6: parse_positive_int
# ---------------------------------------------------------------------------

def parse_positive_int(value: str | None) -> int | None:
    """Parse a positive integer id. Zero, negatives and non-digits → None."""
    v = trim(value)
    if v is None or not (v.isascii() and v.isdigit()):
        return None
    n = int(v)
    return n if n > 0 else None


# ---------------------------------------------------------------------------
# Rule 7: split_tags
# ---------------------------------------------------------------------------

def split_tags(
    value: str | None,
    delimiter: str = DEFAULT_TAG_DELIMITER,
) -> list[str]:
    """Split a delimited tag field; each name trimmed, empties dropped.

    Order is preserved and duplicates are removed (first occurrence wins).
    """
    v = trim(value)
    if v is None:
        return []
    result: list[str] = []
    for token in v.split(delimiter):
        t = token.strip()
        if t and t not in result:
            result.append(t)
    return result
