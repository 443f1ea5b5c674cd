"""Normalization functions for release ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timezone

_TRUE_VALUES = {"1", "true", "yes", "y", "t"}
_FALSE_VALUES = {"0", "false", "no", "n", "f"}


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
# Rule 3: fold_name  (for cross-source fingerprinting)
# ---------------------------------------------------------------------------

def fold_name(value: str | None) -> str | None:
    """Case-fold and collapse whitespace.

    Unicode is NFKC-normalized first so that full-width or compatibility
    characters from scraped feeds compare equal to their plain forms.
    Punctuation is kept: "CPI (YoY)" and "CPI YoY" are different names.
    """
    v = normalize_space(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKC", v)
    return v.casefold()


# ---------------------------------------------------------------------------
# Rule 4: normalize_country
# ---------------------------------------------------------------------------

def normalize_country(value: str | None) -> str | None:
    """Upper-case a country code for fingerprinting."""
    v = trim(value)
    if v is None:
        return None
    return v.upper()


# ---------------------------------------------------------------------------
# Rule 5: parse_release_ts
# ---------------------------------------------------------------------------

def parse_release_ts(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp or date into an aware UTC datetime.

    Accepts what datetime.fromisoformat accepts on Python 3.11+: a "T" or
    space separator, a "Z" or numeric offset, and one to six digits of
    fractional seconds.
    Naive values are taken as UTC.  A bare date ('2026-01-10') becomes
    midnight UTC of that day.  Returns None when the value does not parse.
    """
    v = trim(value)
    if v is None:
        return None
    try:
        ts = datetime.fromisoformat(v)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def release_day(ts: datetime) -> date:
    """Return the UTC calendar day of a release timestamp."""
    if ts.tzinfo is None:
        return ts.date()
    return ts.astimezone(timezone.utc).date()


# ---------------------------------------------------------------------------
# Rule 6: optional_text
# ---------------------------------------------------------------------------

def optional_text(value: str | None) -> str | None:
    """Pass an optional value through untouched; blank string becomes None.

    Release values keep provider notation ("3.1%", "1,234K", " -0.2 ") so no
    stripping or numeric parsing happens here.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    return value if value.strip() else None


# ---------------------------------------------------------------------------
# Rule 7: parse_flag
# ---------------------------------------------------------------------------

def parse_flag(value: str | bool | None) -> bool | None:
    """Parse a yes/no style flag.  Unknown or blank values return None."""
    if isinstance(value, bool):
        return value
    v = trim(value)
    if v is None:
        return None
    v = v.lower()
    if v in _TRUE_VALUES:
        return True
    if v in _FALSE_VALUES:
        return False
    return None
