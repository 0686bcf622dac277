"""Normalization functions for batch table ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y")
_NEGATIVE_INT = re.compile(r"^-[0-9]+$")
_BARCODE_SUFFIX = re.compile(r"bar[0-9]+$")


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
# Rule 3: parse_date
# ---------------------------------------------------------------------------

def parse_date(value: str | None) -> date | None:
    """Parse an ISO (or dotted European) date.

    Returns None for blank input.  Raises ValueError for anything else that
    is not a date, including the negative serial numbers spreadsheet exports
    emit for dates before 1899-12-30.
    """
    v = trim(value)
    if v is None:
        return None
    if _NEGATIVE_INT.match(v):
        raise ValueError(f"Invalid date {v!r}")
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date {v!r}")


# ---------------------------------------------------------------------------
# Rule 4: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> Decimal | None:
    """Parse a decimal number from a string, returning None on failure."""
    v = trim(value)
    if v is None:
        return None
    try:
        return Decimal(v)
    except InvalidOperation:
        return None


# ---------------------------------------------------------------------------
# Rule 5: translate_code
# ---------------------------------------------------------------------------

def translate_code(value: str | None, codes: dict[str, str]) -> str | None:
    """Map a coded cell value (e.g. '1') to its vocabulary term (e.g. 'm').

    Values that are already vocabulary terms pass through unchanged.
    Raises ValueError for a value that is neither a code nor a term.
    """
    v = trim(value)
    if v is None or not codes:
        return v
    if v in codes:
        return codes[v]
    if v in codes.values():
        return v
    raise ValueError(f"Unexpected value {v!r} cannot be translated")


# ---------------------------------------------------------------------------
# Rule 6: control_dir_pattern
# ---------------------------------------------------------------------------

def control_dir_pattern(dir_pattern: str, control_barcode: str = "bar99") -> str:
    """Derive the control directory of a run from a case directory.

    'run_7/bar03' -> 'run_7/bar99'.  Patterns without a trailing barcode
    segment are returned unchanged.
    """
    return _BARCODE_SUFFIX.sub(control_barcode, dir_pattern)
