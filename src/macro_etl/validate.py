"""macro_etl.validate

Row Validator.

Checks each raw field map against the release-row schema and turns it into a
ReleaseRow.  Every row is checked; if any row fails, the whole batch is
rejected with the (capped) list of per-row errors.  Optional value fields are
passed through as opaque strings: no numeric parsing or unit normalization.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from macro_etl.normalize import optional_text, parse_release_ts, trim
from macro_etl.records import (
    RELEASE_VALUE_FIELDS,
    IndicatorFields,
    ReleaseFields,
    ReleaseRow,
)
from macro_etl.shared import BatchValidationError, FieldError, RowError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_FIELDS = (
    "indicator_name",
    "country_code",
    "category",
    "source_name",
    "source_url",
    "release_at",
    "period",
)

OPTIONAL_FIELDS = RELEASE_VALUE_FIELDS

# First data row of a spreadsheet is line 2 (line 1 is the header).
HEADER_ROW_OFFSET = 1

MAX_REPORTED_ERRORS = 10


def _text(raw: Mapping[str, Any], name: str) -> str | None:
    value = raw.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    return trim(value)


def validate_row(
    raw: Mapping[str, Any],
    row_number: int,
    source: str | None = None,
) -> tuple[ReleaseRow | None, list[FieldError]]:
    """Validate one raw row.  Returns (row, []) or (None, errors)."""
    errors: list[FieldError] = []
    values: dict[str, str | None] = {}

    for name in REQUIRED_FIELDS:
        v = _text(raw, name)
        if v is None:
            errors.append(FieldError(name, f"{name} is required"))
        values[name] = v

    release_at = None
    if values["release_at"] is not None:
        release_at = parse_release_ts(values["release_at"])
        if release_at is None:
            errors.append(
                FieldError("release_at", "release_at must be a valid ISO8601 date")
            )

    if errors:
        return None, errors

    row = ReleaseRow(
        row_number=row_number,
        indicator_name=values["indicator_name"],
        country_code=values["country_code"],
        indicator=IndicatorFields(
            category=values["category"],
            source_name=values["source_name"],
            source_url=values["source_url"],
        ),
        release_at=release_at,
        period=values["period"],
        values=ReleaseFields(**{
            name: optional_text(raw.get(name)) for name in OPTIONAL_FIELDS
        }),
        source=source,
    )
    return row, []


def check_rows(
    raw_rows: Iterable[Mapping[str, Any]],
    source: str | None = None,
    header_offset: int = HEADER_ROW_OFFSET,
) -> tuple[list[ReleaseRow], list[RowError]]:
    """Validate every row without stopping at the first failure."""
    rows: list[ReleaseRow] = []
    failures: list[RowError] = []
    for i, raw in enumerate(raw_rows):
        row_number = i + 1 + header_offset
        row, errors = validate_row(raw, row_number, source)
        if errors:
            failures.append(RowError(row=row_number, errors=tuple(errors), source=source))
        else:
            rows.append(row)
    return rows, failures


def validate_rows(
    raw_rows: Iterable[Mapping[str, Any]],
    source: str | None = None,
    max_reported: int = MAX_REPORTED_ERRORS,
    header_offset: int = HEADER_ROW_OFFSET,
) -> list[ReleaseRow]:
    """Validate a batch.  Raises BatchValidationError if any row failed."""
    rows, failures = check_rows(raw_rows, source, header_offset)
    if failures:
        raise BatchValidationError(
            failures[:max_reported], total=len(failures), failures=failures
        )
    return rows
