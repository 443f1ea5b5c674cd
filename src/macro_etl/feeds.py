"""macro_etl.feeds

Input readers.  Neither understands a provider's native format; they only
load rows that already use the release-row field names.

  read_upload_csv  : spreadsheet export (CSV with a header line)
  load_feed        : JSON feed snapshot from a local file or http(s) URL
"""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import requests

from macro_etl.shared import normalize_headers

DEFAULT_TIMEOUT = 30


class FeedFormatError(ValueError):
    """Raised when an input file is not in the expected shape."""


def read_upload_csv(path: Path) -> list[dict[str, str]]:
    """Read every data row of a CSV upload.

    Blank lines are skipped, header names are whitespace-stripped.  Raises
    FeedFormatError for an empty file.
    """
    text = path.read_text(encoding="utf-8-sig")
    if not text.strip():
        raise FeedFormatError(f"{path}: CSV file is empty")
    reader = csv.DictReader(io.StringIO(text, newline=""))
    rows = []
    for raw in reader:
        if not any((v or "").strip() for v in raw.values() if isinstance(v, str)):
            continue
        rows.append(normalize_headers(raw))
    return rows


def _is_url(location: str) -> bool:
    return urlparse(location).scheme in ("http", "https")


def _events_from_payload(payload: Any, location: str) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("events")
    if not isinstance(payload, list):
        raise FeedFormatError(
            f"{location}: expected a JSON list or an object with an 'events' list"
        )
    for i, item in enumerate(payload):
        if not isinstance(item, dict):
            raise FeedFormatError(f"{location}: events[{i}] is not an object")
    return payload


def load_feed(
    location: str,
    session: requests.Session | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> list[dict[str, Any]]:
    """Load one feed snapshot.

    HTTP errors propagate as requests exceptions; no retry is attempted.
    """
    if _is_url(location):
        http = session or requests.Session()
        resp = http.get(location, timeout=timeout)
        resp.raise_for_status()
        payload = resp.json()
    else:
        payload = json.loads(Path(location).read_text(encoding="utf-8"))
    return _events_from_payload(payload, location)


def parse_feed_option(value: str) -> tuple[str, str]:
    """Split a 'source=location' CLI value."""
    source, sep, location = value.partition("=")
    if not sep or not source.strip() or not location.strip():
        raise FeedFormatError(f"expected SOURCE=PATH_OR_URL, got {value!r}")
    return source.strip(), location.strip()
