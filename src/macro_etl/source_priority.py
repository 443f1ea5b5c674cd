"""macro_etl.source_priority

YAML-based source-priority configuration for the multi-source sync path.

Responsibilities:
  - Load and validate config/source_priority.yml
  - Rank sources into tiers (first tier wins)
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from macro_etl.source_priority import load_source_priority

    priority = load_source_priority(Path("config/source_priority.yml"))
    priority.tier_of("cme")   # -> 0

File format:
    version: "v1"
    tiers:
      - cme                           # a lone source is a tier of one
      - fmp
      - [finnhub, trading_economics]  # equal priority
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_YAML_KEYS = frozenset({"version", "tiers"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourcePriorityValidationError(ValueError):
    """Raised when a source-priority YAML file fails schema validation."""


class UnknownSourceError(KeyError):
    """Raised when an event comes from a source the config does not rank."""


# ---------------------------------------------------------------------------
# SourcePriority dataclass
# ---------------------------------------------------------------------------

@dataclass
class SourcePriority:
    version: str
    tiers: list[tuple[str, ...]]
    yaml_hash: str = ""

    def __post_init__(self) -> None:
        self._rank = {
            source: tier_no
            for tier_no, tier in enumerate(self.tiers)
            for source in tier
        }

    @property
    def sources(self) -> list[str]:
        return [s for tier in self.tiers for s in tier]

    def knows(self, source: str) -> bool:
        return source in self._rank

    def tier_of(self, source: str) -> int:
        """Return the 0-based tier of a source; lower is higher priority."""
        try:
            return self._rank[source]
        except KeyError:
            raise UnknownSourceError(
                f"source {source!r} is not listed in source priority {self.version}"
            ) from None

    @classmethod
    def from_tiers(cls, tiers: list[Any], version: str = "inline") -> SourcePriority:
        data = {"version": version, "tiers": tiers}
        validate_source_priority(data)
        return cls(version=version, tiers=_normalize_tiers(tiers))


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def _normalize_tiers(tiers: list[Any]) -> list[tuple[str, ...]]:
    return [
        (entry.strip(),) if isinstance(entry, str) else tuple(s.strip() for s in entry)
        for entry in tiers
    ]


def load_source_priority(yaml_path: Path) -> SourcePriority:
    """Load, validate, and return a SourcePriority from a YAML file.

    Raises:
        SourcePriorityValidationError: If the file content is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    validate_source_priority(data)
    return SourcePriority(
        version=str(data["version"]),
        tiers=_normalize_tiers(data["tiers"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_source_priority(data: Any) -> None:
    """Raise SourcePriorityValidationError if data does not match the schema.

    Validates:
      - root is a mapping with version and tiers
      - tiers is a non-empty list of names or non-empty lists of names
      - every name is a non-blank string listed exactly once
    """
    if not isinstance(data, dict):
        raise SourcePriorityValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise SourcePriorityValidationError(
            f"Missing required YAML keys: {sorted(missing_keys)}"
        )

    tiers = data["tiers"]
    if not isinstance(tiers, list) or not tiers:
        raise SourcePriorityValidationError("tiers must be a non-empty list.")

    seen: set[str] = set()
    for i, entry in enumerate(tiers):
        names = [entry] if isinstance(entry, str) else entry
        if not isinstance(names, list) or not names:
            raise SourcePriorityValidationError(
                f"tiers[{i}] must be a source name or a non-empty list of names."
            )
        for name in names:
            if not isinstance(name, str) or not name.strip():
                raise SourcePriorityValidationError(
                    f"tiers[{i}] contains an invalid source name: {name!r}"
                )
            if name.strip() in seen:
                raise SourcePriorityValidationError(
                    f"source {name.strip()!r} is listed more than once."
                )
            seen.add(name.strip())
