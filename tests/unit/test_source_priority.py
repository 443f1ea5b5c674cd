"""Unit tests for macro_etl.source_priority."""

from __future__ import annotations

import dataclasses
import hashlib
import textwrap
from pathlib import Path

import pytest

from macro_etl.source_priority import (
    SourcePriority,
    SourcePriorityValidationError,
    UnknownSourceError,
    load_source_priority,
    validate_source_priority,
)

PROJECT_ROOT = Path(__file__).parent.parent.parent

PRIORITY_YAML = textwrap.dedent("""\
    version: "v2"
    tiers:
      - cme
      - fmp
      - [finnhub, trading_economics]
""")


@pytest.fixture
def priority_yaml_path(tmp_path: Path) -> Path:
    p = tmp_path / "source_priority.yml"
    p.write_text(PRIORITY_YAML, encoding="utf-8")
    return p


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoadSourcePriority:
    def test_loads_tiers(self, priority_yaml_path):
        priority = load_source_priority(priority_yaml_path)
        assert priority.version == "v2"
        assert priority.tiers == [("cme",), ("fmp",), ("finnhub", "trading_economics")]
        assert priority.sources == ["cme", "fmp", "finnhub", "trading_economics"]

    def test_hash_is_sha256_of_file(self, priority_yaml_path):
        priority = load_source_priority(priority_yaml_path)
        assert priority.yaml_hash == hashlib.sha256(PRIORITY_YAML.encode("utf-8")).hexdigest()

    def test_keeps_hash_not_file_text(self, priority_yaml_path):
        priority = load_source_priority(priority_yaml_path)
        assert [f.name for f in dataclasses.fields(priority)] == ["version", "tiers", "yaml_hash"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_source_priority(tmp_path / "nope.yml")

    def test_shipped_config_is_valid(self):
        priority = load_source_priority(PROJECT_ROOT / "config" / "source_priority.yml")
        assert priority.knows("cme")


class TestTierOf:
    def test_ranks(self, priority_yaml_path):
        priority = load_source_priority(priority_yaml_path)
        assert priority.tier_of("cme") == 0
        assert priority.tier_of("fmp") == 1
        assert priority.tier_of("finnhub") == priority.tier_of("trading_economics") == 2

    def test_unknown_source(self):
        priority = SourcePriority.from_tiers(["cme"])
        assert not priority.knows("reuters")
        with pytest.raises(UnknownSourceError):
            priority.tier_of("reuters")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateSourcePriority:
    def test_root_must_be_mapping(self):
        with pytest.raises(SourcePriorityValidationError, match="mapping"):
            validate_source_priority(["cme"])

    def test_missing_keys(self):
        with pytest.raises(SourcePriorityValidationError, match="tiers"):
            validate_source_priority({"version": "v1"})

    def test_empty_tiers(self):
        with pytest.raises(SourcePriorityValidationError):
            validate_source_priority({"version": "v1", "tiers": []})

    def test_empty_group(self):
        with pytest.raises(SourcePriorityValidationError, match=r"tiers\[1\]"):
            validate_source_priority({"version": "v1", "tiers": ["cme", []]})

    def test_blank_name(self):
        with pytest.raises(SourcePriorityValidationError, match="invalid source name"):
            validate_source_priority({"version": "v1", "tiers": ["cme", "  "]})

    def test_duplicate_name(self):
        with pytest.raises(SourcePriorityValidationError, match="more than once"):
            validate_source_priority({"version": "v1", "tiers": ["cme", ["fmp", "cme"]]})

    def test_from_tiers_validates(self):
        with pytest.raises(SourcePriorityValidationError):
            SourcePriority.from_tiers(["cme", "cme"])
