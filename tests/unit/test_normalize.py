"""Unit tests for macro_etl.normalize."""

from datetime import date, datetime, timedelta, timezone

from macro_etl.normalize import (
    fold_name,
    normalize_country,
    normalize_space,
    optional_text,
    parse_flag,
    parse_release_ts,
    release_day,
    trim,
)


# ---------------------------------------------------------------------------
# trim / normalize_space
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  CPI  ") == "CPI"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


class TestNormalizeSpace:
    def test_collapses_internal_runs(self):
        assert normalize_space("Non  Farm\tPayrolls") == "Non Farm Payrolls"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# fold_name / normalize_country
# ---------------------------------------------------------------------------

class TestFoldName:
    def test_case_and_spacing_fold_together(self):
        assert fold_name("  Nonfarm   PAYROLLS ") == fold_name("nonfarm payrolls")

    def test_full_width_characters_fold(self):
        assert fold_name("ＣＰＩ") == "cpi"

    def test_punctuation_is_kept(self):
        assert fold_name("CPI (YoY)") != fold_name("CPI YoY")

    def test_none(self):
        assert fold_name(None) is None


class TestNormalizeCountry:
    def test_upper_cases(self):
        assert normalize_country(" us ") == "US"

    def test_blank(self):
        assert normalize_country("  ") is None


# ---------------------------------------------------------------------------
# parse_release_ts / release_day
# ---------------------------------------------------------------------------

class TestParseReleaseTs:
    def test_zulu_suffix(self):
        ts = parse_release_ts("2026-01-10T13:30:00Z")
        assert ts == datetime(2026, 1, 10, 13, 30, tzinfo=timezone.utc)

    def test_offset_is_converted_to_utc(self):
        ts = parse_release_ts("2026-01-10T08:30:00-05:00")
        assert ts == datetime(2026, 1, 10, 13, 30, tzinfo=timezone.utc)
        assert ts.utcoffset() == timedelta(0)

    def test_naive_is_taken_as_utc(self):
        ts = parse_release_ts("2026-01-10T13:30:00")
        assert ts.tzinfo is not None
        assert ts.hour == 13

    def test_space_separator_and_short_fraction(self):
        ts = parse_release_ts("2026-01-10 14:30:00.5+01:00")
        assert ts == datetime(2026, 1, 10, 13, 30, 0, 500000, tzinfo=timezone.utc)

    def test_bare_date_is_midnight_utc(self):
        assert parse_release_ts("2026-01-10") == datetime(2026, 1, 10, tzinfo=timezone.utc)

    def test_garbage_returns_none(self):
        assert parse_release_ts("next tuesday") is None

    def test_blank_returns_none(self):
        assert parse_release_ts("  ") is None


class TestReleaseDay:
    def test_uses_utc_calendar_day(self):
        ts = datetime(2026, 1, 10, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert release_day(ts) == date(2026, 1, 11)


# ---------------------------------------------------------------------------
# optional_text / parse_flag
# ---------------------------------------------------------------------------

class TestOptionalText:
    def test_value_kept_verbatim(self):
        assert optional_text(" -0.2 ") == " -0.2 "

    def test_provider_notation_kept(self):
        assert optional_text("1,234K") == "1,234K"

    def test_blank_becomes_none(self):
        assert optional_text("   ") is None

    def test_none(self):
        assert optional_text(None) is None

    def test_non_string_is_stringified(self):
        assert optional_text(3.1) == "3.1"


class TestParseFlag:
    def test_true_values(self):
        for v in ("true", "YES", "1", " y "):
            assert parse_flag(v) is True

    def test_false_values(self):
        for v in ("false", "No", "0"):
            assert parse_flag(v) is False

    def test_bool_passthrough(self):
        assert parse_flag(True) is True

    def test_unknown_returns_none(self):
        assert parse_flag("maybe") is None
        assert parse_flag(None) is None
