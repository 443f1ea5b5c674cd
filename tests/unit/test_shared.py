"""Unit tests for macro_etl.shared."""

from __future__ import annotations

import json

from macro_etl.shared import (
    MAX_REPORTED_LIST,
    FieldError,
    ImportResult,
    RejectWriter,
    RowError,
    WriteOutcome,
    normalize_headers,
    write_run_report,
)


def test_row_error_to_dict():
    err = RowError(row=4, errors=(FieldError("period", "period is required"),))
    assert err.to_dict() == {"row": 4, "errors": ["period: period is required"]}


def test_normalize_headers_drops_overflow_column():
    assert normalize_headers({" a ": "1", None: ["extra"]}) == {"a": "1"}


def test_import_result_upserted_counts():
    result = ImportResult(indicators_created=2, indicators_updated=3, releases_created=1)
    assert result.indicators_upserted == 5
    assert result.releases_upserted == 1
    assert result.ok


def test_to_dict_lists_only_failed_writes_and_caps_them():
    outcomes = [
        WriteOutcome("release", "update", f"k{i}", f"id{i}", ok=False, error="boom")
        for i in range(MAX_REPORTED_LIST + 5)
    ]
    outcomes.append(WriteOutcome("release", "update", "good", "id-good", ok=True))
    result = ImportResult(status="failed", write_outcomes=outcomes)

    failures = result.to_dict()["write_failures"]

    assert len(failures) == MAX_REPORTED_LIST
    assert all(not f["ok"] for f in failures)


def test_reject_writer_is_lazy(tmp_path):
    path = tmp_path / "nested" / "rejects.csv"
    writer = RejectWriter(path)
    assert not writer.opened
    writer.close()
    assert not path.exists()

    writer.write({"indicator_name": "CPI"}, "period: period is required")
    writer.close()
    assert path.read_text(encoding="utf-8").splitlines() == [
        "indicator_name,_reject_reason",
        "CPI,period: period is required",
    ]


def test_write_run_report(tmp_path):
    result = ImportResult(run_id="run-1", releases_created=4)
    path = write_run_report(
        "run-1", "2026-01-10T00:00:00+00:00", "upload", False,
        {"csv_path": "jan.csv"}, result, reports_dir=tmp_path,
    )
    report = json.loads(path.read_text())
    assert path.name == "run-1.json"
    assert report["csv_path"] == "jan.csv"
    assert report["dry_run"] is False
    assert report["result"]["releases_upserted"] == 4
    assert "finished_at" in report
