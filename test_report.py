"""
test_report.py - Run summary formatting tests.

Usage: pytest test_report.py -q
"""

from __future__ import annotations

import json
import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from models import Category, ReconcileWindow, RunError, RunSummary, UnmatchedReason
from report import format_summary, format_summary_json, run_status


def _summary(**overrides) -> RunSummary:
    summary = RunSummary(
        window=ReconcileWindow(start=date(2025, 12, 7), end=date(2025, 12, 16)),
        category=Category.STATIC,
        feed_b_count=3,
        feed_a_count=4,
        matched_count=2,
        unmatched_count=1,
        updated_count=2,
        adjustments_fetched=1,
        adjustments_applied=1,
        **overrides,
    )
    summary.count_reason(UnmatchedReason.NO_CANDIDATE_IN_WINDOW)
    return summary


def test_text_summary_lists_counts_and_reasons() -> None:
    text = format_summary(_summary())

    assert "Reconciliation Complete" in text
    assert "2025-12-07 to 2025-12-16" in text
    assert "Matched:    2" in text
    assert "Updated:    2" in text
    assert "No candidate in window: 1" in text
    assert "Adjustments:" in text


def test_text_summary_lists_errors() -> None:
    errors = [
        RunError(stage="persist_match", record_id=f"B{i}", error_type="StorageWriteError", message="disk full")
        for i in range(10)
    ]
    text = format_summary(_summary(errors=errors))

    assert "With Errors" in text
    assert "persist_match [B0]: StorageWriteError: disk full" in text
    assert "... and 2 more error(s)" in text


def test_fetch_failure_marks_run_failed() -> None:
    summary = _summary(errors=[RunError(stage="fetch_feed_b", error_type="ConnectionError", message="down")])
    assert run_status(summary) == "failed"
    assert "Reconciliation Failed" in format_summary(summary)


def test_json_summary_is_serializable() -> None:
    payload = format_summary_json(_summary())

    assert payload["status"] == "ok"
    assert payload["window"] == {"start": "2025-12-07", "end": "2025-12-16"}
    assert payload["category"] == "STATIC"
    assert payload["matched_count"] == 2
    assert payload["unmatched_reasons"] == {"no_candidate_in_window": 1}
    assert payload["adjustments"]["applied"] == 1
    json.dumps(payload)


def test_missing_summary_degrades_gracefully() -> None:
    assert "No run summary available" in format_summary(None)
    assert format_summary_json(None)["status"] == "error"
