"""
report.py - Human-readable and JSON-ready run summary formatting.

This module converts a `RunSummary` into:
- terminal-friendly text output for CLI usage
- machine-friendly dictionary output for schedulers/dashboards
"""

from __future__ import annotations

from logging_config import get_logger
from models import RunSummary, UnmatchedReason

logger = get_logger(__name__)

REASON_NAMES: dict[UnmatchedReason, str] = {
    UnmatchedReason.INVALID_CATEGORY: "Unknown category",
    UnmatchedReason.INVALID_CALLER_ID: "Caller id not normalizable",
    UnmatchedReason.NO_CANDIDATES: "No candidates for caller",
    UnmatchedReason.NO_CANDIDATE_IN_WINDOW: "No candidate in window",
    UnmatchedReason.ALL_CANDIDATES_CONSUMED: "All candidates consumed",
    UnmatchedReason.ALREADY_APPLIED: "Adjustment already applied",
}

OUTPUT_WIDTH = 56
SEPARATOR = "=" * OUTPUT_WIDTH
MAX_ERRORS_DISPLAY = 8

# Fetch stages that end a run before any matching happens.
FATAL_STAGES = frozenset({"fetch_feed_b", "fetch_feed_a"})


def _reason_name(value: str) -> str:
    try:
        return REASON_NAMES[UnmatchedReason(value)]
    except ValueError:
        return value


def run_status(summary: RunSummary) -> str:
    if any(error.stage in FATAL_STAGES for error in summary.errors):
        return "failed"
    if summary.errors:
        return "completed_with_errors"
    return "ok"


def format_summary(summary: RunSummary | None) -> str:
    """Format a RunSummary into a clean, human-readable text block."""
    if summary is None:
        logger.error("report_input_error | summary_none=True | fallback=error_block")
        return "\n" + SEPARATOR + "\n  ERROR: No run summary available\n" + SEPARATOR + "\n"

    status = run_status(summary)
    header = {
        "ok": "Reconciliation Complete",
        "completed_with_errors": "Reconciliation Complete - With Errors",
        "failed": "Reconciliation Failed",
    }[status]

    lines: list[str] = [""]
    lines.append(SEPARATOR)
    lines.append(f"  {header}")
    lines.append(SEPARATOR)

    lines.append("")
    lines.append(f"  Window:       {summary.window.describe()}")
    lines.append(f"  Category:     {summary.category.value if summary.category else 'all'}")
    lines.append(f"  Assignment:   {summary.assignment}")
    lines.append(f"  Fetched:      feed B {summary.feed_b_count}  |  feed A {summary.feed_a_count}")
    if summary.unindexable_count:
        lines.append(f"                ({summary.unindexable_count} feed A call(s) without usable caller id)")

    lines.append("")
    lines.append("  Calls:")
    lines.append(f"    • Matched:    {summary.matched_count}")
    lines.append(f"    • Updated:    {summary.updated_count}")
    lines.append(f"    • Skipped:    {summary.skipped_count}")
    lines.append(f"    • Unmatched:  {summary.unmatched_count}")
    for reason, count in sorted(summary.unmatched_reasons.items()):
        lines.append(f"        - {_reason_name(reason)}: {count}")

    if summary.adjustments_fetched:
        lines.append("")
        lines.append("  Adjustments:")
        lines.append(f"    • Fetched:    {summary.adjustments_fetched}")
        lines.append(f"    • Applied:    {summary.adjustments_applied}")
        lines.append(f"    • Skipped:    {summary.adjustments_skipped}")
        lines.append(f"    • Unmatched:  {summary.adjustments_unmatched}")

    if summary.errors:
        lines.append("")
        lines.append(f"  Errors ({summary.error_count}):")
        for error in summary.errors[:MAX_ERRORS_DISPLAY]:
            target = f" [{error.record_id}]" if error.record_id else ""
            lines.append(f"    • {error.stage}{target}: {error.error_type}: {error.message}")
        if summary.error_count > MAX_ERRORS_DISPLAY:
            lines.append(f"    • ... and {summary.error_count - MAX_ERRORS_DISPLAY} more error(s)")

    lines.append("")
    lines.append(f"  Duration:     {summary.duration_s:.2f}s")
    lines.append("")
    lines.append(SEPARATOR)
    lines.append("")
    return "\n".join(lines)


def format_summary_json(summary: RunSummary | None) -> dict:
    """Format a RunSummary as a structured JSON-compatible dictionary."""
    if summary is None:
        logger.error("report_json_input_error | summary_none=True | fallback=error_payload")
        return {
            "status": "error",
            "matched_count": 0,
            "unmatched_count": 0,
            "updated_count": 0,
            "errors": [{"stage": "report", "message": "No run summary available"}],
        }

    return {
        "status": run_status(summary),
        "window": {
            "start": summary.window.start.isoformat(),
            "end": summary.window.end.isoformat(),
        },
        "category": summary.category.value if summary.category else None,
        "assignment": summary.assignment,
        "feed_b_count": summary.feed_b_count,
        "feed_a_count": summary.feed_a_count,
        "unindexable_count": summary.unindexable_count,
        "matched_count": summary.matched_count,
        "unmatched_count": summary.unmatched_count,
        "updated_count": summary.updated_count,
        "skipped_count": summary.skipped_count,
        "unmatched_reasons": dict(sorted(summary.unmatched_reasons.items())),
        "adjustments": {
            "fetched": summary.adjustments_fetched,
            "applied": summary.adjustments_applied,
            "skipped": summary.adjustments_skipped,
            "unmatched": summary.adjustments_unmatched,
        },
        "errors": [error.model_dump() for error in summary.errors],
        "started_at": summary.started_at,
        "duration_s": summary.duration_s,
    }
