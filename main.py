"""
main.py - CLI orchestration for the call reconciliation engine.

This module is orchestration-only:
1. load feed exports (CSV) into the call store
2. run one reconciliation over a date window
3. print the run summary
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import date
from typing import Optional

import pandas as pd

from call_store import JsonCallStore
from config import ReconcileConfig
from logging_config import get_logger, level_from_env, setup_logging
from models import AdjustmentRecord, CallRecord, Category, FeedSource, ReconcileWindow
from normalize import normalize_amount, normalize_signed_amount, normalize_timestamp
from reconcile import run_reconciliation
from report import format_summary, format_summary_json, run_status

logger = get_logger("call-recon")

# Canonical column -> accepted header spellings (lower-cased, spaces as underscores).
CALL_COLUMNS: dict[str, list[str]] = {
    "record_id": ["record_id", "call_id", "inbound_call_id", "id"],
    "caller_id": ["caller_id", "caller", "caller_number", "phone"],
    "timestamp": ["timestamp", "call_timestamp", "call_time", "date"],
}
CALL_OPTIONAL: dict[str, list[str]] = {
    "payout": ["payout", "payout_amount"],
    "revenue": ["revenue", "conversion_amount"],
    "category": ["category", "campaign_type"],
    "target_id": ["target_id"],
    "target_name": ["target_name"],
    "duration_seconds": ["duration_seconds", "duration"],
}
ADJUSTMENT_COLUMNS: dict[str, list[str]] = {
    "caller_id": ["caller_id", "caller", "phone"],
    "timestamp": ["timestamp", "call_time", "date"],
    "amount": ["amount", "adjustment_amount"],
}
ADJUSTMENT_OPTIONAL: dict[str, list[str]] = {
    "classification": ["classification", "type"],
    "adjustment_time": ["adjustment_time"],
    "call_sid": ["call_sid"],
}


def _configure_stdout() -> None:
    """Prefer UTF-8 stdout so summary bullets print on any console."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (OSError, ValueError) as exc:
        logger.debug("stdout_reconfigure_warning | error=%s", exc)


def _read_csv(csv_path: str, label: str) -> pd.DataFrame:
    """Read a CSV as strings with normalized headers and no empty rows."""
    if csv_path is None:
        raise ValueError("csv_path cannot be None")

    csv_path = str(csv_path).strip()
    if not csv_path:
        raise ValueError("csv_path cannot be empty")

    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"{label} CSV not found: {csv_path}")

    try:
        df = pd.read_csv(csv_path, encoding="utf-8-sig", dtype=str, keep_default_na=False)
    except UnicodeDecodeError:
        logger.warning(
            "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
            csv_path,
        )
        df = pd.read_csv(csv_path, encoding="latin-1", dtype=str, keep_default_na=False)
    except Exception as exc:
        raise ValueError(f"Failed to read CSV '{csv_path}': {exc}") from exc

    df.columns = [str(col).strip().lower().replace(" ", "_") for col in df.columns]
    for column in df.columns:
        df[column] = df[column].astype(str).str.strip()
    df = df[(df != "").any(axis=1)].copy()
    return df


def _resolve_columns(
    df: pd.DataFrame,
    required: dict[str, list[str]],
    optional: dict[str, list[str]],
    csv_path: str,
    label: str,
) -> dict[str, Optional[str]]:
    """Map canonical names to the headers present in `df`."""
    resolved: dict[str, Optional[str]] = {}
    missing: list[str] = []
    for canonical, aliases in {**required, **optional}.items():
        header = next((alias for alias in aliases if alias in df.columns), None)
        if header is None and canonical in required:
            missing.append(canonical)
        resolved[canonical] = header

    if missing:
        raise ValueError(
            f"{label} CSV missing required columns: {missing}\n"
            f"Required: {list(required)}\n"
            f"Found: {list(df.columns)}\n"
            f"File: {csv_path}"
        )
    return resolved


def _cell(row: pd.Series, header: Optional[str]) -> str:
    if header is None:
        return ""
    return str(row[header])


def _category(raw: str) -> Optional[Category]:
    text = raw.strip().upper()
    try:
        return Category(text) if text else None
    except ValueError:
        logger.warning("csv_category_warning | value=%r | fallback='resolve from target'", raw)
        return None


def _duration(raw: str) -> Optional[int]:
    seconds = normalize_amount(raw)
    return int(seconds) if raw and seconds > 0 else None


def load_calls_csv(csv_path: str, source: FeedSource) -> list[CallRecord]:
    """Load a Feed-A or Feed-B call export."""
    label = "Feed A" if source == FeedSource.FEED_A else "Feed B"
    df = _read_csv(csv_path, label)
    if df.empty:
        raise ValueError(f"{label} CSV is empty: {csv_path}")
    columns = _resolve_columns(df, CALL_COLUMNS, CALL_OPTIONAL, csv_path, label)

    records: list[CallRecord] = []
    skipped = 0
    unparsable_times = 0
    for _, row in df.iterrows():
        record_id = _cell(row, columns["record_id"])
        raw_time = _cell(row, columns["timestamp"])
        if not record_id or not raw_time:
            skipped += 1
            continue

        timestamp = normalize_timestamp(raw_time)
        if timestamp is None:
            unparsable_times += 1

        records.append(
            CallRecord(
                record_id=record_id,
                source=source,
                caller_id=_cell(row, columns["caller_id"]) or None,
                timestamp=timestamp or raw_time,
                payout=normalize_amount(_cell(row, columns["payout"])),
                revenue=normalize_amount(_cell(row, columns["revenue"])),
                category=_category(_cell(row, columns["category"])),
                target_id=_cell(row, columns["target_id"]) or None,
                target_name=_cell(row, columns["target_name"]) or None,
                duration_seconds=_duration(_cell(row, columns["duration_seconds"])),
            )
        )

    if skipped:
        logger.warning(
            "csv_row_warning | path=%s | skipped_rows=%s | reason='missing id or timestamp'",
            csv_path,
            skipped,
        )
    if unparsable_times:
        logger.warning(
            "csv_timestamp_warning | path=%s | unparsable=%s | fallback='kept raw'",
            csv_path,
            unparsable_times,
        )
    logger.info("csv_loaded | path=%s | source=%s | records=%s", csv_path, source.value, len(records))
    return records


def load_adjustments_csv(csv_path: str) -> list[AdjustmentRecord]:
    """Load a Feed-A adjustments export."""
    df = _read_csv(csv_path, "Adjustments")
    if df.empty:
        logger.info("csv_loaded | path=%s | adjustments=0", csv_path)
        return []
    columns = _resolve_columns(df, ADJUSTMENT_COLUMNS, ADJUSTMENT_OPTIONAL, csv_path, "Adjustments")

    adjustments: list[AdjustmentRecord] = []
    for _, row in df.iterrows():
        raw_time = _cell(row, columns["timestamp"])
        if not raw_time:
            continue
        timestamp = normalize_timestamp(raw_time) or raw_time
        adjustment_time = _cell(row, columns["adjustment_time"])
        adjustments.append(
            AdjustmentRecord(
                caller_id=_cell(row, columns["caller_id"]) or None,
                timestamp=timestamp,
                amount=normalize_signed_amount(_cell(row, columns["amount"])),
                classification=_cell(row, columns["classification"]) or None,
                adjustment_time=(normalize_timestamp(adjustment_time) or adjustment_time) or None,
                call_sid=_cell(row, columns["call_sid"]) or None,
            )
        )

    logger.info("csv_loaded | path=%s | adjustments=%s", csv_path, len(adjustments))
    return adjustments


def _parse_date(value: str, flag: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"{flag} must be YYYY-MM-DD, got {value!r}") from exc


def resolve_window(
    days: Optional[int],
    start: Optional[str],
    end: Optional[str],
    config: ReconcileConfig,
    today: Optional[date] = None,
) -> ReconcileWindow:
    """Explicit --start/--end wins; otherwise the last N days ending yesterday."""
    if start:
        start_date = _parse_date(start, "--start")
        end_date = _parse_date(end, "--end") if end else start_date
        return ReconcileWindow(start=start_date, end=end_date)
    if end:
        raise ValueError("--end requires --start")
    return ReconcileWindow.past_days(days or config.lookback_days, today=today)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="call-recon",
        description=(
            "Call Reconciliation Engine\n"
            "Links calls reported by two independent feeds and folds "
            "rate adjustments onto the linked calls."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --feed-a affiliate.csv --feed-b tracking.csv --days 10\n"
            "  %(prog)s --adjustments adjustments.csv --start 2025-12-16\n"
            "  %(prog)s --start 2025-12-01 --end 2025-12-10 --category STATIC --json\n"
        ),
    )
    parser.add_argument("--feed-a", type=str, help="Feed A call export to ingest before the run")
    parser.add_argument("--feed-b", type=str, help="Feed B call export to ingest before the run")
    parser.add_argument("--adjustments", type=str, help="Feed A adjustments export to ingest")
    parser.add_argument("--store", type=str, help="Path to the JSON call store (default: RECON_STORE_FILE)")
    parser.add_argument("--days", type=int, help="Reconcile the last N days ending yesterday")
    parser.add_argument("--start", type=str, help="Window start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="Window end date (YYYY-MM-DD, default: --start)")
    parser.add_argument(
        "--category",
        type=str,
        choices=[category.value for category in Category],
        help="Only reconcile one category",
    )
    parser.add_argument(
        "--assignment",
        type=str,
        choices=["greedy", "global"],
        help="Candidate assignment mode (default: greedy)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output the run summary as JSON instead of formatted text",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the Call Reconciliation Engine."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_stdout()
    setup_logging(
        level=logging.DEBUG if args.verbose else level_from_env(),
        json_format=args.log_json,
    )

    if args.days is not None and args.start:
        parser.error("Use --days OR --start/--end, not both")
    if args.days is not None and args.days < 1:
        parser.error("--days must be >= 1")

    try:
        config = ReconcileConfig.from_env()
        if args.assignment:
            config = config.model_copy(update={"assignment": args.assignment})

        store = JsonCallStore(args.store or config.store_path, config)
        if args.feed_a:
            store.upsert_feed_a_calls(load_calls_csv(args.feed_a, FeedSource.FEED_A))
        if args.feed_b:
            store.upsert_feed_b_calls(load_calls_csv(args.feed_b, FeedSource.FEED_B))
        if args.adjustments:
            store.add_adjustments(load_adjustments_csv(args.adjustments))

        window = resolve_window(args.days, args.start, args.end, config)
        category = Category(args.category) if args.category else None
        logger.info(
            "cli_mode | window=%s | category=%s | store=%s",
            window.describe(),
            category.value if category else "all",
            store.path,
        )

        # One save for the whole run instead of one per persisted record.
        with store.deferred_saves():
            summary = run_reconciliation(window, category, feeds=store, store=store, config=config)
        if args.json:
            print(json.dumps(format_summary_json(summary), indent=2))
        else:
            print(format_summary(summary))
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc

    if run_status(summary) == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
