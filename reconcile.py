"""
reconcile.py - One reconciliation run over a date window.

This module is orchestration-only:
1. fetch Feed-B calls for the window
2. fetch Feed-A calls for the window plus a boundary margin, build the index
3. match Feed-B calls in timestamp order
4. persist links and unmatched reasons through the store
5. fold pending Feed-A adjustments onto linked calls

Fetching and persistence belong to collaborators passed in by the caller.
A collaborator failure never aborts the run: fetch failures end the run
early with an error in the summary, write failures are retried and then
recorded per record.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Union

from adjust import AdjustmentMatcher
from candidate_index import CandidateIndex
from config import ReconcileConfig
from logging_config import get_logger
from match import CallMatcher, summarize_decisions
from models import (
    AdjustmentRecord,
    CallRecord,
    Category,
    MatchDecision,
    MatchStatus,
    ReconcileWindow,
    RunError,
    RunSummary,
    UnmatchedReason,
)

logger = get_logger(__name__)


class StorageWriteError(RuntimeError):
    """A collaborator could not persist a record."""


class CallFeeds(Protocol):
    """Read side: records the run reconciles."""

    def fetch_feed_a_calls(
        self, window: ReconcileWindow, category: Optional[Category] = None
    ) -> list[CallRecord]: ...

    def fetch_feed_b_calls(
        self, window: ReconcileWindow, category: Optional[Category] = None
    ) -> list[CallRecord]: ...

    def fetch_pending_adjustments(self, window: ReconcileWindow) -> list[AdjustmentRecord]: ...


class CallStore(Protocol):
    """Write side. Every method returns an ack; False means the write was refused."""

    def persist_match(
        self, call_id: str, counterpart_id: str, payout: float, revenue: float
    ) -> bool: ...

    def persist_adjustment(
        self,
        call_id: str,
        amount: float,
        time: str,
        classification: Optional[str] = None,
    ) -> bool: ...

    def persist_unmatched(
        self, record: Union[CallRecord, AdjustmentRecord], reason: UnmatchedReason
    ) -> bool: ...


def _dedupe_calls(records: list[CallRecord]) -> list[CallRecord]:
    seen: set[str] = set()
    unique: list[CallRecord] = []
    for record in records:
        if record.record_id in seen:
            logger.debug("feed_b_duplicate | record_id=%s", record.record_id)
            continue
        seen.add(record.record_id)
        unique.append(record)
    return unique


class _Run:
    """Per-invocation state: config, collaborators and the summary being filled."""

    def __init__(
        self,
        summary: RunSummary,
        feeds: CallFeeds,
        store: CallStore,
        config: ReconcileConfig,
    ) -> None:
        self.summary = summary
        self.feeds = feeds
        self.store = store
        self.config = config

    def record_error(self, stage: str, exc: BaseException, record_id: Optional[str] = None) -> None:
        self.summary.errors.append(
            RunError(
                stage=stage,
                record_id=record_id,
                error_type=type(exc).__name__,
                message=str(exc),
            )
        )
        logger.error(
            "run_error | stage=%s | record_id=%s | error_type=%s | error=%s",
            stage,
            record_id,
            type(exc).__name__,
            exc,
            exc_info=True,
        )

    def fetch(self, stage: str, fn: Callable[..., Any], *args: Any) -> Optional[Any]:
        try:
            return fn(*args)
        except Exception as exc:
            self.record_error(stage, exc)
            return None

    def persist(
        self, stage: str, record_id: str, fn: Callable[..., bool], *args: Any
    ) -> Optional[bool]:
        """Call a store write with retries. Returns the ack, or None on failure."""
        attempts = self.config.write_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return bool(fn(*args))
            except Exception as exc:
                if attempt < attempts:
                    logger.warning(
                        "persist_retry | stage=%s | record_id=%s | attempt=%s/%s | error=%s",
                        stage,
                        record_id,
                        attempt,
                        attempts,
                        exc,
                    )
                    continue
                self.record_error(stage, exc, record_id=record_id)
        return None


def _persist_matches(run: _Run, decisions: list[MatchDecision]) -> None:
    summary = run.summary
    for decision in decisions:
        record = decision.record

        if decision.status == MatchStatus.ALREADY_LINKED:
            summary.skipped_count += 1
            continue

        if decision.status == MatchStatus.UNMATCHED:
            summary.unmatched_count += 1
            summary.count_reason(decision.reason)
            run.persist(
                "persist_unmatched",
                record.record_id,
                run.store.persist_unmatched,
                record,
                decision.reason,
            )
            continue

        summary.matched_count += 1
        ack = run.persist(
            "persist_match",
            record.record_id,
            run.store.persist_match,
            decision.candidate.record_id,
            record.record_id,
            record.payout,
            record.revenue,
        )
        if ack:
            summary.updated_count += 1
        elif ack is False:
            summary.skipped_count += 1
            logger.info(
                "persist_refused | call=%s | counterpart=%s | reason='link already filled'",
                decision.candidate.record_id,
                record.record_id,
            )


def _run_adjustments(run: _Run, window: ReconcileWindow, category: Optional[Category]) -> None:
    summary = run.summary
    adjustments = run.fetch(
        "fetch_adjustments", run.feeds.fetch_pending_adjustments, window
    )
    if adjustments is None:
        return
    summary.adjustments_fetched = len(adjustments)
    if not adjustments:
        logger.info("adjustment_pass | status=skipped | reason='no pending adjustments'")
        return

    # Re-read so links written above are visible.
    calls = run.fetch("fetch_feed_a_adjust", run.feeds.fetch_feed_a_calls, window, category)
    if calls is None:
        return

    matcher = AdjustmentMatcher(calls, run.config)
    for decision in matcher.match_all(adjustments):
        adjustment = decision.adjustment
        if not decision.is_matched:
            if decision.reason == UnmatchedReason.ALREADY_APPLIED:
                summary.adjustments_skipped += 1
                continue
            summary.adjustments_unmatched += 1
            run.persist(
                "persist_unmatched_adjustment",
                adjustment.key,
                run.store.persist_unmatched,
                adjustment,
                decision.reason,
            )
            continue

        ack = run.persist(
            "persist_adjustment",
            decision.candidate.record_id,
            run.store.persist_adjustment,
            decision.candidate.record_id,
            adjustment.amount,
            adjustment.adjustment_time or adjustment.timestamp,
            adjustment.classification,
        )
        if ack:
            summary.adjustments_applied += 1
        elif ack is False:
            # The store saw an adjustment the fetched copy did not.
            summary.adjustments_unmatched += 1
            logger.info(
                "persist_refused | call=%s | adjustment=%s | reason='adjustment already filled'",
                decision.candidate.record_id,
                adjustment.key,
            )
            run.persist(
                "persist_unmatched_adjustment",
                adjustment.key,
                run.store.persist_unmatched,
                adjustment,
                UnmatchedReason.ALL_CANDIDATES_CONSUMED,
            )

    logger.info(
        "adjustment_pass | fetched=%s | applied=%s | skipped=%s | unmatched=%s",
        summary.adjustments_fetched,
        summary.adjustments_applied,
        summary.adjustments_skipped,
        summary.adjustments_unmatched,
    )


def run_reconciliation(
    window: ReconcileWindow,
    category: Optional[Category] = None,
    *,
    feeds: CallFeeds,
    store: Optional[CallStore] = None,
    config: Optional[ReconcileConfig] = None,
) -> RunSummary:
    """Reconcile Feed-B calls against Feed-A calls for `window`.

    `store` defaults to `feeds` when one object implements both sides.
    Returns a RunSummary; collaborator failures are reported in
    `summary.errors` rather than raised.
    """
    config = config or ReconcileConfig()
    store = store if store is not None else feeds  # type: ignore[assignment]
    summary = RunSummary(
        window=window,
        category=category,
        assignment=config.assignment,
        started_at=datetime.now(timezone.utc).isoformat(),
    )
    run = _Run(summary, feeds, store, config)
    run_start = time.time()

    logger.info(
        "run_start | window=%s | category=%s | assignment=%s",
        window.describe(),
        category.value if category else "all",
        config.assignment,
    )

    try:
        feed_b = run.fetch("fetch_feed_b", feeds.fetch_feed_b_calls, window, category)
        if feed_b is None:
            return summary
        feed_b = _dedupe_calls(feed_b)
        summary.feed_b_count = len(feed_b)

        candidate_window = window.expanded(config.boundary_days)
        feed_a = run.fetch("fetch_feed_a", feeds.fetch_feed_a_calls, candidate_window, category)
        if feed_a is None:
            return summary
        summary.feed_a_count = len(feed_a)

        logger.info(
            "run_fetched | feed_b=%s | feed_a=%s | candidate_window=%s",
            len(feed_b),
            len(feed_a),
            candidate_window.describe(),
        )

        index = CandidateIndex.build(
            feed_a,
            default_category=config.default_category,
            country_code=config.country_code,
            national_length=config.national_number_length,
        )
        summary.unindexable_count = len(index.unindexable)

        decisions = CallMatcher(index, config).match_all(feed_b)
        counts = summarize_decisions(decisions)
        logger.info(
            "match_complete | matched=%s | unmatched=%s | already_linked=%s",
            counts[MatchStatus.MATCHED.value],
            counts[MatchStatus.UNMATCHED.value],
            counts[MatchStatus.ALREADY_LINKED.value],
        )

        _persist_matches(run, decisions)
        _run_adjustments(run, window, category)
        return summary
    finally:
        summary.duration_s = round(time.time() - run_start, 3)
        logger.info(
            "run_complete | window=%s | matched=%s | unmatched=%s | updated=%s | skipped=%s | "
            "adjustments_applied=%s | errors=%s | duration_s=%.2f",
            window.describe(),
            summary.matched_count,
            summary.unmatched_count,
            summary.updated_count,
            summary.skipped_count,
            summary.adjustments_applied,
            summary.error_count,
            summary.duration_s,
        )
