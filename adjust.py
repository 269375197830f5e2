"""
adjust.py - Fold Feed-A rate adjustments onto already-linked calls.

Candidates share the adjustment's canonical caller id, sit on the same
recorded calendar day, lie within `adjustment_window_minutes`, and belong
to one of `adjustment_categories`. An in-window call that already carries
the same amount means an earlier run over an overlapping window applied
this adjustment, so it is reported as already applied. Calls carrying any
other amount are never candidates because adjustment writes are fill-only.
Lowest minute distance wins, first-seen breaks ties, and each call takes
at most one adjustment per run.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from config import ReconcileConfig
from logging_config import get_logger
from models import AdjustmentDecision, AdjustmentRecord, CallRecord, UnmatchedReason
from normalize import normalize_caller_id, parse_timestamp
from temporal import date_prefix, minutes_apart, same_day

logger = get_logger(__name__)


def already_applied(call: CallRecord, adjustment: AdjustmentRecord, tolerance: float) -> bool:
    """Whether `call` already carries this adjustment's amount."""
    if not call.has_adjustment:
        return False
    return abs((call.adjustment_amount or 0.0) - adjustment.amount) < tolerance


def dedupe_adjustments(adjustments: Iterable[AdjustmentRecord]) -> list[AdjustmentRecord]:
    """Drop repeated (caller, timestamp, amount) rows, keeping the first."""
    seen: set[str] = set()
    unique: list[AdjustmentRecord] = []
    for adjustment in adjustments:
        if adjustment.key in seen:
            logger.debug("adjustment_duplicate | key=%s", adjustment.key)
            continue
        seen.add(adjustment.key)
        unique.append(adjustment)
    return unique


class AdjustmentMatcher:
    """Matches adjustments onto persisted calls, at most once per call per run."""

    def __init__(self, calls: Iterable[CallRecord], config: Optional[ReconcileConfig] = None) -> None:
        self.config = config or ReconcileConfig()
        self.consumed: set[str] = set()
        # Calls whose carried amount has been attributed to an adjustment this run.
        self.claimed: set[str] = set()
        self._by_caller: dict[str, list[CallRecord]] = {}

        eligible = 0
        categories = set(self.config.adjustment_categories)
        for call in calls:
            if self.config.adjustments_require_link and not call.is_linked:
                continue
            if categories and (call.category or self.config.default_category) not in categories:
                continue
            normalized = call.normalized_caller_id or normalize_caller_id(
                call.caller_id, self.config.country_code, self.config.national_number_length
            )
            if normalized is None:
                continue
            self._by_caller.setdefault(normalized, []).append(call)
            eligible += 1

        logger.info(
            "adjustment_index_built | eligible_calls=%s | callers=%s | require_link=%s | categories=%s",
            eligible,
            len(self._by_caller),
            self.config.adjustments_require_link,
            ",".join(sorted(category.value for category in categories)) or "all",
        )

    def match(self, adjustment: AdjustmentRecord) -> AdjustmentDecision:
        normalized = normalize_caller_id(
            adjustment.caller_id, self.config.country_code, self.config.national_number_length
        )
        if normalized is None:
            return AdjustmentDecision(
                adjustment=adjustment,
                reason=UnmatchedReason.INVALID_CALLER_ID,
                evidence=[f"Caller id {adjustment.caller_id!r} cannot be normalized"],
            )

        candidates = self._by_caller.get(normalized, [])
        if not candidates:
            return AdjustmentDecision(
                adjustment=adjustment,
                reason=UnmatchedReason.NO_CANDIDATES,
                evidence=[f"No linked calls for caller {normalized}"],
            )

        best: Optional[CallRecord] = None
        best_diff = 0.0
        carrier: Optional[CallRecord] = None
        carrier_diff = 0.0
        same_day_count = 0
        applied_count = 0
        consumed_count = 0
        occupied_count = 0

        for call in candidates:
            if not same_day(call.timestamp, adjustment.timestamp):
                continue
            same_day_count += 1

            if already_applied(call, adjustment, self.config.adjustment_tolerance):
                applied_count += 1
                diff = minutes_apart(call.timestamp, adjustment.timestamp)
                if (
                    call.record_id not in self.claimed
                    and diff <= self.config.adjustment_window_minutes
                    and (carrier is None or diff < carrier_diff)
                ):
                    carrier = call
                    carrier_diff = diff
                continue
            if call.has_adjustment:
                # Writes are fill-only, so this call can never take a second amount.
                occupied_count += 1
                logger.debug(
                    "adjustment_skip | call=%s | existing=%.2f | amount=%.2f | reason='already adjusted'",
                    call.record_id,
                    call.adjustment_amount or 0.0,
                    adjustment.amount,
                )
                continue
            if call.record_id in self.consumed:
                consumed_count += 1
                continue

            diff = minutes_apart(call.timestamp, adjustment.timestamp)
            if diff > self.config.adjustment_window_minutes:
                continue
            if best is None or diff < best_diff:
                best = call
                best_diff = diff

        if carrier is not None:
            self.claimed.add(carrier.record_id)
            logger.debug(
                "adjustment_skip | call=%s | amount=%.2f | reason='already applied'",
                carrier.record_id,
                adjustment.amount,
            )
            return AdjustmentDecision(
                adjustment=adjustment,
                reason=UnmatchedReason.ALREADY_APPLIED,
                evidence=[
                    f"Call {carrier.record_id} already carries ${adjustment.amount:.2f} "
                    f"({carrier_diff:.1f} min apart)"
                ],
            )

        if best is None:
            if same_day_count and applied_count == same_day_count:
                reason = UnmatchedReason.ALREADY_APPLIED
                note = "Adjustment already applied by a previous run"
            elif same_day_count and applied_count + consumed_count + occupied_count == same_day_count:
                reason = UnmatchedReason.ALL_CANDIDATES_CONSUMED
                note = "Every same-day call already carries or took an adjustment"
            else:
                reason = UnmatchedReason.NO_CANDIDATE_IN_WINDOW
                note = (
                    f"No linked call within {self.config.adjustment_window_minutes:.0f} min "
                    f"on {date_prefix(adjustment.timestamp) or adjustment.timestamp!r}"
                )
            return AdjustmentDecision(adjustment=adjustment, reason=reason, evidence=[note])

        self.consumed.add(best.record_id)
        return AdjustmentDecision(
            adjustment=adjustment,
            candidate=best,
            time_diff_minutes=best_diff,
            evidence=[
                f"Adjustment ${adjustment.amount:.2f} -> call {best.record_id} ({best_diff:.1f} min apart)"
            ],
        )

    def match_all(self, adjustments: Iterable[AdjustmentRecord]) -> list[AdjustmentDecision]:
        ordered = sorted(
            dedupe_adjustments(adjustments),
            key=lambda adj: (
                parse_timestamp(adj.timestamp) or datetime.max,
                adj.caller_id or "",
                adj.amount,
            ),
        )
        return [self.match(adjustment) for adjustment in ordered]
