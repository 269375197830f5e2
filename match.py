"""
match.py - Feed-B to Feed-A call matching.

For each incoming Feed-B call the matcher looks up Feed-A candidates with
the same category and canonical caller id, scores each one on minute
distance and payout agreement, and links the lowest score. A linked
candidate is consumed for the rest of the run.

Scoring (lower is better):
- time difference in minutes, seconds truncated on both sides
- both payouts present and within tolerance: score = time * 0.1
- both payouts present but different:        score = time + diff * 10
- a payout missing or zero:                   score = time

Two assignment modes:
- greedy (default): records are processed in timestamp order and the first
  record to claim a candidate keeps it
- global: every feasible pair in the run is collected first and pairs are
  assigned by ascending score, skipping already-assigned endpoints
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime
from typing import NamedTuple, Optional

from candidate_index import CandidateIndex
from config import ReconcileConfig
from logging_config import get_logger
from models import Category, CallRecord, MatchDecision, MatchStatus, UnmatchedReason
from normalize import normalize_caller_id, parse_timestamp
from temporal import days_apart, minutes_apart

logger = get_logger(__name__)

DURATION_BONUS_SECONDS = 10
DURATION_BONUS_FACTOR = 0.5


class ScoredCandidate(NamedTuple):
    candidate: CallRecord
    score: float
    time_diff: float
    payout_diff: float
    evidence: list[str]


def resolve_category(record: CallRecord, config: ReconcileConfig) -> Optional[Category]:
    """Category of an incoming record, from its tag or its routing target."""
    if record.category is not None:
        return record.category

    target_id = (record.target_id or "").strip()
    if target_id and target_id in config.target_categories:
        return config.target_categories[target_id]

    target_name = (record.target_name or "").strip().lower()
    if target_name:
        return Category.STATIC if "static" in target_name else Category.API

    return None


def order_key(record: CallRecord) -> tuple[datetime, str]:
    """Deterministic processing order: timestamp, then source id."""
    parsed = parse_timestamp(record.timestamp)
    return (parsed or datetime.max, record.record_id)


def sort_incoming(records: Iterable[CallRecord]) -> list[CallRecord]:
    return sorted(records, key=order_key)


def score_candidate(
    incoming: CallRecord,
    candidate: CallRecord,
    config: ReconcileConfig,
) -> tuple[Optional[ScoredCandidate], str]:
    """Score one Feed-A candidate against an incoming Feed-B call.

    Returns (scored, evidence). `scored` is None when the pair falls outside
    the allowed window; `evidence` then says why.
    """
    day_gap = days_apart(candidate.timestamp, incoming.timestamp)
    if day_gap is None:
        return None, (
            f"Timestamp unparsable (feed A: {candidate.timestamp!r}, feed B: {incoming.timestamp!r})"
        )
    if day_gap > 1:
        return None, f"Dates {day_gap} days apart"

    time_diff = minutes_apart(candidate.timestamp, incoming.timestamp, truncate=True)
    if math.isinf(time_diff):
        return None, f"Timestamp unparsable (feed A: {candidate.timestamp!r}, feed B: {incoming.timestamp!r})"

    effective_window = config.window_minutes if day_gap == 0 else config.full_day_minutes
    if time_diff > effective_window:
        return None, (
            f"Time difference {time_diff:.1f} min exceeds "
            f"{'same-day' if day_gap == 0 else 'cross-midnight'} window of {effective_window:.0f} min"
        )

    evidence = [
        f"Time difference: {time_diff:.1f} min "
        f"({'same day' if day_gap == 0 else 'adjacent day'}, window {effective_window:.0f} min)"
    ]
    score = time_diff

    tolerance_s = config.duration_tolerance_seconds
    a_duration = candidate.duration_seconds or 0
    b_duration = incoming.duration_seconds or 0
    if tolerance_s is not None and a_duration > 0 and b_duration > 0:
        duration_diff = abs(a_duration - b_duration)
        if duration_diff > tolerance_s:
            return None, f"Durations differ by {duration_diff}s (tolerance {tolerance_s}s)"
        if duration_diff <= DURATION_BONUS_SECONDS:
            score *= DURATION_BONUS_FACTOR
            evidence.append(f"Duration match: {a_duration}s vs {b_duration}s")

    payout_diff = round(abs(candidate.payout - incoming.payout), 2)
    if candidate.payout > 0 and incoming.payout > 0:
        if payout_diff <= config.payout_tolerance:
            score *= config.exact_payout_factor
            evidence.append(f"Payout match: ${candidate.payout:.2f} vs ${incoming.payout:.2f}")
        else:
            score += payout_diff * config.payout_penalty_factor
            evidence.append(
                f"Payout differs: ${candidate.payout:.2f} vs ${incoming.payout:.2f} "
                f"(diff ${payout_diff:.2f})"
            )
    else:
        evidence.append("Payout not comparable (missing on one side)")

    return ScoredCandidate(candidate, score, time_diff, payout_diff, evidence), evidence[0]


class CallMatcher:
    """Links Feed-B calls to indexed Feed-A calls, at most once each per run."""

    def __init__(self, index: CandidateIndex, config: Optional[ReconcileConfig] = None) -> None:
        self.index = index
        self.config = config or ReconcileConfig()
        self.consumed: set[str] = set()

    def _precheck(
        self, record: CallRecord
    ) -> tuple[Optional[MatchDecision], Optional[list[CallRecord]]]:
        """Resolve category/caller/candidates, or return an early decision."""
        counterpart = self.index.linked_counterpart(record.record_id)
        if counterpart is not None or record.matched_counterpart_id is not None:
            counterpart_id = (
                counterpart.record_id if counterpart is not None else record.matched_counterpart_id
            )
            return MatchDecision.already_linked(record, counterpart_id, counterpart), None

        category = resolve_category(record, self.config)
        if category is None:
            return (
                MatchDecision.unmatched(
                    record,
                    UnmatchedReason.INVALID_CATEGORY,
                    [f"Unknown category for target {record.target_id!r}"],
                ),
                None,
            )

        normalized = record.normalized_caller_id or normalize_caller_id(
            record.caller_id, self.config.country_code, self.config.national_number_length
        )
        if normalized is None:
            return (
                MatchDecision.unmatched(
                    record,
                    UnmatchedReason.INVALID_CALLER_ID,
                    [f"Caller id {record.caller_id!r} cannot be normalized"],
                ),
                None,
            )

        candidates = self.index.lookup(category, normalized)
        if not candidates:
            return (
                MatchDecision.unmatched(
                    record,
                    UnmatchedReason.NO_CANDIDATES,
                    [f"No feed A calls for category {category.value} and caller {normalized}"],
                ),
                None,
            )
        return None, candidates

    def _available(self, candidate: CallRecord) -> bool:
        return candidate.record_id not in self.consumed and not candidate.is_linked

    def _feasible(
        self, record: CallRecord, candidates: list[CallRecord]
    ) -> tuple[list[tuple[int, ScoredCandidate]], int, list[str]]:
        """Score available candidates. Returns (feasible, available_count, skips)."""
        feasible: list[tuple[int, ScoredCandidate]] = []
        available = 0
        skips: list[str] = []

        for position, candidate in enumerate(candidates):
            if not self._available(candidate):
                continue
            available += 1
            scored, evidence = score_candidate(record, candidate, self.config)
            logger.debug(
                "candidate_scoring | incoming=%s | candidate=%s | score=%s | evidence=%r",
                record.record_id,
                candidate.record_id,
                f"{scored.score:.3f}" if scored else "skip",
                evidence,
            )
            if scored is None:
                skips.append(f"{candidate.record_id}: {evidence}")
                continue
            feasible.append((position, scored))

        return feasible, available, skips

    @staticmethod
    def _no_match(record: CallRecord, available: int, skips: list[str]) -> MatchDecision:
        if available == 0:
            return MatchDecision.unmatched(
                record,
                UnmatchedReason.ALL_CANDIDATES_CONSUMED,
                ["Every candidate is already linked or consumed"],
            )
        return MatchDecision.unmatched(record, UnmatchedReason.NO_CANDIDATE_IN_WINDOW, skips)

    def _consume(self, record: CallRecord, best: ScoredCandidate) -> MatchDecision:
        self.consumed.add(best.candidate.record_id)
        logger.debug(
            "match_found | incoming=%s | candidate=%s | score=%.3f | time_diff=%.1f | payout_diff=%.2f",
            record.record_id,
            best.candidate.record_id,
            best.score,
            best.time_diff,
            best.payout_diff,
        )
        return MatchDecision.matched(
            record,
            best.candidate,
            score=best.score,
            time_diff_minutes=best.time_diff,
            payout_diff=best.payout_diff,
            evidence=best.evidence,
        )

    def match(self, record: CallRecord) -> MatchDecision:
        """Greedy: link the lowest-scoring available candidate right away."""
        early, candidates = self._precheck(record)
        if early is not None:
            return early

        feasible, available, skips = self._feasible(record, candidates or [])
        best: Optional[ScoredCandidate] = None
        for _, scored in feasible:
            if best is None or scored.score < best.score:
                best = scored

        if best is None:
            return self._no_match(record, available, skips)
        return self._consume(record, best)

    def match_all(self, records: Iterable[CallRecord]) -> list[MatchDecision]:
        """Match a batch in deterministic order using the configured mode."""
        ordered = sort_incoming(records)
        if self.config.assignment == "global":
            return self._match_global(ordered)
        return [self.match(record) for record in ordered]

    def _match_global(self, ordered: list[CallRecord]) -> list[MatchDecision]:
        decisions: list[Optional[MatchDecision]] = [None] * len(ordered)
        pending: dict[int, tuple[int, list[str]]] = {}
        triples: list[tuple[float, int, int, ScoredCandidate]] = []

        for order, record in enumerate(ordered):
            early, candidates = self._precheck(record)
            if early is not None:
                decisions[order] = early
                continue
            feasible, available, skips = self._feasible(record, candidates or [])
            pending[order] = (available, skips)
            for position, scored in feasible:
                triples.append((scored.score, order, position, scored))

        triples.sort(key=lambda item: (item[0], item[1], item[2]))
        with_feasible = {order for _, order, _, _ in triples}
        for _, order, _, scored in triples:
            if decisions[order] is not None:
                continue
            if scored.candidate.record_id in self.consumed:
                continue
            decisions[order] = self._consume(ordered[order], scored)

        for order, (available, skips) in pending.items():
            if decisions[order] is None:
                decisions[order] = (
                    MatchDecision.unmatched(
                        ordered[order],
                        UnmatchedReason.ALL_CANDIDATES_CONSUMED,
                        ["Every feasible candidate was assigned to a better-scoring call"],
                    )
                    if order in with_feasible
                    else self._no_match(ordered[order], available, skips)
                )

        return [decision for decision in decisions if decision is not None]


def summarize_decisions(decisions: list[MatchDecision]) -> dict[str, int]:
    """Count decisions by status for logging."""
    counts = {status.value: 0 for status in MatchStatus}
    for decision in decisions:
        counts[decision.status.value] += 1
    return counts
