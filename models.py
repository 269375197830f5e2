"""
models.py - Data Models for the Call Reconciliation Engine

Every module in the engine communicates exclusively through these models:

    normalize.py        ->  canonical caller ids / timestamps / amounts
    candidate_index.py  ->  CandidateIndex over CallRecord
    match.py            ->  MatchDecision
    adjust.py           ->  AdjustmentDecision
    reconcile.py        ->  RunSummary

Design principles:
1. Feed-local timestamps are kept as strings; parsing happens at comparison
   time so the calendar date "as recorded" is never lost to a UTC round-trip
2. Decisions carry evidence strings so every link (or refusal to link)
   can be explained in the run report
3. Persisted link/adjustment fields are only ever filled, never replaced

Schema relationships:
    Category        --used by--> CallRecord.category
    CallRecord      --used by--> MatchDecision.record / .candidate
    AdjustmentRecord --used by--> AdjustmentDecision.adjustment
    UnmatchedReason --used by--> MatchDecision.reason, AdjustmentDecision.reason
    RunError        --used by--> RunSummary.errors
"""

from __future__ import annotations

from datetime import date, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Category(str, Enum):
    """Campaign partitions. Calls in different categories never cross-match."""

    # Static tracking line. Only these calls receive Feed-A rate adjustments
    # unless `adjustment_categories` says otherwise.
    STATIC = "STATIC"

    # API-routed calls.
    API = "API"


class FeedSource(str, Enum):
    """Which system observed a call."""

    FEED_A = "feed_a"  # affiliate reporting
    FEED_B = "feed_b"  # call tracking / billing


class UnmatchedReason(str, Enum):
    """Why a matching attempt produced no link. None of these are errors."""

    INVALID_CATEGORY = "invalid_category"
    INVALID_CALLER_ID = "invalid_caller_id"
    NO_CANDIDATES = "no_candidates"
    NO_CANDIDATE_IN_WINDOW = "no_candidate_in_window"
    ALL_CANDIDATES_CONSUMED = "all_candidates_consumed"
    # Adjustment pass only: every same-day candidate already carries this amount.
    ALREADY_APPLIED = "already_applied"


class MatchStatus(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    # Incoming record is already referenced by a persisted link.
    ALREADY_LINKED = "already_linked"


class CallRecord(BaseModel):
    """One call as observed by Feed A or Feed B.

    The same real-world call shows up in both feeds with a different caller
    id format, a different clock and occasionally a different payout. The
    engine links a Feed-A record to at most one Feed-B record by writing
    `matched_counterpart_id` and copying the counterpart's payout/revenue
    into `matched_payout` / `matched_revenue`.

    Idempotency contract: once `matched_counterpart_id` is set it is never
    replaced; once an adjustment is written it is never replaced. Later runs
    over overlapping windows only fill empty fields.
    """

    record_id: str = Field(
        ...,
        description=(
            "Opaque key from the originating feed (Feed-B inbound call id, "
            "or the store key of a Feed-A row). Used as the stable tie-break "
            "when ordering records and as the consumption key within a run."
        ),
    )
    source: FeedSource = Field(
        ...,
        description="Feed that produced this record.",
    )
    caller_id: Optional[str] = Field(
        default=None,
        description=(
            "Caller phone number exactly as the feed reported it. Examples: "
            "'(727) 804-3296', '7278043296', '+17278043296', 'anonymous'."
        ),
    )
    normalized_caller_id: Optional[str] = Field(
        default=None,
        description=(
            "Canonical caller id derived by normalize_caller_id. None when the "
            "raw value cannot be canonicalized (anonymous, empty, no digits)."
        ),
    )
    timestamp: str = Field(
        ...,
        description=(
            "Call time in the feed's own local format, preserved as a string. "
            "Both feeds are expected to be in the same wall-clock zone by the "
            "time they reach the engine; no UTC conversion is applied."
        ),
    )
    payout: float = Field(
        default=0.0,
        ge=0,
        description="Payout recorded by this feed. 0.0 means absent.",
    )
    revenue: float = Field(
        default=0.0,
        ge=0,
        description="Revenue recorded by this feed (Feed B only, else 0.0).",
    )
    category: Optional[Category] = Field(
        default=None,
        description=(
            "Campaign partition. Feed-B records may leave this empty and "
            "carry `target_id` instead; the matcher resolves it."
        ),
    )
    target_id: Optional[str] = Field(
        default=None,
        description="Feed-B routing target id, used to resolve the category.",
    )
    target_name: Optional[str] = Field(
        default=None,
        description="Human-readable routing target name (e.g. '... Static Line').",
    )
    duration_seconds: Optional[int] = Field(
        default=None,
        ge=0,
        description="Call duration in seconds if the feed reports one.",
    )
    matched_counterpart_id: Optional[str] = Field(
        default=None,
        description="record_id of the linked counterpart. Set at most once.",
    )
    matched_payout: Optional[float] = Field(
        default=None,
        description="Counterpart payout copied across on link.",
    )
    matched_revenue: Optional[float] = Field(
        default=None,
        description="Counterpart revenue copied across on link.",
    )
    adjustment_amount: Optional[float] = Field(
        default=None,
        description="Signed rate correction folded into this call.",
    )
    adjustment_time: Optional[str] = Field(
        default=None,
        description="When Feed A issued the applied adjustment.",
    )
    adjustment_classification: Optional[str] = Field(
        default=None,
        description="Feed-A classification tag of the applied adjustment.",
    )

    @property
    def is_linked(self) -> bool:
        """Whether a prior run already linked this record."""
        return self.matched_counterpart_id is not None

    @property
    def has_linked_amounts(self) -> bool:
        """Whether the link carries a non-zero payout or revenue."""
        return bool(self.matched_payout) or bool(self.matched_revenue)

    @property
    def has_adjustment(self) -> bool:
        """Whether a non-zero adjustment is already folded into this call."""
        return self.adjustment_amount is not None and self.adjustment_amount != 0

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "record_id": "RGB-88213",
                    "source": "feed_b",
                    "caller_id": "(727) 804-3296",
                    "timestamp": "2025-12-16T11:30:00",
                    "payout": 12.5,
                    "revenue": 25.0,
                    "target_id": "TA48aa3e3f",
                    "target_name": "Appliance Repair - Static Line",
                }
            ]
        }
    )


class AdjustmentRecord(BaseModel):
    """A post-hoc rate correction issued by Feed A.

    Folded into exactly one prior, already-linked CallRecord. The key
    (caller_id, timestamp, amount) identifies the adjustment across runs;
    re-fetching it in an overlapping window must not apply it again.
    """

    caller_id: Optional[str] = Field(
        default=None,
        description="Caller phone number as printed on the adjustment row.",
    )
    timestamp: str = Field(
        ...,
        description="Time of the original call being corrected (feed-local).",
    )
    amount: float = Field(
        ...,
        description="Signed correction amount. Negative for chargebacks.",
    )
    classification: Optional[str] = Field(
        default=None,
        description="Feed-A tag describing the correction.",
    )
    adjustment_time: Optional[str] = Field(
        default=None,
        description="When the correction was issued. Defaults to `timestamp`.",
    )
    call_sid: Optional[str] = Field(
        default=None,
        description="Feed-A call reference if present on the row.",
    )

    @property
    def key(self) -> str:
        """Stable identity used for de-duplication across runs."""
        return f"{self.caller_id or ''}|{self.timestamp}|{self.amount:.2f}"


class MatchDecision(BaseModel):
    """Outcome of matching one incoming Feed-B record."""

    record: CallRecord
    status: MatchStatus
    candidate: Optional[CallRecord] = None
    score: Optional[float] = None
    time_diff_minutes: Optional[float] = None
    payout_diff: Optional[float] = None
    reason: Optional[UnmatchedReason] = None
    evidence: list[str] = Field(default_factory=list)

    @property
    def is_matched(self) -> bool:
        return self.status == MatchStatus.MATCHED

    @classmethod
    def matched(
        cls,
        record: CallRecord,
        candidate: CallRecord,
        score: float,
        time_diff_minutes: float,
        payout_diff: float,
        evidence: Optional[list[str]] = None,
    ) -> MatchDecision:
        return cls(
            record=record,
            status=MatchStatus.MATCHED,
            candidate=candidate,
            score=score,
            time_diff_minutes=time_diff_minutes,
            payout_diff=payout_diff,
            evidence=evidence or [],
        )

    @classmethod
    def unmatched(
        cls,
        record: CallRecord,
        reason: UnmatchedReason,
        evidence: Optional[list[str]] = None,
    ) -> MatchDecision:
        return cls(
            record=record,
            status=MatchStatus.UNMATCHED,
            reason=reason,
            evidence=evidence or [],
        )

    @classmethod
    def already_linked(
        cls,
        record: CallRecord,
        counterpart_id: str,
        counterpart: Optional[CallRecord] = None,
    ) -> MatchDecision:
        return cls(
            record=record,
            status=MatchStatus.ALREADY_LINKED,
            candidate=counterpart,
            evidence=[f"Already linked to {counterpart_id} by a previous run"],
        )


class AdjustmentDecision(BaseModel):
    """Outcome of matching one AdjustmentRecord onto a linked call."""

    adjustment: AdjustmentRecord
    candidate: Optional[CallRecord] = None
    time_diff_minutes: Optional[float] = None
    reason: Optional[UnmatchedReason] = None
    evidence: list[str] = Field(default_factory=list)

    @property
    def is_matched(self) -> bool:
        return self.candidate is not None


class ReconcileWindow(BaseModel):
    """Inclusive calendar-date window for one reconciliation run."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> ReconcileWindow:
        if self.start > self.end:
            raise ValueError(f"window start {self.start} is after end {self.end}")
        return self

    @classmethod
    def single_day(cls, day: date) -> ReconcileWindow:
        return cls(start=day, end=day)

    @classmethod
    def past_days(cls, days: int, today: Optional[date] = None) -> ReconcileWindow:
        """The `days` calendar days ending yesterday (today excluded)."""
        if days < 1:
            raise ValueError("days must be >= 1")
        anchor = today or date.today()
        end = anchor - timedelta(days=1)
        return cls(start=end - timedelta(days=days - 1), end=end)

    def expanded(self, days: int) -> ReconcileWindow:
        """Widen the window by `days` on both sides for boundary matches."""
        return ReconcileWindow(
            start=self.start - timedelta(days=days),
            end=self.end + timedelta(days=days),
        )

    def contains_date(self, day: date) -> bool:
        return self.start <= day <= self.end

    def describe(self) -> str:
        if self.start == self.end:
            return self.start.isoformat()
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


class RunError(BaseModel):
    """One recoverable failure recorded during a run."""

    stage: str = Field(..., description="e.g. fetch_feed_b, persist_match")
    record_id: Optional[str] = None
    error_type: str
    message: str


class RunSummary(BaseModel):
    """Counts reported to schedulers and dashboards after each run."""

    window: ReconcileWindow
    category: Optional[Category] = None
    assignment: str = "greedy"
    feed_b_count: int = 0
    feed_a_count: int = 0
    unindexable_count: int = 0
    matched_count: int = 0
    unmatched_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    adjustments_fetched: int = 0
    adjustments_applied: int = 0
    adjustments_skipped: int = 0
    adjustments_unmatched: int = 0
    unmatched_reasons: dict[str, int] = Field(default_factory=dict)
    errors: list[RunError] = Field(default_factory=list)
    started_at: Optional[str] = None
    duration_s: float = 0.0

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def ok(self) -> bool:
        return not self.errors

    def count_reason(self, reason: UnmatchedReason) -> None:
        self.unmatched_reasons[reason.value] = self.unmatched_reasons.get(reason.value, 0) + 1
