"""
call_store.py - JSON-file store for both feeds, adjustments and unmatched entries.

Implements the fetch and persist collaborators `run_reconciliation` needs,
plus ingest helpers the CLI uses to load feed exports. All state lives in
one JSON file written atomically (temp file + fsync + replace).

Writes are fill-only: a counterpart link with amounts and a non-zero
adjustment are never replaced. A refused write returns False.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import ReconcileConfig
from logging_config import get_logger
from match import resolve_category
from models import (
    AdjustmentRecord,
    CallRecord,
    Category,
    FeedSource,
    ReconcileWindow,
    UnmatchedReason,
)
from reconcile import StorageWriteError
from temporal import in_window

logger = get_logger(__name__)

# Fields a re-ingested export must not wipe out.
_PERSISTED_FIELDS = (
    "matched_counterpart_id",
    "matched_payout",
    "matched_revenue",
    "adjustment_amount",
    "adjustment_time",
    "adjustment_classification",
)


class UnmatchedEntry(BaseModel):
    """A record the last run could not link, kept for reporting."""

    key: str
    kind: str = Field(..., description="feed_a, feed_b or adjustment")
    record_id: Optional[str] = None
    caller_id: Optional[str] = None
    timestamp: Optional[str] = None
    amount: Optional[float] = None
    reason: UnmatchedReason
    recorded_at: str


class StoreState(BaseModel):
    """Everything persisted by JsonCallStore."""

    model_config = ConfigDict(extra="ignore")

    feed_a_calls: dict[str, CallRecord] = Field(default_factory=dict)
    feed_b_calls: dict[str, CallRecord] = Field(default_factory=dict)
    adjustments: dict[str, AdjustmentRecord] = Field(default_factory=dict)
    unmatched: dict[str, UnmatchedEntry] = Field(default_factory=dict)
    updated_at: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _merge(existing: Optional[CallRecord], incoming: CallRecord) -> CallRecord:
    """Take the incoming export but keep link/adjustment fields already stored."""
    if existing is None:
        return incoming
    updates: dict[str, Any] = {}
    for field_name in _PERSISTED_FIELDS:
        stored = getattr(existing, field_name)
        if stored is not None and getattr(incoming, field_name) is None:
            updates[field_name] = stored
    return incoming.model_copy(update=updates) if updates else incoming


class JsonCallStore:
    """Disk-backed call store using one JSON file and atomic writes."""

    def __init__(self, path: Optional[str] = None, config: Optional[ReconcileConfig] = None) -> None:
        self.config = config or ReconcileConfig()
        target = path or os.getenv("RECON_STORE_FILE", self.config.store_path)
        self.path = Path(target).resolve()
        self.state = self.load()
        self._defer_depth = 0
        self._dirty = False

    def load(self) -> StoreState:
        """Load state from disk, returning an empty state if the file is missing."""
        if not self.path.exists():
            return StoreState()

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return StoreState.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.error(
                "store_load_error | path=%s | error_type=%s | error=%s",
                self.path,
                type(exc).__name__,
                exc,
            )
            raise ValueError(f"Call store '{self.path}' is unreadable: {exc}") from exc

    def save(self) -> None:
        """Persist state atomically via temp-file + replace."""
        self.state.updated_at = _now()
        payload = self.state.model_dump(mode="json")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(self.path.parent),
                delete=False,
                suffix=".tmp",
                prefix="calls-",
            ) as tmp_file:
                json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
                tmp_path = Path(tmp_file.name)

            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StorageWriteError(f"Failed to write call store '{self.path}': {exc}") from exc

    def _commit(self) -> None:
        if self._defer_depth:
            self._dirty = True
            return
        self.save()

    @contextmanager
    def deferred_saves(self) -> Iterator[JsonCallStore]:
        """Hold writes in memory and save once when the outermost block exits.

        Inside the block acknowledged writes are not yet on disk; a failed
        final save raises StorageWriteError from the `with` statement.
        """
        self._defer_depth += 1
        try:
            yield self
        finally:
            self._defer_depth -= 1
            if not self._defer_depth and self._dirty:
                self._dirty = False
                self.save()

    def reset(self) -> None:
        """Remove the persisted file if present and clear in-memory state."""
        self.state = StoreState()
        self._dirty = False
        try:
            if self.path.exists():
                self.path.unlink()
        except OSError as exc:
            logger.warning(
                "store_reset_warning | path=%s | error_type=%s | error=%s",
                self.path,
                type(exc).__name__,
                exc,
            )

    # -- ingest --------------------------------------------------------------

    def _upsert(self, table: dict[str, CallRecord], records: Iterable[CallRecord], source: FeedSource) -> int:
        count = 0
        for record in records:
            if record.source != source:
                record = record.model_copy(update={"source": source})
            table[record.record_id] = _merge(table.get(record.record_id), record)
            count += 1
        self._commit()
        logger.info("store_upsert | source=%s | records=%s | total=%s", source.value, count, len(table))
        return count

    def upsert_feed_a_calls(self, records: Iterable[CallRecord]) -> int:
        return self._upsert(self.state.feed_a_calls, records, FeedSource.FEED_A)

    def upsert_feed_b_calls(self, records: Iterable[CallRecord]) -> int:
        return self._upsert(self.state.feed_b_calls, records, FeedSource.FEED_B)

    def add_adjustments(self, adjustments: Iterable[AdjustmentRecord]) -> int:
        """Store new adjustments. Returns how many keys were not already present."""
        added = 0
        for adjustment in adjustments:
            if adjustment.key in self.state.adjustments:
                continue
            self.state.adjustments[adjustment.key] = adjustment
            added += 1
        self._commit()
        logger.info("store_adjustments | added=%s | total=%s", added, len(self.state.adjustments))
        return added

    # -- fetch ---------------------------------------------------------------

    def fetch_feed_a_calls(
        self, window: ReconcileWindow, category: Optional[Category] = None
    ) -> list[CallRecord]:
        return [
            record.model_copy()
            for record in self.state.feed_a_calls.values()
            if in_window(record.timestamp, window)
            and (category is None or (record.category or self.config.default_category) == category)
        ]

    def fetch_feed_b_calls(
        self, window: ReconcileWindow, category: Optional[Category] = None
    ) -> list[CallRecord]:
        results: list[CallRecord] = []
        for record in self.state.feed_b_calls.values():
            if not in_window(record.timestamp, window):
                continue
            if category is not None:
                resolved = resolve_category(record, self.config)
                # Unresolvable records are returned so the run reports them.
                if resolved is not None and resolved != category:
                    continue
            results.append(record.model_copy())
        return results

    def fetch_pending_adjustments(self, window: ReconcileWindow) -> list[AdjustmentRecord]:
        return [
            adjustment.model_copy()
            for adjustment in self.state.adjustments.values()
            if in_window(adjustment.timestamp, window)
        ]

    # -- persist -------------------------------------------------------------

    def _feed_a_call(self, call_id: str) -> CallRecord:
        call = self.state.feed_a_calls.get(call_id)
        if call is None:
            raise StorageWriteError(f"Unknown feed A call {call_id!r}")
        return call

    def persist_match(self, call_id: str, counterpart_id: str, payout: float, revenue: float) -> bool:
        """Link a Feed-A call to its Feed-B counterpart; fill-only."""
        call = self._feed_a_call(call_id)

        if call.is_linked:
            if call.matched_counterpart_id != counterpart_id or call.has_linked_amounts:
                logger.debug(
                    "persist_match_refused | call=%s | existing=%s | incoming=%s",
                    call_id,
                    call.matched_counterpart_id,
                    counterpart_id,
                )
                return False

        self.state.feed_a_calls[call_id] = call.model_copy(
            update={
                "matched_counterpart_id": counterpart_id,
                "matched_payout": round(payout, 2),
                "matched_revenue": round(revenue, 2),
            }
        )
        counterpart = self.state.feed_b_calls.get(counterpart_id)
        if counterpart is not None and counterpart.matched_counterpart_id is None:
            self.state.feed_b_calls[counterpart_id] = counterpart.model_copy(
                update={"matched_counterpart_id": call_id}
            )
        self.state.unmatched.pop(f"{FeedSource.FEED_B.value}:{counterpart_id}", None)
        self._commit()
        return True

    def persist_adjustment(
        self,
        call_id: str,
        amount: float,
        time: str,
        classification: Optional[str] = None,
    ) -> bool:
        """Fold an adjustment into a Feed-A call unless it already carries one."""
        call = self._feed_a_call(call_id)
        if call.has_adjustment:
            logger.debug(
                "persist_adjustment_refused | call=%s | existing=%.2f | incoming=%.2f",
                call_id,
                call.adjustment_amount or 0.0,
                amount,
            )
            return False

        self.state.feed_a_calls[call_id] = call.model_copy(
            update={
                "adjustment_amount": round(amount, 2),
                "adjustment_time": time,
                "adjustment_classification": classification,
            }
        )
        self._commit()
        return True

    def persist_unmatched(
        self, record: Union[CallRecord, AdjustmentRecord], reason: UnmatchedReason
    ) -> bool:
        """Record (or refresh) why a record stayed unlinked."""
        if isinstance(record, AdjustmentRecord):
            entry = UnmatchedEntry(
                key=f"adjustment:{record.key}",
                kind="adjustment",
                record_id=record.call_sid,
                caller_id=record.caller_id,
                timestamp=record.timestamp,
                amount=record.amount,
                reason=reason,
                recorded_at=_now(),
            )
        else:
            entry = UnmatchedEntry(
                key=f"{record.source.value}:{record.record_id}",
                kind=record.source.value,
                record_id=record.record_id,
                caller_id=record.caller_id,
                timestamp=record.timestamp,
                amount=record.payout,
                reason=reason,
                recorded_at=_now(),
            )
        self.state.unmatched[entry.key] = entry
        self._commit()
        return True

    def unmatched_entries(self, kind: Optional[str] = None) -> list[UnmatchedEntry]:
        return [
            entry
            for entry in self.state.unmatched.values()
            if kind is None or entry.kind == kind
        ]
