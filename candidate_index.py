"""
candidate_index.py - Run-scoped lookup of Feed-A calls by (category, caller).

Built once per run from the Feed-A window, never persisted. Records whose
caller id cannot be canonicalized are counted as unindexable and can never
be matched.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from logging_config import get_logger
from models import Category, CallRecord
from normalize import DEFAULT_COUNTRY_CODE, DEFAULT_NATIONAL_LENGTH, normalize_caller_id

logger = get_logger(__name__)

IndexKey = tuple[Category, str]


class CandidateIndex:
    """Insertion-ordered groups of Feed-A calls keyed by (category, caller)."""

    def __init__(self) -> None:
        self._groups: dict[IndexKey, list[CallRecord]] = {}
        self._linked: dict[str, CallRecord] = {}
        self.unindexable: list[CallRecord] = []

    @classmethod
    def build(
        cls,
        records: Iterable[CallRecord],
        default_category: Category = Category.STATIC,
        country_code: str = DEFAULT_COUNTRY_CODE,
        national_length: int = DEFAULT_NATIONAL_LENGTH,
    ) -> CandidateIndex:
        """Group records by (category, normalized caller id)."""
        index = cls()
        indexed = 0

        for record in records:
            if record.matched_counterpart_id is not None:
                index._linked.setdefault(record.matched_counterpart_id, record)

            normalized = record.normalized_caller_id or normalize_caller_id(
                record.caller_id, country_code, national_length
            )
            if normalized is None:
                index.unindexable.append(record)
                logger.debug(
                    "index_skip | record_id=%s | caller_raw=%r | reason='caller id not normalizable'",
                    record.record_id,
                    record.caller_id,
                )
                continue

            category = record.category or default_category
            index._groups.setdefault((category, normalized), []).append(record)
            indexed += 1

        if index.unindexable:
            logger.warning(
                "index_unindexable | count=%s | sample=%r",
                len(index.unindexable),
                [r.caller_id for r in index.unindexable[:3]],
            )
        logger.info(
            "index_built | indexed=%s | keys=%s | unindexable=%s | linked=%s",
            indexed,
            len(index._groups),
            len(index.unindexable),
            len(index._linked),
        )
        return index

    def lookup(self, category: Category, normalized_caller_id: Optional[str]) -> list[CallRecord]:
        """Candidates for a key in insertion order, or an empty list."""
        if normalized_caller_id is None:
            return []
        return self._groups.get((category, normalized_caller_id), [])

    def linked_counterpart(self, counterpart_id: str) -> Optional[CallRecord]:
        """The Feed-A record a previous run already linked to `counterpart_id`."""
        return self._linked.get(counterpart_id)

    def keys(self) -> list[IndexKey]:
        return list(self._groups)

    def __len__(self) -> int:
        return sum(len(group) for group in self._groups.values())

    def __contains__(self, key: object) -> bool:
        return key in self._groups
