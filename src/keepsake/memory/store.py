"""Tier store protocol and the in-memory implementation.

The store owns every persisted record. Each tier is an independent
collection; nothing here spans tiers except ``ensure_initialized``.
"""

from __future__ import annotations

import copy
import logging
import math
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from keepsake.access import Tier
from keepsake.errors import ConflictError, StoreError
from keepsake.memory.records import CandidateStatus, MemoryRecord, RecordKind

logger = logging.getLogger(__name__)

# Collection names per tier, shared by every backend.
COLLECTIONS: dict[Tier, str] = {
    Tier.JOURNAL: "journal_entries",
    Tier.PERSONA: "persona_memory",
    Tier.PUBLIC: "public_knowledge",
}

ScoredRecord = tuple[MemoryRecord, float]


@runtime_checkable
class TierStore(Protocol):
    """Per-tier persistence of memory records and their vectors."""

    async def ensure_initialized(self) -> dict[str, list[str]]:
        """Create missing tier collections. Returns {"created": [...], "skipped": [...]}."""
        ...

    async def upsert(self, tier: Tier, record: MemoryRecord) -> None:
        """Idempotent write keyed by record id."""
        ...

    async def get(self, tier: Tier, record_id: str) -> MemoryRecord | None: ...

    async def delete(self, tier: Tier, record_id: str) -> bool: ...

    async def search(
        self, tier: Tier, vector: Sequence[float], limit: int
    ) -> list[ScoredRecord]:
        """Nearest searchable records in one tier, best first."""
        ...

    async def list_candidates(
        self, status: CandidateStatus | None = CandidateStatus.AWAITING_REVIEW
    ) -> list[MemoryRecord]: ...

    async def compare_and_set_status(
        self,
        candidate_id: str,
        expected: CandidateStatus,
        new: CandidateStatus,
    ) -> MemoryRecord:
        """Atomically move a candidate from ``expected`` to ``new``.

        Raises ConflictError carrying the current status when the candidate
        is not in ``expected`` (``None`` when it does not exist).
        """
        ...


# ── Shared helpers ────────────────────────────────────────


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return dot / norm


def check_write(tier: Tier, record: MemoryRecord, dimension: int | None) -> None:
    """Reject writes that would put a record in the wrong tier or break vector shape."""
    if record.tier is not tier:
        raise StoreError(
            f"Record {record.id} belongs to tier '{record.tier.value}', not '{tier.value}'"
        )
    if dimension is not None and len(record.embedding) != dimension:
        raise StoreError(
            f"Record {record.id} has a {len(record.embedding)}-dim embedding, "
            f"expected {dimension}"
        )


def rank(scored: list[ScoredRecord], limit: int) -> list[ScoredRecord]:
    """Best first; ties go to the newest record, then the smaller id."""
    scored.sort(key=lambda item: (-item[1], -item[0].created_at.timestamp(), item[0].id))
    return scored[: max(limit, 0)]


# ── In-memory backend ─────────────────────────────────────


class InMemoryTierStore:
    """Dict-backed tier store. Process-local; used embedded and in tests."""

    def __init__(self, dimension: int | None = None) -> None:
        self.dimension = dimension
        self._tiers: dict[Tier, dict[str, MemoryRecord]] = {}

    async def ensure_initialized(self) -> dict[str, list[str]]:
        created, skipped = [], []
        for tier, name in COLLECTIONS.items():
            if tier in self._tiers:
                skipped.append(name)
            else:
                self._tiers[tier] = {}
                created.append(name)
        return {"created": created, "skipped": skipped}

    def _collection(self, tier: Tier) -> dict[str, MemoryRecord]:
        return self._tiers.setdefault(tier, {})

    async def upsert(self, tier: Tier, record: MemoryRecord) -> None:
        check_write(tier, record, self.dimension)
        self._collection(tier)[record.id] = copy.deepcopy(record)

    async def get(self, tier: Tier, record_id: str) -> MemoryRecord | None:
        record = self._collection(tier).get(record_id)
        return copy.deepcopy(record) if record else None

    async def delete(self, tier: Tier, record_id: str) -> bool:
        return self._collection(tier).pop(record_id, None) is not None

    async def search(
        self, tier: Tier, vector: Sequence[float], limit: int
    ) -> list[ScoredRecord]:
        if limit <= 0:
            return []
        scored = [
            (record, cosine_similarity(vector, record.embedding))
            for record in self._collection(tier).values()
            if record.searchable
        ]
        return [(copy.deepcopy(record), score) for record, score in rank(scored, limit)]

    async def list_candidates(
        self, status: CandidateStatus | None = CandidateStatus.AWAITING_REVIEW
    ) -> list[MemoryRecord]:
        found = [
            copy.deepcopy(record)
            for record in self._collection(Tier.PERSONA).values()
            if record.kind is RecordKind.PERSONA_CANDIDATE
            and (status is None or record.payload.status is status)
        ]
        found.sort(key=lambda r: (r.created_at, r.id))
        return found

    async def compare_and_set_status(
        self,
        candidate_id: str,
        expected: CandidateStatus,
        new: CandidateStatus,
    ) -> MemoryRecord:
        # No await between the check and the write, so this is atomic on the loop.
        record = self._collection(Tier.PERSONA).get(candidate_id)
        if record is None or record.kind is not RecordKind.PERSONA_CANDIDATE:
            raise ConflictError(candidate_id, None)
        if record.payload.status is not expected:
            raise ConflictError(candidate_id, record.payload.status.value)
        record.update(status=new)
        logger.debug("Candidate %s: %s -> %s", candidate_id, expected.value, new.value)
        return copy.deepcopy(record)
