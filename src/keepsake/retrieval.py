"""Retrieval router — scope-checked similarity search across tiers.

One query embedding, one concurrent search per resolved tier, then a merge
that re-checks every record's own tier label before it can reach a caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from keepsake.access import AccessModel, Tier
from keepsake.config import RetrievalConfig
from keepsake.embeddings import Embedder
from keepsake.errors import IntegrityFault, RetrievalError
from keepsake.memory.records import MemoryRecord
from keepsake.memory.store import ScoredRecord, TierStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredResult:
    record: MemoryRecord
    score: float

    @property
    def tier(self) -> Tier:
        return self.record.tier

    @property
    def id(self) -> str:
        return self.record.id


def order_results(results: Iterable[ScoredResult], cap: int) -> list[ScoredResult]:
    """Score descending, then newest first, then id. Total order, so repeatable."""
    ordered = sorted(
        results,
        key=lambda r: (-r.score, -r.record.created_at.timestamp(), r.record.id),
    )
    return ordered[: max(cap, 0)]


class RetrievalRouter:
    """Answers ``retrieve(query, scope, credentials)`` for every caller surface."""

    def __init__(
        self,
        access: AccessModel,
        store: TierStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.access = access
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    async def retrieve(
        self,
        query: str,
        scope: object,
        credentials: Iterable[str] | None,
    ) -> list[ScoredResult]:
        """Ranked results for ``query``.

        Raises AuthorizationError before any search, RetrievalError when every
        tier search failed. An empty list means nothing matched.
        """
        self.access.require(scope, credentials)
        tiers = self.access.resolve_tiers(scope)
        if not tiers:
            return []
        if not query or not query.strip():
            raise ValueError("query must not be empty")

        vector = await self.embedder.embed(query)

        # gather cancels every per-tier search if this call is cancelled.
        outcomes = await asyncio.gather(*(self._search_tier(tier, vector) for tier in tiers))

        failed = [tier.value for tier, hits in zip(tiers, outcomes) if hits is None]
        if len(failed) == len(tiers):
            raise RetrievalError(failed)

        merged: list[ScoredResult] = []
        for tier, hits in zip(tiers, outcomes):
            for record, score in hits or ():
                if record.tier is not tier:
                    fault = IntegrityFault(record.id, [tier.value], record.tier.value)
                    logger.error("Dropped result: %s", fault)
                    continue
                if not record.searchable:
                    logger.error(
                        "Dropped non-retrievable %s %s from %s search",
                        record.kind.value,
                        record.id,
                        tier.value,
                    )
                    continue
                merged.append(ScoredResult(record=record, score=float(score)))

        results = order_results(merged, self.config.result_cap)
        logger.info(
            "Retrieved %d result(s) from %s%s",
            len(results),
            ", ".join(t.value for t in tiers),
            f" (degraded: {', '.join(failed)})" if failed else "",
        )
        return results

    async def _search_tier(self, tier: Tier, vector: Sequence[float]) -> list[ScoredRecord] | None:
        """One tier's hits, or None once the retry budget is spent."""
        attempts = 1 + max(self.config.search_retries, 0)
        for attempt in range(1, attempts + 1):
            try:
                return await self.store.search(tier, vector, self.config.per_tier_limit)
            except Exception as e:
                logger.warning(
                    "Search of tier %s failed (attempt %d/%d): %s", tier.value, attempt, attempts, e
                )
        logger.warning("Tier %s degraded to empty for this query", tier.value)
        return None
