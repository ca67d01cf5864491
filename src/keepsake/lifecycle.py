"""Candidate lifecycle — journal entry → review candidate → persona memory.

States: none → awaiting_review → promoted | rejected.

Rejected candidates are hard-deleted: the ``rejected`` status only exists
for the instant between the claim and the delete. Promoted candidates are
kept with status ``promoted`` so a retried promote reports a conflict with
the real status instead of creating a second persona memory.

Every transition claims the candidate with the store's compare-and-set
before touching anything else; there is no in-process lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from keepsake.access import Tier
from keepsake.embeddings import Embedder
from keepsake.errors import ConflictError, NotFoundError, ProcessingError
from keepsake.extraction import Extractor
from keepsake.memory.records import (
    CandidatePayload,
    CandidateStatus,
    JournalPayload,
    MemoryRecord,
    PersonaPayload,
    PersonaStatus,
    RecordKind,
)
from keepsake.memory.store import TierStore

logger = logging.getLogger(__name__)

_EXTRACTION_STAGES = ("classify_themes", "extract_narrative", "summarize")


@dataclass
class JournalEntryInput:
    """A journal entry as submitted for ingestion."""

    content: str
    emotional_markers: list[str] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    public_elevation_blocked: bool = False


@dataclass
class IngestResult:
    """Two independent outcomes: the entry was stored; a candidate may or may not exist."""

    entry_id: str
    candidate_id: str | None = None
    error: ProcessingError | None = None

    @property
    def candidate_created(self) -> bool:
        return self.candidate_id is not None


class CandidateLifecycle:
    """Orchestrates candidate transitions through the tier store's write path."""

    def __init__(self, store: TierStore, embedder: Embedder, extractor: Extractor) -> None:
        self.store = store
        self.embedder = embedder
        self.extractor = extractor

    # ── Ingestion: none → awaiting_review ─────────────────

    async def ingest(self, entry: JournalEntryInput) -> IngestResult:
        """Persist a journal entry and, unless it is blocked, queue a candidate.

        Embedding or storage failures for the entry itself propagate: nothing
        was ingested. Any failure on the candidate path after that is reported
        on the result, with the entry id, as a ProcessingError.
        """
        if not entry.content or not entry.content.strip():
            raise ValueError("journal entry content must not be empty")

        vector = await self.embedder.embed(entry.content)
        record = MemoryRecord.create(
            RecordKind.JOURNAL_ENTRY,
            JournalPayload(
                content=entry.content,
                emotional_markers=list(entry.emotional_markers),
                themes=list(entry.themes),
                public_elevation_blocked=entry.public_elevation_blocked,
            ),
            vector,
        )
        await self.store.upsert(Tier.JOURNAL, record)
        logger.info(
            "Ingested journal entry %s (elevation blocked: %s)",
            record.id,
            entry.public_elevation_blocked,
        )

        if entry.public_elevation_blocked:
            return IngestResult(entry_id=record.id)

        try:
            candidate = await self._create_candidate(record)
        except ProcessingError as e:
            logger.warning("No candidate for entry %s: %s", record.id, e)
            return IngestResult(entry_id=record.id, error=e)
        return IngestResult(
            entry_id=record.id,
            candidate_id=candidate.id if candidate else None,
        )

    async def _create_candidate(self, entry: MemoryRecord) -> MemoryRecord | None:
        text = entry.payload.content
        results = await asyncio.gather(
            self.extractor.classify_themes(text),
            self.extractor.extract_narrative(text),
            self.extractor.summarize(text),
            return_exceptions=True,
        )
        for stage, result in zip(_EXTRACTION_STAGES, results):
            if isinstance(result, Exception):
                raise ProcessingError(entry.id, stage, str(result)) from result
            if isinstance(result, BaseException):
                raise result
        themes, narrative, summary = results
        if not summary or not summary.strip():
            raise ProcessingError(entry.id, "summarize", "empty summary")

        try:
            vector = await self.embedder.embed(summary)
        except Exception as e:
            raise ProcessingError(entry.id, "embedding", str(e)) from e

        candidate = MemoryRecord.create(
            RecordKind.PERSONA_CANDIDATE,
            CandidatePayload(
                summary=summary.strip(),
                themes=list(themes),
                narrative_elements=dict(narrative),
                source_entry_refs=[entry.id],
            ),
            vector,
        )
        try:
            return await self._queue_candidate(entry, candidate)
        except Exception as e:
            raise ProcessingError(entry.id, "store", str(e)) from e

    async def _queue_candidate(
        self, entry: MemoryRecord, candidate: MemoryRecord
    ) -> MemoryRecord | None:
        if await self._elevation_blocked(entry.id):
            logger.info("Entry %s was blocked during extraction; no candidate", entry.id)
            return None

        await self.store.upsert(Tier.PERSONA, candidate)

        # A block that landed between the check and the write must still win.
        if await self._elevation_blocked(entry.id):
            await self.store.delete(Tier.PERSONA, candidate.id)
            logger.info("Entry %s was blocked while queueing; candidate withdrawn", entry.id)
            return None

        logger.info("Candidate %s awaiting review (source %s)", candidate.id, entry.id)
        return candidate

    async def _elevation_blocked(self, entry_id: str) -> bool:
        """True if the entry is gone or blocked; read from the store, not a cached copy."""
        current = await self.store.get(Tier.JOURNAL, entry_id)
        if current is None or current.kind is not RecordKind.JOURNAL_ENTRY:
            return True
        return current.payload.public_elevation_blocked

    async def _sources_valid(self, candidate: MemoryRecord) -> bool:
        refs = candidate.payload.source_entry_refs
        if not refs:
            return False
        for ref in refs:
            if await self._elevation_blocked(ref):
                return False
        return True

    # ── Review queue ──────────────────────────────────────

    async def list_candidates(self) -> list[MemoryRecord]:
        """Candidates awaiting review, oldest first."""
        visible = []
        for candidate in await self.store.list_candidates(CandidateStatus.AWAITING_REVIEW):
            if await self._sources_valid(candidate):
                visible.append(candidate)
            else:
                logger.error("Candidate %s has missing or blocked sources; hidden", candidate.id)
        return visible

    # ── awaiting_review → promoted ────────────────────────

    async def promote(self, candidate_id: str, review_notes: str | None = None) -> MemoryRecord:
        """Create an active persona memory from a candidate. Exactly once per candidate."""
        claimed = await self.store.compare_and_set_status(
            candidate_id, CandidateStatus.AWAITING_REVIEW, CandidateStatus.PROMOTED
        )

        if not await self._sources_valid(claimed):
            await self.store.delete(Tier.PERSONA, candidate_id)
            logger.error("Candidate %s lost its sources before promotion; removed", candidate_id)
            raise ConflictError(candidate_id, None)

        payload = claimed.payload
        memory = MemoryRecord.create(
            RecordKind.PERSONA_MEMORY,
            PersonaPayload(
                summary=payload.summary,
                themes=list(payload.themes),
                narrative_elements=dict(payload.narrative_elements),
                source_entry_refs=list(payload.source_entry_refs),
                status=PersonaStatus.ACTIVE,
                candidate_ref=claimed.id,
            ),
            claimed.embedding,
        )
        try:
            await self.store.upsert(Tier.PERSONA, memory)
        except BaseException:
            await self.store.compare_and_set_status(
                candidate_id, CandidateStatus.PROMOTED, CandidateStatus.AWAITING_REVIEW
            )
            logger.warning("Promotion of %s failed; candidate returned to review", candidate_id)
            raise

        if review_notes:
            claimed.update(review_notes=review_notes)
            await self.store.upsert(Tier.PERSONA, claimed)

        logger.info("Promoted candidate %s to persona memory %s", candidate_id, memory.id)
        return memory

    # ── awaiting_review → rejected (deleted) ──────────────

    async def reject(self, candidate_id: str, review_notes: str | None = None) -> None:
        """Delete a candidate. Notes are only logged; nothing of the candidate is kept."""
        await self.store.compare_and_set_status(
            candidate_id, CandidateStatus.AWAITING_REVIEW, CandidateStatus.REJECTED
        )
        await self.store.delete(Tier.PERSONA, candidate_id)
        if review_notes:
            logger.info("Rejected candidate %s (deleted): %s", candidate_id, review_notes)
        else:
            logger.info("Rejected candidate %s (deleted)", candidate_id)

    # ── Entry and memory maintenance ──────────────────────

    async def block_elevation(self, entry_id: str) -> int:
        """Block an entry from elevation and withdraw its pending candidates.

        Returns the number of candidates removed. Persona memories already
        promoted from the entry are left alone; archive them explicitly.
        """
        entry = await self.store.get(Tier.JOURNAL, entry_id)
        if entry is None or entry.kind is not RecordKind.JOURNAL_ENTRY:
            raise NotFoundError("journal entry", entry_id)
        if not entry.payload.public_elevation_blocked:
            entry.update(public_elevation_blocked=True)
            await self.store.upsert(Tier.JOURNAL, entry)

        removed = 0
        for candidate in await self.store.list_candidates(CandidateStatus.AWAITING_REVIEW):
            if entry_id not in candidate.payload.source_entry_refs:
                continue
            try:
                await self.store.compare_and_set_status(
                    candidate.id, CandidateStatus.AWAITING_REVIEW, CandidateStatus.REJECTED
                )
            except ConflictError:
                continue
            await self.store.delete(Tier.PERSONA, candidate.id)
            removed += 1
        logger.info("Blocked entry %s; withdrew %d candidate(s)", entry_id, removed)
        return removed

    async def archive(self, memory_id: str) -> MemoryRecord:
        """Take a persona memory out of retrieval (active → archived)."""
        memory = await self.store.get(Tier.PERSONA, memory_id)
        if memory is None or memory.kind is not RecordKind.PERSONA_MEMORY:
            raise NotFoundError("persona memory", memory_id)
        if memory.payload.status is not PersonaStatus.ARCHIVED:
            memory.update(status=PersonaStatus.ARCHIVED)
            await self.store.upsert(Tier.PERSONA, memory)
            logger.info("Archived persona memory %s", memory_id)
        return memory
