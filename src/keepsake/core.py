"""Keepsake hub — wires the access model, tier store and the three services.

Responsibilities:
1. Build collaborators from config (store, embedder, engine, extractor)
2. Gate operator actions by scope: writes need STRICT_PRIVATE, review needs RESTRICTED
3. Route queries through the retrieval router under the caller's own scope
4. Hand ranked results to the response assembler
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from keepsake.access import AccessModel, Scope
from keepsake.assembler import AssembledResponse, ResponseAssembler
from keepsake.config import EngineConfig, KeepsakeConfig
from keepsake.embeddings import Embedder, OpenAIEmbedder
from keepsake.engines.base import Engine
from keepsake.errors import AuthorizationError
from keepsake.extraction import Extractor, LLMExtractor
from keepsake.lifecycle import CandidateLifecycle, IngestResult, JournalEntryInput
from keepsake.memory.markdown import MarkdownTierStore
from keepsake.memory.records import MemoryRecord
from keepsake.memory.store import InMemoryTierStore, TierStore
from keepsake.retrieval import RetrievalRouter, ScoredResult

logger = logging.getLogger(__name__)

# Operator actions: the scope whose credentials they take and the capability they need.
_ACTIONS: dict[str, tuple[Scope, str]] = {
    "ingest": (Scope.STRICT_PRIVATE, "journal_write"),
    "block": (Scope.STRICT_PRIVATE, "journal_write"),
    "review": (Scope.RESTRICTED, "persona_review"),
}


def build_store(config: KeepsakeConfig) -> TierStore:
    dimension = config.embedding.dimension
    if config.store == "markdown":
        return MarkdownTierStore(config.memory_dir, dimension=dimension)
    if config.store == "memory":
        return InMemoryTierStore(dimension=dimension)
    raise ValueError(f"Unknown store: {config.store}")


def build_engine(config: EngineConfig) -> Engine:
    if config.name == "anthropic_api":
        from keepsake.engines.anthropic_api import AnthropicAPIEngine

        return AnthropicAPIEngine(
            model=config.model,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            temperature=config.temperature,
        )
    raise ValueError(f"Unknown engine: {config.name}")


class Keepsake:
    """Core hub — every operator and caller surface goes through here."""

    def __init__(
        self,
        config: KeepsakeConfig,
        *,
        store: TierStore | None = None,
        embedder: Embedder | None = None,
        engine: Engine | None = None,
        extractor: Extractor | None = None,
    ) -> None:
        self.config = config
        self.access = AccessModel(config.scopes)
        self.store = store if store is not None else build_store(config)
        self.embedder = embedder if embedder is not None else OpenAIEmbedder(config.embedding)
        self._engine = engine
        self._extractor = extractor
        self._lifecycle: CandidateLifecycle | None = None
        self._assembler: ResponseAssembler | None = None
        self.router = RetrievalRouter(self.access, self.store, self.embedder, config.retrieval)

    # ── Lazily built services ─────────────────────────────
    # The engine needs the optional anthropic SDK; queries alone never build it.

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = build_engine(self.config.engine)
            logger.info("Built engine: %s", self._engine.name)
        return self._engine

    @property
    def lifecycle(self) -> CandidateLifecycle:
        if self._lifecycle is None:
            extractor = self._extractor or LLMExtractor(self.engine)
            self._lifecycle = CandidateLifecycle(self.store, self.embedder, extractor)
        return self._lifecycle

    @property
    def assembler(self) -> ResponseAssembler:
        if self._assembler is None:
            self._assembler = ResponseAssembler(self.engine)
        return self._assembler

    # ── Authorization ─────────────────────────────────────

    def _authorize(self, action: str, credentials: Iterable[str] | None) -> None:
        scope, capability = _ACTIONS[action]
        granted = self.access.require(scope, credentials)
        if capability not in self.access.permitted_actions(granted):
            logger.warning("Scope %s does not allow %s", granted.value, capability)
            raise AuthorizationError(granted.value)

    # ── Operations ────────────────────────────────────────

    async def init(self) -> dict[str, list[str]]:
        return await self.store.ensure_initialized()

    async def ingest(
        self, entry: JournalEntryInput, credentials: Iterable[str] | None
    ) -> IngestResult:
        self._authorize("ingest", credentials)
        return await self.lifecycle.ingest(entry)

    async def block_elevation(self, entry_id: str, credentials: Iterable[str] | None) -> int:
        self._authorize("block", credentials)
        return await self.lifecycle.block_elevation(entry_id)

    async def list_candidates(self, credentials: Iterable[str] | None) -> list[MemoryRecord]:
        self._authorize("review", credentials)
        return await self.lifecycle.list_candidates()

    async def promote(
        self,
        candidate_id: str,
        credentials: Iterable[str] | None,
        review_notes: str | None = None,
    ) -> MemoryRecord:
        self._authorize("review", credentials)
        return await self.lifecycle.promote(candidate_id, review_notes)

    async def reject(
        self,
        candidate_id: str,
        credentials: Iterable[str] | None,
        review_notes: str | None = None,
    ) -> None:
        self._authorize("review", credentials)
        await self.lifecycle.reject(candidate_id, review_notes)

    async def archive(self, memory_id: str, credentials: Iterable[str] | None) -> MemoryRecord:
        self._authorize("review", credentials)
        return await self.lifecycle.archive(memory_id)

    async def query(
        self, query: str, scope: object, credentials: Iterable[str] | None
    ) -> list[ScoredResult]:
        return await self.router.retrieve(query, scope, credentials)

    async def ask(
        self, query: str, scope: object, credentials: Iterable[str] | None
    ) -> AssembledResponse:
        results = await self.router.retrieve(query, scope, credentials)
        return await self.assembler.answer(query, results, self.access.permitted_actions(scope))

    async def close(self) -> None:
        """Release collaborators that hold connections (e.g. the embedding HTTP session)."""
        close = getattr(self.embedder, "close", None)
        if close and callable(close):
            await close()
