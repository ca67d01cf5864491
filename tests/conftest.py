"""Shared fakes for collaborators: embedder, extractor, engine, counting store."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from keepsake.access import AccessModel, Tier
from keepsake.engines.base import EngineResponse
from keepsake.errors import ExtractionError, StoreError
from keepsake.memory.records import (
    ContextRules,
    GuardrailRules,
    JournalPayload,
    MemoryRecord,
    PersonaPayload,
    PersonaStatus,
    PublicPayload,
    RecordKind,
)
from keepsake.memory.store import InMemoryTierStore

DIM = 3

PRIVATE = {"private_key"}
RESTRICTED = {"restricted_key"}
PUBLIC = {"public_key"}


class FakeEmbedder:
    """Returns fixed vectors per text; everything else maps to ``default``."""

    def __init__(self, vectors: dict[str, list[float]] | None = None,
                 default: list[float] | None = None):
        self.vectors = vectors or {}
        self.default = default or [1.0, 0.0, 0.0]
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, self.default))


class FakeExtractor:
    def __init__(self, fail: str | None = None):
        self.fail = fail
        self.calls: list[str] = []

    def _record(self, stage: str) -> None:
        self.calls.append(stage)
        if self.fail == stage:
            raise ExtractionError(f"{stage} failed")

    async def classify_themes(self, text: str) -> list[str]:
        self._record("classify_themes")
        return ["personal-growth"]

    async def extract_narrative(self, text: str) -> dict[str, str]:
        self._record("extract_narrative")
        return {"protagonist": "self", "desire": "to grow", "obstacle": "doubt", "tone": "hopeful"}

    async def summarize(self, text: str) -> str:
        self._record("summarize")
        return "The user reflected on personal growth."


class MockEngine:
    def __init__(self, response_text: str = "Mock answer", error: str | None = None):
        self._response_text = response_text
        self._error = error
        self.last_message: str | None = None
        self.last_context: str | None = None
        self.last_system_prompt: str | None = None
        self.calls = 0

    @property
    def name(self) -> str:
        return "mock"

    async def send(self, message, *, system_prompt=None, context=None) -> EngineResponse:
        self.calls += 1
        self.last_message = message
        self.last_context = context
        self.last_system_prompt = system_prompt
        if self._error:
            return EngineResponse(text="", error=self._error)
        return EngineResponse(text=self._response_text, model="mock")

    async def health_check(self) -> bool:
        return True


class CountingStore(InMemoryTierStore):
    """In-memory store that records every search and can fail chosen tiers."""

    def __init__(self, dimension: int | None = DIM, fail_tiers=()):
        super().__init__(dimension)
        self.fail_tiers = set(fail_tiers)
        self.search_calls: list[Tier] = []

    async def search(self, tier, vector, limit):
        self.search_calls.append(tier)
        if tier in self.fail_tiers:
            raise StoreError(f"{tier.value} store unavailable")
        return await super().search(tier, vector, limit)


def ts(day: int) -> datetime:
    return datetime(2024, 1, day, 12, 0, tzinfo=timezone.utc)


def journal(content: str = "Dear diary", vector=None, *, blocked: bool = False,
            record_id: str | None = None, day: int | None = None,
            markers=None, themes=None) -> MemoryRecord:
    record = MemoryRecord.create(
        RecordKind.JOURNAL_ENTRY,
        JournalPayload(
            content=content,
            emotional_markers=list(markers or []),
            themes=list(themes or []),
            public_elevation_blocked=blocked,
        ),
        vector or [1.0, 0.0, 0.0],
    )
    return _override(record, record_id, day)


def persona(summary: str = "The user values honesty.", vector=None, *,
            status: PersonaStatus = PersonaStatus.ACTIVE, record_id: str | None = None,
            day: int | None = None) -> MemoryRecord:
    record = MemoryRecord.create(
        RecordKind.PERSONA_MEMORY,
        PersonaPayload(
            summary=summary,
            themes=["values"],
            narrative_elements={"protagonist": "self", "desire": "truth", "obstacle": "",
                                "tone": "calm"},
            source_entry_refs=["entry-1"],
            status=status,
        ),
        vector or [1.0, 0.0, 0.0],
    )
    return _override(record, record_id, day)


def public(topic: str = "Hobbies", content: str = "Enjoys hiking.", vector=None, *,
           disallowed=(), boundaries=(), fallbacks=(), record_id: str | None = None,
           day: int | None = None) -> MemoryRecord:
    record = MemoryRecord.create(
        RecordKind.PUBLIC_KNOWLEDGE,
        PublicPayload(
            topic=topic,
            approved_content=content,
            context_rules=ContextRules(disallowed_themes=list(disallowed),
                                       boundaries=list(boundaries)),
            guardrail_rules=GuardrailRules(fallback_responses=list(fallbacks)),
        ),
        vector or [1.0, 0.0, 0.0],
    )
    return _override(record, record_id, day)


def _override(record: MemoryRecord, record_id: str | None, day: int | None) -> MemoryRecord:
    if record_id is None and day is None:
        return record
    data = record.to_dict()
    if record_id is not None:
        data["id"] = record_id
    if day is not None:
        data["created_at"] = data["updated_at"] = ts(day).isoformat()
    return MemoryRecord.from_dict(data)


@pytest.fixture
def access() -> AccessModel:
    return AccessModel()


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def engine() -> MockEngine:
    return MockEngine()
