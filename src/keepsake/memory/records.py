"""Memory records — one common header, one payload variant per record kind.

Every record carries an explicit ``kind`` tag; the owning tier is derived from
it and fixed at creation. Code that needs kind-specific behavior dispatches on
the tag, never on the payload's class.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from keepsake.access import Tier


class RecordKind(str, Enum):
    JOURNAL_ENTRY = "journal_entry"
    PERSONA_CANDIDATE = "persona_candidate"
    PERSONA_MEMORY = "persona_memory"
    PUBLIC_KNOWLEDGE = "public_knowledge"

    @property
    def tier(self) -> Tier:
        return _KIND_TIERS[self]


_KIND_TIERS = {
    RecordKind.JOURNAL_ENTRY: Tier.JOURNAL,
    RecordKind.PERSONA_CANDIDATE: Tier.PERSONA,
    RecordKind.PERSONA_MEMORY: Tier.PERSONA,
    RecordKind.PUBLIC_KNOWLEDGE: Tier.PUBLIC,
}


class CandidateStatus(str, Enum):
    AWAITING_REVIEW = "awaiting_review"
    PROMOTED = "promoted"
    REJECTED = "rejected"


class PersonaStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


# ── Payload variants ──────────────────────────────────────


@dataclass
class JournalPayload:
    content: str
    emotional_markers: list[str] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    public_elevation_blocked: bool = False


@dataclass
class CandidatePayload:
    summary: str
    themes: list[str]
    narrative_elements: dict[str, str]
    source_entry_refs: list[str]
    status: CandidateStatus = CandidateStatus.AWAITING_REVIEW
    review_notes: str | None = None


@dataclass
class PersonaPayload:
    summary: str
    themes: list[str]
    narrative_elements: dict[str, str]
    source_entry_refs: list[str]
    status: PersonaStatus = PersonaStatus.ACTIVE
    candidate_ref: str | None = None


@dataclass
class ContextRules:
    allowed_themes: list[str] = field(default_factory=list)
    disallowed_themes: list[str] = field(default_factory=list)
    boundaries: list[str] = field(default_factory=list)


@dataclass
class GuardrailRules:
    response_templates: dict[str, str] = field(default_factory=dict)
    fallback_responses: list[str] = field(default_factory=list)


@dataclass
class PublicPayload:
    topic: str
    approved_content: str
    context_rules: ContextRules = field(default_factory=ContextRules)
    guardrail_rules: GuardrailRules = field(default_factory=GuardrailRules)


Payload = JournalPayload | CandidatePayload | PersonaPayload | PublicPayload

PAYLOAD_TYPES: dict[RecordKind, type] = {
    RecordKind.JOURNAL_ENTRY: JournalPayload,
    RecordKind.PERSONA_CANDIDATE: CandidatePayload,
    RecordKind.PERSONA_MEMORY: PersonaPayload,
    RecordKind.PUBLIC_KNOWLEDGE: PublicPayload,
}

# Field holding each kind's primary text (markdown body in the file store).
PRIMARY_TEXT_FIELD: dict[RecordKind, str] = {
    RecordKind.JOURNAL_ENTRY: "content",
    RecordKind.PERSONA_CANDIDATE: "summary",
    RecordKind.PERSONA_MEMORY: "summary",
    RecordKind.PUBLIC_KNOWLEDGE: "approved_content",
}

_IMMUTABLE = frozenset({"id", "kind", "tier", "created_at"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Record ────────────────────────────────────────────────


@dataclass
class MemoryRecord:
    """A memory record in exactly one tier for its whole lifetime."""

    id: str
    kind: RecordKind
    tier: Tier
    embedding: list[float]
    payload: Payload
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.tier is not self.kind.tier:
            raise ValueError(
                f"{self.kind.value} records live in tier '{self.kind.tier.value}', "
                f"not '{self.tier.value}'"
            )
        expected = PAYLOAD_TYPES[self.kind]
        if type(self.payload) is not expected:
            raise TypeError(f"{self.kind.value} requires a {expected.__name__} payload")

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _IMMUTABLE and name in self.__dict__:
            raise AttributeError(f"MemoryRecord.{name} is immutable")
        super().__setattr__(name, value)

    @classmethod
    def create(
        cls,
        kind: RecordKind,
        payload: Payload,
        embedding: list[float],
    ) -> MemoryRecord:
        """Build a new record with a fresh id and timestamps."""
        now = _now()
        return cls(
            id=str(uuid.uuid4()),
            kind=kind,
            tier=kind.tier,
            embedding=list(embedding),
            payload=payload,
            created_at=now,
            updated_at=now,
        )

    # ── Kind dispatch ─────────────────────────────────────

    @property
    def text(self) -> str:
        return getattr(self.payload, PRIMARY_TEXT_FIELD[self.kind])

    @property
    def searchable(self) -> bool:
        """Whether similarity search may ever return this record."""
        if self.kind is RecordKind.PERSONA_CANDIDATE:
            return False
        if self.kind is RecordKind.PERSONA_MEMORY:
            return self.payload.status is PersonaStatus.ACTIVE
        return True

    @property
    def status(self) -> str | None:
        if self.kind in (RecordKind.PERSONA_CANDIDATE, RecordKind.PERSONA_MEMORY):
            return self.payload.status.value
        return None

    # ── Mutation ──────────────────────────────────────────

    def update(self, *, embedding: list[float] | None = None, **changes: Any) -> MemoryRecord:
        """Apply payload field changes in place and advance ``updated_at``."""
        known = {f.name for f in fields(self.payload)}
        unknown = set(changes) - known
        if unknown:
            raise AttributeError(f"Unknown {self.kind.value} fields: {sorted(unknown)}")
        if changes:
            self.payload = replace(self.payload, **changes)
        if embedding is not None:
            self.embedding = list(embedding)
        self.updated_at = max(_now(), self.updated_at + timedelta(microseconds=1))
        return self

    # ── Serialization ─────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self.payload)
        for key, value in payload.items():
            if isinstance(value, Enum):
                payload[key] = value.value
        return {
            "id": self.id,
            "kind": self.kind.value,
            "tier": self.tier.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "embedding": list(self.embedding),
            "payload": payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryRecord:
        kind = RecordKind(data["kind"])
        return cls(
            id=str(data["id"]),
            kind=kind,
            tier=Tier(data.get("tier", kind.tier.value)),
            embedding=[float(v) for v in data.get("embedding") or []],
            payload=_payload_from_dict(kind, dict(data.get("payload") or {})),
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data.get("updated_at", data["created_at"])),
        )


def _parse_ts(value: Any) -> datetime:
    ts = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _payload_from_dict(kind: RecordKind, data: dict[str, Any]) -> Payload:
    if kind is RecordKind.JOURNAL_ENTRY:
        return JournalPayload(
            content=data.get("content", ""),
            emotional_markers=list(data.get("emotional_markers") or []),
            themes=list(data.get("themes") or []),
            public_elevation_blocked=bool(data.get("public_elevation_blocked", False)),
        )
    if kind is RecordKind.PERSONA_CANDIDATE:
        return CandidatePayload(
            summary=data.get("summary", ""),
            themes=list(data.get("themes") or []),
            narrative_elements=dict(data.get("narrative_elements") or {}),
            source_entry_refs=list(data.get("source_entry_refs") or []),
            status=CandidateStatus(data.get("status", CandidateStatus.AWAITING_REVIEW.value)),
            review_notes=data.get("review_notes"),
        )
    if kind is RecordKind.PERSONA_MEMORY:
        return PersonaPayload(
            summary=data.get("summary", ""),
            themes=list(data.get("themes") or []),
            narrative_elements=dict(data.get("narrative_elements") or {}),
            source_entry_refs=list(data.get("source_entry_refs") or []),
            status=PersonaStatus(data.get("status", PersonaStatus.ACTIVE.value)),
            candidate_ref=data.get("candidate_ref"),
        )
    rules = data.get("context_rules") or {}
    guard = data.get("guardrail_rules") or {}
    return PublicPayload(
        topic=data.get("topic", ""),
        approved_content=data.get("approved_content", ""),
        context_rules=ContextRules(
            allowed_themes=list(rules.get("allowed_themes") or []),
            disallowed_themes=list(rules.get("disallowed_themes") or []),
            boundaries=list(rules.get("boundaries") or []),
        ),
        guardrail_rules=GuardrailRules(
            response_templates=dict(guard.get("response_templates") or {}),
            fallback_responses=list(guard.get("fallback_responses") or []),
        ),
    )
