"""Response assembler — turns ranked results into an answer for one caller.

Capability tags decide how much of each record is rendered into the prompt
context. They never widen what was retrieved; that is the router's job.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from keepsake.engines.base import Engine
from keepsake.memory.records import RecordKind
from keepsake.retrieval import ScoredResult

logger = logging.getLogger(__name__)

NO_CONTEXT_TEXT = "I don't have enough information to answer that question."
DEFAULT_FALLBACK_TEXT = "I'm not able to answer that right now."

RAW_CONTENT = "raw_content"
EMOTIONAL_DETAIL = "emotional_detail"

ANSWER_SYSTEM_PROMPT = """\
Answer the question using only the memories inside the <context> tags.
If they do not contain the answer, say so plainly. Do not invent details.
"""


@dataclass
class AssembledResponse:
    text: str
    metadata: dict = field(default_factory=dict)


class ResponseAssembler:
    """Renders results under a caller's capability tags and asks the engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ── Rendering ─────────────────────────────────────────

    def render(self, result: ScoredResult, allows: frozenset[str], query: str = "") -> str | None:
        """Context section for one record, or None when nothing may be shown."""
        record = result.record
        payload = record.payload
        lines: list[str] = []

        if record.kind is RecordKind.JOURNAL_ENTRY:
            if RAW_CONTENT in allows:
                lines.append(payload.content)
            elif payload.themes:
                lines.append(f"A journal entry about: {', '.join(payload.themes)}")
            else:
                return None
            if EMOTIONAL_DETAIL in allows and payload.emotional_markers:
                lines.append(f"Emotional markers: {', '.join(payload.emotional_markers)}")

        elif record.kind is RecordKind.PERSONA_MEMORY:
            lines.append(payload.summary)
            if payload.themes:
                lines.append(f"Themes: {', '.join(payload.themes)}")
            for key, value in payload.narrative_elements.items():
                if key == "tone" and EMOTIONAL_DETAIL not in allows:
                    continue
                if value:
                    lines.append(f"{key.capitalize()}: {value}")

        elif record.kind is RecordKind.PUBLIC_KNOWLEDGE:
            if _touches_disallowed(query, payload.context_rules.disallowed_themes):
                logger.info("Public record %s withheld by its context rules", record.id)
                return None
            lines.append(f"{payload.topic}: {payload.approved_content}")

        else:
            return None

        return f"# {record.kind.value} ({record.id})\n" + "\n".join(lines)

    # ── Answering ─────────────────────────────────────────

    async def answer(
        self,
        query: str,
        results: Sequence[ScoredResult],
        allows: Iterable[str],
    ) -> AssembledResponse:
        if not results:
            return AssembledResponse(
                text=NO_CONTEXT_TEXT,
                metadata={"confidence": 0, "reason": "no_relevant_context"},
            )

        allowed = frozenset(allows)
        used: list[ScoredResult] = []
        sections: list[str] = []
        for result in results:
            section = self.render(result, allowed, query)
            if section is not None:
                used.append(result)
                sections.append(section)

        if not used:
            return AssembledResponse(
                text=_fallback_text(results) or NO_CONTEXT_TEXT,
                metadata={"confidence": 0, "reason": "guardrail"},
            )

        metadata = {
            "sources": [r.id for r in used],
            "confidence": max(r.score for r in used),
        }
        response = await self.engine.send(
            query,
            system_prompt=_system_prompt(used),
            context="\n\n---\n\n".join(sections),
        )
        if not response.ok or not response.text.strip():
            logger.warning("Engine %s failed to answer: %s", self.engine.name, response.error)
            metadata["reason"] = "engine_error"
            return AssembledResponse(
                text=_fallback_text(used) or DEFAULT_FALLBACK_TEXT,
                metadata=metadata,
            )
        return AssembledResponse(text=response.text.strip(), metadata=metadata)


def _touches_disallowed(query: str, themes: Iterable[str]) -> bool:
    lowered = query.lower()
    return any(theme and theme.lower() in lowered for theme in themes)


def _system_prompt(results: Sequence[ScoredResult]) -> str:
    boundaries: list[str] = []
    for result in results:
        if result.record.kind is RecordKind.PUBLIC_KNOWLEDGE:
            for rule in result.record.payload.context_rules.boundaries:
                if rule not in boundaries:
                    boundaries.append(rule)
    if not boundaries:
        return ANSWER_SYSTEM_PROMPT
    return ANSWER_SYSTEM_PROMPT + "\nBoundaries:\n" + "\n".join(f"- {b}" for b in boundaries)


def _fallback_text(results: Sequence[ScoredResult]) -> str | None:
    """First guardrail fallback among public records, in rank order."""
    for result in results:
        if result.record.kind is not RecordKind.PUBLIC_KNOWLEDGE:
            continue
        rules = result.record.payload.guardrail_rules
        if rules.fallback_responses:
            return rules.fallback_responses[0]
        if "fallback" in rules.response_templates:
            return rules.response_templates["fallback"]
    return None
