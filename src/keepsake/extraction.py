"""Extraction pipeline collaborators — themes, narrative elements, summary.

The lifecycle only depends on the ``Extractor`` protocol. ``LLMExtractor``
implements it with three prompts to a generation engine and strict parsing
of the replies: anything unusable raises ExtractionError rather than
producing a half-filled candidate.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from keepsake.engines.base import Engine
from keepsake.errors import ExtractionError

logger = logging.getLogger(__name__)

NARRATIVE_KEYS = ("protagonist", "desire", "obstacle", "tone")

EXTRACTION_SYSTEM_PROMPT = """\
You prepare private journal entries for a persona memory review queue.
Never repeat names of people, places or organizations from the entry.
Answer with exactly the format requested and nothing else.
"""

THEMES_PROMPT_TEMPLATE = """\
Classify the journal entry below into at most {max_themes} short theme tags
(lowercase, hyphen-separated, e.g. "personal-growth", "career").
Output a JSON array of strings.

Entry:
{text}
"""

NARRATIVE_PROMPT_TEMPLATE = """\
Extract the narrative elements of the journal entry below.
Output one JSON object with exactly these string keys:
  - protagonist: who the entry is about ("self" for the writer)
  - desire: what the protagonist wants
  - obstacle: what stands in the way ("" if nothing)
  - tone: one or two words for the emotional tone

Entry:
{text}
"""

SUMMARY_PROMPT_TEMPLATE = """\
Summarize the journal entry below in one or two sentences, in the third person
("The user ..."). Keep the meaning, drop identifying details and quotations.

Entry:
{text}
"""


@runtime_checkable
class Extractor(Protocol):
    """The three extraction calls the candidate lifecycle makes."""

    async def classify_themes(self, text: str) -> list[str]: ...

    async def extract_narrative(self, text: str) -> dict[str, str]: ...

    async def summarize(self, text: str) -> str: ...


def _parse_json(reply: str, expected: type) -> Any:
    """Parse a JSON reply, tolerating prose or code fences around it."""
    text = reply.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        pattern = r"\[.*\]" if expected is list else r"\{.*\}"
        match = re.search(pattern, text, re.DOTALL)
        if not match:
            raise ExtractionError(f"Reply is not JSON: {text[:80]!r}")
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Reply is not JSON: {e}") from e
    if not isinstance(data, expected):
        raise ExtractionError(f"Expected a JSON {expected.__name__}, got {type(data).__name__}")
    return data


def normalize_theme(theme: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", theme.strip().lower())
    return slug.strip("-")


@dataclass
class LLMExtractor:
    """Extractor backed by a generation engine."""

    engine: Engine
    max_themes: int = 5

    async def _ask(self, prompt: str, stage: str) -> str:
        response = await self.engine.send(prompt, system_prompt=EXTRACTION_SYSTEM_PROMPT)
        if not response.ok:
            raise ExtractionError(f"{stage} failed: {response.error}")
        if not response.text.strip():
            raise ExtractionError(f"{stage} returned an empty reply")
        return response.text

    async def classify_themes(self, text: str) -> list[str]:
        reply = await self._ask(
            THEMES_PROMPT_TEMPLATE.format(max_themes=self.max_themes, text=text), "classify_themes"
        )
        themes: list[str] = []
        for item in _parse_json(reply, list):
            theme = normalize_theme(str(item))
            if theme and theme not in themes:
                themes.append(theme)
        if not themes:
            raise ExtractionError("classify_themes produced no themes")
        return themes[: self.max_themes]

    async def extract_narrative(self, text: str) -> dict[str, str]:
        reply = await self._ask(NARRATIVE_PROMPT_TEMPLATE.format(text=text), "extract_narrative")
        data = _parse_json(reply, dict)
        missing = [key for key in NARRATIVE_KEYS if key not in data]
        if missing:
            raise ExtractionError(f"extract_narrative missing keys: {missing}")
        return {key: str(data[key]).strip() for key in NARRATIVE_KEYS}

    async def summarize(self, text: str) -> str:
        reply = await self._ask(SUMMARY_PROMPT_TEMPLATE.format(text=text), "summarize")
        return reply.strip()
