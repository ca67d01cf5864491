"""Engine protocol and shared types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass
class EngineResponse:
    """Response from a generation engine.

    Engines do not raise on provider failures; they return an empty ``text``
    with ``error`` set so callers can choose a fallback.
    """

    text: str
    model: str | None = None
    cost_usd: float | None = None
    error: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


@runtime_checkable
class Engine(Protocol):
    """Protocol that all engine backends must implement."""

    @property
    def name(self) -> str: ...

    async def send(
        self,
        message: str,
        *,
        system_prompt: str | None = None,
        context: str | None = None,
    ) -> EngineResponse:
        """Send a message to the engine and return the response."""
        ...

    async def health_check(self) -> bool:
        """Check if the engine is available. Returns True if healthy."""
        ...
