"""Anthropic API engine — single-turn generation for extraction and answers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from keepsake.engines.base import EngineResponse

logger = logging.getLogger(__name__)

# USD per million tokens (input, output); Sonnet list price.
_PRICE_PER_MTOK = (3.0, 15.0)


@dataclass
class AnthropicAPIEngine:
    """Messages API via the `anthropic` SDK. Stateless: one request per call."""

    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 1024
    timeout: int = 120
    temperature: float = 0.0

    def __post_init__(self) -> None:
        try:
            import anthropic

            self._client = anthropic.Anthropic(timeout=self.timeout)
        except ImportError:
            raise ImportError(
                "anthropic package required. Install with: pip install 'keepsake[api]'"
            )

    @property
    def name(self) -> str:
        return "anthropic_api"

    def _request(self, message: str, system_prompt: str | None, context: str | None) -> dict:
        content = f"<context>\n{context}\n</context>\n\n{message}" if context else message
        kwargs: dict = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        return kwargs

    async def send(
        self,
        message: str,
        *,
        system_prompt: str | None = None,
        context: str | None = None,
    ) -> EngineResponse:
        try:
            response = await asyncio.to_thread(
                self._client.messages.create, **self._request(message, system_prompt, context)
            )
        except Exception as e:
            logger.error("Anthropic API error: %s", e)
            return EngineResponse(text="", model=self.model, error=str(e))

        text = "".join(
            getattr(block, "text", "") for block in response.content or []
        )
        metadata: dict = {"stop_reason": getattr(response, "stop_reason", None)}
        cost = None
        if response.usage:
            tokens_in, tokens_out = response.usage.input_tokens, response.usage.output_tokens
            metadata.update(input_tokens=tokens_in, output_tokens=tokens_out)
            cost = (tokens_in * _PRICE_PER_MTOK[0] + tokens_out * _PRICE_PER_MTOK[1]) / 1e6
        if metadata["stop_reason"] == "max_tokens":
            logger.warning("Reply truncated at max_tokens=%d", self.max_tokens)

        return EngineResponse(text=text, model=response.model, cost_usd=cost, metadata=metadata)

    async def health_check(self) -> bool:
        try:
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=self.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "ping"}],
            )
            return bool(response.content)
        except Exception:
            return False
