"""Embedding provider — OpenAI embeddings endpoint over aiohttp."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

import aiohttp

from keepsake.config import EmbeddingConfig
from keepsake.errors import EmbeddingProviderError

logger = logging.getLogger(__name__)

_RETRY_STATUSES = {429, 500, 502, 503, 504}


@runtime_checkable
class Embedder(Protocol):
    """Text → fixed-dimension vector."""

    async def embed(self, text: str) -> list[float]: ...


class OpenAIEmbedder:
    """Calls ``POST {base_url}/embeddings``; retries throttling and 5xx replies."""

    def __init__(
        self,
        config: EmbeddingConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config
        self._session = session
        self._owns_session = session is None

    @property
    def dimension(self) -> int:
        return self.config.dimension

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            logger.debug("Embedding HTTP session closed")

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingProviderError("cannot embed empty text")
        if not self.config.api_key:
            raise EmbeddingProviderError("OPENAI_API_KEY is not configured")

        session = self._get_session()
        url = f"{self.config.base_url.rstrip('/')}/embeddings"
        payload = {"model": self.config.model, "input": text}
        attempts = self.config.retry_max + 1
        last_error = ""

        for attempt in range(attempts):
            if attempt:
                await asyncio.sleep(self.config.retry_backoff * (2 ** (attempt - 1)))
            try:
                async with session.post(url, json=payload) as resp:
                    if resp.status in _RETRY_STATUSES:
                        last_error = f"status {resp.status}"
                        logger.warning(
                            "Embedding request throttled/failed (%s), attempt %d",
                            last_error, attempt + 1,
                        )
                        continue
                    if resp.status >= 400:
                        raise EmbeddingProviderError(f"status {resp.status}")
                    data = await resp.json()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__
                logger.warning("Embedding request error: %s (attempt %d)", last_error, attempt + 1)
                continue
            return self._vector_from(data)

        raise EmbeddingProviderError(f"embedding failed after {attempts} attempts: {last_error}")

    def _vector_from(self, data: dict) -> list[float]:
        try:
            vector = [float(v) for v in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise EmbeddingProviderError(f"malformed embedding response: {e}") from e
        if len(vector) != self.config.dimension:
            raise EmbeddingProviderError(
                f"provider returned {len(vector)} dimensions, expected {self.config.dimension}"
            )
        return vector
