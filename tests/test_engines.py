"""Tests for engine backends (mocked SDK calls)."""

import pytest
from unittest.mock import MagicMock, patch

from keepsake.engines.anthropic_api import AnthropicAPIEngine
from keepsake.engines.base import Engine, EngineResponse


def _sdk_response(text: str = "Hello!", input_tokens: int = 100, output_tokens: int = 20):
    response = MagicMock()
    response.content = [MagicMock(text=text)]
    response.model = "claude-sonnet-4-5-20250929"
    response.usage = MagicMock(input_tokens=input_tokens, output_tokens=output_tokens)
    return response


class TestAnthropicAPIEngine:
    @pytest.fixture
    def client(self):
        with patch("anthropic.Anthropic") as client_cls:
            yield client_cls.return_value

    @pytest.fixture
    def engine(self, client) -> AnthropicAPIEngine:
        return AnthropicAPIEngine(timeout=30)

    def test_name(self, engine: AnthropicAPIEngine):
        assert engine.name == "anthropic_api"

    def test_satisfies_protocol(self, engine: AnthropicAPIEngine):
        assert isinstance(engine, Engine)

    def test_client_timeout(self):
        with patch("anthropic.Anthropic") as client_cls:
            AnthropicAPIEngine(timeout=45)
        client_cls.assert_called_once_with(timeout=45)

    @pytest.mark.asyncio
    async def test_send_success(self, engine: AnthropicAPIEngine, client):
        client.messages.create.return_value = _sdk_response("Hello!")

        response = await engine.send("Hi")

        assert response.ok
        assert response.text == "Hello!"
        assert response.cost_usd == pytest.approx((100 * 3 + 20 * 15) / 1e6)

    @pytest.mark.asyncio
    async def test_send_with_context_and_system(self, engine: AnthropicAPIEngine, client):
        client.messages.create.return_value = _sdk_response("ok")

        await engine.send("Question?", system_prompt="Be brief.", context="Some memory")

        kwargs = client.messages.create.call_args.kwargs
        prompt = kwargs["messages"][0]["content"]
        assert prompt.startswith("<context>\nSome memory\n</context>")
        assert prompt.endswith("Question?")
        assert kwargs["system"] == "Be brief."

    @pytest.mark.asyncio
    async def test_send_without_system_prompt(self, engine: AnthropicAPIEngine, client):
        client.messages.create.return_value = _sdk_response("ok")
        await engine.send("Hi")
        assert "system" not in client.messages.create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_send_error_returns_response(self, engine: AnthropicAPIEngine, client):
        client.messages.create.side_effect = RuntimeError("rate limited")

        response = await engine.send("Hi")

        assert not response.ok
        assert response.text == ""
        assert "rate limited" in response.error

    @pytest.mark.asyncio
    async def test_health_check_ok(self, engine: AnthropicAPIEngine, client):
        client.messages.create.return_value = _sdk_response("pong")
        assert await engine.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_failure(self, engine: AnthropicAPIEngine, client):
        client.messages.create.side_effect = RuntimeError("down")
        assert await engine.health_check() is False


class TestEngineResponse:
    def test_ok(self):
        assert EngineResponse(text="x").ok
        assert not EngineResponse(text="", error="boom").ok


class TestUsageMetadata:
    @pytest.fixture
    def client(self):
        with patch("anthropic.Anthropic") as client_cls:
            yield client_cls.return_value

    @pytest.mark.asyncio
    async def test_usage_and_stop_reason(self, client):
        response = _sdk_response("ok", input_tokens=7, output_tokens=3)
        response.stop_reason = "end_turn"
        client.messages.create.return_value = response

        result = await AnthropicAPIEngine().send("Hi")

        assert result.metadata == {"stop_reason": "end_turn", "input_tokens": 7, "output_tokens": 3}

    @pytest.mark.asyncio
    async def test_text_blocks_joined(self, client):
        response = _sdk_response()
        response.content = [MagicMock(text="Part one. "), MagicMock(text="Part two.")]
        client.messages.create.return_value = response

        result = await AnthropicAPIEngine().send("Hi")

        assert result.text == "Part one. Part two."

    @pytest.mark.asyncio
    async def test_temperature_forwarded(self, client):
        client.messages.create.return_value = _sdk_response()
        await AnthropicAPIEngine(temperature=0.3).send("Hi")
        assert client.messages.create.call_args.kwargs["temperature"] == 0.3
