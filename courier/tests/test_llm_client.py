"""Tests for LLMClient provider abstraction."""

import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from courier.common.errors import LLMUnavailableError
from courier.common.llm_client import LLMClient


class TestLLMClientInit:
    def test_missing_anthropic_key_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="courier.common.llm_client"):
            client = LLMClient(provider="anthropic")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_openai_key_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="courier.common.llm_client"):
            client = LLMClient(provider="openai")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_google_key_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="courier.common.llm_client"):
            client = LLMClient(provider="google")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_unsupported_provider_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="courier.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz")
        assert not client.is_available
        assert "Unsupported" in caplog.text

    def test_anthropic_client_built_with_key(self):
        client = LLMClient(provider="anthropic", model="claude-haiku-4-5-20251001", anthropic_api_key="sk-test")
        assert client.is_available


class TestLLMClientGenerate:
    @pytest.mark.asyncio
    async def test_generate_raises_when_unavailable(self):
        client = LLMClient(provider="anthropic")
        with pytest.raises(LLMUnavailableError, match="not available"):
            await client.generate("test")

    @pytest.mark.asyncio
    async def test_anthropic_generate_passes_system_prompt(self):
        client = LLMClient(provider="anthropic", model="m", anthropic_api_key="sk-test")
        fake = MagicMock()
        fake.messages.create = AsyncMock(
            return_value=SimpleNamespace(content=[SimpleNamespace(text='  {"category": "ideas"}\n')])
        )
        client._client = fake

        result = await client.generate("hello", system="be brief", max_tokens=50, timeout=5)

        assert result == '{"category": "ideas"}'
        kwargs = fake.messages.create.call_args.kwargs
        assert kwargs["system"] == "be brief"
        assert kwargs["max_tokens"] == 50
        assert kwargs["messages"] == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_openai_generate(self):
        client = LLMClient(provider="openai", model="gpt", openai_api_key="sk-test")
        fake = MagicMock()
        message = SimpleNamespace(content="ok")
        fake.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)])
        )
        client._client = fake

        assert await client.generate("hi", system="sys") == "ok"
        messages = fake.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "sys"}

    @pytest.mark.asyncio
    async def test_generate_times_out(self):
        client = LLMClient(provider="anthropic", model="m", anthropic_api_key="sk-test")

        async def slow(**kwargs):
            await asyncio.sleep(5)

        fake = MagicMock()
        fake.messages.create = slow
        client._client = fake

        with pytest.raises(asyncio.TimeoutError):
            await client.generate("hi", timeout=0.01)
