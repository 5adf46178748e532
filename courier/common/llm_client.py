"""
Provider-agnostic async LLM client for the classification stage.

Supports Anthropic, OpenAI, and Google Gemini behind one ``generate`` call.
Every call carries its own timeout; the pipeline never waits on a model
indefinitely.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import LLMUnavailableError

logger = logging.getLogger("courier.common.llm_client")

SUPPORTED_PROVIDERS = ("anthropic", "openai", "google")


class LLMClient:
    """Unified async text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model
        self._client = None

        if self.provider not in SUPPORTED_PROVIDERS:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(api_key=openai_api_key)
            except ImportError:
                logger.warning("openai package not installed")
            return

        if not google_api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return
        try:
            import google.generativeai as genai

            genai.configure(api_key=google_api_key)
            self._client = genai  # Store the module, models are built per system prompt
            self._google_models = {}
        except ImportError:
            logger.warning("google-generativeai package not installed")

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: float = 30.0,
    ) -> str:
        """Return the model's text reply.

        Raises LLMUnavailableError when no provider is configured and
        asyncio.TimeoutError when the call exceeds ``timeout``. Provider
        errors propagate unchanged.
        """
        if not self.is_available:
            raise LLMUnavailableError("LLM client is not available")

        return await asyncio.wait_for(
            self._generate(prompt, system=system, max_tokens=max_tokens, timeout=timeout),
            timeout=timeout,
        )

    async def _generate(self, prompt: str, *, system: Optional[str], max_tokens: int, timeout: float) -> str:
        if self.provider == "anthropic":
            kwargs = {}
            if system:
                kwargs["system"] = system
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
                **kwargs,
            )
            return response.content[0].text.strip()

        if self.provider == "openai":
            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=messages,
                timeout=timeout,
            )
            return (response.choices[0].message.content or "").strip()

        cache_key = system or ""
        if cache_key not in self._google_models:
            kwargs = {"model_name": self.model}
            if system:
                kwargs["system_instruction"] = system
            self._google_models[cache_key] = self._client.GenerativeModel(**kwargs)
        model = self._google_models[cache_key]
        response = await model.generate_content_async(
            prompt,
            generation_config={"max_output_tokens": max_tokens},
            request_options={"timeout": timeout},
        )
        return response.text.strip()
