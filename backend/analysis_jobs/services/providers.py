"""Async AI provider clients and the provider registry.

Each provider turns (system prompt, user prompt) into raw response text.
The OpenAI and Gemini SDKs are sync, so their calls run in a worker thread
via asyncio.to_thread; Anthropic is called over its HTTP API with aiohttp.
Every call is bounded by asyncio.wait_for, and SDK/HTTP failures are
translated into the provider error taxonomy so the workers can tell
retryable failures (timeouts, rate limits) from fatal ones (bad credential).

Retries are not done here: the job workers own the retry policy.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from analysis_jobs.config import settings
from analysis_jobs.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    UnsupportedProviderError,
)
from analysis_jobs.services.response_parser import parse_analysis_response

logger = logging.getLogger(__name__)


def error_for_status(status: int, message: str, provider: str) -> ProviderError:
    """Map an HTTP status from a provider onto the error taxonomy."""
    if status in (401, 403):
        return ProviderAuthError(
            f"{provider} rejected the API key (HTTP {status}). "
            "Please check your API key in settings.",
            provider=provider,
        )
    if status == 429:
        return ProviderRateLimitError(f"{provider} rate limit exceeded: {message}", provider=provider)
    if status in (408, 504):
        return ProviderTimeoutError(f"{provider} timed out (HTTP {status}): {message}", provider=provider)
    return ProviderError(f"{provider} request failed (HTTP {status}): {message}", provider=provider)


class ProviderClient(ABC):
    """Abstract base class for async provider clients."""

    provider_id = ""
    display_name = ""

    def __init__(
        self, api_key: str, model_name: str,
        temperature: float = 0.7, max_tokens: int = 4000, timeout: float = 120.0,
    ):
        if not api_key:
            raise ProviderAuthError(
                f"No API key found for {self.display_name}. Please check your settings and try again.",
                provider=self.provider_id,
            )
        self.api_key = api_key
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"<{type(self).__name__} model={self.model_name}>"

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Run one generation call within the timeout and return the raw text."""
        try:
            text = await asyncio.wait_for(self._generate(system_prompt, user_prompt), timeout=self.timeout)
        except ProviderError:
            raise
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(
                f"{self.display_name} call timed out after {self.timeout}s", provider=self.provider_id,
            )
        except Exception as e:
            raise self._translate_error(e) from e

        if not text or not text.strip():
            raise ProviderError(f"No response from {self.display_name}", provider=self.provider_id)
        logger.debug(f"{self.display_name} response length: {len(text)}")
        return text

    @abstractmethod
    async def _generate(self, system_prompt: str, user_prompt: str) -> Optional[str]:
        pass

    def _translate_error(self, exc: Exception) -> ProviderError:
        return ProviderError(f"{self.display_name} call failed: {exc}", provider=self.provider_id)


# Provider registry - add new providers here
PROVIDERS: dict[str, type[ProviderClient]] = {}


def register_provider(*provider_ids: str):
    """Decorator to register a provider client under one or more ids."""
    def decorator(cls):
        for provider_id in provider_ids:
            PROVIDERS[provider_id] = cls
        return cls
    return decorator


@register_provider("openai")
class OpenAIProvider(ProviderClient):
    """OpenAI chat completions via the openai SDK."""

    provider_id = "openai"
    display_name = "OpenAI"

    def __init__(self, api_key: str, model_name: str, **kwargs):
        super().__init__(api_key, model_name, **kwargs)
        from openai import OpenAI
        self.client = OpenAI(api_key=api_key, timeout=self.timeout, max_retries=0)

    def _sync_generate(self, system_prompt, user_prompt):
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not response.choices:
            return None
        return response.choices[0].message.content

    async def _generate(self, system_prompt, user_prompt):
        return await asyncio.to_thread(self._sync_generate, system_prompt, user_prompt)

    def _translate_error(self, exc):
        import openai

        if isinstance(exc, openai.APITimeoutError):
            return ProviderTimeoutError(f"OpenAI request timed out: {exc}", provider=self.provider_id)
        if isinstance(exc, openai.APIStatusError):
            return error_for_status(exc.status_code, str(exc), self.display_name)
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(f"Could not reach OpenAI: {exc}", provider=self.provider_id)
        return super()._translate_error(exc)


@register_provider("google", "gemini")
class GeminiProvider(ProviderClient):
    """Google Gemini via the google-genai SDK."""

    provider_id = "google"
    display_name = "Google AI"

    def __init__(self, api_key: str, model_name: str, **kwargs):
        super().__init__(api_key, model_name, **kwargs)
        from google import genai
        self.client = genai.Client(api_key=api_key)

    def _sync_generate(self, system_prompt, user_prompt):
        from google.genai import types

        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            temperature=self.temperature,
            max_output_tokens=self.max_tokens,
        )
        response = self.client.models.generate_content(
            model=self.model_name, contents=user_prompt, config=config,
        )
        return response.text

    async def _generate(self, system_prompt, user_prompt):
        return await asyncio.to_thread(self._sync_generate, system_prompt, user_prompt)

    def _translate_error(self, exc):
        from google.genai import errors

        if isinstance(exc, errors.APIError):
            return error_for_status(exc.code, exc.message or str(exc), self.display_name)
        return super()._translate_error(exc)


@register_provider("anthropic")
class AnthropicProvider(ProviderClient):
    """Anthropic Messages API over aiohttp."""

    provider_id = "anthropic"
    display_name = "Anthropic"

    API_URL = "https://api.anthropic.com/v1/messages"
    API_VERSION = "2023-06-01"

    async def _post(self, payload: dict) -> tuple[int, dict]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.API_URL, json=payload, headers=headers) as resp:
                body = await resp.json(content_type=None)
                return resp.status, body or {}

    async def _generate(self, system_prompt, user_prompt):
        status, body = await self._post({
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        })
        if status >= 400:
            message = (body.get("error") or {}).get("message", "") if isinstance(body, dict) else ""
            raise error_for_status(status, message, self.display_name)

        content = body.get("content") or []
        if not content or content[0].get("type") != "text":
            raise ProviderError("Unexpected response type from Anthropic", provider=self.provider_id)
        return content[0].get("text", "")

    def _translate_error(self, exc):
        if isinstance(exc, aiohttp.ClientError):
            return ProviderError(f"Could not reach Anthropic: {exc}", provider=self.provider_id)
        return super()._translate_error(exc)


def create_provider(
    provider: str, api_key: str, model_name: str,
    *, timeout: Optional[float] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> ProviderClient:
    """Factory keyed on provider id."""
    cls = PROVIDERS.get(provider)
    if cls is None:
        raise UnsupportedProviderError(f"Unsupported provider: {provider}", provider=provider)
    if not model_name:
        raise UnsupportedProviderError(f"No model selected for provider: {provider}", provider=provider)
    return cls(
        api_key=api_key,
        model_name=model_name,
        temperature=settings.PROVIDER_TEMPERATURE if temperature is None else temperature,
        max_tokens=max_tokens or settings.PROVIDER_MAX_TOKENS,
        timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS,
    )


async def invoke_analysis(
    provider: str, model_id: str, system_prompt: str, user_prompt: str, api_key: str,
    *, timeout: Optional[float] = None,
) -> dict:
    """Call the provider and return the parsed (or fallback) analysis payload."""
    client = create_provider(provider, api_key, model_id, timeout=timeout)
    text = await client.complete(system_prompt, user_prompt)
    return parse_analysis_response(text, client.display_name)
