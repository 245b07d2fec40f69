"""
Pluggable LLM provider abstraction for the generation pipeline.

Every provider validates requests locally, performs the call, classifies
failures into the pipeline's error taxonomy and returns raw token usage.
Cost is never computed here.
"""

from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

import httpx
import openai
import requests
from openai import AsyncOpenAI

from .exceptions import (
    AuthError,
    ConfigurationError,
    InvalidRequestError,
    NetworkError,
    ProviderError,
    ProviderServerError,
    ProviderTimeoutError,
    RateLimitedError,
    UnexpectedProviderError,
)
from .models import ChatMessage, CompletionResult, TokenUsage

logger = logging.getLogger(__name__)

MAX_COMPLETION_TOKENS = 8000
MAX_TEMPERATURE = 2.0
MAX_MESSAGE_CHARS = 100_000


class ProviderClient(Protocol):
    """Protocol for all provider implementations."""

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
        requester_id: Optional[str] = None
    ) -> CompletionResult:
        """Run one chat completion."""
        ...

    def is_available(self) -> bool:
        """Check if this provider is currently reachable."""
        ...


def validate_completion_request(
    messages: Sequence[ChatMessage],
    max_tokens: int,
    temperature: float
) -> None:
    """Local precondition checks; violations never reach the network."""
    if not messages:
        raise InvalidRequestError("At least one message is required")
    if not 1 <= max_tokens <= MAX_COMPLETION_TOKENS:
        raise InvalidRequestError(f"max_tokens must be between 1 and {MAX_COMPLETION_TOKENS}, got {max_tokens}")
    if not 0 <= temperature <= MAX_TEMPERATURE:
        raise InvalidRequestError(f"temperature must be between 0 and {MAX_TEMPERATURE}, got {temperature}")
    total = sum(len(m.content) for m in messages)
    if total > MAX_MESSAGE_CHARS:
        raise InvalidRequestError(f"Messages total {total} characters, limit is {MAX_MESSAGE_CHARS}")


class BaseProviderClient(ABC):
    """Shared request validation; subclasses implement the vendor call."""

    name = "base"

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
        requester_id: Optional[str] = None
    ) -> CompletionResult:
        validate_completion_request(messages, max_tokens, temperature)
        logger.debug(f"{self.name}: completion for {requester_id or 'anonymous'} with model {model}")
        return await self._complete(model, list(messages), max_tokens, temperature, requester_id)

    @abstractmethod
    async def _complete(
        self,
        model: str,
        messages: List[ChatMessage],
        max_tokens: int,
        temperature: float,
        requester_id: Optional[str]
    ) -> CompletionResult:
        ...

    @abstractmethod
    def is_available(self) -> bool:
        ...

    def get_model_info(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.__class__.__name__}


# ==================== OpenAI-compatible ====================

def classify_openai_error(error: Exception) -> ProviderError:
    """Map an ``openai`` SDK exception onto the provider error taxonomy."""
    status = getattr(error, "status_code", None)
    if isinstance(error, openai.APITimeoutError):
        return ProviderTimeoutError(f"Provider call timed out: {error}")
    if isinstance(error, openai.APIConnectionError):
        return NetworkError(f"Could not reach provider: {error}")
    if isinstance(error, openai.RateLimitError):
        return RateLimitedError(f"Provider rate limit hit: {error}", status_code=status)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError(f"Provider rejected credentials: {error}", status_code=status)
    if isinstance(error, openai.APIStatusError) and status is not None and status >= 500:
        return ProviderServerError(f"Provider server error ({status}): {error}", status_code=status)
    return UnexpectedProviderError(f"Unexpected provider failure: {error}", status_code=status)


class OpenAICompatibleProvider(BaseProviderClient):
    """
    Provider for OpenAI-compatible chat completion APIs.
    Works with OpenAI and local OpenAI-compatible servers.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        api_key: str = "no-key",
        timeout: float = 60.0,
        name: str = "openai-compatible",
        client: Optional[AsyncOpenAI] = None
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.name = name
        # No automatic retries: failures are terminal and visible
        self.client = client or AsyncOpenAI(
            base_url=base_url, api_key=api_key, timeout=timeout, max_retries=0
        )

    async def _complete(self, model, messages, max_tokens, temperature, requester_id):
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[{"role": m.role, "content": m.content} for m in messages],
                max_tokens=max_tokens,
                temperature=temperature,
                user=requester_id or openai.NOT_GIVEN,
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        usage = TokenUsage(
            prompt_tokens=getattr(response.usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(response.usage, "completion_tokens", 0) or 0,
        )
        choices = [(choice.message.content or "").strip() for choice in response.choices]
        if not choices:
            raise UnexpectedProviderError("Provider returned no choices", usage=usage)
        return CompletionResult(choices=choices, usage=usage, model=response.model or model)

    def is_available(self) -> bool:
        """Check if the service is reachable."""
        try:
            # Local servers expose /health next to /v1
            health_url = f"{self.base_url.removesuffix('/').removesuffix('/v1')}/health"
            response = requests.get(health_url, timeout=5)
            if response.status_code == 200:
                return True
        except requests.RequestException:
            pass
        try:
            models_url = f"{self.base_url.rstrip('/')}/models"
            response = requests.get(
                models_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=5
            )
            return response.status_code == 200
        except requests.RequestException:
            return False

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "base_url": self.base_url,
            "type": "openai-compatible"
        }


# ==================== Anthropic ====================

class AnthropicProvider(BaseProviderClient):
    """Provider for the Anthropic Messages API over plain HTTP."""

    API_VERSION = "2023-06-01"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.anthropic.com/v1",
        timeout: float = 60.0,
        name: str = "anthropic",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if not api_key:
            raise ConfigurationError("Anthropic API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.name = name
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }

    async def _complete(self, model, messages, max_tokens, temperature, requester_id):
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
        }
        if system:
            payload["system"] = system
        if requester_id:
            payload["metadata"] = {"user_id": requester_id}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/messages", json=payload, headers=self._headers())
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Provider call timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise self._classify_status(e.response) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach provider: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise UnexpectedProviderError(f"Provider returned invalid JSON: {e}") from e

        raw_usage = body.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=raw_usage.get("input_tokens", 0),
            completion_tokens=raw_usage.get("output_tokens", 0),
        )
        blocks = body.get("content")
        if not isinstance(blocks, list):
            raise UnexpectedProviderError("Provider response has no content", usage=usage)
        text = "".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")
        return CompletionResult(choices=[text.strip()], usage=usage, model=body.get("model", model))

    @staticmethod
    def _classify_status(response: httpx.Response) -> ProviderError:
        status = response.status_code
        detail = response.text[:500]
        if status == 429:
            return RateLimitedError(f"Provider rate limit hit: {detail}", status_code=status)
        if status in (401, 403):
            return AuthError(f"Provider rejected credentials: {detail}", status_code=status)
        if status >= 500:
            return ProviderServerError(f"Provider server error ({status}): {detail}", status_code=status)
        return UnexpectedProviderError(f"Provider returned HTTP {status}: {detail}", status_code=status)

    def is_available(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/models", headers=self._headers(), timeout=5)
            return response.status_code == 200
        except requests.RequestException:
            return False

    def get_model_info(self) -> Dict[str, Any]:
        return {"name": self.name, "base_url": self.base_url, "type": "anthropic"}


# ==================== Mock ====================

ScriptedReply = Union[str, CompletionResult, Exception]


class MockProvider(BaseProviderClient):
    """Mock provider for testing - replays scripted replies in order."""

    def __init__(
        self,
        replies: Optional[List[ScriptedReply]] = None,
        usage: Optional[TokenUsage] = None,
        delay: float = 0.0,
        available: bool = True
    ):
        """
        Args:
            replies: Text, full results or exceptions, consumed one per call;
                the last reply repeats once the script runs out
            usage: Usage reported with text replies
            delay: Seconds to sleep before answering
        """
        self.replies = list(replies or ['{"testCases": []}'])
        self.usage = usage or TokenUsage(prompt_tokens=1000, completion_tokens=500)
        self.delay = delay
        self.available = available
        self.name = "mock"
        self.calls: List[Dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def _complete(self, model, messages, max_tokens, temperature, requester_id):
        self.calls.append({
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "requester_id": requester_id,
        })
        if self.delay:
            await asyncio.sleep(self.delay)

        index = min(len(self.calls) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, CompletionResult):
            return reply
        return CompletionResult(choices=[reply], usage=self.usage, model=model)

    def is_available(self) -> bool:
        return self.available

    def get_model_info(self) -> Dict[str, Any]:
        return {"name": "mock", "type": "mock", "replies": len(self.replies)}


# ==================== Factory ====================

class ProviderFactory:
    """Factory for creating providers by name."""

    DEFAULT_LOCAL_URL = "http://localhost:8080/v1"

    def __init__(self):
        self._providers: Dict[str, Dict[str, Any]] = {}
        self._setup_default_providers()

    def _setup_default_providers(self):
        self._providers["openai"] = {
            "class": OpenAICompatibleProvider,
            "kwargs": {"base_url": "https://api.openai.com/v1", "name": "openai"}
        }
        self._providers["local"] = {
            "class": OpenAICompatibleProvider,
            "kwargs": {"base_url": self.DEFAULT_LOCAL_URL, "api_key": "no-key", "name": "local"}
        }
        self._providers["anthropic"] = {
            "class": AnthropicProvider,
            "kwargs": {"base_url": "https://api.anthropic.com/v1", "name": "anthropic"}
        }
        self._providers["mock"] = {"class": MockProvider, "kwargs": {}}

    @property
    def names(self) -> List[str]:
        return list(self._providers)

    def register_provider(self, name: str, provider_class, **kwargs):
        """Register a custom provider."""
        self._providers[name] = {"class": provider_class, "kwargs": kwargs}

    def create_provider(
        self,
        name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> BaseProviderClient:
        if name not in self._providers:
            raise ConfigurationError(f"Unknown provider '{name}'. Known: {', '.join(self._providers)}")

        config = self._providers[name]
        kwargs = dict(config["kwargs"])
        if config["class"] is not MockProvider:
            if api_key:
                kwargs["api_key"] = api_key
            if base_url:
                kwargs["base_url"] = base_url
            if timeout:
                kwargs["timeout"] = timeout
        if name == "openai" and not kwargs.get("api_key"):
            raise ConfigurationError("OpenAI API key is required")

        logger.info(f"Creating provider: {name}")
        return config["class"](**kwargs)

    def list_providers(self, api_key: Optional[str] = None) -> List[Dict[str, Any]]:
        """List providers that can be built with their availability."""
        listed = []
        for name in self._providers:
            try:
                provider = self.create_provider(name, api_key=api_key)
            except ConfigurationError as e:
                listed.append({"name": name, "available": False, "error": str(e)})
                continue
            info = provider.get_model_info()
            info["available"] = provider.is_available()
            listed.append(info)
        return listed
