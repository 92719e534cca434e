"""Resilient client for the generation service.

One :class:`GenerationClient` is built at startup and shared by reference.
Every call is capped in prompt size, bounded by a per-attempt timeout and
retried with exponential backoff when the failure looks transient
(HTTP 429/5xx, timeouts, connection and DNS failures). Anything else
fails fast with :class:`GenerationError`.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Literal, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from recon.config import Settings
from recon.utils import TRUNCATION_MARKER, cap_text

log = logging.getLogger(__name__)

OutputFormat = Literal["text", "json"]
SchemaT = TypeVar("SchemaT", bound=BaseModel)


class GenerationError(Exception):
    """Generation call failed or returned nothing usable."""
    def __init__(self, message: str, retryable: bool = False, status: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class MalformedOutputError(GenerationError):
    """Generation output did not parse or validate."""
    def __init__(self, message: str):
        super().__init__(message, retryable=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_RETRYABLE_SIGNATURES = (
    "timeout",
    "timed out",
    "etimedout",
    "econnrefused",
    "econnreset",
    "enotfound",
    "getaddrinfo",
    "connection refused",
    "connection reset",
    "name or service not known",
    "connectionerror",
)


def cap_prompt(text: str, max_chars: int) -> str:
    """Truncate *text* so the result, marker included, fits in *max_chars*."""
    if len(text) <= max_chars:
        return text
    if max_chars <= len(TRUNCATION_MARKER):
        return text[:max_chars]
    return cap_text(text, max_chars - len(TRUNCATION_MARKER), TRUNCATION_MARKER)


def status_of(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, GenerationError):
        return exc.retryable
    status = status_of(exc)
    if status is not None:
        return status == 429 or status >= 500
    if isinstance(exc, (TimeoutError, ConnectionError, httpx.TransportError)):
        return True
    message = f"{type(exc).__name__} {exc}".lower()
    return any(sig in message for sig in _RETRYABLE_SIGNATURES)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _first(items: Any) -> Any:
    if isinstance(items, (list, tuple)) and items:
        return items[0]
    return None


def extract_output_text(response: Any) -> str | None:
    """Pull generated text out of a response object or dict.

    Checks the flat ``output_text`` field, then ``output[0].content[0].text``,
    then ``content[0].text``. Returns ``None`` when none is present.
    """
    if response is None:
        return None
    text = _field(response, "output_text")
    if isinstance(text, str) and text:
        return text
    nested = _first(_field(_first(_field(response, "output")), "content"))
    text = _field(nested, "text")
    if isinstance(text, str) and text:
        return text
    text = _field(_first(_field(response, "content")), "text")
    if isinstance(text, str) and text:
        return text
    return None


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def parse_structured(text: str, schema: type[SchemaT]) -> SchemaT:
    """Parse *text* as JSON and validate it against *schema*."""
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedOutputError(f"Generation returned invalid JSON: {text[:200]}") from exc
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise MalformedOutputError(f"Generation output failed validation: {exc}") from exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GenerationClient:
    """Async generation client supporting OpenAI and Anthropic."""

    def __init__(
        self,
        provider: str = "openai",
        model: str = "",
        embedding_model: str = "text-embedding-3-small",
        timeout_seconds: float = 60.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        max_prompt_chars: int = 24_000,
        base_url: str | None = None,
        api_key: str | None = None,
        sdk_client: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.model = model
        self.embedding_model = embedding_model
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_prompt_chars = max_prompt_chars
        self._base_url = base_url
        self._api_key = api_key
        self._sleep = sleep
        self._client: Any = sdk_client
        if sdk_client is None:
            self._init_client()
        elif not self.model:
            self.model = "claude-haiku-4-5-20251001" if provider == "anthropic" else "gpt-4o-mini"

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> GenerationClient:
        return cls(
            provider=settings.llm_provider,
            model=settings.llm_model,
            embedding_model=settings.embedding_model,
            timeout_seconds=settings.generation_timeout_seconds,
            max_retries=settings.generation_max_retries,
            backoff_seconds=settings.generation_backoff_seconds,
            max_prompt_chars=settings.max_prompt_chars,
            base_url=settings.llm_base_url or None,
            api_key=(
                settings.anthropic_api_key if settings.llm_provider == "anthropic" else settings.openai_api_key
            ) or None,
            **kwargs,
        )

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            kwargs: dict[str, Any] = {"max_retries": 0}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            self._client = anthropic.AsyncAnthropic(**kwargs)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs = {"max_retries": 0}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def _request(self, prompt: str, output: OutputFormat, model: str) -> Any:
        if self.provider == "anthropic":
            system = "Respond with ONLY valid JSON." if output == "json" else None
            kwargs: dict[str, Any] = {
                "model": model,
                "max_tokens": 4096,
                "messages": [{"role": "user", "content": prompt}],
            }
            if system:
                kwargs["system"] = system
            return await self._client.messages.create(**kwargs)
        kwargs = {"model": model, "input": prompt}
        if output == "json":
            kwargs["text"] = {"format": {"type": "json_object"}}
        return await self._client.responses.create(**kwargs)

    async def _with_retries(self, label: str, call: Callable[[], Awaitable[Any]], timeout: float) -> Any:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(call(), timeout=timeout)
            except GenerationError:
                raise
            except Exception as exc:
                retryable = is_retryable(exc)
                if not retryable or attempt >= self.max_retries:
                    raise GenerationError(
                        f"{label} failed after {attempt + 1} attempt(s): {exc}",
                        retryable=retryable,
                        status=status_of(exc),
                    ) from exc
                delay = self.backoff_seconds * (2 ** attempt)
                log.warning(
                    "%s attempt %d failed (%s), retrying in %.2fs",
                    label, attempt + 1, exc, delay,
                )
                await self._sleep(delay)
                attempt += 1

    async def generate(
        self,
        prompt: str,
        output: OutputFormat = "text",
        model: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Send *prompt* and return the generated text."""
        prompt = cap_prompt(prompt, self.max_prompt_chars)
        use_model = model or self.model
        response = await self._with_retries(
            "Generation",
            lambda: self._request(prompt, output, use_model),
            timeout or self.timeout_seconds,
        )
        text = extract_output_text(response)
        if text is None:
            raise GenerationError("Generation response contained no output text", retryable=False)
        return text

    async def embed(self, input: str | list[str]) -> list[list[float]]:
        """Return one embedding vector per input string."""
        if self.provider == "anthropic":
            raise GenerationError("Embeddings require the openai provider", retryable=False)
        inputs = [input] if isinstance(input, str) else list(input)
        if not inputs:
            return []
        inputs = [cap_prompt(text, self.max_prompt_chars) for text in inputs]
        response = await self._with_retries(
            "Embedding",
            lambda: self._client.embeddings.create(model=self.embedding_model, input=inputs),
            self.timeout_seconds,
        )
        data = _field(response, "data") or []
        return [list(_field(item, "embedding") or []) for item in data]
