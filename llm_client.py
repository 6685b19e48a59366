#!/usr/bin/env python3
"""Async AI summarization client. `generate_summary` builds the story prompt, sends it to the
configured backend (local Ollama or an OpenAI-compatible endpoint) with retry and exponential
backoff, and returns the raw model text. Raises `SummaryBackendError` once retries are exhausted."""
from __future__ import annotations
from typing import Any, Dict, Optional, Tuple
from asyncio import sleep, CancelledError, TimeoutError as AsyncTimeoutError

from aiohttp import ClientSession, ClientError, ClientTimeout
from openai import (
    AsyncOpenAI,
    OpenAIError,
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    PermissionDeniedError,
)

from config import config, get_logger
from errors import SummaryBackendError
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("llm_client")

SUMMARY_PROMPT = """Analyze this Hacker News story and provide a high-quality technical summary.
Return ONLY a JSON object with two keys:
1. "summary": A FLAT JSON array of exactly 5 strings (DO NOT use nested arrays or objects). Each string is a single key point.
2. "topics": A FLAT JSON array of 5 relevant tags (plain strings).

Title: {title}
Text: {text}"""


class BackendHTTPError(Exception):
    """Non-200 reply from an AI backend."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status


def build_summary_prompt(title: str, text: str) -> str:
    return SUMMARY_PROMPT.format(title=title or "", text=text or "")


def _is_retryable(error: Exception) -> bool:
    """Quota, rate-limit, server and transport failures are worth another attempt."""
    if isinstance(error, (AuthenticationError, PermissionDeniedError, NotFoundError)):
        return False
    if isinstance(error, BadRequestError):
        return "quota" in str(error).lower()
    if isinstance(error, BackendHTTPError):
        return error.status == 429 or error.status >= 500 or "quota" in str(error).lower()
    return True


class OllamaBackend:
    """Local inference through Ollama's ``/api/generate`` endpoint."""

    name = "ollama"

    def __init__(self, endpoint: str, model: Optional[str] = None, session: Optional[ClientSession] = None):
        self.endpoint = (endpoint or config.OLLAMA_URL).rstrip("/")
        self.model = model or config.OLLAMA_MODEL
        self.timeout = ClientTimeout(total=config.AI_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    async def generate(self, prompt: str) -> str:
        if self._session is None:
            self._session = ClientSession(timeout=self.timeout)
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
        }
        async with self._session.post(f"{self.endpoint}/api/generate", json=payload, timeout=self.timeout) as resp:
            if resp.status != 200:
                raise BackendHTTPError(resp.status, await resp.text())
            data = await resp.json(content_type=None)
        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise ValueError(f"Unexpected Ollama response: {str(data)[:200]}")
        return data["response"]

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None


class OpenAIBackend:
    """Hosted OpenAI-compatible chat completions."""

    name = "openai"

    def __init__(self, endpoint: Optional[str] = None, model: Optional[str] = None, client: Optional[Any] = None):
        self.model = model or config.OPENAI_MODEL
        self._client = client or AsyncOpenAI(
            api_key=config.OPENAI_API_KEY,
            base_url=endpoint or None,
            timeout=config.AI_TIMEOUT,
            max_retries=0,
        )

    async def generate(self, prompt: str) -> str:
        resp = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
        )
        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise ValueError("No choices in completion response")
        content = getattr(choices[0].message, "content", None)
        if not isinstance(content, str) or not content.strip():
            raise ValueError(f"Empty completion content (finish_reason={getattr(choices[0], 'finish_reason', None)})")
        return content.strip()

    async def close(self):
        await self._client.close()


_backends: Dict[Tuple[str, str], Any] = {}


def get_backend(endpoint: Optional[str] = None) -> Any:
    """Instantiate and cache the backend selected by AI_BACKEND for ``endpoint``."""
    key = (config.AI_BACKEND, endpoint or "")
    backend = _backends.get(key)
    if backend is None:
        if config.AI_BACKEND == "openai":
            backend = OpenAIBackend(endpoint)
        else:
            backend = OllamaBackend(endpoint or config.OLLAMA_URL)
        _backends[key] = backend
    return backend


async def close_backends() -> None:
    while _backends:
        _, backend = _backends.popitem()
        try:
            await backend.close()
        except (ClientError, OpenAIError, OSError) as e:
            logger.debug("Error closing %s backend: %s", backend.name, e)


@trace_span(
    "ai.generate_summary",
    tracer_name="llm",
    attr_from_args=lambda endpoint, title, text, **kw: {"ai.title": title, "ai.input_chars": len(text or "")},
)
async def generate_summary(
    endpoint: Optional[str],
    title: str,
    text: str,
    *,
    retries: Optional[int] = None,
    backend_override: Optional[Any] = None,
) -> str:
    """Ask the AI backend for a JSON summary of a story and return the raw reply text."""
    backend = backend_override or get_backend(endpoint)
    prompt = build_summary_prompt(title, text)
    backoff = RetryHelper(
        max_retries=retries if retries is not None else config.SUMMARIZER_MAX_RETRIES,
        base_delay=config.SUMMARIZER_RETRY_DELAY_BASE,
    )
    logger.debug("Summarizing %r with %s (%d input chars)", title, getattr(backend, "name", "backend"), len(text or ""))

    last_error: Optional[Exception] = None
    for attempt in range(backoff.max_retries):
        try:
            return await backend.generate(prompt)
        except CancelledError:
            raise
        except (ClientError, AsyncTimeoutError, OpenAIError, BackendHTTPError, ValueError, OSError) as e:
            last_error = e
            if not _is_retryable(e):
                logger.error("AI request for %r failed permanently: %s", title, e)
                break
            if attempt + 1 >= backoff.max_retries:
                break
            delay = backoff.calculate_delay(attempt)
            logger.warning("AI request failed: %s. Backoff %ss (attempt %d/%d)", e, delay, attempt + 1, backoff.max_retries)
            await sleep(delay)

    raise SummaryBackendError(
        f"AI request for {title!r} failed after {backoff.max_retries} attempt(s): {last_error}",
        details={"error": repr(last_error)},
    )


__all__ = ["generate_summary", "build_summary_prompt", "get_backend", "close_backends", "OllamaBackend", "OpenAIBackend"]
