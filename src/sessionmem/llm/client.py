"""Summarization clients used for observation compression and session summaries."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

import openai

from sessionmem.config import LLMSettings
from sessionmem.errors import ExternalCallError

logger = logging.getLogger(__name__)

PAYLOAD_PREVIEW_CHARS = 1500
MOCK_PREVIEW_CHARS = 80


class SummarizationClient(Protocol):
    async def compress(
        self, function_name: str, function_args: str | None = None, function_result: str | None = None
    ) -> str: ...

    async def summarize(self, task_prompt: str, snippets: list[str]) -> str: ...


def build_compression_prompt(function_name: str, function_args: str, function_result: str) -> str:
    return "\n".join(
        [
            "Summarize this coding action in under 120 tokens:",
            f"Function: {function_name}",
            f"Args: {function_args[:PAYLOAD_PREVIEW_CHARS]}",
            f"Result: {function_result[:PAYLOAD_PREVIEW_CHARS]}",
            "Include: what changed, key files, why it matters.",
            "Skip boilerplate.",
        ]
    )


def build_summary_prompt(task_prompt: str, snippets: list[str]) -> str:
    lines = "\n".join(f"{i}. {snippet}" for i, snippet in enumerate(snippets, start=1))
    return "\n".join(
        [
            "Summarize the session in 3-4 sentences (no bullets).",
            f"User goal: {task_prompt}",
            "Actions:",
            lines,
            "Cover accomplishments, key files, decisions, and learnings.",
        ]
    )


class MockClient:
    """Deterministic stand-in for offline use and tests."""

    async def compress(
        self, function_name: str, function_args: str | None = None, function_result: str | None = None
    ) -> str:
        return mock_compress(function_name, function_args or "", function_result or "")

    async def summarize(self, task_prompt: str, snippets: list[str]) -> str:
        return mock_summarize(task_prompt, snippets)


def mock_compress(function_name: str, function_args: str, function_result: str) -> str:
    return (
        f"MOCK: {function_name} -> {function_args[:MOCK_PREVIEW_CHARS]}"
        f" | result: {function_result[:MOCK_PREVIEW_CHARS]}"
    )


def mock_summarize(task_prompt: str, snippets: list[str]) -> str:
    joined = " | ".join(snippets[:5])
    return f"MOCK SUMMARY: Goal={task_prompt}. Observations={joined}"


class OpenAIClient:
    """Chat-completions client for any OpenAI-compatible endpoint.

    A rate-limit response is retried once after a fixed backoff. Any failure
    left after that falls back to the mock answer when ``fallback_to_mock`` is
    set, otherwise it is raised as :class:`ExternalCallError`.
    """

    def __init__(
        self,
        settings: LLMSettings,
        client: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.model = settings.model
        self.client = client or openai.AsyncOpenAI(
            api_key=settings.api_key, base_url=settings.base_url
        )
        self._sleep = sleep

    async def compress(
        self, function_name: str, function_args: str | None = None, function_result: str | None = None
    ) -> str:
        args = function_args or ""
        result = function_result or ""
        prompt = build_compression_prompt(function_name, args, result)
        try:
            return await self._complete(prompt, temperature=0.2, max_tokens=200)
        except Exception as exc:
            return self._fallback(exc, "compress", lambda: mock_compress(function_name, args, result))

    async def summarize(self, task_prompt: str, snippets: list[str]) -> str:
        prompt = build_summary_prompt(task_prompt, snippets)
        try:
            return await self._complete(prompt, temperature=0.3, max_tokens=350)
        except Exception as exc:
            return self._fallback(exc, "summarize", lambda: mock_summarize(task_prompt, snippets))

    async def _complete(self, prompt: str, temperature: float, max_tokens: int) -> str:
        try:
            return await self._create(prompt, temperature, max_tokens)
        except openai.RateLimitError:
            logger.warning(
                "summarization rate limited, retrying in %.0fs", self.settings.rate_limit_backoff
            )
            await self._sleep(self.settings.rate_limit_backoff)
            return await self._create(prompt, temperature, max_tokens)

    async def _create(self, prompt: str, temperature: float, max_tokens: int) -> str:
        resp = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return (resp.choices[0].message.content or "").strip()

    def _fallback(self, exc: Exception, operation: str, mock: Callable[[], str]) -> str:
        if not self.settings.fallback_to_mock:
            raise ExternalCallError(f"{operation} call failed: {exc}") from exc
        logger.warning("%s call failed, using mock answer", operation, exc_info=exc)
        return mock()


def make_client(settings: LLMSettings) -> SummarizationClient:
    """Pick the client implementation once, at construction time."""
    if settings.mock:
        logger.info("using mock summarization client")
        return MockClient()
    if not settings.api_key:
        if settings.fallback_to_mock:
            logger.warning("no API key configured, using mock summarization client")
            return MockClient()
        raise ExternalCallError("no API key configured (set SESSIONMEM_API_KEY or OPENAI_API_KEY)")
    return OpenAIClient(settings)
