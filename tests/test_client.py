"""Tests for summarization clients."""

from types import SimpleNamespace

import httpx
import openai
import pytest

from sessionmem.config import LLMSettings, load_llm_settings
from sessionmem.errors import ExternalCallError
from sessionmem.llm.client import (
    MockClient,
    OpenAIClient,
    build_compression_prompt,
    build_summary_prompt,
    make_client,
)


def rate_limit_error():
    request = httpx.Request("POST", "https://api.example.test/v1/chat/completions")
    response = httpx.Response(429, request=request)
    return openai.RateLimitError("rate limited", response=response, body=None)


def completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return completion(outcome)


def fake_openai(*outcomes):
    completions = FakeCompletions(outcomes)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestPrompts:
    def test_compression_prompt_truncates_payload(self):
        prompt = build_compression_prompt("write_file", "a" * 5000, "b" * 5000)
        assert "Function: write_file" in prompt
        assert "a" * 1500 in prompt
        assert "a" * 1501 not in prompt

    def test_summary_prompt_numbers_snippets(self):
        prompt = build_summary_prompt("fix bug", ["first", "second"])
        assert "User goal: fix bug" in prompt
        assert "1. first\n2. second" in prompt


class TestMockClient:
    @pytest.mark.asyncio
    async def test_compress(self):
        text = await MockClient().compress("write_file", '{"path": "a.ts"}', None)
        assert text == 'MOCK: write_file -> {"path": "a.ts"} | result: '

    @pytest.mark.asyncio
    async def test_summarize(self):
        text = await MockClient().summarize("fix bug", [f"s{i}" for i in range(8)])
        assert text == "MOCK SUMMARY: Goal=fix bug. Observations=s0 | s1 | s2 | s3 | s4"


class TestOpenAIClient:
    @pytest.mark.asyncio
    async def test_summarize(self):
        fake, completions = fake_openai("  A thorough summary.  ")
        client = OpenAIClient(LLMSettings(model="test-model"), client=fake)

        assert await client.summarize("fix bug", ["did things"]) == "A thorough summary."
        request = completions.requests[0]
        assert request["model"] == "test-model"
        assert request["max_tokens"] == 350
        assert "User goal: fix bug" in request["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_rate_limit_retried_once(self):
        fake, completions = fake_openai(rate_limit_error(), "compressed")
        sleep = RecordingSleep()
        client = OpenAIClient(LLMSettings(), client=fake, sleep=sleep)

        assert await client.compress("write_file", "{}", "{}") == "compressed"
        assert sleep.delays == [60.0]
        assert len(completions.requests) == 2

    @pytest.mark.asyncio
    async def test_second_rate_limit_falls_back_to_mock(self):
        fake, completions = fake_openai(rate_limit_error(), rate_limit_error())
        sleep = RecordingSleep()
        client = OpenAIClient(LLMSettings(), client=fake, sleep=sleep)

        text = await client.summarize("fix bug", ["did things"])
        assert text.startswith("MOCK SUMMARY: Goal=fix bug.")
        assert len(completions.requests) == 2
        assert sleep.delays == [60.0]

    @pytest.mark.asyncio
    async def test_error_falls_back_without_retry(self):
        fake, completions = fake_openai(RuntimeError("boom"))
        sleep = RecordingSleep()
        client = OpenAIClient(LLMSettings(), client=fake, sleep=sleep)

        assert (await client.compress("edit", "x", "y")).startswith("MOCK: edit")
        assert sleep.delays == []
        assert len(completions.requests) == 1

    @pytest.mark.asyncio
    async def test_error_raised_when_fallback_disabled(self):
        fake, _ = fake_openai(RuntimeError("boom"))
        client = OpenAIClient(LLMSettings(fallback_to_mock=False), client=fake)

        with pytest.raises(ExternalCallError):
            await client.summarize("fix bug", [])


class TestMakeClient:
    def test_mock_selected(self):
        assert isinstance(make_client(LLMSettings(mock=True, api_key="k")), MockClient)

    def test_missing_key_falls_back(self):
        assert isinstance(make_client(LLMSettings(api_key=None)), MockClient)

    def test_missing_key_without_fallback(self):
        with pytest.raises(ExternalCallError):
            make_client(LLMSettings(api_key=None, fallback_to_mock=False))

    def test_real_client(self):
        client = make_client(LLMSettings(api_key="sk-test", base_url="https://llm.example.test/v1"))
        assert isinstance(client, OpenAIClient)

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("SESSIONMEM_MOCK_LLM", "1")
        monkeypatch.setenv("SESSIONMEM_LLM_FALLBACK", "0")
        monkeypatch.setenv("SESSIONMEM_MODEL", "local-model")
        monkeypatch.delenv("SESSIONMEM_API_KEY", raising=False)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

        settings = load_llm_settings()
        assert settings.mock is True
        assert settings.fallback_to_mock is False
        assert settings.model == "local-model"
        assert settings.api_key == "sk-env"
