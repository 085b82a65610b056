"""Tests for LLMCompletionGateway."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from repo_autoedit.gateways.completion import (
    OPENAI_FALLBACK_MODEL,
    STRUCTURED_TOOL_NAME,
    CompletionGateway,
    LLMCompletionGateway,
    drain_stream,
)
from repo_autoedit.gateways.exceptions import CompletionError, GenerationError


@pytest.fixture(autouse=True)
def no_env_keys(monkeypatch):
    for name in ("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)


class FakeAnthropicStream:
    """Async context manager mimicking ``messages.stream``."""

    def __init__(self, fragments=(), error: Exception | None = None):
        self.fragments = list(fragments)
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    def text_stream(self):
        async def generate():
            for fragment in self.fragments:
                yield fragment
            if self.error is not None:
                raise self.error

        return generate()


def openai_chunks(*fragments):
    async def generate():
        for fragment in fragments:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=fragment))])

    return generate()


def make_gateway(anthropic: bool = True, use_openai: bool = False, **kwargs) -> LLMCompletionGateway:
    gateway = LLMCompletionGateway(
        api_key="sk-ant-test" if anthropic else None,
        openai_api_key="sk-test" if use_openai else None,
        **kwargs,
    )
    if anthropic:
        gateway._anthropic_client = MagicMock()
    if use_openai:
        gateway._openai_client = MagicMock()
    return gateway


def collect(gateway: LLMCompletionGateway, prompt: str = "p") -> list[str]:
    async def run():
        return [fragment async for fragment in gateway.stream(prompt)]

    return asyncio.run(run())


class TestConfiguration:
    def test_missing_keys_raise(self):
        with pytest.raises(CompletionError, match="No Anthropic or OpenAI API key"):
            LLMCompletionGateway()

    def test_env_key_is_used(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-env")
        gateway = LLMCompletionGateway()
        assert gateway.api_key == "sk-ant-env"
        assert gateway._primary_provider() == "anthropic"

    def test_openai_only_is_primary_in_auto_mode(self):
        gateway = make_gateway(anthropic=False, use_openai=True)
        assert gateway._provider_chain() == ["openai"]
        assert gateway._resolve_model("openai") == OPENAI_FALLBACK_MODEL

    def test_forced_provider_requires_its_key(self):
        with pytest.raises(CompletionError, match="--llm-provider=openai"):
            make_gateway(llm_provider="openai")

    def test_fallback_provider_requires_its_key(self):
        with pytest.raises(CompletionError, match="OPENAI_API_KEY is not set"):
            make_gateway(llm_fallback_provider="openai", allow_fallback=True)

    def test_unsupported_provider(self):
        with pytest.raises(CompletionError, match="Unsupported provider"):
            make_gateway(llm_provider="gemini")

    def test_fallback_only_when_allowed(self):
        gateway = make_gateway(use_openai=True, llm_fallback_provider="openai")
        assert gateway._provider_chain() == ["anthropic"]
        gateway.set_provider_config(llm_fallback_provider="openai", allow_fallback=True)
        assert gateway._provider_chain() == ["anthropic", "openai"]

    def test_satisfies_protocol(self):
        assert isinstance(make_gateway(), CompletionGateway)


class TestStreaming:
    def test_fragments_arrive_in_order(self):
        gateway = make_gateway()
        gateway._anthropic_client.messages.stream.return_value = FakeAnthropicStream(
            ["const ", "", "a = 1;"]
        )

        assert collect(gateway) == ["const ", "a = 1;"]
        kwargs = gateway._anthropic_client.messages.stream.call_args.kwargs
        assert kwargs["messages"] == [{"role": "user", "content": "p"}]

    def test_falls_back_before_first_fragment(self):
        gateway = make_gateway(use_openai=True, llm_fallback_provider="openai", allow_fallback=True)
        gateway._anthropic_client.messages.stream.return_value = FakeAnthropicStream(
            error=ConnectionError("overloaded")
        )
        gateway._openai_client.chat.completions.create = AsyncMock(
            return_value=openai_chunks("from ", None, "openai")
        )

        assert collect(gateway) == ["from ", "openai"]
        kwargs = gateway._openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["model"] == OPENAI_FALLBACK_MODEL

    def test_no_fallback_after_first_fragment(self):
        gateway = make_gateway(use_openai=True, llm_fallback_provider="openai", allow_fallback=True)
        gateway._anthropic_client.messages.stream.return_value = FakeAnthropicStream(
            ["partial"], error=ConnectionError("reset")
        )
        gateway._openai_client.chat.completions.create = AsyncMock()

        received = []

        async def run():
            async for fragment in gateway.stream("p"):
                received.append(fragment)

        with pytest.raises(GenerationError, match="reset"):
            asyncio.run(run())
        assert received == ["partial"]
        gateway._openai_client.chat.completions.create.assert_not_awaited()

    def test_failure_without_fallback(self):
        gateway = make_gateway()
        gateway._anthropic_client.messages.stream.return_value = FakeAnthropicStream(
            error=ConnectionError("down")
        )
        with pytest.raises(GenerationError, match="AI request failed: down"):
            collect(gateway)

    def test_complete_streaming_reports_each_fragment(self):
        gateway = make_gateway()
        gateway._anthropic_client.messages.stream.return_value = FakeAnthropicStream(["a", "b"])
        seen = []

        text = asyncio.run(gateway.complete_streaming("p", seen.append))

        assert text == "ab"
        assert seen == ["a", "b"]


def test_drain_stream():
    async def fragments():
        for part in ("x", "y", "z"):
            yield part

    seen = []
    assert asyncio.run(drain_stream(fragments(), seen.append)) == "xyz"
    assert seen == ["x", "y", "z"]


class TestComplete:
    def test_joins_text_blocks(self):
        gateway = make_gateway()
        gateway._anthropic_client.messages.create = AsyncMock(
            return_value=SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="hello "),
                    SimpleNamespace(type="text", text="world"),
                ]
            )
        )
        assert asyncio.run(gateway.complete("p")) == "hello world"

    def test_openai_completion(self):
        gateway = make_gateway(anthropic=False, use_openai=True)
        gateway._openai_client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content="done"))]
            )
        )
        assert asyncio.run(gateway.complete("p")) == "done"


class TestStructured:
    SCHEMA = {"type": "object", "properties": {"files": {"type": "array"}}}

    def test_anthropic_tool_input_is_returned(self):
        gateway = make_gateway()
        gateway._anthropic_client.messages.create = AsyncMock(
            return_value=SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="thinking"),
                    SimpleNamespace(type="tool_use", name=STRUCTURED_TOOL_NAME, input={"files": []}),
                ]
            )
        )

        payload = asyncio.run(gateway.complete_structured("plan", self.SCHEMA))

        assert payload == {"files": []}
        kwargs = gateway._anthropic_client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": STRUCTURED_TOOL_NAME}
        assert kwargs["tools"][0]["input_schema"] == self.SCHEMA

    def test_missing_tool_block(self):
        gateway = make_gateway()
        gateway._anthropic_client.messages.create = AsyncMock(
            return_value=SimpleNamespace(content=[SimpleNamespace(type="text", text="sorry")])
        )
        with pytest.raises(GenerationError, match="No tool_use block"):
            asyncio.run(gateway.complete_structured("plan", self.SCHEMA))

    def test_openai_tool_arguments_are_parsed(self):
        gateway = make_gateway(anthropic=False, use_openai=True)
        call = SimpleNamespace(
            type="function",
            function=SimpleNamespace(arguments=json.dumps({"files": [{"filePath": "a.ts"}]})),
        )
        gateway._openai_client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[call]))]
            )
        )

        payload = asyncio.run(gateway.complete_structured("plan", self.SCHEMA))

        assert payload == {"files": [{"filePath": "a.ts"}]}
        tools = gateway._openai_client.chat.completions.create.call_args.kwargs["tools"]
        assert tools[0]["function"]["parameters"] == self.SCHEMA

    def test_openai_invalid_json(self):
        gateway = make_gateway(anthropic=False, use_openai=True)
        call = SimpleNamespace(type="function", function=SimpleNamespace(arguments="{not json"))
        gateway._openai_client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[call]))]
            )
        )
        with pytest.raises(GenerationError, match="not valid JSON"):
            asyncio.run(gateway.complete_structured("plan", self.SCHEMA))

    def test_structured_fallback(self):
        gateway = make_gateway(use_openai=True, llm_fallback_provider="openai", allow_fallback=True)
        gateway._anthropic_client.messages.create = AsyncMock(side_effect=TimeoutError("slow"))
        call = SimpleNamespace(type="function", function=SimpleNamespace(arguments='{"files": []}'))
        gateway._openai_client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[call]))]
            )
        )

        assert asyncio.run(gateway.complete_structured("plan", self.SCHEMA)) == {"files": []}
