"""Text-completion gateway backed by Anthropic, with optional OpenAI fallback."""

import json
import logging
import os
from typing import Any, AsyncIterator, Callable, Literal, Protocol, runtime_checkable

from anthropic import AsyncAnthropic
import openai

from repo_autoedit.gateways.exceptions import CompletionError, GenerationError

logger = logging.getLogger(__name__)

# Constants
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
OPENAI_FALLBACK_MODEL = "gpt-4o-mini"
MAX_API_TOKENS = 8192
STRUCTURED_TOOL_NAME = "submit_structured_response"

FragmentCallback = Callable[[str], None]


@runtime_checkable
class CompletionGateway(Protocol):
    """Operations the orchestrator consumes from a text-completion API."""

    async def complete(self, prompt: str) -> str: ...

    def stream(self, prompt: str) -> AsyncIterator[str]: ...

    async def complete_streaming(self, prompt: str, on_fragment: FragmentCallback) -> str: ...

    async def complete_structured(self, prompt: str, schema: dict[str, Any]) -> dict[str, Any]: ...


async def drain_stream(fragments: AsyncIterator[str], on_fragment: FragmentCallback) -> str:
    """Consume a fragment stream in delivery order.

    Calls ``on_fragment`` once per fragment and returns the concatenation.
    """
    parts: list[str] = []
    async for fragment in fragments:
        parts.append(fragment)
        on_fragment(fragment)
    return "".join(parts)


class LLMCompletionGateway:
    """CompletionGateway over the Anthropic and OpenAI async clients."""

    def __init__(
        self,
        api_key: str | None = None,
        openai_api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        llm_provider: str = "auto",
        llm_fallback_provider: str | None = None,
        allow_fallback: bool = False,
        max_tokens: int = MAX_API_TOKENS,
    ) -> None:
        """Initialize the gateway.

        Args:
            api_key: Anthropic API key. Falls back to ANTHROPIC_API_KEY env var.
            openai_api_key: OpenAI API key. Falls back to OPENAI_API_KEY env var.
            model: Model ID used for every call.
            llm_provider: "auto", "anthropic" or "openai".
            llm_fallback_provider: Provider to try when the primary fails.
            allow_fallback: Whether the fallback provider may be used at all.
            max_tokens: Response token cap per call.

        Raises:
            CompletionError: If no API key is found.
        """
        self.model: str = model
        self.max_tokens: int = max_tokens
        self.api_key: str | None = (
            api_key
            or os.getenv("ANTHROPIC_API_KEY")
            or os.getenv("CLAUDE_CODE_OAUTH_TOKEN")
        )
        self.openai_api_key: str | None = openai_api_key or os.getenv("OPENAI_API_KEY")
        self.llm_provider: Literal["anthropic", "openai", "auto"] = "auto"
        self.llm_fallback_provider: str | None = None
        self.allow_fallback: bool = False
        self._anthropic_client: AsyncAnthropic | None = None
        self._openai_client: openai.AsyncOpenAI | None = None

        if self.api_key:
            self._anthropic_client = AsyncAnthropic(api_key=self.api_key)
        if self.openai_api_key:
            self._openai_client = openai.AsyncOpenAI(api_key=self.openai_api_key)

        if not (self._anthropic_client or self._openai_client):
            raise CompletionError(
                "No Anthropic or OpenAI API key found. "
                "Provide via parameter, ANTHROPIC_API_KEY, CLAUDE_CODE_OAUTH_TOKEN, "
                "or OPENAI_API_KEY env vars."
            )
        self.set_provider_config(
            llm_provider=llm_provider,
            llm_fallback_provider=llm_fallback_provider,
            allow_fallback=allow_fallback,
        )

    def _normalize_provider(
        self,
        value: str,
    ) -> Literal["anthropic", "openai", "auto"]:
        if value not in {"auto", "anthropic", "openai"}:
            raise CompletionError(f"Unsupported provider: {value}")
        return value

    def set_provider_config(
        self,
        llm_provider: str = "auto",
        llm_fallback_provider: str | None = None,
        allow_fallback: bool = False,
    ) -> None:
        self.llm_provider = self._normalize_provider(llm_provider)
        self.llm_fallback_provider = (
            self._normalize_provider(llm_fallback_provider)
            if llm_fallback_provider
            else None
        )
        self.allow_fallback = bool(allow_fallback)

        if self.llm_provider == "anthropic" and self._anthropic_client is None:
            raise CompletionError("No Anthropic API key found for --llm-provider=anthropic.")
        if self.llm_provider == "openai" and self._openai_client is None:
            raise CompletionError("No OpenAI API key found for --llm-provider=openai.")
        if self.allow_fallback and self.llm_fallback_provider:
            if self.llm_fallback_provider == "anthropic" and self._anthropic_client is None:
                raise CompletionError(
                    "Fallback provider requested as anthropic but ANTHROPIC_API_KEY is not set."
                )
            if self.llm_fallback_provider == "openai" and self._openai_client is None:
                raise CompletionError(
                    "Fallback provider requested as openai but OPENAI_API_KEY is not set."
                )

    def _primary_provider(self) -> Literal["anthropic", "openai"]:
        if self.llm_provider == "auto":
            if self._anthropic_client is not None:
                return "anthropic"
            return "openai"
        return self.llm_provider

    def _resolve_model(self, provider: str) -> str:
        if provider == "openai" and self.model.startswith("claude-"):
            return OPENAI_FALLBACK_MODEL
        return self.model

    def _provider_chain(self) -> list[str]:
        chain: list[str] = [self._primary_provider()]
        if self.allow_fallback and self.llm_fallback_provider:
            fallback = self.llm_fallback_provider
            if fallback != chain[0]:
                chain.append(fallback)
        return chain

    def _can_fall_back(self, index: int, chain: list[str], error: Exception) -> bool:
        if index >= len(chain) - 1:
            return False
        logger.warning(
            "Completion call via %s failed with %s: %s; falling back to %s",
            chain[index],
            type(error).__name__,
            error,
            chain[index + 1],
        )
        return True

    def _get_openai_tool_schema(self, schema: dict[str, Any]) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": schema["name"],
                "description": schema.get("description", ""),
                "parameters": schema.get("input_schema", {}),
            },
        }

    async def complete(self, prompt: str) -> str:
        """Return a single completed text for ``prompt``.

        Raises:
            GenerationError: If every provider in the chain fails.
        """
        chain = self._provider_chain()
        for index, provider in enumerate(chain):
            try:
                if provider == "anthropic":
                    response = await self._anthropic().messages.create(
                        model=self._resolve_model("anthropic"),
                        max_tokens=self.max_tokens,
                        messages=[{"role": "user", "content": prompt}],
                    )
                    return "".join(
                        block.text for block in response.content if block.type == "text"
                    )
                response = await self._openai().chat.completions.create(
                    model=self._resolve_model("openai"),
                    max_tokens=self.max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                )
                return response.choices[0].message.content or ""
            except Exception as error:
                if not self._can_fall_back(index, chain, error):
                    raise GenerationError(f"AI request failed: {error}") from error
        raise GenerationError("AI request failed: no provider available")

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        """Yield completion fragments in delivery order.

        A provider is only abandoned for the fallback if it failed before
        delivering its first fragment.

        Raises:
            GenerationError: If the stream cannot be produced or breaks midway.
        """
        chain = self._provider_chain()
        for index, provider in enumerate(chain):
            delivered = False
            try:
                async for fragment in self._stream_provider(provider, prompt):
                    delivered = True
                    yield fragment
                return
            except Exception as error:
                if delivered or not self._can_fall_back(index, chain, error):
                    raise GenerationError(f"AI request failed: {error}") from error

    async def _stream_provider(self, provider: str, prompt: str) -> AsyncIterator[str]:
        if provider == "anthropic":
            async with self._anthropic().messages.stream(
                model=self._resolve_model("anthropic"),
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            ) as response_stream:
                async for text in response_stream.text_stream:
                    if text:
                        yield text
            return

        response = await self._openai().chat.completions.create(
            model=self._resolve_model("openai"),
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
            stream=True,
        )
        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta

    async def complete_streaming(self, prompt: str, on_fragment: FragmentCallback) -> str:
        return await drain_stream(self.stream(prompt), on_fragment)

    async def complete_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        tool_name: str = STRUCTURED_TOOL_NAME,
    ) -> dict[str, Any]:
        """Return a mapping shaped by ``schema`` using a forced tool call.

        Args:
            prompt: The planning prompt.
            schema: JSON schema for the tool input.
            tool_name: Name of the forced tool.

        Returns:
            The raw tool input mapping. Callers validate its shape.

        Raises:
            GenerationError: If no provider returns a tool call.
        """
        tool_schema = {
            "name": tool_name,
            "description": "Submit the structured response",
            "input_schema": schema,
        }
        chain = self._provider_chain()
        for index, provider in enumerate(chain):
            try:
                if provider == "anthropic":
                    response = await self._anthropic().messages.create(
                        model=self._resolve_model("anthropic"),
                        max_tokens=self.max_tokens,
                        tools=[tool_schema],
                        tool_choice={"type": "tool", "name": tool_name},
                        messages=[{"role": "user", "content": prompt}],
                    )
                    return self._parse_anthropic_tool_payload(response, tool_name)
                response = await self._openai().chat.completions.create(
                    model=self._resolve_model("openai"),
                    max_tokens=self.max_tokens,
                    tools=[self._get_openai_tool_schema(tool_schema)],
                    tool_choice={"type": "function", "function": {"name": tool_name}},
                    messages=[{"role": "user", "content": prompt}],
                )
                return self._parse_openai_tool_payload(response)
            except Exception as error:
                if not self._can_fall_back(index, chain, error):
                    if isinstance(error, GenerationError):
                        raise
                    raise GenerationError(f"AI request failed: {error}") from error
        raise GenerationError("AI request failed: no provider available")

    def _parse_anthropic_tool_payload(self, response: Any, tool_name: str) -> dict[str, Any]:
        for block in response.content:
            if block.type == "tool_use" and block.name == tool_name:
                if not isinstance(block.input, dict):
                    raise GenerationError("Tool input was not a JSON object")
                return block.input
        raise GenerationError("No tool_use block found in Claude response")

    def _parse_openai_tool_payload(self, response: Any) -> dict[str, Any]:
        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None)
        if not tool_calls:
            raise GenerationError("No tool call found in OpenAI response")
        call = tool_calls[0]
        if getattr(call, "type", "function") != "function":
            raise GenerationError("OpenAI tool call type is not function")
        try:
            args = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError as exc:
            raise GenerationError(f"OpenAI tool arguments were not valid JSON: {exc}") from exc
        if not isinstance(args, dict):
            raise GenerationError("OpenAI tool arguments were not a valid JSON object")
        return args

    def _anthropic(self) -> AsyncAnthropic:
        if self._anthropic_client is None:
            raise GenerationError("Anthropic client unavailable")
        return self._anthropic_client

    def _openai(self) -> openai.AsyncOpenAI:
        if self._openai_client is None:
            raise GenerationError("OpenAI client unavailable")
        return self._openai_client
