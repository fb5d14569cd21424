"""Language-model adapters: Claude (Anthropic), OpenAI chat completions and local Ollama."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import anthropic
import httpx
import openai
from anthropic import AsyncAnthropic
from anthropic.types import TextBlock, ToolUseBlock
from openai import AsyncOpenAI

from src.capabilities import ChatMessage, LLMProvider, ToolCall, ToolTurn
from src.config import Settings
from src.pipeline_config import LLMProviderName

DEFAULT_MAX_TOKENS = 1024


def _split_system(
    messages: list[ChatMessage], system_prompt: str | None
) -> tuple[str | None, list[dict[str, Any]]]:
    """Anthropic takes the system prompt out of band; an explicit one wins."""
    system = system_prompt or next(
        (m["content"] for m in messages if m["role"] == "system"), None
    )
    rest = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
    return system, rest


def _prepend_system(
    messages: list[ChatMessage], system_prompt: str | None
) -> list[dict[str, Any]]:
    """Inline system prompt for OpenAI and Ollama; an explicit one replaces inline ones."""
    rest = [dict(m) for m in messages if not (system_prompt and m["role"] == "system")]
    if system_prompt:
        return [{"role": "system", "content": system_prompt}, *rest]
    return rest


class ClaudeLLM:
    """Claude via the Messages API, with native tool calling."""

    name = "claude"

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-20250514") -> None:
        self._client = AsyncAnthropic(api_key=api_key)
        self._model = model

    async def is_available(self) -> bool:
        """True when the API accepts the key; listing models costs no tokens."""
        try:
            await self._client.models.list(limit=1)
        except anthropic.APIError:
            return False
        return True

    def _request(
        self,
        messages: list[dict[str, Any]],
        *,
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system
        if temperature is not None:
            kwargs["temperature"] = temperature
        if stop_sequences:
            kwargs["stop_sequences"] = stop_sequences
        return kwargs

    async def _complete(self, kwargs: dict[str, Any]) -> str:
        response = await self._client.messages.create(**kwargs)
        return "".join(block.text for block in response.content if isinstance(block, TextBlock))

    async def _stream(self, kwargs: dict[str, Any]) -> AsyncIterator[str]:
        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield text

    async def generate(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> str:
        return await self._complete(
            self._request(
                [{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
                stop_sequences=stop_sequences,
            )
        )

    async def generate_stream(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> AsyncIterator[str]:
        kwargs = self._request(
            [{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
            stop_sequences=stop_sequences,
        )
        async for text in self._stream(kwargs):
            yield text

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        system, rest = _split_system(messages, system_prompt)
        return await self._complete(
            self._request(rest, system=system, max_tokens=max_tokens, temperature=temperature)
        )

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        system, rest = _split_system(messages, system_prompt)
        kwargs = self._request(rest, system=system, max_tokens=max_tokens, temperature=temperature)
        async for text in self._stream(kwargs):
            yield text

    async def chat_with_tools(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ToolTurn:
        """One model turn with ``tools`` available.

        Tool definitions use Anthropic's ``name`` / ``description`` /
        ``input_schema`` shape.
        """
        kwargs = self._request(
            messages, system=system_prompt, max_tokens=max_tokens, temperature=temperature
        )
        kwargs["tools"] = tools
        response = await self._client.messages.create(**kwargs)

        text_parts: list[str] = []
        calls: list[ToolCall] = []
        content: list[dict[str, Any]] = []
        for block in response.content:
            if isinstance(block, TextBlock):
                text_parts.append(block.text)
                content.append({"type": "text", "text": block.text})
            elif isinstance(block, ToolUseBlock):
                arguments = block.input if isinstance(block.input, dict) else {}
                calls.append(ToolCall(id=block.id, name=block.name, arguments=arguments))
                content.append(
                    {"type": "tool_use", "id": block.id, "name": block.name, "input": arguments}
                )

        return ToolTurn(
            text="".join(text_parts),
            tool_calls=calls,
            assistant_message={"role": "assistant", "content": content},
        )

    def tool_results_message(self, results: list[tuple[ToolCall, str]]) -> dict[str, Any]:
        return {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": call.id, "content": output}
                for call, output in results
            ],
        }


class OpenAILLM:
    """OpenAI chat completions."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini") -> None:
        self._client = AsyncOpenAI(api_key=api_key)
        self._model = model

    async def is_available(self) -> bool:
        try:
            await self._client.models.list()
        except openai.APIError:
            return False
        return True

    def _request(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if stop_sequences:
            # The API accepts at most four stop sequences.
            kwargs["stop"] = stop_sequences[:4]
        return kwargs

    async def _complete(self, kwargs: dict[str, Any]) -> str:
        response = await self._client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""

    async def _stream(self, kwargs: dict[str, Any]) -> AsyncIterator[str]:
        stream = await self._client.chat.completions.create(**kwargs, stream=True)
        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    async def generate(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> str:
        return await self._complete(
            self._request(
                [{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
                stop_sequences=stop_sequences,
            )
        )

    async def generate_stream(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> AsyncIterator[str]:
        kwargs = self._request(
            [{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
            stop_sequences=stop_sequences,
        )
        async for text in self._stream(kwargs):
            yield text

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        return await self._complete(
            self._request(
                _prepend_system(messages, system_prompt),
                max_tokens=max_tokens,
                temperature=temperature,
            )
        )

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        kwargs = self._request(
            _prepend_system(messages, system_prompt),
            max_tokens=max_tokens,
            temperature=temperature,
        )
        async for text in self._stream(kwargs):
            yield text


class OllamaError(httpx.HTTPError):
    """An error reported by Ollama inside a streamed response."""


class OllamaLLM:
    """Local models served by Ollama's REST API (``/api/generate``, ``/api/chat``).

    Responses stream as newline-delimited JSON objects.
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "mistral",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._model = model

    @staticmethod
    def _options(
        max_tokens: int | None, temperature: float | None, stop_sequences: list[str] | None = None
    ) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if max_tokens:
            options["num_predict"] = max_tokens
        if temperature is not None:
            options["temperature"] = temperature
        if stop_sequences:
            options["stop"] = stop_sequences
        return options

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(path, json={**payload, "stream": False})
        response.raise_for_status()
        return response.json()

    async def _stream(self, path: str, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        async with self._client.stream("POST", path, json={**payload, "stream": True}) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                event = json.loads(line)
                if event.get("error"):
                    raise OllamaError(event["error"])
                yield event

    async def is_available(self) -> bool:
        """True when the server answers ``/api/tags``."""
        try:
            response = await self._client.get("/api/tags")
            response.raise_for_status()
        except httpx.HTTPError:
            return False
        return True

    async def generate(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> str:
        data = await self._post(
            "/api/generate",
            {
                "model": self._model,
                "prompt": prompt,
                "options": self._options(max_tokens, temperature, stop_sequences),
            },
        )
        return data.get("response", "")

    async def generate_stream(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> AsyncIterator[str]:
        payload = {
            "model": self._model,
            "prompt": prompt,
            "options": self._options(max_tokens, temperature, stop_sequences),
        }
        async for event in self._stream("/api/generate", payload):
            if event.get("response"):
                yield event["response"]

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        data = await self._post(
            "/api/chat",
            {
                "model": self._model,
                "messages": _prepend_system(messages, system_prompt),
                "options": self._options(max_tokens, temperature),
            },
        )
        return data.get("message", {}).get("content", "")

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        payload = {
            "model": self._model,
            "messages": _prepend_system(messages, system_prompt),
            "options": self._options(max_tokens, temperature),
        }
        async for event in self._stream("/api/chat", payload):
            content = event.get("message", {}).get("content")
            if content:
                yield content


def create_llm(settings: Settings) -> LLMProvider:
    """Build the configured language model.

    Raises:
        ValueError: If the selected provider has no API key configured.
    """
    if settings.llm_provider == LLMProviderName.OLLAMA:
        return OllamaLLM(
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            timeout=settings.ollama_timeout,
        )

    if settings.llm_provider == LLMProviderName.OPENAI:
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        return OpenAILLM(api_key=settings.openai_api_key, model=settings.openai_llm_model)

    if not settings.anthropic_api_key:
        raise ValueError("ANTHROPIC_API_KEY is required when LLM_PROVIDER=claude")
    return ClaudeLLM(api_key=settings.anthropic_api_key, model=settings.llm_model)
