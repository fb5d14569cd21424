"""Tests for the Claude, OpenAI and Ollama adapters with mocked clients."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest
from anthropic.types import TextBlock, ToolUseBlock

from src.capabilities import ToolCall, ToolCallingLLM
from src.ingestion.embeddings import OllamaEmbedder
from src.retrieval.llm import ClaudeLLM, OllamaError, OllamaLLM, OpenAILLM


class FakeMessageStream:
    """Stand-in for the object returned by ``AsyncAnthropic.messages.stream``."""

    def __init__(self, texts: list[str]) -> None:
        self._texts = texts

    async def __aenter__(self) -> FakeMessageStream:
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    @property
    def text_stream(self):
        async def gen():
            for text in self._texts:
                yield text

        return gen()


def _api_error(cls: type[Exception]) -> Exception:
    return cls(request=httpx.Request("GET", "https://api.example.test/v1/models"))


def _claude(content: list) -> ClaudeLLM:
    llm = ClaudeLLM(api_key="sk-ant-test", model="claude-test")
    llm._client = MagicMock()
    llm._client.messages.create = AsyncMock(return_value=MagicMock(content=content))
    return llm


def _openai_completion(text: str | None) -> MagicMock:
    return MagicMock(choices=[MagicMock(message=MagicMock(content=text))])


def _openai(response) -> OpenAILLM:
    llm = OpenAILLM(api_key="sk-test", model="gpt-test")
    llm._client = MagicMock()
    llm._client.chat.completions.create = AsyncMock(return_value=response)
    return llm


class TestClaude:
    def test_supports_native_tools(self) -> None:
        assert isinstance(ClaudeLLM(api_key="sk-ant-test"), ToolCallingLLM)

    @pytest.mark.asyncio
    async def test_generate_request(self) -> None:
        llm = _claude([TextBlock(type="text", text="Hello "), TextBlock(type="text", text="there")])
        answer = await llm.generate("Hi", stop_sequences=["\nObservation:"])

        assert answer == "Hello there"
        kwargs = llm._client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["max_tokens"] == 1024
        assert kwargs["messages"] == [{"role": "user", "content": "Hi"}]
        assert kwargs["stop_sequences"] == ["\nObservation:"]
        assert "temperature" not in kwargs
        assert "system" not in kwargs

    @pytest.mark.asyncio
    async def test_chat_moves_system_prompt_out_of_band(self) -> None:
        llm = _claude([TextBlock(type="text", text="ok")])
        await llm.chat(
            [
                {"role": "system", "content": "inline system"},
                {"role": "user", "content": "Question"},
            ],
            system_prompt="explicit system",
            max_tokens=200,
            temperature=0.2,
        )
        kwargs = llm._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "explicit system"
        assert kwargs["messages"] == [{"role": "user", "content": "Question"}]
        assert kwargs["max_tokens"] == 200
        assert kwargs["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_inline_system_message_is_used(self) -> None:
        llm = _claude([TextBlock(type="text", text="ok")])
        await llm.chat(
            [{"role": "system", "content": "inline"}, {"role": "user", "content": "Q"}]
        )
        assert llm._client.messages.create.call_args.kwargs["system"] == "inline"

    @pytest.mark.asyncio
    async def test_chat_with_tools(self) -> None:
        llm = _claude(
            [
                TextBlock(type="text", text="Let me look."),
                ToolUseBlock(type="tool_use", id="tu_1", name="search", input={"query": "ski"}),
            ]
        )
        tools = [{"name": "search", "description": "d", "input_schema": {"type": "object"}}]
        turn = await llm.chat_with_tools(
            [{"role": "user", "content": "When?"}], tools, system_prompt="sys"
        )

        assert turn.text == "Let me look."
        assert turn.tool_calls == [ToolCall(id="tu_1", name="search", arguments={"query": "ski"})]
        assert turn.assistant_message == {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "id": "tu_1", "name": "search", "input": {"query": "ski"}},
            ],
        }
        kwargs = llm._client.messages.create.call_args.kwargs
        assert kwargs["tools"] == tools
        assert kwargs["system"] == "sys"

    def test_tool_results_message(self) -> None:
        llm = ClaudeLLM(api_key="sk-ant-test")
        message = llm.tool_results_message([(ToolCall("tu_1", "search", {}), "found it")])
        assert message == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "found it"}],
        }

    @pytest.mark.asyncio
    async def test_chat_stream(self) -> None:
        llm = ClaudeLLM(api_key="sk-ant-test")
        llm._client = MagicMock()
        llm._client.messages.stream = MagicMock(return_value=FakeMessageStream(["Sam", "edi"]))

        tokens = [t async for t in llm.chat_stream([{"role": "user", "content": "Quand ?"}])]
        assert tokens == ["Sam", "edi"]


class TestOpenAI:
    def test_no_native_tools(self) -> None:
        assert not isinstance(OpenAILLM(api_key="sk-test"), ToolCallingLLM)

    @pytest.mark.asyncio
    async def test_chat_prepends_system_prompt(self) -> None:
        llm = _openai(_openai_completion("Hi"))
        answer = await llm.chat(
            [{"role": "system", "content": "old"}, {"role": "user", "content": "Q"}],
            system_prompt="new",
        )

        assert answer == "Hi"
        kwargs = llm._client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"] == [
            {"role": "system", "content": "new"},
            {"role": "user", "content": "Q"},
        ]

    @pytest.mark.asyncio
    async def test_stop_sequences_are_capped(self) -> None:
        llm = _openai(_openai_completion(None))
        answer = await llm.generate("Q", stop_sequences=["a", "b", "c", "d", "e"])

        assert answer == ""
        assert llm._client.chat.completions.create.call_args.kwargs["stop"] == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_stream_skips_empty_deltas(self) -> None:
        def chunk(content):
            return MagicMock(choices=[MagicMock(delta=MagicMock(content=content))])

        async def events():
            yield chunk("Sam")
            yield chunk(None)
            yield MagicMock(choices=[])
            yield chunk("edi")

        llm = _openai(events())
        tokens = [t async for t in llm.generate_stream("Quand ?")]

        assert tokens == ["Sam", "edi"]
        assert llm._client.chat.completions.create.call_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_is_available(self) -> None:
        llm = _openai(_openai_completion("unused"))
        llm._client.models.list = AsyncMock(return_value=MagicMock(data=[]))
        assert await llm.is_available() is True

        llm._client.models.list = AsyncMock(side_effect=_api_error(openai.APIConnectionError))
        assert await llm.is_available() is False


class TestClaudeAvailability:
    @pytest.mark.asyncio
    async def test_is_available(self) -> None:
        llm = _claude([])
        llm._client.models.list = AsyncMock(return_value=MagicMock(data=[]))
        assert await llm.is_available() is True
        llm._client.models.list.assert_awaited_once_with(limit=1)

    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        llm = _claude([])
        llm._client.models.list = AsyncMock(side_effect=_api_error(anthropic.APIConnectionError))
        assert await llm.is_available() is False


# ---------------------------------------------------------------------------
# Ollama (HTTP API served by httpx.MockTransport)
# ---------------------------------------------------------------------------


class OllamaServer:
    """Records requests and answers them from a path -> response table."""

    def __init__(self, routes: dict[str, httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.routes.get(request.url.path, httpx.Response(404, json={"error": "not found"}))

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self), base_url="http://ollama.test"
        )


def _ndjson(*events: dict) -> httpx.Response:
    return httpx.Response(200, content="\n".join(json.dumps(e) for e in events).encode() + b"\n")


class TestOllama:
    def test_no_native_tools(self) -> None:
        assert not isinstance(OllamaLLM(), ToolCallingLLM)

    @pytest.mark.asyncio
    async def test_generate_request(self) -> None:
        server = OllamaServer({"/api/generate": httpx.Response(200, json={"response": "Paris"})})
        llm = OllamaLLM(model="mistral", client=server.client())

        answer = await llm.generate(
            "Where?", max_tokens=500, temperature=0.3, stop_sequences=["\nObservation:"]
        )

        assert answer == "Paris"
        assert server.body() == {
            "model": "mistral",
            "prompt": "Where?",
            "options": {"num_predict": 500, "temperature": 0.3, "stop": ["\nObservation:"]},
            "stream": False,
        }

    @pytest.mark.asyncio
    async def test_chat_prepends_system_prompt(self) -> None:
        server = OllamaServer(
            {"/api/chat": httpx.Response(200, json={"message": {"content": "Samedi"}})}
        )
        llm = OllamaLLM(client=server.client())

        answer = await llm.chat([{"role": "user", "content": "Quand ?"}], system_prompt="sys")

        assert answer == "Samedi"
        assert server.body()["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "Quand ?"},
        ]
        assert server.body()["options"] == {}

    @pytest.mark.asyncio
    async def test_chat_stream_reads_ndjson(self) -> None:
        server = OllamaServer(
            {
                "/api/chat": _ndjson(
                    {"message": {"content": "Sam"}, "done": False},
                    {"message": {"content": "edi"}, "done": False},
                    {"message": {"content": ""}, "done": True},
                )
            }
        )
        llm = OllamaLLM(client=server.client())

        tokens = [t async for t in llm.chat_stream([{"role": "user", "content": "Quand ?"}])]

        assert tokens == ["Sam", "edi"]
        assert server.body()["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_error_event_raises(self) -> None:
        server = OllamaServer(
            {"/api/generate": _ndjson({"response": "Sa"}, {"error": "model crashed"})}
        )
        llm = OllamaLLM(client=server.client())

        with pytest.raises(OllamaError, match="model crashed"):
            _ = [t async for t in llm.generate_stream("Quand ?")]

    @pytest.mark.asyncio
    async def test_http_error_raises(self) -> None:
        server = OllamaServer({"/api/generate": httpx.Response(404, json={"error": "no model"})})
        llm = OllamaLLM(client=server.client())

        with pytest.raises(httpx.HTTPStatusError):
            await llm.generate("Where?")

    @pytest.mark.asyncio
    async def test_is_available(self) -> None:
        up = OllamaLLM(client=OllamaServer({"/api/tags": httpx.Response(200, json={})}).client())
        down = OllamaLLM(client=OllamaServer({}).client())

        assert await up.is_available() is True
        assert await down.is_available() is False


class TestOllamaEmbedder:
    @pytest.mark.asyncio
    async def test_embed_batch(self) -> None:
        server = OllamaServer(
            {"/api/embed": httpx.Response(200, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})}
        )
        embedder = OllamaEmbedder(model="nomic-embed-text", dimensions=2, client=server.client())

        vectors = await embedder.embed_batch(["a", "b"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        assert server.body() == {"model": "nomic-embed-text", "input": ["a", "b"]}
        assert embedder.dimensions == 2

    @pytest.mark.asyncio
    async def test_embed_single_and_empty_batch(self) -> None:
        server = OllamaServer({"/api/embed": httpx.Response(200, json={"embeddings": [[1.0]]})})
        embedder = OllamaEmbedder(client=server.client())

        assert await embedder.embed("a") == [1.0]
        assert await embedder.embed_batch([]) == []
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_unreachable_server(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://x")
        assert await OllamaEmbedder(client=client).is_available() is False
