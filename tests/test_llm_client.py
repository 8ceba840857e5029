from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from headless_npc.errors import ResponseValidationError, UpstreamTransportError  # noqa: E402
from headless_npc.services.llm_client import LLMClient, parse_ai_response  # noqa: E402


AI_JSON = json.dumps(
    {"thought": "calm", "stress_change": 5, "trust_change": -2, "response": "hello", "image_prompt": "a park"}
)


class _FakeContent:
    def __init__(self, pieces: list[bytes]) -> None:
        self._pieces = pieces

    async def iter_any(self):
        for piece in self._pieces:
            yield piece


class _FakeResponse:
    def __init__(self, status: int = 200, body: str = "", pieces: list[bytes] | None = None) -> None:
        self.status = status
        self._body = body
        self.content = _FakeContent(pieces or [])

    async def text(self) -> str:
        return self._body

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc_info: object) -> bool:
        return False


class _FakeHttpSession:
    closed = False

    def __init__(self, *responses: _FakeResponse) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def post(self, url: str, json: dict[str, Any] | None = None) -> _FakeResponse:
        self.calls.append((url, json or {}))
        return self._responses.pop(0)

    async def close(self) -> None:
        self.closed = True


def _client(*, mock: bool = False) -> LLMClient:
    return LLMClient(
        base_url="https://llm.example.com/v1/",
        api_key="test-key",
        text_model="text-model",
        image_model="image-model",
        embedding_model="embed-model",
        embedding_dim=8,
        mock_responses=mock,
    )


def _completion(content: str) -> str:
    return json.dumps({"choices": [{"message": {"content": content}}]})


def _stream_block(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n\n"


def test_parse_ai_response_strips_fences_and_plus_signs() -> None:
    raw = '```json\n{"thought": "t", "stress_change": +5, "trust_change": -2.5, "response": "hi"}\n```'
    ai = parse_ai_response(raw)

    assert ai.stress_change == 5.0
    assert ai.trust_change == -2.5
    assert ai.response == "hi"
    assert ai.image_prompt is None


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "not json at all",
        "[1, 2, 3]",
        '{"thought": "t", "stress_change": 1, "trust_change": 0}',
        '{"thought": "t", "stress_change": "5", "trust_change": 0, "response": "x"}',
        '{"thought": "t", "stress_change": 1, "trust_change": 0, "response": "x", "image_prompt": 3}',
    ],
)
def test_parse_ai_response_rejects_invalid_shapes(raw: str) -> None:
    with pytest.raises(ResponseValidationError):
        parse_ai_response(raw)


def test_non_streaming_completion_sends_system_prompt_and_filters_roles() -> None:
    client = _client()
    http = _FakeHttpSession(_FakeResponse(200, body=_completion(AI_JSON)))
    client._session = http

    history = [
        {"role": "user", "content": "hi"},
        {"role": "system", "content": "dropped"},
        {"role": "assistant", "content": "hey"},
    ]
    ai = asyncio.run(client.complete_chat("SYSTEM", history, stream=False))

    url, payload = http.calls[0]
    assert url == "https://llm.example.com/v1/chat/completions"
    assert payload["stream"] is False
    assert payload["model"] == "text-model"
    assert [item["role"] for item in payload["messages"]] == ["system", "user", "assistant"]
    assert payload["messages"][0]["content"] == "SYSTEM"
    assert ai.response == "hello"
    assert ai.image_prompt == "a park"


def test_streaming_completion_aggregates_split_chunks() -> None:
    raw = "".join(_stream_block(AI_JSON[i : i + 7]) for i in range(0, len(AI_JSON), 7)) + "data: [DONE]\n\n"
    data = raw.encode("utf-8")
    pieces = [data[i : i + 13] for i in range(0, len(data), 13)]

    client = _client()
    http = _FakeHttpSession(_FakeResponse(200, pieces=pieces))
    client._session = http
    chunks: list[str] = []

    ai = asyncio.run(client.complete_chat("SYSTEM", [{"role": "user", "content": "hi"}], stream=True, on_chunk=chunks.append))

    assert http.calls[0][1]["stream"] is True
    assert "".join(chunks) == AI_JSON
    assert ai.stress_change == 5.0
    assert ai.trust_change == -2.0


def test_streaming_non_200_raises_transport_error() -> None:
    client = _client()
    client._session = _FakeHttpSession(_FakeResponse(500, body="boom"))

    with pytest.raises(UpstreamTransportError) as exc_info:
        asyncio.run(client.complete_chat("SYSTEM", [], stream=True))
    assert exc_info.value.status == 500


def test_client_errors_are_not_retried() -> None:
    client = _client()
    http = _FakeHttpSession(_FakeResponse(400, body="bad request"), _FakeResponse(200, body="{}"))
    client._session = http

    with pytest.raises(UpstreamTransportError):
        asyncio.run(client.embed("hello"))
    assert len(http.calls) == 1


def test_embeddings_retry_on_retriable_status() -> None:
    client = _client()
    http = _FakeHttpSession(
        _FakeResponse(503, body="busy"),
        _FakeResponse(200, body=json.dumps({"data": [{"embedding": [0.5, 1, 2]}]})),
    )
    client._session = http

    vector = asyncio.run(client.embed("hello"))

    assert vector == [0.5, 1.0, 2.0]
    assert len(http.calls) == 2
    assert http.calls[1][1] == {"model": "embed-model", "input": "hello"}


def test_image_generation_maps_ratio_to_size() -> None:
    client = _client()
    http = _FakeHttpSession(_FakeResponse(200, body=json.dumps({"data": [{"url": " https://img/x.png "}]})))
    client._session = http

    url = asyncio.run(client.generate_image("a cat", "16:9"))

    assert url == "https://img/x.png"
    assert http.calls[0][1]["size"] == "2560x1440"
    assert http.calls[0][1]["response_format"] == "url"


def test_mock_mode_needs_no_network() -> None:
    client = _client(mock=True)
    chunks: list[str] = []

    async def scenario() -> None:
        await client.start()
        ai = await client.complete_chat("SYSTEM", [], stream=True, on_chunk=chunks.append)
        assert -1.0 <= ai.stress_change <= 1.0
        assert await client.generate_image("x") == "https://images.example.com/mock-image.png"
        first = await client.embed("same text")
        assert first == await client.embed("same text")
        assert len(first) == 8
        await client.close()

    asyncio.run(scenario())
    assert chunks
