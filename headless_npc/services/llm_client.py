from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import random
from typing import Any, Callable, Dict, List

import aiohttp

from ..common import normalize_json_numbers, strip_code_fences
from ..errors import ResponseValidationError, UpstreamError, UpstreamFormatError, UpstreamTransportError
from ..models import AIResponse
from .sse import SSEStreamAggregator


logger = logging.getLogger("headless_npc.llm")

IMAGE_SIZES = {
    "1:1": "2048x2048",
    "16:9": "2560x1440",
    "4:3": "2304x1728",
}

_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


def parse_ai_response(raw_content: str | None) -> AIResponse:
    cleaned = strip_code_fences(raw_content or "")
    if not cleaned:
        raise ResponseValidationError("AI response missing content")
    normalized = normalize_json_numbers(cleaned)
    try:
        parsed = json.loads(normalized)
    except json.JSONDecodeError as exc:
        raise ResponseValidationError(f"AI response is not valid JSON: {exc}") from exc
    return AIResponse.validate(parsed)


class LLMClient:
    """OpenAI-compatible client for chat completions, embeddings and images."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        text_model: str,
        image_model: str,
        embedding_model: str,
        embedding_dim: int = 3072,
        timeout_seconds: int = 90,
        temperature: float = 0.8,
        mock_responses: bool = False,
    ) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.api_key = api_key
        self.text_model = text_model
        self.image_model = image_model
        self.embedding_model = embedding_model
        self.embedding_dim = max(1, int(embedding_dim))
        self.timeout = aiohttp.ClientTimeout(total=max(5, int(timeout_seconds)))
        self.temperature = float(temperature)
        self.mock_responses = bool(mock_responses)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self.mock_responses:
            return
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers())

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _endpoint(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None
        return self._session

    async def _post_json(self, path: str, payload: Dict[str, Any], *, retries: int = 1) -> Dict[str, Any]:
        session = await self._ensure_session()
        url = self._endpoint(path)
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        try:
                            parsed = json.loads(text)
                        except json.JSONDecodeError as exc:
                            raise UpstreamFormatError(f"Upstream {path} returned non-JSON body") from exc
                        if not isinstance(parsed, dict):
                            raise UpstreamFormatError(f"Upstream {path} returned non-object JSON")
                        return parsed
                    error = UpstreamTransportError(path, response.status, text)
                    if response.status not in _RETRIABLE_STATUSES:
                        raise error
                    last_error = error
            except asyncio.CancelledError:
                raise
            except UpstreamError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if isinstance(last_error, UpstreamError):
            raise last_error
        raise UpstreamTransportError(path, 0, f"request failed: {last_error}")

    def _chat_payload(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        *,
        stream: bool,
        temperature: float | None,
    ) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        for item in history:
            role = str(item.get("role", "")).strip().lower()
            if role not in {"user", "assistant"}:
                continue
            messages.append({"role": role, "content": str(item.get("content", ""))})
        return {
            "model": self.text_model,
            "temperature": self.temperature if temperature is None else float(temperature),
            "stream": stream,
            "messages": messages,
        }

    async def complete_chat(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        *,
        stream: bool = False,
        on_chunk: Callable[[str], None] | None = None,
        temperature: float | None = None,
    ) -> AIResponse:
        if self.mock_responses:
            mock = self._mock_chat_response()
            if stream and on_chunk is not None:
                on_chunk(mock.response)
            return mock

        payload = self._chat_payload(system_prompt, history, stream=stream, temperature=temperature)
        logger.debug("[llm.chat] model=%s stream=%s messages=%s", self.text_model, stream, len(payload["messages"]))
        if not stream:
            data = await self._post_json("chat/completions", payload)
            return parse_ai_response(self._first_message_content(data))
        return await self._stream_chat(payload, on_chunk)

    async def _stream_chat(
        self,
        payload: Dict[str, Any],
        on_chunk: Callable[[str], None] | None,
    ) -> AIResponse:
        session = await self._ensure_session()
        aggregator = SSEStreamAggregator(on_chunk)
        try:
            async with session.post(self._endpoint("chat/completions"), json=payload) as response:
                if response.status != 200:
                    raise UpstreamTransportError("chat/completions", response.status, await response.text())
                async for data in response.content.iter_any():
                    if aggregator.feed(data):
                        break
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamTransportError("chat/completions", 0, f"stream interrupted: {exc}") from exc
        aggregator.finish()
        if aggregator.skipped_lines:
            logger.info("[llm.stream] finished with %s malformed chunk(s) skipped", aggregator.skipped_lines)
        return parse_ai_response(aggregator.result_text())

    @staticmethod
    def _first_message_content(data: Dict[str, Any]) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if isinstance(content, list):
            return "".join(item.get("text", "") if isinstance(item, dict) else str(item) for item in content)
        return content if isinstance(content, str) else ""

    async def embed(self, text: str) -> List[float]:
        if self.mock_responses:
            return self._mock_embedding(text)
        data = await self._post_json(
            "embeddings",
            {"model": self.embedding_model, "input": text},
            retries=3,
        )
        items = data.get("data")
        vector = items[0].get("embedding") if isinstance(items, list) and items and isinstance(items[0], dict) else None
        if not isinstance(vector, list) or not vector:
            raise UpstreamFormatError("Invalid embedding payload")
        try:
            return [float(value) for value in vector]
        except (TypeError, ValueError) as exc:
            raise UpstreamFormatError("Invalid embedding payload") from exc

    async def generate_image(self, prompt: str, ratio: str = "1:1") -> str:
        if self.mock_responses:
            return "https://images.example.com/mock-image.png"
        data = await self._post_json(
            "images/generations",
            {
                "model": self.image_model,
                "prompt": prompt,
                "size": IMAGE_SIZES.get(ratio, IMAGE_SIZES["1:1"]),
                "response_format": "url",
            },
        )
        items = data.get("data")
        url = items[0].get("url") if isinstance(items, list) and items and isinstance(items[0], dict) else None
        if not isinstance(url, str) or not url.strip():
            raise UpstreamFormatError("Image API returned empty payload")
        return url.strip()

    @staticmethod
    def _mock_chat_response() -> AIResponse:
        return AIResponse(
            thought="Mocking thoughtful response",
            stress_change=round(random.uniform(-1.0, 1.0), 2),
            trust_change=round(random.uniform(-1.0, 1.0), 2),
            response="This is a mock response used while MOCK_LLM_RESPONSES=true.",
            image_prompt="Soft watercolor portrait of a calm esper in a city park.",
        )

    def _mock_embedding(self, text: str) -> List[float]:
        seed = int.from_bytes(hashlib.sha256((text or "").encode("utf-8")).digest()[:8], "big")
        rng = random.Random(seed)
        return [rng.random() for _ in range(self.embedding_dim)]
