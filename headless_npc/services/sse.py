from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Callable

from ..errors import EmptyStreamError


logger = logging.getLogger("headless_npc.llm")

DONE_SENTINEL = "[DONE]"


class SSEStreamAggregator:
    """Incremental parser for OpenAI-style `text/event-stream` completions.

    Bytes are fed as they arrive from the network. Only complete blocks
    (terminated by a blank line) are parsed; the remainder is carried to the
    next `feed()`. Visible text is forwarded to `on_chunk` as soon as a block
    is parsed, while only `delta.content` is kept for the final aggregate.
    """

    def __init__(self, on_chunk: Callable[[str], None] | None = None) -> None:
        self._on_chunk = on_chunk
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: list[str] = []
        self.fallback: str | None = None
        self.done = False
        self.skipped_lines = 0

    @property
    def aggregated(self) -> str:
        return "".join(self._parts)

    def feed(self, data: bytes) -> bool:
        if self.done:
            return True
        self._buffer += self._decoder.decode(data)
        # A trailing "\r" may still pair with a "\n" from the next read.
        self._buffer = self._buffer.replace("\r\n", "\n")
        while not self.done:
            boundary = self._buffer.find("\n\n")
            if boundary < 0:
                break
            block = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2 :]
            self._process_block(block)
        return self.done

    def finish(self) -> None:
        if self.done:
            self._buffer = ""
            return
        self._buffer += self._decoder.decode(b"", final=True)
        tail = self._buffer.replace("\r\n", "\n").strip()
        self._buffer = ""
        if tail:
            self._process_block(tail)

    def result_text(self) -> str:
        aggregated = self.aggregated
        if aggregated:
            return aggregated
        if self.fallback:
            return self.fallback
        raise EmptyStreamError("Streaming API returned no content")

    def _process_block(self, block: str) -> None:
        for raw_line in block.strip().split("\n"):
            line = raw_line.strip()
            if not line.startswith("data:"):
                continue
            payload = line[len("data:") :].strip()
            if not payload:
                continue
            if payload == DONE_SENTINEL:
                self.done = True
                return
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError as exc:
                self.skipped_lines += 1
                logger.warning("[llm.stream] skipped malformed chunk (%s): %s", exc, payload[:120])
                continue
            self._consume(parsed)

    def _consume(self, parsed: Any) -> None:
        if not isinstance(parsed, dict):
            return
        choices = parsed.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}

        content = delta.get("content")
        reasoning = delta.get("reasoning_content")
        if isinstance(content, str) and content:
            emitted = content
        elif isinstance(reasoning, str) and reasoning:
            emitted = reasoning
        else:
            emitted = ""
        if emitted and self._on_chunk is not None:
            self._on_chunk(emitted)
        if isinstance(content, str):
            self._parts.append(content)

        message = choice.get("message")
        if isinstance(message, dict):
            full = message.get("content")
            if isinstance(full, str) and full:
                self.fallback = full


def format_sse_event(event: str, data: str = "") -> str:
    """Frame one outbound server-sent event; multi-line data gets one `data:` line each."""
    lines = (data or "").replace("\r\n", "\n").split("\n")
    body = "".join(f"data: {line}\n" for line in lines)
    return f"event: {event}\n{body}\n"
