"""Provider-side SSE decoding.

Turns the raw byte stream of an OpenAI-compatible ``/chat/completions`` call
with ``stream: true`` into :class:`StreamEvent` values. Chunk boundaries are
arbitrary: a line, or a multi-byte character, may be split across reads.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
import codecs
import json
import logging
from typing import Any

from fichamento.services.chat.types import (
    ContentDelta,
    StreamDone,
    StreamEvent,
    ToolCallFragment,
)

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class FrameParseError(ValueError):
    pass


class SSELineBuffer:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer.rstrip("\r"), ""
        return [remainder] if remainder else []


def decode_frame(line: str) -> dict[str, Any] | str | None:
    """Return the JSON payload of a ``data:`` line, ``DONE_SENTINEL``, or ``None``.

    Lines that are not data lines (blank separators, ``event:``, comments)
    yield ``None``.
    """
    if not line.startswith(DATA_PREFIX):
        return None

    data = line[len(DATA_PREFIX):]
    if data == DONE_SENTINEL:
        return DONE_SENTINEL

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise FrameParseError(f"invalid JSON in SSE frame: {exc}") from exc
    if not isinstance(payload, dict):
        raise FrameParseError("SSE frame payload must be a JSON object")
    return payload


def project_event(payload: dict[str, Any]) -> list[StreamEvent]:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return []
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return []

    events: list[StreamEvent] = []

    # content goes first so forwarding keeps arrival order within the frame
    content = delta.get("content")
    if isinstance(content, str) and content:
        events.append(ContentDelta(text=content))

    tool_calls = delta.get("tool_calls")
    if isinstance(tool_calls, list):
        for tool_call in tool_calls:
            fragment = _tool_call_fragment(tool_call)
            if fragment is not None:
                events.append(fragment)

    return events


def _tool_call_fragment(tool_call: Any) -> ToolCallFragment | None:
    if not isinstance(tool_call, dict):
        return None
    index = tool_call.get("index", 0)
    if isinstance(index, bool) or not isinstance(index, int):
        return None

    function = tool_call.get("function")
    if not isinstance(function, dict):
        function = {}
    call_id = tool_call.get("id")
    name = function.get("name")
    arguments = function.get("arguments")

    return ToolCallFragment(
        index=index,
        id=call_id if isinstance(call_id, str) and call_id else None,
        name=name if isinstance(name, str) and name else None,
        arguments=arguments if isinstance(arguments, str) else "",
    )


def _events_for_line(line: str) -> list[StreamEvent] | None:
    """Project one line; ``None`` means the terminal marker was reached."""
    try:
        payload = decode_frame(line)
    except FrameParseError as exc:
        logger.warning("dropping malformed SSE frame", extra={"error": str(exc), "frame": line[:200]})
        return []

    if payload is None:
        return []
    if payload == DONE_SENTINEL:
        return None
    return project_event(payload)


async def iter_stream_events(byte_chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    line_buffer = SSELineBuffer()

    async for chunk in byte_chunks:
        for line in line_buffer.feed(chunk):
            events = _events_for_line(line)
            if events is None:
                yield StreamDone()
                return
            for event in events:
                yield event

    for line in line_buffer.flush():
        events = _events_for_line(line)
        if events is None:
            break
        for event in events:
            yield event

    yield StreamDone()
