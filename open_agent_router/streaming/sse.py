from __future__ import annotations

import codecs
import json
import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Any

_LINE_BREAK = re.compile(r"\r\n?|\n")


@dataclass(slots=True)
class SSEEvent:
    event: str | None
    data: Any = None

    @property
    def payload(self) -> dict[str, Any]:
        return self.data if isinstance(self.data, dict) else {}


class SSEParser:
    def __init__(self, *, decode_json: bool = True):
        self._decode_json = decode_json
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._data_lines: list[str] = []
        self._has_data = False

    def feed(self, chunk: bytes | str) -> list[SSEEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []
        # Only the new text can hold a line break, except a CR held back
        # because it may be half of a CRLF.
        scan_from = len(self._buffer)
        if self._buffer.endswith("\r"):
            scan_from -= 1
        buffer = self._buffer + chunk
        events: list[SSEEvent] = []
        start = 0
        for match in _LINE_BREAK.finditer(buffer, scan_from):
            if match.group() == "\r" and match.end() == len(buffer):
                break
            event = self._process_line(buffer[start : match.start()])
            if event is not None:
                events.append(event)
            start = match.end()
        self._buffer = buffer[start:]
        return events

    def close(self) -> list[SSEEvent]:
        tail = self._decoder.decode(b"", final=True)
        events = self.feed(tail) if tail else []
        if self._buffer:
            line, self._buffer = self._buffer.rstrip("\r"), ""
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data_lines.append(value)
            self._has_data = True
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._has_data and self._event is None:
            return None
        raw = "\n".join(self._data_lines)
        event = SSEEvent(event=self._event, data=self._decode(raw) if self._has_data else None)
        self._event = None
        self._data_lines = []
        self._has_data = False
        return event

    def _decode(self, raw: str) -> Any:
        if not self._decode_json:
            return raw
        try:
            return json.loads(raw)
        except ValueError:
            return raw


async def _close_source(source: Any) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


async def aiter_sse_events(
    chunks: AsyncIterable[bytes | str], *, decode_json: bool = True
) -> AsyncIterator[SSEEvent]:
    parser = SSEParser(decode_json=decode_json)
    try:
        async for chunk in chunks:
            for event in parser.feed(chunk):
                yield event
        for event in parser.close():
            yield event
    finally:
        await _close_source(chunks)


def parse_sse_text(text: str, *, decode_json: bool = True) -> list[SSEEvent]:
    parser = SSEParser(decode_json=decode_json)
    return [*parser.feed(text), *parser.close()]


def _encode_data(data: Any) -> str:
    if isinstance(data, str):
        # Text that would re-parse as JSON, or spans lines, is sent as a JSON
        # string so the value survives a parse round trip.
        if "\n" in data or "\r" in data or _is_json(data):
            return json.dumps(data, ensure_ascii=False)
        return data
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def serialize_sse_event(event: SSEEvent) -> str:
    lines: list[str] = []
    if event.event is not None:
        lines.append(f"event: {event.event}")
    lines.append(f"data: {_encode_data(event.data)}")
    return "\n".join(lines) + "\n\n"


def serialize_sse_events(events: Iterable[SSEEvent]) -> str:
    return "".join(serialize_sse_event(event) for event in events)


async def aiter_sse_bytes(events: AsyncIterable[SSEEvent]) -> AsyncIterator[bytes]:
    try:
        async for event in events:
            yield serialize_sse_event(event).encode("utf-8")
    finally:
        await _close_source(events)
