from __future__ import annotations

import json
from collections.abc import Callable, Iterator, Sequence
from functools import lru_cache
from typing import Any

import tiktoken

Encoder = Callable[[str], Sequence[Any]]

DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=4)
def _tiktoken_encoder(encoding_name: str) -> Encoder:
    encoding = tiktoken.get_encoding(encoding_name)

    def encode(text: str) -> Sequence[int]:
        return encoding.encode(text, disallowed_special=())

    return encode


class TokenEstimator:
    def __init__(
        self,
        encode: Encoder | None = None,
        *,
        encoding_name: str = DEFAULT_ENCODING,
    ):
        self._encode = encode
        self._encoding_name = encoding_name

    @property
    def encode(self) -> Encoder:
        if self._encode is None:
            self._encode = _tiktoken_encoder(self._encoding_name)
        return self._encode

    def count(self, messages: Any, system: Any = None, tools: Any = None) -> int:
        encode = self.encode
        return sum(
            len(encode(text))
            for text in _iter_countable_text(messages, system, tools)
            if text
        )

    def count_payload(self, payload: dict[str, Any]) -> int:
        return self.count(
            payload.get("messages"), payload.get("system"), payload.get("tools")
        )


def _iter_countable_text(messages: Any, system: Any, tools: Any) -> Iterator[str]:
    if isinstance(messages, list):
        for message in messages:
            if isinstance(message, dict):
                yield from _iter_message_text(message.get("content"))

    if isinstance(system, str):
        yield system
    elif isinstance(system, list):
        for item in system:
            if not isinstance(item, dict) or item.get("type") != "text":
                continue
            text = item.get("text")
            if isinstance(text, str):
                yield text
            elif isinstance(text, list):
                for part in text:
                    yield part if isinstance(part, str) else ""

    if isinstance(tools, list):
        for tool in tools:
            if not isinstance(tool, dict):
                continue
            description = tool.get("description")
            if description:
                yield f"{tool.get('name') or ''}{description}"
            schema = tool.get("input_schema")
            if schema:
                yield _stringify(schema)


def _iter_message_text(content: Any) -> Iterator[str]:
    if isinstance(content, str):
        yield content
        return
    if not isinstance(content, list):
        return
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str):
                yield text
        elif block_type == "tool_use":
            yield _stringify(block.get("input"))
        elif block_type == "tool_result":
            result = block.get("content")
            yield result if isinstance(result, str) else _stringify(result)


def _stringify(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)
