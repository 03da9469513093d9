from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from open_agent_router.runtime.session_usage import SessionUsageCache
from open_agent_router.streaming.sse import SSEEvent, SSEParser

logger = logging.getLogger("uvicorn.error")


class UsageObserver:
    def __init__(self, session_id: str | None, usage_cache: SessionUsageCache):
        self.session_id = session_id
        self.usage_cache = usage_cache
        self.recorded = False
        self._parser = SSEParser()
        self._start_usage: dict[str, Any] = {}
        self._failed = False

    def feed(self, chunk: bytes | str) -> None:
        if self._failed:
            return
        try:
            for event in self._parser.feed(chunk):
                self._observe(event)
        except Exception as exc:
            self._failed = True
            logger.warning(
                "usage_observer_failed session_id=%s error=%r", self.session_id, exc
            )

    def _observe(self, event: SSEEvent) -> None:
        payload = event.payload
        if event.event == "message_start":
            message = payload.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                self._start_usage = usage
            return
        if event.event != "message_delta":
            return
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            return
        if "input_tokens" not in usage and "input_tokens" in self._start_usage:
            usage = {**usage, "input_tokens": self._start_usage["input_tokens"]}
        if self.usage_cache.put(self.session_id, usage):
            self.recorded = True


async def tee_usage(
    chunks: AsyncIterable[bytes],
    *,
    session_id: str | None,
    usage_cache: SessionUsageCache,
) -> AsyncIterator[bytes]:
    if not session_id:
        async for chunk in chunks:
            yield chunk
        return
    observer = UsageObserver(session_id, usage_cache)
    finished = False
    try:
        async for chunk in chunks:
            observer.feed(chunk)
            yield chunk
        finished = True
    finally:
        if not finished and not observer.recorded:
            logger.warning(
                "usage_stream_closed_prematurely session_id=%s", session_id
            )


def record_json_usage(
    body: Any, *, session_id: str | None, usage_cache: SessionUsageCache
) -> bool:
    if not isinstance(body, dict):
        return False
    return usage_cache.put(session_id, body.get("usage"))
