from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from open_agent_router.runtime.bounded_maps import LRUCache

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> Usage | None:
        if not isinstance(payload, dict):
            return None
        input_tokens = _as_token_count(payload.get("input_tokens"))
        output_tokens = _as_token_count(payload.get("output_tokens"))
        if input_tokens is None and output_tokens is None:
            return None
        return cls(input_tokens=input_tokens or 0, output_tokens=output_tokens or 0)


class SessionUsageCache:
    def __init__(self, max_entries: int = 1000, ttl_seconds: float | None = 3600.0):
        self._cache: LRUCache[str, Usage] = LRUCache(
            max_entries, ttl_seconds=ttl_seconds
        )

    def get(self, session_id: str | None) -> Usage | None:
        if not session_id:
            return None
        return self._cache.get(session_id)

    def put(self, session_id: str | None, usage: Usage | dict[str, Any] | None) -> bool:
        if not session_id:
            return False
        if not isinstance(usage, Usage):
            usage = Usage.from_payload(usage)
        if usage is None:
            return False
        self._cache.set(session_id, usage)
        logger.debug(
            "session_usage_recorded session_id=%s input_tokens=%d output_tokens=%d",
            session_id,
            usage.input_tokens,
            usage.output_tokens,
        )
        return True

    def __len__(self) -> int:
        return len(self._cache)


def _as_token_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0, int(value))
