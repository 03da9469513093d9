from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, ItemsView
from threading import Lock

_MISSING = object()


class _BoundedMap[K, V]:
    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, V] = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: K, default: V | None = None, *, touch: bool = False) -> V | None:
        if key not in self._data:
            return default
        value = self._data[key]
        if touch:
            self._data.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> None:
        is_new = key not in self._data
        self._data[key] = value
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            self._data.popitem(last=False)

    def pop(self, key: K) -> None:
        self._data.pop(key, None)

    def items(self) -> ItemsView[K, V]:
        return self._data.items()


class LRUCache[K, V]:
    def __init__(
        self,
        max_keys: int,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._map: _BoundedMap[K, tuple[float, V]] = _BoundedMap(max_keys=max_keys)
        self._ttl_seconds = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock
        self._lock = Lock()

    def _lookup(self, key: K) -> object:
        entry = self._map.get(key, None, touch=True)
        if entry is None:
            return _MISSING
        stored_at, value = entry
        if (
            self._ttl_seconds is not None
            and self._clock() - stored_at > self._ttl_seconds
        ):
            self._map.pop(key)
            return _MISSING
        return value

    def contains(self, key: K) -> bool:
        with self._lock:
            return self._lookup(key) is not _MISSING

    def get(self, key: K, default: V | None = None) -> V | None:
        with self._lock:
            value = self._lookup(key)
        if value is _MISSING:
            return default
        return value  # type: ignore[return-value]

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._map.set(key, (self._clock(), value))

    def __len__(self) -> int:
        with self._lock:
            return len(self._map)

    def to_dict(self) -> dict[K, V]:
        with self._lock:
            return {key: value for key, (_, value) in self._map.items()}
