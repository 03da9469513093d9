from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlEventLog:
    def __init__(self, path: str | Path, max_queue_size: int = 4096) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._dropped = 0
        self._queue: Queue[str | None] = Queue(maxsize=max_queue_size)
        self._worker = Thread(target=self._write_loop, name="router-event-log", daemon=True)
        self._worker.start()

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def record(self, event: dict[str, Any]) -> None:
        line = _encode({"ts": round(time.time(), 3), **event})
        try:
            self._queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped += 1

    def close(self, timeout: float = 2.0) -> None:
        if not self._worker.is_alive():
            return
        self._queue.put(None)
        self._worker.join(timeout=timeout)

    def _write_loop(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = self._queue.get()
                if line is None:
                    break
                handle.write(line + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": round(time.time(), 3),
                            "event": "event_log_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()
