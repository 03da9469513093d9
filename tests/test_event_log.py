from __future__ import annotations

import json
from pathlib import Path

from open_agent_router.gateway.event_log import JsonlEventLog


def test_event_log_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "router_events.jsonl"
    event_log = JsonlEventLog(log_path)
    try:
        event_log.record({"event": "route_decision", "rule": "default"})
        event_log.record({"event": "agent_splice", "status": "complete", "events": 4})
    finally:
        event_log.close()

    records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert [record["event"] for record in records] == ["route_decision", "agent_splice"]
    assert records[0]["rule"] == "default"
    assert isinstance(records[0]["ts"], float)
    assert event_log.dropped == 0


def test_unserializable_values_are_stringified(tmp_path: Path) -> None:
    log_path = tmp_path / "events.jsonl"
    event_log = JsonlEventLog(log_path)
    event_log.record({"event": "route_decision", "path": Path("/tmp/x")})
    event_log.close()

    record = json.loads(log_path.read_text(encoding="utf-8"))
    assert record["path"] == "/tmp/x"
