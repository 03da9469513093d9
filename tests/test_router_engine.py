from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any

from open_agent_router.config import RouterConfig, parse_app_config
from open_agent_router.routing.router_engine import (
    RouteDecision,
    RoutingEngine,
    extract_session_id,
)
from open_agent_router.routing.token_estimator import TokenEstimator
from open_agent_router.runtime.session_usage import SessionUsageCache

CONFIG = {
    "Providers": [
        {
            "name": "OpenRouter",
            "api_base_url": "https://openrouter.example/api/v1/messages",
            "api_key": "sk-test",
            "models": ["Claude-Sonnet", "Gemini-Pro"],
        },
        {
            "name": "local",
            "api_base_url": "http://127.0.0.1:11434/v1/messages",
            "models": ["haiku-lite", "thinker", "searcher"],
        },
    ],
    "Router": {
        "default": "OpenRouter,Claude-Sonnet",
        "background": "local,haiku-lite",
        "think": "local,thinker",
        "longContext": "OpenRouter,Gemini-Pro",
        "webSearch": "local,searcher",
    },
}


class _StaticProjectResolver:
    def __init__(self, router: RouterConfig | None):
        self.router = router
        self.sessions: list[str | None] = []

    async def resolve_router(self, session_id: str | None) -> RouterConfig | None:
        self.sessions.append(session_id)
        return self.router


def _engine(**kwargs: Any) -> RoutingEngine:
    kwargs.setdefault("token_estimator", TokenEstimator(encode=list))
    kwargs.setdefault("usage_cache", SessionUsageCache())
    return RoutingEngine(parse_app_config(CONFIG), **kwargs)


def _request(text: str = "hi", **fields: Any) -> dict[str, Any]:
    request: dict[str, Any] = {
        "model": "claude-sonnet-4-20250514",
        "messages": [{"role": "user", "content": text}],
    }
    request.update(fields)
    return request


def _decide(engine: RoutingEngine, request: dict[str, Any]) -> RouteDecision:
    return asyncio.run(engine.decide(request))


def test_plain_request_uses_default_and_rewrites_model() -> None:
    request = _request()
    decision = _decide(_engine(), request)

    assert decision.rule == "default"
    assert decision.model == "OpenRouter,Claude-Sonnet"
    assert request["model"] == "OpenRouter,Claude-Sonnet"
    assert decision.requested_model == "claude-sonnet-4-20250514"


def test_explicit_model_is_canonicalized_case_insensitively() -> None:
    decision = _decide(_engine(), _request(model="openrouter,gemini-pro"))

    assert decision.rule == "explicit"
    assert decision.model == "OpenRouter,Gemini-Pro"


def test_explicit_model_with_unknown_parts_is_returned_unchanged() -> None:
    engine = _engine()

    assert _decide(engine, _request(model="nobody,gemini-pro")).model == "nobody,gemini-pro"
    assert _decide(engine, _request(model="OpenRouter,unknown")).model == "OpenRouter,unknown"


def test_long_context_threshold_is_exclusive() -> None:
    engine = _engine()

    at_threshold = _decide(engine, _request("a" * 60_000))
    above_threshold = _decide(engine, _request("a" * 60_001))

    assert at_threshold.rule == "default"
    assert above_threshold.rule == "long_context"
    assert above_threshold.model == "OpenRouter,Gemini-Pro"
    assert above_threshold.token_count == 60_001


def test_previous_turn_usage_triggers_long_context() -> None:
    usage_cache = SessionUsageCache()
    engine = _engine(usage_cache=usage_cache)
    metadata = {"user_id": "user_abc_account__session_sess-42"}

    first = _decide(engine, _request("a" * 25_000, metadata=metadata))
    usage_cache.put("sess-42", {"input_tokens": 70_000, "output_tokens": 12})
    second = _decide(engine, _request("a" * 25_000, metadata=metadata))
    small = _decide(engine, _request("a" * 15_000, metadata=metadata))

    assert first.rule == "default"
    assert second.rule == "long_context"
    assert small.rule == "default"


def test_subagent_tag_selects_model_and_is_stripped() -> None:
    request = _request(
        system=[
            {"type": "text", "text": "You are a coding assistant."},
            {
                "type": "text",
                "text": "<CCR-SUBAGENT-MODEL>local,thinker</CCR-SUBAGENT-MODEL>Review the diff.",
            },
        ]
    )

    decision = _decide(_engine(), request)

    assert decision.rule == "subagent_tag"
    assert decision.model == "local,thinker"
    assert request["system"][1]["text"] == "Review the diff."


def test_haiku_request_uses_background_model() -> None:
    decision = _decide(_engine(), _request(model="claude-3-5-haiku-20241022"))

    assert decision.rule == "background"
    assert decision.model == "local,haiku-lite"


def test_web_search_tool_and_thinking_rules() -> None:
    engine = _engine()

    search = _decide(
        engine, _request(tools=[{"type": "web_search_20250305", "name": "web_search"}])
    )
    think = _decide(engine, _request(thinking={"type": "enabled", "budget_tokens": 1024}))

    assert (search.rule, search.model) == ("web_search", "local,searcher")
    assert (think.rule, think.model) == ("think", "local,thinker")


def test_project_override_replaces_router_except_background() -> None:
    resolver = _StaticProjectResolver(RouterConfig(default="local,searcher"))
    engine = _engine(project_resolver=resolver)
    metadata = {"user_id": "u_session_sess-7"}

    haiku = _decide(engine, _request(model="claude-3-5-haiku-latest", metadata=metadata))
    thinking = _decide(engine, _request(metadata=metadata, thinking={"type": "enabled"}))

    # Background routing reads the global Router section.
    assert haiku.rule == "background"
    assert haiku.model == "local,haiku-lite"
    # The project section has no think model, so thinking falls to its default.
    assert thinking.rule == "default"
    assert thinking.model == "local,searcher"
    assert thinking.project_override
    assert resolver.sessions == ["sess-7", "sess-7"]


def test_custom_router_result_wins() -> None:
    seen: dict[str, Any] = {}

    def router(request: dict[str, Any], config: dict[str, Any], context: dict[str, Any]) -> str:
        seen["config"] = config
        seen["context"] = context
        return "local,thinker"

    decision = _decide(_engine(custom_router=router), _request("abc", model="x,y"))

    assert decision.rule == "custom_router"
    assert decision.model == "local,thinker"
    assert seen["config"]["Router"]["default"] == "OpenRouter,Claude-Sonnet"
    assert seen["context"]["token_count"] == 3


def test_async_custom_router_without_answer_falls_through() -> None:
    async def router(request: dict[str, Any], config: dict[str, Any], context: dict[str, Any]) -> None:
        return None

    decision = _decide(_engine(custom_router=router), _request())

    assert decision.rule == "default"


def test_failing_custom_router_is_logged_and_ignored(caplog: Any) -> None:
    def router(request: dict[str, Any], config: dict[str, Any], context: dict[str, Any]) -> str:
        raise RuntimeError("router exploded")

    with caplog.at_level(logging.ERROR):
        decision = _decide(_engine(custom_router=router), _request(thinking=True))

    assert decision.rule == "think"
    assert "custom_router_failed" in caplog.text


def test_unexpected_failure_falls_back_to_default(caplog: Any) -> None:
    def broken_encoder(text: str) -> list[int]:
        raise ValueError("encoder unavailable")

    engine = _engine(token_estimator=TokenEstimator(encode=broken_encoder))
    request = _request(model="claude-3-5-haiku")

    with caplog.at_level(logging.WARNING):
        decision = _decide(engine, request)

    assert decision.rule == "error_fallback"
    assert decision.model == "OpenRouter,Claude-Sonnet"
    assert request["model"] == "OpenRouter,Claude-Sonnet"
    assert "route_decision_failed" in caplog.text


def test_decision_is_reported_to_event_hook() -> None:
    events: list[dict[str, Any]] = []
    _decide(_engine(event_hook=events.append), _request(metadata={"user_id": "u_session_s1"}))

    assert events == [
        {
            "event": "route_decision",
            "session_id": "s1",
            "rule": "default",
            "requested_model": "claude-sonnet-4-20250514",
            "model": "OpenRouter,Claude-Sonnet",
            "token_count": 2,
            "project_override": False,
        }
    ]


def test_extract_session_id_sources() -> None:
    assert extract_session_id({"metadata": {"user_id": "user_x_session_abc"}}) == "abc"
    assert extract_session_id({"metadata": {"user_id": "user_x"}}) is None
    assert extract_session_id({"sessionId": " preset "}) == "preset"
    assert extract_session_id({}) is None


def _rewriting_engine(prompt_path: Path) -> RoutingEngine:
    config = parse_app_config({**CONFIG, "REWRITE_SYSTEM_PROMPT": str(prompt_path)})
    return RoutingEngine(
        config, token_estimator=TokenEstimator(encode=list), usage_cache=SessionUsageCache()
    )


def _system(second_text: str) -> list[dict[str, Any]]:
    return [
        {"type": "text", "text": "You are Claude Code."},
        {"type": "text", "text": second_text},
    ]


def test_system_prompt_is_replaced_up_to_the_last_env_block(tmp_path: Path) -> None:
    prompt_path = tmp_path / "prompt.md"
    prompt_path.write_text("Custom instructions.\n", encoding="utf-8")
    request = _request(
        system=_system("Stock prompt.\n<env>stale</env>\nMore.\n<env>cwd: /repo</env>")
    )

    _decide(_rewriting_engine(prompt_path), request)

    assert request["system"][0]["text"] == "You are Claude Code."
    assert request["system"][1]["text"] == "Custom instructions.\n<env>cwd: /repo</env>"


def test_unreadable_prompt_file_leaves_system_unchanged(tmp_path: Path, caplog: Any) -> None:
    system = _system("Stock prompt.\n<env>cwd: /repo</env>")
    request = _request(system=[dict(block) for block in system])

    with caplog.at_level(logging.WARNING):
        decision = _decide(_rewriting_engine(tmp_path / "missing.md"), request)

    assert decision.rule == "default"
    assert request["system"] == system
    assert "system_prompt_rewrite_failed" in caplog.text


def test_system_prompt_without_env_block_is_left_alone(tmp_path: Path) -> None:
    prompt_path = tmp_path / "prompt.md"
    prompt_path.write_text("Custom instructions.\n", encoding="utf-8")
    engine = _rewriting_engine(prompt_path)
    without_env = _request(system=_system("Stock prompt without environment."))
    single_block = _request(system=[{"type": "text", "text": "Only <env>cwd</env>"}])

    _decide(engine, without_env)
    _decide(engine, single_block)

    assert without_env["system"][1]["text"] == "Stock prompt without environment."
    assert single_block["system"] == [{"type": "text", "text": "Only <env>cwd</env>"}]


def test_sync_custom_router_runs_off_the_event_loop_thread() -> None:
    threads: list[int] = []

    def router(request: dict[str, Any], config: dict[str, Any], context: dict[str, Any]) -> str:
        threads.append(threading.get_ident())
        return "local,thinker"

    decision = _decide(_engine(custom_router=router), _request())

    assert decision.rule == "custom_router"
    assert threads and threads[0] != threading.get_ident()
