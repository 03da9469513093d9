from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from open_agent_router.config import AppConfig, RouterConfig
from open_agent_router.routing.custom_router import CustomRouter, invoke_custom_router
from open_agent_router.routing.project_resolver import ProjectResolver
from open_agent_router.routing.token_estimator import TokenEstimator
from open_agent_router.runtime.session_usage import SessionUsageCache, Usage

logger = logging.getLogger("uvicorn.error")

SESSION_MARKER = "_session_"
SUBAGENT_TAG_OPEN = "<CCR-SUBAGENT-MODEL>"
SUBAGENT_TAG_CLOSE = "</CCR-SUBAGENT-MODEL>"
_SUBAGENT_PATTERN = re.compile(
    re.escape(SUBAGENT_TAG_OPEN) + r"(.*?)" + re.escape(SUBAGENT_TAG_CLOSE),
    re.DOTALL,
)
_ENV_MARKER = "<env>"
# Below this size a request stays off the long-context model even when the
# previous turn of the session was large.
_LAST_USAGE_MIN_TOKENS = 20_000

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RouteDecision:
    model: str
    rule: str
    token_count: int
    session_id: str | None
    requested_model: str | None
    project_override: bool = False


__all__ = [
    "RouteDecision",
    "RoutingEngine",
    "extract_session_id",
]


def extract_session_id(request: dict[str, Any]) -> str | None:
    metadata = request.get("metadata")
    if isinstance(metadata, dict):
        user_id = metadata.get("user_id")
        if isinstance(user_id, str):
            parts = user_id.split(SESSION_MARKER)
            if len(parts) > 1 and parts[1]:
                return parts[1]
    session_id = request.get("sessionId")
    if isinstance(session_id, str) and session_id.strip():
        return session_id.strip()
    return None


class RoutingEngine:
    """Chooses the ``provider,model`` that serves a Messages request.

    Rules run in a fixed order and the first match wins: custom router,
    explicit ``provider,model``, long context, subagent tag, background
    model, web search, thinking, and finally ``Router.default``. A project
    or session Router section found through the ``ProjectResolver`` replaces
    the global one for every rule except the background model, which always
    reads the global section.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        token_estimator: TokenEstimator,
        usage_cache: SessionUsageCache,
        project_resolver: ProjectResolver | None = None,
        custom_router: CustomRouter | None = None,
        event_hook: EventHook | None = None,
    ):
        self.config = config
        self.token_estimator = token_estimator
        self.usage_cache = usage_cache
        self.project_resolver = project_resolver
        self.custom_router = custom_router
        self._event_hook = event_hook

    async def decide(
        self, request: dict[str, Any], config: AppConfig | None = None
    ) -> RouteDecision:
        config = config or self.config
        requested_model = _as_model_string(request.get("model"))
        session_id = extract_session_id(request)
        if session_id:
            request["sessionId"] = session_id
        try:
            decision = await self._decide(request, config, requested_model, session_id)
        except Exception as exc:
            logger.warning(
                "route_decision_failed session_id=%s error=%r", session_id, exc
            )
            decision = RouteDecision(
                model=config.router.default,
                rule="error_fallback",
                token_count=0,
                session_id=session_id,
                requested_model=requested_model,
            )
        request["model"] = decision.model
        logger.info(
            "route_decision session_id=%s rule=%s requested_model=%s model=%s tokens=%d",
            decision.session_id,
            decision.rule,
            decision.requested_model,
            decision.model,
            decision.token_count,
        )
        self._emit(
            {
                "event": "route_decision",
                "session_id": decision.session_id,
                "rule": decision.rule,
                "requested_model": decision.requested_model,
                "model": decision.model,
                "token_count": decision.token_count,
                "project_override": decision.project_override,
            }
        )
        return decision

    async def _decide(
        self,
        request: dict[str, Any],
        config: AppConfig,
        requested_model: str | None,
        session_id: str | None,
    ) -> RouteDecision:
        await self._rewrite_system_prompt(request, config)
        token_count = self.token_estimator.count_payload(request)

        def decision(model: str, rule: str, project_override: bool = False) -> RouteDecision:
            return RouteDecision(
                model=model,
                rule=rule,
                token_count=token_count,
                session_id=session_id,
                requested_model=requested_model,
                project_override=project_override,
            )

        custom_model = await self._run_custom_router(request, config, token_count)
        if custom_model:
            return decision(custom_model, "custom_router")

        if requested_model and "," in requested_model:
            return decision(self._canonical_explicit_model(requested_model, config), "explicit")

        project_router = await self._project_router(session_id)
        router = project_router or config.router
        overridden = project_router is not None
        last_usage = self.usage_cache.get(session_id)

        if self._needs_long_context(router, token_count, last_usage):
            assert router.long_context is not None
            logger.info(
                "long_context_route session_id=%s tokens=%d threshold=%d",
                session_id,
                token_count,
                router.long_context_threshold,
            )
            return decision(router.long_context, "long_context", overridden)

        subagent_model = _take_subagent_model(request)
        if subagent_model:
            return decision(subagent_model, "subagent_tag", overridden)

        # Background routing deliberately reads the global section.
        background = config.router.background
        if background and requested_model and _is_background_model(requested_model):
            return decision(background, "background")

        if router.web_search and _has_web_search_tool(request):
            return decision(router.web_search, "web_search", overridden)

        if router.think and request.get("thinking"):
            return decision(router.think, "think", overridden)

        return decision(router.default, "default", overridden)

    async def _run_custom_router(
        self, request: dict[str, Any], config: AppConfig, token_count: int
    ) -> str | None:
        if self.custom_router is None:
            return None
        context = {"event": self._event_hook, "token_count": token_count}
        try:
            return await invoke_custom_router(
                self.custom_router, request, config.as_plain_dict(), context
            )
        except Exception as exc:
            logger.error("custom_router_failed error=%r", exc)
            return None

    @staticmethod
    def _canonical_explicit_model(requested_model: str, config: AppConfig) -> str:
        provider_name, _, model_name = requested_model.partition(",")
        provider = config.find_provider(provider_name)
        if provider is None:
            return requested_model
        model = provider.find_model(model_name)
        if model is None:
            return requested_model
        return f"{provider.name},{model}"

    async def _project_router(self, session_id: str | None) -> RouterConfig | None:
        if self.project_resolver is None or not session_id:
            return None
        try:
            return await self.project_resolver.resolve_router(session_id)
        except Exception as exc:
            logger.warning(
                "project_router_lookup_failed session_id=%s error=%r", session_id, exc
            )
            return None

    @staticmethod
    def _needs_long_context(
        router: RouterConfig, token_count: int, last_usage: Usage | None
    ) -> bool:
        if not router.long_context:
            return False
        threshold = router.long_context_threshold
        if token_count > threshold:
            return True
        return (
            last_usage is not None
            and last_usage.input_tokens > threshold
            and token_count > _LAST_USAGE_MIN_TOKENS
        )

    async def _rewrite_system_prompt(
        self, request: dict[str, Any], config: AppConfig
    ) -> None:
        prompt_path = config.rewrite_system_prompt
        system = request.get("system")
        if not prompt_path or not isinstance(system, list) or len(system) < 2:
            return
        block = system[1]
        if not isinstance(block, dict):
            return
        text = block.get("text")
        if not isinstance(text, str) or _ENV_MARKER not in text:
            return
        try:
            prompt = await asyncio.to_thread(
                Path(prompt_path).expanduser().read_text, encoding="utf-8"
            )
        except OSError as exc:
            logger.warning("system_prompt_rewrite_failed path=%s error=%s", prompt_path, exc)
            return
        block["text"] = f"{prompt}{_ENV_MARKER}{text.split(_ENV_MARKER)[-1]}"

    def _emit(self, event: dict[str, Any]) -> None:
        if self._event_hook is None:
            return
        try:
            self._event_hook(event)
        except Exception as exc:
            logger.debug("event_hook_failed event=%s error=%s", event.get("event"), exc)


def _as_model_string(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _take_subagent_model(request: dict[str, Any]) -> str | None:
    system = request.get("system")
    if not isinstance(system, list) or len(system) < 2:
        return None
    block = system[1]
    if not isinstance(block, dict):
        return None
    text = block.get("text")
    if not isinstance(text, str) or not text.startswith(SUBAGENT_TAG_OPEN):
        return None
    match = _SUBAGENT_PATTERN.search(text)
    if match is None:
        logger.warning("subagent_tag_unterminated")
        return None
    block["text"] = text.replace(match.group(0), "", 1)
    return match.group(1)


def _is_background_model(model: str) -> bool:
    return "claude" in model and "haiku" in model


def _has_web_search_tool(request: dict[str, Any]) -> bool:
    tools = request.get("tools")
    if not isinstance(tools, list):
        return False
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        tool_type = tool.get("type")
        if isinstance(tool_type, str) and tool_type.startswith("web_search"):
            return True
    return False
