from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import json5

from open_agent_router.agents.base import Agent, AgentRegistry, ToolContext
from open_agent_router.config import AppConfig
from open_agent_router.streaming.rewriter import StreamController, rewrite_stream
from open_agent_router.streaming.sse import SSEEvent, aiter_sse_bytes, aiter_sse_events

logger = logging.getLogger("uvicorn.error")

UpstreamCaller = Callable[[dict[str, Any]], Awaitable[AsyncIterable[bytes] | None]]
EventHook = Callable[[dict[str, Any]], None]

_SPLICE_FRAMING_EVENTS = {"message_start", "message_stop"}
_PREMATURE_CLOSE_ERRORS = (httpx.RequestError, httpx.StreamError, ConnectionError)


@dataclass(slots=True)
class StreamState:
    current_tool_index: int = -1
    current_tool_name: str = ""
    current_tool_id: str = ""
    accumulated_args: str = ""
    active_agent: str | None = None
    assistant_blocks: list[dict[str, Any]] = field(default_factory=list)
    tool_result_blocks: list[dict[str, Any]] = field(default_factory=list)

    @property
    def tool_open(self) -> bool:
        return self.current_tool_index > -1

    def open_tool(self, *, index: int, name: str, tool_id: str, agent: str) -> None:
        self.current_tool_index = index
        self.current_tool_name = name
        self.current_tool_id = tool_id
        self.accumulated_args = ""
        self.active_agent = agent

    def reset_tool(self) -> None:
        self.current_tool_index = -1
        self.current_tool_name = ""
        self.current_tool_id = ""
        self.accumulated_args = ""
        self.active_agent = None

    def take_collected(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        collected = (self.assistant_blocks, self.tool_result_blocks)
        self.assistant_blocks = []
        self.tool_result_blocks = []
        return collected


class AgentInterceptionPipeline:
    """Runs agent tools found in a streamed response and splices the follow-up.

    Tool calls owned by an active agent are hidden from the client. Their
    handlers run locally, and at ``message_delta`` the conversation is
    extended with the calls and results and sent upstream again. The events
    of that second response replace the original ``message_delta``, minus
    their own ``message_start``/``message_stop`` framing.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        config: AppConfig,
        *,
        upstream_caller: UpstreamCaller,
        event_hook: EventHook | None = None,
    ):
        self.registry = registry
        self.config = config
        self.upstream_caller = upstream_caller
        self._event_hook = event_hook

    def intercept_bytes(
        self,
        chunks: AsyncIterable[bytes],
        *,
        request: dict[str, Any],
        active_agents: list[str],
    ) -> AsyncIterator[bytes]:
        events = aiter_sse_events(chunks)
        return aiter_sse_bytes(
            self.intercept(events, request=request, active_agents=active_agents)
        )

    def intercept(
        self,
        events: AsyncIterable[SSEEvent],
        *,
        request: dict[str, Any],
        active_agents: list[str],
    ) -> AsyncIterator[SSEEvent]:
        state = StreamState()

        async def on_event(
            event: SSEEvent, controller: StreamController[SSEEvent]
        ) -> SSEEvent | None:
            return await self._handle_event(
                event,
                controller,
                state=state,
                request=request,
                active_agents=active_agents,
            )

        return rewrite_stream(events, on_event)

    async def _handle_event(
        self,
        event: SSEEvent,
        controller: StreamController[SSEEvent],
        *,
        state: StreamState,
        request: dict[str, Any],
        active_agents: list[str],
    ) -> SSEEvent | None:
        payload = event.payload
        event_type = event.event or payload.get("type")

        if event_type == "content_block_start":
            block = payload.get("content_block")
            tool_name = block.get("name") if isinstance(block, dict) else None
            if isinstance(tool_name, str) and tool_name:
                agent = self.registry.find_tool_owner(tool_name, active_agents)
                index = _as_index(payload.get("index"))
                if agent is not None and index is not None:
                    if state.tool_open:
                        logger.warning(
                            "agent_tool_call_abandoned tool=%s index=%d",
                            state.current_tool_name,
                            state.current_tool_index,
                        )
                    state.open_tool(
                        index=index,
                        name=tool_name,
                        tool_id=str(block.get("id") or ""),
                        agent=agent.name,
                    )
                    return None

        if state.tool_open and _as_index(payload.get("index")) == state.current_tool_index:
            delta = payload.get("delta")
            if isinstance(delta, dict) and delta.get("type") == "input_json_delta":
                partial = delta.get("partial_json")
                if isinstance(partial, str):
                    state.accumulated_args += partial
                return None
            if event_type == "content_block_stop":
                await self._complete_tool_call(state, request)
                return None

        if event_type == "message_delta" and state.tool_result_blocks:
            spliced = await self._splice_follow_up(state, controller, request)
            return None if spliced else event

        return event

    async def _complete_tool_call(self, state: StreamState, request: dict[str, Any]) -> None:
        agent = self.registry.get(state.active_agent or "")
        tool_name = state.current_tool_name
        tool_id = state.current_tool_id
        ok = False
        try:
            tool = agent.tools.get(tool_name) if isinstance(agent, Agent) else None
            if tool is None:
                raise LookupError(f"tool '{tool_name}' is no longer registered")
            args = _parse_tool_arguments(state.accumulated_args)
            result = await tool.run(args, ToolContext(request=request, config=self.config))
        except Exception as exc:
            logger.warning(
                "agent_tool_call_failed agent=%s tool=%s tool_use_id=%s error=%r",
                state.active_agent,
                tool_name,
                tool_id,
                exc,
            )
        else:
            ok = True
            state.assistant_blocks.append(
                {"type": "tool_use", "id": tool_id, "name": tool_name, "input": args}
            )
            state.tool_result_blocks.append(
                {
                    "type": "tool_result",
                    "tool_use_id": tool_id,
                    "content": _tool_result_content(result),
                }
            )
            logger.info(
                "agent_tool_call agent=%s tool=%s tool_use_id=%s",
                state.active_agent,
                tool_name,
                tool_id,
            )
        self._emit(
            {
                "event": "agent_tool_call",
                "agent": state.active_agent,
                "tool": tool_name,
                "tool_use_id": tool_id,
                "ok": ok,
            }
        )
        state.reset_tool()

    async def _splice_follow_up(
        self,
        state: StreamState,
        controller: StreamController[SSEEvent],
        request: dict[str, Any],
    ) -> bool:
        assistant_blocks, tool_result_blocks = state.take_collected()
        messages = request.get("messages")
        if not isinstance(messages, list):
            messages = []
            request["messages"] = messages
        messages.append({"role": "assistant", "content": assistant_blocks})
        messages.append({"role": "user", "content": tool_result_blocks})

        try:
            chunks = await self.upstream_caller(request)
        except _PREMATURE_CLOSE_ERRORS as exc:
            logger.warning("agent_splice_request_failed error=%r", exc)
            chunks = None
        if chunks is None:
            self._emit({"event": "agent_splice", "status": "failed", "events": 0})
            return False

        forwarded = 0
        status = "complete"
        try:
            async for nested in aiter_sse_events(chunks):
                if nested.event in _SPLICE_FRAMING_EVENTS:
                    continue
                if controller.closed:
                    status = "aborted"
                    break
                await controller.emit(nested)
                forwarded += 1
        except _PREMATURE_CLOSE_ERRORS as exc:
            status = "aborted"
            logger.warning("agent_splice_stream_closed_prematurely error=%r", exc)
        except asyncio.CancelledError:
            status = "cancelled"
            raise
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
            self._emit({"event": "agent_splice", "status": status, "events": forwarded})
        return True

    def _emit(self, event: dict[str, Any]) -> None:
        if self._event_hook is None:
            return
        try:
            self._event_hook(event)
        except Exception as exc:
            logger.debug("event_hook_failed event=%s error=%s", event.get("event"), exc)


def _as_index(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _parse_tool_arguments(text: str) -> Any:
    if not text.strip():
        return {}
    return json5.loads(text)


def _tool_result_content(result: Any) -> Any:
    if result is None:
        return ""
    if isinstance(result, (str, list)):
        return result
    try:
        return json.dumps(result, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)
