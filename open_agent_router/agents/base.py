from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from open_agent_router.config import AppConfig
from open_agent_router.utils.plugins import call_plugin

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class ToolContext:
    request: dict[str, Any]
    config: AppConfig


ToolHandler = Callable[[Any, ToolContext], Any | Awaitable[Any]]


@dataclass(slots=True)
class Tool:
    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    async def run(self, args: Any, context: ToolContext) -> Any:
        return await call_plugin(self.handler, args, context)


class Agent:
    """Base class for agents.

    Subclasses decide per request whether they take part, may rewrite the
    request, and contribute tools whose calls are executed by the router
    instead of the client.
    """

    name: str = ""

    def __init__(self, name: str | None = None, tools: Iterable[Tool] = ()):
        if name is not None:
            self.name = name
        if not self.name:
            raise ValueError("Agent requires a name.")
        self.tools: dict[str, Tool] = {tool.name: tool for tool in tools}

    def should_handle(self, request: dict[str, Any], config: AppConfig) -> bool:
        return False

    def req_handler(self, request: dict[str, Any], config: AppConfig) -> None:
        return None


class AgentRegistry:
    def __init__(self, agents: Iterable[Agent] = ()):
        self._agents: dict[str, Agent] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        if agent.name in self._agents:
            raise ValueError(f"Agent '{agent.name}' is already registered.")
        self._agents[agent.name] = agent

    def get(self, name: str) -> Agent | None:
        return self._agents.get(name)

    def __len__(self) -> int:
        return len(self._agents)

    def activate(self, request: dict[str, Any], config: AppConfig) -> list[str]:
        active: list[str] = []
        for agent in self._agents.values():
            try:
                if not agent.should_handle(request, config):
                    continue
                agent.req_handler(request, config)
            except Exception as exc:
                logger.warning("agent_activation_failed agent=%s error=%r", agent.name, exc)
                continue
            active.append(agent.name)
            if agent.tools:
                tools = request.get("tools")
                if not isinstance(tools, list):
                    tools = []
                # Follow-up requests already carry the schemas.
                present = {tool.get("name") for tool in tools if isinstance(tool, dict)}
                request["tools"] = [
                    *(
                        tool.schema()
                        for tool in agent.tools.values()
                        if tool.name not in present
                    ),
                    *tools,
                ]
        return active

    def find_tool_owner(self, tool_name: str, active: Iterable[str]) -> Agent | None:
        for name in active:
            agent = self._agents.get(name)
            if agent is not None and tool_name in agent.tools:
                return agent
        return None
