from __future__ import annotations

import inspect
from collections.abc import Iterable

from open_agent_router.agents.base import Agent, AgentRegistry
from open_agent_router.utils.plugins import PluginLoadError, load_plugin_object


def load_agent(reference: str) -> Agent:
    candidate = load_plugin_object(reference, default_attr="agent")
    if inspect.isclass(candidate) and issubclass(candidate, Agent):
        candidate = candidate()
    elif callable(candidate) and not isinstance(candidate, Agent):
        candidate = candidate()
    if not isinstance(candidate, Agent):
        raise PluginLoadError(reference, "does not provide an Agent")
    return candidate


def build_agent_registry(references: Iterable[str]) -> AgentRegistry:
    return AgentRegistry(load_agent(reference) for reference in references)
