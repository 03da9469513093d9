from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from open_agent_router.utils.plugins import PluginLoadError, call_plugin, load_plugin_object

CustomRouter = Callable[
    [dict[str, Any], dict[str, Any], dict[str, Any]],
    "str | None | Awaitable[str | None]",
]


def load_custom_router(path: str) -> CustomRouter:
    candidate = load_plugin_object(path, default_attr="router")
    if not callable(candidate):
        raise PluginLoadError(path, "router attribute is not callable")
    return candidate


async def invoke_custom_router(
    custom_router: CustomRouter,
    request: dict[str, Any],
    config: dict[str, Any],
    context: dict[str, Any],
) -> str | None:
    result = await call_plugin(custom_router, request, config, context)
    if not result:
        return None
    return str(result)
