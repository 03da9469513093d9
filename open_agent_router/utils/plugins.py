from __future__ import annotations

import asyncio
import importlib
import importlib.util
import inspect
from collections.abc import Callable
from pathlib import Path
from types import ModuleType
from typing import Any
from uuid import uuid4


class PluginLoadError(RuntimeError):
    def __init__(self, reference: str, reason: str):
        self.reference = reference
        super().__init__(f"Failed to load plugin '{reference}': {reason}")


def load_plugin_object(reference: str, *, default_attr: str) -> Any:
    """Resolve ``reference`` to an object.

    Accepted forms: ``/path/to/file.py``, ``/path/to/file.py:attr``,
    ``package.module`` and ``package.module:attr``. Without an explicit
    attribute, ``default_attr`` is looked up on the module.
    """
    normalized = reference.strip()
    if not normalized:
        raise PluginLoadError(reference, "empty reference")
    target, attr = _split_attr(normalized)
    module = _load_module(target, reference)
    name = attr or default_attr
    try:
        return getattr(module, name)
    except AttributeError as exc:
        raise PluginLoadError(reference, f"module has no attribute '{name}'") from exc


def _split_attr(reference: str) -> tuple[str, str | None]:
    head, sep, tail = reference.rpartition(":")
    # Leave Windows drive letters ("C:\\...") alone.
    if not sep or not head or "/" in tail or "\\" in tail:
        return reference, None
    return head, tail.strip() or None


def _load_module(target: str, reference: str) -> ModuleType:
    if target.endswith(".py") or "/" in target or "\\" in target:
        path = Path(target).expanduser()
        if not path.is_file():
            raise PluginLoadError(reference, f"file not found: {path}")
        spec = importlib.util.spec_from_file_location(
            f"_router_plugin_{path.stem}_{uuid4().hex[:8]}", path
        )
        if spec is None or spec.loader is None:
            raise PluginLoadError(reference, "not an importable Python file")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise PluginLoadError(reference, repr(exc)) from exc
        return module
    try:
        return importlib.import_module(target)
    except Exception as exc:
        raise PluginLoadError(reference, repr(exc)) from exc


async def call_plugin(func: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    ):
        return await func(*args)
    result = await asyncio.to_thread(func, *args)
    if inspect.isawaitable(result):
        result = await result
    return result
