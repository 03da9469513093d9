from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from open_agent_router.config import RouterConfig, parse_router_section
from open_agent_router.runtime.bounded_maps import LRUCache
from open_agent_router.utils.yaml_utils import read_json_dict

logger = logging.getLogger("uvicorn.error")


class ProjectResolver:
    def __init__(
        self,
        projects_root: str | Path,
        home_root: str | Path,
        *,
        cache_size: int = 1000,
    ):
        self.projects_root = Path(projects_root).expanduser()
        self.home_root = Path(home_root).expanduser()
        self._cache: LRUCache[str, str | None] = LRUCache(cache_size)

    async def search_project_by_session(self, session_id: str) -> str | None:
        if self._cache.contains(session_id):
            return self._cache.get(session_id)
        try:
            project = await asyncio.to_thread(self._scan_for_session, session_id)
        except OSError as exc:
            logger.warning(
                "project_scan_failed session_id=%s root=%s error=%s",
                session_id,
                self.projects_root,
                exc,
            )
            project = None
        self._cache.set(session_id, project)
        return project

    def _scan_for_session(self, session_id: str) -> str | None:
        filename = f"{session_id}.jsonl"
        for entry in sorted(self.projects_root.iterdir()):
            if entry.is_dir() and (entry / filename).is_file():
                return entry.name
        return None

    async def resolve_router(self, session_id: str | None) -> RouterConfig | None:
        if not session_id:
            return None
        project = await self.search_project_by_session(session_id)
        if project is None:
            return None
        project_dir = self.home_root / project
        for candidate in (project_dir / f"{session_id}.json", project_dir / "config.json"):
            payload = await asyncio.to_thread(read_json_dict, candidate)
            if payload is None or "Router" not in payload:
                continue
            router = parse_router_section(payload["Router"])
            if router is None:
                logger.warning(
                    "project_router_invalid session_id=%s path=%s", session_id, candidate
                )
                continue
            logger.info(
                "project_router_override session_id=%s project=%s path=%s",
                session_id,
                project,
                candidate,
            )
            return router
        return None
