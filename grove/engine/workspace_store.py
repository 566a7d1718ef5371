"""Durable JSON registry of workspaces.

The whole document ``{"workspaces": {id: Workspace}}`` is read, mutated and
rewritten on every change. Mutations go through a single asyncio lock so
concurrent creations cannot drop each other's entries.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from grove.shared.models.workspace import Workspace
from grove.shared.services.durable_write import atomic_write_json_async, read_json_async

from .errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)


class WorkspaceStore:
    """Single-writer store for :class:`Workspace` records."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def _load(self) -> dict[str, Any]:
        try:
            data = await read_json_async(self._path)
        except json.JSONDecodeError as exc:
            raise StorageError(
                f"Workspace registry is corrupt: {self._path}", detail=str(exc)
            ) from exc
        except OSError as exc:
            raise StorageError(
                f"Cannot read workspace registry: {self._path}", detail=str(exc)
            ) from exc
        if data is None:
            return {"workspaces": {}}
        if not isinstance(data, dict) or not isinstance(data.get("workspaces", {}), dict):
            raise StorageError(f"Workspace registry has an unexpected shape: {self._path}")
        data.setdefault("workspaces", {})
        return data

    async def _save(self, data: dict[str, Any]) -> None:
        try:
            await atomic_write_json_async(self._path, data)
        except OSError as exc:
            raise StorageError(
                f"Cannot write workspace registry: {self._path}", detail=str(exc)
            ) from exc

    async def add(self, workspace: Workspace) -> None:
        async with self._lock:
            data = await self._load()
            data["workspaces"][workspace.id] = workspace.to_dict()
            await self._save(data)
        logger.info(
            "Workspace registered id=%s branch=%s path=%s",
            workspace.id, workspace.branch_name, workspace.worktree_path,
        )

    async def get(self, workspace_id: str) -> Workspace:
        data = await self._load()
        raw = data["workspaces"].get(workspace_id)
        if raw is None:
            raise NotFoundError(f"Workspace not found: {workspace_id}")
        return Workspace.from_dict(raw)

    async def list_all(self) -> list[Workspace]:
        """All workspaces, oldest first."""
        data = await self._load()
        workspaces = []
        for workspace_id, raw in data["workspaces"].items():
            try:
                workspaces.append(Workspace.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed workspace record %s", workspace_id)
        workspaces.sort(key=lambda ws: ws.created_at)
        return workspaces
