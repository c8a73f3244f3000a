# -*- coding: utf-8 -*-
"""
Snapshot persistence for CarbonFlow sessions.

``SnapshotRepository`` is the opaque asynchronous store a session saves to
and restores from. Two implementations ship with the package:

    - InMemorySnapshotRepository: dict-backed, for tests and short-lived
      processes.
    - JsonFileSnapshotRepository: one ``<workflow_id>.json`` file per
      snapshot under a directory; file I/O runs in a worker thread.

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from carbonflow.config import get_config
from carbonflow.exceptions import GraphStoreError
from carbonflow.models import GraphSnapshot

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")


class SnapshotRepository(Protocol):
    """Asynchronous snapshot store keyed by workflow id."""

    async def save(self, snapshot: GraphSnapshot) -> None:
        ...

    async def load(self, workflow_id: str) -> Optional[GraphSnapshot]:
        """Return the stored snapshot, or None when there is none."""
        ...


def _require_workflow_id(snapshot: GraphSnapshot) -> str:
    if not snapshot.workflow_id:
        raise GraphStoreError("cannot save a snapshot without a workflow id")
    return snapshot.workflow_id


class InMemorySnapshotRepository:
    """Dict-backed repository. Stores deep copies so callers cannot alias state."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, GraphSnapshot] = {}

    async def save(self, snapshot: GraphSnapshot) -> None:
        workflow_id = _require_workflow_id(snapshot)
        self._snapshots[workflow_id] = snapshot.model_copy(deep=True)
        logger.debug("Saved snapshot %s in memory", workflow_id)

    async def load(self, workflow_id: str) -> Optional[GraphSnapshot]:
        snapshot = self._snapshots.get(workflow_id)
        return snapshot.model_copy(deep=True) if snapshot is not None else None

    def list_ids(self) -> List[str]:
        return sorted(self._snapshots)


class JsonFileSnapshotRepository:
    """One JSON file per workflow id under ``directory``.

    Files hold the camelCase wire form of :class:`GraphSnapshot`.

    Example:
        >>> repo = JsonFileSnapshotRepository("/tmp/snapshots")
        >>> await repo.save(store.snapshot())
        >>> restored = await repo.load("wf-1")
    """

    def __init__(self, directory: Optional[Union[str, Path]] = None) -> None:
        self.directory = Path(directory or get_config().snapshot_dir)

    def path_for(self, workflow_id: str) -> Path:
        """File path of a workflow's snapshot.

        Raises:
            GraphStoreError: If the id is not a safe file name.
        """
        if not _SAFE_ID.match(workflow_id):
            raise GraphStoreError(
                f"workflow id '{workflow_id}' is not a valid snapshot name",
                context={"workflow_id": workflow_id},
            )
        return self.directory / f"{workflow_id}.json"

    async def save(self, snapshot: GraphSnapshot) -> None:
        path = self.path_for(_require_workflow_id(snapshot))
        data = snapshot.model_dump_json(by_alias=True, indent=2)
        await asyncio.to_thread(self._write, path, data)
        logger.info("Saved snapshot %s to %s", snapshot.workflow_id, path)

    async def load(self, workflow_id: str) -> Optional[GraphSnapshot]:
        path = self.path_for(workflow_id)
        if not path.exists():
            logger.debug("No snapshot file for %s", workflow_id)
            return None
        data = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return GraphSnapshot.model_validate_json(data)

    def list_ids(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    @staticmethod
    def _write(path: Path, data: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(data, encoding="utf-8")
        tmp.replace(path)


__all__ = [
    "SnapshotRepository",
    "InMemorySnapshotRepository",
    "JsonFileSnapshotRepository",
]
