"""
FileFlowStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    workflows.json
    sessions.json
    timers.json
    actions.json

Features:
  - Survives process restarts (unlike InMemoryFlowStore), so delay timers
    and stalled sessions are still there on the next startup
  - No external dependencies (no database server)
  - Writes go to a .tmp file and are renamed into place
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryFlowStore
from models.schemas import (
    DeliveryStatus, OutboundAction, Session, TimerKind, TimerRecord, WorkflowDefinition,
)

logger = structlog.get_logger()

_COLLECTIONS = ["workflows", "sessions", "timers", "actions"]


class FileFlowStore(InMemoryFlowStore):
    """
    Extends InMemoryFlowStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.

    For higher performance, set flush_interval_s > 0 to batch writes.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error",
                               collection=collection, error=str(e))
                continue
            self._set_collection(collection, data if isinstance(data, dict) else {})
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _set_collection(self, collection: str, data: dict[str, Any]):
        """Restore a collection from loaded JSON data."""
        if collection == "workflows":
            self._workflows = data
        elif collection == "sessions":
            self._sessions = data
            # Rebuild index
            self._active_by_contact.clear()
            for s in self._sessions.values():
                self._index_session(s)
        elif collection == "timers":
            self._timers = data
        elif collection == "actions":
            self._actions = data

    def _get_collection_data(self, collection: str) -> dict[str, Any]:
        """Get serializable data for a collection."""
        mapping = {
            "workflows": self._workflows,
            "sessions": self._sessions,
            "timers": self._timers,
            "actions": self._actions,
        }
        return mapping.get(collection, {})

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(
                    self._deferred_flush()
                )

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        result = await super().save_workflow(workflow)
        self._mark_dirty("workflows")
        return result

    async def set_workflow_active(
        self, workflow_id: str, version: Optional[int], activated_at: Optional[datetime] = None,
    ) -> None:
        await super().set_workflow_active(workflow_id, version, activated_at)
        self._mark_dirty("workflows")

    async def create_session(self, session: Session) -> Session:
        result = await super().create_session(session)
        self._mark_dirty("sessions")
        return result

    async def save_session(self, session: Session) -> None:
        await super().save_session(session)
        self._mark_dirty("sessions")

    async def commit_step(self, session: Session, actions: list[OutboundAction]) -> None:
        await super().commit_step(session, actions)
        self._mark_dirty("sessions", "actions")

    async def save_timer(self, timer: TimerRecord) -> TimerRecord:
        result = await super().save_timer(timer)
        self._mark_dirty("timers")
        return result

    async def claim_due_timers(self, now: datetime, lease_until: datetime, limit: int = 100) -> list[TimerRecord]:
        claimed = await super().claim_due_timers(now, lease_until, limit)
        if claimed:
            self._mark_dirty("timers")
        return claimed

    async def complete_timer(self, timer_id: str) -> None:
        await super().complete_timer(timer_id)
        self._mark_dirty("timers")

    async def cancel_timers(self, session_id: str, kind: Optional[TimerKind] = None) -> int:
        count = await super().cancel_timers(session_id, kind)
        if count:
            self._mark_dirty("timers")
        return count

    async def update_action_delivery(
        self, action_id: str, status: DeliveryStatus,
        error: str = "", channel_message_id: str = "",
    ) -> None:
        await super().update_action_delivery(action_id, status, error, channel_message_id)
        self._mark_dirty("actions")
