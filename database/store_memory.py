"""
InMemoryFlowStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlFlowStore
  - Safe under asyncio (single event loop, no awaits inside a mutation)
  - All data lost on process restart

Records are kept as JSON-ready dicts and re-validated on every read, so a
caller mutating a returned model never touches stored state.

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from core.errors import SessionConflictError
from database.store_base import BaseFlowStore
from models.schemas import (
    DeliveryStatus, OutboundAction, Session, SessionStatus,
    TimerKind, TimerRecord, TimerStatus, WorkflowDefinition,
)

logger = structlog.get_logger()

_OPEN_TIMER_STATES = (TimerStatus.PENDING.value, TimerStatus.FIRING.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(model) -> dict[str, Any]:
    return model.model_dump(mode="json")


def _wf_key(workflow_id: str, version: int) -> str:
    return f"{workflow_id}:{version}"


class InMemoryFlowStore(BaseFlowStore):
    """
    Full-featured in-memory store with the same interface as SqlFlowStore.
    """

    def __init__(self):
        self._workflows: dict[str, dict] = {}        # "id:version" → workflow dict
        self._sessions: dict[str, dict] = {}         # id → session dict
        self._timers: dict[str, dict] = {}           # id → timer dict
        self._actions: dict[str, dict] = {}          # id → action dict (insertion ordered)

        # Indexes
        self._active_by_contact: dict[str, str] = {}   # contact_id → active session id
        logger.info("inmemory_store_initialized")

    # ── Workflows ─────────────────────────────────────────

    def _versions(self, workflow_id: str) -> list[dict]:
        return sorted(
            (w for w in self._workflows.values() if w["id"] == workflow_id),
            key=lambda w: w["version"],
        )

    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        self._workflows[_wf_key(workflow.id, workflow.version)] = _dump(workflow)
        return workflow

    async def load(self, workflow_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        if version is not None:
            data = self._workflows.get(_wf_key(workflow_id, version))
        else:
            versions = self._versions(workflow_id)
            data = versions[-1] if versions else None
        return WorkflowDefinition.model_validate(data) if data else None

    async def list_active(self) -> list[WorkflowDefinition]:
        return [WorkflowDefinition.model_validate(w) for w in self._workflows.values() if w["is_active"]]

    async def list_workflows(self) -> list[WorkflowDefinition]:
        latest: dict[str, dict] = {}
        for w in self._workflows.values():
            if w["id"] not in latest or w["version"] > latest[w["id"]]["version"]:
                latest[w["id"]] = w
        return [WorkflowDefinition.model_validate(w) for w in latest.values()]

    async def set_workflow_active(
        self, workflow_id: str, version: Optional[int], activated_at: Optional[datetime] = None,
    ) -> None:
        for w in self._versions(workflow_id):
            w["is_active"] = w["version"] == version
            if w["is_active"]:
                w["activated_at"] = (activated_at or _utcnow()).isoformat()

    # ── Sessions ──────────────────────────────────────────

    def _index_session(self, data: dict):
        contact_id = data["contact_id"]
        if data["status"] == SessionStatus.ACTIVE.value:
            self._active_by_contact[contact_id] = data["id"]
        elif self._active_by_contact.get(contact_id) == data["id"]:
            del self._active_by_contact[contact_id]

    async def create_session(self, session: Session) -> Session:
        existing = self._active_by_contact.get(session.contact_id)
        if existing and existing != session.id:
            raise SessionConflictError(session.contact_id, existing)
        data = _dump(session)
        self._sessions[session.id] = data
        self._index_session(data)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        data = self._sessions.get(session_id)
        return Session.model_validate(data) if data else None

    async def get_active_session(self, contact_id: str) -> Optional[Session]:
        sid = self._active_by_contact.get(contact_id)
        if not sid:
            return None
        return await self.get_session(sid)

    async def save_session(self, session: Session) -> None:
        existing = self._active_by_contact.get(session.contact_id)
        if session.is_active and existing and existing != session.id:
            raise SessionConflictError(session.contact_id, existing)
        data = _dump(session)
        self._sessions[session.id] = data
        self._index_session(data)

    async def list_sessions(
        self, status: Optional[SessionStatus] = None, contact_id: Optional[str] = None,
    ) -> list[Session]:
        results = [
            s for s in self._sessions.values()
            if (status is None or s["status"] == status.value)
            and (contact_id is None or s["contact_id"] == contact_id)
        ]
        results.sort(key=lambda s: s["created_at"])
        return [Session.model_validate(s) for s in results]

    async def commit_step(self, session: Session, actions: list[OutboundAction]) -> None:
        await self.save_session(session)
        for action in actions:
            self._actions[action.id] = _dump(action)

    # ── Timers ────────────────────────────────────────────

    async def save_timer(self, timer: TimerRecord) -> TimerRecord:
        self._timers[timer.id] = _dump(timer)
        return timer

    async def get_timer(self, timer_id: str) -> Optional[TimerRecord]:
        data = self._timers.get(timer_id)
        return TimerRecord.model_validate(data) if data else None

    async def claim_due_timers(self, now: datetime, lease_until: datetime, limit: int = 100) -> list[TimerRecord]:
        due = [
            t for t in (TimerRecord.model_validate(d) for d in self._timers.values())
            if t.is_claimable(now)
        ]
        due.sort(key=lambda t: t.due_at)
        claimed = []
        for timer in due[:limit]:
            timer.status = TimerStatus.FIRING
            timer.lease_until = lease_until
            self._timers[timer.id] = _dump(timer)
            claimed.append(timer)
        return claimed

    async def complete_timer(self, timer_id: str) -> None:
        data = self._timers.get(timer_id)
        if data and data["status"] == TimerStatus.FIRING.value:
            data["status"] = TimerStatus.FIRED.value
            data["lease_until"] = None

    async def cancel_timers(self, session_id: str, kind: Optional[TimerKind] = None) -> int:
        count = 0
        for data in self._timers.values():
            if data["session_id"] != session_id or data["status"] not in _OPEN_TIMER_STATES:
                continue
            if kind is not None and data["kind"] != kind.value:
                continue
            data["status"] = TimerStatus.CANCELLED.value
            data["lease_until"] = None
            count += 1
        return count

    async def list_timers(
        self, session_id: Optional[str] = None, status: Optional[TimerStatus] = None,
    ) -> list[TimerRecord]:
        results = [
            t for t in self._timers.values()
            if (session_id is None or t["session_id"] == session_id)
            and (status is None or t["status"] == status.value)
        ]
        results.sort(key=lambda t: t["due_at"])
        return [TimerRecord.model_validate(t) for t in results]

    # ── Outbox ────────────────────────────────────────────

    async def get_action(self, action_id: str) -> Optional[OutboundAction]:
        data = self._actions.get(action_id)
        return OutboundAction.model_validate(data) if data else None

    async def find_action_by_channel_message_id(self, channel_message_id: str) -> Optional[OutboundAction]:
        if not channel_message_id:
            return None
        data = next(
            (a for a in self._actions.values() if a["channel_message_id"] == channel_message_id),
            None,
        )
        return OutboundAction.model_validate(data) if data else None

    async def update_action_delivery(
        self, action_id: str, status: DeliveryStatus,
        error: str = "", channel_message_id: str = "",
    ) -> None:
        data = self._actions.get(action_id)
        if not data:
            logger.warning("outbox_action_not_found", action_id=action_id)
            return
        data["delivery_status"] = status.value
        data["delivery_error"] = error
        if channel_message_id:
            data["channel_message_id"] = channel_message_id

    async def list_actions(
        self, status: Optional[DeliveryStatus] = None, session_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[OutboundAction]:
        results = [
            a for a in self._actions.values()
            if (status is None or a["delivery_status"] == status.value)
            and (session_id is None or a["session_id"] == session_id)
        ]
        return [OutboundAction.model_validate(a) for a in results[:limit]]
