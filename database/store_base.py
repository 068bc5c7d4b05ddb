"""
Abstract Flow Store — Interface for all storage backends.

Implementations:
  - SqlFlowStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFlowStore (dict-based, single-process, no persistence)
  - FileFlowStore     (JSON files on disk, single-process, durable)

Four collections live behind this interface: workflow versions, sessions,
durable timers and the outbound action outbox. Every backend returns fresh
model copies, so callers never alias stored state.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    DeliveryStatus, OutboundAction, Session, SessionStatus,
    TimerKind, TimerRecord, TimerStatus, WorkflowDefinition,
)


class BaseFlowStore(ABC):
    """Interface that all flow store backends must implement."""

    # ── Workflows ─────────────────────────────────────────────

    @abstractmethod
    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """Insert or replace one (id, version) of a workflow."""

    @abstractmethod
    async def load(self, workflow_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        """A specific version, or the latest version when none is given."""

    @abstractmethod
    async def list_active(self) -> list[WorkflowDefinition]:
        ...

    @abstractmethod
    async def list_workflows(self) -> list[WorkflowDefinition]:
        """Latest version of every workflow."""

    @abstractmethod
    async def set_workflow_active(
        self, workflow_id: str, version: Optional[int], activated_at: Optional[datetime] = None,
    ) -> None:
        """Make `version` the only active version of a workflow; None deactivates all versions."""

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def create_session(self, session: Session) -> Session:
        """Insert a session. Raises SessionConflictError if the contact already has an active one."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def get_active_session(self, contact_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        ...

    @abstractmethod
    async def list_sessions(
        self, status: Optional[SessionStatus] = None, contact_id: Optional[str] = None,
    ) -> list[Session]:
        ...

    @abstractmethod
    async def commit_step(self, session: Session, actions: list[OutboundAction]) -> None:
        """Persist a session and its newly emitted actions in one transaction."""

    # ── Timers ────────────────────────────────────────────────

    @abstractmethod
    async def save_timer(self, timer: TimerRecord) -> TimerRecord:
        """Insert or replace a timer by id."""

    @abstractmethod
    async def get_timer(self, timer_id: str) -> Optional[TimerRecord]:
        ...

    @abstractmethod
    async def claim_due_timers(self, now: datetime, lease_until: datetime, limit: int = 100) -> list[TimerRecord]:
        """
        Atomically move due timers to FIRING with a lease and return them.
        Includes FIRING timers whose lease has expired.
        """

    @abstractmethod
    async def complete_timer(self, timer_id: str) -> None:
        ...

    @abstractmethod
    async def cancel_timers(self, session_id: str, kind: Optional[TimerKind] = None) -> int:
        """Cancel pending/firing timers of a session. Returns how many were cancelled."""

    @abstractmethod
    async def list_timers(
        self, session_id: Optional[str] = None, status: Optional[TimerStatus] = None,
    ) -> list[TimerRecord]:
        ...

    # ── Outbox ────────────────────────────────────────────────

    @abstractmethod
    async def get_action(self, action_id: str) -> Optional[OutboundAction]:
        ...

    @abstractmethod
    async def find_action_by_channel_message_id(self, channel_message_id: str) -> Optional[OutboundAction]:
        ...

    @abstractmethod
    async def update_action_delivery(
        self, action_id: str, status: DeliveryStatus,
        error: str = "", channel_message_id: str = "",
    ) -> None:
        ...

    @abstractmethod
    async def list_actions(
        self, status: Optional[DeliveryStatus] = None, session_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[OutboundAction]:
        """Oldest first."""

    async def close(self) -> None:
        """Release backend resources."""
