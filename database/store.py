"""
SqlFlowStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Notes on portability:
  - Timer claiming uses SELECT ... FOR UPDATE SKIP LOCKED where the dialect
    supports it; SQLite serializes writers anyway and ignores the clause.
  - SQLite hands back naive datetimes even for timezone-aware columns, so
    every datetime read from a row is normalized to UTC.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import SessionConflictError
from database.models import OutboundActionRow, SessionRow, TimerRow, WorkflowRow
from database.session import close_db, get_session
from database.store_base import BaseFlowStore
from models.schemas import (
    DeliveryStatus, OutboundAction, Session, SessionStatus,
    TimerKind, TimerRecord, TimerStatus, WorkflowDefinition,
)

logger = structlog.get_logger()

_OPEN_TIMER_STATES = (TimerStatus.PENDING.value, TimerStatus.FIRING.value)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SqlFlowStore(BaseFlowStore):
    """
    Persistent flow store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Workflow operations ────────────────────────────────

    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        data = workflow.model_dump(mode="json")
        async with get_session() as db:
            row = await db.get(WorkflowRow, (workflow.id, workflow.version))
            if row is None:
                row = WorkflowRow(id=workflow.id, version=workflow.version)
                db.add(row)
            row.name = workflow.name
            row.nodes = data["nodes"]
            row.edges = data["edges"]
            row.trigger_keywords = data["trigger_keywords"]
            row.settings = data["settings"]
            row.is_active = workflow.is_active
            row.created_at = workflow.created_at
            row.activated_at = workflow.activated_at
        return workflow

    async def load(self, workflow_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        async with get_session() as db:
            if version is not None:
                row = await db.get(WorkflowRow, (workflow_id, version))
            else:
                stmt = (
                    select(WorkflowRow)
                    .where(WorkflowRow.id == workflow_id)
                    .order_by(WorkflowRow.version.desc())
                    .limit(1)
                )
                row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_workflow(row) if row else None

    async def list_active(self) -> list[WorkflowDefinition]:
        async with get_session() as db:
            stmt = select(WorkflowRow).where(WorkflowRow.is_active.is_(True))
            result = await db.execute(stmt)
            return [self._row_to_workflow(r) for r in result.scalars()]

    async def list_workflows(self) -> list[WorkflowDefinition]:
        async with get_session() as db:
            result = await db.execute(select(WorkflowRow).order_by(WorkflowRow.id, WorkflowRow.version))
            latest: dict[str, WorkflowRow] = {}
            for row in result.scalars():
                latest[row.id] = row  # ordered by version, last one wins
            return [self._row_to_workflow(r) for r in latest.values()]

    async def set_workflow_active(
        self, workflow_id: str, version: Optional[int], activated_at: Optional[datetime] = None,
    ) -> None:
        async with get_session() as db:
            await db.execute(
                update(WorkflowRow)
                .where(WorkflowRow.id == workflow_id)
                .values(is_active=False)
            )
            if version is not None:
                await db.execute(
                    update(WorkflowRow)
                    .where(and_(WorkflowRow.id == workflow_id, WorkflowRow.version == version))
                    .values(is_active=True, activated_at=activated_at or datetime.now(timezone.utc))
                )

    # ── Session operations ─────────────────────────────────

    async def _active_session_id(self, db: AsyncSession, contact_id: str) -> Optional[str]:
        stmt = (
            select(SessionRow.id)
            .where(and_(
                SessionRow.contact_id == contact_id,
                SessionRow.status == SessionStatus.ACTIVE.value,
            ))
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _write_session(self, db: AsyncSession, session: Session):
        if session.is_active:
            existing = await self._active_session_id(db, session.contact_id)
            if existing and existing != session.id:
                raise SessionConflictError(session.contact_id, existing)

        data = session.model_dump(mode="json")
        row = await db.get(SessionRow, session.id)
        if row is None:
            row = SessionRow(id=session.id)
            db.add(row)
        row.contact_id = session.contact_id
        row.workflow_id = session.workflow_id
        row.workflow_version = session.workflow_version
        row.current_node_id = session.current_node_id
        row.context = data["context"]
        row.awaiting = data["awaiting"]
        row.loop_counters = data["loop_counters"]
        row.recent_message_ids = data["recent_message_ids"]
        row.choice_retries = session.choice_retries
        row.status = session.status.value
        row.termination_reason = session.termination_reason
        row.revision = session.revision
        row.last_activity_at = session.last_activity_at
        row.created_at = session.created_at
        row.ended_at = session.ended_at

    async def create_session(self, session: Session) -> Session:
        async with get_session() as db:
            await self._write_session(db, session)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with get_session() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def get_active_session(self, contact_id: str) -> Optional[Session]:
        async with get_session() as db:
            stmt = (
                select(SessionRow)
                .where(and_(
                    SessionRow.contact_id == contact_id,
                    SessionRow.status == SessionStatus.ACTIVE.value,
                ))
                .order_by(SessionRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def save_session(self, session: Session) -> None:
        async with get_session() as db:
            await self._write_session(db, session)

    async def list_sessions(
        self, status: Optional[SessionStatus] = None, contact_id: Optional[str] = None,
    ) -> list[Session]:
        async with get_session() as db:
            stmt = select(SessionRow).order_by(SessionRow.created_at)
            if status is not None:
                stmt = stmt.where(SessionRow.status == status.value)
            if contact_id is not None:
                stmt = stmt.where(SessionRow.contact_id == contact_id)
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars()]

    async def commit_step(self, session: Session, actions: list[OutboundAction]) -> None:
        async with get_session() as db:
            await self._write_session(db, session)
            for action in actions:
                db.add(self._action_to_row(action))

    # ── Timer operations ───────────────────────────────────

    async def save_timer(self, timer: TimerRecord) -> TimerRecord:
        async with get_session() as db:
            row = await db.get(TimerRow, timer.id)
            if row is None:
                row = TimerRow(id=timer.id)
                db.add(row)
            row.kind = timer.kind.value
            row.session_id = timer.session_id
            row.contact_id = timer.contact_id
            row.node_id = timer.node_id
            row.due_at = timer.due_at
            row.status = timer.status.value
            row.lease_until = timer.lease_until
            row.created_at = timer.created_at
        return timer

    async def get_timer(self, timer_id: str) -> Optional[TimerRecord]:
        async with get_session() as db:
            row = await db.get(TimerRow, timer_id)
            return self._row_to_timer(row) if row else None

    async def claim_due_timers(self, now: datetime, lease_until: datetime, limit: int = 100) -> list[TimerRecord]:
        async with get_session() as db:
            stmt = (
                select(TimerRow)
                .where(and_(
                    TimerRow.due_at <= now,
                    or_(
                        TimerRow.status == TimerStatus.PENDING.value,
                        and_(
                            TimerRow.status == TimerStatus.FIRING.value,
                            TimerRow.lease_until <= now,
                        ),
                    ),
                ))
                .order_by(TimerRow.due_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            rows = (await db.execute(stmt)).scalars().all()
            for row in rows:
                row.status = TimerStatus.FIRING.value
                row.lease_until = lease_until
            return [self._row_to_timer(r) for r in rows]

    async def complete_timer(self, timer_id: str) -> None:
        async with get_session() as db:
            await db.execute(
                update(TimerRow)
                .where(and_(TimerRow.id == timer_id, TimerRow.status == TimerStatus.FIRING.value))
                .values(status=TimerStatus.FIRED.value, lease_until=None)
            )

    async def cancel_timers(self, session_id: str, kind: Optional[TimerKind] = None) -> int:
        async with get_session() as db:
            stmt = (
                update(TimerRow)
                .where(and_(
                    TimerRow.session_id == session_id,
                    TimerRow.status.in_(_OPEN_TIMER_STATES),
                ))
                .values(status=TimerStatus.CANCELLED.value, lease_until=None)
            )
            if kind is not None:
                stmt = stmt.where(TimerRow.kind == kind.value)
            result = await db.execute(stmt)
            return result.rowcount or 0

    async def list_timers(
        self, session_id: Optional[str] = None, status: Optional[TimerStatus] = None,
    ) -> list[TimerRecord]:
        async with get_session() as db:
            stmt = select(TimerRow).order_by(TimerRow.due_at)
            if session_id is not None:
                stmt = stmt.where(TimerRow.session_id == session_id)
            if status is not None:
                stmt = stmt.where(TimerRow.status == status.value)
            result = await db.execute(stmt)
            return [self._row_to_timer(r) for r in result.scalars()]

    # ── Outbox operations ──────────────────────────────────

    async def get_action(self, action_id: str) -> Optional[OutboundAction]:
        async with get_session() as db:
            row = await db.get(OutboundActionRow, action_id)
            return self._row_to_action(row) if row else None

    async def find_action_by_channel_message_id(self, channel_message_id: str) -> Optional[OutboundAction]:
        if not channel_message_id:
            return None
        async with get_session() as db:
            stmt = select(OutboundActionRow).where(
                OutboundActionRow.channel_message_id == channel_message_id
            ).limit(1)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_action(row) if row else None

    async def update_action_delivery(
        self, action_id: str, status: DeliveryStatus,
        error: str = "", channel_message_id: str = "",
    ) -> None:
        values: dict[str, Any] = {"delivery_status": status.value, "delivery_error": error}
        if channel_message_id:
            values["channel_message_id"] = channel_message_id
        async with get_session() as db:
            await db.execute(
                update(OutboundActionRow)
                .where(OutboundActionRow.id == action_id)
                .values(**values)
            )

    async def list_actions(
        self, status: Optional[DeliveryStatus] = None, session_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[OutboundAction]:
        async with get_session() as db:
            stmt = select(OutboundActionRow).order_by(OutboundActionRow.created_at).limit(limit)
            if status is not None:
                stmt = stmt.where(OutboundActionRow.delivery_status == status.value)
            if session_id is not None:
                stmt = stmt.where(OutboundActionRow.session_id == session_id)
            result = await db.execute(stmt)
            return [self._row_to_action(r) for r in result.scalars()]

    async def close(self) -> None:
        await close_db()

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_workflow(row: WorkflowRow) -> WorkflowDefinition:
        return WorkflowDefinition.model_validate({
            "id": row.id,
            "version": row.version,
            "name": row.name,
            "nodes": row.nodes or [],
            "edges": row.edges or [],
            "trigger_keywords": row.trigger_keywords or [],
            "settings": row.settings or {},
            "is_active": row.is_active,
            "created_at": _aware(row.created_at),
            "activated_at": _aware(row.activated_at),
        })

    @staticmethod
    def _row_to_session(row: SessionRow) -> Session:
        return Session.model_validate({
            "id": row.id,
            "contact_id": row.contact_id,
            "workflow_id": row.workflow_id,
            "workflow_version": row.workflow_version,
            "current_node_id": row.current_node_id,
            "context": row.context or {},
            "awaiting": row.awaiting or {},
            "loop_counters": row.loop_counters or {},
            "recent_message_ids": row.recent_message_ids or [],
            "choice_retries": row.choice_retries,
            "status": row.status,
            "termination_reason": row.termination_reason,
            "revision": row.revision,
            "last_activity_at": _aware(row.last_activity_at),
            "created_at": _aware(row.created_at),
            "ended_at": _aware(row.ended_at),
        })

    @staticmethod
    def _row_to_timer(row: TimerRow) -> TimerRecord:
        return TimerRecord(
            id=row.id,
            kind=row.kind,
            session_id=row.session_id,
            contact_id=row.contact_id,
            node_id=row.node_id,
            due_at=_aware(row.due_at),
            status=row.status,
            lease_until=_aware(row.lease_until),
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _action_to_row(action: OutboundAction) -> OutboundActionRow:
        return OutboundActionRow(
            id=action.id,
            contact_id=action.contact_id,
            session_id=action.session_id,
            node_id=action.node_id,
            rendered_text=action.rendered_text,
            options=action.options,
            header=action.header,
            footer=action.footer,
            button_label=action.button_label,
            delivery_status=action.delivery_status.value,
            delivery_error=action.delivery_error,
            channel_message_id=action.channel_message_id,
            created_at=action.created_at,
        )

    @staticmethod
    def _row_to_action(row: OutboundActionRow) -> OutboundAction:
        return OutboundAction(
            id=row.id,
            contact_id=row.contact_id,
            session_id=row.session_id,
            node_id=row.node_id,
            rendered_text=row.rendered_text,
            options=row.options,
            header=row.header,
            footer=row.footer,
            button_label=row.button_label,
            delivery_status=row.delivery_status,
            delivery_error=row.delivery_error,
            channel_message_id=row.channel_message_id,
            created_at=_aware(row.created_at),
        )
