"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - No PostgreSQL partial indexes, so "one active session per contact" is
    checked by the store inside the writing transaction.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Workflows — one row per published version
# ──────────────────────────────────────────────────────────────

class WorkflowRow(Base):
    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    name: Mapped[str] = mapped_column(String(256), default="")

    nodes: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)
    trigger_keywords: Mapped[Any] = mapped_column(JSON, default=list)
    settings: Mapped[Any] = mapped_column(JSON, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_workflows_active", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "flow_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(128), nullable=False)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_version: Mapped[int] = mapped_column(Integer, default=1)
    current_node_id: Mapped[str] = mapped_column(String(128), nullable=False)

    context: Mapped[Any] = mapped_column(JSON, default=dict)
    awaiting: Mapped[Any] = mapped_column(JSON, default=dict)
    loop_counters: Mapped[Any] = mapped_column(JSON, default=dict)
    recent_message_ids: Mapped[Any] = mapped_column(JSON, default=list)
    choice_retries: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(String(32), default="active")
    termination_reason: Mapped[str] = mapped_column(String(128), default="")
    revision: Mapped[int] = mapped_column(Integer, default=0)

    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_flow_sessions_contact_status", "contact_id", "status"),
        Index("ix_flow_sessions_workflow", "workflow_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Timers
# ──────────────────────────────────────────────────────────────

class TimerRow(Base):
    __tablename__ = "flow_timers"

    id: Mapped[str] = mapped_column(String(256), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(128), nullable=False)
    node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    lease_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_flow_timers_status_due", "status", "due_at"),
        Index("ix_flow_timers_session", "session_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbound action outbox
# ──────────────────────────────────────────────────────────────

class OutboundActionRow(Base):
    __tablename__ = "outbound_actions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(128), nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), default="")
    node_id: Mapped[str] = mapped_column(String(128), default="")

    rendered_text: Mapped[str] = mapped_column(Text, default="")
    options: Mapped[Any] = mapped_column(JSON, nullable=True)
    header: Mapped[str] = mapped_column(String(256), default="")
    footer: Mapped[str] = mapped_column(String(256), default="")
    button_label: Mapped[str] = mapped_column(String(128), default="")

    delivery_status: Mapped[str] = mapped_column(String(32), default="pending")
    delivery_error: Mapped[str] = mapped_column(Text, default="")
    channel_message_id: Mapped[str] = mapped_column(String(256), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_outbound_actions_status", "delivery_status"),
        Index("ix_outbound_actions_session", "session_id"),
        Index("ix_outbound_actions_channel_msg_id", "channel_message_id"),
    )
