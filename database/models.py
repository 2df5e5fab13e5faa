"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB. PostgreSQL and MySQL
    store native JSON; SQLite serializes to TEXT.
  - No partial indexes. "At most one active session per (bot, user)" is
    enforced by a unique ``active_key`` column that is NULL once the session
    closes (NULLs never collide under a unique constraint).
  - Interaction idempotency is a unique ``dedup_key`` column.
  - String primary keys (uuid hex), no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint,
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
#  Bots
# ──────────────────────────────────────────────────────────────

class BotRow(Base):
    __tablename__ = "bots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    trigger_keywords: Mapped[Any] = mapped_column(JSON, default=list)
    flow_data: Mapped[Any] = mapped_column(JSON, default=dict)
    channel: Mapped[str] = mapped_column(String(32), default="whatsapp")
    version: Mapped[int] = mapped_column(Integer, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_bots_active", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class BotSessionRow(Base):
    __tablename__ = "bot_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    bot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(256), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(128), default="")
    channel: Mapped[str] = mapped_column(String(32), default="whatsapp")
    status: Mapped[str] = mapped_column(String(32), default="active")
    current_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    trigger_keyword: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    # "<bot_id>:<user_id>" while active, NULL once closed
    active_key: Mapped[Optional[str]] = mapped_column(String(330), nullable=True, unique=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    wake_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    flow_snapshot: Mapped[Any] = mapped_column(JSON, default=dict)
    bot_version: Mapped[int] = mapped_column(Integer, default=1)
    pending: Mapped[Any] = mapped_column(JSON, nullable=True)
    ab_draws: Mapped[Any] = mapped_column(JSON, default=dict)
    ab_epoch: Mapped[int] = mapped_column(Integer, default=0)
    seen_events: Mapped[Any] = mapped_column(JSON, default=list)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_bot_sessions_bot_started", "bot_id", "started_at"),
        Index("ix_bot_sessions_status", "status"),
        Index("ix_bot_sessions_conversation", "conversation_id"),
        Index("ix_bot_sessions_correlation", "correlation_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Node interactions
# ──────────────────────────────────────────────────────────────

class NodeInteractionRow(Base):
    __tablename__ = "bot_node_interactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bot_id: Mapped[str] = mapped_column(String(64), default="")
    seq: Mapped[int] = mapped_column(Integer, default=0)
    node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    node_type: Mapped[str] = mapped_column(String(32), nullable=False)
    node_label: Mapped[str] = mapped_column(String(256), default="")
    user_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_drop_off: Mapped[bool] = mapped_column(Boolean, default=False)
    interacted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    dedup_key: Mapped[str] = mapped_column(String(256), nullable=False)

    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_interactions_dedup"),
        Index("ix_interactions_session_seq", "session_id", "seq"),
        Index("ix_interactions_bot", "bot_id"),
    )
