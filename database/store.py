"""
SqlFlowStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

Uniqueness rules live in the schema (see database/models.py) so they hold
across processes:
  - a second active session for the same (bot, user) violates the unique
    ``active_key`` and is reported as ``insert_session -> False``
  - a repeated interaction violates the unique ``dedup_key`` and returns the
    stored record

Plain URLs are switched to their async driver:
  postgresql://  → postgresql+asyncpg://     (asyncpg extra)
  mysql://       → mysql+aiomysql://         (aiomysql extra)
  sqlite://      → sqlite+aiosqlite://
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Iterable, Optional

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from database.models import Base, BotRow, BotSessionRow, NodeInteractionRow
from database.store_base import BaseFlowStore
from models.schemas import (
    Bot, ChannelType, InteractionRecord, PendingResume, Session, SessionStatus,
)

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Async engine for ``url``; pooled for server databases, plain for SQLite."""
    url = async_url(url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url, echo=echo, pool_size=10, max_overflow=20, pool_recycle=1800, pool_pre_ping=True,
    )


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SqlFlowStore(BaseFlowStore):
    """
    Persistent flow store backed by any SQLAlchemy-supported database.
    Pass an engine, or a URL to build one from.
    """

    def __init__(self, engine: Optional[AsyncEngine] = None, url: Optional[str] = None):
        if engine is None:
            if not url:
                raise ValueError("SqlFlowStore needs an engine or a database URL")
            engine = create_engine_for(url)
        self._engine = engine
        self._factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def _scope(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction: committed on success, rolled back on error."""
        async with self._factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    # ── Bot operations ─────────────────────────────────────

    async def get_bot(self, bot_id: str) -> Optional[Bot]:
        async with self._scope() as db:
            row = await db.get(BotRow, bot_id)
            return self._row_to_bot(row) if row else None

    async def upsert_bot(self, bot: Bot) -> Bot:
        async with self._scope() as db:
            row = await db.get(BotRow, bot.id)
            if row is None:
                row = BotRow(id=bot.id, created_at=_utc(bot.created_at))
                db.add(row)
            row.name = bot.name
            row.is_active = bot.is_active
            row.trigger_keywords = list(bot.trigger_keywords)
            row.flow_data = bot.flow_data
            row.channel = bot.channel.value
            row.version = bot.version
            row.updated_at = _utc(bot.updated_at)
        return bot

    async def list_bots(self, active_only: bool = False) -> list[Bot]:
        async with self._scope() as db:
            stmt = select(BotRow).order_by(BotRow.created_at)
            if active_only:
                stmt = stmt.where(BotRow.is_active.is_(True))
            result = await db.execute(stmt)
            return [self._row_to_bot(r) for r in result.scalars()]

    # ── Session operations ─────────────────────────────────

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._scope() as db:
            row = await db.get(BotSessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def insert_session(self, session: Session) -> bool:
        try:
            async with self._scope() as db:
                row = BotSessionRow(id=session.id)
                self._fill_session_row(row, session)
                db.add(row)
        except IntegrityError:
            logger.info("session_insert_conflict", bot_id=session.bot_id, user_id=session.user_id)
            return False
        return True

    async def save_session(self, session: Session) -> None:
        async with self._scope() as db:
            row = await db.get(BotSessionRow, session.id)
            if row is None:
                row = BotSessionRow(id=session.id)
                db.add(row)
            self._fill_session_row(row, session)

    async def find_active_session(self, bot_id: str, user_id: str) -> Optional[Session]:
        async with self._scope() as db:
            stmt = select(BotSessionRow).where(BotSessionRow.active_key == f"{bot_id}:{user_id}")
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def find_active_by_conversation(self, conversation_id: str) -> Optional[Session]:
        async with self._scope() as db:
            stmt = (
                select(BotSessionRow)
                .where(and_(
                    BotSessionRow.conversation_id == conversation_id,
                    BotSessionRow.status == SessionStatus.ACTIVE.value,
                ))
                .order_by(BotSessionRow.started_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def find_by_correlation(self, correlation_id: str) -> Optional[Session]:
        async with self._scope() as db:
            stmt = select(BotSessionRow).where(BotSessionRow.correlation_id == correlation_id).limit(1)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def list_sessions(
        self,
        bot_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None,
    ) -> list[Session]:
        async with self._scope() as db:
            stmt = select(BotSessionRow)
            if bot_id:
                stmt = stmt.where(BotSessionRow.bot_id == bot_id)
            if status:
                stmt = stmt.where(BotSessionRow.status == status.value)
            if started_from:
                stmt = stmt.where(BotSessionRow.started_at >= _utc(started_from))
            if started_to:
                stmt = stmt.where(BotSessionRow.started_at < _utc(started_to))
            stmt = stmt.order_by(BotSessionRow.started_at)
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars()]

    # ── Interaction operations ─────────────────────────────

    async def insert_interaction(
        self, record: InteractionRecord, dedup_key: str
    ) -> tuple[InteractionRecord, bool]:
        try:
            async with self._scope() as db:
                existing = await self._by_dedup_key(db, dedup_key)
                if existing is not None:
                    return self._row_to_interaction(existing), False
                count = await db.scalar(
                    select(func.count())
                    .select_from(NodeInteractionRow)
                    .where(NodeInteractionRow.session_id == record.session_id)
                )
                row = NodeInteractionRow(
                    id=record.id,
                    session_id=record.session_id,
                    bot_id=record.bot_id,
                    seq=(count or 0) + 1,
                    node_id=record.node_id,
                    node_type=record.node_type,
                    node_label=record.node_label,
                    user_response=record.user_response,
                    is_drop_off=record.is_drop_off,
                    interacted_at=_utc(record.interacted_at),
                    dedup_key=dedup_key,
                )
                db.add(row)
                stored = record.model_copy(update={"seq": row.seq})
        except IntegrityError:
            # Lost a race with an identical delivery; return the winner
            async with self._scope() as db:
                existing = await self._by_dedup_key(db, dedup_key)
                return self._row_to_interaction(existing), False
        return stored, True

    @staticmethod
    async def _by_dedup_key(db: AsyncSession, dedup_key: str) -> Optional[NodeInteractionRow]:
        stmt = select(NodeInteractionRow).where(NodeInteractionRow.dedup_key == dedup_key)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def list_interactions(
        self,
        session_ids: Optional[Iterable[str]] = None,
        bot_id: Optional[str] = None,
    ) -> list[InteractionRecord]:
        async with self._scope() as db:
            stmt = select(NodeInteractionRow)
            if session_ids is not None:
                ids = list(dict.fromkeys(session_ids))
                if not ids:
                    return []
                stmt = stmt.where(NodeInteractionRow.session_id.in_(ids))
            if bot_id:
                stmt = stmt.where(NodeInteractionRow.bot_id == bot_id)
            stmt = stmt.order_by(NodeInteractionRow.session_id, NodeInteractionRow.seq)
            result = await db.execute(stmt)
            return [self._row_to_interaction(r) for r in result.scalars()]

    async def mark_drop_off(self, interaction_id: str) -> None:
        async with self._scope() as db:
            await db.execute(
                update(NodeInteractionRow)
                .where(NodeInteractionRow.id == interaction_id)
                .values(is_drop_off=True)
            )

    async def init_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized",
                    dialect=self._engine.dialect.name,
                    tables=list(Base.metadata.tables.keys()))

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("database_closed", dialect=self._engine.dialect.name)

    # ── Mapping helpers ────────────────────────────────────

    @staticmethod
    def _fill_session_row(row: BotSessionRow, s: Session) -> None:
        row.bot_id = s.bot_id
        row.user_id = s.user_id
        row.conversation_id = s.conversation_id
        row.channel = s.channel.value
        row.status = s.status.value
        row.current_node_id = s.current_node_id
        row.variables = s.variables
        row.trigger_keyword = s.trigger_keyword
        row.active_key = f"{s.bot_id}:{s.user_id}" if s.is_active else None
        row.correlation_id = s.pending.correlation_id if s.pending else None
        row.wake_at = _utc(s.pending.due_at()) if s.pending else None
        row.flow_snapshot = s.flow_snapshot
        row.bot_version = s.bot_version
        row.pending = s.pending.model_dump(mode="json") if s.pending else None
        row.ab_draws = dict(s.ab_draws)
        row.ab_epoch = s.ab_epoch
        row.seen_events = list(s.seen_events)
        row.started_at = _utc(s.started_at)
        row.ended_at = _utc(s.ended_at)
        row.last_activity_at = _utc(s.last_activity_at)

    @staticmethod
    def _row_to_session(row: BotSessionRow) -> Session:
        pending: Optional[dict[str, Any]] = row.pending
        return Session(
            id=row.id,
            bot_id=row.bot_id,
            user_id=row.user_id,
            conversation_id=row.conversation_id or "",
            channel=ChannelType(row.channel),
            status=SessionStatus(row.status),
            current_node_id=row.current_node_id,
            variables=row.variables or {},
            started_at=_utc(row.started_at),
            ended_at=_utc(row.ended_at),
            trigger_keyword=row.trigger_keyword,
            flow_snapshot=row.flow_snapshot or {},
            bot_version=row.bot_version or 1,
            pending=PendingResume.model_validate(pending) if pending else None,
            ab_draws=row.ab_draws or {},
            ab_epoch=row.ab_epoch or 0,
            seen_events=row.seen_events or [],
            last_activity_at=_utc(row.last_activity_at),
        )

    @staticmethod
    def _row_to_bot(row: BotRow) -> Bot:
        return Bot(
            id=row.id,
            name=row.name or "",
            is_active=bool(row.is_active),
            trigger_keywords=row.trigger_keywords or [],
            flow_data=row.flow_data or {"nodes": [], "edges": []},
            channel=ChannelType(row.channel),
            version=row.version or 1,
            created_at=_utc(row.created_at),
            updated_at=_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_interaction(row: NodeInteractionRow) -> InteractionRecord:
        return InteractionRecord(
            id=row.id,
            session_id=row.session_id,
            bot_id=row.bot_id or "",
            seq=row.seq,
            node_id=row.node_id,
            node_type=row.node_type,
            node_label=row.node_label or "",
            user_response=row.user_response,
            is_drop_off=bool(row.is_drop_off),
            interacted_at=_utc(row.interacted_at),
        )
