"""
Session & Interaction Ledger — durable record of every session and every
node a session visited.

This is the single source analytics reads from. It tolerates at-least-once
delivery of inbound events: session creation is exclusive per (bot, user),
and interaction writes are idempotent. Records produced by the engine are
keyed by the advance that produced them and their position in it, so a node
revisited inside one advance gets a record per visit; direct writes fall
back to (session, node, time bucket).

Lifecycle:
  create_session()        → active
  record_interaction()    → append-only, one per node visit
  close_session()         → completed | dropped | handed_off (one-way)
  sweep_inactive()        → idle active sessions closed as dropped

Drop-off rule: a session closed as ``dropped`` has exactly one interaction
flagged ``is_drop_off``, its last one. Setting that flag on an already
written record is the only change the ledger ever makes to a record.

Usage:
    ledger = SessionLedger(store)
    session = await ledger.create_session("bot_1", "user_42", trigger_keyword="hi")
    record, created = await ledger.record_interaction(session.id, "n1", "message", "Greeting")
    await ledger.close_session(session, SessionStatus.COMPLETED)
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from database.store_base import BaseFlowStore
from flows.errors import DuplicateActiveSession
from models.schemas import (
    ChannelType, InteractionRecord, Session, SessionStatus, utcnow,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()


class SessionLedger:
    """Session lifecycle and append-only interaction log over a flow store."""

    def __init__(self, store: BaseFlowStore, dedup_window_ms: int = 1):
        self.store = store
        self.dedup_window_ms = max(int(dedup_window_ms), 1)
        self._create_locks = KeyedLock()

    # ── Sessions ──────────────────────────────────────────────

    async def create_session(
        self,
        bot_id: str,
        user_id: str,
        trigger_keyword: Optional[str] = None,
        conversation_id: str = "",
        channel: ChannelType = ChannelType.WHATSAPP,
        flow_snapshot: dict[str, Any] = None,
        bot_version: int = 1,
        variables: dict[str, Any] = None,
        current_node_id: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> Session:
        """
        Open a session for (bot, user).
        Raises DuplicateActiveSession if one is already active; callers resume it.
        """
        started = started_at or utcnow()
        async with self._create_locks.hold((bot_id, user_id)):
            existing = await self.store.find_active_session(bot_id, user_id)
            if existing:
                raise DuplicateActiveSession(bot_id, user_id, existing.id)

            session = Session(
                bot_id=bot_id,
                user_id=user_id,
                conversation_id=conversation_id,
                channel=channel,
                trigger_keyword=trigger_keyword,
                flow_snapshot=flow_snapshot or {},
                bot_version=bot_version,
                variables=dict(variables or {}),
                current_node_id=current_node_id,
                started_at=started,
                last_activity_at=started,
            )
            if not await self.store.insert_session(session):
                # Another process won the insert
                existing = await self.store.find_active_session(bot_id, user_id)
                raise DuplicateActiveSession(bot_id, user_id, existing.id if existing else "")

        logger.info("session_created",
                    session_id=session.id,
                    bot_id=bot_id,
                    user_id=user_id,
                    trigger_keyword=trigger_keyword)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self.store.get_session(session_id)

    async def find_active_session(self, bot_id: str, user_id: str) -> Optional[Session]:
        return await self.store.find_active_session(bot_id, user_id)

    async def find_active_by_conversation(self, conversation_id: str) -> Optional[Session]:
        return await self.store.find_active_by_conversation(conversation_id)

    async def find_by_correlation(self, correlation_id: str) -> Optional[Session]:
        return await self.store.find_by_correlation(correlation_id)

    async def save_session(self, session: Session) -> None:
        await self.store.save_session(session)

    async def list_sessions(self, bot_id: Optional[str] = None, **filters) -> list[Session]:
        return await self.store.list_sessions(bot_id=bot_id, **filters)

    async def close_session(
        self,
        session: Union[Session, str],
        final_status: SessionStatus,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        """
        Move a session to a terminal status.

        One-way: if the stored session is already terminal nothing changes
        and None is returned. ``session`` may be the caller's working copy
        (its variables and position are saved along with the status).
        """
        if not final_status.is_terminal:
            raise ValueError(f"Cannot close a session as '{final_status.value}'")

        session_id = session if isinstance(session, str) else session.id
        stored = await self.store.get_session(session_id)
        if stored is None:
            logger.warning("close_unknown_session", session_id=session_id)
            return None
        if stored.status.is_terminal:
            logger.debug("session_already_closed", session_id=session_id, status=stored.status.value)
            return None

        target = stored if isinstance(session, str) else session
        target.status = final_status
        target.ended_at = ended_at or utcnow()
        target.pending = None
        await self.store.save_session(target)

        if final_status == SessionStatus.DROPPED:
            await self._flag_drop_off(target)

        logger.info("session_closed",
                    session_id=session_id,
                    bot_id=target.bot_id,
                    status=final_status.value,
                    node_id=target.current_node_id)
        return target

    async def _flag_drop_off(self, session: Session) -> None:
        records = await self.store.list_interactions(session_ids=[session.id])
        if records:
            last = records[-1]
            if not last.is_drop_off:
                await self.store.mark_drop_off(last.id)
            return

        # Closed before any node was recorded; the drop-off point is where it stood
        node_type, label = _snapshot_node_info(session)
        await self.record_interaction(
            session.id,
            session.current_node_id or "",
            node_type,
            label,
            is_drop_off=True,
            interacted_at=session.ended_at,
            bot_id=session.bot_id,
        )

    # ── Interactions ──────────────────────────────────────────

    def dedup_key(self, session_id: str, node_id: str, interacted_at: datetime) -> str:
        bucket = int(interacted_at.timestamp() * 1000) // self.dedup_window_ms
        return f"{session_id}:{node_id}:{bucket}"

    async def record_interaction(
        self,
        session_id: str,
        node_id: str,
        node_type: str,
        label: str = "",
        user_response: Optional[str] = None,
        is_drop_off: bool = False,
        interacted_at: Optional[datetime] = None,
        bot_id: str = "",
        delivery_key: Optional[str] = None,
    ) -> tuple[InteractionRecord, bool]:
        """Append one interaction. A duplicate returns the stored record and False.

        ``delivery_key`` names the write (advance id + step); without one the
        record is deduplicated on its time bucket.
        """
        at = interacted_at or utcnow()
        record = InteractionRecord(
            session_id=session_id,
            bot_id=bot_id,
            node_id=node_id,
            node_type=node_type,
            node_label=label or "",
            user_response=user_response,
            is_drop_off=is_drop_off,
            interacted_at=at,
        )
        key = (f"{session_id}:{delivery_key}" if delivery_key
               else self.dedup_key(session_id, node_id, at))
        stored, created = await self.store.insert_interaction(record, key)
        if not created:
            logger.debug("interaction_deduplicated", session_id=session_id, node_id=node_id)
        return stored, created

    async def list_interactions(self, session_id: str) -> list[InteractionRecord]:
        return await self.store.list_interactions(session_ids=[session_id])

    # ── Inactivity sweep ──────────────────────────────────────

    async def find_inactive(self, now: datetime, threshold: timedelta) -> list[Session]:
        """
        Active sessions idle longer than ``threshold``. Sessions suspended on a
        delay or webhook whose wake/deadline is still ahead are not idle.
        """
        cutoff = now - threshold
        idle = []
        for s in await self.store.list_sessions(status=SessionStatus.ACTIVE):
            if s.last_activity_at > cutoff:
                continue
            due = s.pending.due_at() if s.pending else None
            if due is not None and due > now:
                continue
            idle.append(s)
        return idle

    async def sweep_inactive(self, now: datetime, threshold: timedelta) -> list[Session]:
        closed = []
        for s in await self.find_inactive(now, threshold):
            if await self.close_session(s.id, SessionStatus.DROPPED, ended_at=now):
                closed.append(s)
        if closed:
            logger.info("inactive_sessions_dropped", count=len(closed))
        return closed


def _snapshot_node_info(session: Session) -> tuple[str, str]:
    for raw in session.flow_snapshot.get("nodes") or []:
        if isinstance(raw, dict) and raw.get("id") == session.current_node_id:
            data = raw.get("data") or {}
            return str(raw.get("type") or "unknown"), str(data.get("label") or "")
    return "unknown", ""
