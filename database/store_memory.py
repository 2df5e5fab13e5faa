"""
InMemoryFlowStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlFlowStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.

Stored objects are deep copies, so callers mutating a Session they got back
never change the stored state until they call save_session.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional

import structlog

from database.store_base import BaseFlowStore
from models.schemas import Bot, InteractionRecord, Session, SessionStatus

logger = structlog.get_logger()


class InMemoryFlowStore(BaseFlowStore):

    def __init__(self):
        self._bots: dict[str, Bot] = {}
        self._sessions: dict[str, Session] = {}
        self._interactions: dict[str, list[InteractionRecord]] = defaultdict(list)  # session_id → records

        # Indexes
        self._active_index: dict[str, str] = {}         # "bot_id:user_id" → session_id
        self._dedup_index: dict[str, str] = {}          # dedup_key → interaction id
        self._interaction_by_id: dict[str, InteractionRecord] = {}
        logger.info("inmemory_store_initialized")

    # ── Bots ──────────────────────────────────────────────

    async def get_bot(self, bot_id: str) -> Optional[Bot]:
        bot = self._bots.get(bot_id)
        return bot.model_copy(deep=True) if bot else None

    async def upsert_bot(self, bot: Bot) -> Bot:
        self._bots[bot.id] = bot.model_copy(deep=True)
        return bot

    async def list_bots(self, active_only: bool = False) -> list[Bot]:
        bots = [
            b.model_copy(deep=True) for b in self._bots.values()
            if b.is_active or not active_only
        ]
        bots.sort(key=lambda b: b.created_at)
        return bots

    # ── Sessions ──────────────────────────────────────────

    @staticmethod
    def _active_key(session: Session) -> str:
        return f"{session.bot_id}:{session.user_id}"

    async def get_session(self, session_id: str) -> Optional[Session]:
        s = self._sessions.get(session_id)
        return s.model_copy(deep=True) if s else None

    async def insert_session(self, session: Session) -> bool:
        key = self._active_key(session)
        if session.is_active:
            existing = self._active_index.get(key)
            if existing and self._sessions[existing].is_active:
                return False
            self._active_index[key] = session.id
        self._sessions[session.id] = session.model_copy(deep=True)
        return True

    async def save_session(self, session: Session) -> None:
        self._sessions[session.id] = session.model_copy(deep=True)
        key = self._active_key(session)
        if not session.is_active and self._active_index.get(key) == session.id:
            del self._active_index[key]

    async def find_active_session(self, bot_id: str, user_id: str) -> Optional[Session]:
        sid = self._active_index.get(f"{bot_id}:{user_id}")
        if not sid:
            return None
        return await self.get_session(sid)

    async def find_active_by_conversation(self, conversation_id: str) -> Optional[Session]:
        for s in self._sessions.values():
            if s.is_active and s.conversation_id == conversation_id:
                return s.model_copy(deep=True)
        return None

    async def find_by_correlation(self, correlation_id: str) -> Optional[Session]:
        for s in self._sessions.values():
            if s.pending and s.pending.correlation_id == correlation_id:
                return s.model_copy(deep=True)
        return None

    async def list_sessions(
        self,
        bot_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None,
    ) -> list[Session]:
        results = []
        for s in self._sessions.values():
            if bot_id and s.bot_id != bot_id:
                continue
            if status and s.status != status:
                continue
            if started_from and s.started_at < started_from:
                continue
            if started_to and s.started_at >= started_to:
                continue
            results.append(s.model_copy(deep=True))
        results.sort(key=lambda s: s.started_at)
        return results

    # ── Interactions ──────────────────────────────────────

    async def insert_interaction(
        self, record: InteractionRecord, dedup_key: str
    ) -> tuple[InteractionRecord, bool]:
        existing_id = self._dedup_index.get(dedup_key)
        if existing_id:
            return self._interaction_by_id[existing_id], False

        records = self._interactions[record.session_id]
        stored = record.model_copy(update={"seq": len(records) + 1})
        records.append(stored)
        self._dedup_index[dedup_key] = stored.id
        self._interaction_by_id[stored.id] = stored
        return stored, True

    async def list_interactions(
        self,
        session_ids: Optional[Iterable[str]] = None,
        bot_id: Optional[str] = None,
    ) -> list[InteractionRecord]:
        if session_ids is not None:
            keys = [sid for sid in dict.fromkeys(session_ids) if sid in self._interactions]
        else:
            keys = list(self._interactions.keys())
        results = []
        for sid in sorted(keys):
            for r in self._interactions[sid]:
                if bot_id and r.bot_id != bot_id:
                    continue
                results.append(r)
        return results

    async def mark_drop_off(self, interaction_id: str) -> None:
        record = self._interaction_by_id.get(interaction_id)
        if record is None or record.is_drop_off:
            return
        flagged = record.model_copy(update={"is_drop_off": True})
        records = self._interactions[record.session_id]
        records[records.index(record)] = flagged
        self._interaction_by_id[interaction_id] = flagged
