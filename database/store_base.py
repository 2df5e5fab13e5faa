"""
Abstract Flow Store — Interface for all storage backends.

Implementations:
  - SqlFlowStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFlowStore (dict-based, single-process, no persistence)

Both backends guarantee the two invariants the ledger relies on:
  - insert_session refuses a second active session for the same (bot, user)
  - insert_interaction is idempotent on its dedup key
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from models.schemas import Bot, InteractionRecord, Session, SessionStatus


class BaseFlowStore(ABC):
    """Interface that all flow store backends must implement."""

    # ── Bots ──────────────────────────────────────────────────

    @abstractmethod
    async def get_bot(self, bot_id: str) -> Optional[Bot]:
        ...

    @abstractmethod
    async def upsert_bot(self, bot: Bot) -> Bot:
        ...

    @abstractmethod
    async def list_bots(self, active_only: bool = False) -> list[Bot]:
        ...

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def insert_session(self, session: Session) -> bool:
        """Insert a new active session. False if (bot, user) already has one."""
        ...

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        ...

    @abstractmethod
    async def find_active_session(self, bot_id: str, user_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find_active_by_conversation(self, conversation_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find_by_correlation(self, correlation_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def list_sessions(
        self,
        bot_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None,
    ) -> list[Session]:
        ...

    # ── Interactions ──────────────────────────────────────────

    @abstractmethod
    async def insert_interaction(
        self, record: InteractionRecord, dedup_key: str
    ) -> tuple[InteractionRecord, bool]:
        """Append a record. Returns (stored record, created)."""
        ...

    @abstractmethod
    async def list_interactions(
        self,
        session_ids: Optional[Iterable[str]] = None,
        bot_id: Optional[str] = None,
    ) -> list[InteractionRecord]:
        """Records ordered by (session_id, seq)."""
        ...

    @abstractmethod
    async def mark_drop_off(self, interaction_id: str) -> None:
        ...

    # ── Lifecycle ─────────────────────────────────────────────

    async def init_schema(self) -> None:
        """Create backing tables if the backend has any."""

    async def close(self) -> None:
        pass
