"""
Orchestrator — routes triggers to sessions and sessions to the engine.

Architecture:
  Inbound:  channel event → active session for (conversation | bot, user)?
            → yes: resume it with the event as the awaited input
            → no:  keyword-match active bots → create session (graph snapshot)
            → FlowEngine.advance → ledger writes → channel sends → timers

  Webhook:  POST /webhooks/flow/{correlation_id}
            → session waiting on that correlation id → advance

  Timers:   WakeScheduler → wake(session_id) / run_due(now)
            → delay wakes and webhook deadlines → advance
            sweep(now) → idle sessions closed as dropped

Every advance for a session runs under that session's lock, so duplicate
deliveries arriving together are applied once. Events already seen by a
session (message id, else timestamp + text + payload) are ignored.

The bot registry is the only shared state. Registering a bot validates its
graph, bumps its version, and swaps the keyword index in one assignment.
Sessions never read the live bot: they run on the snapshot taken at start.
"""
from __future__ import annotations

import copy
import structlog
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

from config.settings import EngineConfig
from context.ledger import SessionLedger
from core.engine import AdvanceResult, FlowEngine
from channels.base import ChannelRegistry
from flows.errors import (
    DuplicateActiveSession, GraphError, InvalidNodeError, UnknownBotError,
)
from flows.graph import FlowGraph, GraphIssue
from models.schemas import (
    Bot, ChannelType, HandoffRequest, InboundEvent, Session, SessionStatus,
    TimerTick, WebhookReply, utcnow,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()

SEEN_EVENTS_LIMIT = 50

HandoffHandler = Callable[[HandoffRequest], Awaitable[Any]]


class FlowOrchestrator:
    """
    Session router for bot flows.

    This class:
    1. Keeps the registry of bots and their trigger keywords
    2. Starts sessions on keyword match or explicit request
    3. Feeds inbound replies, webhook answers and timer wakes to the engine
    4. Persists what the engine produced and dispatches its sends
    """

    def __init__(
        self,
        ledger: SessionLedger,
        engine: FlowEngine,
        channels: ChannelRegistry,
        config: Optional[EngineConfig] = None,
        on_handoff: Optional[HandoffHandler] = None,
    ):
        self.ledger = ledger
        self.engine = engine
        self.channels = channels
        self.config = config or EngineConfig()
        self.on_handoff = on_handoff
        self.scheduler = None       # WakeScheduler, attached by the service

        self._bots: dict[str, Bot] = {}
        self._keyword_index: tuple[Bot, ...] = ()
        self._session_locks = KeyedLock()

    def attach_scheduler(self, scheduler) -> None:
        self.scheduler = scheduler

    # ══════════════════════════════════════════════════════════
    #  BOT REGISTRY
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def validate_flow(flow_data: dict[str, Any]) -> list[GraphIssue]:
        """Every issue in an editor graph, for display. Never raises."""
        try:
            graph = FlowGraph.from_flow_data(flow_data)
        except InvalidNodeError as e:
            return [GraphIssue("error", e)]
        return graph.issues()

    def validate_bot(self, bot_id: str) -> list[GraphIssue]:
        return self.validate_flow(self.get_bot(bot_id).flow_data)

    async def register_bot(self, bot: Bot) -> Bot:
        """
        Validate and publish a bot. Raises GraphValidationError on a broken graph.
        Re-registering an existing bot increments its version; running sessions
        keep the snapshot they started with.
        """
        FlowGraph.from_flow_data(bot.flow_data).check()

        current = self._bots.get(bot.id) or await self.ledger.store.get_bot(bot.id)
        updates: dict[str, Any] = {"updated_at": utcnow()}
        if current is not None:
            updates["version"] = current.version + 1
            updates["created_at"] = current.created_at
        bot = bot.model_copy(update=updates, deep=True)

        await self.ledger.store.upsert_bot(bot)
        self._install(bot)
        logger.info("bot_registered",
                    bot_id=bot.id,
                    version=bot.version,
                    active=bot.is_active,
                    keywords=bot.trigger_keywords)
        return bot

    async def load_bots(self, bots: Optional[Iterable[Bot]] = None) -> int:
        """Install bots (default: every bot in the store). Invalid graphs are skipped."""
        if bots is None:
            bots = await self.ledger.store.list_bots()
        loaded = 0
        for bot in bots:
            try:
                FlowGraph.from_flow_data(bot.flow_data).check()
            except GraphError as e:
                logger.error("bot_load_failed", bot_id=bot.id, error=str(e))
                continue
            if await self.ledger.store.get_bot(bot.id) is None:
                await self.ledger.store.upsert_bot(bot)
            self._install(bot)
            loaded += 1
        logger.info("bots_loaded", count=loaded)
        return loaded

    def _install(self, bot: Bot) -> None:
        bots = dict(self._bots)
        bots[bot.id] = bot
        # Swap both in one go; readers see the old or the new index, never a mix
        self._bots = bots
        self._keyword_index = tuple(
            sorted((b for b in bots.values() if b.is_active), key=lambda b: (b.created_at, b.id))
        )

    def get_bot(self, bot_id: str) -> Bot:
        bot = self._bots.get(bot_id)
        if bot is None:
            raise UnknownBotError(bot_id)
        return bot

    def list_bots(self) -> list[Bot]:
        return list(self._bots.values())

    def match_bot(self, text: str, bot_id: Optional[str] = None) -> Optional[tuple[Bot, str]]:
        """
        First active bot whose trigger keywords match ``text``.
        With ``bot_id`` only that bot is considered.
        """
        for bot in self._keyword_index:
            if bot_id and bot.id != bot_id:
                continue
            keyword = bot.matches(text)
            if keyword is not None:
                return bot, keyword
        return None

    # ══════════════════════════════════════════════════════════
    #  INBOUND — message or button press from an end user
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(self, event: InboundEvent) -> Optional[AdvanceResult]:
        """
        Main entry point for inbound channel events.

        Resumes the user's active session if there is one, otherwise starts
        a session for the first bot whose keywords match. Returns None when
        no bot matched.
        """
        logger.info("inbound_event",
                    user_id=event.user_id,
                    channel=event.channel.value,
                    bot_id=event.bot_id,
                    text=event.text[:100])

        session = await self._find_session_for(event)
        if session is not None:
            return await self._advance(session.id, event, event_key=event.dedup_key)

        match = self.match_bot(event.text, event.bot_id)
        if match is None:
            logger.info("no_bot_matched", user_id=event.user_id, bot_id=event.bot_id)
            return None

        bot, keyword = match
        return await self.start_session(
            bot.id,
            event.user_id,
            trigger_keyword=keyword,
            conversation_id=event.conversation_id or "",
            channel=event.channel,
            variables={"user_input": event.text},
            now=event.timestamp,
            event_key=event.dedup_key,
        )

    async def _find_session_for(self, event: InboundEvent) -> Optional[Session]:
        if event.conversation_id:
            session = await self.ledger.find_active_by_conversation(event.conversation_id)
            if session is not None:
                return session
        candidates = [event.bot_id] if event.bot_id else [b.id for b in self._keyword_index]
        for bot_id in candidates:
            session = await self.ledger.find_active_session(bot_id, event.user_id)
            if session is not None:
                return session
        return None

    async def start_session(
        self,
        bot_id: str,
        user_id: str,
        trigger_keyword: Optional[str] = None,
        conversation_id: str = "",
        channel: Optional[ChannelType] = None,
        variables: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
        event_key: Optional[str] = None,
    ) -> AdvanceResult:
        """
        Create a session on the bot's current graph and run it to its first
        suspension or end. If (bot, user) already has an active session,
        that session is returned untouched.
        """
        bot = self.get_bot(bot_id)
        if not bot.is_active:
            raise UnknownBotError(bot_id)

        tick = now or utcnow()
        try:
            session = await self.ledger.create_session(
                bot.id,
                user_id,
                trigger_keyword=trigger_keyword,
                conversation_id=conversation_id,
                channel=channel or bot.channel,
                flow_snapshot=copy.deepcopy(bot.flow_data),
                bot_version=bot.version,
                variables=variables,
                started_at=tick,
            )
        except DuplicateActiveSession as e:
            logger.info("session_already_active", bot_id=bot.id, user_id=user_id, session_id=e.session_id)
            if not e.session_id:
                return AdvanceResult(session_id="", status=SessionStatus.ACTIVE, noop=True)
            return await self._advance(e.session_id, None, now=tick, event_key=event_key)

        return await self._advance(session.id, None, now=tick, event_key=event_key)

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS / TIMERS / STOP
    # ══════════════════════════════════════════════════════════

    async def handle_webhook_reply(self, reply: WebhookReply) -> Optional[AdvanceResult]:
        session = await self.ledger.find_by_correlation(reply.correlation_id)
        if session is None:
            logger.warning("webhook_reply_unmatched", correlation_id=reply.correlation_id)
            return None
        return await self._advance(session.id, reply, event_key=f"hook:{reply.correlation_id}")

    async def wake(self, session_id: str, now: Optional[datetime] = None) -> AdvanceResult:
        """Timer callback: re-check a suspended session's wake condition."""
        tick = now or utcnow()
        return await self._advance(session_id, TimerTick(timestamp=tick), now=tick)

    async def run_due(self, now: Optional[datetime] = None) -> list[AdvanceResult]:
        """Advance every session whose delay or webhook deadline has passed."""
        tick = now or utcnow()
        results = []
        for session in await self.ledger.list_sessions(status=SessionStatus.ACTIVE):
            due = session.pending.due_at() if session.pending else None
            if due is None or due > tick:
                continue
            result = await self.wake(session.id, tick)
            if result:
                results.append(result)
        return results

    async def stop_session(self, session_id: str, now: Optional[datetime] = None) -> Optional[Session]:
        """Explicit stop: close as dropped and cancel its timer. No-op if already closed."""
        async with self._session_locks.hold(session_id):
            closed = await self.ledger.close_session(session_id, SessionStatus.DROPPED, ended_at=now or utcnow())
        self._cancel_timer(session_id)
        if closed is not None:
            logger.info("session_stopped", session_id=session_id)
        return closed

    async def sweep(self, now: Optional[datetime] = None) -> list[Session]:
        """Close sessions idle past the inactivity window as dropped."""
        tick = now or utcnow()
        threshold = self.config.inactivity_timeout
        closed = []
        for stale in await self.ledger.find_inactive(tick, threshold):
            async with self._session_locks.hold(stale.id):
                current = await self.ledger.get_session(stale.id)
                # Advanced while we waited for the lock
                if current is None or current.last_activity_at > stale.last_activity_at:
                    continue
                session = await self.ledger.close_session(stale.id, SessionStatus.DROPPED, ended_at=tick)
            self._cancel_timer(stale.id)
            if session is not None:
                closed.append(session)
        if closed:
            logger.info("inactive_sessions_dropped", count=len(closed))
        return closed

    async def restore_timers(self) -> int:
        """Re-arm timers for suspended sessions, e.g. after a restart."""
        if self.scheduler is None:
            return 0
        restored = 0
        for session in await self.ledger.list_sessions(status=SessionStatus.ACTIVE):
            if session.pending and session.pending.due_at():
                self.scheduler.schedule(session.id, session.pending.due_at())
                restored += 1
        logger.info("timers_restored", count=restored)
        return restored

    # ══════════════════════════════════════════════════════════
    #  ADVANCE — one serialized engine run + persistence
    # ══════════════════════════════════════════════════════════

    async def _advance(
        self,
        session_id: str,
        event=None,
        now: Optional[datetime] = None,
        event_key: Optional[str] = None,
    ) -> AdvanceResult:
        async with self._session_locks.hold(session_id):
            session = await self.ledger.get_session(session_id)
            if session is None or not session.is_active:
                logger.debug("stale_resume_ignored", session_id=session_id)
                status = session.status if session else SessionStatus.DROPPED
                return AdvanceResult(session_id=session_id, status=status, noop=True)
            if event_key and event_key in session.seen_events:
                logger.info("duplicate_event_ignored", session_id=session_id, event_key=event_key)
                return AdvanceResult(session_id=session_id, status=session.status, noop=True)

            try:
                graph = FlowGraph.from_flow_data(session.flow_snapshot)
            except GraphError as e:
                logger.error("flow_snapshot_unreadable", session_id=session_id, error=str(e))
                await self.ledger.close_session(session, SessionStatus.DROPPED, ended_at=now or utcnow())
                self._cancel_timer(session_id)
                return AdvanceResult(session_id=session_id, status=SessionStatus.DROPPED, error=e)

            result = await self.engine.advance(session, graph, event, now=now)
            if result.noop:
                return result

            if event_key:
                session.seen_events = (session.seen_events + [event_key])[-SEEN_EVENTS_LIMIT:]
            await self._persist(session, result)

        for message in result.outbound:
            self.channels.dispatch(message)
        self._reschedule(session)
        if result.handoff is not None and self.on_handoff is not None:
            await self.on_handoff(result.handoff)

        logger.info("session_advanced",
                    session_id=session.id,
                    bot_id=session.bot_id,
                    status=result.status.value,
                    steps=result.steps,
                    sent=len(result.outbound),
                    node_id=session.current_node_id)
        return result

    async def _persist(self, session: Session, result: AdvanceResult) -> None:
        for draft in result.interactions:
            await self.ledger.record_interaction(
                session.id,
                draft.node_id,
                draft.node_type,
                draft.node_label,
                user_response=draft.user_response,
                is_drop_off=draft.is_drop_off,
                interacted_at=draft.interacted_at,
                bot_id=session.bot_id,
                delivery_key=f"{result.advance_id}:{draft.step}",
            )
        if result.terminal:
            await self.ledger.close_session(session, result.status, ended_at=session.ended_at)
        else:
            await self.ledger.save_session(session)

    def _reschedule(self, session: Session) -> None:
        if self.scheduler is None:
            return
        due = session.pending.due_at() if session.is_active and session.pending else None
        if due is None:
            self.scheduler.cancel(session.id)
        else:
            self.scheduler.schedule(session.id, due)

    def _cancel_timer(self, session_id: str) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel(session_id)
