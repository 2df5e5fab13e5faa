"""
Flow Engine — advances one session through its flow graph.

Each call to ``advance`` runs nodes synchronously until the session
suspends (delay, quick reply, webhook awaiting response) or ends
(completed, dropped, handed off). Every visited node produces one
interaction draft; sends are returned as outbound messages for the caller
to dispatch.

The engine is stateless between calls: everything it needs lives on the
Session (position, variables, pending wake condition, A/B draws) and the
FlowGraph snapshot passed in. HTTP side effects go through ExternalCaller;
email through an injected sender.

Architecture:
  Orchestrator → FlowEngine.advance(session, graph, event)
    → resume the pending node (reply / wake / webhook answer), or start
    → walk nodes: render → side effect → record → resolve next handle
    → AdvanceResult(status, outbound, interactions, pending)
    → Orchestrator writes interactions to the ledger and dispatches sends

Failure rules:
  - unknown node / invalid graph        → dropped
  - more than max_steps in one advance  → ExecutionBudgetExceeded, dropped
  - external call fails after retries   → "error" edge if present, else dropped
  - branch whose handle has no edge     → completed
"""
from __future__ import annotations

import hashlib
import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from config.settings import EngineConfig
from core.external import ExternalCaller
from flows.errors import (
    ExecutionBudgetExceeded, ExternalCallError, FlowError, GraphError, UnknownNodeError,
)
from flows.graph import FlowGraph
from models.schemas import (
    HANDLE_BOOKED, HANDLE_CANCELLED, HANDLE_ERROR, HANDLE_FALSE, HANDLE_TRUE,
    AbVariant, HandoffRequest, InboundEvent, InteractionDraft, NodeType,
    OutboundMessage, PendingResume, QuickReplyButton, Session, SessionStatus,
    SuspendKind, TimerTick, WebhookReply, utcnow,
)
from utils.conditions import evaluate_condition
from utils.templating import render, render_value

logger = structlog.get_logger()

MAX_STEPS = 50  # synchronous node visits per advance

Event = Union[InboundEvent, WebhookReply, TimerTick, None]
EmailSender = Callable[..., Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

@dataclass
class AdvanceResult:
    """Outcome of one advance call."""
    session_id: str
    status: SessionStatus
    advance_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    outbound: list[OutboundMessage] = field(default_factory=list)
    interactions: list[InteractionDraft] = field(default_factory=list)
    pending: Optional[PendingResume] = None
    steps: int = 0
    noop: bool = False
    error: Optional[FlowError] = None
    handoff: Optional[HandoffRequest] = None
    branches: list[tuple[str, str]] = field(default_factory=list)   # (node_id, handle taken)

    @property
    def suspended(self) -> bool:
        return self.status == SessionStatus.ACTIVE and self.pending is not None

    @property
    def terminal(self) -> bool:
        return self.status.is_terminal

    def __bool__(self):
        return not self.noop

    def __repr__(self):
        if self.noop:
            return "<AdvanceResult noop>"
        return (f"<AdvanceResult {self.status.value} steps={self.steps} "
                f"sent={len(self.outbound)} pending={self.pending.kind.value if self.pending else None}>")


@dataclass
class _Step:
    """What a node handler decided."""
    next_node_id: Optional[str] = None
    status: Optional[SessionStatus] = None      # terminal status, if the node ends the session
    suspend: Optional[PendingResume] = None


# ──────────────────────────────────────────────────────────────
#  Flow Engine
# ──────────────────────────────────────────────────────────────

class FlowEngine:
    """Interprets flow graphs one session at a time."""

    def __init__(
        self,
        external: Optional[ExternalCaller] = None,
        email_sender: Optional[EmailSender] = None,
        max_steps: int = MAX_STEPS,
        quick_reply_reprompts: int = 1,
        webhook_timeout_seconds: int = 300,
    ):
        """
        Args:
            external:      HTTP client + retry policy for apiCall/webhook/appointment
            email_sender:  async fn(to, subject, body, template, variables) → dict
            max_steps:     node visits allowed in one advance before the session drops
            quick_reply_reprompts: re-sends of a quick reply prompt on unmatched input
            webhook_timeout_seconds: default wait for a webhook answer
        """
        self.external = external or ExternalCaller()
        self.email_sender = email_sender
        self.max_steps = max_steps
        self.quick_reply_reprompts = quick_reply_reprompts
        self.webhook_timeout = timedelta(seconds=webhook_timeout_seconds)

        self._handlers: dict[str, Callable[..., Awaitable[_Step]]] = {
            NodeType.START.value: self._run_start,
            NodeType.MESSAGE.value: self._run_message,
            NodeType.QUICK_REPLY.value: self._run_quick_reply,
            NodeType.CONDITION.value: self._run_condition,
            NodeType.API_CALL.value: self._run_api_call,
            NodeType.DELAY.value: self._run_delay,
            NodeType.AB_TEST.value: self._run_ab_test,
            NodeType.HANDOFF.value: self._run_handoff,
            NodeType.APPOINTMENT.value: self._run_appointment,
            NodeType.WEBHOOK_TRIGGER.value: self._run_webhook,
            NodeType.EMAIL.value: self._run_email,
        }

    @classmethod
    def from_settings(
        cls, config: EngineConfig, external: ExternalCaller, email_sender: Optional[EmailSender] = None,
    ) -> "FlowEngine":
        return cls(
            external=external,
            email_sender=email_sender,
            max_steps=config.max_steps_per_tick,
            quick_reply_reprompts=config.quick_reply_reprompts,
            webhook_timeout_seconds=config.webhook_timeout_seconds,
        )

    # ── Entry point ───────────────────────────────────────────

    async def advance(
        self,
        session: Session,
        graph: FlowGraph,
        event: Event = None,
        now: Optional[datetime] = None,
    ) -> AdvanceResult:
        """
        Advance ``session`` as far as it can go. Mutates the session in place.

        ``event`` is the input that woke the session: an inbound message, a
        webhook answer, a timer tick, or None (treated like a timer tick).
        Inputs that do not satisfy the pending wake condition are no-ops.
        """
        tick = now or getattr(event, "timestamp", None) or utcnow()
        result = AdvanceResult(session_id=session.id, status=session.status)

        if not session.is_active:
            # Stale resume of a closed session
            result.noop = True
            return result

        if session.pending is not None:
            step = await self._resume(session, graph, event, tick, result)
            if step is None:
                result.noop = True
                return result
            if not self._apply(step, session, tick, result):
                return result
            next_node_id = step.next_node_id
        elif session.current_node_id is None:
            try:
                graph.validate(strict=True)
                next_node_id = graph.start_node.id
            except GraphError as e:
                logger.error("flow_graph_invalid", session_id=session.id, bot_id=session.bot_id, error=str(e))
                self._record(result, e.node_id or "", "unknown", "", f"error:{e.code}", tick)
                result.error = e
                self._finish(session, SessionStatus.DROPPED, tick, result)
                return result
        else:
            # Interrupted mid-walk; re-run the node it stood on
            next_node_id = session.current_node_id

        await self._walk(session, graph, next_node_id, tick, result)
        return result

    # ── Synchronous walk ──────────────────────────────────────

    async def _walk(
        self, session: Session, graph: FlowGraph, node_id: str,
        tick: datetime, result: AdvanceResult,
    ) -> None:
        while True:
            if result.steps >= self.max_steps:
                err = ExecutionBudgetExceeded(self.max_steps, node_id)
                logger.error("execution_budget_exceeded",
                             session_id=session.id, bot_id=session.bot_id,
                             node_id=node_id, steps=result.steps)
                result.error = err
                self._finish(session, SessionStatus.DROPPED, tick, result)
                return

            result.steps += 1
            session.current_node_id = node_id
            node = graph.find(node_id)
            if node is None:
                self._drop_unknown(session, node_id, tick, result)
                return

            step = await self._handlers[node.type](node, session, graph, tick, result)
            if not self._apply(step, session, tick, result):
                return
            node_id = step.next_node_id

    def _apply(self, step: _Step, session: Session, tick: datetime, result: AdvanceResult) -> bool:
        """Settle a handler's decision. True when the walk should continue to step.next_node_id."""
        if step.status is not None:
            self._finish(session, step.status, tick, result)
            return False
        if step.suspend is not None:
            session.pending = step.suspend
            session.last_activity_at = tick
            result.pending = step.suspend
            due = step.suspend.due_at()
            logger.info("session_suspended",
                        session_id=session.id, node_id=step.suspend.node_id,
                        kind=step.suspend.kind.value,
                        until=due.isoformat() if due else None)
            return False
        if step.next_node_id is None:
            # Branch with no outgoing edge
            self._finish(session, SessionStatus.COMPLETED, tick, result)
            return False
        return True

    def _finish(self, session: Session, status: SessionStatus, tick: datetime, result: AdvanceResult) -> None:
        session.status = status
        session.ended_at = tick
        session.pending = None
        session.last_activity_at = tick
        result.status = status
        result.pending = None
        if status == SessionStatus.DROPPED and result.interactions:
            result.interactions[-1].is_drop_off = True
        logger.info("session_ended", session_id=session.id, bot_id=session.bot_id,
                    status=status.value, node_id=session.current_node_id)

    def _drop_unknown(self, session: Session, node_id: str, tick: datetime, result: AdvanceResult) -> None:
        err = UnknownNodeError(f"Node '{node_id}' not in graph", node_id=node_id)
        logger.error("unknown_node", session_id=session.id, bot_id=session.bot_id, node_id=node_id)
        self._record(result, node_id, "unknown", "", f"error:{err.code}", tick)
        result.error = err
        self._finish(session, SessionStatus.DROPPED, tick, result)

    # ── Resume a suspended session ────────────────────────────

    async def _resume(
        self, session: Session, graph: FlowGraph, event: Event,
        tick: datetime, result: AdvanceResult,
    ) -> Optional[_Step]:
        """Decide what the waking input does. None means it doesn't satisfy the wait."""
        pending = session.pending
        node = graph.find(pending.node_id)
        if node is None:
            err = UnknownNodeError(f"Node '{pending.node_id}' not in graph", node_id=pending.node_id)
            logger.error("unknown_node", session_id=session.id, bot_id=session.bot_id, node_id=pending.node_id)
            self._record(result, pending.node_id, "unknown", "", f"error:{err.code}", tick)
            result.error = err
            return _Step(status=SessionStatus.DROPPED)

        if pending.kind == SuspendKind.DELAY:
            if isinstance(event, (InboundEvent, WebhookReply)) or tick < pending.wake_at:
                return None
            session.pending = None
            session.last_activity_at = tick
            return _Step(next_node_id=graph.resolve_next(node.id))

        if pending.kind == SuspendKind.REPLY:
            if not isinstance(event, InboundEvent):
                return None
            session.last_activity_at = tick
            return self._resume_quick_reply(node, session, graph, event, tick, result)

        # SuspendKind.WEBHOOK
        if isinstance(event, WebhookReply) and event.correlation_id == pending.correlation_id:
            session.variables[node.data.save_as or "webhook_response"] = event.payload
            session.pending = None
            session.last_activity_at = tick
            logger.info("webhook_answered", session_id=session.id, node_id=node.id)
            return _Step(next_node_id=graph.resolve_next(node.id))
        if isinstance(event, (InboundEvent, WebhookReply)) or pending.deadline is None or tick < pending.deadline:
            return None

        session.pending = None
        session.last_activity_at = tick
        logger.warning("webhook_timed_out", session_id=session.id, node_id=node.id)
        return self._fail_external(node, session, graph, tick, result, ExternalCallError("timeout"))

    def _resume_quick_reply(
        self, node, session: Session, graph: FlowGraph, event: InboundEvent,
        tick: datetime, result: AdvanceResult,
    ) -> _Step:
        reply = event.text or event.button_payload or ""
        button = match_button(node.data.buttons, event.button_payload, event.text)
        self._record(result, node.id, node.type, node.label, reply, tick)

        if button is not None:
            session.pending = None
            session.variables["user_input"] = button.title
            if node.data.save_as:
                session.variables[node.data.save_as] = button.title
            result.branches.append((node.id, button.id))
            return _Step(next_node_id=graph.resolve_next(node.id, button.id))

        pending = session.pending
        if pending.reprompts < self.quick_reply_reprompts:
            result.outbound.append(self._prompt(node, session))
            logger.info("quick_reply_unmatched", session_id=session.id, node_id=node.id,
                        reprompts=pending.reprompts + 1)
            return _Step(suspend=pending.model_copy(update={"reprompts": pending.reprompts + 1}))

        logger.info("quick_reply_abandoned", session_id=session.id, node_id=node.id)
        return _Step(status=SessionStatus.DROPPED)

    # ── Node handlers ─────────────────────────────────────────

    async def _run_start(self, node, session, graph, tick, result) -> _Step:
        self._record(result, node.id, node.type, node.label, None, tick)
        return _Step(next_node_id=graph.resolve_next(node.id))

    async def _run_message(self, node, session, graph, tick, result) -> _Step:
        result.outbound.append(self._outbound(session, node.id, render(node.data.message, session.variables)))
        self._record(result, node.id, node.type, node.label, None, tick)
        return _Step(next_node_id=graph.resolve_next(node.id))

    async def _run_quick_reply(self, node, session, graph, tick, result) -> _Step:
        result.outbound.append(self._prompt(node, session))
        self._record(result, node.id, node.type, node.label, None, tick)
        return _Step(suspend=PendingResume(kind=SuspendKind.REPLY, node_id=node.id))

    async def _run_condition(self, node, session, graph, tick, result) -> _Step:
        data = node.data
        passed = evaluate_condition(data.variable, data.operator, data.value, session.variables)
        handle = HANDLE_TRUE if passed else HANDLE_FALSE
        self._record(result, node.id, node.type, node.label, None, tick)
        result.branches.append((node.id, handle))
        logger.debug("condition_evaluated", session_id=session.id, node_id=node.id, handle=handle)
        return _Step(next_node_id=graph.resolve_next(node.id, handle))

    async def _run_api_call(self, node, session, graph, tick, result) -> _Step:
        data = node.data
        try:
            response = await self.external.call_api(
                data.method,
                render(data.url, session.variables),
                headers=render_value(data.headers, session.variables),
                body=render_value(data.body, session.variables),
            )
        except ExternalCallError as e:
            return self._fail_external(node, session, graph, tick, result, e)
        if data.save_as:
            session.variables[data.save_as] = response
        self._record(result, node.id, node.type, node.label, None, tick)
        return _Step(next_node_id=graph.resolve_next(node.id))

    async def _run_delay(self, node, session, graph, tick, result) -> _Step:
        wake_at = tick + timedelta(seconds=node.data.seconds)
        self._record(result, node.id, node.type, node.label, None, tick)
        return _Step(suspend=PendingResume(kind=SuspendKind.DELAY, node_id=node.id, wake_at=wake_at))

    async def _run_ab_test(self, node, session, graph, tick, result) -> _Step:
        self._record(result, node.id, node.type, node.label, None, tick)
        variants = node.data.variants
        if not variants:
            return _Step(next_node_id=None)
        variant = pick_variant(variants, self._ab_draw(session, node.id))
        result.branches.append((node.id, variant.name))
        logger.debug("ab_variant_selected", session_id=session.id, node_id=node.id, variant=variant.name)
        return _Step(next_node_id=graph.resolve_any(node.id, (variant.name, variant.handle)))

    async def _run_handoff(self, node, session, graph, tick, result) -> _Step:
        data = node.data
        if data.message:
            result.outbound.append(self._outbound(session, node.id, render(data.message, session.variables)))
        self._record(result, node.id, node.type, node.label, None, tick)
        result.handoff = HandoffRequest(
            session_id=session.id,
            node_id=node.id,
            assign_to=data.assign_to,
            agent_id=data.agent_id,
            queue_name=data.queue_name,
        )
        logger.info("session_handed_off", session_id=session.id, node_id=node.id,
                    assign_to=data.assign_to.value)
        return _Step(status=SessionStatus.HANDED_OFF)

    async def _run_appointment(self, node, session, graph, tick, result) -> _Step:
        data = node.data
        payload = {
            "session_id": session.id,
            "bot_id": session.bot_id,
            "user_id": session.user_id,
            "calendar_type": data.calendar_type.value,
            "duration_minutes": data.duration,
            "buffer_minutes": data.buffer,
            "variables": session.variables,
        }
        try:
            booking = await self.external.book_appointment(payload)
        except ExternalCallError as e:
            return self._fail_external(node, session, graph, tick, result, e)

        session.variables["appointment"] = booking
        handle = HANDLE_BOOKED if booking.get("status") == HANDLE_BOOKED else HANDLE_CANCELLED
        if handle == HANDLE_BOOKED and data.confirmation_message:
            result.outbound.append(
                self._outbound(session, node.id, render(data.confirmation_message, session.variables))
            )
        self._record(result, node.id, node.type, node.label, None, tick)
        result.branches.append((node.id, handle))
        return _Step(next_node_id=graph.resolve_next(node.id, handle))

    async def _run_webhook(self, node, session, graph, tick, result) -> _Step:
        data = node.data
        correlation_id = uuid.uuid4().hex if data.wait_for_response else None
        payload = {
            "session_id": session.id,
            "bot_id": session.bot_id,
            "user_id": session.user_id,
            "node_id": node.id,
            "variables": session.variables,
        }
        if correlation_id:
            payload["correlation_id"] = correlation_id
        try:
            response = await self.external.fire_webhook(
                render(data.webhook_url, session.variables),
                method=data.method,
                headers=render_value(data.headers, session.variables),
                payload=payload,
            )
        except ExternalCallError as e:
            return self._fail_external(node, session, graph, tick, result, e)

        self._record(result, node.id, node.type, node.label, None, tick)
        if correlation_id:
            timeout = (timedelta(seconds=data.timeout_seconds)
                       if data.timeout_seconds else self.webhook_timeout)
            return _Step(suspend=PendingResume(
                kind=SuspendKind.WEBHOOK,
                node_id=node.id,
                correlation_id=correlation_id,
                deadline=tick + timeout,
            ))
        if response is not None:
            session.variables[data.save_as or "webhook_response"] = response
        return _Step(next_node_id=graph.resolve_next(node.id))

    async def _run_email(self, node, session, graph, tick, result) -> _Step:
        data = node.data
        try:
            if self.email_sender is None:
                raise ExternalCallError("email sender not configured", retryable=False)
            await self.external.call(
                self.email_sender,
                render(data.to, session.variables),
                render(data.subject, session.variables),
                render(data.body, session.variables),
                data.template,
                session.variables,
            )
        except ExternalCallError as e:
            return self._fail_external(node, session, graph, tick, result, e)
        self._record(result, node.id, node.type, node.label, None, tick)
        return _Step(next_node_id=graph.resolve_next(node.id))

    # ── Failure routing ───────────────────────────────────────

    def _fail_external(self, node, session, graph, tick, result, error: ExternalCallError) -> _Step:
        """Record the failure on the node, then follow its error edge or drop."""
        self._record(result, node.id, node.type, node.label, f"error:{error}", tick)
        result.error = error
        fallback = graph.resolve_next(node.id, HANDLE_ERROR)
        logger.warning("external_call_failed",
                       session_id=session.id, node_id=node.id, node_type=node.type,
                       error=str(error), fallback=fallback)
        if fallback:
            result.branches.append((node.id, HANDLE_ERROR))
            return _Step(next_node_id=fallback)
        return _Step(status=SessionStatus.DROPPED)

    # ── A/B buckets ───────────────────────────────────────────

    @staticmethod
    def _ab_draw(session: Session, node_id: str) -> float:
        """One draw in [0, 1) per (session, node), kept for revisits."""
        if node_id in session.ab_draws:
            return session.ab_draws[node_id]
        digest = hashlib.md5(f"{session.id}:{node_id}:{session.ab_epoch}".encode()).hexdigest()
        draw = int(digest[:13], 16) / float(16 ** 13)
        session.ab_draws[node_id] = draw
        return draw

    @staticmethod
    def reset_ab_buckets(session: Session, node_id: Optional[str] = None) -> None:
        """Forget A/B draws (all, or one node) so the next visit draws again."""
        if node_id is None:
            session.ab_draws.clear()
        else:
            session.ab_draws.pop(node_id, None)
        session.ab_epoch += 1

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _record(result: AdvanceResult, node_id: str, node_type: str, label: str,
                user_response: Optional[str], tick: datetime) -> None:
        result.interactions.append(InteractionDraft(
            node_id=node_id,
            node_type=node_type,
            node_label=label or "",
            user_response=user_response,
            interacted_at=tick,
            step=len(result.interactions),
        ))

    @staticmethod
    def _outbound(session: Session, node_id: str, text: str,
                  buttons: list[QuickReplyButton] = None) -> OutboundMessage:
        return OutboundMessage(
            user_id=session.user_id,
            channel=session.channel,
            rendered_text=text,
            buttons=buttons or [],
            session_id=session.id,
            node_id=node_id,
        )

    def _prompt(self, node, session: Session) -> OutboundMessage:
        buttons = [
            QuickReplyButton(id=b.id, title=render(b.title, session.variables))
            for b in node.data.buttons
        ]
        return self._outbound(session, node.id, render(node.data.body, session.variables), buttons)


# ──────────────────────────────────────────────────────────────
#  Pure helpers
# ──────────────────────────────────────────────────────────────

def match_button(
    buttons: list[QuickReplyButton], payload: Optional[str], text: Optional[str],
) -> Optional[QuickReplyButton]:
    """Button id first (payload, then text), then case-insensitive title."""
    by_id = {b.id: b for b in buttons}
    for candidate in (payload, text):
        if candidate and candidate in by_id:
            return by_id[candidate]
    for candidate in (text, payload):
        if not candidate:
            continue
        wanted = candidate.strip().casefold()
        for b in buttons:
            if b.title.strip().casefold() == wanted:
                return b
    return None


def pick_variant(variants: list[AbVariant], draw: float) -> AbVariant:
    """
    Map a draw in [0, 1) onto variants weighted by percentage.
    Weights are normalized by their sum; a non-positive sum splits evenly.
    """
    weights = [max(float(v.percentage), 0.0) for v in variants]
    total = sum(weights)
    if total <= 0:
        return variants[min(int(draw * len(variants)), len(variants) - 1)]
    cumulative = 0.0
    for variant, weight in zip(variants, weights):
        cumulative += weight / total
        if draw < cumulative:
            return variant
    # Float rounding can leave the last bucket a hair short of 1.0
    return next(v for v, w in zip(reversed(variants), reversed(weights)) if w > 0)
