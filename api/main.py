"""
FastAPI Application — bot registry, inbound events, webhooks, analytics.

Provides:
- Bot registration with graph validation (422 + issue list on broken graphs)
- Inbound channel events and explicit session starts
- Webhook answers for webhookTrigger nodes waiting on a correlation id
- Session inspection and explicit stop
- Bot performance analytics over a trailing window
- Wake scheduler for delays, webhook deadlines and the inactivity sweep
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from analytics.aggregator import AnalyticsService, TimeWindow
from channels.base import ChannelRegistry
from channels.chat_adapter import ChatAdapter
from channels.email_adapter import EmailAdapter
from channels.relay_adapter import RelayAdapter
from config.settings import Settings, get_settings
from context.ledger import SessionLedger
from core.engine import AdvanceResult, FlowEngine
from core.external import ExternalCaller
from core.orchestrator import FlowOrchestrator
from core.scheduler import WakeScheduler
from database.store_base import BaseFlowStore
from database.store_factory import create_store
from flows.errors import GraphError, GraphValidationError, UnknownBotError
from flows.graph import GraphIssue
from models.schemas import Bot, ChannelType, InboundEvent, WebhookReply, utcnow

logger = structlog.get_logger()

_RELAY_CHANNELS = (
    ChannelType.WHATSAPP, ChannelType.INSTAGRAM, ChannelType.FACEBOOK,
    ChannelType.TELEGRAM, ChannelType.TWITTER,
)


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Runtime:
    settings: Settings
    store: BaseFlowStore
    ledger: SessionLedger
    external: ExternalCaller
    channels: ChannelRegistry
    email: EmailAdapter
    engine: FlowEngine
    orchestrator: FlowOrchestrator
    scheduler: WakeScheduler
    analytics: AnalyticsService


def build_runtime(settings: Settings) -> Runtime:
    store = create_store({
        "store_backend": settings.database.store_backend,
        "url": settings.database.url,
    })
    ledger = SessionLedger(store, dedup_window_ms=settings.engine.interaction_dedup_window_ms)
    external = ExternalCaller.from_settings(settings.engine, settings.integrations)

    # Web chat is the fallback for any channel without its own adapter
    chat_adapter = ChatAdapter()
    channels = ChannelRegistry(default=chat_adapter)
    channels.register(chat_adapter)
    for channel in _RELAY_CHANNELS:
        cfg = settings.channels.get(channel.value)
        if cfg is not None and cfg.enabled:
            channels.register(RelayAdapter(channel))
    email_adapter = EmailAdapter(
        api_url=settings.integrations.email_api_url,
        api_key=settings.integrations.email_api_key,
        from_email=settings.integrations.email_from,
    )
    channels.register(email_adapter)

    engine = FlowEngine.from_settings(settings.engine, external, email_sender=email_adapter.send_email)
    orchestrator = FlowOrchestrator(ledger, engine, channels, config=settings.engine)
    scheduler = WakeScheduler(orchestrator, interval_s=settings.engine.sweep_interval_seconds)
    orchestrator.attach_scheduler(scheduler)

    return Runtime(
        settings=settings,
        store=store,
        ledger=ledger,
        external=external,
        channels=channels,
        email=email_adapter,
        engine=engine,
        orchestrator=orchestrator,
        scheduler=scheduler,
        analytics=AnalyticsService(store),
    )


runtime: Optional[Runtime] = None


def _rt() -> Runtime:
    if runtime is None:
        raise HTTPException(503, "Service not started")
    return runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    global runtime
    settings = get_settings()
    if runtime is None:
        runtime = build_runtime(settings)
    rt = runtime

    await rt.store.init_schema()
    await rt.channels.initialize_all(settings.channels)

    await rt.orchestrator.load_bots()
    configured = []
    for raw in settings.bots:
        try:
            configured.append(Bot.model_validate(raw))
        except ValueError as e:
            logger.error("bot_config_invalid", bot=raw.get("id") if isinstance(raw, dict) else None, error=str(e))
    if configured:
        await rt.orchestrator.load_bots(configured)

    await rt.scheduler.start()

    logger.info("flowrunner_started",
                store=type(rt.store).__name__,
                channels=[c.value for c in rt.channels.get_available()],
                bots=len(rt.orchestrator.list_bots()))
    yield

    await rt.scheduler.stop()
    await rt.channels.shutdown_all()
    await rt.external.close()
    await rt.store.close()
    logger.info("flowrunner_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="FlowRunner API",
    description="Multi-channel bot flow execution engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class BotUpsertRequest(BaseModel):
    name: str = ""
    is_active: bool = True
    trigger_keywords: list[str] = []
    flow_data: dict[str, Any] = {"nodes": [], "edges": []}
    channel: ChannelType = ChannelType.WHATSAPP


class StartSessionRequest(BaseModel):
    bot_id: str
    user_id: str
    conversation_id: str = ""
    channel: Optional[ChannelType] = None
    variables: dict[str, Any] = {}


class WebhookReplyRequest(BaseModel):
    payload: Any = None
    timestamp: Optional[datetime] = None


def _result_body(result: Optional[AdvanceResult]) -> dict[str, Any]:
    if result is None:
        return {"status": "ignored"}
    return {
        "session_id": result.session_id,
        "status": result.status.value,
        "noop": result.noop,
        "steps": result.steps,
        "sent": [m.to_wire() for m in result.outbound],
        "waiting_for": result.pending.kind.value if result.pending else None,
    }


def _issues_body(issues: list[GraphIssue]) -> list[dict[str, Any]]:
    return [i.to_dict() for i in issues]


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    rt = _rt()
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "channels": [c.value for c in rt.channels.get_available()],
        "bots": len(rt.orchestrator.list_bots()),
        "timers": len(rt.scheduler),
    }


# ══════════════════════════════════════════════════════════════
#  BOTS
# ══════════════════════════════════════════════════════════════

@app.put("/api/v1/bots/{bot_id}")
async def upsert_bot(bot_id: str, req: BotUpsertRequest):
    bot = Bot(
        id=bot_id,
        name=req.name,
        is_active=req.is_active,
        trigger_keywords=req.trigger_keywords,
        flow_data=req.flow_data,
        channel=req.channel,
    )
    try:
        bot = await _rt().orchestrator.register_bot(bot)
    except GraphError as e:
        errors = e.errors if isinstance(e, GraphValidationError) else [e]
        return JSONResponse(status_code=422, content={
            "detail": "Invalid flow graph",
            "issues": _issues_body([GraphIssue("error", err) for err in errors]),
        })
    return {"bot_id": bot.id, "version": bot.version, "is_active": bot.is_active}


@app.get("/api/v1/bots/{bot_id}/validate")
async def validate_bot(bot_id: str):
    try:
        issues = _rt().orchestrator.validate_bot(bot_id)
    except UnknownBotError:
        raise HTTPException(404, "Bot not found")
    return {
        "valid": not any(i.severity == "error" for i in issues),
        "issues": _issues_body(issues),
    }


# ══════════════════════════════════════════════════════════════
#  EVENTS & SESSIONS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/events/inbound")
async def receive_inbound_event(event: InboundEvent):
    result = await _rt().orchestrator.handle_inbound(event)
    return _result_body(result)


@app.post("/api/v1/sessions/start")
async def start_session(req: StartSessionRequest):
    try:
        result = await _rt().orchestrator.start_session(
            req.bot_id,
            req.user_id,
            conversation_id=req.conversation_id,
            channel=req.channel,
            variables=req.variables,
        )
    except UnknownBotError:
        raise HTTPException(404, "Bot not found")
    return _result_body(result)


@app.post("/webhooks/flow/{correlation_id}")
async def webhook_reply(correlation_id: str, req: WebhookReplyRequest):
    reply = WebhookReply(
        correlation_id=correlation_id,
        payload=req.payload,
        timestamp=req.timestamp or utcnow(),
    )
    result = await _rt().orchestrator.handle_webhook_reply(reply)
    if result is None:
        raise HTTPException(404, "No session waiting on this correlation id")
    return _result_body(result)


@app.post("/api/v1/sessions/{session_id}/stop")
async def stop_session(session_id: str):
    rt = _rt()
    if await rt.ledger.get_session(session_id) is None:
        raise HTTPException(404, "Session not found")
    closed = await rt.orchestrator.stop_session(session_id)
    return {"session_id": session_id, "stopped": closed is not None}


@app.get("/api/v1/sessions/{session_id}")
async def get_session(session_id: str):
    rt = _rt()
    session = await rt.ledger.get_session(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    interactions = await rt.ledger.list_interactions(session_id)
    return {
        "session": session.model_dump(mode="json", exclude={"flow_snapshot", "seen_events"}),
        "interactions": [i.model_dump(mode="json") for i in interactions],
    }


# ══════════════════════════════════════════════════════════════
#  ANALYTICS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/bots/{bot_id}/analytics")
async def bot_analytics(bot_id: str, days: int = Query(30, ge=1, le=365)):
    try:
        perf = await _rt().analytics.bot_performance(bot_id, TimeWindow.last_days(days))
    except UnknownBotError:
        raise HTTPException(404, "Bot not found")
    return perf.model_dump(by_alias=True)


@app.get("/api/v1/analytics")
async def analytics_summary(days: int = Query(30, ge=1, le=365)):
    summary = await _rt().analytics.summary(TimeWindow.last_days(days))
    return summary.model_dump(by_alias=True)
