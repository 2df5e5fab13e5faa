"""Shared test fixtures for FlowRunner."""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from config.settings import EngineConfig, reset_settings
from context.ledger import SessionLedger
from core.engine import FlowEngine
from core.external import ExternalCaller
from core.orchestrator import FlowOrchestrator
from channels.base import ChannelRegistry
from channels.chat_adapter import ChatAdapter
from database.store_factory import reset_store
from database.store_memory import InMemoryFlowStore
from flows.graph import FlowGraph
from models.schemas import Bot, Session


T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def at(seconds: float = 0, minutes: float = 0) -> datetime:
    """A fixed instant relative to T0, so runs are reproducible."""
    return T0 + timedelta(seconds=seconds, minutes=minutes)


# ──────────────────────────────────────────────────────────────
#  Flow builders
# ──────────────────────────────────────────────────────────────

def node(node_id: str, node_type: str, **data: Any) -> dict[str, Any]:
    data.setdefault("label", node_id)
    return {"id": node_id, "type": node_type, "data": data}


def edge(source: str, target: str, handle: str = None) -> dict[str, Any]:
    e = {"id": f"e_{source}_{target}_{handle or 'out'}", "source": source, "target": target}
    if handle:
        e["sourceHandle"] = handle
    return e


def flow(nodes: list[dict], edges: list[dict]) -> dict[str, Any]:
    return {"nodes": nodes, "edges": edges}


def greeting_flow() -> dict[str, Any]:
    """start → "Hi" → quick reply (Yes / No) → Yes: "Great!", No: handoff."""
    return flow(
        [
            node("node_1", "start", label="Start"),
            node("node_2", "message", label="Greeting", message="Hi"),
            node("node_3", "quickReply", label="Interested?", body="Interested?",
                 buttons=[{"id": "btn-1", "title": "Yes"}, {"id": "btn-2", "title": "No"}]),
            node("node_4", "message", label="Great", message="Great!"),
            node("node_5", "handoff", label="Agent", assignTo="queue", queueName="sales",
                 message="Connecting you to an agent"),
        ],
        [
            edge("node_1", "node_2"),
            edge("node_2", "node_3"),
            edge("node_3", "node_4", "btn-1"),
            edge("node_3", "node_5", "btn-2"),
        ],
    )


def age_flow() -> dict[str, Any]:
    """start → condition(age > 18), only the true branch is wired."""
    return flow(
        [
            node("node_1", "start"),
            node("node_2", "condition", label="Adult?", variable="age", operator="greater_than", value="18"),
            node("node_3", "message", message="Adult"),
        ],
        [
            edge("node_1", "node_2"),
            edge("node_2", "node_3", "true"),
        ],
    )


def reminder_flow() -> dict[str, Any]:
    """start → delay(5 minutes) → "Reminder"."""
    return flow(
        [
            node("node_1", "start"),
            node("node_2", "delay", label="Wait", duration=5, unit="minutes"),
            node("node_3", "message", label="Reminder", message="Reminder"),
        ],
        [
            edge("node_1", "node_2"),
            edge("node_2", "node_3"),
        ],
    )


def new_session(flow_data: dict[str, Any], **overrides: Any) -> Session:
    fields = {
        "bot_id": "bot_1",
        "user_id": "user_1",
        "flow_snapshot": flow_data,
        "started_at": T0,
        "last_activity_at": T0,
    }
    fields.update(overrides)
    return Session(**fields)


def json_transport(status: int = 200, body: Any = None, calls: list = None) -> httpx.MockTransport:
    """MockTransport answering every request with one status/body."""
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return httpx.Response(status, json=body if body is not None else {"ok": True})
    return httpx.MockTransport(handler)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _isolated_singletons(monkeypatch, tmp_path):
    """Every test starts with default settings and no cached store."""
    monkeypatch.setenv("FLOWRUNNER_CONFIG", str(tmp_path / "missing.yaml"))
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()


@pytest.fixture
def http_calls() -> list:
    return []


@pytest.fixture
def external(http_calls) -> ExternalCaller:
    return ExternalCaller(backoff_base=0, booking_url="http://booking.test/book",
                          transport=json_transport(calls=http_calls))


@pytest.fixture
def engine(external) -> FlowEngine:
    return FlowEngine(external=external)


@pytest.fixture
def store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def ledger(store) -> SessionLedger:
    return SessionLedger(store)


@pytest.fixture
def chat() -> ChatAdapter:
    return ChatAdapter()


@pytest.fixture
def channels(chat) -> ChannelRegistry:
    registry = ChannelRegistry(default=chat)
    registry.register(chat)
    return registry


@pytest.fixture
def orchestrator(ledger, engine, channels) -> FlowOrchestrator:
    return FlowOrchestrator(ledger, engine, channels, config=EngineConfig())


@pytest.fixture
def greeting_bot() -> Bot:
    return Bot(id="bot_greet", name="Greeter", trigger_keywords=["hello", "hi"],
               flow_data=greeting_flow(), created_at=T0, updated_at=T0)


@pytest.fixture
def greeting_graph() -> FlowGraph:
    return FlowGraph.from_flow_data(greeting_flow())
