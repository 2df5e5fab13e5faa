"""
Analytics Aggregator — bot performance metrics from the session ledger.

Pure functions over sessions and interaction records, plus a thin service
that loads both from a flow store for a time window.

The window selects sessions by ``started_at``; every interaction of a
selected session is included, even one recorded after the window closed.
That keeps the drop-off invariant exact for any window:

    sum(p.drop_count for p in drop_off_points(...)) == dropped sessions

Serialized with ``by_alias=True`` the models produce the dashboard's keys
(``totalSessions``, ``completionRate``, ``dropOffPoints`` ...).

Usage:
    service = AnalyticsService(store)
    perf = await service.bot_performance("bot_1", TimeWindow.last_days(30))
    perf.model_dump(by_alias=True)
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from database.store_base import BaseFlowStore
from flows.errors import UnknownBotError
from models.schemas import Bot, InteractionRecord, Session, SessionStatus, utcnow


# ──────────────────────────────────────────────────────────────
#  Result models
# ──────────────────────────────────────────────────────────────

class _Metric(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DropOffPoint(_Metric):
    node_id: str = Field(alias="nodeId")
    node_label: str = Field(alias="nodeLabel")
    node_type: str = Field(alias="nodeType")
    drop_count: int = Field(alias="dropCount")


class NodeEngagement(_Metric):
    node_id: str = Field(alias="nodeId")
    node_label: str = Field(alias="nodeLabel")
    node_type: str = Field(alias="nodeType")
    interactions: int


class DayBucket(_Metric):
    date: str                   # YYYY-MM-DD of started_at (UTC)
    sessions: int = 0
    completed: int = 0
    dropped: int = 0


class BotPerformance(_Metric):
    bot_id: str = Field(alias="botId")
    bot_name: str = Field(alias="botName")
    total_sessions: int = Field(alias="totalSessions")
    completed_sessions: int = Field(alias="completedSessions")
    dropped_sessions: int = Field(alias="droppedSessions")
    handed_off_sessions: int = Field(alias="handedOffSessions")
    active_sessions: int = Field(alias="activeSessions")
    completion_rate: float = Field(alias="completionRate")
    drop_off_points: list[DropOffPoint] = Field(default_factory=list, alias="dropOffPoints")
    node_engagement: list[NodeEngagement] = Field(default_factory=list, alias="nodeEngagement")
    sessions_by_day: list[DayBucket] = Field(default_factory=list, alias="sessionsByDay")


class AnalyticsSummary(_Metric):
    bot_metrics: list[BotPerformance] = Field(default_factory=list, alias="botMetrics")
    total_sessions: int = Field(alias="totalSessions")
    completed_sessions: int = Field(alias="completedSessions")
    dropped_sessions: int = Field(alias="droppedSessions")
    handed_off_sessions: int = Field(alias="handedOffSessions")
    active_sessions: int = Field(alias="activeSessions")
    overall_completion_rate: float = Field(alias="overallCompletionRate")


# ──────────────────────────────────────────────────────────────
#  Time window
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end) on session start time. None = unbounded."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def last_days(cls, days: int, now: Optional[datetime] = None) -> "TimeWindow":
        now = now or utcnow()
        return cls(start=now - timedelta(days=days), end=None)

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True


# ──────────────────────────────────────────────────────────────
#  Pure metrics
# ──────────────────────────────────────────────────────────────

def _count_status(sessions: Iterable[Session], status: SessionStatus) -> int:
    return sum(1 for s in sessions if s.status == status)


def completion_rate(sessions: list[Session]) -> float:
    """Completed sessions as a percentage of all sessions; 0.0 when there are none."""
    if not sessions:
        return 0.0
    return _count_status(sessions, SessionStatus.COMPLETED) / len(sessions) * 100


def _group_by_node(records: Iterable[InteractionRecord]) -> list[tuple[InteractionRecord, int]]:
    # Keyed on node id alone. A node relabelled in a later bot version is
    # still one step of the flow, so its drops stay in one row; the first
    # record seen supplies the label and type shown.
    first: dict[str, InteractionRecord] = {}
    counts: Counter = Counter()
    for r in records:
        first.setdefault(r.node_id, r)
        counts[r.node_id] += 1
    ranked = sorted(first.values(), key=lambda r: counts[r.node_id], reverse=True)
    return [(r, counts[r.node_id]) for r in ranked]


def drop_off_points(
    interactions: Iterable[InteractionRecord], top_n: Optional[int] = None,
) -> list[DropOffPoint]:
    """Where sessions ended as dropped, most common first."""
    points = [
        DropOffPoint(
            node_id=r.node_id,
            node_label=r.node_label or r.node_id,
            node_type=r.node_type,
            drop_count=count,
        )
        for r, count in _group_by_node(i for i in interactions if i.is_drop_off)
    ]
    return points[:top_n] if top_n is not None else points


def node_engagement(interactions: Iterable[InteractionRecord]) -> list[NodeEngagement]:
    return [
        NodeEngagement(
            node_id=r.node_id,
            node_label=r.node_label or r.node_id,
            node_type=r.node_type,
            interactions=count,
        )
        for r, count in _group_by_node(interactions)
    ]


def sessions_by_day(sessions: Iterable[Session]) -> list[DayBucket]:
    days: dict[str, DayBucket] = {}
    for s in sessions:
        key = s.started_at.date().isoformat()
        bucket = days.setdefault(key, DayBucket(date=key))
        bucket.sessions += 1
        if s.status == SessionStatus.COMPLETED:
            bucket.completed += 1
        elif s.status == SessionStatus.DROPPED:
            bucket.dropped += 1
    return [days[k] for k in sorted(days)]


def bot_performance(
    bot: Bot,
    sessions: Iterable[Session],
    interactions: Iterable[InteractionRecord],
    top_n: Optional[int] = None,
) -> BotPerformance:
    """Metrics for one bot. Inputs may span several bots; they are filtered here."""
    own = [s for s in sessions if s.bot_id == bot.id]
    session_ids = {s.id for s in own}
    records = [i for i in interactions if i.session_id in session_ids]

    return BotPerformance(
        bot_id=bot.id,
        bot_name=bot.name,
        total_sessions=len(own),
        completed_sessions=_count_status(own, SessionStatus.COMPLETED),
        dropped_sessions=_count_status(own, SessionStatus.DROPPED),
        handed_off_sessions=_count_status(own, SessionStatus.HANDED_OFF),
        active_sessions=_count_status(own, SessionStatus.ACTIVE),
        completion_rate=completion_rate(own),
        drop_off_points=drop_off_points(records, top_n),
        node_engagement=node_engagement(records),
        sessions_by_day=sessions_by_day(own),
    )


def summarize(
    bots: Iterable[Bot],
    sessions: Iterable[Session],
    interactions: Iterable[InteractionRecord],
) -> AnalyticsSummary:
    """Per-bot metrics plus totals over every session passed in."""
    sessions = list(sessions)
    interactions = list(interactions)
    ordered = sorted(bots, key=lambda b: b.name)
    return AnalyticsSummary(
        bot_metrics=[bot_performance(b, sessions, interactions) for b in ordered],
        total_sessions=len(sessions),
        completed_sessions=_count_status(sessions, SessionStatus.COMPLETED),
        dropped_sessions=_count_status(sessions, SessionStatus.DROPPED),
        handed_off_sessions=_count_status(sessions, SessionStatus.HANDED_OFF),
        active_sessions=_count_status(sessions, SessionStatus.ACTIVE),
        overall_completion_rate=completion_rate(sessions),
    )


# ──────────────────────────────────────────────────────────────
#  Store-backed service
# ──────────────────────────────────────────────────────────────

class AnalyticsService:
    """Loads sessions and interactions for a window and runs the metrics."""

    def __init__(self, store: BaseFlowStore):
        self.store = store

    async def _load(
        self, window: TimeWindow, bot_id: Optional[str] = None,
    ) -> tuple[list[Session], list[InteractionRecord]]:
        sessions = await self.store.list_sessions(
            bot_id=bot_id, started_from=window.start, started_to=window.end,
        )
        if not sessions:
            return [], []
        interactions = await self.store.list_interactions(session_ids=[s.id for s in sessions])
        return sessions, interactions

    async def bot_performance(
        self, bot_id: str, window: Optional[TimeWindow] = None, top_n: Optional[int] = None,
    ) -> BotPerformance:
        bot = await self.store.get_bot(bot_id)
        if bot is None:
            raise UnknownBotError(bot_id)
        sessions, interactions = await self._load(window or TimeWindow(), bot_id)
        return bot_performance(bot, sessions, interactions, top_n)

    async def summary(self, window: Optional[TimeWindow] = None) -> AnalyticsSummary:
        bots = await self.store.list_bots()
        sessions, interactions = await self._load(window or TimeWindow())
        return summarize(bots, sessions, interactions)
