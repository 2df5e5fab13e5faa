"""
Tests for the flow engine.

Covers:
  - Quick reply → branch → completed / handed off
  - Branch with no edge completes the session
  - Delay suspension and wake
  - Execution budget on cycles, unknown nodes, invalid snapshots
  - A/B split distribution, determinism, bucket reset
  - External calls: retries, error edges, webhook wait/timeout, booking, email
"""
from collections import Counter

import pytest

from conftest import (
    age_flow, at, edge, flow, greeting_flow, json_transport, new_session,
    node, reminder_flow,
)
from core.engine import FlowEngine, match_button, pick_variant
from core.external import ExternalCaller
from flows.errors import (
    ExecutionBudgetExceeded, ExternalCallError, OrphanNodeError, UnknownNodeError,
)
from flows.graph import FlowGraph
from models.schemas import (
    AbVariant, InboundEvent, QuickReplyButton, SessionStatus, SuspendKind,
    TimerTick, WebhookReply,
)


def _graph(session):
    return FlowGraph.from_flow_data(session.flow_snapshot)


def _reply(text="", payload=None, seconds=10):
    return InboundEvent(userId="user_1", text=text, buttonPayload=payload, timestamp=at(seconds))


def _texts(result):
    return [m.rendered_text for m in result.outbound]


def _nodes(result):
    return [i.node_id for i in result.interactions]


# ──────────────────────────────────────────────────────────────
#  Quick reply flows
# ──────────────────────────────────────────────────────────────

class TestQuickReplyFlow:
    @pytest.mark.asyncio
    async def test_first_advance_sends_greeting_and_waits(self, engine):
        session = new_session(greeting_flow())
        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.suspended
        assert _texts(result) == ["Hi", "Interested?"]
        assert [b.title for b in result.outbound[1].buttons] == ["Yes", "No"]
        assert _nodes(result) == ["node_1", "node_2", "node_3"]
        assert session.current_node_id == "node_3"
        assert session.pending.kind == SuspendKind.REPLY

    @pytest.mark.asyncio
    async def test_yes_case_insensitive_completes(self, engine):
        session = new_session(greeting_flow())
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        result = await engine.advance(session, graph, _reply("yes"))

        assert result.status == SessionStatus.COMPLETED
        assert _texts(result) == ["Great!"]
        assert _nodes(result) == ["node_3", "node_4"]
        assert result.interactions[0].user_response == "yes"
        assert session.variables["user_input"] == "Yes"
        assert session.ended_at == at(10)
        assert session.pending is None

    @pytest.mark.asyncio
    async def test_no_hands_off(self, engine):
        session = new_session(greeting_flow())
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        result = await engine.advance(session, graph, _reply("No"))

        assert result.status == SessionStatus.HANDED_OFF
        assert session.status == SessionStatus.HANDED_OFF
        assert _texts(result) == ["Connecting you to an agent"]
        assert result.handoff.queue_name == "sales"
        assert result.handoff.node_id == "node_5"

    @pytest.mark.asyncio
    async def test_button_payload_matches_by_id(self, engine):
        session = new_session(greeting_flow())
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        result = await engine.advance(session, graph, _reply(payload="btn-1"))

        assert result.status == SessionStatus.COMPLETED
        assert result.branches == [("node_3", "btn-1")]

    @pytest.mark.asyncio
    async def test_unmatched_reply_reprompts_then_drops(self, engine):
        session = new_session(greeting_flow())
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        first = await engine.advance(session, graph, _reply("maybe", seconds=10))
        assert first.status == SessionStatus.ACTIVE
        assert not first.noop
        assert _texts(first) == ["Interested?"]
        assert session.pending.reprompts == 1

        second = await engine.advance(session, graph, _reply("perhaps", seconds=20))
        assert second.status == SessionStatus.DROPPED
        assert second.interactions[-1].node_id == "node_3"
        assert second.interactions[-1].user_response == "perhaps"
        assert second.interactions[-1].is_drop_off

    @pytest.mark.asyncio
    async def test_save_as_stores_answer(self, engine):
        data = greeting_flow()
        data["nodes"][2]["data"]["saveAs"] = "interest"
        session = new_session(data)
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        await engine.advance(session, graph, _reply("YES"))

        assert session.variables["interest"] == "Yes"

    @pytest.mark.asyncio
    async def test_timer_during_reply_wait_is_noop(self, engine):
        session = new_session(greeting_flow())
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        result = await engine.advance(session, graph, TimerTick(timestamp=at(minutes=10)))

        assert result.noop
        assert session.pending.kind == SuspendKind.REPLY


class TestMatchButton:
    BUTTONS = [QuickReplyButton(id="btn-1", title="Yes"), QuickReplyButton(id="btn-2", title="No")]

    def test_payload_id_wins(self):
        assert match_button(self.BUTTONS, "btn-2", "Yes").id == "btn-2"

    def test_title_match_ignores_case_and_spaces(self):
        assert match_button(self.BUTTONS, None, "  nO ").id == "btn-2"

    def test_no_match(self):
        assert match_button(self.BUTTONS, None, "later") is None


# ──────────────────────────────────────────────────────────────
#  Conditions
# ──────────────────────────────────────────────────────────────

class TestConditionBranching:
    @pytest.mark.asyncio
    async def test_false_branch_without_edge_completes(self, engine):
        session = new_session(age_flow(), variables={"age": "15"})

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.COMPLETED
        assert _nodes(result) == ["node_1", "node_2"]
        assert result.branches == [("node_2", "false")]
        assert result.outbound == []

    @pytest.mark.asyncio
    async def test_true_branch_sends_message(self, engine):
        session = new_session(age_flow(), variables={"age": "21"})

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.COMPLETED
        assert _texts(result) == ["Adult"]
        assert len(result.interactions) == 3

    @pytest.mark.asyncio
    async def test_unparseable_number_is_false(self, engine):
        session = new_session(age_flow(), variables={"age": "old"})

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.branches == [("node_2", "false")]

    @pytest.mark.asyncio
    async def test_templates_render_variables(self, engine):
        data = flow(
            [node("n1", "start"), node("n2", "message", message="Hello {{name}}, order {{order.id}} {{missing}}")],
            [edge("n1", "n2")],
        )
        session = new_session(data, variables={"name": "Ann", "order": {"id": 7}})

        result = await engine.advance(session, _graph(session), now=at(0))

        assert _texts(result) == ["Hello Ann, order 7 {{missing}}"]


# ──────────────────────────────────────────────────────────────
#  Delay
# ──────────────────────────────────────────────────────────────

class TestDelay:
    @pytest.mark.asyncio
    async def test_suspends_until_wake_time(self, engine):
        session = new_session(reminder_flow())
        graph = _graph(session)

        first = await engine.advance(session, graph, now=at(0))
        assert first.suspended
        assert first.pending.wake_at == at(minutes=5)
        assert first.outbound == []

        early = await engine.advance(session, graph, now=at(minutes=4))
        assert early.noop
        assert session.pending is not None

        due = await engine.advance(session, graph, now=at(minutes=5))
        assert due.status == SessionStatus.COMPLETED
        assert _texts(due) == ["Reminder"]

    @pytest.mark.asyncio
    async def test_inbound_text_during_delay_is_ignored(self, engine):
        session = new_session(reminder_flow())
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        result = await engine.advance(session, graph, _reply("hello?", seconds=400))

        assert result.noop
        assert session.status == SessionStatus.ACTIVE


# ──────────────────────────────────────────────────────────────
#  Failure handling
# ──────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_cycle_hits_execution_budget(self, engine):
        data = flow(
            [node("n1", "start"), node("n2", "message", message="a"), node("n3", "message", message="b")],
            [edge("n1", "n2"), edge("n2", "n3"), edge("n3", "n2")],
        )
        session = new_session(data)

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.DROPPED
        assert isinstance(result.error, ExecutionBudgetExceeded)
        assert result.steps == 50
        assert len(result.interactions) == 50
        assert result.interactions[-1].is_drop_off
        assert sum(i.is_drop_off for i in result.interactions) == 1

    @pytest.mark.asyncio
    async def test_budget_is_configurable(self, external):
        engine = FlowEngine(external=external, max_steps=5)
        data = flow(
            [node("n1", "start"), node("n2", "message", message="loop")],
            [edge("n1", "n2"), edge("n2", "n2")],
        )
        session = new_session(data)

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.steps == 5
        assert result.status == SessionStatus.DROPPED

    @pytest.mark.asyncio
    async def test_unknown_current_node_drops(self, engine):
        session = new_session(greeting_flow(), current_node_id="node_99")

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.DROPPED
        assert isinstance(result.error, UnknownNodeError)
        assert result.interactions[-1].node_type == "unknown"
        assert result.interactions[-1].is_drop_off

    @pytest.mark.asyncio
    async def test_orphan_node_is_fatal_at_snapshot(self, engine):
        data = greeting_flow()
        data["nodes"].append(node("node_9", "message", message="unreachable"))
        session = new_session(data)

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.DROPPED
        assert isinstance(result.error, OrphanNodeError)
        assert result.interactions[0].user_response == "error:orphan_node"

    @pytest.mark.asyncio
    async def test_closed_session_is_noop(self, engine):
        session = new_session(greeting_flow(), status=SessionStatus.COMPLETED)

        result = await engine.advance(session, _graph(session), _reply("yes"))

        assert result.noop
        assert not result


# ──────────────────────────────────────────────────────────────
#  A/B split
# ──────────────────────────────────────────────────────────────

def _ab_flow(variants, handles=None):
    handles = handles or [v["name"] for v in variants]
    nodes = [node("n1", "start"), node("ab", "abTest", variants=variants)]
    edges = [edge("n1", "ab")]
    for v, h in zip(variants, handles):
        nodes.append(node(f"m{v['name']}", "message", message=v["name"]))
        edges.append(edge("ab", f"m{v['name']}", h))
    return flow(nodes, edges)


class TestAbSplit:
    @pytest.mark.asyncio
    async def test_distribution_over_10k_sessions(self, engine):
        data = _ab_flow([{"name": "A", "percentage": 70}, {"name": "B", "percentage": 30}])
        graph = FlowGraph.from_flow_data(data)
        counts = Counter()
        for i in range(10_000):
            session = new_session(data, id=f"s{i:05d}", user_id=f"u{i}")
            result = await engine.advance(session, graph, now=at(0))
            counts[result.outbound[0].rendered_text] += 1

        assert abs(counts["A"] / 10_000 - 0.70) < 0.03
        assert abs(counts["B"] / 10_000 - 0.30) < 0.03

    def test_weights_are_normalized(self):
        variants = [AbVariant(name="A", percentage=1), AbVariant(name="B", percentage=3)]
        assert pick_variant(variants, 0.24).name == "A"
        assert pick_variant(variants, 0.26).name == "B"
        assert pick_variant(variants, 0.999999).name == "B"

    def test_non_positive_total_splits_evenly(self):
        variants = [AbVariant(name="A", percentage=0), AbVariant(name="B", percentage=0)]
        assert pick_variant(variants, 0.49).name == "A"
        assert pick_variant(variants, 0.51).name == "B"

    @pytest.mark.asyncio
    async def test_same_session_same_variant(self, engine):
        data = _ab_flow([{"name": "A", "percentage": 50}, {"name": "B", "percentage": 50}])
        graph = FlowGraph.from_flow_data(data)
        first = new_session(data, id="fixed-session")
        again = new_session(data, id="fixed-session")

        r1 = await engine.advance(first, graph, now=at(0))
        r2 = await engine.advance(again, graph, now=at(0))

        assert _texts(r1) == _texts(r2)
        assert first.ab_draws == again.ab_draws

    @pytest.mark.asyncio
    async def test_variant_handles_accepted(self, engine):
        variants = [{"name": "A", "percentage": 100}, {"name": "B", "percentage": 0}]
        data = _ab_flow(variants, handles=["variant-a", "variant-b"])
        session = new_session(data)

        result = await engine.advance(session, _graph(session), now=at(0))

        assert _texts(result) == ["A"]

    def test_reset_draws_again(self):
        session = new_session(greeting_flow(), id="sess-reset")
        before = FlowEngine._ab_draw(session, "ab")
        assert FlowEngine._ab_draw(session, "ab") == before

        FlowEngine.reset_ab_buckets(session, "ab")

        assert "ab" not in session.ab_draws
        assert session.ab_epoch == 1
        assert FlowEngine._ab_draw(session, "ab") != before


# ──────────────────────────────────────────────────────────────
#  External calls
# ──────────────────────────────────────────────────────────────

def _api_flow(with_error_edge=False):
    nodes = [
        node("n1", "start"),
        node("n2", "apiCall", label="Lookup", method="POST", url="http://api.test/users/{{user_id}}",
             body={"name": "{{name}}"}, saveAs="lookup"),
        node("n3", "message", message="Found {{lookup.plan}}"),
    ]
    edges = [edge("n1", "n2"), edge("n2", "n3")]
    if with_error_edge:
        nodes.append(node("n4", "message", message="Sorry, try later"))
        edges.append(edge("n2", "n4", "error"))
    return flow(nodes, edges)


class TestExternalCalls:
    @pytest.mark.asyncio
    async def test_api_call_saves_response(self):
        calls = []
        engine = FlowEngine(external=ExternalCaller(
            backoff_base=0, transport=json_transport(body={"plan": "gold"}, calls=calls),
        ))
        session = new_session(_api_flow(), variables={"user_id": "42", "name": "Ann"})

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.COMPLETED
        assert _texts(result) == ["Found gold"]
        assert calls[0].url.path == "/users/42"
        assert b'"Ann"' in calls[0].content

    @pytest.mark.asyncio
    async def test_server_errors_retry_then_drop(self):
        calls = []
        engine = FlowEngine(external=ExternalCaller(
            backoff_base=0, transport=json_transport(status=503, calls=calls),
        ))
        session = new_session(_api_flow())

        result = await engine.advance(session, _graph(session), now=at(0))

        assert len(calls) == 3
        assert result.status == SessionStatus.DROPPED
        assert isinstance(result.error, ExternalCallError)
        last = result.interactions[-1]
        assert last.node_id == "n2"
        assert last.user_response.startswith("error:")
        assert last.is_drop_off

    @pytest.mark.asyncio
    async def test_error_edge_is_followed(self):
        engine = FlowEngine(external=ExternalCaller(
            backoff_base=0, transport=json_transport(status=500),
        ))
        session = new_session(_api_flow(with_error_edge=True))

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.COMPLETED
        assert _texts(result) == ["Sorry, try later"]
        assert result.branches == [("n2", "error")]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []
        engine = FlowEngine(external=ExternalCaller(
            backoff_base=0, transport=json_transport(status=404, calls=calls),
        ))
        session = new_session(_api_flow())

        await engine.advance(session, _graph(session), now=at(0))

        assert len(calls) == 1


def _webhook_flow(wait=True, with_error_edge=False):
    nodes = [
        node("n1", "start"),
        node("n2", "webhookTrigger", webhookUrl="http://hooks.test/lead", waitForResponse=wait,
             timeoutSeconds=60, saveAs="lead"),
        node("n3", "message", message="Thanks {{lead.name}}"),
    ]
    edges = [edge("n1", "n2"), edge("n2", "n3")]
    if with_error_edge:
        nodes.append(node("n4", "message", message="No answer"))
        edges.append(edge("n2", "n4", "error"))
    return flow(nodes, edges)


class TestWebhookTrigger:
    @pytest.mark.asyncio
    async def test_waits_for_matching_reply(self, engine, http_calls):
        session = new_session(_webhook_flow())
        graph = _graph(session)

        first = await engine.advance(session, graph, now=at(0))
        assert first.suspended
        correlation_id = session.pending.correlation_id
        assert session.pending.deadline == at(60)
        assert correlation_id.encode() in http_calls[0].content

        wrong = await engine.advance(session, graph, WebhookReply(correlation_id="other", timestamp=at(5)))
        assert wrong.noop

        done = await engine.advance(
            session, graph, WebhookReply(correlation_id=correlation_id, payload={"name": "Ann"}, timestamp=at(30)),
        )
        assert done.status == SessionStatus.COMPLETED
        assert _texts(done) == ["Thanks Ann"]

    @pytest.mark.asyncio
    async def test_timeout_drops(self, engine):
        session = new_session(_webhook_flow())
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        early = await engine.advance(session, graph, TimerTick(timestamp=at(59)))
        assert early.noop

        result = await engine.advance(session, graph, TimerTick(timestamp=at(61)))
        assert result.status == SessionStatus.DROPPED
        assert result.interactions[-1].user_response == "error:timeout"
        assert result.interactions[-1].is_drop_off

    @pytest.mark.asyncio
    async def test_timeout_follows_error_edge(self, engine):
        session = new_session(_webhook_flow(with_error_edge=True))
        graph = _graph(session)
        await engine.advance(session, graph, now=at(0))

        result = await engine.advance(session, graph, TimerTick(timestamp=at(120)))

        assert result.status == SessionStatus.COMPLETED
        assert _texts(result) == ["No answer"]

    @pytest.mark.asyncio
    async def test_fire_and_forget_continues(self):
        engine = FlowEngine(external=ExternalCaller(
            backoff_base=0, transport=json_transport(body={"name": "Bo"}),
        ))
        session = new_session(_webhook_flow(wait=False))

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.COMPLETED
        assert _texts(result) == ["Thanks Bo"]


def _appointment_flow():
    return flow(
        [
            node("n1", "start"),
            node("n2", "appointment", label="Book", duration=45, confirmationMessage="Booked for {{appointment.time}}"),
            node("n3", "message", message="See you"),
            node("n4", "message", message="No slots"),
        ],
        [edge("n1", "n2"), edge("n2", "n3", "booked"), edge("n2", "n4", "cancelled")],
    )


class TestAppointmentAndEmail:
    @pytest.mark.asyncio
    async def test_booked_sends_confirmation(self):
        calls = []
        engine = FlowEngine(external=ExternalCaller(
            backoff_base=0, booking_url="http://booking.test/book",
            transport=json_transport(body={"status": "confirmed", "time": "10:00"}, calls=calls),
        ))
        session = new_session(_appointment_flow())

        result = await engine.advance(session, _graph(session), now=at(0))

        assert _texts(result) == ["Booked for 10:00", "See you"]
        assert result.branches == [("n2", "booked")]
        assert b'"duration_minutes":45' in calls[0].content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_unavailable_takes_cancelled_branch(self):
        engine = FlowEngine(external=ExternalCaller(
            backoff_base=0, booking_url="http://booking.test/book",
            transport=json_transport(body={"status": "full"}),
        ))
        session = new_session(_appointment_flow())

        result = await engine.advance(session, _graph(session), now=at(0))

        assert _texts(result) == ["No slots"]

    @pytest.mark.asyncio
    async def test_email_rendered_and_sent(self, external):
        sent = []

        async def sender(to, subject, body, template, variables):
            sent.append((to, subject, body))
            return {"status": "sent"}

        engine = FlowEngine(external=external, email_sender=sender)
        data = flow(
            [node("n1", "start"), node("n2", "email", to="{{contact.email}}", subject="Hi {{name}}", body="Welcome")],
            [edge("n1", "n2")],
        )
        session = new_session(data, variables={"contact": {"email": "ann@example.com"}, "name": "Ann"})

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.COMPLETED
        assert sent == [("ann@example.com", "Hi Ann", "Welcome")]

    @pytest.mark.asyncio
    async def test_email_without_sender_drops(self, engine):
        data = flow([node("n1", "start"), node("n2", "email", to="a@b.co")], [edge("n1", "n2")])
        session = new_session(data)

        result = await engine.advance(session, _graph(session), now=at(0))

        assert result.status == SessionStatus.DROPPED
        assert result.interactions[-1].user_response.startswith("error:")


class TestDeterminism:
    @pytest.mark.asyncio
    async def test_replay_yields_same_interactions(self, engine):
        def run_events():
            return [_reply("maybe", seconds=10), _reply("Yes", seconds=20)]

        async def replay():
            session = new_session(greeting_flow(), id="replayed")
            graph = _graph(session)
            records = []
            result = await engine.advance(session, graph, now=at(0))
            records += [(i.node_id, i.user_response) for i in result.interactions]
            for event in run_events():
                result = await engine.advance(session, graph, event)
                records += [(i.node_id, i.user_response) for i in result.interactions]
            return records, session.status

        assert await replay() == await replay()
