"""End-to-end tests for node dispatch: chaining, retries, failure handling and waits."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from automation_engine.core.execution_engine import DispatchOutcome
from automation_engine.integrations.base import DeliveryError
from automation_engine.models.core import ContactEvent, EnrollmentStatus, LogOutcome, TriggerType


@pytest.fixture
def store(components):
    return components.enrollment_store


@pytest.fixture
def audit(components):
    return components.audit_recorder


def _outcomes(results):
    return [result.outcome for result in results]


class TestLinearExecution:
    """Test cases for straight-line workflows."""

    def test_immediate_steps_chain_in_one_dispatch(self, graph, publish, store, drain, messaging, contact_store, audit):
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("tag", "action", action_type="add_tag", tag="welcomed"),
                graph.node("hello", "message", content="Welcome {{first_name}}!"),
            ],
            [graph.edge("start", "tag"), graph.edge("tag", "hello")]
        ))
        enrollment = store.enroll(workflow, "contact-1").enrollment

        results = drain()

        assert len(results) == 1
        assert results[0].outcome == DispatchOutcome.COMPLETED
        assert results[0].steps == 3
        assert messaging.contents() == ["Welcome Ada!"]
        assert "welcomed" in contact_store.get_contact("contact-1").tags

        finished = store.get(enrollment.id)
        assert finished.status == EnrollmentStatus.COMPLETED
        assert finished.messages_sent == 1
        assert finished.completed_at is not None
        assert finished.lease_holder is None

        log = audit.get_enrollment_log(enrollment.id)
        assert [entry.node_id for entry in log] == ["start", "tag", "hello"]
        assert all(entry.outcome == LogOutcome.SUCCESS for entry in log)

    def test_delay_parks_enrollment_until_due(self, graph, publish, store, drain, messaging, clock):
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("pause", "delay", amount=1, unit="days"),
                graph.node("hello", "message", content="One day later"),
            ],
            [graph.edge("start", "pause"), graph.edge("pause", "hello")]
        ))
        enrollment = store.enroll(workflow, "contact-1").enrollment

        first = drain()

        assert _outcomes(first) == [DispatchOutcome.ADVANCED]
        assert first[0].node_id == "hello"
        assert messaging.sent == []
        parked = store.get(enrollment.id)
        assert parked.current_node_id == "hello"
        assert parked.next_action_at == clock() + timedelta(days=1)

        clock.advance(hours=23)
        assert drain() == []

        clock.advance(hours=1)
        assert _outcomes(drain()) == [DispatchOutcome.COMPLETED]
        assert messaging.contents() == ["One day later"]

    def test_chaining_stops_at_step_limit(self, graph, publish, store, drain, components):
        components.execution_engine.config = components.config.model_copy(update={"max_steps_per_dispatch": 2})
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("first", "action", action_type="add_tag", tag="a"),
                graph.node("second", "action", action_type="add_tag", tag="b"),
            ],
            [graph.edge("start", "first"), graph.edge("first", "second")]
        ))
        enrollment = store.enroll(workflow, "contact-1").enrollment

        sweep = components.scheduler.run_sweep()

        assert sweep.results[0].outcome == DispatchOutcome.ADVANCED
        assert sweep.results[0].steps == 2
        assert sweep.results[0].node_id == "second"
        assert store.get(enrollment.id).lease_holder is None

        assert _outcomes(drain()) == [DispatchOutcome.COMPLETED]

    def test_condition_and_split_routing(self, graph, publish, store, drain, messaging, audit):
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("check", "condition", expression={
                    "conditions": [{"field": "plan", "operator": "equals", "value": "pro"}]
                }),
                graph.node("by_plan", "split", split_type="field", field="plan", default_branch="rest", branches=[
                    {"id": "pro", "value": "pro"},
                    {"id": "rest"},
                ]),
                graph.node("pro_msg", "message", content="Pro"),
                graph.node("rest_msg", "message", content="Rest"),
                graph.node("free_msg", "message", content="Free"),
            ],
            [
                graph.edge("start", "check"),
                graph.edge("check", "by_plan", "true"),
                graph.edge("check", "free_msg", "false"),
                graph.edge("by_plan", "pro_msg", "pro"),
                graph.edge("by_plan", "rest_msg", "rest"),
            ]
        ))
        store.bulk_enroll(workflow, ["contact-1", "contact-2"])

        drain()

        assert sorted(messaging.contents()) == ["Free", "Pro"]
        branches = audit.branch_counts(workflow.id)
        assert branches["check"] == {"true": 1, "false": 1}
        assert branches["by_plan"] == {"pro": 1}


class TestRetriesAndFailures:
    """Test cases for transient retries, permanent failures and configuration errors."""

    @pytest.fixture
    def message_workflow(self, graph, publish):
        return publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("hello", "message", content="Hi"),
            ],
            [graph.edge("start", "hello")]
        ))

    def test_transient_failures_back_off_exponentially(self, message_workflow, store, drain, messaging, clock, audit):
        messaging.failures.extend([DeliveryError("gateway busy", retryable=True)] * 3)
        enrollment = store.enroll(message_workflow, "contact-1").enrollment

        assert _outcomes(drain()) == [DispatchOutcome.RETRY_SCHEDULED]
        first_retry = store.get(enrollment.id)
        assert first_retry.attempt == 1
        assert first_retry.current_node_id == "hello"
        assert first_retry.next_action_at == clock() + timedelta(seconds=60)

        clock.advance(seconds=60)
        assert _outcomes(drain()) == [DispatchOutcome.RETRY_SCHEDULED]
        second_retry = store.get(enrollment.id)
        assert second_retry.attempt == 2
        assert second_retry.next_action_at == clock() + timedelta(seconds=120)

        clock.advance(seconds=119)
        assert drain() == []

        clock.advance(seconds=1)
        assert _outcomes(drain()) == [DispatchOutcome.DROPPED]

        dropped = store.get(enrollment.id)
        assert dropped.status == EnrollmentStatus.DROPPED
        assert dropped.drop_reason.startswith("message step 'hello' failed: failed after 3 attempts")
        assert "gateway busy" in dropped.drop_reason

        log = audit.get_enrollment_log(enrollment.id)
        hello_entries = [(entry.outcome, entry.attempt) for entry in log if entry.node_id == "hello"]
        assert hello_entries == [
            (LogOutcome.RETRIED, 0),
            (LogOutcome.RETRIED, 1),
            (LogOutcome.FAILED, 2),
        ]

    def test_transient_failure_then_success(self, message_workflow, store, drain, messaging, clock):
        messaging.failures.append(DeliveryError("gateway busy", retryable=True))
        enrollment = store.enroll(message_workflow, "contact-1").enrollment

        drain()
        clock.advance(seconds=60)
        drain()

        finished = store.get(enrollment.id)
        assert finished.status == EnrollmentStatus.COMPLETED
        assert len(messaging.sent) == 1

    def test_permanent_failure_takes_error_edge(self, graph, publish, store, drain, contact_store):
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("hello", "message", content="Hi"),
                graph.node("flag", "action", action_type="add_tag", tag="unreachable"),
            ],
            [graph.edge("start", "hello"), graph.edge("hello", "flag", "error")]
        ))
        enrollment = store.enroll(workflow, "contact-3").enrollment

        results = drain()

        assert _outcomes(results) == [DispatchOutcome.FAILED_OVER, DispatchOutcome.COMPLETED]
        assert results[0].node_id == "flag"
        finished = store.get(enrollment.id)
        assert finished.status == EnrollmentStatus.COMPLETED
        assert finished.context["error_hello"] == "Contact has no phone number"
        assert "unreachable" in contact_store.get_contact("contact-3").tags

    def test_permanent_failure_without_edges_drops(self, message_workflow, store, drain, messaging, audit):
        enrollment = store.enroll(message_workflow, "contact-3").enrollment

        assert _outcomes(drain()) == [DispatchOutcome.DROPPED]

        dropped = store.get(enrollment.id)
        assert dropped.drop_reason == "message step 'hello' failed: Contact has no phone number"
        assert messaging.sent == []
        assert audit.get_enrollment_log(enrollment.id)[-1].outcome == LogOutcome.FAILED

    def test_configuration_error_drops_and_alerts(self, graph, publish, store, drain, audit, caplog):
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("mood", "ai", prompt="{{context.last_message}}"),
                graph.node("hello", "message", content="Hi"),
            ],
            [graph.edge("start", "mood"), graph.edge("mood", "hello")]
        ))
        enrollment = store.enroll(workflow, "contact-1").enrollment

        with caplog.at_level("ERROR", logger="automation_engine.alerts"):
            assert _outcomes(drain()) == [DispatchOutcome.DROPPED]

        dropped = store.get(enrollment.id)
        assert dropped.status == EnrollmentStatus.DROPPED
        assert dropped.drop_reason == "configuration error"
        assert any("AI prompt rendered empty" in record.getMessage() for record in caplog.records)

        failed = audit.get_enrollment_log(enrollment.id)[-1]
        assert failed.outcome == LogOutcome.FAILED
        assert failed.detail == "configuration error: AI prompt rendered empty"

    def test_result_after_drop_is_logged_but_not_applied(self, message_workflow, store, drain, components, audit):
        enrollment = store.enroll(message_workflow, "contact-1").enrollment

        def send_then_drop(recipient, **kwargs):
            store.drop(enrollment.id, reason="manually dropped")
            return "msg-dropped"

        components.execution_engine.messaging = Mock(send=Mock(side_effect=send_then_drop))

        assert _outcomes(drain()) == [DispatchOutcome.LEASE_LOST]

        current = store.get(enrollment.id)
        assert current.status == EnrollmentStatus.DROPPED
        assert current.drop_reason == "manually dropped"
        assert current.messages_sent == 0

        entry = audit.get_enrollment_log(enrollment.id)[-1]
        assert entry.node_id == "hello"
        assert entry.outcome == LogOutcome.SUCCESS
        assert entry.detail.endswith("(not applied: enrollment was no longer held)")


class TestWaitUntil:
    """Test cases for suspension on external events."""

    @pytest.fixture
    def wait_workflow(self, graph, publish):
        return publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("wait", "wait_until", event_type="message_received",
                           timeout_enabled=True, timeout_amount=2, timeout_unit="days"),
                graph.node("thanks", "message", content="Thanks for replying"),
                graph.node("nudge", "message", content="Still there?"),
            ],
            [
                graph.edge("start", "wait"),
                graph.edge("wait", "thanks"),
                graph.edge("wait", "nudge", "timeout"),
            ],
            stop_on_reply=False
        ))

    def test_event_wakes_waiting_enrollment(self, wait_workflow, store, drain, components, messaging, clock):
        enrollment = store.enroll(wait_workflow, "contact-1").enrollment

        assert _outcomes(drain()) == [DispatchOutcome.WAITING]
        waiting = store.get(enrollment.id)
        assert waiting.wait_condition.event_type == "message_received"
        assert waiting.next_action_at == clock() + timedelta(days=2)

        clock.advance(hours=3)
        result = components.event_router.handle_event(ContactEvent(
            type=TriggerType.MESSAGE_RECEIVED,
            organization_id="org-1",
            contact_id="contact-1",
            message_text="yes please"
        ))
        assert result.woken == [enrollment.id]
        assert result.dropped == []

        assert _outcomes(drain()) == [DispatchOutcome.COMPLETED]
        assert messaging.contents() == ["Thanks for replying"]
        finished = store.get(enrollment.id)
        assert finished.context["wait_wait"] == "matched"
        assert finished.context["replied"] is True
        assert finished.context["last_message"] == "yes please"

    def test_timeout_takes_timeout_edge(self, wait_workflow, store, drain, messaging, clock):
        enrollment = store.enroll(wait_workflow, "contact-1").enrollment
        drain()

        clock.advance(days=2)

        assert _outcomes(drain()) == [DispatchOutcome.COMPLETED]
        assert messaging.contents() == ["Still there?"]
        assert store.get(enrollment.id).context["wait_wait"] == "timeout"


class TestGoals:
    """Test cases for goal conversions."""

    def test_goal_records_conversion(self, graph, publish, store, drain, components):
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("bought", "goal", goal_name="Purchase", goal_type="revenue", revenue_amount=20),
            ],
            [graph.edge("start", "bought")]
        ))
        store.bulk_enroll(workflow, ["contact-1", "contact-2"])

        drain()

        analytics = components.workflow_manager.analytics(workflow.id)
        assert analytics["enrollments"]["completed"] == 2
        assert analytics["conversions"] == {
            "total": 2,
            "by_goal": {"Purchase": 2},
            "revenue": {"USD": 40.0},
        }
        assert analytics["nodes"]["bought"]["success"] == 2
        assert analytics["nodes"]["bought"]["failure_rate"] == 0.0

    def test_split_test_results_per_branch(self, graph, publish, store, drain, components):
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("variant", "split", split_type="field", field="plan", default_branch="b", branches=[
                    {"id": "a", "value": "pro"},
                    {"id": "b"},
                ]),
                graph.node("offer_a", "goal", goal_name="Upgrade"),
                graph.node("offer_b", "message", content="Maybe later"),
            ],
            [
                graph.edge("start", "variant"),
                graph.edge("variant", "offer_a", "a"),
                graph.edge("variant", "offer_b", "b"),
            ]
        ))
        store.bulk_enroll(workflow, ["contact-1", "contact-2"])

        drain()

        analytics = components.workflow_manager.analytics(workflow.id)
        assert analytics["split_tests"] == {
            "variant": {
                "a": {"entered": 1, "converted": 1, "conversion_rate": 1.0},
                "b": {"entered": 1, "converted": 0, "conversion_rate": 0.0},
            }
        }
        assert analytics["branches"]["variant"] == {"a": 1, "b": 1}

    def test_paused_workflow_is_not_dispatched(self, graph, publish, store, drain, components, messaging):
        workflow = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("hello", "message", content="Hi"),
            ],
            [graph.edge("start", "hello")]
        ))
        enrollment = store.enroll(workflow, "contact-1").enrollment
        components.workflow_manager.pause(workflow.id)

        assert drain() == []
        assert store.get(enrollment.id).status == EnrollmentStatus.PAUSED

        components.workflow_manager.resume(workflow.id)

        assert _outcomes(drain()) == [DispatchOutcome.COMPLETED]
        assert messaging.contents() == ["Hi"]


class TestCampaignScenario:
    """Welcome, wait two days, then follow up unless the contact replied."""

    @pytest.fixture
    def campaign(self, graph, publish):
        def _campaign(**settings):
            return publish(graph.definition(
                [
                    graph.node("start", "trigger", trigger_type="tag_added", tag="lead"),
                    graph.node("welcome", "message", content="Welcome"),
                    graph.node("wait", "delay", amount=2, unit="days"),
                    graph.node("replied", "condition", expression={
                        "conditions": [{"field": "context.replied", "operator": "equals", "value": True}]
                    }),
                    graph.node("done", "goal", goal_name="Replied", goal_type="engagement"),
                    graph.node("follow_up", "message", content="Follow-up"),
                ],
                [
                    graph.edge("start", "welcome"),
                    graph.edge("welcome", "wait"),
                    graph.edge("wait", "replied"),
                    graph.edge("replied", "done", "true"),
                    graph.edge("replied", "follow_up", "false"),
                ],
                **settings
            ))
        return _campaign

    @staticmethod
    def _tag_lead(components):
        result = components.event_router.handle_event(ContactEvent(
            type=TriggerType.TAG_ADDED, organization_id="org-1", contact_id="contact-1", tag="lead"
        ))
        assert len(result.enrolled) == 1
        return result.enrolled[0]

    @staticmethod
    def _reply(components, text="Sounds good"):
        return components.event_router.handle_event(ContactEvent(
            type=TriggerType.MESSAGE_RECEIVED, organization_id="org-1", contact_id="contact-1", message_text=text
        ))

    def test_no_reply_gets_follow_up(self, campaign, components, store, drain, messaging, clock):
        campaign()
        started = clock()
        enrollment_id = self._tag_lead(components)

        drain()

        assert messaging.contents() == ["Welcome"]
        parked = store.get(enrollment_id)
        assert parked.current_node_id == "replied"
        assert parked.next_action_at == started + timedelta(days=2)

        clock.advance(days=2)
        drain()

        assert messaging.contents() == ["Welcome", "Follow-up"]
        assert store.get(enrollment_id).status == EnrollmentStatus.COMPLETED

    def test_reply_during_delay_drops_without_follow_up(self, campaign, components, store, drain, messaging, clock):
        campaign()
        enrollment_id = self._tag_lead(components)
        drain()

        clock.advance(days=1)
        result = self._reply(components)

        assert result.dropped == [enrollment_id]
        dropped = store.get(enrollment_id)
        assert dropped.status == EnrollmentStatus.DROPPED
        assert dropped.drop_reason == "replied"

        clock.advance(days=1)
        assert drain() == []
        assert messaging.contents() == ["Welcome"]

    def test_reply_without_stop_on_reply_takes_true_branch(self, campaign, components, store, drain, messaging, clock):
        campaign(stop_on_reply=False)
        enrollment_id = self._tag_lead(components)
        drain()

        clock.advance(days=1)
        self._reply(components)
        clock.advance(days=1)
        drain()

        finished = store.get(enrollment_id)
        assert finished.status == EnrollmentStatus.COMPLETED
        assert finished.current_node_id == "done"
        assert messaging.contents() == ["Welcome"]
