"""Tests for the node executors."""

import threading
import time
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import Mock

import pytest
import requests

from automation_engine.config import OrganizationPolicy, get_testing_config
from automation_engine.core.error_recovery import ExternalCallRunner
from automation_engine.core.exceptions import (
    ConfigurationError,
    PermanentExecutionError,
    TransientExecutionError,
)
from automation_engine.executors import ExecutionContext, get_executor
from automation_engine.executors.split import choose_percentage_branch, split_bucket
from automation_engine.integrations.base import AIBudgetExceededError, AIProviderError, DeliveryError
from automation_engine.models.core import (
    Enrollment,
    EnrollmentStatus,
    NodeType,
    WaitCondition,
    Workflow,
    WorkflowStatus,
)
from automation_engine.models.graph import WorkflowGraph
from automation_engine.models.nodes import SplitConfig, parse_node_config


@pytest.fixture
def runner():
    runner = ExternalCallRunner(max_workers=4)
    yield runner
    runner.shutdown()


@pytest.fixture
def run_node(graph, clock, contact_store, messaging, ai_provider, runner):
    """Execute a single node against an in-memory enrollment."""
    def _run(node, context=None, wait_condition=None, contact_id="contact-1",
             http=None, policy=None, provider=ai_provider, call_timeout=2.0):
        definition = graph.definition(
            [graph.node("start", "trigger", trigger_type="contact_created"), node],
            [graph.edge("start", node.id)]
        )
        workflow = Workflow(
            id="wf-1",
            organization_id="org-1",
            status=WorkflowStatus.ACTIVE,
            version=1,
            definition=definition,
            created_at=clock()
        )
        enrollment = Enrollment(
            id="enrollment-1",
            workflow_id=workflow.id,
            organization_id="org-1",
            contact_id=contact_id,
            status=EnrollmentStatus.ACTIVE,
            current_node_id=node.id,
            context=context or {},
            wait_condition=wait_condition,
            enrolled_at=clock()
        )
        ctx = ExecutionContext(
            enrollment=enrollment,
            workflow=workflow,
            node=node,
            graph=WorkflowGraph(definition),
            policy=policy or get_testing_config().organization_policy(),
            now=clock(),
            contact_store=contact_store,
            messaging=messaging,
            runner=runner,
            call_timeout=call_timeout,
            http=http or Mock(),
            ai_provider=provider
        )
        return get_executor(node.type)(parse_node_config(node), ctx)
    return _run


class _TricklingHandler(BaseHTTPRequestHandler):
    """Answers 200 but sends the body one byte every 200ms."""

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", "10")
        self.end_headers()
        try:
            for _ in range(10):
                self.wfile.write(b" ")
                self.wfile.flush()
                time.sleep(0.2)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def trickling_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TricklingHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/hook"
    server.shutdown()
    server.server_close()


def _response(status_code, body=None):
    response = Mock(status_code=status_code, content=b"{}" if body is not None else b"")
    response.json.return_value = body
    return response


class TestMessageExecutor:
    """Test cases for the Message executor."""

    def test_renders_and_sends(self, run_node, graph, messaging):
        outcome = run_node(graph.node("hello", "message", content="Hi {{first_name}}, plan {{custom.plan}}"))

        assert messaging.sent[0]["recipient"] == "+15550001"
        assert messaging.contents() == ["Hi Ada, plan pro"]
        assert outcome.messages_sent == 1
        assert outcome.handle == "default"
        assert outcome.context_updates == {"message_hello": messaging.sent[0]["message_id"]}

    def test_template_reference(self, run_node, graph, messaging):
        run_node(graph.node(
            "hello", "message",
            template_ref="welcome_v2",
            template_variables={"name": "{{first_name | friend}}"}
        ), contact_id="contact-2")

        sent = messaging.sent[0]
        assert sent["content"] is None
        assert sent["template_ref"] == "welcome_v2"
        assert sent["template_variables"] == {"name": "Grace"}

    def test_contact_without_phone(self, run_node, graph, messaging):
        with pytest.raises(PermanentExecutionError):
            run_node(graph.node("hello", "message", content="Hi"), contact_id="contact-3")
        assert messaging.sent == []

    def test_empty_rendered_body(self, run_node, graph):
        with pytest.raises(PermanentExecutionError):
            run_node(graph.node("hello", "message", content="{{context.missing}}"))

    def test_retryable_delivery_error_is_transient(self, run_node, graph, messaging):
        messaging.failures.append(DeliveryError("gateway busy", retryable=True))

        with pytest.raises(TransientExecutionError) as exc_info:
            run_node(graph.node("hello", "message", content="Hi"))
        assert "gateway busy" in exc_info.value.message

    def test_rejected_delivery_is_permanent(self, run_node, graph, messaging):
        messaging.failures.append(DeliveryError("invalid recipient", retryable=False))

        with pytest.raises(PermanentExecutionError):
            run_node(graph.node("hello", "message", content="Hi"))

    def test_unknown_contact_is_permanent(self, run_node, graph):
        with pytest.raises(PermanentExecutionError):
            run_node(graph.node("hello", "message", content="Hi"), contact_id="nobody")


class TestDelayExecutor:
    """Test cases for the Delay executor."""

    def test_plain_delay(self, run_node, graph, clock):
        outcome = run_node(graph.node("pause", "delay", amount=2, unit="hours"))

        assert outcome.delay_until == clock() + timedelta(hours=2)
        assert outcome.messages_sent == 0

    def test_business_hours_delay(self, run_node, graph, clock):
        # Monday 10:00 + 8h lands after closing, so Tuesday 09:00
        outcome = run_node(graph.node("pause", "delay", amount=8, unit="hours", business_hours_only=True))

        assert outcome.delay_until == clock().replace(day=9, hour=9)

    def test_zero_delay(self, run_node, graph, clock):
        outcome = run_node(graph.node("pause", "delay", amount=0))

        assert outcome.delay_until == clock()


class TestConditionExecutor:
    """Test cases for the Condition executor."""

    def test_true_and_false_handles(self, run_node, graph):
        node = graph.node("check", "condition", expression={
            "combinator": "and",
            "conditions": [
                {"field": "plan", "operator": "equals", "value": "pro"},
                {"field": "context.replied", "operator": "not_equals", "value": True},
            ]
        })

        assert run_node(node).handle == "true"
        assert run_node(node, context={"replied": True}).handle == "false"
        assert run_node(node, contact_id="contact-2").context_updates == {"condition_check": False}


class TestActionExecutor:
    """Test cases for the Action executor."""

    def test_add_tag_is_idempotent(self, run_node, graph, contact_store):
        node = graph.node("tag", "action", action_type="add_tag", tag="customer")

        first = run_node(node)
        second = run_node(node)

        assert contact_store.get_contact("contact-1").tags == ["lead", "customer"]
        assert first.context_updates["action_tag"]["applied"] is True
        assert second.context_updates["action_tag"]["applied"] is False

    def test_set_field_renders_value(self, run_node, graph, contact_store):
        run_node(graph.node("field", "action", action_type="set_field", field_name="nickname",
                            field_value="{{first_name}}-vip"))

        assert contact_store.get_contact("contact-1").custom_fields["nickname"] == "Ada-vip"

    def test_list_membership(self, run_node, graph, contact_store):
        run_node(graph.node("join", "action", action_type="add_to_list", list_id="newsletter"))
        run_node(graph.node("leave", "action", action_type="remove_tag", tag="lead"))

        contact = contact_store.get_contact("contact-1")
        assert contact.lists == ["newsletter"]
        assert contact.tags == []


class TestSplitExecutor:
    """Test cases for the Split executor."""

    def test_percentage_split_is_deterministic(self, run_node, graph):
        node = graph.node("ab", "split", branches=[
            {"id": "a", "percentage": 50},
            {"id": "b", "percentage": 50},
        ])

        first = run_node(node)
        second = run_node(node)

        assert first.handle == second.handle
        assert first.handle in ("a", "b")
        assert first.context_updates == {"split_ab": first.handle}

    def test_percentage_split_distribution(self):
        config = SplitConfig(branches=[{"id": "a", "percentage": 50}, {"id": "b", "percentage": 50}])
        counts = {"a": 0, "b": 0}

        for index in range(200):
            bucket = split_bucket("wf-1", "ab", f"contact-{index}")
            assert 0 <= bucket < 100
            counts[choose_percentage_branch(config, bucket).id] += 1

        assert 60 <= counts["a"] <= 140
        assert counts["a"] + counts["b"] == 200

    def test_field_split(self, run_node, graph):
        node = graph.node("by_plan", "split", split_type="field", field="plan", default_branch="other", branches=[
            {"id": "pro", "value": "PRO"},
            {"id": "other"},
        ])

        assert run_node(node).handle == "pro"
        assert run_node(node, contact_id="contact-2").handle == "other"

    def test_field_split_without_match(self, run_node, graph):
        node = graph.node("by_plan", "split", split_type="field", field="plan", branches=[
            {"id": "pro", "value": "pro"},
        ])

        with pytest.raises(PermanentExecutionError):
            run_node(node, contact_id="contact-2")


class TestWaitUntilExecutor:
    """Test cases for the WaitUntil executor."""

    def test_first_arrival_suspends(self, run_node, graph, clock):
        outcome = run_node(graph.node("wait", "wait_until", event_type="tag_applied", tag="paid",
                                      timeout_enabled=True, timeout_amount=3, timeout_unit="days"))

        assert outcome.suspends
        assert outcome.wait_condition.event_type == "tag_applied"
        assert outcome.wait_condition.tag == "paid"
        assert outcome.wait_condition.timeout_at == clock() + timedelta(days=3)

    def test_already_satisfied_on_arrival(self, run_node, graph):
        outcome = run_node(graph.node("wait", "wait_until", event_type="tag_applied", tag="lead"))

        assert not outcome.suspends
        assert outcome.handle == "default"
        assert outcome.context_updates == {"wait_wait": "matched"}

    def test_matched_condition_takes_default_edge(self, run_node, graph):
        condition = WaitCondition(event_type="message_received", node_id="wait", matched=True)

        outcome = run_node(graph.node("wait", "wait_until", event_type="message_received"),
                           wait_condition=condition)

        assert outcome.handle == "default"
        assert outcome.context_updates == {"wait_wait": "matched"}

    def test_timeout_takes_timeout_edge(self, run_node, graph, clock):
        condition = WaitCondition(event_type="message_received", node_id="wait",
                                  timeout_at=clock() - timedelta(minutes=1))

        outcome = run_node(graph.node("wait", "wait_until", event_type="message_received",
                                      timeout_enabled=True, timeout_amount=1),
                           wait_condition=condition)

        assert outcome.handle == "timeout"
        assert outcome.context_updates == {"wait_wait": "timeout"}

    def test_specific_date(self, run_node, graph, clock):
        future = clock() + timedelta(days=2)
        past = clock() - timedelta(days=2)

        waiting = run_node(graph.node("wait", "wait_until", event_type="specific_date", date=future.isoformat()))
        passed = run_node(graph.node("wait", "wait_until", event_type="specific_date", date=past.isoformat()))

        assert waiting.wait_condition.wake_at == future
        assert not passed.suspends


class TestWebhookExecutor:
    """Test cases for the Webhook executor."""

    def test_successful_call_saves_response(self, run_node, graph):
        http = Mock()
        http.request.return_value = _response(200, {"score": 87})

        outcome = run_node(graph.node(
            "lookup", "webhook",
            url="https://api.example.com/contacts/{{id}}",
            method="post",
            body='{"email": "{{email}}"}',
            auth_type="bearer",
            auth_token="secret"
        ), http=http)

        kwargs = http.request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == "https://api.example.com/contacts/contact-1"
        assert kwargs["json"] == {"email": "ada@example.com"}
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["timeout"] == 2.0
        assert outcome.context_updates == {"webhook_lookup": {"status_code": 200, "body": {"score": 87}}}

    def test_response_variable(self, run_node, graph):
        http = Mock()
        http.request.return_value = _response(204)

        outcome = run_node(graph.node("notify", "webhook", url="https://hooks.example.com/x",
                                      response_variable="crm"), http=http)

        assert outcome.context_updates == {"crm": {"status_code": 204, "body": None}}

    @pytest.mark.parametrize("status_code", [500, 503, 429, 408])
    def test_retryable_statuses(self, run_node, graph, status_code):
        http = Mock()
        http.request.return_value = _response(status_code)

        with pytest.raises(TransientExecutionError):
            run_node(graph.node("hook", "webhook", url="https://hooks.example.com/x"), http=http)

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404])
    def test_permanent_statuses(self, run_node, graph, status_code):
        http = Mock()
        http.request.return_value = _response(status_code)

        with pytest.raises(PermanentExecutionError):
            run_node(graph.node("hook", "webhook", url="https://hooks.example.com/x"), http=http)

    @pytest.mark.parametrize("error", [requests.Timeout("slow"), requests.ConnectionError("refused")])
    def test_network_failures_are_transient(self, run_node, graph, error):
        http = Mock()
        http.request.side_effect = error

        with pytest.raises(TransientExecutionError):
            run_node(graph.node("hook", "webhook", url="https://hooks.example.com/x"), http=http)

    def test_slow_response_body_hits_call_deadline(self, run_node, graph, trickling_server):
        session = requests.Session()
        started = time.monotonic()

        try:
            with pytest.raises(TransientExecutionError, match="timed out after 0.5s") as exc_info:
                run_node(graph.node("hook", "webhook", url=trickling_server), http=session, call_timeout=0.5)
        finally:
            session.close()

        assert time.monotonic() - started < 1.5
        assert exc_info.value.context["node_id"] == "hook"

    def test_disallowed_scheme_at_runtime(self, run_node, graph):
        http = Mock()
        policy = OrganizationPolicy(webhook_allowed_schemes=["https"])

        with pytest.raises(ConfigurationError):
            run_node(graph.node("hook", "webhook", url="http://hooks.example.com/x"), http=http, policy=policy)
        http.request.assert_not_called()


class TestAIExecutor:
    """Test cases for the AI executor."""

    def test_sentiment_analysis(self, run_node, graph, ai_provider):
        ai_provider.responses.append("Positive.")

        outcome = run_node(graph.node("mood", "ai", action="sentiment_analysis", model="gpt-4",
                                      prompt="{{context.last_message}}"),
                           context={"last_message": "Love it!"})

        assert outcome.context_updates == {"ai_mood": "positive"}
        assert ai_provider.calls[0]["model"] == "gpt-4"
        assert ai_provider.calls[0]["prompt"].endswith("Love it!")

    def test_categorize_and_result_variable(self, run_node, graph, ai_provider):
        ai_provider.responses.append("I think this is Billing related")

        outcome = run_node(graph.node("route", "ai", action="categorize", prompt="{{context.last_message}}",
                                      categories=["Sales", "Billing"], result_variable="topic"),
                           context={"last_message": "My invoice is wrong"})

        assert outcome.context_updates == {"topic": "Billing"}

    def test_extract_info(self, run_node, graph, ai_provider):
        ai_provider.responses.append('Sure: {"company": "Acme", "size": 40}')

        outcome = run_node(graph.node("extract", "ai", action="extract_info", prompt="We are Acme",
                                      extraction_fields=["company", "budget"]))

        assert outcome.context_updates == {"ai_extract": {"company": "Acme", "budget": None}}

    def test_budget_exceeded_is_permanent(self, run_node, graph, ai_provider):
        ai_provider.responses.append(AIBudgetExceededError())

        with pytest.raises(PermanentExecutionError):
            run_node(graph.node("mood", "ai", prompt="hello"))

    def test_retryable_provider_error_is_transient(self, run_node, graph, ai_provider):
        ai_provider.responses.append(AIProviderError("overloaded", retryable=True))

        with pytest.raises(TransientExecutionError):
            run_node(graph.node("mood", "ai", prompt="hello"))

    def test_missing_provider(self, run_node, graph):
        with pytest.raises(ConfigurationError):
            run_node(graph.node("mood", "ai", prompt="hello"), provider=None)

    def test_model_not_allowed(self, run_node, graph):
        with pytest.raises(ConfigurationError):
            run_node(graph.node("mood", "ai", model="unlisted-model", prompt="hello"))


class TestGoalAndTrigger:
    """Test cases for the Goal and Trigger executors."""

    def test_goal_reports_conversion(self, run_node, graph, clock):
        outcome = run_node(graph.node("won", "goal", goal_name="Purchase", goal_type="revenue",
                                      revenue_amount=49.5, currency="EUR"))

        assert outcome.conversion == {
            "goal_name": "Purchase",
            "goal_type": "revenue",
            "revenue_amount": 49.5,
            "currency": "EUR",
        }
        assert outcome.context_updates["goal_won"]["achieved_at"] == clock().isoformat()

    def test_untracked_goal(self, run_node, graph):
        outcome = run_node(graph.node("seen", "goal", goal_name="Engaged", track_in_analytics=False))

        assert outcome.conversion is None

    def test_trigger_passes_through(self, run_node, graph):
        outcome = run_node(graph.node("entry", "trigger", trigger_type="tag_added"))

        assert outcome.handle == "default"
        assert outcome.detail == "entered via tag_added"


class TestExternalCallRunner:
    """Test cases for bounded collaborator calls."""

    def test_slow_call_times_out(self, runner):
        with pytest.raises(TransientExecutionError):
            runner.call(time.sleep, 0.05, "Slow call", 0.5)

    def test_result_is_returned(self, runner):
        assert runner.call(lambda value: value * 2, 1.0, "Double", 21) == 42

    def test_executor_registry_covers_every_node_type(self):
        for node_type in NodeType:
            assert callable(get_executor(node_type))
