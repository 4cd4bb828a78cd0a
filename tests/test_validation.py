"""Tests for the workflow graph model and static validation."""

import pytest

from automation_engine.core.validation import ValidationEngine
from automation_engine.models.core import Severity
from automation_engine.models.graph import WorkflowGraph


@pytest.fixture
def engine():
    return ValidationEngine(allowed_ai_models=["gpt-4"], max_condition_depth=3)


def _trigger(graph):
    return graph.node("start", "trigger", trigger_type="tag_added", tag="lead")


def _messages(issues):
    return [issue.message for issue in issues]


class TestWorkflowGraph:
    """Test cases for the indexed graph view."""

    def test_next_node_follows_handle(self, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("check", "condition", expression={
                    "conditions": [{"field": "plan", "operator": "equals", "value": "pro"}]
                }),
                graph.node("yes", "message", content="Pro"),
                graph.node("no", "message", content="Free"),
            ],
            [
                graph.edge("start", "check"),
                graph.edge("check", "yes", "true"),
                graph.edge("check", "no", "false"),
            ]
        )
        workflow_graph = WorkflowGraph(definition)

        assert workflow_graph.next_node_id("start") == "check"
        assert workflow_graph.next_node_id("check", "true") == "yes"
        assert workflow_graph.next_node_id("check", "false") == "no"
        assert workflow_graph.next_node_id("yes") is None
        assert workflow_graph.trigger().id == "start"

    def test_wait_self_loop_is_not_a_successor(self, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("pause", "delay", amount=1, unit="days"),
                graph.node("end", "message", content="Done"),
            ],
            [
                graph.edge("start", "pause"),
                graph.edge("pause", "pause"),
                graph.edge("pause", "end"),
            ]
        )
        workflow_graph = WorkflowGraph(definition)

        assert workflow_graph.successors("pause") == ["end"]
        assert workflow_graph.next_node_id("pause") == "end"

    def test_dangling_edges_are_collected(self, graph):
        definition = graph.definition([_trigger(graph)], [graph.edge("start", "ghost")])
        workflow_graph = WorkflowGraph(definition)

        assert len(workflow_graph.dangling_edges) == 1
        assert workflow_graph.successors("start") == []


class TestValidationEngine:
    """Test cases for ValidationEngine."""

    def test_valid_linear_workflow(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("hello", "message", content="Hi {{first_name}}"),
                graph.node("pause", "delay", amount=2, unit="days"),
                graph.node("tag", "action", action_type="add_tag", tag="nurtured"),
                graph.node("done", "goal", goal_name="Nurtured"),
            ],
            [
                graph.edge("start", "hello"),
                graph.edge("hello", "pause"),
                graph.edge("pause", "tag"),
                graph.edge("tag", "done"),
            ]
        )

        result = engine.validate(definition)

        assert result.is_valid
        assert result.issues == []

    def test_missing_trigger(self, engine, graph):
        definition = graph.definition([graph.node("hello", "message", content="Hi")], [])

        result = engine.validate(definition)

        assert not result.is_valid
        assert "Workflow must contain exactly one trigger node; none found" in _messages(result.errors)

    def test_multiple_triggers(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("second", "trigger", trigger_type="contact_created"),
                graph.node("hello", "message", content="Hi"),
            ],
            [graph.edge("start", "hello"), graph.edge("second", "hello")]
        )

        result = engine.validate(definition)

        assert not result.is_valid
        errors = [issue for issue in result.errors if "exactly one trigger" in issue.message]
        assert len(errors) == 1
        assert errors[0].node_id == "second"

    def test_trigger_with_incoming_edge(self, engine, graph):
        definition = graph.definition(
            [_trigger(graph), graph.node("tag", "action", action_type="add_tag", tag="x")],
            [graph.edge("start", "tag"), graph.edge("tag", "start")]
        )

        result = engine.validate(definition)

        assert "Trigger node cannot have incoming edges" in _messages(result.errors)

    def test_cycle_reports_full_path(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("first", "action", action_type="add_tag", tag="a"),
                graph.node("second", "action", action_type="add_tag", tag="b"),
            ],
            [
                graph.edge("start", "first"),
                graph.edge("first", "second"),
                graph.edge("second", "first"),
            ]
        )

        result = engine.validate(definition)

        cycles = [issue for issue in result.errors if issue.path]
        assert len(cycles) == 1
        assert cycles[0].path == ["first", "second", "first"]
        assert cycles[0].message == "Cycle detected: first -> second -> first"

    def test_cycle_through_finished_branch_names_every_node(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("a", "action", action_type="add_tag", tag="a"),
                graph.node("b", "action", action_type="add_tag", tag="b"),
                graph.node("c", "action", action_type="add_tag", tag="c"),
            ],
            [
                graph.edge("start", "a"),
                graph.edge("a", "b"),
                graph.edge("b", "a"),
                graph.edge("a", "c"),
                graph.edge("c", "b"),
            ]
        )

        result = engine.validate(definition)

        cycles = [issue for issue in result.errors if issue.path]
        assert len(cycles) == 1
        assert cycles[0].path == ["a", "b", "a", "c", "b", "a"]
        assert set(cycles[0].path) == {"a", "b", "c"}

    def test_action_self_loop_is_a_cycle(self, engine, graph):
        definition = graph.definition(
            [_trigger(graph), graph.node("tag", "action", action_type="add_tag", tag="x")],
            [graph.edge("start", "tag"), graph.edge("tag", "tag")]
        )

        result = engine.validate(definition)

        cycles = [issue for issue in result.errors if issue.path]
        assert [issue.path for issue in cycles] == [["tag", "tag"]]

    def test_delay_self_loop_is_allowed(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("pause", "delay", amount=1, unit="hours"),
                graph.node("end", "message", content="Done"),
            ],
            [
                graph.edge("start", "pause"),
                graph.edge("pause", "pause"),
                graph.edge("pause", "end"),
            ]
        )

        result = engine.validate(definition)

        assert result.is_valid
        assert result.warnings == []

    def test_edge_to_missing_node(self, engine, graph):
        definition = graph.definition(
            [_trigger(graph), graph.node("end", "message", content="Done")],
            [graph.edge("start", "end"), graph.edge("end", "ghost")]
        )

        result = engine.validate(definition)

        assert not result.is_valid
        assert any("non-existent node 'ghost'" in message for message in _messages(result.errors))

    def test_non_terminal_node_needs_outgoing_edge(self, engine, graph):
        definition = graph.definition(
            [_trigger(graph), graph.node("pause", "delay", amount=1)],
            [graph.edge("start", "pause")]
        )

        result = engine.validate(definition)

        assert "delay node 'pause' has no outgoing edge" in _messages(result.errors)

    def test_orphan_node_is_a_warning(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("hello", "message", content="Hi"),
                graph.node("lonely", "message", content="Nobody sends me"),
            ],
            [graph.edge("start", "hello")]
        )

        result = engine.validate(definition)

        assert result.is_valid
        assert len(result.warnings) == 1
        assert result.warnings[0].node_id == "lonely"
        assert result.warnings[0].severity == Severity.WARNING

    def test_invalid_node_configuration(self, engine, graph):
        definition = graph.definition(
            [_trigger(graph), graph.node("hello", "message")],
            [graph.edge("start", "hello")]
        )

        result = engine.validate(definition)

        assert not result.is_valid
        assert result.errors[0].node_id == "hello"
        assert result.errors[0].message.startswith("Invalid message configuration")

    def test_condition_requires_both_branches(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("check", "condition", expression={
                    "conditions": [{"field": "plan", "operator": "equals", "value": "pro"}]
                }),
                graph.node("yes", "message", content="Pro"),
            ],
            [graph.edge("start", "check"), graph.edge("check", "yes", "true")]
        )

        result = engine.validate(definition)

        assert "Condition node is missing its 'false' edge" in _messages(result.errors)

    def test_condition_operator_and_depth(self, engine, graph):
        nested = {"conditions": [{"field": "score", "operator": "greater_than", "value": 10}]}
        for _ in range(3):
            nested = {"combinator": "or", "conditions": [nested]}
        nested["conditions"].append({"field": "plan", "operator": "matches", "value": "p.*"})

        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("check", "condition", expression=nested),
                graph.node("yes", "message", content="Yes"),
                graph.node("no", "message", content="No"),
            ],
            [
                graph.edge("start", "check"),
                graph.edge("check", "yes", "true"),
                graph.edge("check", "no", "false"),
            ]
        )

        messages = _messages(engine.validate(definition).errors)

        assert "Condition uses unsupported operator(s): matches" in messages
        assert "Condition nesting depth 4 exceeds the maximum of 3" in messages

    def test_split_percentages_must_sum_to_100(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("ab", "split", branches=[
                    {"id": "a", "percentage": 60},
                    {"id": "b", "percentage": 30},
                ]),
                graph.node("to_a", "message", content="A"),
                graph.node("to_b", "message", content="B"),
            ],
            [
                graph.edge("start", "ab"),
                graph.edge("ab", "to_a", "a"),
                graph.edge("ab", "to_b", "b"),
            ]
        )

        result = engine.validate(definition)

        assert "Split percentages must sum to exactly 100, got 90" in _messages(result.errors)

    def test_split_decimal_percentages(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("abc", "split", branches=[
                    {"id": "a", "percentage": 33.3},
                    {"id": "b", "percentage": 33.3},
                    {"id": "c", "percentage": 33.4},
                ]),
                graph.node("to_a", "message", content="A"),
                graph.node("to_b", "message", content="B"),
            ],
            [
                graph.edge("start", "abc"),
                graph.edge("abc", "to_a", "a"),
                graph.edge("abc", "to_b", "b"),
            ]
        )

        messages = _messages(engine.validate(definition).errors)

        assert not any("sum to exactly 100" in message for message in messages)
        assert "Split branch 'c' has no outgoing edge" in messages

    def test_webhook_scheme_and_auth(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("hook", "webhook", url="ftp://files.example.com/upload", auth_type="bearer"),
                graph.node("end", "message", content="Done"),
            ],
            [graph.edge("start", "hook"), graph.edge("hook", "end")]
        )

        messages = _messages(engine.validate(definition).errors)

        assert any(message.startswith("Webhook URL scheme 'ftp' is not allowed") for message in messages)
        assert "Bearer auth requires auth_token" in messages

    def test_ai_model_allow_list(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("mood", "ai", model="gpt-3.5-turbo", prompt="{{context.last_message}}"),
                graph.node("end", "message", content="Done"),
            ],
            [graph.edge("start", "mood"), graph.edge("mood", "end")]
        )

        result = engine.validate(definition)

        assert not result.is_valid
        assert result.errors[0].message.startswith("AI model 'gpt-3.5-turbo' is not allowed")

    def test_wait_timeout_requires_timeout_edge(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("wait", "wait_until", event_type="tag_applied", tag="paid",
                           timeout_enabled=True, timeout_amount=3),
                graph.node("end", "message", content="Done"),
            ],
            [graph.edge("start", "wait"), graph.edge("wait", "end")]
        )

        result = engine.validate(definition)

        assert "Wait with a timeout requires a 'timeout' edge" in _messages(result.errors)

    def test_unknown_handle_is_a_warning(self, engine, graph):
        definition = graph.definition(
            [
                _trigger(graph),
                graph.node("hello", "message", content="Hi"),
                graph.node("end", "message", content="Done"),
            ],
            [graph.edge("start", "hello"), graph.edge("hello", "end", "true")]
        )

        result = engine.validate(definition)

        assert result.is_valid
        assert any("uses handle 'true'" in issue.message for issue in result.warnings)
