"""Tests for inbound event routing."""

import pytest

from automation_engine.core.event_router import is_stop_keyword, trigger_matches
from automation_engine.core.exceptions import WorkflowNotFoundError
from automation_engine.models.core import ContactEvent, EnrollmentStatus, TriggerType, WaitCondition
from automation_engine.models.nodes import TriggerConfig


@pytest.fixture
def router(components):
    return components.event_router


@pytest.fixture
def store(components):
    return components.enrollment_store


def _event(event_type, contact_id="contact-1", organization_id="org-1", **fields):
    return ContactEvent(type=event_type, organization_id=organization_id, contact_id=contact_id, **fields)


def _workflow_definition(graph, trigger_type="tag_added", **trigger):
    return graph.definition(
        [
            graph.node("start", "trigger", trigger_type=trigger_type, **trigger),
            graph.node("hello", "message", content="Hi"),
        ],
        [graph.edge("start", "hello")]
    )


class TestMatching:
    """Test cases for the pure matching helpers."""

    def test_stop_keywords_are_case_insensitive(self):
        keywords = ["STOP", "UNSUBSCRIBE"]

        assert is_stop_keyword(" stop ", keywords)
        assert is_stop_keyword("Unsubscribe", keywords)
        assert not is_stop_keyword("please stop sending", keywords)
        assert not is_stop_keyword(None, keywords)

    def test_trigger_filters(self):
        tag_trigger = TriggerConfig(trigger_type="tag_added", tag="lead")
        keyword_trigger = TriggerConfig(trigger_type="message_received", keyword="demo")

        assert trigger_matches(tag_trigger, _event(TriggerType.TAG_ADDED, tag="lead"))
        assert not trigger_matches(tag_trigger, _event(TriggerType.TAG_ADDED, tag="customer"))
        assert not trigger_matches(tag_trigger, _event(TriggerType.CONTACT_CREATED))
        assert trigger_matches(keyword_trigger, _event(TriggerType.MESSAGE_RECEIVED, message_text="Book a DEMO"))
        assert not trigger_matches(keyword_trigger, _event(TriggerType.MESSAGE_RECEIVED, message_text="hello"))


class TestTriggers:
    """Test cases for trigger-based enrollment."""

    def test_matching_trigger_enrolls_contact(self, router, store, graph, publish):
        workflow = publish(_workflow_definition(graph, tag="lead"))

        result = router.handle_event(_event(TriggerType.TAG_ADDED, tag="lead", payload={"source": "form"}))

        assert len(result.enrolled) == 1
        enrollment = store.get(result.enrolled[0])
        assert enrollment.workflow_id == workflow.id
        assert enrollment.source == "tag_added"
        assert enrollment.context == {
            "trigger": "tag_added",
            "trigger_tag": "lead",
            "trigger_payload": {"source": "form"},
        }

    def test_inactive_and_foreign_workflows_are_ignored(self, router, components, graph, publish):
        components.workflow_manager.create_workflow("org-1", _workflow_definition(graph))
        publish(_workflow_definition(graph), organization_id="org-2")

        result = router.handle_event(_event(TriggerType.TAG_ADDED, tag="lead"))

        assert result.enrollments == []

    def test_repeated_event_does_not_double_enroll(self, router, graph, publish):
        publish(_workflow_definition(graph))

        router.handle_event(_event(TriggerType.TAG_ADDED, tag="lead"))
        second = router.handle_event(_event(TriggerType.TAG_ADDED, tag="lead"))

        assert second.enrolled == []
        assert second.enrollments[0].reason == "already enrolled"

    def test_scheduled_event_enrolls_listed_contacts(self, router, store, graph, publish):
        workflow = publish(_workflow_definition(graph, trigger_type="scheduled"))

        result = router.handle_event(ContactEvent(
            type=TriggerType.SCHEDULED,
            organization_id="org-1",
            workflow_id=workflow.id,
            contact_ids=["contact-1", "contact-2"]
        ))

        assert len(result.enrolled) == 2
        assert store.counts_by_status(workflow.id)["active"] == 2

    def test_scheduled_event_for_other_organization(self, router, graph, publish):
        workflow = publish(_workflow_definition(graph, trigger_type="scheduled"), organization_id="org-2")

        with pytest.raises(WorkflowNotFoundError):
            router.handle_event(ContactEvent(
                type=TriggerType.SCHEDULED,
                organization_id="org-1",
                workflow_id=workflow.id,
                contact_ids=["contact-1"]
            ))


class TestInboundMessages:
    """Test cases for replies, opt-outs and wake-ups."""

    def test_stop_keyword_opts_out_everywhere(self, router, store, graph, publish, components):
        first = publish(_workflow_definition(graph, trigger_type="contact_created"))
        second = publish(_workflow_definition(graph, trigger_type="contact_created"))
        active = store.enroll(first, "contact-1").enrollment
        paused = store.enroll(second, "contact-1").enrollment
        components.workflow_manager.pause(second.id)
        publish(_workflow_definition(graph, trigger_type="message_received"))

        result = router.handle_event(_event(TriggerType.MESSAGE_RECEIVED, message_text="STOP"))

        assert sorted(result.opted_out) == sorted([active.id, paused.id])
        assert result.enrollments == []
        assert store.get(active.id).status == EnrollmentStatus.OPTED_OUT
        assert store.get(paused.id).status == EnrollmentStatus.OPTED_OUT
        assert store.get(active.id).drop_reason == "opted out"

    def test_reply_drops_stop_on_reply_enrollments(self, router, store, graph, publish):
        stopping = publish(_workflow_definition(graph, trigger_type="contact_created"))
        continuing = publish(graph.definition(
            [
                graph.node("start", "trigger", trigger_type="contact_created"),
                graph.node("hello", "message", content="Hi"),
            ],
            [graph.edge("start", "hello")],
            stop_on_reply=False
        ))
        dropped = store.enroll(stopping, "contact-1").enrollment
        kept = store.enroll(continuing, "contact-1").enrollment

        result = router.handle_event(_event(TriggerType.MESSAGE_RECEIVED, message_text="Thanks!"))

        assert result.dropped == [dropped.id]
        assert store.get(dropped.id).drop_reason == "replied"
        survivor = store.get(kept.id)
        assert survivor.status == EnrollmentStatus.ACTIVE
        assert survivor.context["replied"] is True
        assert survivor.context["last_message"] == "Thanks!"

    def test_tag_event_wakes_matching_wait(self, router, store, graph, publish, clock):
        workflow = publish(_workflow_definition(graph, trigger_type="contact_created"))
        enrollment = store.enroll(workflow, "contact-1").enrollment
        store.claim(enrollment.id, "worker-a")
        store.suspend(enrollment.id, "worker-a", WaitCondition(event_type="tag_applied", node_id="start", tag="paid"))

        other_tag = router.handle_event(_event(TriggerType.TAG_ADDED, tag="vip"))
        assert other_tag.woken == []

        clock.advance(minutes=5)
        result = router.handle_event(_event(TriggerType.TAG_ADDED, tag="paid"))

        assert result.woken == [enrollment.id]
        woken = store.get(enrollment.id)
        assert woken.wait_condition.matched
        assert woken.next_action_at == clock()
