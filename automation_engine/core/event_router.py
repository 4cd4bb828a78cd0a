"""Maps inbound contact events onto enrollments, wake-ups and stop-on-reply handling."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from ..models.core import (
    ContactEvent,
    Enrollment,
    EnrollmentResult,
    EnrollmentStatus,
    TriggerType,
    WaitCondition,
    Workflow,
    WorkflowStatus,
)
from ..models.nodes import TriggerConfig, WaitEventType, parse_node_config
from .enrollment_store import EnrollmentStore
from .exceptions import WorkflowNotFoundError
from .logging import get_logger
from .templating import format_value
from .workflow_manager import WorkflowManager

logger = get_logger(__name__)

REPLIED_DROP_REASON = "replied"
OPTED_OUT_REASON = "opted out"

# Inbound event type -> WaitUntil event type it satisfies
WAIT_EVENT_FOR_TRIGGER = {
    TriggerType.TAG_ADDED: WaitEventType.TAG_APPLIED.value,
    TriggerType.FIELD_CHANGED: WaitEventType.FIELD_CHANGED.value,
    TriggerType.MESSAGE_RECEIVED: WaitEventType.MESSAGE_RECEIVED.value,
    TriggerType.WEBHOOK_RECEIVED: WaitEventType.WEBHOOK_RECEIVED.value,
}


class EventResult(BaseModel):
    """What an inbound event did."""
    event_type: TriggerType = Field(..., description="Handled event type")
    enrollments: List[EnrollmentResult] = Field(default_factory=list, description="Enroll attempts by trigger")
    woken: List[str] = Field(default_factory=list, description="Waiting enrollments that were woken")
    opted_out: List[str] = Field(default_factory=list, description="Enrollments moved to opted_out")
    dropped: List[str] = Field(default_factory=list, description="Enrollments dropped because the contact replied")

    @property
    def enrolled(self) -> List[str]:
        return [result.enrollment.id for result in self.enrollments if result.enrolled]


def is_stop_keyword(text: Optional[str], stop_keywords: Sequence[str]) -> bool:
    """Whether an inbound message is an opt-out request."""
    if not text:
        return False
    return text.strip().upper() in {keyword.strip().upper() for keyword in stop_keywords}


def trigger_matches(config: TriggerConfig, event: ContactEvent) -> bool:
    """Whether a trigger's filters accept an event of its own type."""
    if config.trigger_type != event.type:
        return False
    if event.type == TriggerType.TAG_ADDED:
        return config.tag is None or config.tag == event.tag
    if event.type == TriggerType.FIELD_CHANGED:
        if config.field_name and config.field_name != event.field_name:
            return False
        return config.field_value is None or format_value(config.field_value) == format_value(event.field_value)
    if event.type == TriggerType.WEBHOOK_RECEIVED:
        return config.webhook_key is None or config.webhook_key == event.webhook_key
    if event.type == TriggerType.MESSAGE_RECEIVED:
        if not config.keyword:
            return True
        return config.keyword.strip().lower() in (event.message_text or "").lower()
    return True


def wait_matches(condition: WaitCondition, event: ContactEvent) -> bool:
    """Whether an event satisfies a suspended enrollment's wait condition."""
    if condition.matched or WAIT_EVENT_FOR_TRIGGER.get(event.type) != condition.event_type:
        return False
    if event.type == TriggerType.TAG_ADDED:
        return condition.tag == event.tag
    if event.type == TriggerType.FIELD_CHANGED:
        if condition.field_name != event.field_name:
            return False
        return condition.field_value is None or format_value(condition.field_value) == format_value(event.field_value)
    if event.type == TriggerType.WEBHOOK_RECEIVED:
        return condition.webhook_key is None or condition.webhook_key == event.webhook_key
    return True


class EventRouter:
    """Entry point for events delivered by external collaborators."""

    def __init__(
        self,
        workflow_manager: WorkflowManager,
        enrollment_store: EnrollmentStore,
        stop_keywords: Sequence[str],
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.workflow_manager = workflow_manager
        self.enrollment_store = enrollment_store
        self.stop_keywords = list(stop_keywords)
        self.clock = clock or datetime.utcnow

    def handle_event(self, event: ContactEvent) -> EventResult:
        """
        Route one inbound event.

        Inbound messages are handled first against existing enrollments
        (opt-out or stop-on-reply), then waiting enrollments are woken and
        finally the event is matched against the triggers of active workflows.

        Args:
            event: The inbound event

        Returns:
            EventResult: Enrollments created, woken, opted out and dropped

        Raises:
            WorkflowNotFoundError: If a scheduled event names an unknown workflow or
                one of another organization
            StorageError: If database operations fail
        """
        result = EventResult(event_type=event.type)
        if event.type == TriggerType.SCHEDULED:
            result.enrollments = self._enroll_scheduled(event)
            return result

        if event.type == TriggerType.MESSAGE_RECEIVED:
            if is_stop_keyword(event.message_text, self.stop_keywords):
                result.opted_out = self._terminate_stop_on_reply(
                    event, EnrollmentStatus.OPTED_OUT, OPTED_OUT_REASON
                )
                logger.info(f"Contact {event.contact_id} opted out of {len(result.opted_out)} enrollments")
                return result

            result.dropped = self._terminate_stop_on_reply(
                event, EnrollmentStatus.DROPPED, REPLIED_DROP_REASON
            )
            self._mark_replied(event)

        result.woken = self._wake_waiting(event)
        result.enrollments = self._enroll_triggered(event)
        return result

    def _enroll_scheduled(self, event: ContactEvent) -> List[EnrollmentResult]:
        workflow = self.workflow_manager.get_workflow(event.workflow_id)
        if workflow.organization_id != event.organization_id:
            raise WorkflowNotFoundError(workflow.id)
        return self.enrollment_store.bulk_enroll(
            workflow,
            event.contact_ids,
            source=TriggerType.SCHEDULED.value,
            context=self._trigger_context(event)
        )

    def _enroll_triggered(self, event: ContactEvent) -> List[EnrollmentResult]:
        results = []
        for workflow in self.workflow_manager.list_workflows(
            organization_id=event.organization_id, status=WorkflowStatus.ACTIVE
        ):
            config = self._trigger_config(workflow)
            if config is None or not trigger_matches(config, event):
                continue
            results.append(self.enrollment_store.enroll(
                workflow,
                event.contact_id,
                source=event.type.value,
                context=self._trigger_context(event)
            ))
        enrolled = sum(1 for result in results if result.enrolled)
        if enrolled:
            logger.info(f"{event.type.value} for contact {event.contact_id} started {enrolled} enrollments")
        return results

    def _wake_waiting(self, event: ContactEvent) -> List[str]:
        now = self.clock()
        woken = []
        for enrollment in self.enrollment_store.find_waiting(event.contact_id, event.organization_id):
            if wait_matches(enrollment.wait_condition, event) and self.enrollment_store.wake(enrollment.id, now=now):
                woken.append(enrollment.id)
        return woken

    def _terminate_stop_on_reply(self, event: ContactEvent, status: EnrollmentStatus, reason: str) -> List[str]:
        workflow_ids = [
            enrollment.workflow_id for enrollment in self._live_enrollments(event)
            if self._stops_on_reply(enrollment)
        ]
        return self.enrollment_store.terminate_for_contact(event.contact_id, workflow_ids, status, reason=reason)

    def _mark_replied(self, event: ContactEvent):
        for enrollment in self._live_enrollments(event):
            self.enrollment_store.merge_context(
                enrollment.id,
                {"replied": True, "last_message": event.message_text}
            )

    def _live_enrollments(self, event: ContactEvent) -> List[Enrollment]:
        return self.enrollment_store.list_live_for_contact(event.contact_id, event.organization_id)

    def _stops_on_reply(self, enrollment: Enrollment) -> bool:
        workflow = self.workflow_manager.get_workflow(enrollment.workflow_id)
        return workflow.settings.stop_on_reply

    @staticmethod
    def _trigger_config(workflow: Workflow) -> Optional[TriggerConfig]:
        trigger = workflow.trigger_node()
        if trigger is None:
            return None
        try:
            return parse_node_config(trigger)
        except ValidationError:
            logger.warning(f"Workflow {workflow.id} has an unreadable trigger configuration")
            return None

    @staticmethod
    def _trigger_context(event: ContactEvent) -> Dict[str, Any]:
        context: Dict[str, Any] = {"trigger": event.type.value}
        if event.tag:
            context["trigger_tag"] = event.tag
        if event.webhook_key:
            context["trigger_webhook_key"] = event.webhook_key
        if event.message_text:
            context["last_message"] = event.message_text
        if event.payload:
            context["trigger_payload"] = event.payload
        return context
