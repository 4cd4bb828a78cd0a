"""Execution Engine: dispatches an enrollment's current node and applies the result."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import requests
from pydantic import ValidationError

from ..config import AppConfig, OrganizationPolicy
from ..executors import ExecutionContext, NodeOutcome, get_executor
from ..integrations.base import AIProvider, ContactStore, MessagingGateway
from ..models.core import (
    DEFAULT_HANDLE,
    ERROR_HANDLE,
    Enrollment,
    EnrollmentStatus,
    LogOutcome,
    NodeDefinition,
    Workflow,
    WorkflowStatus,
)
from ..models.graph import WorkflowGraph
from ..models.nodes import parse_node_config
from .audit import AuditRecorder
from .enrollment_store import EnrollmentStore
from .error_recovery import ExternalCallRunner, enrollment_backoff
from .exceptions import (
    ConfigurationError,
    LeaseLostError,
    NodeExecutionError,
    PermanentExecutionError,
    TransientExecutionError,
)
from .logging import clear_logging_context, get_logger, raise_operator_alert, set_logging_context
from .workflow_manager import WorkflowManager

logger = get_logger(__name__)

CONFIGURATION_DROP_REASON = "configuration error"


class DispatchOutcome(str, Enum):
    """How a dispatch left the enrollment."""
    ADVANCED = "advanced"
    WAITING = "waiting"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED_OVER = "failed_over"
    DROPPED = "dropped"
    SKIPPED = "skipped"
    LEASE_LOST = "lease_lost"


@dataclass
class DispatchResult:
    """Summary of one dispatch, possibly spanning several chained nodes."""
    enrollment_id: str
    outcome: DispatchOutcome
    steps: int = 0
    node_id: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class _Step:
    outcome: DispatchOutcome
    node_id: Optional[str]
    detail: Optional[str] = None
    chain: bool = False


class ExecutionEngine:
    """Runs node executors for claimed enrollments.

    The caller must hold the enrollment's lease. Every pointer change is made
    through the enrollment store under that lease; a result that arrives after
    the enrollment was terminated or paused out of band is still written to
    the execution log.
    """

    def __init__(
        self,
        workflow_manager: WorkflowManager,
        enrollment_store: EnrollmentStore,
        audit_recorder: AuditRecorder,
        contact_store: ContactStore,
        messaging: MessagingGateway,
        config: AppConfig,
        ai_provider: Optional[AIProvider] = None,
        http_session: Optional[requests.Session] = None,
        runner: Optional[ExternalCallRunner] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the execution engine.

        Args:
            workflow_manager: Source of workflow definitions and graphs
            enrollment_store: Durable enrollment state
            audit_recorder: Append-only execution log
            contact_store: Contact collaborator
            messaging: Messaging gateway collaborator
            config: Engine settings (timeouts, retry policy, chaining limit)
            ai_provider: Optional AI provider collaborator
            http_session: Session used for outbound webhooks
            runner: Pool that bounds collaborator calls by a timeout
            clock: Returns the current naive UTC time
        """
        self.workflow_manager = workflow_manager
        self.enrollment_store = enrollment_store
        self.audit_recorder = audit_recorder
        self.contact_store = contact_store
        self.messaging = messaging
        self.ai_provider = ai_provider
        self.config = config
        self.http_session = http_session or requests.Session()
        self.runner = runner or ExternalCallRunner(max_workers=max(4, config.max_dispatch_workers * 2))
        self.clock = clock or datetime.utcnow
        self.backoff = enrollment_backoff(config.retry_base_seconds, config.max_retry_attempts)

    def dispatch(self, enrollment: Enrollment, worker_id: str) -> DispatchResult:
        """
        Execute the enrollment's current node and follow immediate successors.

        Nodes that complete without a delay are chained within one dispatch, up
        to ``max_steps_per_dispatch``, renewing the lease between steps.

        Args:
            enrollment: Snapshot returned by a successful claim
            worker_id: Lease holder

        Returns:
            DispatchResult: How the enrollment was left
        """
        set_logging_context(enrollment_id=enrollment.id, workflow_id=enrollment.workflow_id, worker_id=worker_id)
        try:
            workflow = self.workflow_manager.get_workflow(enrollment.workflow_id)
            if workflow.status != WorkflowStatus.ACTIVE:
                self.enrollment_store.release(enrollment.id, worker_id)
                return DispatchResult(
                    enrollment_id=enrollment.id,
                    outcome=DispatchOutcome.SKIPPED,
                    node_id=enrollment.current_node_id,
                    detail=f"workflow is {workflow.status.value}"
                )

            graph = self.workflow_manager.get_graph(workflow)
            policy = self.config.organization_policy(workflow.settings)

            steps = 0
            current = enrollment
            while True:
                steps += 1
                chain_allowed = steps < self.config.max_steps_per_dispatch
                step = self._execute_step(current, workflow, graph, policy, worker_id, chain_allowed)
                if not step.chain:
                    return DispatchResult(
                        enrollment_id=enrollment.id,
                        outcome=step.outcome,
                        steps=steps,
                        node_id=step.node_id,
                        detail=step.detail
                    )

                if not self.enrollment_store.renew_lease(enrollment.id, worker_id):
                    raise LeaseLostError(enrollment.id, worker_id)
                current = self.enrollment_store.get(enrollment.id)

        except LeaseLostError as e:
            logger.warning(e.message)
            return DispatchResult(
                enrollment_id=enrollment.id,
                outcome=DispatchOutcome.LEASE_LOST,
                node_id=enrollment.current_node_id,
                detail=e.message
            )
        finally:
            clear_logging_context()

    def shutdown(self):
        self.runner.shutdown()
        self.http_session.close()

    def _execute_step(
        self,
        enrollment: Enrollment,
        workflow: Workflow,
        graph: WorkflowGraph,
        policy: OrganizationPolicy,
        worker_id: str,
        chain_allowed: bool
    ) -> _Step:
        node = graph.node(enrollment.current_node_id)
        if node is None:
            error = ConfigurationError(
                f"Enrollment points at node '{enrollment.current_node_id}' which is not in the workflow",
                node_id=enrollment.current_node_id
            )
            return self._handle_configuration_error(enrollment, None, error, worker_id)

        now = self.clock()
        try:
            try:
                config = parse_node_config(node)
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid {node.type.value} configuration: {e.error_count()} error(s)",
                    node_id=node.id
                )

            ctx = ExecutionContext(
                enrollment=enrollment,
                workflow=workflow,
                node=node,
                graph=graph,
                policy=policy,
                now=now,
                contact_store=self.contact_store,
                messaging=self.messaging,
                runner=self.runner,
                call_timeout=self.config.external_call_timeout,
                http=self.http_session,
                ai_provider=self.ai_provider
            )
            outcome = get_executor(node.type)(config, ctx)

        except ConfigurationError as e:
            return self._handle_configuration_error(enrollment, node, e, worker_id)
        except PermanentExecutionError as e:
            return self._handle_failure(enrollment, node, graph, e, worker_id)
        except TransientExecutionError as e:
            return self._handle_transient(enrollment, node, graph, e, worker_id, now)
        except Exception as e:
            # Unknown failures are retried like transient ones
            logger.error(f"Unexpected error executing node {node.id}: {str(e)}", exc_info=True)
            error = TransientExecutionError(f"Unexpected error: {type(e).__name__}", node_id=node.id)
            return self._handle_transient(enrollment, node, graph, error, worker_id, now)

        return self._apply_outcome(enrollment, node, graph, outcome, worker_id, now, chain_allowed)

    def _apply_outcome(
        self,
        enrollment: Enrollment,
        node: NodeDefinition,
        graph: WorkflowGraph,
        outcome: NodeOutcome,
        worker_id: str,
        now: datetime,
        chain_allowed: bool
    ) -> _Step:
        store = self.enrollment_store

        if outcome.suspends:
            landed = store.suspend(enrollment.id, worker_id, outcome.wait_condition, outcome.context_updates)
            if landed is None:
                return self._discarded(enrollment, node, outcome.detail)
            logger.info(f"Enrollment {enrollment.id} {outcome.detail}")
            return _Step(DispatchOutcome.WAITING, node.id, outcome.detail)

        next_node_id = graph.next_node_id(node.id, outcome.handle)

        if next_node_id is None:
            finished = store.terminate(
                enrollment.id,
                EnrollmentStatus.COMPLETED,
                holder=worker_id,
                context_updates=outcome.context_updates,
                messages_sent=outcome.messages_sent
            )
            self._record(enrollment, node, LogOutcome.SUCCESS, handle=outcome.handle,
                         detail=outcome.detail if finished else self._discard_note(outcome.detail))
            if not finished:
                return _Step(DispatchOutcome.LEASE_LOST, node.id, "enrollment left before completion was applied")
            self._record_conversion(enrollment, node, outcome)
            return _Step(DispatchOutcome.COMPLETED, node.id, outcome.detail)

        immediate = outcome.delay_until is None or outcome.delay_until <= now
        keep_lease = chain_allowed and immediate
        landed = store.advance(
            enrollment.id,
            worker_id,
            next_node_id,
            delay_until=outcome.delay_until,
            context_updates=outcome.context_updates,
            messages_sent=outcome.messages_sent,
            keep_lease=keep_lease
        )
        self._record(enrollment, node, LogOutcome.SUCCESS, handle=outcome.handle,
                     detail=outcome.detail if landed else self._discard_note(outcome.detail))
        if landed is None:
            return _Step(DispatchOutcome.LEASE_LOST, node.id, "enrollment left before the result was applied")

        self._record_conversion(enrollment, node, outcome)
        return _Step(
            DispatchOutcome.ADVANCED,
            next_node_id,
            outcome.detail,
            chain=keep_lease and landed == EnrollmentStatus.ACTIVE
        )

    def _handle_transient(
        self,
        enrollment: Enrollment,
        node: NodeDefinition,
        graph: WorkflowGraph,
        error: TransientExecutionError,
        worker_id: str,
        now: datetime
    ) -> _Step:
        attempt = enrollment.attempt
        if not self.backoff.should_retry(error, attempt + 1):
            return self._handle_failure(
                enrollment, node, graph, error, worker_id,
                reason=f"failed after {attempt + 1} attempts: {error.message}"
            )

        retry_at = now + timedelta(seconds=self.backoff.get_delay(attempt + 1))
        landed = self.enrollment_store.reschedule_retry(enrollment.id, worker_id, attempt + 1, retry_at)
        detail = f"{error.message}; retry {attempt + 1} at {retry_at.isoformat()}"
        self._record(enrollment, node, LogOutcome.RETRIED, attempt=attempt,
                     detail=detail if landed else self._discard_note(detail))
        if landed is None:
            return _Step(DispatchOutcome.LEASE_LOST, node.id, "enrollment left before the retry was scheduled")

        logger.warning(f"Node {node.id} failed transiently for enrollment {enrollment.id}: {detail}")
        return _Step(DispatchOutcome.RETRY_SCHEDULED, node.id, detail)

    def _handle_failure(
        self,
        enrollment: Enrollment,
        node: NodeDefinition,
        graph: WorkflowGraph,
        error: NodeExecutionError,
        worker_id: str,
        reason: Optional[str] = None
    ) -> _Step:
        """Mark the node failed and take the error edge, then the default edge, else drop."""
        reason = reason or error.message
        self._record(enrollment, node, LogOutcome.FAILED, attempt=enrollment.attempt, detail=reason)
        logger.error(f"Node {node.id} failed for enrollment {enrollment.id}: {reason}")

        target = graph.next_node_id(node.id, ERROR_HANDLE) or graph.next_node_id(node.id, DEFAULT_HANDLE)
        if target is not None:
            landed = self.enrollment_store.advance(
                enrollment.id,
                worker_id,
                target,
                context_updates={f"error_{node.id}": reason}
            )
            if landed is None:
                return _Step(DispatchOutcome.LEASE_LOST, node.id, "enrollment left before the failure was applied")
            return _Step(DispatchOutcome.FAILED_OVER, target, reason)

        drop_reason = f"{node.type.value} step '{node.name or node.id}' failed: {reason}"
        if not self.enrollment_store.terminate(enrollment.id, EnrollmentStatus.DROPPED, reason=drop_reason, holder=worker_id):
            return _Step(DispatchOutcome.LEASE_LOST, node.id, "enrollment left before the failure was applied")
        return _Step(DispatchOutcome.DROPPED, node.id, drop_reason)

    def _handle_configuration_error(
        self,
        enrollment: Enrollment,
        node: Optional[NodeDefinition],
        error: ConfigurationError,
        worker_id: str
    ) -> _Step:
        node_id = node.id if node is not None else enrollment.current_node_id
        raise_operator_alert(
            f"Configuration error at runtime: {error.message}",
            workflow_id=enrollment.workflow_id,
            enrollment_id=enrollment.id,
            node_id=node_id
        )
        if node is not None:
            self._record(enrollment, node, LogOutcome.FAILED, attempt=enrollment.attempt,
                         detail=f"{CONFIGURATION_DROP_REASON}: {error.message}")

        self.enrollment_store.terminate(
            enrollment.id,
            EnrollmentStatus.DROPPED,
            reason=CONFIGURATION_DROP_REASON,
            holder=worker_id
        )
        return _Step(DispatchOutcome.DROPPED, node_id, CONFIGURATION_DROP_REASON)

    def _discarded(self, enrollment: Enrollment, node: NodeDefinition, detail: Optional[str]) -> _Step:
        logger.warning(f"Enrollment {enrollment.id} left node {node.id} before its result was applied")
        return _Step(DispatchOutcome.LEASE_LOST, node.id, self._discard_note(detail))

    @staticmethod
    def _discard_note(detail: Optional[str]) -> str:
        return f"{detail or 'completed'} (not applied: enrollment was no longer held)"

    def _record(
        self,
        enrollment: Enrollment,
        node: NodeDefinition,
        outcome: LogOutcome,
        attempt: int = 0,
        handle: Optional[str] = None,
        detail: Optional[str] = None
    ):
        self.audit_recorder.record(
            enrollment_id=enrollment.id,
            workflow_id=enrollment.workflow_id,
            node_id=node.id,
            node_type=node.type,
            outcome=outcome,
            attempt=attempt,
            handle=handle,
            detail=detail
        )

    def _record_conversion(self, enrollment: Enrollment, node: NodeDefinition, outcome: NodeOutcome):
        if outcome.conversion:
            self.audit_recorder.record_conversion(
                enrollment_id=enrollment.id,
                workflow_id=enrollment.workflow_id,
                contact_id=enrollment.contact_id,
                node_id=node.id,
                conversion=outcome.conversion
            )
