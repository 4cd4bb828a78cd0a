"""Workflow Manager for workflow definitions and their lifecycle."""

import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    Severity,
    ValidationIssue,
    ValidationResult,
    Workflow,
    WorkflowDefinition,
    WorkflowStatus,
)
from ..models.graph import WorkflowGraph
from ..storage.database import get_db
from ..storage.models import WorkflowModel
from .audit import AuditRecorder
from .enrollment_store import EnrollmentStore
from .exceptions import GraphValidationError, StorageError, WorkflowNotFoundError, WorkflowStateError
from .logging import get_logger
from .validation import ValidationEngine

logger = get_logger(__name__)

EDITABLE_STATUSES = (WorkflowStatus.DRAFT, WorkflowStatus.PAUSED)
ARCHIVED_DROP_REASON = "workflow archived"


def _to_workflow(model: WorkflowModel) -> Workflow:
    return Workflow(
        id=model.id,
        organization_id=model.organization_id,
        status=WorkflowStatus(model.status),
        version=model.version or 0,
        definition=WorkflowDefinition(**model.definition),
        created_at=model.created_at,
        updated_at=model.updated_at,
        published_at=model.published_at,
    )


class WorkflowManager:
    """Manages workflow definitions, validation gating and lifecycle transitions.

    A definition is only ever replaced as a whole. Active workflows cannot be
    edited in place; a new definition goes live through ``publish``, which
    re-validates it and bumps the version.
    """

    def __init__(
        self,
        validation_engine: ValidationEngine,
        enrollment_store: EnrollmentStore,
        audit_recorder: Optional[AuditRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.validation_engine = validation_engine
        self.enrollment_store = enrollment_store
        self.audit_recorder = audit_recorder
        self.clock = clock or datetime.utcnow
        self._graph_cache: Dict[Tuple[str, int, Optional[datetime]], WorkflowGraph] = {}
        self._cache_lock = threading.Lock()

    def create_workflow(self, organization_id: str, definition: WorkflowDefinition) -> Workflow:
        """
        Store a new workflow in draft status.

        Drafts may be invalid; validation only gates publishing.

        Args:
            organization_id: Owning organization
            definition: Initial graph definition

        Returns:
            Workflow: The stored draft

        Raises:
            StorageError: If storage operation fails
        """
        now = self.clock()
        workflow_id = str(uuid.uuid4())
        db = next(get_db())
        try:
            model = WorkflowModel(
                id=workflow_id,
                organization_id=organization_id,
                name=definition.name,
                description=definition.description,
                status=WorkflowStatus.DRAFT.value,
                version=0,
                definition=definition.model_dump(mode="json"),
                created_at=now,
                updated_at=now,
            )
            db.add(model)
            db.commit()
            db.refresh(model)
            logger.info(f"Created workflow '{definition.name}' with ID: {workflow_id}")
            return _to_workflow(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while creating workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create", table="workflows")
        finally:
            db.close()

    def update_workflow(self, workflow_id: str, definition: WorkflowDefinition) -> Workflow:
        """
        Replace the definition of a draft or paused workflow.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            WorkflowStateError: If the workflow is active or archived
            GraphValidationError: If the edit removes nodes that enrollments occupy
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.status not in EDITABLE_STATUSES:
            raise WorkflowStateError(
                f"Cannot edit a workflow in status '{workflow.status.value}'; "
                f"pause it or publish a new definition",
                workflow_id=workflow_id,
                status=workflow.status.value
            )

        self._check_occupied_nodes(workflow_id, definition)
        return self._save(workflow_id, definition=definition)

    def get_workflow(self, workflow_id: str) -> Workflow:
        """
        Retrieve a workflow by its ID.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            StorageError: If storage operation fails
        """
        db = next(get_db())
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(workflow_id)
            return _to_workflow(model)
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get", table="workflows")
        finally:
            db.close()

    def list_workflows(
        self,
        organization_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None
    ) -> List[Workflow]:
        """List workflows, optionally filtered by organization and status."""
        db = next(get_db())
        try:
            query = db.query(WorkflowModel)
            if organization_id:
                query = query.filter(WorkflowModel.organization_id == organization_id)
            if status:
                query = query.filter(WorkflowModel.status == status.value)
            return [_to_workflow(model) for model in query.order_by(WorkflowModel.created_at).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list", table="workflows")
        finally:
            db.close()

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """Run static validation; pure and side-effect-free."""
        return self.validation_engine.validate(definition)

    def publish(self, workflow_id: str, definition: Optional[WorkflowDefinition] = None) -> Workflow:
        """
        Validate and activate a workflow, optionally replacing its definition.

        Args:
            workflow_id: Workflow to publish
            definition: New definition; the stored one is published if omitted

        Returns:
            Workflow: The active workflow with its version bumped

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            WorkflowStateError: If the workflow is archived
            GraphValidationError: If validation reports errors or the new graph
                removes nodes that live enrollments occupy
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise WorkflowStateError(
                "Archived workflows cannot be published",
                workflow_id=workflow_id,
                status=workflow.status.value
            )

        candidate = definition or workflow.definition
        self._ensure_valid(workflow_id, candidate)
        self._check_occupied_nodes(workflow_id, candidate)

        was_paused = workflow.status == WorkflowStatus.PAUSED
        published = self._save(
            workflow_id,
            definition=candidate,
            status=WorkflowStatus.ACTIVE,
            version=workflow.version + 1,
            published_at=self.clock()
        )
        if was_paused:
            self.enrollment_store.resume_workflow(workflow_id)

        logger.info(f"Published workflow {workflow_id} as version {published.version}")
        return published

    def pause(self, workflow_id: str) -> Workflow:
        """
        Pause an active workflow and all of its active enrollments.

        In-flight node executions finish and are logged; their result keeps the
        enrollment paused.
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowStateError(
                f"Only active workflows can be paused, status is '{workflow.status.value}'",
                workflow_id=workflow_id,
                status=workflow.status.value
            )

        paused = self._save(workflow_id, status=WorkflowStatus.PAUSED)
        self.enrollment_store.pause_workflow(workflow_id)
        return paused

    def resume(self, workflow_id: str) -> Workflow:
        """
        Resume a paused workflow, restoring each enrollment's saved due time.

        The definition is re-validated since paused workflows may be edited.
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.PAUSED:
            raise WorkflowStateError(
                f"Only paused workflows can be resumed, status is '{workflow.status.value}'",
                workflow_id=workflow_id,
                status=workflow.status.value
            )

        self._ensure_valid(workflow_id, workflow.definition)
        resumed = self._save(workflow_id, status=WorkflowStatus.ACTIVE)
        self.enrollment_store.resume_workflow(workflow_id)
        return resumed

    def archive(self, workflow_id: str) -> Workflow:
        """Archive a workflow and drop its live enrollments."""
        workflow = self.get_workflow(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            return workflow

        archived = self._save(workflow_id, status=WorkflowStatus.ARCHIVED)
        dropped = self.enrollment_store.drop_workflow_enrollments(workflow_id, ARCHIVED_DROP_REASON)
        logger.info(f"Archived workflow {workflow_id}, dropped {dropped} live enrollments")
        return archived

    def get_graph(self, workflow: Workflow) -> WorkflowGraph:
        """Indexed graph for a workflow, cached per stored revision."""
        key = (workflow.id, workflow.version, workflow.updated_at)
        with self._cache_lock:
            graph = self._graph_cache.get(key)
            if graph is None:
                stale = [cached for cached in self._graph_cache if cached[0] == workflow.id]
                for cached in stale:
                    del self._graph_cache[cached]
                graph = WorkflowGraph(workflow.definition)
                self._graph_cache[key] = graph
            return graph

    def analytics(self, workflow_id: str) -> Dict[str, Any]:
        """
        Build the analytics read model of a workflow.

        Only counts, rates and human readable drop reasons are returned; raw
        error detail stays in the execution log.
        """
        workflow = self.get_workflow(workflow_id)
        enrollments = self.enrollment_store.counts_by_status(workflow_id)
        result: Dict[str, Any] = {
            "workflow_id": workflow_id,
            "version": workflow.version,
            "status": workflow.status.value,
            "enrollments": enrollments,
            "total_enrollments": sum(enrollments.values()),
            "drop_reasons": self.enrollment_store.drop_reasons(workflow_id),
        }
        if self.audit_recorder is not None:
            result["nodes"] = self.audit_recorder.node_stats(workflow_id)
            result["branches"] = self.audit_recorder.branch_counts(workflow_id)
            result["conversions"] = self.audit_recorder.conversion_summary(workflow_id)
            result["split_tests"] = self.audit_recorder.split_test_results(workflow_id)
        return result

    def _ensure_valid(self, workflow_id: str, definition: WorkflowDefinition):
        result = self.validate(definition)
        if not result.is_valid:
            messages = "; ".join(issue.message for issue in result.errors)
            logger.error(f"Workflow {workflow_id} failed validation: {messages}")
            raise GraphValidationError(
                f"Workflow validation failed: {messages}",
                issues=result.errors,
                workflow_id=workflow_id
            )
        if result.warnings:
            logger.warning(
                f"Workflow {workflow_id} validation warnings: "
                f"{'; '.join(issue.message for issue in result.warnings)}"
            )

    def _check_occupied_nodes(self, workflow_id: str, definition: WorkflowDefinition):
        """Reject definitions that remove nodes live enrollments are positioned at."""
        occupied = self.enrollment_store.live_node_ids(workflow_id)
        removed = sorted(occupied - set(definition.node_ids()))
        if not removed:
            return

        issues = [
            ValidationIssue(
                severity=Severity.ERROR,
                node_id=node_id,
                message=f"Node '{node_id}' cannot be removed while enrollments are positioned at it"
            )
            for node_id in removed
        ]
        raise GraphValidationError(
            f"Definition removes occupied node(s): {', '.join(removed)}",
            issues=issues,
            workflow_id=workflow_id
        )

    def _save(
        self,
        workflow_id: str,
        definition: Optional[WorkflowDefinition] = None,
        status: Optional[WorkflowStatus] = None,
        version: Optional[int] = None,
        published_at: Optional[datetime] = None
    ) -> Workflow:
        db = next(get_db())
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(workflow_id)

            if definition is not None:
                model.definition = definition.model_dump(mode="json")
                model.name = definition.name
                model.description = definition.description
            if status is not None:
                model.status = status.value
            if version is not None:
                model.version = version
            if published_at is not None:
                model.published_at = published_at
            model.updated_at = self.clock()

            db.commit()
            db.refresh(model)
            return _to_workflow(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while saving workflow: {str(e)}")
            raise StorageError(f"Failed to save workflow: {str(e)}", operation="save", table="workflows")
        finally:
            db.close()
