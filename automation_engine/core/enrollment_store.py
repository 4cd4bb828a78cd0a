"""Durable record of each contact's position and context within a workflow."""

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..models.core import (
    LIVE_STATUSES,
    Enrollment,
    EnrollmentResult,
    EnrollmentStatus,
    WaitCondition,
    Workflow,
    WorkflowStatus,
)
from ..storage.database import get_db
from ..storage.models import EnrollmentModel
from .exceptions import EnrollmentError, EnrollmentNotFoundError, StorageError
from .error_recovery import RetryConfig, with_retry
from .logging import get_logger

logger = get_logger(__name__)

STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0, retryable_exceptions=[StorageError])
# Re-reads allowed when another writer changes the context between read and write
CONTEXT_WRITE_ATTEMPTS = 5

SKIP_ALREADY_ENROLLED = "already enrolled"
SKIP_REENTRY_NOT_ALLOWED = "re-entry not allowed"
SKIP_WORKFLOW_NOT_ACTIVE = "workflow not active"
SKIP_NO_TRIGGER = "workflow has no trigger"


def _to_enrollment(model: EnrollmentModel) -> Enrollment:
    """Convert a database row to an Enrollment snapshot."""
    return Enrollment(
        id=model.id,
        workflow_id=model.workflow_id,
        organization_id=model.organization_id,
        contact_id=model.contact_id,
        status=EnrollmentStatus(model.status),
        current_node_id=model.current_node_id,
        next_action_at=model.next_action_at,
        context=dict(model.context or {}),
        lease_holder=model.lease_holder,
        lease_expires_at=model.lease_expires_at,
        attempt=model.attempt or 0,
        wait_condition=WaitCondition(**model.wait_condition) if model.wait_condition else None,
        drop_reason=model.drop_reason,
        messages_sent=model.messages_sent or 0,
        source=model.source or "manual",
        enrolled_at=model.enrolled_at,
        updated_at=model.updated_at,
        completed_at=model.completed_at,
    )


class EnrollmentStore:
    """Persists enrollments and mediates every change to their pointer.

    Pointer changes made by a scheduler worker are conditional on the worker
    still holding the enrollment's lease, so a worker whose lease expired (or
    whose enrollment was terminated out of band) can never overwrite newer
    state. Every write is a single conditional UPDATE.
    """

    def __init__(self, lease_seconds: int = 300, clock: Optional[Callable[[], datetime]] = None):
        self.lease_seconds = lease_seconds
        self.clock = clock or datetime.utcnow
        logger.info("EnrollmentStore initialized")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def enroll(
        self,
        workflow: Workflow,
        contact_id: str,
        source: str = "manual",
        context: Optional[Dict[str, Any]] = None
    ) -> EnrollmentResult:
        """
        Enroll a contact into a workflow at its trigger node.

        Args:
            workflow: The workflow to enroll into; must be active
            contact_id: Contact to enroll
            source: What created the enrollment (manual, bulk, trigger event type)
            context: Initial enrollment variables

        Returns:
            EnrollmentResult: The new enrollment, or the reason the request was skipped

        Raises:
            StorageError: If database operations fail
        """
        if workflow.status != WorkflowStatus.ACTIVE:
            return EnrollmentResult(contact_id=contact_id, enrolled=False, reason=SKIP_WORKFLOW_NOT_ACTIVE)

        trigger = workflow.trigger_node()
        if trigger is None:
            return EnrollmentResult(contact_id=contact_id, enrolled=False, reason=SKIP_NO_TRIGGER)

        now = self.clock()
        db = next(get_db())
        try:
            previous = db.execute(
                select(EnrollmentModel.status)
                .where(EnrollmentModel.workflow_id == workflow.id)
                .where(EnrollmentModel.contact_id == contact_id)
            ).scalars().all()

            if any(status in LIVE_STATUSES for status in previous):
                logger.debug(f"Contact {contact_id} already enrolled in workflow {workflow.id}")
                return EnrollmentResult(contact_id=contact_id, enrolled=False, reason=SKIP_ALREADY_ENROLLED)

            if previous and not workflow.settings.allow_reentry:
                return EnrollmentResult(contact_id=contact_id, enrolled=False, reason=SKIP_REENTRY_NOT_ALLOWED)

            model = EnrollmentModel(
                id=str(uuid.uuid4()),
                workflow_id=workflow.id,
                organization_id=workflow.organization_id,
                contact_id=contact_id,
                status=EnrollmentStatus.ACTIVE.value,
                current_node_id=trigger.id,
                next_action_at=now,
                context=dict(context or {}),
                attempt=0,
                messages_sent=0,
                source=source,
                enrolled_at=now,
                updated_at=now,
            )
            db.add(model)
            db.commit()
            db.refresh(model)

            logger.info(f"Enrolled contact {contact_id} into workflow {workflow.id} as {model.id}")
            return EnrollmentResult(contact_id=contact_id, enrolled=True, enrollment=_to_enrollment(model))

        except IntegrityError:
            # Lost a race against a concurrent enroll for the same contact
            db.rollback()
            return EnrollmentResult(contact_id=contact_id, enrolled=False, reason=SKIP_ALREADY_ENROLLED)
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to enroll contact: {str(e)}", operation="enroll", table="enrollments")
        finally:
            db.close()

    def bulk_enroll(
        self,
        workflow: Workflow,
        contact_ids: Sequence[str],
        source: str = "bulk",
        context: Optional[Dict[str, Any]] = None
    ) -> List[EnrollmentResult]:
        """Enroll many contacts, returning one result per distinct contact id."""
        results = []
        seen: Set[str] = set()
        for contact_id in contact_ids:
            if contact_id in seen:
                continue
            seen.add(contact_id)
            results.append(self.enroll(workflow, contact_id, source=source, context=context))
        return results

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @with_retry(STORAGE_RETRY)
    def get(self, enrollment_id: str) -> Enrollment:
        """
        Get an enrollment snapshot.

        Raises:
            EnrollmentNotFoundError: If the enrollment does not exist
            StorageError: If database operations fail
        """
        db = next(get_db())
        try:
            model = db.get(EnrollmentModel, enrollment_id)
            if model is None:
                raise EnrollmentNotFoundError(enrollment_id)
            return _to_enrollment(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load enrollment: {str(e)}", operation="get", table="enrollments")
        finally:
            db.close()

    def list_for_workflow(
        self,
        workflow_id: str,
        status: Optional[EnrollmentStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Enrollment]:
        """List enrollments of a workflow, newest first."""
        db = next(get_db())
        try:
            query = select(EnrollmentModel).where(EnrollmentModel.workflow_id == workflow_id)
            if status is not None:
                query = query.where(EnrollmentModel.status == status.value)
            query = query.order_by(EnrollmentModel.enrolled_at.desc()).offset(offset).limit(limit)
            return [_to_enrollment(model) for model in db.execute(query).scalars()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list enrollments: {str(e)}", operation="list", table="enrollments")
        finally:
            db.close()

    def list_live_for_contact(self, contact_id: str, organization_id: Optional[str] = None) -> List[Enrollment]:
        """Active and paused enrollments of a contact across all workflows."""
        db = next(get_db())
        try:
            query = (
                select(EnrollmentModel)
                .where(EnrollmentModel.contact_id == contact_id)
                .where(EnrollmentModel.status.in_(LIVE_STATUSES))
            )
            if organization_id:
                query = query.where(EnrollmentModel.organization_id == organization_id)
            return [_to_enrollment(model) for model in db.execute(query).scalars()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list enrollments: {str(e)}", operation="list", table="enrollments")
        finally:
            db.close()

    def find_waiting(self, contact_id: str, organization_id: Optional[str] = None) -> List[Enrollment]:
        """Live enrollments of a contact suspended in a WaitUntil node."""
        return [
            enrollment for enrollment in self.list_live_for_contact(contact_id, organization_id)
            if enrollment.wait_condition is not None and not enrollment.wait_condition.matched
        ]

    def live_node_ids(self, workflow_id: str) -> Set[str]:
        """Nodes currently occupied by live enrollments of a workflow."""
        db = next(get_db())
        try:
            rows = db.execute(
                select(EnrollmentModel.current_node_id)
                .where(EnrollmentModel.workflow_id == workflow_id)
                .where(EnrollmentModel.status.in_(LIVE_STATUSES))
                .distinct()
            ).scalars().all()
            return set(rows)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query occupied nodes: {str(e)}", operation="live_node_ids")
        finally:
            db.close()

    def counts_by_status(self, workflow_id: str) -> Dict[str, int]:
        """Enrollment counts for every status, zero-filled."""
        db = next(get_db())
        try:
            rows = db.execute(
                select(EnrollmentModel.status, func.count(EnrollmentModel.id))
                .where(EnrollmentModel.workflow_id == workflow_id)
                .group_by(EnrollmentModel.status)
            ).all()
            counts = {status.value: 0 for status in EnrollmentStatus}
            for status, count in rows:
                counts[status] = count
            return counts
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count enrollments: {str(e)}", operation="counts_by_status")
        finally:
            db.close()

    def drop_reasons(self, workflow_id: str) -> Dict[str, int]:
        """Human readable reasons for dropped enrollments with their counts."""
        db = next(get_db())
        try:
            rows = db.execute(
                select(EnrollmentModel.drop_reason, func.count(EnrollmentModel.id))
                .where(EnrollmentModel.workflow_id == workflow_id)
                .where(EnrollmentModel.status == EnrollmentStatus.DROPPED.value)
                .group_by(EnrollmentModel.drop_reason)
            ).all()
            return {reason or "unknown": count for reason, count in rows}
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query drop reasons: {str(e)}", operation="drop_reasons")
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @with_retry(STORAGE_RETRY)
    def find_due(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """
        Find enrollments that are due and not leased by a live worker.

        Args:
            now: Reference instant, defaults to the store clock
            limit: Maximum number of ids to return

        Returns:
            List[str]: Enrollment ids ordered by due time
        """
        now = now or self.clock()
        db = next(get_db())
        try:
            rows = db.execute(
                select(EnrollmentModel.id)
                .where(EnrollmentModel.status == EnrollmentStatus.ACTIVE.value)
                .where(EnrollmentModel.next_action_at.isnot(None))
                .where(EnrollmentModel.next_action_at <= now)
                .where(or_(
                    EnrollmentModel.lease_holder.is_(None),
                    EnrollmentModel.lease_expires_at < now
                ))
                .order_by(EnrollmentModel.next_action_at)
                .limit(limit)
            ).scalars().all()
            return list(rows)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query due enrollments: {str(e)}", operation="find_due")
        finally:
            db.close()

    def claim(self, enrollment_id: str, holder: str, now: Optional[datetime] = None) -> Optional[Enrollment]:
        """
        Atomically take the lease on a due enrollment.

        Args:
            enrollment_id: Enrollment to claim
            holder: Worker id writing the lease
            now: Reference instant, defaults to the store clock

        Returns:
            Optional[Enrollment]: The claimed snapshot, or None if another worker won
        """
        now = now or self.clock()
        db = next(get_db())
        try:
            result = db.execute(
                update(EnrollmentModel)
                .where(EnrollmentModel.id == enrollment_id)
                .where(EnrollmentModel.status == EnrollmentStatus.ACTIVE.value)
                .where(EnrollmentModel.next_action_at.isnot(None))
                .where(EnrollmentModel.next_action_at <= now)
                .where(or_(
                    EnrollmentModel.lease_holder.is_(None),
                    EnrollmentModel.lease_expires_at < now
                ))
                .values(
                    lease_holder=holder,
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                return None

            model = db.get(EnrollmentModel, enrollment_id)
            db.refresh(model)
            return _to_enrollment(model)
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to claim enrollment: {str(e)}", operation="claim", table="enrollments")
        finally:
            db.close()

    def renew_lease(self, enrollment_id: str, holder: str) -> bool:
        """Extend a held lease; False if it was lost or the enrollment left the active state."""
        now = self.clock()
        return self._execute_update(
            "renew_lease",
            update(EnrollmentModel)
            .where(EnrollmentModel.id == enrollment_id)
            .where(EnrollmentModel.lease_holder == holder)
            .where(EnrollmentModel.status == EnrollmentStatus.ACTIVE.value)
            .values(lease_expires_at=now + timedelta(seconds=self.lease_seconds))
        ) == 1

    def release(self, enrollment_id: str, holder: str) -> bool:
        """Drop a held lease without touching the pointer."""
        return self._execute_update(
            "release",
            update(EnrollmentModel)
            .where(EnrollmentModel.id == enrollment_id)
            .where(EnrollmentModel.lease_holder == holder)
            .values(lease_holder=None, lease_expires_at=None)
        ) == 1

    # ------------------------------------------------------------------
    # Pointer changes made under a lease
    # ------------------------------------------------------------------

    def advance(
        self,
        enrollment_id: str,
        holder: str,
        target_node_id: str,
        delay_until: Optional[datetime] = None,
        context_updates: Optional[Dict[str, Any]] = None,
        messages_sent: int = 0,
        keep_lease: bool = False
    ) -> Optional[EnrollmentStatus]:
        """
        Move an enrollment to ``target_node_id``, due at ``delay_until`` or now.

        Args:
            enrollment_id: Enrollment to move
            holder: Worker that must still hold the lease
            target_node_id: Node the enrollment is positioned at afterwards
            delay_until: When the target node becomes due, immediately if None
            context_updates: Variables merged into the enrollment context
            messages_sent: Number of messages sent by the completed node
            keep_lease: Renew instead of releasing the lease, for chained dispatch

        Returns:
            Optional[EnrollmentStatus]: ACTIVE or PAUSED depending on the status the
            change landed in, or None if the lease was lost or the enrollment ended
        """
        return self._update_under_lease(
            "advance",
            enrollment_id,
            holder,
            next_action_at=delay_until or self.clock(),
            changes={"current_node_id": target_node_id, "attempt": 0, "wait_condition": None},
            context_updates=context_updates,
            messages_sent=messages_sent,
            keep_lease=keep_lease,
        )

    def suspend(
        self,
        enrollment_id: str,
        holder: str,
        wait_condition: WaitCondition,
        context_updates: Optional[Dict[str, Any]] = None
    ) -> Optional[EnrollmentStatus]:
        """
        Park an enrollment at its WaitUntil node until an event or a timeout.

        The enrollment has no next_action_at unless the condition carries a
        specific date or a timeout, in which case the earlier of the two is used.
        """
        instants = [instant for instant in (wait_condition.wake_at, wait_condition.timeout_at) if instant]
        return self._update_under_lease(
            "suspend",
            enrollment_id,
            holder,
            next_action_at=min(instants) if instants else None,
            changes={"wait_condition": wait_condition.model_dump(mode="json"), "attempt": 0},
            context_updates=context_updates,
        )

    def reschedule_retry(
        self,
        enrollment_id: str,
        holder: str,
        attempt: int,
        retry_at: datetime
    ) -> Optional[EnrollmentStatus]:
        """Leave the pointer in place and make the node due again at ``retry_at``."""
        return self._update_under_lease(
            "reschedule_retry",
            enrollment_id,
            holder,
            next_action_at=retry_at,
            changes={"attempt": attempt},
        )

    def terminate(
        self,
        enrollment_id: str,
        status: EnrollmentStatus,
        reason: Optional[str] = None,
        holder: Optional[str] = None,
        context_updates: Optional[Dict[str, Any]] = None,
        messages_sent: int = 0
    ) -> bool:
        """
        Move a live enrollment to a terminal status, clearing its schedule and lease.

        Args:
            enrollment_id: Enrollment to finish
            status: completed, dropped or opted_out
            reason: Human readable reason, recorded for dropped enrollments
            holder: Worker that must still hold the lease; None for out-of-band calls
            context_updates: Variables merged into the context before finishing
            messages_sent: Number of messages sent by the final node

        Returns:
            bool: False if the enrollment had already ended or the lease was lost
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        for _ in range(CONTEXT_WRITE_ATTEMPTS):
            now = self.clock()
            db = next(get_db())
            try:
                model = db.get(EnrollmentModel, enrollment_id)
                if model is None:
                    raise EnrollmentNotFoundError(enrollment_id)
                read_revision = model.context_revision

                values = {
                    "status": status.value,
                    "next_action_at": None,
                    "resume_at": None,
                    "lease_holder": None,
                    "lease_expires_at": None,
                    "wait_condition": None,
                    "drop_reason": reason,
                    "completed_at": now,
                    "updated_at": now,
                }
                if messages_sent:
                    values["messages_sent"] = (model.messages_sent or 0) + messages_sent

                query = (
                    update(EnrollmentModel)
                    .where(EnrollmentModel.id == enrollment_id)
                    .where(EnrollmentModel.status.in_(LIVE_STATUSES))
                )
                if holder is not None:
                    query = query.where(EnrollmentModel.lease_holder == holder)
                query, context_values = self._guard_context(query, model, context_updates)

                result = db.execute(query.values(**values, **context_values).execution_options(synchronize_session=False))
                db.commit()

                if result.rowcount == 1:
                    logger.info(f"Enrollment {enrollment_id} finished as {status.value}" + (f": {reason}" if reason else ""))
                    return True
                if not context_values or not self._context_moved(db, enrollment_id, read_revision):
                    return False
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to terminate enrollment: {str(e)}", operation="terminate", table="enrollments")
            finally:
                db.close()

        raise self._context_contention("terminate", enrollment_id)

    # ------------------------------------------------------------------
    # Out-of-band changes
    # ------------------------------------------------------------------

    def drop(self, enrollment_id: str, reason: str = "manually dropped") -> Enrollment:
        """
        Drop a live enrollment on operator request.

        Raises:
            EnrollmentNotFoundError: If the enrollment does not exist
            EnrollmentError: If the enrollment already reached a terminal status
        """
        if not self.terminate(enrollment_id, EnrollmentStatus.DROPPED, reason=reason):
            current = self.get(enrollment_id)
            raise EnrollmentError(
                f"Enrollment is already {current.status.value}",
                enrollment_id=enrollment_id
            )
        return self.get(enrollment_id)

    def pause_workflow(self, workflow_id: str) -> int:
        """Flip every active enrollment of a workflow to paused, saving its due time."""
        now = self.clock()
        count = self._execute_update(
            "pause_workflow",
            update(EnrollmentModel)
            .where(EnrollmentModel.workflow_id == workflow_id)
            .where(EnrollmentModel.status == EnrollmentStatus.ACTIVE.value)
            # MySQL applies SET clauses left to right
            .ordered_values(
                (EnrollmentModel.resume_at, EnrollmentModel.next_action_at),
                (EnrollmentModel.next_action_at, None),
                (EnrollmentModel.status, EnrollmentStatus.PAUSED.value),
                (EnrollmentModel.updated_at, now),
            )
        )
        logger.info(f"Paused {count} enrollments of workflow {workflow_id}")
        return count

    def resume_workflow(self, workflow_id: str) -> int:
        """Restore every paused enrollment of a workflow to its saved due time."""
        now = self.clock()
        count = self._execute_update(
            "resume_workflow",
            update(EnrollmentModel)
            .where(EnrollmentModel.workflow_id == workflow_id)
            .where(EnrollmentModel.status == EnrollmentStatus.PAUSED.value)
            .ordered_values(
                (EnrollmentModel.next_action_at, EnrollmentModel.resume_at),
                (EnrollmentModel.resume_at, None),
                (EnrollmentModel.status, EnrollmentStatus.ACTIVE.value),
                (EnrollmentModel.updated_at, now),
            )
        )
        logger.info(f"Resumed {count} enrollments of workflow {workflow_id}")
        return count

    def drop_workflow_enrollments(self, workflow_id: str, reason: str) -> int:
        """Drop every live enrollment of a workflow."""
        now = self.clock()
        return self._execute_update(
            "drop_workflow_enrollments",
            update(EnrollmentModel)
            .where(EnrollmentModel.workflow_id == workflow_id)
            .where(EnrollmentModel.status.in_(LIVE_STATUSES))
            .values(
                status=EnrollmentStatus.DROPPED.value,
                drop_reason=reason,
                next_action_at=None,
                resume_at=None,
                lease_holder=None,
                lease_expires_at=None,
                wait_condition=None,
                completed_at=now,
                updated_at=now,
            )
        )

    def terminate_for_contact(
        self,
        contact_id: str,
        workflow_ids: Sequence[str],
        status: EnrollmentStatus,
        reason: Optional[str] = None
    ) -> List[str]:
        """
        Terminate every live enrollment of a contact in the given workflows.

        Returns:
            List[str]: Ids of the enrollments that were terminated
        """
        if not workflow_ids:
            return []

        db = next(get_db())
        try:
            ids = db.execute(
                select(EnrollmentModel.id)
                .where(EnrollmentModel.contact_id == contact_id)
                .where(EnrollmentModel.workflow_id.in_(list(workflow_ids)))
                .where(EnrollmentModel.status.in_(LIVE_STATUSES))
            ).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query contact enrollments: {str(e)}", operation="terminate_for_contact")
        finally:
            db.close()

        terminated = [
            enrollment_id for enrollment_id in ids
            if self.terminate(enrollment_id, status, reason=reason)
        ]
        if terminated:
            logger.info(f"Contact {contact_id}: {len(terminated)} enrollments moved to {status.value}")
        return terminated

    def wake(self, enrollment_id: str, now: Optional[datetime] = None) -> bool:
        """
        Mark the awaited event of a suspended enrollment as arrived and make it due.

        A paused enrollment keeps its pause and becomes due on resume.

        Returns:
            bool: False if the enrollment is no longer waiting
        """
        now = now or self.clock()
        db = next(get_db())
        try:
            model = db.get(EnrollmentModel, enrollment_id)
            if model is None:
                raise EnrollmentNotFoundError(enrollment_id)
            if model.status not in LIVE_STATUSES or not model.wait_condition:
                return False

            condition = WaitCondition(**model.wait_condition)
            if condition.matched:
                return False
            condition.matched = True
            condition.matched_at = now

            values: Dict[str, Any] = {"wait_condition": condition.model_dump(mode="json"), "updated_at": now}
            if model.status == EnrollmentStatus.ACTIVE.value:
                values["next_action_at"] = now
            else:
                values["resume_at"] = now

            result = db.execute(
                update(EnrollmentModel)
                .where(EnrollmentModel.id == enrollment_id)
                .where(EnrollmentModel.status == model.status)
                .where(EnrollmentModel.current_node_id == model.current_node_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount == 1:
                logger.info(f"Woke enrollment {enrollment_id} waiting on {condition.event_type}")
                return True
            return False
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to wake enrollment: {str(e)}", operation="wake", table="enrollments")
        finally:
            db.close()

    def merge_context(self, enrollment_id: str, updates: Dict[str, Any]) -> bool:
        """Merge variables into the context of a live enrollment.

        The write only lands on the context revision it was computed from, so
        merges racing on the same enrollment re-read and retry instead of
        overwriting each other.
        """
        for _ in range(CONTEXT_WRITE_ATTEMPTS):
            db = next(get_db())
            try:
                model = db.get(EnrollmentModel, enrollment_id)
                if model is None:
                    raise EnrollmentNotFoundError(enrollment_id)
                if model.status not in LIVE_STATUSES:
                    return False
                read_revision = model.context_revision

                query, values = self._guard_context(
                    update(EnrollmentModel)
                    .where(EnrollmentModel.id == enrollment_id)
                    .where(EnrollmentModel.status.in_(LIVE_STATUSES)),
                    model,
                    updates
                )
                result = db.execute(
                    query.values(**values, updated_at=self.clock()).execution_options(synchronize_session=False)
                )
                db.commit()

                if result.rowcount == 1:
                    return True
                if not self._context_moved(db, enrollment_id, read_revision):
                    return False
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to update context: {str(e)}", operation="merge_context", table="enrollments")
            finally:
                db.close()

        raise self._context_contention("merge_context", enrollment_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _guard_context(query, model: EnrollmentModel, context_updates: Optional[Dict[str, Any]]):
        """Pin ``query`` to the context revision read in ``model`` and return the merged values."""
        if not context_updates:
            return query, {}
        revision = model.context_revision or 0
        query = query.where(EnrollmentModel.context_revision == revision)
        values = {
            "context": {**(model.context or {}), **context_updates},
            "context_revision": revision + 1,
        }
        return query, values

    @staticmethod
    def _context_moved(db, enrollment_id: str, revision: Optional[int]) -> bool:
        current = db.execute(
            select(EnrollmentModel.context_revision).where(EnrollmentModel.id == enrollment_id)
        ).scalar_one_or_none()
        return current is not None and current != (revision or 0)

    @staticmethod
    def _context_contention(operation: str, enrollment_id: str) -> StorageError:
        logger.warning(f"Context of enrollment {enrollment_id} kept changing during {operation}")
        return StorageError(
            f"Context of enrollment {enrollment_id} changed concurrently {CONTEXT_WRITE_ATTEMPTS} times",
            operation=operation,
            table="enrollments"
        )

    def _execute_update(self, operation: str, statement) -> int:
        db = next(get_db())
        try:
            result = db.execute(statement.execution_options(synchronize_session=False))
            db.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}", operation=operation, table="enrollments")
        finally:
            db.close()

    def _update_under_lease(
        self,
        operation: str,
        enrollment_id: str,
        holder: str,
        next_action_at: Optional[datetime],
        changes: Dict[str, Any],
        context_updates: Optional[Dict[str, Any]] = None,
        messages_sent: int = 0,
        keep_lease: bool = False
    ) -> Optional[EnrollmentStatus]:
        """Apply a pointer change if ``holder`` still owns the lease.

        A workflow paused while the node was in flight keeps its pause: the new
        due time goes to resume_at and the lease is released.
        """
        for _ in range(CONTEXT_WRITE_ATTEMPTS):
            now = self.clock()
            db = next(get_db())
            try:
                model = db.get(EnrollmentModel, enrollment_id)
                if model is None:
                    raise EnrollmentNotFoundError(enrollment_id)
                if model.lease_holder != holder or model.status not in LIVE_STATUSES:
                    return None
                read_revision = model.context_revision

                values = dict(changes)
                values["updated_at"] = now
                if messages_sent:
                    values["messages_sent"] = (model.messages_sent or 0) + messages_sent

                base, context_values = self._guard_context(
                    update(EnrollmentModel)
                    .where(EnrollmentModel.id == enrollment_id)
                    .where(EnrollmentModel.lease_holder == holder),
                    model,
                    context_updates
                )
                values.update(context_values)

                if keep_lease:
                    lease = {"lease_expires_at": now + timedelta(seconds=self.lease_seconds)}
                else:
                    lease = {"lease_holder": None, "lease_expires_at": None}

                result = db.execute(
                    base.where(EnrollmentModel.status == EnrollmentStatus.ACTIVE.value)
                    .values(**values, **lease, next_action_at=next_action_at)
                    .execution_options(synchronize_session=False)
                )
                landed = EnrollmentStatus.ACTIVE
                if result.rowcount != 1:
                    result = db.execute(
                        base.where(EnrollmentModel.status == EnrollmentStatus.PAUSED.value)
                        .values(**values, lease_holder=None, lease_expires_at=None, resume_at=next_action_at)
                        .execution_options(synchronize_session=False)
                    )
                    landed = EnrollmentStatus.PAUSED
                db.commit()

                if result.rowcount == 1:
                    return landed
                if not context_values or not self._context_moved(db, enrollment_id, read_revision):
                    return None
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}", operation=operation, table="enrollments")
            finally:
                db.close()

        raise self._context_contention(operation, enrollment_id)
