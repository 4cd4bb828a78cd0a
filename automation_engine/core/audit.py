"""Append-only execution log and the analytics read model built on it."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import ExecutionLogEntry, LogOutcome, NodeType
from ..storage.database import get_db
from ..storage.models import ConversionModel, ExecutionLogModel
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)

# Longest detail stored per log entry
MAX_DETAIL_LENGTH = 1000


class AuditRecorder:
    """Records one entry per node execution attempt and answers analytics queries.

    Entries are only ever inserted. A failure to write an entry is logged and
    re-raised as StorageError so the caller decides whether it is fatal.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or datetime.utcnow

    def record(
        self,
        enrollment_id: str,
        workflow_id: str,
        node_id: str,
        node_type: NodeType,
        outcome: LogOutcome,
        attempt: int = 0,
        handle: Optional[str] = None,
        detail: Optional[str] = None
    ) -> None:
        """
        Append an execution log entry.

        Args:
            enrollment_id: Enrollment that executed the node
            workflow_id: Owning workflow
            node_id: Executed node
            node_type: Executed node variant
            outcome: success, retried or failed
            attempt: Zero based attempt number at this node
            handle: Edge handle taken on success
            detail: Human readable detail, truncated if long

        Raises:
            StorageError: If the entry cannot be written
        """
        if detail and len(detail) > MAX_DETAIL_LENGTH:
            detail = detail[:MAX_DETAIL_LENGTH - 3] + "..."

        db = next(get_db())
        try:
            db.add(ExecutionLogModel(
                enrollment_id=enrollment_id,
                workflow_id=workflow_id,
                node_id=node_id,
                node_type=node_type.value if isinstance(node_type, NodeType) else str(node_type),
                timestamp=self.clock(),
                outcome=outcome.value,
                attempt=attempt,
                handle=handle,
                detail=detail,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record execution log entry for {enrollment_id}: {str(e)}")
            raise StorageError(f"Failed to record execution log entry: {str(e)}", operation="record", table="execution_log")
        finally:
            db.close()

    def record_conversion(
        self,
        enrollment_id: str,
        workflow_id: str,
        contact_id: str,
        node_id: str,
        conversion: Dict[str, Any]
    ) -> None:
        """Store a goal conversion reported by a Goal node."""
        db = next(get_db())
        try:
            db.add(ConversionModel(
                enrollment_id=enrollment_id,
                workflow_id=workflow_id,
                contact_id=contact_id,
                node_id=node_id,
                goal_name=conversion["goal_name"],
                goal_type=conversion["goal_type"],
                revenue_amount=conversion.get("revenue_amount"),
                currency=conversion.get("currency"),
                achieved_at=self.clock(),
            ))
            db.commit()
            logger.info(f"Recorded conversion '{conversion['goal_name']}' for enrollment {enrollment_id}")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to record conversion: {str(e)}", operation="record_conversion", table="conversions")
        finally:
            db.close()

    def get_enrollment_log(self, enrollment_id: str) -> List[ExecutionLogEntry]:
        """Execution log of one enrollment in chronological order."""
        db = next(get_db())
        try:
            rows = db.execute(
                select(ExecutionLogModel)
                .where(ExecutionLogModel.enrollment_id == enrollment_id)
                .order_by(ExecutionLogModel.timestamp, ExecutionLogModel.id)
            ).scalars().all()
            return [
                ExecutionLogEntry(
                    id=row.id,
                    enrollment_id=row.enrollment_id,
                    workflow_id=row.workflow_id,
                    node_id=row.node_id,
                    node_type=row.node_type,
                    timestamp=row.timestamp,
                    outcome=LogOutcome(row.outcome),
                    attempt=row.attempt or 0,
                    handle=row.handle,
                    detail=row.detail,
                )
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load execution log: {str(e)}", operation="get_enrollment_log")
        finally:
            db.close()

    def node_stats(self, workflow_id: str) -> Dict[str, Dict[str, Any]]:
        """Per-node success/retried/failed counts and failure rate."""
        db = next(get_db())
        try:
            rows = db.execute(
                select(
                    ExecutionLogModel.node_id,
                    ExecutionLogModel.node_type,
                    ExecutionLogModel.outcome,
                    func.count(ExecutionLogModel.id)
                )
                .where(ExecutionLogModel.workflow_id == workflow_id)
                .group_by(ExecutionLogModel.node_id, ExecutionLogModel.node_type, ExecutionLogModel.outcome)
            ).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to compute node statistics: {str(e)}", operation="node_stats")
        finally:
            db.close()

        stats: Dict[str, Dict[str, Any]] = {}
        for node_id, node_type, outcome, count in rows:
            entry = stats.setdefault(node_id, {
                "node_type": node_type,
                LogOutcome.SUCCESS.value: 0,
                LogOutcome.RETRIED.value: 0,
                LogOutcome.FAILED.value: 0,
            })
            entry[outcome] = entry.get(outcome, 0) + count

        for entry in stats.values():
            finished = entry[LogOutcome.SUCCESS.value] + entry[LogOutcome.FAILED.value]
            entry["failure_rate"] = round(entry[LogOutcome.FAILED.value] / finished, 4) if finished else 0.0
        return stats

    def branch_counts(self, workflow_id: str) -> Dict[str, Dict[str, int]]:
        """How many successful executions left each branching node through each handle."""
        db = next(get_db())
        try:
            rows = db.execute(
                select(ExecutionLogModel.node_id, ExecutionLogModel.handle, func.count(ExecutionLogModel.id))
                .where(ExecutionLogModel.workflow_id == workflow_id)
                .where(ExecutionLogModel.outcome == LogOutcome.SUCCESS.value)
                .where(ExecutionLogModel.node_type.in_([NodeType.SPLIT.value, NodeType.CONDITION.value]))
                .group_by(ExecutionLogModel.node_id, ExecutionLogModel.handle)
            ).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to compute branch counts: {str(e)}", operation="branch_counts")
        finally:
            db.close()

        counts: Dict[str, Dict[str, int]] = {}
        for node_id, handle, count in rows:
            counts.setdefault(node_id, {})[handle or "default"] = count
        return counts

    def conversion_summary(self, workflow_id: str) -> Dict[str, Any]:
        """Conversion totals per goal and revenue per currency."""
        db = next(get_db())
        try:
            rows = db.execute(
                select(
                    ConversionModel.goal_name,
                    ConversionModel.currency,
                    func.count(ConversionModel.id),
                    func.sum(ConversionModel.revenue_amount)
                )
                .where(ConversionModel.workflow_id == workflow_id)
                .group_by(ConversionModel.goal_name, ConversionModel.currency)
            ).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to compute conversions: {str(e)}", operation="conversion_summary")
        finally:
            db.close()

        goals: Dict[str, int] = {}
        revenue: Dict[str, float] = {}
        for goal_name, currency, count, amount in rows:
            goals[goal_name] = goals.get(goal_name, 0) + count
            if amount:
                key = currency or "USD"
                revenue[key] = round(revenue.get(key, 0.0) + float(amount), 2)

        return {
            "total": sum(goals.values()),
            "by_goal": goals,
            "revenue": revenue,
        }

    def split_test_results(self, workflow_id: str) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """
        Per-branch results of every split node.

        An enrollment counts as entered for the branch its split execution
        took, and as converted if it reached any goal of the workflow.

        Returns:
            Dict mapping split node id to branch id to ``entered``,
            ``converted`` and ``conversion_rate``
        """
        db = next(get_db())
        try:
            assignments = db.execute(
                select(ExecutionLogModel.node_id, ExecutionLogModel.handle, ExecutionLogModel.enrollment_id)
                .where(ExecutionLogModel.workflow_id == workflow_id)
                .where(ExecutionLogModel.outcome == LogOutcome.SUCCESS.value)
                .where(ExecutionLogModel.node_type == NodeType.SPLIT.value)
                .distinct()
            ).all()
            converted = set(db.execute(
                select(ConversionModel.enrollment_id)
                .where(ConversionModel.workflow_id == workflow_id)
                .distinct()
            ).scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to compute split test results: {str(e)}", operation="split_test_results")
        finally:
            db.close()

        results: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for node_id, handle, enrollment_id in assignments:
            branch = results.setdefault(node_id, {}).setdefault(handle or "default", {
                "entered": 0,
                "converted": 0,
            })
            branch["entered"] += 1
            if enrollment_id in converted:
                branch["converted"] += 1

        for branches in results.values():
            for branch in branches.values():
                branch["conversion_rate"] = round(branch["converted"] / branch["entered"], 4)
        return results
