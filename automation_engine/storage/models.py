"""SQLAlchemy database models for the automation engine."""

from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, Text, JSON, Integer, Float, ForeignKey, Index, text
)
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Database model for workflows."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False)  # draft, active, paused, archived
    version = Column(Integer, nullable=False, default=0)
    definition = Column(JSON, nullable=False)  # Stores the complete workflow definition
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    published_at = Column(DateTime)

    enrollments = relationship("EnrollmentModel", back_populates="workflow")


class EnrollmentModel(Base):
    """Database model for a contact's journey through a workflow."""
    __tablename__ = "enrollments"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    organization_id = Column(String, nullable=False)
    contact_id = Column(String, nullable=False)
    status = Column(String, nullable=False)  # active, paused, completed, dropped, opted_out
    current_node_id = Column(String, nullable=False)
    next_action_at = Column(DateTime)
    context = Column(JSON, nullable=False, default=dict)
    context_revision = Column(Integer, nullable=False, default=0)  # bumped on every context write
    lease_holder = Column(String)
    lease_expires_at = Column(DateTime)
    attempt = Column(Integer, nullable=False, default=0)
    wait_condition = Column(JSON)
    resume_at = Column(DateTime)  # next_action_at saved while the workflow is paused
    drop_reason = Column(Text)
    messages_sent = Column(Integer, nullable=False, default=0)
    source = Column(String, nullable=False, default="manual")
    enrolled_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime)

    workflow = relationship("WorkflowModel", back_populates="enrollments")

    __table_args__ = (
        # At most one live enrollment per contact and workflow
        Index(
            "uq_enrollments_live_contact",
            "workflow_id", "contact_id",
            unique=True,
            sqlite_where=text("status IN ('active', 'paused')"),
            postgresql_where=text("status IN ('active', 'paused')"),
        ),
        Index("idx_enrollments_due", "status", "next_action_at"),
        Index("idx_enrollments_contact", "contact_id", "status"),
    )


class ExecutionLogModel(Base):
    """Database model for append-only node execution records."""
    __tablename__ = "execution_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    enrollment_id = Column(String, ForeignKey("enrollments.id"), nullable=False, index=True)
    workflow_id = Column(String, nullable=False)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow)
    outcome = Column(String, nullable=False)  # success, retried, failed
    attempt = Column(Integer, nullable=False, default=0)
    handle = Column(String)
    detail = Column(Text)

    __table_args__ = (
        Index("idx_execution_log_workflow_node", "workflow_id", "node_id", "outcome"),
    )


class ConversionModel(Base):
    """Database model for goal conversions."""
    __tablename__ = "conversions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    enrollment_id = Column(String, ForeignKey("enrollments.id"), nullable=False)
    workflow_id = Column(String, nullable=False, index=True)
    contact_id = Column(String, nullable=False)
    node_id = Column(String, nullable=False)
    goal_name = Column(String, nullable=False)
    goal_type = Column(String, nullable=False)
    revenue_amount = Column(Float)
    currency = Column(String)
    achieved_at = Column(DateTime, default=datetime.utcnow)
