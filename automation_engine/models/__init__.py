"""Data models for the automation engine."""

from .core import (
    WorkflowStatus,
    NodeType,
    EnrollmentStatus,
    LogOutcome,
    Severity,
    TriggerType,
    NodeDefinition,
    EdgeDefinition,
    WorkflowSettings,
    WorkflowDefinition,
    Workflow,
    Enrollment,
    EnrollmentResult,
    WaitCondition,
    ValidationIssue,
    ValidationResult,
    ExecutionLogEntry,
    ContactEvent,
)
from .graph import WorkflowGraph
from .nodes import CONFIG_MODELS, parse_node_config

__all__ = [
    "WorkflowStatus",
    "NodeType",
    "EnrollmentStatus",
    "LogOutcome",
    "Severity",
    "TriggerType",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowSettings",
    "WorkflowDefinition",
    "Workflow",
    "Enrollment",
    "EnrollmentResult",
    "WaitCondition",
    "ValidationIssue",
    "ValidationResult",
    "ExecutionLogEntry",
    "ContactEvent",
    "WorkflowGraph",
    "CONFIG_MODELS",
    "parse_node_config",
]
