"""Core automation engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    NodeExecutionError,
    TransientExecutionError,
    PermanentExecutionError,
    ConfigurationError,
    StorageError,
    EnrollmentError,
    WorkflowNotFoundError,
    EnrollmentNotFoundError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "NodeExecutionError",
    "TransientExecutionError",
    "PermanentExecutionError",
    "ConfigurationError",
    "StorageError",
    "EnrollmentError",
    "WorkflowNotFoundError",
    "EnrollmentNotFoundError",
    "setup_logging",
    "get_logger",
]
