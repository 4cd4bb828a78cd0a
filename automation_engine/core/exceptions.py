"""Custom exceptions for the automation engine with detailed error information."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    SECURITY = "security"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all automation engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow graph fails validation and cannot be published."""

    def __init__(
        self,
        message: str,
        issues: Optional[List[Any]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.issues = issues or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if issues:
            self.add_details(issues=[
                issue.model_dump(mode="json") if hasattr(issue, "model_dump") else issue
                for issue in issues
            ])


class NodeExecutionError(WorkflowEngineError):
    """Base class for failures raised by node executors."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        enrollment_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, **kwargs)
        if node_id:
            self.add_context(node_id=node_id)
        if enrollment_id:
            self.add_context(enrollment_id=enrollment_id)


class TransientExecutionError(NodeExecutionError):
    """Network or timeout failure on an external call; retried with backoff."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        super().__init__(message, recoverable=True, **kwargs)


class PermanentExecutionError(NodeExecutionError):
    """Failure that retrying cannot fix, e.g. an invalid recipient."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, recoverable=False, **kwargs)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing.

    At execution time this means a node config slipped past validation, which
    is always fatal for the enrollment and raised as an operator alert.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        node_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)
        if node_id:
            self.add_context(node_id=node_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow does not exist."""

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow '{workflow_id}' not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.add_context(workflow_id=workflow_id)


class WorkflowStateError(WorkflowEngineError):
    """Raised when a lifecycle operation is not allowed in the workflow's status."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, status: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if status:
            self.add_context(status=status)


class EnrollmentNotFoundError(WorkflowEngineError):
    """Raised when an enrollment does not exist."""

    def __init__(self, enrollment_id: str, **kwargs):
        super().__init__(
            f"Enrollment '{enrollment_id}' not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.add_context(enrollment_id=enrollment_id)


class EnrollmentError(WorkflowEngineError):
    """Raised when an enrollment operation is rejected."""

    def __init__(self, message: str, enrollment_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        if enrollment_id:
            self.add_context(enrollment_id=enrollment_id)


class LeaseLostError(WorkflowEngineError):
    """Raised when a worker no longer holds the lease on an enrollment it dispatched."""

    def __init__(self, enrollment_id: str, holder: Optional[str] = None, **kwargs):
        super().__init__(
            f"Lease on enrollment '{enrollment_id}' is no longer held",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        self.add_context(enrollment_id=enrollment_id)
        if holder:
            self.add_context(holder=holder)


class SchedulerError(WorkflowEngineError):
    """Raised when the execution scheduler cannot start or run a sweep."""

    def __init__(self, message: str, worker_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.RESOURCE,
            **kwargs
        )
        if worker_id:
            self.add_context(worker_id=worker_id)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
