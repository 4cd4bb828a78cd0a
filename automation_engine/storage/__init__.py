"""Database models and storage layer."""

from .database import Base, get_db, create_tables, drop_tables, init_database
from .models import WorkflowModel, EnrollmentModel, ExecutionLogModel, ConversionModel

__all__ = [
    "Base",
    "get_db",
    "create_tables",
    "drop_tables",
    "init_database",
    "WorkflowModel",
    "EnrollmentModel",
    "ExecutionLogModel",
    "ConversionModel",
]
