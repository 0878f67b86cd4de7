"""Core data model, storage, configuration and audit trail."""

from docflow.core.config import DocflowConfig, load_config
from docflow.core.errors import (
    AlreadyCompletedError,
    AlreadyExistsError,
    AlreadyInitializedError,
    BlockedError,
    ConflictError,
    DocflowError,
    NotFoundError,
    OutOfOrderError,
    PhaseFailedError,
    UnknownTaskError,
    ValidationError,
)
from docflow.core.models import FileRef, Phase, Task, TaskQueue, TaskStatus, Workflow
from docflow.core.store import InMemoryWorkflowStore, SqliteWorkflowStore, WorkflowStore

__all__ = [
    "DocflowConfig",
    "load_config",
    "AlreadyCompletedError",
    "AlreadyExistsError",
    "AlreadyInitializedError",
    "BlockedError",
    "ConflictError",
    "DocflowError",
    "NotFoundError",
    "OutOfOrderError",
    "PhaseFailedError",
    "UnknownTaskError",
    "ValidationError",
    "FileRef",
    "Phase",
    "Task",
    "TaskQueue",
    "TaskStatus",
    "Workflow",
    "InMemoryWorkflowStore",
    "SqliteWorkflowStore",
    "WorkflowStore",
]
