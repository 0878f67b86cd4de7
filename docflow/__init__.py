"""
docflow - step-workflow engine for AI-driven project documentation

An external AI collaborator drives a six-phase run over MCP tools; docflow
sequences the phases, hands out one file at a time during the batch phase,
and assembles the returned documents into a docs tree inside the project.

Core components:
- WorkflowStore: durable keyed workflow records (SQLite or in-memory)
- StepGate: phase-ordering checks and next-step hints
- TaskQueueManager: single-outstanding-task batch discipline
- WorkflowController: façade used by the MCP server and CLI
"""

__version__ = "0.1.0"

from docflow.core.config import DocflowConfig, load_config
from docflow.core.errors import DocflowError
from docflow.core.models import FileRef, Phase, Task, TaskQueue, TaskStatus, Workflow
from docflow.core.store import InMemoryWorkflowStore, SqliteWorkflowStore, WorkflowStore
from docflow.workflow.controller import WorkflowController
from docflow.workflow.factory import create_controller
from docflow.workflow.gate import StepGate
from docflow.workflow.task_queue import TaskQueueManager

__all__ = [
    "DocflowConfig",
    "load_config",
    "DocflowError",
    "FileRef",
    "Phase",
    "Task",
    "TaskQueue",
    "TaskStatus",
    "Workflow",
    "InMemoryWorkflowStore",
    "SqliteWorkflowStore",
    "WorkflowStore",
    "WorkflowController",
    "create_controller",
    "StepGate",
    "TaskQueueManager",
]
