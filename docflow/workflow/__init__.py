"""Phase sequencing, batch task management and phase executors."""

from docflow.workflow.controller import WorkflowController, normalize_project_path
from docflow.workflow.factory import create_controller, create_store
from docflow.workflow.gate import NextStep, StepGate
from docflow.workflow.task_queue import NextTask, NextTaskKind, TaskQueueManager

__all__ = [
    "WorkflowController",
    "normalize_project_path",
    "create_controller",
    "create_store",
    "NextStep",
    "StepGate",
    "NextTask",
    "NextTaskKind",
    "TaskQueueManager",
]
