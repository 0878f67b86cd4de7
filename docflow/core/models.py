"""
Data model for docflow workflows.

A workflow is one documentation run for a project path. It moves through six
ordered phases; the third phase (file documentation) is a batch of tasks, one
per source file, held inline on the workflow record.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


class Phase(IntEnum):
    """The six ordered phases of a documentation run."""

    PROJECT_SCAN = 1
    LANGUAGE_DETECTION = 2
    FILE_DOCUMENTATION = 3
    MODULE_INTEGRATION = 4
    OVERVIEW_GENERATION = 5
    CONNECT_DOCS = 6

    @property
    def step_name(self) -> str:
        return self.name.lower()


CREATED = 0
BATCH_PHASE = Phase.FILE_DOCUMENTATION
FINAL_PHASE = Phase.CONNECT_DOCS

# Tool that starts each phase on the MCP surface
PHASE_TOOLS: Dict[int, str] = {
    Phase.PROJECT_SCAN: "step1_start",
    Phase.LANGUAGE_DETECTION: "step2_start",
    Phase.FILE_DOCUMENTATION: "step3_start",
    Phase.MODULE_INTEGRATION: "step4_module_integration",
    Phase.OVERVIEW_GENERATION: "step5_overview_generation",
    Phase.CONNECT_DOCS: "step6_connect_docs",
}


class TaskStatus(str, Enum):
    """States a batch task can be in."""

    PENDING = "pending"
    """Waiting to be handed out"""

    DISPATCHED = "dispatched"
    """Handed to the driver, awaiting a result"""

    COMPLETED = "completed"
    """Result stored; terminal"""

    FAILED = "failed"
    """Driver reported failure; may be re-dispatched within the retry budget"""


def now_iso() -> str:
    return datetime.now().isoformat()


def new_workflow_id(project_path: str) -> str:
    """Generate a workflow ID like ``wf_myproject_20260101_120000_a1b2c3``."""
    name = project_path.rstrip("/").split("/")[-1] or "root"
    return f"wf_{name}_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


@dataclass
class FileRef:
    """Identifies the source file a task concerns."""

    path: str
    """Path relative to the project root, forward slashes"""

    size: Optional[int] = None
    sha256: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRef":
        return cls(path=data["path"], size=data.get("size"), sha256=data.get("sha256"))

    @classmethod
    def coerce(cls, value: Any) -> "FileRef":
        """Accept a bare path string or a dict with at least ``path``."""
        if isinstance(value, FileRef):
            return value
        if isinstance(value, str):
            return cls(path=value)
        if isinstance(value, dict) and isinstance(value.get("path"), str):
            return cls.from_dict(value)
        raise TypeError(f"Cannot build a file reference from {value!r}")


@dataclass
class Task:
    """One file's documentation unit of work within the batch phase."""

    task_id: str
    workflow_id: str
    file_ref: FileRef
    index: int = 0
    """Position in enumeration order"""

    status: TaskStatus = TaskStatus.PENDING
    dispatched_at: Optional[str] = None
    completed_at: Optional[str] = None
    result: Optional[str] = None
    """Generated document content (only when completed)"""

    dispatch_count: int = 0
    failures: int = 0
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def summary(self) -> Dict[str, Any]:
        """Task view handed to the driver (no result body)."""
        return {
            "task_id": self.task_id,
            "file_name": self.file_ref.path.split("/")[-1],
            "file": self.file_ref.to_dict(),
            "index": self.index,
            "status": self.status.value,
            "dispatched_at": self.dispatched_at,
            "dispatch_count": self.dispatch_count,
            "failures": self.failures,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            task_id=data["task_id"],
            workflow_id=data["workflow_id"],
            file_ref=FileRef.from_dict(data["file_ref"]),
            index=data.get("index", 0),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            dispatched_at=data.get("dispatched_at"),
            completed_at=data.get("completed_at"),
            result=data.get("result"),
            dispatch_count=data.get("dispatch_count", 0),
            failures=data.get("failures", 0),
            last_error=data.get("last_error"),
        )


@dataclass
class TaskQueue:
    """Ordered tasks for one workflow's batch phase. Never reordered."""

    tasks: List[Task] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)

    def find(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def outstanding(self) -> Optional[Task]:
        """The dispatched task, if any (at most one exists)."""
        for task in self.tasks:
            if task.status == TaskStatus.DISPATCHED:
                return task
        return None

    def count(self, status: TaskStatus) -> int:
        return sum(1 for t in self.tasks if t.status == status)

    def all_completed(self) -> bool:
        return all(t.status == TaskStatus.COMPLETED for t in self.tasks)

    def progress(self) -> Dict[str, Any]:
        total = len(self.tasks)
        completed = self.count(TaskStatus.COMPLETED)
        return {
            "total": total,
            "completed": completed,
            "pending": self.count(TaskStatus.PENDING),
            "dispatched": self.count(TaskStatus.DISPATCHED),
            "failed": self.count(TaskStatus.FAILED),
            "percentage": round(completed / total * 100) if total else 100,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created_at": self.created_at,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskQueue":
        return cls(
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
            created_at=data.get("created_at", ""),
        )


@dataclass
class Workflow:
    """
    State of one documentation run.

    ``phase`` is the last committed phase (0 = created, nothing committed).
    ``phase_results`` holds one entry per committed phase, in commit order.
    """

    id: str
    project_path: str
    phase: int = CREATED
    phase_results: Dict[int, Any] = field(default_factory=dict)
    task_queue: Optional[TaskQueue] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    superseded_by: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.phase >= FINAL_PHASE

    @property
    def is_active(self) -> bool:
        return self.superseded_by is None and not self.is_done

    def touch(self) -> None:
        self.updated_at = now_iso()

    def summary(self) -> Dict[str, Any]:
        """Compact listing view."""
        return {
            "workflow_id": self.id,
            "project_path": self.project_path,
            "phase": self.phase,
            "done": self.is_done,
            "superseded_by": self.superseded_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_path": self.project_path,
            "phase": self.phase,
            # JSON object keys are strings; order is preserved
            "phase_results": {str(int(k)): v for k, v in self.phase_results.items()},
            "task_queue": self.task_queue.to_dict() if self.task_queue else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "superseded_by": self.superseded_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        queue = data.get("task_queue")
        return cls(
            id=data["id"],
            project_path=data["project_path"],
            phase=data.get("phase", CREATED),
            phase_results={int(k): v for k, v in data.get("phase_results", {}).items()},
            task_queue=TaskQueue.from_dict(queue) if queue else None,
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            superseded_by=data.get("superseded_by"),
        )
