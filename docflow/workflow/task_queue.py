"""
TaskQueueManager - single-outstanding-task discipline for the batch phase.

The queue lives inline on the workflow record, so every operation here is one
``store.update`` call: the decision and the state change it implies are made
under the same lock / transaction.

Dispatch order (``next_task``):

1. A dispatched task that is not stale is returned again unchanged
2. A stale dispatched task is re-dispatched (reissue)
3. Otherwise the first task in enumeration order that is pending, or failed
   with ``failures <= max_retries``, is dispatched
4. Nothing left and everything completed → ALL_COMPLETED
5. Nothing left but failed tasks past the retry budget → BLOCKED
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Optional

from docflow.core.audit import log_audit
from docflow.core.errors import (
    AlreadyCompletedError,
    AlreadyInitializedError,
    OutOfOrderError,
    UnknownTaskError,
    ValidationError,
)
from docflow.core.models import FileRef, Task, TaskQueue, TaskStatus, Workflow


class NextTaskKind(str, Enum):
    TASK = "task_available"
    ALL_COMPLETED = "all_completed"
    BLOCKED = "blocked"


@dataclass
class NextTask:
    """Outcome of ``TaskQueueManager.next_task``."""

    kind: NextTaskKind
    task: Optional[Task] = None
    action: Optional[str] = None
    """dispatch, redispatch or reissue; None when the outstanding task is returned again"""

    progress: Dict[str, Any] = field(default_factory=dict)
    blocked: List[Task] = field(default_factory=list)

    @property
    def reissued(self) -> bool:
        return self.action == "reissue"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.kind.value, "progress": self.progress}
        if self.task is not None:
            data["task"] = self.task.summary()
            data["reissued"] = self.reissued
        if self.blocked:
            data["blocked_tasks"] = [
                {**t.summary(), "last_error": t.last_error} for t in self.blocked
            ]
        return data


def _require_queue(workflow: Workflow) -> TaskQueue:
    if workflow.task_queue is None:
        raise OutOfOrderError(
            "No task queue exists for this workflow",
            context={"workflow_id": workflow.id, "phase": 3},
            hint="Call step3_start first",
        )
    return workflow.task_queue


def _require_task(workflow: Workflow, task_id: str) -> Task:
    task = _require_queue(workflow).find(task_id)
    if task is None:
        raise UnknownTaskError(
            f"Task not found: {task_id}",
            context={"workflow_id": workflow.id, "task_id": task_id},
        )
    return task


def _already_completed(workflow: Workflow, task: Task) -> AlreadyCompletedError:
    return AlreadyCompletedError(
        f"Task {task.task_id} is already completed",
        context={
            "workflow_id": workflow.id,
            "task_id": task.task_id,
            "completed_at": task.completed_at,
        },
        hint="The first result was kept; call step3_get_next_task to continue",
    )


def _validate_relative_path(path: str) -> str:
    if not path or not path.strip():
        raise ValidationError("File path must not be empty")

    normalized = path.replace("\\", "/").strip()
    pure = PurePosixPath(normalized)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValidationError(
            f"File path must be relative to the project root: {path}",
            context={"path": path},
        )
    return str(pure)


class TaskQueueManager:
    """Owns every transition of batch tasks."""

    def __init__(
        self,
        store,
        stale_after: timedelta = timedelta(minutes=30),
        max_retries: int = 3,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            store: WorkflowStore holding the workflows
            stale_after: Age after which a dispatched task is reissued
            max_retries: Re-dispatches allowed after failures
            clock: Source of "now" (injectable for tests)
        """
        self.store = store
        self.stale_after = stale_after
        self.max_retries = max_retries
        self.clock = clock

    def init_queue(self, workflow_id: str, files: Iterable[Any]) -> TaskQueue:
        """Create one pending task per file, in the given order.

        Args:
            workflow_id: Workflow to attach the queue to
            files: FileRef objects, dicts with ``path``, or path strings

        Raises:
            ValidationError: malformed or duplicate file paths
            AlreadyInitializedError: the workflow already has a queue
        """
        refs: List[FileRef] = []
        seen = set()
        for item in files:
            try:
                ref = FileRef.coerce(item)
            except TypeError as e:
                raise ValidationError(str(e), context={"workflow_id": workflow_id}) from e
            ref.path = _validate_relative_path(ref.path)
            if ref.path in seen:
                raise ValidationError(
                    f"Duplicate file path: {ref.path}",
                    context={"workflow_id": workflow_id, "path": ref.path},
                )
            seen.add(ref.path)
            refs.append(ref)

        def apply(workflow: Workflow) -> TaskQueue:
            if workflow.task_queue is not None:
                raise AlreadyInitializedError(
                    "Task queue already initialized",
                    context={
                        "workflow_id": workflow_id,
                        "total_tasks": len(workflow.task_queue.tasks),
                    },
                    hint="Call step3_get_next_task to continue",
                )
            workflow.task_queue = TaskQueue(
                tasks=[
                    Task(
                        task_id=f"task_{i + 1}",
                        workflow_id=workflow_id,
                        file_ref=ref,
                        index=i,
                    )
                    for i, ref in enumerate(refs)
                ]
            )
            return workflow.task_queue

        queue = self.store.update(workflow_id, apply)
        log_audit("task", "queue_init", {"workflow_id": workflow_id, "total_tasks": len(refs)})
        return queue

    def _is_stale(self, task: Task, now: datetime) -> bool:
        if not task.dispatched_at:
            return True
        try:
            dispatched = datetime.fromisoformat(task.dispatched_at)
        except ValueError:
            return True
        return now - dispatched >= self.stale_after

    def _is_eligible(self, task: Task) -> bool:
        if task.status == TaskStatus.PENDING:
            return True
        return task.status == TaskStatus.FAILED and task.failures <= self.max_retries

    def next_task(self, workflow_id: str, now: Optional[datetime] = None) -> NextTask:
        """Return the task the driver should work on, dispatching if needed."""
        now = now or self.clock()

        def apply(workflow: Workflow) -> NextTask:
            queue = _require_queue(workflow)

            current = queue.outstanding()
            if current is not None:
                if not self._is_stale(current, now):
                    return NextTask(NextTaskKind.TASK, task=current, progress=queue.progress())
                current.dispatched_at = now.isoformat()
                current.dispatch_count += 1
                return NextTask(
                    NextTaskKind.TASK, task=current, action="reissue", progress=queue.progress()
                )

            for task in queue.tasks:
                if self._is_eligible(task):
                    action = "redispatch" if task.status == TaskStatus.FAILED else "dispatch"
                    task.status = TaskStatus.DISPATCHED
                    task.dispatched_at = now.isoformat()
                    task.dispatch_count += 1
                    return NextTask(
                        NextTaskKind.TASK, task=task, action=action, progress=queue.progress()
                    )

            if queue.all_completed():
                return NextTask(NextTaskKind.ALL_COMPLETED, progress=queue.progress())

            return NextTask(
                NextTaskKind.BLOCKED,
                progress=queue.progress(),
                blocked=[t for t in queue.tasks if t.status == TaskStatus.FAILED],
            )

        outcome = self.store.update(workflow_id, apply)
        self._audit_next(workflow_id, outcome)
        return outcome

    def _audit_next(self, workflow_id: str, outcome: NextTask) -> None:
        if outcome.kind == NextTaskKind.BLOCKED:
            log_audit(
                "task",
                "blocked",
                {"workflow_id": workflow_id, "task_ids": [t.task_id for t in outcome.blocked]},
            )
            return
        if outcome.task is None or outcome.action is None:
            return

        log_audit(
            "task",
            outcome.action,
            {
                "workflow_id": workflow_id,
                "task_id": outcome.task.task_id,
                "dispatch_count": outcome.task.dispatch_count,
            },
        )

    def complete_task(self, workflow_id: str, task_id: str, content: str) -> Task:
        """Store the result for a dispatched task.

        Raises:
            ValidationError: empty content
            UnknownTaskError: ``task_id`` is not in the queue
            AlreadyCompletedError: the task already has a result (kept as is)
            OutOfOrderError: the task is not currently dispatched
        """
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(
                "Task content must be a non-empty string",
                context={"workflow_id": workflow_id, "task_id": task_id},
            )

        def apply(workflow: Workflow) -> Task:
            task = _require_task(workflow, task_id)
            if task.status == TaskStatus.COMPLETED:
                raise _already_completed(workflow, task)
            if task.status != TaskStatus.DISPATCHED:
                raise OutOfOrderError(
                    f"Task {task_id} is {task.status.value}, not dispatched",
                    context={
                        "workflow_id": workflow_id,
                        "task_id": task_id,
                        "status": task.status.value,
                    },
                    hint="Call step3_get_next_task to receive a task first",
                )
            task.status = TaskStatus.COMPLETED
            task.completed_at = self.clock().isoformat()
            task.result = content
            return task

        try:
            task = self.store.update(workflow_id, apply)
        except AlreadyCompletedError:
            log_audit("task", "duplicate", {"workflow_id": workflow_id, "task_id": task_id})
            raise

        log_audit(
            "task",
            "complete",
            {"workflow_id": workflow_id, "task_id": task_id, "content_length": len(content)},
        )
        return task

    def fail_task(self, workflow_id: str, task_id: str, reason: str = "") -> Task:
        """Record a failure for a dispatched task.

        The task is re-dispatched by ``next_task`` while
        ``failures <= max_retries``; after that the queue reports BLOCKED.
        """

        def apply(workflow: Workflow) -> Task:
            task = _require_task(workflow, task_id)
            if task.status == TaskStatus.COMPLETED:
                raise _already_completed(workflow, task)
            if task.status != TaskStatus.DISPATCHED:
                raise OutOfOrderError(
                    f"Task {task_id} is {task.status.value}, not dispatched",
                    context={
                        "workflow_id": workflow_id,
                        "task_id": task_id,
                        "status": task.status.value,
                    },
                )
            task.status = TaskStatus.FAILED
            task.failures += 1
            task.last_error = reason or "unspecified failure"
            return task

        task = self.store.update(workflow_id, apply)
        log_audit(
            "task",
            "fail",
            {
                "workflow_id": workflow_id,
                "task_id": task_id,
                "failures": task.failures,
                "reason": task.last_error,
            },
        )
        return task

    def retry_task(self, workflow_id: str, task_id: str) -> Task:
        """Return a failed task to pending with its failure counter reset."""

        def apply(workflow: Workflow) -> Task:
            task = _require_task(workflow, task_id)
            if task.status == TaskStatus.COMPLETED:
                raise _already_completed(workflow, task)
            if task.status != TaskStatus.FAILED:
                raise OutOfOrderError(
                    f"Only failed tasks can be retried; {task_id} is {task.status.value}",
                    context={
                        "workflow_id": workflow_id,
                        "task_id": task_id,
                        "status": task.status.value,
                    },
                )
            task.status = TaskStatus.PENDING
            task.failures = 0
            return task

        task = self.store.update(workflow_id, apply)
        log_audit("task", "retry", {"workflow_id": workflow_id, "task_id": task_id})
        return task

    def retries_left(self, task: Task) -> int:
        return max(0, self.max_retries + 1 - task.failures)

    def all_completed(self, workflow_id: str) -> bool:
        workflow = self.store.get(workflow_id)
        return _require_queue(workflow).all_completed()

    def progress(self, workflow_id: str) -> Dict[str, Any]:
        workflow = self.store.get(workflow_id)
        return _require_queue(workflow).progress()

    def get_task(self, workflow: Workflow, task_id: str) -> Task:
        return _require_task(workflow, task_id)

    def completion_results(self, workflow: Workflow) -> Dict[str, str]:
        """Map of file path → document content, in enumeration order.

        Raises:
            OutOfOrderError: some task is not completed yet
        """
        queue = _require_queue(workflow)
        if not queue.all_completed():
            raise OutOfOrderError(
                "Not every task is completed",
                context={"workflow_id": workflow.id, "progress": queue.progress()},
                hint="Call step3_get_next_task to continue",
            )
        return {t.file_ref.path: t.result or "" for t in sorted(queue.tasks, key=lambda t: t.index)}
