"""
WorkflowController - the façade every outer surface (MCP, CLI) talks to.

Consults the StepGate before any state change, runs the phase executors,
and commits results through the store. The batch phase (3) is committed
automatically the first time the queue is observed fully completed, by
``get_next_task``, ``submit_task_result`` or ``check_batch_completion``.

Usage:
    controller = create_controller(config)
    started = controller.start_phase(None, 1, project_path="/path/to/project")
    wf_id = started["workflow_id"]
    controller.start_phase(wf_id, 2)
    controller.start_phase(wf_id, 3)
    while True:
        nxt = controller.get_next_task(wf_id)
        if nxt["status"] == "all_completed":
            break
        controller.submit_task_result(wf_id, nxt["task"]["task_id"], "# docs...")
    controller.start_phase(wf_id, 4)
    ...
"""

from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from docflow.core.audit import log_audit, log_error
from docflow.core.errors import (
    BlockedError,
    DocflowError,
    NotFoundError,
    OutOfOrderError,
    PhaseFailedError,
    ValidationError,
)
from docflow.core.models import BATCH_PHASE, CREATED, PHASE_TOOLS, Phase, TaskStatus, Workflow
from docflow.core.store import WorkflowStore
from docflow.workflow.executors import FileContentProvider, FileDocumentationExecutor, PhaseExecutor
from docflow.workflow.gate import StepGate
from docflow.workflow.task_queue import NextTaskKind, TaskQueueManager


def normalize_project_path(project_path: Optional[str]) -> str:
    """Absolute, resolved project path; the key workflows are found by."""
    if not project_path or not str(project_path).strip():
        raise ValidationError(
            "project_path is required to start a workflow",
            hint="Pass the absolute path of the project to document",
        )

    path = Path(project_path).expanduser().resolve()
    if not path.is_dir():
        raise ValidationError(
            f"Project directory not found: {path}",
            context={"project_path": str(path)},
        )
    return str(path)


def _require_id(value: Optional[str], name: str) -> str:
    if not value or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def _completion_results(workflow: Workflow) -> List[Dict[str, Any]]:
    """Per-file summary of a finished batch: task, source path and document path."""
    if workflow.task_queue is None:
        return []
    batch = workflow.phase_results.get(int(BATCH_PHASE), {})
    doc_paths = {d["path"]: d["doc_path"] for d in batch.get("documents", [])}
    return [
        {
            "task_id": t.task_id,
            "path": t.file_ref.path,
            "doc_path": doc_paths.get(t.file_ref.path),
            "content_length": len(t.result or ""),
        }
        for t in sorted(workflow.task_queue.tasks, key=lambda t: t.index)
    ]


class WorkflowController:
    """Sequences phases and the batch protocol for many workflows."""

    def __init__(
        self,
        store: WorkflowStore,
        gate: StepGate,
        queue: TaskQueueManager,
        executors: Dict[int, PhaseExecutor],
        content_provider: FileContentProvider,
        expiry: timedelta = timedelta(days=7),
    ):
        """
        Args:
            store: Workflow storage backend
            gate: Phase-ordering checks
            queue: Batch task manager (shares ``store``)
            executors: One executor per phase index (1-6)
            content_provider: Reads source files for dispatched tasks
            expiry: Default max age for ``cleanup``
        """
        missing = [int(p) for p in Phase if p not in executors]
        if missing:
            raise ValueError(f"No executor registered for phases: {missing}")
        if not isinstance(executors[BATCH_PHASE], FileDocumentationExecutor):
            raise ValueError("Phase 3 executor must be a FileDocumentationExecutor")

        self.store = store
        self.gate = gate
        self.queue = queue
        self.executors = executors
        self.content_provider = content_provider
        self.expiry = expiry

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def start_phase(
        self,
        workflow_id: Optional[str],
        phase_index: int,
        input: Optional[Dict[str, Any]] = None,
        project_path: Optional[str] = None,
        fresh: bool = False,
    ) -> Dict[str, Any]:
        """Enter a phase.

        Phase 1 without ``workflow_id`` resolves or creates the workflow for
        ``project_path``. Phase 3 builds the task queue and commits later.
        Every other phase runs its executor and commits the result.

        Raises:
            ValidationError, NotFoundError, OutOfOrderError,
            AlreadyExistsError, AlreadyInitializedError, PhaseFailedError
        """
        input = input or {}
        if not isinstance(input, dict):
            raise ValidationError("Phase input must be an object")

        if phase_index == Phase.PROJECT_SCAN and not workflow_id:
            workflow = self._resolve_for_scan(project_path, fresh)
        else:
            workflow = self.store.get(_require_id(workflow_id, "workflow_id"))

        self.gate.require_entry(workflow, phase_index)
        log_audit("phase", "start", {"workflow_id": workflow.id, "phase": phase_index})

        if phase_index == BATCH_PHASE:
            return self._start_batch(workflow, input)

        executor = self.executors[phase_index]
        result = self._execute(workflow, phase_index, lambda: executor.run(workflow, input))
        workflow = self.store.commit_phase(workflow.id, phase_index, result)
        log_audit("phase", "complete", {"workflow_id": workflow.id, "phase": phase_index})

        return {
            "workflow_id": workflow.id,
            "phase": phase_index,
            "name": Phase(phase_index).step_name,
            "result": result,
            "next_step": self.gate.next_step(workflow).to_dict(),
        }

    def _resolve_for_scan(self, project_path: Optional[str], fresh: bool) -> Workflow:
        path = normalize_project_path(project_path)
        active = self.store.find_active(path)
        # A failed earlier phase-1 attempt left a workflow at Created: pick it up
        if active is not None and not fresh and active.phase == CREATED:
            log_audit("workflow", "resume", {"workflow_id": active.id, "project_path": path})
            return active
        return self.store.create(path, fresh=fresh)

    def _execute(self, workflow: Workflow, phase_index: int, fn: Callable[[], Any]) -> Any:
        """Run executor code; foreign exceptions become PhaseFailedError."""
        try:
            return fn()
        except DocflowError as e:
            raise e.with_context(workflow_id=workflow.id, phase=phase_index)
        except Exception as e:
            context = {"workflow_id": workflow.id, "phase": phase_index}
            log_error(e, context)
            log_audit("phase", "failed", {**context, "error": str(e)})
            raise PhaseFailedError(
                f"Phase {phase_index} ({Phase(phase_index).step_name}) failed: {e}",
                context={**context, "error_type": type(e).__name__},
                hint=f"Nothing was committed; fix the cause and call {PHASE_TOOLS[phase_index]} again",
            ) from e

    def _start_batch(self, workflow: Workflow, input: Dict[str, Any]) -> Dict[str, Any]:
        executor = self.executors[BATCH_PHASE]
        files = self._execute(workflow, BATCH_PHASE, lambda: executor.enumerate(workflow, input))
        queue = self.queue.init_queue(workflow.id, files)

        workflow = self.store.get(workflow.id)
        return {
            "workflow_id": workflow.id,
            "phase": int(BATCH_PHASE),
            "name": BATCH_PHASE.step_name,
            "total_tasks": len(queue.tasks),
            "progress": queue.progress(),
            "next_step": self.gate.next_step(workflow).to_dict(),
        }

    def _commit_batch(self, workflow_id: str) -> Workflow:
        """Write the file documents and commit phase 3. Idempotent."""
        workflow = self.store.get(workflow_id)
        if workflow.phase >= BATCH_PHASE:
            return workflow

        documents = self.queue.completion_results(workflow)
        executor = self.executors[BATCH_PHASE]
        result = self._execute(workflow, BATCH_PHASE, lambda: executor.finalize(workflow, documents))
        try:
            workflow = self.store.commit_phase(workflow_id, int(BATCH_PHASE), result)
        except OutOfOrderError:
            # Lost a race with another committer
            workflow = self.store.get(workflow_id)
            if workflow.phase >= BATCH_PHASE:
                return workflow
            raise

        log_audit("phase", "complete", {"workflow_id": workflow_id, "phase": int(BATCH_PHASE)})
        return workflow

    def _batch_workflow(self, workflow_id: Optional[str]) -> Workflow:
        """Load a workflow that must have reached the batch phase."""
        workflow = self.store.get(_require_id(workflow_id, "workflow_id"))
        if workflow.phase < BATCH_PHASE and workflow.task_queue is None:
            self.gate.require_entry(workflow, BATCH_PHASE)
            raise OutOfOrderError(
                "No task queue exists for this workflow",
                context={"workflow_id": workflow.id, "phase": int(BATCH_PHASE)},
                hint="Call step3_start first",
            )
        return workflow

    # ------------------------------------------------------------------
    # Batch protocol
    # ------------------------------------------------------------------

    def get_next_task(self, workflow_id: Optional[str]) -> Dict[str, Any]:
        """Hand out the current task, or report completion.

        Raises:
            BlockedError: failed tasks exhausted the retry budget
        """
        workflow = self._batch_workflow(workflow_id)
        if workflow.phase >= BATCH_PHASE:
            return self._completed_response(workflow)

        outcome = self.queue.next_task(workflow.id)
        if outcome.kind == NextTaskKind.TASK:
            return {"workflow_id": workflow.id, **outcome.to_dict()}

        if outcome.kind == NextTaskKind.ALL_COMPLETED:
            return self._completed_response(self._commit_batch(workflow.id))

        raise BlockedError(
            f"{len(outcome.blocked)} task(s) exhausted the retry budget",
            context={
                "workflow_id": workflow.id,
                "phase": int(BATCH_PHASE),
                "blocked_tasks": [
                    {"task_id": t.task_id, "path": t.file_ref.path, "last_error": t.last_error}
                    for t in outcome.blocked
                ],
                "progress": outcome.progress,
            },
            hint="Call step3_retry_task for each blocked task to continue",
        )

    def _completed_response(self, workflow: Workflow) -> Dict[str, Any]:
        queue = workflow.task_queue
        return {
            "workflow_id": workflow.id,
            "status": NextTaskKind.ALL_COMPLETED.value,
            "progress": queue.progress() if queue else {},
            "completion_results": _completion_results(workflow),
            "phase_committed": workflow.phase >= BATCH_PHASE,
            "next_step": self.gate.next_step(workflow).to_dict(),
        }

    def submit_task_result(
        self,
        workflow_id: Optional[str],
        task_id: Optional[str],
        content: str,
    ) -> Dict[str, Any]:
        """Record a completed document; commits phase 3 if it was the last one."""
        workflow = self._batch_workflow(workflow_id)
        task = self.queue.complete_task(workflow.id, _require_id(task_id, "task_id"), content)

        workflow = self.store.get(workflow.id)
        all_done = workflow.task_queue.all_completed()
        if all_done:
            workflow = self._commit_batch(workflow.id)

        return {
            "workflow_id": workflow.id,
            "task": task.summary(),
            "progress": workflow.task_queue.progress(),
            "all_completed": all_done,
            "next_step": self.gate.next_step(workflow).to_dict(),
        }

    def fail_task(
        self,
        workflow_id: Optional[str],
        task_id: Optional[str],
        reason: str = "",
    ) -> Dict[str, Any]:
        """Report that the driver could not document a dispatched task."""
        workflow = self._batch_workflow(workflow_id)
        task = self.queue.fail_task(workflow.id, _require_id(task_id, "task_id"), reason)
        retries_left = self.queue.retries_left(task)
        return {
            "workflow_id": workflow.id,
            "task": {**task.summary(), "last_error": task.last_error},
            "retries_left": retries_left,
            "blocked": retries_left == 0,
            "progress": self.queue.progress(workflow.id),
        }

    def retry_task(self, workflow_id: Optional[str], task_id: Optional[str]) -> Dict[str, Any]:
        """Unblock a failed task: back to pending with a fresh retry budget."""
        workflow = self._batch_workflow(workflow_id)
        task = self.queue.retry_task(workflow.id, _require_id(task_id, "task_id"))
        return {
            "workflow_id": workflow.id,
            "task": task.summary(),
            "progress": self.queue.progress(workflow.id),
        }

    def get_file_content(
        self,
        workflow_id: Optional[str],
        task_id: Optional[str],
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Source content for a dispatched task, one chunk at a time.

        Large files are paged: read again with the returned ``next_offset``
        until it is None.

        Raises:
            UnknownTaskError: ``task_id`` is not in the queue
            OutOfOrderError: the task is not dispatched
            NotFoundError: the file disappeared from disk
        """
        workflow = self._batch_workflow(workflow_id)
        task = self.queue.get_task(workflow, _require_id(task_id, "task_id"))
        if task.status != TaskStatus.DISPATCHED:
            raise OutOfOrderError(
                f"Task {task.task_id} is {task.status.value}, not dispatched",
                context={"workflow_id": workflow.id, "task_id": task.task_id, "status": task.status.value},
                hint="Call step3_get_next_task to receive a task first",
            )

        try:
            file = self.content_provider.read(Path(workflow.project_path), task.file_ref, offset)
        except FileNotFoundError as e:
            raise NotFoundError(
                str(e),
                context={"workflow_id": workflow.id, "task_id": task.task_id, "path": task.file_ref.path},
                hint="Report it with step3_fail_task",
            ) from e
        except DocflowError as e:
            raise e.with_context(workflow_id=workflow.id, task_id=task.task_id)

        return {"workflow_id": workflow.id, "task_id": task.task_id, "file": file}

    def check_batch_completion(self, workflow_id: Optional[str]) -> Dict[str, Any]:
        """``step_completed`` once every task is done (commits phase 3),
        otherwise ``continue_next_file``."""
        workflow = self._batch_workflow(workflow_id)

        if workflow.phase < BATCH_PHASE and workflow.task_queue.all_completed():
            workflow = self._commit_batch(workflow.id)

        queue = workflow.task_queue
        response: Dict[str, Any] = {
            "workflow_id": workflow.id,
            "progress": queue.progress(),
            "next_step": self.gate.next_step(workflow).to_dict(),
        }
        if workflow.phase >= BATCH_PHASE:
            response["status"] = "step_completed"
            return response

        response["status"] = "continue_next_file"
        blocked = [
            t.task_id for t in queue.tasks
            if t.status == TaskStatus.FAILED and t.failures > self.queue.max_retries
        ]
        if blocked:
            response["blocked_tasks"] = blocked
        return response

    def advance_phase(self, workflow_id: Optional[str]) -> Dict[str, Any]:
        """Explicitly commit a deferred batch phase.

        Raises:
            OutOfOrderError: there is nothing deferred to commit
        """
        workflow = self.store.get(_require_id(workflow_id, "workflow_id"))
        deferred = (
            workflow.phase == BATCH_PHASE - 1
            and workflow.task_queue is not None
            and workflow.task_queue.all_completed()
        )
        if not deferred:
            context: Dict[str, Any] = {"workflow_id": workflow.id, "current_phase": workflow.phase}
            if workflow.task_queue is not None and workflow.phase < BATCH_PHASE:
                context["progress"] = workflow.task_queue.progress()
            raise OutOfOrderError(
                "Nothing is pending commit for this workflow",
                context=context,
                hint=f"Call {self.gate.next_step(workflow).tool}"
                if not workflow.is_done else "Workflow is complete",
            )

        workflow = self._commit_batch(workflow.id)
        return {
            "workflow_id": workflow.id,
            "phase": workflow.phase,
            "next_step": self.gate.next_step(workflow).to_dict(),
        }

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def status(self, workflow_id: Optional[str]) -> Dict[str, Any]:
        workflow = self.store.get(_require_id(workflow_id, "workflow_id"))
        data = workflow.summary()
        data["completed_phases"] = [
            {"phase": int(k), "name": Phase(k).step_name} for k in workflow.phase_results
        ]
        data["phase_results"] = {str(int(k)): v for k, v in workflow.phase_results.items()}
        if workflow.task_queue is not None:
            data["progress"] = workflow.task_queue.progress()
            data["tasks"] = [t.summary() for t in workflow.task_queue.tasks]
        data["next_step"] = self.gate.next_step(workflow).to_dict()
        return data

    def list_workflows(
        self,
        project_path: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Dict[str, Any]]:
        if project_path:
            project_path = str(Path(project_path).expanduser().resolve())
        workflows = self.store.list_workflows(project_path)
        if active_only:
            workflows = [w for w in workflows if w.is_active]
        return [w.summary() for w in workflows]

    def cleanup(self, max_age: Optional[timedelta] = None) -> List[str]:
        """Delete workflows idle for longer than ``max_age`` (default: config expiry)."""
        return self.store.cleanup_expired(self.expiry if max_age is None else max_age)
