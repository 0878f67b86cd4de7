"""
Durable keyed storage for workflow records.

Two backends share one contract:

- InMemoryWorkflowStore: dict + re-entrant lock, copy-on-write updates
- SqliteWorkflowStore: one row per workflow, the full record (task queue
  included) stored inline as JSON, every mutation inside ``BEGIN IMMEDIATE``

Readers never see a half-applied mutation: ``update`` hands the mutator a
private copy and only persists it if the mutator returns without raising.
"""

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from docflow.core.audit import log_audit
from docflow.core.errors import AlreadyExistsError, NotFoundError, OutOfOrderError
from docflow.core.models import FINAL_PHASE, Workflow, new_workflow_id

T = TypeVar("T")


class WorkflowStore(ABC):
    """Keyed workflow storage with atomic read-modify-write."""

    @abstractmethod
    def create(self, project_path: str, fresh: bool = False) -> Workflow:
        """Create a workflow for ``project_path``.

        Raises:
            AlreadyExistsError: An active workflow exists and ``fresh`` is False.
                With ``fresh=True`` the existing one is marked superseded.
        """

    @abstractmethod
    def get(self, workflow_id: str) -> Workflow:
        """Load a workflow. Raises NotFoundError."""

    @abstractmethod
    def find_active(self, project_path: str) -> Optional[Workflow]:
        """Most recent workflow for the path that is neither superseded nor done."""

    @abstractmethod
    def update(self, workflow_id: str, mutator: Callable[[Workflow], T]) -> T:
        """Apply ``mutator`` to the workflow atomically and return its value.

        If the mutator raises, nothing is persisted and the exception
        propagates.
        """

    @abstractmethod
    def list_workflows(self, project_path: Optional[str] = None) -> List[Workflow]:
        """All workflows, oldest first."""

    @abstractmethod
    def delete(self, workflow_id: str) -> bool:
        """Remove a workflow. Returns False if it did not exist."""

    def commit_phase(self, workflow_id: str, phase_index: int, result: Any) -> Workflow:
        """Record a phase result and advance the phase pointer.

        Raises:
            OutOfOrderError: ``phase_index`` is not exactly ``phase + 1``
        """

        phase_index = int(phase_index)

        def apply(workflow: Workflow) -> Workflow:
            if phase_index != workflow.phase + 1:
                if phase_index <= workflow.phase:
                    message = f"Phase {phase_index} is already committed"
                else:
                    message = (
                        f"Phase {phase_index} cannot be committed before "
                        f"phase {workflow.phase + 1}"
                    )
                raise OutOfOrderError(
                    message,
                    context={
                        "workflow_id": workflow_id,
                        "phase": phase_index,
                        "current_phase": workflow.phase,
                    },
                )
            workflow.phase = phase_index
            workflow.phase_results[phase_index] = result
            return workflow

        workflow = self.update(workflow_id, apply)
        log_audit("workflow", "commit", {"workflow_id": workflow_id, "phase": phase_index})
        return workflow

    def cleanup_expired(self, max_age: timedelta, now: Optional[datetime] = None) -> List[str]:
        """Delete workflows whose last update is older than ``max_age``.

        Returns:
            IDs of deleted workflows
        """
        cutoff = (now or datetime.now()) - max_age
        removed = []
        for workflow in self.list_workflows():
            if _parse_ts(workflow.updated_at) < cutoff and self.delete(workflow.id):
                removed.append(workflow.id)

        if removed:
            log_audit("workflow", "cleanup", {"removed": removed, "max_age_hours": max_age.total_seconds() / 3600})
        return removed

    def _new_workflow(self, project_path: str) -> Workflow:
        workflow_id = new_workflow_id(project_path)
        while self._exists(workflow_id):
            workflow_id = new_workflow_id(project_path)
        return Workflow(id=workflow_id, project_path=project_path)

    @abstractmethod
    def _exists(self, workflow_id: str) -> bool:
        ...


def _parse_ts(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return datetime.min


def _already_exists(active: Workflow) -> AlreadyExistsError:
    return AlreadyExistsError(
        f"An active workflow already exists for {active.project_path}",
        context={
            "workflow_id": active.id,
            "project_path": active.project_path,
            "phase": active.phase,
        },
        hint="Resume it with its workflow_id, or pass fresh=true to start over",
    )


def _log_created(workflow: Workflow, superseded: Optional[Workflow]) -> None:
    if superseded is not None:
        log_audit(
            "workflow",
            "supersede",
            {"workflow_id": superseded.id, "superseded_by": workflow.id},
        )
    log_audit(
        "workflow",
        "create",
        {"workflow_id": workflow.id, "project_path": workflow.project_path},
    )


class InMemoryWorkflowStore(WorkflowStore):
    """Process-local store. Used by tests and the ``memory`` backend."""

    def __init__(self):
        self._workflows: Dict[str, Workflow] = {}
        self._lock = threading.RLock()

    def _exists(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def create(self, project_path: str, fresh: bool = False) -> Workflow:
        with self._lock:
            active = self._find_active(project_path)
            if active is not None and not fresh:
                raise _already_exists(active)

            workflow = self._new_workflow(project_path)
            if active is not None:
                replaced = copy.deepcopy(active)
                replaced.superseded_by = workflow.id
                replaced.touch()
                self._workflows[replaced.id] = replaced
            self._workflows[workflow.id] = workflow

        _log_created(workflow, active)
        return copy.deepcopy(workflow)

    def get(self, workflow_id: str) -> Workflow:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                raise NotFoundError(
                    f"Workflow not found: {workflow_id}",
                    context={"workflow_id": workflow_id},
                )
            return copy.deepcopy(workflow)

    def _find_active(self, project_path: str) -> Optional[Workflow]:
        candidates = [
            w for w in self._workflows.values()
            if w.project_path == project_path and w.is_active
        ]
        return candidates[-1] if candidates else None

    def find_active(self, project_path: str) -> Optional[Workflow]:
        with self._lock:
            active = self._find_active(project_path)
            return copy.deepcopy(active) if active else None

    def update(self, workflow_id: str, mutator: Callable[[Workflow], T]) -> T:
        with self._lock:
            working = self.get(workflow_id)
            value = mutator(working)
            working.touch()
            self._workflows[workflow_id] = working
            return copy.deepcopy(value)

    def list_workflows(self, project_path: Optional[str] = None) -> List[Workflow]:
        with self._lock:
            return [
                copy.deepcopy(w) for w in self._workflows.values()
                if project_path is None or w.project_path == project_path
            ]

    def delete(self, workflow_id: str) -> bool:
        with self._lock:
            removed = self._workflows.pop(workflow_id, None) is not None
        if removed:
            log_audit("workflow", "delete", {"workflow_id": workflow_id})
        return removed


SCHEMA = """
-- One row per workflow; the full record (including the task queue) is inline JSON
CREATE TABLE IF NOT EXISTS workflows (
    id TEXT PRIMARY KEY,
    project_path TEXT NOT NULL,
    phase INTEGER NOT NULL DEFAULT 0,
    superseded_by TEXT,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_workflows_project ON workflows(project_path);
CREATE INDEX IF NOT EXISTS idx_workflows_updated ON workflows(updated_at);
"""


class SqliteWorkflowStore(WorkflowStore):
    """
    SQLite-backed store.

    Each mutation runs in a ``BEGIN IMMEDIATE`` transaction, so concurrent
    processes serialize on the write lock instead of interleaving
    read-modify-write cycles.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection holding the write lock; rolled back if the body raises."""
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _row_to_workflow(row: sqlite3.Row) -> Workflow:
        return Workflow.from_dict(json.loads(row["data"]))

    @staticmethod
    def _save(conn: sqlite3.Connection, workflow: Workflow) -> None:
        conn.execute(
            """
            INSERT INTO workflows (
                id, project_path, phase, superseded_by, data, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                phase = excluded.phase,
                superseded_by = excluded.superseded_by,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                workflow.id,
                workflow.project_path,
                workflow.phase,
                workflow.superseded_by,
                json.dumps(workflow.to_dict()),
                workflow.created_at,
                workflow.updated_at,
            ),
        )

    def _load(self, conn: sqlite3.Connection, workflow_id: str) -> Workflow:
        row = conn.execute(
            "SELECT data FROM workflows WHERE id = ?", (workflow_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(
                f"Workflow not found: {workflow_id}",
                context={"workflow_id": workflow_id},
            )
        return self._row_to_workflow(row)

    def _select_active(self, conn: sqlite3.Connection, project_path: str) -> Optional[Workflow]:
        row = conn.execute(
            """
            SELECT data FROM workflows
            WHERE project_path = ? AND superseded_by IS NULL AND phase < ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (project_path, int(FINAL_PHASE)),
        ).fetchone()
        return self._row_to_workflow(row) if row else None

    def _exists(self, workflow_id: str) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
        return row is not None

    def create(self, project_path: str, fresh: bool = False) -> Workflow:
        workflow = self._new_workflow(project_path)

        with self._transaction() as conn:
            active = self._select_active(conn, project_path)
            if active is not None and not fresh:
                raise _already_exists(active)

            if active is not None:
                active.superseded_by = workflow.id
                active.touch()
                self._save(conn, active)
            self._save(conn, workflow)

        _log_created(workflow, active)
        return workflow

    def get(self, workflow_id: str) -> Workflow:
        with self._conn() as conn:
            return self._load(conn, workflow_id)

    def find_active(self, project_path: str) -> Optional[Workflow]:
        with self._conn() as conn:
            return self._select_active(conn, project_path)

    def update(self, workflow_id: str, mutator: Callable[[Workflow], T]) -> T:
        with self._transaction() as conn:
            workflow = self._load(conn, workflow_id)
            value = mutator(workflow)
            workflow.touch()
            self._save(conn, workflow)
        return value

    def list_workflows(self, project_path: Optional[str] = None) -> List[Workflow]:
        with self._conn() as conn:
            if project_path is None:
                rows = conn.execute(
                    "SELECT data FROM workflows ORDER BY created_at, rowid"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT data FROM workflows WHERE project_path = ? ORDER BY created_at, rowid",
                    (project_path,),
                ).fetchall()
        return [self._row_to_workflow(row) for row in rows]

    def delete(self, workflow_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
            removed = cursor.rowcount > 0
        if removed:
            log_audit("workflow", "delete", {"workflow_id": workflow_id})
        return removed
