"""
Shared pytest fixtures for docflow tests.

Provides fixtures for:
- A small sample project on disk
- Configuration with in-memory storage and audit disabled
- Controllers with a controllable clock
- Driving a workflow up to the batch phase
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

import pytest

from docflow.core.audit import reset_logger
from docflow.core.config import DocflowConfig
from docflow.core.store import InMemoryWorkflowStore, SqliteWorkflowStore
from docflow.workflow.controller import WorkflowController
from docflow.workflow.factory import create_controller


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _write(p: Path, content: str) -> Path:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content)
    return p


@pytest.fixture(autouse=True)
def _no_global_audit_logger():
    """Keep the module-level audit logger from leaking between tests."""
    reset_logger()
    yield
    reset_logger()


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """Project with three source files, a marker file, and ignored noise."""
    root = tmp_path / "sample_project"
    _write(root / "main.py", "from src.app import run\n\nrun()\n")
    _write(root / "src" / "app.py", "def run():\n    return 42\n")
    _write(root / "src" / "util.py", "def helper(x):\n    return x * 2\n")
    _write(root / "pyproject.toml", "[project]\nname = 'sample'\n")
    _write(root / "README.md", "# Sample\n")
    _write(root / "node_modules" / "dep" / "index.js", "module.exports = 1;\n")
    _write(root / ".git" / "config", "[core]\n")
    return root


@pytest.fixture
def empty_project(tmp_path: Path) -> Path:
    root = tmp_path / "empty_project"
    _write(root / "README.md", "# Nothing to document\n")
    return root


@pytest.fixture
def test_config(tmp_path: Path) -> DocflowConfig:
    """Memory storage, audit disabled."""
    return DocflowConfig.from_dict({
        "storage": {"backend": "memory"},
        "audit": {"enabled": False, "log_dir": str(tmp_path / "audit")},
    })


@pytest.fixture
def memory_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def sqlite_store(tmp_path: Path) -> SqliteWorkflowStore:
    return SqliteWorkflowStore(tmp_path / "workflows.db")


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    """Both store backends, for contract tests."""
    if request.param == "memory":
        return InMemoryWorkflowStore()
    return SqliteWorkflowStore(tmp_path / "workflows.db")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def controller(test_config: DocflowConfig, clock: FakeClock) -> WorkflowController:
    ctrl = create_controller(test_config, init_audit=False)
    ctrl.queue.clock = clock
    return ctrl


@pytest.fixture
def start_batch(controller: WorkflowController, sample_project: Path) -> Callable[[], str]:
    """Run phases 1-2 and build the phase-3 queue; returns the workflow ID."""

    def _start() -> str:
        started = controller.start_phase(None, 1, project_path=str(sample_project))
        workflow_id = started["workflow_id"]
        controller.start_phase(workflow_id, 2)
        controller.start_phase(workflow_id, 3)
        return workflow_id

    return _start
