"""End-to-end tests for the docflow CLI.

Workflows are created through a controller sharing the CLI's SQLite
database, then inspected and maintained through the commands.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from docflow.cli.main import cli
from docflow.core.config import load_config
from docflow.workflow.factory import create_controller


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "docflow.yaml"
    path.write_text(
        "storage:\n"
        "  backend: sqlite\n"
        "  path: state/workflows.db\n"
        "audit:\n"
        "  log_dir: state/audit\n"
    )
    return path


@pytest.fixture
def shared_controller(config_file):
    return create_controller(load_config(config_file))


def _run(config_file: Path, *args: str):
    return CliRunner().invoke(cli, ["--config", str(config_file), *args])


def test_list_empty(config_file: Path) -> None:
    res = _run(config_file, "list")
    assert res.exit_code == 0, res.output
    assert "No workflows." in res.output


def test_list_and_status(config_file: Path, shared_controller, sample_project: Path) -> None:
    wf_id = shared_controller.start_phase(None, 1, project_path=str(sample_project))["workflow_id"]

    res = _run(config_file, "list")
    assert res.exit_code == 0, res.output
    assert wf_id in res.output
    assert "phase 1/6" in res.output

    res_json = _run(config_file, "list", "--json", "--active-only")
    listed = json.loads(res_json.output)
    assert [w["workflow_id"] for w in listed] == [wf_id]

    res_status = _run(config_file, "status", wf_id)
    assert res_status.exit_code == 0, res_status.output
    data = json.loads(res_status.output)
    assert data["phase"] == 1
    assert "phase_results" not in data
    assert data["next_step"]["tool"] == "step2_start"


def test_status_unknown_workflow(config_file: Path) -> None:
    res = _run(config_file, "status", "wf_missing")
    assert res.exit_code != 0
    assert "not_found" in res.output


def test_next(config_file: Path, shared_controller, sample_project: Path) -> None:
    wf_id = shared_controller.start_phase(None, 1, project_path=str(sample_project))["workflow_id"]
    shared_controller.start_phase(wf_id, 2)

    res = _run(config_file, "next", wf_id)
    assert res.exit_code == 0, res.output
    assert res.output.strip() == "Phase 3 (file_documentation): call step3_start"


def test_cleanup(config_file: Path, shared_controller, sample_project: Path) -> None:
    wf_id = shared_controller.start_phase(None, 1, project_path=str(sample_project))["workflow_id"]

    res_keep = _run(config_file, "cleanup")
    assert "Removed 0 workflow(s)" in res_keep.output

    res = _run(config_file, "cleanup", "--max-age-hours", "0")
    assert res.exit_code == 0, res.output
    assert "Removed 1 workflow(s)" in res.output
    assert wf_id in res.output
    assert "No workflows." in _run(config_file, "list").output


def test_audit(config_file: Path, shared_controller, sample_project: Path) -> None:
    wf_id = shared_controller.start_phase(None, 1, project_path=str(sample_project))["workflow_id"]

    res = _run(config_file, "audit", "--category", "workflow", "--workflow", wf_id)
    assert res.exit_code == 0, res.output
    entries = [json.loads(line) for line in res.output.splitlines()]
    assert {e["action"] for e in entries} >= {"create", "commit"}


def test_audit_without_log(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DOCFLOW_AUDIT_LOG_DIR", str(tmp_path / "nowhere"))
    res = CliRunner().invoke(cli, ["--db", str(tmp_path / "wf.db"), "audit"])
    assert res.exit_code == 0, res.output
    assert "No audit log found." in res.output
