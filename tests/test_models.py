"""Tests for the workflow data model and its JSON form."""

import json

import pytest

from docflow.core.models import (
    CREATED,
    PHASE_TOOLS,
    FileRef,
    Phase,
    Task,
    TaskQueue,
    TaskStatus,
    Workflow,
    new_workflow_id,
)


class TestPhase:
    def test_six_ordered_phases(self):
        assert [int(p) for p in Phase] == [1, 2, 3, 4, 5, 6]
        assert Phase.FILE_DOCUMENTATION.step_name == "file_documentation"

    def test_every_phase_has_a_tool(self):
        assert PHASE_TOOLS[Phase.PROJECT_SCAN] == "step1_start"
        assert PHASE_TOOLS[Phase.CONNECT_DOCS] == "step6_connect_docs"
        assert set(PHASE_TOOLS) == set(Phase)


class TestFileRef:
    def test_coerce_string(self):
        assert FileRef.coerce("src/a.py") == FileRef(path="src/a.py")

    def test_coerce_dict(self):
        ref = FileRef.coerce({"path": "a.py", "size": 10})
        assert ref.path == "a.py"
        assert ref.size == 10
        assert ref.sha256 is None

    def test_coerce_rejects_other_types(self):
        with pytest.raises(TypeError):
            FileRef.coerce(42)
        with pytest.raises(TypeError):
            FileRef.coerce({"size": 1})


class TestWorkflowId:
    def test_contains_project_name(self):
        assert new_workflow_id("/home/me/myproject").startswith("wf_myproject_")

    def test_ids_are_unique(self):
        ids = {new_workflow_id("/tmp/p") for _ in range(50)}
        assert len(ids) == 50


class TestTaskQueue:
    def _queue(self) -> TaskQueue:
        return TaskQueue(tasks=[
            Task(task_id=f"task_{i}", workflow_id="wf", file_ref=FileRef(f"f{i}.py"), index=i)
            for i in range(4)
        ])

    def test_progress_counts_statuses(self):
        queue = self._queue()
        queue.tasks[0].status = TaskStatus.COMPLETED
        queue.tasks[1].status = TaskStatus.DISPATCHED
        queue.tasks[2].status = TaskStatus.FAILED

        progress = queue.progress()
        assert progress == {
            "total": 4,
            "completed": 1,
            "pending": 1,
            "dispatched": 1,
            "failed": 1,
            "percentage": 25,
        }

    def test_empty_queue_is_complete(self):
        queue = TaskQueue()
        assert queue.all_completed()
        assert queue.progress()["percentage"] == 100

    def test_outstanding(self):
        queue = self._queue()
        assert queue.outstanding() is None
        queue.tasks[2].status = TaskStatus.DISPATCHED
        assert queue.outstanding().task_id == "task_2"


class TestWorkflowSerialization:
    def test_roundtrip_through_json(self):
        wf = Workflow(id="wf_1", project_path="/p")
        wf.phase = 2
        wf.phase_results = {1: {"files": []}, 2: {"primary": "python"}}
        wf.task_queue = TaskQueue(tasks=[
            Task(task_id="task_1", workflow_id="wf_1", file_ref=FileRef("a.py", size=3)),
        ])
        wf.task_queue.tasks[0].status = TaskStatus.DISPATCHED

        restored = Workflow.from_dict(json.loads(json.dumps(wf.to_dict())))

        assert restored.phase_results == {1: {"files": []}, 2: {"primary": "python"}}
        assert list(restored.phase_results) == [1, 2]
        assert restored.task_queue.tasks[0].status is TaskStatus.DISPATCHED
        assert restored.task_queue.tasks[0].file_ref.size == 3

    def test_enum_phase_keys_serialize_as_digits(self):
        wf = Workflow(id="wf_1", project_path="/p", phase=3)
        wf.phase_results = {Phase.PROJECT_SCAN: {}, Phase.FILE_DOCUMENTATION: {"documents": []}}

        data = json.loads(json.dumps(wf.to_dict()))

        assert list(data["phase_results"]) == ["1", "3"]
        assert Workflow.from_dict(data).phase_results[3] == {"documents": []}

    def test_new_workflow_is_created_and_active(self):
        wf = Workflow(id="wf_1", project_path="/p")
        assert wf.phase == CREATED
        assert wf.is_active
        assert not wf.is_done

    def test_superseded_or_done_is_not_active(self):
        done = Workflow(id="wf_1", project_path="/p", phase=6)
        replaced = Workflow(id="wf_2", project_path="/p", superseded_by="wf_3")
        assert done.is_done and not done.is_active
        assert not replaced.is_active
