"""Tests for TaskQueueManager: dispatch order, staleness, retries, idempotence."""

from datetime import timedelta

import pytest

from docflow.core.errors import (
    AlreadyCompletedError,
    AlreadyInitializedError,
    OutOfOrderError,
    UnknownTaskError,
    ValidationError,
)
from docflow.core.models import TaskStatus
from docflow.workflow.task_queue import NextTaskKind, TaskQueueManager


@pytest.fixture
def manager(memory_store, clock) -> TaskQueueManager:
    return TaskQueueManager(memory_store, stale_after=timedelta(minutes=30), max_retries=2, clock=clock)


@pytest.fixture
def workflow_id(memory_store, manager) -> str:
    wf = memory_store.create("/projects/demo")
    manager.init_queue(wf.id, ["a.py", "b.py", "c.py"])
    return wf.id


def _dispatched(store, workflow_id):
    queue = store.get(workflow_id).task_queue
    return [t for t in queue.tasks if t.status == TaskStatus.DISPATCHED]


class TestInitQueue:
    def test_one_task_per_file_in_order(self, memory_store, manager, workflow_id):
        queue = memory_store.get(workflow_id).task_queue
        assert [t.file_ref.path for t in queue.tasks] == ["a.py", "b.py", "c.py"]
        assert [t.task_id for t in queue.tasks] == ["task_1", "task_2", "task_3"]
        assert all(t.status == TaskStatus.PENDING for t in queue.tasks)

    def test_second_init_is_rejected(self, manager, workflow_id):
        with pytest.raises(AlreadyInitializedError):
            manager.init_queue(workflow_id, ["d.py"])

    def test_duplicate_paths_rejected(self, memory_store, manager):
        wf = memory_store.create("/projects/dupes")
        with pytest.raises(ValidationError):
            manager.init_queue(wf.id, ["a.py", {"path": "a.py"}])
        assert memory_store.get(wf.id).task_queue is None

    def test_paths_outside_project_rejected(self, memory_store, manager):
        wf = memory_store.create("/projects/escape")
        with pytest.raises(ValidationError):
            manager.init_queue(wf.id, ["../secret.py"])
        with pytest.raises(ValidationError):
            manager.init_queue(wf.id, ["/etc/passwd"])

    def test_accepts_scan_entries(self, memory_store, manager):
        wf = memory_store.create("/projects/scan")
        queue = manager.init_queue(wf.id, [{"path": "x.py", "size": 12}])
        assert queue.tasks[0].file_ref.size == 12


class TestNextTask:
    def test_dispatches_first_pending(self, manager, workflow_id):
        outcome = manager.next_task(workflow_id)
        assert outcome.kind == NextTaskKind.TASK
        assert outcome.task.task_id == "task_1"
        assert outcome.task.status == TaskStatus.DISPATCHED
        assert outcome.action == "dispatch"
        assert outcome.to_dict()["status"] == "task_available"

    def test_repeated_calls_return_same_task(self, memory_store, manager, workflow_id):
        first = manager.next_task(workflow_id)
        second = manager.next_task(workflow_id)
        third = manager.next_task(workflow_id)

        assert first.task.task_id == second.task.task_id == third.task.task_id
        assert third.action is None
        assert third.task.dispatch_count == 1
        assert len(_dispatched(memory_store, workflow_id)) == 1

    def test_stale_task_is_reissued(self, manager, workflow_id, clock):
        first = manager.next_task(workflow_id)
        clock.advance(minutes=31)
        again = manager.next_task(workflow_id)

        assert again.task.task_id == first.task.task_id
        assert again.reissued
        assert again.task.dispatch_count == 2
        assert again.task.dispatched_at == clock.now.isoformat()

    def test_not_yet_stale(self, manager, workflow_id, clock):
        manager.next_task(workflow_id)
        clock.advance(minutes=29)
        assert not manager.next_task(workflow_id).reissued

    def test_advances_after_completion(self, manager, workflow_id):
        manager.next_task(workflow_id)
        manager.complete_task(workflow_id, "task_1", "# a")
        assert manager.next_task(workflow_id).task.task_id == "task_2"

    def test_all_completed(self, manager, workflow_id):
        for task_id in ("task_1", "task_2", "task_3"):
            assert manager.next_task(workflow_id).task.task_id == task_id
            manager.complete_task(workflow_id, task_id, f"# {task_id}")

        outcome = manager.next_task(workflow_id)
        assert outcome.kind == NextTaskKind.ALL_COMPLETED
        assert outcome.progress["percentage"] == 100
        assert manager.all_completed(workflow_id)

    def test_without_queue(self, memory_store, manager):
        wf = memory_store.create("/projects/noqueue")
        with pytest.raises(OutOfOrderError):
            manager.next_task(wf.id)


class TestCompleteTask:
    def test_unknown_task(self, manager, workflow_id):
        with pytest.raises(UnknownTaskError) as exc:
            manager.complete_task(workflow_id, "task_99", "# x")
        assert exc.value.code == "unknown_task"

    def test_not_dispatched(self, manager, workflow_id):
        with pytest.raises(OutOfOrderError):
            manager.complete_task(workflow_id, "task_2", "# b")

    def test_duplicate_completion_keeps_first_result(self, memory_store, manager, workflow_id):
        manager.next_task(workflow_id)
        manager.complete_task(workflow_id, "task_1", "first")

        with pytest.raises(AlreadyCompletedError):
            manager.complete_task(workflow_id, "task_1", "second")

        task = memory_store.get(workflow_id).task_queue.find("task_1")
        assert task.result == "first"

    def test_late_completion_after_reissue_wins(self, memory_store, manager, workflow_id, clock):
        manager.next_task(workflow_id)
        clock.advance(hours=1)
        manager.next_task(workflow_id)  # reissued

        manager.complete_task(workflow_id, "task_1", "from the first dispatch")
        with pytest.raises(AlreadyCompletedError):
            manager.complete_task(workflow_id, "task_1", "from the reissue")

        task = memory_store.get(workflow_id).task_queue.find("task_1")
        assert task.result == "from the first dispatch"

    def test_empty_content_rejected(self, manager, workflow_id):
        manager.next_task(workflow_id)
        with pytest.raises(ValidationError):
            manager.complete_task(workflow_id, "task_1", "   ")


class TestFailures:
    def test_failed_task_is_redispatched_first(self, manager, workflow_id):
        manager.next_task(workflow_id)
        failed = manager.fail_task(workflow_id, "task_1", "model timeout")
        assert failed.status == TaskStatus.FAILED
        assert failed.failures == 1
        assert failed.last_error == "model timeout"

        outcome = manager.next_task(workflow_id)
        assert outcome.task.task_id == "task_1"
        assert outcome.action == "redispatch"

    def test_budget_exhausted_blocks(self, manager, workflow_id):
        # max_retries=2 → three dispatches of task_1 in total
        for _ in range(3):
            assert manager.next_task(workflow_id).task.task_id == "task_1"
            manager.fail_task(workflow_id, "task_1", "bad")

        for task_id in ("task_2", "task_3"):
            assert manager.next_task(workflow_id).task.task_id == task_id
            manager.complete_task(workflow_id, task_id, "# ok")

        outcome = manager.next_task(workflow_id)
        assert outcome.kind == NextTaskKind.BLOCKED
        assert [t.task_id for t in outcome.blocked] == ["task_1"]
        assert not manager.all_completed(workflow_id)

    def test_retry_unblocks(self, manager, workflow_id):
        for _ in range(3):
            manager.next_task(workflow_id)
            manager.fail_task(workflow_id, "task_1", "bad")

        retried = manager.retry_task(workflow_id, "task_1")
        assert retried.status == TaskStatus.PENDING
        assert retried.failures == 0
        assert manager.next_task(workflow_id).task.task_id == "task_1"

    def test_retry_requires_failed_task(self, manager, workflow_id):
        with pytest.raises(OutOfOrderError):
            manager.retry_task(workflow_id, "task_2")

    def test_fail_requires_dispatched_task(self, manager, workflow_id):
        with pytest.raises(OutOfOrderError):
            manager.fail_task(workflow_id, "task_1", "never dispatched")

    def test_retries_left(self, manager, workflow_id):
        manager.next_task(workflow_id)
        task = manager.fail_task(workflow_id, "task_1", "x")
        assert manager.retries_left(task) == 2


class TestCompletionResults:
    def test_in_enumeration_order(self, memory_store, manager, workflow_id):
        for task_id in ("task_1", "task_2", "task_3"):
            manager.next_task(workflow_id)
            manager.complete_task(workflow_id, task_id, f"doc {task_id}")

        results = manager.completion_results(memory_store.get(workflow_id))
        assert list(results.items()) == [
            ("a.py", "doc task_1"),
            ("b.py", "doc task_2"),
            ("c.py", "doc task_3"),
        ]

    def test_incomplete_queue(self, memory_store, manager, workflow_id):
        with pytest.raises(OutOfOrderError):
            manager.completion_results(memory_store.get(workflow_id))
