import threading
import time

import pytest

from mnemo.core.errors import OperationCancelled
from mnemo.integration.background_jobs import BackgroundJobQueue, JobStatus


@pytest.fixture
def jobs():
    queue = BackgroundJobQueue(num_workers=1)
    yield queue
    queue.shutdown(wait=True)


def _blocker(started, release):
    def operation(progress, cancel):
        started.set()
        release.wait(timeout=5)
        return "unblocked"
    return operation


def test_job_completes_with_result_and_progress(jobs):
    def operation(progress, cancel):
        progress.emit("work", "halfway", 0.5)
        progress.emit("work", "done", 1.0)
        return {"success": True, "value": 42}

    job_id = jobs.submit("answer", operation)
    assert jobs.wait_for_completion(timeout=5)
    job = jobs.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    data = job.to_dict()
    assert data["result"] == {"success": True, "value": 42}
    assert data["progress"] == ["halfway", "done"]
    assert data["fraction"] == 1.0
    assert jobs.get_stats()["completed"] == 1


def test_failing_job_records_error(jobs):
    def operation(progress, cancel):
        raise KeyError("missing")

    job_id = jobs.submit("broken", operation)
    jobs.wait_for_completion(timeout=5)
    job = jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.startswith("KeyError")
    assert jobs.get_stats()["failed"] == 1


def test_higher_priority_runs_first(jobs):
    started, release = threading.Event(), threading.Event()
    order = []
    jobs.submit("blocker", _blocker(started, release))
    assert started.wait(timeout=5)
    jobs.submit("low", lambda p, c: order.append("low"), priority=3)
    jobs.submit("high", lambda p, c: order.append("high"), priority=1)
    jobs.submit("normal", lambda p, c: order.append("normal"))
    release.set()
    assert jobs.wait_for_completion(timeout=5)
    assert order == ["high", "normal", "low"]


def test_cancel_queued_job_never_runs(jobs):
    started, release = threading.Event(), threading.Event()
    ran = []
    jobs.submit("blocker", _blocker(started, release))
    assert started.wait(timeout=5)
    job_id = jobs.submit("victim", lambda p, c: ran.append(True))
    assert jobs.cancel(job_id)
    release.set()
    assert jobs.wait_for_completion(timeout=5)
    assert ran == []
    assert jobs.get_job(job_id).status == JobStatus.CANCELLED
    assert not jobs.cancel(job_id)
    assert not jobs.cancel("nope")


def test_cancel_running_job_uses_token(jobs):
    started = threading.Event()

    def operation(progress, cancel):
        started.set()
        for _ in range(500):
            cancel.raise_if_cancelled()
            time.sleep(0.01)
        raise AssertionError("never cancelled")

    job_id = jobs.submit("long", operation)
    assert started.wait(timeout=5)
    assert jobs.cancel(job_id)
    assert jobs.wait_for_completion(timeout=5)
    assert jobs.get_job(job_id).status == JobStatus.CANCELLED


def test_result_flagged_cancelled_marks_job_cancelled(jobs):
    job_id = jobs.submit("partial", lambda p, c: {"success": False, "cancelled": True})
    jobs.wait_for_completion(timeout=5)
    assert jobs.get_job(job_id).status == JobStatus.CANCELLED


def test_operation_cancelled_exception(jobs):
    def operation(progress, cancel):
        raise OperationCancelled("stop")

    job_id = jobs.submit("stopped", operation)
    jobs.wait_for_completion(timeout=5)
    assert jobs.get_job(job_id).status == JobStatus.CANCELLED


def test_submit_after_shutdown_is_rejected():
    queue = BackgroundJobQueue(num_workers=1)
    queue.shutdown(wait=True)
    with pytest.raises(RuntimeError):
        queue.submit("late", lambda p, c: None)


def test_only_recent_finished_jobs_are_kept():
    queue = BackgroundJobQueue(num_workers=1, max_finished_jobs=2)
    try:
        ids = [queue.submit(f"job{i}", lambda p, c: p.emit("work", "tick", 1.0)) for i in range(5)]
        assert queue.wait_for_completion(timeout=5)
        assert [j.job_id for j in queue.list_jobs()] == ids[-2:]
        assert queue.get_job(ids[0]) is None
        assert queue.get_stats()["completed"] == 5
        assert queue.get_job(ids[-1]).to_dict()["progress"] == ["tick"]
    finally:
        queue.shutdown(wait=True)


def test_progress_history_is_bounded():
    def chatty(progress, cancel):
        for n in range(500):
            progress.emit("work", f"step {n}")

    queue = BackgroundJobQueue(num_workers=1)
    try:
        job_id = queue.submit("chatty", chatty)
        assert queue.wait_for_completion(timeout=5)
        messages = queue.get_job(job_id).to_dict()["progress"]
        assert len(messages) == 200
        assert messages[-1] == "step 499"
    finally:
        queue.shutdown(wait=True)


def test_shutdown_cancels_queued_jobs():
    queue = BackgroundJobQueue(num_workers=1)
    started, release = threading.Event(), threading.Event()
    ran = []
    queue.submit("blocker", _blocker(started, release))
    assert started.wait(timeout=5)
    waiting = queue.submit("waiting", lambda p, c: ran.append(True))
    queue.shutdown(wait=False)
    assert queue.get_job(waiting).status == JobStatus.CANCELLED
    release.set()
    assert queue.wait_for_completion(timeout=5)
    for worker in queue.workers:
        worker.join(timeout=5)
    assert ran == []
