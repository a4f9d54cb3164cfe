"""
Background Jobs - non-blocking runner for long graph operations.

Clustering, bulk embedding, imports and date-range ingestion can take
minutes. Jobs run on a small pool of worker threads fed by a priority queue;
each job gets its own ProgressChannel and CancellationToken and keeps its
status and result for later lookup. Only the most recent finished jobs are
retained.
"""

from __future__ import annotations

import itertools
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from config.settings import settings
from mnemo.core.clock import utcnow
from mnemo.core.errors import OperationCancelled
from mnemo.core.logging_config import get_logger
from mnemo.core.progress import CancellationToken, ProgressChannel

logger = get_logger(__name__)

JobOperation = Callable[[ProgressChannel, CancellationToken], Any]


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Job:
    """A queued operation plus its live state."""
    job_id: str
    name: str
    operation: JobOperation
    priority: int = 2  # 1=high, 2=normal, 3=low
    seq: int = 0
    status: JobStatus = JobStatus.QUEUED
    result: Any = None
    error: Optional[str] = None
    created_at: Any = field(default_factory=utcnow)
    started_at: Any = None
    finished_at: Any = None
    progress: ProgressChannel = field(default_factory=ProgressChannel)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)

    @property
    def done(self) -> bool:
        return self.status in _TERMINAL

    def to_dict(self, include_result: bool = True) -> dict[str, Any]:
        history = self.progress.history
        data = {
            "job_id": self.job_id,
            "name": self.name,
            "priority": self.priority,
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "progress": [e.message for e in history],
            "fraction": next((e.fraction for e in reversed(history) if e.fraction is not None), None),
        }
        if include_result:
            data["result"] = self.result
        return data


class BackgroundJobQueue:
    """
    Priority queue of jobs served by worker threads.

    Usage:
        jobs = BackgroundJobQueue()
        job_id = jobs.submit("cluster_init_all",
                             lambda progress, cancel: engine.cluster_init_all(progress=progress, cancel=cancel))
        jobs.get_job(job_id).status
    """

    def __init__(self, num_workers: int = 2, max_finished_jobs: Optional[int] = None):
        self.queue: "queue.PriorityQueue[tuple[int, int, Optional[Job]]]" = queue.PriorityQueue()
        self.num_workers = num_workers
        self.max_finished_jobs = settings.job_history_size if max_finished_jobs is None else max_finished_jobs
        self.workers: list[threading.Thread] = []
        self.running = True
        self.jobs: dict[str, Job] = {}
        self.completed_count = 0
        self.failed_count = 0
        self.cancelled_count = 0
        self.lock = threading.Lock()
        self._seq = itertools.count(1)

        for i in range(num_workers):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"MnemoJob-Worker-{i}",
                daemon=True,
            )
            worker.start()
            self.workers.append(worker)

    def _worker_loop(self):
        while self.running:
            try:
                # (priority, seq, job): lower priority number first, FIFO within one
                _, _, job = self.queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                if job is None:  # shutdown signal
                    break
                self._run(job)
            finally:
                self.queue.task_done()

    def _run(self, job: Job) -> None:
        with self.lock:
            if job.status == JobStatus.CANCELLED:
                return
            job.status = JobStatus.RUNNING
            job.started_at = utcnow()
        logger.info("[Jobs] Running %s (%s)", job.job_id, job.name)

        try:
            result = job.operation(job.progress, job.cancel_token)
        except OperationCancelled:
            self._finish(job, JobStatus.CANCELLED)
        except Exception as e:
            logger.exception("[Jobs] %s failed", job.job_id)
            self._finish(job, JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
        else:
            cancelled = job.cancel_token.cancelled or (isinstance(result, dict) and result.get("cancelled"))
            self._finish(job, JobStatus.CANCELLED if cancelled else JobStatus.COMPLETED, result=result)

    def _finish(self, job: Job, status: JobStatus, result: Any = None, error: Optional[str] = None) -> None:
        with self.lock:
            job.status = status
            job.result = result
            job.error = error
            job.finished_at = utcnow()
            if status == JobStatus.COMPLETED:
                self.completed_count += 1
            elif status == JobStatus.FAILED:
                self.failed_count += 1
            else:
                self.cancelled_count += 1
            self._trim_finished()
        job.progress.drain()
        logger.info("[Jobs] %s %s", job.job_id, status.value)

    def _trim_finished(self) -> None:
        """Drop the oldest finished jobs beyond max_finished_jobs; caller holds the lock."""
        finished = [j for j in self.jobs.values() if j.done]
        for job in finished[:max(len(finished) - self.max_finished_jobs, 0)]:
            del self.jobs[job.job_id]

    def submit(self, name: str, operation: JobOperation, priority: int = 2,
               job_id: Optional[str] = None) -> str:
        """Queue an operation (non-blocking); returns the job id."""
        if not self.running:
            raise RuntimeError("job queue is shut down")
        seq = next(self._seq)
        job = Job(job_id=job_id or f"job_{seq}", name=name, operation=operation, priority=priority, seq=seq)
        with self.lock:
            self.jobs[job.job_id] = job
        self.queue.put((priority, seq, job))
        logger.debug("[Jobs] Queued %s (%s, priority=%d)", job.job_id, name, priority)
        return job.job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.lock:
            return self.jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        with self.lock:
            return sorted(self.jobs.values(), key=lambda j: j.seq)

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation.

        A queued job is cancelled at once; a running job sees its token set
        and stops at its next batch boundary. Returns False for unknown or
        finished jobs.
        """
        with self.lock:
            job = self.jobs.get(job_id)
            if job is None or job.done:
                return False
            job.cancel_token.cancel()
            if job.status == JobStatus.QUEUED:
                job.status = JobStatus.CANCELLED
                job.finished_at = utcnow()
                self.cancelled_count += 1
                self._trim_finished()
        return True

    def wait_for_completion(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted job is finished; False on timeout."""
        start = time.time()
        while True:
            with self.lock:
                pending = [j for j in self.jobs.values() if not j.done]
            if not pending:
                return True
            if timeout is not None and time.time() - start > timeout:
                return False
            time.sleep(0.05)

    def get_stats(self) -> dict:
        with self.lock:
            return {
                "queued": sum(1 for j in self.jobs.values() if j.status == JobStatus.QUEUED),
                "running": sum(1 for j in self.jobs.values() if j.status == JobStatus.RUNNING),
                "total_jobs": len(self.jobs),
                "completed": self.completed_count,
                "failed": self.failed_count,
                "cancelled": self.cancelled_count,
                "workers": self.num_workers,
            }

    def shutdown(self, wait: bool = True):
        """Stop the workers; queued jobs are cancelled, running ones asked to stop."""
        self.running = False
        with self.lock:
            for job in list(self.jobs.values()):
                if job.status == JobStatus.RUNNING:
                    job.cancel_token.cancel()
                elif job.status == JobStatus.QUEUED:
                    job.cancel_token.cancel()
                    job.status = JobStatus.CANCELLED
                    job.finished_at = utcnow()
                    self.cancelled_count += 1
        # Priority 0 sorts ahead of any real job
        for _ in self.workers:
            self.queue.put((0, next(self._seq), None))
        if wait:
            for worker in self.workers:
                worker.join(timeout=5.0)
