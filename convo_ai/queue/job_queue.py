"""
In-process job queue running on an APScheduler BackgroundScheduler.

Each queue gets its own thread-pool executor sized to the worker concurrency.
A failed attempt is rescheduled as a one-shot date job after the backoff
delay; a job that exhausts its attempts is terminally failed.
"""
import threading
import time
import traceback
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.base import BaseScheduler

from convo_ai.errors import JobDeferred, UnrecoverableJobError
from convo_ai.queue.config import QueueConfig, RetentionPolicy
from convo_ai.utils.logger import get_logger

logger = get_logger("queue")


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueueJob:
    id: str
    name: str
    data: Dict[str, Any]
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    result: Any = None
    failed_reason: Optional[str] = None
    retry_delays: List[float] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None
    done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "attempts_made": self.attempts_made,
            "result": self.result,
            "failed_reason": self.failed_reason,
            "retry_delays": list(self.retry_delays),
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class SlidingWindowLimiter:
    """At most `max_jobs` job starts per rolling window"""

    def __init__(self, max_jobs: int, duration: float, clock: Callable[[], float] = time.monotonic):
        self.max_jobs = max_jobs
        self.duration = duration
        self._clock = clock
        self._starts: deque = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> float:
        """Returns 0 when a slot was taken, otherwise seconds until one frees up"""
        with self._lock:
            now = self._clock()
            while self._starts and self._starts[0] <= now - self.duration:
                self._starts.popleft()
            if len(self._starts) < self.max_jobs:
                self._starts.append(now)
                return 0.0
            return max(self._starts[0] + self.duration - now, 0.001)


FailureListener = Callable[[QueueJob, BaseException, bool], None]
CompletionListener = Callable[[QueueJob], None]


class JobQueue:
    """Named queue with retries, backoff, rate limiting and retention"""

    def __init__(
        self,
        config: QueueConfig,
        processor: Callable[[QueueJob], Any],
        scheduler: BaseScheduler,
    ):
        self.config = config
        self.name = config.name
        self.processor = processor
        self.scheduler = scheduler
        self.limiter = SlidingWindowLimiter(
            config.worker.limiter.max, config.worker.limiter.duration / 1000
        )
        self._jobs: "OrderedDict[str, QueueJob]" = OrderedDict()
        self._lock = threading.Lock()
        self._failure_listeners: List[FailureListener] = []
        self._completion_listeners: List[CompletionListener] = []

        scheduler.add_executor(
            ThreadPoolExecutor(max_workers=config.worker.concurrency), alias=self.name
        )

    def on_failed(self, listener: FailureListener):
        """listener(job, error, final) runs after every failed attempt"""
        self._failure_listeners.append(listener)

    def on_completed(self, listener: CompletionListener):
        self._completion_listeners.append(listener)

    def enqueue(self, data: Dict[str, Any], name: str = "default", job_id: Optional[str] = None) -> str:
        job = QueueJob(id=job_id or uuid.uuid4().hex, name=name, data=data)
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists in queue {self.name}")
            self._jobs[job.id] = job
        logger.info(f"Enqueued job {job.id} ({name}) on {self.name}")
        self._schedule(job.id)
        return job.id

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> QueueJob:
        """Block until the job completes or fails"""
        job = self.get_job(job_id)
        if job is None:
            raise KeyError(f"Job {job_id} not found in queue {self.name}")
        if not job.done.wait(timeout):
            raise TimeoutError(f"Job {job_id} did not finish within {timeout}s")
        return job

    def counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts

    def _schedule(self, job_id: str, delay: float = 0.0, run_at: Optional[datetime] = None):
        run_date = run_at or (_now() + timedelta(seconds=delay))
        self.scheduler.add_job(
            self._run,
            trigger="date",
            run_date=run_date,
            args=[job_id],
            id=f"{self.name}:{job_id}:{uuid.uuid4().hex[:8]}",
            executor=self.name,
            misfire_grace_time=None,
        )

    def _run(self, job_id: str):
        job = self.get_job(job_id)
        if job is None or job.finished:
            return

        wait = self.limiter.try_acquire()
        if wait > 0:
            logger.debug(f"Queue {self.name} limiter full, job {job_id} waits {wait:.2f}s")
            self._schedule(job_id, delay=wait)
            return

        with self._lock:
            job.status = JobStatus.ACTIVE
            job.attempts_made += 1
            attempt = job.attempts_made
        logger.info(f"Processing job {job_id} on {self.name} (attempt {attempt}/{self.config.attempts})")

        try:
            result = self.processor(job)
        except JobDeferred as e:
            with self._lock:
                job.attempts_made -= 1
                job.status = JobStatus.WAITING
            logger.warning(f"Job {job_id} deferred until {e.run_at.isoformat()}: {e}")
            self._schedule(job_id, run_at=e.run_at)
            return
        except Exception as e:
            final = isinstance(e, UnrecoverableJobError) or attempt >= self.config.attempts
            self._handle_failure(job, e, final)
            return

        with self._lock:
            job.status = JobStatus.COMPLETED
            job.result = result
            job.finished_at = _now()
        logger.info(f"Job {job_id} completed on {self.name}")
        for listener in self._completion_listeners:
            self._notify(listener, job)
        job.done.set()
        self.prune()

    def _handle_failure(self, job: QueueJob, error: BaseException, final: bool):
        if final:
            with self._lock:
                job.status = JobStatus.FAILED
                job.failed_reason = str(error)
                job.finished_at = _now()
            logger.error(
                f"Job {job.id} on {self.name} failed permanently after {job.attempts_made} attempts: {error}\n"
                + "".join(traceback.format_exception(type(error), error, error.__traceback__))
            )
        else:
            delay = self.config.backoff.delay_for(job.attempts_made)
            with self._lock:
                job.status = JobStatus.WAITING
                job.failed_reason = str(error)
                job.retry_delays.append(delay)
            logger.warning(
                f"Job {job.id} on {self.name} failed (attempt {job.attempts_made}/{self.config.attempts}), "
                f"retrying in {delay:.2f}s: {error}"
            )

        for listener in self._failure_listeners:
            self._notify(listener, job, error, final)

        if final:
            job.done.set()
            self.prune()
        else:
            self._schedule(job.id, delay=job.retry_delays[-1])

    def _notify(self, listener: Callable, *args):
        try:
            listener(*args)
        except Exception:
            logger.exception(f"Listener {listener!r} failed on queue {self.name}")

    def prune(self) -> int:
        """Apply removeOnComplete / removeOnFail; returns the number of jobs removed"""
        removed = 0
        with self._lock:
            removed += self._prune_status(JobStatus.COMPLETED, self.config.remove_on_complete)
            removed += self._prune_status(JobStatus.FAILED, self.config.remove_on_fail)
        if removed:
            logger.debug(f"Pruned {removed} finished jobs from {self.name}")
        return removed

    def _prune_status(self, status: JobStatus, policy: RetentionPolicy) -> int:
        """Caller must hold the lock"""
        cutoff = _now() - timedelta(seconds=policy.age)
        finished = sorted(
            (job for job in self._jobs.values() if job.status == status),
            key=lambda job: job.finished_at,
            reverse=True,
        )
        doomed = [
            job.id for index, job in enumerate(finished)
            if index >= policy.count or job.finished_at < cutoff
        ]
        for job_id in doomed:
            del self._jobs[job_id]
        return len(doomed)
