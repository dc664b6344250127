"""Bounded-concurrency job queue feeding the processing worker."""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from ..core.logging_config import configure_worker_logging, get_logger
from ..core.models import JobState, ProcessingJob

JobHandler = Callable[[ProcessingJob], ProcessingJob]
DeadLetterCallback = Callable[[ProcessingJob], None]


class JobQueue:
    """
    Time-ordered queue of processing jobs drained by a fixed pool of threads.

    A claimed job is leased to exactly one worker; the handler returns the
    job with its next state (`complete`, `failed`, or `queued` with a later
    `next_attempt_at`) and the queue settles it. Leases that run past
    `lease_seconds` are reaped: the job is requeued, or failed and handed to
    `on_dead_letter` when its attempts are used up.
    """

    def __init__(
        self,
        worker_count: int = 4,
        lease_seconds: float = 600.0,
        backoff: Callable[[int], float] = lambda attempt: 0.0,
        clock: Callable[[], float] = time.time,
        on_dead_letter: Optional[DeadLetterCallback] = None,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self._worker_count = worker_count
        self._lease_seconds = lease_seconds
        self._backoff = backoff
        self._clock = clock
        self.on_dead_letter = on_dead_letter

        self._jobs: Dict[str, ProcessingJob] = {}
        self._heap: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._threads: List[threading.Thread] = []
        self._stopping = threading.Event()
        self._finished: Deque[ProcessingJob] = deque(maxlen=256)
        self._counters = {
            "enqueued": 0,
            "completed": 0,
            "failed": 0,
            "retried": 0,
            "cancelled": 0,
        }
        self._in_flight = 0
        self._in_flight_peak = 0
        self._logger = get_logger("photo-ingest.queue")

    @property
    def worker_count(self) -> int:
        return self._worker_count

    def enqueue(self, job: ProcessingJob) -> ProcessingJob:
        with self._cond:
            if job.job_id in self._jobs:
                return self._jobs[job.job_id].model_copy(deep=True)
            stored = job.model_copy(deep=True, update={"state": JobState.QUEUED})
            self._jobs[stored.job_id] = stored
            self._push(stored)
            self._counters["enqueued"] += 1
            self._cond.notify()
        self._logger.debug(f"Enqueued job {job.job_id} for image {job.image_id}")
        return stored.model_copy(deep=True)

    def _push(self, job: ProcessingJob) -> None:
        heapq.heappush(self._heap, (job.next_attempt_at, next(self._seq), job.job_id))

    def claim(self, worker_id: str, now: Optional[float] = None) -> Optional[ProcessingJob]:
        """
        Lease the earliest due job to `worker_id`, or return None.

        Jobs whose image already has an attempt in flight are passed over
        until that attempt settles.
        """
        dead: List[ProcessingJob] = []
        claimed: Optional[ProcessingJob] = None
        with self._cond:
            now = self._clock() if now is None else now
            dead = self._reap_expired_leases(now)
            busy = {job.image_id for job in self._jobs.values() if job.state == JobState.PROCESSING}
            deferred: List[Tuple[float, int, str]] = []
            while self._heap:
                due, _, job_id = self._heap[0]
                job = self._jobs.get(job_id)
                if job is None or job.state != JobState.QUEUED or job.next_attempt_at != due:
                    heapq.heappop(self._heap)
                    continue
                if due > now:
                    break
                entry = heapq.heappop(self._heap)
                if job.image_id in busy:
                    deferred.append(entry)
                    continue
                claimed = job.model_copy(
                    deep=True,
                    update={
                        "attempt": job.attempt + 1,
                        "state": JobState.PROCESSING,
                        "lease_owner": worker_id,
                        "lease_expires_at": now + self._lease_seconds,
                    },
                )
                self._jobs[job_id] = claimed
                self._in_flight += 1
                self._in_flight_peak = max(self._in_flight_peak, self._in_flight)
                break
            for entry in deferred:
                heapq.heappush(self._heap, entry)
        self._dispatch_dead_letters(dead)
        return claimed.model_copy(deep=True) if claimed else None

    def _reap_expired_leases(self, now: float) -> List[ProcessingJob]:
        dead: List[ProcessingJob] = []
        for job_id, job in list(self._jobs.items()):
            if job.state != JobState.PROCESSING or job.lease_expires_at is None:
                continue
            if job.lease_expires_at > now:
                continue
            self._in_flight -= 1
            self._logger.warning(
                f"Lease on job {job_id} held by {job.lease_owner} expired (attempt {job.attempt})"
            )
            released = job.model_copy(
                update={
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "last_error": "lease expired before the attempt finished",
                }
            )
            if released.exhausted:
                released.state = JobState.FAILED
                del self._jobs[job_id]
                self._counters["failed"] += 1
                self._finished.append(released)
                dead.append(released)
            else:
                released.state = JobState.QUEUED
                released.next_attempt_at = now
                self._jobs[job_id] = released
                self._push(released)
        return dead

    def _dispatch_dead_letters(self, dead: List[ProcessingJob]) -> None:
        for job in dead:
            if self.on_dead_letter is None:
                continue
            try:
                self.on_dead_letter(job)
            except Exception as e:  # noqa: BLE001
                self._logger.error(f"Dead-letter handler failed for job {job.job_id}: {e}", exc_info=True)

    def settle(self, job: ProcessingJob, worker_id: str) -> bool:
        """
        Record the outcome of a claimed job.

        Returns False when the worker no longer holds the lease (it expired
        and the job was reaped); the outcome is then discarded.
        """
        with self._cond:
            current = self._jobs.get(job.job_id)
            if (
                current is None
                or current.state != JobState.PROCESSING
                or current.lease_owner != worker_id
            ):
                self._logger.warning(
                    f"Worker {worker_id} lost the lease on job {job.job_id}; outcome discarded"
                )
                return False

            self._in_flight -= 1
            settled = job.model_copy(deep=True, update={"lease_owner": None, "lease_expires_at": None})
            if settled.state == JobState.COMPLETE:
                del self._jobs[job.job_id]
                self._counters["completed"] += 1
                self._finished.append(settled)
            elif settled.state in (JobState.FAILED, JobState.CANCELLED):
                del self._jobs[job.job_id]
                self._counters[settled.state.value] += 1
                self._finished.append(settled)
            else:
                settled.state = JobState.QUEUED
                self._jobs[job.job_id] = settled
                self._push(settled)
                self._counters["retried"] += 1
            self._cond.notify_all()
            return True

    def complete(self, job: ProcessingJob) -> bool:
        return self.settle(job.model_copy(update={"state": JobState.COMPLETE}), job.lease_owner or "")

    def retry(self, job: ProcessingJob, error: Optional[str] = None) -> bool:
        """Requeue a claimed job after backoff for its current attempt."""
        update = {
            "state": JobState.QUEUED,
            "next_attempt_at": self._clock() + self._backoff(job.attempt),
        }
        if error is not None:
            update["last_error"] = error
        return self.settle(job.model_copy(update=update), job.lease_owner or "")

    def fail(self, job: ProcessingJob, error: Optional[str] = None) -> bool:
        update = {"state": JobState.FAILED}
        if error is not None:
            update["last_error"] = error
        return self.settle(job.model_copy(update=update), job.lease_owner or "")

    def cancel(self, image_id: str) -> bool:
        """
        Cancel the unclaimed jobs of an image.

        Returns False when a job for the image is already being processed;
        claimed jobs run to completion or exhaustion.
        """
        with self._cond:
            jobs = [job for job in self._jobs.values() if job.image_id == image_id]
            if any(job.state == JobState.PROCESSING for job in jobs):
                return False
            for job in jobs:
                del self._jobs[job.job_id]
                self._counters["cancelled"] += 1
                self._finished.append(job.model_copy(update={"state": JobState.CANCELLED}))
            self._cond.notify_all()
            return bool(jobs)

    def jobs_for_image(self, image_id: str) -> List[ProcessingJob]:
        with self._lock:
            return [j.model_copy(deep=True) for j in self._jobs.values() if j.image_id == image_id]

    def in_flight_for(self, image_id: str) -> bool:
        """True while an attempt for the image holds a lease."""
        with self._lock:
            return any(
                job.image_id == image_id and job.state == JobState.PROCESSING
                for job in self._jobs.values()
            )

    def finished_jobs(self, image_id: Optional[str] = None) -> List[ProcessingJob]:
        """Recently settled terminal jobs, oldest first."""
        with self._lock:
            return [
                j.model_copy(deep=True)
                for j in self._finished
                if image_id is None or j.image_id == image_id
            ]

    def _fallback_outcome(self, job: ProcessingJob, error: Exception) -> ProcessingJob:
        failed = job.model_copy(update={"last_error": f"{type(error).__name__}: {error}"})
        if failed.exhausted:
            failed.state = JobState.FAILED
        else:
            failed.state = JobState.QUEUED
            failed.next_attempt_at = self._clock() + self._backoff(failed.attempt)
        return failed

    def _handle(self, job: ProcessingJob, handler: JobHandler, worker_id: str) -> None:
        try:
            outcome = handler(job)
        except Exception as e:  # noqa: BLE001
            self._logger.error(f"Handler crashed on job {job.job_id}: {e}", exc_info=True)
            outcome = self._fallback_outcome(job, e)
        self.settle(outcome, worker_id)

    def _next_due_in(self) -> Optional[float]:
        with self._lock:
            pending = [j.next_attempt_at for j in self._jobs.values() if j.state == JobState.QUEUED]
        if not pending:
            return None
        return max(0.0, min(pending) - self._clock())

    def run_until_idle(
        self,
        handler: JobHandler,
        worker_id: str = "inline",
        wait_for_delayed: bool = False,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Drain the queue on the calling thread.

        Stops when nothing is due; with `wait_for_delayed` it also sleeps until
        delayed retries become due. Returns the number of attempts run.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        processed = 0
        while True:
            job = self.claim(worker_id)
            if job is not None:
                self._handle(job, handler, worker_id)
                processed += 1
                continue
            wait = self._next_due_in()
            if wait is None or not wait_for_delayed:
                return processed
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return processed
                wait = min(wait, remaining)
            time.sleep(min(wait, 0.5) or 0.001)

    def start(self, handler: JobHandler) -> None:
        """Start the worker pool; at most `worker_count` jobs run at once."""
        if self._threads:
            raise RuntimeError("Job queue is already running")
        self._stopping.clear()
        for index in range(self._worker_count):
            worker_id = f"ingest-worker-{index + 1}"
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker_id, handler),
                name=worker_id,
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        self._logger.info(f"Started {self._worker_count} processing worker(s)")

    def _worker_loop(self, worker_id: str, handler: JobHandler) -> None:
        logger = configure_worker_logging(worker_id)
        logger.debug(f"{worker_id} waiting for jobs")
        while not self._stopping.is_set():
            job = self.claim(worker_id)
            if job is None:
                wait = self._next_due_in()
                with self._cond:
                    if not self._stopping.is_set():
                        self._cond.wait(timeout=0.5 if wait is None else max(min(wait, 0.5), 0.01))
                continue
            self._handle(job, handler, worker_id)
        logger.debug(f"{worker_id} stopped")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self._logger.info("Processing workers stopped")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is queued or in flight; False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._jobs:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=0.1 if remaining is None else min(remaining, 0.1))
            return True

    def stats(self) -> Dict[str, int]:
        with self._lock:
            queued = sum(1 for j in self._jobs.values() if j.state == JobState.QUEUED)
            return {
                **self._counters,
                "queued": queued,
                "in_flight": self._in_flight,
                "in_flight_peak": self._in_flight_peak,
                "workers": self._worker_count,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
