"""
Import Job Scheduler
====================
Runs import jobs on a bounded pool of worker threads.

Architecture:
    - One dispatcher thread picks the oldest ready Queued job (creation
      order) whenever a worker slot is free, claims it as Running and
      hands it to the pool
    - N worker threads each run one job's pipeline to completion
    - Only the worker running a job writes that job's state afterwards
    - Retriable failures go back to Queued with ``next_retry_at``
      (immediate → 30s → 2min by default) until attempts are exhausted
    - Cancellation is cooperative: a flag checked between steps
    - On start, jobs left Running by a previous process are marked
      Failed and Queued jobs are re-enqueued in creation order

Usage:
    scheduler = ImportScheduler(config=config)
    scheduler.start()
    scheduler.submit(job_id)
    job = scheduler.wait_for(job_id)
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
import traceback
from datetime import datetime, timedelta
from typing import Optional

from . import database as db
from . import storage
from .engine import ImportConfig, ImportPipeline, JobContext
from .errors import ErrorKind, JobCancelled, PackageImportError
from .models import ImportJob, JobStatus, JobStep

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Unexpected internal error"
RESTART_MESSAGE = "The import was interrupted by a service restart; please resubmit"


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds")


class ImportScheduler:
    """
    Bounded, FIFO import job scheduler.

    Args:
        pipeline: Runs one job attempt; anything with
            ``run(job, ctx, on_step)``. Defaults to ``ImportPipeline(config)``.
        config: Concurrency, timeout, retry and storage settings.
    """

    def __init__(self, pipeline: Optional[ImportPipeline] = None,
                 config: Optional[ImportConfig] = None):
        self.config = config or getattr(pipeline, "config", None) or ImportConfig()
        self.config.validate()
        self.pipeline = pipeline or ImportPipeline(self.config)
        self.db_path = self.config.db_path

        self._slots = threading.BoundedSemaphore(self.config.max_concurrent_jobs)
        self._cond = threading.Condition()
        # job_id → (creation seq, monotonic ready time)
        self._pending: dict[str, tuple[int, float]] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._handoff: queue.Queue = queue.Queue()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

    # ─── Lifecycle ────────────────────────────────────────────────────────

    def start(self):
        """Recover stale jobs, re-enqueue queued ones and start the threads."""
        if self._threads:
            return
        self._stopping.clear()

        stale = db.fail_running_jobs(RESTART_MESSAGE, db_path=self.db_path)
        for job_id in stale:
            logger.warning(f"Job {job_id}: was Running at startup, marked Failed")

        for row in db.list_queued_jobs(db_path=self.db_path):
            self._enqueue(row["id"], row["seq"], self._delay_until(row["next_retry_at"]))

        dispatcher = threading.Thread(
            target=self._dispatch_loop, daemon=True, name="import-dispatcher"
        )
        self._threads.append(dispatcher)
        for index in range(self.config.max_concurrent_jobs):
            self._threads.append(threading.Thread(
                target=self._worker_loop, daemon=True,
                name=f"import-worker-{index + 1}",
            ))
        for thread in self._threads:
            thread.start()

        logger.info(
            f"Scheduler started: {self.config.max_concurrent_jobs} workers, "
            f"{len(self._pending)} queued jobs, {len(stale)} stale jobs failed"
        )

    def stop(self, timeout: float = 10.0):
        """Stop dispatching; running jobs finish their current attempt."""
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        for _ in range(self.config.max_concurrent_jobs):
            self._handoff.put(None)
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Scheduler stopped")

    # ─── Public API ───────────────────────────────────────────────────────

    def submit(self, job_id: str):
        """
        Enqueue a Queued job record for immediate dispatch. A job the
        dispatcher already picked up from the table is left alone.
        """
        row = db.get_job(job_id, db_path=self.db_path)
        if row is None:
            raise KeyError(f"Job not found: {job_id}")
        if row["status"] != JobStatus.QUEUED.value:
            logger.debug(f"Job {job_id}: already {row['status']}, not re-enqueued")
            return
        self._enqueue(job_id, row["seq"], time.monotonic())
        logger.info(f"Job {job_id}: submitted")

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a job. Queued jobs are cancelled immediately; running jobs
        stop at their next step boundary. Returns False for unknown or
        already finished jobs.
        """
        for _ in range(2):
            row = db.get_job(job_id, db_path=self.db_path)
            if row is None:
                return False
            status = JobStatus(row["status"])

            if status == JobStatus.QUEUED:
                if db.transition_job(
                    job_id, JobStatus.QUEUED, JobStatus.CANCELLED,
                    finished_at=_iso(datetime.now()), next_retry_at=None,
                    db_path=self.db_path,
                ):
                    with self._cond:
                        self._pending.pop(job_id, None)
                    storage.delete_job_dir(job_id, self.config.data_dir)
                    logger.info(f"Job {job_id}: cancelled while queued")
                    return True
                continue  # claimed in between; re-read

            if status == JobStatus.RUNNING:
                with self._cond:
                    event = self._cancel_events.get(job_id)
                if event is None:
                    return False
                event.set()
                logger.info(f"Job {job_id}: cancellation requested")
                return True

            return False
        return False

    def wait_for(self, job_id: str, timeout: Optional[float] = None,
                 poll: float = 0.05) -> ImportJob:
        """Block until the job is terminal (or the timeout elapses)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            row = db.get_job(job_id, db_path=self.db_path)
            if row is None:
                raise KeyError(f"Job not found: {job_id}")
            job = ImportJob.from_row(row)
            if job.status.is_terminal:
                return job
            if deadline is not None and time.monotonic() >= deadline:
                return job
            time.sleep(poll)

    @property
    def queued_count(self) -> int:
        with self._cond:
            return len(self._pending)

    # ─── Dispatcher ───────────────────────────────────────────────────────

    def _enqueue(self, job_id: str, seq: int, ready_at: float):
        with self._cond:
            self._pending[job_id] = (seq, ready_at)
            self._cond.notify_all()

    @staticmethod
    def _delay_until(next_retry_at: Optional[str]) -> float:
        now = time.monotonic()
        if not next_retry_at:
            return now
        delay = (datetime.fromisoformat(next_retry_at) - datetime.now()).total_seconds()
        return now + max(delay, 0.0)

    def _next_ready(self) -> Optional[str]:
        """Pop the oldest ready job, waiting until one is ready."""
        poll = self.config.poll_interval_seconds
        while not self._stopping.is_set():
            with self._cond:
                now = time.monotonic()
                ready = [(seq, job_id) for job_id, (seq, at) in self._pending.items()
                         if at <= now]
                if ready:
                    _, job_id = min(ready)
                    del self._pending[job_id]
                    return job_id
                upcoming = [at for _, at in self._pending.values()]
                wait = min(upcoming) - now if upcoming else poll
                self._cond.wait(timeout=min(max(wait, 0.001), poll))
            if not upcoming:
                self._refresh_queue()
        return None

    def _refresh_queue(self):
        """Pick up Queued jobs created by other processes (e.g. the CLI)."""
        rows = db.list_queued_jobs(db_path=self.db_path)
        with self._cond:
            for row in rows:
                if row["id"] not in self._pending:
                    self._pending[row["id"]] = (
                        row["seq"], self._delay_until(row["next_retry_at"])
                    )

    def _dispatch_loop(self):
        poll = self.config.poll_interval_seconds
        while not self._stopping.is_set():
            if not self._slots.acquire(timeout=poll):
                continue
            job_id = self._next_ready()
            if job_id is None:
                self._slots.release()
                continue

            event = threading.Event()
            with self._cond:
                self._cancel_events[job_id] = event
            claimed = db.transition_job(
                job_id, JobStatus.QUEUED, JobStatus.RUNNING,
                started_at=_iso(datetime.now()), step=None, progress=0,
                next_retry_at=None, db_path=self.db_path,
            )
            if not claimed:
                # Cancelled (or removed) after it was queued
                with self._cond:
                    self._cancel_events.pop(job_id, None)
                self._slots.release()
                continue
            self._handoff.put(job_id)

    # ─── Workers ──────────────────────────────────────────────────────────

    def _worker_loop(self):
        while True:
            job_id = self._handoff.get()
            if job_id is None:
                return
            try:
                self._run_job(job_id)
            except Exception:
                # Bookkeeping failures must not kill the worker thread
                logger.error(
                    f"Job {job_id}: scheduler error\n{traceback.format_exc()}"
                )
            finally:
                with self._cond:
                    self._cancel_events.pop(job_id, None)
                self._slots.release()

    def _run_job(self, job_id: str):
        row = db.get_job(job_id, db_path=self.db_path)
        job = ImportJob.from_row(row)
        attempt = job.attempts + 1
        db.update_job(job_id, attempts=attempt, db_path=self.db_path)
        job.attempts = attempt

        with self._cond:
            event = self._cancel_events.setdefault(job_id, threading.Event())
        ctx = JobContext.start(
            job_id, self.config.job_timeout_seconds,
            attempt=attempt, max_attempts=self.config.max_attempts,
            cancel_event=event,
        )

        def on_step(step: JobStep, progress: int):
            db.update_job(job_id, step=step, progress=progress, db_path=self.db_path)

        logger.info(f"Job {job_id}: attempt {attempt}/{self.config.max_attempts}")
        try:
            outcome = self.pipeline.run(job, ctx, on_step)
        except JobCancelled:
            self._finish(job_id, JobStatus.CANCELLED)
            storage.delete_job_dir(job_id, self.config.data_dir)
            logger.info(f"Job {job_id}: cancelled")
        except PackageImportError as e:
            self._handle_failure(job, attempt, e)
        except Exception:
            details = traceback.format_exc()
            logger.error(f"Job {job_id}: unexpected error\n{details}")
            self._finish(
                job_id, JobStatus.FAILED,
                error_kind=ErrorKind.INTERNAL.value,
                error_message=INTERNAL_ERROR_MESSAGE,
                error_details=details,
            )
        else:
            self._finish(
                job_id, JobStatus.SUCCEEDED,
                progress=100,
                package_id=outcome.package_id,
                confidence=outcome.confidence,
                warnings_json=json.dumps(
                    [w.model_dump(mode="json") for w in outcome.warnings],
                    ensure_ascii=False,
                ),
                error_kind=None, error_message=None, error_details=None,
            )
            logger.info(
                f"Job {job_id}: succeeded → package {outcome.package_id} "
                f"({len(outcome.warnings)} warnings)"
            )

    def _handle_failure(self, job: ImportJob, attempt: int, error: PackageImportError):
        if error.retriable and attempt < self.config.max_attempts:
            delay = self.config.backoff_before(attempt + 1)
            db.update_job(
                job.id,
                status=JobStatus.QUEUED,
                step=None,
                error_kind=error.kind.value,
                error_message=error.message,
                error_details=error.detail,
                next_retry_at=_iso(datetime.now() + timedelta(seconds=delay)),
                db_path=self.db_path,
            )
            seq = db.get_job(job.id, db_path=self.db_path)["seq"]
            self._enqueue(job.id, seq, time.monotonic() + delay)
            logger.warning(
                f"Job {job.id}: {error.kind.value} on attempt {attempt}, "
                f"retrying in {delay:.0f}s ({error.detail or error.message})"
            )
            return

        logger.error(
            f"Job {job.id}: failed with {error.kind.value} after "
            f"{attempt} attempt(s): {error.message}"
            + (f" ({error.detail})" if error.detail else "")
        )
        self._finish(
            job.id, JobStatus.FAILED,
            error_kind=error.kind.value,
            error_message=error.message,
            error_details=error.detail,
        )

    def _finish(self, job_id: str, status: JobStatus, **fields):
        db.update_job(
            job_id,
            status=status,
            finished_at=_iso(datetime.now()),
            next_retry_at=None,
            db_path=self.db_path,
            **fields,
        )
