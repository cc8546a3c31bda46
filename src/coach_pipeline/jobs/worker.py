"""Queue workers: one category per worker, a fixed thread pool per category."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from coach_pipeline.jobs.handlers import JobHandlerRegistry, NonRetryableJobError
from coach_pipeline.jobs.models import JobCategory, JobView
from coach_pipeline.jobs.repository import JobRepository
from coach_pipeline.jobs.runtime import GracefulStop
from coach_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


class JobWorker:
    """Claims jobs of one category and runs them to completion or failure."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        handlers: JobHandlerRegistry,
        category: JobCategory,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        retry_base_seconds: int = 30,
        retry_max_seconds: int = 900,
        stale_after_seconds: int = 1_800,
        stop: GracefulStop | None = None,
    ) -> None:
        self.repository = repository
        self.handlers = handlers
        self.category = category
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_after_seconds = stale_after_seconds
        self.stop = stop or GracefulStop()
        self._random = random.Random()  # noqa: S311

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info(
            "Job claimed job_id=%s name=%s attempt=%d/%d worker_id=%s",
            job.job_id,
            job.name.value,
            job.attempt,
            job.max_attempts,
            self.worker_id,
        )
        try:
            with self._heartbeat(job.job_id):
                self.handlers.get(job.name)(job.payload)
        except NonRetryableJobError as error:
            if self.repository.fail(job_id=job.job_id, error_summary=str(error)):
                summary.failed = 1
            logger.error("Job failed permanently job_id=%s error=%s", job.job_id, error)
            return summary
        except Exception as error:  # noqa: BLE001
            self._retry_or_fail(job, error, summary)
            return summary

        if self.repository.complete(job_id=job.job_id):
            summary.succeeded = 1
            logger.info("Job succeeded job_id=%s name=%s", job.job_id, job.name.value)
        else:
            logger.warning("Job was no longer running on completion job_id=%s", job.job_id)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, `max_jobs` is reached or a stop is requested.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while True:
            if self.stop.requested:
                return aggregate
            if max_jobs is not None and aggregate.processed >= max_jobs:
                return aggregate

            summary = self.run_once()
            aggregate.add(summary)

            if summary.processed == 0:
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    return aggregate
                self.stop.sleep(self.poll_interval_seconds)
                continue
            consecutive_idle = 0

    def _claim_job(self) -> JobView | None:
        if self.stop.requested:
            return None
        if self.stale_after_seconds > 0:
            recovered = self.repository.recover_stale_running(
                stale_after=timedelta(seconds=self.stale_after_seconds),
            )
            if recovered:
                logger.warning("Requeued stale jobs count=%d", recovered)
        return self.repository.claim_next(category=self.category, worker_id=self.worker_id)

    @contextmanager
    def _heartbeat(self, job_id: str) -> Iterator[None]:
        """Keep the claim fresh while a long job runs."""

        if self.stale_after_seconds <= 0:
            yield
            return
        done = threading.Event()
        interval = max(1.0, self.stale_after_seconds / 3)

        def _beat() -> None:
            while not done.wait(interval):
                self.repository.touch(job_id=job_id)

        thread = threading.Thread(target=_beat, name=f"heartbeat-{job_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            done.set()
            thread.join()

    def _retry_or_fail(self, job: JobView, error: Exception, summary: WorkerRunSummary) -> None:
        error_summary = f"{type(error).__name__}: {error}"
        if job.attempt < job.max_attempts:
            delay_seconds = self._compute_retry_delay(retry_number=job.attempt)
            if self.repository.schedule_retry(
                job_id=job.job_id,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                error_summary=error_summary,
            ):
                summary.retried = 1
            logger.warning(
                "Job failed, retry scheduled job_id=%s attempt=%d/%d delay=%.1fs error=%s",
                job.job_id,
                job.attempt,
                job.max_attempts,
                delay_seconds,
                error_summary,
            )
            return
        if self.repository.fail(job_id=job.job_id, error_summary=error_summary):
            summary.failed = 1
        logger.error(
            "Job failed after %d attempts job_id=%s error=%s",
            job.attempt,
            job.job_id,
            error_summary,
            exc_info=error,
        )

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)


class WorkerPool:
    """Fixed number of worker threads per category sharing one stop flag."""

    def __init__(
        self,
        *,
        workers: list[JobWorker],
        stop: GracefulStop,
    ) -> None:
        self.workers = workers
        self.stop = stop

    def run(self, *, max_idle_polls: int | None = None) -> WorkerRunSummary:
        summaries = [WorkerRunSummary() for _ in self.workers]

        def _target(index: int, worker: JobWorker) -> None:
            summaries[index] = worker.run_loop(max_idle_polls=max_idle_polls)

        threads = [
            threading.Thread(
                target=_target,
                args=(index, worker),
                name=worker.worker_id,
                daemon=True,
            )
            for index, worker in enumerate(self.workers)
        ]
        with self.stop.installed():
            for thread in threads:
                thread.start()
            while any(thread.is_alive() for thread in threads):
                for thread in threads:
                    thread.join(timeout=0.2)

        aggregate = WorkerRunSummary()
        for summary in summaries:
            aggregate.add(summary)
        logger.info(
            "Worker pool stopped processed=%d succeeded=%d failed=%d retried=%d",
            aggregate.processed,
            aggregate.succeeded,
            aggregate.failed,
            aggregate.retried,
        )
        return aggregate
