"""Fire-and-forget enqueue interface used by pipelines, services and the scheduler."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    def enqueue(
        self,
        name: JobName,
        payload: dict[str, Any],
        *,
        dedupe_key: str | None = None,
    ) -> bool:
        """Enqueue a job; False when the dedupe key was already used."""


class SqliteJobQueue:
    """`JobQueue` over the jobs table."""

    def __init__(self, repository: JobRepository, *, max_attempts: int = 3) -> None:
        self.repository = repository
        self.max_attempts = max_attempts

    def enqueue(
        self,
        name: JobName,
        payload: dict[str, Any],
        *,
        dedupe_key: str | None = None,
    ) -> bool:
        job = self.repository.enqueue(
            name=name,
            payload=payload,
            dedupe_key=dedupe_key,
            max_attempts=self.max_attempts,
        )
        if job is None:
            logger.info("Skipped duplicate job name=%s dedupe_key=%s", name.value, dedupe_key)
            return False
        logger.info("Enqueued job name=%s job_id=%s", name.value, job.job_id)
        return True
