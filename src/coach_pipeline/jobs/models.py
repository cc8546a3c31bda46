"""Job queue domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Lifecycle status for queued jobs."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobCategory(str, Enum):
    """Worker pools pull from one category each."""

    PIPELINE = "pipeline"
    NOTIFICATIONS = "notifications"
    DOCUMENTS = "documents"


class JobName(str, Enum):
    EMAIL_PARSE_OR_ANALYZE = "email-parse-or-analyze"
    BID_EVALUATION = "bid-evaluation"
    QUOTE_GENERATION = "quote-generation"
    JOB_CONFIRMATION = "job-confirmation"
    SEND_EMAIL = "send-email"
    GENERATE_JOB_SHEET = "generate-job-sheet"
    GENERATE_DRIVER_BRIEFING = "generate-driver-briefing"


JOB_CATEGORIES: dict[JobName, JobCategory] = {
    JobName.EMAIL_PARSE_OR_ANALYZE: JobCategory.PIPELINE,
    JobName.BID_EVALUATION: JobCategory.PIPELINE,
    JobName.QUOTE_GENERATION: JobCategory.PIPELINE,
    JobName.JOB_CONFIRMATION: JobCategory.PIPELINE,
    JobName.SEND_EMAIL: JobCategory.NOTIFICATIONS,
    JobName.GENERATE_JOB_SHEET: JobCategory.DOCUMENTS,
    JobName.GENERATE_DRIVER_BRIEFING: JobCategory.DOCUMENTS,
}


def category_for(name: JobName) -> JobCategory:
    return JOB_CATEGORIES[name]


@dataclass(slots=True)
class JobView:
    """Readable queued job state."""

    job_id: str
    name: JobName
    category: JobCategory
    payload: dict[str, Any]
    dedupe_key: str | None
    status: JobStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    worker_id: str | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    job: JobView
    events: list[JobEventView]
