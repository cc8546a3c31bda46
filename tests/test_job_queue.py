from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col

from coach_pipeline.jobs.delivery import FileDocumentRenderer, LoggingEmailSender
from coach_pipeline.jobs.handlers import JobHandlerRegistry, NonRetryableJobError, build_handlers
from coach_pipeline.jobs.models import JobCategory, JobName, JobStatus
from coach_pipeline.jobs.queue import SqliteJobQueue
from coach_pipeline.jobs.repository import JobRepository
from coach_pipeline.jobs.runtime import GracefulStop
from coach_pipeline.jobs.worker import JobWorker, WorkerPool
from coach_pipeline.pipelines import (
    BidEvaluationPipeline,
    IntakePipeline,
    JobConfirmationPipeline,
    PipelineDependencies,
    QuoteGenerationPipeline,
)
from coach_pipeline.storage.common import to_db_datetime, utc_now
from coach_pipeline.storage.sqlmodel_models import Job

pytestmark = [
    allure.epic("Jobs"),
    allure.feature("Queue Reliability"),
]


def _worker(
    jobs: JobRepository,
    registry: JobHandlerRegistry,
    *,
    category: JobCategory = JobCategory.NOTIFICATIONS,
    worker_id: str = "test-worker",
    stop: GracefulStop | None = None,
) -> JobWorker:
    return JobWorker(
        repository=jobs,
        handlers=registry,
        category=category,
        worker_id=worker_id,
        poll_interval_seconds=0.0,
        retry_base_seconds=0,
        retry_max_seconds=0,
        stale_after_seconds=0,
        stop=stop,
    )


def _registry(name: JobName, handler: Any) -> JobHandlerRegistry:
    registry = JobHandlerRegistry()
    registry.register(name, handler)
    return registry


def test_dedupe_key_enqueues_once(queue: SqliteJobQueue, jobs: JobRepository) -> None:
    payload = {"to": "a@example.com", "subject": "Hi", "html": "<p>Hi</p>"}

    assert queue.enqueue(JobName.SEND_EMAIL, payload, dedupe_key="quote-email:1") is True
    assert queue.enqueue(JobName.SEND_EMAIL, payload, dedupe_key="quote-email:1") is False
    assert queue.enqueue(JobName.SEND_EMAIL, payload) is True
    assert queue.enqueue(JobName.SEND_EMAIL, payload) is True

    queued = jobs.list_jobs(name=JobName.SEND_EMAIL)
    assert len(queued) == 3
    assert {job.category for job in queued} == {JobCategory.NOTIFICATIONS}
    assert {job.max_attempts for job in queued} == {3}


def test_claim_respects_category_and_run_after(jobs: JobRepository) -> None:
    jobs.enqueue(name=JobName.BID_EVALUATION, payload={"enquiry_id": "e1"})
    jobs.enqueue(
        name=JobName.SEND_EMAIL,
        payload={"to": "x"},
        run_after=utc_now() + timedelta(hours=1),
    )

    assert jobs.claim_next(category=JobCategory.NOTIFICATIONS, worker_id="w1") is None
    claimed = jobs.claim_next(category=JobCategory.PIPELINE, worker_id="w1")

    assert claimed is not None
    assert claimed.name == JobName.BID_EVALUATION
    assert claimed.status == JobStatus.RUNNING
    assert claimed.attempt == 1
    assert claimed.worker_id == "w1"
    assert jobs.claim_next(category=JobCategory.PIPELINE, worker_id="w2") is None


def test_worker_completes_job(jobs: JobRepository) -> None:
    seen: list[dict[str, Any]] = []
    job = jobs.enqueue(name=JobName.SEND_EMAIL, payload={"to": "a@example.com"})
    assert job is not None

    summary = _worker(jobs, _registry(JobName.SEND_EMAIL, seen.append)).run_once()

    assert (summary.processed, summary.succeeded, summary.failed) == (1, 1, 0)
    assert seen == [{"to": "a@example.com"}]
    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.SUCCEEDED
    assert [event.event_type for event in details.events] == ["enqueued", "claimed", "succeeded"]


def test_worker_retries_then_fails_after_max_attempts(jobs: JobRepository) -> None:
    def _flaky(_: dict[str, Any]) -> None:
        raise RuntimeError("smtp unavailable")

    job = jobs.enqueue(name=JobName.SEND_EMAIL, payload={}, max_attempts=3)
    assert job is not None

    summary = _worker(jobs, _registry(JobName.SEND_EMAIL, _flaky)).run_loop(max_idle_polls=1)

    assert (summary.processed, summary.retried, summary.failed) == (3, 2, 1)
    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.FAILED
    assert details.job.attempt == 3
    assert details.job.error_summary == "RuntimeError: smtp unavailable"
    assert [event.event_type for event in details.events].count("retry_scheduled") == 2


def test_non_retryable_error_fails_immediately(jobs: JobRepository) -> None:
    def _broken(_: dict[str, Any]) -> None:
        raise NonRetryableJobError("bad payload")

    job = jobs.enqueue(name=JobName.SEND_EMAIL, payload={}, max_attempts=5)
    assert job is not None

    summary = _worker(jobs, _registry(JobName.SEND_EMAIL, _broken)).run_loop(max_idle_polls=1)

    assert (summary.processed, summary.retried, summary.failed) == (1, 0, 1)
    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.FAILED
    assert details.job.attempt == 1


def test_unregistered_job_name_fails_without_retry(jobs: JobRepository) -> None:
    jobs.enqueue(name=JobName.GENERATE_JOB_SHEET, payload={"booking_id": "b1"})

    summary = _worker(
        jobs,
        JobHandlerRegistry(),
        category=JobCategory.DOCUMENTS,
    ).run_once()

    assert summary.failed == 1
    failed = jobs.list_jobs(status=JobStatus.FAILED)
    assert failed[0].error_summary == "No handler registered for job generate-job-sheet."


def test_recover_stale_running_requeues_with_event(engine: Engine, jobs: JobRepository) -> None:
    job = jobs.enqueue(name=JobName.QUOTE_GENERATION, payload={"enquiry_id": "e1"})
    assert job is not None
    assert jobs.claim_next(category=JobCategory.PIPELINE, worker_id="w1") is not None
    stale = to_db_datetime(utc_now() - timedelta(hours=2))
    with Session(engine) as session:
        session.exec(
            sa_update(Job)
            .where(col(Job.job_id) == job.job_id)
            .values(heartbeat_at=stale, started_at=stale),
        )
        session.commit()

    with pytest.raises(ValueError, match="stale_after"):
        jobs.recover_stale_running(stale_after=timedelta(0))
    recovered = jobs.recover_stale_running(stale_after=timedelta(seconds=30))

    assert recovered == 1
    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.QUEUED
    assert details.job.worker_id is None
    assert details.events[-1].event_type == "stale_recovered"


def test_stopped_worker_claims_nothing(jobs: JobRepository) -> None:
    jobs.enqueue(name=JobName.SEND_EMAIL, payload={})
    stop = GracefulStop()
    stop.request()

    summary = _worker(jobs, _registry(JobName.SEND_EMAIL, lambda _: None), stop=stop).run_loop()

    assert summary.processed == 0
    assert jobs.list_jobs(status=JobStatus.QUEUED) != []


def test_worker_pool_drains_category(jobs: JobRepository) -> None:
    seen: list[dict[str, Any]] = []
    for index in range(6):
        jobs.enqueue(name=JobName.SEND_EMAIL, payload={"index": index})
    stop = GracefulStop()
    registry = _registry(JobName.SEND_EMAIL, seen.append)
    pool = WorkerPool(
        workers=[_worker(jobs, registry, worker_id=f"w{n}", stop=stop) for n in range(2)],
        stop=stop,
    )

    summary = pool.run(max_idle_polls=1)

    assert summary.succeeded == 6
    assert sorted(item["index"] for item in seen) == list(range(6))
    assert jobs.list_jobs(status=JobStatus.QUEUED) == []


def test_built_handlers_deliver_mail_and_documents(
    deps: PipelineDependencies,
    jobs: JobRepository,
    tmp_path: Path,
) -> None:
    sender = LoggingEmailSender()
    registry = build_handlers(
        intake=IntakePipeline(deps),
        bid_evaluation=BidEvaluationPipeline(deps),
        quote_generation=QuoteGenerationPipeline(deps),
        job_confirmation=JobConfirmationPipeline(deps),
        email_sender=sender,
        document_renderer=FileDocumentRenderer(tmp_path / "docs"),
    )
    jobs.enqueue(
        name=JobName.SEND_EMAIL,
        payload={"to": "jane@example.com", "subject": "Your quote", "html": "<p>Quote</p>"},
    )
    jobs.enqueue(
        name=JobName.GENERATE_DRIVER_BRIEFING,
        payload={"booking_id": "b1", "content": {"route_notes": "M62"}},
    )
    jobs.enqueue(name=JobName.GENERATE_JOB_SHEET, payload={"booking_id": "b1", "content": "x"})

    mail = _worker(jobs, registry).run_loop(max_idle_polls=1)
    documents = _worker(jobs, registry, category=JobCategory.DOCUMENTS).run_loop(max_idle_polls=1)

    assert mail.succeeded == 1
    assert [(message.to, message.subject) for message in sender.sent] == [
        ("jane@example.com", "Your quote"),
    ]
    assert (documents.succeeded, documents.failed) == (1, 1)
    assert (tmp_path / "docs" / "b1" / "driver_briefing.json").exists()
    assert not (tmp_path / "docs" / "b1" / "job_sheet.json").exists()
    assert sorted(name.value for name in registry.names()) == sorted(
        name.value for name in JobName
    )


def test_pipeline_handler_requires_payload_field(deps: PipelineDependencies) -> None:
    registry = build_handlers(
        intake=IntakePipeline(deps),
        bid_evaluation=BidEvaluationPipeline(deps),
        quote_generation=QuoteGenerationPipeline(deps),
        job_confirmation=JobConfirmationPipeline(deps),
        email_sender=LoggingEmailSender(),
        document_renderer=FileDocumentRenderer(Path("unused")),
    )

    with pytest.raises(NonRetryableJobError, match="enquiry_id"):
        registry.get(JobName.BID_EVALUATION)({})
    with pytest.raises(NonRetryableJobError, match="enquiry_id"):
        registry.get(JobName.EMAIL_PARSE_OR_ANALYZE)({"inbound_message_id": ""})
