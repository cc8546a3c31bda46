"""Persistent queue repository for pipeline, notification and document jobs."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from coach_pipeline.jobs.models import (
    JobCategory,
    JobDetails,
    JobEventView,
    JobName,
    JobStatus,
    JobView,
    category_for,
)
from coach_pipeline.storage.common import (
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coach_pipeline.storage.sqlmodel_models import Job, JobEvent


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def enqueue(
        self,
        *,
        name: JobName,
        payload: dict[str, Any],
        dedupe_key: str | None = None,
        max_attempts: int = 3,
        run_after: datetime | None = None,
    ) -> JobView | None:
        """Create a queued job; None when the dedupe key was already used."""

        now = utc_now()
        job_id = str(uuid4())
        category = category_for(name)
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                name=name.value,
                category=category.value,
                payload_json=dump_json(payload),
                dedupe_key=dedupe_key,
                status=JobStatus.QUEUED.value,
                attempt=0,
                max_attempts=max_attempts,
                run_after=to_db_datetime(run_after or now),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={"name": name.value, "dedupe_key": dedupe_key},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next(self, *, category: JobCategory, worker_id: str) -> JobView | None:
        """Atomically claim one ready job of the given category."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(
                        Job.category == category.value,
                        Job.status == JobStatus.QUEUED.value,
                        col(Job.run_after) <= to_db_datetime(now),
                    )
                    .order_by(col(Job.run_after).asc(), col(Job.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        finished_at=None,
                        error_summary=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(select(Job).where(Job.job_id == candidate.job_id)).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.RUNNING,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                return _to_job_view(claimed)

    def touch(self, *, job_id: str) -> None:
        """Update heartbeat for a running job."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id, col(Job.status) == JobStatus.RUNNING.value)
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()

    def complete(self, *, job_id: str) -> bool:
        """Mark a running job as succeeded."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id, col(Job.status) == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.SUCCEEDED.value,
                    finished_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="succeeded",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.SUCCEEDED,
                details={},
            )
            session.commit()
            return True

    def fail(self, *, job_id: str, error_summary: str) -> bool:
        """Mark a running job as terminally failed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id, col(Job.status) == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.FAILED.value,
                    error_summary=error_summary,
                    finished_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.FAILED,
                details={"error_summary": error_summary},
            )
            session.commit()
            return True

    def schedule_retry(self, *, job_id: str, run_after: datetime, error_summary: str) -> bool:
        """Requeue a running job for automatic retry."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id, col(Job.status) == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    error_summary=error_summary,
                    started_at=None,
                    finished_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "error_summary": error_summary,
                },
            )
            session.commit()
            return True

    def recover_stale_running(self, *, stale_after: timedelta) -> int:
        """Requeue running jobs whose heartbeat is older than `stale_after`."""

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")
        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovered = 0
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(Job.job_id).where(
                    Job.status == JobStatus.RUNNING.value,
                    col(Job.heartbeat_at) < cutoff,
                ),
            ).all()
            for job_id in stale_ids:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == JobStatus.RUNNING.value,
                        col(Job.heartbeat_at) < cutoff,
                    )
                    .values(
                        status=JobStatus.QUEUED.value,
                        run_after=to_db_datetime(now),
                        started_at=None,
                        heartbeat_at=None,
                        worker_id=None,
                        error_summary="stale heartbeat",
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="stale_recovered",
                    status_from=JobStatus.RUNNING,
                    status_to=JobStatus.QUEUED,
                    details={"stale_after_seconds": int(stale_after.total_seconds())},
                )
            session.commit()
        return recovered

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        category: JobCategory | None = None,
        name: JobName | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(Job)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if category is not None:
                statement = statement.where(Job.category == category.value)
            if name is not None:
                statement = statement.where(Job.name == name.value)
            rows = session.exec(
                statement.order_by(col(Job.created_at).desc()).limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(job=_to_job_view(job), events=events)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        name=JobName(row.name),
        category=JobCategory(row.category),
        payload=load_json_object(row.payload_json),
        dedupe_key=row.dedupe_key,
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        worker_id=row.worker_id,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
