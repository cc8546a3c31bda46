"""Persistence for the decision audit log, cost ledger and human review tasks."""

from __future__ import annotations

import json
from datetime import date
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from coach_pipeline.decisions.models import (
    ActionTaken,
    CostRecordWrite,
    DailyCostRow,
    DecisionLogView,
    DecisionLogWrite,
    DecisionType,
    ReviewReason,
    ReviewStatus,
    ReviewTaskCreate,
    ReviewTaskView,
    TokenUsage,
)
from coach_pipeline.storage.common import (
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coach_pipeline.storage.sqlmodel_models import CostRecord, DecisionLogEntry, HumanReviewTask


class DecisionRepository:
    """Decision log, cost record and review task facade backed by SQLModel + SQLite."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def append_log(self, entry: DecisionLogWrite) -> int:
        """Insert one immutable decision log row and return its id."""

        with Session(self.engine) as session:
            row = DecisionLogEntry(
                decision_type=entry.decision_type.value,
                pipeline_run_id=entry.pipeline_run_id,
                provider=entry.provider,
                model=entry.model,
                prompt_json=dump_json(entry.prompt),
                raw_response=entry.raw_response,
                parsed_output_json=(
                    dump_json(entry.parsed_output) if entry.parsed_output is not None else None
                ),
                confidence_score=entry.confidence_score,
                threshold=entry.threshold,
                action_taken=entry.action_taken.value,
                escalation_reason=entry.escalation_reason,
                prompt_tokens=entry.usage.prompt_tokens,
                completion_tokens=entry.usage.completion_tokens,
                total_tokens=entry.usage.total_tokens,
                latency_ms=entry.latency_ms,
                estimated_cost_usd=entry.estimated_cost_usd,
                attempts=entry.attempts,
                enquiry_id=entry.enquiry_id,
                customer_quote_id=entry.customer_quote_id,
                booking_id=entry.booking_id,
                overrides_log_id=entry.overrides_log_id,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.log_id is None:
                raise RuntimeError("Decision log insert did not return an id.")
            return row.log_id

    def get_log(self, log_id: int) -> DecisionLogView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(DecisionLogEntry).where(DecisionLogEntry.log_id == log_id),
            ).one_or_none()
        return _to_log_view(row) if row is not None else None

    def list_logs(
        self,
        *,
        decision_type: DecisionType | None = None,
        enquiry_id: str | None = None,
        limit: int = 50,
    ) -> list[DecisionLogView]:
        """List recent log entries, newest first."""

        with Session(self.engine) as session:
            statement = select(DecisionLogEntry)
            if decision_type is not None:
                statement = statement.where(DecisionLogEntry.decision_type == decision_type.value)
            if enquiry_id is not None:
                statement = statement.where(DecisionLogEntry.enquiry_id == enquiry_id)
            rows = session.exec(
                statement.order_by(col(DecisionLogEntry.log_id).desc()).limit(limit),
            ).all()
        return [_to_log_view(row) for row in rows]

    def add_cost_record(self, record: CostRecordWrite) -> None:
        with Session(self.engine) as session:
            session.add(
                CostRecord(
                    day=record.day,
                    decision_type=record.decision_type.value,
                    provider=record.provider,
                    model=record.model,
                    prompt_tokens=record.usage.prompt_tokens,
                    completion_tokens=record.usage.completion_tokens,
                    total_tokens=record.usage.total_tokens,
                    cost_usd=record.cost_usd,
                    decision_log_id=record.decision_log_id,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def spend_for_day(self, *, day: date, provider: str | None = None) -> float:
        """Aggregate spend computed from rows, never from a cached total."""

        with Session(self.engine) as session:
            statement = select(func.coalesce(func.sum(CostRecord.cost_usd), 0.0)).where(
                CostRecord.day == day,
            )
            if provider is not None:
                statement = statement.where(CostRecord.provider == provider)
            total = session.exec(statement).one()
        return float(total or 0.0)

    def daily_summary(self, *, day: date) -> list[DailyCostRow]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    CostRecord.decision_type,
                    func.count(),
                    func.sum(CostRecord.prompt_tokens),
                    func.sum(CostRecord.completion_tokens),
                    func.sum(CostRecord.total_tokens),
                    func.sum(CostRecord.cost_usd),
                )
                .where(CostRecord.day == day)
                .group_by(CostRecord.decision_type)
                .order_by(col(CostRecord.decision_type).asc()),
            ).all()
        return [
            DailyCostRow(
                decision_type=row[0],
                calls=int(row[1]),
                prompt_tokens=int(row[2] or 0),
                completion_tokens=int(row[3] or 0),
                total_tokens=int(row[4] or 0),
                cost_usd=float(row[5] or 0.0),
            )
            for row in rows
        ]

    def count_cost_records(self, *, decision_log_id: int | None = None) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(CostRecord)
            if decision_log_id is not None:
                statement = statement.where(CostRecord.decision_log_id == decision_log_id)
            return int(session.exec(statement).one())

    def create_review_task(self, payload: ReviewTaskCreate) -> ReviewTaskView:
        now = utc_now()
        with Session(self.engine) as session:
            row = HumanReviewTask(
                review_id=str(uuid4()),
                decision_type=payload.decision_type.value,
                reason=payload.reason.value,
                status=ReviewStatus.PENDING.value,
                target_type=payload.target_type,
                target_id=payload.target_id,
                enquiry_id=payload.enquiry_id,
                decision_log_id=payload.decision_log_id,
                blocking=payload.blocking,
                context_json=dump_json(payload.context),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_review_view(row)

    def get_review_task(self, review_id: str) -> ReviewTaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(HumanReviewTask).where(HumanReviewTask.review_id == review_id),
            ).one_or_none()
        return _to_review_view(row) if row is not None else None

    def list_review_tasks(
        self,
        *,
        status: ReviewStatus | None = None,
        enquiry_id: str | None = None,
        target: tuple[str, str] | None = None,
        limit: int = 50,
    ) -> list[ReviewTaskView]:
        with Session(self.engine) as session:
            statement = select(HumanReviewTask)
            if status is not None:
                statement = statement.where(HumanReviewTask.status == status.value)
            if enquiry_id is not None:
                statement = statement.where(HumanReviewTask.enquiry_id == enquiry_id)
            if target is not None:
                target_type, target_id = target
                statement = statement.where(
                    HumanReviewTask.target_type == target_type,
                    HumanReviewTask.target_id == target_id,
                )
            rows = session.exec(
                statement.order_by(col(HumanReviewTask.created_at).desc()).limit(limit),
            ).all()
        return [_to_review_view(row) for row in rows]

    def transition_review_task(
        self,
        *,
        review_id: str,
        from_statuses: tuple[ReviewStatus, ...],
        to_status: ReviewStatus,
        resolution: str | None = None,
    ) -> bool:
        """Conditionally move a review task; False when it was not in an expected state."""

        now = utc_now()
        values: dict[str, object] = {
            "status": to_status.value,
            "updated_at": to_db_datetime(now),
        }
        if to_status in {ReviewStatus.RESOLVED, ReviewStatus.DISMISSED}:
            values["resolution"] = resolution
            values["resolved_at"] = to_db_datetime(now)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(HumanReviewTask)
                .where(
                    col(HumanReviewTask.review_id) == review_id,
                    col(HumanReviewTask.status).in_([status.value for status in from_statuses]),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _to_log_view(row: DecisionLogEntry) -> DecisionLogView:
    parsed_output = json.loads(row.parsed_output_json) if row.parsed_output_json else None
    return DecisionLogView(
        log_id=row.log_id or 0,
        decision_type=DecisionType(row.decision_type),
        pipeline_run_id=row.pipeline_run_id,
        provider=row.provider,
        model=row.model,
        prompt=json.loads(row.prompt_json),
        raw_response=row.raw_response,
        parsed_output=parsed_output if isinstance(parsed_output, dict) else None,
        confidence_score=row.confidence_score,
        threshold=row.threshold,
        action_taken=ActionTaken(row.action_taken),
        escalation_reason=row.escalation_reason,
        usage=TokenUsage(
            prompt_tokens=row.prompt_tokens,
            completion_tokens=row.completion_tokens,
            total_tokens=row.total_tokens,
        ),
        latency_ms=row.latency_ms,
        estimated_cost_usd=row.estimated_cost_usd,
        attempts=row.attempts,
        enquiry_id=row.enquiry_id,
        customer_quote_id=row.customer_quote_id,
        booking_id=row.booking_id,
        overrides_log_id=row.overrides_log_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_review_view(row: HumanReviewTask) -> ReviewTaskView:
    return ReviewTaskView(
        review_id=row.review_id,
        decision_type=DecisionType(row.decision_type),
        reason=ReviewReason(row.reason),
        status=ReviewStatus(row.status),
        target_type=row.target_type,
        target_id=row.target_id,
        enquiry_id=row.enquiry_id,
        decision_log_id=row.decision_log_id,
        blocking=row.blocking,
        context=load_json_object(row.context_json),
        resolution=row.resolution,
        resolved_at=optional_utc(row.resolved_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
