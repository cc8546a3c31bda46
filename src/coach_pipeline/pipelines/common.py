"""Shared dependencies, results and escalation helpers for pipeline stages."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from coach_pipeline.config import PipelineSettings
from coach_pipeline.decisions.executor import TaskExecutor, TaskFailedError
from coach_pipeline.decisions.models import (
    DecisionRequest,
    DecisionResult,
    DecisionType,
    ReviewReason,
    ReviewTaskCreate,
    ReviewTaskView,
)
from coach_pipeline.decisions.prompts import build_messages
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.schemas import EmailPersonalizerOutput, schema_for
from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.queue import JobQueue
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.storage.app_settings import SettingsReader
from coach_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    INTAKE = "intake"
    BID_EVALUATION = "bid_evaluation"
    QUOTE_GENERATION = "quote_generation"
    JOB_CONFIRMATION = "job_confirmation"


class PipelineOutcome(str, Enum):
    """How a stage invocation ended."""

    COMPLETED = "completed"
    ESCALATED = "escalated"
    SKIPPED = "skipped"
    NO_BIDS = "no_bids"


@dataclass(slots=True)
class PipelineResult:
    stage: PipelineStage
    outcome: PipelineOutcome
    pipeline_run_id: str
    enquiry_id: str | None = None
    review_id: str | None = None
    record_id: str | None = None
    detail: str | None = None


@dataclass(slots=True)
class PipelineDependencies:
    """Collaborators every stage needs; built once per worker process."""

    marketplace: MarketplaceRepository
    decisions: DecisionRepository
    executor: TaskExecutor
    queue: JobQueue
    settings_reader: SettingsReader | None
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    clock: Callable[[], datetime] = utc_now


@dataclass(slots=True)
class EmailDraft:
    """Base email handed to the personalizer; sent verbatim if personalization fails."""

    to: str
    subject: str
    html: str
    recipient_name: str
    purpose: str


def new_run_id() -> str:
    return str(uuid4())


def decide(  # noqa: PLR0913
    deps: PipelineDependencies,
    decision_type: DecisionType,
    context: dict[str, Any],
    *,
    run_id: str,
    enquiry_id: str | None = None,
    customer_quote_id: str | None = None,
    booking_id: str | None = None,
) -> DecisionResult:
    """Run one decision through the executor; raises `TaskFailedError`."""

    return deps.executor.execute(
        DecisionRequest(
            decision_type=decision_type,
            messages=build_messages(decision_type, context),
            output_schema=schema_for(decision_type),
            pipeline_run_id=run_id,
            enquiry_id=enquiry_id,
            customer_quote_id=customer_quote_id,
            booking_id=booking_id,
        ),
    )


def escalate(  # noqa: PLR0913
    deps: PipelineDependencies,
    *,
    decision_type: DecisionType,
    reason: ReviewReason,
    target_type: str,
    target_id: str,
    context: dict[str, Any],
    enquiry_id: str | None = None,
    decision_log_id: int | None = None,
    blocking: bool = True,
) -> ReviewTaskView:
    """Open a human review task for a decision that was not committed."""

    review = deps.decisions.create_review_task(
        ReviewTaskCreate(
            decision_type=decision_type,
            reason=reason,
            target_type=target_type,
            target_id=target_id,
            context=context,
            enquiry_id=enquiry_id,
            decision_log_id=decision_log_id,
            blocking=blocking,
        ),
    )
    logger.warning(
        "Escalated to human review review_id=%s decision_type=%s reason=%s target=%s:%s "
        "blocking=%s",
        review.review_id,
        decision_type.value,
        reason.value,
        target_type,
        target_id,
        blocking,
    )
    return review


def escalate_failure(
    deps: PipelineDependencies,
    error: TaskFailedError,
    *,
    target_type: str,
    target_id: str,
    context: dict[str, Any],
    enquiry_id: str | None = None,
    blocking: bool = True,
) -> ReviewTaskView:
    """Convert a terminal executor failure into an AI_FAILURE review task."""

    return escalate(
        deps,
        decision_type=error.decision_type,
        reason=ReviewReason.AI_FAILURE,
        target_type=target_type,
        target_id=target_id,
        context={
            **context,
            "error": str(error),
            "failure_class": error.failure_class.value,
            "attempts": error.attempts,
        },
        enquiry_id=enquiry_id,
        decision_log_id=error.log_id,
        blocking=blocking,
    )


def flag_low_confidence(
    deps: PipelineDependencies,
    result: DecisionResult,
    *,
    target_type: str,
    target_id: str,
    enquiry_id: str | None = None,
) -> ReviewTaskView | None:
    """Non-blocking review for a committed output that missed its threshold."""

    if result.auto_executed:
        return None
    return escalate(
        deps,
        decision_type=result.decision_type,
        reason=ReviewReason.LOW_CONFIDENCE,
        target_type=target_type,
        target_id=target_id,
        context={
            "output": result.parsed.model_dump(mode="json"),
            "confidence": result.confidence,
            "threshold": result.threshold,
            "committed": True,
        },
        enquiry_id=enquiry_id,
        decision_log_id=result.log_id,
        blocking=False,
    )


def send_personalized_email(  # noqa: PLR0913
    deps: PipelineDependencies,
    draft: EmailDraft,
    *,
    run_id: str,
    target_type: str,
    target_id: str,
    enquiry_id: str | None = None,
    customer_quote_id: str | None = None,
    booking_id: str | None = None,
    dedupe_key: str | None = None,
) -> bool:
    """Personalize a draft and enqueue delivery; the draft is sent as-is on failure."""

    subject, html = draft.subject, draft.html
    try:
        result = decide(
            deps,
            DecisionType.EMAIL_PERSONALIZER,
            {
                "recipient_name": draft.recipient_name,
                "recipient_email": draft.to,
                "purpose": draft.purpose,
                "company_name": deps.pipeline.company_name,
                "base_subject": draft.subject,
                "base_body": draft.html,
            },
            run_id=run_id,
            enquiry_id=enquiry_id,
            customer_quote_id=customer_quote_id,
            booking_id=booking_id,
        )
    except TaskFailedError as error:
        escalate_failure(
            deps,
            error,
            target_type=target_type,
            target_id=target_id,
            context={"purpose": draft.purpose, "to": draft.to, "sent_template": True},
            enquiry_id=enquiry_id,
            blocking=False,
        )
    else:
        flag_low_confidence(
            deps,
            result,
            target_type=target_type,
            target_id=target_id,
            enquiry_id=enquiry_id,
        )
        personalized = result.parsed
        if isinstance(personalized, EmailPersonalizerOutput):
            subject, html = personalized.subject, personalized.body

    return deps.queue.enqueue(
        JobName.SEND_EMAIL,
        {"to": draft.to, "subject": subject, "html": html},
        dedupe_key=dedupe_key,
    )
