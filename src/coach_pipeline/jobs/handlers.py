"""Job name -> handler wiring for the pipeline, notification and document queues."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from coach_pipeline.jobs.delivery import DocumentRenderer, EmailMessage, EmailSender
from coach_pipeline.jobs.models import JobName
from coach_pipeline.pipelines import (
    BidEvaluationPipeline,
    IntakePipeline,
    JobConfirmationPipeline,
    PipelineResult,
    QuoteGenerationPipeline,
)

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], None]


class NonRetryableJobError(RuntimeError):
    """The job can never succeed (bad payload, unknown name); fail it without retry."""


class JobHandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[JobName, JobHandler] = {}

    def register(self, name: JobName, handler: JobHandler) -> None:
        self._handlers[name] = handler

    def get(self, name: JobName) -> JobHandler:
        handler = self._handlers.get(name)
        if handler is None:
            raise NonRetryableJobError(f"No handler registered for job {name.value}.")
        return handler

    def names(self) -> list[JobName]:
        return sorted(self._handlers, key=lambda name: name.value)


def build_handlers(  # noqa: PLR0913
    *,
    intake: IntakePipeline,
    bid_evaluation: BidEvaluationPipeline,
    quote_generation: QuoteGenerationPipeline,
    job_confirmation: JobConfirmationPipeline,
    email_sender: EmailSender,
    document_renderer: DocumentRenderer,
) -> JobHandlerRegistry:
    registry = JobHandlerRegistry()

    def _intake(payload: dict[str, Any]) -> None:
        message_id = payload.get("inbound_message_id")
        if isinstance(message_id, str) and message_id:
            _log_result(intake.run_message(message_id))
            return
        _log_result(intake.run_enquiry(_require(payload, "enquiry_id")))

    def _send_email(payload: dict[str, Any]) -> None:
        email_sender.send(
            EmailMessage(
                to=_require(payload, "to"),
                subject=_require(payload, "subject"),
                html=_require(payload, "html"),
            ),
        )

    def _document(kind: str) -> JobHandler:
        def _render(payload: dict[str, Any]) -> None:
            content = payload.get("content")
            if not isinstance(content, dict):
                raise NonRetryableJobError(
                    f"Job payload field 'content' must be an object for {kind}.",
                )
            document_renderer.render(
                booking_id=_require(payload, "booking_id"),
                kind=kind,
                content=content,
            )

        return _render

    registry.register(JobName.EMAIL_PARSE_OR_ANALYZE, _intake)
    registry.register(
        JobName.BID_EVALUATION,
        lambda payload: _log_result(bid_evaluation.run(_require(payload, "enquiry_id"))),
    )
    registry.register(
        JobName.QUOTE_GENERATION,
        lambda payload: _log_result(quote_generation.run(_require(payload, "enquiry_id"))),
    )
    registry.register(
        JobName.JOB_CONFIRMATION,
        lambda payload: _log_result(
            job_confirmation.run(_require(payload, "customer_quote_id")),
        ),
    )
    registry.register(JobName.SEND_EMAIL, _send_email)
    registry.register(JobName.GENERATE_JOB_SHEET, _document("job_sheet"))
    registry.register(JobName.GENERATE_DRIVER_BRIEFING, _document("driver_briefing"))
    return registry


def _require(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise NonRetryableJobError(f"Job payload is missing string field {key!r}.")
    return value


def _log_result(result: PipelineResult) -> None:
    logger.info(
        "Pipeline stage finished stage=%s outcome=%s run_id=%s enquiry_id=%s review_id=%s",
        result.stage.value,
        result.outcome.value,
        result.pipeline_run_id,
        result.enquiry_id,
        result.review_id,
    )
