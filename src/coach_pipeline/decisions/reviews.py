"""Human review task lifecycle: list, start, resolve with optional override, dismiss."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from coach_pipeline.decisions.models import (
    ActionTaken,
    DecisionLogView,
    DecisionLogWrite,
    ReviewStatus,
    ReviewTaskView,
)
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.schemas import schema_for

logger = logging.getLogger(__name__)

REVIEWER_PROVIDER = "human"
REVIEWER_MODEL = "reviewer"
_OPEN_STATUSES = (ReviewStatus.PENDING, ReviewStatus.IN_REVIEW)


class ReviewError(RuntimeError):
    """Base class for review task operation errors."""


class ReviewTaskNotFoundError(ReviewError):
    pass


class ReviewTaskStateError(ReviewError):
    pass


class InvalidOverrideError(ReviewError):
    pass


@dataclass(slots=True)
class ReviewOutcome:
    review: ReviewTaskView
    override_log_id: int | None = None


class HumanReviewService:
    """Transitions review tasks out of PENDING on behalf of a human reviewer."""

    def __init__(self, repository: DecisionRepository) -> None:
        self.repository = repository

    def list_tasks(
        self,
        *,
        status: ReviewStatus | None = None,
        limit: int = 50,
    ) -> list[ReviewTaskView]:
        return self.repository.list_review_tasks(status=status, limit=limit)

    def start(self, review_id: str) -> ReviewTaskView:
        self._require(review_id)
        if not self.repository.transition_review_task(
            review_id=review_id,
            from_statuses=(ReviewStatus.PENDING,),
            to_status=ReviewStatus.IN_REVIEW,
        ):
            raise ReviewTaskStateError(f"Review task {review_id} is not pending.")
        return self._require(review_id)

    def resolve(
        self,
        review_id: str,
        *,
        resolution: str,
        override_output: dict[str, Any] | None = None,
    ) -> ReviewOutcome:
        """Resolve a task; an override is validated and appended to the decision log."""

        review = self._require(review_id)
        validated: dict[str, Any] | None = None
        original: DecisionLogView | None = None
        if override_output is not None:
            if review.decision_log_id is None:
                raise InvalidOverrideError(
                    f"Review task {review_id} has no decision log entry to override.",
                )
            original = self.repository.get_log(review.decision_log_id)
            if original is None:
                raise InvalidOverrideError(
                    f"Decision log entry {review.decision_log_id} not found.",
                )
            try:
                model = schema_for(review.decision_type).model_validate(override_output)
            except ValidationError as error:
                raise InvalidOverrideError(
                    f"Override does not match {review.decision_type.value} output: {error}",
                ) from error
            validated = model.model_dump(mode="json")

        if not self.repository.transition_review_task(
            review_id=review_id,
            from_statuses=_OPEN_STATUSES,
            to_status=ReviewStatus.RESOLVED,
            resolution=resolution,
        ):
            raise ReviewTaskStateError(f"Review task {review_id} is already closed.")

        override_log_id = None
        if validated is not None and original is not None:
            override_log_id = self._append_override(
                review=review,
                original=original,
                output=validated,
                resolution=resolution,
            )
        logger.info(
            "Review task resolved review_id=%s override_log_id=%s",
            review_id,
            override_log_id,
        )
        return ReviewOutcome(review=self._require(review_id), override_log_id=override_log_id)

    def dismiss(self, review_id: str, *, note: str) -> ReviewTaskView:
        self._require(review_id)
        if not self.repository.transition_review_task(
            review_id=review_id,
            from_statuses=_OPEN_STATUSES,
            to_status=ReviewStatus.DISMISSED,
            resolution=note,
        ):
            raise ReviewTaskStateError(f"Review task {review_id} is already closed.")
        logger.info("Review task dismissed review_id=%s", review_id)
        return self._require(review_id)

    def _append_override(
        self,
        *,
        review: ReviewTaskView,
        original: DecisionLogView,
        output: dict[str, Any],
        resolution: str,
    ) -> int:
        confidence = output.get("confidence_score", 1.0)
        return self.repository.append_log(
            DecisionLogWrite(
                decision_type=review.decision_type,
                pipeline_run_id=original.pipeline_run_id,
                provider=REVIEWER_PROVIDER,
                model=REVIEWER_MODEL,
                prompt=original.prompt,
                parsed_output=output,
                confidence_score=float(confidence),
                action_taken=ActionTaken.OVERRIDDEN,
                escalation_reason=f"review {review.review_id}: {resolution}",
                attempts=0,
                enquiry_id=original.enquiry_id,
                customer_quote_id=original.customer_quote_id,
                booking_id=original.booking_id,
                overrides_log_id=original.log_id,
            ),
        )

    def _require(self, review_id: str) -> ReviewTaskView:
        review = self.repository.get_review_task(review_id)
        if review is None:
            raise ReviewTaskNotFoundError(f"Review task not found: {review_id}")
        return review
