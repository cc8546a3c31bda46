from __future__ import annotations

import allure
import pytest

from coach_pipeline.decisions.models import (
    ActionTaken,
    DecisionLogWrite,
    DecisionType,
    ReviewReason,
    ReviewStatus,
    ReviewTaskCreate,
    ReviewTaskView,
)
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.reviews import (
    HumanReviewService,
    InvalidOverrideError,
    ReviewTaskNotFoundError,
    ReviewTaskStateError,
)

pytestmark = [
    allure.epic("Decisions"),
    allure.feature("Human Review"),
]


def _escalated_markup(decisions: DecisionRepository, outputs) -> ReviewTaskView:
    log_id = decisions.append_log(
        DecisionLogWrite(
            decision_type=DecisionType.MARKUP_CALCULATOR,
            pipeline_run_id="run-1",
            provider="openai",
            model="gpt-4o-mini",
            prompt=[{"role": "user", "content": "price it"}],
            parsed_output=outputs.markup(25, confidence=0.5),
            confidence_score=0.5,
            threshold=0.85,
            action_taken=ActionTaken.ESCALATED_TO_HUMAN,
            escalation_reason="confidence 0.50 below threshold 0.85",
            enquiry_id="enquiry-1",
            customer_quote_id=None,
        ),
    )
    return decisions.create_review_task(
        ReviewTaskCreate(
            decision_type=DecisionType.MARKUP_CALCULATOR,
            reason=ReviewReason.LOW_CONFIDENCE,
            target_type="enquiry",
            target_id="enquiry-1",
            context={"confidence": 0.5},
            enquiry_id="enquiry-1",
            decision_log_id=log_id,
        ),
    )


def test_start_then_resolve_with_override_appends_log(
    decisions: DecisionRepository,
    outputs,
) -> None:
    review = _escalated_markup(decisions, outputs)
    service = HumanReviewService(decisions)

    started = service.start(review.review_id)
    outcome = service.resolve(
        review.review_id,
        resolution="Repeat customer, use 30%",
        override_output=outputs.markup(30, confidence=1.0),
    )

    assert started.status == ReviewStatus.IN_REVIEW
    assert outcome.review.status == ReviewStatus.RESOLVED
    assert outcome.review.resolution == "Repeat customer, use 30%"
    assert outcome.review.resolved_at is not None
    assert outcome.override_log_id is not None
    override = decisions.get_log(outcome.override_log_id)
    assert override is not None
    assert override.action_taken == ActionTaken.OVERRIDDEN
    assert override.overrides_log_id == review.decision_log_id
    assert override.provider == "human"
    assert override.parsed_output is not None
    assert override.parsed_output["recommended_markup_percent"] == 30
    assert override.enquiry_id == "enquiry-1"
    original = decisions.get_log(review.decision_log_id or 0)
    assert original is not None
    assert original.action_taken == ActionTaken.ESCALATED_TO_HUMAN


def test_invalid_override_leaves_task_open(decisions: DecisionRepository, outputs) -> None:
    review = _escalated_markup(decisions, outputs)
    service = HumanReviewService(decisions)

    with pytest.raises(InvalidOverrideError, match="MARKUP_CALCULATOR"):
        service.resolve(review.review_id, resolution="oops", override_output={"markup": "x"})

    reopened = decisions.get_review_task(review.review_id)
    assert reopened is not None
    assert reopened.status == ReviewStatus.PENDING
    assert len(decisions.list_logs(enquiry_id="enquiry-1")) == 1


def test_override_needs_a_decision_log(decisions: DecisionRepository, outputs) -> None:
    review = decisions.create_review_task(
        ReviewTaskCreate(
            decision_type=DecisionType.MARKUP_CALCULATOR,
            reason=ReviewReason.AI_FAILURE,
            target_type="enquiry",
            target_id="enquiry-2",
            context={"failure_class": "backend_transient"},
        ),
    )

    with pytest.raises(InvalidOverrideError, match="no decision log"):
        HumanReviewService(decisions).resolve(
            review.review_id,
            resolution="manual",
            override_output=outputs.markup(),
        )


def test_override_of_vanished_log_entry_leaves_task_open(
    decisions: DecisionRepository,
    outputs,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    review = _escalated_markup(decisions, outputs)
    monkeypatch.setattr(decisions, "get_log", lambda log_id: None)

    with pytest.raises(InvalidOverrideError, match="not found"):
        HumanReviewService(decisions).resolve(
            review.review_id,
            resolution="Use 30%",
            override_output=outputs.markup(30, confidence=1.0),
        )

    monkeypatch.undo()
    reopened = decisions.get_review_task(review.review_id)
    assert reopened is not None
    assert reopened.status == ReviewStatus.PENDING
    assert reopened.resolution is None
    assert len(decisions.list_logs(enquiry_id="enquiry-1")) == 1


def test_dismiss_closes_task_and_blocks_further_transitions(
    decisions: DecisionRepository,
    outputs,
) -> None:
    review = _escalated_markup(decisions, outputs)
    service = HumanReviewService(decisions)

    dismissed = service.dismiss(review.review_id, note="Customer withdrew")

    assert dismissed.status == ReviewStatus.DISMISSED
    assert dismissed.resolution == "Customer withdrew"
    with pytest.raises(ReviewTaskStateError):
        service.start(review.review_id)
    with pytest.raises(ReviewTaskStateError):
        service.resolve(review.review_id, resolution="late")
    with pytest.raises(ReviewTaskStateError):
        service.dismiss(review.review_id, note="again")


def test_list_filters_by_status_and_unknown_id(decisions: DecisionRepository, outputs) -> None:
    first = _escalated_markup(decisions, outputs)
    second = _escalated_markup(decisions, outputs)
    service = HumanReviewService(decisions)
    service.start(second.review_id)

    pending = service.list_tasks(status=ReviewStatus.PENDING)

    assert [task.review_id for task in pending] == [first.review_id]
    assert len(service.list_tasks()) == 2
    with pytest.raises(ReviewTaskNotFoundError):
        service.start("missing")
