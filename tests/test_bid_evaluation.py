from __future__ import annotations

import allure

from coach_pipeline.decisions.failure_classifier import ProviderError
from coach_pipeline.decisions.models import ReviewReason
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.schemas import BidEvaluatorOutput
from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.repository import JobRepository
from coach_pipeline.marketplace.models import BidStatus, EnquiryStatus
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.pipelines import BidEvaluationPipeline, PipelineDependencies, PipelineOutcome

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Bid Evaluation"),
]


def _two_bids(seed, *, second_rating: float = 4.5):
    enquiry, invitations = seed.invited(
        [seed.supplier("Alpha Coaches"), seed.supplier("Beta Travel", rating=second_rating)],
    )
    first = seed.bid(invitations[0], "950")
    second = seed.bid(invitations[1], "900")
    return enquiry, first, second


def _statuses(marketplace: MarketplaceRepository, enquiry_id: str) -> dict[str, BidStatus]:
    return {bid.bid_id: bid.status for bid in marketplace.list_bids(enquiry_id)}


def test_confident_evaluation_awards_winner_and_queues_quote(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
    jobs: JobRepository,
) -> None:
    enquiry, first, second = _two_bids(seed)
    backend.script(
        BidEvaluatorOutput,
        outputs.bid_evaluator([second, first], winner_id=second.bid_id),
    )

    result = BidEvaluationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert result.record_id == second.bid_id
    assert _statuses(marketplace, enquiry.enquiry_id) == {
        first.bid_id: BidStatus.REJECTED,
        second.bid_id: BidStatus.ACCEPTED,
    }
    winner = marketplace.get_bid(second.bid_id)
    assert winner is not None
    assert winner.ai_rank == 1
    assert winner.ai_reasoning == "Fair price."
    refreshed = marketplace.get_enquiry(enquiry.enquiry_id)
    assert refreshed is not None
    assert refreshed.status == EnquiryStatus.QUOTES_RECEIVED
    queued = jobs.list_jobs(name=JobName.QUOTE_GENERATION)
    assert len(queued) == 1
    assert queued[0].payload == {"enquiry_id": enquiry.enquiry_id}
    assert queued[0].dedupe_key == f"quote-generation:{enquiry.enquiry_id}"
    prompt = backend.calls_for(BidEvaluatorOutput)[0][1]["content"]
    assert "Beta Travel" in prompt
    assert "900.0" in prompt


def test_low_rated_bidder_blocks_award(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
    jobs: JobRepository,
) -> None:
    enquiry, first, second = _two_bids(seed, second_rating=2.5)
    backend.script(BidEvaluatorOutput, outputs.bid_evaluator([first, second]))

    result = BidEvaluationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.ESCALATED
    review = decisions.get_review_task(result.review_id or "")
    assert review is not None
    assert review.reason == ReviewReason.LOW_SUPPLIER_RATING
    assert review.blocking is True
    assert review.context["low_rated_supplier_ids"] == [second.supplier_id]
    assert set(_statuses(marketplace, enquiry.enquiry_id).values()) == {BidStatus.SUBMITTED}
    assert jobs.list_jobs(name=JobName.QUOTE_GENERATION) == []


def test_anomaly_flag_blocks_award(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
) -> None:
    enquiry, first, second = _two_bids(seed)
    backend.script(
        BidEvaluatorOutput,
        outputs.bid_evaluator([first, second], anomalous_bid_id=second.bid_id),
    )

    result = BidEvaluationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.ESCALATED
    review = decisions.get_review_task(result.review_id or "")
    assert review is not None
    assert review.reason == ReviewReason.ANOMALOUS_PRICING
    flagged = marketplace.get_bid(second.bid_id)
    assert flagged is not None
    assert flagged.ai_anomaly_flag is True
    assert flagged.status == BidStatus.SUBMITTED


def test_low_confidence_blocks_award(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    decisions: DecisionRepository,
) -> None:
    enquiry, first, second = _two_bids(seed)
    backend.script(BidEvaluatorOutput, outputs.bid_evaluator([first, second], confidence=0.79))

    result = BidEvaluationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.ESCALATED
    review = decisions.get_review_task(result.review_id or "")
    assert review is not None
    assert review.reason == ReviewReason.LOW_CONFIDENCE
    assert review.decision_log_id is not None


def test_unknown_winner_is_an_ai_failure(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
) -> None:
    enquiry, first, second = _two_bids(seed)
    backend.script(
        BidEvaluatorOutput,
        outputs.bid_evaluator([first, second], winner_id="not-a-bid"),
    )

    result = BidEvaluationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.ESCALATED
    review = decisions.get_review_task(result.review_id or "")
    assert review is not None
    assert review.reason == ReviewReason.AI_FAILURE
    assert set(_statuses(marketplace, enquiry.enquiry_id).values()) == {BidStatus.SUBMITTED}


def test_evaluator_failure_keeps_enquiry_waiting(
    deps: PipelineDependencies,
    backend,
    seed,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
) -> None:
    enquiry, _, _ = _two_bids(seed)
    backend.script(BidEvaluatorOutput, *[ProviderError("timeout") for _ in range(3)])

    result = BidEvaluationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.ESCALATED
    review = decisions.get_review_task(result.review_id or "")
    assert review is not None
    assert review.reason == ReviewReason.AI_FAILURE
    assert review.context["attempts"] == 3
    refreshed = marketplace.get_enquiry(enquiry.enquiry_id)
    assert refreshed is not None
    assert refreshed.status == EnquiryStatus.SENT_TO_SUPPLIERS


def test_no_bids_is_a_terminal_outcome_without_inference(
    deps: PipelineDependencies,
    backend,
    seed,
) -> None:
    enquiry, _ = seed.invited([seed.supplier()])

    result = BidEvaluationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.NO_BIDS
    assert backend.calls == []


def test_enquiry_not_sent_to_suppliers_is_fenced(
    deps: PipelineDependencies,
    backend,
    seed,
) -> None:
    enquiry = seed.under_review(seed.enquiry())

    result = BidEvaluationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.SKIPPED
    assert backend.calls == []


def test_second_run_after_award_is_fenced(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
) -> None:
    enquiry, first, second = _two_bids(seed)
    backend.script(BidEvaluatorOutput, outputs.bid_evaluator([first, second]))
    pipeline = BidEvaluationPipeline(deps)
    pipeline.run(enquiry.enquiry_id)

    again = pipeline.run(enquiry.enquiry_id)

    assert again.outcome == PipelineOutcome.SKIPPED
    assert len(backend.calls_for(BidEvaluatorOutput)) == 1
