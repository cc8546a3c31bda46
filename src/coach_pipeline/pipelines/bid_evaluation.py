"""Stage B: score submitted bids and award the recommended winner."""

from __future__ import annotations

import logging

from coach_pipeline.decisions.executor import TaskFailedError
from coach_pipeline.decisions.models import DecisionType, ReviewReason
from coach_pipeline.decisions.schemas import BidEvaluatorOutput
from coach_pipeline.jobs.models import JobName
from coach_pipeline.marketplace.models import (
    BidEvaluationWrite,
    BidStatus,
    BidView,
    EnquiryStatus,
    EnquiryView,
    SupplierView,
)
from coach_pipeline.pipelines.common import (
    PipelineDependencies,
    PipelineOutcome,
    PipelineResult,
    PipelineStage,
    decide,
    escalate,
    escalate_failure,
    new_run_id,
)

logger = logging.getLogger(__name__)

RATING_FLOOR = 3.0


def quote_generation_dedupe_key(enquiry_id: str) -> str:
    return f"quote-generation:{enquiry_id}"


class BidEvaluationPipeline:
    """Runs once every invitation for an enquiry was answered or expired."""

    def __init__(self, deps: PipelineDependencies) -> None:
        self.deps = deps

    def run(self, enquiry_id: str, *, run_id: str | None = None) -> PipelineResult:
        run_id = run_id or new_run_id()
        marketplace = self.deps.marketplace
        enquiry = marketplace.get_enquiry(enquiry_id)
        if enquiry is None or enquiry.status != EnquiryStatus.SENT_TO_SUPPLIERS:
            logger.warning(
                "Skipping bid evaluation enquiry_id=%s status=%s",
                enquiry_id,
                enquiry.status.value if enquiry is not None else None,
            )
            return self._result(run_id, PipelineOutcome.SKIPPED, enquiry_id, detail="fenced")

        bids = marketplace.list_bids(enquiry_id, status=BidStatus.SUBMITTED)
        if not bids:
            logger.info("No bids to evaluate enquiry_id=%s", enquiry_id)
            return self._result(run_id, PipelineOutcome.NO_BIDS, enquiry_id)

        suppliers = marketplace.get_suppliers(sorted({bid.supplier_id for bid in bids}))
        low_rated = sorted(
            supplier_id
            for supplier_id, supplier in suppliers.items()
            if supplier.rating < RATING_FLOOR
        )
        context = {
            "enquiry": enquiry.trip_context(),
            "estimated_price_min": enquiry.ai_estimated_price_min,
            "estimated_price_max": enquiry.ai_estimated_price_max,
            "bids": [_bid_context(bid, suppliers.get(bid.supplier_id)) for bid in bids],
        }
        logger.info(
            "Bid evaluation started run_id=%s enquiry_id=%s bids=%d",
            run_id,
            enquiry_id,
            len(bids),
        )
        try:
            result = decide(
                self.deps,
                DecisionType.BID_EVALUATOR,
                context,
                run_id=run_id,
                enquiry_id=enquiry_id,
            )
        except TaskFailedError as error:
            review = escalate_failure(
                self.deps,
                error,
                target_type="enquiry",
                target_id=enquiry_id,
                context=context,
                enquiry_id=enquiry_id,
            )
            return self._result(
                run_id,
                PipelineOutcome.ESCALATED,
                enquiry_id,
                review_id=review.review_id,
            )

        evaluation = result.parsed
        if not isinstance(evaluation, BidEvaluatorOutput):
            raise TypeError(f"Unexpected BID_EVALUATOR output: {type(evaluation).__name__}")

        bids_by_id = {bid.bid_id: bid for bid in bids}
        recorded = marketplace.record_bid_evaluation(
            enquiry_id,
            [
                BidEvaluationWrite(
                    bid_id=item.bid_id,
                    rank=item.rank,
                    fairness_score=item.fairness_score,
                    overall_score=item.overall_score,
                    reasoning=item.reasoning,
                    anomaly_flag=item.anomaly_flag,
                    anomaly_reason=item.anomaly_reason,
                )
                for item in evaluation.evaluated_bids
                if item.bid_id in bids_by_id
            ],
        )
        if not recorded:
            logger.warning("Enquiry left SENT_TO_SUPPLIERS concurrently enquiry_id=%s", enquiry_id)
            return self._result(run_id, PipelineOutcome.SKIPPED, enquiry_id, detail="fenced")

        reason = _escalation_reason(
            evaluation,
            auto_executed=result.auto_executed,
            low_rated=low_rated,
        )
        if reason is not None:
            review = escalate(
                self.deps,
                decision_type=DecisionType.BID_EVALUATOR,
                reason=reason,
                target_type="enquiry",
                target_id=enquiry_id,
                context={
                    "output": evaluation.model_dump(mode="json"),
                    "recommended_winner_id": evaluation.recommended_winner_id,
                    "low_rated_supplier_ids": low_rated,
                    "rating_floor": RATING_FLOOR,
                    "confidence": result.confidence,
                    "threshold": result.threshold,
                },
                enquiry_id=enquiry_id,
                decision_log_id=result.log_id,
            )
            return self._result(
                run_id,
                PipelineOutcome.ESCALATED,
                enquiry_id,
                review_id=review.review_id,
            )

        winner = bids_by_id.get(evaluation.recommended_winner_id)
        if winner is None:
            review = escalate(
                self.deps,
                decision_type=DecisionType.BID_EVALUATOR,
                reason=ReviewReason.AI_FAILURE,
                target_type="enquiry",
                target_id=enquiry_id,
                context={
                    "output": evaluation.model_dump(mode="json"),
                    "recommended_winner_id": evaluation.recommended_winner_id,
                    "loaded_bid_ids": sorted(bids_by_id),
                    "error": "recommended winner is not among the submitted bids",
                },
                enquiry_id=enquiry_id,
                decision_log_id=result.log_id,
            )
            return self._result(
                run_id,
                PipelineOutcome.ESCALATED,
                enquiry_id,
                review_id=review.review_id,
            )

        if not marketplace.award_bid(enquiry_id, winner.bid_id):
            logger.warning(
                "Winning bid no longer SUBMITTED enquiry_id=%s bid_id=%s",
                enquiry_id,
                winner.bid_id,
            )
            return self._result(run_id, PipelineOutcome.SKIPPED, enquiry_id, detail="fenced")

        self.deps.queue.enqueue(
            JobName.QUOTE_GENERATION,
            {"enquiry_id": enquiry_id},
            dedupe_key=quote_generation_dedupe_key(enquiry_id),
        )
        logger.info(
            "Bid awarded run_id=%s enquiry_id=%s bid_id=%s",
            run_id,
            enquiry_id,
            winner.bid_id,
        )
        return self._result(
            run_id,
            PipelineOutcome.COMPLETED,
            enquiry_id,
            record_id=winner.bid_id,
        )

    @staticmethod
    def _result(
        run_id: str,
        outcome: PipelineOutcome,
        enquiry_id: str,
        **fields: str | None,
    ) -> PipelineResult:
        return PipelineResult(
            stage=PipelineStage.BID_EVALUATION,
            outcome=outcome,
            pipeline_run_id=run_id,
            enquiry_id=enquiry_id,
            **fields,
        )


def _escalation_reason(
    evaluation: BidEvaluatorOutput,
    *,
    auto_executed: bool,
    low_rated: list[str],
) -> ReviewReason | None:
    if low_rated:
        return ReviewReason.LOW_SUPPLIER_RATING
    if evaluation.has_anomalies or any(item.anomaly_flag for item in evaluation.evaluated_bids):
        return ReviewReason.ANOMALOUS_PRICING
    if not auto_executed:
        return ReviewReason.LOW_CONFIDENCE
    return None


def _bid_context(bid: BidView, supplier: SupplierView | None) -> dict[str, object]:
    return {
        "bid_id": bid.bid_id,
        "supplier_id": bid.supplier_id,
        "supplier_name": supplier.name if supplier else None,
        "supplier_rating": supplier.rating if supplier else None,
        "supplier_completed_jobs": supplier.completed_jobs if supplier else None,
        "base_price": bid.base_price,
        "total_price": bid.total_price,
        "currency": bid.currency,
        "vehicle_offered": bid.vehicle_offered,
        "notes": bid.notes,
    }


def is_enquiry_awaiting_evaluation(enquiry: EnquiryView | None) -> bool:
    return enquiry is not None and enquiry.status == EnquiryStatus.SENT_TO_SUPPLIERS
