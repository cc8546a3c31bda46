from __future__ import annotations

from decimal import Decimal

import allure
import pytest

from coach_pipeline.decisions.failure_classifier import ProviderError
from coach_pipeline.decisions.models import DecisionType, ReviewReason
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.schemas import MarkupCalculatorOutput, QuoteContentOutput
from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.repository import JobRepository
from coach_pipeline.marketplace.models import CustomerQuoteStatus, EnquiryStatus
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.pipelines import PipelineDependencies, PipelineOutcome, QuoteGenerationPipeline
from coach_pipeline.pipelines.quote_generation import (
    DEFAULT_MARKUP_BOUNDS,
    MarkupBounds,
    compute_pricing,
    load_markup_bounds,
)
from coach_pipeline.storage.app_settings import MARKUP_BOUNDS_KEY, AppSettingsRepository

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Quote Generation"),
]


def _failures(count: int = 3) -> list[ProviderError]:
    return [ProviderError("HTTP 503 overloaded") for _ in range(count)]


def test_compute_pricing_rounds_half_up_to_cents() -> None:
    pricing = compute_pricing(
        supplier_price=Decimal("333.33"),
        markup_percent=Decimal("17.5"),
        vat_percent=Decimal("20"),
    )
    assert pricing.markup_amount == Decimal("58.33")
    assert pricing.subtotal == Decimal("391.66")
    assert pricing.vat_amount == Decimal("78.33")
    assert pricing.total_price == Decimal("469.99")


def test_markup_bounds_clamp() -> None:
    assert DEFAULT_MARKUP_BOUNDS.clamp(40) == Decimal("35")
    assert DEFAULT_MARKUP_BOUNDS.clamp(5) == Decimal("15")
    assert DEFAULT_MARKUP_BOUNDS.clamp(22.5) == Decimal("22.5")
    with pytest.raises(ValueError, match="finite"):
        DEFAULT_MARKUP_BOUNDS.clamp(float("nan"))


def test_markup_bounds_from_settings(app_settings: AppSettingsRepository) -> None:
    assert load_markup_bounds(None) == DEFAULT_MARKUP_BOUNDS

    app_settings.set(MARKUP_BOUNDS_KEY, {"minPercent": 10, "maxPercent": 20})
    assert load_markup_bounds(app_settings) == MarkupBounds(Decimal("10"), Decimal("20"))

    app_settings.set(MARKUP_BOUNDS_KEY, {"minPercent": 30, "maxPercent": 20})
    assert load_markup_bounds(app_settings) == DEFAULT_MARKUP_BOUNDS

    app_settings.set(MARKUP_BOUNDS_KEY, {"minPercent": 10})
    assert load_markup_bounds(app_settings) == DEFAULT_MARKUP_BOUNDS


def test_clamped_markup_produces_exact_quote_and_sends_it(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
    jobs: JobRepository,
    decisions: DecisionRepository,
) -> None:
    enquiry, bid = seed.awarded("900")
    backend.script(MarkupCalculatorOutput, outputs.markup(percent=40))
    backend.script(QuoteContentOutput, outputs.quote_content())

    result = QuoteGenerationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.COMPLETED
    quote = marketplace.get_quote_for_bid(bid.bid_id)
    assert quote is not None
    assert quote.quote_id == result.record_id
    assert quote.markup_percent == pytest.approx(35.0)
    assert quote.markup_amount == pytest.approx(315.00)
    assert quote.subtotal == pytest.approx(1215.00)
    assert quote.vat_amount == pytest.approx(243.00)
    assert quote.total_price == pytest.approx(1458.00)
    assert quote.status == CustomerQuoteStatus.SENT_TO_CUSTOMER
    assert quote.reference_number.startswith("QTE-")
    assert quote.description == "Comfortable 53-seat coach for your York day trip."

    refreshed = marketplace.get_enquiry(enquiry.enquiry_id)
    assert refreshed is not None
    assert refreshed.status == EnquiryStatus.QUOTE_SENT

    emails = jobs.list_jobs(name=JobName.SEND_EMAIL)
    assert len(emails) == 1
    assert emails[0].dedupe_key == f"quote-email:{quote.quote_id}"
    assert emails[0].payload["to"] == "jane@example.com"
    assert emails[0].payload["subject"] == "Personalised subject"

    markup_logs = decisions.list_logs(decision_type=DecisionType.MARKUP_CALCULATOR)
    assert len(markup_logs) == 1
    assert markup_logs[0].parsed_output is not None
    assert markup_logs[0].parsed_output["recommended_markup_percent"] == 40
    assert decisions.list_review_tasks(enquiry_id=enquiry.enquiry_id) == []


def test_rerun_after_sending_is_fenced(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    jobs: JobRepository,
) -> None:
    enquiry, _ = seed.awarded()
    backend.script(MarkupCalculatorOutput, outputs.markup())
    backend.script(QuoteContentOutput, outputs.quote_content())
    pipeline = QuoteGenerationPipeline(deps)
    pipeline.run(enquiry.enquiry_id)

    again = pipeline.run(enquiry.enquiry_id)

    assert again.outcome == PipelineOutcome.SKIPPED
    assert len(jobs.list_jobs(name=JobName.SEND_EMAIL)) == 1
    assert len(backend.calls_for(MarkupCalculatorOutput)) == 1


def test_markup_failure_escalates_without_quote(
    deps: PipelineDependencies,
    backend,
    seed,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
    jobs: JobRepository,
) -> None:
    enquiry, bid = seed.awarded()
    backend.script(MarkupCalculatorOutput, *_failures())

    result = QuoteGenerationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.ESCALATED
    assert marketplace.get_quote_for_bid(bid.bid_id) is None
    reviews = decisions.list_review_tasks(enquiry_id=enquiry.enquiry_id)
    assert len(reviews) == 1
    assert reviews[0].review_id == result.review_id
    assert reviews[0].reason == ReviewReason.AI_FAILURE
    assert reviews[0].blocking is True
    assert reviews[0].decision_log_id is not None
    assert jobs.list_jobs(name=JobName.SEND_EMAIL) == []
    refreshed = marketplace.get_enquiry(enquiry.enquiry_id)
    assert refreshed is not None
    assert refreshed.status == EnquiryStatus.QUOTES_RECEIVED


def test_non_finite_markup_is_retried_then_escalated(
    deps: PipelineDependencies,
    backend,
    outputs,
    seed,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
    jobs: JobRepository,
) -> None:
    enquiry, bid = seed.awarded()
    backend.script(
        MarkupCalculatorOutput,
        *[outputs.markup(percent=float("nan")) for _ in range(3)],
    )

    result = QuoteGenerationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.ESCALATED
    assert len(backend.calls_for(MarkupCalculatorOutput)) == 3
    assert marketplace.get_quote_for_bid(bid.bid_id) is None
    reviews = decisions.list_review_tasks(enquiry_id=enquiry.enquiry_id)
    assert [review.reason for review in reviews] == [ReviewReason.AI_FAILURE]
    assert jobs.list_jobs(name=JobName.SEND_EMAIL) == []


def test_content_failure_still_sends_template_quote(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
    jobs: JobRepository,
) -> None:
    enquiry, bid = seed.awarded()
    backend.script(MarkupCalculatorOutput, outputs.markup(percent=20))
    backend.script(QuoteContentOutput, *_failures())

    result = QuoteGenerationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.COMPLETED
    quote = marketplace.get_quote_for_bid(bid.bid_id)
    assert quote is not None
    assert quote.description is None
    assert quote.status == CustomerQuoteStatus.SENT_TO_CUSTOMER
    reviews = decisions.list_review_tasks(enquiry_id=enquiry.enquiry_id)
    assert [(review.reason, review.blocking) for review in reviews] == [
        (ReviewReason.AI_FAILURE, False),
    ]
    assert reviews[0].context["sent_template"] is True
    assert len(jobs.list_jobs(name=JobName.SEND_EMAIL)) == 1


def test_low_confidence_markup_is_committed_and_flagged(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
) -> None:
    enquiry, bid = seed.awarded()
    backend.script(MarkupCalculatorOutput, outputs.markup(percent=25, confidence=0.5))
    backend.script(QuoteContentOutput, outputs.quote_content())

    result = QuoteGenerationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.COMPLETED
    quote = marketplace.get_quote_for_bid(bid.bid_id)
    assert quote is not None
    assert quote.markup_percent == pytest.approx(25.0)
    reviews = decisions.list_review_tasks(enquiry_id=enquiry.enquiry_id)
    assert len(reviews) == 1
    assert reviews[0].reason == ReviewReason.LOW_CONFIDENCE
    assert reviews[0].blocking is False


def test_enquiry_without_accepted_bid_is_skipped(
    deps: PipelineDependencies,
    backend,
    seed,
) -> None:
    enquiry = seed.enquiry()

    result = QuoteGenerationPipeline(deps).run(enquiry.enquiry_id)

    assert result.outcome == PipelineOutcome.SKIPPED
    assert backend.calls == []
