"""Stage C: price the winning bid and send the customer quote."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy.exc import SQLAlchemyError

from coach_pipeline.decisions.executor import TaskFailedError
from coach_pipeline.decisions.models import DecisionType
from coach_pipeline.decisions.schemas import MarkupCalculatorOutput, QuoteContentOutput
from coach_pipeline.marketplace.models import (
    BidStatus,
    BidView,
    CustomerQuoteCreate,
    CustomerQuoteStatus,
    CustomerQuoteView,
    EnquiryStatus,
    EnquiryView,
)
from coach_pipeline.pipelines import templates
from coach_pipeline.pipelines.common import (
    EmailDraft,
    PipelineDependencies,
    PipelineOutcome,
    PipelineResult,
    PipelineStage,
    decide,
    escalate_failure,
    flag_low_confidence,
    new_run_id,
    send_personalized_email,
)
from coach_pipeline.storage.app_settings import MARKUP_BOUNDS_KEY, SettingsReader

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


@dataclass(slots=True, frozen=True)
class MarkupBounds:
    min_percent: Decimal = Decimal("15")
    max_percent: Decimal = Decimal("35")

    def clamp(self, percent: float | Decimal) -> Decimal:
        value = Decimal(str(percent))
        if not value.is_finite():
            raise ValueError(f"Markup percent must be finite, got {percent!r}.")
        return min(self.max_percent, max(self.min_percent, value))


DEFAULT_MARKUP_BOUNDS = MarkupBounds()


@dataclass(slots=True)
class QuotePricing:
    """Deterministic quote arithmetic once the markup percentage is fixed."""

    supplier_price: Decimal
    markup_percent: Decimal
    markup_amount: Decimal
    subtotal: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_price: Decimal


def load_markup_bounds(settings_reader: SettingsReader | None) -> MarkupBounds:
    """Configured bounds, or the defaults when absent, unreadable or inverted."""

    if settings_reader is None:
        return DEFAULT_MARKUP_BOUNDS
    try:
        raw = settings_reader.get(MARKUP_BOUNDS_KEY)
    except (SQLAlchemyError, ValueError, TypeError, OSError) as error:
        logger.debug("Markup bounds unavailable, using defaults: %s", error)
        return DEFAULT_MARKUP_BOUNDS
    if not isinstance(raw, dict):
        return DEFAULT_MARKUP_BOUNDS
    try:
        min_percent = Decimal(str(raw["minPercent"]))
        max_percent = Decimal(str(raw["maxPercent"]))
    except (KeyError, InvalidOperation):
        logger.warning("Ignoring malformed markup bounds: %r", raw)
        return DEFAULT_MARKUP_BOUNDS
    if not min_percent.is_finite() or not max_percent.is_finite():
        return DEFAULT_MARKUP_BOUNDS
    if min_percent < 0 or max_percent < min_percent:
        logger.warning("Ignoring inverted markup bounds: %r", raw)
        return DEFAULT_MARKUP_BOUNDS
    return MarkupBounds(min_percent=min_percent, max_percent=max_percent)


def compute_pricing(
    *,
    supplier_price: Decimal,
    markup_percent: Decimal,
    vat_percent: Decimal,
) -> QuotePricing:
    markup_amount = (supplier_price * markup_percent / _HUNDRED).quantize(_CENT, ROUND_HALF_UP)
    subtotal = supplier_price + markup_amount
    vat_amount = (subtotal * vat_percent / _HUNDRED).quantize(_CENT, ROUND_HALF_UP)
    return QuotePricing(
        supplier_price=supplier_price,
        markup_percent=markup_percent,
        markup_amount=markup_amount,
        subtotal=subtotal,
        vat_rate=vat_percent,
        vat_amount=vat_amount,
        total_price=subtotal + vat_amount,
    )


class QuoteGenerationPipeline:
    """Markup, copy and delivery of the customer quote for an awarded bid."""

    def __init__(self, deps: PipelineDependencies) -> None:
        self.deps = deps

    def run(self, enquiry_id: str, *, run_id: str | None = None) -> PipelineResult:
        run_id = run_id or new_run_id()
        marketplace = self.deps.marketplace
        enquiry = marketplace.get_enquiry(enquiry_id)
        if enquiry is None or enquiry.status != EnquiryStatus.QUOTES_RECEIVED:
            logger.warning(
                "Skipping quote generation enquiry_id=%s status=%s",
                enquiry_id,
                enquiry.status.value if enquiry is not None else None,
            )
            return self._result(run_id, PipelineOutcome.SKIPPED, enquiry_id, detail="fenced")

        accepted = marketplace.list_bids(enquiry_id, status=BidStatus.ACCEPTED)
        if not accepted:
            logger.warning("Skipping quote generation, no accepted bid enquiry_id=%s", enquiry_id)
            return self._result(
                run_id,
                PipelineOutcome.SKIPPED,
                enquiry_id,
                detail="no accepted bid",
            )
        winner = accepted[0]

        quote = marketplace.get_quote_for_bid(winner.bid_id)
        if quote is None:
            created = self._create_quote(enquiry, winner, run_id=run_id)
            if isinstance(created, PipelineResult):
                return created
            quote = created
        if quote.status != CustomerQuoteStatus.DRAFT:
            logger.warning(
                "Skipping quote generation, quote already %s quote_id=%s",
                quote.status.value,
                quote.quote_id,
            )
            return self._result(run_id, PipelineOutcome.SKIPPED, enquiry_id, detail="fenced")

        self._send(enquiry, quote, run_id=run_id)
        logger.info(
            "Quote sent run_id=%s enquiry_id=%s quote_id=%s total=%s",
            run_id,
            enquiry_id,
            quote.quote_id,
            quote.total_price,
        )
        return self._result(
            run_id,
            PipelineOutcome.COMPLETED,
            enquiry_id,
            record_id=quote.quote_id,
        )

    def _create_quote(
        self,
        enquiry: EnquiryView,
        winner: BidView,
        *,
        run_id: str,
    ) -> CustomerQuoteView | PipelineResult:
        marketplace = self.deps.marketplace
        bounds = load_markup_bounds(self.deps.settings_reader)
        history = (
            marketplace.customer_history(enquiry.customer_id)
            if enquiry.customer_id is not None
            else None
        )
        context = {
            "enquiry": enquiry.trip_context(),
            "complexity_score": enquiry.ai_complexity_score,
            "estimated_price_min": enquiry.ai_estimated_price_min,
            "estimated_price_max": enquiry.ai_estimated_price_max,
            "supplier_price": winner.total_price,
            "markup_bounds": {
                "min_percent": float(bounds.min_percent),
                "max_percent": float(bounds.max_percent),
            },
            "customer_history": (
                {
                    "previous_bookings": history.previous_bookings,
                    "quote_acceptance_rate": history.acceptance_rate,
                    "average_spend": history.average_spend,
                }
                if history is not None
                else None
            ),
        }
        try:
            markup_result = decide(
                self.deps,
                DecisionType.MARKUP_CALCULATOR,
                context,
                run_id=run_id,
                enquiry_id=enquiry.enquiry_id,
            )
        except TaskFailedError as error:
            review = escalate_failure(
                self.deps,
                error,
                target_type="supplier_bid",
                target_id=winner.bid_id,
                context=context,
                enquiry_id=enquiry.enquiry_id,
            )
            return self._result(
                run_id,
                PipelineOutcome.ESCALATED,
                enquiry.enquiry_id,
                review_id=review.review_id,
            )
        markup = markup_result.parsed
        if not isinstance(markup, MarkupCalculatorOutput):
            raise TypeError(f"Unexpected MARKUP_CALCULATOR output: {type(markup).__name__}")
        flag_low_confidence(
            self.deps,
            markup_result,
            target_type="supplier_bid",
            target_id=winner.bid_id,
            enquiry_id=enquiry.enquiry_id,
        )

        markup_percent = bounds.clamp(markup.recommended_markup_percent)
        if markup_percent != Decimal(str(markup.recommended_markup_percent)):
            logger.info(
                "Markup clamped enquiry_id=%s recommended=%s applied=%s",
                enquiry.enquiry_id,
                markup.recommended_markup_percent,
                markup_percent,
            )
        pricing = compute_pricing(
            supplier_price=Decimal(str(winner.total_price)),
            markup_percent=markup_percent,
            vat_percent=Decimal(str(self.deps.pipeline.vat_percent)),
        )
        valid_until = self.deps.clock() + timedelta(days=self.deps.pipeline.quote_validity_days)
        content = self._quote_content(
            enquiry,
            winner,
            pricing,
            valid_until.date().isoformat(),
            run_id=run_id,
        )

        quote = marketplace.create_customer_quote(
            CustomerQuoteCreate(
                enquiry_id=enquiry.enquiry_id,
                supplier_bid_id=winner.bid_id,
                customer_id=enquiry.customer_id,
                supplier_price=pricing.supplier_price,
                markup_percent=pricing.markup_percent,
                markup_amount=pricing.markup_amount,
                subtotal=pricing.subtotal,
                vat_rate=pricing.vat_rate,
                vat_amount=pricing.vat_amount,
                total_price=pricing.total_price,
                valid_until=valid_until,
                description=content.quote_description if content else None,
                highlights=list(content.highlights) if content else [],
                ai_markup_reasoning=markup.reasoning,
                ai_acceptance_probability=markup.acceptance_probability,
            ),
        )
        if quote is None:
            existing = marketplace.get_quote_for_bid(winner.bid_id)
            if existing is None:
                raise RuntimeError(f"Quote for bid {winner.bid_id} vanished after conflict.")
            return existing
        return quote

    def _quote_content(  # noqa: PLR0913
        self,
        enquiry: EnquiryView,
        winner: BidView,
        pricing: QuotePricing,
        valid_until: str,
        *,
        run_id: str,
    ) -> QuoteContentOutput | None:
        context = {
            "enquiry": enquiry.trip_context(),
            "customer_name": enquiry.contact_name,
            "company_name": self.deps.pipeline.company_name,
            "vehicle_offered": winner.vehicle_offered,
            "subtotal": str(pricing.subtotal),
            "vat_amount": str(pricing.vat_amount),
            "total_price": str(pricing.total_price),
            "valid_until": valid_until,
        }
        try:
            result = decide(
                self.deps,
                DecisionType.QUOTE_CONTENT,
                context,
                run_id=run_id,
                enquiry_id=enquiry.enquiry_id,
            )
        except TaskFailedError as error:
            escalate_failure(
                self.deps,
                error,
                target_type="supplier_bid",
                target_id=winner.bid_id,
                context={**context, "sent_template": True},
                enquiry_id=enquiry.enquiry_id,
                blocking=False,
            )
            return None
        flag_low_confidence(
            self.deps,
            result,
            target_type="supplier_bid",
            target_id=winner.bid_id,
            enquiry_id=enquiry.enquiry_id,
        )
        content = result.parsed
        return content if isinstance(content, QuoteContentOutput) else None

    def _send(self, enquiry: EnquiryView, quote: CustomerQuoteView, *, run_id: str) -> None:
        pipeline = self.deps.pipeline
        subject, html = templates.customer_quote(
            company_name=pipeline.company_name,
            customer_name=enquiry.contact_name,
            reference=quote.reference_number,
            total_price=f"{quote.total_price:.2f}",
            valid_until=quote.valid_until.date().isoformat(),
            quote_url=f"{pipeline.app_base_url}/quote/{quote.acceptance_token}",
            body=quote.description,
        )
        send_personalized_email(
            self.deps,
            EmailDraft(
                to=enquiry.contact_email,
                subject=subject,
                html=html,
                recipient_name=enquiry.contact_name,
                purpose="customer quote",
            ),
            run_id=run_id,
            target_type="customer_quote",
            target_id=quote.quote_id,
            enquiry_id=enquiry.enquiry_id,
            customer_quote_id=quote.quote_id,
            dedupe_key=f"quote-email:{quote.quote_id}",
        )
        marketplace = self.deps.marketplace
        if not marketplace.transition_quote(
            quote.quote_id,
            from_status=CustomerQuoteStatus.DRAFT,
            to_status=CustomerQuoteStatus.SENT_TO_CUSTOMER,
            now=self.deps.clock(),
        ):
            logger.warning("Quote left DRAFT concurrently quote_id=%s", quote.quote_id)
        if not marketplace.transition_enquiry(
            enquiry.enquiry_id,
            from_status=EnquiryStatus.QUOTES_RECEIVED,
            to_status=EnquiryStatus.QUOTE_SENT,
        ):
            logger.warning(
                "Enquiry left QUOTES_RECEIVED concurrently enquiry_id=%s",
                enquiry.enquiry_id,
            )

    @staticmethod
    def _result(
        run_id: str,
        outcome: PipelineOutcome,
        enquiry_id: str,
        **fields: str | None,
    ) -> PipelineResult:
        return PipelineResult(
            stage=PipelineStage.QUOTE_GENERATION,
            outcome=outcome,
            pipeline_run_id=run_id,
            enquiry_id=enquiry_id,
            **fields,
        )
