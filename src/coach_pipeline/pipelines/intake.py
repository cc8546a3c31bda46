"""Stage A: inbound message -> enquiry -> analysis -> supplier invitations."""

from __future__ import annotations

import logging
from datetime import timedelta

from coach_pipeline.decisions.executor import TaskFailedError
from coach_pipeline.decisions.models import (
    DecisionType,
    ReviewReason,
    ReviewStatus,
    ReviewTaskView,
)
from coach_pipeline.decisions.schemas import (
    EmailParserOutput,
    EnquiryAnalyzerOutput,
    RankedSupplier,
    SupplierSelectorOutput,
)
from coach_pipeline.marketplace.models import (
    EnquiryAnalysisWrite,
    EnquiryCreate,
    EnquiryStatus,
    EnquiryView,
    InboundMessageStatus,
    InboundMessageView,
    InvitationCreate,
    InvitationStatus,
    InvitationView,
    SupplierView,
)
from coach_pipeline.pipelines import templates
from coach_pipeline.pipelines.common import (
    EmailDraft,
    PipelineDependencies,
    PipelineOutcome,
    PipelineResult,
    PipelineStage,
    decide,
    escalate,
    escalate_failure,
    flag_low_confidence,
    new_run_id,
    send_personalized_email,
)

logger = logging.getLogger(__name__)

OPEN_REVIEW_STATUSES = (ReviewStatus.PENDING, ReviewStatus.IN_REVIEW)


def estimate_band_valid(price_min: float | None, price_max: float | None) -> bool:
    """A usable estimate band is positive and not inverted."""

    if price_min is None or price_max is None:
        return False
    return 0 < price_min <= price_max


class IntakePipeline:
    """Parses inbound messages, enriches enquiries and invites suppliers to bid."""

    def __init__(self, deps: PipelineDependencies) -> None:
        self.deps = deps

    def run_message(self, message_id: str, *, run_id: str | None = None) -> PipelineResult:
        """Parse an inbound message into an enquiry, then continue with `run_enquiry`."""

        run_id = run_id or new_run_id()
        marketplace = self.deps.marketplace
        existing = marketplace.get_enquiry_by_source_message(message_id)
        if existing is not None:
            logger.info(
                "Inbound message already parsed, resuming message_id=%s enquiry_id=%s",
                message_id,
                existing.enquiry_id,
            )
            return self.run_enquiry(existing.enquiry_id, run_id=run_id)

        message = marketplace.get_inbound_message(message_id)
        if message is None or message.status != InboundMessageStatus.RECEIVED:
            logger.warning("Skipping intake for message_id=%s: not awaiting parse", message_id)
            return self._result(run_id, PipelineOutcome.SKIPPED, detail="message not received")

        open_review = self._open_message_review(message_id)
        if open_review is not None:
            logger.info(
                "Message already escalated, finishing message_id=%s review_id=%s",
                message_id,
                open_review.review_id,
            )
            marketplace.mark_inbound_message(message_id, InboundMessageStatus.ESCALATED)
            return self._result(
                run_id,
                PipelineOutcome.ESCALATED,
                review_id=open_review.review_id,
            )

        logger.info("Intake started run_id=%s message_id=%s", run_id, message_id)
        context = {
            "from_email": message.from_email,
            "subject": message.subject,
            "body": message.body,
            "received_at": message.received_at.isoformat(),
        }
        try:
            result = decide(self.deps, DecisionType.EMAIL_PARSER, context, run_id=run_id)
        except TaskFailedError as error:
            review = escalate_failure(
                self.deps,
                error,
                target_type="inbound_message",
                target_id=message_id,
                context=context,
            )
            marketplace.mark_inbound_message(message_id, InboundMessageStatus.ESCALATED)
            return self._result(run_id, PipelineOutcome.ESCALATED, review_id=review.review_id)

        parsed = result.parsed
        if not isinstance(parsed, EmailParserOutput):
            raise TypeError(f"Unexpected EMAIL_PARSER output: {type(parsed).__name__}")
        if not result.auto_executed:
            review = escalate(
                self.deps,
                decision_type=DecisionType.EMAIL_PARSER,
                reason=ReviewReason.LOW_CONFIDENCE,
                target_type="inbound_message",
                target_id=message_id,
                context={
                    **context,
                    "output": parsed.model_dump(mode="json"),
                    "confidence": result.confidence,
                    "threshold": result.threshold,
                },
                decision_log_id=result.log_id,
            )
            marketplace.mark_inbound_message(message_id, InboundMessageStatus.ESCALATED)
            return self._result(run_id, PipelineOutcome.ESCALATED, review_id=review.review_id)

        enquiry = self._create_enquiry(message, parsed)
        marketplace.mark_inbound_message(message_id, InboundMessageStatus.PARSED)
        logger.info(
            "Enquiry created from message message_id=%s enquiry_id=%s reference=%s",
            message_id,
            enquiry.enquiry_id,
            enquiry.reference_number,
        )
        return self.run_enquiry(enquiry.enquiry_id, run_id=run_id)

    def run_enquiry(self, enquiry_id: str, *, run_id: str | None = None) -> PipelineResult:
        """Analyse a SUBMITTED enquiry and invite suppliers; resumes from later intake states."""

        run_id = run_id or new_run_id()
        enquiry = self.deps.marketplace.get_enquiry(enquiry_id)
        if enquiry is None:
            logger.warning("Skipping intake: enquiry not found enquiry_id=%s", enquiry_id)
            return self._result(run_id, PipelineOutcome.SKIPPED, detail="enquiry not found")

        if enquiry.status == EnquiryStatus.SUBMITTED:
            analysed = self._analyse(enquiry, run_id=run_id)
            if isinstance(analysed, PipelineResult):
                return analysed
            enquiry = analysed

        if enquiry.status == EnquiryStatus.SENT_TO_SUPPLIERS:
            return self._resume_invitations(enquiry, run_id=run_id)

        if enquiry.status != EnquiryStatus.UNDER_REVIEW:
            logger.warning(
                "Skipping supplier selection enquiry_id=%s status=%s",
                enquiry_id,
                enquiry.status.value,
            )
            return self._result(
                run_id,
                PipelineOutcome.SKIPPED,
                enquiry_id=enquiry_id,
                detail=f"enquiry is {enquiry.status.value}",
            )
        return self._select_and_invite(enquiry, run_id=run_id)

    def _open_message_review(self, message_id: str) -> ReviewTaskView | None:
        """Blocking review left by an escalation whose message update never committed."""

        reviews = self.deps.decisions.list_review_tasks(target=("inbound_message", message_id))
        for review in reviews:
            if review.blocking and review.status in OPEN_REVIEW_STATUSES:
                return review
        return None

    def _create_enquiry(self, message: InboundMessageView, parsed: EmailParserOutput) -> EnquiryView:
        fields = parsed.parsed_enquiry
        email = fields.customer_email or message.from_email
        customer = self.deps.marketplace.find_or_create_customer(
            name=fields.customer_name,
            email=email,
            phone=fields.customer_phone,
            company_name=fields.company_name,
        )
        return self.deps.marketplace.create_enquiry(
            EnquiryCreate(
                contact_name=fields.customer_name,
                contact_email=email,
                contact_phone=fields.customer_phone,
                company_name=fields.company_name,
                pickup_location=fields.pickup_location,
                dropoff_location=fields.dropoff_location,
                departure_date=fields.departure_date,
                departure_time=fields.departure_time,
                return_date=fields.return_date,
                return_time=fields.return_time,
                passenger_count=fields.passenger_count,
                trip_type=fields.trip_type,
                vehicle_type=fields.vehicle_type,
                special_requirements=fields.special_requirements,
                budget_min=fields.budget_min,
                budget_max=fields.budget_max,
                source_message_id=message.message_id,
            ),
            customer_id=customer.customer_id,
        )

    def _analyse(self, enquiry: EnquiryView, *, run_id: str) -> EnquiryView | PipelineResult:
        context = {
            "enquiry": enquiry.trip_context(),
            "budget_min": enquiry.budget_min,
            "budget_max": enquiry.budget_max,
            "company_name": enquiry.company_name,
        }
        try:
            result = decide(
                self.deps,
                DecisionType.ENQUIRY_ANALYZER,
                context,
                run_id=run_id,
                enquiry_id=enquiry.enquiry_id,
            )
        except TaskFailedError as error:
            review = escalate_failure(
                self.deps,
                error,
                target_type="enquiry",
                target_id=enquiry.enquiry_id,
                context=context,
                enquiry_id=enquiry.enquiry_id,
            )
            return self._result(
                run_id,
                PipelineOutcome.ESCALATED,
                enquiry_id=enquiry.enquiry_id,
                review_id=review.review_id,
            )

        analysis = result.parsed
        if not isinstance(analysis, EnquiryAnalyzerOutput):
            raise TypeError(f"Unexpected ENQUIRY_ANALYZER output: {type(analysis).__name__}")
        flag_low_confidence(
            self.deps,
            result,
            target_type="enquiry",
            target_id=enquiry.enquiry_id,
            enquiry_id=enquiry.enquiry_id,
        )
        if not estimate_band_valid(analysis.estimated_price_min, analysis.estimated_price_max):
            logger.warning(
                "Suspicious estimate band enquiry_id=%s min=%s max=%s",
                enquiry.enquiry_id,
                analysis.estimated_price_min,
                analysis.estimated_price_max,
            )

        moved = self.deps.marketplace.start_review_with_analysis(
            enquiry.enquiry_id,
            EnquiryAnalysisWrite(
                complexity_score=analysis.complexity_score,
                suggested_vehicle=analysis.suggested_vehicle_type,
                estimated_price_min=analysis.estimated_price_min,
                estimated_price_max=analysis.estimated_price_max,
                quality_score=analysis.quality_score,
                notes="\n".join(
                    (analysis.vehicle_reasoning, analysis.price_reasoning, analysis.quality_notes),
                ),
            ),
        )
        if not moved:
            logger.warning("Enquiry left SUBMITTED concurrently enquiry_id=%s", enquiry.enquiry_id)
            return self._result(
                run_id,
                PipelineOutcome.SKIPPED,
                enquiry_id=enquiry.enquiry_id,
                detail="enquiry no longer SUBMITTED",
            )
        refreshed = self.deps.marketplace.get_enquiry(enquiry.enquiry_id)
        if refreshed is None:
            raise RuntimeError(f"Enquiry vanished after analysis: {enquiry.enquiry_id}")
        return refreshed

    def _select_and_invite(self, enquiry: EnquiryView, *, run_id: str) -> PipelineResult:
        suppliers = self.deps.marketplace.list_active_suppliers()
        if not suppliers:
            review = escalate(
                self.deps,
                decision_type=DecisionType.SUPPLIER_SELECTOR,
                reason=ReviewReason.AI_FAILURE,
                target_type="enquiry",
                target_id=enquiry.enquiry_id,
                context={"error": "no active suppliers"},
                enquiry_id=enquiry.enquiry_id,
            )
            return self._escalated(run_id, enquiry, review.review_id)

        context = {
            "enquiry": enquiry.trip_context(),
            "analysis": {
                "complexity_score": enquiry.ai_complexity_score,
                "suggested_vehicle": enquiry.ai_suggested_vehicle,
                "estimated_price_min": enquiry.ai_estimated_price_min,
                "estimated_price_max": enquiry.ai_estimated_price_max,
                "estimate_band_valid": estimate_band_valid(
                    enquiry.ai_estimated_price_min,
                    enquiry.ai_estimated_price_max,
                ),
            },
            "candidates": [supplier.selection_context() for supplier in suppliers],
        }
        try:
            result = decide(
                self.deps,
                DecisionType.SUPPLIER_SELECTOR,
                context,
                run_id=run_id,
                enquiry_id=enquiry.enquiry_id,
            )
        except TaskFailedError as error:
            review = escalate_failure(
                self.deps,
                error,
                target_type="enquiry",
                target_id=enquiry.enquiry_id,
                context=context,
                enquiry_id=enquiry.enquiry_id,
            )
            return self._escalated(run_id, enquiry, review.review_id)

        selection = result.parsed
        if not isinstance(selection, SupplierSelectorOutput):
            raise TypeError(f"Unexpected SUPPLIER_SELECTOR output: {type(selection).__name__}")
        if not result.auto_executed:
            review = escalate(
                self.deps,
                decision_type=DecisionType.SUPPLIER_SELECTOR,
                reason=ReviewReason.LOW_CONFIDENCE,
                target_type="enquiry",
                target_id=enquiry.enquiry_id,
                context={
                    "output": selection.model_dump(mode="json"),
                    "confidence": result.confidence,
                    "threshold": result.threshold,
                },
                enquiry_id=enquiry.enquiry_id,
                decision_log_id=result.log_id,
            )
            return self._escalated(run_id, enquiry, review.review_id)

        by_id = {supplier.supplier_id: supplier for supplier in suppliers}
        chosen = _top_ranked(selection, by_id)
        if not chosen:
            review = escalate(
                self.deps,
                decision_type=DecisionType.SUPPLIER_SELECTOR,
                reason=ReviewReason.AI_FAILURE,
                target_type="enquiry",
                target_id=enquiry.enquiry_id,
                context={
                    "output": selection.model_dump(mode="json"),
                    "error": "no ranked supplier matches an active candidate",
                },
                enquiry_id=enquiry.enquiry_id,
                decision_log_id=result.log_id,
            )
            return self._escalated(run_id, enquiry, review.review_id)

        pipeline = self.deps.pipeline
        invitations = self.deps.marketplace.send_invitations(
            enquiry.enquiry_id,
            invitations=[
                InvitationCreate(
                    supplier_id=ranked.supplier_id,
                    ai_rank=ranked.rank,
                    ai_score=ranked.composite_score,
                    ai_reasoning=ranked.reasoning,
                )
                for ranked in chosen
            ],
            expires_at=self.deps.clock() + timedelta(hours=pipeline.bid_response_hours),
        )
        if invitations is None:
            logger.warning(
                "Enquiry left UNDER_REVIEW concurrently enquiry_id=%s",
                enquiry.enquiry_id,
            )
            return self._result(
                run_id,
                PipelineOutcome.SKIPPED,
                enquiry_id=enquiry.enquiry_id,
                detail="enquiry no longer UNDER_REVIEW",
            )

        return self._send_invitations(enquiry, invitations, by_id, run_id=run_id)

    def _resume_invitations(self, enquiry: EnquiryView, *, run_id: str) -> PipelineResult:
        """Re-send the fan-out for a redelivered job; delivered emails are deduplicated."""

        marketplace = self.deps.marketplace
        invitations = marketplace.list_invitations(
            enquiry.enquiry_id,
            status=InvitationStatus.PENDING,
        )
        logger.info(
            "Resuming supplier invitations enquiry_id=%s pending=%d",
            enquiry.enquiry_id,
            len(invitations),
        )
        suppliers = marketplace.get_suppliers(
            sorted({invitation.supplier_id for invitation in invitations}),
        )
        return self._send_invitations(enquiry, invitations, suppliers, run_id=run_id)

    def _send_invitations(
        self,
        enquiry: EnquiryView,
        invitations: list[InvitationView],
        suppliers: dict[str, SupplierView],
        *,
        run_id: str,
    ) -> PipelineResult:
        summary = templates.trip_summary(
            enquiry.pickup_location,
            enquiry.dropoff_location,
            enquiry.departure_date,
            enquiry.passenger_count,
        )
        for invitation in invitations:
            supplier = suppliers.get(invitation.supplier_id)
            if supplier is None:
                logger.warning(
                    "Invited supplier missing supplier_id=%s invitation_id=%s",
                    invitation.supplier_id,
                    invitation.invitation_id,
                )
                continue
            self._invite(
                supplier,
                enquiry,
                invitation.invitation_id,
                invitation.access_token,
                summary=summary,
                run_id=run_id,
            )

        logger.info(
            "Intake completed run_id=%s enquiry_id=%s invited=%d",
            run_id,
            enquiry.enquiry_id,
            len(invitations),
        )
        return self._result(
            run_id,
            PipelineOutcome.COMPLETED,
            enquiry_id=enquiry.enquiry_id,
            record_id=enquiry.enquiry_id,
            detail=f"invited {len(invitations)} suppliers",
        )

    def _invite(  # noqa: PLR0913
        self,
        supplier: SupplierView,
        enquiry: EnquiryView,
        invitation_id: str,
        access_token: str,
        *,
        summary: str,
        run_id: str,
    ) -> None:
        if not supplier.email:
            logger.warning(
                "Supplier has no email, invitation not sent supplier_id=%s invitation_id=%s",
                supplier.supplier_id,
                invitation_id,
            )
            return
        pipeline = self.deps.pipeline
        subject, html = templates.supplier_invitation(
            company_name=pipeline.company_name,
            supplier_name=supplier.name,
            reference=enquiry.reference_number,
            trip_summary=summary,
            bid_url=f"{pipeline.app_base_url}/bid/{access_token}",
            respond_within_hours=pipeline.bid_response_hours,
        )
        send_personalized_email(
            self.deps,
            EmailDraft(
                to=supplier.email,
                subject=subject,
                html=html,
                recipient_name=supplier.name,
                purpose="supplier bid invitation",
            ),
            run_id=run_id,
            target_type="bid_invitation",
            target_id=invitation_id,
            enquiry_id=enquiry.enquiry_id,
            dedupe_key=f"invitation-email:{invitation_id}",
        )

    def _escalated(self, run_id: str, enquiry: EnquiryView, review_id: str) -> PipelineResult:
        return self._result(
            run_id,
            PipelineOutcome.ESCALATED,
            enquiry_id=enquiry.enquiry_id,
            review_id=review_id,
        )

    @staticmethod
    def _result(
        run_id: str,
        outcome: PipelineOutcome,
        **fields: str | None,
    ) -> PipelineResult:
        return PipelineResult(
            stage=PipelineStage.INTAKE,
            outcome=outcome,
            pipeline_run_id=run_id,
            **fields,
        )


def _top_ranked(
    selection: SupplierSelectorOutput,
    candidates: dict[str, SupplierView],
) -> list[RankedSupplier]:
    """Top-N known suppliers by rank, N taken from the decision's own recommendation."""

    seen: set[str] = set()
    ranked: list[RankedSupplier] = []
    for entry in sorted(selection.ranked_suppliers, key=lambda item: item.rank):
        if entry.supplier_id not in candidates or entry.supplier_id in seen:
            continue
        seen.add(entry.supplier_id)
        ranked.append(entry)
    return ranked[: selection.recommended_count]
