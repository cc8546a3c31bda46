"""Stage D: turn an accepted quote into a booking with documents and confirmations."""

from __future__ import annotations

import logging

from coach_pipeline.decisions.executor import TaskFailedError
from coach_pipeline.decisions.models import DecisionType
from coach_pipeline.decisions.schemas import JobDocumentsOutput
from coach_pipeline.jobs.models import JobName
from coach_pipeline.marketplace.models import (
    BidView,
    BookingStatus,
    BookingView,
    CustomerQuoteStatus,
    CustomerQuoteView,
    EnquiryStatus,
    EnquiryView,
    SupplierView,
    VehicleView,
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

logger = logging.getLogger(__name__)


class JobConfirmationPipeline:
    """Always proceeds once a quote is accepted; documents are advisory."""

    def __init__(self, deps: PipelineDependencies) -> None:
        self.deps = deps

    def run(self, customer_quote_id: str, *, run_id: str | None = None) -> PipelineResult:
        run_id = run_id or new_run_id()
        marketplace = self.deps.marketplace
        quote = marketplace.get_quote(customer_quote_id)
        if quote is None or quote.status != CustomerQuoteStatus.ACCEPTED:
            logger.warning(
                "Skipping job confirmation quote_id=%s status=%s",
                customer_quote_id,
                quote.status.value if quote is not None else None,
            )
            return self._result(run_id, PipelineOutcome.SKIPPED, detail="fenced")

        enquiry = marketplace.get_enquiry(quote.enquiry_id)
        bid = marketplace.get_bid(quote.supplier_bid_id)
        if enquiry is None or bid is None:
            raise RuntimeError(f"Quote {quote.quote_id} references missing enquiry or bid.")
        supplier = marketplace.get_supplier(bid.supplier_id)
        if supplier is None:
            raise RuntimeError(f"Bid {bid.bid_id} references missing supplier {bid.supplier_id}.")

        booking = marketplace.get_booking_for_quote(quote.quote_id)
        if booking is None:
            booking = self._create_booking(quote, enquiry, bid)
        if booking.status != BookingStatus.CONFIRMED:
            logger.warning(
                "Skipping job confirmation, booking already %s booking_id=%s",
                booking.status.value,
                booking.booking_id,
            )
            return self._result(
                run_id,
                PipelineOutcome.SKIPPED,
                enquiry_id=enquiry.enquiry_id,
                record_id=booking.booking_id,
                detail="fenced",
            )

        vehicle = self._vehicle(supplier, booking)
        logger.info(
            "Job confirmation started run_id=%s booking_id=%s reference=%s",
            run_id,
            booking.booking_id,
            booking.reference_number,
        )
        self._documents(enquiry, quote, booking, supplier, vehicle, run_id=run_id)
        self._confirmations(enquiry, quote, booking, supplier, run_id=run_id)

        if not marketplace.transition_booking(
            booking.booking_id,
            from_status=BookingStatus.CONFIRMED,
            to_status=BookingStatus.SUPPLIER_ASSIGNED,
            note=f"Assigned to {supplier.name}",
            now=self.deps.clock(),
        ):
            logger.warning("Booking left CONFIRMED concurrently booking_id=%s", booking.booking_id)
        if not marketplace.transition_enquiry(
            enquiry.enquiry_id,
            from_status=EnquiryStatus.QUOTE_SENT,
            to_status=EnquiryStatus.ACCEPTED,
        ):
            logger.warning("Enquiry left QUOTE_SENT concurrently enquiry_id=%s", enquiry.enquiry_id)

        logger.info(
            "Job confirmed run_id=%s booking_id=%s supplier_id=%s",
            run_id,
            booking.booking_id,
            supplier.supplier_id,
        )
        return self._result(
            run_id,
            PipelineOutcome.COMPLETED,
            enquiry_id=enquiry.enquiry_id,
            record_id=booking.booking_id,
        )

    def _create_booking(
        self,
        quote: CustomerQuoteView,
        enquiry: EnquiryView,
        bid: BidView,
    ) -> BookingView:
        marketplace = self.deps.marketplace
        vehicle = marketplace.choose_vehicle(
            bid.supplier_id,
            passenger_count=enquiry.passenger_count,
            preferred_type=bid.vehicle_offered or enquiry.ai_suggested_vehicle,
        )
        booking = marketplace.create_booking(
            quote,
            supplier_id=bid.supplier_id,
            vehicle_id=vehicle.vehicle_id if vehicle is not None else None,
        )
        if booking is None:
            booking = marketplace.get_booking_for_quote(quote.quote_id)
            if booking is None:
                raise RuntimeError(f"Booking for quote {quote.quote_id} vanished after conflict.")
        return booking

    @staticmethod
    def _vehicle(supplier: SupplierView, booking: BookingView) -> VehicleView | None:
        for vehicle in supplier.vehicles:
            if vehicle.vehicle_id == booking.vehicle_id:
                return vehicle
        return None

    def _documents(  # noqa: PLR0913
        self,
        enquiry: EnquiryView,
        quote: CustomerQuoteView,
        booking: BookingView,
        supplier: SupplierView,
        vehicle: VehicleView | None,
        *,
        run_id: str,
    ) -> None:
        context = {
            "booking_reference": booking.reference_number,
            "enquiry": enquiry.trip_context(),
            "customer_name": enquiry.contact_name,
            "customer_phone": enquiry.contact_phone,
            "supplier": {"name": supplier.name, "phone": supplier.phone},
            "vehicle": (
                {
                    "vehicle_type": vehicle.vehicle_type,
                    "capacity": vehicle.capacity,
                    "registration": vehicle.registration,
                    "driver_name": vehicle.driver_name,
                    "driver_phone": vehicle.driver_phone,
                }
                if vehicle is not None
                else None
            ),
            "quote_description": quote.description,
        }
        try:
            result = decide(
                self.deps,
                DecisionType.JOB_DOCUMENTS,
                context,
                run_id=run_id,
                enquiry_id=enquiry.enquiry_id,
                customer_quote_id=quote.quote_id,
                booking_id=booking.booking_id,
            )
        except TaskFailedError as error:
            escalate_failure(
                self.deps,
                error,
                target_type="booking",
                target_id=booking.booking_id,
                context=context,
                enquiry_id=enquiry.enquiry_id,
                blocking=False,
            )
            return
        flag_low_confidence(
            self.deps,
            result,
            target_type="booking",
            target_id=booking.booking_id,
            enquiry_id=enquiry.enquiry_id,
        )
        documents = result.parsed
        if not isinstance(documents, JobDocumentsOutput):
            raise TypeError(f"Unexpected JOB_DOCUMENTS output: {type(documents).__name__}")

        job_sheet = documents.job_sheet.model_dump(mode="json")
        job_sheet["supplier_notes"] = documents.supplier_notes
        self.deps.queue.enqueue(
            JobName.GENERATE_JOB_SHEET,
            {"booking_id": booking.booking_id, "content": job_sheet},
            dedupe_key=f"job-sheet:{booking.booking_id}",
        )
        self.deps.queue.enqueue(
            JobName.GENERATE_DRIVER_BRIEFING,
            {
                "booking_id": booking.booking_id,
                "content": documents.driver_briefing.model_dump(mode="json"),
            },
            dedupe_key=f"driver-briefing:{booking.booking_id}",
        )

    def _confirmations(
        self,
        enquiry: EnquiryView,
        quote: CustomerQuoteView,
        booking: BookingView,
        supplier: SupplierView,
        *,
        run_id: str,
    ) -> None:
        pipeline = self.deps.pipeline
        summary = templates.trip_summary(
            enquiry.pickup_location,
            enquiry.dropoff_location,
            enquiry.departure_date,
            enquiry.passenger_count,
        )
        if supplier.email:
            subject, html = templates.supplier_confirmation(
                company_name=pipeline.company_name,
                supplier_name=supplier.name,
                booking_reference=booking.reference_number,
                trip_summary=summary,
            )
            send_personalized_email(
                self.deps,
                EmailDraft(
                    to=supplier.email,
                    subject=subject,
                    html=html,
                    recipient_name=supplier.name,
                    purpose="supplier booking confirmation",
                ),
                run_id=run_id,
                target_type="booking",
                target_id=booking.booking_id,
                enquiry_id=enquiry.enquiry_id,
                customer_quote_id=quote.quote_id,
                booking_id=booking.booking_id,
                dedupe_key=f"confirmation-email:supplier:{booking.booking_id}",
            )
        else:
            logger.warning(
                "Supplier has no email, confirmation not sent supplier_id=%s",
                supplier.supplier_id,
            )

        subject, html = templates.customer_confirmation(
            company_name=pipeline.company_name,
            customer_name=enquiry.contact_name,
            booking_reference=booking.reference_number,
            trip_summary=summary,
        )
        send_personalized_email(
            self.deps,
            EmailDraft(
                to=enquiry.contact_email,
                subject=subject,
                html=html,
                recipient_name=enquiry.contact_name,
                purpose="customer booking confirmation",
            ),
            run_id=run_id,
            target_type="booking",
            target_id=booking.booking_id,
            enquiry_id=enquiry.enquiry_id,
            customer_quote_id=quote.quote_id,
            booking_id=booking.booking_id,
            dedupe_key=f"confirmation-email:customer:{booking.booking_id}",
        )

    @staticmethod
    def _result(
        run_id: str,
        outcome: PipelineOutcome,
        **fields: str | None,
    ) -> PipelineResult:
        return PipelineResult(
            stage=PipelineStage.JOB_CONFIRMATION,
            outcome=outcome,
            pipeline_run_id=run_id,
            **fields,
        )
