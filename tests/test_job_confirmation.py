from __future__ import annotations

import allure

from coach_pipeline.decisions.failure_classifier import ProviderError
from coach_pipeline.decisions.models import ReviewReason
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.schemas import JobDocumentsOutput
from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.repository import JobRepository
from coach_pipeline.marketplace.models import BookingStatus, EnquiryStatus, VehicleCreate
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.pipelines import JobConfirmationPipeline, PipelineDependencies, PipelineOutcome

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Job Confirmation"),
]


def test_accepted_quote_becomes_assigned_booking(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
    jobs: JobRepository,
) -> None:
    enquiry, quote = seed.accepted_quote()
    backend.script(JobDocumentsOutput, outputs.job_documents())

    result = JobConfirmationPipeline(deps).run(quote.quote_id)

    assert result.outcome == PipelineOutcome.COMPLETED
    booking = marketplace.get_booking_for_quote(quote.quote_id)
    assert booking is not None
    assert result.record_id == booking.booking_id
    assert booking.status == BookingStatus.SUPPLIER_ASSIGNED
    assert booking.reference_number.startswith("BKG-")
    assert booking.vehicle_id is not None
    history = marketplace.booking_history(booking.booking_id)
    assert [(row.status_from, row.status_to) for row in history] == [
        (None, BookingStatus.CONFIRMED),
        (BookingStatus.CONFIRMED, BookingStatus.SUPPLIER_ASSIGNED),
    ]
    refreshed = marketplace.get_enquiry(enquiry.enquiry_id)
    assert refreshed is not None
    assert refreshed.status == EnquiryStatus.ACCEPTED

    sheets = jobs.list_jobs(name=JobName.GENERATE_JOB_SHEET)
    briefings = jobs.list_jobs(name=JobName.GENERATE_DRIVER_BRIEFING)
    assert len(sheets) == 1
    assert len(briefings) == 1
    assert sheets[0].payload["content"]["supplier_notes"].startswith("Please confirm")
    assert briefings[0].payload["content"]["route_notes"] == "M62 eastbound"
    emails = jobs.list_jobs(name=JobName.SEND_EMAIL)
    assert sorted(job.dedupe_key or "" for job in emails) == [
        f"confirmation-email:customer:{booking.booking_id}",
        f"confirmation-email:supplier:{booking.booking_id}",
    ]


def test_document_failure_does_not_block_booking(
    deps: PipelineDependencies,
    backend,
    seed,
    marketplace: MarketplaceRepository,
    jobs: JobRepository,
    decisions: DecisionRepository,
) -> None:
    enquiry, quote = seed.accepted_quote()
    backend.script(JobDocumentsOutput, *[ProviderError("HTTP 502") for _ in range(3)])

    result = JobConfirmationPipeline(deps).run(quote.quote_id)

    assert result.outcome == PipelineOutcome.COMPLETED
    booking = marketplace.get_booking_for_quote(quote.quote_id)
    assert booking is not None
    assert booking.status == BookingStatus.SUPPLIER_ASSIGNED
    assert jobs.list_jobs(name=JobName.GENERATE_JOB_SHEET) == []
    assert len(jobs.list_jobs(name=JobName.SEND_EMAIL)) == 2
    reviews = decisions.list_review_tasks(enquiry_id=enquiry.enquiry_id)
    assert [(review.reason, review.blocking, review.target_type) for review in reviews] == [
        (ReviewReason.AI_FAILURE, False, "booking"),
    ]


def test_rerun_is_fenced_by_booking_status(
    deps: PipelineDependencies,
    backend,
    seed,
    outputs,
    marketplace: MarketplaceRepository,
) -> None:
    _, quote = seed.accepted_quote()
    backend.script(JobDocumentsOutput, outputs.job_documents())
    pipeline = JobConfirmationPipeline(deps)
    first = pipeline.run(quote.quote_id)

    again = pipeline.run(quote.quote_id)

    assert again.outcome == PipelineOutcome.SKIPPED
    assert again.record_id == first.record_id
    assert len(backend.calls_for(JobDocumentsOutput)) == 1
    booking = marketplace.get_booking_for_quote(quote.quote_id)
    assert booking is not None
    assert len(marketplace.booking_history(booking.booking_id)) == 2


def test_quote_not_accepted_is_skipped(
    deps: PipelineDependencies,
    backend,
    seed,
    marketplace: MarketplaceRepository,
) -> None:
    _, quote = seed.sent_quote()

    result = JobConfirmationPipeline(deps).run(quote.quote_id)

    assert result.outcome == PipelineOutcome.SKIPPED
    assert marketplace.get_booking_for_quote(quote.quote_id) is None
    assert backend.calls == []


def test_choose_vehicle_prefers_offered_type_that_fits(seed, marketplace) -> None:
    supplier = seed.supplier(
        vehicles=[
            VehicleCreate(vehicle_type="MINIBUS", capacity=16, registration="MB1"),
            VehicleCreate(vehicle_type="EXECUTIVE_COACH", capacity=49, registration="EX1"),
            VehicleCreate(vehicle_type="STANDARD_COACH", capacity=70, registration="ST1"),
        ],
    )

    preferred = marketplace.choose_vehicle(
        supplier.supplier_id,
        passenger_count=40,
        preferred_type="STANDARD_COACH",
    )
    fallback = marketplace.choose_vehicle(
        supplier.supplier_id,
        passenger_count=40,
        preferred_type="DOUBLE_DECKER",
    )
    too_many = marketplace.choose_vehicle(
        supplier.supplier_id,
        passenger_count=90,
        preferred_type=None,
    )

    assert preferred is not None
    assert preferred.registration == "ST1"
    assert fallback is not None
    assert fallback.registration == "EX1"
    assert too_many is None
