from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import allure
import pytest

from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.queue import SqliteJobQueue
from coach_pipeline.jobs.repository import JobRepository
from coach_pipeline.marketplace.bids import BidSubmissionService
from coach_pipeline.marketplace.errors import (
    BidAlreadySubmittedError,
    BidInvitationExpiredError,
    BidInvitationNotFoundError,
    QuoteExpiredError,
    QuoteNotAcceptableError,
    QuoteNotFoundError,
)
from coach_pipeline.marketplace.models import (
    BidSubmission,
    CustomerQuoteCreate,
    CustomerQuoteStatus,
    InvitationStatus,
)
from coach_pipeline.marketplace.quotes import QuoteAcceptanceService
from coach_pipeline.marketplace.references import ReferencePrefix, format_reference
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.storage.common import utc_now

pytestmark = [
    allure.epic("Marketplace"),
    allure.feature("Bids and Quotes"),
]


def _submission(base: str = "900", **charges: str) -> BidSubmission:
    return BidSubmission(
        base_price=Decimal(base),
        **{name: Decimal(value) for name, value in charges.items()},
    )


def test_format_reference() -> None:
    assert format_reference(ReferencePrefix.ENQUIRY, 2026, 42) == "ENQ-2026-00042"


def test_reference_sequence_is_gapless_under_concurrency(
    marketplace: MarketplaceRepository,
) -> None:
    now = datetime(2026, 10, 19, tzinfo=UTC)
    minted: list[str] = []
    lock = threading.Lock()

    def _mint() -> None:
        for _ in range(5):
            reference = marketplace.next_reference(ReferencePrefix.BOOKING, now=now)
            with lock:
                minted.append(reference)

    threads = [threading.Thread(target=_mint) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(minted) == [f"BKG-2026-{value:05d}" for value in range(1, 21)]
    assert marketplace.next_reference(ReferencePrefix.BOOKING, now=now.replace(year=2027)) == (
        "BKG-2027-00001"
    )


def test_last_bid_triggers_one_evaluation(
    seed,
    marketplace: MarketplaceRepository,
    queue: SqliteJobQueue,
    jobs: JobRepository,
) -> None:
    enquiry, invitations = seed.invited([seed.supplier(), seed.supplier()])
    service = BidSubmissionService(marketplace=marketplace, queue=queue)

    bid = service.submit(
        invitations[0].access_token,
        _submission("900", fuel_surcharge="50.25", toll_charges="12.50"),
    )
    assert bid.total_price == pytest.approx(962.75)
    assert jobs.list_jobs(name=JobName.BID_EVALUATION) == []

    service.decline(invitations[1].access_token)

    queued = jobs.list_jobs(name=JobName.BID_EVALUATION)
    assert len(queued) == 1
    assert queued[0].dedupe_key == f"bid-evaluation:{enquiry.enquiry_id}"
    statuses = {
        item.invitation_id: item.status
        for item in marketplace.list_invitations(enquiry.enquiry_id)
    }
    assert statuses == {
        invitations[0].invitation_id: InvitationStatus.QUOTED,
        invitations[1].invitation_id: InvitationStatus.DECLINED,
    }


def test_second_submission_is_rejected(
    seed,
    marketplace: MarketplaceRepository,
    queue: SqliteJobQueue,
) -> None:
    _, invitations = seed.invited([seed.supplier()])
    service = BidSubmissionService(marketplace=marketplace, queue=queue)
    service.submit(invitations[0].access_token, _submission())

    with pytest.raises(BidAlreadySubmittedError):
        service.submit(invitations[0].access_token, _submission("800"))
    assert len(marketplace.list_bids(invitations[0].enquiry_id)) == 1


def test_expired_and_unknown_invitations_are_rejected(
    seed,
    marketplace: MarketplaceRepository,
    queue: SqliteJobQueue,
) -> None:
    _, invitations = seed.invited([seed.supplier()], expires_in=timedelta(hours=1))
    later = utc_now() + timedelta(hours=2)
    service = BidSubmissionService(marketplace=marketplace, queue=queue, clock=lambda: later)

    with pytest.raises(BidInvitationExpiredError):
        service.submit(invitations[0].access_token, _submission())
    with pytest.raises(BidInvitationNotFoundError):
        service.submit("no-such-token", _submission())


def test_non_positive_base_price_is_rejected(
    seed,
    marketplace: MarketplaceRepository,
    queue: SqliteJobQueue,
) -> None:
    _, invitations = seed.invited([seed.supplier()])
    service = BidSubmissionService(marketplace=marketplace, queue=queue)

    with pytest.raises(ValueError, match="positive"):
        service.submit(invitations[0].access_token, _submission("0"))


def test_quote_acceptance_queues_job_confirmation(
    seed,
    marketplace: MarketplaceRepository,
    queue: SqliteJobQueue,
    jobs: JobRepository,
) -> None:
    _, quote = seed.sent_quote()
    service = QuoteAcceptanceService(marketplace=marketplace, queue=queue)

    accepted = service.accept(quote.acceptance_token)

    assert accepted.status == CustomerQuoteStatus.ACCEPTED
    assert accepted.accepted_at is not None
    queued = jobs.list_jobs(name=JobName.JOB_CONFIRMATION)
    assert [job.payload for job in queued] == [{"customer_quote_id": quote.quote_id}]
    with pytest.raises(QuoteNotAcceptableError):
        service.accept(quote.acceptance_token)


def test_expired_quote_cannot_be_accepted(
    seed,
    marketplace: MarketplaceRepository,
    queue: SqliteJobQueue,
    jobs: JobRepository,
) -> None:
    _, quote = seed.sent_quote(valid_for=timedelta(days=1))
    later = utc_now() + timedelta(days=2)
    service = QuoteAcceptanceService(marketplace=marketplace, queue=queue, clock=lambda: later)

    with pytest.raises(QuoteExpiredError):
        service.accept(quote.acceptance_token)

    stored = marketplace.get_quote(quote.quote_id)
    assert stored is not None
    assert stored.status == CustomerQuoteStatus.EXPIRED
    assert jobs.list_jobs(name=JobName.JOB_CONFIRMATION) == []
    with pytest.raises(QuoteExpiredError):
        service.decline(quote.acceptance_token)


def test_quote_decline_and_unknown_token(
    seed,
    marketplace: MarketplaceRepository,
    queue: SqliteJobQueue,
) -> None:
    _, quote = seed.sent_quote()
    service = QuoteAcceptanceService(marketplace=marketplace, queue=queue)

    declined = service.decline(quote.acceptance_token)

    assert declined.status == CustomerQuoteStatus.DECLINED
    with pytest.raises(QuoteNotFoundError):
        service.accept("missing-token")


def test_one_quote_per_bid(seed, marketplace: MarketplaceRepository) -> None:
    enquiry, quote = seed.sent_quote()
    assert quote.total_price == pytest.approx(1350.0)
    assert quote.enquiry_id == enquiry.enquiry_id

    duplicate = marketplace.create_customer_quote(
        _quote_payload(enquiry.enquiry_id, quote.supplier_bid_id),
    )

    assert duplicate is None


def _quote_payload(enquiry_id: str, bid_id: str) -> CustomerQuoteCreate:
    return CustomerQuoteCreate(
        enquiry_id=enquiry_id,
        supplier_bid_id=bid_id,
        customer_id=None,
        supplier_price=Decimal("900"),
        markup_percent=Decimal("20"),
        markup_amount=Decimal("180"),
        subtotal=Decimal("1080"),
        vat_rate=Decimal("20"),
        vat_amount=Decimal("216"),
        total_price=Decimal("1296"),
        valid_until=utc_now() + timedelta(days=7),
    )
