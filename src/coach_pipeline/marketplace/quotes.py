"""Customer quote acceptance through acceptance tokens."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.queue import JobQueue
from coach_pipeline.marketplace.errors import (
    QuoteExpiredError,
    QuoteNotAcceptableError,
    QuoteNotFoundError,
)
from coach_pipeline.marketplace.models import CustomerQuoteStatus, CustomerQuoteView
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


def job_confirmation_dedupe_key(quote_id: str) -> str:
    return f"job-confirmation:{quote_id}"


class QuoteAcceptanceService:
    """Accepts or declines quotes sent to customers.

    Payment capture happens before `accept` is called.
    """

    def __init__(
        self,
        *,
        marketplace: MarketplaceRepository,
        queue: JobQueue,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.marketplace = marketplace
        self.queue = queue
        self.clock = clock

    def accept(self, acceptance_token: str) -> CustomerQuoteView:
        now = self.clock()
        quote = self._sent_quote(acceptance_token)
        if quote.valid_until < now:
            self.marketplace.transition_quote(
                quote.quote_id,
                from_status=CustomerQuoteStatus.SENT_TO_CUSTOMER,
                to_status=CustomerQuoteStatus.EXPIRED,
                now=now,
            )
            raise QuoteExpiredError(f"Quote {quote.reference_number} has expired.")
        if not self.marketplace.transition_quote(
            quote.quote_id,
            from_status=CustomerQuoteStatus.SENT_TO_CUSTOMER,
            to_status=CustomerQuoteStatus.ACCEPTED,
            now=now,
        ):
            raise QuoteNotAcceptableError(
                f"Quote {quote.reference_number} changed state concurrently.",
            )
        logger.info("Quote accepted quote_id=%s", quote.quote_id)
        self.queue.enqueue(
            JobName.JOB_CONFIRMATION,
            {"customer_quote_id": quote.quote_id},
            dedupe_key=job_confirmation_dedupe_key(quote.quote_id),
        )
        return self._reload(quote.quote_id)

    def decline(self, acceptance_token: str) -> CustomerQuoteView:
        quote = self._sent_quote(acceptance_token)
        if not self.marketplace.transition_quote(
            quote.quote_id,
            from_status=CustomerQuoteStatus.SENT_TO_CUSTOMER,
            to_status=CustomerQuoteStatus.DECLINED,
            now=self.clock(),
        ):
            raise QuoteNotAcceptableError(
                f"Quote {quote.reference_number} changed state concurrently.",
            )
        logger.info("Quote declined quote_id=%s", quote.quote_id)
        return self._reload(quote.quote_id)

    def _sent_quote(self, acceptance_token: str) -> CustomerQuoteView:
        quote = self.marketplace.get_quote_by_token(acceptance_token)
        if quote is None:
            raise QuoteNotFoundError("No quote matches this link.")
        if quote.status == CustomerQuoteStatus.EXPIRED:
            raise QuoteExpiredError(f"Quote {quote.reference_number} has expired.")
        if quote.status != CustomerQuoteStatus.SENT_TO_CUSTOMER:
            raise QuoteNotAcceptableError(
                f"Quote {quote.reference_number} is {quote.status.value}.",
            )
        return quote

    def _reload(self, quote_id: str) -> CustomerQuoteView:
        quote = self.marketplace.get_quote(quote_id)
        if quote is None:
            raise QuoteNotFoundError(f"Quote not found: {quote_id}")
        return quote
