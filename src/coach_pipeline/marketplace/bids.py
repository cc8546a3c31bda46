"""Supplier bid submission through invitation access tokens."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.queue import JobQueue
from coach_pipeline.marketplace.errors import (
    BidAlreadySubmittedError,
    BidInvitationExpiredError,
    BidInvitationNotFoundError,
)
from coach_pipeline.marketplace.models import (
    BidSubmission,
    BidView,
    InvitationStatus,
    InvitationView,
)
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


def bid_evaluation_dedupe_key(enquiry_id: str) -> str:
    return f"bid-evaluation:{enquiry_id}"


class BidSubmissionService:
    """Accepts or declines an invitation; the last response triggers bid evaluation."""

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

    def submit(self, access_token: str, submission: BidSubmission) -> BidView:
        if submission.base_price <= 0:
            raise ValueError("Base price must be positive.")
        now = self.clock()
        invitation = self._open_invitation(access_token, now=now)
        bid = self.marketplace.submit_bid(invitation, submission, now=now)
        if bid is None:
            raise BidAlreadySubmittedError(
                f"Invitation {invitation.invitation_id} was answered concurrently.",
            )
        logger.info(
            "Bid submitted bid_id=%s enquiry_id=%s total=%s",
            bid.bid_id,
            bid.enquiry_id,
            bid.total_price,
        )
        self._trigger_evaluation_if_complete(invitation.enquiry_id)
        return bid

    def decline(self, access_token: str) -> InvitationView:
        now = self.clock()
        invitation = self._open_invitation(access_token, now=now)
        if not self.marketplace.decline_invitation(invitation.invitation_id, now=now):
            raise BidAlreadySubmittedError(
                f"Invitation {invitation.invitation_id} was answered concurrently.",
            )
        logger.info("Invitation declined invitation_id=%s", invitation.invitation_id)
        self._trigger_evaluation_if_complete(invitation.enquiry_id)
        declined = self.marketplace.get_invitation_by_token(access_token)
        if declined is None:
            raise BidInvitationNotFoundError("Invitation disappeared after decline.")
        return declined

    def _open_invitation(self, access_token: str, *, now: datetime) -> InvitationView:
        invitation = self.marketplace.get_invitation_by_token(access_token)
        if invitation is None:
            raise BidInvitationNotFoundError("No bid invitation matches this link.")
        if invitation.status == InvitationStatus.EXPIRED or (
            invitation.status == InvitationStatus.PENDING and invitation.expires_at <= now
        ):
            raise BidInvitationExpiredError(
                f"Invitation {invitation.invitation_id} expired at {invitation.expires_at}.",
            )
        if invitation.status != InvitationStatus.PENDING:
            raise BidAlreadySubmittedError(
                f"Invitation {invitation.invitation_id} is already {invitation.status.value}.",
            )
        return invitation

    def _trigger_evaluation_if_complete(self, enquiry_id: str) -> None:
        if self.marketplace.count_pending_invitations(enquiry_id) > 0:
            return
        self.queue.enqueue(
            JobName.BID_EVALUATION,
            {"enquiry_id": enquiry_id},
            dedupe_key=bid_evaluation_dedupe_key(enquiry_id),
        )
