"""Time-triggered sweeps that re-enter the pipeline without an external event."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from enum import Enum

from coach_pipeline.config import PipelineSettings
from coach_pipeline.jobs.models import JobName
from coach_pipeline.jobs.queue import JobQueue
from coach_pipeline.jobs.runtime import GracefulStop
from coach_pipeline.marketplace.bids import bid_evaluation_dedupe_key
from coach_pipeline.marketplace.models import InvitationStatus
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.pipelines import templates
from coach_pipeline.pipelines.bid_evaluation import is_enquiry_awaiting_evaluation
from coach_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


class SweepName(str, Enum):
    BID_TIMEOUT = "bid-timeout"
    QUOTE_EXPIRY = "quote-expiry"
    SURVEY_TRIGGER = "survey-trigger"
    REMINDERS = "reminders"


@dataclass(slots=True, frozen=True)
class SweepSchedule:
    """Hourly at `minute` when `hour` is None, otherwise daily at `hour:minute` UTC."""

    minute: int
    hour: int | None = None

    def last_slot(self, now: datetime) -> datetime:
        if self.hour is None:
            slot = now.replace(minute=self.minute, second=0, microsecond=0)
            return slot if slot <= now else slot - timedelta(hours=1)
        slot = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        return slot if slot <= now else slot - timedelta(days=1)


SCHEDULES: dict[SweepName, SweepSchedule] = {
    SweepName.BID_TIMEOUT: SweepSchedule(minute=0),
    SweepName.QUOTE_EXPIRY: SweepSchedule(minute=30),
    SweepName.SURVEY_TRIGGER: SweepSchedule(minute=0, hour=9),
    SweepName.REMINDERS: SweepSchedule(minute=0, hour=10),
}


@dataclass(slots=True)
class SweepResult:
    sweep: SweepName
    affected: int = 0
    enqueued: int = 0


class Scheduler:
    """Runs each sweep once per elapsed slot; every sweep is safe to repeat."""

    def __init__(
        self,
        *,
        marketplace: MarketplaceRepository,
        queue: JobQueue,
        pipeline: PipelineSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.marketplace = marketplace
        self.queue = queue
        self.pipeline = pipeline
        self.clock = clock
        self._last_run: dict[SweepName, datetime] = {}
        self._sweeps: dict[SweepName, Callable[[datetime], SweepResult]] = {
            SweepName.BID_TIMEOUT: self.bid_timeout,
            SweepName.QUOTE_EXPIRY: self.quote_expiry,
            SweepName.SURVEY_TRIGGER: self.survey_trigger,
            SweepName.REMINDERS: self.reminders,
        }

    def run_due(self, now: datetime | None = None) -> list[SweepResult]:
        """Run every sweep whose slot has elapsed since its last run."""

        moment = now or self.clock()
        results: list[SweepResult] = []
        for name, schedule in SCHEDULES.items():
            last = self._last_run.get(name)
            if last is not None and last >= schedule.last_slot(moment):
                continue
            results.append(self.run_sweep(name, moment))
        return results

    def run_sweep(self, name: SweepName, now: datetime | None = None) -> SweepResult:
        moment = now or self.clock()
        result = self._sweeps[name](moment)
        self._last_run[name] = moment
        logger.info(
            "Sweep finished sweep=%s affected=%d enqueued=%d",
            name.value,
            result.affected,
            result.enqueued,
        )
        return result

    def run_loop(self, *, stop: GracefulStop, tick_seconds: float = 60.0) -> None:
        with stop.installed():
            while not stop.requested:
                self.run_due()
                stop.sleep(tick_seconds)

    def bid_timeout(self, now: datetime) -> SweepResult:
        """Expire overdue invitations; trigger evaluation where nothing is pending.

        Settled enquiries from earlier passes are picked up again, so an expiry that
        committed without its enqueue still reaches evaluation. The per-enquiry dedupe
        key keeps that from queueing a second evaluation.
        """

        result = SweepResult(sweep=SweepName.BID_TIMEOUT)
        expired_ids = self.marketplace.expire_overdue_invitations(now=now)
        result.affected = len(expired_ids)
        settled_ids = self.marketplace.list_settled_sent_enquiry_ids()
        for enquiry_id in sorted(set(expired_ids) | set(settled_ids)):
            if self.marketplace.count_pending_invitations(enquiry_id) > 0:
                continue
            if not is_enquiry_awaiting_evaluation(self.marketplace.get_enquiry(enquiry_id)):
                continue
            if self.queue.enqueue(
                JobName.BID_EVALUATION,
                {"enquiry_id": enquiry_id},
                dedupe_key=bid_evaluation_dedupe_key(enquiry_id),
            ):
                result.enqueued += 1
        return result

    def quote_expiry(self, now: datetime) -> SweepResult:
        return SweepResult(
            sweep=SweepName.QUOTE_EXPIRY,
            affected=self.marketplace.expire_overdue_quotes(now=now),
        )

    def survey_trigger(self, now: datetime) -> SweepResult:
        """Survey email per booking completed on the previous UTC day."""

        result = SweepResult(sweep=SweepName.SURVEY_TRIGGER)
        day = now.astimezone(UTC).date() - timedelta(days=1)
        start = datetime.combine(day, time.min, tzinfo=UTC)
        bookings = self.marketplace.list_bookings_completed_between(
            start=start,
            end=start + timedelta(days=1),
        )
        result.affected = len(bookings)
        for booking in bookings:
            enquiry = self.marketplace.get_enquiry(booking.enquiry_id)
            if enquiry is None:
                logger.warning("Booking without enquiry booking_id=%s", booking.booking_id)
                continue
            subject, html = templates.survey_request(
                company_name=self.pipeline.company_name,
                booking_reference=booking.reference_number,
                survey_url=f"{self.pipeline.app_base_url}/survey?booking={booking.booking_id}",
            )
            if self.queue.enqueue(
                JobName.SEND_EMAIL,
                {"to": enquiry.contact_email, "subject": subject, "html": html},
                dedupe_key=f"survey:{booking.booking_id}:{day.isoformat()}",
            ):
                result.enqueued += 1
        return result

    def reminders(self, now: datetime) -> SweepResult:
        """Daily reminder per pending invitation on enquiries waiting too long for bids."""

        result = SweepResult(sweep=SweepName.REMINDERS)
        enquiries = self.marketplace.list_stale_sent_enquiries(
            sent_before=now - timedelta(hours=self.pipeline.reminder_after_hours),
        )
        result.affected = len(enquiries)
        day = now.astimezone(UTC).date().isoformat()
        for enquiry in enquiries:
            invitations = self.marketplace.list_invitations(
                enquiry.enquiry_id,
                status=InvitationStatus.PENDING,
            )
            suppliers = self.marketplace.get_suppliers(
                sorted({invitation.supplier_id for invitation in invitations}),
            )
            for invitation in invitations:
                supplier = suppliers.get(invitation.supplier_id)
                if supplier is None or not supplier.email:
                    continue
                subject, html = templates.bid_reminder(
                    company_name=self.pipeline.company_name,
                    supplier_name=supplier.name,
                    reference=enquiry.reference_number,
                    bid_url=f"{self.pipeline.app_base_url}/bid/{invitation.access_token}",
                )
                if self.queue.enqueue(
                    JobName.SEND_EMAIL,
                    {"to": supplier.email, "subject": subject, "html": html},
                    dedupe_key=f"reminder:{invitation.invitation_id}:{day}",
                ):
                    result.enqueued += 1
        return result
