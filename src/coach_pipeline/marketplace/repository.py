"""Persistence facade for marketplace business records.

Every status change is a conditional update on the expected pre-state; a
`False`/`None` return means another worker got there first and the caller
should no-op.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from coach_pipeline.marketplace.models import (
    BidEvaluationWrite,
    BidStatus,
    BidSubmission,
    BidView,
    BookingHistoryView,
    BookingStatus,
    BookingView,
    CustomerHistory,
    CustomerQuoteCreate,
    CustomerQuoteStatus,
    CustomerQuoteView,
    CustomerView,
    EnquiryAnalysisWrite,
    EnquiryCreate,
    EnquiryStatus,
    EnquiryView,
    InboundMessageStatus,
    InboundMessageView,
    InvitationCreate,
    InvitationStatus,
    InvitationView,
    SupplierCreate,
    SupplierView,
    VehicleCreate,
    VehicleView,
)
from coach_pipeline.marketplace.references import (
    ReferencePrefix,
    format_reference,
    new_access_token,
)
from coach_pipeline.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coach_pipeline.storage.sqlmodel_models import (
    BidInvitation,
    Booking,
    BookingStatusHistory,
    Customer,
    CustomerQuote,
    Enquiry,
    InboundMessage,
    Sequence,
    Supplier,
    SupplierBid,
    Vehicle,
)


class MarketplaceRepository:
    """Business-record persistence backed by SQLModel + SQLite."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # Sequences

    def next_reference(self, prefix: ReferencePrefix, *, now: datetime | None = None) -> str:
        """Mint a reference number from a single atomic upsert-increment."""

        year = (now or utc_now()).year
        with Session(self.engine) as session:
            statement = (
                sqlite_insert(Sequence)
                .values(prefix=prefix.value, year=year, value=1)
                .on_conflict_do_update(
                    index_elements=["prefix", "year"],
                    set_={"value": col(Sequence.value) + 1},
                )
                .returning(col(Sequence.value))
            )
            value = session.exec(statement).scalar_one()
            session.commit()
        return format_reference(prefix, year, int(value))

    # Inbound messages and customers

    def add_inbound_message(
        self,
        *,
        from_email: str,
        subject: str,
        body: str,
        received_at: datetime | None = None,
    ) -> InboundMessageView:
        with Session(self.engine) as session:
            row = InboundMessage(
                message_id=str(uuid4()),
                from_email=from_email,
                subject=subject,
                body=body,
                status=InboundMessageStatus.RECEIVED.value,
                received_at=received_at or utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def get_inbound_message(self, message_id: str) -> InboundMessageView | None:
        with Session(self.engine) as session:
            row = session.get(InboundMessage, message_id)
        return _to_message_view(row) if row is not None else None

    def mark_inbound_message(self, message_id: str, status: InboundMessageStatus) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(InboundMessage)
                .where(
                    col(InboundMessage.message_id) == message_id,
                    col(InboundMessage.status) == InboundMessageStatus.RECEIVED.value,
                )
                .values(status=status.value, processed_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def find_or_create_customer(
        self,
        *,
        name: str,
        email: str,
        phone: str | None = None,
        company_name: str | None = None,
    ) -> CustomerView:
        """Resolve a customer by contact email, creating one when unknown."""

        normalized = email.strip().lower()
        existing = self.find_customer_by_email(normalized)
        if existing is not None:
            return existing
        with Session(self.engine) as session:
            row = Customer(
                customer_id=str(uuid4()),
                name=name,
                email=normalized,
                phone=phone,
                company_name=company_name,
                created_at=utc_now(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
            else:
                session.refresh(row)
                return _to_customer_view(row)
        created = self.find_customer_by_email(normalized)
        if created is None:
            raise RuntimeError(f"Customer vanished after concurrent insert: {normalized}")
        return created

    def find_customer_by_email(self, email: str) -> CustomerView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Customer).where(Customer.email == email.strip().lower()),
            ).one_or_none()
        return _to_customer_view(row) if row is not None else None

    def customer_history(self, customer_id: str) -> CustomerHistory:
        with Session(self.engine) as session:
            quote_rows = session.exec(
                select(CustomerQuote.status, CustomerQuote.total_price).where(
                    CustomerQuote.customer_id == customer_id,
                ),
            ).all()
            previous_bookings = session.exec(
                select(func.count())
                .select_from(Booking)
                .join(CustomerQuote, col(CustomerQuote.quote_id) == col(Booking.customer_quote_id))
                .where(CustomerQuote.customer_id == customer_id),
            ).one()
        offered = [row for row in quote_rows if row[0] != CustomerQuoteStatus.DRAFT.value]
        accepted = [row for row in offered if row[0] == CustomerQuoteStatus.ACCEPTED.value]
        average_spend = (
            sum(float(row[1]) for row in accepted) / len(accepted) if accepted else None
        )
        return CustomerHistory(
            previous_bookings=int(previous_bookings),
            quotes_received=len(offered),
            quotes_accepted=len(accepted),
            average_spend=average_spend,
        )

    # Enquiries

    def create_enquiry(
        self,
        payload: EnquiryCreate,
        *,
        customer_id: str | None,
    ) -> EnquiryView:
        """Create a SUBMITTED enquiry; one enquiry per inbound message."""

        if payload.source_message_id is not None:
            existing = self.get_enquiry_by_source_message(payload.source_message_id)
            if existing is not None:
                return existing

        reference = self.next_reference(ReferencePrefix.ENQUIRY)
        now = utc_now()
        with Session(self.engine) as session:
            row = Enquiry(
                enquiry_id=str(uuid4()),
                reference_number=reference,
                customer_id=customer_id,
                source_message_id=payload.source_message_id,
                status=EnquiryStatus.SUBMITTED.value,
                contact_name=payload.contact_name,
                contact_email=payload.contact_email,
                contact_phone=payload.contact_phone,
                company_name=payload.company_name,
                pickup_location=payload.pickup_location,
                dropoff_location=payload.dropoff_location,
                departure_date=payload.departure_date,
                departure_time=payload.departure_time,
                return_date=payload.return_date,
                return_time=payload.return_time,
                passenger_count=payload.passenger_count,
                trip_type=payload.trip_type,
                vehicle_type=payload.vehicle_type,
                special_requirements=payload.special_requirements,
                budget_min=payload.budget_min,
                budget_max=payload.budget_max,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if payload.source_message_id is None:
                    raise
            else:
                session.refresh(row)
                return _to_enquiry_view(row)

        existing = self.get_enquiry_by_source_message(payload.source_message_id)
        if existing is None:
            raise RuntimeError(
                f"Enquiry for message {payload.source_message_id} vanished after conflict.",
            )
        return existing

    def get_enquiry(self, enquiry_id: str) -> EnquiryView | None:
        with Session(self.engine) as session:
            row = session.get(Enquiry, enquiry_id)
        return _to_enquiry_view(row) if row is not None else None

    def get_enquiry_by_source_message(self, message_id: str) -> EnquiryView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Enquiry).where(Enquiry.source_message_id == message_id),
            ).one_or_none()
        return _to_enquiry_view(row) if row is not None else None

    def transition_enquiry(
        self,
        enquiry_id: str,
        *,
        from_status: EnquiryStatus,
        to_status: EnquiryStatus,
    ) -> bool:
        with Session(self.engine) as session:
            if not _transition_enquiry(session, enquiry_id, from_status, to_status):
                session.rollback()
                return False
            session.commit()
            return True

    def start_review_with_analysis(self, enquiry_id: str, analysis: EnquiryAnalysisWrite) -> bool:
        """Store analysis enrichment and move SUBMITTED -> UNDER_REVIEW."""

        with Session(self.engine) as session:
            moved = _transition_enquiry(
                session,
                enquiry_id,
                EnquiryStatus.SUBMITTED,
                EnquiryStatus.UNDER_REVIEW,
                ai_complexity_score=analysis.complexity_score,
                ai_suggested_vehicle=analysis.suggested_vehicle,
                ai_estimated_price_min=analysis.estimated_price_min,
                ai_estimated_price_max=analysis.estimated_price_max,
                ai_quality_score=analysis.quality_score,
                ai_notes=analysis.notes,
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    def list_stale_sent_enquiries(self, *, sent_before: datetime) -> list[EnquiryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Enquiry)
                .where(
                    Enquiry.status == EnquiryStatus.SENT_TO_SUPPLIERS.value,
                    col(Enquiry.sent_to_suppliers_at) <= to_db_datetime(sent_before),
                )
                .order_by(col(Enquiry.sent_to_suppliers_at).asc()),
            ).all()
        return [_to_enquiry_view(row) for row in rows]

    def list_settled_sent_enquiry_ids(self) -> list[str]:
        """SENT_TO_SUPPLIERS enquiries with no PENDING invitation left."""

        pending = (
            select(BidInvitation.invitation_id)
            .where(
                BidInvitation.enquiry_id == Enquiry.enquiry_id,
                BidInvitation.status == InvitationStatus.PENDING.value,
            )
            .exists()
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(Enquiry.enquiry_id)
                .where(
                    Enquiry.status == EnquiryStatus.SENT_TO_SUPPLIERS.value,
                    ~pending,
                )
                .order_by(col(Enquiry.enquiry_id).asc()),
            ).all()
        return list(rows)

    # Suppliers and vehicles

    def add_supplier(
        self,
        payload: SupplierCreate,
        *,
        vehicles: list[VehicleCreate] | None = None,
    ) -> SupplierView:
        now = utc_now()
        supplier_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                Supplier(
                    supplier_id=supplier_id,
                    name=payload.name,
                    email=payload.email,
                    phone=payload.phone,
                    base_location=payload.base_location,
                    rating=payload.rating,
                    reliability_score=payload.reliability_score,
                    avg_response_hours=payload.avg_response_hours,
                    completed_jobs=payload.completed_jobs,
                    is_active=True,
                    created_at=now,
                ),
            )
            session.flush()
            for vehicle in vehicles or []:
                session.add(
                    Vehicle(
                        vehicle_id=str(uuid4()),
                        supplier_id=supplier_id,
                        vehicle_type=vehicle.vehicle_type,
                        capacity=vehicle.capacity,
                        registration=vehicle.registration,
                        driver_name=vehicle.driver_name,
                        driver_phone=vehicle.driver_phone,
                        is_active=True,
                        created_at=now,
                    ),
                )
            session.commit()
        supplier = self.get_supplier(supplier_id)
        if supplier is None:
            raise RuntimeError(f"Supplier not found after insert: {supplier_id}")
        return supplier

    def get_supplier(self, supplier_id: str) -> SupplierView | None:
        suppliers = self.get_suppliers([supplier_id])
        return suppliers.get(supplier_id)

    def get_suppliers(self, supplier_ids: list[str]) -> dict[str, SupplierView]:
        if not supplier_ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(Supplier).where(col(Supplier.supplier_id).in_(supplier_ids)),
            ).all()
            vehicles = self._vehicles_by_supplier(session, [row.supplier_id for row in rows])
        return {
            row.supplier_id: _to_supplier_view(row, vehicles.get(row.supplier_id, []))
            for row in rows
        }

    def list_active_suppliers(self) -> list[SupplierView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Supplier)
                .where(col(Supplier.is_active).is_(True))
                .order_by(col(Supplier.name).asc()),
            ).all()
            vehicles = self._vehicles_by_supplier(session, [row.supplier_id for row in rows])
        return [_to_supplier_view(row, vehicles.get(row.supplier_id, [])) for row in rows]

    def choose_vehicle(
        self,
        supplier_id: str,
        *,
        passenger_count: int | None,
        preferred_type: str | None,
    ) -> VehicleView | None:
        """Smallest active vehicle that seats everyone, preferring the offered type."""

        supplier = self.get_supplier(supplier_id)
        if supplier is None:
            return None
        candidates = [
            vehicle
            for vehicle in supplier.vehicles
            if vehicle.is_active
            and (passenger_count is None or vehicle.capacity >= passenger_count)
        ]
        if not candidates:
            return None
        candidates.sort(
            key=lambda vehicle: (vehicle.vehicle_type != preferred_type, vehicle.capacity),
        )
        return candidates[0]

    def _vehicles_by_supplier(
        self,
        session: Session,
        supplier_ids: list[str],
    ) -> dict[str, list[VehicleView]]:
        if not supplier_ids:
            return {}
        rows = session.exec(
            select(Vehicle)
            .where(col(Vehicle.supplier_id).in_(supplier_ids))
            .order_by(col(Vehicle.capacity).asc()),
        ).all()
        grouped: dict[str, list[VehicleView]] = {}
        for row in rows:
            grouped.setdefault(row.supplier_id, []).append(_to_vehicle_view(row))
        return grouped

    # Bid invitations

    def send_invitations(
        self,
        enquiry_id: str,
        *,
        invitations: list[InvitationCreate],
        expires_at: datetime,
    ) -> list[InvitationView] | None:
        """Create invitations and move UNDER_REVIEW -> SENT_TO_SUPPLIERS in one transaction."""

        now = utc_now()
        with Session(self.engine) as session:
            moved = _transition_enquiry(
                session,
                enquiry_id,
                EnquiryStatus.UNDER_REVIEW,
                EnquiryStatus.SENT_TO_SUPPLIERS,
                sent_to_suppliers_at=to_db_datetime(now),
            )
            if not moved:
                session.rollback()
                return None
            rows = [
                BidInvitation(
                    invitation_id=str(uuid4()),
                    enquiry_id=enquiry_id,
                    supplier_id=invitation.supplier_id,
                    access_token=new_access_token(),
                    status=InvitationStatus.PENDING.value,
                    expires_at=expires_at,
                    ai_rank=invitation.ai_rank,
                    ai_score=invitation.ai_score,
                    ai_reasoning=invitation.ai_reasoning,
                    created_at=now,
                    updated_at=now,
                )
                for invitation in invitations
            ]
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_invitation_view(row) for row in rows]

    def get_invitation_by_token(self, access_token: str) -> InvitationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BidInvitation).where(BidInvitation.access_token == access_token),
            ).one_or_none()
        return _to_invitation_view(row) if row is not None else None

    def list_invitations(
        self,
        enquiry_id: str,
        *,
        status: InvitationStatus | None = None,
    ) -> list[InvitationView]:
        with Session(self.engine) as session:
            statement = select(BidInvitation).where(BidInvitation.enquiry_id == enquiry_id)
            if status is not None:
                statement = statement.where(BidInvitation.status == status.value)
            rows = session.exec(statement.order_by(col(BidInvitation.ai_rank).asc())).all()
        return [_to_invitation_view(row) for row in rows]

    def count_pending_invitations(self, enquiry_id: str) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(BidInvitation)
                    .where(
                        BidInvitation.enquiry_id == enquiry_id,
                        BidInvitation.status == InvitationStatus.PENDING.value,
                    ),
                ).one(),
            )

    def expire_overdue_invitations(self, *, now: datetime) -> list[str]:
        """Bulk-expire PENDING invitations past their deadline; return affected enquiry ids."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BidInvitation)
                .where(
                    col(BidInvitation.status) == InvitationStatus.PENDING.value,
                    col(BidInvitation.expires_at) <= to_db_datetime(now),
                )
                .values(
                    status=InvitationStatus.EXPIRED.value,
                    updated_at=to_db_datetime(now),
                )
                .returning(col(BidInvitation.enquiry_id)),
            )
            enquiry_ids = sorted(set(result.scalars().all()))
            session.commit()
        return enquiry_ids

    def submit_bid(
        self,
        invitation: InvitationView,
        submission: BidSubmission,
        *,
        now: datetime,
    ) -> BidView | None:
        """Create the bid and move the invitation PENDING -> QUOTED atomically."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BidInvitation)
                .where(
                    col(BidInvitation.invitation_id) == invitation.invitation_id,
                    col(BidInvitation.status) == InvitationStatus.PENDING.value,
                    col(BidInvitation.expires_at) > to_db_datetime(now),
                )
                .values(
                    status=InvitationStatus.QUOTED.value,
                    responded_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = SupplierBid(
                bid_id=str(uuid4()),
                invitation_id=invitation.invitation_id,
                enquiry_id=invitation.enquiry_id,
                supplier_id=invitation.supplier_id,
                base_price=_money(submission.base_price),
                fuel_surcharge=_money(submission.fuel_surcharge),
                toll_charges=_money(submission.toll_charges),
                parking_charges=_money(submission.parking_charges),
                other_charges=_money(submission.other_charges),
                total_price=_money(submission.total_price),
                vehicle_offered=submission.vehicle_offered,
                notes=submission.notes,
                valid_until=submission.valid_until,
                status=BidStatus.SUBMITTED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_bid_view(row)

    def decline_invitation(self, invitation_id: str, *, now: datetime) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BidInvitation)
                .where(
                    col(BidInvitation.invitation_id) == invitation_id,
                    col(BidInvitation.status) == InvitationStatus.PENDING.value,
                )
                .values(
                    status=InvitationStatus.DECLINED.value,
                    responded_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Supplier bids

    def list_bids(self, enquiry_id: str, *, status: BidStatus | None = None) -> list[BidView]:
        with Session(self.engine) as session:
            statement = select(SupplierBid).where(SupplierBid.enquiry_id == enquiry_id)
            if status is not None:
                statement = statement.where(SupplierBid.status == status.value)
            rows = session.exec(statement.order_by(col(SupplierBid.created_at).asc())).all()
        return [_to_bid_view(row) for row in rows]

    def get_bid(self, bid_id: str) -> BidView | None:
        with Session(self.engine) as session:
            row = session.get(SupplierBid, bid_id)
        return _to_bid_view(row) if row is not None else None

    def record_bid_evaluation(
        self,
        enquiry_id: str,
        evaluations: list[BidEvaluationWrite],
    ) -> bool:
        """Persist per-bid scores and move SENT_TO_SUPPLIERS -> QUOTES_RECEIVED."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if not _transition_enquiry(
                session,
                enquiry_id,
                EnquiryStatus.SENT_TO_SUPPLIERS,
                EnquiryStatus.QUOTES_RECEIVED,
            ):
                session.rollback()
                return False
            for evaluation in evaluations:
                session.exec(
                    sa_update(SupplierBid)
                    .where(
                        col(SupplierBid.bid_id) == evaluation.bid_id,
                        col(SupplierBid.enquiry_id) == enquiry_id,
                    )
                    .values(
                        ai_rank=evaluation.rank,
                        ai_fairness_score=evaluation.fairness_score,
                        ai_overall_score=evaluation.overall_score,
                        ai_reasoning=evaluation.reasoning,
                        ai_anomaly_flag=evaluation.anomaly_flag,
                        ai_anomaly_reason=evaluation.anomaly_reason,
                        updated_at=now,
                    ),
                )
            session.commit()
            return True

    def award_bid(self, enquiry_id: str, winning_bid_id: str) -> bool:
        """Accept the winner and reject every other submitted bid for the enquiry."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SupplierBid)
                .where(
                    col(SupplierBid.bid_id) == winning_bid_id,
                    col(SupplierBid.enquiry_id) == enquiry_id,
                    col(SupplierBid.status) == BidStatus.SUBMITTED.value,
                )
                .values(status=BidStatus.ACCEPTED.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(
                sa_update(SupplierBid)
                .where(
                    col(SupplierBid.enquiry_id) == enquiry_id,
                    col(SupplierBid.bid_id) != winning_bid_id,
                    col(SupplierBid.status) == BidStatus.SUBMITTED.value,
                )
                .values(status=BidStatus.REJECTED.value, updated_at=now),
            )
            session.commit()
            return True

    # Customer quotes

    def create_customer_quote(self, payload: CustomerQuoteCreate) -> CustomerQuoteView | None:
        """Create a DRAFT quote; None when the bid already has one."""

        reference = self.next_reference(ReferencePrefix.QUOTE)
        now = utc_now()
        with Session(self.engine) as session:
            row = CustomerQuote(
                quote_id=str(uuid4()),
                reference_number=reference,
                enquiry_id=payload.enquiry_id,
                supplier_bid_id=payload.supplier_bid_id,
                customer_id=payload.customer_id,
                supplier_price=_money(payload.supplier_price),
                markup_percent=float(payload.markup_percent),
                markup_amount=_money(payload.markup_amount),
                subtotal=_money(payload.subtotal),
                vat_rate=float(payload.vat_rate),
                vat_amount=_money(payload.vat_amount),
                total_price=_money(payload.total_price),
                description=payload.description,
                highlights_json=json.dumps(payload.highlights, ensure_ascii=False),
                ai_markup_reasoning=payload.ai_markup_reasoning,
                ai_acceptance_probability=payload.ai_acceptance_probability,
                status=CustomerQuoteStatus.DRAFT.value,
                acceptance_token=new_access_token(),
                valid_until=payload.valid_until,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_quote_view(row)

    def get_quote(self, quote_id: str) -> CustomerQuoteView | None:
        with Session(self.engine) as session:
            row = session.get(CustomerQuote, quote_id)
        return _to_quote_view(row) if row is not None else None

    def get_quote_by_token(self, acceptance_token: str) -> CustomerQuoteView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CustomerQuote).where(CustomerQuote.acceptance_token == acceptance_token),
            ).one_or_none()
        return _to_quote_view(row) if row is not None else None

    def get_quote_for_bid(self, bid_id: str) -> CustomerQuoteView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CustomerQuote).where(CustomerQuote.supplier_bid_id == bid_id),
            ).one_or_none()
        return _to_quote_view(row) if row is not None else None

    def transition_quote(
        self,
        quote_id: str,
        *,
        from_status: CustomerQuoteStatus,
        to_status: CustomerQuoteStatus,
        now: datetime | None = None,
    ) -> bool:
        moment = to_db_datetime(now or utc_now())
        values: dict[str, object] = {"status": to_status.value, "updated_at": moment}
        if to_status == CustomerQuoteStatus.SENT_TO_CUSTOMER:
            values["sent_at"] = moment
        if to_status == CustomerQuoteStatus.ACCEPTED:
            values["accepted_at"] = moment
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CustomerQuote)
                .where(
                    col(CustomerQuote.quote_id) == quote_id,
                    col(CustomerQuote.status) == from_status.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def expire_overdue_quotes(self, *, now: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CustomerQuote)
                .where(
                    col(CustomerQuote.status) == CustomerQuoteStatus.SENT_TO_CUSTOMER.value,
                    col(CustomerQuote.valid_until) < to_db_datetime(now),
                )
                .values(
                    status=CustomerQuoteStatus.EXPIRED.value,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    # Bookings

    def create_booking(
        self,
        quote: CustomerQuoteView,
        *,
        supplier_id: str,
        vehicle_id: str | None,
    ) -> BookingView | None:
        """Create a CONFIRMED booking plus its first history row; None if one exists."""

        reference = self.next_reference(ReferencePrefix.BOOKING)
        now = utc_now()
        booking_id = str(uuid4())
        with Session(self.engine) as session:
            row = Booking(
                booking_id=booking_id,
                reference_number=reference,
                customer_quote_id=quote.quote_id,
                enquiry_id=quote.enquiry_id,
                supplier_id=supplier_id,
                vehicle_id=vehicle_id,
                status=BookingStatus.CONFIRMED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                return None
            session.add(
                BookingStatusHistory(
                    booking_id=booking_id,
                    status_from=None,
                    status_to=BookingStatus.CONFIRMED.value,
                    note="Booking confirmed from accepted quote",
                    created_at=now,
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_booking_view(row)

    def get_booking_for_quote(self, quote_id: str) -> BookingView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Booking).where(Booking.customer_quote_id == quote_id),
            ).one_or_none()
        return _to_booking_view(row) if row is not None else None

    def transition_booking(
        self,
        booking_id: str,
        *,
        from_status: BookingStatus,
        to_status: BookingStatus,
        note: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Move a booking and append a status-history row in the same transaction."""

        moment = now or utc_now()
        values: dict[str, object] = {
            "status": to_status.value,
            "updated_at": to_db_datetime(moment),
        }
        if to_status == BookingStatus.COMPLETED:
            values["completed_at"] = to_db_datetime(moment)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Booking)
                .where(
                    col(Booking.booking_id) == booking_id,
                    col(Booking.status) == from_status.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.add(
                BookingStatusHistory(
                    booking_id=booking_id,
                    status_from=from_status.value,
                    status_to=to_status.value,
                    note=note,
                    created_at=moment,
                ),
            )
            session.commit()
            return True

    def booking_history(self, booking_id: str) -> list[BookingHistoryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BookingStatusHistory)
                .where(BookingStatusHistory.booking_id == booking_id)
                .order_by(col(BookingStatusHistory.id).asc()),
            ).all()
        return [
            BookingHistoryView(
                booking_id=row.booking_id,
                status_from=BookingStatus(row.status_from) if row.status_from else None,
                status_to=BookingStatus(row.status_to),
                note=row.note,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def list_bookings_completed_between(
        self,
        *,
        start: datetime,
        end: datetime,
    ) -> list[BookingView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Booking)
                .where(
                    Booking.status == BookingStatus.COMPLETED.value,
                    col(Booking.completed_at) >= to_db_datetime(start),
                    col(Booking.completed_at) < to_db_datetime(end),
                )
                .order_by(col(Booking.completed_at).asc()),
            ).all()
        return [_to_booking_view(row) for row in rows]


def _transition_enquiry(
    session: Session,
    enquiry_id: str,
    from_status: EnquiryStatus,
    to_status: EnquiryStatus,
    **updates: object,
) -> bool:
    result = session.exec(
        sa_update(Enquiry)
        .where(
            col(Enquiry.enquiry_id) == enquiry_id,
            col(Enquiry.status) == from_status.value,
        )
        .values(status=to_status.value, updated_at=to_db_datetime(utc_now()), **updates),
    )
    return result.rowcount == 1


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


def _to_message_view(row: InboundMessage) -> InboundMessageView:
    return InboundMessageView(
        message_id=row.message_id,
        from_email=row.from_email,
        subject=row.subject,
        body=row.body,
        status=InboundMessageStatus(row.status),
        received_at=to_utc_aware_datetime(row.received_at),
    )


def _to_customer_view(row: Customer) -> CustomerView:
    return CustomerView(
        customer_id=row.customer_id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        company_name=row.company_name,
    )


def _to_enquiry_view(row: Enquiry) -> EnquiryView:
    return EnquiryView(
        enquiry_id=row.enquiry_id,
        reference_number=row.reference_number,
        customer_id=row.customer_id,
        source_message_id=row.source_message_id,
        status=EnquiryStatus(row.status),
        contact_name=row.contact_name,
        contact_email=row.contact_email,
        contact_phone=row.contact_phone,
        company_name=row.company_name,
        pickup_location=row.pickup_location,
        dropoff_location=row.dropoff_location,
        departure_date=row.departure_date,
        departure_time=row.departure_time,
        return_date=row.return_date,
        return_time=row.return_time,
        passenger_count=row.passenger_count,
        trip_type=row.trip_type,
        vehicle_type=row.vehicle_type,
        special_requirements=row.special_requirements,
        budget_min=row.budget_min,
        budget_max=row.budget_max,
        ai_complexity_score=row.ai_complexity_score,
        ai_suggested_vehicle=row.ai_suggested_vehicle,
        ai_estimated_price_min=row.ai_estimated_price_min,
        ai_estimated_price_max=row.ai_estimated_price_max,
        ai_quality_score=row.ai_quality_score,
        ai_notes=row.ai_notes,
        sent_to_suppliers_at=optional_utc(row.sent_to_suppliers_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_vehicle_view(row: Vehicle) -> VehicleView:
    return VehicleView(
        vehicle_id=row.vehicle_id,
        supplier_id=row.supplier_id,
        vehicle_type=row.vehicle_type,
        capacity=row.capacity,
        registration=row.registration,
        driver_name=row.driver_name,
        driver_phone=row.driver_phone,
        is_active=row.is_active,
    )


def _to_supplier_view(row: Supplier, vehicles: list[VehicleView]) -> SupplierView:
    return SupplierView(
        supplier_id=row.supplier_id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        base_location=row.base_location,
        rating=row.rating,
        reliability_score=row.reliability_score,
        avg_response_hours=row.avg_response_hours,
        completed_jobs=row.completed_jobs,
        is_active=row.is_active,
        vehicles=vehicles,
    )


def _to_invitation_view(row: BidInvitation) -> InvitationView:
    return InvitationView(
        invitation_id=row.invitation_id,
        enquiry_id=row.enquiry_id,
        supplier_id=row.supplier_id,
        access_token=row.access_token,
        status=InvitationStatus(row.status),
        expires_at=to_utc_aware_datetime(row.expires_at),
        ai_rank=row.ai_rank,
        ai_score=row.ai_score,
        responded_at=optional_utc(row.responded_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_bid_view(row: SupplierBid) -> BidView:
    return BidView(
        bid_id=row.bid_id,
        invitation_id=row.invitation_id,
        enquiry_id=row.enquiry_id,
        supplier_id=row.supplier_id,
        base_price=row.base_price,
        total_price=row.total_price,
        currency=row.currency,
        vehicle_offered=row.vehicle_offered,
        notes=row.notes,
        status=BidStatus(row.status),
        ai_rank=row.ai_rank,
        ai_fairness_score=row.ai_fairness_score,
        ai_overall_score=row.ai_overall_score,
        ai_reasoning=row.ai_reasoning,
        ai_anomaly_flag=row.ai_anomaly_flag,
        ai_anomaly_reason=row.ai_anomaly_reason,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_quote_view(row: CustomerQuote) -> CustomerQuoteView:
    highlights = json.loads(row.highlights_json) if row.highlights_json else []
    return CustomerQuoteView(
        quote_id=row.quote_id,
        reference_number=row.reference_number,
        enquiry_id=row.enquiry_id,
        supplier_bid_id=row.supplier_bid_id,
        customer_id=row.customer_id,
        supplier_price=row.supplier_price,
        markup_percent=row.markup_percent,
        markup_amount=row.markup_amount,
        subtotal=row.subtotal,
        vat_rate=row.vat_rate,
        vat_amount=row.vat_amount,
        total_price=row.total_price,
        currency=row.currency,
        description=row.description,
        highlights=[str(item) for item in highlights] if isinstance(highlights, list) else [],
        ai_markup_reasoning=row.ai_markup_reasoning,
        ai_acceptance_probability=row.ai_acceptance_probability,
        status=CustomerQuoteStatus(row.status),
        acceptance_token=row.acceptance_token,
        valid_until=to_utc_aware_datetime(row.valid_until),
        sent_at=optional_utc(row.sent_at),
        accepted_at=optional_utc(row.accepted_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_booking_view(row: Booking) -> BookingView:
    return BookingView(
        booking_id=row.booking_id,
        reference_number=row.reference_number,
        customer_quote_id=row.customer_quote_id,
        enquiry_id=row.enquiry_id,
        supplier_id=row.supplier_id,
        vehicle_id=row.vehicle_id,
        status=BookingStatus(row.status),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )
