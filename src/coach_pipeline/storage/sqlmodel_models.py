"""SQLModel ORM tables for the marketplace, decision audit and job queue."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _timestamp(*, nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


def _text(*, nullable: bool = True) -> Column:
    return Column(Text, nullable=nullable)


class Customer(SQLModel, table=True):
    __tablename__ = "customers"  # type: ignore[bad-override]

    customer_id: str = Field(primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    phone: str | None = None
    company_name: str | None = None
    created_at: datetime = Field(sa_column=_timestamp())


class Supplier(SQLModel, table=True):
    __tablename__ = "suppliers"  # type: ignore[bad-override]

    supplier_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    email: str | None = None
    phone: str | None = None
    base_location: str | None = None
    rating: float = 0.0
    reliability_score: float | None = None
    avg_response_hours: float | None = None
    completed_jobs: int = 0
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(sa_column=_timestamp())


class Vehicle(SQLModel, table=True):
    __tablename__ = "vehicles"  # type: ignore[bad-override]

    vehicle_id: str = Field(primary_key=True)
    supplier_id: str = Field(
        sa_column=Column(
            ForeignKey("suppliers.supplier_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    vehicle_type: str
    capacity: int
    registration: str
    driver_name: str | None = None
    driver_phone: str | None = None
    is_active: bool = True
    created_at: datetime = Field(sa_column=_timestamp())


class InboundMessage(SQLModel, table=True):
    __tablename__ = "inbound_messages"  # type: ignore[bad-override]

    message_id: str = Field(primary_key=True)
    from_email: str
    subject: str
    body: str = Field(sa_column=_text(nullable=False))
    status: str = Field(index=True)
    received_at: datetime = Field(sa_column=_timestamp())
    processed_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))


class Enquiry(SQLModel, table=True):
    __tablename__ = "enquiries"  # type: ignore[bad-override]

    enquiry_id: str = Field(primary_key=True)
    reference_number: str = Field(index=True, unique=True)
    customer_id: str | None = Field(default=None, foreign_key="customers.customer_id", index=True)
    source_message_id: str | None = Field(
        default=None,
        foreign_key="inbound_messages.message_id",
        unique=True,
    )
    status: str = Field(index=True)
    contact_name: str
    contact_email: str
    contact_phone: str | None = None
    company_name: str | None = None
    pickup_location: str
    dropoff_location: str
    departure_date: str | None = None
    departure_time: str | None = None
    return_date: str | None = None
    return_time: str | None = None
    passenger_count: int | None = None
    trip_type: str = "ONE_WAY"
    vehicle_type: str | None = None
    special_requirements: str | None = Field(default=None, sa_column=_text())
    budget_min: float | None = None
    budget_max: float | None = None
    ai_complexity_score: int | None = None
    ai_suggested_vehicle: str | None = None
    ai_estimated_price_min: float | None = None
    ai_estimated_price_max: float | None = None
    ai_quality_score: int | None = None
    ai_notes: str | None = Field(default=None, sa_column=_text())
    sent_to_suppliers_at: datetime | None = Field(
        default=None,
        sa_column=_timestamp(nullable=True),
    )
    created_at: datetime = Field(sa_column=_timestamp())
    updated_at: datetime = Field(sa_column=_timestamp())


class BidInvitation(SQLModel, table=True):
    __tablename__ = "bid_invitations"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("enquiry_id", "supplier_id", name="uq_bid_invitations_enquiry_supplier"),
        Index("idx_bid_invitations_status_expiry", "status", "expires_at"),
    )

    invitation_id: str = Field(primary_key=True)
    enquiry_id: str = Field(
        sa_column=Column(
            ForeignKey("enquiries.enquiry_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    supplier_id: str = Field(foreign_key="suppliers.supplier_id", index=True)
    access_token: str = Field(unique=True)
    status: str = Field(index=True)
    expires_at: datetime = Field(sa_column=_timestamp())
    ai_rank: int | None = None
    ai_score: float | None = None
    ai_reasoning: str | None = Field(default=None, sa_column=_text())
    responded_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    created_at: datetime = Field(sa_column=_timestamp())
    updated_at: datetime = Field(sa_column=_timestamp())


class SupplierBid(SQLModel, table=True):
    __tablename__ = "supplier_bids"  # type: ignore[bad-override]

    bid_id: str = Field(primary_key=True)
    invitation_id: str = Field(foreign_key="bid_invitations.invitation_id", unique=True)
    enquiry_id: str = Field(
        sa_column=Column(
            ForeignKey("enquiries.enquiry_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    supplier_id: str = Field(foreign_key="suppliers.supplier_id", index=True)
    base_price: float
    fuel_surcharge: float = 0.0
    toll_charges: float = 0.0
    parking_charges: float = 0.0
    other_charges: float = 0.0
    total_price: float
    currency: str = "GBP"
    vehicle_offered: str | None = None
    notes: str | None = Field(default=None, sa_column=_text())
    valid_until: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    status: str = Field(index=True)
    ai_rank: int | None = None
    ai_fairness_score: float | None = None
    ai_overall_score: float | None = None
    ai_reasoning: str | None = Field(default=None, sa_column=_text())
    ai_anomaly_flag: bool = False
    ai_anomaly_reason: str | None = Field(default=None, sa_column=_text())
    created_at: datetime = Field(sa_column=_timestamp())
    updated_at: datetime = Field(sa_column=_timestamp())


class CustomerQuote(SQLModel, table=True):
    __tablename__ = "customer_quotes"  # type: ignore[bad-override]

    quote_id: str = Field(primary_key=True)
    reference_number: str = Field(index=True, unique=True)
    enquiry_id: str = Field(foreign_key="enquiries.enquiry_id", index=True)
    supplier_bid_id: str = Field(foreign_key="supplier_bids.bid_id", unique=True)
    customer_id: str | None = Field(default=None, foreign_key="customers.customer_id", index=True)
    supplier_price: float
    markup_percent: float
    markup_amount: float
    subtotal: float
    vat_rate: float
    vat_amount: float
    total_price: float
    currency: str = "GBP"
    description: str | None = Field(default=None, sa_column=_text())
    highlights_json: str | None = Field(default=None, sa_column=_text())
    ai_markup_reasoning: str | None = Field(default=None, sa_column=_text())
    ai_acceptance_probability: float | None = None
    status: str = Field(index=True)
    acceptance_token: str = Field(unique=True)
    valid_until: datetime = Field(sa_column=_timestamp())
    sent_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    accepted_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    created_at: datetime = Field(sa_column=_timestamp())
    updated_at: datetime = Field(sa_column=_timestamp())


class Booking(SQLModel, table=True):
    __tablename__ = "bookings"  # type: ignore[bad-override]

    booking_id: str = Field(primary_key=True)
    reference_number: str = Field(index=True, unique=True)
    customer_quote_id: str = Field(foreign_key="customer_quotes.quote_id", unique=True)
    enquiry_id: str = Field(foreign_key="enquiries.enquiry_id", index=True)
    supplier_id: str = Field(foreign_key="suppliers.supplier_id", index=True)
    vehicle_id: str | None = Field(default=None, foreign_key="vehicles.vehicle_id")
    status: str = Field(index=True)
    completed_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    created_at: datetime = Field(sa_column=_timestamp())
    updated_at: datetime = Field(sa_column=_timestamp())


class BookingStatusHistory(SQLModel, table=True):
    __tablename__ = "booking_status_history"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    booking_id: str = Field(
        sa_column=Column(
            ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status_from: str | None = None
    status_to: str
    note: str | None = None
    created_at: datetime = Field(sa_column=_timestamp())


class Sequence(SQLModel, table=True):
    __tablename__ = "sequences"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("prefix", "year", name="uq_sequences_prefix_year"),)

    id: int | None = Field(default=None, primary_key=True)
    prefix: str
    year: int
    value: int = 0


class AppSetting(SQLModel, table=True):
    __tablename__ = "app_settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value_json: str = Field(sa_column=_text(nullable=False))
    updated_at: datetime = Field(sa_column=_timestamp())


class DecisionLogEntry(SQLModel, table=True):
    __tablename__ = "decision_log"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_decision_log_type_time", "decision_type", "created_at"),
        Index("idx_decision_log_run", "pipeline_run_id"),
    )

    log_id: int | None = Field(default=None, primary_key=True)
    decision_type: str
    pipeline_run_id: str
    provider: str
    model: str
    prompt_json: str = Field(sa_column=_text(nullable=False))
    raw_response: str | None = Field(default=None, sa_column=_text())
    parsed_output_json: str | None = Field(default=None, sa_column=_text())
    confidence_score: float
    threshold: float | None = None
    action_taken: str = Field(index=True)
    escalation_reason: str | None = Field(default=None, sa_column=_text())
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int = 0
    estimated_cost_usd: float = 0.0
    attempts: int = 1
    enquiry_id: str | None = Field(default=None, index=True)
    customer_quote_id: str | None = None
    booking_id: str | None = None
    overrides_log_id: int | None = Field(default=None, foreign_key="decision_log.log_id")
    created_at: datetime = Field(sa_column=_timestamp())


class CostRecord(SQLModel, table=True):
    __tablename__ = "cost_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_cost_records_day_provider", "day", "provider"),)

    id: int | None = Field(default=None, primary_key=True)
    day: date = Field(sa_column=Column(Date, nullable=False))
    decision_type: str = Field(index=True)
    provider: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float
    decision_log_id: int = Field(foreign_key="decision_log.log_id", unique=True)
    created_at: datetime = Field(sa_column=_timestamp())


class HumanReviewTask(SQLModel, table=True):
    __tablename__ = "human_review_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_human_review_tasks_status_time", "status", "created_at"),)

    review_id: str = Field(primary_key=True)
    decision_type: str
    reason: str
    status: str
    target_type: str
    target_id: str
    enquiry_id: str | None = Field(default=None, index=True)
    decision_log_id: int | None = Field(default=None, foreign_key="decision_log.log_id")
    blocking: bool = True
    context_json: str = Field(sa_column=_text(nullable=False))
    resolution: str | None = Field(default=None, sa_column=_text())
    resolved_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    created_at: datetime = Field(sa_column=_timestamp())
    updated_at: datetime = Field(sa_column=_timestamp())


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_queue", "category", "status", "run_after"),)

    job_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    category: str
    payload_json: str = Field(sa_column=_text(nullable=False))
    dedupe_key: str | None = Field(default=None, unique=True)
    status: str = Field(index=True)
    attempt: int = 0
    max_attempts: int = 3
    run_after: datetime = Field(sa_column=_timestamp())
    started_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    heartbeat_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    finished_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    worker_id: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=_text())
    created_at: datetime = Field(sa_column=_timestamp())
    updated_at: datetime = Field(sa_column=_timestamp())


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=_text())
    created_at: datetime = Field(sa_column=_timestamp())
