"""Business-record statuses, views and write payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class InboundMessageStatus(str, Enum):
    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    ESCALATED = "ESCALATED"


class EnquiryStatus(str, Enum):
    """Enquiry lifecycle; EXPIRED and REJECTED are absorbing branches."""

    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    SENT_TO_SUPPLIERS = "SENT_TO_SUPPLIERS"
    QUOTES_RECEIVED = "QUOTES_RECEIVED"
    QUOTE_SENT = "QUOTE_SENT"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    QUOTED = "QUOTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class BidStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class CustomerQuoteStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT_TO_CUSTOMER = "SENT_TO_CUSTOMER"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class BookingStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    SUPPLIER_ASSIGNED = "SUPPLIER_ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


@dataclass(slots=True)
class InboundMessageView:
    message_id: str
    from_email: str
    subject: str
    body: str
    status: InboundMessageStatus
    received_at: datetime


@dataclass(slots=True)
class CustomerView:
    customer_id: str
    name: str
    email: str
    phone: str | None
    company_name: str | None


@dataclass(slots=True)
class CustomerHistory:
    """Signals used to inform markup pricing for returning customers."""

    previous_bookings: int = 0
    quotes_received: int = 0
    quotes_accepted: int = 0
    average_spend: float | None = None

    @property
    def acceptance_rate(self) -> float | None:
        if self.quotes_received == 0:
            return None
        return self.quotes_accepted / self.quotes_received


@dataclass(slots=True)
class EnquiryCreate:
    """Enquiry fields taken from a parsed inbound message or a web form."""

    contact_name: str
    contact_email: str
    pickup_location: str
    dropoff_location: str
    contact_phone: str | None = None
    company_name: str | None = None
    departure_date: str | None = None
    departure_time: str | None = None
    return_date: str | None = None
    return_time: str | None = None
    passenger_count: int | None = None
    trip_type: str = "ONE_WAY"
    vehicle_type: str | None = None
    special_requirements: str | None = None
    budget_min: float | None = None
    budget_max: float | None = None
    source_message_id: str | None = None


@dataclass(slots=True)
class EnquiryView:
    enquiry_id: str
    reference_number: str
    customer_id: str | None
    source_message_id: str | None
    status: EnquiryStatus
    contact_name: str
    contact_email: str
    contact_phone: str | None
    company_name: str | None
    pickup_location: str
    dropoff_location: str
    departure_date: str | None
    departure_time: str | None
    return_date: str | None
    return_time: str | None
    passenger_count: int | None
    trip_type: str
    vehicle_type: str | None
    special_requirements: str | None
    budget_min: float | None
    budget_max: float | None
    ai_complexity_score: int | None
    ai_suggested_vehicle: str | None
    ai_estimated_price_min: float | None
    ai_estimated_price_max: float | None
    ai_quality_score: int | None
    ai_notes: str | None
    sent_to_suppliers_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def trip_context(self) -> dict[str, object]:
        """Trip fields shared by every prompt that discusses this enquiry."""

        return {
            "reference": self.reference_number,
            "pickup_location": self.pickup_location,
            "dropoff_location": self.dropoff_location,
            "departure_date": self.departure_date,
            "departure_time": self.departure_time,
            "return_date": self.return_date,
            "return_time": self.return_time,
            "passenger_count": self.passenger_count,
            "trip_type": self.trip_type,
            "vehicle_type": self.vehicle_type,
            "special_requirements": self.special_requirements,
        }


@dataclass(slots=True)
class EnquiryAnalysisWrite:
    complexity_score: int
    suggested_vehicle: str
    estimated_price_min: float
    estimated_price_max: float
    quality_score: int
    notes: str


@dataclass(slots=True)
class VehicleView:
    vehicle_id: str
    supplier_id: str
    vehicle_type: str
    capacity: int
    registration: str
    driver_name: str | None
    driver_phone: str | None
    is_active: bool


@dataclass(slots=True)
class SupplierCreate:
    name: str
    email: str | None = None
    phone: str | None = None
    base_location: str | None = None
    rating: float = 0.0
    reliability_score: float | None = None
    avg_response_hours: float | None = None
    completed_jobs: int = 0


@dataclass(slots=True)
class VehicleCreate:
    vehicle_type: str
    capacity: int
    registration: str
    driver_name: str | None = None
    driver_phone: str | None = None


@dataclass(slots=True)
class SupplierView:
    supplier_id: str
    name: str
    email: str | None
    phone: str | None
    base_location: str | None
    rating: float
    reliability_score: float | None
    avg_response_hours: float | None
    completed_jobs: int
    is_active: bool
    vehicles: list[VehicleView] = field(default_factory=list)

    def selection_context(self) -> dict[str, object]:
        return {
            "supplier_id": self.supplier_id,
            "name": self.name,
            "base_location": self.base_location,
            "rating": self.rating,
            "reliability_score": self.reliability_score,
            "avg_response_hours": self.avg_response_hours,
            "completed_jobs": self.completed_jobs,
            "fleet": [
                {"vehicle_type": vehicle.vehicle_type, "capacity": vehicle.capacity}
                for vehicle in self.vehicles
                if vehicle.is_active
            ],
        }


@dataclass(slots=True)
class InvitationCreate:
    supplier_id: str
    ai_rank: int | None = None
    ai_score: float | None = None
    ai_reasoning: str | None = None


@dataclass(slots=True)
class InvitationView:
    invitation_id: str
    enquiry_id: str
    supplier_id: str
    access_token: str
    status: InvitationStatus
    expires_at: datetime
    ai_rank: int | None
    ai_score: float | None
    responded_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class BidSubmission:
    """Supplier-entered bid; money fields are exact decimals."""

    base_price: Decimal
    fuel_surcharge: Decimal = Decimal("0")
    toll_charges: Decimal = Decimal("0")
    parking_charges: Decimal = Decimal("0")
    other_charges: Decimal = Decimal("0")
    vehicle_offered: str | None = None
    notes: str | None = None
    valid_until: datetime | None = None

    @property
    def total_price(self) -> Decimal:
        return (
            self.base_price
            + self.fuel_surcharge
            + self.toll_charges
            + self.parking_charges
            + self.other_charges
        )


@dataclass(slots=True)
class BidView:
    bid_id: str
    invitation_id: str
    enquiry_id: str
    supplier_id: str
    base_price: float
    total_price: float
    currency: str
    vehicle_offered: str | None
    notes: str | None
    status: BidStatus
    ai_rank: int | None
    ai_fairness_score: float | None
    ai_overall_score: float | None
    ai_reasoning: str | None
    ai_anomaly_flag: bool
    ai_anomaly_reason: str | None
    created_at: datetime


@dataclass(slots=True)
class BidEvaluationWrite:
    bid_id: str
    rank: int
    fairness_score: float
    overall_score: float
    reasoning: str
    anomaly_flag: bool
    anomaly_reason: str | None


@dataclass(slots=True)
class CustomerQuoteCreate:
    enquiry_id: str
    supplier_bid_id: str
    customer_id: str | None
    supplier_price: Decimal
    markup_percent: Decimal
    markup_amount: Decimal
    subtotal: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_price: Decimal
    valid_until: datetime
    description: str | None = None
    highlights: list[str] = field(default_factory=list)
    ai_markup_reasoning: str | None = None
    ai_acceptance_probability: float | None = None


@dataclass(slots=True)
class CustomerQuoteView:
    quote_id: str
    reference_number: str
    enquiry_id: str
    supplier_bid_id: str
    customer_id: str | None
    supplier_price: float
    markup_percent: float
    markup_amount: float
    subtotal: float
    vat_rate: float
    vat_amount: float
    total_price: float
    currency: str
    description: str | None
    highlights: list[str]
    ai_markup_reasoning: str | None
    ai_acceptance_probability: float | None
    status: CustomerQuoteStatus
    acceptance_token: str
    valid_until: datetime
    sent_at: datetime | None
    accepted_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class BookingView:
    booking_id: str
    reference_number: str
    customer_quote_id: str
    enquiry_id: str
    supplier_id: str
    vehicle_id: str | None
    status: BookingStatus
    completed_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class BookingHistoryView:
    booking_id: str
    status_from: BookingStatus | None
    status_to: BookingStatus
    note: str | None
    created_at: datetime
