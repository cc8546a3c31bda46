"""Structured output schemas, one variant per decision type.

Each model doubles as the JSON schema sent to the provider and as the typed
view of the parsed output stored in the decision log.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from coach_pipeline.decisions.models import DecisionType

VehicleClass = Literal[
    "MINIBUS",
    "MIDI_COACH",
    "STANDARD_COACH",
    "EXECUTIVE_COACH",
    "DOUBLE_DECKER",
    "OTHER",
]


def _confidence() -> Any:
    return Field(
        ...,
        ge=0,
        le=1,
        description="Self-assessed reliability of this answer between 0 and 1",
    )


class ParsedEnquiry(BaseModel):
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    company_name: str | None = None
    pickup_location: str
    dropoff_location: str
    departure_date: str | None = Field(default=None, description="ISO date YYYY-MM-DD")
    return_date: str | None = Field(default=None, description="ISO date YYYY-MM-DD")
    departure_time: str | None = Field(default=None, description="24h time HH:MM")
    return_time: str | None = Field(default=None, description="24h time HH:MM")
    passenger_count: int | None = Field(default=None, ge=1)
    trip_type: Literal["ONE_WAY", "RETURN", "MULTI_STOP"] = "ONE_WAY"
    vehicle_type: VehicleClass | None = None
    special_requirements: str | None = None
    budget_min: float | None = None
    budget_max: float | None = None


class EmailParserOutput(BaseModel):
    confidence_score: float = _confidence()
    parsed_enquiry: ParsedEnquiry
    missing_fields: list[str] = Field(default_factory=list)
    summary: str


class EnquiryAnalyzerOutput(BaseModel):
    confidence_score: float = _confidence()
    complexity_score: int = Field(..., ge=1, le=10)
    suggested_vehicle_type: VehicleClass
    vehicle_reasoning: str
    estimated_price_min: float
    estimated_price_max: float
    price_reasoning: str
    quality_score: int = Field(..., ge=1, le=10)
    quality_notes: str
    suggested_supplier_count: int = Field(..., ge=1, le=10)


class SupplierScores(BaseModel):
    rating: float
    price_competitiveness: float
    reliability: float
    proximity: float
    response_time: float
    fleet_match: float


class RankedSupplier(BaseModel):
    supplier_id: str
    rank: int = Field(..., ge=1)
    composite_score: float
    reasoning: str
    scores: SupplierScores
    risk_flags: list[str] = Field(default_factory=list)


class SupplierSelectorOutput(BaseModel):
    confidence_score: float = _confidence()
    ranked_suppliers: list[RankedSupplier]
    reasoning: str
    recommended_count: int = Field(..., ge=1)


class BidScores(BaseModel):
    price_fairness: float
    supplier_reliability: float
    vehicle_quality: float
    value_for_money: float


class EvaluatedBid(BaseModel):
    bid_id: str
    supplier_id: str
    rank: int = Field(..., ge=1)
    fairness_score: float
    overall_score: float
    reasoning: str
    anomaly_flag: bool = False
    anomaly_reason: str | None = None
    scores: BidScores


class BidEvaluatorOutput(BaseModel):
    confidence_score: float = _confidence()
    evaluated_bids: list[EvaluatedBid]
    recommended_winner_id: str = Field(..., description="bid_id of the recommended bid")
    reasoning: str
    has_anomalies: bool = False
    anomaly_summary: str | None = None


class MarkupFactors(BaseModel):
    trip_complexity: str
    market_condition: str
    customer_type: str
    competitive_position: str


class MarkupCalculatorOutput(BaseModel):
    confidence_score: float = _confidence()
    recommended_markup_percent: float = Field(..., allow_inf_nan=False)
    markup_amount: float = Field(..., allow_inf_nan=False)
    total_price: float = Field(..., allow_inf_nan=False)
    reasoning: str
    acceptance_probability: float = Field(..., ge=0, le=1)
    factors: MarkupFactors


class QuoteContentOutput(BaseModel):
    confidence_score: float = _confidence()
    quote_description: str
    email_subject: str
    email_body: str
    highlights: list[str] = Field(default_factory=list)


class JobSheet(BaseModel):
    title: str
    booking_reference: str
    customer_name: str
    pickup_details: str
    dropoff_details: str
    schedule: str
    special_instructions: str
    emergency_contact: str


class DriverBriefing(BaseModel):
    summary: str
    route_notes: str
    parking_instructions: str
    passenger_notes: str
    timings: str


class JobDocumentsOutput(BaseModel):
    confidence_score: float = _confidence()
    job_sheet: JobSheet
    driver_briefing: DriverBriefing
    supplier_notes: str


class EmailPersonalizerOutput(BaseModel):
    confidence_score: float = _confidence()
    subject: str
    body: str
    tone: Literal["formal", "friendly", "urgent"]


SCHEMAS_BY_DECISION_TYPE: dict[DecisionType, type[BaseModel]] = {
    DecisionType.EMAIL_PARSER: EmailParserOutput,
    DecisionType.ENQUIRY_ANALYZER: EnquiryAnalyzerOutput,
    DecisionType.SUPPLIER_SELECTOR: SupplierSelectorOutput,
    DecisionType.BID_EVALUATOR: BidEvaluatorOutput,
    DecisionType.MARKUP_CALCULATOR: MarkupCalculatorOutput,
    DecisionType.QUOTE_CONTENT: QuoteContentOutput,
    DecisionType.JOB_DOCUMENTS: JobDocumentsOutput,
    DecisionType.EMAIL_PERSONALIZER: EmailPersonalizerOutput,
}


def schema_for(decision_type: DecisionType) -> type[BaseModel]:
    return SCHEMAS_BY_DECISION_TYPE[decision_type]
