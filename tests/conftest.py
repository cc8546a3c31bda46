"""Shared test fixtures."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Iterator
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from coach_pipeline.config import InferenceSettings, PipelineSettings
from coach_pipeline.decisions.confidence import ConfidenceEvaluator, ThresholdCache
from coach_pipeline.decisions.cost_tracker import BudgetGuard, CostTracker
from coach_pipeline.decisions.decision_log import DecisionLogger
from coach_pipeline.decisions.executor import TaskExecutor
from coach_pipeline.decisions.models import StructuredCompletion, TextCompletion, TokenUsage
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.retry import RetryPolicy
from coach_pipeline.decisions.routing import DecisionRouting
from coach_pipeline.decisions.schemas import EmailPersonalizerOutput
from coach_pipeline.jobs.queue import SqliteJobQueue
from coach_pipeline.jobs.repository import JobRepository
from coach_pipeline.marketplace.models import (
    BidSubmission,
    BidView,
    CustomerQuoteCreate,
    CustomerQuoteStatus,
    CustomerQuoteView,
    EnquiryAnalysisWrite,
    EnquiryCreate,
    EnquiryStatus,
    EnquiryView,
    InvitationCreate,
    InvitationView,
    SupplierCreate,
    SupplierView,
    VehicleCreate,
)
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.pipelines import PipelineDependencies
from coach_pipeline.storage.alembic_runner import upgrade_head
from coach_pipeline.storage.app_settings import AppSettingsRepository
from coach_pipeline.storage.common import build_sqlite_engine, utc_now

DEFAULT_USAGE = TokenUsage(prompt_tokens=1_000, completion_tokens=500, total_tokens=1_500)


class ScriptedBackend:
    """In-memory inference backend fed per-schema queues of outputs or exceptions.

    Email personalization falls back to a confident default so stage tests only
    script the decisions they care about.
    """

    provider_name = "scripted"

    def __init__(self) -> None:
        self._outcomes: dict[type[BaseModel], deque[object]] = {}
        self.calls: list[tuple[type[BaseModel], list[dict[str, str]]]] = []

    def script(self, schema: type[BaseModel], *outcomes: object) -> None:
        self._outcomes.setdefault(schema, deque()).extend(outcomes)

    def calls_for(self, schema: type[BaseModel]) -> list[list[dict[str, str]]]:
        return [messages for called, messages in self.calls if called is schema]

    def structured_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        output_schema: type[BaseModel],
        temperature: float,
    ) -> StructuredCompletion:
        self.calls.append((output_schema, messages))
        queue = self._outcomes.get(output_schema)
        if queue:
            outcome = queue.popleft()
        elif output_schema is EmailPersonalizerOutput:
            outcome = personalizer_output()
        else:
            raise AssertionError(f"No scripted output for {output_schema.__name__}")
        if isinstance(outcome, BaseException):
            raise outcome
        parsed = (
            outcome
            if isinstance(outcome, BaseModel)
            else output_schema.model_validate(outcome)
        )
        return StructuredCompletion(
            parsed=parsed,
            raw_text=json.dumps(parsed.model_dump(mode="json")),
            usage=DEFAULT_USAGE,
            latency_ms=5,
            model=model,
        )

    def text_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
    ) -> TextCompletion:
        return TextCompletion(text="scripted", usage=DEFAULT_USAGE, latency_ms=5, model=model)


class Seeder:
    """Builds marketplace records directly through the repository."""

    def __init__(self, marketplace: MarketplaceRepository) -> None:
        self.marketplace = marketplace
        self._counter = 0

    def supplier(
        self,
        name: str | None = None,
        *,
        rating: float = 4.5,
        email: str | None = "",
        vehicles: list[VehicleCreate] | None = None,
    ) -> SupplierView:
        self._counter += 1
        label = name or f"Supplier {self._counter}"
        return self.marketplace.add_supplier(
            SupplierCreate(
                name=label,
                email=f"ops{self._counter}@supplier.example" if email == "" else email,
                base_location="Manchester",
                rating=rating,
                completed_jobs=10,
            ),
            vehicles=(
                vehicles
                if vehicles is not None
                else [
                    VehicleCreate(
                        vehicle_type="STANDARD_COACH",
                        capacity=53,
                        registration=f"MX{self._counter:02d} ABC",
                    ),
                ]
            ),
        )

    def enquiry(self, *, passenger_count: int = 40) -> EnquiryView:
        customer = self.marketplace.find_or_create_customer(
            name="Jane Smith",
            email="jane@example.com",
        )
        return self.marketplace.create_enquiry(
            EnquiryCreate(
                contact_name="Jane Smith",
                contact_email="jane@example.com",
                pickup_location="Manchester",
                dropoff_location="York",
                departure_date="2026-11-14",
                departure_time="08:30",
                passenger_count=passenger_count,
                trip_type="RETURN",
            ),
            customer_id=customer.customer_id,
        )

    def under_review(self, enquiry: EnquiryView) -> EnquiryView:
        assert self.marketplace.start_review_with_analysis(
            enquiry.enquiry_id,
            EnquiryAnalysisWrite(
                complexity_score=4,
                suggested_vehicle="STANDARD_COACH",
                estimated_price_min=800.0,
                estimated_price_max=1_100.0,
                quality_score=8,
                notes="seeded",
            ),
        )
        return self._reload(enquiry)

    def invited(
        self,
        suppliers: list[SupplierView],
        *,
        expires_in: timedelta = timedelta(hours=72),
    ) -> tuple[EnquiryView, list[InvitationView]]:
        enquiry = self.under_review(self.enquiry())
        invitations = self.marketplace.send_invitations(
            enquiry.enquiry_id,
            invitations=[
                InvitationCreate(supplier_id=supplier.supplier_id, ai_rank=rank)
                for rank, supplier in enumerate(suppliers, start=1)
            ],
            expires_at=utc_now() + expires_in,
        )
        assert invitations is not None
        return self._reload(enquiry), invitations

    def bid(
        self,
        invitation: InvitationView,
        base_price: str = "900",
        *,
        vehicle: str | None = "STANDARD_COACH",
    ) -> BidView:
        bid = self.marketplace.submit_bid(
            invitation,
            BidSubmission(base_price=Decimal(base_price), vehicle_offered=vehicle),
            now=utc_now(),
        )
        assert bid is not None
        return bid

    def awarded(self, base_price: str = "900") -> tuple[EnquiryView, BidView]:
        """Enquiry in QUOTES_RECEIVED whose single bid has been accepted."""

        enquiry, invitations = self.invited([self.supplier()])
        bid = self.bid(invitations[0], base_price)
        assert self.marketplace.record_bid_evaluation(enquiry.enquiry_id, [])
        assert self.marketplace.award_bid(enquiry.enquiry_id, bid.bid_id)
        accepted = self.marketplace.get_bid(bid.bid_id)
        assert accepted is not None
        return self._reload(enquiry), accepted

    def sent_quote(
        self,
        *,
        valid_for: timedelta = timedelta(days=7),
    ) -> tuple[EnquiryView, CustomerQuoteView]:
        """Quote for 900 + 25% markup + 20% VAT, already sent to the customer."""

        enquiry, bid = self.awarded("900")
        quote = self.marketplace.create_customer_quote(
            CustomerQuoteCreate(
                enquiry_id=enquiry.enquiry_id,
                supplier_bid_id=bid.bid_id,
                customer_id=enquiry.customer_id,
                supplier_price=Decimal("900.00"),
                markup_percent=Decimal("25"),
                markup_amount=Decimal("225.00"),
                subtotal=Decimal("1125.00"),
                vat_rate=Decimal("20"),
                vat_amount=Decimal("225.00"),
                total_price=Decimal("1350.00"),
                valid_until=utc_now() + valid_for,
                description="Seeded quote",
            ),
        )
        assert quote is not None
        assert self.marketplace.transition_quote(
            quote.quote_id,
            from_status=CustomerQuoteStatus.DRAFT,
            to_status=CustomerQuoteStatus.SENT_TO_CUSTOMER,
            now=utc_now(),
        )
        assert self.marketplace.transition_enquiry(
            enquiry.enquiry_id,
            from_status=EnquiryStatus.QUOTES_RECEIVED,
            to_status=EnquiryStatus.QUOTE_SENT,
        )
        sent = self.marketplace.get_quote(quote.quote_id)
        assert sent is not None
        return self._reload(enquiry), sent

    def accepted_quote(self) -> tuple[EnquiryView, CustomerQuoteView]:
        enquiry, quote = self.sent_quote()
        assert self.marketplace.transition_quote(
            quote.quote_id,
            from_status=CustomerQuoteStatus.SENT_TO_CUSTOMER,
            to_status=CustomerQuoteStatus.ACCEPTED,
            now=utc_now(),
        )
        accepted = self.marketplace.get_quote(quote.quote_id)
        assert accepted is not None
        return enquiry, accepted

    def _reload(self, enquiry: EnquiryView) -> EnquiryView:
        refreshed = self.marketplace.get_enquiry(enquiry.enquiry_id)
        assert refreshed is not None
        return refreshed


def email_parser_output(confidence: float = 0.92, **overrides: Any) -> dict[str, Any]:
    parsed = {
        "customer_name": "Jane Smith",
        "customer_email": "jane@example.com",
        "pickup_location": "Manchester Piccadilly",
        "dropoff_location": "York Minster",
        "departure_date": "2026-11-14",
        "departure_time": "08:30",
        "passenger_count": 40,
        "trip_type": "RETURN",
    }
    parsed.update(overrides)
    return {
        "confidence_score": confidence,
        "parsed_enquiry": parsed,
        "missing_fields": [],
        "summary": "Return trip for 40 passengers.",
    }


def analyzer_output(
    confidence: float = 0.85,
    *,
    price_min: float = 800.0,
    price_max: float = 1_100.0,
) -> dict[str, Any]:
    return {
        "confidence_score": confidence,
        "complexity_score": 4,
        "suggested_vehicle_type": "STANDARD_COACH",
        "vehicle_reasoning": "40 passengers fit a 53-seat coach.",
        "estimated_price_min": price_min,
        "estimated_price_max": price_max,
        "price_reasoning": "Typical day return.",
        "quality_score": 8,
        "quality_notes": "Complete enquiry.",
        "suggested_supplier_count": 3,
    }


def selector_output(
    supplier_ids: list[str],
    *,
    confidence: float = 0.9,
    recommended_count: int | None = None,
) -> dict[str, Any]:
    scores = {
        "rating": 8,
        "price_competitiveness": 7,
        "reliability": 8,
        "proximity": 9,
        "response_time": 7,
        "fleet_match": 9,
    }
    return {
        "confidence_score": confidence,
        "ranked_suppliers": [
            {
                "supplier_id": supplier_id,
                "rank": rank,
                "composite_score": 9 - rank,
                "reasoning": "Good fit.",
                "scores": scores,
            }
            for rank, supplier_id in enumerate(supplier_ids, start=1)
        ],
        "reasoning": "Ranked by fit.",
        "recommended_count": recommended_count or len(supplier_ids),
    }


def bid_evaluator_output(
    bids: list[BidView],
    *,
    winner_id: str | None = None,
    confidence: float = 0.9,
    anomalous_bid_id: str | None = None,
    has_anomalies: bool = False,
) -> dict[str, Any]:
    return {
        "confidence_score": confidence,
        "evaluated_bids": [
            {
                "bid_id": bid.bid_id,
                "supplier_id": bid.supplier_id,
                "rank": rank,
                "fairness_score": 8,
                "overall_score": 9 - rank,
                "reasoning": "Fair price.",
                "anomaly_flag": bid.bid_id == anomalous_bid_id,
                "anomaly_reason": "Far below estimate" if bid.bid_id == anomalous_bid_id else None,
                "scores": {
                    "price_fairness": 8,
                    "supplier_reliability": 8,
                    "vehicle_quality": 7,
                    "value_for_money": 8,
                },
            }
            for rank, bid in enumerate(bids, start=1)
        ],
        "recommended_winner_id": winner_id or bids[0].bid_id,
        "reasoning": "Best value.",
        "has_anomalies": has_anomalies,
    }


def markup_output(percent: float = 25.0, *, confidence: float = 0.9) -> dict[str, Any]:
    return {
        "confidence_score": confidence,
        "recommended_markup_percent": percent,
        "markup_amount": 0,
        "total_price": 0,
        "reasoning": "Standard corporate trip.",
        "acceptance_probability": 0.7,
        "factors": {
            "trip_complexity": "low",
            "market_condition": "normal",
            "customer_type": "new",
            "competitive_position": "strong",
        },
    }


def quote_content_output(confidence: float = 0.9) -> dict[str, Any]:
    return {
        "confidence_score": confidence,
        "quote_description": "Comfortable 53-seat coach for your York day trip.",
        "email_subject": "Your York coach quote",
        "email_body": "<p>Here is your quote.</p>",
        "highlights": ["Air conditioning", "Experienced driver"],
    }


def job_documents_output(confidence: float = 0.9) -> dict[str, Any]:
    return {
        "confidence_score": confidence,
        "job_sheet": {
            "title": "Manchester to York",
            "booking_reference": "BKG",
            "customer_name": "Jane Smith",
            "pickup_details": "Manchester Piccadilly 08:30",
            "dropoff_details": "York Minster",
            "schedule": "Depart 08:30, return 18:00",
            "special_instructions": "None",
            "emergency_contact": "Operations desk",
        },
        "driver_briefing": {
            "summary": "Day return",
            "route_notes": "M62 eastbound",
            "parking_instructions": "Coach park at Union Terrace",
            "passenger_notes": "40 adults",
            "timings": "Arrive 10:30",
        },
        "supplier_notes": "Please confirm driver details 48h before.",
    }


def personalizer_output(confidence: float = 0.9) -> dict[str, Any]:
    return {
        "confidence_score": confidence,
        "subject": "Personalised subject",
        "body": "<p>Personalised body</p>",
        "tone": "formal",
    }


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "coach-pipeline.db"
    upgrade_head(path)
    return path


@pytest.fixture()
def engine(db_path: Path) -> Iterator[Engine]:
    built = build_sqlite_engine(db_path=db_path)
    yield built
    built.dispose()


@pytest.fixture()
def marketplace(engine: Engine) -> MarketplaceRepository:
    return MarketplaceRepository(engine)


@pytest.fixture()
def decisions(engine: Engine) -> DecisionRepository:
    return DecisionRepository(engine)


@pytest.fixture()
def jobs(engine: Engine) -> JobRepository:
    return JobRepository(engine)


@pytest.fixture()
def queue(jobs: JobRepository) -> SqliteJobQueue:
    return SqliteJobQueue(jobs, max_attempts=3)


@pytest.fixture()
def app_settings(engine: Engine) -> AppSettingsRepository:
    return AppSettingsRepository(engine)


@pytest.fixture()
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def executor(
    backend: ScriptedBackend,
    decisions: DecisionRepository,
    app_settings: AppSettingsRepository,
    sleeps: list[float],
) -> TaskExecutor:
    return TaskExecutor(
        backend=backend,
        evaluator=ConfidenceEvaluator(
            settings_reader=app_settings,
            cache=ThresholdCache(ttl_seconds=0),
        ),
        decision_logger=DecisionLogger(decisions),
        cost_tracker=CostTracker(
            repository=decisions,
            guard=BudgetGuard(repository=decisions, settings_reader=app_settings),
        ),
        routing=DecisionRouting.from_settings(InferenceSettings()),
        retry_policy=RetryPolicy.zero_delay(max_retries=2),
        sleep=sleeps.append,
        pricing_overrides="",
    )


@pytest.fixture()
def deps(
    tmp_path: Path,
    marketplace: MarketplaceRepository,
    decisions: DecisionRepository,
    executor: TaskExecutor,
    queue: SqliteJobQueue,
    app_settings: AppSettingsRepository,
) -> PipelineDependencies:
    return PipelineDependencies(
        marketplace=marketplace,
        decisions=decisions,
        executor=executor,
        queue=queue,
        settings_reader=app_settings,
        pipeline=PipelineSettings(documents_dir=tmp_path / "documents"),
    )


@pytest.fixture()
def seed(marketplace: MarketplaceRepository) -> Seeder:
    return Seeder(marketplace)


class DecisionOutputs:
    """Builders for well-formed decision outputs, exposed to tests as a fixture."""

    email_parser = staticmethod(email_parser_output)
    analyzer = staticmethod(analyzer_output)
    selector = staticmethod(selector_output)
    bid_evaluator = staticmethod(bid_evaluator_output)
    markup = staticmethod(markup_output)
    quote_content = staticmethod(quote_content_output)
    job_documents = staticmethod(job_documents_output)
    personalizer = staticmethod(personalizer_output)


@pytest.fixture()
def outputs() -> type[DecisionOutputs]:
    return DecisionOutputs
