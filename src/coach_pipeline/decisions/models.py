"""Domain models for AI-gated decisions, their audit log and cost ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class DecisionType(str, Enum):
    """The eight fixed kinds of AI-assisted judgment."""

    EMAIL_PARSER = "EMAIL_PARSER"
    ENQUIRY_ANALYZER = "ENQUIRY_ANALYZER"
    SUPPLIER_SELECTOR = "SUPPLIER_SELECTOR"
    BID_EVALUATOR = "BID_EVALUATOR"
    MARKUP_CALCULATOR = "MARKUP_CALCULATOR"
    QUOTE_CONTENT = "QUOTE_CONTENT"
    JOB_DOCUMENTS = "JOB_DOCUMENTS"
    EMAIL_PERSONALIZER = "EMAIL_PERSONALIZER"


class ActionTaken(str, Enum):
    """What happened to a decision after it was scored."""

    AUTO_EXECUTED = "AUTO_EXECUTED"
    ESCALATED_TO_HUMAN = "ESCALATED_TO_HUMAN"
    OVERRIDDEN = "OVERRIDDEN"


class ReviewReason(str, Enum):
    """Why a decision was routed to a human reviewer."""

    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    LOW_SUPPLIER_RATING = "LOW_SUPPLIER_RATING"
    ANOMALOUS_PRICING = "ANOMALOUS_PRICING"
    AI_FAILURE = "AI_FAILURE"


class ReviewStatus(str, Enum):
    """Human review task lifecycle; only human action leaves PENDING."""

    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class FailureClass(str, Enum):
    """Normalized provider failure classes used in escalation reasons."""

    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    OUTPUT_INVALID = "output_invalid"
    BUDGET_EXCEEDED = "budget_exceeded"


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(slots=True)
class StructuredCompletion:
    """Validated structured output returned by an inference backend."""

    parsed: BaseModel
    raw_text: str
    usage: TokenUsage
    latency_ms: int
    model: str


@dataclass(slots=True)
class TextCompletion:
    """Plain text output returned by an inference backend."""

    text: str
    usage: TokenUsage
    latency_ms: int
    model: str


@dataclass(slots=True)
class DecisionRequest:
    """Transient input for one AI decision. Never persisted as-is."""

    decision_type: DecisionType
    messages: list[dict[str, str]]
    output_schema: type[BaseModel]
    pipeline_run_id: str
    enquiry_id: str | None = None
    customer_quote_id: str | None = None
    booking_id: str | None = None


@dataclass(slots=True)
class ConfidenceVerdict:
    """Outcome of comparing a confidence score with its decision-type threshold."""

    auto_executed: bool
    action: ActionTaken
    confidence: float
    threshold: float


@dataclass(slots=True)
class DecisionResult:
    """Typed result of a completed decision."""

    decision_type: DecisionType
    parsed: BaseModel
    confidence: float
    threshold: float
    auto_executed: bool
    action: ActionTaken
    log_id: int
    usage: TokenUsage
    latency_ms: int
    model: str
    cost_usd: float
    attempts: int


@dataclass(slots=True)
class DecisionLogWrite:
    """Append-only decision audit entry."""

    decision_type: DecisionType
    pipeline_run_id: str
    provider: str
    model: str
    prompt: list[dict[str, str]]
    confidence_score: float
    action_taken: ActionTaken
    raw_response: str | None = None
    parsed_output: dict[str, Any] | None = None
    threshold: float | None = None
    escalation_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    latency_ms: int = 0
    estimated_cost_usd: float = 0.0
    attempts: int = 1
    enquiry_id: str | None = None
    customer_quote_id: str | None = None
    booking_id: str | None = None
    overrides_log_id: int | None = None


@dataclass(slots=True)
class DecisionLogView:
    """Readable decision log entry."""

    log_id: int
    decision_type: DecisionType
    pipeline_run_id: str
    provider: str
    model: str
    prompt: list[dict[str, str]]
    raw_response: str | None
    parsed_output: dict[str, Any] | None
    confidence_score: float
    threshold: float | None
    action_taken: ActionTaken
    escalation_reason: str | None
    usage: TokenUsage
    latency_ms: int
    estimated_cost_usd: float
    attempts: int
    enquiry_id: str | None
    customer_quote_id: str | None
    booking_id: str | None
    overrides_log_id: int | None
    created_at: datetime

    @property
    def auto_executed(self) -> bool:
        return self.action_taken == ActionTaken.AUTO_EXECUTED


@dataclass(slots=True)
class CostRecordWrite:
    """Per-call cost row; created once per successful provider call."""

    day: date
    decision_type: DecisionType
    provider: str
    model: str
    usage: TokenUsage
    cost_usd: float
    decision_log_id: int


@dataclass(slots=True)
class DailyCostRow:
    """Aggregated spend for one decision type on one day."""

    decision_type: str
    calls: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float


@dataclass(slots=True)
class ReviewTaskCreate:
    """Input payload for opening a human review task."""

    decision_type: DecisionType
    reason: ReviewReason
    target_type: str
    target_id: str
    context: dict[str, Any]
    enquiry_id: str | None = None
    decision_log_id: int | None = None
    blocking: bool = True


@dataclass(slots=True)
class ReviewTaskView:
    review_id: str
    decision_type: DecisionType
    reason: ReviewReason
    status: ReviewStatus
    target_type: str
    target_id: str
    enquiry_id: str | None
    decision_log_id: int | None
    blocking: bool
    context: dict[str, Any]
    resolution: str | None
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime
