from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest
from pydantic import BaseModel

from coach_pipeline.config import InferenceSettings
from coach_pipeline.decisions.confidence import ConfidenceEvaluator
from coach_pipeline.decisions.cost_tracker import BudgetGuard, CostTracker
from coach_pipeline.decisions.decision_log import DecisionLogger
from coach_pipeline.decisions.executor import BudgetExceededError, TaskExecutor, TaskFailedError
from coach_pipeline.decisions.failure_classifier import ProviderError
from coach_pipeline.decisions.models import (
    ActionTaken,
    DecisionRequest,
    DecisionType,
    FailureClass,
)
from coach_pipeline.decisions.prompts import build_messages
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.retry import RetryPolicy
from coach_pipeline.decisions.routing import DecisionRouting
from coach_pipeline.decisions.schemas import EnquiryAnalyzerOutput, MarkupCalculatorOutput
from coach_pipeline.storage.app_settings import DAILY_COST_BUDGET_KEY, AppSettingsRepository

pytestmark = [
    allure.epic("Decision Engine"),
    allure.feature("Task Executor"),
]


def _request(decision_type: DecisionType, schema: type[BaseModel]) -> DecisionRequest:
    return DecisionRequest(
        decision_type=decision_type,
        messages=build_messages(decision_type, {"reference": "ENQ-20261019-0001"}),
        output_schema=schema,
        pipeline_run_id="run-1",
        enquiry_id="enquiry-1",
    )


class _Unscored(BaseModel):
    note: str


def test_success_writes_one_log_entry_and_one_cost_record(
    executor: TaskExecutor,
    backend,
    decisions: DecisionRepository,
    outputs,
) -> None:
    backend.script(EnquiryAnalyzerOutput, outputs.analyzer(confidence=0.85))

    result = executor.execute(_request(DecisionType.ENQUIRY_ANALYZER, EnquiryAnalyzerOutput))

    assert result.auto_executed is True
    assert result.attempts == 1
    assert result.model == "gpt-4o-mini"
    entry = decisions.get_log(result.log_id)
    assert entry is not None
    assert entry.action_taken == ActionTaken.AUTO_EXECUTED
    assert entry.confidence_score == pytest.approx(0.85)
    assert entry.threshold == pytest.approx(0.60)
    assert entry.parsed_output is not None
    assert entry.parsed_output["complexity_score"] == 4
    assert entry.prompt[0]["role"] == "system"
    assert decisions.count_cost_records(decision_log_id=result.log_id) == 1
    # gpt-4o-mini: 1000 prompt tokens at 0.15/1M plus 500 completion tokens at 0.60/1M.
    assert result.cost_usd == pytest.approx(0.00045)


def test_low_confidence_is_logged_as_escalated(
    executor: TaskExecutor,
    backend,
    decisions: DecisionRepository,
    outputs,
) -> None:
    backend.script(MarkupCalculatorOutput, outputs.markup(confidence=0.4))

    result = executor.execute(_request(DecisionType.MARKUP_CALCULATOR, MarkupCalculatorOutput))

    assert result.auto_executed is False
    assert result.action == ActionTaken.ESCALATED_TO_HUMAN
    entry = decisions.get_log(result.log_id)
    assert entry is not None
    assert entry.escalation_reason == "confidence 0.40 below threshold 0.70"


def test_missing_confidence_counts_as_fully_confident(
    executor: TaskExecutor,
    backend,
) -> None:
    backend.script(_Unscored, _Unscored(note="ok"))

    result = executor.execute(_request(DecisionType.QUOTE_CONTENT, _Unscored))

    assert result.confidence == pytest.approx(1.0)
    assert result.auto_executed is True


def test_transient_failures_are_retried_with_linear_backoff(
    backend,
    decisions: DecisionRepository,
    app_settings: AppSettingsRepository,
    outputs,
) -> None:
    sleeps: list[float] = []
    executor = TaskExecutor(
        backend=backend,
        evaluator=ConfidenceEvaluator(settings_reader=app_settings),
        decision_logger=DecisionLogger(decisions),
        cost_tracker=CostTracker(
            repository=decisions,
            guard=BudgetGuard(repository=decisions),
        ),
        routing=DecisionRouting.from_settings(InferenceSettings()),
        retry_policy=RetryPolicy(max_retries=2, base_delay_seconds=1.5),
        sleep=sleeps.append,
        pricing_overrides="",
    )
    backend.script(
        EnquiryAnalyzerOutput,
        TimeoutError("read timed out"),
        ProviderError("rate limit reached"),
        outputs.analyzer(),
    )

    result = executor.execute(_request(DecisionType.ENQUIRY_ANALYZER, EnquiryAnalyzerOutput))

    assert result.attempts == 3
    assert sleeps == [1.5, 3.0]
    assert len(decisions.list_logs()) == 1


def test_exhausted_retries_raise_and_log_terminal_entry(
    executor: TaskExecutor,
    backend,
    decisions: DecisionRepository,
    sleeps: list[float],
) -> None:
    first = ProviderError("HTTP 503 overloaded")
    backend.script(
        EnquiryAnalyzerOutput,
        first,
        ProviderError("HTTP 503 overloaded"),
        ProviderError("HTTP 503 overloaded"),
    )

    with pytest.raises(TaskFailedError) as raised:
        executor.execute(_request(DecisionType.ENQUIRY_ANALYZER, EnquiryAnalyzerOutput))

    error = raised.value
    assert error.attempts == 3
    assert error.failure_class == FailureClass.BACKEND_TRANSIENT
    assert isinstance(error.last_error, ProviderError)
    assert len(sleeps) == 2
    entry = decisions.get_log(error.log_id)
    assert entry is not None
    assert entry.action_taken == ActionTaken.ESCALATED_TO_HUMAN
    assert entry.confidence_score == 0.0
    assert entry.attempts == 3
    assert entry.escalation_reason is not None
    assert entry.escalation_reason.startswith("scripted_backend_transient")
    assert decisions.count_cost_records() == 0


def test_zero_retries_means_single_attempt(
    backend,
    decisions: DecisionRepository,
) -> None:
    executor = TaskExecutor(
        backend=backend,
        evaluator=ConfidenceEvaluator(),
        decision_logger=DecisionLogger(decisions),
        cost_tracker=CostTracker(repository=decisions, guard=BudgetGuard(repository=decisions)),
        routing=DecisionRouting.from_settings(InferenceSettings()),
        retry_policy=RetryPolicy.zero_delay(max_retries=0),
        sleep=lambda _: None,
        pricing_overrides="",
    )
    backend.script(EnquiryAnalyzerOutput, ProviderError("invalid api key"))

    with pytest.raises(TaskFailedError) as raised:
        executor.execute(_request(DecisionType.ENQUIRY_ANALYZER, EnquiryAnalyzerOutput))

    assert raised.value.attempts == 1
    assert raised.value.failure_class == FailureClass.ACCESS_OR_AUTH
    assert len(backend.calls) == 1


def test_enforced_budget_refuses_call_before_provider(
    backend,
    decisions: DecisionRepository,
    app_settings: AppSettingsRepository,
    outputs,
) -> None:
    app_settings.set(DAILY_COST_BUDGET_KEY, {"budgetUsd": 0.0004})
    frozen = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    executor = TaskExecutor(
        backend=backend,
        evaluator=ConfidenceEvaluator(),
        decision_logger=DecisionLogger(decisions),
        cost_tracker=CostTracker(
            repository=decisions,
            guard=BudgetGuard(repository=decisions, settings_reader=app_settings, enforce=True),
        ),
        routing=DecisionRouting.from_settings(InferenceSettings()),
        retry_policy=RetryPolicy.zero_delay(),
        sleep=lambda _: None,
        clock=lambda: frozen,
        pricing_overrides="",
    )
    backend.script(EnquiryAnalyzerOutput, outputs.analyzer())
    executor.execute(_request(DecisionType.ENQUIRY_ANALYZER, EnquiryAnalyzerOutput))

    with pytest.raises(BudgetExceededError) as raised:
        executor.execute(_request(DecisionType.ENQUIRY_ANALYZER, EnquiryAnalyzerOutput))

    assert raised.value.attempts == 0
    assert raised.value.failure_class == FailureClass.BUDGET_EXCEEDED
    assert len(backend.calls) == 1
    assert decisions.count_cost_records() == 1
