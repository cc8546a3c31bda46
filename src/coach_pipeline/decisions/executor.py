"""Task executor: one AI decision with retry, confidence gating, audit and cost."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

from coach_pipeline.decisions.backend.base import InferenceBackend
from coach_pipeline.decisions.confidence import ConfidenceEvaluator
from coach_pipeline.decisions.cost_tracker import CostTracker
from coach_pipeline.decisions.decision_log import DecisionLogger
from coach_pipeline.decisions.failure_classifier import classify_provider_failure
from coach_pipeline.decisions.models import (
    ActionTaken,
    CostRecordWrite,
    DecisionLogWrite,
    DecisionRequest,
    DecisionResult,
    DecisionType,
    FailureClass,
    StructuredCompletion,
)
from coach_pipeline.decisions.pricing import estimate_cost_usd
from coach_pipeline.decisions.retry import RetryPolicy
from coach_pipeline.decisions.routing import STRUCTURED_TEMPERATURE, DecisionRouting
from coach_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


class TaskFailedError(RuntimeError):
    """The decision could not be produced; no business record may assume otherwise."""

    def __init__(
        self,
        message: str,
        *,
        decision_type: DecisionType,
        attempts: int,
        log_id: int,
        failure_class: FailureClass,
    ) -> None:
        super().__init__(message)
        self.decision_type = decision_type
        self.attempts = attempts
        self.log_id = log_id
        self.failure_class = failure_class

    @property
    def last_error(self) -> BaseException | None:
        return self.__cause__


class BudgetExceededError(TaskFailedError):
    """Raised before any provider call when an enforcing budget guard is exhausted."""


class TaskExecutor:
    """Runs one decision end to end.

    The executor is the only component that retries inference calls. It never
    mutates business records: callers commit or escalate based on the result.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: InferenceBackend,
        evaluator: ConfidenceEvaluator,
        decision_logger: DecisionLogger,
        cost_tracker: CostTracker,
        routing: DecisionRouting,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        pricing_overrides: str | None = None,
    ) -> None:
        self.backend = backend
        self.evaluator = evaluator
        self.decision_logger = decision_logger
        self.cost_tracker = cost_tracker
        self.routing = routing
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.clock = clock
        self.pricing_overrides = pricing_overrides

    def execute(self, request: DecisionRequest) -> DecisionResult:
        """Produce a scored, logged and costed decision or raise `TaskFailedError`."""

        model = self.routing.model_for(request.decision_type)
        self._check_budget(request=request, model=model)

        last_error: Exception | None = None
        attempts = 0
        for attempt in range(1, self.retry_policy.max_attempts + 1):
            attempts = attempt
            try:
                completion = self.backend.structured_completion(
                    model=model,
                    messages=request.messages,
                    output_schema=request.output_schema,
                    temperature=STRUCTURED_TEMPERATURE,
                )
            except Exception as error:  # noqa: BLE001
                last_error = error
                logger.warning(
                    "Decision attempt failed decision_type=%s attempt=%d/%d error=%s",
                    request.decision_type.value,
                    attempt,
                    self.retry_policy.max_attempts,
                    error,
                )
                if attempt < self.retry_policy.max_attempts:
                    self.sleep(self.retry_policy.delay_after(attempt))
                continue
            return self._commit_success(request=request, completion=completion, attempts=attempt)

        if last_error is None:
            raise RuntimeError("Retry loop finished without an attempt.")
        raise self._terminal_failure(
            request=request,
            model=model,
            attempts=attempts,
            error=last_error,
        ) from last_error

    def _commit_success(
        self,
        *,
        request: DecisionRequest,
        completion: StructuredCompletion,
        attempts: int,
    ) -> DecisionResult:
        confidence = _extract_confidence(completion)
        verdict = self.evaluator.evaluate(request.decision_type, confidence)
        provider = self.backend.provider_name
        cost_usd = estimate_cost_usd(
            provider=provider,
            model=completion.model,
            prompt_tokens=completion.usage.prompt_tokens,
            completion_tokens=completion.usage.completion_tokens,
            overrides=self.pricing_overrides,
        )
        log_id = self.decision_logger.append(
            DecisionLogWrite(
                decision_type=request.decision_type,
                pipeline_run_id=request.pipeline_run_id,
                provider=provider,
                model=completion.model,
                prompt=request.messages,
                raw_response=completion.raw_text,
                parsed_output=completion.parsed.model_dump(mode="json"),
                confidence_score=confidence,
                threshold=verdict.threshold,
                action_taken=verdict.action,
                escalation_reason=(
                    None
                    if verdict.auto_executed
                    else f"confidence {confidence:.2f} below threshold {verdict.threshold:.2f}"
                ),
                usage=completion.usage,
                latency_ms=completion.latency_ms,
                estimated_cost_usd=cost_usd,
                attempts=attempts,
                enquiry_id=request.enquiry_id,
                customer_quote_id=request.customer_quote_id,
                booking_id=request.booking_id,
            ),
        )
        self.cost_tracker.record(
            CostRecordWrite(
                day=self.clock().date(),
                decision_type=request.decision_type,
                provider=provider,
                model=completion.model,
                usage=completion.usage,
                cost_usd=cost_usd,
                decision_log_id=log_id,
            ),
        )
        if verdict.auto_executed:
            logger.info(
                "Decision auto-executed decision_type=%s confidence=%.2f threshold=%.2f log_id=%d",
                request.decision_type.value,
                confidence,
                verdict.threshold,
                log_id,
            )
        else:
            logger.warning(
                "Decision below threshold decision_type=%s confidence=%.2f threshold=%.2f "
                "log_id=%d",
                request.decision_type.value,
                confidence,
                verdict.threshold,
                log_id,
            )
        return DecisionResult(
            decision_type=request.decision_type,
            parsed=completion.parsed,
            confidence=confidence,
            threshold=verdict.threshold,
            auto_executed=verdict.auto_executed,
            action=verdict.action,
            log_id=log_id,
            usage=completion.usage,
            latency_ms=completion.latency_ms,
            model=completion.model,
            cost_usd=cost_usd,
            attempts=attempts,
        )

    def _terminal_failure(
        self,
        *,
        request: DecisionRequest,
        model: str,
        attempts: int,
        error: Exception,
    ) -> TaskFailedError:
        classification = classify_provider_failure(
            provider=self.backend.provider_name,
            error=error,
        )
        reason = classification.describe(error)
        log_id = self._append_terminal_entry(
            request=request,
            model=model,
            attempts=attempts,
            reason=reason,
        )
        logger.error(
            "Decision failed after retries decision_type=%s attempts=%d log_id=%d reason=%s",
            request.decision_type.value,
            attempts,
            log_id,
            reason,
        )
        return TaskFailedError(
            reason,
            decision_type=request.decision_type,
            attempts=attempts,
            log_id=log_id,
            failure_class=classification.failure_class,
        )

    def _check_budget(self, *, request: DecisionRequest, model: str) -> None:
        allowed, status = self.cost_tracker.guard.allows_call(
            day=self.clock().date(),
            provider=self.backend.provider_name,
        )
        if allowed:
            return
        reason = (
            f"{self.backend.provider_name}_{FailureClass.BUDGET_EXCEEDED.value}: "
            f"spent {status.spent_usd:.4f} of {status.budget_usd:.2f} USD on {status.day}"
        )
        log_id = self._append_terminal_entry(
            request=request,
            model=model,
            attempts=0,
            reason=reason,
        )
        logger.critical(
            "Decision refused by budget guard decision_type=%s log_id=%d",
            request.decision_type.value,
            log_id,
        )
        raise BudgetExceededError(
            reason,
            decision_type=request.decision_type,
            attempts=0,
            log_id=log_id,
            failure_class=FailureClass.BUDGET_EXCEEDED,
        )

    def _append_terminal_entry(
        self,
        *,
        request: DecisionRequest,
        model: str,
        attempts: int,
        reason: str,
    ) -> int:
        return self.decision_logger.append(
            DecisionLogWrite(
                decision_type=request.decision_type,
                pipeline_run_id=request.pipeline_run_id,
                provider=self.backend.provider_name,
                model=model,
                prompt=request.messages,
                confidence_score=0.0,
                threshold=self.evaluator.threshold_for(request.decision_type),
                action_taken=ActionTaken.ESCALATED_TO_HUMAN,
                escalation_reason=reason,
                attempts=attempts,
                enquiry_id=request.enquiry_id,
                customer_quote_id=request.customer_quote_id,
                booking_id=request.booking_id,
            ),
        )


def _extract_confidence(completion: StructuredCompletion) -> float:
    value = getattr(completion.parsed, "confidence_score", None)
    if value is None:
        return 1.0
    return min(1.0, max(0.0, float(value)))
