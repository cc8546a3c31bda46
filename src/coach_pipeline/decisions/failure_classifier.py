"""Deterministic classification of inference failures for audit and escalation."""

from __future__ import annotations

import json
from dataclasses import dataclass

from pydantic import ValidationError

from coach_pipeline.decisions.models import FailureClass

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "billing",
    "credits",
    "payment",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "authenticationerror",
    "permissiondeniederror",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "incorrect api key",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model_not_found",
    "model not found",
    "does not exist or you do not have access",
    "unsupported model",
)
_OUTPUT_INVALID_PATTERNS: tuple[str, ...] = (
    "validation error",
    "invalid json",
    "jsondecodeerror",
    "empty completion",
    "refused",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "ratelimiterror",
    "rate limit",
    "429",
    "timeout",
    "timed out",
    "apiconnectionerror",
    "connection",
    "internalservererror",
    "502",
    "503",
    "overloaded",
    "temporarily unavailable",
)


class ProviderError(RuntimeError):
    """Provider-side failure surfaced by an inference backend."""

    def __init__(self, message: str, *, failure_class: FailureClass | None = None) -> None:
        super().__init__(message)
        self.failure_class = failure_class


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_pattern: str | None

    def describe(self, error: BaseException) -> str:
        """Escalation reason text stored with the terminal log entry."""

        return f"{self.reason_code}: {type(error).__name__}: {error}"

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(*, provider: str, error: BaseException) -> ProviderFailureClassification:
    """Classify an exception raised while producing a decision."""

    if isinstance(error, ProviderError) and error.failure_class is not None:
        return _classified(provider, error.failure_class, None)
    if isinstance(error, ValidationError | json.JSONDecodeError):
        return _classified(provider, FailureClass.OUTPUT_INVALID, None)

    haystack = f"{type(error).__name__}: {error}".lower()
    for failure_class, patterns in (
        (FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.OUTPUT_INVALID, _OUTPUT_INVALID_PATTERNS),
        (FailureClass.BACKEND_TRANSIENT, _TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _classified(provider, failure_class, pattern)
    if isinstance(error, TimeoutError | ConnectionError):
        return _classified(provider, FailureClass.BACKEND_TRANSIENT, None)
    return _classified(provider, FailureClass.BACKEND_NON_RETRYABLE, None)


def _classified(
    provider: str,
    failure_class: FailureClass,
    pattern: str | None,
) -> ProviderFailureClassification:
    return ProviderFailureClassification(
        failure_class=failure_class,
        reason_code=f"{provider}_{failure_class.value}",
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
