from __future__ import annotations

import allure
import pytest

from coach_pipeline.decisions.confidence import (
    DEFAULT_THRESHOLD,
    ConfidenceEvaluator,
    ThresholdCache,
)
from coach_pipeline.decisions.models import ActionTaken, DecisionType
from coach_pipeline.storage.app_settings import (
    CONFIDENCE_THRESHOLDS_KEY,
    AppSettingsRepository,
)

pytestmark = [
    allure.epic("Decision Engine"),
    allure.feature("Confidence Gating"),
]


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    ("decision_type", "threshold"),
    [
        (DecisionType.EMAIL_PARSER, 0.75),
        (DecisionType.ENQUIRY_ANALYZER, 0.60),
        (DecisionType.SUPPLIER_SELECTOR, 0.70),
        (DecisionType.BID_EVALUATOR, 0.80),
        (DecisionType.MARKUP_CALCULATOR, 0.70),
        (DecisionType.QUOTE_CONTENT, 0.50),
        (DecisionType.JOB_DOCUMENTS, 0.50),
        (DecisionType.EMAIL_PERSONALIZER, 0.50),
    ],
)
def test_default_thresholds(decision_type: DecisionType, threshold: float) -> None:
    evaluator = ConfidenceEvaluator()
    assert evaluator.threshold_for(decision_type) == pytest.approx(threshold)


def test_confidence_equal_to_threshold_auto_executes() -> None:
    evaluator = ConfidenceEvaluator()

    verdict = evaluator.evaluate(DecisionType.BID_EVALUATOR, 0.80)

    assert verdict.auto_executed is True
    assert verdict.action == ActionTaken.AUTO_EXECUTED


def test_confidence_below_threshold_escalates() -> None:
    evaluator = ConfidenceEvaluator()

    verdict = evaluator.evaluate(DecisionType.EMAIL_PARSER, 0.55)

    assert verdict.auto_executed is False
    assert verdict.action == ActionTaken.ESCALATED_TO_HUMAN
    assert verdict.threshold == pytest.approx(0.75)


def test_overrides_replace_defaults_and_ignore_bad_entries(
    app_settings: AppSettingsRepository,
) -> None:
    app_settings.set(
        CONFIDENCE_THRESHOLDS_KEY,
        {
            "bid_evaluator": 0.9,
            "EMAIL_PARSER": 1.5,
            "NOT_A_DECISION": 0.1,
            "QUOTE_CONTENT": "abc",
        },
    )
    evaluator = ConfidenceEvaluator(settings_reader=app_settings)

    assert evaluator.threshold_for(DecisionType.BID_EVALUATOR) == pytest.approx(0.9)
    assert evaluator.threshold_for(DecisionType.EMAIL_PARSER) == pytest.approx(0.75)
    assert evaluator.threshold_for(DecisionType.QUOTE_CONTENT) == pytest.approx(0.5)


def test_threshold_cache_refreshes_after_ttl(app_settings: AppSettingsRepository) -> None:
    clock = _FakeClock()
    evaluator = ConfidenceEvaluator(
        settings_reader=app_settings,
        cache=ThresholdCache(ttl_seconds=300, clock=clock),
    )
    assert evaluator.threshold_for(DecisionType.MARKUP_CALCULATOR) == pytest.approx(0.7)

    app_settings.set(CONFIDENCE_THRESHOLDS_KEY, {"MARKUP_CALCULATOR": 0.95})
    clock.now = 299.0
    assert evaluator.threshold_for(DecisionType.MARKUP_CALCULATOR) == pytest.approx(0.7)

    clock.now = 300.0
    assert evaluator.threshold_for(DecisionType.MARKUP_CALCULATOR) == pytest.approx(0.95)


def test_invalidated_cache_reloads_immediately(app_settings: AppSettingsRepository) -> None:
    cache = ThresholdCache(ttl_seconds=300, clock=_FakeClock())
    evaluator = ConfidenceEvaluator(settings_reader=app_settings, cache=cache)
    assert evaluator.threshold_for(DecisionType.QUOTE_CONTENT) == pytest.approx(0.5)

    app_settings.set(CONFIDENCE_THRESHOLDS_KEY, {"quote_content": 0.65})
    cache.invalidate()

    assert evaluator.threshold_for(DecisionType.QUOTE_CONTENT) == pytest.approx(0.65)


def test_malformed_settings_fall_back_to_defaults(app_settings: AppSettingsRepository) -> None:
    app_settings.set(CONFIDENCE_THRESHOLDS_KEY, ["not", "a", "mapping"])
    evaluator = ConfidenceEvaluator(settings_reader=app_settings)

    assert evaluator.threshold_for(DecisionType.ENQUIRY_ANALYZER) == pytest.approx(0.6)
    assert DEFAULT_THRESHOLD == pytest.approx(0.7)
