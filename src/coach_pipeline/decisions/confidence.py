"""Confidence policy: per-decision-type thresholds with cached overrides."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from coach_pipeline.decisions.models import ActionTaken, ConfidenceVerdict, DecisionType
from coach_pipeline.storage.app_settings import CONFIDENCE_THRESHOLDS_KEY, SettingsReader

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.7
DEFAULT_THRESHOLDS: dict[DecisionType, float] = {
    DecisionType.EMAIL_PARSER: 0.75,
    DecisionType.ENQUIRY_ANALYZER: 0.60,
    DecisionType.SUPPLIER_SELECTOR: 0.70,
    DecisionType.BID_EVALUATOR: 0.80,
    DecisionType.MARKUP_CALCULATOR: 0.70,
    DecisionType.QUOTE_CONTENT: 0.50,
    DecisionType.JOB_DOCUMENTS: 0.50,
    DecisionType.EMAIL_PERSONALIZER: 0.50,
}


@dataclass(slots=True)
class ThresholdCache:
    """Threshold table with its own TTL clock."""

    ttl_seconds: float = 300.0
    clock: Callable[[], float] = time.monotonic
    _values: dict[DecisionType, float] | None = field(default=None, init=False, repr=False)
    _loaded_at: float = field(default=0.0, init=False, repr=False)

    def get(self) -> dict[DecisionType, float] | None:
        if self._values is None:
            return None
        if self.clock() - self._loaded_at >= self.ttl_seconds:
            return None
        return self._values

    def put(self, values: dict[DecisionType, float]) -> None:
        self._values = dict(values)
        self._loaded_at = self.clock()

    def invalidate(self) -> None:
        self._values = None


class ConfidenceEvaluator:
    """Maps (decision type, confidence) to auto-execute or escalate."""

    def __init__(
        self,
        *,
        settings_reader: SettingsReader | None = None,
        cache: ThresholdCache | None = None,
    ) -> None:
        self.settings_reader = settings_reader
        self.cache = cache or ThresholdCache()

    def threshold_for(self, decision_type: DecisionType) -> float:
        return self._thresholds().get(decision_type, DEFAULT_THRESHOLD)

    def evaluate(self, decision_type: DecisionType, confidence: float) -> ConfidenceVerdict:
        threshold = self.threshold_for(decision_type)
        auto_executed = confidence >= threshold
        return ConfidenceVerdict(
            auto_executed=auto_executed,
            action=ActionTaken.AUTO_EXECUTED if auto_executed else ActionTaken.ESCALATED_TO_HUMAN,
            confidence=confidence,
            threshold=threshold,
        )

    def _thresholds(self) -> dict[DecisionType, float]:
        cached = self.cache.get()
        if cached is not None:
            return cached
        thresholds = dict(DEFAULT_THRESHOLDS)
        thresholds.update(self._load_overrides())
        self.cache.put(thresholds)
        return thresholds

    def _load_overrides(self) -> dict[DecisionType, float]:
        if self.settings_reader is None:
            return {}
        try:
            raw = self.settings_reader.get(CONFIDENCE_THRESHOLDS_KEY)
        except (SQLAlchemyError, ValueError, TypeError, OSError) as error:
            logger.debug("Threshold overrides unavailable, using defaults: %s", error)
            return {}
        if not isinstance(raw, dict):
            return {}

        overrides: dict[DecisionType, float] = {}
        for key, value in raw.items():
            try:
                decision_type = DecisionType(str(key).upper())
                threshold = float(value)
            except (TypeError, ValueError):
                logger.debug("Ignoring threshold override key=%s value=%r", key, value)
                continue
            if not 0.0 <= threshold <= 1.0:
                logger.debug("Ignoring out-of-range threshold key=%s value=%s", key, threshold)
                continue
            overrides[decision_type] = threshold
        return overrides
