"""Per-call cost ledger and the daily budget guard."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from coach_pipeline.decisions.models import CostRecordWrite, DailyCostRow
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.storage.app_settings import DAILY_COST_BUDGET_KEY, SettingsReader

logger = logging.getLogger(__name__)


class BudgetLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(slots=True)
class BudgetStatus:
    """Spend of one provider on one UTC day against the configured budget."""

    day: date
    provider: str | None
    spent_usd: float
    budget_usd: float
    ratio: float
    level: BudgetLevel


class BudgetGuard:
    """Budget evaluation shared by the cost tracker and the task executor.

    Advisory by default. With `enforce=True` the executor refuses new calls once
    the day's spend reaches the budget.
    """

    def __init__(
        self,
        *,
        repository: DecisionRepository,
        settings_reader: SettingsReader | None = None,
        default_budget_usd: float = 50.0,
        warn_ratio: float = 0.8,
        enforce: bool = False,
    ) -> None:
        self.repository = repository
        self.settings_reader = settings_reader
        self.default_budget_usd = default_budget_usd
        self.warn_ratio = warn_ratio
        self.enforce = enforce

    def budget_usd(self) -> float:
        if self.settings_reader is None:
            return self.default_budget_usd
        try:
            raw = self.settings_reader.get(DAILY_COST_BUDGET_KEY)
        except (SQLAlchemyError, ValueError, TypeError, OSError) as error:
            logger.debug("Budget setting unavailable, using default: %s", error)
            return self.default_budget_usd
        if isinstance(raw, dict):
            try:
                configured = float(raw.get("budgetUsd"))  # type: ignore[arg-type]
            except (TypeError, ValueError):
                return self.default_budget_usd
            if configured > 0:
                return configured
        return self.default_budget_usd

    def status(self, *, day: date, provider: str | None = None) -> BudgetStatus:
        spent = self.repository.spend_for_day(day=day, provider=provider)
        budget = self.budget_usd()
        ratio = spent / budget if budget > 0 else 0.0
        if ratio >= 1.0:
            level = BudgetLevel.CRITICAL
        elif ratio >= self.warn_ratio:
            level = BudgetLevel.WARNING
        else:
            level = BudgetLevel.OK
        return BudgetStatus(
            day=day,
            provider=provider,
            spent_usd=spent,
            budget_usd=budget,
            ratio=ratio,
            level=level,
        )

    def allows_call(self, *, day: date, provider: str) -> tuple[bool, BudgetStatus]:
        """Return whether a new call may proceed under the current mode."""

        status = self.status(day=day, provider=provider)
        if self.enforce and status.level == BudgetLevel.CRITICAL:
            return False, status
        return True, status


class CostTracker:
    """Persists cost records and signals budget crossings."""

    def __init__(self, *, repository: DecisionRepository, guard: BudgetGuard) -> None:
        self.repository = repository
        self.guard = guard

    def record(self, cost: CostRecordWrite) -> BudgetStatus:
        self.repository.add_cost_record(cost)
        status = self.guard.status(day=cost.day, provider=cost.provider)
        if status.level == BudgetLevel.CRITICAL:
            logger.critical(
                "Daily inference budget exceeded provider=%s spent_usd=%.4f budget_usd=%.2f",
                cost.provider,
                status.spent_usd,
                status.budget_usd,
            )
        elif status.level == BudgetLevel.WARNING:
            logger.warning(
                "Daily inference budget at %.0f%% provider=%s spent_usd=%.4f budget_usd=%.2f",
                status.ratio * 100,
                cost.provider,
                status.spent_usd,
                status.budget_usd,
            )
        return status

    def daily_summary(self, day: date) -> list[DailyCostRow]:
        return self.repository.daily_summary(day=day)
