"""Key-value store for runtime-tunable settings (JSON values)."""

from __future__ import annotations

import json
import logging
from typing import Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from coach_pipeline.storage.common import dump_json, utc_now
from coach_pipeline.storage.sqlmodel_models import AppSetting

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLDS_KEY = "confidence_thresholds"
MARKUP_BOUNDS_KEY = "markup_bounds"
DAILY_COST_BUDGET_KEY = "daily_cost_budget"


class SettingsReader(Protocol):
    """Read-only view over externally configured values."""

    def get(self, key: str) -> object | None:
        """Return the decoded value for key, or None when absent."""


class AppSettingsRepository:
    """SQLite-backed settings reader/writer."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, key: str) -> object | None:
        with Session(self.engine) as session:
            row = session.exec(select(AppSetting).where(AppSetting.key == key)).one_or_none()
        if row is None:
            return None
        try:
            return json.loads(row.value_json)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed setting key=%s", key)
            return None

    def set(self, key: str, value: object) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(AppSetting).where(AppSetting.key == key)).one_or_none()
            if row is None:
                row = AppSetting(key=key, value_json=dump_json(value), updated_at=now)
            else:
                row.value_json = dump_json(value)
                row.updated_at = now
            session.add(row)
            session.commit()

