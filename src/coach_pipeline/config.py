"""Runtime configuration for the decision pipeline, job workers and scheduler."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DECISION_PROFILE_MAP: dict[str, str] = {
    "EMAIL_PARSER": "quality",
    "ENQUIRY_ANALYZER": "fast",
    "SUPPLIER_SELECTOR": "quality",
    "BID_EVALUATOR": "quality",
    "MARKUP_CALCULATOR": "fast",
    "QUOTE_CONTENT": "fast",
    "JOB_DOCUMENTS": "fast",
    "EMAIL_PERSONALIZER": "fast",
}


@dataclass(slots=True)
class InferenceSettings:
    """Inference provider and model routing settings."""

    api_key: str = ""
    base_url: str | None = None
    request_timeout_seconds: float = 60.0
    model_quality: str = "gpt-4o"
    model_fast: str = "gpt-4o-mini"
    decision_profile_map: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_DECISION_PROFILE_MAP),
    )
    pricing_overrides: str = ""


@dataclass(slots=True)
class ExecutorSettings:
    """Task executor retry and confidence cache settings."""

    max_retries: int = 2
    retry_delay_seconds: float = 1.0
    threshold_cache_ttl_seconds: float = 300.0


@dataclass(slots=True)
class BudgetSettings:
    """Daily inference budget guard settings."""

    daily_budget_usd: float = 50.0
    warn_ratio: float = 0.8
    enforce: bool = False


@dataclass(slots=True)
class PipelineSettings:
    """Business parameters used by the pipeline stages."""

    app_base_url: str = "http://localhost:3000"
    company_name: str = "GroupBus"
    bid_response_hours: int = 72
    quote_validity_days: int = 7
    vat_percent: float = 20.0
    reminder_after_hours: int = 48
    documents_dir: Path = Path(".coach_pipeline_documents")


@dataclass(slots=True)
class WorkerSettings:
    """Job queue worker settings."""

    worker_id: str = field(default_factory=lambda: f"worker-{os.getpid()}")
    poll_interval_seconds: float = 2.0
    job_max_attempts: int = 3
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900
    stale_after_seconds: int = 1_800
    pool_size_pipeline: int = 2
    pool_size_notifications: int = 4
    pool_size_documents: int = 2


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler loop settings."""

    tick_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".coach_pipeline.db")
    sqlite_busy_timeout_ms: int = 5_000
    inference: InferenceSettings = field(default_factory=InferenceSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("COACH_PIPELINE_DB_PATH", ".coach_pipeline.db")),
            sqlite_busy_timeout_ms=_env_int("COACH_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", 5000),
            inference=InferenceSettings(
                api_key=os.getenv(
                    "COACH_PIPELINE_OPENAI_API_KEY",
                    os.getenv("OPENAI_API_KEY", ""),
                ),
                base_url=os.getenv("COACH_PIPELINE_OPENAI_BASE_URL") or None,
                request_timeout_seconds=_env_float(
                    "COACH_PIPELINE_REQUEST_TIMEOUT_SECONDS",
                    60.0,
                ),
                model_quality=os.getenv("COACH_PIPELINE_MODEL_QUALITY", "gpt-4o"),
                model_fast=os.getenv("COACH_PIPELINE_MODEL_FAST", "gpt-4o-mini"),
                decision_profile_map=_collect_profile_map(),
                pricing_overrides=os.getenv("COACH_PIPELINE_LLM_PRICING", ""),
            ),
            executor=ExecutorSettings(
                max_retries=_env_int("COACH_PIPELINE_EXECUTOR_MAX_RETRIES", 2),
                retry_delay_seconds=_env_float("COACH_PIPELINE_EXECUTOR_RETRY_DELAY_SECONDS", 1.0),
                threshold_cache_ttl_seconds=_env_float(
                    "COACH_PIPELINE_THRESHOLD_CACHE_TTL_SECONDS",
                    300.0,
                ),
            ),
            budget=BudgetSettings(
                daily_budget_usd=_env_float("COACH_PIPELINE_DAILY_BUDGET_USD", 50.0),
                warn_ratio=_env_float("COACH_PIPELINE_BUDGET_WARN_RATIO", 0.8),
                enforce=_env_bool("COACH_PIPELINE_BUDGET_ENFORCE", default=False),
            ),
            pipeline=PipelineSettings(
                app_base_url=os.getenv(
                    "COACH_PIPELINE_APP_BASE_URL",
                    "http://localhost:3000",
                ).rstrip("/"),
                company_name=os.getenv("COACH_PIPELINE_COMPANY_NAME", "GroupBus"),
                bid_response_hours=_env_int("COACH_PIPELINE_BID_RESPONSE_HOURS", 72),
                quote_validity_days=_env_int("COACH_PIPELINE_QUOTE_VALIDITY_DAYS", 7),
                vat_percent=_env_float("COACH_PIPELINE_VAT_PERCENT", 20.0),
                reminder_after_hours=_env_int("COACH_PIPELINE_REMINDER_AFTER_HOURS", 48),
                documents_dir=Path(
                    os.getenv("COACH_PIPELINE_DOCUMENTS_DIR", ".coach_pipeline_documents"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("COACH_PIPELINE_WORKER_ID", f"worker-{os.getpid()}"),
                poll_interval_seconds=_env_float(
                    "COACH_PIPELINE_WORKER_POLL_INTERVAL_SECONDS",
                    2.0,
                ),
                job_max_attempts=_env_int("COACH_PIPELINE_JOB_MAX_ATTEMPTS", 3),
                retry_base_seconds=_env_int("COACH_PIPELINE_JOB_RETRY_BASE_SECONDS", 30),
                retry_max_seconds=_env_int("COACH_PIPELINE_JOB_RETRY_MAX_SECONDS", 900),
                stale_after_seconds=_env_int("COACH_PIPELINE_JOB_STALE_AFTER_SECONDS", 1800),
                pool_size_pipeline=_env_int("COACH_PIPELINE_POOL_SIZE_PIPELINE", 2),
                pool_size_notifications=_env_int("COACH_PIPELINE_POOL_SIZE_NOTIFICATIONS", 4),
                pool_size_documents=_env_int("COACH_PIPELINE_POOL_SIZE_DOCUMENTS", 2),
            ),
            scheduler=SchedulerSettings(
                tick_seconds=_env_float("COACH_PIPELINE_SCHEDULER_TICK_SECONDS", 60.0),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot run with."""

        if self.executor.max_retries < 0:
            raise ValueError("COACH_PIPELINE_EXECUTOR_MAX_RETRIES must be >= 0.")
        if self.executor.retry_delay_seconds < 0:
            raise ValueError("COACH_PIPELINE_EXECUTOR_RETRY_DELAY_SECONDS must be >= 0.")
        if self.budget.daily_budget_usd <= 0:
            raise ValueError("COACH_PIPELINE_DAILY_BUDGET_USD must be > 0.")
        if not 0 < self.budget.warn_ratio <= 1:
            raise ValueError("COACH_PIPELINE_BUDGET_WARN_RATIO must be in (0, 1].")
        if self.pipeline.bid_response_hours <= 0:
            raise ValueError("COACH_PIPELINE_BID_RESPONSE_HOURS must be > 0.")
        if self.pipeline.quote_validity_days <= 0:
            raise ValueError("COACH_PIPELINE_QUOTE_VALIDITY_DAYS must be > 0.")
        if self.pipeline.vat_percent < 0:
            raise ValueError("COACH_PIPELINE_VAT_PERCENT must be >= 0.")
        if self.worker.job_max_attempts <= 0:
            raise ValueError("COACH_PIPELINE_JOB_MAX_ATTEMPTS must be > 0.")
        for name, size in (
            ("PIPELINE", self.worker.pool_size_pipeline),
            ("NOTIFICATIONS", self.worker.pool_size_notifications),
            ("DOCUMENTS", self.worker.pool_size_documents),
        ):
            if size <= 0:
                raise ValueError(f"COACH_PIPELINE_POOL_SIZE_{name} must be > 0.")


def _collect_profile_map() -> dict[str, str]:
    """Parse `COACH_PIPELINE_DECISION_PROFILE_MAP` on top of the defaults.

    Format: `DECISION_TYPE:profile` entries separated by `,`, profile is
    `fast` or `quality`.
    """

    profile_map = dict(DEFAULT_DECISION_PROFILE_MAP)
    raw = os.getenv("COACH_PIPELINE_DECISION_PROFILE_MAP", "").strip()
    if not raw:
        return profile_map

    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid COACH_PIPELINE_DECISION_PROFILE_MAP entry: "
                f"{token!r}. Expected format '<DECISION_TYPE>:<profile>'.",
            )
        decision_type, profile = (value.strip() for value in token.split(":", 1))
        decision_type = decision_type.upper()
        profile = profile.lower()
        if decision_type not in DEFAULT_DECISION_PROFILE_MAP:
            raise ValueError(f"Unknown decision type in profile map: {decision_type!r}")
        if profile not in {"fast", "quality"}:
            raise ValueError(f"Unsupported model profile for {decision_type}: {profile!r}")
        profile_map[decision_type] = profile
    return profile_map


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
