"""Controllers for coach-pipeline CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path

from sqlalchemy.engine import Engine

from coach_pipeline.config import Settings
from coach_pipeline.decisions.backend import InferenceBackend, OpenAIBackend
from coach_pipeline.decisions.confidence import ConfidenceEvaluator, ThresholdCache
from coach_pipeline.decisions.cost_tracker import BudgetGuard, CostTracker
from coach_pipeline.decisions.decision_log import DecisionLogger
from coach_pipeline.decisions.executor import TaskExecutor
from coach_pipeline.decisions.models import DecisionType, ReviewStatus
from coach_pipeline.decisions.repository import DecisionRepository
from coach_pipeline.decisions.retry import RetryPolicy
from coach_pipeline.decisions.reviews import HumanReviewService
from coach_pipeline.decisions.routing import DecisionRouting
from coach_pipeline.jobs.delivery import FileDocumentRenderer, LoggingEmailSender
from coach_pipeline.jobs.handlers import JobHandlerRegistry, build_handlers
from coach_pipeline.jobs.models import JobCategory, JobName, JobStatus
from coach_pipeline.jobs.queue import SqliteJobQueue
from coach_pipeline.jobs.repository import JobRepository
from coach_pipeline.jobs.runtime import GracefulStop
from coach_pipeline.jobs.worker import JobWorker, WorkerPool, WorkerRunSummary
from coach_pipeline.marketplace.bids import BidSubmissionService
from coach_pipeline.marketplace.errors import EnquiryNotFoundError
from coach_pipeline.marketplace.models import BidSubmission, SupplierCreate, VehicleCreate
from coach_pipeline.marketplace.quotes import QuoteAcceptanceService
from coach_pipeline.marketplace.repository import MarketplaceRepository
from coach_pipeline.pipelines import (
    BidEvaluationPipeline,
    IntakePipeline,
    JobConfirmationPipeline,
    PipelineDependencies,
    QuoteGenerationPipeline,
)
from coach_pipeline.scheduler import Scheduler, SweepName
from coach_pipeline.storage.alembic_runner import upgrade_head
from coach_pipeline.storage.app_settings import AppSettingsRepository
from coach_pipeline.storage.common import build_sqlite_engine

BackendFactory = Callable[[Settings], InferenceBackend]


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for a single-category worker."""

    db_path: Path | None
    category: str
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class WorkerPoolCommand:
    """CLI input for the all-category worker pool."""

    db_path: Path | None
    max_idle_polls: int | None


@dataclass(slots=True)
class SchedulerRunCommand:
    """CLI input for one scheduler pass."""

    db_path: Path | None
    sweep: str | None


@dataclass(slots=True)
class IntakeMessageCommand:
    """CLI input for storing an inbound enquiry email."""

    db_path: Path | None
    from_email: str
    subject: str
    body: str


@dataclass(slots=True)
class IntakeEnquiryCommand:
    """CLI input for re-running intake on an existing enquiry."""

    db_path: Path | None
    enquiry_id: str


@dataclass(slots=True)
class SupplierAddCommand:
    """CLI input for supplier registration."""

    db_path: Path | None
    name: str
    email: str | None
    phone: str | None
    base_location: str | None
    rating: float
    vehicles: tuple[str, ...]


@dataclass(slots=True)
class BidSubmitCommand:
    """CLI input for a supplier bid."""

    db_path: Path | None
    token: str
    base_price: Decimal
    fuel: Decimal
    tolls: Decimal
    parking: Decimal
    other: Decimal
    vehicle: str | None
    notes: str | None


@dataclass(slots=True)
class TokenCommand:
    """CLI input for token-addressed actions (bid decline, quote accept/decline)."""

    db_path: Path | None
    token: str


@dataclass(slots=True)
class CostsDailyCommand:
    """CLI input for the daily cost report."""

    db_path: Path | None
    day: date | None
    output_format: str = "table"


@dataclass(slots=True)
class ReviewsListCommand:
    """CLI input for review task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ReviewResolveCommand:
    """CLI input for resolving a review task."""

    db_path: Path | None
    review_id: str
    resolution: str
    override_path: Path | None


@dataclass(slots=True)
class ReviewDismissCommand:
    """CLI input for dismissing a review task."""

    db_path: Path | None
    review_id: str
    note: str


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    category: str | None
    limit: int


@dataclass(slots=True)
class DecisionsListCommand:
    """CLI input for decision log listing."""

    db_path: Path | None
    decision_type: str | None
    limit: int


@dataclass(slots=True)
class SettingSetCommand:
    """CLI input for a runtime-tunable setting."""

    db_path: Path | None
    key: str
    value_json: str


@dataclass(slots=True)
class Services:
    """Repositories and services bound to one database."""

    settings: Settings
    engine: Engine
    marketplace: MarketplaceRepository
    decisions: DecisionRepository
    jobs: JobRepository
    queue: SqliteJobQueue
    app_settings: AppSettingsRepository

    def budget_guard(self) -> BudgetGuard:
        return BudgetGuard(
            repository=self.decisions,
            settings_reader=self.app_settings,
            default_budget_usd=self.settings.budget.daily_budget_usd,
            warn_ratio=self.settings.budget.warn_ratio,
            enforce=self.settings.budget.enforce,
        )

    def cost_tracker(self) -> CostTracker:
        return CostTracker(repository=self.decisions, guard=self.budget_guard())

    def executor(self, backend: InferenceBackend) -> TaskExecutor:
        settings = self.settings
        return TaskExecutor(
            backend=backend,
            evaluator=ConfidenceEvaluator(
                settings_reader=self.app_settings,
                cache=ThresholdCache(ttl_seconds=settings.executor.threshold_cache_ttl_seconds),
            ),
            decision_logger=DecisionLogger(self.decisions),
            cost_tracker=self.cost_tracker(),
            routing=DecisionRouting.from_settings(settings.inference),
            retry_policy=RetryPolicy(
                max_retries=settings.executor.max_retries,
                base_delay_seconds=settings.executor.retry_delay_seconds,
            ),
            pricing_overrides=settings.inference.pricing_overrides or None,
        )

    def handlers(self, backend: InferenceBackend) -> JobHandlerRegistry:
        deps = PipelineDependencies(
            marketplace=self.marketplace,
            decisions=self.decisions,
            executor=self.executor(backend),
            queue=self.queue,
            settings_reader=self.app_settings,
            pipeline=self.settings.pipeline,
        )
        return build_handlers(
            intake=IntakePipeline(deps),
            bid_evaluation=BidEvaluationPipeline(deps),
            quote_generation=QuoteGenerationPipeline(deps),
            job_confirmation=JobConfirmationPipeline(deps),
            email_sender=LoggingEmailSender(),
            document_renderer=FileDocumentRenderer(self.settings.pipeline.documents_dir),
        )

    def worker(
        self,
        *,
        handlers: JobHandlerRegistry,
        category: JobCategory,
        worker_id: str,
        stop: GracefulStop,
    ) -> JobWorker:
        worker_settings = self.settings.worker
        return JobWorker(
            repository=self.jobs,
            handlers=handlers,
            category=category,
            worker_id=worker_id,
            poll_interval_seconds=worker_settings.poll_interval_seconds,
            retry_base_seconds=worker_settings.retry_base_seconds,
            retry_max_seconds=worker_settings.retry_max_seconds,
            stale_after_seconds=worker_settings.stale_after_seconds,
            stop=stop,
        )

    def scheduler(self) -> Scheduler:
        return Scheduler(
            marketplace=self.marketplace,
            queue=self.queue,
            pipeline=self.settings.pipeline,
        )


class CoachPipelineCliController:
    """Coordinates worker, scheduler, marketplace and audit CLI operations."""

    def __init__(self, backend_factory: BackendFactory | None = None) -> None:
        self.backend_factory = backend_factory or _openai_backend

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        category = JobCategory(command.category)
        stop = GracefulStop()
        with _services(settings) as services:
            worker = services.worker(
                handlers=services.handlers(self.backend_factory(settings)),
                category=category,
                worker_id=f"{settings.worker.worker_id}-{category.value}",
                stop=stop,
            )
            with stop.installed():
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
        return [_summary_line(f"Worker summary ({category.value})", summary)]

    def run_pool(self, command: WorkerPoolCommand) -> list[str]:
        settings = _settings(command.db_path)
        stop = GracefulStop()
        with _services(settings) as services:
            handlers = services.handlers(self.backend_factory(settings))
            sizes = {
                JobCategory.PIPELINE: settings.worker.pool_size_pipeline,
                JobCategory.NOTIFICATIONS: settings.worker.pool_size_notifications,
                JobCategory.DOCUMENTS: settings.worker.pool_size_documents,
            }
            workers = [
                services.worker(
                    handlers=handlers,
                    category=category,
                    worker_id=f"{settings.worker.worker_id}-{category.value}-{index}",
                    stop=stop,
                )
                for category, size in sizes.items()
                for index in range(size)
            ]
            summary = WorkerPool(workers=workers, stop=stop).run(
                max_idle_polls=command.max_idle_polls,
            )
        return [_summary_line(f"Worker pool summary (workers={len(workers)})", summary)]

    def run_scheduler(self, command: SchedulerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            scheduler = services.scheduler()
            results = (
                [scheduler.run_sweep(SweepName(command.sweep))]
                if command.sweep
                else scheduler.run_due()
            )
        lines = [f"Scheduler pass: sweeps={len(results)}"]
        lines.extend(
            f"  {result.sweep.value}: affected={result.affected} enqueued={result.enqueued}"
            for result in results
        )
        return lines

    def scheduler_loop(self, db_path: Path | None) -> list[str]:
        settings = _settings(db_path)
        with _services(settings) as services:
            services.scheduler().run_loop(
                stop=GracefulStop(),
                tick_seconds=settings.scheduler.tick_seconds,
            )
        return ["Scheduler stopped."]

    def intake_message(self, command: IntakeMessageCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            message = services.marketplace.add_inbound_message(
                from_email=command.from_email,
                subject=command.subject,
                body=command.body,
            )
            enqueued = services.queue.enqueue(
                JobName.EMAIL_PARSE_OR_ANALYZE,
                {"inbound_message_id": message.message_id},
                dedupe_key=f"intake:{message.message_id}",
            )
        return [f"Inbound message stored: message_id={message.message_id} enqueued={enqueued}"]

    def intake_enquiry(self, command: IntakeEnquiryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            enquiry = services.marketplace.get_enquiry(command.enquiry_id)
            if enquiry is None:
                raise EnquiryNotFoundError(f"Enquiry not found: {command.enquiry_id}")
            enqueued = services.queue.enqueue(
                JobName.EMAIL_PARSE_OR_ANALYZE,
                {"enquiry_id": enquiry.enquiry_id},
            )
        return [
            f"Intake enqueued: enquiry_id={enquiry.enquiry_id} "
            f"reference={enquiry.reference_number} status={enquiry.status.value} "
            f"enqueued={enqueued}",
        ]

    def add_supplier(self, command: SupplierAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        vehicles = [_parse_vehicle(raw) for raw in command.vehicles]
        with _services(settings) as services:
            supplier = services.marketplace.add_supplier(
                SupplierCreate(
                    name=command.name,
                    email=command.email,
                    phone=command.phone,
                    base_location=command.base_location,
                    rating=command.rating,
                ),
                vehicles=vehicles,
            )
        return [
            f"Supplier added: supplier_id={supplier.supplier_id} name={supplier.name} "
            f"rating={supplier.rating:.1f} vehicles={len(supplier.vehicles)}",
        ]

    def submit_bid(self, command: BidSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            bid = BidSubmissionService(
                marketplace=services.marketplace,
                queue=services.queue,
            ).submit(
                command.token,
                BidSubmission(
                    base_price=command.base_price,
                    fuel_surcharge=command.fuel,
                    toll_charges=command.tolls,
                    parking_charges=command.parking,
                    other_charges=command.other,
                    vehicle_offered=command.vehicle,
                    notes=command.notes,
                ),
            )
        return [
            f"Bid submitted: bid_id={bid.bid_id} enquiry_id={bid.enquiry_id} "
            f"total={bid.total_price:.2f} {bid.currency}",
        ]

    def decline_bid(self, command: TokenCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            invitation = BidSubmissionService(
                marketplace=services.marketplace,
                queue=services.queue,
            ).decline(command.token)
        return [
            f"Invitation declined: invitation_id={invitation.invitation_id} "
            f"status={invitation.status.value}",
        ]

    def accept_quote(self, command: TokenCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            quote = QuoteAcceptanceService(
                marketplace=services.marketplace,
                queue=services.queue,
            ).accept(command.token)
        return [
            f"Quote accepted: quote_id={quote.quote_id} reference={quote.reference_number} "
            f"total={quote.total_price:.2f} {quote.currency}",
        ]

    def decline_quote(self, command: TokenCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            quote = QuoteAcceptanceService(
                marketplace=services.marketplace,
                queue=services.queue,
            ).decline(command.token)
        return [f"Quote declined: quote_id={quote.quote_id} status={quote.status.value}"]

    def costs_daily(self, command: CostsDailyCommand) -> list[str]:
        """Show per-decision-type spend and the budget level for one UTC day."""

        settings = _settings(command.db_path)
        day = command.day or date.today()
        with _services(settings) as services:
            tracker = services.cost_tracker()
            rows = tracker.daily_summary(day)
            status = tracker.guard.status(day=day)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "day": day.isoformat(),
                        "spent_usd": status.spent_usd,
                        "budget_usd": status.budget_usd,
                        "ratio": status.ratio,
                        "level": status.level.value,
                        "decision_types": [
                            {
                                "decision_type": row.decision_type,
                                "calls": row.calls,
                                "prompt_tokens": row.prompt_tokens,
                                "completion_tokens": row.completion_tokens,
                                "total_tokens": row.total_tokens,
                                "cost_usd": row.cost_usd,
                            }
                            for row in rows
                        ],
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        lines = [
            f"Cost summary: day={day.isoformat()} spent_usd={status.spent_usd:.6f} "
            f"budget_usd={status.budget_usd:.2f} ratio={status.ratio:.2%} "
            f"level={status.level.value}",
        ]
        for row in rows:
            lines.append(
                "  "
                f"{row.decision_type}: calls={row.calls} prompt_tokens={row.prompt_tokens} "
                f"completion_tokens={row.completion_tokens} total_tokens={row.total_tokens} "
                f"cost_usd={row.cost_usd:.6f}",
            )
        return lines

    def list_reviews(self, command: ReviewsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = ReviewStatus(command.status) if command.status else None
        with _services(settings) as services:
            reviews = HumanReviewService(services.decisions).list_tasks(
                status=status,
                limit=command.limit,
            )
        lines = [f"Review tasks: {len(reviews)}"]
        for review in reviews:
            lines.append(
                "  "
                f"{review.review_id} status={review.status.value} "
                f"decision_type={review.decision_type.value} reason={review.reason.value} "
                f"target={review.target_type}:{review.target_id} "
                f"blocking={review.blocking} created_at={review.created_at.isoformat()}",
            )
        return lines

    def resolve_review(self, command: ReviewResolveCommand) -> list[str]:
        settings = _settings(command.db_path)
        override = None
        if command.override_path is not None:
            loaded = json.loads(command.override_path.read_text("utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Override file must contain a JSON object.")
            override = loaded
        with _services(settings) as services:
            outcome = HumanReviewService(services.decisions).resolve(
                command.review_id,
                resolution=command.resolution,
                override_output=override,
            )
        return [
            f"Review resolved: review_id={outcome.review.review_id} "
            f"override_log_id={outcome.override_log_id}",
        ]

    def dismiss_review(self, command: ReviewDismissCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            review = HumanReviewService(services.decisions).dismiss(
                command.review_id,
                note=command.note,
            )
        return [f"Review dismissed: review_id={review.review_id}"]

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            jobs = services.jobs.list_jobs(
                status=JobStatus(command.status) if command.status else None,
                category=JobCategory(command.category) if command.category else None,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                "  "
                f"{job.job_id} name={job.name.value} status={job.status.value} "
                f"attempt={job.attempt}/{job.max_attempts} "
                f"run_after={job.run_after.isoformat()} error={job.error_summary or '-'}",
            )
        return lines

    def list_decisions(self, command: DecisionsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        decision_type = DecisionType(command.decision_type) if command.decision_type else None
        with _services(settings) as services:
            entries = services.decisions.list_logs(
                decision_type=decision_type,
                limit=command.limit,
            )
        lines = [f"Decision log entries: {len(entries)}"]
        for entry in entries:
            lines.append(
                "  "
                f"#{entry.log_id} {entry.decision_type.value} action={entry.action_taken.value} "
                f"confidence={entry.confidence_score:.2f} model={entry.model} "
                f"attempts={entry.attempts} cost_usd={entry.estimated_cost_usd:.6f} "
                f"run_id={entry.pipeline_run_id}",
            )
        return lines

    def set_setting(self, command: SettingSetCommand) -> list[str]:
        settings = _settings(command.db_path)
        value = json.loads(command.value_json)
        with _services(settings) as services:
            services.app_settings.set(command.key, value)
        return [f"Setting stored: {command.key}={json.dumps(value, sort_keys=True)}"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _services(settings: Settings) -> Iterator[Services]:
    upgrade_head(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    engine = build_sqlite_engine(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    jobs = JobRepository(engine)
    try:
        yield Services(
            settings=settings,
            engine=engine,
            marketplace=MarketplaceRepository(engine),
            decisions=DecisionRepository(engine),
            jobs=jobs,
            queue=SqliteJobQueue(jobs, max_attempts=settings.worker.job_max_attempts),
            app_settings=AppSettingsRepository(engine),
        )
    finally:
        engine.dispose()


def _openai_backend(settings: Settings) -> InferenceBackend:
    if not settings.inference.api_key:
        raise ValueError("COACH_PIPELINE_OPENAI_API_KEY (or OPENAI_API_KEY) must be set.")
    return OpenAIBackend(
        api_key=settings.inference.api_key,
        base_url=settings.inference.base_url,
        timeout_seconds=settings.inference.request_timeout_seconds,
    )


def _parse_vehicle(raw: str) -> VehicleCreate:
    """Parse `TYPE:CAPACITY:REGISTRATION`."""

    parts = [part.strip() for part in raw.split(":")]
    if len(parts) != 3 or not all(parts):  # noqa: PLR2004
        raise ValueError(f"Invalid vehicle {raw!r}. Expected TYPE:CAPACITY:REGISTRATION.")
    vehicle_type, capacity, registration = parts
    try:
        seats = int(capacity)
    except ValueError as error:
        raise ValueError(f"Invalid vehicle capacity in {raw!r}.") from error
    return VehicleCreate(
        vehicle_type=vehicle_type.upper(),
        capacity=seats,
        registration=registration,
    )


def _summary_line(title: str, summary: WorkerRunSummary) -> str:
    return (
        f"{title}: processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} idle_polls={summary.idle_polls}"
    )
