"""CLI entrypoint for coach-pipeline."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import rich_click as click

from coach_pipeline import __version__
from coach_pipeline.controllers import (
    BidSubmitCommand,
    CoachPipelineCliController,
    CostsDailyCommand,
    DecisionsListCommand,
    IntakeEnquiryCommand,
    IntakeMessageCommand,
    JobsListCommand,
    ReviewDismissCommand,
    ReviewResolveCommand,
    ReviewsListCommand,
    SchedulerRunCommand,
    SettingSetCommand,
    SupplierAddCommand,
    TokenCommand,
    WorkerPoolCommand,
    WorkerRunCommand,
)
from coach_pipeline.decisions.models import DecisionType, ReviewStatus
from coach_pipeline.decisions.reviews import ReviewError
from coach_pipeline.jobs.models import JobCategory, JobStatus
from coach_pipeline.marketplace.errors import MarketplaceError
from coach_pipeline.scheduler import SweepName

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoachPipelineCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="coach-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logging level.",
)
def coach_pipeline(log_level: str) -> None:
    """Coach hire pipeline CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@coach_pipeline.group()
def worker() -> None:
    """Job queue workers."""


@worker.command("run")
@_DB_PATH_OPTION
@click.option(
    "--category",
    type=click.Choice([category.value for category in JobCategory], case_sensitive=False),
    required=True,
    help="Queue category to consume.",
)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process at most one job, or loop until the queue is idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker_run(
    db_path: Path | None,
    category: str,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run one worker for a single queue category."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    category=category.lower(),
                    once=once,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        )


@worker.command("pool")
@_DB_PATH_OPTION
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit each worker after this many empty polls (default: run until stopped).",
)
def worker_pool(db_path: Path | None, max_idle_polls: int | None) -> None:
    """Run worker threads for every category with the configured pool sizes."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.run_pool(
                WorkerPoolCommand(db_path=db_path, max_idle_polls=max_idle_polls),
            ),
        )


@coach_pipeline.group()
def scheduler() -> None:
    """Time-triggered sweeps."""


@scheduler.command("run")
@_DB_PATH_OPTION
@click.option(
    "--sweep",
    type=click.Choice([sweep.value for sweep in SweepName], case_sensitive=False),
    default=None,
    help="Run one named sweep instead of every due sweep.",
)
def scheduler_run(db_path: Path | None, sweep: str | None) -> None:
    """Run one scheduler pass."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.run_scheduler(
                SchedulerRunCommand(
                    db_path=db_path,
                    sweep=sweep.lower() if sweep else None,
                ),
            ),
        )


@scheduler.command("loop")
@_DB_PATH_OPTION
def scheduler_loop(db_path: Path | None) -> None:
    """Run due sweeps every tick until SIGINT/SIGTERM."""

    with _domain_errors():
        _emit_lines(CONTROLLER.scheduler_loop(db_path))


@coach_pipeline.group()
def intake() -> None:
    """Inbound enquiry intake."""


@intake.command("message")
@_DB_PATH_OPTION
@click.option("--from-email", required=True, help="Sender address.")
@click.option("--subject", default="", help="Email subject.")
@click.option(
    "--body-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="File holding the plain-text email body.",
)
def intake_message(
    db_path: Path | None,
    from_email: str,
    subject: str,
    body_file: Path,
) -> None:
    """Store an inbound enquiry email and enqueue intake."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.intake_message(
                IntakeMessageCommand(
                    db_path=db_path,
                    from_email=from_email,
                    subject=subject,
                    body=body_file.read_text(encoding="utf-8"),
                ),
            ),
        )


@intake.command("enquiry")
@_DB_PATH_OPTION
@click.option("--enquiry-id", required=True, help="Enquiry id to re-run.")
def intake_enquiry(db_path: Path | None, enquiry_id: str) -> None:
    """Enqueue intake for an existing enquiry (analysis and supplier selection)."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.intake_enquiry(
                IntakeEnquiryCommand(db_path=db_path, enquiry_id=enquiry_id),
            ),
        )


@coach_pipeline.group()
def suppliers() -> None:
    """Supplier directory."""


@suppliers.command("add")
@_DB_PATH_OPTION
@click.option("--name", required=True, help="Supplier display name.")
@click.option("--email", default=None, help="Supplier contact email.")
@click.option("--phone", default=None, help="Supplier contact phone.")
@click.option("--base-location", default=None, help="Depot town or city.")
@click.option(
    "--rating",
    type=click.FloatRange(min=0, max=5),
    default=0.0,
    show_default=True,
    help="Supplier rating (0-5).",
)
@click.option(
    "--vehicle",
    "vehicles",
    multiple=True,
    help="Fleet vehicle as TYPE:CAPACITY:REGISTRATION. Can be repeated.",
)
def suppliers_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    email: str | None,
    phone: str | None,
    base_location: str | None,
    rating: float,
    vehicles: tuple[str, ...],
) -> None:
    """Register an active supplier with its fleet."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.add_supplier(
                SupplierAddCommand(
                    db_path=db_path,
                    name=name,
                    email=email,
                    phone=phone,
                    base_location=base_location,
                    rating=rating,
                    vehicles=vehicles,
                ),
            ),
        )


@coach_pipeline.group()
def bids() -> None:
    """Supplier bid responses."""


@bids.command("submit")
@_DB_PATH_OPTION
@click.option("--token", required=True, help="Invitation access token.")
@click.option("--base-price", required=True, help="Base price.")
@click.option("--fuel", default="0", show_default=True, help="Fuel surcharge.")
@click.option("--tolls", default="0", show_default=True, help="Toll charges.")
@click.option("--parking", default="0", show_default=True, help="Parking charges.")
@click.option("--other", default="0", show_default=True, help="Other charges.")
@click.option("--vehicle", default=None, help="Vehicle offered.")
@click.option("--notes", default=None, help="Notes for the broker.")
def bids_submit(  # noqa: PLR0913
    db_path: Path | None,
    token: str,
    base_price: str,
    fuel: str,
    tolls: str,
    parking: str,
    other: str,
    vehicle: str | None,
    notes: str | None,
) -> None:
    """Submit a bid against an invitation."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.submit_bid(
                BidSubmitCommand(
                    db_path=db_path,
                    token=token,
                    base_price=_decimal(base_price, "--base-price"),
                    fuel=_decimal(fuel, "--fuel"),
                    tolls=_decimal(tolls, "--tolls"),
                    parking=_decimal(parking, "--parking"),
                    other=_decimal(other, "--other"),
                    vehicle=vehicle,
                    notes=notes,
                ),
            ),
        )


@bids.command("decline")
@_DB_PATH_OPTION
@click.option("--token", required=True, help="Invitation access token.")
def bids_decline(db_path: Path | None, token: str) -> None:
    """Decline an invitation."""

    with _domain_errors():
        _emit_lines(CONTROLLER.decline_bid(TokenCommand(db_path=db_path, token=token)))


@coach_pipeline.group()
def quotes() -> None:
    """Customer quote responses."""


@quotes.command("accept")
@_DB_PATH_OPTION
@click.option("--token", required=True, help="Quote acceptance token.")
def quotes_accept(db_path: Path | None, token: str) -> None:
    """Accept a quote (payment is captured before this step)."""

    with _domain_errors():
        _emit_lines(CONTROLLER.accept_quote(TokenCommand(db_path=db_path, token=token)))


@quotes.command("decline")
@_DB_PATH_OPTION
@click.option("--token", required=True, help="Quote acceptance token.")
def quotes_decline(db_path: Path | None, token: str) -> None:
    """Decline a quote."""

    with _domain_errors():
        _emit_lines(CONTROLLER.decline_quote(TokenCommand(db_path=db_path, token=token)))


@coach_pipeline.group()
def costs() -> None:
    """Inference cost reporting."""


@costs.command("daily")
@_DB_PATH_OPTION
@click.option(
    "--date",
    "day",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="UTC day to report (default: today).",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def costs_daily(db_path: Path | None, day: datetime | None, output_format: str) -> None:
    """Per-decision-type inference spend and budget level for one day."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.costs_daily(
                CostsDailyCommand(
                    db_path=db_path,
                    day=day.date() if day else None,
                    output_format=output_format.lower(),
                ),
            ),
        )


@coach_pipeline.group()
def reviews() -> None:
    """Human review tasks."""


@reviews.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in ReviewStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum tasks to show.",
)
def reviews_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List review tasks, newest first."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.list_reviews(
                ReviewsListCommand(
                    db_path=db_path,
                    status=status.upper() if status else None,
                    limit=limit,
                ),
            ),
        )


@reviews.command("resolve")
@_DB_PATH_OPTION
@click.option("--review-id", required=True, help="Review task id.")
@click.option("--resolution", required=True, help="Reviewer note.")
@click.option(
    "--override-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file with a corrected decision output.",
)
def reviews_resolve(
    db_path: Path | None,
    review_id: str,
    resolution: str,
    override_file: Path | None,
) -> None:
    """Resolve a review task, optionally overriding the AI output."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.resolve_review(
                ReviewResolveCommand(
                    db_path=db_path,
                    review_id=review_id,
                    resolution=resolution,
                    override_path=override_file,
                ),
            ),
        )


@reviews.command("dismiss")
@_DB_PATH_OPTION
@click.option("--review-id", required=True, help="Review task id.")
@click.option("--note", required=True, help="Why the task is dismissed.")
def reviews_dismiss(db_path: Path | None, review_id: str, note: str) -> None:
    """Dismiss a review task."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.dismiss_review(
                ReviewDismissCommand(db_path=db_path, review_id=review_id, note=note),
            ),
        )


@coach_pipeline.group()
def jobs() -> None:
    """Job queue inspection."""


@jobs.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--category",
    type=click.Choice([category.value for category in JobCategory], case_sensitive=False),
    default=None,
    help="Optional category filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum jobs to show.",
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    category: str | None,
    limit: int,
) -> None:
    """List jobs, newest first."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.list_jobs(
                JobsListCommand(
                    db_path=db_path,
                    status=status.lower() if status else None,
                    category=category.lower() if category else None,
                    limit=limit,
                ),
            ),
        )


@coach_pipeline.group()
def decisions() -> None:
    """Decision log inspection."""


@decisions.command("list")
@_DB_PATH_OPTION
@click.option(
    "--decision-type",
    type=click.Choice([kind.value for kind in DecisionType], case_sensitive=False),
    default=None,
    help="Optional decision type filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum entries to show.",
)
def decisions_list(db_path: Path | None, decision_type: str | None, limit: int) -> None:
    """List decision log entries, newest first."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.list_decisions(
                DecisionsListCommand(
                    db_path=db_path,
                    decision_type=decision_type.upper() if decision_type else None,
                    limit=limit,
                ),
            ),
        )


@coach_pipeline.group("settings")
def settings_group() -> None:
    """Runtime-tunable settings."""


@settings_group.command("set")
@_DB_PATH_OPTION
@click.argument("key")
@click.argument("value_json")
def settings_set(db_path: Path | None, key: str, value_json: str) -> None:
    """Store a JSON value, for example `confidence_thresholds '{"BID_EVALUATOR": 0.9}'`."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.set_setting(
                SettingSetCommand(db_path=db_path, key=key, value_json=value_json),
            ),
        )


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (MarketplaceError, ReviewError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _decimal(raw: str, option: str) -> Decimal:
    try:
        value = Decimal(raw)
    except ArithmeticError as error:
        raise click.BadParameter(f"{raw!r} is not a number.", param_hint=option) from error
    if not value.is_finite() or value < 0:
        raise click.BadParameter(f"{raw!r} must be a non-negative amount.", param_hint=option)
    return value


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    coach_pipeline()
