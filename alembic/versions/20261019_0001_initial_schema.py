"""Initial schema: marketplace records, decision audit, cost ledger and job queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:  # noqa: PLR0915
    op.create_table(
        "customers",
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("customer_id"),
    )
    op.create_index("ix_customers_email", "customers", ["email"], unique=True)

    op.create_table(
        "suppliers",
        sa.Column("supplier_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("base_location", sa.String(), nullable=True),
        sa.Column("rating", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("reliability_score", sa.Float(), nullable=True),
        sa.Column("avg_response_hours", sa.Float(), nullable=True),
        sa.Column("completed_jobs", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("supplier_id"),
    )
    op.create_index("ix_suppliers_name", "suppliers", ["name"], unique=False)
    op.create_index("ix_suppliers_is_active", "suppliers", ["is_active"], unique=False)

    op.create_table(
        "vehicles",
        sa.Column("vehicle_id", sa.String(), nullable=False),
        sa.Column("supplier_id", sa.String(), nullable=False),
        sa.Column("vehicle_type", sa.String(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("registration", sa.String(), nullable=False),
        sa.Column("driver_name", sa.String(), nullable=True),
        sa.Column("driver_phone", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.supplier_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("vehicle_id"),
    )
    op.create_index("ix_vehicles_supplier_id", "vehicles", ["supplier_id"], unique=False)

    op.create_table(
        "inbound_messages",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("from_email", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_inbound_messages_status", "inbound_messages", ["status"], unique=False)

    op.create_table(
        "enquiries",
        sa.Column("enquiry_id", sa.String(), nullable=False),
        sa.Column("reference_number", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("source_message_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("contact_name", sa.String(), nullable=False),
        sa.Column("contact_email", sa.String(), nullable=False),
        sa.Column("contact_phone", sa.String(), nullable=True),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("pickup_location", sa.String(), nullable=False),
        sa.Column("dropoff_location", sa.String(), nullable=False),
        sa.Column("departure_date", sa.String(), nullable=True),
        sa.Column("departure_time", sa.String(), nullable=True),
        sa.Column("return_date", sa.String(), nullable=True),
        sa.Column("return_time", sa.String(), nullable=True),
        sa.Column("passenger_count", sa.Integer(), nullable=True),
        sa.Column("trip_type", sa.String(), nullable=False, server_default="ONE_WAY"),
        sa.Column("vehicle_type", sa.String(), nullable=True),
        sa.Column("special_requirements", sa.Text(), nullable=True),
        sa.Column("budget_min", sa.Float(), nullable=True),
        sa.Column("budget_max", sa.Float(), nullable=True),
        sa.Column("ai_complexity_score", sa.Integer(), nullable=True),
        sa.Column("ai_suggested_vehicle", sa.String(), nullable=True),
        sa.Column("ai_estimated_price_min", sa.Float(), nullable=True),
        sa.Column("ai_estimated_price_max", sa.Float(), nullable=True),
        sa.Column("ai_quality_score", sa.Integer(), nullable=True),
        sa.Column("ai_notes", sa.Text(), nullable=True),
        sa.Column("sent_to_suppliers_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.customer_id"]),
        sa.ForeignKeyConstraint(["source_message_id"], ["inbound_messages.message_id"]),
        sa.PrimaryKeyConstraint("enquiry_id"),
        sa.UniqueConstraint("source_message_id", name="uq_enquiries_source_message"),
    )
    op.create_index("ix_enquiries_reference_number", "enquiries", ["reference_number"], unique=True)
    op.create_index("ix_enquiries_customer_id", "enquiries", ["customer_id"], unique=False)
    op.create_index("ix_enquiries_status", "enquiries", ["status"], unique=False)

    op.create_table(
        "bid_invitations",
        sa.Column("invitation_id", sa.String(), nullable=False),
        sa.Column("enquiry_id", sa.String(), nullable=False),
        sa.Column("supplier_id", sa.String(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ai_rank", sa.Integer(), nullable=True),
        sa.Column("ai_score", sa.Float(), nullable=True),
        sa.Column("ai_reasoning", sa.Text(), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["enquiry_id"], ["enquiries.enquiry_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.supplier_id"]),
        sa.PrimaryKeyConstraint("invitation_id"),
        sa.UniqueConstraint("access_token", name="uq_bid_invitations_access_token"),
        sa.UniqueConstraint(
            "enquiry_id",
            "supplier_id",
            name="uq_bid_invitations_enquiry_supplier",
        ),
    )
    op.create_index("ix_bid_invitations_enquiry_id", "bid_invitations", ["enquiry_id"])
    op.create_index("ix_bid_invitations_supplier_id", "bid_invitations", ["supplier_id"])
    op.create_index("ix_bid_invitations_status", "bid_invitations", ["status"])
    op.create_index(
        "idx_bid_invitations_status_expiry",
        "bid_invitations",
        ["status", "expires_at"],
    )

    op.create_table(
        "supplier_bids",
        sa.Column("bid_id", sa.String(), nullable=False),
        sa.Column("invitation_id", sa.String(), nullable=False),
        sa.Column("enquiry_id", sa.String(), nullable=False),
        sa.Column("supplier_id", sa.String(), nullable=False),
        sa.Column("base_price", sa.Float(), nullable=False),
        sa.Column("fuel_surcharge", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("toll_charges", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("parking_charges", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("other_charges", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_price", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="GBP"),
        sa.Column("vehicle_offered", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("ai_rank", sa.Integer(), nullable=True),
        sa.Column("ai_fairness_score", sa.Float(), nullable=True),
        sa.Column("ai_overall_score", sa.Float(), nullable=True),
        sa.Column("ai_reasoning", sa.Text(), nullable=True),
        sa.Column("ai_anomaly_flag", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("ai_anomaly_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["invitation_id"], ["bid_invitations.invitation_id"]),
        sa.ForeignKeyConstraint(["enquiry_id"], ["enquiries.enquiry_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.supplier_id"]),
        sa.PrimaryKeyConstraint("bid_id"),
        sa.UniqueConstraint("invitation_id", name="uq_supplier_bids_invitation"),
    )
    op.create_index("ix_supplier_bids_enquiry_id", "supplier_bids", ["enquiry_id"])
    op.create_index("ix_supplier_bids_supplier_id", "supplier_bids", ["supplier_id"])
    op.create_index("ix_supplier_bids_status", "supplier_bids", ["status"])

    op.create_table(
        "customer_quotes",
        sa.Column("quote_id", sa.String(), nullable=False),
        sa.Column("reference_number", sa.String(), nullable=False),
        sa.Column("enquiry_id", sa.String(), nullable=False),
        sa.Column("supplier_bid_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("supplier_price", sa.Float(), nullable=False),
        sa.Column("markup_percent", sa.Float(), nullable=False),
        sa.Column("markup_amount", sa.Float(), nullable=False),
        sa.Column("subtotal", sa.Float(), nullable=False),
        sa.Column("vat_rate", sa.Float(), nullable=False),
        sa.Column("vat_amount", sa.Float(), nullable=False),
        sa.Column("total_price", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="GBP"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("highlights_json", sa.Text(), nullable=True),
        sa.Column("ai_markup_reasoning", sa.Text(), nullable=True),
        sa.Column("ai_acceptance_probability", sa.Float(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("acceptance_token", sa.String(), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["enquiry_id"], ["enquiries.enquiry_id"]),
        sa.ForeignKeyConstraint(["supplier_bid_id"], ["supplier_bids.bid_id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.customer_id"]),
        sa.PrimaryKeyConstraint("quote_id"),
        sa.UniqueConstraint("supplier_bid_id", name="uq_customer_quotes_supplier_bid"),
        sa.UniqueConstraint("acceptance_token", name="uq_customer_quotes_acceptance_token"),
    )
    op.create_index(
        "ix_customer_quotes_reference_number",
        "customer_quotes",
        ["reference_number"],
        unique=True,
    )
    op.create_index("ix_customer_quotes_enquiry_id", "customer_quotes", ["enquiry_id"])
    op.create_index("ix_customer_quotes_customer_id", "customer_quotes", ["customer_id"])
    op.create_index("ix_customer_quotes_status", "customer_quotes", ["status"])

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("reference_number", sa.String(), nullable=False),
        sa.Column("customer_quote_id", sa.String(), nullable=False),
        sa.Column("enquiry_id", sa.String(), nullable=False),
        sa.Column("supplier_id", sa.String(), nullable=False),
        sa.Column("vehicle_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_quote_id"], ["customer_quotes.quote_id"]),
        sa.ForeignKeyConstraint(["enquiry_id"], ["enquiries.enquiry_id"]),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.supplier_id"]),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.vehicle_id"]),
        sa.PrimaryKeyConstraint("booking_id"),
        sa.UniqueConstraint("customer_quote_id", name="uq_bookings_customer_quote"),
    )
    op.create_index("ix_bookings_reference_number", "bookings", ["reference_number"], unique=True)
    op.create_index("ix_bookings_enquiry_id", "bookings", ["enquiry_id"])
    op.create_index("ix_bookings_supplier_id", "bookings", ["supplier_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])

    op.create_table(
        "booking_status_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=False),
        sa.Column("note", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.booking_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_booking_status_history_booking_id",
        "booking_status_history",
        ["booking_id"],
    )

    op.create_table(
        "sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("prefix", sa.String(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("prefix", "year", name="uq_sequences_prefix_year"),
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "decision_log",
        sa.Column("log_id", sa.Integer(), nullable=False),
        sa.Column("decision_type", sa.String(), nullable=False),
        sa.Column("pipeline_run_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("prompt_json", sa.Text(), nullable=False),
        sa.Column("raw_response", sa.Text(), nullable=True),
        sa.Column("parsed_output_json", sa.Text(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("action_taken", sa.String(), nullable=False),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("completion_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("latency_ms", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("enquiry_id", sa.String(), nullable=True),
        sa.Column("customer_quote_id", sa.String(), nullable=True),
        sa.Column("booking_id", sa.String(), nullable=True),
        sa.Column("overrides_log_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["overrides_log_id"], ["decision_log.log_id"]),
        sa.PrimaryKeyConstraint("log_id"),
    )
    op.create_index("ix_decision_log_action_taken", "decision_log", ["action_taken"])
    op.create_index("ix_decision_log_enquiry_id", "decision_log", ["enquiry_id"])
    op.create_index(
        "idx_decision_log_type_time",
        "decision_log",
        ["decision_type", "created_at"],
    )
    op.create_index("idx_decision_log_run", "decision_log", ["pipeline_run_id"])

    op.create_table(
        "cost_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("decision_type", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False),
        sa.Column("completion_tokens", sa.Integer(), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False),
        sa.Column("decision_log_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["decision_log_id"], ["decision_log.log_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("decision_log_id", name="uq_cost_records_decision_log"),
    )
    op.create_index("ix_cost_records_decision_type", "cost_records", ["decision_type"])
    op.create_index("idx_cost_records_day_provider", "cost_records", ["day", "provider"])

    op.create_table(
        "human_review_tasks",
        sa.Column("review_id", sa.String(), nullable=False),
        sa.Column("decision_type", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("enquiry_id", sa.String(), nullable=True),
        sa.Column("decision_log_id", sa.Integer(), nullable=True),
        sa.Column("blocking", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("context_json", sa.Text(), nullable=False),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["decision_log_id"], ["decision_log.log_id"]),
        sa.PrimaryKeyConstraint("review_id"),
    )
    op.create_index("ix_human_review_tasks_enquiry_id", "human_review_tasks", ["enquiry_id"])
    op.create_index(
        "idx_human_review_tasks_status_time",
        "human_review_tasks",
        ["status", "created_at"],
    )

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("dedupe_key", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("job_id"),
        sa.UniqueConstraint("dedupe_key", name="uq_jobs_dedupe_key"),
    )
    op.create_index("ix_jobs_name", "jobs", ["name"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_worker_id", "jobs", ["worker_id"])
    op.create_index("idx_jobs_queue", "jobs", ["category", "status", "run_after"])

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"])
    op.create_index("idx_job_events_job_time", "job_events", ["job_id", "created_at"])


def downgrade() -> None:
    for table in (
        "job_events",
        "jobs",
        "human_review_tasks",
        "cost_records",
        "decision_log",
        "app_settings",
        "sequences",
        "booking_status_history",
        "bookings",
        "customer_quotes",
        "supplier_bids",
        "bid_invitations",
        "enquiries",
        "inbound_messages",
        "vehicles",
        "suppliers",
        "customers",
    ):
        op.drop_table(table)
