"""SQLAlchemy table definitions for the durable ledger (SQLite or PostgreSQL)."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

# One row per migration run: pause flag, cursor and aggregate counts.
migration_runs_table = Table(
    "migration_runs",
    metadata,
    Column("name", String, primary_key=True),
    Column("status", String(32), nullable=False),
    Column("paused", Boolean, nullable=False, default=False),
    Column("stop_requested", Boolean, nullable=False, default=False),
    Column("cursor", Text, nullable=True),
    Column("pages_completed", Integer, nullable=False, default=0),
    Column("totals", Text, nullable=False),  # JSON document
    Column("last_error", Text, nullable=True),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# One row per (run, record, platform, field).
ledger_entries_table = Table(
    "ledger_entries",
    metadata,
    Column("run_name", String, primary_key=True),
    Column("record_id", String, primary_key=True),
    Column("platform", String(32), primary_key=True),
    Column("target_field", String, primary_key=True),
    Column("state", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text, nullable=True),
    Column("error_kind", String(32), nullable=True),
    Column("error_payload", Text, nullable=True),  # JSON document
    Column("external_ref", String, nullable=True),
    Column("published_id", String, nullable=True),
    Column("metadata", Text, nullable=True),  # JSON document
    Column("next_eligible_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# Last recorded limiter budget per (run, platform).
rate_budgets_table = Table(
    "rate_budgets",
    metadata,
    Column("run_name", String, primary_key=True),
    Column("platform", String(32), primary_key=True),
    Column("capacity", Integer, nullable=False),
    Column("refill_window", Float, nullable=False),
    Column("consumed_in_window", Integer, nullable=False, default=0),
    Column("window_started_at", Float, nullable=False, default=0.0),
    Column("blocked_until", Float, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

Index("idx_ledger_entries_state", ledger_entries_table.c.run_name, ledger_entries_table.c.state)
