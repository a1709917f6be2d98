"""Durable migration ledger.

The ledger is the single source of truth for "has this been published". It
stores one row per ``(record_id, platform, target_field)`` key plus one row
per migration run (pause flag, cursor, totals), and the last rate budgets a
pass recorded. Every ``put`` is its own
transaction, so a crash leaves either the old or the new entry, never a mix.
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import and_, create_engine, func, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DatabaseError, OperationalError
from sqlalchemy.pool import StaticPool

from ..errors import LedgerCorrupt
from ..models.migration import (
    JobState,
    LedgerEntry,
    LedgerKey,
    MigrationRun,
    RateBudget,
    RunStatus,
    RunTotals,
)
from ..models.record import ensure_utc, utc_now
from .tables import ledger_entries_table, metadata, migration_runs_table, rate_budgets_table

logger = logging.getLogger(__name__)


def create_ledger_engine(database_url: str) -> Engine:
    """Create an engine suitable for concurrent use by orchestrator workers."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    path = database_url.split("sqlite:///", 1)[-1]
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    return create_engine(database_url, connect_args={"timeout": 30, "check_same_thread": False})


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(value: Optional[str], what: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError) as e:
        raise LedgerCorrupt(f"Unparseable {what} in ledger: {value!r}") from e


class MigrationLedger:
    """
    Ledger for a single named migration run.

    Several ledgers (one per run name) can share a database. Run flags that an
    operator controls (``paused``, ``stop_requested``) are only written by the
    dedicated methods, so a concurrent ``save_run`` from the orchestrator never
    overwrites a pause issued from another process.
    """

    def __init__(self, database_url: str, run_name: str, engine: Optional[Engine] = None):
        """
        Initialize the ledger.

        Args:
            database_url: SQLAlchemy URL of the backing store
            run_name: Name of the migration run this ledger tracks
            engine: Pre-built engine (shared between ledgers or tests)
        """
        self.run_name = run_name
        self.database_url = database_url
        self._engine = engine or create_ledger_engine(database_url)
        self._write_lock = threading.RLock()
        self._initialized = False

    @contextmanager
    def _connect(self, write: bool = False) -> Iterator[Connection]:
        """Open a transaction, translating unreadable stores into LedgerCorrupt."""
        self.initialize()
        try:
            if write:
                with self._write_lock, self._engine.begin() as conn:
                    yield conn
            else:
                with self._engine.connect() as conn:
                    yield conn
        except OperationalError:
            raise
        except DatabaseError as e:
            raise LedgerCorrupt(f"Ledger store is unreadable: {e}") from e

    def initialize(self) -> None:
        """Create tables if they do not exist."""
        if self._initialized:
            return
        with self._write_lock:
            if self._initialized:
                return
            try:
                metadata.create_all(self._engine)
            except OperationalError:
                raise
            except DatabaseError as e:
                raise LedgerCorrupt(f"Ledger store is unreadable: {e}") from e
            self._initialized = True

    def dispose(self) -> None:
        """Release pooled connections."""
        self._engine.dispose()

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _key_clause(self, key: LedgerKey):
        t = ledger_entries_table
        return and_(
            t.c.run_name == self.run_name,
            t.c.record_id == key.record_id,
            t.c.platform == key.platform,
            t.c.target_field == key.target_field,
        )

    def get(self, key: LedgerKey) -> Optional[LedgerEntry]:
        """Get the entry for ``key``, or None if the key was never touched."""
        with self._connect() as conn:
            row = conn.execute(
                select(ledger_entries_table).where(self._key_clause(key))
            ).mappings().first()
        return self._row_to_entry(row) if row else None

    def put(self, key: LedgerKey, entry: LedgerEntry) -> None:
        """Atomically create or overwrite the entry for ``key``."""
        if entry.state == JobState.AWAITING_PUBLISH and not entry.external_ref:
            raise ValueError(f"{key}: awaiting_publish requires an external_ref")

        entry.updated_at = utc_now()
        values = {
            "state": entry.state.value,
            "attempts": entry.attempts,
            "last_error": entry.last_error,
            "error_kind": entry.error_kind,
            "error_payload": _dumps(entry.error_payload),
            "external_ref": entry.external_ref,
            "published_id": entry.published_id,
            "metadata": _dumps(entry.metadata or {}),
            "next_eligible_at": entry.next_eligible_at,
            "updated_at": entry.updated_at,
        }

        with self._connect(write=True) as conn:
            result = conn.execute(
                update(ledger_entries_table).where(self._key_clause(key)).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(
                    ledger_entries_table.insert().values(
                        run_name=self.run_name,
                        record_id=key.record_id,
                        platform=key.platform,
                        target_field=key.target_field,
                        **values,
                    )
                )
        logger.debug(f"Ledger {key} -> {entry.state.value}")

    def list_by_state(self, state: JobState, platform: Optional[str] = None) -> List[LedgerKey]:
        """Keys currently in ``state``, optionally for one platform."""
        t = ledger_entries_table
        query = select(t.c.record_id, t.c.platform, t.c.target_field).where(
            t.c.run_name == self.run_name, t.c.state == state.value
        )
        if platform:
            query = query.where(t.c.platform == platform)
        query = query.order_by(t.c.record_id, t.c.platform, t.c.target_field)

        with self._connect() as conn:
            rows = conn.execute(query).all()
        return [LedgerKey(r.record_id, r.platform, r.target_field) for r in rows]

    def entries(self, platform: Optional[str] = None) -> List[Tuple[LedgerKey, LedgerEntry]]:
        """All entries of this run."""
        t = ledger_entries_table
        query = select(t).where(t.c.run_name == self.run_name)
        if platform:
            query = query.where(t.c.platform == platform)
        with self._connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            (LedgerKey(r["record_id"], r["platform"], r["target_field"]), self._row_to_entry(r))
            for r in rows
        ]

    def counts_by_state(self) -> Dict[str, Dict[str, int]]:
        """Platform -> state -> number of keys."""
        t = ledger_entries_table
        query = (
            select(t.c.platform, t.c.state, func.count())
            .where(t.c.run_name == self.run_name)
            .group_by(t.c.platform, t.c.state)
        )
        counts: Dict[str, Dict[str, int]] = {}
        with self._connect() as conn:
            for platform, state, count in conn.execute(query).all():
                try:
                    JobState(state)
                except ValueError as e:
                    raise LedgerCorrupt(f"Unknown ledger state {state!r} for {platform}") from e
                counts.setdefault(platform, {})[state] = count
        return counts

    def recent_errors(self, limit: int = 10) -> List[Tuple[LedgerKey, LedgerEntry]]:
        """Most recently updated entries that carry an error message."""
        t = ledger_entries_table
        query = (
            select(t)
            .where(t.c.run_name == self.run_name, t.c.last_error.is_not(None))
            .order_by(t.c.updated_at.desc())
            .limit(limit)
        )
        with self._connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            (LedgerKey(r["record_id"], r["platform"], r["target_field"]), self._row_to_entry(r))
            for r in rows
        ]

    def requeue(
        self,
        state: JobState = JobState.FAILED,
        platform: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> int:
        """
        Make matching entries eligible for the next pass.

        Failed and pending entries go back to PENDING and upload from scratch.
        Entries stuck in UPLOADING or AWAITING_PUBLISH keep their state and
        container reference, so the next pass verifies the interrupted upload
        or publishes the existing container instead of creating another one.
        Attempts, errors and backoff are cleared either way.

        Args:
            state: Only entries in this state are requeued
            platform: Optional platform filter
            record_id: Optional record filter

        Returns:
            Number of entries requeued
        """
        if state == JobState.DONE:
            raise ValueError("Done entries cannot be requeued")

        t = ledger_entries_table
        conditions = [t.c.run_name == self.run_name, t.c.state == state.value]
        if platform:
            conditions.append(t.c.platform == platform)
        if record_id:
            conditions.append(t.c.record_id == record_id)

        values: Dict[str, Any] = {
            "attempts": 0,
            "next_eligible_at": None,
            "last_error": None,
            "error_kind": None,
            "error_payload": None,
            "updated_at": utc_now(),
        }
        if state in (JobState.FAILED, JobState.PENDING):
            values.update(state=JobState.PENDING.value, external_ref=None)

        with self._connect(write=True) as conn:
            result = conn.execute(update(t).where(and_(*conditions)).values(**values))
        logger.info(f"Requeued {result.rowcount} {state.value} entries in run {self.run_name}")
        return result.rowcount

    def _row_to_entry(self, row: Any) -> LedgerEntry:
        try:
            state = JobState(row["state"])
        except ValueError as e:
            raise LedgerCorrupt(f"Unknown ledger state {row['state']!r} for record {row['record_id']}") from e

        if state == JobState.AWAITING_PUBLISH and not row["external_ref"]:
            raise LedgerCorrupt(
                f"Record {row['record_id']} on {row['platform']} is awaiting publish without a container reference"
            )

        return LedgerEntry(
            state=state,
            last_error=row["last_error"],
            attempts=int(row["attempts"] or 0),
            updated_at=ensure_utc(row["updated_at"]),
            external_ref=row["external_ref"],
            published_id=row["published_id"],
            error_kind=row["error_kind"],
            error_payload=_loads(row["error_payload"], "error payload"),
            next_eligible_at=ensure_utc(row["next_eligible_at"]) if row["next_eligible_at"] else None,
            metadata=_loads(row["metadata"], "entry metadata") or {},
        )

    # ------------------------------------------------------------------
    # Rate budgets
    # ------------------------------------------------------------------

    def save_rate_budgets(self, budgets: Dict[str, RateBudget]) -> None:
        """Record the running pass's limiter budgets for status readers in other processes."""
        t = rate_budgets_table
        now = utc_now()
        with self._connect(write=True) as conn:
            for platform, budget in budgets.items():
                values = {**budget.to_dict(), "updated_at": now}
                result = conn.execute(
                    update(t)
                    .where(t.c.run_name == self.run_name, t.c.platform == platform)
                    .values(**values)
                )
                if result.rowcount == 0:
                    conn.execute(t.insert().values(run_name=self.run_name, platform=platform, **values))

    def load_rate_budgets(self) -> Dict[str, RateBudget]:
        """Budgets as last recorded by a pass of this run."""
        t = rate_budgets_table
        with self._connect() as conn:
            rows = conn.execute(select(t).where(t.c.run_name == self.run_name)).mappings().all()
        return {
            row["platform"]: RateBudget(
                capacity=int(row["capacity"]),
                refill_window=float(row["refill_window"]),
                consumed_in_window=int(row["consumed_in_window"] or 0),
                window_started_at=float(row["window_started_at"] or 0.0),
                blocked_until=row["blocked_until"],
            )
            for row in rows
        }

    # ------------------------------------------------------------------
    # Run state
    # ------------------------------------------------------------------

    def load_run(self) -> Optional[MigrationRun]:
        """Load the persisted run, or None if it has never started."""
        with self._connect() as conn:
            row = conn.execute(
                select(migration_runs_table).where(migration_runs_table.c.name == self.run_name)
            ).mappings().first()
        return self._row_to_run(row) if row else None

    def start_run(self) -> MigrationRun:
        """Load the run, creating it if it does not exist yet."""
        run = self.load_run()
        if run is None:
            run = MigrationRun(name=self.run_name)
            self.save_run(run)
        return run

    def save_run(self, run: MigrationRun) -> None:
        """Persist run progress. Operator-owned flags are only written on creation."""
        run.updated_at = utc_now()
        values = {
            "status": run.status.value,
            "cursor": run.cursor,
            "pages_completed": run.pages_completed,
            "totals": json.dumps(run.totals.to_dict()),
            "last_error": run.last_error,
            "started_at": run.started_at,
            "completed_at": run.completed_at,
            "updated_at": run.updated_at,
        }
        t = migration_runs_table
        with self._connect(write=True) as conn:
            result = conn.execute(update(t).where(t.c.name == self.run_name).values(**values))
            if result.rowcount == 0:
                conn.execute(
                    t.insert().values(
                        name=self.run_name,
                        paused=run.paused,
                        stop_requested=run.stop_requested,
                        **values,
                    )
                )

    def _set_flag(self, **flags: bool) -> None:
        t = migration_runs_table
        with self._connect(write=True) as conn:
            result = conn.execute(
                update(t).where(t.c.name == self.run_name).values(updated_at=utc_now(), **flags)
            )
            if result.rowcount == 0:
                run = MigrationRun(name=self.run_name)
                conn.execute(
                    t.insert().values(
                        name=self.run_name,
                        status=run.status.value,
                        paused=flags.get("paused", False),
                        stop_requested=flags.get("stop_requested", False),
                        cursor=None,
                        pages_completed=0,
                        totals=json.dumps(run.totals.to_dict()),
                        updated_at=run.updated_at,
                    )
                )

    def mark_paused(self, paused: bool) -> None:
        """Set the durable pause flag. Takes effect before the next job starts."""
        self._set_flag(paused=paused)
        logger.info(f"Run {self.run_name} {'paused' if paused else 'resumed'}")

    def is_paused(self) -> bool:
        """Read the pause flag from the store (never from memory)."""
        with self._connect() as conn:
            value = conn.execute(
                select(migration_runs_table.c.paused).where(migration_runs_table.c.name == self.run_name)
            ).scalar()
        return bool(value)

    def request_stop(self, stop: bool = True) -> None:
        """Ask the active pass to halt after its in-flight jobs."""
        self._set_flag(stop_requested=stop)

    def is_stop_requested(self) -> bool:
        with self._connect() as conn:
            value = conn.execute(
                select(migration_runs_table.c.stop_requested).where(
                    migration_runs_table.c.name == self.run_name
                )
            ).scalar()
        return bool(value)

    def reset_cursor(self) -> None:
        """Forget the pagination cursor so the next pass starts from the first page."""
        t = migration_runs_table
        with self._connect(write=True) as conn:
            conn.execute(
                update(t)
                .where(t.c.name == self.run_name)
                .values(cursor=None, pages_completed=0, updated_at=utc_now())
            )
        logger.warning(f"Cursor reset for run {self.run_name}")

    def _row_to_run(self, row: Any) -> MigrationRun:
        try:
            status = RunStatus(row["status"])
        except ValueError as e:
            raise LedgerCorrupt(f"Unknown run status {row['status']!r} for run {row['name']}") from e

        totals = _loads(row["totals"], "run totals")
        if not isinstance(totals, dict):
            raise LedgerCorrupt(f"Run totals for {row['name']} are not a mapping")

        return MigrationRun(
            name=row["name"],
            status=status,
            paused=bool(row["paused"]),
            stop_requested=bool(row["stop_requested"]),
            cursor=row["cursor"],
            pages_completed=int(row["pages_completed"] or 0),
            started_at=ensure_utc(row["started_at"]) if row["started_at"] else None,
            completed_at=ensure_utc(row["completed_at"]) if row["completed_at"] else None,
            updated_at=ensure_utc(row["updated_at"]),
            totals=RunTotals.from_dict(totals),
            last_error=row["last_error"],
        )
