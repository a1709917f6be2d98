"""Read-only status reporting for a migration run."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models.migration import JobState, MigrationRun, RateBudget
from ..services.ledger import MigrationLedger
from ..services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ErrorSample:
    """A recent failure, for diagnosis."""
    key: str
    kind: Optional[str]
    message: str
    state: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind,
            "message": self.message,
            "state": self.state,
            "updated_at": self.updated_at,
        }


@dataclass
class StatusSummary:
    """Aggregate view of a run and its ledger."""
    run_name: str
    status: str
    paused: bool
    stop_requested: bool = False
    cursor: Optional[str] = None
    pages_completed: int = 0
    counts: Dict[str, Dict[str, int]] = field(default_factory=dict)
    totals: Dict[str, int] = field(default_factory=dict)
    recent_errors: List[ErrorSample] = field(default_factory=list)
    rate_budgets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def total_keys(self) -> int:
        return sum(sum(states.values()) for states in self.counts.values())

    def count(self, state: JobState, platform: Optional[str] = None) -> int:
        """Number of keys in ``state``, for one platform or across all of them."""
        platforms = [platform] if platform else list(self.counts)
        return sum(self.counts.get(p, {}).get(state.value, 0) for p in platforms)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_name": self.run_name,
            "status": self.status,
            "paused": self.paused,
            "stop_requested": self.stop_requested,
            "cursor": self.cursor,
            "pages_completed": self.pages_completed,
            "counts": self.counts,
            "total_keys": self.total_keys,
            "totals": self.totals,
            "recent_errors": [e.to_dict() for e in self.recent_errors],
            "rate_budgets": self.rate_budgets,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "last_error": self.last_error,
        }


class StatusReporter:
    """Builds status summaries from the ledger. Never writes."""

    def __init__(
        self,
        ledger: MigrationLedger,
        rate_limiter: Optional[RateLimiter] = None,
        error_sample_size: int = 10,
    ):
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.error_sample_size = error_sample_size

    def summary(self) -> StatusSummary:
        run = self.ledger.load_run() or MigrationRun(name=self.ledger.run_name)

        counts = self.ledger.counts_by_state()
        for states in counts.values():
            for state in JobState:
                states.setdefault(state.value, 0)

        errors = [
            ErrorSample(
                key=str(key),
                kind=entry.error_kind,
                message=entry.last_error or "",
                state=entry.state.value,
                updated_at=entry.updated_at.isoformat(),
            )
            for key, entry in self.ledger.recent_errors(self.error_sample_size)
        ]

        # A live limiter is only available inside the running pass; other
        # processes see the budgets it last recorded.
        if self.rate_limiter:
            budgets: Dict[str, RateBudget] = self.rate_limiter.snapshot()
        else:
            budgets = self.ledger.load_rate_budgets()

        return StatusSummary(
            run_name=run.name,
            status=run.status.value,
            paused=run.paused,
            stop_requested=run.stop_requested,
            cursor=run.cursor,
            pages_completed=run.pages_completed,
            counts=counts,
            totals=run.totals.to_dict(),
            recent_errors=errors,
            rate_budgets={p: b.to_dict() for p, b in budgets.items()},
            started_at=run.started_at.isoformat() if run.started_at else None,
            completed_at=run.completed_at.isoformat() if run.completed_at else None,
            last_error=run.last_error,
        )
