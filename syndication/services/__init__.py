"""Service layer for the syndication engine."""

from .control import MigrationControl
from .ledger import MigrationLedger, create_ledger_engine
from .rate_limiter import Proceed, RateLimiter, WaitUntil
from .reporter import ErrorSample, StatusReporter, StatusSummary

__all__ = [
    "MigrationControl",
    "MigrationLedger",
    "create_ledger_engine",
    "Proceed",
    "RateLimiter",
    "WaitUntil",
    "ErrorSample",
    "StatusReporter",
    "StatusSummary",
]
