"""Data models for the syndication engine."""

from .record import (
    MediaDescriptor,
    SourceRecord,
    SourcePage,
    utc_now,
    ensure_utc,
)
from .migration import (
    Platform,
    JobState,
    RunStatus,
    LedgerKey,
    LedgerEntry,
    PublishJob,
    RunTotals,
    MigrationRun,
    RateBudget,
    SyncTarget,
    SourceConfig,
    MigrationConfig,
)

__all__ = [
    "MediaDescriptor",
    "SourceRecord",
    "SourcePage",
    "utc_now",
    "ensure_utc",
    "Platform",
    "JobState",
    "RunStatus",
    "LedgerKey",
    "LedgerEntry",
    "PublishJob",
    "RunTotals",
    "MigrationRun",
    "RateBudget",
    "SyncTarget",
    "SourceConfig",
    "MigrationConfig",
]
