"""Migration execution models."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .record import MediaDescriptor, utc_now


class Platform(str, Enum):
    """Destination platforms the engine can publish to."""
    AIRTABLE = "airtable"
    DISCORD = "discord"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    IMGUR = "imgur"


class JobState(str, Enum):
    """Progress of a single (record, platform, field) publish."""
    PENDING = "pending"
    UPLOADING = "uploading"
    AWAITING_PUBLISH = "awaiting_publish"  # Two-phase only: container created, not yet live
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)


class RunStatus(str, Enum):
    """Status of a migration run."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class LedgerKey:
    """Identity of one publish unit. At most one ledger entry exists per key."""
    record_id: str
    platform: str
    target_field: str

    def __str__(self) -> str:
        return f"{self.record_id}/{self.platform}/{self.target_field}"


@dataclass
class LedgerEntry:
    """Durable progress of one key."""
    state: JobState = JobState.PENDING
    last_error: Optional[str] = None
    attempts: int = 0
    updated_at: datetime = field(default_factory=utc_now)
    external_ref: Optional[str] = None  # Platform-assigned id (e.g. media container id)
    published_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_payload: Optional[Dict[str, Any]] = None
    next_eligible_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "state": self.state.value,
            "last_error": self.last_error,
            "attempts": self.attempts,
            "updated_at": self.updated_at.isoformat(),
            "external_ref": self.external_ref,
            "published_id": self.published_id,
            "error_kind": self.error_kind,
            "error_payload": self.error_payload,
            "next_eligible_at": self.next_eligible_at.isoformat() if self.next_eligible_at else None,
            "metadata": self.metadata,
        }


@dataclass
class PublishJob:
    """One migration unit flowing through the orchestrator."""
    record_id: str
    platform: str
    descriptor: MediaDescriptor
    attempts: int = 0
    state: JobState = JobState.PENDING

    @property
    def key(self) -> LedgerKey:
        return LedgerKey(self.record_id, self.platform, self.descriptor.target_field)


@dataclass
class RunTotals:
    """Per-run outcome counters."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    resumed: int = 0
    deferred: int = 0  # Left for the next pass (unpublished container or unhosted media)

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "resumed": self.resumed,
            "deferred": self.deferred,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunTotals":
        return cls(**{k: int(v) for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class MigrationRun:
    """Process-wide state of a migration run, persisted after every transition."""
    name: str
    status: RunStatus = RunStatus.PENDING
    paused: bool = False
    stop_requested: bool = False
    cursor: Optional[str] = None
    pages_completed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)
    totals: RunTotals = field(default_factory=RunTotals)
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "status": self.status.value,
            "paused": self.paused,
            "stop_requested": self.stop_requested,
            "cursor": self.cursor,
            "pages_completed": self.pages_completed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat(),
            "totals": self.totals.to_dict(),
            "last_error": self.last_error,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class RateBudget:
    """Fixed-window call budget for one platform."""
    capacity: int
    refill_window: float  # Seconds
    consumed_in_window: int = 0
    window_started_at: float = 0.0
    blocked_until: Optional[float] = None  # Set from server Retry-After hints

    @property
    def window_ends_at(self) -> float:
        return self.window_started_at + self.refill_window

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capacity": self.capacity,
            "refill_window": self.refill_window,
            "consumed_in_window": self.consumed_in_window,
            "window_started_at": self.window_started_at,
            "blocked_until": self.blocked_until,
        }


@dataclass
class SyncTarget:
    """
    A destination platform and which media fields to publish there.

    ``options["source_platform"]`` names another target whose hosted copy of
    the media is published here instead of the source URL, e.g. an Airtable
    link field filled with the Imgur link of the same attachment.
    """
    platform: str
    fields: Optional[List[str]] = None  # None means every media field of the record
    caption_field: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def source_platform(self) -> Optional[str]:
        value = self.options.get("source_platform")
        return Platform(value.lower()).value if value else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "fields": self.fields,
            "caption_field": self.caption_field,
            "options": self.options,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncTarget":
        platform = Platform(data["platform"].lower()).value
        return cls(
            platform=platform,
            fields=data.get("fields"),
            caption_field=data.get("caption_field"),
            options=data.get("options", {}),
        )


@dataclass
class SourceConfig:
    """Where source records come from."""
    type: str = "airtable"  # airtable, json_file
    base_id: Optional[str] = None
    table: Optional[str] = None
    view: Optional[str] = None
    filter_formula: Optional[str] = None
    media_fields: Dict[str, str] = field(default_factory=dict)  # Source field -> target field
    file_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "base_id": self.base_id,
            "table": self.table,
            "view": self.view,
            "filter_formula": self.filter_formula,
            "media_fields": self.media_fields,
            "file_path": self.file_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        return cls(
            type=data.get("type", "airtable"),
            base_id=data.get("base_id"),
            table=data.get("table"),
            view=data.get("view"),
            filter_formula=data.get("filter_formula"),
            media_fields=data.get("media_fields", {}),
            file_path=data.get("file_path"),
        )


@dataclass
class MigrationConfig:
    """Configuration for a migration run."""
    name: str
    database_url: str = "sqlite:///./data/syndication.db"
    source: SourceConfig = field(default_factory=SourceConfig)
    targets: List[SyncTarget] = field(default_factory=list)

    # Execution options
    batch_size: int = 100
    parallel_workers: int = 4
    max_attempts: int = 5
    max_auth_refreshes: int = 2
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    request_timeout: float = 30.0
    pause_poll_interval: float = 5.0

    # Platform -> {"capacity": int, "window": seconds}
    rate_limits: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "database_url": self.database_url,
            "source": self.source.to_dict(),
            "targets": [t.to_dict() for t in self.targets],
            "batch_size": self.batch_size,
            "parallel_workers": self.parallel_workers,
            "max_attempts": self.max_attempts,
            "max_auth_refreshes": self.max_auth_refreshes,
            "backoff_base": self.backoff_base,
            "backoff_cap": self.backoff_cap,
            "request_timeout": self.request_timeout,
            "pause_poll_interval": self.pause_poll_interval,
            "rate_limits": self.rate_limits,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        if not data.get("name"):
            raise ValueError("Migration config requires a 'name'")

        return cls(
            name=data["name"],
            database_url=data.get("database_url", "sqlite:///./data/syndication.db"),
            source=SourceConfig.from_dict(data.get("source", {})),
            targets=[SyncTarget.from_dict(t) for t in data.get("targets", [])],
            batch_size=data.get("batch_size", 100),
            parallel_workers=data.get("parallel_workers", 4),
            max_attempts=data.get("max_attempts", 5),
            max_auth_refreshes=data.get("max_auth_refreshes", 2),
            backoff_base=data.get("backoff_base", 1.0),
            backoff_cap=data.get("backoff_cap", 60.0),
            request_timeout=data.get("request_timeout", 30.0),
            pause_poll_interval=data.get("pause_poll_interval", 5.0),
            rate_limits=data.get("rate_limits", {}),
        )

    @classmethod
    def from_json_file(cls, path: str) -> "MigrationConfig":
        """Load configuration from a JSON file."""
        with open(path) as f:
            return cls.from_dict(json.load(f))
