"""Record models for source data and the media attached to it."""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are assumed UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class MediaDescriptor:
    """
    A piece of media attached to a source record.

    Exactly one of ``source_url`` and ``local_path`` is set. ``target_field``
    names the destination field the media is published into and is part of
    the ledger key, so it must be unique per record.
    """
    target_field: str
    source_url: Optional[str] = None
    local_path: Optional[str] = None
    mime_hint: Optional[str] = None
    filename: Optional[str] = None
    source_field: Optional[str] = None

    def __post_init__(self):
        if bool(self.source_url) == bool(self.local_path):
            raise ValueError(
                f"Media for '{self.target_field}' needs exactly one of source_url or local_path"
            )

    @property
    def is_remote(self) -> bool:
        return bool(self.source_url)

    @property
    def resolved_filename(self) -> str:
        """Filename to present to destination platforms."""
        if self.filename:
            return self.filename
        if self.local_path:
            return os.path.basename(self.local_path)
        name = os.path.basename(unquote(urlparse(self.source_url).path))
        return name or "image.jpg"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "target_field": self.target_field,
            "source_url": self.source_url,
            "local_path": self.local_path,
            "mime_hint": self.mime_hint,
            "filename": self.filename,
            "source_field": self.source_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaDescriptor":
        """Create from dictionary representation."""
        return cls(
            target_field=data["target_field"],
            source_url=data.get("source_url"),
            local_path=data.get("local_path"),
            mime_hint=data.get("mime_hint"),
            filename=data.get("filename"),
            source_field=data.get("source_field"),
        )


@dataclass(frozen=True)
class SourceRecord:
    """A record fetched from the system of record. Never mutated by the engine."""
    id: str
    fields: Dict[str, Any]
    media_refs: Tuple[MediaDescriptor, ...] = ()
    source: str = "airtable"
    fetched_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "fields": self.fields,
            "media_refs": [m.to_dict() for m in self.media_refs],
            "source": self.source,
            "fetched_at": self.fetched_at.isoformat(),
        }

    def get_field(self, path: str, default: Any = None) -> Any:
        """Get a field value by dot-notation path (e.g., 'Author.name')."""
        parts = path.split(".")
        value: Any = self.fields
        for part in parts:
            if isinstance(value, dict):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit():
                idx = int(part)
                value = value[idx] if idx < len(value) else None
            else:
                return default
            if value is None:
                return default
        return value

    def media_for(self, target_fields: Optional[List[str]] = None) -> List[MediaDescriptor]:
        """Media descriptors in listed order, optionally limited to some target fields."""
        if target_fields is None:
            return list(self.media_refs)
        return [m for m in self.media_refs if m.target_field in target_fields]


@dataclass
class SourcePage:
    """One page of a paginated source listing."""
    records: List[SourceRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None
