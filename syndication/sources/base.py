"""Base source-of-record interface."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models.migration import SourceConfig
from ..models.record import MediaDescriptor, SourcePage, SourceRecord

logger = logging.getLogger(__name__)


class BaseSource(ABC):
    """
    Base class for paginated record sources.

    Sources are read-only: the engine lists pages of records and never
    writes back through this interface. The cursor is opaque to the engine
    and is persisted verbatim on the migration run.
    """

    name = "source"

    def __init__(self, config: Optional[SourceConfig] = None):
        """
        Initialize the source.

        Args:
            config: Source configuration (media field mapping, filters)
        """
        self.config = config or SourceConfig(type=self.name)

    @abstractmethod
    def list(self, cursor: Optional[str] = None, page_size: int = 100) -> SourcePage:
        """
        Fetch one page of records.

        Args:
            cursor: Cursor returned with the previous page, or None for the first page
            page_size: Maximum records to return

        Returns:
            SourcePage whose next_cursor is None on the last page
        """

    def media_from_fields(self, fields: Dict[str, Any]) -> List[MediaDescriptor]:
        """
        Build media descriptors from the configured media fields.

        Attachment lists contribute their first attachment; plain strings are
        treated as URLs, or as local paths when they do not look like one.
        Fields with no usable value are skipped.
        """
        descriptors = []
        seen = set()
        for source_field, target_field in self.config.media_fields.items():
            if target_field in seen:
                logger.warning(f"Target field {target_field} is mapped twice; ignoring {source_field}")
                continue
            value = fields.get(source_field)
            descriptor = self._descriptor_from_value(value, source_field, target_field)
            if descriptor is not None:
                descriptors.append(descriptor)
                seen.add(target_field)
        return descriptors

    @staticmethod
    def _descriptor_from_value(
        value: Any,
        source_field: str,
        target_field: str,
    ) -> Optional[MediaDescriptor]:
        if isinstance(value, list):
            value = value[0] if value else None

        if isinstance(value, dict):
            url = value.get("url")
            if not url:
                return None
            return MediaDescriptor(
                target_field=target_field,
                source_url=url,
                mime_hint=value.get("type"),
                filename=value.get("filename"),
                source_field=source_field,
            )

        if isinstance(value, str) and value.strip():
            value = value.strip()
            if value.startswith(("http://", "https://")):
                return MediaDescriptor(target_field=target_field, source_url=value, source_field=source_field)
            return MediaDescriptor(target_field=target_field, local_path=value, source_field=source_field)

        if value not in (None, "", []):
            logger.warning(f"Ignoring unsupported media value in field {source_field}: {type(value).__name__}")
        return None

    def create_record(self, id: str, fields: Dict[str, Any]) -> SourceRecord:
        """Create a SourceRecord with its media descriptors."""
        return SourceRecord(
            id=str(id),
            fields=fields,
            media_refs=tuple(self.media_from_fields(fields)),
            source=self.name,
        )
