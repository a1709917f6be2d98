"""Source backed by a local JSON export of records."""

import json
import logging
from typing import Any, Dict, List, Optional

from ..errors import CursorLost
from ..models.migration import SourceConfig
from ..models.record import SourcePage, SourceRecord
from .base import BaseSource

logger = logging.getLogger(__name__)


class JSONFileSource(BaseSource):
    """
    Pages through a JSON file exported from Airtable.

    The file holds either a list of ``{"id": ..., "fields": {...}}`` objects
    or an object with such a list under ``records``. The cursor is the offset
    of the next record as a string.
    """

    name = "json_file"

    def __init__(self, config: SourceConfig):
        super().__init__(config)
        if not config.file_path:
            raise ValueError("JSON source requires file_path")
        self._records: Optional[List[SourceRecord]] = None

    def _load(self) -> List[SourceRecord]:
        if self._records is None:
            with open(self.config.file_path) as f:
                data = json.load(f)
            items: List[Dict[str, Any]] = data.get("records", []) if isinstance(data, dict) else data
            self._records = [
                self.create_record(item["id"], item.get("fields", {}))
                for item in items
            ]
            logger.info(f"Loaded {len(self._records)} records from {self.config.file_path}")
        return self._records

    def list(self, cursor: Optional[str] = None, page_size: int = 100) -> SourcePage:
        records = self._load()
        try:
            start = int(cursor) if cursor else 0
        except ValueError as e:
            raise CursorLost(f"Cursor {cursor!r} is not a record offset") from e
        if start > len(records):
            raise CursorLost(f"Cursor {cursor!r} is past the end of {self.config.file_path}")

        end = start + page_size
        next_cursor = str(end) if end < len(records) else None
        return SourcePage(records=records[start:end], next_cursor=next_cursor)
