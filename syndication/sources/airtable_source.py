"""Airtable REST source of record."""

import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import CursorLost, SyndicationError
from ..models.migration import Platform, SourceConfig
from ..models.record import SourcePage
from ..services.rate_limiter import RateLimiter
from .base import BaseSource

logger = logging.getLogger(__name__)

API_URL = "https://api.airtable.com/v0"
MAX_PAGE_SIZE = 100
MAX_THROTTLE_RETRIES = 5
THROTTLE_BACKOFF = 30.0


class AirtableSource(BaseSource):
    """
    Lists records from an Airtable table, one page per call.

    Airtable offsets expire after a few minutes of inactivity. An expired
    offset cannot be replayed, so it surfaces as ``CursorLost`` and the
    operator decides whether to reset the cursor.
    """

    name = "airtable"

    def __init__(
        self,
        config: SourceConfig,
        api_key: Optional[str] = None,
        api_key_getter: Optional[Callable[[], str]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize the Airtable source.

        Args:
            config: Source configuration (base, table, view, filter, media fields)
            api_key: Personal access token
            api_key_getter: Called per request instead of a fixed api_key
            rate_limiter: Shared limiter; Airtable's budget covers reads and writes
            session: Custom requests session
            timeout: Timeout in seconds for each request
        """
        super().__init__(config)
        if not config.base_id or not config.table:
            raise ValueError("Airtable source requires base_id and table")
        if api_key is None and api_key_getter is None:
            raise ValueError("Airtable source requires an api_key or api_key_getter")

        self._api_key = api_key
        self._api_key_getter = api_key_getter
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session that retries server errors on reads."""
        session = requests.Session()
        retries = Retry(
            total=3,
            backoff_factor=1.0,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    @property
    def url(self) -> str:
        return f"{API_URL}/{self.config.base_id}/{quote(self.config.table, safe='')}"

    def _headers(self) -> Dict[str, str]:
        token = self._api_key_getter() if self._api_key_getter else self._api_key
        return {"Authorization": f"Bearer {token}"}

    def list(self, cursor: Optional[str] = None, page_size: int = 100) -> SourcePage:
        params: Dict[str, Any] = {"pageSize": min(page_size, MAX_PAGE_SIZE)}
        if cursor:
            params["offset"] = cursor
        if self.config.view:
            params["view"] = self.config.view
        if self.config.filter_formula:
            params["filterByFormula"] = self.config.filter_formula

        data = self._get(params)

        records = [
            self.create_record(item["id"], item.get("fields", {}))
            for item in data.get("records", [])
        ]
        next_cursor = data.get("offset")
        logger.debug(f"Fetched {len(records)} Airtable records (more: {next_cursor is not None})")
        return SourcePage(records=records, next_cursor=next_cursor)

    def _get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        for attempt in range(1, MAX_THROTTLE_RETRIES + 1):
            if self.rate_limiter:
                self.rate_limiter.wait_for(Platform.AIRTABLE.value)

            try:
                response = self._session.get(self.url, headers=self._headers(), params=params, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                raise SyndicationError(f"Airtable listing failed: {e}") from e

            if response.status_code == 422 and "offset" in params:
                error_type = _error_type(response)
                if error_type in ("LIST_RECORDS_ITERATOR_NOT_AVAILABLE", "INVALID_OFFSET_VALUE"):
                    raise CursorLost(
                        f"Airtable cursor {params['offset']!r} is no longer valid ({error_type})",
                        details={"cursor": params["offset"]},
                    )

            if response.status_code == 429 and self.rate_limiter:
                if attempt == MAX_THROTTLE_RETRIES:
                    break
                # Airtable asks clients to back off for 30 seconds after a 429.
                logger.warning(f"Airtable listing throttled (attempt {attempt}), backing off")
                self.rate_limiter.defer(Platform.AIRTABLE.value, self.rate_limiter.now() + THROTTLE_BACKOFF)
                continue

            if not response.ok:
                raise SyndicationError(
                    f"Airtable listing failed with HTTP {response.status_code}: {response.text[:500]}",
                    details={"status_code": response.status_code},
                )
            return response.json()

        raise SyndicationError(
            f"Airtable listing still throttled after {MAX_THROTTLE_RETRIES} attempts",
            details={"status_code": 429},
        )


def _error_type(response: requests.Response) -> Optional[str]:
    try:
        error = response.json().get("error")
    except ValueError:
        return None
    if isinstance(error, dict):
        return error.get("type")
    return error
