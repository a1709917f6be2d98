"""Base adapter interface for destination platforms."""

import base64
import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import requests
from dateutil import parser as date_parser

from ..credentials import Credentials
from ..errors import (
    AdapterError,
    AuthExpiredError,
    PermanentRejectError,
    TransientError,
)
from ..models.migration import SyncTarget
from ..models.record import MediaDescriptor, SourceRecord, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class PublishMode(str, Enum):
    """How a platform makes content live."""
    SINGLE_PHASE = "single_phase"  # Upload is final
    TWO_PHASE = "two_phase"  # Create container, then publish it


@dataclass(frozen=True)
class AdapterRef:
    """Platform-assigned reference returned by an upload."""
    id: str
    url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> Dict[str, Any]:
        data = dict(self.extra)
        if self.url:
            data["url"] = self.url
        return data


class PlatformAdapter(ABC):
    """
    Base class for platform adapters.

    Adapters translate one media upload into the platform's REST calls and
    raise ``TransientError``, ``AuthExpiredError`` or ``PermanentRejectError``
    on failure. They hold no progress state: resumption is driven entirely by
    the ledger, which stores the ``AdapterRef.id`` of a created container.
    """

    platform = ""
    publish_mode = PublishMode.SINGLE_PHASE
    can_verify = False  # Whether find_existing can detect an already-applied upload
    recreate_is_safe = False  # Whether repeating an interrupted upload leaves nothing visible twice
    can_verify_publish = False  # Whether find_published can detect an already-live container
    supported_mime_prefixes: Tuple[str, ...] = ("image/",)

    def __init__(
        self,
        target: Optional[SyncTarget] = None,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Initialize the adapter.

        Args:
            target: Target configuration (fields, caption field, options)
            session: Custom requests session
            timeout: Timeout in seconds applied to every call
        """
        self.target = target or SyncTarget(platform=self.platform)
        self.options = self.target.options
        self.timeout = timeout
        self._session = session or requests.Session()

    @property
    def is_two_phase(self) -> bool:
        return self.publish_mode == PublishMode.TWO_PHASE

    @abstractmethod
    def upload_media(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
    ) -> AdapterRef:
        """
        Upload one piece of media.

        For two-phase platforms this creates the container and nothing is
        live yet; for single-phase platforms the upload is final.

        Returns:
            AdapterRef identifying the upload or container
        """

    def finalize(self, ref: AdapterRef, credentials: Credentials) -> str:
        """
        Make an uploaded container live and return the published id.

        Single-phase platforms have nothing to do and return the ref id.
        """
        return ref.id

    def find_existing(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
    ) -> Optional[AdapterRef]:
        """
        Look for an upload that was applied but never recorded.

        Only called when ``can_verify`` is True.
        """
        raise NotImplementedError(f"{self.platform} cannot verify prior uploads")

    def find_published(self, ref: AdapterRef, credentials: Credentials) -> Optional[str]:
        """
        Return the published id if the container is already live, else None.

        Called before every ``finalize`` when ``can_verify_publish`` is True,
        so a publish that landed but was never recorded is not repeated.
        """
        raise NotImplementedError(f"{self.platform} cannot verify prior publishes")

    def caption_for(self, record: SourceRecord) -> str:
        """Caption text taken from the target's caption field."""
        if not self.target.caption_field:
            return ""
        value = record.get_field(self.target.caption_field, "")
        return str(value) if value is not None else ""

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs) -> Any:
        """Perform a request and return the decoded JSON body, raising the taxonomy on failure."""
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransientError(f"Request timed out after {self.timeout}s", platform=self.platform) from e
        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"Connection failed: {e}", platform=self.platform) from e

        if 200 <= response.status_code < 300:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise TransientError(
                    "Response body is not JSON",
                    platform=self.platform,
                    status_code=response.status_code,
                ) from e

        raise self.classify_error(response)

    def classify_error(self, response: requests.Response) -> AdapterError:
        """Map a non-2xx response onto the error taxonomy."""
        payload = _safe_json(response)
        status = response.status_code
        message = self._error_message(payload) or response.reason or "request failed"

        if status == 429 or status >= 500 or self._is_rate_limited(status, payload):
            return TransientError(
                message,
                retry_after=self._retry_after(response, payload),
                platform=self.platform,
                status_code=status,
                payload=payload,
            )

        if self._is_auth_expired(status, payload):
            return AuthExpiredError(message, platform=self.platform, status_code=status, payload=payload)

        return PermanentRejectError(message, platform=self.platform, status_code=status, payload=payload)

    def _is_auth_expired(self, status: int, payload: Any) -> bool:
        return status == 401

    def _is_rate_limited(self, status: int, payload: Any) -> bool:
        return False

    def _error_message(self, payload: Any) -> Optional[str]:
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                return error.get("message") or error.get("type")
            if isinstance(error, str):
                return error
            return payload.get("message")
        if isinstance(payload, str):
            return payload[:500]
        return None

    def _retry_after(self, response: requests.Response, payload: Any) -> Optional[float]:
        """Seconds to wait according to the server, if it said."""
        return parse_retry_after(response.headers.get("Retry-After"))

    # ------------------------------------------------------------------
    # Media helpers
    # ------------------------------------------------------------------

    def _check_media(self, descriptor: MediaDescriptor) -> str:
        """Return the media type, rejecting ones the platform does not accept."""
        mime = descriptor.mime_hint or mimetypes.guess_type(descriptor.resolved_filename)[0]
        if mime and not mime.startswith(self.supported_mime_prefixes):
            raise PermanentRejectError(
                f"Unsupported media type {mime} for {descriptor.resolved_filename}",
                platform=self.platform,
            )
        return mime or "image/jpeg"

    def _read_local(self, descriptor: MediaDescriptor) -> bytes:
        try:
            with open(descriptor.local_path, "rb") as f:
                return f.read()
        except OSError as e:
            raise PermanentRejectError(
                f"Cannot read local media {descriptor.local_path}: {e}",
                platform=self.platform,
            ) from e

    def _read_local_b64(self, descriptor: MediaDescriptor) -> str:
        return base64.b64encode(self._read_local(descriptor)).decode()


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when: datetime = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if when.tzinfo is None:
        return None
    return max(0.0, (when - utc_now()).total_seconds())


def _safe_json(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None
