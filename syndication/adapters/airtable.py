"""Airtable adapter: writes media into a field of the record."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..credentials import Credentials
from ..errors import PermanentRejectError
from ..models.migration import Platform
from ..models.record import MediaDescriptor, SourceRecord
from .base import AdapterRef, PlatformAdapter, PublishMode

logger = logging.getLogger(__name__)

API_URL = "https://api.airtable.com/v0"
CONTENT_URL = "https://content.airtable.com/v0"

# Airtable's upload endpoint accepts inline files up to 5 MB.
MAX_INLINE_BYTES = 5 * 1024 * 1024


class AirtableAdapter(PlatformAdapter):
    """
    Single-phase image-field upload.

    Hosted media is written as an attachment object referencing the URL (or
    as a plain URL string for fields listed in ``options["link_fields"]``).
    Local files are sent inline as base64 through the content upload API.
    The write is synchronous and final.

    Options:
        table: Airtable table name or id holding the records (required)
        link_fields: Target fields that hold a URL string instead of attachments
    """

    platform = Platform.AIRTABLE.value
    publish_mode = PublishMode.SINGLE_PHASE
    can_verify = True

    def _table(self) -> str:
        table = self.options.get("table")
        if not table:
            raise PermanentRejectError("Airtable target requires options.table", platform=self.platform)
        return table

    def _record_url(self, credentials: Credentials, record_id: str) -> str:
        return f"{API_URL}/{credentials.account_id}/{quote(self._table(), safe='')}/{record_id}"

    def _headers(self, credentials: Credentials) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials.token}",
            "Content-Type": "application/json",
        }

    def _is_link_field(self, field_name: str) -> bool:
        return field_name in self.options.get("link_fields", [])

    def upload_media(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
    ) -> AdapterRef:
        mime = self._check_media(descriptor)

        if descriptor.local_path:
            if self._is_link_field(descriptor.target_field):
                raise PermanentRejectError(
                    f"Link field {descriptor.target_field} needs a hosted URL, got a local file",
                    platform=self.platform,
                )
            return self._upload_inline(record, descriptor, credentials, mime)

        if self._is_link_field(descriptor.target_field):
            value: Any = descriptor.source_url
        else:
            value = [{"url": descriptor.source_url, "filename": descriptor.resolved_filename}]

        data = self._request(
            "PATCH",
            self._record_url(credentials, record.id),
            headers=self._headers(credentials),
            json={"fields": {descriptor.target_field: value}},
        )
        logger.info(f"Airtable record {record.id} updated field {descriptor.target_field}")
        return self._ref_from_fields(data.get("fields", {}), record.id, descriptor) or AdapterRef(id=record.id)

    def _upload_inline(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
        mime: str,
    ) -> AdapterRef:
        content = self._read_local(descriptor)
        if len(content) > MAX_INLINE_BYTES:
            raise PermanentRejectError(
                f"{descriptor.resolved_filename} is {len(content)} bytes, above Airtable's inline limit",
                platform=self.platform,
            )

        url = (
            f"{CONTENT_URL}/{credentials.account_id}/{record.id}/"
            f"{quote(descriptor.target_field, safe='')}/uploadAttachment"
        )
        data = self._request(
            "POST",
            url,
            headers=self._headers(credentials),
            json={
                "contentType": mime,
                "file": self._read_local_b64(descriptor),
                "filename": descriptor.resolved_filename,
            },
        )
        logger.info(f"Airtable record {record.id} received inline upload {descriptor.resolved_filename}")
        return self._ref_from_fields(data.get("fields", {}), record.id, descriptor) or AdapterRef(id=record.id)

    def find_existing(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
    ) -> Optional[AdapterRef]:
        data = self._request(
            "GET",
            self._record_url(credentials, record.id),
            headers=self._headers(credentials),
        )
        return self._ref_from_fields(data.get("fields", {}), record.id, descriptor)

    def _ref_from_fields(
        self,
        fields: Dict[str, Any],
        record_id: str,
        descriptor: MediaDescriptor,
    ) -> Optional[AdapterRef]:
        """Find the uploaded media in a record's fields."""
        value = fields.get(descriptor.target_field)
        if not value:
            return None

        if isinstance(value, str):
            if value == descriptor.source_url:
                return AdapterRef(id=record_id, url=value)
            return None

        attachments: List[Dict[str, Any]] = value if isinstance(value, list) else []
        for attachment in attachments:
            if attachment.get("filename") == descriptor.resolved_filename:
                return AdapterRef(
                    id=attachment.get("id") or record_id,
                    url=attachment.get("url"),
                    extra={"record_id": record_id},
                )
        return None

    def _is_auth_expired(self, status: int, payload: Any) -> bool:
        if status == 401:
            return True
        if status == 403 and isinstance(payload, dict):
            error = payload.get("error")
            error_type = error.get("type") if isinstance(error, dict) else error
            return error_type in ("AUTHENTICATION_REQUIRED", "INVALID_AUTHORIZATION")
        return False
