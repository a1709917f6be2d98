"""Imgur adapter: anonymous image hosting."""

import logging
from typing import Any, Optional

from ..credentials import Credentials
from ..errors import PermanentRejectError, TransientError
from ..models.migration import Platform
from ..models.record import MediaDescriptor, SourceRecord
from .base import AdapterRef, PlatformAdapter, PublishMode

logger = logging.getLogger(__name__)

UPLOAD_URL = "https://api.imgur.com/3/image"


class ImgurAdapter(PlatformAdapter):
    """
    Single-phase upload to Imgur using a Client-ID.

    Anonymous uploads cannot be listed afterwards, so an interrupted upload
    cannot be verified and is left for an operator to requeue.
    """

    platform = Platform.IMGUR.value
    publish_mode = PublishMode.SINGLE_PHASE
    can_verify = False
    supported_mime_prefixes = ("image/", "video/")

    def upload_media(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
    ) -> AdapterRef:
        self._check_media(descriptor)

        if descriptor.local_path:
            form = {"image": self._read_local_b64(descriptor), "type": "base64"}
        else:
            form = {"image": descriptor.source_url, "type": "url"}

        form["name"] = descriptor.resolved_filename
        title = self.caption_for(record)
        if title:
            form["title"] = title[:128]

        data = self._request(
            "POST",
            UPLOAD_URL,
            headers={"Authorization": f"Client-ID {credentials.token}"},
            data=form,
        )

        if not data.get("success", False):
            message = str(data.get("data", {}).get("error") or data)
            if "Too Many Requests" in message:
                raise TransientError(message, platform=self.platform, payload=data)
            raise PermanentRejectError(message, platform=self.platform, payload=data)

        image = data.get("data") or {}
        if not image.get("id"):
            raise TransientError("Imgur response did not include an image id", platform=self.platform, payload=data)

        logger.info(f"Imgur upload for {record.id}/{descriptor.target_field}: {image.get('link')}")
        return AdapterRef(
            id=image["id"],
            url=image.get("link"),
            extra={"deletehash": image.get("deletehash", "")},
        )

    def _is_rate_limited(self, status: int, payload: Any) -> bool:
        return "Too Many Requests" in str(payload)

    def _error_message(self, payload: Any) -> Optional[str]:
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            error = payload["data"].get("error")
            if isinstance(error, dict):
                return error.get("message")
            if error:
                return str(error)
        return super()._error_message(payload)
