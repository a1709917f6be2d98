"""Discord adapter: posts media through a channel webhook."""

import json
import logging
from typing import Any, Optional

import requests

from ..credentials import Credentials
from ..errors import PermanentRejectError
from ..models.migration import Platform
from ..models.record import MediaDescriptor, SourceRecord
from .base import AdapterRef, PlatformAdapter, PublishMode

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 2000

# Discord JSON error codes meaning the webhook itself is gone or its token is wrong.
INVALID_WEBHOOK_CODES = (10015, 50027)


class DiscordAdapter(PlatformAdapter):
    """
    Single-phase post to a Discord webhook.

    The credential token is the full webhook URL. ``wait=true`` makes Discord
    return the created message so its id can be recorded.
    """

    platform = Platform.DISCORD.value
    publish_mode = PublishMode.SINGLE_PHASE
    can_verify = False

    def upload_media(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
    ) -> AdapterRef:
        mime = self._check_media(descriptor)
        url = credentials.token
        params = {"wait": "true"}
        content = self.caption_for(record)[:MAX_CONTENT_LENGTH]
        username = self.options.get("username")

        if descriptor.source_url:
            payload = {
                "content": content,
                "embeds": [{"image": {"url": descriptor.source_url}}],
            }
            if username:
                payload["username"] = username
            data = self._request("POST", url, params=params, json=payload)
        else:
            filename = descriptor.resolved_filename
            payload = {
                "content": content,
                "embeds": [{"image": {"url": f"attachment://{filename}"}}],
                "attachments": [{"id": 0, "filename": filename}],
            }
            if username:
                payload["username"] = username
            data = self._request(
                "POST",
                url,
                params=params,
                data={"payload_json": json.dumps(payload)},
                files={"files[0]": (filename, self._read_local(descriptor), mime)},
            )

        message_id = data.get("id")
        if not message_id:
            raise PermanentRejectError("Discord did not return a message id", platform=self.platform, payload=data)

        image_url = None
        for attachment in data.get("attachments") or []:
            image_url = attachment.get("url")
            break

        logger.info(f"Discord message {message_id} posted for {record.id}/{descriptor.target_field}")
        return AdapterRef(
            id=str(message_id),
            url=image_url or descriptor.source_url,
            extra={"channel_id": str(data.get("channel_id", ""))},
        )

    def _is_auth_expired(self, status: int, payload: Any) -> bool:
        # A deleted webhook or rotated token cannot be fixed by retrying with the same URL.
        if isinstance(payload, dict) and payload.get("code") in INVALID_WEBHOOK_CODES:
            return False
        return status == 401

    def _retry_after(self, response: requests.Response, payload: Any) -> Optional[float]:
        if isinstance(payload, dict) and payload.get("retry_after") is not None:
            try:
                return float(payload["retry_after"])
            except (TypeError, ValueError):
                pass
        return super()._retry_after(response, payload)
