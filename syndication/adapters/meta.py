"""Instagram and Facebook adapters over the Meta Graph API.

Both platforms publish in two steps: an unpublished container (an Instagram
media container or an unpublished Facebook photo) is created first, then a
second call makes it live. Only the second call is visible to followers, so a
container orphaned by a crash is harmless and is simply published on resume.
Before publishing, the container is read back so a publish that landed but
was never recorded is not posted a second time.
"""

import logging
from typing import Any, Dict, Optional

from ..credentials import Credentials
from ..errors import PermanentRejectError, TransientError
from ..models.migration import Platform
from ..models.record import MediaDescriptor, SourceRecord
from .base import AdapterRef, PlatformAdapter, PublishMode

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com/v18.0"

# Graph error codes
AUTH_ERROR_CODES = (102, 190)
THROTTLE_ERROR_CODES = (4, 17, 32, 613)


class GraphAdapter(PlatformAdapter):
    """Shared Graph API error handling for Meta platforms."""

    publish_mode = PublishMode.TWO_PHASE
    # Containers are invisible until published, so an interrupted creation is
    # simply repeated.
    recreate_is_safe = True
    can_verify_publish = True

    @staticmethod
    def _graph_error(payload: Any) -> Dict[str, Any]:
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            return payload["error"]
        return {}

    def _is_auth_expired(self, status: int, payload: Any) -> bool:
        if status == 401:
            return True
        return self._graph_error(payload).get("code") in AUTH_ERROR_CODES

    def _is_rate_limited(self, status: int, payload: Any) -> bool:
        error = self._graph_error(payload)
        return error.get("code") in THROTTLE_ERROR_CODES or bool(error.get("is_transient"))

    def _error_message(self, payload: Any) -> Optional[str]:
        error = self._graph_error(payload)
        if error:
            return error.get("error_user_msg") or error.get("message")
        return super()._error_message(payload)

    def _post(self, path: str, credentials: Credentials, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"{GRAPH_URL}/{path}",
            data={**data, "access_token": credentials.token},
        )

    def _get(self, path: str, credentials: Credentials, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            "GET",
            f"{GRAPH_URL}/{path}",
            params={**params, "access_token": credentials.token},
        )


class InstagramAdapter(GraphAdapter):
    """
    Instagram Graph API content publishing.

    Instagram fetches the image itself, so media must be hosted at a public
    URL; local files are rejected. To publish local files, host them on Imgur first
    and set ``options["source_platform"] = "imgur"`` on this target.
    """

    platform = Platform.INSTAGRAM.value

    def upload_media(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
    ) -> AdapterRef:
        mime = self._check_media(descriptor)
        if not descriptor.source_url:
            raise PermanentRejectError(
                f"Instagram needs a hosted image URL, got local file {descriptor.local_path}",
                platform=self.platform,
            )
        if mime not in ("image/jpeg", "image/jpg"):
            logger.warning(f"Instagram only documents JPEG support; sending {mime} for {record.id}")

        data = self._post(
            f"{credentials.account_id}/media",
            credentials,
            {"image_url": descriptor.source_url, "caption": self.caption_for(record)},
        )
        container_id = data.get("id")
        if not container_id:
            raise TransientError("Instagram did not return a container id", platform=self.platform, payload=data)

        logger.info(f"Instagram container {container_id} created for {record.id}/{descriptor.target_field}")
        return AdapterRef(id=str(container_id))

    def find_published(self, ref: AdapterRef, credentials: Credentials) -> Optional[str]:
        """Read the container status; raises while it cannot be published yet."""
        status = self._get(ref.id, credentials, {"fields": "status_code"}).get("status_code")

        if status == "PUBLISHED":
            logger.warning(f"Instagram container {ref.id} is already published")
            return ref.id
        if status == "IN_PROGRESS":
            raise TransientError(f"Instagram container {ref.id} is still processing", platform=self.platform)
        if status in ("ERROR", "EXPIRED"):
            raise PermanentRejectError(
                f"Instagram container {ref.id} cannot be published (status {status})",
                platform=self.platform,
                payload={"status_code": status},
            )
        return None

    def finalize(self, ref: AdapterRef, credentials: Credentials) -> str:
        data = self._post(f"{credentials.account_id}/media_publish", credentials, {"creation_id": ref.id})
        media_id = data.get("id")
        if not media_id:
            raise TransientError("Instagram did not return a media id", platform=self.platform, payload=data)

        logger.info(f"Instagram container {ref.id} published as {media_id}")
        return str(media_id)


class FacebookAdapter(GraphAdapter):
    """Facebook Page photo posts: an unpublished photo attached to a feed post."""

    platform = Platform.FACEBOOK.value

    def upload_media(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        credentials: Credentials,
    ) -> AdapterRef:
        mime = self._check_media(descriptor)
        path = f"{credentials.account_id}/photos"

        if descriptor.source_url:
            data = self._post(path, credentials, {"url": descriptor.source_url, "published": "false"})
        else:
            data = self._request(
                "POST",
                f"{GRAPH_URL}/{path}",
                data={"published": "false", "access_token": credentials.token},
                files={"source": (descriptor.resolved_filename, self._read_local(descriptor), mime)},
            )

        photo_id = data.get("id")
        if not photo_id:
            raise TransientError("Facebook did not return a photo id", platform=self.platform, payload=data)

        logger.info(f"Facebook photo {photo_id} staged for {record.id}/{descriptor.target_field}")
        return AdapterRef(id=str(photo_id), extra={"message": self.caption_for(record)})

    def find_published(self, ref: AdapterRef, credentials: Credentials) -> Optional[str]:
        # A staged photo gains a page story once a feed post attaches it.
        data = self._get(ref.id, credentials, {"fields": "published,page_story_id"})
        story_id = data.get("page_story_id")
        if story_id:
            logger.warning(f"Facebook photo {ref.id} is already attached to post {story_id}")
            return str(story_id)
        return None

    def finalize(self, ref: AdapterRef, credentials: Credentials) -> str:
        data = self._post(
            f"{credentials.account_id}/feed",
            credentials,
            {
                "message": ref.extra.get("message", ""),
                "attached_media[0]": f'{{"media_fbid":"{ref.id}"}}',
            },
        )
        post_id = data.get("id")
        if not post_id:
            raise TransientError("Facebook did not return a post id", platform=self.platform, payload=data)

        logger.info(f"Facebook photo {ref.id} published in post {post_id}")
        return str(post_id)
