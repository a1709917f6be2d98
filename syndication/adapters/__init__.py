"""Platform adapters for publishing media to destination platforms."""

from typing import Dict, Optional, Type

import requests

from ..models.migration import SyncTarget
from .airtable import AirtableAdapter
from .base import DEFAULT_TIMEOUT, AdapterRef, PlatformAdapter, PublishMode
from .discord import DiscordAdapter
from .imgur import ImgurAdapter
from .meta import FacebookAdapter, GraphAdapter, InstagramAdapter

ADAPTERS: Dict[str, Type[PlatformAdapter]] = {
    AirtableAdapter.platform: AirtableAdapter,
    DiscordAdapter.platform: DiscordAdapter,
    ImgurAdapter.platform: ImgurAdapter,
    InstagramAdapter.platform: InstagramAdapter,
    FacebookAdapter.platform: FacebookAdapter,
}


def create_adapter(
    target: SyncTarget,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> PlatformAdapter:
    """Build the adapter for a sync target."""
    adapter_class = ADAPTERS.get(target.platform)
    if adapter_class is None:
        raise ValueError(f"Unsupported platform: {target.platform}")
    return adapter_class(target=target, session=session, timeout=timeout)


__all__ = [
    "ADAPTERS",
    "AdapterRef",
    "AirtableAdapter",
    "DiscordAdapter",
    "FacebookAdapter",
    "GraphAdapter",
    "ImgurAdapter",
    "InstagramAdapter",
    "PlatformAdapter",
    "PublishMode",
    "create_adapter",
]
