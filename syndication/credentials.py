"""Credential provider interface and the environment-backed default.

The engine asks the provider for credentials at the start of every job and
calls ``refresh`` only after a platform reports expired credentials. It never
holds on to credentials between jobs.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import SyndicationError
from .models.migration import Platform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Bearer credentials for one platform."""
    token: str
    account_id: Optional[str] = None  # Airtable base, Instagram user, Facebook page
    extra: Dict[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"Credentials(token=***, account_id={self.account_id!r})"


class CredentialProvider(ABC):
    """Supplies per-platform credentials to the engine."""

    @abstractmethod
    def get(self, platform: str) -> Credentials:
        """Return current credentials for ``platform``."""

    def refresh(self, platform: str) -> Credentials:
        """Obtain fresh credentials after an auth failure. Defaults to re-reading."""
        return self.get(platform)


class MissingCredentials(SyndicationError):
    """No credentials are configured for a platform."""


class EnvCredentialProvider(CredentialProvider):
    """
    Reads credentials from environment variables on every call.

    Refreshing simply re-reads the environment, which lets a token rotated by
    an external process take effect without restarting the migration.
    """

    ENV_VARS = {
        Platform.AIRTABLE.value: ("AIRTABLE_API_KEY", "AIRTABLE_BASE_ID"),
        Platform.IMGUR.value: ("IMGUR_CLIENT_ID", None),
        Platform.DISCORD.value: ("DISCORD_WEBHOOK_URL", None),
        Platform.INSTAGRAM.value: ("INSTAGRAM_ACCESS_TOKEN", "INSTAGRAM_ACCOUNT_ID"),
        Platform.FACEBOOK.value: ("FACEBOOK_PAGE_TOKEN", "FACEBOOK_PAGE_ID"),
    }

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    def get(self, platform: str) -> Credentials:
        if platform not in self.ENV_VARS:
            raise MissingCredentials(f"Unknown platform: {platform}")

        token_var, account_var = self.ENV_VARS[platform]
        token = self._environ.get(token_var)
        if not token:
            raise MissingCredentials(f"{token_var} is not set")

        account_id = self._environ.get(account_var) if account_var else None
        if account_var and not account_id:
            raise MissingCredentials(f"{account_var} is not set")

        return Credentials(token=token, account_id=account_id)

    def refresh(self, platform: str) -> Credentials:
        logger.info(f"Refreshing {platform} credentials from environment")
        return self.get(platform)
