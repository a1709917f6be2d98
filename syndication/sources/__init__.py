"""Sources of record the engine pages through."""

from typing import Callable, Optional

from ..models.migration import SourceConfig
from ..services.rate_limiter import RateLimiter
from .airtable_source import AirtableSource
from .base import BaseSource
from .json_source import JSONFileSource


def create_source(
    config: SourceConfig,
    api_key_getter: Optional[Callable[[], str]] = None,
    rate_limiter: Optional[RateLimiter] = None,
    timeout: float = 30.0,
) -> BaseSource:
    """Build the source described by ``config``."""
    if config.type == "airtable":
        return AirtableSource(config, api_key_getter=api_key_getter, rate_limiter=rate_limiter, timeout=timeout)
    if config.type == "json_file":
        return JSONFileSource(config)
    raise ValueError(f"Unsupported source type: {config.type}")


__all__ = ["AirtableSource", "BaseSource", "JSONFileSource", "create_source"]
