"""
Shared fixtures: a controllable clock, in-memory sources, scripted adapters,
stubbed HTTP sessions and a file-backed ledger per test.
"""

import json
import threading
from typing import Any, Dict, List, Optional, Union

import pytest
import requests

from syndication.adapters.base import AdapterRef, PlatformAdapter, PublishMode
from syndication.credentials import CredentialProvider, Credentials, MissingCredentials
from syndication.models.migration import MigrationConfig, SyncTarget
from syndication.models.record import MediaDescriptor, SourcePage, SourceRecord
from syndication.orchestrator import SyncOrchestrator
from syndication.services.ledger import MigrationLedger
from syndication.services.rate_limiter import RateLimiter
from syndication.sources.base import BaseSource

# Aligned to an hour boundary so window arithmetic is easy to reason about
START_TIME = 1_700_002_800.0


class FakeClock:
    """Epoch clock that only moves when something sleeps."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += max(0.0, seconds)


class ListSource(BaseSource):
    """Serves fixed pages; the cursor is the index of the next page."""

    name = "list"

    def __init__(self, pages: List[List[SourceRecord]]):
        super().__init__()
        self.pages = pages
        self.requested: List[Optional[str]] = []

    def list(self, cursor: Optional[str] = None, page_size: int = 100) -> SourcePage:
        self.requested.append(cursor)
        index = int(cursor) if cursor else 0
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return SourcePage(records=list(self.pages[index]), next_cursor=next_cursor)


def make_response(status: int, body: Any = None, headers: Optional[Dict[str, str]] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body).encode() if body is not None else b""
    response.headers.update(headers or {})
    return response


class StubSession:
    """Returns queued responses (or raises queued exceptions) and records requests."""

    def __init__(self, *responses):
        self.responses: List[Any] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


ErrorScript = Union[Exception, List[Optional[Exception]]]


class FakeAdapter(PlatformAdapter):
    """
    Adapter whose failures are scripted per record id.

    A script is either one exception (raised on every call) or a list consumed
    one call at a time, where None means "succeed". With ``host`` set, uploads
    report a hosted link on that host instead of echoing the source URL.
    """

    def __init__(
        self,
        platform: str,
        two_phase: bool = False,
        can_verify: bool = False,
        recreate_is_safe: bool = False,
        upload_errors: Optional[Dict[str, ErrorScript]] = None,
        finalize_errors: Optional[Dict[str, ErrorScript]] = None,
        existing: Optional[Dict[str, AdapterRef]] = None,
        host: Optional[str] = None,
    ):
        self.platform = platform
        self.publish_mode = PublishMode.TWO_PHASE if two_phase else PublishMode.SINGLE_PHASE
        self.can_verify = can_verify
        self.recreate_is_safe = recreate_is_safe
        super().__init__(target=SyncTarget(platform=platform))
        self.upload_errors = upload_errors or {}
        self.finalize_errors = finalize_errors or {}
        self.existing = existing or {}
        self.host = host
        self.on_upload = None

        self.upload_calls: List[str] = []
        self.uploads: List[str] = []
        self.finalize_calls: List[str] = []
        self.published: List[str] = []
        self.lookups: List[str] = []
        self.tokens: List[str] = []
        self._lock = threading.Lock()

    @staticmethod
    def _next_error(scripts: Dict[str, ErrorScript], key: str) -> Optional[Exception]:
        script = scripts.get(key)
        if script is None:
            return None
        if isinstance(script, Exception):
            return script
        return script.pop(0) if script else None

    def upload_media(self, record, descriptor, credentials) -> AdapterRef:
        with self._lock:
            self.upload_calls.append(record.id)
            self.tokens.append(credentials.token)
            error = self._next_error(self.upload_errors, record.id)
        if error is not None:
            raise error
        with self._lock:
            self.uploads.append(f"{record.id}/{descriptor.target_field}")
        if self.on_upload:
            self.on_upload(record, descriptor)
        prefix = "c" if self.is_two_phase else "m"
        url = f"https://{self.host}/{record.id}-{descriptor.target_field}.jpg" if self.host else descriptor.source_url
        return AdapterRef(id=f"{prefix}-{record.id}-{descriptor.target_field}", url=url)

    def finalize(self, ref: AdapterRef, credentials) -> str:
        if not self.is_two_phase:
            return ref.id
        record_id = ref.id.split("-")[1]
        with self._lock:
            self.finalize_calls.append(ref.id)
            error = self._next_error(self.finalize_errors, record_id)
        if error is not None:
            raise error
        with self._lock:
            self.published.append(ref.id)
        return f"p-{ref.id}"

    def find_existing(self, record, descriptor, credentials) -> Optional[AdapterRef]:
        with self._lock:
            self.lookups.append(record.id)
        return self.existing.get(record.id)


class FakeCredentials(CredentialProvider):
    """Hands out numbered tokens; refresh bumps the number."""

    def __init__(self, platforms: Optional[List[str]] = None):
        self.platforms = platforms
        self.versions: Dict[str, int] = {}
        self.get_calls = 0
        self.refreshes: List[str] = []

    def get(self, platform: str) -> Credentials:
        if self.platforms is not None and platform not in self.platforms:
            raise MissingCredentials(f"No credentials for {platform}")
        self.get_calls += 1
        return Credentials(token=f"{platform}-token-{self.versions.get(platform, 0)}", account_id="acct")

    def refresh(self, platform: str) -> Credentials:
        self.refreshes.append(platform)
        self.versions[platform] = self.versions.get(platform, 0) + 1
        return self.get(platform)


def make_record(record_id: str, *fields: str, caption: str = "") -> SourceRecord:
    """A record with one hosted image per named target field."""
    return SourceRecord(
        id=record_id,
        fields={"Title": caption or f"Record {record_id}"},
        media_refs=tuple(
            MediaDescriptor(
                target_field=f,
                source_url=f"https://img.example.com/{record_id}/{f}.jpg",
                source_field=f,
            )
            for f in fields
        ),
        source="list",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def ledger(database_url):
    ledger = MigrationLedger(database_url, "test-run")
    ledger.initialize()
    yield ledger
    ledger.dispose()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def make_config(database_url):
    """Factory for a config targeting the given platforms."""
    def _make(*platforms: str, **overrides) -> MigrationConfig:
        settings = dict(
            name="test-run",
            database_url=database_url,
            targets=[SyncTarget(platform=p) for p in platforms],
            parallel_workers=1,
            max_attempts=5,
            backoff_base=1.0,
            backoff_cap=8.0,
            pause_poll_interval=1.0,
        )
        settings.update(overrides)
        return MigrationConfig(**settings)
    return _make


@pytest.fixture
def make_orchestrator(ledger, clock, credentials):
    """Factory wiring an orchestrator around fakes sharing one clock."""
    def _make(config: MigrationConfig, source: BaseSource, *adapters: FakeAdapter) -> SyncOrchestrator:
        return SyncOrchestrator(
            config=config,
            source=source,
            adapters={a.platform: a for a in adapters},
            ledger=ledger,
            rate_limiter=RateLimiter(config.rate_limits, clock=clock, sleep=clock.sleep),
            credentials=credentials,
            sleep=clock.sleep,
            clock=clock,
        )
    return _make
