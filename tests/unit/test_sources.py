"""
Source of record tests: media mapping, JSON export paging and Airtable listing.
"""

import json
from typing import Any, Dict, List

import pytest
import requests

from syndication.errors import CursorLost, SyndicationError
from syndication.models.migration import SourceConfig
from syndication.services.rate_limiter import RateLimiter
from syndication.sources import AirtableSource, JSONFileSource, create_source
from tests.conftest import FakeClock, START_TIME


def make_response(status: int, body: Any = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body).encode() if body is not None else b""
    return response


class StubSession:
    """Returns queued GET responses and records the params sent."""

    def __init__(self, *responses):
        self.responses: List[requests.Response] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def get(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        return self.responses.pop(0)


ATTACHMENT = {
    "id": "att1",
    "url": "https://dl.airtable.com/att1/sunset.jpg",
    "filename": "sunset.jpg",
    "type": "image/jpeg",
}


# ============================================================================
# Media mapping
# ============================================================================

class TestMediaMapping:

    def make_source(self, tmp_path, media_fields):
        path = tmp_path / "records.json"
        path.write_text("[]")
        return JSONFileSource(SourceConfig(type="json_file", file_path=str(path), media_fields=media_fields))

    def test_attachment_list_uses_first_attachment(self, tmp_path):
        source = self.make_source(tmp_path, {"Photos": "photo"})
        second = dict(ATTACHMENT, id="att2", url="https://dl.airtable.com/att2/other.jpg")

        record = source.create_record("rec1", {"Photos": [ATTACHMENT, second]})

        assert len(record.media_refs) == 1
        media = record.media_refs[0]
        assert media.target_field == "photo"
        assert media.source_url == ATTACHMENT["url"]
        assert media.mime_hint == "image/jpeg"
        assert media.filename == "sunset.jpg"
        assert media.source_field == "Photos"

    def test_plain_strings_are_urls_or_local_paths(self, tmp_path):
        source = self.make_source(tmp_path, {"Link": "link", "Scan": "scan"})

        record = source.create_record("rec1", {"Link": "https://example.com/a.png", "Scan": "./scans/a.png"})

        link, scan = record.media_refs
        assert link.source_url == "https://example.com/a.png"
        assert scan.local_path == "./scans/a.png"
        assert not scan.is_remote

    def test_empty_and_unsupported_values_are_skipped(self, tmp_path):
        source = self.make_source(tmp_path, {"A": "a", "B": "b", "C": "c", "D": "d"})

        record = source.create_record("rec1", {"A": [], "B": "  ", "C": 42})

        assert record.media_refs == ()

    def test_media_keep_configured_order(self, tmp_path):
        source = self.make_source(tmp_path, {"Cover": "cover", "Back": "back"})

        record = source.create_record("rec1", {"Back": [ATTACHMENT], "Cover": [ATTACHMENT]})

        assert [m.target_field for m in record.media_refs] == ["cover", "back"]

    def test_duplicate_target_field_is_ignored(self, tmp_path):
        source = self.make_source(tmp_path, {"Cover": "image", "Thumb": "image"})

        record = source.create_record("rec1", {"Cover": [ATTACHMENT], "Thumb": [ATTACHMENT]})

        assert [m.source_field for m in record.media_refs] == ["Cover"]


# ============================================================================
# JSON file source
# ============================================================================

class TestJSONFileSource:

    @pytest.fixture
    def export(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps({
            "records": [
                {"id": f"rec{i}", "fields": {"Name": f"Item {i}", "Photo": [ATTACHMENT]}}
                for i in range(5)
            ]
        }))
        return SourceConfig(type="json_file", file_path=str(path), media_fields={"Photo": "photo"})

    def test_pages_through_all_records(self, export):
        source = JSONFileSource(export)

        first = source.list(page_size=2)
        second = source.list(first.next_cursor, page_size=2)
        third = source.list(second.next_cursor, page_size=2)

        assert [r.id for r in first.records] == ["rec0", "rec1"]
        assert first.next_cursor == "2"
        assert [r.id for r in third.records] == ["rec4"]
        assert third.is_last
        assert third.records[0].media_refs[0].target_field == "photo"

    def test_accepts_a_bare_list(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text(json.dumps([{"id": "rec1", "fields": {}}]))

        page = JSONFileSource(SourceConfig(type="json_file", file_path=str(path))).list()

        assert [r.id for r in page.records] == ["rec1"]
        assert page.is_last

    @pytest.mark.parametrize("cursor", ["not-a-number", "99"])
    def test_invalid_cursor_is_lost(self, export, cursor):
        with pytest.raises(CursorLost):
            JSONFileSource(export).list(cursor)

    def test_requires_file_path(self):
        with pytest.raises(ValueError):
            JSONFileSource(SourceConfig(type="json_file"))


# ============================================================================
# Airtable source
# ============================================================================

class TestAirtableSource:

    def make_source(self, *responses, **config):
        settings = dict(type="airtable", base_id="app123", table="Blog Posts", media_fields={"Cover": "cover"})
        settings.update(config)
        session = StubSession(*responses)
        source = AirtableSource(SourceConfig(**settings), api_key="pat-1", session=session)
        return source, session

    def test_lists_a_page(self):
        source, session = self.make_source(make_response(200, {
            "records": [{"id": "recA", "fields": {"Cover": [ATTACHMENT]}}],
            "offset": "itr1/recA",
        }), view="Grid", filter_formula="{Ready}")

        page = source.list(page_size=500)

        assert [r.id for r in page.records] == ["recA"]
        assert page.next_cursor == "itr1/recA"
        call = session.calls[0]
        assert call["url"] == "https://api.airtable.com/v0/app123/Blog%20Posts"
        assert call["headers"] == {"Authorization": "Bearer pat-1"}
        assert call["params"] == {"pageSize": 100, "view": "Grid", "filterByFormula": "{Ready}"}

    def test_sends_cursor_as_offset(self):
        source, session = self.make_source(make_response(200, {"records": []}))

        page = source.list("itr1/recA")

        assert session.calls[0]["params"]["offset"] == "itr1/recA"
        assert page.is_last

    def test_key_getter_is_called_per_request(self):
        tokens = iter(["pat-1", "pat-2"])
        session = StubSession(make_response(200, {"records": []}), make_response(200, {"records": []}))
        source = AirtableSource(
            SourceConfig(type="airtable", base_id="app123", table="Posts"),
            api_key_getter=lambda: next(tokens),
            session=session,
        )

        source.list()
        source.list()

        assert [c["headers"]["Authorization"] for c in session.calls] == ["Bearer pat-1", "Bearer pat-2"]

    @pytest.mark.parametrize("error_type", ["LIST_RECORDS_ITERATOR_NOT_AVAILABLE", "INVALID_OFFSET_VALUE"])
    def test_expired_offset_is_cursor_lost(self, error_type):
        source, _ = self.make_source(make_response(422, {"error": {"type": error_type}}))

        with pytest.raises(CursorLost):
            source.list("itr1/recA")

    def test_other_422_is_a_plain_error(self):
        source, _ = self.make_source(make_response(422, {"error": {"type": "INVALID_FILTER_BY_FORMULA"}}))

        with pytest.raises(SyndicationError) as exc_info:
            source.list()

        assert not isinstance(exc_info.value, CursorLost)

    def test_throttled_listing_backs_off_and_retries(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)
        session = StubSession(make_response(429, {"errors": [{"error": "RATE_LIMIT_REACHED"}]}),
                              make_response(200, {"records": [{"id": "recA", "fields": {}}]}))
        source = AirtableSource(
            SourceConfig(type="airtable", base_id="app123", table="Posts"),
            api_key="pat-1", rate_limiter=limiter, session=session,
        )

        page = source.list()

        assert [r.id for r in page.records] == ["recA"]
        assert clock.now >= START_TIME + 30

    def test_persistent_throttling_gives_up(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)
        session = StubSession(*[make_response(429, {}) for _ in range(5)])
        source = AirtableSource(
            SourceConfig(type="airtable", base_id="app123", table="Posts"),
            api_key="pat-1", rate_limiter=limiter, session=session,
        )

        with pytest.raises(SyndicationError, match="still throttled"):
            source.list()

        assert len(session.calls) == 5

    def test_requires_base_and_table(self):
        with pytest.raises(ValueError):
            AirtableSource(SourceConfig(type="airtable", table="Posts"), api_key="pat-1")


class TestCreateSource:

    def test_builds_json_source(self, tmp_path):
        source = create_source(SourceConfig(type="json_file", file_path=str(tmp_path / "x.json")))

        assert isinstance(source, JSONFileSource)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            create_source(SourceConfig(type="notion"))
