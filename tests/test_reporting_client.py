"""Tests for remote report payloads and the HTTP reporting client."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from simharness.errors import SyncError
from simharness.models import Severity, ViolationCategory, ViolationRecord
from simharness.reporting.client import (
    HttpReportingClient,
    build_create_payload,
    build_update_payload,
    format_description,
    format_title,
    readable_type,
    remote_category,
)

FP = "0123456789abcdef"


def _record(**overrides):
    values = dict(
        fingerprint=FP,
        type="zombie-entity",
        category=ViolationCategory.STATE_CORRUPTION,
        severity=Severity.HIGH,
        message="Wolf is a zombie",
        first_seen=1_700_000_000.0,
        last_seen=1_700_000_060.0,
        occurrence_count=4,
        sample_reports=[{
            "reportId": "VIO-1",
            "message": "Wolf at 0 HP",
            "details": {"creature": "Wolf", "hp": 0},
            "context": {"action": "DECLARE_ATTACK", "phase": "Combat", "turn": 3},
            "fingerprintComponents": "Type: zombie-entity, Card: wolf",
        }],
    )
    values.update(overrides)
    return ViolationRecord(**values)


def _response(status=200, body=None, raw=None):
    response = MagicMock()
    response.status_code = status
    if raw is not None:
        response.content = raw
        response.json.side_effect = ValueError("not json")
    else:
        response.content = b"" if body is None else json.dumps(body).encode()
        response.json.return_value = body
    return response


@pytest.fixture
def session():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def client(session):
    return HttpReportingClient("http://tracker.local/api/", api_key="secret", timeout=2.5, session=session)


class TestPayloads:
    """Title, description and category formatting."""

    def test_title_embeds_fingerprint(self):
        """Test the [AUTO:fp] marker and readable type."""
        assert format_title(_record()) == f"[AUTO:{FP}] Zombie Entity"
        assert readable_type("dry-drop_keyword") == "Dry Drop Keyword"

    def test_description_sections(self):
        """Test that the description carries the newest sample's context."""
        text = format_description(_record())

        assert "**Violation Type:** zombie-entity" in text
        assert "**Severity:** high" in text
        assert "**Occurrences:** 4" in text
        assert "**First Seen:** 2023-11-14 22:13:20 UTC" in text
        assert "> Wolf at 0 HP" in text
        assert "- Action: DECLARE_ATTACK" in text
        assert "- Turn: 3" in text
        assert "Type: zombie-entity, Card: wolf" in text
        assert '"creature": "Wolf"' in text

    def test_description_without_samples(self):
        """Test the fallbacks when no sample is stored."""
        text = format_description(_record(sample_reports=[], fingerprint_components=None))
        assert "> Wolf is a zombie" in text
        assert "- Phase: N/A" in text
        assert "**Details:**" not in text

    def test_categories(self):
        """Test the remote category map."""
        assert remote_category(ViolationCategory.COMBAT_ERROR) == "game_logic"
        assert remote_category(ViolationCategory.EFFECT_ERROR) == "game_logic"
        assert remote_category(ViolationCategory.OTHER) == "other"

    def test_create_and_update_payloads(self):
        """Test the payload keys sent to the sink."""
        created = build_create_payload(_record())
        updated = build_update_payload(_record())
        assert set(created) == {"title", "description", "category", "status"}
        assert set(updated) == {"description", "updatedAt"}


class TestHttpClient:
    """Requests made against the reporting API."""

    def test_headers(self, client, session):
        """Test the bearer token and accept header."""
        assert session.headers["Authorization"] == "Bearer secret"
        assert session.headers["Accept"] == "application/json"

    def test_find_by_fingerprint(self, client, session):
        """Test that only a report whose title carries the marker matches."""
        session.request.return_value = _response(body=[
            {"id": 1, "title": "unrelated"},
            {"id": 2, "title": f"[AUTO:{FP}] Zombie Entity"},
        ])

        found = client.find_by_fingerprint(FP)

        assert found["id"] == 2
        method, url = session.request.call_args.args
        assert (method, url) == ("GET", "http://tracker.local/api/reports")
        assert session.request.call_args.kwargs["params"] == {"fingerprint": FP}
        assert session.request.call_args.kwargs["timeout"] == 2.5

    def test_find_accepts_wrapped_list(self, client, session):
        """Test the {"reports": [...]} response shape."""
        session.request.return_value = _response(body={"reports": [{"id": 3, "title": f"[AUTO:{FP}]"}]})
        assert client.find_by_fingerprint(FP)["id"] == 3

    def test_find_no_match(self, client, session):
        """Test that an empty result reads as None."""
        session.request.return_value = _response(body=[])
        assert client.find_by_fingerprint(FP) is None

    def test_create_and_update(self, client, session):
        """Test POST and PATCH requests."""
        session.request.return_value = _response(body={"id": 10})
        assert client.create_report({"title": "t"}) == {"id": 10}
        assert session.request.call_args.args == ("POST", "http://tracker.local/api/reports")
        assert session.request.call_args.kwargs["json"] == {"title": "t"}

        session.request.return_value = _response(body=None)
        assert client.update_report("10", {"description": "d"}) == {"id": "10"}
        assert session.request.call_args.args == ("PATCH", "http://tracker.local/api/reports/10")

    def test_create_without_id_fails(self, client, session):
        """Test that a response missing the new id is an error."""
        session.request.return_value = _response(body={"ok": True})
        with pytest.raises(SyncError):
            client.create_report({"title": "t"})

    def test_http_error_status(self, client, session):
        """Test that 4xx/5xx responses raise SyncError with the status."""
        session.request.return_value = _response(status=503, body={"error": "down"})
        with pytest.raises(SyncError) as exc_info:
            client.find_by_fingerprint(FP)
        assert exc_info.value.status_code == 503
        assert exc_info.value.fingerprint == FP

    def test_connection_error(self, client, session):
        """Test that transport failures become SyncError."""
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(SyncError):
            client.create_report({"title": "t"})

    def test_non_json_body(self, client, session):
        """Test that a garbage body becomes SyncError."""
        session.request.return_value = _response(raw=b"<html>")
        with pytest.raises(SyncError):
            client.find_by_fingerprint(FP)
