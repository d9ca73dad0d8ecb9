"""
Tests for the HTTP sync peer client.

Responses come from a requests transport adapter mounted on the session,
so no network is involved. Any unusable reply must surface as
``NetworkFailure`` and never escape a sync cycle.
"""

import json

import pytest
import requests
from requests.adapters import BaseAdapter

from vault.app.models.notes import SyncStatus
from vault.app.models.sync import ConflictKind
from vault.app.services.errors import NetworkFailure
from vault.app.services.remote_store import HttpDocumentStore
from vault.app.services.sync_coordinator import SyncCoordinator
from vault.tests.test_helpers import make_note

BASE_URL = "http://peer.test"
HTML_BODY = b"<html><body>502 Bad Gateway</body></html>"


class StaticAdapter(BaseAdapter):
    """Answers every request with the same status and body."""

    def __init__(self, status_code=200, body=b"", content_type="text/html"):
        super().__init__()
        self.status_code = status_code
        self.body = body
        self.content_type = content_type
        self.requests = []

    def send(self, request, **kwargs):
        self.requests.append(request)
        response = requests.Response()
        response.status_code = self.status_code
        response.reason = "OK" if self.status_code < 400 else "Error"
        response.headers["Content-Type"] = self.content_type
        response._content = self.body
        response.encoding = "utf-8"
        response.url = request.url
        response.request = request
        return response

    def close(self):
        pass


class RefusingAdapter(BaseAdapter):
    def send(self, request, **kwargs):
        raise requests.ConnectionError("connection refused")

    def close(self):
        pass


def _peer(adapter):
    session = requests.Session()
    session.mount(BASE_URL, adapter)
    return HttpDocumentStore(BASE_URL, timeout=1.0, session=session)


def _json_adapter(payload, status_code=200):
    return StaticAdapter(status_code, json.dumps(payload).encode("utf-8"), "application/json")


def test_get_with_html_body_raises_network_failure():
    peer = _peer(StaticAdapter(200, HTML_BODY))

    with pytest.raises(NetworkFailure, match="non-JSON"):
        peer.get("notes", "note-1")


def test_query_page_with_html_body_raises_network_failure():
    peer = _peer(StaticAdapter(200, HTML_BODY))

    with pytest.raises(NetworkFailure, match="non-JSON"):
        peer.query_page("notes", page=0, page_size=50)


@pytest.mark.parametrize(
    "payload",
    [["not", "an", "object"], {"document": "plain string"}],
)
def test_get_with_unexpected_json_raises_network_failure(payload):
    peer = _peer(_json_adapter(payload))

    with pytest.raises(NetworkFailure):
        peer.get("notes", "note-1")


def test_query_page_with_malformed_page_raises_network_failure():
    peer = _peer(_json_adapter({"documents": {"id": "note-1"}}))

    with pytest.raises(NetworkFailure, match="malformed page"):
        peer.query_page("notes", page=0, page_size=50)


def test_get_missing_document_returns_none():
    peer = _peer(_json_adapter({"error": "not found"}, status_code=404))

    assert peer.get("notes", "note-1") is None


def test_get_returns_document():
    peer = _peer(_json_adapter({"document": {"id": "note-1", "version": 2}}))

    assert peer.get("notes", "note-1") == {"id": "note-1", "version": 2}


def test_query_page_sends_paging_parameters():
    adapter = _json_adapter({"documents": []})
    peer = _peer(adapter)

    assert peer.query_page("notes", page=2, page_size=25, modified_since="2024-01-01T00:00:00Z") == []

    [sent] = adapter.requests
    assert sent.url.startswith(f"{BASE_URL}/collections/notes/documents?")
    assert "page=2" in sent.url
    assert "page_size=25" in sent.url
    assert "modified_since=" in sent.url


def test_server_error_raises_network_failure():
    peer = _peer(StaticAdapter(503, HTML_BODY))

    with pytest.raises(NetworkFailure, match="HTTP 503"):
        peer.create("notes", "note-1", {"id": "note-1"})


def test_connection_error_raises_network_failure():
    peer = _peer(RefusingAdapter())

    with pytest.raises(NetworkFailure, match="ConnectionError"):
        peer.get("notes", "note-1")


def test_sync_cycle_survives_html_peer(store):
    first = store.save_note(make_note(content="first"), actor_id="dr-roy", local_edit=True)
    second = store.save_note(make_note(content="second"), actor_id="dr-roy", local_edit=True)
    coordinator = SyncCoordinator(store, _peer(StaticAdapter(200, HTML_BODY)), collection="notes-test")

    result = coordinator.perform_sync()

    assert result.failed == 2
    assert result.uploaded == 0
    assert result.last_sync_advanced is False
    assert coordinator.last_sync is None
    for note_id in (first, second):
        assert store.get_record(note_id).sync_status == SyncStatus.CONFLICT
        assert coordinator.get_conflict(note_id).kind == ConflictKind.UPLOAD_FAILED
