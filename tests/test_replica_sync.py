import json

import pytest
import requests

from scripts import replica_sync


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"{}"):
        self.status_code = status_code
        self.content = content


class FakeSession:
    def __init__(self, responses: dict):
        self._responses = responses
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        response = self._responses.get(url)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return FakeResponse(status_code=404, content=b"")
        return response


BASE = "http://manager:8080/static/"


def test_replica_filenames_include_state_file():
    assert replica_sync.replica_filenames(["day", "week"]) == [
        "day-history.json",
        "week-history.json",
        "history_sync_state.json",
    ]


def test_run_replica_cycle_replaces_valid_files(tmp_path):
    body = json.dumps({"k": {"1": 0.0}}).encode()
    session = FakeSession(
        {"http://manager:8080/static/day-history.json": FakeResponse(content=body)}
    )

    results = replica_sync.run_replica_cycle(
        session, BASE, tmp_path, ["day-history.json", "week-history.json"]
    )

    assert results == {"day-history.json": True, "week-history.json": False}
    assert (tmp_path / "day-history.json").read_bytes() == body
    assert not (tmp_path / "week-history.json").exists()


def test_invalid_json_keeps_local_copy(tmp_path):
    local = tmp_path / "day-history.json"
    local.write_text('{"stable": {}}')
    session = FakeSession(
        {
            "http://manager:8080/static/day-history.json": FakeResponse(
                content=b'{"truncated": '
            )
        }
    )

    results = replica_sync.run_replica_cycle(
        session, BASE, tmp_path, ["day-history.json"]
    )

    assert results == {"day-history.json": False}
    assert local.read_text() == '{"stable": {}}'


def test_request_error_is_not_fatal(tmp_path, caplog):
    session = FakeSession(
        {
            "http://manager:8080/static/day-history.json": requests.ConnectionError(
                "refused"
            )
        }
    )

    results = replica_sync.run_replica_cycle(
        session, BASE, tmp_path, ["day-history.json"]
    )

    assert results == {"day-history.json": False}
    assert "could not fetch" in caplog.text


def test_next_wait_seconds_stays_in_range():
    for _ in range(20):
        assert 40 <= replica_sync.next_wait_seconds(40, 90) <= 90


def test_run_replica_sync_requires_manager_url(monkeypatch):
    monkeypatch.setattr(replica_sync, "MANAGER_STATIC_URL", "")

    with pytest.raises(RuntimeError):
        replica_sync.run_replica_sync()
