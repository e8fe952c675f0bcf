import json
import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

import api.main as api_main


def _write_history_file(tmp_path, window: str, payload, *, age_minutes: float = 0):
    path = tmp_path / f"{window}-history.json"
    if isinstance(payload, str):
        path.write_text(payload)
    else:
        path.write_text(json.dumps(payload))
    if age_minutes:
        modified = (
            datetime.now(timezone.utc) - timedelta(minutes=age_minutes)
        ).timestamp()
        os.utime(path, (modified, modified))


def _write_sync_state_file(tmp_path, entries: dict) -> None:
    path = tmp_path / "history_sync_state.json"
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "updated_at": datetime.now(timezone.utc).strftime(
                    "%Y-%m-%dT%H:%M:%SZ"
                ),
                "entries": entries,
            }
        )
    )


@pytest.fixture
def static_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(api_main, "STATIC_DIR", tmp_path)
    monkeypatch.setattr(
        api_main, "SYNC_STATE_FILE", tmp_path / "history_sync_state.json"
    )
    monkeypatch.setattr(api_main, "KNOWN_WINDOWS", ["day", "week"])
    return tmp_path


def test_unknown_window_returns_404(static_dir):
    with pytest.raises(HTTPException) as exc:
        api_main.check_status("month")

    assert exc.value.status_code == 404


def test_get_history_returns_503_when_file_is_missing(static_dir):
    with pytest.raises(HTTPException) as exc:
        api_main.get_history("day")

    assert exc.value.status_code == 503
    assert exc.value.detail == "Not initialized yet."


def test_get_history_returns_snapshot_body(static_dir):
    payload = {"prediction_service_subscription_count_total": {"1685888800": 2.0}}
    _write_history_file(static_dir, "day", payload)

    assert api_main.get_history("day") == payload


def test_get_history_returns_503_on_corrupted_json(static_dir):
    _write_history_file(static_dir, "week", "{this-is-not-json")

    with pytest.raises(HTTPException) as exc:
        api_main.get_history("week")

    assert exc.value.status_code == 503
    assert exc.value.detail == "Data corruption detected"


def test_check_status_returns_503_when_file_is_missing(static_dir):
    with pytest.raises(HTTPException) as exc:
        api_main.check_status("day")

    assert exc.value.status_code == 503
    assert exc.value.detail == "Not initialized yet."


def test_check_status_returns_503_on_corrupted_json(static_dir):
    _write_history_file(static_dir, "day", "{this-is-not-json")

    with pytest.raises(HTTPException) as exc:
        api_main.check_status("day")

    assert exc.value.status_code == 503
    assert exc.value.detail == "Data corruption detected"


def test_check_status_returns_503_for_invalid_format(static_dir):
    _write_history_file(static_dir, "day", ["not", "a", "snapshot"])

    with pytest.raises(HTTPException) as exc:
        api_main.check_status("day")

    assert exc.value.status_code == 503
    assert exc.value.detail == "Invalid data format"


def test_check_status_returns_fresh_state(static_dir):
    _write_history_file(static_dir, "day", {"a": {"1": 0.0}})

    response = api_main.check_status("day")

    assert response["window"] == "day"
    assert response["status"] == "fresh"
    assert response["metrics"] == ["a"]
    assert response["degraded"] is False
    assert response["sync_failure_count"] == 0
    assert "warning" not in response


def test_check_status_returns_stale_with_warning(static_dir):
    _write_history_file(static_dir, "day", {"a": {}}, age_minutes=10)

    response = api_main.check_status("day")

    assert response["status"] == "stale"
    assert "warning" in response


def test_check_status_returns_503_when_hard_stale(static_dir):
    _write_history_file(static_dir, "day", {"a": {}}, age_minutes=60)

    with pytest.raises(HTTPException) as exc:
        api_main.check_status("day")

    assert exc.value.status_code == 503
    assert "hard limit" in exc.value.detail


def test_check_status_includes_degraded_sync_state(static_dir):
    _write_history_file(static_dir, "day", {"a": {}})
    _write_sync_state_file(
        static_dir,
        {
            "day": {
                "degraded": True,
                "last_success_at": "2023-06-05T13:00:00Z",
                "last_failure_at": "2023-06-05T14:00:00Z",
                "last_error": "transport: connection refused",
                "consecutive_failures": 3,
            }
        },
    )

    response = api_main.check_status("day")

    assert response["degraded"] is True
    assert response["degraded_reason"] == "transport: connection refused"
    assert response["sync_failure_count"] == 3
    assert response["last_sync_success_at"] == "2023-06-05T13:00:00Z"


def test_check_status_ignores_invalid_failure_count(static_dir):
    _write_history_file(static_dir, "day", {"a": {}})
    _write_sync_state_file(static_dir, {"day": {"consecutive_failures": "many"}})

    response = api_main.check_status("day")

    assert response["sync_failure_count"] == 0


def test_health_check_lists_windows(static_dir):
    assert api_main.health_check() == {"status": "ok", "windows": ["day", "week"]}
