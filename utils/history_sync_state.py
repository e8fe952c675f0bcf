"""
History sync state store.

Why this exists:
- snapshot 파일은 전부 성공한 pass에서만 교체되므로, 실패가 이어지면
  파일만 보고는 "왜 오래됐는지"를 알 수 없다.
- window 단위 성공/실패 이력을 별도 파일로 남겨 status API와 운영자가
  degraded 여부와 연속 실패 횟수를 확인할 수 있게 한다.
- 읽기 실패 시 빈 상태로 시작해 worker가 멈추지 않도록 한다.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path

from utils.file_io import atomic_write_json
from utils.history_contracts import format_utc_datetime
from utils.logger import get_logger

logger = get_logger(__name__)


def load_history_sync_entries(path: Path) -> dict[str, dict]:
    """
    상태 파일의 entries를 읽는다. 없거나 손상되면 빈 dict.

    Called from:
    - `HistorySyncStateStore.__init__`
    - `api.main` status 응답
    """
    path = Path(path)
    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to load history sync state file: {e}")
        return {}

    entries = payload.get("entries") if isinstance(payload, dict) else None
    if not isinstance(entries, dict):
        logger.error("Invalid history sync state format: entries is not a dict.")
        return {}

    # entry 하나가 깨져도 나머지 window 이력은 살린다.
    valid_entries = {}
    for window, entry in entries.items():
        if isinstance(entry, dict):
            valid_entries[window] = entry
        else:
            logger.error(
                f"Invalid history sync state entry for {window}: "
                f"{type(entry).__name__}, dropped."
            )
    return valid_entries


class HistorySyncStateStore:
    def __init__(self, path: str | Path):
        """
        Called from:
        - `scripts.history_worker.run_history_worker` 시작 시 1회
        """
        self._path = Path(path)
        self._entries = load_history_sync_entries(self._path)
        # window별 thread가 동시에 기록하므로 파일 쓰기를 직렬화한다.
        self._lock = threading.Lock()

    def get(self, window: str) -> dict | None:
        with self._lock:
            raw = self._entries.get(window)
            return dict(raw) if isinstance(raw, dict) else None

    def record_success(
        self,
        window: str,
        *,
        sample_counts: dict[str, int],
        gap_warning_keys: list[str],
        now: datetime | None = None,
    ) -> dict:
        resolved_now = format_utc_datetime(now or datetime.now(timezone.utc))
        with self._lock:
            previous = self._entries.get(window, {})
            updated = {
                "window": window,
                "degraded": False,
                "last_success_at": resolved_now,
                "last_failure_at": previous.get("last_failure_at"),
                "consecutive_failures": 0,
                "last_error": None,
                "sample_counts": dict(sample_counts),
                "gap_warnings": list(gap_warning_keys),
                "updated_at": resolved_now,
            }
            self._entries[window] = updated
            self._persist()
            return dict(updated)

    def record_failure(
        self,
        window: str,
        *,
        error: str,
        now: datetime | None = None,
    ) -> dict:
        resolved_now = format_utc_datetime(now or datetime.now(timezone.utc))
        with self._lock:
            previous = self._entries.get(window, {})
            try:
                previous_failures = int(previous.get("consecutive_failures", 0))
            except (TypeError, ValueError):
                previous_failures = 0
            # 실패 pass는 snapshot을 건드리지 않으므로
            # 마지막 성공 시점의 sample 정보는 그대로 둔다.
            updated = {
                "window": window,
                "degraded": True,
                "last_success_at": previous.get("last_success_at"),
                "last_failure_at": resolved_now,
                "consecutive_failures": max(0, previous_failures) + 1,
                "last_error": error or "history_sync_failed",
                "sample_counts": previous.get("sample_counts", {}),
                "gap_warnings": previous.get("gap_warnings", []),
                "updated_at": resolved_now,
            }
            self._entries[window] = updated
            self._persist()
            return dict(updated)

    def _persist(self) -> None:
        payload = {
            "version": 1,
            "updated_at": format_utc_datetime(datetime.now(timezone.utc)),
            "entries": self._entries,
        }
        atomic_write_json(self._path, payload, indent=2)
