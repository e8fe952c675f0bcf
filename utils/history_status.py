import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from utils.config import (
    DEFAULT_FRESHNESS_HARD_MINUTES,
    DEFAULT_FRESHNESS_SOFT_MINUTES,
)
from utils.history_contracts import format_utc_datetime


@dataclass(frozen=True)
class FreshnessLimits:
    """
    window 1개의 snapshot 허용 지연.
    soft 초과는 stale(경고), hard 초과는 hard_stale(503).
    """

    soft: timedelta
    hard: timedelta

    def __post_init__(self):
        if self.soft <= timedelta(0):
            raise ValueError("soft limit must be positive.")
        if self.hard < self.soft:
            raise ValueError("hard limit must not be shorter than soft limit.")

    @classmethod
    def for_window(
        cls,
        window: str,
        soft_thresholds: dict[str, timedelta] | None = None,
        hard_thresholds: dict[str, timedelta] | None = None,
    ) -> "FreshnessLimits":
        # 설정에 없는 window는 기본값, hard는 최소 soft의 2배
        soft = (soft_thresholds or {}).get(
            window, timedelta(minutes=DEFAULT_FRESHNESS_SOFT_MINUTES)
        )
        hard = (hard_thresholds or {}).get(
            window,
            max(timedelta(minutes=DEFAULT_FRESHNESS_HARD_MINUTES), soft * 2),
        )
        return cls(soft=soft, hard=hard)

    def classify(self, age: timedelta) -> str:
        if age <= self.soft:
            return "fresh"
        if age <= self.hard:
            return "stale"
        return "hard_stale"


@dataclass(frozen=True)
class HistoryStatusSnapshot:
    window: str
    status: str
    detail: str
    updated_at: str | None = None
    age_minutes: float | None = None
    soft_limit_minutes: int | None = None
    hard_limit_minutes: int | None = None
    metric_keys: tuple[str, ...] = ()
    error_code: str | None = None


def _whole_minutes(value: timedelta) -> int:
    return int(value.total_seconds() // 60)


def evaluate_history_status(
    window: str,
    now: datetime | None,
    static_dir: Path,
    soft_thresholds: dict[str, timedelta] | None = None,
    hard_thresholds: dict[str, timedelta] | None = None,
) -> HistoryStatusSnapshot:
    """
    `<window>-history.json`의 상태를 판정한다.

    snapshot 포맷에는 updated_at 필드가 없으므로(소비자 계약 고정)
    파일 수정 시각을 갱신 시각으로 사용한다.
    """
    resolved_now = now or datetime.now(timezone.utc)
    limits = FreshnessLimits.for_window(window, soft_thresholds, hard_thresholds)
    file_path = Path(static_dir) / f"{window}-history.json"

    if not file_path.exists():
        return HistoryStatusSnapshot(
            window=window,
            status="missing",
            detail="History snapshot file is missing.",
            error_code="missing_file",
        )

    try:
        with open(file_path, "r") as f:
            payload = json.load(f)
        modified_at = datetime.fromtimestamp(
            file_path.stat().st_mtime, tz=timezone.utc
        )
    except json.JSONDecodeError:
        return HistoryStatusSnapshot(
            window=window,
            status="corrupt",
            detail=f"JSON decode error: {file_path.name}",
            error_code="json_decode_error",
        )
    except OSError as e:
        return HistoryStatusSnapshot(
            window=window,
            status="corrupt",
            detail=f"Read error: {file_path.name}: {e}",
            error_code="read_error",
        )

    if not isinstance(payload, dict) or not all(
        isinstance(series, dict) for series in payload.values()
    ):
        return HistoryStatusSnapshot(
            window=window,
            status="corrupt",
            detail=f"Invalid snapshot format: {file_path.name}",
            error_code="invalid_format",
        )

    # 시계 차이로 mtime이 미래면 나이는 0으로 본다.
    age = max(resolved_now - modified_at, timedelta(0))
    return HistoryStatusSnapshot(
        window=window,
        status=limits.classify(age),
        detail=f"checked={file_path.name}",
        updated_at=format_utc_datetime(modified_at),
        age_minutes=round(age.total_seconds() / 60, 2),
        soft_limit_minutes=_whole_minutes(limits.soft),
        hard_limit_minutes=_whole_minutes(limits.hard),
        metric_keys=tuple(payload.keys()),
    )
