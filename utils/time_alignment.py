import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_DURATION_PATTERN = re.compile(r"^(?P<value>\d+)(?P<unit>[smhdw])$")

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}


def parse_duration(text: str) -> timedelta:
    """
    '30m', '24h', '7d' 형식의 기간 문자열을 timedelta로 변환한다.
    """
    match = _DURATION_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise ValueError(
            f"Unsupported duration format: {text!r}. Expected like '30m', '24h', '7d'."
        )

    value = int(match.group("value"))
    if value <= 0:
        raise ValueError("Duration value must be positive.")
    return timedelta(seconds=value * _UNIT_SECONDS[match.group("unit")])


def format_step(step: timedelta) -> str:
    """range query의 step 파라미터 문자열(초 단위)."""
    seconds = int(step.total_seconds())
    if seconds <= 0:
        raise ValueError("Step must be positive.")
    return f"{seconds}s"


def expected_sample_count(lookback: timedelta, step: timedelta) -> int:
    """
    lookback 구간에서 기대되는 sample 수.
    Example: 24h / 30m -> 48
    """
    step_seconds = int(step.total_seconds())
    if step_seconds <= 0:
        raise ValueError("Step must be positive.")
    return int(lookback.total_seconds()) // step_seconds


def to_epoch_seconds(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


@dataclass(frozen=True)
class GapWindow:
    start: int
    end: int
    missing_count: int


def detect_series_gaps(timestamps: list[int], step: timedelta) -> list[GapWindow]:
    """
    epoch-second timestamp 목록에서 step 간격으로 비어 있는 구간을 찾는다.
    """
    if len(timestamps) < 2:
        return []

    step_seconds = int(step.total_seconds())
    if step_seconds <= 0:
        raise ValueError("Step must be positive.")

    deduped = sorted(set(timestamps))
    gaps: list[GapWindow] = []
    for previous_ts, current_ts in zip(deduped, deduped[1:]):
        delta_seconds = current_ts - previous_ts
        if delta_seconds <= step_seconds:
            continue

        missing_count = (delta_seconds // step_seconds) - 1
        if missing_count <= 0:
            continue

        gaps.append(
            GapWindow(
                start=previous_ts + step_seconds,
                end=current_ts - step_seconds,
                missing_count=missing_count,
            )
        )

    return gaps
