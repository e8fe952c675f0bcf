import json
import os
from datetime import timedelta
from pathlib import Path

from utils.history_contracts import CombinePolicy, MetricQuery, WindowConfig
from utils.time_alignment import expected_sample_count, parse_duration

DEFAULT_HISTORY_WINDOWS = ["day:24h:30m", "week:168h:120m"]
DEFAULT_SYNC_INTERVAL_SECONDS = 60
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
# 원본 expression에 박혀 있던 "/ 15 / 2" 계수. 의미는 backend 쪽 정의를 따른다.
DEFAULT_QUALITY_RATE_DIVISOR = "15 / 2"
# status 요약에서 bad prediction은 quality <= 50.0 으로 정의된다.
DEFAULT_QUALITY_BAD_BUCKET = "50.0"
DEFAULT_FRESHNESS_SOFT_MINUTES = 5
DEFAULT_FRESHNESS_HARD_MINUTES = 15

GOOD_PREDICTION_KEY = "prediction_service_good_prediction_total"
SUBSCRIPTION_COUNT_KEY = "prediction_service_subscription_count_total"


def _parse_csv_env(raw: str | None, default: list[str]) -> list[str]:
    if not raw:
        return default.copy()

    values = [item.strip() for item in raw.split(",") if item.strip()]
    return values or default.copy()


def _parse_bool_env(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return default

    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_positive_int_env(raw: str | None, default: int) -> int:
    if raw is None:
        return default

    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_optional_path(raw: str | None) -> Path | None:
    if not raw or not raw.strip():
        return None
    return Path(raw.strip())


def _parse_window_definitions(
    definitions: list[str], *, env_name: str
) -> list[WindowConfig]:
    """
    `name:lookback:step[:min_samples]` 목록을 WindowConfig로 변환한다.

    Rules:
    - lookback/step은 `30m`, `24h`, `7d` 형식
    - min_samples 생략 시 lookback / step
    - window 이름 중복 금지(출력 파일이 겹치기 때문)
    """
    if not definitions:
        raise ValueError(f"{env_name} must not be empty.")

    windows: list[WindowConfig] = []
    seen: set[str] = set()
    for raw in definitions:
        parts = [part.strip() for part in raw.split(":")]
        if len(parts) not in {3, 4} or not parts[0]:
            raise ValueError(
                f"{env_name} contains invalid window: {raw!r}. "
                "Expected format like day:24h:30m or day:24h:30m:48."
            )
        name = parts[0]
        if name in seen:
            raise ValueError(f"{env_name} contains duplicate window: {name!r}.")
        seen.add(name)

        try:
            lookback = parse_duration(parts[1])
            step = parse_duration(parts[2])
        except ValueError as e:
            raise ValueError(f"{env_name} window {name!r}: {e}") from e
        if step > lookback:
            raise ValueError(
                f"{env_name} window {name!r}: step must not exceed lookback."
            )

        if len(parts) == 4:
            try:
                min_samples = int(parts[3])
            except ValueError as e:
                raise ValueError(
                    f"{env_name} window {name!r}: min samples must be an integer."
                ) from e
            if min_samples < 0:
                raise ValueError(
                    f"{env_name} window {name!r}: min samples must not be negative."
                )
        else:
            min_samples = expected_sample_count(lookback, step)

        windows.append(
            WindowConfig(
                name=name,
                lookback=lookback,
                step=step,
                min_expected_samples=min_samples,
            )
        )
    return windows


def _parse_named_ints(raw: str | None) -> dict[str, int]:
    # Format: "day:60,week:300"
    parsed: dict[str, int] = {}
    if not raw:
        return parsed

    for chunk in raw.split(","):
        if ":" not in chunk:
            continue
        name, value_text = chunk.split(":", 1)
        name = name.strip()
        value_text = value_text.strip()
        if not name or not value_text:
            continue
        try:
            value = int(value_text)
        except ValueError:
            continue
        if value > 0:
            parsed[name] = value
    return parsed


def _parse_minutes_thresholds(
    raw: str | None, default_minutes: int, window_names: list[str]
) -> dict[str, timedelta]:
    thresholds = {
        name: timedelta(minutes=default_minutes) for name in window_names
    }
    for name, minutes in _parse_named_ints(raw).items():
        thresholds[name] = timedelta(minutes=minutes)
    return thresholds


def build_default_metric_queries(
    *,
    rate_divisor: str = DEFAULT_QUALITY_RATE_DIVISOR,
    bad_bucket: str = DEFAULT_QUALITY_BAD_BUCKET,
) -> list[MetricQuery]:
    """
    기본 history metric 2종.

    - good prediction: 전체(+Inf) bucket - bad bucket. 부분 집계를 합산하므로 sum.
    - subscription count: 시점 gauge이므로 overwrite.

    두 expression 모두 `OR vector(0)`으로 0 기본값 series를 붙인다.
    데이터가 없는 구간에서 backend가 빈 결과 대신 0을 돌려주게 하기 위함이다.
    """
    bucket = "prediction_service_prediction_quality_distribution_bucket"
    good_expression = (
        f'sum(increase({bucket}{{le="+Inf"}}[1800s]) / {rate_divisor})'
        f' - sum(increase({bucket}{{le="{bad_bucket}"}}[1800s]) / {rate_divisor})'
        " OR vector(0)"
    )
    return [
        MetricQuery(
            source_key=GOOD_PREDICTION_KEY,
            expression=good_expression,
            combine=CombinePolicy.SUM,
        ),
        MetricQuery(
            source_key=SUBSCRIPTION_COUNT_KEY,
            expression=f"{SUBSCRIPTION_COUNT_KEY} OR vector(0)",
            combine=CombinePolicy.OVERWRITE,
        ),
    ]


def load_metric_queries_file(path: Path) -> list[MetricQuery]:
    """
    metric override 파일을 읽는다.

    Expected payload shape:
    [{"key": "...", "expression": "...", "combine": "sum"}, ...]
    """
    with open(path, "r") as f:
        payload = json.load(f)

    if not isinstance(payload, list) or not payload:
        raise ValueError(f"{path.name} must contain a non-empty list.")

    metrics = [MetricQuery.from_payload(item) for item in payload]
    keys = [metric.source_key for metric in metrics]
    if len(set(keys)) != len(keys):
        raise ValueError(f"{path.name} contains duplicate metric keys.")
    return metrics


PROMETHEUS_URL = (os.getenv("PROMETHEUS_URL") or "").strip().rstrip("/")
STATIC_PATH = Path(os.getenv("STATIC_PATH") or "static_data")

HISTORY_WINDOWS = _parse_window_definitions(
    _parse_csv_env(os.getenv("HISTORY_WINDOWS"), DEFAULT_HISTORY_WINDOWS),
    env_name="HISTORY_WINDOWS",
)
HISTORY_WINDOW_NAMES = [window.name for window in HISTORY_WINDOWS]

HISTORY_SYNC_INTERVAL_SECONDS = _parse_positive_int_env(
    os.getenv("HISTORY_SYNC_INTERVAL_SECONDS"), DEFAULT_SYNC_INTERVAL_SECONDS
)
HISTORY_WINDOW_INTERVALS = {
    name: _parse_named_ints(os.getenv("HISTORY_WINDOW_INTERVALS")).get(
        name, HISTORY_SYNC_INTERVAL_SECONDS
    )
    for name in HISTORY_WINDOW_NAMES
}
HISTORY_REQUEST_TIMEOUT_SECONDS = _parse_positive_int_env(
    os.getenv("HISTORY_REQUEST_TIMEOUT_SECONDS"), DEFAULT_REQUEST_TIMEOUT_SECONDS
)

HISTORY_QUALITY_RATE_DIVISOR = (
    os.getenv("HISTORY_QUALITY_RATE_DIVISOR") or DEFAULT_QUALITY_RATE_DIVISOR
).strip()
HISTORY_QUALITY_BAD_BUCKET = (
    os.getenv("HISTORY_QUALITY_BAD_BUCKET") or DEFAULT_QUALITY_BAD_BUCKET
).strip()
HISTORY_METRICS_FILE = _parse_optional_path(os.getenv("HISTORY_METRICS_FILE"))

HISTORY_CAPTURE_DIR = _parse_optional_path(os.getenv("HISTORY_CAPTURE_DIR"))
HISTORY_REPLAY_DIR = _parse_optional_path(os.getenv("HISTORY_REPLAY_DIR"))
HISTORY_RUN_ONCE = _parse_bool_env(os.getenv("HISTORY_RUN_ONCE"), default=False)

HISTORY_FRESHNESS_SOFT = _parse_minutes_thresholds(
    os.getenv("HISTORY_FRESHNESS_SOFT_MINUTES"),
    DEFAULT_FRESHNESS_SOFT_MINUTES,
    HISTORY_WINDOW_NAMES,
)
HISTORY_FRESHNESS_HARD = _parse_minutes_thresholds(
    os.getenv("HISTORY_FRESHNESS_HARD_MINUTES"),
    DEFAULT_FRESHNESS_HARD_MINUTES,
    HISTORY_WINDOW_NAMES,
)

HISTORY_SYNC_STATE_FILE = STATIC_PATH / "history_sync_state.json"

MANAGER_STATIC_URL = (os.getenv("MANAGER_STATIC_URL") or "").strip().rstrip("/")
REPLICA_MIN_WAIT_SECONDS = _parse_positive_int_env(
    os.getenv("REPLICA_MIN_WAIT_SECONDS"), 40
)
REPLICA_MAX_WAIT_SECONDS = max(
    REPLICA_MIN_WAIT_SECONDS,
    _parse_positive_int_env(os.getenv("REPLICA_MAX_WAIT_SECONDS"), 90),
)
