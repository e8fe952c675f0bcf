"""
History sync contracts (DTO + Enum + Error).

Why this module exists:
- fetch/reconcile/snapshot 단계가 주고받는 값을 명시적인 타입으로 고정해
  dict 키 오타와 실패 분기 누락을 줄인다.
- 실패 종류를 Enum으로 모델링해 "한 metric 실패 = pass 전체 중단"
  정책을 호출자가 일관되게 적용하도록 한다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

UTC_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
MATRIX_RESULT_TYPE = "matrix"


def format_utc_datetime(value: datetime | None) -> str | None:
    """
    datetime을 프로젝트 표준 UTC 문자열로 직렬화한다.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        normalized = value.replace(tzinfo=timezone.utc)
    else:
        normalized = value.astimezone(timezone.utc)
    return normalized.strftime(UTC_DATETIME_FORMAT)


class CombinePolicy(str, Enum):
    """
    같은 timestamp에 값이 여러 번 들어올 때의 결합 규칙.

    - sum: 기존 값에 더한다(부분 집계 series 합산).
    - overwrite: 나중에 들어온 값이 이긴다(기본값 series 위에 실데이터 덮어쓰기).
    """

    SUM = "sum"
    OVERWRITE = "overwrite"


class QueryStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class FetchErrorKind(str, Enum):
    TRANSPORT = "transport"
    DECODE = "decode"


class ReconcileErrorKind(str, Enum):
    BACKEND_STATUS = "backend_status"
    UNEXPECTED_SHAPE = "unexpected_shape"


class BuildErrorKind(str, Enum):
    PARTIAL_FAILURE = "partial_failure"


class WindowSyncState(str, Enum):
    """
    window별 scheduler 상태.
    idle -> fetching -> (succeeded | failed) -> idle
    """

    IDLE = "idle"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class HistorySyncError(Exception):
    """history sync 계층 공통 예외."""

    def __init__(self, kind: Enum, message: str):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message


class FetchError(HistorySyncError):
    def __init__(self, kind: FetchErrorKind, message: str, *, expression: str = ""):
        super().__init__(kind, message)
        self.expression = expression


class ReconcileError(HistorySyncError):
    def __init__(
        self, kind: ReconcileErrorKind, message: str, *, source_key: str = ""
    ):
        super().__init__(kind, message)
        self.source_key = source_key


class BuildError(HistorySyncError):
    def __init__(
        self,
        kind: BuildErrorKind,
        message: str,
        *,
        window: str,
        failed_key: str,
        cause: HistorySyncError | None = None,
    ):
        super().__init__(kind, message)
        self.window = window
        self.failed_key = failed_key
        self.cause = cause


@dataclass(frozen=True)
class MetricQuery:
    """
    동기화 대상 metric 1개.
    """

    source_key: str
    expression: str
    combine: CombinePolicy

    @classmethod
    def from_payload(cls, payload: dict) -> "MetricQuery":
        """
        설정 파일 row(`{"key", "expression", "combine"}`)를 DTO로 변환한다.
        """
        if not isinstance(payload, dict):
            raise ValueError("Metric definition must be an object.")
        source_key = payload.get("key")
        expression = payload.get("expression")
        if not isinstance(source_key, str) or not source_key:
            raise ValueError("Metric definition requires a non-empty 'key'.")
        if not isinstance(expression, str) or not expression:
            raise ValueError(
                f"Metric definition {source_key!r} requires a non-empty 'expression'."
            )
        try:
            combine = CombinePolicy(payload.get("combine", "overwrite"))
        except ValueError as e:
            raise ValueError(
                f"Metric definition {source_key!r} has unknown combine policy: "
                f"{payload.get('combine')!r}"
            ) from e
        return cls(source_key=source_key, expression=expression, combine=combine)


@dataclass(frozen=True)
class WindowConfig:
    """
    이름 있는 rolling window(day/week) 설정.

    lookback / step ~= min_expected_samples 이지만 밀도 점검용일 뿐
    강제 조건은 아니다.
    """

    name: str
    lookback: timedelta
    step: timedelta
    min_expected_samples: int

    @property
    def snapshot_filename(self) -> str:
        return f"{self.name}-history.json"


@dataclass(frozen=True)
class RawSeries:
    labels: dict[str, str]
    values: list[tuple[int, str]]


@dataclass(frozen=True)
class RawQueryResult:
    """
    range query 응답 1건. 저장되지 않고 pass 안에서만 쓰인다.
    """

    status: QueryStatus
    result_kind: str
    series: list[RawSeries] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_type: str | None = None
    error_detail: str | None = None

    @classmethod
    def from_payload(cls, payload) -> "RawQueryResult":
        """
        backend JSON 응답을 DTO로 역직렬화한다.

        Expected payload shape:
        {
          "status": "success",
          "data": {"resultType": "matrix", "result": [
            {"metric": {...}, "values": [[1685888801, "0"], ...]}
          ]},
          "warnings": ["..."]
        }

        schema 위반 시 ValueError를 던지고, 호출자가 decode 오류로 변환한다.
        """
        if not isinstance(payload, dict):
            raise ValueError("response body is not a JSON object")

        try:
            status = QueryStatus(payload.get("status"))
        except ValueError as e:
            raise ValueError(f"unknown status: {payload.get('status')!r}") from e

        raw_warnings = payload.get("warnings") or []
        if not isinstance(raw_warnings, list):
            raise ValueError("warnings is not a list")
        warnings = [str(w) for w in raw_warnings]

        error_type = payload.get("errorType")
        error_detail = payload.get("error")

        if status == QueryStatus.ERROR:
            # error 응답의 data는 없거나 비어 있다. 내용은 보지 않는다.
            return cls(
                status=status,
                result_kind="",
                warnings=warnings,
                error_type=error_type if isinstance(error_type, str) else None,
                error_detail=error_detail if isinstance(error_detail, str) else None,
            )

        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValueError("data is not an object")

        result_kind = data.get("resultType")
        if not isinstance(result_kind, str):
            raise ValueError("data.resultType is not a string")

        series: list[RawSeries] = []
        raw_result = data.get("result") or []
        if result_kind == MATRIX_RESULT_TYPE:
            if not isinstance(raw_result, list):
                raise ValueError("data.result is not a list")
            series = [_parse_raw_series(item) for item in raw_result]

        return cls(
            status=status,
            result_kind=result_kind,
            series=series,
            warnings=warnings,
            error_type=error_type if isinstance(error_type, str) else None,
            error_detail=error_detail if isinstance(error_detail, str) else None,
        )


def _parse_raw_series(item) -> RawSeries:
    if not isinstance(item, dict):
        raise ValueError("result item is not an object")

    raw_labels = item.get("metric") or {}
    if not isinstance(raw_labels, dict):
        raise ValueError("result item metric is not an object")

    raw_values = item.get("values") or []
    if not isinstance(raw_values, list):
        raise ValueError("result item values is not a list")

    values: list[tuple[int, str]] = []
    for point in raw_values:
        if not isinstance(point, (list, tuple)) or len(point) != 2:
            raise ValueError(f"malformed sample pair: {point!r}")
        raw_ts, raw_value = point
        if isinstance(raw_ts, bool) or not isinstance(raw_ts, (int, float)):
            raise ValueError(f"sample timestamp is not a number: {raw_ts!r}")
        # value 파싱은 reconcile 단계에서 point 단위로 처리한다.
        values.append((int(raw_ts), str(raw_value)))

    return RawSeries(
        labels={str(k): str(v) for k, v in raw_labels.items()},
        values=values,
    )


@dataclass(frozen=True)
class ReconcileReport:
    """
    reconcile 결과 + 비치명 경고 집계.
    """

    source_key: str
    series: dict[int, float]
    dropped_samples: int
    below_min_density: bool
    gap_count: int


@dataclass(frozen=True)
class SnapshotBuildResult:
    """
    성공한 pass 1회의 결과.
    """

    window: str
    path: str
    snapshot: dict[str, dict[int, float]]
    reports: dict[str, ReconcileReport]
    built_at: datetime

    @property
    def gap_warning_keys(self) -> list[str]:
        return [
            key
            for key, report in self.reports.items()
            if report.below_min_density or report.gap_count > 0
        ]

    @property
    def sample_counts(self) -> dict[str, int]:
        return {key: len(series) for key, series in self.snapshot.items()}
