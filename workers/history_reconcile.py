"""
Series reconcile logic.

Why this module exists:
- backend 응답(여러 raw series)을 metric 1개당 timestamp -> value
  단일 dense mapping으로 합치는 규칙을 한 곳에서 관리한다.
- `OR vector(0)` 응답은 0으로 채운 dense series + 실데이터 sparse series 두 개로 온다.
  overwrite 정책에서는 뒤에 오는 series가 이기므로, 기본값 series를 먼저,
  실데이터 series를 나중에 두면 실데이터가 항상 기본값을 덮어쓴다.
"""

from __future__ import annotations

import math

from utils.history_contracts import (
    MATRIX_RESULT_TYPE,
    CombinePolicy,
    MetricQuery,
    QueryStatus,
    RawQueryResult,
    ReconcileError,
    ReconcileErrorKind,
    ReconcileReport,
    WindowConfig,
)
from utils.logger import get_logger
from utils.time_alignment import detect_series_gaps

logger = get_logger(__name__)


def _parse_sample_value(raw_value: str) -> float | None:
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return None
    # NaN/Inf는 JSON으로 직렬화할 수 없으므로 drop 대상이다.
    if not math.isfinite(value):
        return None
    return value


def reconcile_with_report(
    metric: MetricQuery, result: RawQueryResult, window: WindowConfig
) -> ReconcileReport:
    """
    raw 응답을 metric의 결합 정책에 따라 dense series로 변환하고
    drop/gap 집계를 함께 반환한다.

    Called from:
    - `workers.history_snapshot.build_snapshot`

    실패(raise):
    - backend status != success -> ReconcileError(backend_status)
    - resultType != matrix -> ReconcileError(unexpected_shape)

    비치명(log only):
    - backend warnings
    - 숫자 파싱 실패 sample(drop)
    - min_expected_samples 미달 / step 간격 구멍(gap)
    """
    key = metric.source_key
    if result.status != QueryStatus.SUCCESS:
        raise ReconcileError(
            ReconcileErrorKind.BACKEND_STATUS,
            f"backend returned status={result.status.value} "
            f"error_type={result.error_type} error={result.error_detail}",
            source_key=key,
        )
    if result.result_kind != MATRIX_RESULT_TYPE:
        raise ReconcileError(
            ReconcileErrorKind.UNEXPECTED_SHAPE,
            f"resultType={result.result_kind!r}, expected {MATRIX_RESULT_TYPE!r}",
            source_key=key,
        )

    for warning in result.warnings:
        logger.warning(
            f"[History Reconcile] backend warning ({window.name} {key}): {warning}"
        )

    combined: dict[int, float] = {}
    dropped = 0
    for raw_series in result.series:
        for timestamp, raw_value in raw_series.values:
            value = _parse_sample_value(raw_value)
            if value is None:
                dropped += 1
                logger.warning(
                    f"[History Reconcile] dropped sample ({window.name} {key}): "
                    f"ts={timestamp} value={raw_value!r}"
                )
                continue

            if metric.combine == CombinePolicy.SUM and timestamp in combined:
                combined[timestamp] += value
            else:
                combined[timestamp] = value

    series = {timestamp: combined[timestamp] for timestamp in sorted(combined)}

    below_min_density = len(series) < window.min_expected_samples
    if below_min_density:
        logger.warning(
            f"[History Reconcile] gap warning ({window.name} {key}): "
            f"samples={len(series)} < expected={window.min_expected_samples}"
        )

    gaps = detect_series_gaps(list(series), window.step)
    for gap in gaps:
        logger.warning(
            f"[History Reconcile] gap window ({window.name} {key}): "
            f"start={gap.start} end={gap.end} missing={gap.missing_count}"
        )

    return ReconcileReport(
        source_key=key,
        series=series,
        dropped_samples=dropped,
        below_min_density=below_min_density,
        gap_count=len(gaps),
    )
