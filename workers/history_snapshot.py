"""
History snapshot build/export logic.

Why this module exists:
- window 1개에 대한 sync pass(fetch -> reconcile -> 조립 -> 저장)를 한 곳에서 관리한다.
- 저장 정책은 all-or-nothing이다. 일부 metric만 새로 갱신된 snapshot은
  전부 오래됐지만 내부적으로 일관된 snapshot보다 나쁘므로,
  하나라도 실패하면 파일을 건드리지 않는다.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from utils.file_io import atomic_write_json
from utils.history_contracts import (
    BuildError,
    BuildErrorKind,
    FetchError,
    MetricQuery,
    ReconcileError,
    ReconcileReport,
    SnapshotBuildResult,
    WindowConfig,
)
from utils.logger import get_logger
from workers.history_reconcile import reconcile_with_report

logger = get_logger(__name__)


def snapshot_path(static_dir: Path, window: WindowConfig) -> Path:
    return Path(static_dir) / window.snapshot_filename


def serialize_snapshot(snapshot: dict[str, dict[int, float]]) -> dict:
    """
    `{source_key: {"<timestamp>": value}}` 파일 포맷으로 변환한다.
    timestamp 순서를 고정해 같은 입력이면 같은 바이트가 나오게 한다.
    """
    return {
        key: {str(timestamp): series[timestamp] for timestamp in sorted(series)}
        for key, series in snapshot.items()
    }


def build_snapshot(
    window: WindowConfig,
    metrics: list[MetricQuery],
    *,
    fetcher,
    static_dir: Path,
    now: datetime | None = None,
) -> SnapshotBuildResult:
    """
    window 1개의 sync pass를 실행하고, 전부 성공하면 snapshot 파일을 교체한다.

    Called from:
    - `scripts.history_worker.run_window_pass`

    실패 시 BuildError(partial_failure, failed_key)를 던지며 파일은 그대로 남는다.
    """
    if not metrics:
        raise ValueError(f"No metric queries configured for window {window.name!r}.")

    resolved_now = now or datetime.now(timezone.utc)
    start = resolved_now - window.lookback
    end = resolved_now

    snapshot: dict[str, dict[int, float]] = {}
    reports: dict[str, ReconcileReport] = {}
    for metric in metrics:
        try:
            raw_result = fetcher.fetch(
                metric.expression,
                start,
                end,
                window.step,
                source_key=metric.source_key,
            )
            report = reconcile_with_report(metric, raw_result, window)
        except (FetchError, ReconcileError) as e:
            raise BuildError(
                BuildErrorKind.PARTIAL_FAILURE,
                f"window={window.name} key={metric.source_key}: {e}",
                window=window.name,
                failed_key=metric.source_key,
                cause=e,
            ) from e

        snapshot[metric.source_key] = report.series
        reports[metric.source_key] = report
        if report.dropped_samples:
            logger.warning(
                f"[History Snapshot] {window.name} {metric.source_key}: "
                f"dropped_samples={report.dropped_samples}"
            )

    path = snapshot_path(static_dir, window)
    atomic_write_json(path, serialize_snapshot(snapshot))
    sample_counts = {key: len(series) for key, series in snapshot.items()}
    logger.info(
        f"[History Snapshot] synced {window.name} history: path={path} "
        f"samples={sample_counts}"
    )

    return SnapshotBuildResult(
        window=window.name,
        path=str(path),
        snapshot=snapshot,
        reports=reports,
        built_at=resolved_now,
    )
