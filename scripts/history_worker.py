"""
History sync worker (scheduler).

Why this file exists:
- window(day/week)마다 독립된 반복 작업을 돌려, 한 window의 backend 장애가
  다른 window의 주기를 멈추지 않게 한다.
- 실패한 pass는 로그와 상태 파일에만 남기고, 다음 tick이 자연스럽게 재시도한다.
  tick 사이 backoff는 두지 않는다(고정 주기가 곧 재시도 주기).

per-window 상태: idle -> fetching -> (succeeded | failed) -> idle
"""

from __future__ import annotations

import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable

from utils.config import (
    HISTORY_CAPTURE_DIR,
    HISTORY_METRICS_FILE,
    HISTORY_QUALITY_BAD_BUCKET,
    HISTORY_QUALITY_RATE_DIVISOR,
    HISTORY_REPLAY_DIR,
    HISTORY_REQUEST_TIMEOUT_SECONDS,
    HISTORY_RUN_ONCE,
    HISTORY_SYNC_STATE_FILE,
    HISTORY_WINDOW_INTERVALS,
    HISTORY_WINDOWS,
    PROMETHEUS_URL,
    STATIC_PATH,
    build_default_metric_queries,
    load_metric_queries_file,
)
from utils.history_contracts import (
    BuildError,
    MetricQuery,
    SnapshotBuildResult,
    WindowConfig,
    WindowSyncState,
)
from utils.history_sync_state import HistorySyncStateStore
from utils.logger import get_logger
from workers.history_fetch import create_range_fetcher
from workers.history_snapshot import build_snapshot

logger = get_logger(__name__)

MIN_SLEEP_SECONDS = 1.0


def run_window_pass(
    window: WindowConfig,
    metrics: list[MetricQuery],
    *,
    fetcher,
    static_dir: Path,
    state_store: HistorySyncStateStore | None = None,
    now: datetime | None = None,
) -> SnapshotBuildResult | None:
    """
    window 1개의 sync pass를 실행한다. 실패는 여기서 흡수하고 None을 반환한다.

    Called from:
    - `HistoryScheduler.run_tick`
    - run-once 모드
    """
    logger.info(f"[Scheduler] syncing {window.name} history...")
    try:
        result = build_snapshot(
            window,
            metrics,
            fetcher=fetcher,
            static_dir=static_dir,
            now=now,
        )
    except BuildError as e:
        logger.warning(
            f"[Scheduler] could not sync {window.name} history "
            f"(failed_key={e.failed_key}): {e.cause or e}. "
            "previous snapshot is kept."
        )
        if state_store is not None:
            state_store.record_failure(window.name, error=str(e.cause or e))
        return None

    if state_store is not None:
        state_store.record_success(
            window.name,
            sample_counts=result.sample_counts,
            gap_warning_keys=result.gap_warning_keys,
        )
    return result


class HistoryScheduler:
    """
    window별 thread를 관리하는 scheduler.

    - fetcher는 window thread마다 `fetcher_factory`로 따로 만든다.
      서로 다른 window의 pass가 HTTP session을 공유하지 않는다.
    """

    def __init__(
        self,
        windows: list[WindowConfig],
        metrics: list[MetricQuery],
        *,
        fetcher_factory: Callable[[], object],
        static_dir: Path,
        intervals: dict[str, float],
        state_store: HistorySyncStateStore | None = None,
    ):
        self._windows = list(windows)
        self._metrics = list(metrics)
        self._fetcher_factory = fetcher_factory
        self._static_dir = Path(static_dir)
        self._intervals = dict(intervals)
        self._state_store = state_store
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._states_lock = threading.Lock()
        self._states = {window.name: WindowSyncState.IDLE for window in windows}
        self._tick_counts = {window.name: 0 for window in windows}

    def state_of(self, window_name: str) -> WindowSyncState:
        with self._states_lock:
            return self._states[window_name]

    def tick_count(self, window_name: str) -> int:
        with self._states_lock:
            return self._tick_counts[window_name]

    def _set_state(self, window_name: str, state: WindowSyncState) -> None:
        with self._states_lock:
            self._states[window_name] = state

    def run_tick(self, window: WindowConfig, fetcher) -> bool:
        """
        tick 1회. 어떤 예외도 밖으로 내보내지 않는다.
        """
        self._set_state(window.name, WindowSyncState.FETCHING)
        try:
            result = run_window_pass(
                window,
                self._metrics,
                fetcher=fetcher,
                static_dir=self._static_dir,
                state_store=self._state_store,
            )
            succeeded = result is not None
        except Exception as e:
            # 설정/파일 시스템 오류 등 예상 밖 실패도 다음 tick은 막지 않는다.
            logger.error(f"[Scheduler] {window.name} history pass error: {e}")
            succeeded = False

        self._set_state(
            window.name,
            WindowSyncState.SUCCEEDED if succeeded else WindowSyncState.FAILED,
        )
        with self._states_lock:
            self._tick_counts[window.name] += 1
        self._set_state(window.name, WindowSyncState.IDLE)
        return succeeded

    def _run_window_loop(self, window: WindowConfig) -> None:
        interval = self._intervals.get(window.name, 60)
        fetcher = None
        try:
            while not self._stop_event.is_set():
                tick_start = time.time()
                if fetcher is None:
                    try:
                        fetcher = self._fetcher_factory()
                    except Exception as e:
                        # 생성 실패도 window 주기를 끊지 않는다. 다음 tick에 다시 만든다.
                        logger.error(
                            f"[Scheduler] {window.name} fetcher setup error: {e}"
                        )
                if fetcher is not None:
                    self.run_tick(window, fetcher)

                elapsed = time.time() - tick_start
                sleep_for = max(MIN_SLEEP_SECONDS, interval - elapsed)
                self._stop_event.wait(sleep_for)
        finally:
            if fetcher is not None:
                fetcher.close()

    def start(self) -> None:
        logger.info(
            f"[Scheduler] started. windows={[w.name for w in self._windows]}, "
            f"intervals={self._intervals}"
        )
        for window in self._windows:
            thread = threading.Thread(
                target=self._run_window_loop,
                args=(window,),
                name=f"history-{window.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)


def resolve_metric_queries() -> list[MetricQuery]:
    if HISTORY_METRICS_FILE is not None:
        logger.info(f"[Scheduler] metric queries from {HISTORY_METRICS_FILE}")
        return load_metric_queries_file(HISTORY_METRICS_FILE)
    return build_default_metric_queries(
        rate_divisor=HISTORY_QUALITY_RATE_DIVISOR,
        bad_bucket=HISTORY_QUALITY_BAD_BUCKET,
    )


def _make_fetcher():
    return create_range_fetcher(
        PROMETHEUS_URL,
        timeout_seconds=HISTORY_REQUEST_TIMEOUT_SECONDS,
        capture_dir=HISTORY_CAPTURE_DIR,
        replay_dir=HISTORY_REPLAY_DIR,
    )


def run_history_worker() -> None:
    if not PROMETHEUS_URL and HISTORY_REPLAY_DIR is None:
        logger.warning("PROMETHEUS_URL is not set, history will not be synced.")
        return

    metrics = resolve_metric_queries()
    state_store = HistorySyncStateStore(HISTORY_SYNC_STATE_FILE)

    if HISTORY_RUN_ONCE:
        fetcher = _make_fetcher()
        try:
            for window in HISTORY_WINDOWS:
                run_window_pass(
                    window,
                    metrics,
                    fetcher=fetcher,
                    static_dir=STATIC_PATH,
                    state_store=state_store,
                )
        finally:
            fetcher.close()
        return

    scheduler = HistoryScheduler(
        HISTORY_WINDOWS,
        metrics,
        fetcher_factory=_make_fetcher,
        static_dir=STATIC_PATH,
        intervals=HISTORY_WINDOW_INTERVALS,
        state_store=state_store,
    )
    scheduler.start()
    try:
        scheduler.join()
    except KeyboardInterrupt:
        logger.info("[Scheduler] shutdown requested.")
        scheduler.stop()
        scheduler.join(timeout=5)


if __name__ == "__main__":
    run_history_worker()
