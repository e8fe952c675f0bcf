"""
Replica pull worker.

Why this file exists:
- worker 노드는 manager가 만든 snapshot 파일을 주기적으로 받아 같은 경로로 서빙한다.
- 받아 온 본문이 JSON으로 읽히지 않으면 교체하지 않는다.
  기존 로컬 사본이 부분 전송 파일보다 낫다.
- 호출 간격은 40~90초 사이 무작위로 둬서 manager 부하를 분산한다.
"""

from __future__ import annotations

import json
import random
import threading
from pathlib import Path

import requests

from utils.config import (
    HISTORY_WINDOW_NAMES,
    MANAGER_STATIC_URL,
    REPLICA_MAX_WAIT_SECONDS,
    REPLICA_MIN_WAIT_SECONDS,
    STATIC_PATH,
)
from utils.file_io import atomic_write_bytes
from utils.logger import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT_SECONDS = 10
SYNC_STATE_FILENAME = "history_sync_state.json"


def replica_filenames(window_names: list[str]) -> list[str]:
    return [f"{name}-history.json" for name in window_names] + [SYNC_STATE_FILENAME]


def fetch_file(session, url: str, path: Path) -> bool:
    """
    파일 1개를 받아 원자적으로 교체한다. 실패 시 False(기존 파일 유지).
    """
    try:
        response = session.get(url, timeout=REQUEST_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        logger.warning(f"[Replica Sync] could not fetch {url}: {e}")
        return False

    if response.status_code != 200:
        logger.warning(
            f"[Replica Sync] bad status for {url}: {response.status_code}"
        )
        return False

    body = response.content
    try:
        json.loads(body)
    except ValueError as e:
        logger.warning(f"[Replica Sync] invalid JSON from {url}: {e}")
        return False

    atomic_write_bytes(path, body)
    return True


def run_replica_cycle(
    session,
    base_url: str,
    static_dir: Path,
    filenames: list[str],
) -> dict[str, bool]:
    """
    Called from:
    - `run_replica_sync` loop
    """
    results: dict[str, bool] = {}
    for filename in filenames:
        url = f"{base_url.rstrip('/')}/{filename}"
        try:
            results[filename] = fetch_file(session, url, Path(static_dir) / filename)
        except OSError as e:
            logger.error(f"[Replica Sync] could not write {filename}: {e}")
            results[filename] = False

    fetched = sum(1 for ok in results.values() if ok)
    logger.info(f"[Replica Sync] file sync done. fetched={fetched}/{len(results)}")
    return results


def next_wait_seconds(
    min_seconds: int = REPLICA_MIN_WAIT_SECONDS,
    max_seconds: int = REPLICA_MAX_WAIT_SECONDS,
) -> float:
    return random.uniform(min_seconds, max_seconds)


def run_replica_sync(stop_event: threading.Event | None = None) -> None:
    if not MANAGER_STATIC_URL:
        raise RuntimeError("MANAGER_STATIC_URL is not set.")

    resolved_stop = stop_event or threading.Event()
    filenames = replica_filenames(HISTORY_WINDOW_NAMES)
    logger.info(
        f"[Replica Sync] started. source={MANAGER_STATIC_URL}, files={filenames}"
    )

    with requests.Session() as session:
        while not resolved_stop.is_set():
            try:
                run_replica_cycle(session, MANAGER_STATIC_URL, STATIC_PATH, filenames)
            except Exception as e:
                logger.error(f"Replica sync cycle error: {e}")
            resolved_stop.wait(next_wait_seconds())


if __name__ == "__main__":
    run_replica_sync()
