"""
Range query fetch logic.

Why this module exists:
- metrics backend 호출(HTTP)과 응답 schema 검증을 한 곳에 두어
  reconcile/snapshot 단계가 네트워크 세부 사항을 모르게 한다.
- 재시도는 하지 않는다. 다음 scheduler tick이 재시도 역할을 한다.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path

import requests

from utils.file_io import atomic_write_json
from utils.history_contracts import (
    FetchError,
    FetchErrorKind,
    QueryStatus,
    RawQueryResult,
)
from utils.logger import get_logger
from utils.time_alignment import format_step, to_epoch_seconds

logger = get_logger(__name__)

QUERY_RANGE_PATH = "/api/v1/query_range"


def build_range_query_form(
    expression: str, start: datetime, end: datetime, step: timedelta
) -> dict[str, str]:
    """
    range query form body를 만든다.
    expression은 괄호로 감싸 `OR vector(0)` 같은 접미 연산이 전체에 걸리게 한다.
    """
    return {
        "query": f"({expression})",
        "start": str(to_epoch_seconds(start)),
        "end": str(to_epoch_seconds(end)),
        "step": format_step(step),
    }


class RangeFetcher:
    """
    windowed range query 1건을 실행하는 fetcher. 상태는 없다.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30,
        session: requests.Session | None = None,
    ):
        self._url = base_url.rstrip("/") + QUERY_RANGE_PATH
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def fetch(
        self,
        expression: str,
        start: datetime,
        end: datetime,
        step: timedelta,
        *,
        source_key: str = "",
    ) -> RawQueryResult:
        form = build_range_query_form(expression, start, end, step)
        try:
            response = self._session.post(
                self._url, data=form, timeout=self._timeout
            )
        except requests.RequestException as e:
            raise FetchError(
                FetchErrorKind.TRANSPORT,
                f"range query request failed: {e}",
                expression=expression,
            ) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(
                FetchErrorKind.DECODE,
                f"response body is not JSON (http_status={response.status_code})",
                expression=expression,
            ) from e

        result = decode_range_payload(payload, expression=expression)
        if response.status_code >= 400 and result.status == QueryStatus.SUCCESS:
            # HTTP 오류인데 success envelope인 응답은 신뢰하지 않는다.
            raise FetchError(
                FetchErrorKind.DECODE,
                f"success envelope with http_status={response.status_code}",
                expression=expression,
            )
        self._after_decode(source_key, payload)
        return result

    def _after_decode(self, source_key: str, payload) -> None:
        """decode 성공 직후 hook. 기본은 아무것도 하지 않는다."""

    def close(self) -> None:
        self._session.close()


def decode_range_payload(payload, *, expression: str = "") -> RawQueryResult:
    try:
        return RawQueryResult.from_payload(payload)
    except ValueError as e:
        raise FetchError(
            FetchErrorKind.DECODE,
            f"unexpected response schema: {e}",
            expression=expression,
        ) from e


def _debug_file(directory: Path, source_key: str) -> Path:
    return directory / f"debug_{source_key}.json"


class CapturingRangeFetcher(RangeFetcher):
    """
    decode된 원본 응답을 `debug_<key>.json`으로 함께 저장한다.
    저장 실패는 fetch 결과에 영향을 주지 않는다.
    """

    def __init__(self, base_url: str, capture_dir: Path, **kwargs):
        super().__init__(base_url, **kwargs)
        self._capture_dir = Path(capture_dir)

    def _after_decode(self, source_key: str, payload) -> None:
        if not source_key:
            return
        path = _debug_file(self._capture_dir, source_key)
        try:
            atomic_write_json(path, payload)
        except (OSError, TypeError) as e:
            logger.warning(f"[History Fetch] capture failed for {source_key}: {e}")


class ReplayRangeFetcher:
    """
    backend 대신 캡처해 둔 `debug_<key>.json`을 응답으로 사용한다(로컬 디버깅용).
    """

    def __init__(self, replay_dir: Path):
        self._replay_dir = Path(replay_dir)

    def fetch(
        self,
        expression: str,
        start: datetime,
        end: datetime,
        step: timedelta,
        *,
        source_key: str = "",
    ) -> RawQueryResult:
        path = _debug_file(self._replay_dir, source_key)
        try:
            with open(path, "r") as f:
                payload = json.load(f)
        except OSError as e:
            raise FetchError(
                FetchErrorKind.TRANSPORT,
                f"replay file unreadable: {path.name}: {e}",
                expression=expression,
            ) from e
        except json.JSONDecodeError as e:
            raise FetchError(
                FetchErrorKind.DECODE,
                f"replay file is not JSON: {path.name}",
                expression=expression,
            ) from e
        return decode_range_payload(payload, expression=expression)

    def close(self) -> None:
        return None


def create_range_fetcher(
    base_url: str,
    *,
    timeout_seconds: float,
    capture_dir: Path | None = None,
    replay_dir: Path | None = None,
):
    """
    설정에 맞는 fetcher를 고른다. replay가 capture보다 우선한다.

    Called from:
    - `scripts.history_worker.run_history_worker`
    """
    if replay_dir is not None:
        logger.info(f"[History Fetch] replay mode: {replay_dir}")
        return ReplayRangeFetcher(replay_dir)
    if capture_dir is not None:
        logger.info(f"[History Fetch] capture mode: {capture_dir}")
        return CapturingRangeFetcher(
            base_url, capture_dir, timeout_seconds=timeout_seconds
        )
    return RangeFetcher(base_url, timeout_seconds=timeout_seconds)
