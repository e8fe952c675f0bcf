import json
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from utils.config import (
    HISTORY_FRESHNESS_HARD,
    HISTORY_FRESHNESS_SOFT,
    HISTORY_SYNC_STATE_FILE,
    HISTORY_WINDOW_NAMES,
    STATIC_PATH,
)
from utils.history_status import evaluate_history_status
from utils.history_sync_state import load_history_sync_entries
from utils.logger import get_logger

logger = get_logger(__name__)

# worker와 같은 STATIC_PATH 볼륨을 읽는다.
STATIC_DIR = STATIC_PATH
SYNC_STATE_FILE = HISTORY_SYNC_STATE_FILE
KNOWN_WINDOWS = list(HISTORY_WINDOW_NAMES)

app = FastAPI(title="Prediction Monitor History API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_known_window(window: str) -> None:
    if window not in KNOWN_WINDOWS:
        raise HTTPException(status_code=404, detail=f"Unknown window: {window}")


def _sync_fields(window: str) -> dict:
    """
    history_sync_state.json의 window entry를 status 응답 필드로 옮긴다.
    entry가 없거나 값이 이상하면 정상(비degraded) 기본값을 쓴다.
    """
    entry = load_history_sync_entries(SYNC_STATE_FILE).get(window)
    if not isinstance(entry, dict):
        entry = {}

    try:
        failure_count = max(0, int(entry.get("consecutive_failures") or 0))
    except (TypeError, ValueError):
        failure_count = 0

    fields = {
        "degraded": entry.get("degraded") is True,
        "last_sync_success_at": entry.get("last_success_at"),
        "last_sync_failure_at": entry.get("last_failure_at"),
        "sync_failure_count": failure_count,
    }
    if fields["degraded"]:
        fields["degraded_reason"] = entry.get("last_error") or "history_sync_degraded"
    return fields


@app.get("/history/{window}")
def get_history(window: str):
    """
    window snapshot 파일 내용을 그대로 반환한다.
    """
    _require_known_window(window)
    path = STATIC_DIR / f"{window}-history.json"
    if not path.exists():
        raise HTTPException(status_code=503, detail="Not initialized yet.")

    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError:
        raise HTTPException(status_code=503, detail="Data corruption detected")
    except OSError as e:
        logger.error(f"History read error: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error")


@app.get("/status/{window}")
def check_status(window: str):
    """
    snapshot 신선도 + 최근 sync 결과
    - 파일이 없거나, 깨졌거나, hard limit을 넘기면 503
    """
    _require_known_window(window)
    try:
        snapshot = evaluate_history_status(
            window=window,
            now=datetime.now(timezone.utc),
            static_dir=STATIC_DIR,
            soft_thresholds=HISTORY_FRESHNESS_SOFT,
            hard_thresholds=HISTORY_FRESHNESS_HARD,
        )
    except Exception as e:
        logger.error(f"Status Check Error: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error")

    if snapshot.status == "missing":
        raise HTTPException(status_code=503, detail="Not initialized yet.")

    if snapshot.status == "corrupt":
        if snapshot.error_code == "json_decode_error":
            raise HTTPException(status_code=503, detail="Data corruption detected")
        raise HTTPException(status_code=503, detail="Invalid data format")

    if snapshot.status == "hard_stale":
        raise HTTPException(
            status_code=503,
            detail="History is stale beyond hard limit. "
            f"Last updated: {snapshot.updated_at}",
        )

    response = dict(
        window=window,
        status=snapshot.status,
        updated_at=snapshot.updated_at,
        age_minutes=snapshot.age_minutes,
        threshold_minutes=dict(
            soft=snapshot.soft_limit_minutes, hard=snapshot.hard_limit_minutes
        ),
        metrics=list(snapshot.metric_keys),
        **_sync_fields(window),
    )
    if snapshot.status == "stale":
        response["warning"] = "History is stale but within soft-stale tolerance."
    return response


@app.get("/")
def health_check():
    return {"status": "ok", "windows": KNOWN_WINDOWS}
