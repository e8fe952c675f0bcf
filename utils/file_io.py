import json
import os
import tempfile
from pathlib import Path
from typing import Any


def _atomic_replace(file_path: Path, write_body) -> None:
    """
    같은 디렉터리에 임시 파일을 쓰고 os.replace로 교체한다.
    읽는 쪽은 이전 파일 또는 완성된 새 파일만 보게 된다.
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=str(file_path.parent), prefix=f".{file_path.name}."
    )
    try:
        with os.fdopen(fd, "wb") as temp_file:
            write_body(temp_file)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        os.replace(temp_path, file_path)
        os.chmod(file_path, 0o644)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def atomic_write_json(
    path: str | Path, payload: Any, indent: int | None = None
) -> None:
    """
    snapshot/state JSON을 원자적으로 저장한다.
    직렬화 실패 시 기존 파일은 그대로 남는다.
    """
    # 직렬화를 먼저 끝내야 실패해도 임시 파일만 정리하고 끝난다.
    body = json.dumps(payload, indent=indent).encode("utf-8")
    _atomic_replace(Path(path), lambda f: f.write(body))


def atomic_write_bytes(path: str | Path, body: bytes) -> None:
    """replica pull로 받은 원본 바이트를 그대로 교체 저장한다."""
    _atomic_replace(Path(path), lambda f: f.write(body))
