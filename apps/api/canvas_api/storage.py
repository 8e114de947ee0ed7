from __future__ import annotations

import fcntl
import json
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator


def iso_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=path.name, text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=True, indent=2)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def read_json(path: Path, default: Any = None) -> Any:
    if not path.exists():
        return default
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


@contextmanager
def file_lock(path: Path, timeout: float = 30.0, poll_interval: float = 0.05) -> Iterator[None]:
    """
    Hold an exclusive advisory lock on ``path`` for the duration of the block.

    The lock is taken with a non-blocking ``flock`` polled until ``timeout``
    elapses, after which ``TimeoutError`` is raised. Every ``open`` gets its
    own lock owner, so threads of one process exclude each other as well.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = open(path, "a")
    start = time.monotonic()
    try:
        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - start >= timeout:
                    raise TimeoutError(f"Could not acquire lock on {path} after {timeout} seconds")
                time.sleep(poll_interval)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()
