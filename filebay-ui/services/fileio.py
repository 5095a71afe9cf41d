"""Small file primitives shared by the services: flock helpers and atomic writes."""

from __future__ import annotations

import fcntl
import json
import os
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Union


@contextmanager
def file_lock(path: str, *, shared: bool = False) -> Iterator[None]:
    """Hold an flock on ``path`` (created if missing) for the block.

    flock locks belong to the open file description, so this serializes both
    threads and processes. A lock file may be unlinked by whoever holds it;
    a waiter that then wakes up on the stale inode retries on the new file.
    """
    d = os.path.dirname(path)
    if d:
        os.makedirs(d, exist_ok=True)
    while True:
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        except BaseException:
            os.close(fd)
            raise
        if _same_file(fd, path):
            break
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
    try:
        yield
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _same_file(fd: int, path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    held = os.fstat(fd)
    return (st.st_dev, st.st_ino) == (held.st_dev, held.st_ino)


def atomic_write(path: str, data: Union[str, bytes], *, mode: int = 0o600) -> None:
    """Write ``data`` to a temp file next to ``path`` and replace ``path`` with it."""
    d = os.path.dirname(path)
    if d and not os.path.isdir(d):
        os.makedirs(d, exist_ok=True)
    raw = data.encode("utf-8") if isinstance(data, str) else data
    tmp = f"{path}.tmp.{uuid.uuid4().hex}"
    try:
        with open(tmp, "wb") as f:
            f.write(raw)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except OSError:
            pass
        raise


def read_json(path: str, default: Any) -> Any:
    """Load a JSON document; a missing or empty file yields ``default``.

    Malformed JSON raises ``ValueError`` so callers decide how to recover.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError:
        return default
    if not text.strip():
        return default
    return json.loads(text)


def write_json(path: str, data: Any, *, mode: int = 0o600) -> None:
    atomic_write(path, json.dumps(data, ensure_ascii=False, indent=2) + "\n", mode=mode)
