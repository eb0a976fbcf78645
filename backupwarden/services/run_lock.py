from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO

from backupwarden.core.errors import LockHeldError


logger = logging.getLogger(__name__)


class RunLock:
    """Non-blocking, process-scoped exclusive lock on a file.

    Backed by ``flock`` on an open descriptor, so the kernel releases it when
    the process exits by any path, including SIGKILL.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._handle: IO[str] | None = None

    @property
    def acquired(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        if self._handle is not None:
            return True
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            logger.info("run_lock_held path=%s", self._path)
            return False
        except OSError:
            handle.close()
            raise
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("run_lock_acquired path=%s pid=%s", self._path, os.getpid())
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> RunLock:
        if not self.acquire():
            raise LockHeldError(f"run lock held by another process: {self._path}")
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
