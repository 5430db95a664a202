from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

import psutil

from handoff.errors import LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class LockHandle:
    resource_path: str
    owner_id: str
    acquired_at: float
    expires_at: float
    lock_file: Path

    def expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


class FileLockManager:
    """Exclusive, timeout-bounded locks over named resources.

    A lock is a marker file created with ``O_CREAT | O_EXCL`` inside
    ``lock_dir``. Markers carry their owner and expiry so that abandoned locks
    can be reclaimed by any process.
    """

    def __init__(
        self,
        lock_dir: Path,
        *,
        stale_after_seconds: float = 30.0,
        poll_initial_seconds: float = 0.02,
        poll_max_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lock_dir = lock_dir.resolve()
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.stale_after_seconds = stale_after_seconds
        self.poll_initial_seconds = max(0.001, poll_initial_seconds)
        self.poll_max_seconds = max(self.poll_initial_seconds, poll_max_seconds)
        self._clock = clock
        self._sleep = sleep
        self._host = socket.gethostname()

    def lock_path(self, resource: str) -> Path:
        digest = hashlib.sha256(resource.encode("utf-8")).hexdigest()[:32]
        return self.lock_dir / f"{digest}.lock"

    @staticmethod
    def _read_marker(path: Path) -> dict[str, Any] | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _try_create(self, path: Path, marker: dict[str, Any]) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, json.dumps(marker).encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        return True

    def _is_stale(self, path: Path, marker: dict[str, Any] | None, now: float) -> bool:
        if marker is None:
            # Marker may still be mid-write; judge by file age.
            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > self.stale_after_seconds

        expires_at = marker.get("expires_at")
        if isinstance(expires_at, (int, float)) and now >= float(expires_at):
            return True

        pid = marker.get("pid")
        if marker.get("host") == self._host and isinstance(pid, int) and pid != os.getpid():
            if not psutil.pid_exists(pid):
                return True
        return False

    def _reclaim(self, path: Path, stale_owner: str | None) -> None:
        tombstone = path.with_name(f"{path.name}.stale-{uuid4().hex[:8]}")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return
        reclaimed = self._read_marker(tombstone)
        reclaimed_owner = reclaimed.get("owner_id") if reclaimed else None
        if stale_owner is not None and reclaimed_owner != stale_owner:
            # A fresh lock was taken between the staleness check and the rename.
            try:
                os.link(tombstone, path)
            except FileExistsError:
                logger.warning("Could not restore lock %s after racing reclaim.", path.name)
        else:
            logger.warning(
                "Breaking stale lock %s (owner=%s, pid=%s)",
                path.name,
                reclaimed_owner,
                reclaimed.get("pid") if reclaimed else None,
            )
        try:
            tombstone.unlink()
        except FileNotFoundError:
            pass

    def acquire(
        self,
        resource: str,
        timeout: float,
        *,
        ttl: float | None = None,
    ) -> LockHandle:
        path = self.lock_path(resource)
        lifetime = self.stale_after_seconds if ttl is None else ttl
        owner_id = uuid4().hex
        start = self._clock()
        deadline = start + max(0.0, timeout)
        delay = self.poll_initial_seconds

        while True:
            now = self._clock()
            marker = {
                "owner_id": owner_id,
                "pid": os.getpid(),
                "host": self._host,
                "resource": resource,
                "acquired_at": now,
                "expires_at": now + lifetime,
            }
            if self._try_create(path, marker):
                logger.debug("Acquired lock %s for %s", path.name, resource)
                return LockHandle(
                    resource_path=resource,
                    owner_id=owner_id,
                    acquired_at=now,
                    expires_at=now + lifetime,
                    lock_file=path,
                )

            existing = self._read_marker(path)
            if self._is_stale(path, existing, now):
                self._reclaim(path, existing.get("owner_id") if existing else None)
                continue

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise LockTimeoutError(resource, timeout)
            self._sleep(min(delay, remaining))
            delay = min(delay * 2, self.poll_max_seconds)

    def release(self, handle: LockHandle) -> None:
        marker = self._read_marker(handle.lock_file)
        if marker is None:
            logger.warning("Lock for %s already released or reclaimed.", handle.resource_path)
            return
        if marker.get("owner_id") != handle.owner_id:
            logger.warning(
                "Not releasing lock for %s: now owned by %s.",
                handle.resource_path,
                marker.get("owner_id"),
            )
            return
        try:
            handle.lock_file.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Released lock %s for %s", handle.lock_file.name, handle.resource_path)

    def owner(self, resource: str) -> dict[str, Any] | None:
        return self._read_marker(self.lock_path(resource))

    @contextmanager
    def hold(
        self,
        resource: str,
        timeout: float,
        *,
        ttl: float | None = None,
    ) -> Iterator[LockHandle]:
        handle = self.acquire(resource, timeout, ttl=ttl)
        try:
            yield handle
        finally:
            self.release(handle)

    def with_lock(self, resource: str, fn: Callable[[], T], *, timeout: float) -> T:
        with self.hold(resource, timeout):
            return fn()
