import json
import os
import socket
import subprocess
import sys
import time
from pathlib import Path

import pytest

from handoff.errors import LockTimeoutError
from handoff.state.locks import FileLockManager


def _write_marker(path: Path, **overrides) -> None:
    marker = {
        "owner_id": "someone-else",
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "resource": "res",
        "acquired_at": time.time(),
        "expires_at": time.time() + 60,
    }
    marker.update(overrides)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(marker), encoding="utf-8")


def test_acquire_and_release_roundtrip(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path / "locks")

    handle = locks.acquire("context:active", timeout=1.0)

    assert handle.lock_file.exists()
    assert locks.owner("context:active")["owner_id"] == handle.owner_id
    locks.release(handle)
    assert not handle.lock_file.exists()
    assert locks.owner("context:active") is None


def test_second_acquire_times_out_without_sleeping_past_deadline(tmp_path: Path) -> None:
    now = [100.0]
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    locks = FileLockManager(
        tmp_path / "locks",
        poll_initial_seconds=0.1,
        poll_max_seconds=0.4,
        clock=lambda: now[0],
        sleep=fake_sleep,
    )
    locks.acquire("res", timeout=1.0)

    with pytest.raises(LockTimeoutError) as excinfo:
        locks.acquire("res", timeout=1.0)

    assert excinfo.value.retriable is True
    assert sleeps[:3] == pytest.approx([0.1, 0.2, 0.4])
    assert max(sleeps) <= 0.4
    assert sum(sleeps) == pytest.approx(1.0)


def test_release_ignores_foreign_owner(tmp_path: Path, caplog) -> None:
    locks = FileLockManager(tmp_path / "locks")
    handle = locks.acquire("res", timeout=1.0)
    _write_marker(handle.lock_file, owner_id="intruder")

    locks.release(handle)

    assert handle.lock_file.exists()
    assert "now owned by intruder" in caplog.text


def test_expired_marker_is_reclaimed(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path / "locks")
    _write_marker(locks.lock_path("res"), expires_at=time.time() - 1)

    handle = locks.acquire("res", timeout=0.5)

    assert locks.owner("res")["owner_id"] == handle.owner_id
    assert not list((tmp_path / "locks").glob("*.stale-*"))


def test_marker_of_dead_process_is_reclaimed(tmp_path: Path) -> None:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    locks = FileLockManager(tmp_path / "locks")
    _write_marker(locks.lock_path("res"), pid=proc.pid)

    handle = locks.acquire("res", timeout=0.5)

    assert handle.owner_id == locks.owner("res")["owner_id"]


def test_live_marker_within_ttl_is_respected(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path / "locks", poll_initial_seconds=0.01, poll_max_seconds=0.02)
    _write_marker(locks.lock_path("res"))

    with pytest.raises(LockTimeoutError):
        locks.acquire("res", timeout=0.05)


def test_hold_releases_on_exception(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path / "locks")

    with pytest.raises(ValueError):
        with locks.hold("res", timeout=1.0):
            raise ValueError("boom")

    assert locks.owner("res") is None


def test_with_lock_returns_result(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path / "locks")

    assert locks.with_lock("res", lambda: 42, timeout=1.0) == 42
    assert locks.owner("res") is None


def test_ttl_overrides_default_expiry(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path / "locks", stale_after_seconds=1.0)

    handle = locks.acquire("slot", timeout=1.0, ttl=3600.0)

    assert handle.expires_at - handle.acquired_at == pytest.approx(3600.0)
    assert handle.expired(now=handle.acquired_at + 10.0) is False
    assert handle.expired(now=handle.expires_at) is True
    locks.release(handle)
