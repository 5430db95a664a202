from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from handoff.errors import HandoffError, IntegrityViolationError, NotFoundError
from handoff.state.locks import FileLockManager

logger = logging.getLogger(__name__)

# Precondition meaning "the path must not exist yet".
ABSENT = ""


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(slots=True, frozen=True)
class ContextEntry:
    path: str
    content: str
    content_hash: str


class AtomicFileStore:
    """Files under ``root`` written by temp-file-then-rename with hash preconditions."""

    TEMP_PREFIX = ".handoff-tmp-"

    def __init__(
        self,
        root: Path,
        locks: FileLockManager,
        *,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.locks = locks
        self.lock_timeout_seconds = lock_timeout_seconds

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise HandoffError(f"Path escapes store root: {path}")
        return target

    def _relative(self, target: Path) -> str:
        return target.relative_to(self.root).as_posix()

    @staticmethod
    def _read_text(target: Path) -> str:
        # newline="" keeps carriage returns so hashes match what was written.
        with target.open(encoding="utf-8", newline="") as handle:
            return handle.read()

    def _current_hash(self, target: Path) -> str | None:
        try:
            return content_hash(self._read_text(target))
        except FileNotFoundError:
            return None

    def read_entry(self, path: str) -> ContextEntry | None:
        target = self._resolve(path)
        try:
            content = self._read_text(target)
        except FileNotFoundError:
            return None
        return ContextEntry(
            path=self._relative(target),
            content=content,
            content_hash=content_hash(content),
        )

    def read_with_hash(self, path: str) -> tuple[str, str]:
        entry = self.read_entry(path)
        if entry is None:
            raise NotFoundError(path)
        return entry.content, entry.content_hash

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def write_atomic(self, path: str, content: str, expected_hash: str | None = None) -> str:
        target = self._resolve(path)
        relative = self._relative(target)
        target.parent.mkdir(parents=True, exist_ok=True)

        with self.locks.hold(f"file:{relative}", self.lock_timeout_seconds):
            fd, temp_name = tempfile.mkstemp(
                prefix=f"{self.TEMP_PREFIX}{target.name}-",
                dir=target.parent,
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                    handle.write(content)
                    handle.flush()
                    os.fsync(handle.fileno())

                if expected_hash is not None:
                    actual = self._current_hash(target)
                    matches = actual is None if expected_hash == ABSENT else actual == expected_hash
                    if not matches:
                        raise IntegrityViolationError(relative, expected_hash, actual)

                os.replace(temp_name, target)
            except BaseException:
                try:
                    os.unlink(temp_name)
                except FileNotFoundError:
                    pass
                raise

        new_hash = content_hash(content)
        logger.debug("Wrote %s (%s)", relative, new_hash[:12])
        return new_hash

    # Same contract as VersionedStore.write, returning the new content hash.
    put = write_atomic

    def update_json(
        self,
        path: str,
        updater: Callable[[Any], Any],
        *,
        default: Any | None = None,
        attempts: int = 4,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: IntegrityViolationError | None = None
        for _ in range(max(1, attempts)):
            entry = self.read_entry(path)
            current: Any = copy.deepcopy(default_value)
            if entry is not None:
                try:
                    current = json.loads(entry.content)
                except json.JSONDecodeError:
                    logger.warning("Discarding unreadable JSON document %s", path)
            updated = updater(current)
            try:
                self.write_atomic(
                    path,
                    json.dumps(updated, ensure_ascii=False, indent=2, sort_keys=True),
                    expected_hash=entry.content_hash if entry else ABSENT,
                )
                return updated
            except IntegrityViolationError as exc:
                last_error = exc
                logger.debug("Concurrent update of %s, re-reading: %s", path, exc)
        raise last_error or HandoffError(f"Could not update {path}.")

    def list(self, prefix: str = "") -> list[str]:
        base = self._resolve(prefix) if prefix else self.root
        if base.is_file():
            return [self._relative(base)]
        if not base.exists():
            return []
        paths: list[str] = []
        for item in base.rglob("*"):
            if not item.is_file() or item.name.startswith(self.TEMP_PREFIX):
                continue
            paths.append(self._relative(item))
        return sorted(paths)
