from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from handoff.errors import (
    GitCommandError,
    HandoffError,
    IntegrityViolationError,
    NotFoundError,
    RefUpdateConflictError,
)
from handoff.git import GitRunner
from handoff.resilience.retry import RetryPolicy, retry
from handoff.state.atomic import ABSENT, ContextEntry, content_hash

logger = logging.getLogger(__name__)

STATE_IDENTITY = {
    "GIT_AUTHOR_NAME": "handoff",
    "GIT_AUTHOR_EMAIL": "handoff@localhost",
    "GIT_COMMITTER_NAME": "handoff",
    "GIT_COMMITTER_EMAIL": "handoff@localhost",
}


@dataclass(slots=True, frozen=True)
class VersionedEntry:
    path: str
    content: str
    ref_name: str
    commit_id: str


class VersionedStore:
    """Key/blob store kept on a dedicated git ref.

    Writes are built with git plumbing against a private index file, so HEAD,
    the caller's index and the working tree are never touched. Every write is a
    commit on ``ref_name``; moving the ref is a compare-and-swap.
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        branch_ref: str = "handoff/state",
        retry_policy: RetryPolicy | None = None,
        git: GitRunner | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.git = git or GitRunner(self.repo_root)
        self.retry_policy = retry_policy or RetryPolicy()
        self._branch_ref = branch_ref
        if not self.git.is_repo():
            raise HandoffError(f"Not a git repository: {self.repo_root}")

    @property
    def ref_name(self) -> str:
        if self._branch_ref.startswith("refs/"):
            return self._branch_ref
        return f"refs/heads/{self._branch_ref}"

    @staticmethod
    def _normalize_path(path: str) -> str:
        normalized = path.replace("\\", "/").strip("/")
        parts = [part for part in normalized.split("/") if part not in {"", "."}]
        if not parts or ".." in parts:
            raise HandoffError(f"Invalid state path: {path!r}")
        return "/".join(parts)

    def _commit_env(self, index_path: str | None = None) -> dict[str, str]:
        env = os.environ.copy()
        env.update(STATE_IDENTITY)
        if index_path is not None:
            env["GIT_INDEX_FILE"] = index_path
        return env

    def _resolve_tip(self) -> str | None:
        proc = self.git.run(["rev-parse", "--verify", "--quiet", self.ref_name], check=False)
        tip = proc.stdout.strip()
        return tip or None

    def tip(self) -> str | None:
        return self._resolve_tip()

    def initialize(self) -> str:
        existing = self._resolve_tip()
        if existing:
            return existing
        empty_tree = self.git.output(["hash-object", "-t", "tree", "-w", "--stdin"], input_text="")
        commit_id = self.git.output(
            ["commit-tree", empty_tree],
            input_text="handoff-state: initialize\n",
            env=self._commit_env(),
        )
        try:
            self._update_ref(commit_id, None)
        except RefUpdateConflictError:
            # Another process initialized the ref first.
            return self._resolve_tip() or commit_id
        logger.info("Initialized state ref %s at %s", self.ref_name, commit_id[:10])
        return commit_id

    def _blob_at(self, commit: str, path: str) -> str | None:
        proc = self.git.run_bytes(["cat-file", "blob", f"{commit}:{path}"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.decode("utf-8")

    def read(self, path: str, ref: str | None = None) -> str:
        normalized = self._normalize_path(path)
        commit = ref or self._resolve_tip()
        if commit is None:
            raise NotFoundError(normalized, self.ref_name)
        content = self._blob_at(commit, normalized)
        if content is None:
            raise NotFoundError(normalized, commit)
        return content

    def read_entry(self, path: str) -> ContextEntry | None:
        normalized = self._normalize_path(path)
        try:
            content = self.read(normalized)
        except NotFoundError:
            return None
        return ContextEntry(path=normalized, content=content, content_hash=content_hash(content))

    def read_versioned(self, path: str, ref: str | None = None) -> VersionedEntry:
        commit = ref or self._resolve_tip()
        if commit is None:
            raise NotFoundError(path, self.ref_name)
        normalized = self._normalize_path(path)
        return VersionedEntry(
            path=normalized,
            content=self.read(normalized, ref=commit),
            ref_name=self.ref_name,
            commit_id=self.git.output(["rev-parse", f"{commit}^{{commit}}"]),
        )

    def list(self, ref: str | None = None, prefix: str = "") -> list[str]:
        commit = ref or self._resolve_tip()
        if commit is None:
            return []
        paths = self.git.output(["ls-tree", "-r", "--name-only", commit]).splitlines()
        if prefix:
            normalized = self._normalize_path(prefix)
            paths = [
                item for item in paths if item == normalized or item.startswith(f"{normalized}/")
            ]
        return sorted(item for item in paths if item)

    def history(self, path: str) -> list[str]:
        if self._resolve_tip() is None:
            return []
        normalized = self._normalize_path(path)
        output = self.git.output(["log", "--format=%H", self.ref_name, "--", normalized])
        return [line for line in output.splitlines() if line]

    def _update_ref(self, new_commit: str, old_commit: str | None) -> None:
        proc = self.git.run(
            ["update-ref", self.ref_name, new_commit, old_commit or ""],
            check=False,
        )
        if proc.returncode != 0:
            logger.debug("update-ref rejected: %s", proc.stderr.strip())
            raise RefUpdateConflictError(self.ref_name, old_commit)

    def _build_commit(self, parent: str | None, path: str, content: str) -> str:
        with tempfile.TemporaryDirectory(prefix="handoff-index-") as index_dir:
            index_path = str(Path(index_dir) / "index")
            env = self._commit_env(index_path)
            if parent:
                self.git.run(["read-tree", f"{parent}^{{tree}}"], env=env)
            blob = (
                self.git.run_bytes(
                    ["hash-object", "-w", "--no-filters", "--stdin"],
                    input_bytes=content.encode("utf-8"),
                )
                .stdout.decode("ascii")
                .strip()
            )
            self.git.run(
                ["update-index", "--add", "--index-info"],
                input_text=f"100644 blob {blob}\t{path}\n",
                env=env,
            )
            tree = self.git.output(["write-tree"], env=env)
            commit_args = ["commit-tree", tree]
            if parent:
                commit_args.extend(["-p", parent])
            return self.git.output(
                commit_args,
                input_text=f"handoff-state: update {path}\n",
                env=env,
            )

    def _write_once(self, path: str, content: str, expected_hash: str | None) -> str:
        parent = self._resolve_tip()
        if expected_hash is not None:
            current = self._blob_at(parent, path) if parent else None
            actual = content_hash(current) if current is not None else None
            matches = actual is None if expected_hash == ABSENT else actual == expected_hash
            if not matches:
                raise IntegrityViolationError(path, expected_hash, actual)
        commit_id = self._build_commit(parent, path, content)
        self._update_ref(commit_id, parent)
        return commit_id

    def write(self, path: str, content: str, expected_hash: str | None = None) -> str:
        normalized = self._normalize_path(path)
        commit_id = retry(
            lambda: self._write_once(normalized, content, expected_hash),
            self.retry_policy,
            description=f"write {normalized} to {self.ref_name}",
        )
        logger.debug("Committed %s to %s at %s", normalized, self.ref_name, commit_id[:10])
        return commit_id

    put = write

    def exists(self, path: str) -> bool:
        return self.read_entry(path) is not None


__all__ = ["GitCommandError", "VersionedEntry", "VersionedStore"]
