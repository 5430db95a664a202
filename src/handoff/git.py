from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from handoff.errors import GitCommandError


@dataclass(slots=True)
class StagedChanges:
    has_changes: bool
    paths: list[str] = field(default_factory=list)


class GitRunner:
    """Thin wrapper over the git binary rooted at one repository."""

    def __init__(self, repo_root: Path, *, binary: str = "git") -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary

    def is_repo(self) -> bool:
        try:
            proc = subprocess.run(
                [self.binary, "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def run(
        self,
        args: list[str],
        *,
        input_text: str | None = None,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            [self.binary, "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
            input=input_text,
            env=env,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(
                args, proc.returncode, proc.stderr.strip() or proc.stdout.strip()
            )
        return proc

    def run_bytes(
        self,
        args: list[str],
        *,
        input_bytes: bytes | None = None,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[bytes]:
        """Like ``run`` but without newline translation, for blob content."""
        proc = subprocess.run(
            [self.binary, "--no-pager", *args],
            cwd=self.repo_root,
            capture_output=True,
            input=input_bytes,
            env=env,
        )
        if check and proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise GitCommandError(args, proc.returncode, stderr)
        return proc

    def output(self, args: list[str], **kwargs) -> str:
        return self.run(args, **kwargs).stdout.strip()

    def head(self) -> str | None:
        proc = self.run(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        value = proc.stdout.strip()
        return value or None

    def status_porcelain(self) -> list[str]:
        proc = self.run(["status", "--porcelain"])
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def staged_changes(self) -> StagedChanges:
        paths = [
            line.strip()
            for line in self.output(["diff", "--cached", "--name-only"]).splitlines()
            if line.strip()
        ]
        return StagedChanges(has_changes=bool(paths), paths=paths)
