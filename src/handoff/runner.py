from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from handoff.errors import CommandError

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
OUTPUT_TAIL_CHARS = 1000


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout_tail: str
    stderr_tail: str
    used_shell: bool
    # Prefix-stripped marker lines from the whole stdout, not just the tail.
    marked_lines: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "command",
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout_tail": self.stdout_tail,
            "stderr_tail": self.stderr_tail,
            "used_shell": self.used_shell,
        }


def run_command(
    command: str,
    *,
    cwd: Path,
    extra_args: list[str] | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float | None = None,
    marker_prefix: str | None = None,
) -> CommandResult:
    """Run ``command`` in ``cwd``, using a shell only when the text needs one.

    A non-zero exit status is reported in the result. Raises ``CommandError``
    when the executable is missing or the timeout elapses. With ``marker_prefix``
    every stdout line carrying that prefix is kept in ``marked_lines``.
    """
    command_text = command.strip()
    if not command_text:
        return CommandResult(command, 1, "", "Command is empty.", False)

    args = [str(item) for item in (extra_args or [])]
    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text) + args
        except ValueError:
            used_shell = True
    if used_shell:
        command_payload = " ".join([command_text, *(shlex.quote(arg) for arg in args)])

    run_env = None
    if env:
        run_env = os.environ.copy()
        run_env.update(env)

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            env=run_env,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as exc:
        raise CommandError(command_text, f"executable not found ({exc.filename})") from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(command_text, f"timed out after {timeout_seconds}s") from exc

    marked_lines: list[str] = []
    if marker_prefix:
        marked_lines = [
            line[len(marker_prefix) :].strip()
            for line in proc.stdout.splitlines()
            if line.startswith(marker_prefix)
        ]
    return CommandResult(
        command=command_text,
        exit_code=proc.returncode,
        stdout_tail=proc.stdout.strip()[-OUTPUT_TAIL_CHARS:],
        stderr_tail=proc.stderr.strip()[-OUTPUT_TAIL_CHARS:],
        used_shell=used_shell,
        marked_lines=marked_lines,
    )


class TestCommandRunner:
    """Runs the configured test command once per sub-batch of test targets."""

    __test__ = False

    def __init__(self, repo_root: Path, command: str, *, timeout_seconds: float = 600.0) -> None:
        self.repo_root = repo_root.resolve()
        self.command = command
        self.timeout_seconds = timeout_seconds

    def __call__(self, items: list[str]) -> CommandResult:
        logger.info("Running %s on %d target(s)", self.command, len(items))
        result = run_command(
            self.command,
            cwd=self.repo_root,
            extra_args=items,
            timeout_seconds=self.timeout_seconds,
        )
        if not result.ok:
            logger.warning("Test command exited with %d for %s", result.exit_code, items)
        return result
