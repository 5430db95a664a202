from pathlib import Path

import pytest

from handoff.errors import CommandError
from handoff.runner import TestCommandRunner, run_command


def test_plain_command_runs_without_shell(tmp_path: Path) -> None:
    result = run_command("echo hello", cwd=tmp_path, extra_args=["world"])

    assert result.ok is True
    assert result.used_shell is False
    assert result.stdout_tail == "hello world"


def test_shell_operators_use_shell(tmp_path: Path) -> None:
    result = run_command("echo one && echo two >&2; exit 3", cwd=tmp_path)

    assert result.used_shell is True
    assert result.exit_code == 3
    assert result.stdout_tail == "one"
    assert result.stderr_tail == "two"


def test_extra_env_is_visible(tmp_path: Path) -> None:
    result = run_command(
        "sh -c 'echo $HANDOFF_PERSONA'", cwd=tmp_path, env={"HANDOFF_PERSONA": "QA"}
    )

    assert result.stdout_tail == "QA"


def test_empty_command_is_a_failure(tmp_path: Path) -> None:
    result = run_command("   ", cwd=tmp_path)

    assert result.exit_code == 1
    assert "empty" in result.stderr_tail


def test_missing_executable_raises(tmp_path: Path) -> None:
    with pytest.raises(CommandError, match="executable not found"):
        run_command("definitely-not-a-real-binary-xyz", cwd=tmp_path)


def test_timeout_raises(tmp_path: Path) -> None:
    with pytest.raises(CommandError, match="timed out"):
        run_command("sleep 5", cwd=tmp_path, timeout_seconds=0.2)


def test_test_runner_passes_items_as_arguments(tmp_path: Path) -> None:
    runner = TestCommandRunner(tmp_path, "echo ran", timeout_seconds=10)

    result = runner(["tests/a.py", "tests/b.py"])

    assert result.stdout_tail == "ran tests/a.py tests/b.py"
    assert result.to_dict()["type"] == "command"
