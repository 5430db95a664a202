import tomllib
from pathlib import Path

import pytest

from handoff import __version__
from handoff.config import HandoffConfig, dumps_toml, load_config, save_config
from handoff.errors import ConfigurationError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "handoff.toml"
    config = HandoffConfig.default()
    config.locks.timeout_seconds = 2.5
    config.breaker.threshold = 5
    config.admission.max_memory_percent = 70.0
    config.admission.test_command = "python -m pytest -x"
    config.workflow.on_escalation = "halt"
    config.state.backend = "branch"
    config.state.branch_ref = "handoff/state-test"
    config.personas.pm = "python scripts/pm.py"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.locks.timeout_seconds == 2.5
    assert loaded.breaker.threshold == 5
    assert loaded.admission.max_memory_percent == 70.0
    assert loaded.admission.test_command == "python -m pytest -x"
    assert loaded.workflow.on_escalation == "halt"
    assert loaded.state.backend == "branch"
    assert loaded.state.branch_ref == "handoff/state-test"
    assert loaded.personas.pm == "python scripts/pm.py"
    assert loaded.personas.architect == ""
    assert loaded.artifacts.prd == "docs/planning/PRD.md"


def test_missing_config_file_returns_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config == HandoffConfig.default()
    assert config.workflow.max_retries == 3
    assert config.admission.batch_size == 5


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(HandoffConfig.default())

    for section in ("paths", "locks", "retry", "breaker", "admission", "workflow", "state"):
        assert f"[{section}]" in rendered
    assert "recovery_delay_seconds = 1.0" in rendered
    assert 'on_escalation = "reset"' in rendered
    assert "persist = true" in rendered


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "handoff.toml"
    config_path.write_text('[state]\nbackend = "notes"\n', encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Unsupported state backend"):
        load_config(config_path)


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "handoff.toml"
    config_path.write_text("[breaker]\nthreshhold = 3\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match=r"\[breaker\]"):
        load_config(config_path)


def test_unparseable_toml_is_a_configuration_error(tmp_path: Path) -> None:
    config_path = tmp_path / "handoff.toml"
    config_path.write_text("[locks\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


def test_float_values_survive_a_save_and_load(tmp_path: Path) -> None:
    config_path = tmp_path / "handoff.toml"
    config = HandoffConfig.default()
    config.retry.base_delay_seconds = 0.0001
    config.retry.max_delay_seconds = 1234.56789

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.retry.base_delay_seconds == 0.0001
    assert loaded.retry.max_delay_seconds == 1234.56789
