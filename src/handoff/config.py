from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from handoff.errors import ConfigurationError

StateBackendName = Literal["local", "branch"]
EscalationMode = Literal["halt", "reset"]


@dataclass(slots=True)
class PathsConfig:
    state_dir: str = ".handoff/state"
    lock_dir: str = ".handoff/locks"
    handover_file: str = ".handoff/HANDOVER.md"
    log_file: str = ""


@dataclass(slots=True)
class LocksConfig:
    timeout_seconds: float = 10.0
    stale_after_seconds: float = 30.0
    poll_initial_seconds: float = 0.02
    poll_max_seconds: float = 0.5


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 4
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 5.0


@dataclass(slots=True)
class BreakerConfig:
    threshold: int = 3
    cooldown_seconds: float = 60.0
    persist: bool = True


@dataclass(slots=True)
class AdmissionConfig:
    max_memory_percent: float = 85.0
    max_load_average: float = 4.0
    batch_size: int = 5
    recovery_delay_seconds: float = 1.0
    slot_timeout_seconds: float = 300.0
    slot_ttl_seconds: float = 3600.0
    test_command: str = "python -m pytest -q"
    test_timeout_seconds: float = 600.0


@dataclass(slots=True)
class WorkflowConfig:
    max_retries: int = 3
    loop_threshold: int = 3
    max_steps: int = 50
    on_escalation: EscalationMode = "reset"
    stall_after_seconds: float = 600.0


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "local"
    branch_ref: str = "handoff/state"


@dataclass(slots=True)
class PersonasConfig:
    pm: str = ""
    architect: str = ""
    developer: str = ""
    qa: str = ""
    security: str = ""
    devops: str = ""
    release_manager: str = ""
    recovery: str = ""
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class ArtifactsConfig:
    prd: str = "docs/planning/PRD.md"
    spec: str = "docs/architecture/SPEC.md"
    master_plan: str = "docs/planning/MASTER_PLAN.md"


SECTION_ORDER = (
    "paths",
    "locks",
    "retry",
    "breaker",
    "admission",
    "workflow",
    "state",
    "personas",
    "artifacts",
)


@dataclass(slots=True)
class HandoffConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    locks: LocksConfig = field(default_factory=LocksConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    state: StateConfig = field(default_factory=StateConfig)
    personas: PersonasConfig = field(default_factory=PersonasConfig)
    artifacts: ArtifactsConfig = field(default_factory=ArtifactsConfig)

    @classmethod
    def default(cls) -> HandoffConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HandoffConfig:
        section_types: dict[str, type] = {
            "paths": PathsConfig,
            "locks": LocksConfig,
            "retry": RetryConfig,
            "breaker": BreakerConfig,
            "admission": AdmissionConfig,
            "workflow": WorkflowConfig,
            "state": StateConfig,
            "personas": PersonasConfig,
            "artifacts": ArtifactsConfig,
        }
        sections: dict[str, Any] = {}
        for name, section_type in section_types.items():
            raw = data.get(name, {})
            if not isinstance(raw, dict):
                raise ConfigurationError(f"Config section [{name}] must be a table.")
            try:
                sections[name] = section_type(**raw)
            except TypeError as exc:
                raise ConfigurationError(f"Invalid keys in [{name}]: {exc}") from exc
        config = cls(**sections)
        config.validate()
        return config

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {section: asdict(getattr(self, section)) for section in SECTION_ORDER}

    def validate(self) -> None:
        if self.state.backend not in {"local", "branch"}:
            raise ConfigurationError(f"Unsupported state backend: {self.state.backend}")
        if self.workflow.on_escalation not in {"halt", "reset"}:
            raise ConfigurationError(
                f"Unsupported escalation mode: {self.workflow.on_escalation}"
            )
        if self.retry.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be at least 1.")
        if self.breaker.threshold < 1:
            raise ConfigurationError("breaker.threshold must be at least 1.")
        if self.admission.batch_size < 1:
            raise ConfigurationError("admission.batch_size must be at least 1.")
        if self.workflow.max_retries < 0 or self.workflow.loop_threshold < 1:
            raise ConfigurationError("workflow retry and loop bounds must be positive.")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: HandoffConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> HandoffConfig:
    if not path.exists():
        return HandoffConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Could not parse {path}: {exc}") from exc
    return HandoffConfig.from_dict(data)


def save_config(path: Path, config: HandoffConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
