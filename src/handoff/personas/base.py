from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from handoff.errors import ConfigurationError

if TYPE_CHECKING:
    from handoff.workflow import Action


class Persona(StrEnum):
    UNKNOWN = "UNKNOWN"
    PM = "PM"
    ARCHITECT = "ARCHITECT"
    DEVELOPER = "DEVELOPER"
    QA = "QA"
    SECURITY = "SECURITY"
    DEVOPS = "DEVOPS"
    RELEASE_MANAGER = "RELEASE_MANAGER"
    RECOVERY = "RECOVERY"

    @classmethod
    def parse(cls, value: str | Persona | None) -> Persona:
        if isinstance(value, Persona):
            return value
        text = str(value or "").strip()
        if not text:
            return cls.UNKNOWN
        key = text.upper().replace("-", "_").replace(" ", "_")
        key = LEGACY_PERSONA_NAMES.get(key, key)
        try:
            return cls(key)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown persona: {value!r}") from exc

    @property
    def config_key(self) -> str:
        return self.value.lower()


LEGACY_PERSONA_NAMES = {
    "RELEASEMANAGER": "RELEASE_MANAGER",
    "PROJECT_MANAGER": "PM",
    "DEVELOPER_ENHANCED": "DEVELOPER",
}


@dataclass(slots=True)
class ExecutionContext:
    workflow_id: str
    attempt: int


class PersonaExecutor(ABC):
    """Carries out one dispatched action and reports the artifacts it produced."""

    persona: Persona = Persona.UNKNOWN

    @abstractmethod
    def execute(self, action: Action, context: ExecutionContext) -> set[str]:
        raise NotImplementedError


class PersonaRegistry:
    def __init__(self, executors: Mapping[Persona, PersonaExecutor] | None = None) -> None:
        self._executors: dict[Persona, PersonaExecutor] = dict(executors or {})

    def register(self, persona: Persona, executor: PersonaExecutor) -> None:
        if persona == Persona.UNKNOWN:
            raise ConfigurationError("Cannot register an executor for the UNKNOWN persona.")
        self._executors[persona] = executor

    def get(self, persona: Persona) -> PersonaExecutor:
        executor = self._executors.get(persona)
        if executor is None:
            raise ConfigurationError(f"No executor registered for persona {persona.value}.")
        return executor

    def has(self, persona: Persona) -> bool:
        return persona in self._executors

    def personas(self) -> list[Persona]:
        return [persona for persona in Persona if persona in self._executors]
