from handoff.personas.base import ExecutionContext, Persona, PersonaExecutor, PersonaRegistry
from handoff.personas.command import CommandPersonaExecutor, NoopPersonaExecutor, build_registry

__all__ = [
    "CommandPersonaExecutor",
    "ExecutionContext",
    "NoopPersonaExecutor",
    "Persona",
    "PersonaExecutor",
    "PersonaRegistry",
    "build_registry",
]
