from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from handoff.config import HandoffConfig
from handoff.errors import CommandError, PersonaExecutionError
from handoff.personas.base import ExecutionContext, Persona, PersonaExecutor, PersonaRegistry
from handoff.runner import run_command

if TYPE_CHECKING:
    from handoff.workflow import Action

logger = logging.getLogger(__name__)


class CommandPersonaExecutor(PersonaExecutor):
    """Runs a configured shell command for one persona.

    The action is passed through ``HANDOFF_*`` environment variables. Artifacts
    are whatever the command prints on stdout lines prefixed with ``artifact:``.
    """

    ARTIFACT_PREFIX = "artifact:"

    def __init__(
        self,
        persona: Persona,
        command: str,
        repo_root: Path,
        *,
        timeout_seconds: float = 900.0,
    ) -> None:
        self.persona = persona
        self.command = command
        self.repo_root = repo_root.resolve()
        self.timeout_seconds = timeout_seconds

    def execute(self, action: Action, context: ExecutionContext) -> set[str]:
        env = {
            "HANDOFF_WORKFLOW_ID": context.workflow_id,
            "HANDOFF_PERSONA": action.persona.value,
            "HANDOFF_PHASE": action.next_phase,
            "HANDOFF_PROMPT": action.prompt,
            "HANDOFF_SOURCE": action.source,
            "HANDOFF_ATTEMPT": str(context.attempt),
        }
        try:
            result = run_command(
                self.command,
                cwd=self.repo_root,
                env=env,
                timeout_seconds=self.timeout_seconds,
                marker_prefix=self.ARTIFACT_PREFIX,
            )
        except CommandError as exc:
            raise PersonaExecutionError(
                str(exc), persona=self.persona.value, retriable=False
            ) from exc
        if not result.ok:
            raise PersonaExecutionError(
                f"{self.persona.value} command exited with {result.exit_code}: "
                f"{result.stderr_tail or result.stdout_tail}",
                persona=self.persona.value,
                exit_code=result.exit_code,
            )
        return {path for path in result.marked_lines if path}


class NoopPersonaExecutor(PersonaExecutor):
    """Placeholder for personas driven outside handoff; produces nothing."""

    def __init__(self, persona: Persona) -> None:
        self.persona = persona

    def execute(self, action: Action, context: ExecutionContext) -> set[str]:
        logger.info(
            "No command configured for %s; expecting %s to be produced externally",
            self.persona.value,
            action.next_phase,
        )
        return set()


def build_registry(config: HandoffConfig, repo_root: Path) -> PersonaRegistry:
    registry = PersonaRegistry()
    personas_cfg = config.personas
    for persona in Persona:
        if persona == Persona.UNKNOWN:
            continue
        command = str(getattr(personas_cfg, persona.config_key, "") or "").strip()
        if command:
            registry.register(
                persona,
                CommandPersonaExecutor(
                    persona,
                    command,
                    repo_root,
                    timeout_seconds=personas_cfg.timeout_seconds,
                ),
            )
        elif persona != Persona.RECOVERY:
            registry.register(persona, NoopPersonaExecutor(persona))
    return registry
