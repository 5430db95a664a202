from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from handoff.errors import ConfigurationError, HandoffError
from handoff.git import GitRunner, StagedChanges
from handoff.personas.base import Persona
from handoff.resilience.retry import RetryPolicy, retry

logger = logging.getLogger(__name__)

COMMIT_PATTERN = re.compile(r"^\[([A-Za-z_]+)\] \[STEP-([0-9A-Z]+)\] (.+)$")
STEP_ID_PATTERN = re.compile(r"^[0-9]{3}$")
SUBJECT_SOFT_LIMIT = 72


def format_commit_message(persona: Persona | str, step_id: int | str, description: str) -> str:
    resolved = Persona.parse(persona)
    if resolved == Persona.UNKNOWN:
        raise ConfigurationError("Commit messages need a concrete persona.")
    clean = " ".join(description.replace("\n", " ").split())
    if not clean:
        raise ConfigurationError("Commit description must not be empty.")
    return f"[{resolved.value}] [STEP-{str(step_id).strip().zfill(3)}] {clean}"


@dataclass(slots=True)
class CommitValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    persona: Persona | None = None
    step_id: str | None = None
    description: str | None = None


def validate_commit_message(message: str) -> CommitValidation:
    match = COMMIT_PATTERN.match(message.strip())
    if not match:
        return CommitValidation(
            valid=False,
            errors=["Message does not match required pattern: [PERSONA] [STEP-ID] Description"],
        )
    persona_text, step_id, description = match.groups()
    result = CommitValidation(valid=False, step_id=step_id, description=description.strip())
    try:
        result.persona = Persona.parse(persona_text)
    except ConfigurationError:
        result.errors.append(f"Unknown persona: {persona_text}")
    if result.persona == Persona.UNKNOWN:
        result.errors.append("Persona must not be UNKNOWN")
    if persona_text != persona_text.upper():
        result.warnings.append("Persona should be upper case")
    if not STEP_ID_PATTERN.match(step_id):
        result.errors.append(f"Step id must be a 3-digit number, got {step_id}")
    if len(message) > SUBJECT_SOFT_LIMIT:
        result.warnings.append(f"Subject is longer than {SUBJECT_SOFT_LIMIT} characters")
    result.valid = not result.errors
    return result


@dataclass(slots=True)
class CommitResult:
    committed: bool
    message: str
    commit_id: str | None = None
    paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "committed": self.committed,
            "message": self.message,
            "commit_id": self.commit_id,
            "paths": self.paths,
        }


class CommitHandler:
    """Stages and commits persona work in the caller's repository."""

    def __init__(self, git: GitRunner, *, policy: RetryPolicy | None = None) -> None:
        self.git = git
        self.policy = policy or RetryPolicy()

    def stage(self, paths: list[str] | None = None) -> None:
        if paths:
            self.git.run(["add", "--", *paths])
        else:
            self.git.run(["add", "-A"])

    def staged_changes(self) -> StagedChanges:
        return self.git.staged_changes()

    def commit(
        self,
        persona: Persona | str,
        step_id: int | str,
        description: str,
        *,
        paths: list[str] | None = None,
        stage_all: bool = False,
    ) -> CommitResult:
        message = format_commit_message(persona, step_id, description)
        validation = validate_commit_message(message)
        if not validation.valid:
            raise HandoffError(
                f"Invalid commit message '{message}': {'; '.join(validation.errors)}"
            )

        if paths or stage_all:
            self.stage(paths)
        staged = self.staged_changes()
        if not staged.has_changes:
            logger.warning("No staged changes; skipping commit %s", message)
            return CommitResult(committed=False, message=message)

        retry(
            lambda: self.git.run(["commit", "-m", message]),
            self.policy,
            description=f"git commit {message}",
        )
        commit_id = self.git.head()
        logger.info("Committed %s as %s", message, (commit_id or "")[:10])
        return CommitResult(
            committed=True, message=message, commit_id=commit_id, paths=staged.paths
        )
