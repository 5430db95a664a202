"""Workflow records and the pure transition policy between personas."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from handoff.config import ArtifactsConfig, WorkflowConfig
from handoff.errors import ConfigurationError, LoopDetectedError
from handoff.personas.base import Persona

SCHEMA_VERSION = 1
UNKNOWN_PHASE = "UNKNOWN"

WORKFLOW_STATUSES = ("pending", "in_progress", "completed", "halted", "reset")
TERMINAL_STATUSES = frozenset({"completed", "halted"})

AUDIT_TITLE_MARKERS = ("[audit]", "audit:")
BUG_TITLE_MARKERS = ("bug", "fix:")


def utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class WorkflowKind(StrEnum):
    FEATURE = "feature"
    BUG = "bug"
    AUDIT = "audit"


def detect_workflow_kind(title: str) -> WorkflowKind:
    lowered = title.lower()
    if any(marker in lowered for marker in AUDIT_TITLE_MARKERS):
        return WorkflowKind.AUDIT
    if any(marker in lowered for marker in BUG_TITLE_MARKERS):
        return WorkflowKind.BUG
    return WorkflowKind.FEATURE


class RetryMode(StrEnum):
    RESET = "reset"
    INCREMENT = "increment"


@dataclass(slots=True, frozen=True)
class Stage:
    persona: Persona
    phase: str
    prompt: str
    artifact: str | None = None


@dataclass(slots=True, frozen=True)
class Action:
    persona: Persona
    next_phase: str
    retry: RetryMode
    reason: str
    source: str = ""
    prompt: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "persona": self.persona.value,
            "next_phase": self.next_phase,
            "retry": self.retry.value,
            "reason": self.reason,
            "source": self.source,
            "prompt": self.prompt,
        }


@dataclass(slots=True, frozen=True)
class TransitionRecord:
    from_persona: Persona
    to_persona: Persona
    timestamp: str
    success: bool
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_persona": self.from_persona.value,
            "to_persona": self.to_persona.value,
            "timestamp": self.timestamp,
            "success": self.success,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TransitionRecord:
        return cls(
            from_persona=Persona.parse(payload.get("from_persona")),
            to_persona=Persona.parse(payload.get("to_persona")),
            timestamp=str(payload.get("timestamp", "")),
            success=bool(payload.get("success", False)),
            reason=str(payload.get("reason", "")),
        )


@dataclass(slots=True)
class WorkflowState:
    workflow_id: str
    kind: WorkflowKind = WorkflowKind.FEATURE
    persona: Persona = Persona.UNKNOWN
    phase: str = UNKNOWN_PHASE
    retry_count: int = 0
    status: str = "pending"
    transition_history: list[TransitionRecord] = field(default_factory=list)
    last_error: dict[str, Any] | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    schema_version: int = SCHEMA_VERSION

    @classmethod
    def initial(cls, workflow_id: str, kind: WorkflowKind = WorkflowKind.FEATURE) -> WorkflowState:
        return cls(workflow_id=workflow_id, kind=kind)

    @property
    def is_initial(self) -> bool:
        return self.persona == Persona.UNKNOWN and self.phase == UNKNOWN_PHASE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def record(self, record: TransitionRecord) -> None:
        self.transition_history.append(record)
        self.updated_at = record.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "workflow_id": self.workflow_id,
            "kind": self.kind.value,
            "persona": self.persona.value,
            "phase": self.phase,
            "retry_count": self.retry_count,
            "status": self.status,
            "transition_history": [item.to_dict() for item in self.transition_history],
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowState:
        version = int(payload.get("schema_version", SCHEMA_VERSION))
        if version > SCHEMA_VERSION:
            raise ConfigurationError(
                f"Workflow state schema {version} is newer than supported {SCHEMA_VERSION}."
            )
        status = str(payload.get("status", "pending"))
        if status not in WORKFLOW_STATUSES:
            raise ConfigurationError(f"Unknown workflow status: {status}")
        history = payload.get("transition_history") or []
        return cls(
            workflow_id=str(payload["workflow_id"]),
            kind=WorkflowKind(str(payload.get("kind", WorkflowKind.FEATURE.value))),
            persona=Persona.parse(payload.get("persona")),
            phase=str(payload.get("phase") or UNKNOWN_PHASE),
            retry_count=int(payload.get("retry_count", 0)),
            status=status,
            transition_history=[
                TransitionRecord.from_dict(item) for item in history if isinstance(item, dict)
            ],
            last_error=payload.get("last_error"),
            created_at=str(payload.get("created_at") or utc_now()),
            updated_at=str(payload.get("updated_at") or utc_now()),
            schema_version=SCHEMA_VERSION,
        )


def _feature_flow(artifacts: ArtifactsConfig) -> tuple[Stage, ...]:
    return (
        Stage(Persona.PM, "Planning", "Analyze the issue and create a PRD.", artifacts.prd),
        Stage(
            Persona.ARCHITECT,
            "Architecture Design",
            "Design the system architecture based on the PRD.",
            artifacts.spec,
        ),
        Stage(Persona.DEVELOPER, "Implementation", "Implement the architecture specification."),
        Stage(
            Persona.QA,
            "Quality Assurance",
            "Verify the implementation against the PRD and architecture specification.",
        ),
        Stage(
            Persona.SECURITY,
            "Security Review",
            "Perform a security review of the code and dependencies.",
        ),
        Stage(
            Persona.DEVOPS,
            "DevOps & Deployment",
            "Prepare the deployment pipeline and infrastructure.",
        ),
        Stage(
            Persona.RELEASE_MANAGER,
            "Release Management",
            "Coordinate the final release and publish release notes.",
        ),
    )


def _audit_flow(artifacts: ArtifactsConfig) -> tuple[Stage, ...]:
    return (
        Stage(
            Persona.PM,
            "Audit Planning",
            "Analyze the project state and generate the master plan.",
            artifacts.master_plan,
        ),
        Stage(
            Persona.ARCHITECT,
            "Audit Breakdown",
            "Break the master plan down into granular issues.",
        ),
    )


@dataclass(slots=True, frozen=True)
class WorkflowPolicy:
    stages: tuple[Stage, ...]
    max_retries: int = 3
    loop_threshold: int = 3

    @classmethod
    def for_kind(
        cls,
        kind: WorkflowKind,
        workflow: WorkflowConfig | None = None,
        artifacts: ArtifactsConfig | None = None,
    ) -> WorkflowPolicy:
        workflow = workflow or WorkflowConfig()
        artifacts = artifacts or ArtifactsConfig()
        stages = _audit_flow(artifacts) if kind == WorkflowKind.AUDIT else _feature_flow(artifacts)
        return cls(
            stages=stages,
            max_retries=workflow.max_retries,
            loop_threshold=workflow.loop_threshold,
        )

    def stage_index(self, persona: Persona) -> int | None:
        for index, stage in enumerate(self.stages):
            if stage.persona == persona:
                return index
        return None

    def expected_artifacts(self) -> list[str]:
        return [stage.artifact for stage in self.stages if stage.artifact]


def _trailing_run(history: list[TransitionRecord], pair: tuple[Persona, Persona]) -> int:
    count = 0
    for record in reversed(history):
        if (record.from_persona, record.to_persona) != pair:
            break
        count += 1
    return count


def _check_loop(state: WorkflowState, action: Action, policy: WorkflowPolicy) -> None:
    pair = (state.persona, action.persona)
    count = _trailing_run(state.transition_history, pair)
    if count >= policy.loop_threshold:
        raise LoopDetectedError(
            f"Transition {pair[0].value} -> {pair[1].value} already repeated {count} time(s) "
            f"without progress.",
            from_persona=pair[0].value,
            to_persona=pair[1].value,
            count=count,
            loop_kind="loop",
        )


def decide(
    state: WorkflowState,
    artifacts_present: set[str] | frozenset[str],
    policy: WorkflowPolicy,
) -> Action | None:
    """Next action for ``state`` given which artifacts exist, or None once the flow is done.

    Raises LoopDetectedError (``loop_kind`` "stall" or "loop") instead of
    re-invoking a persona that keeps failing to make progress.
    """
    if not policy.stages:
        return None
    first = policy.stages[0]
    index = None if state.is_initial else policy.stage_index(state.persona)

    if index is None:
        reason = "start" if state.is_initial else f"{state.persona.value} is not part of this flow"
        action = Action(
            persona=first.persona,
            next_phase=first.phase,
            retry=RetryMode.RESET,
            reason=reason,
            source="workflow start",
            prompt=first.prompt,
        )
        _check_loop(state, action, policy)
        return action

    stage = policy.stages[index]
    if stage.artifact and stage.artifact not in artifacts_present:
        attempt = state.retry_count + 1
        if attempt > policy.max_retries:
            raise LoopDetectedError(
                f"{stage.persona.value} did not produce {stage.artifact} after "
                f"{state.retry_count} retr{'y' if state.retry_count == 1 else 'ies'}.",
                from_persona=stage.persona.value,
                to_persona=stage.persona.value,
                count=state.retry_count,
                loop_kind="stall",
            )
        action = Action(
            persona=stage.persona,
            next_phase=stage.phase,
            retry=RetryMode.INCREMENT,
            reason=f"missing {stage.artifact} (attempt {attempt}/{policy.max_retries})",
            source=stage.artifact,
            prompt=f"RETRY: {stage.prompt}",
        )
        _check_loop(state, action, policy)
        return action

    if index + 1 >= len(policy.stages):
        return None

    following = policy.stages[index + 1]
    action = Action(
        persona=following.persona,
        next_phase=following.phase,
        retry=RetryMode.RESET,
        reason=f"{stage.phase} complete",
        source=stage.artifact or stage.phase,
        prompt=following.prompt,
    )
    _check_loop(state, action, policy)
    return action


def render_handover(state: WorkflowState) -> str:
    """Markdown view of a workflow state. Regenerated on every save, never parsed back."""
    lines = [
        f"# Handover: {state.workflow_id}",
        "",
        f"- **Kind:** {state.kind.value}",
        f"- **Current Persona:** {state.persona.value}",
        f"- **Phase:** {state.phase}",
        f"- **Status:** {state.status}",
        f"- **Retry Count:** {state.retry_count}",
        f"- **Updated:** {state.updated_at}",
    ]
    if state.last_error:
        lines.append(
            f"- **Last Error:** {state.last_error.get('kind', 'error')}: "
            f"{state.last_error.get('message', '')}"
        )
    lines.extend(["", "## Transition History", ""])
    if not state.transition_history:
        lines.append("_No transitions recorded._")
    else:
        lines.append("| When | From | To | Result | Reason |")
        lines.append("| --- | --- | --- | --- | --- |")
        for record in state.transition_history:
            lines.append(
                f"| {record.timestamp} | {record.from_persona.value} | {record.to_persona.value} "
                f"| {'ok' if record.success else 'failed'} | {record.reason} |"
            )
    return "\n".join(lines) + "\n"
