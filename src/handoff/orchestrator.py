from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from handoff.config import HandoffConfig
from handoff.errors import (
    CircuitOpenError,
    HandoffError,
    LoopDetectedError,
    NotFoundError,
    PersonaExecutionError,
    RetryExhaustedError,
)
from handoff.personas.base import ExecutionContext, Persona, PersonaRegistry
from handoff.resilience.guarded import ResilientCaller
from handoff.resilience.retry import RetryPolicy, retry
from handoff.state.atomic import AtomicFileStore
from handoff.state.locks import FileLockManager, LockHandle
from handoff.state.workflows import WorkflowRepository, validate_workflow_id
from handoff.workflow import (
    UNKNOWN_PHASE,
    Action,
    RetryMode,
    TransitionRecord,
    WorkflowKind,
    WorkflowPolicy,
    WorkflowState,
    decide,
    render_handover,
    utc_now,
)

logger = logging.getLogger(__name__)

ArtifactProbe = Callable[[str], bool]

STOPPING_OUTCOMES = frozenset({"completed", "escalated", "blocked", "terminal"})


def _error_payload(exc: BaseException) -> dict[str, Any]:
    kind = exc.kind if isinstance(exc, HandoffError) else type(exc).__name__
    return {"kind": kind, "message": str(exc), "at": utc_now()}


@dataclass(slots=True)
class StepOutcome:
    workflow_id: str
    outcome: str
    state: WorkflowState
    action: Action | None = None
    artifacts: list[str] = field(default_factory=list)
    error: HandoffError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "outcome": self.outcome,
            "action": self.action.to_dict() if self.action else None,
            "artifacts": self.artifacts,
            "error": _error_payload(self.error) if self.error else None,
            "state": self.state.to_dict(),
        }


@dataclass(slots=True)
class RunSummary:
    workflow_id: str
    started_at: str
    ended_at: str
    steps: int
    outcome: str
    state: WorkflowState
    error: HandoffError | None = None

    @property
    def completed(self) -> bool:
        return self.state.status == "completed"


class Orchestrator:
    """Advances workflows one persona handover at a time.

    Every step for a workflow id runs under that id's lock, so transitions of a
    single workflow are strictly sequential across processes.
    """

    def __init__(
        self,
        config: HandoffConfig,
        repository: WorkflowRepository,
        locks: FileLockManager,
        registry: PersonaRegistry,
        caller: ResilientCaller,
        *,
        repo_root: Path,
        artifact_probe: ArtifactProbe | None = None,
        handover_store: AtomicFileStore | None = None,
        lock_retry: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.locks = locks
        self.registry = registry
        self.caller = caller
        self.repo_root = repo_root.resolve()
        self.artifact_probe = artifact_probe or self._artifact_exists
        self.handover_store = handover_store
        self.lock_retry = lock_retry or RetryPolicy.from_config(config.retry)

    def _artifact_exists(self, relative_path: str) -> bool:
        return (self.repo_root / relative_path).is_file()

    @staticmethod
    def _lock_resource(workflow_id: str) -> str:
        return f"workflow:{workflow_id}"

    def _lock_ttl(self) -> float:
        dispatch_budget = self.config.personas.timeout_seconds * self.config.retry.max_attempts
        return max(self.config.locks.stale_after_seconds, dispatch_budget)

    def _acquire(self, workflow_id: str) -> LockHandle:
        resource = self._lock_resource(workflow_id)
        return retry(
            lambda: self.locks.acquire(
                resource,
                self.config.locks.timeout_seconds,
                ttl=self._lock_ttl(),
            ),
            self.lock_retry,
            description=f"lock {resource}",
        )

    def _policy(self, state: WorkflowState) -> WorkflowPolicy:
        return WorkflowPolicy.for_kind(state.kind, self.config.workflow, self.config.artifacts)

    def _present_artifacts(self, policy: WorkflowPolicy) -> set[str]:
        return {path for path in policy.expected_artifacts() if self.artifact_probe(path)}

    def _persist(self, state: WorkflowState, expected_hash: str) -> str:
        new_hash = self.repository.save(state, expected_hash)
        if self.handover_store is not None:
            self.handover_store.write_atomic(
                self.config.paths.handover_file, render_handover(state)
            )
        return new_hash

    def _load_or_create(
        self, workflow_id: str, kind: WorkflowKind | None
    ) -> tuple[WorkflowState, str]:
        state, expected_hash = self.repository.load(workflow_id)
        if state is None:
            state = WorkflowState.initial(workflow_id, kind or WorkflowKind.FEATURE)
            logger.info("Starting %s workflow %s", state.kind.value, workflow_id)
        elif kind is not None and kind != state.kind:
            logger.warning(
                "Workflow %s is a %s workflow; ignoring requested kind %s",
                workflow_id,
                state.kind.value,
                kind.value,
            )
        return state, expected_hash

    def step(self, workflow_id: str, kind: WorkflowKind | None = None) -> StepOutcome:
        workflow_id = validate_workflow_id(workflow_id)
        handle = self._acquire(workflow_id)
        try:
            return self._step_locked(workflow_id, kind)
        finally:
            self.locks.release(handle)

    def _step_locked(self, workflow_id: str, kind: WorkflowKind | None) -> StepOutcome:
        state, expected_hash = self._load_or_create(workflow_id, kind)
        if state.is_terminal:
            return StepOutcome(workflow_id, "terminal", state)

        policy = self._policy(state)
        present = self._present_artifacts(policy)
        try:
            action = decide(state, present, policy)
        except LoopDetectedError as exc:
            return self._escalate(state, expected_hash, exc, Persona.parse(exc.to_persona))

        if action is None:
            state.status = "completed"
            state.last_error = None
            state.transition_history.clear()
            state.updated_at = utc_now()
            self._persist(state, expected_hash)
            logger.info("Workflow %s completed at %s", workflow_id, state.persona.value)
            return StepOutcome(workflow_id, "completed", state)

        executor = self.registry.get(action.persona)
        attempt = state.retry_count + 1 if action.retry == RetryMode.INCREMENT else 1
        context = ExecutionContext(workflow_id=workflow_id, attempt=attempt)
        logger.info(
            "Workflow %s: %s -> %s (%s): %s",
            workflow_id,
            state.persona.value,
            action.persona.value,
            action.next_phase,
            action.reason,
        )
        try:
            produced = self.caller.call(
                f"persona:{action.persona.value}",
                lambda: executor.execute(action, context),
                description=f"{action.persona.value} {action.next_phase}",
            )
        except CircuitOpenError as exc:
            self._record_failure(state, action.persona, exc)
            self._persist(state, expected_hash)
            logger.warning("Workflow %s blocked: %s", workflow_id, exc)
            return StepOutcome(workflow_id, "blocked", state, action=action, error=exc)
        except RetryExhaustedError as exc:
            return self._escalate(state, expected_hash, exc, action.persona, action=action)
        except PersonaExecutionError as exc:
            self._record_failure(state, action.persona, exc)
            self._persist(state, expected_hash)
            raise

        state.record(
            TransitionRecord(
                from_persona=state.persona,
                to_persona=action.persona,
                timestamp=utc_now(),
                success=True,
                reason=action.reason,
            )
        )
        state.persona = action.persona
        state.phase = action.next_phase
        state.retry_count = 0 if action.retry == RetryMode.RESET else state.retry_count + 1
        state.status = "in_progress"
        state.last_error = None
        self._persist(state, expected_hash)
        return StepOutcome(
            workflow_id, "advanced", state, action=action, artifacts=sorted(produced or [])
        )

    @staticmethod
    def _record_failure(state: WorkflowState, to_persona: Persona, exc: HandoffError) -> None:
        state.record(
            TransitionRecord(
                from_persona=state.persona,
                to_persona=to_persona,
                timestamp=utc_now(),
                success=False,
                reason=f"{exc.kind}: {exc}",
            )
        )
        state.last_error = _error_payload(exc)

    def _run_recovery(self, state: WorkflowState, exc: HandoffError) -> None:
        if not self.registry.has(Persona.RECOVERY):
            return
        executor = self.registry.get(Persona.RECOVERY)
        action = Action(
            persona=Persona.RECOVERY,
            next_phase="Recovery",
            retry=RetryMode.RESET,
            reason=f"escalation after {exc.kind}",
            source=state.phase,
            prompt=str(exc),
        )
        context = ExecutionContext(workflow_id=state.workflow_id, attempt=1)
        try:
            self.caller.call(
                f"persona:{Persona.RECOVERY.value}",
                lambda: executor.execute(action, context),
                description="recovery",
            )
        except HandoffError as recovery_error:
            logger.error("Recovery for %s failed: %s", state.workflow_id, recovery_error)
            if state.last_error is not None:
                state.last_error["recovery_error"] = _error_payload(recovery_error)

    def _escalate(
        self,
        state: WorkflowState,
        expected_hash: str,
        exc: HandoffError,
        to_persona: Persona,
        *,
        action: Action | None = None,
    ) -> StepOutcome:
        mode = self.config.workflow.on_escalation
        logger.error(
            "Escalating workflow %s (%s) at %s/%s retry=%d history=%d: %s: %s",
            state.workflow_id,
            mode,
            state.persona.value,
            state.phase,
            state.retry_count,
            len(state.transition_history),
            exc.kind,
            exc,
        )
        self._record_failure(state, to_persona, exc)
        if mode == "reset":
            self._run_recovery(state, exc)
            state.persona = Persona.UNKNOWN
            state.phase = UNKNOWN_PHASE
            state.retry_count = 0
            state.status = "reset"
        else:
            state.status = "halted"
        self._persist(state, expected_hash)
        return StepOutcome(state.workflow_id, "escalated", state, action=action, error=exc)

    def run(
        self,
        workflow_id: str,
        kind: WorkflowKind | None = None,
        *,
        max_steps: int | None = None,
    ) -> RunSummary:
        workflow_id = validate_workflow_id(workflow_id)
        limit = max_steps if max_steps is not None else self.config.workflow.max_steps
        started_at = utc_now()
        steps = 0
        outcome: StepOutcome | None = None
        while steps < limit:
            outcome = self.step(workflow_id, kind)
            if outcome.outcome == "terminal":
                break
            steps += 1
            if outcome.outcome in STOPPING_OUTCOMES:
                break
        if outcome is None:
            state = self.status(workflow_id) or WorkflowState.initial(
                workflow_id, kind or WorkflowKind.FEATURE
            )
            final = "max_steps"
            error = None
        else:
            state = outcome.state
            final = outcome.outcome if outcome.outcome in STOPPING_OUTCOMES else "max_steps"
            error = outcome.error
        if final == "max_steps":
            logger.warning(
                "Workflow %s stopped after %d step(s) without finishing", workflow_id, steps
            )
        return RunSummary(
            workflow_id=workflow_id,
            started_at=started_at,
            ended_at=utc_now(),
            steps=steps,
            outcome=final,
            state=state,
            error=error,
        )

    def status(self, workflow_id: str) -> WorkflowState | None:
        return self.repository.get(workflow_id)

    def render(self, workflow_id: str) -> str:
        state = self.repository.get(workflow_id)
        if state is None:
            raise NotFoundError(self.repository.path_for(workflow_id))
        content = render_handover(state)
        if self.handover_store is not None:
            self.handover_store.write_atomic(self.config.paths.handover_file, content)
        return content

    def reset(self, workflow_id: str) -> WorkflowState:
        workflow_id = validate_workflow_id(workflow_id)
        handle = self._acquire(workflow_id)
        try:
            state, expected_hash = self.repository.load(workflow_id)
            if state is None:
                state = WorkflowState.initial(workflow_id)
            state.persona = Persona.UNKNOWN
            state.phase = UNKNOWN_PHASE
            state.retry_count = 0
            state.status = "pending"
            state.last_error = None
            state.transition_history.clear()
            state.updated_at = utc_now()
            self._persist(state, expected_hash)
            logger.info("Workflow %s reset to initial state", workflow_id)
            return state
        finally:
            self.locks.release(handle)

    def list_workflows(self) -> list[WorkflowState]:
        return self.repository.all()
