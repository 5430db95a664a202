from pathlib import Path

import pytest

from handoff.config import HandoffConfig
from handoff.errors import PersonaExecutionError
from handoff.orchestrator import Orchestrator
from handoff.personas import ExecutionContext, Persona, PersonaExecutor, PersonaRegistry
from handoff.resilience import CircuitBreaker, ResilientCaller, RetryPolicy
from handoff.state.atomic import AtomicFileStore
from handoff.state.locks import FileLockManager
from handoff.state.workflows import WorkflowRepository
from handoff.workflow import Action, WorkflowKind


class FakeExecutor(PersonaExecutor):
    def __init__(self, persona: Persona, repo_root: Path, *, writes: str | None = None) -> None:
        self.persona = persona
        self.repo_root = repo_root
        self.writes = writes
        self.calls: list[tuple[str, int]] = []

    def execute(self, action: Action, context: ExecutionContext) -> set[str]:
        self.calls.append((action.next_phase, context.attempt))
        if not self.writes:
            return set()
        target = self.repo_root / self.writes
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f"# {action.next_phase}\n", encoding="utf-8")
        return {self.writes}


class FailingExecutor(PersonaExecutor):
    def __init__(self, persona: Persona, *, retriable: bool = True) -> None:
        self.persona = persona
        self.retriable = retriable
        self.calls = 0

    def execute(self, action: Action, context: ExecutionContext) -> set[str]:
        self.calls += 1
        raise PersonaExecutionError(
            "agent crashed", persona=self.persona.value, exit_code=2, retriable=self.retriable
        )


def _registry(repo_root: Path, config: HandoffConfig, **overrides) -> PersonaRegistry:
    writes = {Persona.PM: config.artifacts.prd, Persona.ARCHITECT: config.artifacts.spec}
    registry = PersonaRegistry()
    for persona in Persona:
        if persona in (Persona.UNKNOWN, Persona.RECOVERY):
            continue
        registry.register(persona, FakeExecutor(persona, repo_root, writes=writes.get(persona)))
    for persona, executor in overrides.items():
        registry.register(Persona[persona], executor)
    return registry


def _orchestrator(
    tmp_path: Path,
    config: HandoffConfig | None = None,
    registry: PersonaRegistry | None = None,
    *,
    max_attempts: int = 2,
) -> Orchestrator:
    config = config or HandoffConfig.default()
    repo_root = tmp_path / "repo"
    repo_root.mkdir(exist_ok=True)
    locks = FileLockManager(tmp_path / "locks")
    files = AtomicFileStore(tmp_path / "state", locks)
    caller = ResilientCaller(
        CircuitBreaker(threshold=config.breaker.threshold),
        RetryPolicy(max_attempts=max_attempts, base_delay_seconds=0.0),
        sleep=lambda _: None,
    )
    return Orchestrator(
        config,
        WorkflowRepository(files),
        locks,
        registry or _registry(repo_root, config),
        caller,
        repo_root=repo_root,
        handover_store=files,
    )


def test_feature_workflow_runs_to_completion(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    summary = orchestrator.run("42", WorkflowKind.FEATURE)

    assert summary.completed is True
    assert summary.outcome == "completed"
    assert summary.steps == 8
    assert summary.state.persona == Persona.RELEASE_MANAGER
    assert summary.state.transition_history == []
    assert (tmp_path / "repo" / "docs" / "planning" / "PRD.md").exists()
    stored = orchestrator.status("42")
    assert stored.status == "completed"
    handover = (tmp_path / "state" / ".handoff" / "HANDOVER.md").read_text(encoding="utf-8")
    assert "- **Status:** completed" in handover


def test_step_advances_one_transition_at_a_time(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    first = orchestrator.step("7")
    second = orchestrator.step("7")

    assert first.outcome == "advanced"
    assert first.artifacts == ["docs/planning/PRD.md"]
    assert second.state.persona == Persona.ARCHITECT
    assert [(r.from_persona, r.to_persona) for r in second.state.transition_history] == [
        (Persona.UNKNOWN, Persona.PM),
        (Persona.PM, Persona.ARCHITECT),
    ]


def test_missing_artifact_resets_workflow_and_runs_recovery(tmp_path: Path) -> None:
    config = HandoffConfig.default()
    config.workflow.max_retries = 2
    repo_root = tmp_path / "repo"
    lazy_pm = FakeExecutor(Persona.PM, repo_root)
    recovery = FakeExecutor(Persona.RECOVERY, repo_root)
    registry = _registry(repo_root, config, PM=lazy_pm, RECOVERY=recovery)
    orchestrator = _orchestrator(tmp_path, config, registry)

    summary = orchestrator.run("42")

    assert summary.outcome == "escalated"
    assert summary.error.loop_kind == "stall"
    assert lazy_pm.calls == [("Planning", 1), ("Planning", 1), ("Planning", 2)]
    assert recovery.calls == [("Recovery", 1)]
    state = orchestrator.status("42")
    assert state.status == "reset"
    assert state.persona == Persona.UNKNOWN
    assert state.retry_count == 0
    assert state.last_error["kind"] == "LoopDetectedError"
    assert state.transition_history[-1].success is False


def test_repeated_transition_resets_instead_of_reinvoking(tmp_path: Path) -> None:
    config = HandoffConfig.default()
    config.workflow.max_retries = 10
    config.workflow.loop_threshold = 2
    repo_root = tmp_path / "repo"
    lazy_pm = FakeExecutor(Persona.PM, repo_root)
    registry = _registry(repo_root, config, PM=lazy_pm)
    orchestrator = _orchestrator(tmp_path, config, registry)

    summary = orchestrator.run("42")

    assert summary.outcome == "escalated"
    assert summary.error.loop_kind == "loop"
    assert summary.error.count == 2
    assert len(lazy_pm.calls) == 3
    assert summary.state.status == "reset"
    assert summary.state.persona == Persona.UNKNOWN


def test_halt_mode_stops_the_workflow(tmp_path: Path) -> None:
    config = HandoffConfig.default()
    config.workflow.on_escalation = "halt"
    config.workflow.max_retries = 0
    repo_root = tmp_path / "repo"
    registry = _registry(repo_root, config, PM=FakeExecutor(Persona.PM, repo_root))
    orchestrator = _orchestrator(tmp_path, config, registry)

    summary = orchestrator.run("9")

    assert summary.outcome == "escalated"
    assert summary.state.status == "halted"
    assert orchestrator.step("9").outcome == "terminal"


def test_exhausted_persona_retries_escalate(tmp_path: Path) -> None:
    config = HandoffConfig.default()
    config.breaker.threshold = 5
    failing = FailingExecutor(Persona.PM)
    registry = _registry(tmp_path / "repo", config, PM=failing)
    orchestrator = _orchestrator(tmp_path, config, registry, max_attempts=3)

    outcome = orchestrator.step("42")

    assert outcome.outcome == "escalated"
    assert failing.calls == 3
    assert outcome.state.last_error["kind"] == "RetryExhaustedError"


def test_open_circuit_blocks_without_calling_persona(tmp_path: Path) -> None:
    config = HandoffConfig.default()
    config.breaker.threshold = 2
    failing = FailingExecutor(Persona.PM)
    registry = _registry(tmp_path / "repo", config, PM=failing)
    orchestrator = _orchestrator(tmp_path, config, registry, max_attempts=4)

    outcome = orchestrator.step("42")

    assert outcome.outcome == "blocked"
    assert failing.calls == 2
    assert outcome.state.last_error["kind"] == "CircuitOpenError"
    assert outcome.state.status == "pending"


def test_non_retriable_persona_failure_propagates(tmp_path: Path) -> None:
    failing = FailingExecutor(Persona.PM, retriable=False)
    config = HandoffConfig.default()
    orchestrator = _orchestrator(tmp_path, config, _registry(tmp_path / "repo", config, PM=failing))

    with pytest.raises(PersonaExecutionError):
        orchestrator.step("42")

    assert failing.calls == 1
    assert orchestrator.status("42").last_error["kind"] == "PersonaExecutionError"
    assert orchestrator.locks.owner("workflow:42") is None


def test_audit_workflow_uses_audit_flow(tmp_path: Path) -> None:
    config = HandoffConfig.default()
    repo_root = tmp_path / "repo"
    registry = _registry(
        repo_root,
        config,
        PM=FakeExecutor(Persona.PM, repo_root, writes=config.artifacts.master_plan),
    )
    orchestrator = _orchestrator(tmp_path, config, registry)

    summary = orchestrator.run("audit-1", WorkflowKind.AUDIT)

    assert summary.completed is True
    assert summary.state.persona == Persona.ARCHITECT
    assert summary.state.phase == "Audit Breakdown"


def test_max_steps_bounds_a_run(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    summary = orchestrator.run("42", max_steps=2)

    assert summary.outcome == "max_steps"
    assert summary.steps == 2
    assert summary.state.status == "in_progress"


def test_reset_list_and_render(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    orchestrator.step("a")
    orchestrator.step("b")

    state = orchestrator.reset("a")

    assert state.persona == Persona.UNKNOWN
    assert state.status == "pending"
    assert [item.workflow_id for item in orchestrator.list_workflows()] == ["a", "b"]
    assert orchestrator.render("b").startswith("# Handover: b")


def test_workflow_id_is_normalized_before_locking(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    first = orchestrator.step("  abc ")
    second = orchestrator.step("abc")

    assert first.workflow_id == "abc"
    assert first.state.workflow_id == "abc"
    assert second.state.persona == Persona.ARCHITECT
    assert orchestrator.reset(" abc").workflow_id == "abc"
    assert [item.workflow_id for item in orchestrator.list_workflows()] == ["abc"]
