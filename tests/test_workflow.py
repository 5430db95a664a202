import pytest

from handoff.config import ArtifactsConfig, WorkflowConfig
from handoff.errors import ConfigurationError, LoopDetectedError
from handoff.personas import Persona
from handoff.workflow import (
    RetryMode,
    TransitionRecord,
    WorkflowKind,
    WorkflowPolicy,
    WorkflowState,
    decide,
    detect_workflow_kind,
    render_handover,
)

ARTIFACTS = ArtifactsConfig()
FEATURE = WorkflowPolicy.for_kind(WorkflowKind.FEATURE, WorkflowConfig(), ARTIFACTS)
AUDIT = WorkflowPolicy.for_kind(WorkflowKind.AUDIT, WorkflowConfig(), ARTIFACTS)


def _state(persona: Persona, phase: str, retry_count: int = 0) -> WorkflowState:
    state = WorkflowState.initial("42")
    state.persona = persona
    state.phase = phase
    state.retry_count = retry_count
    return state


def _record(from_persona: Persona, to_persona: Persona) -> TransitionRecord:
    return TransitionRecord(from_persona, to_persona, "2026-01-01T00:00:00+00:00", True)


def test_initial_state_starts_with_pm_planning() -> None:
    action = decide(WorkflowState.initial("42"), set(), FEATURE)

    assert action.persona == Persona.PM
    assert action.next_phase == "Planning"
    assert action.retry == RetryMode.RESET


def test_missing_artifact_reinvokes_same_persona() -> None:
    action = decide(_state(Persona.PM, "Planning", retry_count=1), set(), FEATURE)

    assert action.persona == Persona.PM
    assert action.retry == RetryMode.INCREMENT
    assert "docs/planning/PRD.md" in action.reason


def test_present_artifact_hands_over_with_reset() -> None:
    action = decide(_state(Persona.PM, "Planning", retry_count=2), {ARTIFACTS.prd}, FEATURE)

    assert action.persona == Persona.ARCHITECT
    assert action.next_phase == "Architecture Design"
    assert action.retry == RetryMode.RESET


def test_feature_flow_visits_every_persona_then_finishes() -> None:
    state = WorkflowState.initial("42")
    present = {ARTIFACTS.prd, ARTIFACTS.spec}
    visited: list[Persona] = []

    while (action := decide(state, present, FEATURE)) is not None:
        visited.append(action.persona)
        state.persona = action.persona
        state.phase = action.next_phase

    assert visited == [
        Persona.PM,
        Persona.ARCHITECT,
        Persona.DEVELOPER,
        Persona.QA,
        Persona.SECURITY,
        Persona.DEVOPS,
        Persona.RELEASE_MANAGER,
    ]


def test_audit_flow_ends_after_breakdown() -> None:
    start = decide(WorkflowState.initial("7"), set(), AUDIT)
    assert (start.persona, start.next_phase) == (Persona.PM, "Audit Planning")

    breakdown = decide(_state(Persona.PM, "Audit Planning"), {ARTIFACTS.master_plan}, AUDIT)
    assert (breakdown.persona, breakdown.next_phase) == (Persona.ARCHITECT, "Audit Breakdown")

    assert decide(_state(Persona.ARCHITECT, "Audit Breakdown"), set(), AUDIT) is None


def test_persona_outside_flow_restarts() -> None:
    action = decide(_state(Persona.SECURITY, "Security Review"), set(), AUDIT)

    assert action.persona == Persona.PM
    assert action.retry == RetryMode.RESET


def test_retry_bound_raises_stall() -> None:
    with pytest.raises(LoopDetectedError) as excinfo:
        decide(_state(Persona.PM, "Planning", retry_count=3), set(), FEATURE)

    assert excinfo.value.loop_kind == "stall"
    assert excinfo.value.to_persona == "PM"


def test_repeated_pair_is_refused_on_threshold_plus_one() -> None:
    policy = WorkflowPolicy.for_kind(
        WorkflowKind.FEATURE, WorkflowConfig(max_retries=10, loop_threshold=3), ARTIFACTS
    )
    state = _state(Persona.PM, "Planning", retry_count=2)
    state.transition_history = [_record(Persona.PM, Persona.PM)] * 2

    assert decide(state, set(), policy).persona == Persona.PM

    state.transition_history.append(_record(Persona.PM, Persona.PM))
    with pytest.raises(LoopDetectedError) as excinfo:
        decide(state, set(), policy)
    assert excinfo.value.loop_kind == "loop"
    assert excinfo.value.count == 3


def test_intervening_pair_breaks_the_run() -> None:
    policy = WorkflowPolicy.for_kind(
        WorkflowKind.FEATURE, WorkflowConfig(max_retries=10, loop_threshold=2), ARTIFACTS
    )
    state = _state(Persona.PM, "Planning", retry_count=1)
    state.transition_history = [
        _record(Persona.PM, Persona.PM),
        _record(Persona.UNKNOWN, Persona.PM),
        _record(Persona.PM, Persona.PM),
    ]

    assert decide(state, set(), policy).persona == Persona.PM


def test_decide_is_pure() -> None:
    state = _state(Persona.PM, "Planning", retry_count=1)
    before = state.to_dict()

    decide(state, set(), FEATURE)

    assert state.to_dict() == before


def test_state_dict_roundtrip_and_schema_guard() -> None:
    state = _state(Persona.RELEASE_MANAGER, "Release Management")
    state.transition_history.append(_record(Persona.DEVOPS, Persona.RELEASE_MANAGER))

    restored = WorkflowState.from_dict(state.to_dict())

    assert restored == state
    payload = state.to_dict()
    payload["schema_version"] = 2
    with pytest.raises(ConfigurationError):
        WorkflowState.from_dict(payload)


def test_legacy_persona_spellings_parse() -> None:
    assert Persona.parse("releasemanager") == Persona.RELEASE_MANAGER
    assert Persona.parse("pm") == Persona.PM
    assert Persona.parse("") == Persona.UNKNOWN
    with pytest.raises(ConfigurationError):
        Persona.parse("wizard")


@pytest.mark.parametrize(
    ("title", "kind"),
    [
        ("[Audit] quarterly review", WorkflowKind.AUDIT),
        ("audit: dependencies", WorkflowKind.AUDIT),
        ("Bug in login form", WorkflowKind.BUG),
        ("fix: crash on start", WorkflowKind.BUG),
        ("Add user authentication", WorkflowKind.FEATURE),
    ],
)
def test_detect_workflow_kind(title: str, kind: WorkflowKind) -> None:
    assert detect_workflow_kind(title) == kind


def test_render_handover_is_derived_from_state() -> None:
    state = _state(Persona.ARCHITECT, "Architecture Design")
    state.transition_history.append(_record(Persona.PM, Persona.ARCHITECT))

    rendered = render_handover(state)

    assert rendered.startswith("# Handover: 42")
    assert "- **Current Persona:** ARCHITECT" in rendered
    assert "| PM | ARCHITECT | ok |" in rendered
