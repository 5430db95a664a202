from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from handoff.admission import AdmissionController, ExecutionBatch
from handoff.commits import CommitHandler
from handoff.config import HandoffConfig, load_config, save_config
from handoff.errors import HandoffError
from handoff.git import GitRunner
from handoff.health import check_health
from handoff.logging_setup import setup_logging
from handoff.orchestrator import Orchestrator
from handoff.personas import build_registry
from handoff.resilience import (
    CircuitBreaker,
    FileBreakerStore,
    MemoryBreakerStore,
    ResilientCaller,
    RetryPolicy,
)
from handoff.runner import TestCommandRunner
from handoff.state import AtomicFileStore, FileLockManager, VersionedStore, WorkflowRepository
from handoff.state.workflows import DocumentStore
from handoff.workflow import WorkflowKind, detect_workflow_kind

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "handoff.toml"
EVENTS_DOCUMENT = "events.json"
MAX_EVENTS = 200


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: HandoffConfig
    locks: FileLockManager
    files: AtomicFileStore
    store: DocumentStore
    repository: WorkflowRepository
    breaker: CircuitBreaker
    caller: ResilientCaller
    orchestrator: Orchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else repo_root / path


def _record_call_event(files: AtomicFileStore, event: dict[str, Any]) -> None:
    def _updater(payload: Any) -> dict[str, Any]:
        document = payload if isinstance(payload, dict) else {}
        events = document.get("events", [])
        if not isinstance(events, list):
            events = []
        events.append(event)
        document["events"] = events[-MAX_EVENTS:]
        if event.get("event") == "call_retry":
            document["retry_count"] = int(document.get("retry_count", 0)) + 1
        return document

    try:
        files.update_json(EVENTS_DOCUMENT, _updater, default={})
    except HandoffError as exc:
        logger.warning("Could not record %s event: %s", event.get("event"), exc)


def _build_store(config: HandoffConfig, repo_root: Path, files: AtomicFileStore) -> DocumentStore:
    if config.state.backend == "branch":
        return VersionedStore(
            repo_root,
            branch_ref=config.state.branch_ref,
            retry_policy=RetryPolicy.from_config(config.retry),
        )
    return files


def _load_runtime(repo_root: Path, config_path: Path, *, verbose: bool = False) -> Runtime:
    config = load_config(config_path)
    if config.paths.log_file:
        setup_logging(verbose=verbose, log_file=_resolve_path(repo_root, config.paths.log_file))
    locks = FileLockManager(
        _resolve_path(repo_root, config.paths.lock_dir),
        stale_after_seconds=config.locks.stale_after_seconds,
        poll_initial_seconds=config.locks.poll_initial_seconds,
        poll_max_seconds=config.locks.poll_max_seconds,
    )
    files = AtomicFileStore(
        _resolve_path(repo_root, config.paths.state_dir),
        locks,
        lock_timeout_seconds=config.locks.timeout_seconds,
    )
    store = _build_store(config, repo_root, files)
    repository = WorkflowRepository(store)
    breaker = CircuitBreaker(
        threshold=config.breaker.threshold,
        cooldown_seconds=config.breaker.cooldown_seconds,
        store=FileBreakerStore(files) if config.breaker.persist else MemoryBreakerStore(),
    )
    caller = ResilientCaller(
        breaker,
        RetryPolicy.from_config(config.retry),
        event_hook=lambda event: _record_call_event(files, event),
    )
    orchestrator = Orchestrator(
        config,
        repository,
        locks,
        build_registry(config, repo_root),
        caller,
        repo_root=repo_root,
        handover_store=AtomicFileStore(
            repo_root, locks, lock_timeout_seconds=config.locks.timeout_seconds
        ),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        locks=locks,
        files=files,
        store=store,
        repository=repository,
        breaker=breaker,
        caller=caller,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(
            repo_root,
            _resolve_config_path(repo_root, config_value),
            verbose=bool(click.get_current_context().find_root().params.get("verbose")),
        )
    except HandoffError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _resolve_kind(kind: str | None, title: str | None) -> WorkflowKind | None:
    if kind:
        return WorkflowKind(kind)
    if title:
        return detect_workflow_kind(title)
    return None


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG, show_default=True
)
kind_option = click.option(
    "--kind", type=click.Choice([item.value for item in WorkflowKind]), default=None
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Handoff workflow coordination CLI."""
    setup_logging(verbose=verbose)


@cli.command("init")
@click.option("--backend", type=click.Choice(["local", "branch"]), default=None)
@config_option
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
        if backend:
            config.state.backend = backend  # type: ignore[assignment]
        config.validate()
    except HandoffError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc
    save_config(config_path, config)

    runtime = _runtime(config_value)
    if isinstance(runtime.store, VersionedStore):
        commit_id = runtime.store.initialize()
        click.echo(f"State ref: {runtime.store.ref_name} ({commit_id[:10]})")

    click.echo(f"Initialized handoff in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State backend: {config.state.backend}")


@cli.command("run")
@click.argument("workflow_id")
@kind_option
@click.option("--title", default=None, help="Issue title used to detect the workflow kind.")
@click.option("--max-steps", type=int, default=None)
@config_option
def run_command(
    workflow_id: str,
    kind: str | None,
    title: str | None,
    max_steps: int | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        summary = runtime.orchestrator.run(
            workflow_id, _resolve_kind(kind, title), max_steps=max_steps
        )
    except HandoffError as exc:
        state = runtime.orchestrator.status(workflow_id)
        if state is not None:
            _echo_json(state.to_dict())
        raise click.ClickException(f"{exc.kind}: {exc}") from exc

    _echo_json(summary.state.to_dict())
    if summary.error is not None:
        click.echo(f"Error: {summary.error.kind}: {summary.error}", err=True)
    if not summary.completed:
        click.echo(f"Workflow {workflow_id} stopped: {summary.outcome}", err=True)
        raise SystemExit(1)


@cli.command("step")
@click.argument("workflow_id")
@kind_option
@config_option
def step_command(workflow_id: str, kind: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        outcome = runtime.orchestrator.step(workflow_id, _resolve_kind(kind, None))
    except HandoffError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc
    _echo_json(outcome.to_dict())


@cli.command("status")
@click.argument("workflow_id", required=False)
@config_option
def status_command(workflow_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if workflow_id is None:
        states = runtime.orchestrator.list_workflows()
        _echo_json({"workflows": [state.to_dict() for state in states]})
        return
    state = runtime.orchestrator.status(workflow_id)
    if state is None:
        raise click.ClickException(f"Workflow not found: {workflow_id}")
    _echo_json(state.to_dict())


@cli.command("reset")
@click.argument("workflow_id")
@config_option
def reset_command(workflow_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        state = runtime.orchestrator.reset(workflow_id)
    except HandoffError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc
    click.echo(f"Workflow {state.workflow_id} reset to {state.persona.value}/{state.phase}")


@cli.command("test")
@click.argument("items", nargs=-1)
@click.option("--batch-size", type=int, default=0, help="Override the configured sub-batch size.")
@config_option
def test_command(items: tuple[str, ...], batch_size: int, config_value: str) -> None:
    runtime = _runtime(config_value)
    admission = runtime.config.admission
    controller = AdmissionController(
        runtime.locks,
        admission,
        TestCommandRunner(
            runtime.repo_root,
            admission.test_command,
            timeout_seconds=admission.test_timeout_seconds,
        ),
        item_root=runtime.repo_root,
    )
    batch = ExecutionBatch(items=list(items), batch_size=max(0, batch_size))
    try:
        result = controller.submit(batch)
    except HandoffError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc
    _echo_json(result.to_dict())
    if not result.passed:
        raise SystemExit(1)


@cli.command("health")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def health_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    report = check_health(
        runtime.repository,
        runtime.breaker,
        stall_after_seconds=runtime.config.workflow.stall_after_seconds,
        now=datetime.now(UTC),
    )
    if as_json:
        _echo_json(report.to_dict())
    else:
        click.echo(report.signal())


@cli.command("breakers")
@click.option("--reset", "reset_key", default=None, help="Close the named breaker.")
@config_option
def breakers_command(reset_key: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if reset_key:
        runtime.breaker.reset(reset_key)
        click.echo(f"Breaker {reset_key} reset.")
        return
    states = runtime.breaker.states()
    if not states:
        click.echo("No breakers recorded.")
        return
    _echo_json({key: state.to_dict() for key, state in states.items()})


@cli.command("commit")
@click.argument("persona")
@click.argument("step_id")
@click.argument("description")
@click.option("--path", "paths", multiple=True, help="Stage this path before committing.")
@click.option("--all", "stage_all", is_flag=True, default=False, help="Stage all changes.")
@config_option
def commit_command(
    persona: str,
    step_id: str,
    description: str,
    paths: tuple[str, ...],
    stage_all: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    handler = CommitHandler(
        GitRunner(runtime.repo_root), policy=RetryPolicy.from_config(runtime.config.retry)
    )
    try:
        result = handler.commit(
            persona, step_id, description, paths=list(paths) or None, stage_all=stage_all
        )
    except HandoffError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc
    if not result.committed:
        click.echo(f"Nothing to commit for: {result.message}")
        return
    click.echo(f"Committed {result.commit_id[:10] if result.commit_id else ''} {result.message}")


@cli.command("render")
@click.argument("workflow_id")
@config_option
def render_command(workflow_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.orchestrator.render(workflow_id)
    except HandoffError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc
    click.echo(f"Wrote {_resolve_path(runtime.repo_root, runtime.config.paths.handover_file)}")
