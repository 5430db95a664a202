from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from handoff.resilience.breaker import CircuitBreaker
from handoff.state.workflows import WorkflowRepository

logger = logging.getLogger(__name__)

WATCHDOG_KEY = "watchdog"


@dataclass(slots=True)
class HealthReport:
    status: str
    active: list[str] = field(default_factory=list)
    stalled: list[str] = field(default_factory=list)
    checked_at: str = ""

    def signal(self) -> str:
        """One-line status for wrapper scripts, e.g. ``RESUME_NEEDED:42``."""
        if self.status == "resume_needed":
            return f"RESUME_NEEDED:{','.join(self.stalled)}"
        return self.status.upper()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "active": self.active,
            "stalled": self.stalled,
            "checked_at": self.checked_at,
        }


def _age_seconds(timestamp: str, now: datetime) -> float:
    try:
        updated = datetime.fromisoformat(timestamp)
    except ValueError:
        return float("inf")
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=UTC)
    return (now - updated).total_seconds()


def check_health(
    repository: WorkflowRepository,
    breaker: CircuitBreaker,
    *,
    stall_after_seconds: float = 600.0,
    now: datetime | None = None,
) -> HealthReport:
    current = now or datetime.now(UTC)
    checked_at = current.replace(microsecond=0).isoformat()
    if breaker.is_open(WATCHDOG_KEY):
        logger.error("Watchdog circuit is open; skipping workflow checks")
        return HealthReport(status="circuit_open", checked_at=checked_at)

    active = [state for state in repository.all() if not state.is_terminal]
    if not active:
        logger.info("No active workflows; system idle")
        return HealthReport(status="idle", checked_at=checked_at)

    stalled: list[str] = []
    for state in active:
        age = _age_seconds(state.updated_at, current)
        logger.debug("Workflow %s last updated %.0fs ago", state.workflow_id, age)
        if age > stall_after_seconds:
            logger.warning("Workflow %s appears stalled at %s", state.workflow_id, state.phase)
            stalled.append(state.workflow_id)

    active_ids = [state.workflow_id for state in active]
    if stalled:
        breaker.record_failure(WATCHDOG_KEY)
        return HealthReport(
            status="resume_needed",
            active=active_ids,
            stalled=stalled,
            checked_at=checked_at,
        )
    breaker.record_success(WATCHDOG_KEY)
    return HealthReport(status="healthy", active=active_ids, checked_at=checked_at)
