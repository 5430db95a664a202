"""Admission control for resource-heavy operations such as test runs.

A batch is admitted only while the host is under its memory and load ceilings,
and at most one admitted batch runs at a time across all processes sharing the
lock directory. Admitted batches run as sequential sub-batches with a short
recovery pause between them, cheapest test targets first.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

import psutil

from handoff.config import AdmissionConfig
from handoff.errors import AdmissionDeniedError, HandoffError
from handoff.state.locks import FileLockManager

logger = logging.getLogger(__name__)

SLOT_RESOURCE = "admission:global-slot"


@dataclass(slots=True, frozen=True)
class ResourceSample:
    memory_percent: float
    load_average: float

    def to_dict(self) -> dict[str, float]:
        return {"memory_percent": self.memory_percent, "load_average": self.load_average}


ResourceProbe = Callable[[], ResourceSample]
BatchRunner = Callable[[list[str]], Any]


def host_probe() -> ResourceSample:
    return ResourceSample(
        memory_percent=float(psutil.virtual_memory().percent),
        load_average=float(psutil.getloadavg()[0]),
    )


@dataclass(slots=True)
class ExecutionBatch:
    items: list[str]
    batch_size: int = 0
    admission_ticket: str | None = None


@dataclass(slots=True)
class SubBatchResult:
    index: int
    items: list[str]
    output: Any = None
    error: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        output = self.output.to_dict() if hasattr(self.output, "to_dict") else self.output
        return {"index": self.index, "items": self.items, "output": output, "error": self.error}


@dataclass(slots=True)
class ExecutionResult:
    ticket: str
    sub_batches: list[SubBatchResult] = field(default_factory=list)
    completed: bool = False
    error: dict[str, str] | None = None

    @property
    def passed(self) -> bool:
        if not self.completed:
            return False
        return all(getattr(item.output, "ok", True) for item in self.sub_batches)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket": self.ticket,
            "completed": self.completed,
            "passed": self.passed,
            "error": self.error,
            "sub_batches": [item.to_dict() for item in self.sub_batches],
        }


# Cheapest first: unit, uncategorized, integration, then property-based suites.
CATEGORY_ORDER = ("unit", "other", "integration", "property")
PROPERTY_MARKERS = ("from hypothesis", "import hypothesis", "@given(", "fc.assert", "fc.property")


def categorize(item: str, root: Path) -> str:
    normalized = "/" + item.replace("\\", "/")
    if "/unit/" in normalized or ".unit." in normalized:
        return "unit"
    if "/integration/" in normalized or ".integration." in normalized:
        return "integration"
    try:
        content = (root / item).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return "other"
    if any(marker in content for marker in PROPERTY_MARKERS):
        return "property"
    return "other"


def _size(item: str, root: Path) -> int:
    try:
        return (root / item).stat().st_size
    except OSError:
        return 0


def order_items(items: list[str], root: Path | None = None) -> list[str]:
    """Order test targets by category, smallest file first within each category.

    Targets that cannot be read keep their submitted order inside "other".
    """
    base = root or Path.cwd()
    return sorted(
        items,
        key=lambda item: (CATEGORY_ORDER.index(categorize(item, base)), _size(item, base)),
    )


def partition(items: list[str], size: int) -> list[list[str]]:
    step = max(1, size)
    return [items[index : index + step] for index in range(0, len(items), step)]


class AdmissionController:
    def __init__(
        self,
        locks: FileLockManager,
        config: AdmissionConfig,
        runner: BatchRunner,
        *,
        resource_probe: ResourceProbe = host_probe,
        sleep: Callable[[float], None] = time.sleep,
        item_root: Path | None = None,
    ) -> None:
        self.locks = locks
        self.config = config
        self.runner = runner
        self.resource_probe = resource_probe
        self._sleep = sleep
        self.item_root = item_root

    def check(self, sample: ResourceSample) -> list[str]:
        reasons: list[str] = []
        if sample.memory_percent > self.config.max_memory_percent:
            reasons.append(
                f"memory usage {sample.memory_percent:.1f}% exceeds "
                f"{self.config.max_memory_percent:.1f}%"
            )
        if sample.load_average > self.config.max_load_average:
            reasons.append(
                f"load average {sample.load_average:.2f} exceeds "
                f"{self.config.max_load_average:.2f}"
            )
        return reasons

    def submit(
        self,
        batch: ExecutionBatch,
        resource_probe: ResourceProbe | None = None,
    ) -> ExecutionResult:
        sample = (resource_probe or self.resource_probe)()
        reasons = self.check(sample)
        if reasons:
            logger.warning(
                "Admission denied for %d item(s): %s", len(batch.items), "; ".join(reasons)
            )
            raise AdmissionDeniedError(reasons, sample)

        handle = self.locks.acquire(
            SLOT_RESOURCE,
            self.config.slot_timeout_seconds,
            ttl=self.config.slot_ttl_seconds,
        )
        ticket = uuid4().hex[:12]
        batch.admission_ticket = ticket
        result = ExecutionResult(ticket=ticket)
        # An empty batch runs the command once with no targets.
        ordered = order_items(batch.items, self.item_root)
        chunks = partition(ordered, batch.batch_size or self.config.batch_size) or [[]]
        logger.info(
            "Admitted batch %s: %d item(s) in %d sub-batch(es) (memory %.1f%%, load %.2f)",
            ticket,
            len(batch.items),
            len(chunks),
            sample.memory_percent,
            sample.load_average,
        )
        try:
            for index, chunk in enumerate(chunks):
                if index:
                    self._sleep(self.config.recovery_delay_seconds)
                try:
                    output = self.runner(chunk)
                except Exception as exc:
                    kind = exc.kind if isinstance(exc, HandoffError) else type(exc).__name__
                    error = {"kind": kind, "message": str(exc)}
                    logger.error("Batch %s sub-batch %d failed fatally: %s", ticket, index, exc)
                    result.sub_batches.append(SubBatchResult(index, chunk, error=error))
                    result.error = error
                    break
                result.sub_batches.append(SubBatchResult(index, chunk, output=output))
            else:
                result.completed = True
        finally:
            self.locks.release(handle)
        return result
