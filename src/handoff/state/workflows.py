from __future__ import annotations

import json
import logging
import re
from typing import Protocol

from handoff.errors import HandoffError
from handoff.state.atomic import ABSENT, ContextEntry
from handoff.workflow import WorkflowState

logger = logging.getLogger(__name__)

WORKFLOW_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
WORKFLOW_PREFIX = "workflows"


class DocumentStore(Protocol):
    """Common surface of AtomicFileStore and VersionedStore."""

    def read_entry(self, path: str) -> ContextEntry | None: ...

    def put(self, path: str, content: str, expected_hash: str | None = None) -> str: ...

    def list(self, *, prefix: str = "") -> list[str]: ...


def validate_workflow_id(workflow_id: str) -> str:
    value = workflow_id.strip()
    if not WORKFLOW_ID_PATTERN.match(value):
        raise HandoffError(f"Invalid workflow id: {workflow_id!r}")
    return value


class WorkflowRepository:
    """Schema-versioned workflow records, one JSON document per workflow id."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    @staticmethod
    def path_for(workflow_id: str) -> str:
        return f"{WORKFLOW_PREFIX}/{validate_workflow_id(workflow_id)}.json"

    def load(self, workflow_id: str) -> tuple[WorkflowState | None, str]:
        """Return the stored state and its content hash, or ``(None, ABSENT)``."""
        entry = self.store.read_entry(self.path_for(workflow_id))
        if entry is None:
            return None, ABSENT
        try:
            payload = json.loads(entry.content)
        except json.JSONDecodeError as exc:
            raise HandoffError(f"Workflow record {entry.path} is not valid JSON: {exc}") from exc
        return WorkflowState.from_dict(payload), entry.content_hash

    def get(self, workflow_id: str) -> WorkflowState | None:
        state, _ = self.load(workflow_id)
        return state

    def save(self, state: WorkflowState, expected_hash: str | None) -> str:
        content = json.dumps(state.to_dict(), ensure_ascii=False, indent=2, sort_keys=True) + "\n"
        path = self.path_for(state.workflow_id)
        self.store.put(path, content, expected_hash=expected_hash)
        logger.debug("Saved %s (%s/%s)", path, state.persona.value, state.phase)
        entry = self.store.read_entry(path)
        return entry.content_hash if entry else ABSENT

    def list_ids(self) -> list[str]:
        ids: list[str] = []
        for path in self.store.list(prefix=WORKFLOW_PREFIX):
            name = path.rsplit("/", 1)[-1]
            if name.endswith(".json"):
                ids.append(name[: -len(".json")])
        return sorted(ids)

    def all(self) -> list[WorkflowState]:
        states: list[WorkflowState] = []
        for workflow_id in self.list_ids():
            state = self.get(workflow_id)
            if state is not None:
                states.append(state)
        return states
