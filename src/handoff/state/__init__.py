from handoff.state.locks import FileLockManager, LockHandle
from handoff.state.atomic import ABSENT, AtomicFileStore, ContextEntry, content_hash
from handoff.state.git_branch import VersionedEntry, VersionedStore
from handoff.state.workflows import WorkflowRepository

__all__ = [
    "ABSENT",
    "AtomicFileStore",
    "ContextEntry",
    "FileLockManager",
    "LockHandle",
    "VersionedEntry",
    "VersionedStore",
    "WorkflowRepository",
    "content_hash",
]
