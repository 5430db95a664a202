from __future__ import annotations

from typing import Any


class HandoffError(RuntimeError):
    """Base class for coordination-layer failures."""

    retriable: bool = False

    def __init__(self, message: str, *, retriable: bool | None = None) -> None:
        super().__init__(message)
        if retriable is not None:
            self.retriable = retriable

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigurationError(HandoffError):
    """Raised when configuration or wiring is invalid."""


class LockTimeoutError(HandoffError):
    retriable = True

    def __init__(self, resource: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Timed out after {timeout_seconds:.2f}s waiting for lock on '{resource}'."
        )
        self.resource = resource
        self.timeout_seconds = timeout_seconds


class IntegrityViolationError(HandoffError):
    """Precondition hash mismatch. Callers must re-read and reconcile."""

    def __init__(self, path: str, expected_hash: str, actual_hash: str | None) -> None:
        super().__init__(
            f"Integrity violation on '{path}': expected {expected_hash[:12] or '<absent>'}, "
            f"found {(actual_hash or '<absent>')[:12]}."
        )
        self.path = path
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class NotFoundError(HandoffError):
    def __init__(self, path: str, ref: str | None = None) -> None:
        location = f" at {ref}" if ref else ""
        super().__init__(f"No entry for '{path}'{location}.")
        self.path = path
        self.ref = ref


class CircuitOpenError(HandoffError):
    def __init__(self, key: str, retry_after_seconds: float) -> None:
        super().__init__(
            f"Circuit '{key}' is open. Retry in {max(0.0, retry_after_seconds):.1f}s."
        )
        self.key = key
        self.retry_after_seconds = retry_after_seconds


class AdmissionDeniedError(HandoffError):
    def __init__(self, reasons: list[str], sample: Any | None = None) -> None:
        super().__init__("Admission denied: " + "; ".join(reasons))
        self.reasons = reasons
        self.sample = sample


class RetryExhaustedError(HandoffError):
    def __init__(self, description: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            f"{description} failed after {attempts} attempt(s): {last_error}"
        )
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


class LoopDetectedError(HandoffError):
    """Workflow policy violation: a stalled retry or a repeating transition."""

    def __init__(
        self,
        message: str,
        *,
        from_persona: str,
        to_persona: str,
        count: int,
        loop_kind: str = "loop",
    ) -> None:
        super().__init__(message)
        self.from_persona = from_persona
        self.to_persona = to_persona
        self.count = count
        self.loop_kind = loop_kind


class RefUpdateConflictError(HandoffError):
    retriable = True

    def __init__(self, ref: str, expected_old: str | None) -> None:
        super().__init__(
            f"Reference {ref} moved concurrently (expected {expected_old or '<none>'})."
        )
        self.ref = ref
        self.expected_old = expected_old


class GitCommandError(HandoffError):
    retriable = True

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(stderr or f"git {' '.join(args)} exited with {returncode}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr


class PersonaExecutionError(HandoffError):
    retriable = True

    def __init__(
        self,
        message: str,
        *,
        persona: str | None = None,
        exit_code: int | None = None,
        retriable: bool | None = None,
    ) -> None:
        super().__init__(message, retriable=retriable)
        self.persona = persona
        self.exit_code = exit_code


class CommandError(HandoffError):
    """A command could not run to completion (missing binary or timeout)."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Command '{command}' failed to run: {reason}")
        self.command = command
        self.reason = reason
