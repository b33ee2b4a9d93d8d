"""Failure taxonomy for the debug workflow.

Every failure the workflow surfaces is a :class:`DebugWorkflowError` tagged
with a :class:`FailureKind` so callers can branch on the kind without string
matching. The underlying cause is chained (``raise ... from exc``) and also
kept on :attr:`DebugWorkflowError.cause`.
"""
from __future__ import annotations

from enum import Enum

from .exit_codes import ExitCode


class WorkflowStep(str, Enum):
    """Steps of the debug workflow, in execution order."""

    INPUT = "input"
    VALIDATING = "validating"
    RESOLVING = "resolving"
    CONFIGURING = "configuring"
    INSPECTING = "inspecting"

    @property
    def collects_diagnostics(self) -> bool:
        """Return ``True`` when a failure in this step warrants diagnostics."""
        return self in (WorkflowStep.CONFIGURING, WorkflowStep.INSPECTING)


class FailureKind(str, Enum):
    """Closed set of failure kinds reported by the workflow."""

    INPUT = "input"
    VALIDATION = "validation"
    RESOLUTION = "resolution"
    CONFIGURATION = "configuration"
    INSPECTION = "inspection"
    TIMEOUT = "timeout"

    @classmethod
    def for_step(cls, step: WorkflowStep) -> FailureKind:
        """Return the failure kind raised when *step* fails outright."""
        return _STEP_KINDS[step]

    @property
    def exit_code(self) -> ExitCode:
        """Return the CLI exit code for this failure kind."""
        return _KIND_EXIT_CODES[self]


_STEP_KINDS: dict[WorkflowStep, FailureKind] = {
    WorkflowStep.INPUT: FailureKind.INPUT,
    WorkflowStep.VALIDATING: FailureKind.VALIDATION,
    WorkflowStep.RESOLVING: FailureKind.RESOLUTION,
    WorkflowStep.CONFIGURING: FailureKind.CONFIGURATION,
    WorkflowStep.INSPECTING: FailureKind.INSPECTION,
}

_KIND_EXIT_CODES: dict[FailureKind, ExitCode] = {
    FailureKind.INPUT: ExitCode.INPUT,
    FailureKind.VALIDATION: ExitCode.ENVIRONMENT,
    FailureKind.RESOLUTION: ExitCode.ENVIRONMENT,
    FailureKind.CONFIGURATION: ExitCode.PROVIDER,
    FailureKind.INSPECTION: ExitCode.PROVIDER,
    FailureKind.TIMEOUT: ExitCode.TIMEOUT,
}


class DebugWorkflowError(RuntimeError):
    """Raised when a step of the debug workflow fails."""

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        *,
        step: WorkflowStep,
        cause: BaseException | None = None,
    ) -> None:
        """Store the failure kind, the step in flight and the cause."""
        super().__init__(message)
        self.kind = kind
        self.step = step
        self.message = message
        self.cause = cause

    @property
    def exit_code(self) -> ExitCode:
        """Return the CLI exit code for this failure."""
        return self.kind.exit_code

    def detail(self) -> str:
        """Return the message followed by the underlying cause, if any."""
        if self.cause is None:
            return self.message
        return f"{self.message}: {self.cause}"

    def __repr__(self) -> str:
        return (
            f"DebugWorkflowError(kind={self.kind.value!r}, step={self.step.value!r}, "
            f"message={self.message!r})"
        )


class WorkflowTimeout(DebugWorkflowError):
    """Raised when the workflow deadline elapses or the run is cancelled."""

    def __init__(self, step: WorkflowStep, message: str) -> None:
        """Tag the timeout with the step that was in flight."""
        super().__init__(FailureKind.TIMEOUT, message, step=step)


__all__ = [
    "DebugWorkflowError",
    "FailureKind",
    "WorkflowStep",
    "WorkflowTimeout",
]
