"""Deadline and cancellation handling shared by every workflow step."""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import WorkflowStep, WorkflowTimeout

Clock = Callable[[], float]


class CancellationToken:
    """Thread-safe flag used to abort a running workflow from the outside."""

    def __init__(self) -> None:
        """Create an untriggered token."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Block for up to *seconds*; return ``True`` if cancelled meanwhile."""
        return self._event.wait(max(seconds, 0.0))


@dataclass(slots=True)
class Deadline:
    """Absolute deadline measured on a monotonic clock."""

    timeout: float
    clock: Clock = time.monotonic
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    @property
    def expires_at(self) -> float:
        """Return the clock value at which the deadline elapses."""
        return self.started_at + self.timeout

    def remaining(self) -> float:
        """Return the seconds left before expiry (never negative)."""
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        """Return ``True`` once the deadline has elapsed."""
        return self.clock() >= self.expires_at

    def elapsed_ms(self) -> int:
        """Return the milliseconds spent since the deadline started."""
        return int((self.clock() - self.started_at) * 1000)


@dataclass(slots=True)
class WorkflowContext:
    """Deadline plus cancellation token handed to every step."""

    deadline: Deadline
    token: CancellationToken = field(default_factory=CancellationToken)

    @classmethod
    def start(
        cls,
        timeout: float,
        *,
        token: CancellationToken | None = None,
        clock: Clock = time.monotonic,
    ) -> WorkflowContext:
        """Start the clock for a new workflow run."""
        return cls(
            deadline=Deadline(timeout, clock=clock),
            token=token or CancellationToken(),
        )

    def remaining(self) -> float:
        """Return the seconds left in the run."""
        return self.deadline.remaining()

    def check(self, step: WorkflowStep) -> None:
        """Raise :class:`WorkflowTimeout` when the run must stop."""
        if self.token.cancelled:
            raise WorkflowTimeout(step, f"Operation cancelled while {step.value}.")
        if self.deadline.expired():
            raise WorkflowTimeout(
                step,
                f"Operation timed out after {self.deadline.timeout:g}s while {step.value}.",
            )

    def pause(self, seconds: float, step: WorkflowStep) -> None:
        """Sleep between polls without overrunning the deadline."""
        self.check(step)
        self.token.wait(min(seconds, self.remaining()))
        self.check(step)


__all__ = ["CancellationToken", "Deadline", "WorkflowContext"]
