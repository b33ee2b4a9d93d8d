"""Run programs inside the appliance through VMware Tools guest operations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pyVmomi import vim, vmodl

from ..context import WorkflowContext
from ..errors import WorkflowStep
from .session import VSphereError, fault_message


class GuestProgramError(VSphereError):
    """Raised when an appliance program cannot be started or fails."""


def guest_auth(user: str, password: str) -> Any:
    """Return the guest credentials object for guest operations."""
    return vim.vm.guest.NamePasswordAuthentication(
        username=user,
        password=password,
        interactiveSession=False,
    )


@dataclass(slots=True)
class GuestProgramRunner:
    """Start appliance programs and wait for them to exit."""

    content: Any
    vm: Any
    user: str
    password: str
    poll_interval: float
    logger: logging.Logger

    def run(
        self,
        ctx: WorkflowContext,
        step: WorkflowStep,
        program: str,
        arguments: str = "",
        *,
        secret: bool = False,
    ) -> int:
        """Run *program* with *arguments* and return its exit code.

        Non-zero exit codes raise :class:`GuestProgramError`. When *secret* is
        set the arguments never reach the log.
        """
        manager = self.content.guestOperationsManager.processManager
        auth = guest_auth(self.user, self.password)
        spec = vim.vm.guest.ProcessManager.ProgramSpec(programPath=program, arguments=arguments)
        shown = "<redacted>" if secret else (arguments or "<none>")
        self.logger.debug("Running %s in appliance (arguments: %s).", program, shown)

        ctx.check(step)
        try:
            pid = manager.StartProgramInGuest(vm=self.vm, auth=auth, spec=spec)
        except vmodl.MethodFault as exc:
            raise GuestProgramError(
                f"Unable to start {program} in the appliance: {fault_message(exc)}"
            ) from exc

        while True:
            ctx.check(step)
            try:
                processes = manager.ListProcessesInGuest(vm=self.vm, auth=auth, pids=[pid])
            except vmodl.MethodFault as exc:
                raise GuestProgramError(
                    f"Unable to query {program} (pid {pid}) in the appliance: "
                    f"{fault_message(exc)}"
                ) from exc
            info = processes[0] if processes else None
            if info is not None and info.endTime is not None:
                exit_code = int(info.exitCode or 0)
                if exit_code != 0:
                    raise GuestProgramError(
                        f"{program} exited with status {exit_code} in the appliance."
                    )
                self.logger.debug("%s completed in appliance.", program)
                return exit_code
            ctx.pause(self.poll_interval, step)


__all__ = ["GuestProgramError", "GuestProgramRunner", "guest_auth"]
