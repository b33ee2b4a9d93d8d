"""vSphere session establishment and environment validation."""
from __future__ import annotations

import http.client
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from ..config import TargetConfig
from ..context import WorkflowContext
from ..errors import WorkflowStep

CONNECT_ERRORS = (vmodl.MethodFault, OSError, http.client.HTTPException)


class VSphereError(RuntimeError):
    """Raised when a vSphere call fails or returns unusable data."""


class NotFoundError(VSphereError):
    """Raised when a lookup matches no object or more than one."""


def fault_message(exc: BaseException) -> str:
    """Return the most useful message carried by a vSphere fault."""
    message = getattr(exc, "msg", None)
    if isinstance(message, str) and message.strip():
        return message.strip()
    return str(exc) or type(exc).__name__


@dataclass(slots=True)
class VSphereSession:
    """Validated connection used by every later workflow step."""

    service_instance: Any
    content: Any
    datacenter: Any
    target: TargetConfig
    insecure: bool = True
    force: bool = False
    disconnect: Callable[[Any], Any] = field(default=Disconnect, repr=False)
    logger: logging.Logger | None = field(default=None, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def is_vcenter(self) -> bool:
        """Return ``True`` when connected to vCenter rather than a single host."""
        return getattr(self.content.about, "apiType", "") == "VirtualCenter"

    @property
    def datacenter_name(self) -> str:
        """Return the name of the selected datacenter."""
        return str(getattr(self.datacenter, "name", ""))

    def close(self) -> None:
        """Disconnect from the endpoint; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        _disconnect_quietly(self.disconnect, self.service_instance, self.logger)


class EnvironmentValidator:
    """Validate connection parameters and open a :class:`VSphereSession`."""

    def __init__(
        self,
        target: TargetConfig,
        *,
        logger: logging.Logger,
        connect: Callable[..., Any] = SmartConnect,
        disconnect: Callable[[Any], Any] = Disconnect,
    ) -> None:
        """Store the target parameters and the connect and disconnect functions."""
        self._target = target
        self._logger = logger
        self._connect = connect
        self._disconnect = disconnect

    def validate(self, ctx: WorkflowContext, *, force: bool = False) -> VSphereSession:
        """Connect to the target and select the datacenter.

        TLS certificate verification is always disabled: debug access is an
        operator-trusted path.
        """
        step = WorkflowStep.VALIDATING
        ctx.check(step)
        target = self._target
        if not target.url:
            raise VSphereError("A target vCenter or ESXi host is required (--target).")
        if not target.has_credentials():
            raise VSphereError(
                "Credentials are required: supply --user and --password or embed "
                "them in the target URL."
            )

        self._logger.warning(
            "TLS certificate verification is disabled for debug access to %s.", target.url
        )
        try:
            service_instance = self._connect(
                host=target.url,
                user=target.user,
                pwd=target.password,
                port=target.port,
                thumbprint=target.thumbprint or None,
                disableSslCertValidation=True,
                httpConnectionTimeout=max(1, int(ctx.remaining())),
            )
        except vim.fault.InvalidLogin as exc:
            raise VSphereError(
                f"Cannot log in to {target.url} as {target.user}: {fault_message(exc)}"
            ) from exc
        except CONNECT_ERRORS as exc:
            raise VSphereError(f"Unable to connect to {target.url}: {fault_message(exc)}") from exc

        try:
            ctx.check(step)
            content = service_instance.RetrieveContent()
            datacenter = self._select_datacenter(content, force=force)
        except Exception:
            _disconnect_quietly(self._disconnect, service_instance, self._logger)
            raise

        self._logger.debug(
            "Connected to %s (%s), datacenter %s.",
            target.url,
            getattr(content.about, "fullName", "unknown"),
            getattr(datacenter, "name", "?"),
        )
        return VSphereSession(
            service_instance=service_instance,
            content=content,
            datacenter=datacenter,
            target=target,
            insecure=True,
            force=force,
            disconnect=self._disconnect,
            logger=self._logger,
        )

    def _select_datacenter(self, content: Any, *, force: bool) -> Any:
        datacenters = list(iter_datacenters(content.rootFolder))
        wanted = self._target.datacenter
        if wanted:
            for datacenter in datacenters:
                if datacenter.name == wanted:
                    return datacenter
            raise VSphereError(f"Datacenter '{wanted}' not found on {self._target.url}.")
        if not datacenters:
            raise VSphereError(f"No datacenter found on {self._target.url}.")
        if len(datacenters) > 1:
            names = ", ".join(sorted(dc.name for dc in datacenters))
            if not force:
                raise VSphereError(
                    f"Multiple datacenters found ({names}); specify one with --datacenter."
                )
            self._logger.warning(
                "Multiple datacenters found (%s); using %s because --force was given.",
                names,
                datacenters[0].name,
            )
        return datacenters[0]


def iter_datacenters(folder: Any) -> Iterator[Any]:
    """Yield every datacenter below *folder*, descending into sub-folders."""
    for entity in getattr(folder, "childEntity", None) or []:
        if hasattr(entity, "vmFolder"):
            yield entity
        elif hasattr(entity, "childEntity"):
            yield from iter_datacenters(entity)


def wait_for_task(
    ctx: WorkflowContext,
    step: WorkflowStep,
    task: Any,
    *,
    poll_interval: float,
    description: str,
) -> Any:
    """Poll *task* until it finishes, honouring the workflow deadline."""
    while True:
        ctx.check(step)
        info = task.info
        state = str(info.state)
        if state == "success":
            return info.result
        if state == "error":
            error = getattr(info, "error", None)
            detail = fault_message(error) if error is not None else "unknown error"
            raise VSphereError(f"{description} failed: {detail}")
        ctx.pause(poll_interval, step)


def _disconnect_quietly(
    disconnect: Callable[[Any], Any],
    service_instance: Any,
    logger: logging.Logger | None,
) -> None:
    try:
        disconnect(service_instance)
    except Exception as exc:  # noqa: BLE001 - logout is best-effort
        if logger is not None:
            logger.warning("Disconnect from vSphere failed: %s", fault_message(exc))


__all__ = [
    "EnvironmentValidator",
    "NotFoundError",
    "VSphereError",
    "VSphereSession",
    "fault_message",
    "iter_datacenters",
    "wait_for_task",
]
