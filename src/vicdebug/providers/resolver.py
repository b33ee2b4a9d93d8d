"""Locate the appliance VM from an ID or a compute path and display name."""
from __future__ import annotations

import logging
from typing import Any

from pyVmomi import vim, vmodl

from ..context import WorkflowContext
from ..errors import WorkflowStep
from ..models import ApplianceHandle, TargetSelector
from .session import NotFoundError, VSphereError, VSphereSession, fault_message

_STEP = WorkflowStep.RESOLVING


class TargetResolver:
    """Resolve a :class:`TargetSelector` to exactly one appliance VM.

    Lookups are read-only. Zero or multiple matches raise
    :class:`NotFoundError`.
    """

    def __init__(self, *, logger: logging.Logger) -> None:
        """Store the logger used for lookup diagnostics."""
        self._logger = logger

    def resolve(
        self,
        ctx: WorkflowContext,
        session: VSphereSession,
        selector: TargetSelector,
    ) -> ApplianceHandle:
        """Return the handle for the VM identified by *selector*."""
        ctx.check(_STEP)
        try:
            if selector.uses_id:
                moref = normalize_id(selector.id)
                matches = self._find_by_id(session, moref)
                wanted = f"ID {moref}"
            else:
                matches = self._find_by_compute_path(
                    ctx,
                    session,
                    selector.compute_path.strip(),
                    selector.display_name.strip(),
                )
                wanted = f"'{selector.display_name.strip()}' in {selector.compute_path.strip()}"
        except vmodl.MethodFault as exc:
            raise VSphereError(
                f"Lookup of {selector.describe()} failed: {fault_message(exc)}"
            ) from exc
        ctx.check(_STEP)

        if not matches:
            raise NotFoundError(f"Virtual Container Host {wanted} not found.")
        if len(matches) > 1:
            ids = ", ".join(sorted(vm._moId for vm in matches))
            raise NotFoundError(
                f"Virtual Container Host {wanted} is ambiguous; matching VMs: {ids}."
            )
        vm = matches[0]
        handle = ApplianceHandle(moref=vm._moId, name=vm.name, vm=vm)
        self._logger.debug("Resolved %s to %s.", selector.describe(), handle.reference)
        return handle

    def _find_by_id(self, session: VSphereSession, moref: str) -> list[Any]:
        view_manager = session.content.viewManager
        view = view_manager.CreateContainerView(session.datacenter, [vim.VirtualMachine], True)
        try:
            return [vm for vm in view.view if vm._moId == moref]
        finally:
            view.Destroy()

    def _find_by_compute_path(
        self,
        ctx: WorkflowContext,
        session: VSphereSession,
        compute_path: str,
        display_name: str,
    ) -> list[Any]:
        inventory_path = inventory_path_for(session.datacenter_name, compute_path)
        resource = session.content.searchIndex.FindByInventoryPath(inventoryPath=inventory_path)
        if resource is None:
            raise NotFoundError(f"Compute resource {compute_path} not found.")
        # Resource pools and vApps carry VMs directly; compute resources own a root pool.
        pool = resource if hasattr(resource, "vm") else getattr(resource, "resourcePool", None)
        if pool is None:
            raise NotFoundError(f"{compute_path} is not a compute resource or resource pool.")

        matches: list[Any] = []
        pending = [pool]
        while pending:
            ctx.check(_STEP)
            current = pending.pop()
            matches.extend(vm for vm in current.vm or [] if vm.name == display_name)
            pending.extend(current.resourcePool or [])
        return matches


def normalize_id(raw: str) -> str:
    """Accept both ``vm-42`` and ``VirtualMachine:vm-42``."""
    value = raw.strip()
    prefix = "VirtualMachine:"
    if value.startswith(prefix):
        return value[len(prefix) :]
    return value


def inventory_path_for(datacenter: str, compute_path: str) -> str:
    """Return the search-index path for *compute_path*.

    Absolute paths (``/dc1/host/cluster1``) are used as-is; relative ones are
    taken under the datacenter's host folder.
    """
    if compute_path.startswith("/"):
        return compute_path.strip("/")
    return f"{datacenter}/host/{compute_path.strip('/')}"


__all__ = ["TargetResolver", "inventory_path_for", "normalize_id"]
