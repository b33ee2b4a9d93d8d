"""Target resolver tests using fake inventory objects."""
from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest

from vicdebug.context import WorkflowContext
from vicdebug.models import TargetSelector
from vicdebug.providers.resolver import TargetResolver, inventory_path_for, normalize_id
from vicdebug.providers.session import NotFoundError


def _ctx() -> WorkflowContext:
    return WorkflowContext.start(60.0)


def _pool(vms: list[object], children: list[object] | None = None) -> SimpleNamespace:
    return SimpleNamespace(vm=vms, resourcePool=children or [])


def test_resolve_by_id_accepts_prefixed_reference(
    logger: logging.Logger, vsphere: SimpleNamespace
) -> None:
    """IDs may be given bare or as VirtualMachine:<id>."""
    target = vsphere.vm("vm-42", "vch-1")
    content = vsphere.content([vsphere.vm("vm-7", "other"), target])
    session = vsphere.session(content)

    handle = TargetResolver(logger=logger).resolve(
        _ctx(), session, TargetSelector(id="VirtualMachine:vm-42")
    )

    assert handle.moref == "vm-42"
    assert handle.name == "vch-1"
    assert handle.vm is target
    assert handle.reference == "VirtualMachine:vm-42"
    assert content.view.destroyed is True


def test_id_takes_precedence_over_compute_path(
    logger: logging.Logger, vsphere: SimpleNamespace
) -> None:
    """When both forms are supplied the ID wins and no path lookup happens."""
    content = vsphere.content([vsphere.vm("vm-42", "vch-1")])
    session = vsphere.session(content)
    selector = TargetSelector(id="vm-42", compute_path="cluster1", display_name="other")

    handle = TargetResolver(logger=logger).resolve(_ctx(), session, selector)

    assert handle.moref == "vm-42"
    assert content.searched == []


def test_resolve_by_unknown_id_is_not_found(
    logger: logging.Logger, vsphere: SimpleNamespace
) -> None:
    """An ID matching no VM is reported as not found."""
    session = vsphere.session(vsphere.content([vsphere.vm("vm-7", "other")]))

    with pytest.raises(NotFoundError, match="ID vm-99 not found"):
        TargetResolver(logger=logger).resolve(_ctx(), session, TargetSelector(id="vm-99"))


def test_resolve_by_relative_compute_path(
    logger: logging.Logger, vsphere: SimpleNamespace
) -> None:
    """Relative paths are looked up under the datacenter host folder."""
    target = vsphere.vm("vm-42", "vch-1")
    nested = _pool([target])
    cluster = SimpleNamespace(resourcePool=_pool([vsphere.vm("vm-3", "web")], [nested]))
    content = vsphere.content(inventory={"dc1/host/cluster1": cluster})
    session = vsphere.session(content, datacenter="dc1")

    handle = TargetResolver(logger=logger).resolve(
        _ctx(), session, TargetSelector(compute_path="cluster1", display_name="vch-1")
    )

    assert handle.vm is target
    assert content.searched == ["dc1/host/cluster1"]


def test_resolve_by_absolute_resource_pool_path(
    logger: logging.Logger, vsphere: SimpleNamespace
) -> None:
    """Absolute paths may point straight at a resource pool."""
    target = vsphere.vm("vm-42", "vch-1")
    pool = _pool([target])
    content = vsphere.content(inventory={"dc1/host/cluster1/Resources/vch-pool": pool})
    session = vsphere.session(content)

    handle = TargetResolver(logger=logger).resolve(
        _ctx(),
        session,
        TargetSelector(compute_path="/dc1/host/cluster1/Resources/vch-pool", display_name="vch-1"),
    )

    assert handle.moref == "vm-42"


def test_missing_compute_resource_is_not_found(
    logger: logging.Logger, vsphere: SimpleNamespace
) -> None:
    """A compute path the inventory does not know is reported as such."""
    session = vsphere.session(vsphere.content())

    with pytest.raises(NotFoundError, match="Compute resource cluster9 not found"):
        TargetResolver(logger=logger).resolve(
            _ctx(), session, TargetSelector(compute_path="cluster9", display_name="vch-1")
        )


def test_duplicate_names_are_ambiguous(
    logger: logging.Logger, vsphere: SimpleNamespace
) -> None:
    """Two VMs with the same name under one compute resource are refused."""
    pool = _pool([vsphere.vm("vm-42", "vch-1")], [_pool([vsphere.vm("vm-43", "vch-1")])])
    content = vsphere.content(inventory={"dc1/host/cluster1": SimpleNamespace(resourcePool=pool)})
    session = vsphere.session(content)

    with pytest.raises(NotFoundError, match="ambiguous; matching VMs: vm-42, vm-43"):
        TargetResolver(logger=logger).resolve(
            _ctx(), session, TargetSelector(compute_path="cluster1", display_name="vch-1")
        )


def test_name_not_found_under_compute_resource(
    logger: logging.Logger, vsphere: SimpleNamespace
) -> None:
    """No VM with the requested name yields not found."""
    pool = _pool([vsphere.vm("vm-3", "web")])
    content = vsphere.content(inventory={"dc1/host/cluster1": SimpleNamespace(resourcePool=pool)})
    session = vsphere.session(content)

    with pytest.raises(NotFoundError, match="'vch-1' in cluster1 not found"):
        TargetResolver(logger=logger).resolve(
            _ctx(), session, TargetSelector(compute_path="cluster1", display_name="vch-1")
        )


def test_helpers_normalise_ids_and_paths() -> None:
    """ID and path helpers cover both accepted spellings."""
    assert normalize_id(" VirtualMachine:vm-1 ") == "vm-1"
    assert normalize_id("vm-1") == "vm-1"
    assert inventory_path_for("dc1", "cluster1/") == "dc1/host/cluster1"
    assert inventory_path_for("dc1", "/dc2/host/c") == "dc2/host/c"
