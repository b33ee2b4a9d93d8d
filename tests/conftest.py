"""Pytest configuration helpers for the test suite.

vSphere managed objects are replaced by light fakes that expose only the
attributes and methods the code under test touches.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from types import SimpleNamespace
from typing import Any

import pytest

from vicdebug.config import TargetConfig
from vicdebug.providers.session import VSphereSession

VCH_EXTRA_CONFIG: dict[str, str] = {
    "guestinfo.vch.version": "v1.2.0-4567-abcdef0",
    "guestinfo.vch.name": "vch-1",
    "guestinfo.vch.network.client.ip": "10.0.0.5",
    "guestinfo.vch.docker.tls": "true",
}


class FakeTask:
    """vSphere task that has already finished."""

    def __init__(self, state: str = "success", *, result: Any = None, error: Any = None) -> None:
        self.info = SimpleNamespace(state=state, result=result, error=error)


class FakeVM:
    """Appliance VM with mutable extraConfig."""

    def __init__(
        self,
        moref: str,
        name: str,
        *,
        extra: Mapping[str, str] | None = None,
        power_state: str = "poweredOn",
        tools: str = "guestToolsRunning",
        ip: str | None = "10.0.0.5",
        host: Any = None,
    ) -> None:
        self._moId = moref
        self.name = name
        self.config = SimpleNamespace(
            extraConfig=[SimpleNamespace(key=k, value=v) for k, v in (extra or {}).items()]
        )
        self.runtime = SimpleNamespace(powerState=power_state, host=host)
        self.guest = SimpleNamespace(toolsRunningStatus=tools, ipAddress=ip)
        self.reconfigure_specs: list[Any] = []

    def ReconfigVM_Task(self, spec: Any) -> FakeTask:  # noqa: N802 - vSphere naming
        self.reconfigure_specs.append(spec)
        current = {option.key: option for option in self.config.extraConfig}
        for option in spec.extraConfig:
            current[option.key] = SimpleNamespace(key=option.key, value=option.value)
        self.config.extraConfig = list(current.values())
        return FakeTask()


class FakeView:
    def __init__(self, vms: Iterable[Any]) -> None:
        self.view = list(vms)
        self.destroyed = False

    def Destroy(self) -> None:  # noqa: N802 - vSphere naming
        self.destroyed = True


def make_content(
    vms: Iterable[Any] = (),
    *,
    inventory: Mapping[str, Any] | None = None,
    api_type: str = "VirtualCenter",
    datacenters: Iterable[Any] = (),
) -> SimpleNamespace:
    """Return a fake ``ServiceContent``."""
    view = FakeView(vms)
    paths = dict(inventory or {})
    searched: list[str] = []

    def find_by_inventory_path(inventoryPath: str) -> Any:  # noqa: N803 - vSphere naming
        searched.append(inventoryPath)
        return paths.get(inventoryPath)

    return SimpleNamespace(
        about=SimpleNamespace(apiType=api_type, fullName=f"Fake {api_type}"),
        rootFolder=SimpleNamespace(childEntity=list(datacenters)),
        viewManager=SimpleNamespace(
            CreateContainerView=lambda container, types, recursive: view,
        ),
        view=view,
        searchIndex=SimpleNamespace(FindByInventoryPath=find_by_inventory_path),
        searched=searched,
        sessionManager=SimpleNamespace(Logout=lambda: None),
    )


def make_datacenter(name: str) -> SimpleNamespace:
    """Return a fake datacenter entity."""
    return SimpleNamespace(name=name, vmFolder=SimpleNamespace(childEntity=[]))


def make_session(content: SimpleNamespace, *, datacenter: str = "dc1") -> VSphereSession:
    """Wrap *content* in a session as the validator would."""
    service_instance = SimpleNamespace(RetrieveContent=lambda: content)
    return VSphereSession(
        service_instance=service_instance,
        content=content,
        datacenter=make_datacenter(datacenter),
        target=TargetConfig(url="vc.example.com", user="admin", password="secret"),
    )


@pytest.fixture
def logger() -> logging.Logger:
    """Return a quiet logger for collaborators under test."""
    log = logging.getLogger("vicdebug.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def vch_vm() -> Callable[..., FakeVM]:
    """Return a factory for appliance VMs carrying VCH extraConfig."""

    def factory(
        moref: str = "vm-42",
        name: str = "vch-1",
        *,
        extra: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> FakeVM:
        values = dict(VCH_EXTRA_CONFIG)
        values.update(extra or {})
        return FakeVM(moref, name, extra=values, **kwargs)

    return factory


@pytest.fixture
def vsphere() -> SimpleNamespace:
    """Expose the fake vSphere builders to tests."""
    return SimpleNamespace(
        content=make_content,
        session=make_session,
        datacenter=make_datacenter,
        task=FakeTask,
        vm=FakeVM,
    )
