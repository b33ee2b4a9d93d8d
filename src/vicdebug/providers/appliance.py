"""Read the appliance configuration and apply debug-access changes.

The appliance publishes its configuration to the platform as ``guestinfo.vch.*``
extraConfig entries on its VM. Debug changes are applied inside the appliance
by two programs its init system understands:

``enable-ssh [authorized key text]``
    Starts the SSH server and, when key text is given, installs it into
    ``/root/.ssh/authorized_keys``. Without key text the key list is untouched.
``passwd <password>``
    Sets the root password for the current boot. The appliance root
    filesystem is rebuilt on every boot, so the password does not survive a
    reboot; that guarantee belongs to the appliance, not to this tool.

After the programs succeed, the debug state is recorded back into extraConfig
so later inspections report it. Markers are only rewritten when they differ
from the snapshot, which keeps repeated runs idempotent.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pyVmomi import vim, vmodl

from ..config import GuestConfig
from ..context import WorkflowContext
from ..errors import WorkflowStep
from ..keys import fingerprint
from ..models import ApplianceConfig, ApplianceHandle, ApplianceVersion, DebugChange
from .guest import GuestProgramRunner
from .session import VSphereError, VSphereSession, fault_message, wait_for_task

GUESTINFO_PREFIX = "guestinfo.vch."
KEY_VERSION = f"{GUESTINFO_PREFIX}version"
KEY_NAME = f"{GUESTINFO_PREFIX}name"
KEY_CLIENT_IP = f"{GUESTINFO_PREFIX}network.client.ip"
KEY_PUBLIC_IP = f"{GUESTINFO_PREFIX}network.public.ip"
KEY_MANAGEMENT_IP = f"{GUESTINFO_PREFIX}network.management.ip"
KEY_DOCKER_TLS = f"{GUESTINFO_PREFIX}docker.tls"
KEY_DEBUG_SSH = f"{GUESTINFO_PREFIX}debug.ssh"
KEY_DEBUG_KEY_FINGERPRINT = f"{GUESTINFO_PREFIX}debug.authorized_key_fingerprint"
KEY_DIAGNOSTIC_LOGS = f"{GUESTINFO_PREFIX}diagnostics.logs"

DEFAULT_APPLIANCE_LOGS = (
    "/var/log/vic/init.log",
    "/var/log/vic/port-layer.log",
    "/var/log/vic/docker-personality.log",
    "/var/log/vic/vicadmin.log",
)

PROGRAM_ENABLE_SSH = "enable-ssh"
PROGRAM_PASSWD = "passwd"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def extra_config_values(vm: Any) -> dict[str, str]:
    """Return the ``guestinfo.vch.*`` extraConfig entries of *vm*."""
    config = vm.config
    if config is None:
        raise VSphereError("Appliance VM configuration is not accessible.")
    values: dict[str, str] = {}
    for option in config.extraConfig or []:
        key = str(option.key)
        if key.startswith(GUESTINFO_PREFIX):
            values[key] = "" if option.value is None else str(option.value)
    return values


def _flag(values: Mapping[str, str], key: str, *, default: bool) -> bool:
    raw = values.get(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


class ApplianceConfigReader:
    """Build :class:`ApplianceConfig` snapshots from the VM's extraConfig."""

    def __init__(self, *, logger: logging.Logger, force: bool = False) -> None:
        """Store the logger and whether non-appliance VMs are tolerated."""
        self._logger = logger
        self._force = force

    def read(
        self,
        ctx: WorkflowContext,
        handle: ApplianceHandle,
        *,
        step: WorkflowStep = WorkflowStep.RESOLVING,
    ) -> ApplianceConfig:
        """Fetch a fresh configuration snapshot for *handle*."""
        ctx.check(step)
        try:
            values = extra_config_values(handle.vm)
            guest_ip = getattr(handle.vm.guest, "ipAddress", None) or ""
        except vmodl.MethodFault as exc:
            raise VSphereError(
                f"Failed to read configuration of {handle.reference}: {fault_message(exc)}"
            ) from exc
        ctx.check(step)

        if KEY_VERSION not in values:
            message = f"{handle.name} ({handle.reference}) does not look like a VCH appliance."
            if not self._force:
                raise VSphereError(f"{message} Use --force to continue anyway.")
            self._logger.warning("%s Continuing because --force was given.", message)

        client_ip = values.get(KEY_CLIENT_IP) or str(guest_ip)
        logs_raw = values.get(KEY_DIAGNOSTIC_LOGS, "")
        diagnostic_logs = tuple(item.strip() for item in logs_raw.split(",") if item.strip())
        return ApplianceConfig(
            version=ApplianceVersion.parse(values.get(KEY_VERSION)),
            name=values.get(KEY_NAME) or handle.name,
            client_ip=client_ip,
            public_ip=values.get(KEY_PUBLIC_IP) or client_ip,
            management_ip=values.get(KEY_MANAGEMENT_IP) or client_ip,
            docker_tls=_flag(values, KEY_DOCKER_TLS, default=True),
            ssh_enabled=_flag(values, KEY_DEBUG_SSH, default=False),
            authorized_key_fingerprint=values.get(KEY_DEBUG_KEY_FINGERPRINT, ""),
            diagnostic_logs=diagnostic_logs or DEFAULT_APPLIANCE_LOGS,
        )


RunnerFactory = Callable[..., GuestProgramRunner]


class DebugConfigurator:
    """Apply SSH, authorized key and root password changes to the appliance."""

    def __init__(
        self,
        guest: GuestConfig,
        *,
        logger: logging.Logger,
        runner_factory: RunnerFactory = GuestProgramRunner,
    ) -> None:
        """Store guest credentials and the program runner factory."""
        self._guest = guest
        self._logger = logger
        self._runner_factory = runner_factory

    def apply(
        self,
        ctx: WorkflowContext,
        session: VSphereSession,
        handle: ApplianceHandle,
        config: ApplianceConfig,
        *,
        enable_ssh: bool,
        root_password: str | None,
        authorized_key: bytes | None,
    ) -> DebugChange:
        """Apply the requested changes; key and password are independent."""
        step = WorkflowStep.CONFIGURING
        ctx.check(step)
        key_text = authorized_key.decode("utf-8").strip() if authorized_key else ""
        want_ssh = enable_ssh or bool(key_text)
        if not want_ssh and not root_password:
            self._logger.info("No debug changes requested for %s.", handle.reference)
            return DebugChange()

        vm = handle.vm
        try:
            self._check_ready(vm)
        except vmodl.MethodFault as exc:
            raise VSphereError(
                f"Unable to query appliance state of {handle.reference}: {fault_message(exc)}"
            ) from exc

        runner = self._runner_factory(
            content=session.content,
            vm=vm,
            user=self._guest.user,
            password=self._guest.password,
            poll_interval=self._guest.poll_interval,
            logger=self._logger,
        )

        ssh_enabled = key_installed = password_set = False
        if want_ssh:
            runner.run(ctx, step, PROGRAM_ENABLE_SSH, key_text)
            ssh_enabled = True
            key_installed = bool(key_text)
            self._logger.info("SSH enabled on %s.", handle.reference)
        if root_password:
            runner.run(ctx, step, PROGRAM_PASSWD, root_password, secret=True)
            password_set = True
            self._logger.info(
                "Root password set on %s (not persistent over reboots).", handle.reference
            )

        markers: dict[str, str] = {}
        if ssh_enabled and not config.ssh_enabled:
            markers[KEY_DEBUG_SSH] = "true"
        if key_text:
            key_fingerprint = fingerprint(authorized_key or b"")
            if key_fingerprint != config.authorized_key_fingerprint:
                markers[KEY_DEBUG_KEY_FINGERPRINT] = key_fingerprint
        if markers:
            self._record_markers(ctx, step, vm, markers)

        return DebugChange(
            ssh_enabled=ssh_enabled,
            key_installed=key_installed,
            password_set=password_set,
            markers_changed=bool(markers),
        )

    @staticmethod
    def _check_ready(vm: Any) -> None:
        state = str(vm.runtime.powerState)
        if state != "poweredOn":
            raise VSphereError(f"VCH appliance is not powered on, state {state}.")
        tools = str(vm.guest.toolsRunningStatus)
        if tools != "guestToolsRunning":
            raise VSphereError("Tools are not running in the appliance, unable to continue.")

    def _record_markers(
        self,
        ctx: WorkflowContext,
        step: WorkflowStep,
        vm: Any,
        markers: Mapping[str, str],
    ) -> None:
        spec = vim.vm.ConfigSpec(
            extraConfig=[
                vim.option.OptionValue(key=key, value=value) for key, value in markers.items()
            ]
        )
        try:
            task = vm.ReconfigVM_Task(spec=spec)
        except vmodl.MethodFault as exc:
            raise VSphereError(f"Unable to record debug state: {fault_message(exc)}") from exc
        wait_for_task(
            ctx,
            step,
            task,
            poll_interval=self._guest.poll_interval,
            description="Recording debug state",
        )
        self._logger.debug("Recorded debug markers: %s.", ", ".join(sorted(markers)))


__all__ = [
    "ApplianceConfigReader",
    "DEFAULT_APPLIANCE_LOGS",
    "DebugConfigurator",
    "GUESTINFO_PREFIX",
    "KEY_DEBUG_KEY_FINGERPRINT",
    "KEY_DEBUG_SSH",
    "KEY_DIAGNOSTIC_LOGS",
    "KEY_VERSION",
    "extra_config_values",
]
