"""Post-change inspection of the appliance endpoints."""
from __future__ import annotations

import logging

from . import __version__
from .context import WorkflowContext
from .errors import WorkflowStep
from .models import ApplianceConfig, ApplianceEndpoints, ApplianceHandle, ApplianceVersion
from .providers.appliance import ApplianceConfigReader
from .providers.session import VSphereError, VSphereSession

ADMIN_PORTAL_PORT = 2378
DOCKER_TLS_PORT = 2376
DOCKER_PLAIN_PORT = 2375


def build_endpoints(config: ApplianceConfig) -> ApplianceEndpoints:
    """Derive the operator endpoints from a configuration snapshot."""
    if not config.client_ip:
        raise VSphereError("The appliance has not reported a client address yet.")
    docker_port = DOCKER_TLS_PORT if config.docker_tls else DOCKER_PLAIN_PORT
    management = config.management_ip or config.client_ip
    return ApplianceEndpoints(
        admin_portal=f"https://{management}:{ADMIN_PORTAL_PORT}",
        docker_host=f"{config.client_ip}:{docker_port}",
        published_ports=config.public_ip or config.client_ip,
        docker_tls=config.docker_tls,
        ssh=f"ssh root@{config.client_ip}" if config.ssh_enabled else None,
        authorized_key_fingerprint=config.authorized_key_fingerprint,
    )


def upgrade_status(installer: ApplianceVersion, appliance: ApplianceVersion) -> str:
    """Describe how the installer version relates to the appliance version."""
    installer_semver = installer.semantic()
    appliance_semver = appliance.semantic()
    if installer_semver is None or appliance_semver is None:
        return "Unable to compare installer and VCH versions."
    if installer_semver > appliance_semver:
        return "Upgrades available: the installer is newer than the VCH."
    if installer_semver < appliance_semver:
        return "The VCH is newer than this installer."
    return "Installer has same version as VCH."


def installer_version() -> ApplianceVersion:
    """Return the version of this installer."""
    return ApplianceVersion.parse(f"v{__version__}")


class Inspector:
    """Re-read the appliance configuration and report its endpoints."""

    def __init__(self, reader: ApplianceConfigReader, *, logger: logging.Logger) -> None:
        """Store the configuration reader used for fresh snapshots."""
        self._reader = reader
        self._logger = logger

    def inspect(
        self,
        ctx: WorkflowContext,
        session: VSphereSession,
        handle: ApplianceHandle,
    ) -> ApplianceEndpoints:
        """Return the endpoints from a freshly fetched snapshot."""
        step = WorkflowStep.INSPECTING
        config = self._reader.read(ctx, handle, step=step)
        endpoints = build_endpoints(config)
        ctx.check(step)
        self._logger.debug("Endpoints of %s: %s", handle.reference, endpoints.to_dict())
        return endpoints


__all__ = [
    "Inspector",
    "build_endpoints",
    "installer_version",
    "upgrade_status",
]
