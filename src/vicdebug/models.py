"""Data models shared by the debug workflow and its collaborators."""
from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from packaging.version import InvalidVersion, Version

from .errors import DebugWorkflowError
from .exit_codes import ExitCode

_VERSION_PATTERN = re.compile(
    r"^(?P<version>v?\d+\.\d+\.\d+(?:-[A-Za-z]+\d*)?)"
    r"(?:-(?P<build>\d+))?"
    r"(?:-(?P<commit>[0-9a-fA-F]{6,40}))?$"
)


@dataclass(slots=True, frozen=True)
class TargetSelector:
    """Identifies the appliance either by ID or by compute path and name."""

    id: str = ""
    compute_path: str = ""
    display_name: str = ""

    @property
    def uses_id(self) -> bool:
        """Return ``True`` when the ID takes precedence."""
        return bool(self.id.strip())

    @property
    def is_usable(self) -> bool:
        """Return ``True`` when either selector form is complete."""
        if self.uses_id:
            return True
        return bool(self.compute_path.strip()) and bool(self.display_name.strip())

    def describe(self) -> str:
        """Return a short human description of the selector."""
        if self.uses_id:
            return f"id={self.id.strip()}"
        return f"{self.compute_path.strip()}/{self.display_name.strip()}"


@dataclass(slots=True, frozen=True)
class DebugRequest:
    """Inputs to a single debug workflow run."""

    selector: TargetSelector
    enable_ssh: bool = False
    authorized_key: bytes | None = None
    root_password: str | None = None
    timeout: float = 180.0
    force: bool = False


@dataclass(slots=True, frozen=True)
class ApplianceHandle:
    """Resolved reference to a single appliance VM."""

    moref: str
    name: str
    vm: Any = field(default=None, compare=False, repr=False)

    @property
    def reference(self) -> str:
        """Return the managed object reference in ``Type:id`` form."""
        return f"VirtualMachine:{self.moref}"


@dataclass(slots=True, frozen=True)
class ApplianceVersion:
    """Version triple stamped into the appliance at deployment time."""

    version: str
    build_number: str = ""
    git_commit: str = ""

    @classmethod
    def parse(cls, raw: str | None) -> ApplianceVersion:
        """Parse ``v<semver>[-<build>][-<commit>]``; unknown input is kept verbatim."""
        text = (raw or "").strip()
        if not text:
            return cls(version="unknown")
        match = _VERSION_PATTERN.match(text)
        if match is None:
            return cls(version=text)
        return cls(
            version=match.group("version"),
            build_number=match.group("build") or "",
            git_commit=match.group("commit") or "",
        )

    def short_version(self) -> str:
        """Return the version, build number and commit joined by dashes."""
        parts = [self.version, self.build_number, self.git_commit]
        return "-".join(part for part in parts if part)

    def semantic(self) -> Version | None:
        """Return the comparable semantic version, or ``None`` if unparseable."""
        try:
            return Version(self.version.lstrip("v"))
        except InvalidVersion:
            return None


@dataclass(slots=True, frozen=True)
class ApplianceConfig:
    """Snapshot of the appliance configuration as read from the platform."""

    version: ApplianceVersion
    name: str = ""
    client_ip: str = ""
    public_ip: str = ""
    management_ip: str = ""
    docker_tls: bool = True
    ssh_enabled: bool = False
    authorized_key_fingerprint: str = ""
    diagnostic_logs: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version.short_version(),
            "name": self.name,
            "client_ip": self.client_ip,
            "public_ip": self.public_ip,
            "management_ip": self.management_ip,
            "docker_tls": self.docker_tls,
            "ssh_enabled": self.ssh_enabled,
            "authorized_key_fingerprint": self.authorized_key_fingerprint,
            "diagnostic_logs": list(self.diagnostic_logs),
        }


@dataclass(slots=True, frozen=True)
class ApplianceEndpoints:
    """Endpoints an operator can use to reach the appliance."""

    admin_portal: str
    docker_host: str
    published_ports: str
    docker_tls: bool = True
    ssh: str | None = None
    authorized_key_fingerprint: str = ""

    def lines(self) -> list[str]:
        """Return the operator-facing report lines."""
        tls_flag = " --tls" if self.docker_tls else ""
        lines = [
            "VCH Admin Portal:",
            self.admin_portal,
            "",
            "Published ports can be reached at:",
            self.published_ports,
            "",
            "Docker environment variables:",
            f"DOCKER_HOST={self.docker_host}",
            "",
            "Connect to docker:",
            f"docker -H {self.docker_host}{tls_flag} info",
        ]
        if self.ssh:
            lines.extend(["", f"SSH to appliance (default=root): {self.ssh}"])
            if self.authorized_key_fingerprint:
                lines.append(f"Authorized key: {self.authorized_key_fingerprint}")
        return lines

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "admin_portal": self.admin_portal,
            "docker_host": self.docker_host,
            "published_ports": self.published_ports,
            "docker_tls": self.docker_tls,
            "ssh": self.ssh,
            "authorized_key_fingerprint": self.authorized_key_fingerprint,
        }


@dataclass(slots=True, frozen=True)
class DebugChange:
    """What the configurator changed on the appliance."""

    ssh_enabled: bool = False
    key_installed: bool = False
    password_set: bool = False
    markers_changed: bool = False

    @property
    def changed(self) -> int:
        """Return the number of changes applied."""
        return sum(
            (self.ssh_enabled, self.key_installed, self.password_set, self.markers_changed)
        )


@dataclass(slots=True, frozen=True)
class DiagnosticBundle:
    """Archive of collected diagnostics left for the operator."""

    path: Path
    checksum: str
    checksum_file: Path
    size_bytes: int
    manifest: Mapping[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload describing the bundle."""
        return {
            "path": str(self.path),
            "checksum": self.checksum,
            "checksum_file": str(self.checksum_file),
            "size_bytes": self.size_bytes,
            "files": list(self.manifest.get("files", [])),
        }


class WorkflowState(str, Enum):
    """Terminal states of the debug workflow."""

    SUCCESS = "success"
    INPUT_FAILED = "input_failed"
    VALIDATION_FAILED = "validation_failed"
    RESOLUTION_FAILED = "resolution_failed"
    CONFIG_FAILED = "config_failed"
    INSPECT_FAILED = "inspect_failed"


@dataclass(slots=True)
class WorkflowResult:
    """Terminal outcome of a debug workflow run."""

    state: WorkflowState
    appliance_id: str | None = None
    endpoints: ApplianceEndpoints | None = None
    change: DebugChange | None = None
    error: DebugWorkflowError | None = None
    diagnostics: DiagnosticBundle | None = None
    messages: Sequence[str] = ()

    @property
    def ok(self) -> bool:
        """Return ``True`` when the workflow succeeded."""
        return self.state is WorkflowState.SUCCESS

    @property
    def exit_code(self) -> int:
        """Return the process exit code for this outcome."""
        if self.error is None:
            return int(ExitCode.OK)
        return int(self.error.exit_code)

    def to_payload(self) -> dict[str, object]:
        """Return a JSON-serialisable summary of the outcome."""
        payload: dict[str, object] = {
            "state": self.state.value,
            "appliance_id": self.appliance_id,
        }
        if self.endpoints is not None:
            payload["endpoints"] = self.endpoints.to_dict()
        if self.error is not None:
            payload["error"] = {
                "kind": self.error.kind.value,
                "step": self.error.step.value,
                "message": self.error.detail(),
            }
        if self.diagnostics is not None:
            payload["diagnostics"] = self.diagnostics.to_payload()
        return payload


__all__ = [
    "ApplianceConfig",
    "ApplianceEndpoints",
    "ApplianceHandle",
    "ApplianceVersion",
    "DebugChange",
    "DebugRequest",
    "DiagnosticBundle",
    "TargetSelector",
    "WorkflowResult",
    "WorkflowState",
]
