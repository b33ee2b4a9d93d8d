"""Diagnostic collector tests."""
from __future__ import annotations

import json
import logging
import shutil
import tarfile
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from vicdebug import archive as archive_utils
from vicdebug import diagnostics
from vicdebug.config import DiagnosticsConfig, GuestConfig
from vicdebug.diagnostics import DiagnosticCollector
from vicdebug.models import ApplianceConfig, ApplianceHandle, ApplianceVersion

pytestmark = pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")


class FakeDiagnosticManager:
    def __init__(self, logs: dict[str, list[str]], failing: tuple[str, ...] = ()) -> None:
        self.logs = logs
        self.failing = failing

    def BrowseDiagnosticLog(  # noqa: N802 - vSphere naming
        self, host: Any = None, key: str = "", start: int = 1, lines: int = 0
    ) -> SimpleNamespace:
        if key in self.failing:
            raise RuntimeError(f"log {key} unavailable")
        text = self.logs.get(key, [])
        if lines == 0:
            return SimpleNamespace(lineStart=len(text), lineEnd=len(text), lineText=[])
        chunk = text[start - 1 : start - 1 + lines]
        return SimpleNamespace(lineStart=start, lineEnd=start + len(chunk) - 1, lineText=chunk)


class FakeFileManager:
    def InitiateFileTransferFromGuest(  # noqa: N802 - vSphere naming
        self, vm: Any, auth: Any, guestFilePath: str  # noqa: N803 - vSphere naming
    ) -> SimpleNamespace:
        if guestFilePath.endswith("missing.log"):
            raise RuntimeError("file not found in guest")
        return SimpleNamespace(url=f"https://*/guestFile?path={guestFilePath}")


class FakeHttp:
    def __init__(self, body: bytes) -> None:
        self.body = body
        self.requests: list[tuple[str, bool]] = []

    def get(self, url: str, *, verify: bool, timeout: float) -> SimpleNamespace:
        self.requests.append((url, verify))
        return SimpleNamespace(content=self.body, raise_for_status=lambda: None)


@pytest.fixture(autouse=True)
def _force_gzip(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(archive_utils, "detect_zstd_support", lambda: False)


def _config(tmp_path: Path, **overrides: Any) -> DiagnosticsConfig:
    values: dict[str, Any] = {"dir": tmp_path / "diag", "timeout": 30.0, "max_log_lines": 2}
    values.update(overrides)
    return DiagnosticsConfig(**values)


def _members(path: Path) -> dict[str, str]:
    with tarfile.open(path, "r:gz") as archive:
        result: dict[str, str] = {}
        for member in archive.getmembers():
            if member.isfile():
                handle = archive.extractfile(member)
                assert handle is not None
                result[member.name] = handle.read().decode("utf-8")
        return result


def _session(vsphere: SimpleNamespace, manager: FakeDiagnosticManager) -> Any:
    content = vsphere.content()
    content.diagnosticManager = manager
    content.guestOperationsManager = SimpleNamespace(fileManager=FakeFileManager())
    return vsphere.session(content)


def test_collect_builds_bundle_with_platform_and_appliance_logs(
    tmp_path: Path,
    logger: logging.Logger,
    vsphere: SimpleNamespace,
    vch_vm: Callable[..., Any],
) -> None:
    """Platform tails and appliance logs are archived with a manifest and checksum."""
    host = SimpleNamespace(name="esx01")
    vm = vch_vm(host=host)
    handle = ApplianceHandle(moref="vm-42", name="vch-1", vm=vm)
    appliance = ApplianceConfig(
        version=ApplianceVersion.parse("v1.2.0"),
        client_ip="10.0.0.5",
        diagnostic_logs=("/var/log/vic/init.log", "/var/log/vic/missing.log"),
    )
    manager = FakeDiagnosticManager(
        {"hostd": ["h1", "h2", "h3", "h4", "h5"], "vpxd:vpxd.log": ["v1"]},
        failing=("vmkernel",),
    )
    http = FakeHttp(b"booting\npasswd toor\n")
    collector = DiagnosticCollector(
        _config(tmp_path),
        guest=GuestConfig(password="guestpw"),
        logger=logger,
        http=http,  # type: ignore[arg-type]
    )
    collector.init_logs(appliance)
    collector.add_secret("toor")

    bundle = collector.collect(_session(vsphere, manager), handle, appliance, reason="Debug failed")

    assert bundle is not None
    assert bundle.path.exists()
    assert bundle.path.name.startswith("vch-diagnostics-vm-42-")
    assert bundle.checksum_file.read_text().startswith(bundle.checksum)
    members = _members(bundle.path)
    assert members["vch-diagnostics/platform/esx01/hostd.log"] == "h4\nh5"
    assert members["vch-diagnostics/platform/vcenter/vpxd-vpxd.log"] == "v1"
    assert "<REDACTED>" in members["vch-diagnostics/appliance/logs/var-log-vic-init.log"]
    assert "toor" not in members["vch-diagnostics/appliance/logs/var-log-vic-init.log"]
    assert json.loads(members["vch-diagnostics/appliance/config.json"])["client_ip"] == "10.0.0.5"
    manifest = json.loads(members["vch-diagnostics/manifest.json"])
    assert manifest["appliance"] == "VirtualMachine:vm-42"
    assert any("vmkernel" in error for error in manifest["errors"])
    assert any("missing.log" in error for error in manifest["errors"])
    assert http.requests[0] == (
        "https://vc.example.com/guestFile?path=/var/log/vic/init.log",
        False,
    )


def test_collect_without_session_still_writes_manifest(
    tmp_path: Path, logger: logging.Logger
) -> None:
    """Even with nothing resolved the bundle records why it was taken."""
    collector = DiagnosticCollector(_config(tmp_path), guest=GuestConfig(), logger=logger)

    bundle = collector.collect(None, reason="timed out")

    assert bundle is not None
    assert "unresolved" in bundle.path.name
    assert bundle.manifest["reason"] == "timed out"


def test_collect_swallows_archive_failures(
    tmp_path: Path, logger: logging.Logger, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A broken archiver yields no bundle rather than an exception."""

    def fail(*_: object, **__: object) -> None:
        raise archive_utils.ArchiveError("tar exploded")

    monkeypatch.setattr(diagnostics.archive_utils, "create_archive", fail)
    collector = DiagnosticCollector(_config(tmp_path), guest=GuestConfig(), logger=logger)

    assert collector.collect(None, reason="boom") is None
    assert not any((tmp_path / "diag").glob("*.tar.gz"))


def test_collect_enforces_size_limit(tmp_path: Path, logger: logging.Logger) -> None:
    """Bundles over the configured size are discarded."""
    collector = DiagnosticCollector(
        _config(tmp_path, max_bundle_bytes=1), guest=GuestConfig(), logger=logger
    )

    assert collector.collect(None, reason="boom") is None
    assert list((tmp_path / "diag").glob("*.tar.gz")) == []
    assert list((tmp_path / "diag").glob("*.sha256")) == []
