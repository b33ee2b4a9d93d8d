"""Diagnostic bundle collection for failed debug runs.

Collection is best-effort: whatever can be gathered within the diagnostics
time budget is archived, individual source failures are recorded in the
manifest, and a failure of the collector itself is logged and swallowed so it
never masks the error that triggered collection.
"""
from __future__ import annotations

import json
import logging
import shutil
import tempfile
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import requests
import urllib3

from . import __version__
from . import archive as archive_utils
from .config import DiagnosticsConfig, GuestConfig
from .context import Deadline
from .models import ApplianceConfig, ApplianceHandle, DiagnosticBundle
from .providers.guest import guest_auth
from .providers.session import VSphereSession, fault_message

VCENTER_LOG_KEYS = ("vpxd:vpxd.log",)
HOST_LOG_KEYS = ("hostd", "vmkernel")
VCENTER_HOST_LOG_KEYS = ("vpxa",)
MAX_APPLIANCE_LOG_BYTES = 5 * 1024 * 1024
_LAST_LINE = 2**31 - 1


class DiagnosticsError(RuntimeError):
    """Raised when a diagnostic bundle cannot be assembled."""


class DiagnosticCollector:
    """Gather logs and state from the platform and appliance into an archive."""

    def __init__(
        self,
        config: DiagnosticsConfig,
        *,
        guest: GuestConfig,
        logger: logging.Logger,
        http: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise collector defaults."""
        self._config = config
        self._guest = guest
        self._logger = logger
        self._http = http
        self._clock = clock
        self._appliance_logs: tuple[str, ...] = ()
        self._secrets: set[str] = set()
        if guest.password:
            self._secrets.add(guest.password)

    # Public API -----------------------------------------------------
    def init_logs(self, appliance_config: ApplianceConfig) -> None:
        """Remember which appliance logs to fetch if collection is needed."""
        self._appliance_logs = tuple(appliance_config.diagnostic_logs)

    def add_secret(self, value: str | None) -> None:
        """Register a value that must never appear in a bundle."""
        if value:
            self._secrets.add(value)

    def collect(
        self,
        session: VSphereSession | None,
        handle: ApplianceHandle | None = None,
        appliance_config: ApplianceConfig | None = None,
        *,
        reason: str = "",
    ) -> DiagnosticBundle | None:
        """Build a bundle; return ``None`` when collection itself fails."""
        self._logger.info("Collecting diagnostic logs...")
        try:
            bundle = self._build(session, handle, appliance_config, reason)
        except Exception as exc:  # noqa: BLE001 - collection failures stay in the log
            self._logger.warning("Diagnostic collection failed: %s", exc)
            return None
        self._logger.info("Diagnostic bundle written to %s", bundle.path)
        return bundle

    # Internal helpers -----------------------------------------------
    def _build(
        self,
        session: VSphereSession | None,
        handle: ApplianceHandle | None,
        appliance_config: ApplianceConfig | None,
        reason: str,
    ) -> DiagnosticBundle:
        deadline = Deadline(self._config.timeout, clock=self._clock)
        algorithm = archive_utils.select_compression()
        archive_path = self._archive_path(handle, algorithm)
        archive_path.parent.mkdir(parents=True, exist_ok=True)

        staging_root = Path(
            tempfile.mkdtemp(prefix=".vic-debug-diag-", dir=str(archive_path.parent))
        )
        payload_root = staging_root / "vch-diagnostics"
        payload_root.mkdir(parents=True, exist_ok=True)

        files: list[dict[str, Any]] = []
        errors: list[str] = []
        manifest: dict[str, Any] = {
            "schema": 1,
            "generated_at": datetime.now(tz=UTC)
            .isoformat(timespec="seconds")
            .replace("+00:00", "Z"),
            "vicdebug_version": __version__,
            "reason": self._redact(reason),
            "appliance": handle.reference if handle is not None else None,
            "redacted": self._config.redacted,
            "files": files,
            "errors": errors,
        }

        try:
            if appliance_config is not None:
                self._write_json(
                    payload_root, "appliance/config.json", appliance_config.to_dict(), files
                )
            if handle is not None:
                try:
                    runtime_state = _runtime_state(handle)
                except Exception as exc:  # noqa: BLE001 - keep collecting the remaining sources
                    errors.append(f"appliance runtime: {fault_message(exc)}")
                else:
                    self._write_json(payload_root, "appliance/runtime.json", runtime_state, files)
            if session is not None:
                for label, host, key in self._platform_sources(session, handle):
                    if deadline.expired():
                        errors.append("diagnostics time budget exhausted")
                        break
                    self._fetch_platform_log(
                        session, label, host, key, payload_root, files, errors
                    )
                if handle is not None and not deadline.expired():
                    self._fetch_appliance_logs(
                        session, handle, deadline, payload_root, files, errors
                    )

            manifest_text = json.dumps(manifest, indent=2)
            (payload_root / "manifest.json").write_text(manifest_text, encoding="utf-8")

            archive_utils.create_archive(
                payload_root,
                archive_path,
                algorithm,
                timeout=max(1.0, deadline.remaining()),
            )
            checksum = archive_utils.compute_checksum(archive_path)
            checksum_path = archive_utils.write_checksum_file(archive_path, checksum)
            size_bytes = archive_path.stat().st_size
            if size_bytes > self._config.max_bundle_bytes:
                archive_path.unlink(missing_ok=True)
                checksum_path.unlink(missing_ok=True)
                raise DiagnosticsError(
                    "Diagnostic bundle exceeds the configured size limit "
                    f"({size_bytes} bytes > {self._config.max_bundle_bytes})."
                )
            for error in errors:
                self._logger.warning("Diagnostics: %s", error)
            return DiagnosticBundle(
                path=archive_path,
                checksum=checksum,
                checksum_file=checksum_path,
                size_bytes=size_bytes,
                manifest=manifest,
            )
        except archive_utils.ArchiveError as exc:
            raise DiagnosticsError(str(exc)) from exc
        finally:
            shutil.rmtree(staging_root, ignore_errors=True)

    def _archive_path(self, handle: ApplianceHandle | None, algorithm: str) -> Path:
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        slug = handle.moref if handle is not None else "unresolved"
        extension = archive_utils.compression_extension(algorithm)
        return self._config.dir / f"vch-diagnostics-{slug}-{timestamp}.{extension}"

    def _platform_sources(
        self,
        session: VSphereSession,
        handle: ApplianceHandle | None,
    ) -> Iterable[tuple[str, Any, str]]:
        if session.is_vcenter:
            for key in VCENTER_LOG_KEYS:
                yield "vcenter", None, key
        host = _vm_host(handle)
        if host is None:
            return
        host_name = str(getattr(host, "name", "host"))
        keys = HOST_LOG_KEYS + (VCENTER_HOST_LOG_KEYS if session.is_vcenter else ())
        for key in keys:
            yield host_name, host, key

    def _fetch_platform_log(
        self,
        session: VSphereSession,
        label: str,
        host: Any,
        key: str,
        payload_root: Path,
        files: list[dict[str, Any]],
        errors: list[str],
    ) -> None:
        manager = session.content.diagnosticManager
        try:
            header = manager.BrowseDiagnosticLog(host=host, key=key, start=_LAST_LINE, lines=0)
            last_line = int(getattr(header, "lineEnd", 0) or 0)
            start = max(1, last_line - self._config.max_log_lines + 1)
            page = manager.BrowseDiagnosticLog(
                host=host, key=key, start=start, lines=self._config.max_log_lines
            )
        except Exception as exc:  # noqa: BLE001 - one missing log must not stop the rest
            errors.append(f"{label}/{key}: {fault_message(exc)}")
            return
        text = "\n".join(str(line) for line in (page.lineText or []))
        name = key.replace(":", "-").replace("/", "-")
        if not name.endswith(".log"):
            name += ".log"
        self._write_text(payload_root, f"platform/{label}/{name}", text, files)

    def _fetch_appliance_logs(
        self,
        session: VSphereSession,
        handle: ApplianceHandle,
        deadline: Deadline,
        payload_root: Path,
        files: list[dict[str, Any]],
        errors: list[str],
    ) -> None:
        file_manager = session.content.guestOperationsManager.fileManager
        auth = guest_auth(self._guest.user, self._guest.password)
        http = self._http or requests.Session()
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        for guest_path in self._appliance_logs:
            if deadline.expired():
                errors.append("diagnostics time budget exhausted")
                return
            try:
                transfer = file_manager.InitiateFileTransferFromGuest(
                    vm=handle.vm, auth=auth, guestFilePath=guest_path
                )
                url = str(transfer.url).replace("*", session.target.url)
                response = http.get(
                    url,
                    verify=not session.insecure,
                    timeout=max(1.0, deadline.remaining()),
                )
                response.raise_for_status()
            except Exception as exc:  # noqa: BLE001 - one missing log must not stop the rest
                errors.append(f"appliance:{guest_path}: {fault_message(exc)}")
                continue
            data = response.content[-MAX_APPLIANCE_LOG_BYTES:]
            name = guest_path.strip("/").replace("/", "-")
            self._write_text(
                payload_root,
                f"appliance/logs/{name}",
                data.decode("utf-8", errors="replace"),
                files,
            )

    def _write_json(
        self,
        payload_root: Path,
        rel_path: str,
        payload: object,
        files: list[dict[str, Any]],
    ) -> None:
        text = json.dumps(payload, indent=2, sort_keys=True)
        self._write_text(payload_root, rel_path, text, files)

    def _write_text(
        self,
        payload_root: Path,
        rel_path: str,
        text: str,
        files: list[dict[str, Any]],
    ) -> None:
        destination = payload_root / rel_path
        destination.parent.mkdir(parents=True, exist_ok=True)
        redacted = self._redact(text)
        destination.write_text(redacted, encoding="utf-8")
        files.append({"path": rel_path, "size_bytes": len(redacted.encode("utf-8"))})

    def _redact(self, text: str) -> str:
        if not self._config.redacted:
            return text
        result = text
        for secret in self._secrets:
            result = result.replace(secret, "<REDACTED>")
        return result


def _vm_host(handle: ApplianceHandle | None) -> Any:
    if handle is None or handle.vm is None:
        return None
    try:
        return handle.vm.runtime.host
    except Exception:  # noqa: BLE001 - host logs are skipped when the VM cannot be queried
        return None


def _runtime_state(handle: ApplianceHandle) -> dict[str, object]:
    vm = handle.vm
    runtime = getattr(vm, "runtime", None)
    guest = getattr(vm, "guest", None)
    host = getattr(runtime, "host", None)
    return {
        "reference": handle.reference,
        "name": handle.name,
        "power_state": str(getattr(runtime, "powerState", "unknown")),
        "host": str(getattr(host, "name", "")) or None,
        "tools_running_status": str(getattr(guest, "toolsRunningStatus", "unknown")),
        "guest_ip": getattr(guest, "ipAddress", None),
    }


__all__ = ["DiagnosticCollector", "DiagnosticsError"]
