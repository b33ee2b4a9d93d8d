"""Tarball and checksum helpers for diagnostic bundles.

Bundles can hold appliance logs, so archives and their checksum files are
written owner-readable only.
"""
from __future__ import annotations

import hashlib
import shutil
import subprocess
from pathlib import Path

BUNDLE_MODE = 0o600
# algorithm -> (tar compression flags, file extension)
COMPRESSION: dict[str, tuple[tuple[str, ...], str]] = {
    "zstd": (("--zstd",), "tar.zst"),
    "gzip": (("-z",), "tar.gz"),
    "none": ((), "tar"),
}


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be produced."""


def detect_zstd_support() -> bool:
    """Return True when both tar and zstd binaries are available."""
    return shutil.which("tar") is not None and shutil.which("zstd") is not None


def select_compression() -> str:
    """Prefer zstd, falling back to gzip."""
    return "zstd" if detect_zstd_support() else "gzip"


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    return _compression(algorithm)[1]


def create_archive(
    source_dir: Path,
    archive_path: Path,
    algorithm: str,
    *,
    timeout: float | None = None,
) -> None:
    """Pack *source_dir* (as its own top-level directory) into *archive_path*."""
    flags, _ = _compression(algorithm)
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")

    cmd = [tar_bin, *flags, "-cf", str(archive_path), "-C", str(source_dir.parent)]
    cmd.append(source_dir.name)
    try:
        result = subprocess.run(  # noqa: S603 - fixed argv, no shell
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"tar did not finish within {exc.timeout:g}s.") from exc
    if result.returncode != 0:
        archive_path.unlink(missing_ok=True)
        detail = (result.stderr or result.stdout).strip()
        raise ArchiveError(detail or f"tar exited with status {result.returncode}")
    _restrict(archive_path)


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 hex digest of *path*."""
    with path.open("rb") as handle:
        return hashlib.file_digest(handle, "sha256").hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write a ``sha256sum``-compatible ``<archive>.sha256`` next to the archive."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    _restrict(checksum_path)
    return checksum_path


def _compression(algorithm: str) -> tuple[tuple[str, ...], str]:
    try:
        return COMPRESSION[algorithm]
    except KeyError:
        raise ArchiveError(f"Unsupported compression algorithm: {algorithm}.") from None


def _restrict(path: Path) -> None:
    try:
        path.chmod(BUNDLE_MODE)
    except OSError:
        pass


__all__ = [
    "ArchiveError",
    "COMPRESSION",
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "detect_zstd_support",
    "select_compression",
    "write_checksum_file",
]
