"""Authorized key loading and fingerprinting."""
from __future__ import annotations

import base64
import binascii
import hashlib
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

MAX_KEY_FILE_BYTES = 64 * 1024


class KeyMaterialError(RuntimeError):
    """Raised when authorized key material cannot be read or parsed."""


def load_authorized_key(path: str | Path) -> bytes:
    """Read and validate the public key file at *path*.

    The file may hold several keys in ``authorized_keys`` format; blank lines
    and ``#`` comments are ignored. The validated content is returned verbatim
    so the appliance receives exactly what the operator supplied.
    """
    key_path = Path(path).expanduser()
    try:
        if key_path.stat().st_size > MAX_KEY_FILE_BYTES:
            raise KeyMaterialError(
                f"Public key file {key_path} exceeds {MAX_KEY_FILE_BYTES} bytes."
            )
        content = key_path.read_bytes()
    except OSError as exc:
        raise KeyMaterialError(f"Unable to read public key from {key_path}: {exc}") from exc
    validate_authorized_keys(content)
    return content


def validate_authorized_keys(content: bytes) -> list[str]:
    """Return fingerprints for every key in *content*, raising on bad input."""
    lines = _key_lines(content)
    if not lines:
        raise KeyMaterialError("Public key file does not contain any keys.")
    fingerprints: list[str] = []
    for index, line in enumerate(lines, start=1):
        try:
            serialization.load_ssh_public_key(line)
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise KeyMaterialError(f"Invalid public key on line {index}: {exc}") from exc
        fingerprints.append(_fingerprint_line(line))
    return fingerprints


def fingerprint(content: bytes) -> str:
    """Return the OpenSSH ``SHA256:`` fingerprint(s) of *content*.

    Multiple keys yield a comma separated list in file order.
    """
    return ",".join(validate_authorized_keys(content))


def _key_lines(content: bytes) -> list[bytes]:
    result: list[bytes] = []
    for number, raw in enumerate(content.splitlines(), start=1):
        # The appliance receives the file as UTF-8 text, comments included.
        try:
            raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise KeyMaterialError(
                f"Public key file is not valid UTF-8 on line {number}: {exc.reason}."
            ) from exc
        line = raw.strip()
        if not line or line.startswith(b"#"):
            continue
        result.append(line)
    return result


def _fingerprint_line(line: bytes) -> str:
    parts = line.split()
    if len(parts) < 2:
        raise KeyMaterialError("Public key line is missing the key blob.")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except binascii.Error as exc:
        raise KeyMaterialError(f"Public key blob is not valid base64: {exc}") from exc
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii").rstrip("=")
    return f"SHA256:{digest}"


__all__ = [
    "KeyMaterialError",
    "fingerprint",
    "load_authorized_key",
    "validate_authorized_keys",
]
