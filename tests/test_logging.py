"""Structured operations log and human log tests."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from vicdebug.logging import HUMAN_LOG, OPERATIONS_LOG, StructuredLogger


def _records(log_dir: Path) -> list[dict[str, object]]:
    text = (log_dir / OPERATIONS_LOG).read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines()]


def test_unwritable_log_directory_does_not_break_commands(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A log directory that cannot be created only switches logging off."""
    blocked = tmp_path / "blocked"
    real_mkdir = Path.mkdir

    def mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == blocked:
            raise PermissionError(f"cannot create {self}")
        real_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", mkdir)

    logger = StructuredLogger(blocked)
    with logger.operation("debug", args={"id": "vm-42"}) as op:
        op.add_step("debug.validating", status="success")
        op.success("Debug configuration applied.", changed=1)
    logger.get_logger().info("still fine")

    assert logger.enabled is False
    assert not (blocked / OPERATIONS_LOG).exists()


def test_failed_write_disables_later_writes(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """After one failed append the logger stops trying to write records."""
    log_dir = tmp_path / "logs"
    logger = StructuredLogger(log_dir)
    attempts: list[Path] = []
    real_open = Path.open

    def open_(self: Path, *args: object, **kwargs: object) -> object:
        if self.name == OPERATIONS_LOG:
            attempts.append(self)
            raise OSError("No space left on device")
        return real_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", open_)

    for command in ("debug", "inspect"):
        with logger.operation(command) as op:
            op.success("done", changed=0)

    assert logger.enabled is False
    assert len(attempts) == 1


def test_operation_args_redact_secrets(tmp_path: Path) -> None:
    """Passwords never reach the operations log."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "debug",
        args={"target": "vc.example.com", "password": "hunter2", "rootpw": "toor", "user": ""},
    ) as op:
        op.success("done", changed=1)

    record = _records(tmp_path / "logs")[0]
    assert record["args"] == {
        "target": "vc.example.com",
        "password": "<redacted>",
        "rootpw": "<redacted>",
        "user": "",
    }
    assert "hunter2" not in json.dumps(record)
    assert "toor" not in json.dumps(record)
def test_warning_result_keeps_context_json_safe(tmp_path: Path) -> None:
    """Paths and arbitrary objects in the context are stored as strings."""
    logger = StructuredLogger(tmp_path / "logs")

    class Moref:
        def __str__(self) -> str:
            return "VirtualMachine:vm-42"

    with logger.operation("debug", args={"authorized_key": Path("id_ed25519.pub")}) as op:
        op.warning(
            "Debug applied; diagnostics incomplete",
            warnings=("vmkernel log unavailable",),
            errors=("appliance:/var/log/vic/missing.log: not found",),
            changed=2,
            diagnostics=["vch-diagnostics-vm-42.tar.gz"],
            context={"bundle_dir": Path("/var/log/vic-debug"), "vm": Moref()},
        )

    record = _records(tmp_path / "logs")[0]
    outcome = record["result"]
    assert isinstance(outcome, dict)
    assert record["args"] == {"authorized_key": "id_ed25519.pub"}
    assert outcome["status"] == "warning"
    assert outcome["changed"] == 2
    assert outcome["warnings"] == ["vmkernel log unavailable"]
    assert outcome["diagnostics"] == ["vch-diagnostics-vm-42.tar.gz"]
    assert outcome["context"] == {
        "bundle_dir": "/var/log/vic-debug",
        "vm": "VirtualMachine:vm-42",
    }


def test_error_result_falls_back_to_message(tmp_path: Path) -> None:
    """Without explicit errors the message becomes the only error entry."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("debug") as op:
        op.add_step("debug.validating", status="error", detail="connection refused")
        op.error("Debug cannot continue", rc=3, context={"datacenters": {"dc1"}})

    record = _records(tmp_path / "logs")[0]
    outcome = record["result"]
    assert isinstance(outcome, dict)
    assert (outcome["status"], outcome["rc"]) == ("error", 3)
    assert outcome["errors"] == ["Debug cannot continue"]
    assert outcome["context"] == {"datacenters": "{'dc1'}"}
    step = record["steps"][0]  # type: ignore[index]
    assert (step["name"], step["status"], step["detail"]) == (
        "debug.validating",
        "error",
        "connection refused",
    )


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error result."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("debug"):
            raise ValueError("kaboom")

    result = _records(tmp_path / "logs")[0]["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert "kaboom" in str(result["message"])


def test_human_log_honours_configured_level(tmp_path: Path) -> None:
    """Debug lines reach the human log only when the level is debug."""
    quiet = StructuredLogger(tmp_path / "quiet", level="info")
    quiet.get_logger().debug("hidden detail")
    quiet.get_logger().info("visible line")
    quiet.close()

    verbose = StructuredLogger(tmp_path / "verbose", level="debug")
    verbose.get_logger().debug("hidden detail")
    verbose.close()

    quiet_text = (tmp_path / "quiet" / HUMAN_LOG).read_text(encoding="utf-8")
    assert "visible line" in quiet_text
    assert "hidden detail" not in quiet_text
    assert "hidden detail" in (tmp_path / "verbose" / HUMAN_LOG).read_text(encoding="utf-8")


def test_logger_does_not_touch_root_logger(tmp_path: Path) -> None:
    """Configuring a run logger leaves the process-wide root logger alone."""
    root = logging.getLogger()
    before = (root.level, list(root.handlers))

    logger = StructuredLogger(tmp_path / "logs", level="debug")
    logger.get_logger().info("line")
    logger.close()

    assert (root.level, list(root.handlers)) == before
    assert logger.get_logger().propagate is False
