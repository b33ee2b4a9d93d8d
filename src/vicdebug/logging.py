"""Structured operations log plus a human-readable log.

Each CLI command runs inside :meth:`StructuredLogger.operation`, which yields
an :class:`OperationScope`. Steps and the final result are appended as one
JSON object per line to ``operations.jsonl``. Free-form progress lines go to
``vic-debug.log`` through a :class:`logging.Logger` owned by the
:class:`StructuredLogger` instance, so the verbosity is configured per run
rather than on the process-wide root logger.

Logging must never break a command: when the log directory cannot be created
or a write fails, the logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "vic-debug.log"
REDACTED = "<redacted>"
SENSITIVE_KEYS = frozenset(
    {"password", "root_password", "rootpw", "guest_password", "authorized_key_content"}
)
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _iso_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value* with secrets redacted."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        result: dict[str, object] = {}
        for key, item in value.items():
            name = str(key)
            if name.lower() in SENSITIVE_KEYS and item:
                result[name] = REDACTED
            else:
                result[name] = _sanitize(item)
        return result
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the result of one logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
        logger: logging.Logger,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.op_id = f"op-{datetime.now(tz=UTC):%Y%m%d%H%M%S}-{secrets.token_hex(3)}"
        self.command = command
        self.args = _sanitize(dict(args or {}))
        self.target = _sanitize(dict(target or {}))
        self.started_at = _iso_now()
        self._start = time.perf_counter()
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._logger = logger

    @property
    def result(self) -> dict[str, object] | None:
        """Return the recorded result, if any."""
        return self._result

    @property
    def steps(self) -> list[dict[str, object]]:
        """Return a copy of the recorded steps."""
        return list(self._steps)

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record a named step with its status."""
        entry: dict[str, object] = {"name": name, "status": status, "at": _iso_now()}
        if detail:
            entry["detail"] = detail
        self._steps.append(entry)
        self._logger.debug("step %s: %s%s", name, status, f" ({detail})" if detail else "")

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        diagnostics: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
            rc=0,
            diagnostics=diagnostics,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        diagnostics: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome; *errors* defaults to ``[message]``."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=None,
            errors=list(errors) if errors else [message],
            context=context,
            rc=rc,
            diagnostics=diagnostics,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        context: Mapping[str, object] | None,
        rc: int,
        diagnostics: Sequence[str] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
        }
        if diagnostics:
            result["diagnostics"] = list(diagnostics)
        if context:
            result["context"] = _sanitize(dict(context))
        self._result = result
        level = logging.ERROR if status == "error" else logging.INFO
        self._logger.log(level, "%s: %s", self.command, message)

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": self.args,
            "target": self.target,
            "started_at": self.started_at,
            "finished_at": _iso_now(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": self._steps,
            "result": self._result,
        }


class StructuredLogger:
    """Writer for the operations log and the human log."""

    def __init__(self, log_dir: Path, *, level: str = "info") -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._human_log_path = self._log_dir / HUMAN_LOG
        self._enabled = True
        self._logger = logging.getLogger(f"vicdebug.run.{secrets.token_hex(4)}")
        self._logger.propagate = False
        self._logger.setLevel(_LEVELS.get(level.lower(), logging.INFO))
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
        self._attach_handler()

    @property
    def log_dir(self) -> Path:
        """Return the directory holding the log files."""
        return self._log_dir

    @property
    def enabled(self) -> bool:
        """Return ``True`` while log writes are still attempted."""
        return self._enabled

    def get_logger(self) -> logging.Logger:
        """Return the human-log :class:`logging.Logger` for this run."""
        return self._logger

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target, logger=self._logger)
        self._logger.info("begin %s %s", command, scope.op_id)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            self._write(scope.to_record())

    def close(self) -> None:
        """Detach and close the handlers owned by this logger."""
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()

    def _attach_handler(self) -> None:
        if not self._enabled:
            self._logger.addHandler(logging.NullHandler())
            return
        try:
            handler: logging.Handler = logging.FileHandler(
                self._human_log_path, encoding="utf-8", delay=True
            )
        except OSError:
            self._enabled = False
            self._logger.addHandler(logging.NullHandler())
            return
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%Y-%m-%dT%H:%M:%S")
        )
        self._logger.addHandler(handler)

    def _write(self, record: Mapping[str, Any]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
