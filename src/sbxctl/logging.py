"""Structured operation logging for sbxctl.

Each CLI command runs inside :meth:`StructuredLogger.operation`. When the block
exits, one JSON object is appended to ``operations.jsonl``. It records the
arguments, target, executed steps, timing and result. A human readable line is
also emitted through the standard :mod:`logging` module into ``sbxctl.log``.

Logging must never break provisioning: if the log directory cannot be created
or a write fails, the logger disables itself and the command carries on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

REDACTED = "***"
SECRET_KEYS = frozenset(
    {"private_key", "password", "hysteria2_password", "api_token", "token", "cf_token"}
)

_HUMAN_LOGGER_NAME = "sbxctl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*, stringifying unknown types."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _redact(value: Mapping[str, object] | None) -> dict[str, object]:
    if not value:
        return {}
    redacted: dict[str, object] = {}
    for key, item in value.items():
        if key.lower() in SECRET_KEYS and item not in (None, ""):
            redacted[key] = REDACTED
        elif isinstance(item, Mapping):
            redacted[key] = _redact(item)
        else:
            redacted[key] = _sanitize(item)
    return redacted


@dataclass
class OperationScope:
    """Mutable record for a single logged operation."""

    name: str
    args: dict[str, object]
    target: dict[str, object]
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = field(default_factory=_now_iso)
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record an executed (or skipped) step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
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
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            warnings=warnings,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "backups": [str(item) for item in backups or ()],
            "context": _sanitize(dict(context or {})),
        }


class StructuredLogger:
    """Append JSON operation records and human readable log lines."""

    def __init__(self, log_dir: Path, *, level: int = logging.INFO) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._human_log_path = self._log_dir / "sbxctl.log"
        self._logger = logging.getLogger(_HUMAN_LOGGER_NAME)
        self._logger.setLevel(level)
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_file_handler()

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(name=name, args=_redact(args), target=_redact(target))
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                # Typer/Click exits carry ``exit_code``; zero is a clean exit.
                exit_code = getattr(exc, "exit_code", None)
                if exit_code == 0:
                    scope.success("Operation exited.")
                else:
                    rc = exit_code if isinstance(exit_code, int) else 1
                    scope.error(str(exc) or type(exc).__name__, rc=rc)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(scope, duration_ms)

    def info(self, message: str, *args: object) -> None:
        """Emit an informational line to the human log."""
        self._logger.info(message, *args)

    def warning(self, message: str, *args: object) -> None:
        """Emit a warning line to the human log."""
        self._logger.warning(message, *args)

    # ------------------------------------------------------------------
    def _attach_file_handler(self) -> None:
        target = str(self._human_log_path)
        for handler in self._logger.handlers:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
                return
        try:
            handler = logging.FileHandler(target, encoding="utf-8", delay=True)
        except OSError:
            return
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        self._logger.addHandler(handler)

    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        result = scope.result or {}
        self._logger.info(
            "%s %s: %s", scope.name, result.get("status", "unknown"), result.get("message", "")
        )
        if not self._enabled:
            return
        record = {
            "op_id": scope.op_id,
            "timestamp": scope.started_at,
            "command": scope.name,
            "args": scope.args,
            "target": scope.target,
            "duration_ms": duration_ms,
            "lock_wait_ms": scope.lock_wait_ms,
            "steps": scope.steps,
            "result": result,
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
