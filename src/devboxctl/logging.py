"""Structured operation logging for devboxctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps and a final result which are appended as one JSON document per
line to ``operations.jsonl``; a terse human readable line is written to
``devboxctl.log`` alongside it.

Logging must never break a command: when the log directory cannot be created
or a write fails the logger disables itself and later operations silently
skip persistence.
"""
from __future__ import annotations

import json
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import cast

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "devboxctl.log"
REDACTED = "***"
_SECRET_MARKERS = ("password", "secret", "credential")


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def _sanitize(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        result: dict[str, object] = {}
        for key, item in value.items():
            key_str = str(key)
            result[key_str] = REDACTED if _is_secret_key(key_str) else _sanitize(item)
        return result
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _sanitize_mapping(value: Mapping[str, object] | None) -> dict[str, object]:
    if not value:
        return {}
    return cast(dict[str, object], _sanitize(value))


@dataclass(slots=True)
class OperationStep:
    """A single recorded step inside an operation."""

    name: str
    status: str
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass
class OperationScope:
    """Mutable collector used while a command executes."""

    command: str
    args: dict[str, object]
    target: dict[str, object]
    started: float = field(default_factory=time.monotonic)
    steps: list[OperationStep] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None
    rc: int = 0

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step executed by the command."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail))

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
        )
        self.rc = 0

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings) if warnings else [message],
            errors=errors,
            context=context,
        )
        self.rc = 0

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=None,
            errors=list(errors) if errors else [message],
            context=context,
        )
        self.rc = rc

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": int(changed),
            "warnings": [str(item) for item in warnings or []],
            "errors": [str(item) for item in errors or []],
            "context": _sanitize_mapping(context),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON document persisted for this operation."""
        duration_ms = int((time.monotonic() - self.started) * 1000)
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "command": self.command,
            "args": _sanitize_mapping(self.args),
            "target": _sanitize_mapping(self.target),
            "steps": [step.to_dict() for step in self.steps],
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": duration_ms,
            "rc": self.rc,
            "result": self.result
            or {
                "status": "unknown",
                "message": "Operation finished without reporting a result.",
                "changed": 0,
                "warnings": [],
                "errors": [],
                "context": {},
            },
            "context": {"devboxctl_version": __version__},
        }


class StructuredLogger:
    """Append-only writer for the operations and human logs."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self._logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Location of the JSON lines log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        try:
            yield scope
        except KeyboardInterrupt:
            scope.error("Interrupted by operator.", rc=130)
            raise
        except Exception as exc:
            # typer.Exit / click exceptions carry an exit code and already
            # recorded their own result.
            if scope.result is None:
                exit_code = getattr(exc, "exit_code", None)
                if isinstance(exit_code, int) and exit_code == 0:
                    scope.success("Operation exited early.", changed=0)
                else:
                    scope.error(f"{type(exc).__name__}: {exc}", rc=int(exit_code or 1))
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = cast(dict[str, object], record["result"])
        human = (
            f"{record['timestamp']} {scope.command} "
            f"status={result.get('status')} rc={scope.rc} {result.get('message', '')}"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human.rstrip() + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
