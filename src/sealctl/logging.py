"""Structured operation logging for sealctl.

Every CLI command and every snapshot cycle runs inside an
:class:`OperationScope`. When the scope closes a single JSON document is
appended to ``operations.jsonl`` describing the command, its arguments, the
steps taken and the final result. A human-readable line is mirrored to the
standard :mod:`logging` hierarchy (logger ``sealctl``) and to ``sealctl.log``.

Logging must never break an operation: if the log directory cannot be created
or a write fails, the logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

_HUMAN_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
_STATUS_LEVELS = {"success": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[object]:
    if values is None:
        return []
    if isinstance(values, str):
        return [values]
    return [_json_safe(item) for item in values]


@dataclass(slots=True)
class OperationResult:
    """Final outcome recorded for an operation."""

    status: str
    message: str
    changed: int | None = None
    warnings: list[object] = field(default_factory=list)
    errors: list[object] = field(default_factory=list)
    artifacts: list[object] = field(default_factory=list)
    context: dict[str, object] = field(default_factory=dict)
    rc: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-safe representation."""
        payload: dict[str, object] = {
            "status": self.status,
            "message": self.message,
            "rc": self.rc,
            "warnings": self.warnings,
            "errors": self.errors,
            "artifacts": self.artifacts,
            "context": self.context,
        }
        if self.changed is not None:
            payload["changed"] = self.changed
        return payload


class OperationScope:
    """Collect steps and the final result for a single operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope; use :meth:`StructuredLogger.operation` instead."""
        self._logger = logger
        self.command = command
        self.op_id = uuid.uuid4().hex[:12]
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: OperationResult | None = None
        self._started = time.perf_counter()
        self._started_at = _now_iso()

    # Steps -----------------------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self.steps.append(step)
        self._logger.mirror(logging.DEBUG, f"{self.command}: {name} [{status}]")

    # Results ---------------------------------------------------------
    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[object] | None = None,
        artifacts: Sequence[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, warnings=warnings,
                     artifacts=artifacts, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[object] | None = None,
        errors: Sequence[object] | None = None,
        changed: int | None = None,
        artifacts: Sequence[object] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish("warning", message, changed=changed, warnings=warnings, errors=errors,
                     artifacts=artifacts, context=context, rc=rc)

    def error(
        self,
        message: str,
        *,
        errors: Sequence[object] | None = None,
        warnings: Sequence[object] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 1,
    ) -> None:
        """Mark the operation as failed."""
        self._finish("error", message, warnings=warnings, errors=errors or [message],
                     context=context, rc=rc)

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[object] | None = None,
        errors: Sequence[object] | None = None,
        artifacts: Sequence[object] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        safe_context = _json_safe(dict(context or {}))
        self.result = OperationResult(
            status=status,
            message=message,
            changed=changed,
            warnings=_as_list(warnings),
            errors=_as_list(errors),
            artifacts=_as_list(artifacts),
            context=safe_context if isinstance(safe_context, dict) else {},
            rc=rc,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON document written for this operation."""
        result = self.result or OperationResult(
            status="warning", message="Operation finished without recording a result."
        )
        return {
            "op_id": self.op_id,
            "command": self.command,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
            "pid": os.getpid(),
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "steps": self.steps,
            "result": result.to_dict(),
        }


class StructuredLogger:
    """Append structured operation records under *log_dir*."""

    def __init__(self, log_dir: Path, *, name: str = "sealctl") -> None:
        """Prepare the log directory; disable logging if it is unusable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._human_log_path = self._log_dir / "sealctl.log"
        self._stdlib = logging.getLogger(name)
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_file_handler()

    @property
    def enabled(self) -> bool:
        """Return ``True`` while structured records are being written."""
        return self._enabled

    @property
    def operations_log(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    def _attach_file_handler(self) -> None:
        target = str(self._human_log_path)
        for handler in self._stdlib.handlers:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
                return
        try:
            handler = logging.FileHandler(target, encoding="utf-8")
        except OSError:
            return
        handler.setFormatter(logging.Formatter(_HUMAN_FORMAT))
        self._stdlib.addHandler(handler)
        if self._stdlib.level == logging.NOTSET:
            self._stdlib.setLevel(logging.INFO)

    def mirror(self, level: int, message: str) -> None:
        """Forward *message* to the standard logging hierarchy."""
        self._stdlib.log(level, message)

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(
                    f"{command} aborted: {exc}" if str(exc) else f"{command} aborted.",
                    errors=[repr(exc)],
                )
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        record = scope.to_record()
        result = record["result"]
        if isinstance(result, Mapping):
            level = _STATUS_LEVELS.get(str(result.get("status")), logging.INFO)
            self.mirror(level, f"{scope.command}: {result.get('message')}")
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationResult", "OperationScope", "StructuredLogger"]
