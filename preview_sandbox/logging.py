from __future__ import annotations

import builtins
import json
import os
import sys
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeAlias

LogRecord: TypeAlias = dict[str, object]
LogCallback: TypeAlias = Callable[[LogRecord], object]

_FILE_LOCK = threading.Lock()
DEFAULT_COMPONENT = "preview-sandbox"
LOG_PATH_ENV = "PREVIEW_SANDBOX_LOG_PATH"
LOG_ECHO_ENV = "PREVIEW_SANDBOX_LOG_ECHO"


def iso_now() -> str:
    return datetime.now(UTC).isoformat()


def ts() -> str:
    return datetime.now(UTC).strftime("%H:%M:%S")


def json_default(value: object) -> str:
    return str(value)


def resolve_echo_default() -> bool:
    raw_value = os.environ.get(LOG_ECHO_ENV, "").strip().lower()
    if not raw_value:
        return True
    return raw_value not in {"0", "false", "no", "off"}


def write_log_file(record: LogRecord) -> None:
    log_path = (os.environ.get(LOG_PATH_ENV) or "").strip()
    if not log_path:
        return
    target = Path(log_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, default=json_default)
    with _FILE_LOCK:
        with target.open("a", encoding="utf-8") as handle:
            _ = handle.write(line + "\n")


class SandboxLogger:
    """Structured logger handed to every sandbox component.

    Each call produces a flat record ``{ts, component, event, level,
    message, **fields}``. The record is passed to ``callback`` (if any),
    appended to the JSONL file named by ``PREVIEW_SANDBOX_LOG_PATH`` and
    echoed to stderr as a short timestamped line.
    """

    def __init__(
        self,
        component: str = DEFAULT_COMPONENT,
        *,
        callback: LogCallback | None = None,
        echo: bool | None = None,
        **fields: object,
    ) -> None:
        self.component = component.strip() or DEFAULT_COMPONENT
        self.callback = callback
        self.echo = resolve_echo_default() if echo is None else echo
        self.fields: LogRecord = {
            key: value for key, value in fields.items() if value is not None
        }

    def bind(self, component: str | None = None, **fields: object) -> SandboxLogger:
        merged = dict(self.fields)
        for key, value in fields.items():
            if value is None:
                _ = merged.pop(key, None)
            else:
                merged[key] = value
        return SandboxLogger(
            component or self.component,
            callback=self.callback,
            echo=self.echo,
            **merged,
        )

    def event(
        self,
        event: str = "log",
        message: str = "",
        *,
        level: str = "info",
        **fields: object,
    ) -> LogRecord:
        record: LogRecord = {
            "ts": iso_now(),
            "component": self.component,
            "event": event,
            "level": level,
            "message": message,
        }
        record.update(self.fields)
        for key, value in fields.items():
            if value is None:
                continue
            record[key] = value

        if self.callback is not None:
            try:
                _ = self.callback(record)
            except Exception:
                pass

        write_log_file(record)
        if self.echo:
            sandbox_id = self.fields.get("sandbox_id")
            tag = f"[{self.component}]"
            if sandbox_id:
                tag += f"[{sandbox_id}]"
            builtins.print(f"[{ts()}] {tag} {message}", file=sys.stderr, flush=True)
        return record

    def info(self, event: str, message: str = "", **fields: object) -> LogRecord:
        return self.event(event, message, level="info", **fields)

    def warning(self, event: str, message: str = "", **fields: object) -> LogRecord:
        return self.event(event, message, level="warning", **fields)

    def error(self, event: str, message: str = "", **fields: object) -> LogRecord:
        return self.event(event, message, level="error", **fields)


def resolve_logger(
    logger: SandboxLogger | None,
    component: str,
    **fields: object,
) -> SandboxLogger:
    """Return ``logger`` re-bound to ``component``, or a fresh default logger."""
    if logger is None:
        return SandboxLogger(component, **fields)
    return logger.bind(component, **fields)
