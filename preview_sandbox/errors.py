"""Typed failures raised by the sandbox engine.

Every error names its kind, the sandbox it happened in (when known) and
the underlying cause (also chained with ``raise ... from``). Provisioning
attaches the log lines gathered so far so a caller can show them.
"""

from __future__ import annotations

import enum
from typing import Any


class SandboxErrorKind(enum.StrEnum):
    CREATION_FAILED = "CREATION_FAILED"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    COMMAND_FAILED = "COMMAND_FAILED"
    FILE_OPERATION_FAILED = "FILE_OPERATION_FAILED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TIMEOUT = "TIMEOUT"


class SandboxError(RuntimeError):
    """Failure in a sandbox operation, tagged with a ``SandboxErrorKind``."""

    def __init__(
        self,
        kind: SandboxErrorKind,
        message: str,
        *,
        sandbox_id: str | None = None,
        cause: BaseException | None = None,
        command: str | None = None,
        logs: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.sandbox_id = sandbox_id
        self.cause = cause
        self.command = command
        self.logs: list[str] = list(logs or [])

    def __str__(self) -> str:
        prefix = f"[{self.kind}]"
        if self.sandbox_id:
            prefix += f"[{self.sandbox_id}]"
        return f"{prefix} {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.message,
            "type": str(self.kind),
            "sandbox_id": self.sandbox_id,
        }
        if self.command is not None:
            payload["command"] = self.command
        if self.cause is not None:
            payload["cause"] = describe_error(self.cause)
        if self.logs:
            payload["logs"] = list(self.logs)
        return payload


def describe_error(error: BaseException | None) -> str:
    if error is None:
        return "Unknown error"
    text = str(error).strip()
    return text or type(error).__name__
