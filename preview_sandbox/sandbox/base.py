"""Core sandbox types shared by every component.

A sandbox handle is whatever object the backend provider hands back (an
E2B ``AsyncSandbox`` in production). Its method surface varies between
SDK versions, so nothing here assumes a fixed shape: components resolve
entry points on the handle at call time (see capabilities.py).

Also defines CommandResult, ExecutionRequest, FileSpec/FileWriteReport
and the pydantic SandboxConfig used for creation.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, Field

SandboxHandle: TypeAlias = Any
OutputSink: TypeAlias = Callable[[str], Awaitable[None] | None]


@dataclasses.dataclass(frozen=True, slots=True)
class CommandResult:
    """Result of running a command inside a sandbox."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def unpack(self) -> tuple[int, str, str]:
        """Return (exit_code, stdout, stderr) for tuple destructuring."""
        return self.exit_code, self.stdout, self.stderr


@dataclasses.dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """One command to run to completion.

    ``timeout`` is in seconds; 0 means unbounded. ``env`` is handed to the
    backend as-is and never merged with the local environment.
    """

    command: str
    cwd: str | None = None
    timeout: int = 60
    env: Mapping[str, str] = dataclasses.field(default_factory=dict)
    on_stdout_line: OutputSink | None = None
    on_stderr_line: OutputSink | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))


@dataclasses.dataclass(frozen=True, slots=True)
class FileSpec:
    path: str
    content: str


@dataclasses.dataclass(frozen=True, slots=True)
class FileWriteResult:
    path: str
    success: bool
    error: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class FileWriteReport:
    """Per-file outcomes of a batch write. Failures are data, not exceptions."""

    results: tuple[FileWriteResult, ...]
    total_files: int

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def error_count(self) -> int:
        return self.total_files - self.success_count

    @property
    def success(self) -> bool:
        return self.error_count == 0

    @property
    def failures(self) -> list[FileWriteResult]:
        return [result for result in self.results if not result.success]


class SandboxConfig(BaseModel):
    """Everything the backend needs to create a sandbox.

    Unset fields fall back to environment variables (``E2B_TEMPLATE``,
    ``E2B_API_KEY``, ``E2B_DOMAIN``) in the backend.
    """

    template: str | None = None
    timeout: int = 600
    envs: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)
    api_key: str | None = None
    domain: str | None = None


class SandboxInfo(BaseModel):
    id: str
    url: str | None = None
    status: Literal["running", "stopped", "error"] = "running"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    process_id: str | None = None
