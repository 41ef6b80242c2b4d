"""Command execution against a sandbox handle.

``execute`` runs one command to completion through the first command entry
point that accepts it, streaming stdout/stderr to line callbacks as chunks
arrive. ``start_background`` launches a long-lived process and returns as
soon as the backend acknowledges it.
"""

from __future__ import annotations

import dataclasses
import inspect
import shlex
import time
from collections.abc import Mapping
from typing import Any

from preview_sandbox.errors import SandboxError, SandboxErrorKind, describe_error
from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.sandbox.base import (
    CommandResult,
    ExecutionRequest,
    OutputSink,
    SandboxHandle,
)
from preview_sandbox.sandbox.capabilities import (
    BACKGROUND_ENTRY_POINTS,
    COMMAND_ENTRY_POINTS,
    entry_point_name,
    maybe_await,
    resolve_entry_point,
)
from preview_sandbox.utils.helpers import truncate_text

TIMEOUT_EXIT_CODES = {124, -1}


def build_command(command: str, cwd: str | None) -> str:
    if not cwd:
        return command
    return f"cd {shlex.quote(cwd)} && {command}"


def is_exit_error(error: BaseException) -> bool:
    """True for backend errors that describe a finished command.

    E2B raises ``CommandExitException`` on non-zero exits; it carries the
    command's output and is a result, not an entry-point failure.
    """
    return (
        hasattr(error, "exit_code")
        and hasattr(error, "stdout")
        and hasattr(error, "stderr")
    )


class LineForwarder:
    """Accumulates output chunks and forwards complete lines to a sink."""

    def __init__(self, sink: OutputSink | None, log: SandboxLogger) -> None:
        self.sink = sink
        self.log = log
        self.chunks: list[str] = []
        self.buffer = ""

    async def deliver(self, line: str) -> None:
        if self.sink is None:
            return
        try:
            outcome = self.sink(line)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as error:
            self.log.warning(
                "sink.error",
                f"output sink raised: {describe_error(error)}",
            )

    async def feed(self, chunk: Any) -> None:
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        if not chunk:
            return
        text = str(chunk)
        self.chunks.append(text)
        if self.sink is None:
            return
        self.buffer += text
        while "\n" in self.buffer:
            line, self.buffer = self.buffer.split("\n", 1)
            await self.deliver(line.rstrip("\r"))

    async def flush(self) -> None:
        if self.buffer:
            line, self.buffer = self.buffer, ""
            await self.deliver(line.rstrip("\r"))

    def text(self) -> str:
        return "".join(self.chunks)


def to_command_result(
    raw: Any,
    stdout: LineForwarder,
    stderr: LineForwarder,
    duration_ms: int,
) -> CommandResult:
    stdout_text = getattr(raw, "stdout", "") or stdout.text()
    stderr_text = getattr(raw, "stderr", "") or stderr.text()
    exit_code_raw = getattr(raw, "exit_code", None)
    exit_code = exit_code_raw if isinstance(exit_code_raw, int) else 0
    return CommandResult(
        exit_code=exit_code,
        stdout=str(stdout_text),
        stderr=str(stderr_text),
        duration_ms=duration_ms,
    )


async def execute(
    handle: SandboxHandle,
    request: ExecutionRequest,
    *,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
    quiet: bool = False,
) -> CommandResult:
    """Run ``request`` to completion and return its result.

    Entry points are tried in priority order; one that is missing is
    skipped, one that raises is logged and the next is tried. Raises
    ``SandboxError(COMMAND_FAILED)`` once every entry point has failed.
    A non-zero exit code is returned, not raised.
    """
    log = resolve_logger(logger, "exec", sandbox_id=sandbox_id)
    full_cmd = build_command(request.command, request.cwd)
    if not quiet:
        log.info(
            "command.start",
            f"[run] {truncate_text(request.command)}",
            command=request.command,
            cwd=request.cwd,
            timeout=request.timeout,
        )

    kwargs: dict[str, Any] = {"timeout": request.timeout}
    if request.env:
        kwargs["envs"] = dict(request.env)

    last_error: Exception | None = None
    for path in COMMAND_ENTRY_POINTS:
        method = resolve_entry_point(handle, path)
        if method is None:
            continue
        name = entry_point_name(path)
        stdout = LineForwarder(request.on_stdout_line, log)
        stderr = LineForwarder(request.on_stderr_line, log)
        t0 = time.monotonic()
        try:
            raw = await maybe_await(
                method(
                    full_cmd,
                    on_stdout=stdout.feed,
                    on_stderr=stderr.feed,
                    **kwargs,
                ),
            )
        except Exception as error:
            if not is_exit_error(error):
                last_error = error
                log.warning(
                    "command.entry_point_failed",
                    f"{name} failed: {describe_error(error)}",
                    entry_point=name,
                )
                continue
            raw = error

        await stdout.flush()
        await stderr.flush()
        duration_ms = int((time.monotonic() - t0) * 1000)
        result = to_command_result(raw, stdout, stderr, duration_ms)

        if result.exit_code in TIMEOUT_EXIT_CODES:
            log.warning(
                "command.timeout",
                f"[run] TIMEOUT after {request.timeout}s: {truncate_text(request.command, 100)}",
            )
        if result.exit_code != 0 and not quiet:
            log.warning(
                "command.nonzero_exit",
                f"[run] FAILED exit={result.exit_code} cmd={truncate_text(request.command, 100)}",
                exit_code=result.exit_code,
                stderr=truncate_text(result.stderr, 500) or None,
            )
        else:
            log.info(
                "command.finished",
                f"[run] exit={result.exit_code} via {name} in {duration_ms}ms",
                exit_code=result.exit_code,
                entry_point=name,
                duration_ms=duration_ms,
            )
        return result

    reason = (
        describe_error(last_error)
        if last_error is not None
        else "No valid command execution method found on sandbox"
    )
    raise SandboxError(
        SandboxErrorKind.COMMAND_FAILED,
        f"Command execution failed: {reason}",
        sandbox_id=sandbox_id,
        cause=last_error,
        command=request.command,
    ) from last_error


@dataclasses.dataclass(frozen=True, slots=True)
class BackgroundProcess:
    """A process started in the background. Distinct from a CommandResult:
    the command is expected to outlive the call that started it."""

    process_id: str
    entry_point: str
    handle: Any = None


async def start_background(
    handle: SandboxHandle,
    command: str,
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    on_stdout_line: OutputSink | None = None,
    on_stderr_line: OutputSink | None = None,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> BackgroundProcess:
    log = resolve_logger(logger, "exec", sandbox_id=sandbox_id)
    full_cmd = build_command(command, cwd)
    stdout = LineForwarder(on_stdout_line, log)
    stderr = LineForwarder(on_stderr_line, log)
    kwargs: dict[str, Any] = {
        "on_stdout": stdout.feed,
        "on_stderr": stderr.feed,
    }
    if env:
        kwargs["envs"] = dict(env)

    last_error: Exception | None = None
    for path in BACKGROUND_ENTRY_POINTS:
        method = resolve_entry_point(handle, path)
        if method is None:
            continue
        name = entry_point_name(path)
        call_kwargs = dict(kwargs)
        if path[-1] == "run":
            # The connection must outlive the default command timeout.
            call_kwargs.update(background=True, timeout=0)
        try:
            process = await maybe_await(method(full_cmd, **call_kwargs))
        except Exception as error:
            last_error = error
            log.warning(
                "background.entry_point_failed",
                f"{name} failed: {describe_error(error)}",
                entry_point=name,
            )
            continue
        pid = getattr(process, "pid", None)
        process_id = str(pid) if pid is not None else "unknown"
        log.info(
            "background.started",
            f"[bg] started via {name} pid={process_id}: {truncate_text(command)}",
            entry_point=name,
            process_id=process_id,
        )
        return BackgroundProcess(process_id=process_id, entry_point=name, handle=process)

    reason = (
        describe_error(last_error)
        if last_error is not None
        else "No valid process start method found on sandbox"
    )
    raise SandboxError(
        SandboxErrorKind.COMMAND_FAILED,
        f"Failed to start background process: {reason}",
        sandbox_id=sandbox_id,
        cause=last_error,
        command=command,
    ) from last_error
