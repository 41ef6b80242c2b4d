from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest
from preview_sandbox.errors import SandboxError, SandboxErrorKind
from preview_sandbox.sandbox.base import ExecutionRequest
from preview_sandbox.sandbox.executor import build_command, execute, start_background

from tests.fakes import FakeSandbox, Outcome, fail, ok, recording_logger


def run_request(handle: Any, request: ExecutionRequest, **kwargs: Any):
    logger, _ = recording_logger()
    return asyncio.run(
        execute(handle, request, sandbox_id="sbx-test", logger=logger, **kwargs),
    )


def test_build_command_prefixes_quoted_cwd() -> None:
    assert build_command("ls", None) == "ls"
    assert build_command("ls", "/project") == "cd /project && ls"
    assert build_command("ls", "/my project") == "cd '/my project' && ls"


def test_execute_returns_result_and_passes_env_untouched() -> None:
    sandbox = FakeSandbox(lambda command: ok("hello\n"))

    result = run_request(
        sandbox,
        ExecutionRequest(command="echo hello", cwd="/project", timeout=0, env={"A": "1"}),
    )

    assert result.exit_code == 0
    assert result.ok
    assert result.stdout == "hello\n"
    call = sandbox.commands.calls[0]
    assert call.command == "cd /project && echo hello"
    assert call.timeout == 0
    assert call.envs == {"A": "1"}


def test_execute_omits_envs_when_empty() -> None:
    sandbox = FakeSandbox()
    run_request(sandbox, ExecutionRequest(command="true"))
    assert sandbox.commands.calls[0].envs is None


def test_execute_streams_complete_lines_and_flushes_tail() -> None:
    stdout_lines: list[str] = []
    stderr_lines: list[str] = []

    async def on_stdout(line: str) -> None:
        stdout_lines.append(line)

    class ChunkedCommands:
        async def run(self, command: str, *, on_stdout, on_stderr, **kwargs: Any) -> Any:
            del command, kwargs
            await on_stdout("one\r\ntw")
            await on_stdout("o\nthree")
            await on_stderr("warn\n")
            return SimpleNamespace(exit_code=0, stdout="", stderr="")

    handle = SimpleNamespace(commands=ChunkedCommands())

    result = run_request(
        handle,
        ExecutionRequest(
            command="build",
            on_stdout_line=on_stdout,
            on_stderr_line=stderr_lines.append,
        ),
    )

    assert stdout_lines == ["one", "two", "three"]
    assert stderr_lines == ["warn"]
    assert result.stdout == "one\r\ntwo\nthree"
    assert result.stderr == "warn\n"


def test_execute_falls_back_to_next_entry_point_when_one_raises() -> None:
    class BrokenCommands:
        async def run(self, command: str, **kwargs: Any) -> Any:
            raise AttributeError("commands.run is gone")

    class Process:
        def __init__(self) -> None:
            self.commands: list[str] = []

        async def run(self, command: str, **kwargs: Any) -> Any:
            self.commands.append(command)
            return SimpleNamespace(exit_code=0, stdout="via process", stderr="")

    process = Process()
    handle = SimpleNamespace(commands=BrokenCommands(), process=process)

    result = run_request(handle, ExecutionRequest(command="whoami"))

    assert result.stdout == "via process"
    assert process.commands == ["whoami"]


def test_execute_uses_direct_run_entry_point() -> None:
    def run(command: str, **kwargs: Any) -> Any:
        return SimpleNamespace(exit_code=3, stdout="", stderr="bad")

    result = run_request(SimpleNamespace(run=run), ExecutionRequest(command="x"))
    assert result.exit_code == 3
    assert result.stderr == "bad"


def test_execute_treats_exit_exception_as_result() -> None:
    class CommandExitException(Exception):
        def __init__(self) -> None:
            super().__init__("exit 2")
            self.exit_code = 2
            self.stdout = "partial"
            self.stderr = "failed"

    class Commands:
        def __init__(self) -> None:
            self.calls = 0

        async def run(self, command: str, **kwargs: Any) -> Any:
            self.calls += 1
            raise CommandExitException()

    process_calls: list[str] = []

    async def process_run(command: str, **kwargs: Any) -> Any:
        process_calls.append(command)
        return SimpleNamespace(exit_code=0, stdout="", stderr="")

    commands = Commands()
    handle = SimpleNamespace(commands=commands, process=SimpleNamespace(run=process_run))

    result = run_request(handle, ExecutionRequest(command="false"))

    assert result.unpack() == (2, "partial", "failed")
    assert commands.calls == 1
    assert process_calls == []


def test_execute_raises_command_failed_when_all_entry_points_fail() -> None:
    sandbox = FakeSandbox(lambda command: ConnectionError("socket closed"))

    with pytest.raises(SandboxError) as excinfo:
        run_request(sandbox, ExecutionRequest(command="npm test"))

    error = excinfo.value
    assert error.kind is SandboxErrorKind.COMMAND_FAILED
    assert error.sandbox_id == "sbx-test"
    assert error.command == "npm test"
    assert isinstance(error.cause, ConnectionError)
    assert "socket closed" in error.message


def test_execute_raises_command_failed_when_no_entry_point_exists() -> None:
    with pytest.raises(SandboxError, match="No valid command execution method") as excinfo:
        run_request(SimpleNamespace(), ExecutionRequest(command="ls"))
    assert excinfo.value.kind is SandboxErrorKind.COMMAND_FAILED


def test_execute_does_not_cache_missing_entry_points_between_calls() -> None:
    handle = SimpleNamespace()
    with pytest.raises(SandboxError):
        run_request(handle, ExecutionRequest(command="ls"))

    handle.commands = FakeSandbox(lambda command: ok("back")).commands
    result = run_request(handle, ExecutionRequest(command="ls"))
    assert result.stdout == "back"


def test_sink_errors_do_not_abort_command() -> None:
    def exploding_sink(line: str) -> None:
        raise ValueError(line)

    sandbox = FakeSandbox(lambda command: Outcome(stdout="a\nb\n"))
    result = run_request(
        sandbox,
        ExecutionRequest(command="echo", on_stdout_line=exploding_sink),
    )
    assert result.exit_code == 0
    assert len(sandbox.commands.calls) == 1


def test_nonzero_exit_is_logged_not_raised() -> None:
    logger, records = recording_logger()
    sandbox = FakeSandbox(lambda command: fail(exit_code=7))

    result = asyncio.run(
        execute(sandbox, ExecutionRequest(command="make"), sandbox_id="sbx-test", logger=logger),
    )

    assert result.exit_code == 7
    assert any(record["event"] == "command.nonzero_exit" for record in records)


def test_start_background_prefers_commands_start() -> None:
    started: list[tuple[str, dict[str, Any]]] = []

    async def start(command: str, **kwargs: Any) -> Any:
        started.append((command, kwargs))
        return SimpleNamespace(pid=99)

    handle = SimpleNamespace(commands=SimpleNamespace(start=start))
    logger, _ = recording_logger()

    process = asyncio.run(
        start_background(handle, "npm run dev", cwd="/project", env={"PORT": "3000"}, logger=logger),
    )

    assert process.process_id == "99"
    assert process.entry_point == "commands.start"
    assert started[0][0] == "cd /project && npm run dev"
    assert started[0][1]["envs"] == {"PORT": "3000"}
    assert "background" not in started[0][1]


def test_start_background_falls_back_to_background_run() -> None:
    sandbox = FakeSandbox()
    logger, _ = recording_logger()

    process = asyncio.run(start_background(sandbox, "vite", logger=logger))

    assert process.entry_point == "commands.run"
    assert process.process_id == "4242"
    call = sandbox.commands.calls[0]
    assert call.background is True
    assert call.timeout == 0


def test_start_background_without_entry_points_raises() -> None:
    logger, _ = recording_logger()
    with pytest.raises(SandboxError) as excinfo:
        asyncio.run(start_background(SimpleNamespace(), "vite", sandbox_id="sbx-1", logger=logger))
    assert excinfo.value.kind is SandboxErrorKind.COMMAND_FAILED
    assert excinfo.value.sandbox_id == "sbx-1"
