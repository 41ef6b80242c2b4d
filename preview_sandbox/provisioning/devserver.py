"""Dev-server launch and readiness polling.

The dev server is started as a background process and is expected to run
for the lifetime of the sandbox. Readiness is decided by polling a set of
independent probes, all evaluated in the same tick; the first probe to
succeed wins.
"""

from __future__ import annotations

import asyncio
import dataclasses
import re
import shlex
from collections.abc import Callable, Sequence
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from preview_sandbox.errors import SandboxError, SandboxErrorKind, describe_error
from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.sandbox.base import CommandResult, ExecutionRequest, SandboxHandle
from preview_sandbox.sandbox.capabilities import maybe_await, resolve_entry_point, safe_getattr
from preview_sandbox.sandbox.executor import BackgroundProcess, execute, start_background
from preview_sandbox.utils.helpers import resolve_e2b_domain

NOT_READY_TOKEN = "NOT_READY"
DEFAULT_PROBE_TIMEOUT_SECONDS = 5


# ---------------------------------------------------------------------------
# Readiness probes
# ---------------------------------------------------------------------------


@runtime_checkable
class ReadinessProbe(Protocol):
    @property
    def kind(self) -> str:
        ...

    def command(self) -> str:
        ...

    def is_ready(self, result: CommandResult) -> bool:
        ...


@dataclasses.dataclass(frozen=True, slots=True)
class HttpProbe:
    """Ready once something answers HTTP on ``localhost:<port>``."""

    port: int
    path: str = "/"

    @property
    def kind(self) -> str:
        return "http"

    def command(self) -> str:
        url = shlex.quote(f"http://localhost:{self.port}{self.path}")
        return f"curl -s -o /dev/null --max-time 4 {url} || echo {NOT_READY_TOKEN}"

    def is_ready(self, result: CommandResult) -> bool:
        return result.exit_code == 0 and NOT_READY_TOKEN not in result.stdout


@dataclasses.dataclass(frozen=True, slots=True)
class SocketProbe:
    """Ready once a socket is listening on ``port``."""

    port: int

    @property
    def kind(self) -> str:
        return "socket"

    def command(self) -> str:
        return (
            "(ss -ltn 2>/dev/null || netstat -ltn 2>/dev/null) "
            f"| grep -Eq '[:.]{self.port}[[:space:]]'"
        )

    def is_ready(self, result: CommandResult) -> bool:
        return result.exit_code == 0


def escape_ere(text: str) -> str:
    return re.sub(r"([.^$*+?()\[\]{}|\\])", r"\\\1", text)


def self_excluding_pattern(name: str) -> str:
    """``pgrep -f`` pattern matching ``name`` but not the shell whose command line
    contains the pattern itself: "vite" becomes "[v]ite"."""
    head, tail = name[:1], name[1:]
    if head.isalnum():
        return f"[{head}]{escape_ere(tail)}"
    return escape_ere(name)


@dataclasses.dataclass(frozen=True, slots=True)
class ProcessProbe:
    """Ready once a process whose command line matches ``name`` exists."""

    name: str

    @property
    def kind(self) -> str:
        return "process"

    def pattern(self) -> str:
        return self_excluding_pattern(self.name)

    def command(self) -> str:
        return f"pgrep -f {shlex.quote(self.pattern())} >/dev/null"

    def is_ready(self, result: CommandResult) -> bool:
        return result.exit_code == 0


def default_probes(port: int) -> list[ReadinessProbe]:
    return [HttpProbe(port), SocketProbe(port)]


async def evaluate_probe(
    handle: SandboxHandle,
    probe: ReadinessProbe,
    *,
    env: dict[str, str],
    probe_timeout: int,
    sandbox_id: str | None,
    log: SandboxLogger,
) -> bool:
    """Run one probe. Any error counts as "not ready yet"."""
    try:
        result = await asyncio.wait_for(
            execute(
                handle,
                ExecutionRequest(command=probe.command(), timeout=probe_timeout, env=env),
                sandbox_id=sandbox_id,
                logger=log,
                quiet=True,
            ),
            timeout=probe_timeout + 1,
        )
        return probe.is_ready(result)
    except Exception as error:
        log.event(
            "probe.error",
            f"{probe.kind} probe errored: {describe_error(error)}",
            level="debug",
            probe=probe.kind,
        )
        return False


async def wait_for_ready(
    handle: SandboxHandle,
    probes: Sequence[ReadinessProbe],
    *,
    timeout: float,
    poll_interval: float = 1.0,
    env: dict[str, str] | None = None,
    probe_timeout: int = DEFAULT_PROBE_TIMEOUT_SECONDS,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> ReadinessProbe:
    """Poll ``probes`` until one succeeds; return the probe that did.

    Raises ``SandboxError(TIMEOUT)`` once ``timeout`` seconds pass without
    any probe succeeding.
    """
    if not probes:
        raise ValueError("at least one readiness probe is required")
    log = resolve_logger(logger, "devserver", sandbox_id=sandbox_id)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    tick = 0
    while True:
        tick += 1
        outcomes = await asyncio.gather(
            *[
                evaluate_probe(
                    handle,
                    probe,
                    env=dict(env or {}),
                    probe_timeout=probe_timeout,
                    sandbox_id=sandbox_id,
                    log=log,
                )
                for probe in probes
            ],
        )
        for probe, ready in zip(probes, outcomes):
            if ready:
                log.info(
                    "devserver.ready",
                    f"server ready ({probe.kind} probe, tick {tick})",
                    probe=probe.kind,
                    tick=tick,
                )
                return probe
        if loop.time() >= deadline:
            raise SandboxError(
                SandboxErrorKind.TIMEOUT,
                f"Server did not become ready within {timeout:g}s",
                sandbox_id=sandbox_id,
            )
        if tick % 5 == 0:
            log.info("devserver.waiting", f"still waiting for dev server ({tick} ticks)")
        await asyncio.sleep(poll_interval)


# ---------------------------------------------------------------------------
# Public URL resolution
# ---------------------------------------------------------------------------


def with_scheme(host: str) -> str:
    if host.startswith(("http://", "https://")):
        return host
    return f"https://{host}"


def port_url(port: int, sandbox_id: str | None, domain: str) -> str:
    if not sandbox_id:
        return with_scheme(domain)
    return f"https://{port}-{sandbox_id}.{domain}"


async def resolve_public_url(
    handle: SandboxHandle,
    port: int,
    *,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> str:
    """Turn a sandbox port into an externally reachable URL.

    Preference: ``get_host(port)`` (a full host), ``sandbox_domain`` (a
    base domain), ``connection_config.host`` (a full host) or
    ``connection_config.domain`` (a base domain), then
    ``https://<port>-<id>.<E2B_DOMAIN>``.
    """
    log = resolve_logger(logger, "devserver", sandbox_id=sandbox_id)
    try:
        get_host = resolve_entry_point(handle, ("get_host",))
        if get_host is not None:
            host = await maybe_await(get_host(port))
            if isinstance(host, str) and host:
                return with_scheme(host)
        domain = safe_getattr(handle, "sandbox_domain")
        if isinstance(domain, str) and domain:
            return port_url(port, sandbox_id, domain)
        config = safe_getattr(handle, "connection_config")
        if config is not None:
            host = safe_getattr(config, "host")
            if isinstance(host, str) and host:
                return with_scheme(host)
            domain = safe_getattr(config, "domain")
            if isinstance(domain, str) and domain:
                return port_url(port, sandbox_id, domain)
    except Exception as error:
        log.warning(
            "devserver.url_failed",
            f"failed to resolve host, using fallback: {describe_error(error)}",
        )
    return port_url(port, sandbox_id, resolve_e2b_domain())


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


class DevServerOptions(BaseModel):
    command: str = "npm run dev"
    working_directory: str = "/project"
    port: int = 3000
    timeout: float = Field(default=30.0, gt=0)
    poll_interval: float = Field(default=1.0, ge=0)
    probe_timeout: int = DEFAULT_PROBE_TIMEOUT_SECONDS
    env: dict[str, str] = Field(default_factory=dict)
    probes: list[Any] | None = None
    inject_port_arg: bool = True
    on_stdout_line: Callable[[str], Any] | None = None
    on_stderr_line: Callable[[str], Any] | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class DevServer:
    process_id: str
    url: str
    port: int
    ready_probe: str
    process: BackgroundProcess | None = None


def build_dev_command(command: str, port: int, inject_port_arg: bool = True) -> str:
    """Append ``--port <port>`` unless the command already sets one.

    npm needs ``--`` before arguments meant for the script itself.
    """
    if not inject_port_arg or re.search(r"--port\b", command):
        return command
    port_arg = f"--port {port}"
    if re.match(r"^npm\s+(run\s+|run-script\s+)?\S+", command) and " -- " not in f"{command} ":
        return f"{command} -- {port_arg}"
    return f"{command} {port_arg}"


async def start_dev_server(
    handle: SandboxHandle,
    options: DevServerOptions | None = None,
    *,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> DevServer:
    """Start the dev server in the background and wait for it to be ready.

    Raises ``SandboxError(COMMAND_FAILED)`` if the process cannot be
    started and ``SandboxError(TIMEOUT)`` if no probe succeeds in time.
    """
    options = options or DevServerOptions()
    log = resolve_logger(logger, "devserver", sandbox_id=sandbox_id)
    command = build_dev_command(options.command, options.port, options.inject_port_arg)
    env = {**options.env, "PORT": str(options.port)}
    log.info(
        "devserver.start",
        f"starting dev server: {command} (port {options.port})",
        command=command,
        port=options.port,
    )
    process = await start_background(
        handle,
        command,
        cwd=options.working_directory,
        env=env,
        on_stdout_line=options.on_stdout_line,
        on_stderr_line=options.on_stderr_line,
        sandbox_id=sandbox_id,
        logger=log,
    )
    probes = options.probes or default_probes(options.port)
    ready_probe = await wait_for_ready(
        handle,
        probes,
        timeout=options.timeout,
        poll_interval=options.poll_interval,
        env=options.env,
        probe_timeout=options.probe_timeout,
        sandbox_id=sandbox_id,
        logger=log,
    )
    url = await resolve_public_url(handle, options.port, sandbox_id=sandbox_id, logger=log)
    log.info("devserver.running", f"dev server running at {url}", url=url)
    return DevServer(
        process_id=process.process_id,
        url=url,
        port=options.port,
        ready_probe=ready_probe.kind,
        process=process,
    )


async def stop_dev_server(
    handle: SandboxHandle,
    patterns: Sequence[str] = ("npm run dev", "pnpm dev"),
    *,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> None:
    """Best-effort kill of running dev servers before a restart."""
    log = resolve_logger(logger, "devserver", sandbox_id=sandbox_id)
    kills = " || ".join(
        f"pkill -f {shlex.quote(self_excluding_pattern(pattern))}" for pattern in patterns
    )
    try:
        await execute(
            handle,
            ExecutionRequest(command=f"{kills} || true", timeout=10),
            sandbox_id=sandbox_id,
            logger=log,
            quiet=True,
        )
    except SandboxError as error:
        log.warning("devserver.stop_failed", f"could not stop dev server: {error.message}")
