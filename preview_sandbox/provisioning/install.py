"""Dependency installation inside a sandbox.

``install_dependencies`` walks a fixed chain of install strategies and
stops at the first one that exits 0. Strategies run strictly one after
another with no timeout by default: resolution time is unpredictable, so
the chain is bounded by strategy exhaustion instead.

``install_declared`` installs an explicit package list in fixed-size
batches, regular dependencies first, then dev dependencies.
"""

from __future__ import annotations

import dataclasses
import shlex
from collections.abc import Callable, Iterator
from typing import Any

from pydantic import BaseModel, Field

from preview_sandbox.errors import SandboxError, SandboxErrorKind, describe_error
from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.manifest import DependencyManifest, missing_dependencies, package_specs
from preview_sandbox.sandbox.base import CommandResult, ExecutionRequest, SandboxHandle
from preview_sandbox.sandbox.executor import LineForwarder, execute

BOOTSTRAP_PACKAGES = (
    "react",
    "react-dom",
    "vite",
    "@vitejs/plugin-react",
    "typescript",
)
DEFAULT_BATCH_SIZE = 10
DIAGNOSTIC_TAIL_LINES = 40
DIAGNOSTIC_TIMEOUT_SECONDS = 15
ALL_STRATEGIES_FAILED = "All dependency installation strategies failed"


@dataclasses.dataclass(frozen=True, slots=True)
class PackageManager:
    name: str
    install: str
    production: str
    frozen: str
    add: str
    add_dev: str


PACKAGE_MANAGERS: dict[str, PackageManager] = {
    "npm": PackageManager(
        name="npm",
        install="npm install",
        production="npm install --omit=dev",
        frozen="npm ci",
        add="npm install",
        add_dev="npm install -D",
    ),
    "pnpm": PackageManager(
        name="pnpm",
        install="pnpm install",
        production="pnpm install --prod",
        frozen="pnpm install --frozen-lockfile",
        add="pnpm add",
        add_dev="pnpm add -D",
    ),
    "yarn": PackageManager(
        name="yarn",
        install="yarn install",
        production="yarn install --production",
        frozen="yarn install --frozen-lockfile",
        add="yarn add",
        add_dev="yarn add -D",
    ),
}


@dataclasses.dataclass(frozen=True, slots=True)
class InstallStrategy:
    """One step of the fallback chain. Succeeds iff the command exits 0."""

    label: str
    command: str

    def succeeded(self, result: CommandResult) -> bool:
        return result.exit_code == 0


class InstallOptions(BaseModel):
    """Knobs for dependency installation.

    ``fallback_manager="auto"`` picks pnpm after npm and npm after anything
    else; ``None`` disables the alternate-manager strategies.
    """

    package_manager: str | None = None
    fallback_manager: str | None = "auto"
    timeout: int = 0
    env: dict[str, str] = Field(default_factory=dict)
    bootstrap_packages: list[str] = Field(
        default_factory=lambda: list(BOOTSTRAP_PACKAGES),
    )
    on_stdout_line: Callable[[str], Any] | None = None
    on_stderr_line: Callable[[str], Any] | None = None


def get_package_manager(name: str) -> PackageManager:
    try:
        return PACKAGE_MANAGERS[name.strip().lower()]
    except KeyError:
        known = ", ".join(sorted(PACKAGE_MANAGERS))
        raise ValueError(f"Unknown package manager {name!r} (known: {known})") from None


def resolve_primary_manager(
    manifest: DependencyManifest,
    options: InstallOptions,
) -> PackageManager:
    if options.package_manager:
        return get_package_manager(options.package_manager)
    declared = manifest.package_manager_name
    if declared in PACKAGE_MANAGERS:
        return PACKAGE_MANAGERS[declared]
    return PACKAGE_MANAGERS["npm"]


def resolve_fallback_manager(
    primary: PackageManager,
    options: InstallOptions,
) -> PackageManager | None:
    if options.fallback_manager is None:
        return None
    if options.fallback_manager == "auto":
        fallback = PACKAGE_MANAGERS["pnpm" if primary.name == "npm" else "npm"]
    else:
        fallback = get_package_manager(options.fallback_manager)
    if fallback.name == primary.name:
        return None
    return fallback


def manager_strategies(manager: PackageManager) -> list[InstallStrategy]:
    return [
        InstallStrategy(f"{manager.name} install", manager.install),
        InstallStrategy(f"{manager.name} production install", manager.production),
        InstallStrategy(f"{manager.name} frozen install", manager.frozen),
    ]


def build_strategies(
    manifest: DependencyManifest,
    options: InstallOptions,
) -> list[InstallStrategy]:
    primary = resolve_primary_manager(manifest, options)
    strategies = manager_strategies(primary)
    if options.bootstrap_packages:
        packages = " ".join(shlex.quote(name) for name in options.bootstrap_packages)
        strategies.append(
            InstallStrategy("minimal bootstrap install", f"{primary.add} {packages}"),
        )
    fallback = resolve_fallback_manager(primary, options)
    if fallback is not None:
        strategies.extend(manager_strategies(fallback))
    return strategies


def diagnostic_log_command(tail_lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
    return (
        'log=$(ls -t "$HOME"/.npm/_logs/*.log 2>/dev/null | head -n 1); '
        'if [ -n "$log" ]; then '
        'echo "[diagnostics] $log"; '
        f'tail -n {tail_lines} "$log"; '
        "fi"
    )


async def emit_install_diagnostics(
    handle: SandboxHandle,
    options: InstallOptions,
    *,
    sandbox_id: str | None,
    log: SandboxLogger,
) -> None:
    """Tail the newest installer debug log through the stderr sink.

    Never raises: a failure here must not replace the install error.
    """
    try:
        result = await execute(
            handle,
            ExecutionRequest(
                command=diagnostic_log_command(),
                timeout=DIAGNOSTIC_TIMEOUT_SECONDS,
                env=options.env,
            ),
            sandbox_id=sandbox_id,
            logger=log,
            quiet=True,
        )
        if not result.stdout.strip():
            log.info("install.diagnostics_empty", "no installer debug log found")
            return
        sink = LineForwarder(options.on_stderr_line, log)
        for line in result.stdout.splitlines():
            await sink.deliver(line)
    except Exception as error:
        log.warning(
            "install.diagnostics_failed",
            f"could not read installer debug log: {describe_error(error)}",
        )


async def install_dependencies(
    handle: SandboxHandle,
    manifest: DependencyManifest,
    working_directory: str = "/project",
    options: InstallOptions | None = None,
    *,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> CommandResult:
    """Install the project's dependencies, falling back across strategies.

    Returns the result of the first strategy that exits 0. Raises
    ``SandboxError(COMMAND_FAILED)`` when every strategy has failed, after
    a single best-effort attempt to surface the installer's debug log.
    """
    options = options or InstallOptions()
    log = resolve_logger(logger, "install", sandbox_id=sandbox_id)
    strategies = build_strategies(manifest, options)
    timeout_label = "disabled" if options.timeout == 0 else f"{options.timeout}s"
    log.info(
        "install.start",
        f"starting dependency installation ({len(strategies)} strategies, timeout {timeout_label})",
        strategies=[strategy.label for strategy in strategies],
    )

    last_result: CommandResult | None = None
    last_error: SandboxError | None = None
    for index, strategy in enumerate(strategies, start=1):
        log.info(
            "install.strategy_start",
            f"strategy {index}: {strategy.command}",
            strategy=strategy.label,
        )
        try:
            result = await execute(
                handle,
                ExecutionRequest(
                    command=strategy.command,
                    cwd=working_directory,
                    timeout=options.timeout,
                    env=options.env,
                    on_stdout_line=options.on_stdout_line,
                    on_stderr_line=options.on_stderr_line,
                ),
                sandbox_id=sandbox_id,
                logger=log,
            )
        except SandboxError as error:
            last_error = error
            log.warning(
                "install.strategy_error",
                f"strategy {index} ({strategy.label}) errored: {error.message}",
                strategy=strategy.label,
            )
            continue
        if strategy.succeeded(result):
            log.info(
                "install.strategy_succeeded",
                f"strategy {index} successful: {strategy.label}",
                strategy=strategy.label,
            )
            return result
        last_result = result
        log.warning(
            "install.strategy_failed",
            f"strategy {index} ({strategy.label}) failed with exit {result.exit_code}",
            strategy=strategy.label,
            exit_code=result.exit_code,
        )

    await emit_install_diagnostics(handle, options, sandbox_id=sandbox_id, log=log)
    log.error("install.exhausted", ALL_STRATEGIES_FAILED)
    cause: BaseException | None = last_error
    if last_result is not None and cause is None:
        cause = RuntimeError(
            f"last strategy exited {last_result.exit_code}: "
            f"{last_result.stderr.strip()[-500:]}"
        )
    raise SandboxError(
        SandboxErrorKind.COMMAND_FAILED,
        ALL_STRATEGIES_FAILED,
        sandbox_id=sandbox_id,
        cause=cause,
        command=strategies[-1].command if strategies else None,
    ) from cause


def batched(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def batch_commands(
    manager: PackageManager,
    regular: list[str],
    dev: list[str],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[str]:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    commands: list[str] = []
    for base, specs in ((manager.add, regular), (manager.add_dev, dev)):
        for batch in batched(specs, batch_size):
            commands.append(f"{base} {' '.join(shlex.quote(spec) for spec in batch)}")
    return commands


async def install_declared(
    handle: SandboxHandle,
    manifest: DependencyManifest,
    working_directory: str = "/project",
    options: InstallOptions | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    preinstalled: DependencyManifest | None = None,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> list[CommandResult]:
    """Install every declared package in batches of ``batch_size``.

    With ``preinstalled`` set, packages already present there are skipped.
    A failing batch aborts the whole operation with
    ``SandboxError(COMMAND_FAILED)`` naming that batch.
    """
    options = options or InstallOptions()
    log = resolve_logger(logger, "install", sandbox_id=sandbox_id)
    manager = resolve_primary_manager(manifest, options)
    if preinstalled is None:
        regular = package_specs(manifest.dependencies)
        dev = package_specs(manifest.dev_dependencies)
    else:
        regular, dev = missing_dependencies(manifest, preinstalled)

    commands = batch_commands(manager, regular, dev, batch_size)
    if not commands:
        log.info("install.nothing_to_do", "no additional dependencies needed")
        return []

    log.info(
        "install.batched_start",
        f"installing {len(regular)} dependencies and {len(dev)} dev dependencies "
        f"in {len(commands)} batches",
        batches=len(commands),
    )
    results: list[CommandResult] = []
    for command in commands:
        result = await execute(
            handle,
            ExecutionRequest(
                command=command,
                cwd=working_directory,
                timeout=options.timeout,
                env=options.env,
                on_stdout_line=options.on_stdout_line,
                on_stderr_line=options.on_stderr_line,
            ),
            sandbox_id=sandbox_id,
            logger=log,
        )
        if result.exit_code != 0:
            log.error(
                "install.batch_failed",
                f"dependency batch failed (exit {result.exit_code}): {command}",
                command=command,
            )
            raise SandboxError(
                SandboxErrorKind.COMMAND_FAILED,
                f"Dependency batch installation failed: {command}",
                sandbox_id=sandbox_id,
                command=command,
            )
        results.append(result)
    log.info("install.batched_done", "additional dependencies installed successfully")
    return results
