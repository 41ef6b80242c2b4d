from __future__ import annotations

import asyncio
from typing import Any

import pytest
from preview_sandbox.errors import SandboxError, SandboxErrorKind
from preview_sandbox.manifest import DependencyManifest
from preview_sandbox.provisioning.install import (
    ALL_STRATEGIES_FAILED,
    PACKAGE_MANAGERS,
    InstallOptions,
    batch_commands,
    build_strategies,
    install_declared,
    install_dependencies,
)

from tests.fakes import FakeSandbox, Outcome, fail, ok, recording_logger

NPM_CHAIN = [
    "npm install",
    "npm install --omit=dev",
    "npm ci",
    "npm install react react-dom vite @vitejs/plugin-react typescript",
    "pnpm install",
    "pnpm install --prod",
    "pnpm install --frozen-lockfile",
]


def strip_cwd(commands: list[str]) -> list[str]:
    return [command.removeprefix("cd /project && ") for command in commands]


def install(sandbox: FakeSandbox, manifest: DependencyManifest, **kwargs: Any):
    logger, records = recording_logger()
    result = asyncio.run(
        install_dependencies(
            sandbox,
            manifest,
            "/project",
            sandbox_id=sandbox.sandbox_id,
            logger=logger,
            **kwargs,
        ),
    )
    return result, records


def test_first_successful_strategy_short_circuits() -> None:
    sandbox = FakeSandbox(lambda command: ok("added 120 packages"))

    result, _ = install(sandbox, DependencyManifest())

    assert result.exit_code == 0
    assert sandbox.commands.commands == ["cd /project && npm install"]
    assert sandbox.commands.calls[0].timeout == 0


def test_chain_advances_only_on_failure() -> None:
    def responder(command: str) -> Outcome:
        return ok() if command.endswith("npm ci") else fail()

    sandbox = FakeSandbox(responder)

    result, _ = install(sandbox, DependencyManifest())

    assert result.exit_code == 0
    assert strip_cwd(sandbox.commands.commands) == NPM_CHAIN[:3]


def test_strategy_chain_order_for_npm() -> None:
    strategies = build_strategies(DependencyManifest(), InstallOptions())
    assert [strategy.command for strategy in strategies] == NPM_CHAIN
    assert strategies[3].label == "minimal bootstrap install"


def test_declared_package_manager_becomes_primary() -> None:
    manifest = DependencyManifest(package_manager="pnpm@8.15.0")

    commands = [strategy.command for strategy in build_strategies(manifest, InstallOptions())]

    assert commands[:3] == [
        "pnpm install",
        "pnpm install --prod",
        "pnpm install --frozen-lockfile",
    ]
    assert commands[3].startswith("pnpm add react ")
    assert commands[4:] == ["npm install", "npm install --omit=dev", "npm ci"]


def test_fallback_manager_can_be_disabled_or_collapse() -> None:
    no_fallback = build_strategies(DependencyManifest(), InstallOptions(fallback_manager=None))
    assert [strategy.command for strategy in no_fallback] == NPM_CHAIN[:4]

    same = build_strategies(DependencyManifest(), InstallOptions(fallback_manager="npm"))
    assert len(same) == 4

    no_bootstrap = build_strategies(
        DependencyManifest(),
        InstallOptions(bootstrap_packages=[], fallback_manager="yarn"),
    )
    assert [strategy.command for strategy in no_bootstrap][3:] == [
        "yarn install",
        "yarn install --production",
        "yarn install --frozen-lockfile",
    ]


def test_unknown_package_manager_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown package manager"):
        build_strategies(DependencyManifest(), InstallOptions(package_manager="bun"))


def test_all_strategies_failing_raises_and_emits_diagnostics_once() -> None:
    diagnostics_calls = 0

    def responder(command: str) -> Outcome:
        nonlocal diagnostics_calls
        if "_logs" in command:
            diagnostics_calls += 1
            return ok("[diagnostics] /root/.npm/_logs/debug.log\nERR! code ERESOLVE\n")
        return fail(stderr="npm ERR! network")

    stderr_lines: list[str] = []
    sandbox = FakeSandbox(responder)

    with pytest.raises(SandboxError) as excinfo:
        install(sandbox, DependencyManifest(), options=InstallOptions(on_stderr_line=stderr_lines.append))

    error = excinfo.value
    assert error.kind is SandboxErrorKind.COMMAND_FAILED
    assert error.message == ALL_STRATEGIES_FAILED
    assert error.sandbox_id == "sbx-test"
    assert diagnostics_calls == 1
    assert strip_cwd(sandbox.commands.commands[:-1]) == NPM_CHAIN
    assert "ERR! code ERESOLVE" in stderr_lines
    assert "[diagnostics] /root/.npm/_logs/debug.log" in stderr_lines


def test_diagnostics_failure_does_not_replace_install_error() -> None:
    def responder(command: str) -> Outcome | Exception:
        if "_logs" in command:
            return ConnectionError("sandbox went away")
        return fail()

    sandbox = FakeSandbox(responder)

    with pytest.raises(SandboxError) as excinfo:
        install(sandbox, DependencyManifest())

    assert excinfo.value.message == ALL_STRATEGIES_FAILED


def test_strategy_that_cannot_execute_counts_as_failure() -> None:
    def responder(command: str) -> Outcome | Exception:
        if command.endswith("npm install"):
            return TimeoutError("stream dropped")
        return ok()

    sandbox = FakeSandbox(responder)

    result, records = install(sandbox, DependencyManifest())

    assert result.exit_code == 0
    assert strip_cwd(sandbox.commands.commands) == NPM_CHAIN[:2]
    assert any(record["event"] == "install.strategy_error" for record in records)


def test_install_declared_issues_one_batch_per_group() -> None:
    sandbox = FakeSandbox()
    manifest = DependencyManifest(
        dependencies={"react": "18.2.0"},
        dev_dependencies={"vite": "5.0.0"},
    )
    logger, _ = recording_logger()

    results = asyncio.run(
        install_declared(sandbox, manifest, "/project", batch_size=10, logger=logger),
    )

    assert len(results) == 2
    assert strip_cwd(sandbox.commands.commands) == [
        "npm install react@18.2.0",
        "npm install -D vite@5.0.0",
    ]


def test_batch_commands_split_at_batch_size() -> None:
    regular = [f"pkg-{index}@1.0.0" for index in range(12)]

    commands = batch_commands(PACKAGE_MANAGERS["pnpm"], regular, ["@types/node@^20.0.0"], 5)

    assert len(commands) == 4
    assert commands[0] == "pnpm add " + " ".join(regular[:5])
    assert commands[2] == "pnpm add " + " ".join(regular[10:])
    assert commands[3] == "pnpm add -D '@types/node@^20.0.0'"


def test_batch_failure_names_the_batch() -> None:
    def responder(command: str) -> Outcome:
        return fail() if "-D" in command else ok()

    sandbox = FakeSandbox(responder)
    manifest = DependencyManifest(
        dependencies={"react": "18.2.0"},
        dev_dependencies={"vite": "5.0.0"},
    )
    logger, _ = recording_logger()

    with pytest.raises(SandboxError) as excinfo:
        asyncio.run(install_declared(sandbox, manifest, logger=logger))

    assert excinfo.value.kind is SandboxErrorKind.COMMAND_FAILED
    assert excinfo.value.command == "npm install -D vite@5.0.0"
    assert "npm install -D vite@5.0.0" in excinfo.value.message


def test_install_declared_skips_preinstalled_packages() -> None:
    sandbox = FakeSandbox()
    manifest = DependencyManifest(
        dependencies={"react": "^18.2.0", "zustand": "4.5.0"},
        dev_dependencies={"vite": "^5.0.8"},
    )
    preinstalled = DependencyManifest(
        dependencies={"react": "^18.2.0"},
        dev_dependencies={"vite": "^5.0.8"},
    )
    logger, _ = recording_logger()

    results = asyncio.run(
        install_declared(sandbox, manifest, preinstalled=preinstalled, logger=logger),
    )

    assert len(results) == 1
    assert strip_cwd(sandbox.commands.commands) == ["npm install zustand@4.5.0"]


def test_install_declared_with_nothing_missing_runs_nothing() -> None:
    sandbox = FakeSandbox()
    manifest = DependencyManifest(dependencies={"react": "^18.2.0"})
    logger, _ = recording_logger()

    results = asyncio.run(
        install_declared(sandbox, manifest, preinstalled=manifest, logger=logger),
    )

    assert results == []
    assert sandbox.commands.calls == []
