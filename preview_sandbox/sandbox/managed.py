"""ManagedSandbox: one live sandbox handle plus everything bound to it.

Wraps the backend handle with its identity, the capability report taken
when it was acquired, a logger bound to the sandbox id and the default
environment passed to every command. All operations delegate to the
component modules; this class only supplies the bound arguments.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, TypeVar

from preview_sandbox.errors import describe_error
from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.manifest import DependencyManifest
from preview_sandbox.provisioning import devserver, health, install
from preview_sandbox.sandbox import executor, files, lifecycle
from preview_sandbox.sandbox.base import (
    CommandResult,
    ExecutionRequest,
    FileSpec,
    FileWriteReport,
    OutputSink,
    SandboxConfig,
    SandboxHandle,
    SandboxInfo,
)
from preview_sandbox.sandbox.capabilities import (
    CapabilityReport,
    maybe_await,
    probe_capabilities,
    resolve_entry_point,
)


OptionsT = TypeVar("OptionsT", install.InstallOptions, devserver.DevServerOptions)


class ManagedSandbox:
    def __init__(
        self,
        inner: SandboxHandle,
        sandbox_id: str,
        *,
        env: dict[str, str] | None = None,
        logger: SandboxLogger | None = None,
    ) -> None:
        self._inner = inner
        self.id = sandbox_id
        self.env: dict[str, str] = dict(env or {})
        self.logger = resolve_logger(logger, "sandbox", sandbox_id=sandbox_id)
        self.created_at = datetime.now(UTC)
        self.capabilities: CapabilityReport = probe_capabilities(
            inner,
            sandbox_id=sandbox_id,
            logger=self.logger,
        )
        self.dev_server: devserver.DevServer | None = None
        self.terminated = False

    @property
    def name(self) -> str:
        return "e2b"

    @classmethod
    async def create(
        cls,
        config: SandboxConfig | None = None,
        *,
        provider: lifecycle.SandboxProvider | None = None,
        logger: SandboxLogger | None = None,
    ) -> ManagedSandbox:
        config = config or SandboxConfig()
        inner, sandbox_id = await lifecycle.create_handle(
            config,
            provider=provider,
            logger=logger,
        )
        return cls(inner, sandbox_id, env=config.envs, logger=logger)

    @classmethod
    async def reconnect(
        cls,
        sandbox_id: str,
        config: SandboxConfig | None = None,
        *,
        provider: lifecycle.SandboxProvider | None = None,
        logger: SandboxLogger | None = None,
    ) -> ManagedSandbox:
        inner, resolved_id = await lifecycle.reconnect_handle(
            sandbox_id,
            config,
            provider=provider,
            logger=logger,
        )
        env = config.envs if config is not None else None
        return cls(inner, resolved_id, env=env, logger=logger)

    # -- commands and files --------------------------------------------------

    async def run(self, request: ExecutionRequest, *, quiet: bool = False) -> CommandResult:
        return await executor.execute(
            self._inner,
            request,
            sandbox_id=self.id,
            logger=self.logger,
            quiet=quiet,
        )

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: int = 300,
        env: dict[str, str] | None = None,
        on_stdout_line: OutputSink | None = None,
        on_stderr_line: OutputSink | None = None,
    ) -> CommandResult:
        """Run ``command`` with the sandbox's default env unless ``env`` is given."""
        return await self.run(
            ExecutionRequest(
                command=command,
                cwd=cwd,
                timeout=timeout,
                env=self.env if env is None else env,
                on_stdout_line=on_stdout_line,
                on_stderr_line=on_stderr_line,
            ),
        )

    async def write_files(self, specs: Iterable[FileSpec]) -> FileWriteReport:
        return await files.write_files(
            self._inner,
            specs,
            sandbox_id=self.id,
            logger=self.logger,
        )

    # -- provisioning --------------------------------------------------------

    def with_default_env(
        self,
        options: OptionsT,
    ) -> OptionsT:
        if options.env or not self.env:
            return options
        return options.model_copy(update={"env": dict(self.env)})

    async def install_dependencies(
        self,
        manifest: DependencyManifest,
        working_directory: str = "/project",
        options: install.InstallOptions | None = None,
    ) -> CommandResult:
        return await install.install_dependencies(
            self._inner,
            manifest,
            working_directory,
            self.with_default_env(options or install.InstallOptions()),
            sandbox_id=self.id,
            logger=self.logger,
        )

    async def install_declared(
        self,
        manifest: DependencyManifest,
        working_directory: str = "/project",
        options: install.InstallOptions | None = None,
        *,
        batch_size: int = install.DEFAULT_BATCH_SIZE,
        preinstalled: DependencyManifest | None = None,
    ) -> list[CommandResult]:
        return await install.install_declared(
            self._inner,
            manifest,
            working_directory,
            self.with_default_env(options or install.InstallOptions()),
            batch_size=batch_size,
            preinstalled=preinstalled,
            sandbox_id=self.id,
            logger=self.logger,
        )

    async def start_dev_server(
        self,
        options: devserver.DevServerOptions | None = None,
    ) -> devserver.DevServer:
        server = await devserver.start_dev_server(
            self._inner,
            self.with_default_env(options or devserver.DevServerOptions()),
            sandbox_id=self.id,
            logger=self.logger,
        )
        self.dev_server = server
        return server

    async def stop_dev_server(self) -> None:
        await devserver.stop_dev_server(self._inner, sandbox_id=self.id, logger=self.logger)
        self.dev_server = None

    async def check_health(self) -> bool:
        return await health.check_health(
            self._inner,
            env=self.env,
            sandbox_id=self.id,
            logger=self.logger,
        )

    async def keep_alive(self, extend_by: int | None = None) -> None:
        await health.keep_alive(
            self._inner,
            env=self.env,
            extend_by=extend_by,
            sandbox_id=self.id,
            logger=self.logger,
        )

    # -- info and teardown ---------------------------------------------------

    async def get_info(self) -> dict[str, Any]:
        """Backend-reported info, or a minimal record when unavailable."""
        get_info = resolve_entry_point(self._inner, ("get_info",))
        if get_info is None:
            return {"sandbox_id": self.id, "status": "unknown"}
        try:
            info = await maybe_await(get_info())
        except Exception as error:
            self.logger.warning("sandbox.info_failed", f"failed to get sandbox info: {describe_error(error)}")
            return {"sandbox_id": self.id, "status": "error", "error": describe_error(error)}
        if isinstance(info, dict):
            return info
        if hasattr(info, "__dict__"):
            return dict(vars(info))
        return {"sandbox_id": self.id, "info": info}

    def info(self) -> SandboxInfo:
        return SandboxInfo(
            id=self.id,
            url=self.dev_server.url if self.dev_server else None,
            status="stopped" if self.terminated else "running",
            created_at=self.created_at,
            process_id=self.dev_server.process_id if self.dev_server else None,
        )

    async def terminate(self) -> None:
        """Terminate the sandbox. Idempotent and never raises."""
        if self.terminated:
            self.logger.info("sandbox.already_terminated", "sandbox already terminated")
            return
        await lifecycle.terminate(self._inner, sandbox_id=self.id, logger=self.logger)
        self.terminated = True

    async def __aenter__(self) -> ManagedSandbox:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.terminate()
