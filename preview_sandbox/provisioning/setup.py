"""End-to-end preview provisioning.

provision_preview() boots a sandbox, writes the project under /project,
installs whatever the project needs beyond the template image, starts the
dev server and returns its public URL. Any failure terminates the sandbox
and surfaces as a SandboxError carrying the log lines gathered so far.
"""

from __future__ import annotations

import inspect
import posixpath
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

from preview_sandbox.errors import SandboxError, SandboxErrorKind, describe_error
from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.manifest import (
    DEFAULT_NPMRC,
    DependencyManifest,
    default_package_json,
    missing_dependencies,
    template_manifest,
)
from preview_sandbox.provisioning.devserver import DevServerOptions
from preview_sandbox.provisioning.install import DEFAULT_BATCH_SIZE, InstallOptions
from preview_sandbox.sandbox.base import FileSpec, SandboxConfig
from preview_sandbox.sandbox.lifecycle import SandboxProvider
from preview_sandbox.sandbox.managed import ManagedSandbox
from preview_sandbox.utils.helpers import merge_env_files

PROJECT_ROOT = "/project"
ENV_FILE_NAMES = (".env.local", ".env")


class ProjectFile(BaseModel):
    path: str
    content: str = ""


class ProvisionRequest(BaseModel):
    """What a caller hands over to get a running preview.

    ``install_mode="incremental"`` installs only packages missing from the
    template image, in batches; ``"full"`` runs the full strategy chain.
    """

    files: list[ProjectFile]
    port: int = 3000
    command: str = "npm run dev"
    env: dict[str, str] = Field(default_factory=dict)
    project_root: str = PROJECT_ROOT
    template: str | None = None
    sandbox_timeout: int = 600
    dev_server_timeout: float = 30.0
    poll_interval: float = 1.0
    install_mode: Literal["incremental", "full"] = "incremental"
    batch_size: int = DEFAULT_BATCH_SIZE
    abort_on_write_failure: bool = False
    on_log: Callable[[str], Any] | None = None


class PreviewResult(BaseModel):
    sandbox_id: str
    url: str
    process_id: str
    logs: list[str] = Field(default_factory=list)


class ProvisionLog:
    """Collects every line emitted during provisioning and relays it."""

    def __init__(self, on_log: Callable[[str], Any] | None, log: SandboxLogger) -> None:
        self.on_log = on_log
        self.log = log
        self.lines: list[str] = []

    async def emit(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        self.lines.append(stripped)
        if self.on_log is None:
            return
        try:
            outcome = self.on_log(stripped)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as error:
            self.log.warning("provision.on_log_failed", f"on_log raised: {describe_error(error)}")

    async def step(self, message: str) -> None:
        self.log.info("provision.step", message)
        await self.emit(message)


def relative_path(path: str) -> str:
    """``/package.json``, ``./package.json`` and ``package.json`` are one file."""
    return posixpath.normpath(path.lstrip("/"))


def collect_env(request: ProvisionRequest) -> dict[str, str]:
    """``.env.local`` then ``.env`` from the project, then explicit env."""
    by_path = {relative_path(project_file.path): project_file.content for project_file in request.files}
    env = merge_env_files(by_path, ENV_FILE_NAMES)
    env.update(request.env)
    return env


def build_project_files(request: ProvisionRequest) -> list[FileSpec]:
    """Root every file under the project directory and add missing defaults."""
    root = request.project_root
    relative_paths = {relative_path(project_file.path) for project_file in request.files}
    specs = [
        FileSpec(
            path=posixpath.join(root, relative_path(project_file.path)),
            content=project_file.content,
        )
        for project_file in request.files
    ]
    if "package.json" not in relative_paths:
        specs.append(FileSpec(path=posixpath.join(root, "package.json"), content=default_package_json()))
    if ".npmrc" not in relative_paths:
        specs.append(FileSpec(path=posixpath.join(root, ".npmrc"), content=DEFAULT_NPMRC))
    return specs


def project_manifest(specs: list[FileSpec], root: str) -> DependencyManifest:
    package_path = posixpath.join(root, "package.json")
    content = next(
        (spec.content for spec in reversed(specs) if spec.path == package_path),
        None,
    )
    if content is None:
        return DependencyManifest(needs_full_install=True)
    return DependencyManifest.from_package_json(content)


async def ensure_responsive(sandbox: ManagedSandbox) -> None:
    if not await sandbox.check_health():
        raise SandboxError(
            SandboxErrorKind.CONNECTION_FAILED,
            "Sandbox is not responsive, cannot proceed with dependency installation",
            sandbox_id=sandbox.id,
        )


async def install_project_dependencies(
    sandbox: ManagedSandbox,
    manifest: DependencyManifest,
    request: ProvisionRequest,
    progress: ProvisionLog,
    env: dict[str, str],
) -> None:
    options = InstallOptions(
        env=env,
        on_stdout_line=progress.emit,
        on_stderr_line=progress.emit,
    )
    if request.install_mode == "full" or manifest.needs_full_install:
        await ensure_responsive(sandbox)
        await progress.step("Installing dependencies...")
        await sandbox.install_dependencies(manifest, request.project_root, options)
        await progress.step("Dependencies installed")
        return

    regular, dev = missing_dependencies(manifest)
    if not regular and not dev:
        await progress.step("Using pre-built template - no additional dependencies needed")
        return
    await ensure_responsive(sandbox)
    await progress.step(f"Installing additional dependencies: {', '.join([*regular, *dev])}")
    await sandbox.install_declared(
        manifest,
        request.project_root,
        options,
        batch_size=request.batch_size,
        preinstalled=template_manifest(),
    )
    await progress.step("Additional dependencies installed successfully")


async def provision_preview(
    request: ProvisionRequest,
    *,
    provider: SandboxProvider | None = None,
    logger: SandboxLogger | None = None,
) -> PreviewResult:
    log = resolve_logger(logger, "provision")
    progress = ProvisionLog(request.on_log, log)
    env = collect_env(request)
    sandbox: ManagedSandbox | None = None
    try:
        await progress.step("Booting sandbox...")
        sandbox = await ManagedSandbox.create(
            SandboxConfig(
                template=request.template,
                timeout=request.sandbox_timeout,
                envs=env,
            ),
            provider=provider,
            logger=log,
        )
        await progress.step("Sandbox created")

        await progress.step("Writing files...")
        specs = build_project_files(request)
        report = await sandbox.write_files(specs)
        for failure in report.failures:
            await progress.emit(f"Failed to write {failure.path}: {failure.error}")
        if not report.success and request.abort_on_write_failure:
            raise SandboxError(
                SandboxErrorKind.FILE_OPERATION_FAILED,
                f"Failed to write {report.error_count} of {report.total_files} files",
                sandbox_id=sandbox.id,
            )
        await progress.step(f"Files written ({report.success_count}/{report.total_files})")

        manifest = project_manifest(specs, request.project_root)
        await install_project_dependencies(sandbox, manifest, request, progress, env)

        await progress.step("Starting dev server...")
        server = await sandbox.start_dev_server(
            DevServerOptions(
                command=request.command,
                working_directory=request.project_root,
                port=request.port,
                timeout=request.dev_server_timeout,
                poll_interval=request.poll_interval,
                env=env,
                on_stdout_line=progress.emit,
                on_stderr_line=progress.emit,
            ),
        )
        await progress.step(f"Dev server running at {server.url}")
        return PreviewResult(
            sandbox_id=sandbox.id,
            url=server.url,
            process_id=server.process_id,
            logs=list(progress.lines),
        )
    except SandboxError as error:
        if error.sandbox_id is None and sandbox is not None:
            error.sandbox_id = sandbox.id
        error.logs = [*progress.lines, *error.logs]
        if sandbox is not None:
            await sandbox.terminate()
        raise
    except Exception as error:
        if sandbox is not None:
            await sandbox.terminate()
        raise SandboxError(
            SandboxErrorKind.PROVIDER_ERROR,
            f"Preview provisioning failed: {describe_error(error)}",
            sandbox_id=sandbox.id if sandbox is not None else None,
            cause=error,
            logs=progress.lines,
        ) from error
    except BaseException:
        # Cancelled: tear down before propagating.
        if sandbox is not None:
            await sandbox.terminate()
        raise
