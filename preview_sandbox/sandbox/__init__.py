"""Sandbox abstraction layer.

Provides the core types, capability probing, command execution, batch
file writes, lifecycle management, and the create_sandbox() /
reconnect_sandbox() factories returning a ManagedSandbox.
"""

from preview_sandbox.sandbox.base import (
    CommandResult,
    ExecutionRequest,
    FileSpec,
    FileWriteReport,
    FileWriteResult,
    SandboxConfig,
    SandboxHandle,
    SandboxInfo,
)
from preview_sandbox.sandbox.capabilities import CapabilityReport, probe_capabilities
from preview_sandbox.sandbox.executor import BackgroundProcess, execute, start_background
from preview_sandbox.sandbox.files import write_files
from preview_sandbox.sandbox.lifecycle import SandboxProvider, terminate
from preview_sandbox.sandbox.managed import ManagedSandbox
from preview_sandbox.logging import SandboxLogger


async def create_sandbox(
    config: SandboxConfig | None = None,
    *,
    provider: SandboxProvider | None = None,
    logger: SandboxLogger | None = None,
) -> ManagedSandbox:
    """Create a sandbox and probe its capabilities."""
    return await ManagedSandbox.create(config, provider=provider, logger=logger)


async def reconnect_sandbox(
    sandbox_id: str,
    config: SandboxConfig | None = None,
    *,
    provider: SandboxProvider | None = None,
    logger: SandboxLogger | None = None,
) -> ManagedSandbox:
    """Attach to an existing sandbox by id."""
    return await ManagedSandbox.reconnect(
        sandbox_id,
        config,
        provider=provider,
        logger=logger,
    )


__all__ = [
    "BackgroundProcess",
    "CapabilityReport",
    "CommandResult",
    "ExecutionRequest",
    "FileSpec",
    "FileWriteReport",
    "FileWriteResult",
    "ManagedSandbox",
    "SandboxConfig",
    "SandboxHandle",
    "SandboxInfo",
    "create_sandbox",
    "execute",
    "probe_capabilities",
    "reconnect_sandbox",
    "start_background",
    "terminate",
    "write_files",
]
