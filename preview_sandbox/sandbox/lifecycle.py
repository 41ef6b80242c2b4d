"""Sandbox creation, reconnection and teardown at the handle level.

A provider is any object with async ``create(**kwargs)`` and
``connect(sandbox_id, **kwargs)`` class methods returning a handle; E2B's
``AsyncSandbox`` is the default.
"""

from __future__ import annotations

from typing import Any, TypeAlias

from preview_sandbox.errors import SandboxError, SandboxErrorKind, describe_error
from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.sandbox.base import SandboxConfig, SandboxHandle
from preview_sandbox.sandbox.capabilities import (
    TEARDOWN_ENTRY_POINTS,
    entry_point_name,
    maybe_await,
    resolve_entry_point,
    safe_getattr,
)
from preview_sandbox.sandbox.e2b.backend import (
    load_async_sandbox,
    resolve_connect_kwargs,
    resolve_create_kwargs,
)
from preview_sandbox.utils.helpers import redact_secrets

SandboxProvider: TypeAlias = Any


def handle_identity(handle: SandboxHandle, default: str | None = None) -> str:
    for attribute in ("sandbox_id", "id"):
        value = safe_getattr(handle, attribute)
        if isinstance(value, str) and value:
            return value
    return default or "unknown"


async def create_handle(
    config: SandboxConfig,
    *,
    provider: SandboxProvider | None = None,
    logger: SandboxLogger | None = None,
) -> tuple[SandboxHandle, str]:
    """Create a sandbox and return ``(handle, sandbox_id)``.

    Raises ``SandboxError(CREATION_FAILED)`` wrapping any provider error.
    """
    log = resolve_logger(logger, "lifecycle")
    kwargs, warnings = resolve_create_kwargs(config)
    for warning in warnings:
        log.warning("sandbox.config_adjusted", warning)
    if provider is None:
        provider = load_async_sandbox()
    log.info(
        "sandbox.creating",
        f"creating sandbox template={kwargs.get('template', '<provider-default>')}",
        config=redact_secrets(kwargs),
    )
    try:
        handle = await maybe_await(provider.create(**kwargs))
    except Exception as error:
        log.error("sandbox.create_failed", f"sandbox creation failed: {describe_error(error)}")
        raise SandboxError(
            SandboxErrorKind.CREATION_FAILED,
            f"Failed to create sandbox: {describe_error(error)}",
            cause=error,
        ) from error
    if handle is None:
        raise SandboxError(
            SandboxErrorKind.CREATION_FAILED,
            "Sandbox creation returned no handle",
        )
    sandbox_id = handle_identity(handle)
    log.info("sandbox.created", f"sandbox created: id={sandbox_id}", sandbox_id=sandbox_id)
    return handle, sandbox_id


async def reconnect_handle(
    sandbox_id: str,
    config: SandboxConfig | None = None,
    *,
    provider: SandboxProvider | None = None,
    logger: SandboxLogger | None = None,
) -> tuple[SandboxHandle, str]:
    """Attach to a running sandbox by id.

    Raises ``SandboxError(CONNECTION_FAILED)`` wrapping any provider error.
    """
    log = resolve_logger(logger, "lifecycle", sandbox_id=sandbox_id)
    if provider is None:
        provider = load_async_sandbox()
    try:
        handle = await maybe_await(
            provider.connect(sandbox_id, **resolve_connect_kwargs(config)),
        )
    except Exception as error:
        log.error("sandbox.connect_failed", f"reconnect failed: {describe_error(error)}")
        raise SandboxError(
            SandboxErrorKind.CONNECTION_FAILED,
            f"Failed to reconnect to sandbox: {describe_error(error)}",
            sandbox_id=sandbox_id,
            cause=error,
        ) from error
    if handle is None:
        raise SandboxError(
            SandboxErrorKind.CONNECTION_FAILED,
            "Sandbox reconnection returned no handle",
            sandbox_id=sandbox_id,
        )
    log.info("sandbox.reconnected", f"reconnected to sandbox {sandbox_id}")
    return handle, handle_identity(handle, sandbox_id)


async def terminate(
    handle: SandboxHandle,
    *,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> bool:
    """Shut the sandbox down through the first teardown method that works.

    Returns whether one succeeded. Never raises: this runs on cleanup
    paths where an exception would hide the error being handled.
    """
    log = resolve_logger(logger, "lifecycle", sandbox_id=sandbox_id)
    found = False
    for path in TEARDOWN_ENTRY_POINTS:
        method = resolve_entry_point(handle, path)
        if method is None:
            continue
        found = True
        name = entry_point_name(path)
        try:
            await maybe_await(method())
        except Exception as error:
            log.warning(
                "sandbox.teardown_failed",
                f"{name} failed: {describe_error(error)}",
                entry_point=name,
            )
            continue
        log.info("sandbox.terminated", f"sandbox terminated using {name}", entry_point=name)
        return True

    if not found:
        log.warning(
            "sandbox.teardown_unavailable",
            "sandbox has no close/terminate/destroy/kill method, skipping cleanup",
        )
    else:
        log.warning(
            "sandbox.teardown_gave_up",
            "failed to terminate sandbox gracefully, continuing",
        )
    return False
