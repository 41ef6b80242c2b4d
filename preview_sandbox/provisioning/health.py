"""Sandbox responsiveness checks."""

from __future__ import annotations

from preview_sandbox.errors import describe_error
from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.sandbox.base import ExecutionRequest, SandboxHandle
from preview_sandbox.sandbox.capabilities import maybe_await, resolve_entry_point
from preview_sandbox.sandbox.executor import execute

HEALTH_TOKEN = "health_check"
HEALTH_TIMEOUT_SECONDS = 10
KEEPALIVE_TOKEN = "keepalive"
KEEPALIVE_TIMEOUT_SECONDS = 5


async def check_health(
    handle: SandboxHandle,
    *,
    env: dict[str, str] | None = None,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> bool:
    """True iff a trivial echo exits 0 and its token comes back on stdout.

    Never raises.
    """
    log = resolve_logger(logger, "health", sandbox_id=sandbox_id)
    try:
        result = await execute(
            handle,
            ExecutionRequest(
                command=f'echo "{HEALTH_TOKEN}"',
                timeout=HEALTH_TIMEOUT_SECONDS,
                env=env or {},
            ),
            sandbox_id=sandbox_id,
            logger=log,
            quiet=True,
        )
    except Exception as error:
        log.warning("health.failed", f"health check failed: {describe_error(error)}")
        return False
    healthy = result.exit_code == 0 and HEALTH_TOKEN in result.stdout
    if not healthy:
        log.warning(
            "health.unhealthy",
            f"health check returned exit={result.exit_code}",
            exit_code=result.exit_code,
        )
    return healthy


async def keep_alive(
    handle: SandboxHandle,
    *,
    env: dict[str, str] | None = None,
    extend_by: int | None = None,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> None:
    """Touch the sandbox so the backend does not reap it as idle.

    With ``extend_by`` set and a handle exposing ``set_timeout``, the
    backend's own timeout is pushed out as well. Errors are logged only.
    """
    log = resolve_logger(logger, "health", sandbox_id=sandbox_id)
    try:
        await execute(
            handle,
            ExecutionRequest(
                command=f'echo "{KEEPALIVE_TOKEN}"',
                timeout=KEEPALIVE_TIMEOUT_SECONDS,
                env=env or {},
            ),
            sandbox_id=sandbox_id,
            logger=log,
            quiet=True,
        )
    except Exception as error:
        log.warning("keepalive.failed", f"keep-alive failed: {describe_error(error)}")

    if extend_by is None:
        return
    set_timeout = resolve_entry_point(handle, ("set_timeout",))
    if set_timeout is None:
        return
    try:
        await maybe_await(set_timeout(extend_by))
    except Exception as error:
        log.warning(
            "keepalive.set_timeout_failed",
            f"set_timeout({extend_by}) failed: {describe_error(error)}",
        )
