"""Capability probing for sandbox handles.

Backend SDKs move methods around between versions (``commands.run`` vs
``process.run``, ``files.write`` vs ``filesystem.write``). Each operation
is therefore described as an ordered tuple of attribute paths; callers walk
the tuple and use the first entry point that exists and does not raise.

``probe_capabilities`` inspects a handle once, when it is acquired, and
records which entry points are present. The report is informational:
executors re-resolve entry points on every call so a transient absence
never disables a group for good.
"""

from __future__ import annotations

import dataclasses
import inspect
from collections.abc import Callable
from typing import Any, TypeAlias

from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.sandbox.base import SandboxHandle

EntryPoint: TypeAlias = tuple[str, ...]

COMMAND_ENTRY_POINTS: tuple[EntryPoint, ...] = (
    ("commands", "run"),
    ("process", "run"),
    ("run",),
)
BACKGROUND_ENTRY_POINTS: tuple[EntryPoint, ...] = (
    ("commands", "start"),
    ("process", "start"),
    ("commands", "run"),
)
FILE_WRITE_ENTRY_POINTS: tuple[EntryPoint, ...] = (
    ("files", "write"),
    ("files", "write_file"),
    ("write",),
    ("write_file",),
    ("filesystem", "write"),
)
TEARDOWN_ENTRY_POINTS: tuple[EntryPoint, ...] = (
    ("close",),
    ("terminate",),
    ("destroy",),
    ("kill",),
)

CAPABILITY_GROUPS: dict[str, tuple[EntryPoint, ...]] = {
    "command": COMMAND_ENTRY_POINTS,
    "background": BACKGROUND_ENTRY_POINTS,
    "file_write": FILE_WRITE_ENTRY_POINTS,
    "teardown": TEARDOWN_ENTRY_POINTS,
    "host": (("get_host",),),
    "info": (("get_info",),),
    "set_timeout": (("set_timeout",),),
}
REQUIRED_GROUPS = ("command", "file_write")


def entry_point_name(path: EntryPoint) -> str:
    return ".".join(path)


def safe_getattr(target: Any, name: str) -> Any:
    try:
        return getattr(target, name, None)
    except Exception:
        return None


def resolve_entry_point(handle: SandboxHandle, path: EntryPoint) -> Callable[..., Any] | None:
    """Walk ``path`` on ``handle``; return the callable or None if absent."""
    target = handle
    for name in path:
        if target is None:
            return None
        target = safe_getattr(target, name)
    if target is None or not callable(target):
        return None
    return target


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclasses.dataclass(frozen=True, slots=True)
class CapabilityReport:
    """Which entry points a handle exposed when it was probed."""

    groups: dict[str, tuple[str, ...]]
    sandbox_domain: str | None = None
    has_connection_config: bool = False

    def supports(self, group: str) -> bool:
        return bool(self.groups.get(group))

    def available(self, group: str) -> tuple[str, ...]:
        return self.groups.get(group, ())

    @property
    def missing_required(self) -> list[str]:
        return [group for group in REQUIRED_GROUPS if not self.supports(group)]

    def to_dict(self) -> dict[str, object]:
        return {
            "groups": {key: list(value) for key, value in self.groups.items()},
            "sandbox_domain": self.sandbox_domain,
            "has_connection_config": self.has_connection_config,
        }


def probe_capabilities(
    handle: SandboxHandle,
    *,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
) -> CapabilityReport:
    log = resolve_logger(logger, "capabilities", sandbox_id=sandbox_id)
    groups: dict[str, tuple[str, ...]] = {}
    for group, entry_points in CAPABILITY_GROUPS.items():
        groups[group] = tuple(
            entry_point_name(path)
            for path in entry_points
            if resolve_entry_point(handle, path) is not None
        )

    domain = safe_getattr(handle, "sandbox_domain")
    report = CapabilityReport(
        groups=groups,
        sandbox_domain=domain if isinstance(domain, str) and domain else None,
        has_connection_config=safe_getattr(handle, "connection_config") is not None,
    )
    summary = " ".join(
        f"{group}={','.join(names) or '-'}" for group, names in groups.items()
    )
    log.info("capabilities.probed", f"capabilities: {summary}", **report.to_dict())
    for group in report.missing_required:
        log.warning(
            "capabilities.missing",
            f"no usable {group} entry point on sandbox handle",
            group=group,
        )
    return report
