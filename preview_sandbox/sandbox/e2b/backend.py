"""E2B provider glue.

Loads E2B's ``AsyncSandbox`` lazily (``e2b-code-interpreter`` is an
optional dependency) and turns a SandboxConfig into the keyword arguments
``AsyncSandbox.create`` / ``AsyncSandbox.connect`` accept.
"""

from __future__ import annotations

import importlib
import os
from typing import Any

from preview_sandbox.errors import SandboxError, SandboxErrorKind
from preview_sandbox.sandbox.base import SandboxConfig
from preview_sandbox.utils.helpers import (
    resolve_e2b_api_key,
    resolve_e2b_max_session_seconds,
)


def load_async_sandbox() -> Any:
    """Return ``e2b_code_interpreter.AsyncSandbox``."""
    try:
        e2b_module = importlib.import_module("e2b_code_interpreter")
    except ImportError as error:
        raise SandboxError(
            SandboxErrorKind.PROVIDER_ERROR,
            "E2B backend requires optional dependency e2b-code-interpreter. "
            "Install with: pip install preview-sandbox[e2b]",
            cause=error,
        ) from error
    async_sandbox = getattr(e2b_module, "AsyncSandbox", None)
    if async_sandbox is None:
        raise SandboxError(
            SandboxErrorKind.PROVIDER_ERROR,
            "e2b_code_interpreter does not export AsyncSandbox",
        )
    return async_sandbox


def resolve_create_kwargs(config: SandboxConfig) -> tuple[dict[str, Any], list[str]]:
    """Map ``config`` onto ``AsyncSandbox.create`` kwargs.

    The timeout is capped at ``E2B_MAX_SESSION_SECONDS`` (the plan limit);
    the returned warnings describe every adjustment.
    """
    warnings: list[str] = []
    timeout = config.timeout
    timeout_cap = resolve_e2b_max_session_seconds()
    if timeout > timeout_cap:
        warnings.append(
            "reducing sandbox timeout to fit provider cap: "
            f"requested={timeout}s cap={timeout_cap}s applied={timeout_cap}s",
        )
        timeout = timeout_cap

    kwargs: dict[str, Any] = {"timeout": timeout}
    resolved_template = config.template or os.environ.get("E2B_TEMPLATE", "").strip()
    if resolved_template:
        kwargs["template"] = resolved_template
    if config.envs:
        kwargs["envs"] = dict(config.envs)
    if config.metadata:
        kwargs["metadata"] = dict(config.metadata)
    kwargs.update(resolve_connect_kwargs(config))
    return kwargs, warnings


def resolve_connect_kwargs(config: SandboxConfig | None) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    api_key = (config.api_key if config else None) or resolve_e2b_api_key()
    if api_key:
        kwargs["api_key"] = api_key
    if config is not None and config.domain:
        kwargs["domain"] = config.domain
    return kwargs
