"""Shared utilities used across preview-sandbox.

Environment-variable resolution, text truncation, secret redaction and
project env-file parsing.
"""

from __future__ import annotations

import io
import os
from typing import Any

from dotenv import dotenv_values

DEFAULT_E2B_DOMAIN = "e2b.app"


# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------


def resolve_positive_int_env(name: str, default: int) -> int:
    raw_value = os.environ.get(name, "").strip()
    if not raw_value:
        return default
    try:
        parsed = int(raw_value)
    except ValueError:
        return default
    if parsed <= 0:
        return default
    return parsed


def resolve_e2b_max_session_seconds() -> int:
    return resolve_positive_int_env("E2B_MAX_SESSION_SECONDS", 3600)


def resolve_e2b_domain() -> str:
    return os.environ.get("E2B_DOMAIN", "").strip() or DEFAULT_E2B_DOMAIN


def resolve_e2b_api_key() -> str | None:
    return os.environ.get("E2B_API_KEY", "").strip() or None


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def truncate_text(text: str, limit: int = 200) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "...[truncated]"


def redact_secrets(value: Any) -> Any:
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, val in value.items():
            if isinstance(key, str) and any(
                token in key.lower()
                for token in ["key", "token", "secret", "password"]
            ):
                redacted[key] = "***" if val else val
            else:
                redacted[key] = redact_secrets(val)
        return redacted
    if isinstance(value, list):
        return [redact_secrets(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Env files
# ---------------------------------------------------------------------------


def parse_env_file(content: str | None) -> dict[str, str]:
    """Parse dotenv-formatted text into a plain mapping.

    Keys without a value (``FOO`` alone on a line) are dropped.
    """
    if not content:
        return {}
    parsed = dotenv_values(stream=io.StringIO(content))
    return {key: value for key, value in parsed.items() if value is not None}


def merge_env_files(files: dict[str, str], names: tuple[str, ...]) -> dict[str, str]:
    """Merge env files found in ``files`` (path -> content); later names win."""
    merged: dict[str, str] = {}
    for name in names:
        content = files.get(name)
        if content is None:
            continue
        merged.update(parse_env_file(content))
    return merged
