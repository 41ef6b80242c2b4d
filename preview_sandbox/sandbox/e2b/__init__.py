from preview_sandbox.sandbox.e2b.backend import (
    load_async_sandbox,
    resolve_connect_kwargs,
    resolve_create_kwargs,
)

__all__ = ["load_async_sandbox", "resolve_connect_kwargs", "resolve_create_kwargs"]
