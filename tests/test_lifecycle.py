from __future__ import annotations

import asyncio
import sys
from types import SimpleNamespace

import pytest
from preview_sandbox.errors import SandboxError, SandboxErrorKind
from preview_sandbox.sandbox import ManagedSandbox, SandboxConfig, create_sandbox, reconnect_sandbox
from preview_sandbox.sandbox.capabilities import probe_capabilities
from preview_sandbox.sandbox.e2b import load_async_sandbox, resolve_create_kwargs
from preview_sandbox.sandbox.lifecycle import terminate

from tests.fakes import FakeProvider, FakeSandbox, recording_logger


def test_create_sandbox_exposes_identity_and_capabilities() -> None:
    provider = FakeProvider()
    logger, records = recording_logger()

    sandbox = asyncio.run(
        create_sandbox(
            SandboxConfig(template="vite-react", timeout=900, envs={"A": "1"}),
            provider=provider,
            logger=logger,
        ),
    )

    assert isinstance(sandbox, ManagedSandbox)
    assert sandbox.id == "sbx-1"
    assert sandbox.env == {"A": "1"}
    assert sandbox.capabilities.supports("command")
    assert sandbox.capabilities.supports("file_write")
    assert sandbox.capabilities.missing_required == []
    assert provider.create_kwargs[0]["template"] == "vite-react"
    assert provider.create_kwargs[0]["timeout"] == 900
    assert provider.create_kwargs[0]["envs"] == {"A": "1"}
    assert any(record["event"] == "capabilities.probed" for record in records)


def test_create_failure_is_wrapped() -> None:
    provider = FakeProvider(error=RuntimeError("quota exceeded"))
    logger, _ = recording_logger()

    with pytest.raises(SandboxError) as excinfo:
        asyncio.run(create_sandbox(provider=provider, logger=logger))

    assert excinfo.value.kind is SandboxErrorKind.CREATION_FAILED
    assert isinstance(excinfo.value.cause, RuntimeError)
    assert "quota exceeded" in excinfo.value.message


def test_reconnect_uses_given_id() -> None:
    provider = FakeProvider()
    logger, _ = recording_logger()

    sandbox = asyncio.run(reconnect_sandbox("sbx-existing", provider=provider, logger=logger))

    assert sandbox.id == "sbx-existing"
    assert provider.connected == ["sbx-existing"]


def test_reconnect_failure_is_wrapped() -> None:
    provider = FakeProvider(error=LookupError("sandbox not found"))
    logger, _ = recording_logger()

    with pytest.raises(SandboxError) as excinfo:
        asyncio.run(reconnect_sandbox("sbx-gone", provider=provider, logger=logger))

    assert excinfo.value.kind is SandboxErrorKind.CONNECTION_FAILED
    assert excinfo.value.sandbox_id == "sbx-gone"


def test_teardown_tries_methods_in_order() -> None:
    called: list[str] = []

    async def close() -> None:
        called.append("close")
        raise RuntimeError("already closed")

    def terminate_method() -> None:
        called.append("terminate")

    async def kill() -> None:
        called.append("kill")

    handle = SimpleNamespace(close=close, terminate=terminate_method, kill=kill)
    logger, _ = recording_logger()

    assert asyncio.run(terminate(handle, logger=logger)) is True
    assert called == ["close", "terminate"]


def test_teardown_without_methods_does_not_raise() -> None:
    logger, records = recording_logger()
    assert asyncio.run(terminate(SimpleNamespace(), logger=logger)) is False
    assert any(record["event"] == "sandbox.teardown_unavailable" for record in records)


def test_teardown_gives_up_when_everything_fails() -> None:
    def destroy() -> None:
        raise RuntimeError("nope")

    logger, records = recording_logger()
    assert asyncio.run(terminate(SimpleNamespace(destroy=destroy), logger=logger)) is False
    assert any(record["event"] == "sandbox.teardown_gave_up" for record in records)


def test_managed_terminate_is_idempotent() -> None:
    handle = FakeSandbox()
    logger, _ = recording_logger()
    sandbox = ManagedSandbox(handle, "sbx-test", logger=logger)

    async def scenario() -> None:
        await sandbox.terminate()
        await sandbox.terminate()

    asyncio.run(scenario())

    assert handle.kill_calls == 1
    assert sandbox.terminated
    assert sandbox.info().status == "stopped"


def test_managed_sandbox_as_context_manager() -> None:
    handle = FakeSandbox()
    logger, _ = recording_logger()

    async def scenario() -> None:
        async with ManagedSandbox(handle, "sbx-test", logger=logger) as sandbox:
            result = await sandbox.execute("echo hi")
            assert result.ok

    asyncio.run(scenario())
    assert handle.kill_calls == 1


def test_managed_execute_uses_default_env() -> None:
    handle = FakeSandbox()
    logger, _ = recording_logger()
    sandbox = ManagedSandbox(handle, "sbx-test", env={"TOKEN": "x"}, logger=logger)

    asyncio.run(sandbox.execute("env"))
    asyncio.run(sandbox.execute("env", env={}))

    assert handle.commands.calls[0].envs == {"TOKEN": "x"}
    assert handle.commands.calls[1].envs is None


def test_get_info_falls_back_without_backend_support() -> None:
    logger, _ = recording_logger()
    sandbox = ManagedSandbox(FakeSandbox(), "sbx-test", logger=logger)
    assert asyncio.run(sandbox.get_info()) == {"sandbox_id": "sbx-test", "status": "unknown"}

    def get_info() -> dict[str, str]:
        raise RuntimeError("api down")

    broken = ManagedSandbox(SimpleNamespace(get_info=get_info), "sbx-2", logger=logger)
    info = asyncio.run(broken.get_info())
    assert info["status"] == "error"


def test_capability_report_flags_missing_required_groups() -> None:
    logger, records = recording_logger()
    report = probe_capabilities(SimpleNamespace(run=lambda command: None), logger=logger)

    assert report.available("command") == ("run",)
    assert report.missing_required == ["file_write"]
    assert any(record["event"] == "capabilities.missing" for record in records)


def test_create_kwargs_cap_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("E2B_MAX_SESSION_SECONDS", "300")
    monkeypatch.setenv("E2B_TEMPLATE", "preview-template")
    monkeypatch.setenv("E2B_API_KEY", "e2b_secret")

    kwargs, warnings = resolve_create_kwargs(SandboxConfig(timeout=600))

    assert kwargs["timeout"] == 300
    assert kwargs["template"] == "preview-template"
    assert kwargs["api_key"] == "e2b_secret"
    assert "envs" not in kwargs
    assert len(warnings) == 1
    assert "requested=600s" in warnings[0]


def test_create_kwargs_within_cap(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("E2B_MAX_SESSION_SECONDS", raising=False)
    monkeypatch.delenv("E2B_TEMPLATE", raising=False)
    monkeypatch.delenv("E2B_API_KEY", raising=False)

    kwargs, warnings = resolve_create_kwargs(SandboxConfig(timeout=600))

    assert kwargs == {"timeout": 600}
    assert warnings == []


def test_missing_e2b_package_is_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "e2b_code_interpreter", None)

    with pytest.raises(SandboxError) as excinfo:
        load_async_sandbox()

    assert excinfo.value.kind is SandboxErrorKind.PROVIDER_ERROR
