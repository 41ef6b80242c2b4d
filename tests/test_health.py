from __future__ import annotations

import asyncio
from types import SimpleNamespace

from preview_sandbox.provisioning.health import HEALTH_TOKEN, check_health, keep_alive

from tests.fakes import FakeSandbox, Outcome, fail, ok, recording_logger


def test_healthy_sandbox_echoes_token() -> None:
    sandbox = FakeSandbox(lambda command: ok(f"{HEALTH_TOKEN}\n"))

    assert asyncio.run(check_health(sandbox)) is True
    call = sandbox.commands.calls[0]
    assert call.command == 'echo "health_check"'
    assert call.timeout == 10


def test_nonzero_exit_or_missing_token_is_unhealthy() -> None:
    assert asyncio.run(check_health(FakeSandbox(lambda command: fail()))) is False
    assert asyncio.run(check_health(FakeSandbox(lambda command: ok("")))) is False


def test_unreachable_sandbox_is_unhealthy_without_raising() -> None:
    def responder(command: str) -> Outcome | Exception:
        return ConnectionError("sandbox not found")

    logger, records = recording_logger()

    assert asyncio.run(check_health(FakeSandbox(responder), logger=logger)) is False
    assert asyncio.run(check_health(SimpleNamespace(), logger=logger)) is False
    assert any(record["event"] == "health.failed" for record in records)


def test_keep_alive_swallows_errors() -> None:
    logger, records = recording_logger()
    asyncio.run(keep_alive(SimpleNamespace(), logger=logger))
    assert any(record["event"] == "keepalive.failed" for record in records)


def test_keep_alive_extends_backend_timeout() -> None:
    extended: list[int] = []

    class ExtendableSandbox(FakeSandbox):
        async def set_timeout(self, seconds: int) -> None:
            extended.append(seconds)

    sandbox = ExtendableSandbox()
    asyncio.run(keep_alive(sandbox, extend_by=900))

    assert extended == [900]
    assert sandbox.commands.calls[0].command == 'echo "keepalive"'
    assert sandbox.commands.calls[0].timeout == 5


def test_keep_alive_without_set_timeout_only_pings() -> None:
    sandbox = FakeSandbox()
    asyncio.run(keep_alive(sandbox, extend_by=900))
    assert len(sandbox.commands.calls) == 1
