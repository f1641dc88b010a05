from functools import partial

import aiosmtplib
import anyio
import httpx
import pytest

from tginbox.model import ConfigFile, DispatchConfig, SmtpServerConfig
from tginbox.runtime import run_inbox
from tests.factories import plain_mail, to_wire


def _config(accounts, *, timeout_s: float = 30.0) -> ConfigFile:
    return ConfigFile(
        smtpservers=(
            SmtpServerConfig(hostname="mx.example.test", address="127.0.0.1", port=0),
            SmtpServerConfig(
                hostname="off.example.test",
                address="127.0.0.1",
                port=0,
                enabled=False,
            ),
        ),
        accounts=accounts,
        dispatch=DispatchConfig(timeout_s=timeout_s),
    )


class SlowTelegram:
    """Bot API stand-in that takes a while to answer."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.answered: list[str] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        await anyio.sleep(self.delay)
        self.answered.append(request.url.path.rsplit("/", 1)[-1])
        return httpx.Response(
            200, json={"ok": True, "result": {"message_id": 1}}, request=request
        )


async def _send_then_stop(config: ConfigFile, telegram: SlowTelegram) -> list[int]:
    async with anyio.create_task_group() as tg:
        ports = await tg.start(
            partial(
                run_inbox, config, transport=httpx.MockTransport(telegram.handler)
            )
        )
        await aiosmtplib.send(
            to_wire(plain_mail()),
            hostname="127.0.0.1",
            port=ports[0],
            sender="alice@example.com",
            recipients=["bob@example.com"],
            start_tls=False,
        )
        tg.cancel_scope.cancel()
    return ports


@pytest.mark.anyio
async def test_only_enabled_servers_listen(accounts) -> None:
    telegram = SlowTelegram(delay=0)

    with anyio.fail_after(10):
        ports = await _send_then_stop(_config(accounts), telegram)

    assert len(ports) == 1


@pytest.mark.anyio
async def test_queued_mail_is_delivered_on_shutdown(accounts) -> None:
    telegram = SlowTelegram(delay=0.3)

    with anyio.fail_after(10):
        await _send_then_stop(_config(accounts), telegram)

    assert telegram.answered == ["sendMessage"]


@pytest.mark.anyio
async def test_shutdown_drain_is_bounded(accounts) -> None:
    telegram = SlowTelegram(delay=5)

    with anyio.fail_after(3):
        await _send_then_stop(_config(accounts, timeout_s=0.2), telegram)

    assert telegram.answered == []
