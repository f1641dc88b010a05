from collections.abc import Callable

import httpx
import pytest

from tginbox.model import Account
from tests.factories import account


class TelegramRecorder:
    """Fake Bot API endpoint recording every request it receives."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.fail: Callable[[httpx.Request], bool] = lambda request: False

    @property
    def methods(self) -> list[str]:
        return [request.url.path.rsplit("/", 1)[-1] for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail(request):
            return httpx.Response(
                400,
                json={"ok": False, "error_code": 400, "description": "Bad Request"},
                request=request,
            )
        return httpx.Response(
            200,
            json={"ok": True, "result": {"message_id": len(self.requests)}},
            request=request,
        )


@pytest.fixture
def telegram() -> TelegramRecorder:
    return TelegramRecorder()


@pytest.fixture
def http_factory(
    telegram: TelegramRecorder,
) -> Callable[[], httpx.AsyncClient]:
    def _factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(telegram.handler))

    return _factory


@pytest.fixture
def accounts() -> tuple[Account, ...]:
    return (
        account("default@example.com", token="111:AAA", chat_id="1"),
        account("bob@example.com", token="222:BBB", chat_id="2"),
        account("bob@example.com", token="333:CCC", chat_id="3"),
    )


@pytest.fixture
def anyio_backend() -> str:
    # aiosmtpd runs on asyncio
    return "asyncio"
