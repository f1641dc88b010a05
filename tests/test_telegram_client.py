import json

import httpx
import pytest

from tginbox.telegram import DOCUMENT_CONTENT_TYPE, DeliveryError, TelegramClient


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"ok": True, "result": {"message_id": 123}},
        request=request,
    )


@pytest.mark.anyio
async def test_send_message_payload() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return _ok(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        result = await tg.send_message("456", "<b>hi</b>")

    assert result == {"message_id": 123}
    (request,) = captured
    assert str(request.url) == "https://api.telegram.org/bot123:abc/sendMessage"
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.content) == {
        "chat_id": "456",
        "text": "<b>hi</b>",
        "parse_mode": "html",
    }


@pytest.mark.anyio
async def test_send_document_is_two_part_multipart() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return _ok(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        await tg.send_document(-100, "report.pdf", b"%PDF-bytes")

    (request,) = captured
    assert request.url.path.endswith("/sendDocument")
    content_type = request.headers["content-type"]
    assert content_type.startswith("multipart/form-data; boundary=")
    boundary = content_type.split("boundary=", 1)[1].encode()
    body = request.content
    parts = [
        part for part in body.split(b"--" + boundary) if part.strip(b"\r\n-")
    ]
    assert len(parts) == 2
    chat_part, document_part = parts
    assert b'name="chat_id"' in chat_part
    assert chat_part.rstrip(b"\r\n").endswith(b"-100")
    assert b'name="document"; filename="report.pdf"' in document_part
    assert f"Content-Type: {DOCUMENT_CONTENT_TYPE}".encode() in document_part
    assert b"%PDF-bytes" in document_part


@pytest.mark.anyio
async def test_http_error_raises_delivery_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        with pytest.raises(DeliveryError) as exc:
            await tg.send_message(1, "hi")

    assert exc.value.method == "sendMessage"
    assert exc.value.status == 500
    assert exc.value.description == "oops"


@pytest.mark.anyio
async def test_rate_limit_is_not_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(
            429,
            json={
                "ok": False,
                "description": "Too Many Requests: retry after 3",
                "parameters": {"retry_after": 3},
            },
            request=request,
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        with pytest.raises(DeliveryError) as exc:
            await tg.send_message(1, "hi")

    assert len(calls) == 1
    assert exc.value.status == 429
    assert exc.value.retry_after == 3.0


@pytest.mark.anyio
async def test_not_ok_payload_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"ok": False, "description": "chat not found"},
            request=request,
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        with pytest.raises(DeliveryError, match="chat not found"):
            await tg.send_document(1, "a.txt", b"a")


@pytest.mark.anyio
async def test_non_json_response_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>proxy</html>", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        with pytest.raises(DeliveryError, match="invalid payload"):
            await tg.send_message(1, "hi")


@pytest.mark.anyio
async def test_network_error_raises_delivery_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tg = TelegramClient("123:abc", client=client)
        with pytest.raises(DeliveryError, match="ConnectError") as exc:
            await tg.send_message(1, "hi")

    assert exc.value.status is None


def test_empty_token_raises() -> None:
    with pytest.raises(ValueError, match="empty"):
        TelegramClient("")


@pytest.mark.anyio
async def test_close_owned_client() -> None:
    client = TelegramClient("123:abc")
    await client.close()


@pytest.mark.anyio
async def test_close_external_client_leaves_it_open() -> None:
    async with httpx.AsyncClient() as ext:
        client = TelegramClient("123:abc", client=ext)
        await client.close()
        assert not ext.is_closed
