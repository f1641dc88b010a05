from __future__ import annotations

import re
from typing import Any

import httpx

from .logging import get_logger
from .model import ChatId

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
DOCUMENT_CONTENT_TYPE = "application/octet-stream"


class DeliveryError(RuntimeError):
    def __init__(
        self,
        method: str,
        description: str,
        *,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(f"{method}: {description}")
        self.method = method
        self.description = description
        self.status = status
        self.retry_after = retry_after


_RETRY_AFTER_RE = re.compile(r"retry after (\d+)", re.IGNORECASE)


def _retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        retry_after = params.get("retry_after")
        if isinstance(retry_after, (int, float)):
            return float(retry_after)
    description = payload.get("description")
    if isinstance(description, str):
        return _retry_after_from_description(description)
    return None


def _retry_after_from_description(description: str) -> float | None:
    match = _RETRY_AFTER_RE.search(description)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _payload_description(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        description = payload.get("description")
        if isinstance(description, str) and description:
            return description
    return fallback


class TelegramClient:
    """Bot API client for one bot token.

    Several clients may share one ``httpx.AsyncClient`` (and its connection
    pool); only a client that created its own pool closes it.
    """

    def __init__(
        self,
        token: str,
        timeout_s: float = 30,
        client: httpx.AsyncClient | None = None,
        base_url: str = TELEGRAM_API_BASE,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"{base_url}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(
        self,
        method: str,
        *,
        json_data: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Any:
        logger.debug("telegram.request", method=method, payload=json_data or data)
        try:
            resp = await self._client.post(
                f"{self._base}/{method}", json=json_data, data=data, files=files
            )
        except httpx.HTTPError as e:
            raise DeliveryError(
                method, f"{e.__class__.__name__}: {e}"
            ) from e

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.is_error:
            retry_after = None
            if isinstance(payload, dict):
                retry_after = _retry_after_from_payload(payload)
            if retry_after is None and resp.status_code == 429:
                retry_after = _retry_after_from_description(resp.text)
            raise DeliveryError(
                method,
                _payload_description(payload, resp.text or resp.reason_phrase),
                status=resp.status_code,
                retry_after=retry_after,
            )

        if not isinstance(payload, dict):
            raise DeliveryError(
                method, f"invalid payload: {resp.text!r}", status=resp.status_code
            )

        if not payload.get("ok"):
            raise DeliveryError(
                method,
                _payload_description(payload, "request not ok"),
                status=resp.status_code,
                retry_after=_retry_after_from_payload(payload),
            )

        logger.debug("telegram.response", method=method, payload=payload)
        return payload.get("result")

    async def send_message(
        self,
        chat_id: ChatId,
        text: str,
        parse_mode: str | None = "html",
    ) -> dict | None:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
        }
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        return await self._post("sendMessage", json_data=params)

    async def send_document(
        self,
        chat_id: ChatId,
        filename: str,
        content: bytes,
    ) -> dict | None:
        return await self._post(
            "sendDocument",
            data={"chat_id": str(chat_id)},
            files={"document": (filename, content, DOCUMENT_CONTENT_TYPE)},
        )
