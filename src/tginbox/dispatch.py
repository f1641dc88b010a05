from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import anyio
import httpx
from anyio.abc import ObjectReceiveStream

from .logging import get_logger
from .mime import parse_message
from .model import Account, DispatchConfig, Message
from .router import route
from .telegram import DeliveryError, TelegramClient

logger = get_logger(__name__)

NEW_MAIL_ICON = "\U0001f4e8"


def render_text(message: Message) -> str:
    # Fields are inserted verbatim: Telegram reads the text as HTML, so a
    # literal "<" or ">" left in subject or body changes the rendering or
    # gets the message refused. Only the body is capped, so a full-length
    # body plus a long sender or subject can exceed Telegram's 4096
    # characters and the text is refused; attachments are still sent.
    return f"{NEW_MAIL_ICON} {message.from_}\n<b>{message.subject}</b>\n{message.body}"


@dataclass(slots=True)
class DeliveryReport:
    text_sent: bool = False
    documents_sent: list[str] = field(default_factory=list)
    errors: list[DeliveryError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


async def deliver(
    message: Message, account: Account, client: TelegramClient
) -> DeliveryReport:
    """Send the text notification, then every attachment in order.

    Each request stands alone: a failed request is logged and the next one
    is still attempted. Nothing is retried.
    """
    report = DeliveryReport()
    chat_id = account.telegram_chat_id
    try:
        await client.send_message(chat_id, render_text(message), parse_mode="html")
    except DeliveryError as exc:
        report.errors.append(exc)
        logger.error(
            "notify.message_failed",
            chat_id=chat_id,
            status=exc.status,
            retry_after=exc.retry_after,
            error=exc.description,
        )
    else:
        report.text_sent = True

    for index, attachment in enumerate(message.attachments):
        try:
            await client.send_document(chat_id, attachment.filename, attachment.content)
        except DeliveryError as exc:
            report.errors.append(exc)
            logger.error(
                "notify.document_failed",
                chat_id=chat_id,
                index=index,
                filename=attachment.filename,
                status=exc.status,
                retry_after=exc.retry_after,
                error=exc.description,
            )
        else:
            report.documents_sent.append(attachment.filename)
    return report


class Dispatcher:
    """Bounded worker pool turning completed MIME documents into notifications.

    ``submit`` never waits: documents that do not fit in the queue are
    dropped and logged, so an SMTP session is never held up by Telegram.
    """

    def __init__(
        self,
        accounts: Sequence[Account],
        http: httpx.AsyncClient,
        *,
        workers: int = 4,
        queue_size: int = 100,
        client_factory: Callable[[str, httpx.AsyncClient], TelegramClient]
        | None = None,
    ) -> None:
        if not accounts:
            raise ValueError("Dispatcher needs at least one account")
        if workers < 1:
            raise ValueError("Dispatcher needs at least one worker")
        self._accounts = tuple(accounts)
        self._http = http
        self._workers = workers
        self._client_factory = client_factory or (
            lambda token, http: TelegramClient(token, client=http)
        )
        self._clients: dict[str, TelegramClient] = {}
        self._send, self._receive = anyio.create_memory_object_stream[str](
            max_buffer_size=queue_size
        )
        self._closed = False

    @classmethod
    def from_config(
        cls,
        accounts: Sequence[Account],
        http: httpx.AsyncClient,
        config: DispatchConfig,
    ) -> Dispatcher:
        return cls(
            accounts, http, workers=config.workers, queue_size=config.queue_size
        )

    @property
    def pending(self) -> int:
        return self._send.statistics().current_buffer_used

    def submit(self, mime: str) -> bool:
        if self._closed:
            logger.warning("dispatch.closed", size=len(mime))
            return False
        try:
            self._send.send_nowait(mime)
        except anyio.WouldBlock:
            logger.warning("dispatch.queue_full", size=len(mime), pending=self.pending)
            return False
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.warning("dispatch.closed", size=len(mime))
            return False
        return True

    def close(self) -> None:
        self._closed = True
        self._send.close()

    def _client_for(self, account: Account) -> TelegramClient:
        client = self._clients.get(account.telegram_bot_key)
        if client is None:
            client = self._client_factory(account.telegram_bot_key, self._http)
            self._clients[account.telegram_bot_key] = client
        return client

    async def process(self, mime: str) -> DeliveryReport:
        message = parse_message(mime)
        account = route(self._accounts, message.to)
        logger.info(
            "dispatch.delivering",
            sender=message.from_,
            to=message.to,
            account=account.address,
            attachments=len(message.attachments),
        )
        report = await deliver(message, account, self._client_for(account))
        logger.info(
            "dispatch.delivered",
            to=message.to,
            ok=report.ok,
            text_sent=report.text_sent,
            documents=len(report.documents_sent),
            failures=len(report.errors),
        )
        return report

    async def _worker(self, worker_id: int, receive: ObjectReceiveStream[str]) -> None:
        async with receive:
            async for mime in receive:
                try:
                    await self.process(mime)
                except Exception:
                    logger.exception("dispatch.worker_error", worker=worker_id)

    async def run(self) -> None:
        logger.info("dispatch.started", workers=self._workers)
        async with self._receive, anyio.create_task_group() as tg:
            for worker_id in range(self._workers):
                tg.start_soon(self._worker, worker_id, self._receive.clone())
        logger.info("dispatch.stopped")
