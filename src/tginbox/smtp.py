from __future__ import annotations

import asyncio
import ssl
from collections.abc import Callable
from typing import Any

import anyio
from aiosmtpd.smtp import SMTP, Envelope, Session

from .config import ConfigError
from .logging import get_logger
from .model import SmtpServerConfig
from .session import EncodingError, SessionAccumulator, Verdict

logger = get_logger(__name__)

Submit = Callable[[str], object]


def _peer_ip(session: Session) -> str:
    peer = session.peer
    if not peer:
        return ""
    if isinstance(peer, (tuple, list)):
        return str(peer[0])
    return str(peer)


class InboxHandler:
    """aiosmtpd handler for a single connection.

    A new handler (and accumulator) is built for every connection, so no
    state leaks between SMTP sessions.
    """

    def __init__(self, submit: Submit) -> None:
        self._submit = submit
        self._accumulator: SessionAccumulator | None = None

    def accumulator(self, session: Session) -> SessionAccumulator:
        if self._accumulator is None:
            self._accumulator = SessionAccumulator(
                self._submit, peer=_peer_ip(session)
            )
        return self._accumulator

    async def handle_HELO(
        self, server: SMTP, session: Session, envelope: Envelope, hostname: str
    ) -> str:
        self.accumulator(session).on_helo(_peer_ip(session), hostname)
        session.host_name = hostname
        return f"250 {server.hostname}"

    async def handle_EHLO(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
        hostname: str,
        responses: list[str],
    ) -> list[str]:
        self.accumulator(session).on_helo(_peer_ip(session), hostname)
        session.host_name = hostname
        return responses

    async def handle_MAIL(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
        address: str,
        mail_options: list[str],
    ) -> str:
        verdict = self.accumulator(session).on_mail_from(
            _peer_ip(session), session.host_name or "", address
        )
        if verdict is not Verdict.ACCEPT:
            return "550 5.7.1 Sender rejected"
        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)
        return "250 OK"

    async def handle_RSET(
        self, server: SMTP, session: Session, envelope: Envelope
    ) -> str:
        self.accumulator(session).reset()
        return "250 OK"

    async def handle_DATA(
        self, server: SMTP, session: Session, envelope: Envelope
    ) -> str:
        accumulator = self.accumulator(session)
        try:
            accumulator.on_data_chunk(envelope.original_content or b"")
        except EncodingError:
            accumulator.reset()
            return "554 5.6.0 Message content is not valid UTF-8"
        accumulator.on_data_end()
        return "250 Message accepted for delivery"


def build_tls_context(server: SmtpServerConfig) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(server.cert_path, server.key_path)
        if server.ca_path:
            context.load_verify_locations(cafile=server.ca_path)
    except OSError as e:
        raise ConfigError(
            f"Failed to load TLS files for smtp server {server.hostname}: {e}"
        ) from e
    return context


def smtp_factory(
    server: SmtpServerConfig,
    submit: Submit,
    tls_context: ssl.SSLContext | None = None,
) -> Callable[[], SMTP]:
    def factory() -> SMTP:
        return SMTP(
            InboxHandler(submit),
            hostname=server.hostname,
            tls_context=tls_context,
            require_starttls=tls_context is not None,
            enable_SMTPUTF8=True,
        )

    return factory


async def serve_smtp(
    server: SmtpServerConfig,
    submit: Submit,
    *,
    task_status: Any = anyio.TASK_STATUS_IGNORED,
) -> None:
    """Listen for mail on ``server.address:server.port`` until cancelled.

    Reports the bound port through ``task_status`` (useful with port 0).
    """
    tls_context = build_tls_context(server) if server.starttls else None
    loop = asyncio.get_running_loop()
    try:
        listener = await loop.create_server(
            smtp_factory(server, submit, tls_context),
            host=server.address,
            port=server.port,
        )
    except OSError as e:
        raise ConfigError(
            f"Cannot listen on {server.address}:{server.port} "
            f"for smtp server {server.hostname}: {e}"
        ) from e
    port = listener.sockets[0].getsockname()[1]
    logger.info(
        "smtp.listening",
        hostname=server.hostname,
        address=server.address,
        port=port,
        starttls=server.starttls,
    )
    task_status.started(port)
    try:
        await anyio.sleep_forever()
    finally:
        # open connections finish on their own; only stop accepting new ones
        listener.close()
        logger.info("smtp.stopped", hostname=server.hostname, port=port)
