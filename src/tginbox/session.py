from __future__ import annotations

import enum
from collections.abc import Callable

from .logging import get_logger

logger = get_logger(__name__)

DATA_CHARSET = "utf-8"


class EncodingError(ValueError):
    pass


class SessionState(enum.Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    ACCUMULATING = "accumulating"
    COMPLETED = "completed"


class Verdict(enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class SessionAccumulator:
    """Collects one SMTP connection's callbacks into complete MIME documents.

    One instance per connection. ``submit`` receives every finished document
    and must not block; whatever it does, the mail has already been accepted.
    """

    def __init__(self, submit: Callable[[str], object], *, peer: str = "") -> None:
        self._submit = submit
        self._peer = peer
        self._buffer: list[str] = []
        self.state = SessionState.IDLE

    @property
    def buffered(self) -> str:
        return "".join(self._buffer)

    def on_helo(self, ip: str, domain: str) -> Verdict:
        logger.info("smtp.helo", ip=ip, domain=domain)
        return Verdict.ACCEPT

    def on_mail_from(self, ip: str, domain: str, from_address: str) -> Verdict:
        logger.info("smtp.mail_from", ip=ip, domain=domain, sender=from_address)
        # the envelope sender goes first so it wins over the document's own From
        self._buffer = [f"From: {from_address}\r\n"]
        self.state = SessionState.RECEIVING
        return Verdict.ACCEPT

    def on_data_chunk(self, data: bytes) -> Verdict:
        try:
            text = data.decode(DATA_CHARSET)
        except UnicodeDecodeError as e:
            logger.warning(
                "smtp.data_rejected",
                peer=self._peer,
                size=len(data),
                error=str(e),
            )
            raise EncodingError(
                f"DATA chunk is not valid {DATA_CHARSET} at byte {e.start}"
            ) from e
        self._buffer.append(text)
        self.state = SessionState.ACCUMULATING
        return Verdict.ACCEPT

    def on_data_end(self) -> Verdict:
        mime = "".join(self._buffer)
        self._buffer = []
        self.state = SessionState.COMPLETED
        if mime:
            try:
                self._submit(mime)
            except Exception:
                logger.exception("smtp.submit_failed", peer=self._peer, size=len(mime))
        else:
            logger.warning("smtp.empty_message", peer=self._peer)
        self.state = SessionState.IDLE
        return Verdict.ACCEPT

    def reset(self) -> None:
        self._buffer = []
        self.state = SessionState.IDLE
