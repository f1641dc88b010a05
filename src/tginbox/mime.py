"""Turn a raw MIME document into a :class:`~tginbox.model.Message`.

Headers are read with the modern ``email`` policy (encoded words decoded),
the body is taken from the HTML parts (falling back to plain text parts)
and converted to plain text, and attachments are flattened depth-first,
descending into forwarded ``message/rfc822`` parts.
"""

from __future__ import annotations

import re
from email import policy
from email.errors import MessageError
from email.message import EmailMessage
from email.parser import BytesParser

from bs4 import BeautifulSoup, Comment

from .logging import get_logger
from .model import Attachment, Message

logger = get_logger(__name__)

# Leaves room under Telegram's 4096 character message limit.
MAX_BODY_CHARS = 4086
UNTITLED = "Untitled"

_DROP_TAGS = ("script", "style", "head", "template")
_BLOCK_TAGS = (
    "address",
    "article",
    "aside",
    "blockquote",
    "dd",
    "div",
    "dl",
    "dt",
    "footer",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "header",
    "hr",
    "li",
    "ol",
    "p",
    "pre",
    "section",
    "table",
    "tr",
    "ul",
)
_CELL_TAGS = ("td", "th")
_BLANKS_RE = re.compile(r"[ \t\f\v\xa0]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


class MimeParseError(ValueError):
    pass


def parse_mime(raw: str | bytes) -> EmailMessage:
    data = raw.encode("utf-8", "surrogateescape") if isinstance(raw, str) else raw
    if not data.strip():
        raise MimeParseError("empty document")
    try:
        msg = BytesParser(policy=policy.default).parsebytes(data)
    except (MessageError, LookupError, TypeError, ValueError) as e:
        raise MimeParseError(f"{e.__class__.__name__}: {e}") from e
    if not msg.keys():
        raise MimeParseError("no header block found")
    return msg


def _raw_header(msg: EmailMessage, name: str) -> str | None:
    wanted = name.lower()
    for key, value in msg.raw_items():
        if key.lower() == wanted:
            return value
    return None


def first_header(msg: EmailMessage, name: str) -> str:
    raw = _raw_header(msg, name)
    fallback = " ".join(raw.split()) if raw else ""
    try:
        value = msg.get(name)
        text = "" if value is None else str(value).strip()
    except (AttributeError, IndexError, MessageError, TypeError, ValueError):
        # the structured parser chokes on some malformed addresses, at times
        # with an AttributeError from inside the stdlib; keep what was sent
        return fallback
    # undecodable encoded words parse to nothing
    return text or fallback


def _decode_text(part: EmailMessage) -> str:
    payload = part.get_payload(decode=True) or b""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _text_parts(msg: EmailMessage, subtype: str) -> list[str]:
    wanted = f"text/{subtype}"
    texts: list[str] = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        if part.get_content_type() != wanted:
            continue
        if part.get_content_disposition() == "attachment":
            continue
        texts.append(_decode_text(part))
    return texts


def _normalize_whitespace(text: str) -> str:
    lines = [_BLANKS_RE.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    for tag in soup.find_all(_DROP_TAGS):
        tag.extract()
    for tag in soup.find_all("br"):
        tag.replace_with("\n")
    for tag in soup.find_all(_CELL_TAGS):
        tag.insert_after(" ")
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")
    return _normalize_whitespace(soup.get_text())


def extract_body(msg: EmailMessage) -> str:
    html_parts = _text_parts(msg, "html")
    if html_parts:
        return html_to_text("\n".join(html_parts))
    plain_parts = _text_parts(msg, "plain")
    return "\n".join(plain_parts).replace("\r\n", "\n").strip()


def truncate_body(text: str, limit: int = MAX_BODY_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]


def _collect_attachments(part: EmailMessage, found: list[Attachment]) -> None:
    # multipart containers and message/rfc822 both carry a list payload
    if part.is_multipart():
        for child in part.get_payload():
            _collect_attachments(child, found)
        return
    if part.get_content_disposition() != "attachment":
        return
    found.append(
        Attachment(
            filename=part.get_filename() or UNTITLED,
            content=part.get_payload(decode=True) or b"",
        )
    )


def flatten_attachments(msg: EmailMessage) -> list[Attachment]:
    found: list[Attachment] = []
    _collect_attachments(msg, found)
    return found


def parse_message(raw: str | bytes) -> Message:
    try:
        msg = parse_mime(raw)
    except MimeParseError as e:
        logger.warning("mime.unparseable", error=str(e), size=len(raw))
        return Message.empty()

    message = Message(
        from_=first_header(msg, "From"),
        to=first_header(msg, "To"),
        subject=first_header(msg, "Subject"),
        body=truncate_body(extract_body(msg)),
        attachments=tuple(flatten_attachments(msg)),
    )
    if msg.defects:
        logger.debug(
            "mime.defects",
            defects=[defect.__class__.__name__ for defect in msg.defects],
        )
    return message
