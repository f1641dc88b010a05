"""Tginbox domain model types (parsed mail, attachments, destination accounts)."""

from __future__ import annotations

from dataclasses import dataclass

import msgspec

ChatId = str | int


@dataclass(frozen=True, slots=True)
class Attachment:
    filename: str
    content: bytes


@dataclass(frozen=True, slots=True)
class Message:
    from_: str = ""
    to: str = ""
    subject: str = ""
    body: str = ""
    attachments: tuple[Attachment, ...] = ()

    @classmethod
    def empty(cls) -> Message:
        return cls()


class Account(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    address: str
    telegram_bot_key: str
    telegram_chat_id: ChatId


class SmtpServerConfig(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    hostname: str
    address: str
    port: int
    enabled: bool = True
    starttls: bool = False
    cert_path: str = ""
    key_path: str = ""
    ca_path: str = ""


class DispatchConfig(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    workers: int = 4
    queue_size: int = 100
    timeout_s: float = 30.0


class ConfigFile(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    smtpservers: tuple[SmtpServerConfig, ...]
    accounts: tuple[Account, ...]
    dispatch: DispatchConfig = msgspec.field(default_factory=DispatchConfig)
