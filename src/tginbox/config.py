from __future__ import annotations

from pathlib import Path

import msgspec

from .model import ConfigFile

# Environment variable consulted by the CLI when no config path is given
ENV_CONFIG_PATH = "TGINBOX_CONFIG"


class ConfigError(RuntimeError):
    pass


def _read_config(cfg_path: Path) -> bytes:
    try:
        return cfg_path.read_bytes()
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e


def parse_config(raw: bytes | str, cfg_path: Path) -> ConfigFile:
    try:
        config = msgspec.json.decode(raw, type=ConfigFile)
    except msgspec.ValidationError as e:
        raise ConfigError(f"Invalid config in {cfg_path}: {e}") from None
    except msgspec.DecodeError as e:
        raise ConfigError(f"Malformed JSON in {cfg_path}: {e}") from None
    validate_config(config, cfg_path)
    return config


def validate_config(config: ConfigFile, cfg_path: Path) -> None:
    if not config.accounts:
        raise ConfigError(
            f"No accounts configured in {cfg_path}; at least one is required."
        )
    for index, account in enumerate(config.accounts):
        if not account.telegram_bot_key.strip():
            raise ConfigError(
                f"Invalid `accounts[{index}].telegram_bot_key` in {cfg_path}; "
                "expected a non-empty string."
            )
        if isinstance(account.telegram_chat_id, str) and not (
            account.telegram_chat_id.strip()
        ):
            raise ConfigError(
                f"Invalid `accounts[{index}].telegram_chat_id` in {cfg_path}; "
                "expected a non-empty value."
            )

    if not any(server.enabled for server in config.smtpservers):
        raise ConfigError(f"No enabled smtp server in {cfg_path}.")
    for index, server in enumerate(config.smtpservers):
        if not 0 < server.port < 65536:
            raise ConfigError(
                f"Invalid `smtpservers[{index}].port` in {cfg_path}; "
                "expected 1-65535."
            )
        if server.starttls and not (server.cert_path and server.key_path):
            raise ConfigError(
                f"`smtpservers[{index}]` in {cfg_path} enables starttls "
                "but `cert_path` or `key_path` is empty."
            )

    dispatch = config.dispatch
    if dispatch.workers < 1:
        raise ConfigError(f"Invalid `dispatch.workers` in {cfg_path}; expected >= 1.")
    if dispatch.queue_size < 1:
        raise ConfigError(
            f"Invalid `dispatch.queue_size` in {cfg_path}; expected >= 1."
        )
    if dispatch.timeout_s <= 0:
        raise ConfigError(
            f"Invalid `dispatch.timeout_s` in {cfg_path}; expected > 0."
        )


def load_config(path: str | Path) -> ConfigFile:
    cfg_path = Path(path).expanduser()
    return parse_config(_read_config(cfg_path), cfg_path)
