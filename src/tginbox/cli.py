from __future__ import annotations

from pathlib import Path
from typing import NoReturn

import anyio
import typer

from . import __version__
from .config import ENV_CONFIG_PATH, ConfigError, load_config
from .logging import get_logger, setup_logging
from .model import ConfigFile
from .runtime import check_tls, run_inbox

logger = get_logger(__name__)

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Forward mail received over SMTP to Telegram chats.",
)

_CONFIG_ARGUMENT = typer.Argument(
    ...,
    envvar=ENV_CONFIG_PATH,
    metavar="CONFIG",
    help="Path to the JSON config file.",
    show_default=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _config_errors(exc: BaseException) -> list[ConfigError]:
    if isinstance(exc, ConfigError):
        return [exc]
    if isinstance(exc, BaseExceptionGroup):
        return [err for sub in exc.exceptions for err in _config_errors(sub)]
    return []


def _exit_config_error(errors: list[ConfigError]) -> NoReturn:
    for error in errors:
        typer.echo(f"error: {error}", err=True)
    raise typer.Exit(code=1)


def _load_config_or_exit(path: Path) -> ConfigFile:
    try:
        return load_config(path)
    except ConfigError as e:
        _exit_config_error([e])


@app.callback()
def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Forward mail received over SMTP to Telegram chats."""


@app.command()
def serve(
    config_path: Path = _CONFIG_ARGUMENT,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Log debug output in a human readable format.",
    ),
) -> None:
    """Start the SMTP listeners and deliver incoming mail to Telegram."""
    setup_logging(debug=debug)
    config = _load_config_or_exit(config_path)
    try:
        anyio.run(run_inbox, config, backend="asyncio")
    except KeyboardInterrupt:
        logger.info("tginbox.shutdown")
    except (ConfigError, BaseExceptionGroup) as exc:
        errors = _config_errors(exc)
        if not errors:
            raise
        _exit_config_error(errors)


@app.command()
def check(config_path: Path = _CONFIG_ARGUMENT) -> None:
    """Validate the config file (including TLS files) and exit."""
    config = _load_config_or_exit(config_path)
    try:
        check_tls(config)
    except ConfigError as e:
        _exit_config_error([e])
    enabled = [server for server in config.smtpservers if server.enabled]
    typer.echo(
        f"ok: {len(enabled)} smtp server(s), {len(config.accounts)} account(s)"
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
