from __future__ import annotations

from typing import Any

import anyio
import httpx

from . import __version__
from .dispatch import Dispatcher
from .logging import get_logger
from .model import ConfigFile
from .smtp import build_tls_context, serve_smtp

logger = get_logger(__name__)


def check_tls(config: ConfigFile) -> None:
    for server in config.smtpservers:
        if server.enabled and server.starttls:
            build_tls_context(server)


async def _run_workers(dispatcher: Dispatcher, scope: anyio.CancelScope) -> None:
    with scope:
        await dispatcher.run()
    if scope.cancelled_caught:
        logger.warning("dispatch.drain_timeout", pending=dispatcher.pending)


async def run_inbox(
    config: ConfigFile,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    task_status: Any = anyio.TASK_STATUS_IGNORED,
) -> None:
    """Run every enabled SMTP listener plus the delivery workers until cancelled.

    Reports the bound listener ports through ``task_status``. On shutdown the
    listeners stop first; documents already queued are still delivered for
    up to ``dispatch.timeout_s`` seconds.
    """
    logger.info(
        "tginbox.starting",
        version=__version__,
        accounts=len(config.accounts),
        workers=config.dispatch.workers,
    )
    # fail on bad certificates before anything starts listening
    check_tls(config)
    async with httpx.AsyncClient(
        timeout=config.dispatch.timeout_s, transport=transport
    ) as http:
        dispatcher = Dispatcher.from_config(config.accounts, http, config.dispatch)
        # workers outlive cancellation until the queue is empty or the grace ends
        workers = anyio.CancelScope(shield=True)
        async with anyio.create_task_group() as tg:
            tg.start_soon(_run_workers, dispatcher, workers)
            try:
                async with anyio.create_task_group() as listeners:
                    ports: list[int] = []
                    for server in config.smtpservers:
                        if not server.enabled:
                            logger.info("smtp.disabled", hostname=server.hostname)
                            continue
                        ports.append(
                            await listeners.start(
                                serve_smtp, server, dispatcher.submit
                            )
                        )
                    task_status.started(ports)
            finally:
                dispatcher.close()
                workers.deadline = anyio.current_time() + config.dispatch.timeout_s
                logger.info("dispatch.draining", pending=dispatcher.pending)
