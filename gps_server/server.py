from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from zoneinfo import ZoneInfo

from gps_server.config import Settings, load_settings
from gps_server.http_api import QueryApi
from gps_server.rawlog import RawTextLog
from gps_server.repository import Repository
from gps_server.session import PersistenceWorker, ServerState, handle_device_client


LOGGER = logging.getLogger("gps_server")


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _addresses(server: asyncio.AbstractServer) -> str:
    return ", ".join(str(sock.getsockname()) for sock in server.sockets or [])


async def run(settings: Settings | None = None) -> None:
    settings = settings or load_settings()
    _configure_logging(settings)
    state = ServerState()

    repository = Repository(db_path=settings.db_path)
    repository.ping()
    LOGGER.info("database ready path=%s", settings.db_path)

    raw_log = RawTextLog(settings.log_file, ZoneInfo(settings.log_timezone))
    raw_log.open()
    worker = PersistenceWorker(
        repository=repository,
        raw_log=raw_log,
        metrics=state.metrics,
        queue_size=settings.queue_size,
    )
    worker.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        device_server = await asyncio.start_server(
            lambda r, w: handle_device_client(r, w, settings, state, worker),
            host=settings.bind_host,
            port=settings.tcp_port,
        )
        servers = [device_server]
        LOGGER.info("device TCP server listening on %s", _addresses(device_server))

        if settings.http_enabled:
            query_api = QueryApi(
                repository=repository,
                worker=worker,
                metrics_provider=state.snapshot,
            )
            http_server = await asyncio.start_server(
                query_api.handle_client,
                host=settings.bind_host,
                port=settings.http_port,
            )
            servers.append(http_server)
            LOGGER.info("HTTP API listening on %s", _addresses(http_server))

        async with contextlib.AsyncExitStack() as stack:
            for server in servers:
                await stack.enter_async_context(server)
            await stop_event.wait()
            LOGGER.info("shutdown signal received")
    finally:
        await worker.stop()
        with contextlib.suppress(OSError):
            raw_log.close()
        repository.close()
        LOGGER.info("servers closed")
