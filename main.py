from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import Any

from dotenv import load_dotenv

from bridge_solver.bot_runtime import (
    AppSettings,
    bootstrap_dependencies,
    build_components,
    run_solver_loop,
    setup_logger,
)
from bridge_solver.common import guarded_call, log_event
from bridge_solver.common.errors import ConfigurationError
from bridge_solver.storage import StorageSettings

EXIT_CONFIGURATION_ERROR = 2


async def main() -> int:
    load_dotenv()
    logger = setup_logger()

    stop_event = asyncio.Event()
    try:
        app_settings = AppSettings.from_env()
        storage_settings = StorageSettings.from_env()
        components = build_components(
            logger=logger,
            app_settings=app_settings,
            storage_settings=storage_settings,
            stop_event=stop_event,
        )
    except ConfigurationError as error:
        log_event(
            logger,
            level="critical",
            event="configuration_error",
            message="Solver configuration is invalid; refusing to start",
            error=str(error),
        )
        return EXIT_CONFIGURATION_ERROR

    storage = components.storage
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    async def on_config_update(config: dict[str, Any]) -> None:
        log_event(
            logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config updated",
            items=len(config),
        )

    log_event(
        logger,
        level="info",
        event="solver_starting",
        message="Bridge solver starting",
        **app_settings.summary(),
    )

    try:
        await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            clients=components.clients,
            config_listener_loop=loop,
            on_config_update=on_config_update,
        )
    except RuntimeError as error:
        log_event(logger, level="warning", event="bootstrap_aborted", message=str(error))
        return 0

    await guarded_call(
        lambda: storage.publish_event(
            level="INFO",
            event="bot_started",
            message="Solver process started",
            details=app_settings.summary(),
        ),
        logger=logger,
        event="publish_event_failed",
        message="Failed to publish start event",
    )

    try:
        await run_solver_loop(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            engine=components.engine,
            source=components.source,
            prices=components.prices,
            runtime_defaults=components.runtime_defaults,
        )
    finally:
        await guarded_call(
            lambda: storage.publish_event(
                level="INFO",
                event="bot_stopped",
                message="Solver process stopped gracefully",
            ),
            logger=logger,
            event="publish_event_failed",
            message="Failed to publish stop event",
        )
        await guarded_call(
            lambda: storage.mark_run_stopped(reason="shutdown"),
            logger=logger,
            event="mark_run_stopped_failed",
            message="Failed to mark run as stopped",
        )
        for client in components.clients:
            await guarded_call(
                client.close,
                logger=logger,
                event="client_close_failed",
                message="Failed to close client during shutdown",
                client=type(client).__name__,
            )
        await guarded_call(
            storage.close,
            logger=logger,
            event="storage_close_failed",
            message="Failed to close storage during shutdown",
        )

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
