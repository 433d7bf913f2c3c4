from __future__ import annotations

import asyncio
import logging
from typing import Any, TYPE_CHECKING

from bridge_solver.common import guarded_call, log_event, wait_with_stop
from bridge_solver.engine import PriceReference, RuntimeConfig, SolverEngine
from bridge_solver.orders import OrderSource

if TYPE_CHECKING:
    from bridge_solver.storage import ConfigUpdateHandler

    from .components import Storage
    from .settings import AppSettings


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: Storage,
    clients: list[Any],
    config_listener_loop: asyncio.AbstractEventLoop,
    on_config_update: ConfigUpdateHandler,
) -> None:
    """Connect storage and every network client, retrying until success or shutdown."""
    while not stop_event.is_set():
        try:
            await storage.connect()
            storage.start_config_listener(config_listener_loop, on_update=on_config_update)
            for client in clients:
                await client.connect()
            for client in clients:
                healthcheck = getattr(client, "healthcheck", None)
                if callable(healthcheck):
                    await healthcheck()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            for client in clients:
                await guarded_call(
                    client.close,
                    logger=logger,
                    event="bootstrap_client_close_failed",
                    message="Failed to close client during bootstrap retry",
                    client=type(client).__name__,
                )
            await guarded_call(
                storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def run_order_intake(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    source: OrderSource,
    engine: SolverEngine,
    include_backlog: bool,
) -> None:
    if include_backlog:
        async for order in source.backlog(stop_event):
            await engine.submit(order)

    log_event(
        logger,
        level="info",
        event="order_intake_live",
        message="Watching for new orders",
        cursor=source.cursor,
    )
    async for order in source.stream(stop_event):
        await engine.submit(order)


async def refresh_runtime_state(
    *,
    logger: logging.Logger,
    storage: Storage,
    engine: SolverEngine,
    prices: PriceReference,
    runtime_defaults: RuntimeConfig,
) -> RuntimeConfig:
    redis_config = await storage.get_runtime_config()
    runtime_config = RuntimeConfig.from_redis(redis_config, runtime_defaults)
    if runtime_config != engine.runtime_config:
        engine.update_runtime_config(runtime_config)
        log_event(
            logger,
            level="info",
            event="runtime_config_applied",
            message="Runtime config applied to the engine",
            **runtime_config.to_dict(),
        )
    await prices.refresh()
    return runtime_config


async def try_resume_order_intake(
    *,
    logger: logging.Logger,
    storage: Storage,
    engine: SolverEngine,
    pause_reason: str,
) -> bool:
    try:
        await storage.healthcheck()
        await engine.healthcheck()
        log_event(
            logger,
            level="info",
            event="order_intake_recovered",
            message="Order intake resumed after dependency recovery",
            reason=pause_reason,
        )
        return True
    except Exception as error:
        log_event(
            logger,
            level="warning",
            event="order_intake_still_paused",
            message="Order intake remains paused",
            reason=pause_reason,
            error=str(error),
        )
        return False


async def run_solver_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: Storage,
    engine: SolverEngine,
    source: OrderSource,
    prices: PriceReference,
    runtime_defaults: RuntimeConfig,
) -> None:
    recovered = await engine.recover()
    log_event(
        logger,
        level="info",
        event="recovery_completed",
        message="Order cache recovery completed",
        resumed=recovered,
    )

    def start_intake(include_backlog: bool) -> asyncio.Task[None]:
        return asyncio.create_task(
            run_order_intake(
                logger=logger,
                stop_event=stop_event,
                source=source,
                engine=engine,
                include_backlog=include_backlog,
            ),
            name="order-intake",
        )

    intake = start_intake(include_backlog=True)
    order_intake_paused = False
    pause_reason = ""

    loop = asyncio.get_running_loop()
    next_tick = loop.time()

    try:
        while not stop_event.is_set():
            try:
                if intake.done() and not stop_event.is_set():
                    if not order_intake_paused:
                        error = None if intake.cancelled() else intake.exception()
                        pause_reason = str(error) if error else "order intake ended"
                        order_intake_paused = True
                        log_event(
                            logger,
                            level="error",
                            event="order_intake_paused",
                            message="Order intake stopped and has been paused",
                            error=pause_reason,
                        )
                        await guarded_call(
                            lambda: storage.publish_event(
                                level="ERROR",
                                event="order_intake_paused",
                                message="Order intake paused due to dependency or runtime error",
                                details={"error": pause_reason, "direction": app_settings.direction},
                            ),
                            logger=logger,
                            event="order_intake_publish_failed",
                            message="Failed to publish intake pause",
                        )
                    elif await try_resume_order_intake(
                        logger=logger,
                        storage=storage,
                        engine=engine,
                        pause_reason=pause_reason,
                    ):
                        order_intake_paused = False
                        pause_reason = ""
                        intake = start_intake(include_backlog=False)
                        await guarded_call(
                            lambda: storage.publish_event(
                                level="INFO",
                                event="order_intake_resumed",
                                message="Order intake resumed after successful recovery",
                                details={"direction": app_settings.direction},
                            ),
                            logger=logger,
                            event="order_intake_publish_failed",
                            message="Failed to publish intake resume",
                        )

                await refresh_runtime_state(
                    logger=logger,
                    storage=storage,
                    engine=engine,
                    prices=prices,
                    runtime_defaults=runtime_defaults,
                )
                await storage.update_heartbeat()
                await storage.record_status(
                    {
                        "direction": app_settings.direction,
                        "intake": "paused" if order_intake_paused else source.mode,
                        "cursor": source.cursor or "",
                        "active_orders": len(engine.active_order_ids),
                        "trade_enabled": engine.runtime_config.trade_enabled,
                        "dry_run": app_settings.dry_run,
                    }
                )
            except Exception as error:
                log_event(
                    logger,
                    level="exception",
                    event="main_loop_error",
                    message="Runtime tick failed",
                    error=str(error),
                )
            finally:
                next_tick += app_settings.tick_interval_seconds
                now = loop.time()
                if next_tick <= now:
                    missed_cycles = int((now - next_tick) / app_settings.tick_interval_seconds) + 1
                    next_tick += missed_cycles * app_settings.tick_interval_seconds

                delay_seconds = max(0.0, next_tick - now)
                if order_intake_paused:
                    delay_seconds = max(delay_seconds, app_settings.error_backoff_seconds)
                await wait_with_stop(stop_event, delay_seconds)
    finally:
        intake.cancel()
        await asyncio.gather(intake, return_exceptions=True)
        await engine.shutdown(grace_seconds=app_settings.shutdown_grace_seconds)
