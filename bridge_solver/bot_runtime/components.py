from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Union

from bridge_solver.attestation import AttestationFetcher, GuardianApiClient
from bridge_solver.auction import AuctionPricer, EpochClock
from bridge_solver.common.errors import ConfigurationError
from bridge_solver.engine import (
    EngineSettings,
    FulfillmentExecutor,
    HttpPriceFeed,
    PriceReference,
    ProfitabilityGate,
    RuntimeConfig,
    SettlementExecutor,
    SolverEngine,
    StaticPriceReference,
)
from bridge_solver.ledgers import EvmLedger, SuiLedger, SuiSigner
from bridge_solver.orders import OrderSource, OrderSourceSettings
from bridge_solver.storage import InMemoryStorage, StorageGateway, StorageSettings

from .settings import AppSettings

Storage = Union[StorageGateway, InMemoryStorage]


@dataclass(slots=True)
class SolverComponents:
    storage: Storage
    evm: EvmLedger
    sui: SuiLedger
    guardian: GuardianApiClient
    prices: PriceReference
    source: OrderSource
    engine: SolverEngine
    runtime_defaults: RuntimeConfig

    @property
    def clients(self) -> list[Any]:
        return [self.evm, self.sui, self.guardian, self.prices]


def build_storage(storage_settings: StorageSettings, logger: logging.Logger) -> Storage:
    if storage_settings.backend == "memory":
        return InMemoryStorage(logger, run_id=storage_settings.bot_run_id)
    return StorageGateway(storage_settings, logger)


def build_components(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    storage_settings: StorageSettings,
    stop_event: asyncio.Event,
) -> SolverComponents:
    """Wire ledgers, storage and the order pipeline for the configured direction."""
    storage = build_storage(storage_settings, logger)
    runtime_defaults = RuntimeConfig.from_env_defaults()

    evm = EvmLedger(logger=logger, config=app_settings.evm)
    try:
        signer = SuiSigner.from_private_key(app_settings.sui_private_key)
    except ValueError as error:
        raise ConfigurationError(f"Invalid SUI_PRIVATE_KEY: {error}") from error
    sui = SuiLedger(logger=logger, config=app_settings.sui, signer=signer)
    if app_settings.direction == "evm_to_sui":
        source_ledger: EvmLedger | SuiLedger = evm
        destination_ledger: EvmLedger | SuiLedger = sui
    else:
        source_ledger, destination_ledger = sui, evm

    guardian = GuardianApiClient(
        logger=logger,
        api_base_url=app_settings.guardian_api_url,
        request_timeout_seconds=app_settings.evm.request_timeout_seconds,
    )

    static_prices = StaticPriceReference(app_settings.static_prices)
    if app_settings.price_feed_url:
        prices: PriceReference = HttpPriceFeed(
            logger=logger,
            url=app_settings.price_feed_url,
            fallback=static_prices,
            ttl_seconds=app_settings.price_feed_ttl_seconds,
        )
    else:
        prices = static_prices

    pricer = AuctionPricer(EpochClock(app_settings.time_unit), app_settings.time_unit)
    solver_identity = source_ledger.solver_identity()

    fulfillment = FulfillmentExecutor(
        logger=logger,
        destination=destination_ledger,
        store=storage,
        pricer=pricer,
        solver_identity=solver_identity,
        owner=storage.run_id,
        confirm_timeout_seconds=app_settings.fulfillment_confirm_timeout_seconds,
        dry_run=app_settings.dry_run,
        source=source_ledger,
    )
    fetcher = AttestationFetcher(
        logger=logger,
        parser=destination_ledger,
        guardian=guardian,
        parse_policy=app_settings.parse_retry,
        poll_policy=app_settings.attestation_retry,
    )
    settlement = SettlementExecutor(
        logger=logger,
        source=source_ledger,
        pricer=pricer,
        solver_identity=solver_identity,
        retry_policy=app_settings.settlement_retry,
        confirm_timeout_seconds=app_settings.settlement_confirm_timeout_seconds,
    )

    engine = SolverEngine(
        logger=logger,
        store=storage,
        events=storage,
        source=source_ledger,
        destination=destination_ledger,
        pricer=pricer,
        gate=ProfitabilityGate(assets=app_settings.assets),
        prices=prices,
        fulfillment=fulfillment,
        fetcher=fetcher,
        settlement=settlement,
        runtime_config=runtime_defaults,
        stop_event=stop_event,
        settings=EngineSettings(
            open_check_interval_seconds=app_settings.open_check_interval_seconds,
            confirm_timeout_seconds=app_settings.fulfillment_confirm_timeout_seconds,
            recovery_limit=app_settings.recovery_limit,
        ),
    )
    source = OrderSource(
        logger=logger,
        ledger=source_ledger,
        store=storage,
        settings=OrderSourceSettings(
            cursor_name=app_settings.cursor_name,
            poll_interval_seconds=app_settings.poll_interval_seconds,
            poll_retry=app_settings.poll_retry,
            page_limit=app_settings.page_limit,
            subscribe=app_settings.subscribe and bool(app_settings.source_ws_url),
            subscription_idle_timeout_seconds=app_settings.subscription_idle_timeout_seconds,
            subscription_retry_seconds=app_settings.subscription_retry_seconds,
        ),
    )

    return SolverComponents(
        storage=storage,
        evm=evm,
        sui=sui,
        guardian=guardian,
        prices=prices,
        source=source,
        engine=engine,
        runtime_defaults=runtime_defaults,
    )
