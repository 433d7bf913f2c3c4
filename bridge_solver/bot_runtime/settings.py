from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from bridge_solver.auction import TimeUnit
from bridge_solver.common import RetryPolicy
from bridge_solver.common.errors import ConfigurationError
from bridge_solver.engine import AssetPair, parse_price_table
from bridge_solver.ledgers import EvmLedgerConfig, SuiLedgerConfig

DIRECTIONS = ("evm_to_sui", "sui_to_evm")

DEFAULT_EVM_RPC_URL = "https://sepolia.base.org"
DEFAULT_SUI_RPC_URL = "https://fullnode.testnet.sui.io:443"
DEFAULT_GUARDIAN_API_URL = "https://api.testnet.wormholescan.io"
SUI_WORMHOLE_CHAIN_ID = 21
BASE_SEPOLIA_WORMHOLE_CHAIN_ID = 10004


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def _env(*names: str, default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return default


def _required(missing: list[str], *names: str) -> str:
    value = _env(*names)
    if not value:
        missing.append(names[0])
    return value


@dataclass(slots=True, frozen=True)
class AppSettings:
    direction: str
    time_unit: TimeUnit
    dry_run: bool
    guardian_api_url: str
    evm: EvmLedgerConfig
    sui: SuiLedgerConfig
    sui_private_key: str
    assets: AssetPair
    static_prices: dict[str, Decimal]
    price_feed_url: str
    price_feed_ttl_seconds: float
    tick_interval_seconds: float
    error_backoff_seconds: float
    shutdown_grace_seconds: float
    fulfillment_confirm_timeout_seconds: float
    settlement_confirm_timeout_seconds: float
    poll_interval_seconds: float
    page_limit: int
    subscribe: bool
    subscription_idle_timeout_seconds: float
    subscription_retry_seconds: float
    open_check_interval_seconds: float
    recovery_limit: int
    poll_retry: RetryPolicy
    parse_retry: RetryPolicy
    attestation_retry: RetryPolicy
    settlement_retry: RetryPolicy

    @property
    def cursor_name(self) -> str:
        return self.direction

    @property
    def source_ws_url(self) -> str:
        return self.evm.ws_url if self.direction == "evm_to_sui" else self.sui.ws_url

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Read settings from the environment; missing identifiers raise ``ConfigurationError``."""
        missing: list[str] = []

        direction = _required(missing, "SOLVER_DIRECTION").lower()
        raw_unit = _required(missing, "AUCTION_TIME_UNIT")
        vault_address = _required(missing, "EVM_INTENT_VAULT_ADDRESS")
        solver_address = _required(missing, "EVM_SOLVER_ADDRESS")
        wormhole_address = _env("EVM_WORMHOLE_ADDRESS")
        sui_private_key = _required(missing, "SUI_PRIVATE_KEY", "PRIVATE_KEY_SUI")
        package_id = _required(missing, "SUI_PACKAGE_ID")
        solver_state_id = _required(missing, "SOLVER_STATE_ID")
        solver_config_id = _required(missing, "SOLVER_CONFIG_ID")
        wormhole_state_id = _required(missing, "WORMHOLE_STATE_ID")

        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        if direction not in DIRECTIONS:
            raise ConfigurationError(f"SOLVER_DIRECTION must be one of {', '.join(DIRECTIONS)}, got {direction!r}")
        try:
            time_unit = TimeUnit.parse(raw_unit)
        except ValueError as error:
            raise ConfigurationError(str(error)) from error

        request_timeout_seconds = max(1.0, to_float(os.getenv("RPC_REQUEST_TIMEOUT_SECONDS"), 15.0))
        confirm_poll_interval_seconds = max(0.25, to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 2.0))
        page_limit = max(1, to_int(os.getenv("ORDER_PAGE_LIMIT"), 50))

        evm = EvmLedgerConfig(
            rpc_url=_env("EVM_RPC_URL", "EVM_RPC", default=DEFAULT_EVM_RPC_URL),
            ws_url=_env("EVM_WS_URL"),
            vault_address=vault_address,
            solver_address=solver_address,
            wormhole_address=wormhole_address,
            wormhole_chain_id=to_int(os.getenv("EVM_WORMHOLE_CHAIN_ID"), BASE_SEPOLIA_WORMHOLE_CHAIN_ID),
            start_block=max(0, to_int(os.getenv("EVM_START_BLOCK"), 0)),
            log_block_range=max(1, to_int(os.getenv("EVM_LOG_BLOCK_RANGE"), 2_000)),
            confirmations=max(0, to_int(os.getenv("EVM_CONFIRMATIONS"), 1)),
            gas_reserve_wei=max(0, to_int(os.getenv("EVM_GAS_RESERVE_WEI"), 2_000_000_000_000_000)),
            confirm_poll_interval_seconds=confirm_poll_interval_seconds,
            request_timeout_seconds=request_timeout_seconds,
        )
        sui = SuiLedgerConfig(
            rpc_url=_env("SUI_RPC_URL", "SUI_RPC", default=DEFAULT_SUI_RPC_URL),
            ws_url=_env("SUI_WS_URL"),
            package_id=package_id,
            solver_state_id=solver_state_id,
            solver_config_id=solver_config_id,
            wormhole_state_id=wormhole_state_id,
            emitter_address=_env("SUI_EMITTER_ADDRESS"),
            wormhole_chain_id=to_int(os.getenv("SUI_WORMHOLE_CHAIN_ID"), SUI_WORMHOLE_CHAIN_ID),
            gas_budget=max(1, to_int(os.getenv("SUI_GAS_BUDGET"), 50_000_000)),
            page_limit=page_limit,
            confirm_poll_interval_seconds=confirm_poll_interval_seconds,
            request_timeout_seconds=request_timeout_seconds,
        )

        try:
            assets = AssetPair.from_env(direction=direction)
        except ValueError as error:
            raise ConfigurationError(f"Invalid asset decimals: {error}") from error

        static_prices = parse_price_table(_env("STATIC_PRICES", default="USDC=1,SUI=1,ETH=2000"))
        attestation_timeout = max(1.0, to_float(os.getenv("ATTESTATION_TIMEOUT_SECONDS"), 600.0))

        return cls(
            direction=direction,
            time_unit=time_unit,
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            guardian_api_url=_env("GUARDIAN_API_URL", default=DEFAULT_GUARDIAN_API_URL),
            evm=evm,
            sui=sui,
            sui_private_key=sui_private_key,
            assets=assets,
            static_prices=static_prices,
            price_feed_url=_env("PRICE_FEED_URL"),
            price_feed_ttl_seconds=max(1.0, to_float(os.getenv("PRICE_FEED_TTL_SECONDS"), 30.0)),
            tick_interval_seconds=max(0.5, to_float(os.getenv("TICK_INTERVAL_SECONDS"), 5.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 5.0)),
            shutdown_grace_seconds=max(0.0, to_float(os.getenv("SHUTDOWN_GRACE_SECONDS"), 20.0)),
            fulfillment_confirm_timeout_seconds=max(
                5.0,
                to_float(os.getenv("FULFILLMENT_CONFIRM_TIMEOUT_SECONDS"), 120.0),
            ),
            settlement_confirm_timeout_seconds=max(
                5.0,
                to_float(os.getenv("SETTLEMENT_CONFIRM_TIMEOUT_SECONDS"), 120.0),
            ),
            poll_interval_seconds=max(0.5, to_float(os.getenv("ORDER_POLL_INTERVAL_SECONDS"), 5.0)),
            page_limit=page_limit,
            subscribe=to_bool(os.getenv("ORDER_SUBSCRIBE"), True),
            subscription_idle_timeout_seconds=max(
                5.0,
                to_float(os.getenv("SUBSCRIPTION_IDLE_TIMEOUT_SECONDS"), 120.0),
            ),
            subscription_retry_seconds=max(1.0, to_float(os.getenv("SUBSCRIPTION_RETRY_SECONDS"), 60.0)),
            open_check_interval_seconds=max(1.0, to_float(os.getenv("OPEN_CHECK_INTERVAL_SECONDS"), 60.0)),
            recovery_limit=max(1, to_int(os.getenv("RECOVERY_LIMIT"), 500)),
            poll_retry=RetryPolicy.from_env(
                "ORDER_POLL_RETRY",
                defaults=RetryPolicy.fixed(delay_seconds=5.0, max_attempts=5),
            ),
            parse_retry=RetryPolicy.from_env(
                "PARSE",
                defaults=RetryPolicy.fixed(delay_seconds=3.0, max_attempts=3),
            ),
            attestation_retry=RetryPolicy.from_env(
                "ATTESTATION_POLL",
                defaults=RetryPolicy.fixed(delay_seconds=10.0, timeout_seconds=attestation_timeout),
            ),
            settlement_retry=RetryPolicy.from_env(
                "SETTLEMENT_RETRY",
                defaults=RetryPolicy(
                    max_attempts=3,
                    initial_delay_seconds=2.0,
                    max_delay_seconds=30.0,
                    backoff_multiplier=2.0,
                    jitter_ratio=0.1,
                ),
            ),
        )

    def summary(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "time_unit": self.time_unit.value,
            "dry_run": self.dry_run,
            "collateral": self.assets.collateral.symbol,
            "payment": self.assets.payment.symbol,
            "subscribe": self.subscribe,
            "price_feed": bool(self.price_feed_url),
            "attestation_retry": self.attestation_retry.to_dict(),
            "settlement_retry": self.settlement_retry.to_dict(),
        }
