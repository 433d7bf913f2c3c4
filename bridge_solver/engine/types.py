from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from typing import Any


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or value == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_decimal(value: Any, default: Decimal) -> Decimal:
    try:
        if value is None or str(value).strip() == "":
            return default
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        return default
    return parsed if parsed.is_finite() else default


@dataclass(slots=True, frozen=True)
class AssetConfig:
    symbol: str
    decimals: int

    def to_units(self, raw_amount: int) -> Decimal:
        return Decimal(raw_amount).scaleb(-self.decimals)


@dataclass(slots=True, frozen=True)
class AssetPair:
    """What the solver receives on the source ledger and pays on the destination."""

    collateral: AssetConfig
    payment: AssetConfig
    quote_symbol: str

    @classmethod
    def from_env(cls, *, direction: str) -> "AssetPair":
        if direction == "sui_to_evm":
            collateral_default, payment_default = ("SUI", 9), ("ETH", 18)
        else:
            collateral_default, payment_default = ("USDC", 6), ("SUI", 9)

        collateral_decimals = os.getenv("COLLATERAL_ASSET_DECIMALS")
        payment_decimals = os.getenv("PAYMENT_ASSET_DECIMALS")
        return cls(
            collateral=AssetConfig(
                symbol=os.getenv("COLLATERAL_ASSET_SYMBOL", collateral_default[0]).strip().upper(),
                decimals=int(collateral_decimals) if collateral_decimals else collateral_default[1],
            ),
            payment=AssetConfig(
                symbol=os.getenv("PAYMENT_ASSET_SYMBOL", payment_default[0]).strip().upper(),
                decimals=int(payment_decimals) if payment_decimals else payment_default[1],
            ),
            quote_symbol=os.getenv("QUOTE_SYMBOL", "USDC").strip().upper(),
        )


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    config_schema_version: int
    min_profit: Decimal
    source_fee_estimate: Decimal
    destination_fee_estimate: Decimal
    trade_enabled: bool
    reevaluate_interval_seconds: float
    expiry_grace_seconds: float

    @classmethod
    def from_env_defaults(cls) -> "RuntimeConfig":
        return cls(
            config_schema_version=max(1, int(to_float(os.getenv("CONFIG_SCHEMA_VERSION"), 1))),
            min_profit=to_decimal(os.getenv("MIN_PROFIT"), Decimal("0.01")),
            source_fee_estimate=max(Decimal(0), to_decimal(os.getenv("SOURCE_FEE_ESTIMATE"), Decimal(0))),
            destination_fee_estimate=max(
                Decimal(0),
                to_decimal(os.getenv("DESTINATION_FEE_ESTIMATE"), Decimal(0)),
            ),
            trade_enabled=to_bool(os.getenv("TRADE_ENABLED"), True),
            reevaluate_interval_seconds=max(0.5, to_float(os.getenv("REEVALUATE_INTERVAL_SECONDS"), 5.0)),
            expiry_grace_seconds=max(0.0, to_float(os.getenv("EXPIRY_GRACE_SECONDS"), 3600.0)),
        )

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RuntimeConfig") -> "RuntimeConfig":
        schema_raw = redis_config.get("schema_version") or redis_config.get("config_schema_version")
        return cls(
            config_schema_version=max(1, int(to_float(schema_raw, defaults.config_schema_version))),
            min_profit=to_decimal(redis_config.get("min_profit"), defaults.min_profit),
            source_fee_estimate=max(
                Decimal(0),
                to_decimal(redis_config.get("source_fee_estimate"), defaults.source_fee_estimate),
            ),
            destination_fee_estimate=max(
                Decimal(0),
                to_decimal(redis_config.get("destination_fee_estimate"), defaults.destination_fee_estimate),
            ),
            trade_enabled=to_bool(redis_config.get("trade_enabled"), defaults.trade_enabled),
            reevaluate_interval_seconds=max(
                0.5,
                to_float(redis_config.get("reevaluate_interval_seconds"), defaults.reevaluate_interval_seconds),
            ),
            expiry_grace_seconds=max(
                0.0,
                to_float(redis_config.get("expiry_grace_seconds"), defaults.expiry_grace_seconds),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("min_profit", "source_fee_estimate", "destination_fee_estimate"):
            payload[key] = str(payload[key])
        return payload


@dataclass(slots=True, frozen=True)
class PriceSnapshot:
    prices: dict[str, Decimal]
    source: str
    fetched_at: float

    def price_of(self, symbol: str) -> Decimal | None:
        return self.prices.get(symbol.upper())


@dataclass(slots=True, frozen=True)
class GateDecision:
    order_id: str
    profitable: bool
    should_execute: bool
    required_amount: int
    collateral_value: Decimal
    payment_value: Decimal
    fees: Decimal
    profit: Decimal
    reason: str
    price_source: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("collateral_value", "payment_value", "fees", "profit"):
            payload[key] = str(payload[key])
        payload["required_amount"] = str(self.required_amount)
        return payload
