from .fulfillment import FulfillmentExecutor, PaymentGuardHeldError
from .gate import ProfitabilityGate
from .pipeline import EngineSettings, SolverEngine
from .prices import HttpPriceFeed, PriceReference, StaticPriceReference, parse_price_table
from .settlement import SettlementExecutor
from .types import AssetConfig, AssetPair, GateDecision, PriceSnapshot, RuntimeConfig

__all__ = [
    "AssetConfig",
    "AssetPair",
    "EngineSettings",
    "FulfillmentExecutor",
    "GateDecision",
    "HttpPriceFeed",
    "PaymentGuardHeldError",
    "PriceReference",
    "PriceSnapshot",
    "ProfitabilityGate",
    "RuntimeConfig",
    "SettlementExecutor",
    "SolverEngine",
    "StaticPriceReference",
    "parse_price_table",
]
