from .evm import EvmLedger, EvmLedgerConfig
from .jsonrpc import JsonRpcClient
from .sui import SuiLedger, SuiLedgerConfig, SuiSigner
from .types import DestinationLedger, OrderEvent, OrderEventPage, SourceLedger

__all__ = [
    "DestinationLedger",
    "EvmLedger",
    "EvmLedgerConfig",
    "JsonRpcClient",
    "OrderEvent",
    "OrderEventPage",
    "SourceLedger",
    "SuiLedger",
    "SuiLedgerConfig",
    "SuiSigner",
]
