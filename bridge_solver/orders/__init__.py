from .source import OrderSource, OrderSourceSettings
from .store import EventSink, OrderStore
from .types import (
    AttestationHandle,
    FulfillmentRecord,
    InvalidTransitionError,
    LifecycleState,
    Order,
    OrderRecord,
)

__all__ = [
    "AttestationHandle",
    "EventSink",
    "FulfillmentRecord",
    "InvalidTransitionError",
    "LifecycleState",
    "Order",
    "OrderRecord",
    "OrderSource",
    "OrderSourceSettings",
    "OrderStore",
]
