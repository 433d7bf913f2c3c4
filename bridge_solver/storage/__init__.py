from .gateway import StorageGateway
from .memory import InMemoryStorage
from .settings import ConfigUpdateHandler, StorageSettings

__all__ = [
    "ConfigUpdateHandler",
    "InMemoryStorage",
    "StorageGateway",
    "StorageSettings",
]
