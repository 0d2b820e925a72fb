from .base import LoyaltyStorage, StorageTransaction
from .memory import InMemoryStorage
from .sql import SqlAlchemyStorage

__all__ = [
    "LoyaltyStorage",
    "StorageTransaction",
    "InMemoryStorage",
    "SqlAlchemyStorage",
]
