"""
Storage layer for the audit log.

- RedisStore: connection, key naming, error translation
- Transaction: optimistic WATCH/MULTI/EXEC with bounded retries
"""

from audis.storage.redis_store import RedisStore, store_errors
from audis.storage.transaction import Transaction

__all__ = ["RedisStore", "Transaction", "store_errors"]
