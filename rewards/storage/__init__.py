from typing import Optional

from .base import LockTable, Storage, Transaction, account_key, referral_key, withdrawal_key
from .memory import InMemoryStorage


def create_storage(database_url: Optional[str] = None, lock_stripes: int = 64) -> Storage:
    if not database_url:
        return InMemoryStorage(lock_stripes=lock_stripes)
    from .sql import SqlStorage
    return SqlStorage(database_url, lock_stripes=lock_stripes)


__all__ = [
    "LockTable",
    "Storage",
    "Transaction",
    "InMemoryStorage",
    "create_storage",
    "account_key",
    "referral_key",
    "withdrawal_key",
]
