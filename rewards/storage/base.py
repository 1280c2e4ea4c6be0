"""Storage abstraction shared by the in-memory and SQL backends.

A backend hands out scoped transactions. ``Storage.transaction(*keys)`` takes
the partition locks for the given entity keys (in a fixed order, so two
transactions can never deadlock on each other), yields a ``Transaction`` whose
writes are staged, and applies them on a clean exit. Any exception discards
every staged write.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date
from typing import ContextManager, Iterator, Optional

from ..models import (
    Account,
    AdminStats,
    DeviceBinding,
    ReferralEdge,
    VerificationChallenge,
    WithdrawalRequest,
    WithdrawalStatus,
)


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def referral_key(referred_id: str) -> str:
    return f"referral:{referred_id}"


def withdrawal_key(request_id: int) -> str:
    return f"withdrawal:{request_id}"


class LockTable:
    """Fixed set of re-entrant locks; an entity key always maps to the same stripe."""

    def __init__(self, stripes: int = 64):
        self._locks = [threading.RLock() for _ in range(stripes)]

    def _stripes_for(self, keys) -> list[int]:
        return sorted({hash(key) % len(self._locks) for key in keys})

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        acquired = []
        try:
            for index in self._stripes_for(keys):
                self._locks[index].acquire()
                acquired.append(index)
            yield
        finally:
            for index in reversed(acquired):
                self._locks[index].release()


class Transaction(ABC):
    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    def save_account(self, account: Account) -> None: ...

    @abstractmethod
    def get_edge(self, referred_id: str) -> Optional[ReferralEdge]: ...

    @abstractmethod
    def add_edge(self, edge: ReferralEdge) -> None:
        """Insert a new edge; raises ``DuplicateKeyError`` if referred_id already has one."""

    @abstractmethod
    def save_edge(self, edge: ReferralEdge) -> None: ...

    @abstractmethod
    def device_seen_elsewhere(self, fingerprint: str, account_id: str) -> bool:
        """True if another account is bound to, or was referred from, this fingerprint."""

    @abstractmethod
    def get_binding(self, account_id: str) -> Optional[DeviceBinding]: ...

    @abstractmethod
    def save_binding(self, binding: DeviceBinding) -> None: ...

    @abstractmethod
    def latest_challenge(self, account_id: str, fingerprint: str) -> Optional[VerificationChallenge]: ...

    @abstractmethod
    def add_challenge(self, challenge: VerificationChallenge) -> VerificationChallenge: ...

    @abstractmethod
    def save_challenge(self, challenge: VerificationChallenge) -> None: ...

    @abstractmethod
    def add_withdrawal(self, request: WithdrawalRequest) -> WithdrawalRequest:
        """Insert a request and return it with its assigned id."""

    @abstractmethod
    def get_withdrawal(self, request_id: int) -> Optional[WithdrawalRequest]: ...

    @abstractmethod
    def save_withdrawal(self, request: WithdrawalRequest) -> None: ...

    @abstractmethod
    def get_marker(self, name: str) -> Optional[date]: ...

    @abstractmethod
    def set_marker(self, name: str, value: date) -> None: ...


class Storage(ABC):
    @abstractmethod
    def transaction(self, *keys: str) -> ContextManager[Transaction]: ...

    @abstractmethod
    def account_ids(self) -> list[str]: ...

    @abstractmethod
    def list_edges(self, referrer_id: str) -> list[ReferralEdge]: ...

    @abstractmethod
    def list_withdrawals(
        self,
        account_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 20,
    ) -> list[WithdrawalRequest]: ...

    @abstractmethod
    def stats(self) -> AdminStats: ...

    def close(self) -> None:
        pass
