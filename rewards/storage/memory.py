import itertools
import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from ..errors import DuplicateKeyError
from ..models import (
    Account,
    AdminStats,
    DeviceBinding,
    ReferralEdge,
    VerificationChallenge,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .base import LockTable, Storage, Transaction


class InMemoryStorage(Storage):
    def __init__(self, lock_stripes: int = 64):
        self.accounts: dict[str, Account] = {}
        self.edges: dict[str, ReferralEdge] = {}
        self.bindings: dict[str, DeviceBinding] = {}
        self.challenges: dict[int, VerificationChallenge] = {}
        self.withdrawals: dict[int, WithdrawalRequest] = {}
        self.markers: dict[str, date] = {}
        self.locks = LockTable(lock_stripes)
        self._data_lock = threading.RLock()
        self._withdrawal_ids = itertools.count(1)
        self._challenge_ids = itertools.count(1)

    @contextmanager
    def transaction(self, *keys: str) -> Iterator["InMemoryTransaction"]:
        with self.locks.hold(*keys):
            tx = InMemoryTransaction(self)
            yield tx
            tx.commit()

    def next_withdrawal_id(self) -> int:
        with self._data_lock:
            return next(self._withdrawal_ids)

    def next_challenge_id(self) -> int:
        with self._data_lock:
            return next(self._challenge_ids)

    def account_ids(self) -> list[str]:
        with self._data_lock:
            return list(self.accounts)

    def list_edges(self, referrer_id: str) -> list[ReferralEdge]:
        with self._data_lock:
            edges = [e.model_copy() for e in self.edges.values() if e.referrer_id == referrer_id]
        edges.sort(key=lambda e: e.created_at, reverse=True)
        return edges

    def list_withdrawals(
        self,
        account_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 20,
    ) -> list[WithdrawalRequest]:
        with self._data_lock:
            requests = [
                r.model_copy() for r in self.withdrawals.values()
                if (account_id is None or r.account_id == account_id)
                and (status is None or r.status == status)
            ]
        requests.sort(key=lambda r: r.id, reverse=True)
        return requests[:limit]

    def stats(self) -> AdminStats:
        with self._data_lock:
            return AdminStats(
                user_count=len(self.accounts),
                total_balance=sum(a.balance for a in self.accounts.values()),
                pending_withdrawals=sum(
                    1 for r in self.withdrawals.values() if r.status == WithdrawalStatus.PENDING
                ),
            )


class InMemoryTransaction(Transaction):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage
        self._accounts: dict[str, Account] = {}
        self._new_edges: dict[str, ReferralEdge] = {}
        self._edges: dict[str, ReferralEdge] = {}
        self._bindings: dict[str, DeviceBinding] = {}
        self._challenges: dict[int, VerificationChallenge] = {}
        self._withdrawals: dict[int, WithdrawalRequest] = {}
        self._markers: dict[str, date] = {}

    def _read(self, staged: dict, committed: dict, key):
        if key in staged:
            return staged[key].model_copy()
        with self.storage._data_lock:
            value = committed.get(key)
        return value.model_copy() if value is not None else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._read(self._accounts, self.storage.accounts, account_id)

    def save_account(self, account: Account) -> None:
        self._accounts[account.id] = account.model_copy()

    def get_edge(self, referred_id: str) -> Optional[ReferralEdge]:
        if referred_id in self._new_edges:
            return self._new_edges[referred_id].model_copy()
        return self._read(self._edges, self.storage.edges, referred_id)

    def add_edge(self, edge: ReferralEdge) -> None:
        if self.get_edge(edge.referred_id) is not None:
            raise DuplicateKeyError(f"Referral edge for {edge.referred_id} already exists")
        self._new_edges[edge.referred_id] = edge.model_copy()

    def save_edge(self, edge: ReferralEdge) -> None:
        if edge.referred_id in self._new_edges:
            self._new_edges[edge.referred_id] = edge.model_copy()
        else:
            self._edges[edge.referred_id] = edge.model_copy()

    def device_seen_elsewhere(self, fingerprint: str, account_id: str) -> bool:
        with self.storage._data_lock:
            bindings = {**self.storage.bindings, **self._bindings}
            edges = [*self.storage.edges.values(), *self._new_edges.values()]
        if any(b.fingerprint == fingerprint and b.account_id != account_id for b in bindings.values()):
            return True
        return any(e.device_id == fingerprint and e.referred_id != account_id for e in edges)

    def get_binding(self, account_id: str) -> Optional[DeviceBinding]:
        return self._read(self._bindings, self.storage.bindings, account_id)

    def save_binding(self, binding: DeviceBinding) -> None:
        self._bindings[binding.account_id] = binding.model_copy()

    def latest_challenge(self, account_id: str, fingerprint: str) -> Optional[VerificationChallenge]:
        with self.storage._data_lock:
            challenges = {**self.storage.challenges, **self._challenges}
        matching = [
            c for c in challenges.values()
            if c.account_id == account_id and c.fingerprint == fingerprint
        ]
        if not matching:
            return None
        return max(matching, key=lambda c: c.id).model_copy()

    def add_challenge(self, challenge: VerificationChallenge) -> VerificationChallenge:
        stored = challenge.model_copy(update={"id": self.storage.next_challenge_id()})
        self._challenges[stored.id] = stored
        return stored.model_copy()

    def save_challenge(self, challenge: VerificationChallenge) -> None:
        self._challenges[challenge.id] = challenge.model_copy()

    def add_withdrawal(self, request: WithdrawalRequest) -> WithdrawalRequest:
        stored = request.model_copy(update={"id": self.storage.next_withdrawal_id()})
        self._withdrawals[stored.id] = stored
        return stored.model_copy()

    def get_withdrawal(self, request_id: int) -> Optional[WithdrawalRequest]:
        return self._read(self._withdrawals, self.storage.withdrawals, request_id)

    def save_withdrawal(self, request: WithdrawalRequest) -> None:
        self._withdrawals[request.id] = request.model_copy()

    def get_marker(self, name: str) -> Optional[date]:
        if name in self._markers:
            return self._markers[name]
        with self.storage._data_lock:
            return self.storage.markers.get(name)

    def set_marker(self, name: str, value: date) -> None:
        self._markers[name] = value

    def commit(self) -> None:
        storage = self.storage
        with storage._data_lock:
            # The referred_id uniqueness check here is the serialization point
            # for referral claims.
            for referred_id in self._new_edges:
                if referred_id in storage.edges:
                    raise DuplicateKeyError(f"Referral edge for {referred_id} already exists")
            storage.accounts.update(self._accounts)
            storage.edges.update(self._edges)
            storage.edges.update(self._new_edges)
            storage.bindings.update(self._bindings)
            storage.challenges.update(self._challenges)
            storage.withdrawals.update(self._withdrawals)
            storage.markers.update(self._markers)
