from datetime import datetime
from typing import Callable, Optional

from .errors import AccountNotFoundError, InsufficientBalanceError, RequestValidationError, StorageError
from .events import EventEmitter
from .logging_config import get_logger
from .models import Account, Registered, utcnow
from .storage import Storage, account_key

logger = get_logger(__name__)


def check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise RequestValidationError(f"Amount must be a positive integer, got {amount!r}")
    return amount


class AccountStore:
    def __init__(self, storage: Storage, events: EventEmitter, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.events = events
        self.clock = clock

    def find(self, account_id: str) -> Optional[Account]:
        with self.storage.transaction() as tx:
            return tx.get_account(account_id)

    def get(self, account_id: str) -> Account:
        account = self.find(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def get_or_create(self, account_id: str, join_bonus: int) -> tuple[Account, bool]:
        """Return the account, creating it with ``join_bonus`` on first contact.

        The second element is True only for the call that created the account.
        """
        if not account_id:
            raise RequestValidationError("Missing account id")
        if join_bonus < 0:
            raise RequestValidationError("Join bonus cannot be negative")

        with self.storage.transaction(account_key(account_id)) as tx:
            existing = tx.get_account(account_id)
            if existing is not None:
                return existing, False
            now = self.clock()
            account = Account(id=account_id, balance=join_bonus, created_at=now, last_seen_at=now)
            tx.save_account(account)

        logger.info("account_registered", account_id=account_id, join_bonus=join_bonus)
        self.events.emit(Registered(account_id=account_id, join_bonus=join_bonus))
        return account, True

    def credit(self, account_id: str, amount: int) -> Account:
        check_amount(amount)
        with self.storage.transaction(account_key(account_id)) as tx:
            account = tx.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            account.balance += amount
            tx.save_account(account)
        logger.info("account_credited", account_id=account_id, amount=amount, balance=account.balance)
        return account

    def debit(self, account_id: str, amount: int) -> Account:
        check_amount(amount)
        with self.storage.transaction(account_key(account_id)) as tx:
            account = tx.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            if account.balance < amount:
                raise InsufficientBalanceError(required=amount, available=account.balance)
            account.balance -= amount
            tx.save_account(account)
        logger.info("account_debited", account_id=account_id, amount=amount, balance=account.balance)
        return account

    def touch_last_seen(self, account_id: str) -> None:
        try:
            with self.storage.transaction(account_key(account_id)) as tx:
                account = tx.get_account(account_id)
                if account is None:
                    return
                account.last_seen_at = self.clock()
                tx.save_account(account)
        except StorageError as exc:
            logger.warning("touch_last_seen_failed", account_id=account_id, error=str(exc))
