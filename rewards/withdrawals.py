"""Withdrawal requests: pending -> approved | rejected.

Balance is removed when the request is made. Resolving a request only moves
its status, unless ``refund_on_reject`` is configured, in which case a
rejection puts the amount back in the same transaction.
"""

from datetime import datetime
from typing import Callable, Optional

from .config import RewardsSettings
from .errors import (
    AccountNotFoundError,
    DailyLimitExceededError,
    DeviceUnverifiedError,
    InsufficientBalanceError,
    InvalidPayoutFormatError,
    InvalidStateTransitionError,
    RequestNotFoundError,
    RequestValidationError,
)
from .events import EventEmitter
from .logging_config import get_logger
from .models import (
    PAYOUT_TARGET_PATTERN,
    Account,
    WithdrawalLimits,
    WithdrawalRequest,
    WithdrawalResolved,
    WithdrawalStatus,
    WithdrawalSubmitted,
    utcnow,
)
from .storage import Storage, account_key, withdrawal_key

logger = get_logger(__name__)


def is_valid_payout_target(target: str) -> bool:
    return bool(target) and PAYOUT_TARGET_PATTERN.fullmatch(target) is not None


class WithdrawalLedger:
    def __init__(
        self,
        storage: Storage,
        events: EventEmitter,
        settings: RewardsSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.events = events
        self.settings = settings
        self.clock = clock

    @property
    def limits(self) -> WithdrawalLimits:
        return WithdrawalLimits(
            min_withdraw=self.settings.min_withdraw,
            max_withdraw=self.settings.max_withdraw,
            withdraw_amount=self.settings.withdraw_amount,
            daily_limit=self.settings.daily_withdraw_limit,
        )

    def request_withdrawal(self, account_id: str, payout_target: str) -> tuple[WithdrawalRequest, Account]:
        """Debit the fixed withdraw unit and open a pending request.

        Returns the new request and the account as it stands after the debit.
        """
        if not account_id or not payout_target:
            raise RequestValidationError("Missing required fields")
        if not is_valid_payout_target(payout_target):
            raise InvalidPayoutFormatError(f"Invalid payout target format: {payout_target!r}")

        amount = self.settings.withdraw_amount
        daily_limit = self.settings.daily_withdraw_limit

        with self.storage.transaction(account_key(account_id)) as tx:
            account = tx.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            if self.settings.require_verified_device and not account.verified:
                raise DeviceUnverifiedError("Verify your device before withdrawing")

            now = self.clock()
            today = now.date()
            if account.withdrawals_on(today) >= daily_limit:
                raise DailyLimitExceededError(daily_limit)
            if account.balance < amount:
                raise InsufficientBalanceError(required=amount, available=account.balance)

            account.withdraw_count_today = account.withdrawals_on(today) + 1
            account.last_withdraw_date = today
            account.balance -= amount
            tx.save_account(account)

            request = tx.add_withdrawal(WithdrawalRequest(
                account_id=account_id,
                amount=amount,
                payout_target=payout_target,
                created_at=now,
            ))

        logger.info(
            "withdrawal_submitted",
            account_id=account_id,
            request_id=request.id,
            amount=amount,
            balance=account.balance,
            withdraw_count_today=account.withdraw_count_today,
        )
        self.events.emit(WithdrawalSubmitted(
            account_id=account_id,
            amount=amount,
            request_id=request.id,
            payout_target=payout_target,
        ))
        return request, account

    def resolve_withdrawal(self, request_id: int, decision: WithdrawalStatus) -> WithdrawalRequest:
        try:
            decision = WithdrawalStatus(decision)
        except ValueError as exc:
            raise RequestValidationError(f"Unknown decision: {decision!r}") from exc
        if decision == WithdrawalStatus.PENDING:
            raise RequestValidationError("Decision must be approved or rejected")

        request = self.get_request(request_id)
        keys = [withdrawal_key(request_id)]
        refund = decision == WithdrawalStatus.REJECTED and self.settings.refund_on_reject
        if refund:
            keys.append(account_key(request.account_id))

        with self.storage.transaction(*keys) as tx:
            request = tx.get_withdrawal(request_id)
            if not request.can_resolve():
                raise InvalidStateTransitionError(
                    f"Cannot move withdrawal {request_id} from {request.status.value} to {decision.value}"
                )
            request.status = decision
            request.processed_at = self.clock()
            tx.save_withdrawal(request)

            if refund:
                account = tx.get_account(request.account_id)
                if account is not None:
                    account.balance += request.amount
                    tx.save_account(account)

        logger.info(
            "withdrawal_resolved",
            request_id=request_id,
            account_id=request.account_id,
            decision=decision.value,
            refunded=refund,
        )
        self.events.emit(WithdrawalResolved(
            account_id=request.account_id,
            request_id=request_id,
            amount=request.amount,
            decision=decision,
        ))
        return request

    def get_request(self, request_id: int) -> WithdrawalRequest:
        with self.storage.transaction() as tx:
            request = tx.get_withdrawal(request_id)
        if request is None:
            raise RequestNotFoundError(f"Withdrawal request {request_id} not found")
        return request

    def history(self, account_id: str, limit: int = 20) -> list[WithdrawalRequest]:
        return self.storage.list_withdrawals(account_id=account_id, limit=limit)

    def pending(self, limit: int = 100) -> list[WithdrawalRequest]:
        return self.storage.list_withdrawals(status=WithdrawalStatus.PENDING, limit=limit)
