"""
Unit Tests for the Account Store

Tests cover:
1. Registration with the join bonus
2. Idempotent get-or-create
3. Credit and debit
4. Balance never negative under concurrent debits
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from rewards.errors import AccountNotFoundError, InsufficientBalanceError, RequestValidationError


class TestRegistration:
    """Tests for first contact."""

    def test_new_account_gets_join_bonus(self, service):
        """A new account starts with the join bonus."""
        account, created = service.accounts.get_or_create("1001", join_bonus=10)

        assert created is True
        assert account.balance == 10
        assert account.total_referrals == 0
        assert account.verified is False
        assert account.withdraw_count_today == 0

    def test_get_or_create_is_idempotent(self, service, delivered):
        """A second call returns the stored account and emits nothing."""
        service.accounts.get_or_create("1001", join_bonus=10)
        service.accounts.credit("1001", 15)

        account, created = service.accounts.get_or_create("1001", join_bonus=10)
        service.events.process_pending()

        assert created is False
        assert account.balance == 25
        assert [e.type for e in delivered] == ["registered"]
        assert delivered[0].account_id == "1001"

    def test_concurrent_first_contact_creates_once(self, service, delivered):
        """Racing first calls credit the join bonus exactly once."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: service.accounts.get_or_create("1001", 10), range(16)))
        service.events.process_pending()

        assert sum(1 for _, created in results if created) == 1
        assert service.accounts.get("1001").balance == 10
        assert len(delivered) == 1

    def test_missing_account_id_rejected(self, service):
        with pytest.raises(RequestValidationError):
            service.accounts.get_or_create("", join_bonus=10)


class TestCreditDebit:
    """Tests for balance mutation."""

    def test_credit_and_debit(self, service):
        service.accounts.get_or_create("1001", join_bonus=10)

        service.accounts.credit("1001", 40)
        account = service.accounts.debit("1001", 30)

        assert account.balance == 20
        assert service.accounts.get("1001").balance == 20

    def test_debit_below_zero_fails_and_leaves_balance(self, service):
        """An overdraw is refused and the balance stays where it was."""
        service.accounts.get_or_create("1001", join_bonus=10)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.accounts.debit("1001", 11)

        assert exc_info.value.available == 10
        assert service.accounts.get("1001").balance == 10

    @pytest.mark.parametrize("amount", [0, -5, 2.5, True])
    def test_non_positive_or_non_integer_amount_rejected(self, service, amount):
        service.accounts.get_or_create("1001", join_bonus=10)

        with pytest.raises(RequestValidationError):
            service.accounts.credit("1001", amount)

    def test_unknown_account(self, service):
        with pytest.raises(AccountNotFoundError):
            service.accounts.credit("nobody", 5)
        with pytest.raises(AccountNotFoundError):
            service.accounts.get("nobody")

    def test_concurrent_debits_never_overdraw(self, service):
        """Fifty racing debits of 1 against a balance of 10: exactly ten succeed."""
        service.accounts.get_or_create("1001", join_bonus=10)

        def attempt(_):
            try:
                service.accounts.debit("1001", 1)
                return True
            except InsufficientBalanceError:
                return False

        with ThreadPoolExecutor(max_workers=10) as pool:
            outcomes = list(pool.map(attempt, range(50)))

        assert outcomes.count(True) == 10
        assert service.accounts.get("1001").balance == 0

    def test_concurrent_credits_are_not_lost(self, service):
        service.accounts.get_or_create("1001", join_bonus=0)

        with ThreadPoolExecutor(max_workers=10) as pool:
            list(pool.map(lambda _: service.accounts.credit("1001", 3), range(100)))

        assert service.accounts.get("1001").balance == 300


class TestLastSeen:
    def test_touch_updates_timestamp(self, service, clock):
        service.accounts.get_or_create("1001", join_bonus=10)
        clock.advance(hours=2)

        service.accounts.touch_last_seen("1001")

        assert service.accounts.get("1001").last_seen_at == clock.now

    def test_touch_on_missing_account_is_silent(self, service):
        service.accounts.touch_last_seen("nobody")
        assert service.accounts.find("nobody") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
