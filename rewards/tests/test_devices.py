"""
Unit Tests for the Device Registry

Tests cover:
1. First device: tentative binding + challenge
2. Verification success and each failure
3. New-device flow rebinds only after verification
"""

import pytest

from rewards.errors import (
    AccountNotFoundError,
    ChallengeAlreadyUsedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
)
from rewards.storage import account_key

ACCOUNT_ID = "800300"
PHONE = "fp-android-7f3a9c21"
LAPTOP = "fp-firefox-0b44e1d9"


def binding_of(service, account_id):
    with service.storage.transaction(account_key(account_id)) as tx:
        return tx.get_binding(account_id)


@pytest.fixture
def account(service):
    account, _ = service.accounts.get_or_create(ACCOUNT_ID, join_bonus=10)
    return account


class TestRegisterDevice:
    def test_first_device_binds_tentatively(self, service, account, clock):
        challenge = service.devices.register_device(ACCOUNT_ID, PHONE)

        assert challenge is not None
        assert len(challenge.code) == 6
        assert challenge.code.isdigit()
        assert challenge.used is False
        assert (challenge.expires_at - clock.now).total_seconds() == 600

        binding = binding_of(service, ACCOUNT_ID)
        assert binding.fingerprint == PHONE
        assert binding.confirmed is False
        assert service.accounts.get(ACCOUNT_ID).verified is False

    def test_known_verified_device_needs_no_challenge(self, service, account):
        challenge = service.devices.register_device(ACCOUNT_ID, PHONE)
        service.devices.verify(ACCOUNT_ID, PHONE, challenge.code)

        assert service.devices.register_device(ACCOUNT_ID, PHONE) is None

    def test_unknown_account(self, service):
        with pytest.raises(AccountNotFoundError):
            service.devices.register_device("nobody", PHONE)


class TestVerify:
    def test_verify_marks_account_verified(self, service, account):
        challenge = service.devices.register_device(ACCOUNT_ID, PHONE)

        verified = service.devices.verify(ACCOUNT_ID, PHONE, challenge.code)

        assert verified.verified is True
        assert verified.device_id == PHONE
        binding = binding_of(service, ACCOUNT_ID)
        assert binding.confirmed is True

    def test_wrong_code(self, service, account):
        challenge = service.devices.register_device(ACCOUNT_ID, PHONE)
        wrong = "000000" if challenge.code != "000000" else "111111"

        with pytest.raises(ChallengeNotFoundError):
            service.devices.verify(ACCOUNT_ID, PHONE, wrong)

        assert service.accounts.get(ACCOUNT_ID).verified is False

    def test_no_challenge_for_device(self, service, account):
        with pytest.raises(ChallengeNotFoundError):
            service.devices.verify(ACCOUNT_ID, PHONE, "123456")

    def test_expired_challenge(self, service, account, clock):
        challenge = service.devices.register_device(ACCOUNT_ID, PHONE)
        clock.advance(minutes=10)

        with pytest.raises(ChallengeExpiredError):
            service.devices.verify(ACCOUNT_ID, PHONE, challenge.code)

    def test_challenge_is_single_use(self, service, account):
        challenge = service.devices.register_device(ACCOUNT_ID, PHONE)
        service.devices.verify(ACCOUNT_ID, PHONE, challenge.code)

        with pytest.raises(ChallengeAlreadyUsedError):
            service.devices.verify(ACCOUNT_ID, PHONE, challenge.code)

    def test_only_latest_challenge_is_honoured(self, service, account):
        first = service.devices.register_device(ACCOUNT_ID, PHONE)
        second = service.devices.register_device(ACCOUNT_ID, PHONE)

        if first.code != second.code:
            with pytest.raises(ChallengeNotFoundError):
                service.devices.verify(ACCOUNT_ID, PHONE, first.code)
        assert service.devices.verify(ACCOUNT_ID, PHONE, second.code).verified


class TestNewDevice:
    def test_new_device_does_not_rebind_until_verified(self, service, account):
        challenge = service.devices.register_device(ACCOUNT_ID, PHONE)
        service.devices.verify(ACCOUNT_ID, PHONE, challenge.code)

        laptop_challenge = service.devices.register_device(ACCOUNT_ID, LAPTOP)

        assert laptop_challenge is not None
        assert laptop_challenge.fingerprint == LAPTOP
        assert binding_of(service, ACCOUNT_ID).fingerprint == PHONE
        assert service.accounts.get(ACCOUNT_ID).device_id == PHONE

        account = service.devices.verify(ACCOUNT_ID, LAPTOP, laptop_challenge.code)

        assert account.device_id == LAPTOP
        assert account.verified is True
        binding = binding_of(service, ACCOUNT_ID)
        assert binding.fingerprint == LAPTOP
        assert binding.confirmed is True

    def test_old_device_challenge_not_valid_for_new_device(self, service, account):
        challenge = service.devices.register_device(ACCOUNT_ID, PHONE)

        with pytest.raises(ChallengeNotFoundError):
            service.devices.verify(ACCOUNT_ID, LAPTOP, challenge.code)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
