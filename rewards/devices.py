"""Device binding and verification challenges.

An account is bound to one device fingerprint. The first fingerprint seen is
bound tentatively; a different fingerprint later only triggers a new
challenge, and the binding moves once that challenge is answered.
"""

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import RewardsSettings
from .errors import (
    AccountNotFoundError,
    ChallengeAlreadyUsedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    RequestValidationError,
)
from .logging_config import get_logger
from .models import Account, DeviceBinding, VerificationChallenge, utcnow
from .storage import Storage, account_key

logger = get_logger(__name__)


def generate_code(length: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


class DeviceRegistry:
    def __init__(self, storage: Storage, settings: RewardsSettings, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.settings = settings
        self.clock = clock

    def register_device(self, account_id: str, fingerprint: str) -> Optional[VerificationChallenge]:
        """Return a challenge to deliver to the user, or None for the account's known device."""
        if not fingerprint:
            raise RequestValidationError("Missing device fingerprint")

        now = self.clock()
        with self.storage.transaction(account_key(account_id)) as tx:
            account = tx.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")

            binding = tx.get_binding(account_id)
            if binding is None:
                tx.save_binding(DeviceBinding(account_id=account_id, fingerprint=fingerprint, first_seen_at=now))
                reason = "first_device"
            elif binding.fingerprint == fingerprint and binding.confirmed and account.verified:
                return None
            elif binding.fingerprint == fingerprint:
                reason = "pending_verification"
            else:
                reason = "new_device"

            challenge = tx.add_challenge(VerificationChallenge(
                account_id=account_id,
                fingerprint=fingerprint,
                code=generate_code(self.settings.challenge_code_length),
                expires_at=now + timedelta(seconds=self.settings.challenge_ttl_seconds),
                created_at=now,
            ))

        logger.info("device_challenge_issued", account_id=account_id, reason=reason, expires_at=challenge.expires_at.isoformat())
        return challenge

    def verify(self, account_id: str, fingerprint: str, code: str) -> Account:
        now = self.clock()
        with self.storage.transaction(account_key(account_id)) as tx:
            account = tx.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")

            challenge = tx.latest_challenge(account_id, fingerprint)
            if challenge is None:
                raise ChallengeNotFoundError("No verification challenge for this device")
            if challenge.used:
                raise ChallengeAlreadyUsedError("Verification code has already been used")
            if challenge.is_expired(now):
                raise ChallengeExpiredError("Verification code has expired")
            if not secrets.compare_digest(challenge.code, code or ""):
                raise ChallengeNotFoundError("Verification code does not match")

            challenge.used = True
            tx.save_challenge(challenge)

            binding = tx.get_binding(account_id)
            if binding is None or binding.fingerprint != fingerprint:
                binding = DeviceBinding(account_id=account_id, fingerprint=fingerprint, first_seen_at=now)
            binding.confirmed = True
            tx.save_binding(binding)

            previous = account.device_id
            account.device_id = fingerprint
            account.verified = True
            tx.save_account(account)

        logger.info(
            "device_verified",
            account_id=account_id,
            rebound=previous is not None and previous != fingerprint,
        )
        return account
