"""
Referral Rewards Ledger

This package provides:
- Accounts seeded with a join bonus, credited and debited atomically
- Referral edges, one per referred identity, with device-sharing fraud flags
- Device binding and single-use verification challenges
- Withdrawal requests with a daily quota: pending → approved / rejected
- A background reset of daily withdraw counters
- Fire-and-forget events for the messaging layer
"""

from .config import RewardsSettings, get_settings
from .errors import RewardsError
from .events import EventEmitter
from .models import (
    Account,
    DeviceBinding,
    ReferralEdge,
    VerificationChallenge,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .service import RewardsService, parse_request
from .storage import InMemoryStorage, create_storage

__all__ = [
    "Account",
    "DeviceBinding",
    "EventEmitter",
    "InMemoryStorage",
    "ReferralEdge",
    "RewardsError",
    "RewardsService",
    "RewardsSettings",
    "VerificationChallenge",
    "WithdrawalRequest",
    "WithdrawalStatus",
    "create_storage",
    "get_settings",
    "parse_request",
]
