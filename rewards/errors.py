"""Exceptions raised by the rewards ledger.

Every error carries a stable ``code`` so callers (the HTTP adapter, the bot
front-end) can branch on it without parsing messages.
"""


class RewardsError(Exception):
    code = "REWARDS_ERROR"


class RequestValidationError(RewardsError):
    """Malformed input, rejected before any mutation."""

    code = "VALIDATION_ERROR"


class InvalidPayoutFormatError(RequestValidationError):
    code = "INVALID_PAYOUT_FORMAT"


class PolicyViolation(RewardsError):
    """A well-formed request that the ledger's rules refuse."""

    code = "POLICY_VIOLATION"


class SelfReferralError(PolicyViolation):
    code = "SELF_REFERRAL"


class AlreadyReferredError(PolicyViolation):
    code = "ALREADY_REFERRED"


class UnknownReferrerError(PolicyViolation):
    code = "UNKNOWN_REFERRER"


class DailyLimitExceededError(PolicyViolation):
    code = "DAILY_LIMIT_EXCEEDED"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Daily withdraw limit reached ({limit} per day)")


class InsufficientBalanceError(PolicyViolation):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient balance: required {required}, current balance {available}")


class DeviceUnverifiedError(PolicyViolation):
    code = "DEVICE_UNVERIFIED"


class ChallengeNotFoundError(PolicyViolation):
    code = "CHALLENGE_NOT_FOUND"


class ChallengeExpiredError(PolicyViolation):
    code = "CHALLENGE_EXPIRED"


class ChallengeAlreadyUsedError(PolicyViolation):
    code = "CHALLENGE_ALREADY_USED"


class NotFoundError(RewardsError):
    code = "NOT_FOUND"


class AccountNotFoundError(NotFoundError):
    code = "ACCOUNT_NOT_FOUND"


class RequestNotFoundError(NotFoundError):
    code = "REQUEST_NOT_FOUND"


class ReferralNotFoundError(NotFoundError):
    code = "REFERRAL_NOT_FOUND"


class InvalidStateTransitionError(RewardsError):
    code = "INVALID_TRANSITION"


class UnauthorizedError(RewardsError):
    code = "UNAUTHORIZED"


class StorageError(RewardsError):
    """The underlying store failed. Never retried by the ledger."""

    code = "STORAGE_ERROR"


class DuplicateKeyError(StorageError):
    code = "DUPLICATE_KEY"


class NotificationDeliveryError(RewardsError):
    code = "NOTIFICATION_DELIVERY_FAILED"
