import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator


PAYOUT_TARGET_PATTERN = re.compile(r"^[A-Za-z0-9._-]{2,49}@[A-Za-z]{2,}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything in the ledger is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Account(BaseModel):
    id: str
    balance: int = Field(default=0, ge=0)
    total_referrals: int = Field(default=0, ge=0)
    device_id: Optional[str] = None
    verified: bool = False
    last_withdraw_date: Optional[date] = None
    withdraw_count_today: int = Field(default=0, ge=0)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    last_seen_at: Optional[UtcDatetime] = None

    model_config = ConfigDict(from_attributes=True, validate_assignment=True)

    def withdrawals_on(self, day: date) -> int:
        return self.withdraw_count_today if self.last_withdraw_date == day else 0


class ReferralEdge(BaseModel):
    referrer_id: str
    referred_id: str
    device_id: Optional[str] = None
    valid: bool = True
    created_at: UtcDatetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class DeviceBinding(BaseModel):
    account_id: str
    fingerprint: str
    first_seen_at: UtcDatetime = Field(default_factory=utcnow)
    confirmed: bool = False

    model_config = ConfigDict(from_attributes=True)


class VerificationChallenge(BaseModel):
    id: Optional[int] = None
    account_id: str
    fingerprint: str
    code: str
    used: bool = False
    expires_at: UtcDatetime
    created_at: UtcDatetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class WithdrawalRequest(BaseModel):
    id: Optional[int] = None
    account_id: str
    amount: int = Field(..., gt=0)
    payout_target: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    created_at: UtcDatetime = Field(default_factory=utcnow)
    processed_at: Optional[UtcDatetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_resolve(self) -> bool:
        return self.status == WithdrawalStatus.PENDING


class WithdrawalLimits(BaseModel):
    min_withdraw: int
    max_withdraw: int
    withdraw_amount: int
    daily_limit: int


class AdminStats(BaseModel):
    user_count: int
    total_balance: int
    pending_withdrawals: int


# Events handed to the messaging layer.

class Registered(BaseModel):
    type: Literal["registered"] = "registered"
    account_id: str
    join_bonus: int


class ReferralEarned(BaseModel):
    type: Literal["referral_earned"] = "referral_earned"
    referrer_id: str
    referred_id: str
    amount: int


class WithdrawalSubmitted(BaseModel):
    type: Literal["withdrawal_submitted"] = "withdrawal_submitted"
    account_id: str
    amount: int
    request_id: int
    payout_target: str


class WithdrawalResolved(BaseModel):
    type: Literal["withdrawal_resolved"] = "withdrawal_resolved"
    account_id: str
    request_id: int
    amount: int
    decision: WithdrawalStatus


LedgerEvent = Union[Registered, ReferralEarned, WithdrawalSubmitted, WithdrawalResolved]


# Incoming request variants. Every payload is validated into one of these
# before any ledger operation runs.

AccountId = Annotated[str, Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")]
Fingerprint = Annotated[str, Field(min_length=8, max_length=128)]


class OpenAccountRequest(BaseModel):
    kind: Literal["open"] = "open"
    uid: AccountId
    ref: Optional[AccountId] = None
    fingerprint: Optional[Fingerprint] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"uid": "700100200", "ref": "700100100"}
    })


class RegisterDeviceRequest(BaseModel):
    kind: Literal["register_device"] = "register_device"
    uid: AccountId
    fingerprint: Fingerprint


class VerifyDeviceRequest(BaseModel):
    kind: Literal["verify_device"] = "verify_device"
    uid: AccountId
    fingerprint: Fingerprint
    code: str = Field(..., min_length=4, max_length=12)


class ClaimReferralRequest(BaseModel):
    kind: Literal["claim_referral"] = "claim_referral"
    uid: AccountId
    ref: AccountId
    fingerprint: Optional[Fingerprint] = None


class WithdrawRequest(BaseModel):
    kind: Literal["withdraw"] = "withdraw"
    uid: AccountId
    upi: str = Field(..., min_length=1, max_length=128, description="Payout target, localpart@domain")

    model_config = ConfigDict(str_strip_whitespace=True, json_schema_extra={
        "example": {"uid": "700100200", "upi": "name@okbank"}
    })


class ResolveWithdrawalRequest(BaseModel):
    kind: Literal["resolve_withdrawal"] = "resolve_withdrawal"
    request_id: int = Field(..., gt=0)
    status: WithdrawalStatus

    @field_validator("status")
    @classmethod
    def check_decision(cls, value: WithdrawalStatus) -> WithdrawalStatus:
        if value == WithdrawalStatus.PENDING:
            raise ValueError("decision must be approved or rejected")
        return value


LedgerRequest = Annotated[
    Union[
        OpenAccountRequest,
        RegisterDeviceRequest,
        VerifyDeviceRequest,
        ClaimReferralRequest,
        WithdrawRequest,
        ResolveWithdrawalRequest,
    ],
    Field(discriminator="kind"),
]


class OpenAccountResponse(BaseModel):
    ok: bool = True
    user: Account
    created: bool
    referral: Optional[ReferralEdge] = None
    limits: WithdrawalLimits


class ChallengeResponse(BaseModel):
    ok: bool = True
    challenge_required: bool
    expires_at: Optional[datetime] = None
    message: str


class VerifyResponse(BaseModel):
    ok: bool = True
    user: Account
    message: str


class WithdrawResponse(BaseModel):
    ok: bool = True
    message: str
    request_id: int
    amount: int
    balance: int


class ResolveResponse(BaseModel):
    ok: bool = True
    message: str
    withdrawal: WithdrawalRequest


class WithdrawalHistoryResponse(BaseModel):
    ok: bool = True
    withdrawals: list[WithdrawalRequest]


class ReferralListResponse(BaseModel):
    ok: bool = True
    referrals: list[ReferralEdge]
    count: int
