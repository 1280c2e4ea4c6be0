import secrets
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import TypeAdapter, ValidationError

from .accounts import AccountStore
from .config import RewardsSettings, get_settings
from .devices import DeviceRegistry
from .errors import (
    AlreadyReferredError,
    RequestValidationError,
    SelfReferralError,
    UnauthorizedError,
    UnknownReferrerError,
)
from .events import EventEmitter
from .logging_config import get_logger
from .models import (
    AdminStats,
    ChallengeResponse,
    ClaimReferralRequest,
    LedgerRequest,
    OpenAccountRequest,
    OpenAccountResponse,
    ReferralEdge,
    RegisterDeviceRequest,
    ResolveResponse,
    ResolveWithdrawalRequest,
    VerifyDeviceRequest,
    VerifyResponse,
    WithdrawalRequest,
    WithdrawRequest,
    WithdrawResponse,
    utcnow,
)
from .quota import QuotaResetter
from .referrals import ReferralGraph
from .storage import Storage, create_storage
from .withdrawals import WithdrawalLedger

logger = get_logger(__name__)

_request_adapter = TypeAdapter(LedgerRequest)


def parse_request(payload: Any) -> LedgerRequest:
    """Validate a loosely typed payload into one of the tagged request variants."""
    try:
        return _request_adapter.validate_python(payload)
    except ValidationError as exc:
        raise RequestValidationError(str(exc)) from exc


class RewardsService:
    def __init__(
        self,
        settings: Optional[RewardsSettings] = None,
        storage: Optional[Storage] = None,
        events: Optional[EventEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or create_storage(self.settings.database_url, self.settings.lock_stripes)
        self.events = events or EventEmitter(maxsize=self.settings.event_queue_size)
        self.accounts = AccountStore(self.storage, self.events, clock)
        self.referrals = ReferralGraph(self.storage, self.events, self.settings, clock)
        self.devices = DeviceRegistry(self.storage, self.settings, clock)
        self.withdrawals = WithdrawalLedger(self.storage, self.events, self.settings, clock)
        self.quota = QuotaResetter(self.storage, self.settings.quota_reset_interval_seconds, clock)

    def start(self) -> None:
        self.events.start()
        self.quota.start()

    def stop(self) -> None:
        self.quota.stop()
        self.events.stop()
        self.storage.close()

    # Front-end operations

    def open_account(self, request: OpenAccountRequest) -> OpenAccountResponse:
        """First contact (or a revisit) from the front-end.

        New accounts get the join bonus; a referral in the same call is only
        honoured for a newly created account. With ``surface_unknown_referrer``
        an unknown referrer is refused before anything is created.
        """
        if self.settings.surface_unknown_referrer and request.ref and request.ref != request.uid:
            self._check_referrer_for_new_account(request)

        account, created = self.accounts.get_or_create(request.uid, self.settings.join_bonus)
        if not created:
            self.accounts.touch_last_seen(request.uid)

        edge = None
        if created and request.ref and request.ref != request.uid:
            edge = self._claim_on_open(request)

        return OpenAccountResponse(
            user=account,
            created=created,
            referral=edge,
            limits=self.withdrawals.limits,
        )

    def _check_referrer_for_new_account(self, request: OpenAccountRequest) -> None:
        # Accounts are never deleted, so a referrer seen here still exists at claim time.
        if self.accounts.find(request.uid) is not None:
            return
        if self.accounts.find(request.ref) is None:
            logger.warning("open_refused_unknown_referrer", account_id=request.uid, referrer_id=request.ref)
            raise UnknownReferrerError(f"Referrer {request.ref} not found")

    def _claim_on_open(self, request: OpenAccountRequest) -> Optional[ReferralEdge]:
        try:
            return self.referrals.claim_referral(request.uid, request.ref, request.fingerprint)
        except UnknownReferrerError:
            if self.settings.surface_unknown_referrer:
                raise
            return None
        except (AlreadyReferredError, SelfReferralError) as exc:
            logger.info("referral_ignored_on_open", referred_id=request.uid, reason=exc.code)
            return None

    def claim_referral(self, request: ClaimReferralRequest) -> ReferralEdge:
        return self.referrals.claim_referral(request.uid, request.ref, request.fingerprint)

    def register_device(self, request: RegisterDeviceRequest) -> ChallengeResponse:
        challenge = self.devices.register_device(request.uid, request.fingerprint)
        if challenge is None:
            return ChallengeResponse(challenge_required=False, message="Device already verified")
        return ChallengeResponse(
            challenge_required=True,
            expires_at=challenge.expires_at,
            message="Verification code issued",
        )

    def verify_device(self, request: VerifyDeviceRequest) -> VerifyResponse:
        account = self.devices.verify(request.uid, request.fingerprint, request.code)
        return VerifyResponse(user=account, message="Device verified")

    def withdraw(self, request: WithdrawRequest) -> WithdrawResponse:
        withdrawal, account = self.withdrawals.request_withdrawal(request.uid, request.upi)
        return WithdrawResponse(
            message="Withdraw submitted successfully",
            request_id=withdrawal.id,
            amount=withdrawal.amount,
            balance=account.balance,
        )

    # Administrative operations

    def authorize_admin(self, credential: Optional[str]) -> None:
        secret = self.settings.admin_secret
        if secret is None or not credential:
            raise UnauthorizedError("Unauthorized")
        if not secrets.compare_digest(credential.encode(), secret.get_secret_value().encode()):
            logger.warning("admin_credential_rejected")
            raise UnauthorizedError("Unauthorized")

    def resolve_withdrawal(self, credential: Optional[str], request: ResolveWithdrawalRequest) -> ResolveResponse:
        self.authorize_admin(credential)
        withdrawal = self.withdrawals.resolve_withdrawal(request.request_id, request.status)
        return ResolveResponse(message=f"Withdraw {withdrawal.status.value}", withdrawal=withdrawal)

    def invalidate_referral(self, credential: Optional[str], referred_id: str) -> ReferralEdge:
        self.authorize_admin(credential)
        return self.referrals.invalidate_referral(referred_id)

    def admin_stats(self, credential: Optional[str]) -> AdminStats:
        self.authorize_admin(credential)
        return self.storage.stats()

    def pending_withdrawals(self, credential: Optional[str], limit: int = 100) -> list[WithdrawalRequest]:
        self.authorize_admin(credential)
        return self.withdrawals.pending(limit)

    def dispatch(self, payload: Any, credential: Optional[str] = None):
        """Validate ``payload`` and run the operation its ``kind`` names."""
        request = parse_request(payload)
        if isinstance(request, OpenAccountRequest):
            return self.open_account(request)
        if isinstance(request, RegisterDeviceRequest):
            return self.register_device(request)
        if isinstance(request, VerifyDeviceRequest):
            return self.verify_device(request)
        if isinstance(request, ClaimReferralRequest):
            return self.claim_referral(request)
        if isinstance(request, WithdrawRequest):
            return self.withdraw(request)
        return self.resolve_withdrawal(credential, request)

