from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import (
    AlreadyReferredError,
    InvalidStateTransitionError,
    NotFoundError,
    PolicyViolation,
    RequestValidationError,
    RewardsError,
    StorageError,
    UnauthorizedError,
)
from .logging_config import setup_logging
from .models import (
    Account,
    AdminStats,
    ChallengeResponse,
    ClaimReferralRequest,
    OpenAccountRequest,
    OpenAccountResponse,
    ReferralEdge,
    ReferralListResponse,
    RegisterDeviceRequest,
    ResolveResponse,
    ResolveWithdrawalRequest,
    VerifyDeviceRequest,
    VerifyResponse,
    WithdrawalHistoryResponse,
    WithdrawalRequest,
    WithdrawRequest,
    WithdrawResponse,
    utcnow,
)
from .service import RewardsService

_STATUS_BY_ERROR = [
    (RequestValidationError, status.HTTP_400_BAD_REQUEST),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyReferredError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (PolicyViolation, status.HTTP_400_BAD_REQUEST),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _http_error(exc: RewardsError) -> HTTPException:
    code = next(
        (status_code for error_type, status_code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(status_code=code, detail={"ok": False, "code": exc.code, "error": str(exc)})


@lru_cache
def get_service() -> RewardsService:
    return RewardsService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    service = get_service()
    service.start()
    yield
    service.stop()


app = FastAPI(
    title="Referral Rewards API",
    description="Join and referral bonuses, device verification and withdrawal requests",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["System"])
def health_check():
    return {"ok": True, "status": "running", "timestamp": utcnow().isoformat()}


@app.post("/open", response_model=OpenAccountResponse, tags=["Accounts"])
def open_account(request: OpenAccountRequest, service: RewardsService = Depends(get_service)) -> OpenAccountResponse:
    try:
        return service.open_account(request)
    except RewardsError as e:
        raise _http_error(e)


@app.get("/accounts/{uid}", response_model=Account, tags=["Accounts"])
def get_account(uid: str, service: RewardsService = Depends(get_service)) -> Account:
    try:
        return service.accounts.get(uid)
    except RewardsError as e:
        raise _http_error(e)


@app.get("/balance/{uid}", tags=["Accounts"])
def get_balance(uid: str, service: RewardsService = Depends(get_service)):
    try:
        return {"ok": True, "balance": service.accounts.get(uid).balance}
    except RewardsError as e:
        raise _http_error(e)


@app.post("/devices", response_model=ChallengeResponse, tags=["Devices"])
def register_device(request: RegisterDeviceRequest, service: RewardsService = Depends(get_service)) -> ChallengeResponse:
    try:
        return service.register_device(request)
    except RewardsError as e:
        raise _http_error(e)


@app.post("/devices/verify", response_model=VerifyResponse, tags=["Devices"])
def verify_device(request: VerifyDeviceRequest, service: RewardsService = Depends(get_service)) -> VerifyResponse:
    try:
        return service.verify_device(request)
    except RewardsError as e:
        raise _http_error(e)


@app.post("/referrals", response_model=ReferralEdge, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def claim_referral(request: ClaimReferralRequest, service: RewardsService = Depends(get_service)) -> ReferralEdge:
    try:
        return service.claim_referral(request)
    except RewardsError as e:
        raise _http_error(e)


@app.get("/referrals/{uid}", response_model=ReferralListResponse, tags=["Referrals"])
def list_referrals(uid: str, service: RewardsService = Depends(get_service)) -> ReferralListResponse:
    referrals = service.referrals.list_referrals(uid)
    return ReferralListResponse(referrals=referrals, count=len(referrals))


@app.post("/withdraw", response_model=WithdrawResponse, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
def withdraw(request: WithdrawRequest, service: RewardsService = Depends(get_service)) -> WithdrawResponse:
    try:
        return service.withdraw(request)
    except RewardsError as e:
        raise _http_error(e)


@app.get("/withdraw-history/{uid}", response_model=WithdrawalHistoryResponse, tags=["Withdrawals"])
def withdraw_history(uid: str, limit: int = 20, service: RewardsService = Depends(get_service)) -> WithdrawalHistoryResponse:
    return WithdrawalHistoryResponse(withdrawals=service.withdrawals.history(uid, limit))


@app.post("/admin/update-withdraw", response_model=ResolveResponse, tags=["Admin"])
def resolve_withdrawal(
    request: ResolveWithdrawalRequest,
    x_admin_secret: Optional[str] = Header(default=None),
    service: RewardsService = Depends(get_service),
) -> ResolveResponse:
    try:
        return service.resolve_withdrawal(x_admin_secret, request)
    except RewardsError as e:
        raise _http_error(e)


@app.post("/admin/referrals/{referred_id}/invalidate", response_model=ReferralEdge, tags=["Admin"])
def invalidate_referral(
    referred_id: str,
    x_admin_secret: Optional[str] = Header(default=None),
    service: RewardsService = Depends(get_service),
) -> ReferralEdge:
    try:
        return service.invalidate_referral(x_admin_secret, referred_id)
    except RewardsError as e:
        raise _http_error(e)


@app.get("/admin/withdrawals/pending", response_model=list[WithdrawalRequest], tags=["Admin"])
def pending_withdrawals(
    limit: int = 100,
    x_admin_secret: Optional[str] = Header(default=None),
    service: RewardsService = Depends(get_service),
) -> list[WithdrawalRequest]:
    try:
        return service.pending_withdrawals(x_admin_secret, limit)
    except RewardsError as e:
        raise _http_error(e)


@app.get("/admin/stats", response_model=AdminStats, tags=["Admin"])
def admin_stats(
    x_admin_secret: Optional[str] = Header(default=None),
    service: RewardsService = Depends(get_service),
) -> AdminStats:
    try:
        return service.admin_stats(x_admin_secret)
    except RewardsError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
