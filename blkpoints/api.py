from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import (
    AccountNotFoundError,
    BookingNotFoundError,
    ConcurrentUpdateError,
    DuplicateIdempotencyKey,
    EntryNotFoundError,
    InvalidStateTransitionError,
    LoyaltyError,
    LoyaltyStateError,
    LoyaltyValidationError,
    PhoneNotVerified,
    ReferralNotFoundError,
)
from .logging import configure_logging
from .models import (
    Account,
    AdjustPointsRequest,
    BookingRecord,
    BookingStatusRequest,
    CompleteBookingRequest,
    EarnResult,
    LedgerHistoryResponse,
    LoyaltyStatus,
    PhoneVerifiedRequest,
    RedeemRequest,
    RedeemResponse,
    ReferralClickRequest,
    ReferralRecord,
    ReverseEntryRequest,
    SignupRequest,
    SignupResponse,
    SuspiciousReferrerReport,
    VerifiedReviewRequest,
)
from .service import LoyaltyService, get_service

NOT_FOUND_ERRORS = (EntryNotFoundError, BookingNotFoundError, AccountNotFoundError, ReferralNotFoundError)
CONFLICT_ERRORS = (LoyaltyStateError, InvalidStateTransitionError, DuplicateIdempotencyKey, ConcurrentUpdateError)


def http_error(e: LoyaltyError) -> HTTPException:
    detail = {"code": e.code, "message": str(e)}
    if isinstance(e, PhoneNotVerified):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={**detail, "action": e.action})
    if isinstance(e, NOT_FOUND_ERRORS):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(e, CONFLICT_ERRORS):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(e, LoyaltyValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"code": "rejected", "message": "Request rejected"})


configure_logging(get_settings().log_level)

app = FastAPI(
    title="BlkPoints Loyalty API",
    description="Points ledger, checkout redemption and referral fraud prevention",
    version="1.0.0",
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
    return {"status": "healthy", "service": "blkpoints"}


@app.post("/bookings/complete", response_model=EarnResult, tags=["Earning"])
def complete_booking(request: CompleteBookingRequest, service: LoyaltyService = Depends(get_service)) -> EarnResult:
    try:
        return service.complete_booking(request)
    except LoyaltyError as e:
        raise http_error(e)


@app.post("/bookings/{booking_id}/status", response_model=BookingRecord, tags=["Earning"])
def update_booking_status(
    booking_id: str, request: BookingStatusRequest, service: LoyaltyService = Depends(get_service)
) -> BookingRecord:
    try:
        return service.update_booking_status(booking_id, request)
    except LoyaltyError as e:
        raise http_error(e)


@app.post("/reviews/verified", response_model=EarnResult, tags=["Earning"])
def verify_review(request: VerifiedReviewRequest, service: LoyaltyService = Depends(get_service)) -> EarnResult:
    try:
        return service.verify_review(request)
    except LoyaltyError as e:
        raise http_error(e)


@app.post("/referrals/click", response_model=ReferralRecord, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def record_referral_click(
    request: ReferralClickRequest, service: LoyaltyService = Depends(get_service)
) -> ReferralRecord:
    return service.record_click(request)


@app.post("/signups", response_model=SignupResponse, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def signup(request: SignupRequest, service: LoyaltyService = Depends(get_service)) -> SignupResponse:
    try:
        result = service.signup(request)
    except LoyaltyError as e:
        raise http_error(e)
    return SignupResponse(user_id=result.account.user_id)


@app.post("/users/{user_id}/phone-verified", response_model=Account, tags=["Users"])
def phone_verified(
    user_id: str, request: PhoneVerifiedRequest, service: LoyaltyService = Depends(get_service)
) -> Account:
    try:
        return service.set_phone_verified(user_id, request)
    except LoyaltyError as e:
        raise http_error(e)


@app.post("/loyalty/redeem", response_model=RedeemResponse, tags=["Redemption"])
def redeem(request: RedeemRequest, service: LoyaltyService = Depends(get_service)) -> RedeemResponse:
    try:
        result = service.redeem(request)
    except LoyaltyError as e:
        raise http_error(e)
    return RedeemResponse(
        value_gbp=result.value_gbp,
        points=result.points,
        balance_after=result.balance_after,
        entry_id=result.entry_id,
        replayed=result.replayed,
    )


@app.get(
    "/users/{user_id}/loyalty/status",
    response_model=LoyaltyStatus,
    response_model_by_alias=True,
    tags=["Users"],
)
def loyalty_status(user_id: str, service: LoyaltyService = Depends(get_service)) -> LoyaltyStatus:
    return service.status(user_id)


@app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def ledger_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: LoyaltyService = Depends(get_service),
) -> LedgerHistoryResponse:
    return service.history(user_id, limit, offset)


@app.post("/admin/points/adjust", response_model=EarnResult, tags=["Admin"])
def adjust_points(request: AdjustPointsRequest, service: LoyaltyService = Depends(get_service)) -> EarnResult:
    try:
        return service.adjust_points(request)
    except LoyaltyError as e:
        raise http_error(e)


@app.post("/admin/entries/{entry_id}/reverse", response_model=EarnResult, tags=["Admin"])
def reverse_entry(
    entry_id: UUID, request: ReverseEntryRequest, service: LoyaltyService = Depends(get_service)
) -> EarnResult:
    try:
        return service.reverse_entry(entry_id, request)
    except LoyaltyError as e:
        raise http_error(e)


@app.get(
    "/admin/referrals/suspicious",
    response_model=SuspiciousReferrerReport,
    response_model_by_alias=True,
    tags=["Admin"],
)
def suspicious_referrers(service: LoyaltyService = Depends(get_service)) -> SuspiciousReferrerReport:
    return service.suspicious_report()


@app.post("/admin/confirmation-sweep", tags=["Admin"])
def confirmation_sweep(service: LoyaltyService = Depends(get_service)) -> dict:
    return service.run_sweep()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
