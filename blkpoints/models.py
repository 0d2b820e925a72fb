from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EntryReason(str, Enum):
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    REVIEW_VERIFIED = "REVIEW_VERIFIED"
    REFERRAL_COMPLETED = "REFERRAL_COMPLETED"
    REDEEM = "REDEEM"
    ADJUSTMENT = "ADJUSTMENT"
    REVERSAL = "REVERSAL"


class EntryStatus(str, Enum):
    POSTED = "POSTED"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    RELEASED = "RELEASED"


BALANCE_STATUSES = frozenset({EntryStatus.POSTED, EntryStatus.CONFIRMED})


class ReferralStatus(str, Enum):
    CLICKED = "clicked"
    SIGNED_UP = "signed_up"
    COMPLETED = "completed"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class BookingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


FINAL_BOOKING_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.REFUNDED})


class LedgerEntry(BaseModel):
    id: UUID
    user_id: str
    delta_points: int
    reason: EntryReason
    status: EntryStatus = EntryStatus.POSTED
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def idempotency_key(self) -> Optional[str]:
        return self.metadata.get("idempotencyKey")

    @property
    def counts_toward_balance(self) -> bool:
        return self.status in BALANCE_STATUSES


class BalanceRecord(BaseModel):
    user_id: str
    points: int = Field(default=0, ge=0)
    version: int = 0
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReferralRecord(BaseModel):
    id: UUID
    referrer_id: str
    referee_id: Optional[str] = None
    status: ReferralStatus
    device_fingerprint: Optional[str] = None
    phone_hash: Optional[str] = None
    payment_hash: Optional[str] = None
    ip_address: Optional[str] = None
    first_booking_id: Optional[str] = None
    booking_completed_at: Optional[datetime] = None
    confirm_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_due(self, now: datetime) -> bool:
        return (
            self.status == ReferralStatus.PENDING_CONFIRMATION
            and self.confirm_at is not None
            and self.confirm_at <= now
        )


class Account(BaseModel):
    user_id: str
    email: Optional[str] = None
    phone_hash: Optional[str] = None
    phone_verified: bool = False
    device_fingerprint: Optional[str] = None
    payment_hash: Optional[str] = None
    referred_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingRecord(BaseModel):
    booking_id: str
    user_id: str
    status: BookingStatus
    amount_pence: Optional[int] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FraudAuditRecord(BaseModel):
    id: UUID
    code: str
    stage: str
    referrer_id: Optional[str] = None
    referee_id: Optional[str] = None
    detail: str = ""
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Operation results

class EarnResult(BaseModel):
    entry: LedgerEntry
    balance: int
    replayed: bool = False
    message: str


class RedemptionResult(BaseModel):
    entry_id: UUID
    user_id: str
    points: int
    value_pence: int
    value_gbp: Decimal
    balance_after: int
    replayed: bool = False


class SignupResult(BaseModel):
    account: Account
    referral: Optional[ReferralRecord] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


# Dashboard-facing shapes use camelCase keys.

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RedemptionCapStatus(CamelModel):
    max: int
    redeemed: int
    remaining: int
    percentage: float
    reset_at: Optional[datetime] = None


class LoyaltyStatus(CamelModel):
    points: int
    gbp_value: Decimal
    min_redeem_gbp: Decimal
    min_redeem_points: int
    can_redeem: bool
    is_verified: bool
    redemption_cap: RedemptionCapStatus


class SuspiciousReferrer(CamelModel):
    referrer_id: str
    total_refs: int
    unique_devices: int
    unique_phones: int
    unique_ips: int
    device_ratio: float
    phone_ratio: float
    risk_score: int
    referrals: list[ReferralRecord]


class SuspiciousReportSummary(CamelModel):
    total_referrers: int
    flagged: int
    total_referrals: int


class SuspiciousReferrerReport(CamelModel):
    suspicious: list[SuspiciousReferrer]
    summary: SuspiciousReportSummary


# HTTP requests

class CompleteBookingRequest(BaseModel):
    user_id: str
    booking_id: str
    amount_gbp: Decimal = Field(..., description="Amount actually charged for the booking")
    idempotency_key: Optional[str] = Field(
        default=None, description="Recorded with the grant; duplicates are detected per booking"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {"user_id": "user-123", "booking_id": "bk-991", "amount_gbp": "42.50"}
    })


class BookingStatusRequest(BaseModel):
    status: BookingStatus
    user_id: Optional[str] = None


class VerifiedReviewRequest(BaseModel):
    user_id: str
    review_id: str
    idempotency_key: Optional[str] = None


class ReferralClickRequest(BaseModel):
    referrer_id: str
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None


class SignupRequest(BaseModel):
    user_id: str
    email: str
    mobile_number: Optional[str] = None
    device_fingerprint: Optional[str] = None
    payment_fingerprint: Optional[str] = Field(default=None, description="Card fingerprint from the payment provider")
    ip_address: Optional[str] = None
    referrer_id: Optional[str] = None
    referral_id: Optional[UUID] = Field(default=None, description="Click record created by /referrals/click")


class PhoneVerifiedRequest(BaseModel):
    mobile_number: Optional[str] = None
    verified: bool = True


class RedeemRequest(BaseModel):
    idempotency_key: str = Field(..., description="Unique key to prevent double debits on retry")
    user_id: str
    points: int
    booking_amount_gbp: Optional[Decimal] = None
    booking_id: Optional[str] = Field(default=None, description="Points are given back if this booking is cancelled")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "idempotency_key": "redeem-user-123-1718000000",
            "user_id": "user-123",
            "points": 500,
            "booking_amount_gbp": "10.00",
            "booking_id": "bk-991",
        }
    })


class RedeemResponse(BaseModel):
    value_gbp: Decimal
    points: int
    balance_after: int
    entry_id: UUID
    replayed: bool = False


class AdjustPointsRequest(BaseModel):
    idempotency_key: str
    user_id: str
    points: int = Field(..., description="Signed points delta")
    note: str = Field(default="Manual adjustment")
    performed_by: Optional[str] = None


class ReverseEntryRequest(BaseModel):
    reason: str = Field(..., description="Reason for reversal")
    performed_by: Optional[str] = None


class SignupResponse(BaseModel):
    user_id: str
    message: str = "Account created"
