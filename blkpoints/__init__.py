"""
BlkPoints loyalty ledger

This package provides:
- An append-only points ledger with a transactional balance projection
- Idempotent earning for bookings, verified reviews and referrals
- Checkout redemption with minimum, increment, verification and rolling-cap rules
- Referral fraud checks at signup and booking time, plus a suspicious-referrer report
- A 24-hour confirmation window for referral bonuses, settled by a Celery beat sweep
- Redeemed points given back when their booking is cancelled or refunded
"""

from .models import (
    EntryReason,
    EntryStatus,
    LedgerEntry,
    LoyaltyStatus,
    RedemptionResult,
    ReferralStatus,
)
from .service import LoyaltyService, build_service

__all__ = [
    "EntryReason",
    "EntryStatus",
    "LedgerEntry",
    "LoyaltyStatus",
    "RedemptionResult",
    "ReferralStatus",
    "LoyaltyService",
    "build_service",
]
