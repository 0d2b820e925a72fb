from typing import Optional

import structlog

from .constants import REFERRAL_BONUS_POINTS, REVIEW_BONUS_POINTS, booking_points
from .errors import DuplicateBonus, InvalidAmount, InvalidStateTransitionError
from .events import PointsEarned
from .ledger import Ledger
from .models import (
    FINAL_BOOKING_STATUSES,
    BookingRecord,
    BookingStatus,
    EarnResult,
    EntryReason,
    EntryStatus,
    LedgerEntry,
)
from .referrals import ReferralFraudGuard
from .scheduler import PendingConfirmationScheduler
from .storage.base import StorageTransaction

logger = structlog.get_logger(__name__)


def booking_key(booking_id: str, user_id: str) -> str:
    return f"booking-{booking_id}-{user_id}"


def review_key(review_id: str, user_id: str) -> str:
    return f"review-{review_id}-{user_id}"


def referral_key(booking_id: str, referrer_id: str) -> str:
    return f"referral-{booking_id}-{referrer_id}"


class EarningEngine:
    """Posts point grants for completed bookings, verified reviews and referrals."""

    def __init__(
        self,
        ledger: Ledger,
        fraud_guard: ReferralFraudGuard,
        scheduler: PendingConfirmationScheduler,
    ):
        self.ledger = ledger
        self.fraud_guard = fraud_guard
        self.scheduler = scheduler

    def _replay(self, txn: StorageTransaction, key: str, user_id: str) -> Optional[EarnResult]:
        entry = self.ledger.replayed_entry(txn, key, user_id)
        if entry is None:
            return None
        return EarnResult(
            entry=entry,
            balance=self.ledger.balances.get_balance(txn, user_id),
            replayed=True,
            message="Points already granted (idempotent return)",
        )

    def _earned(self, txn: StorageTransaction, entry: LedgerEntry, balance: int, booking_id=None) -> None:
        txn.events.append(PointsEarned(
            user_id=entry.user_id,
            occurred_at=entry.created_at,
            entry_id=entry.id,
            points=entry.delta_points,
            reason=entry.reason.value,
            booking_id=booking_id,
        ))
        logger.info(
            "points_earned",
            user_id=entry.user_id,
            points=entry.delta_points,
            reason=entry.reason.value,
            balance=balance,
        )

    def earn_on_completed_booking(
        self,
        user_id: str,
        amount_pence: int,
        booking_id: str,
        idempotency_key: Optional[str] = None,
    ) -> EarnResult:
        """Grant whole-pound points for a completed booking, once per booking.

        Duplicates are detected on ``booking-{booking_id}-{user_id}`` whatever
        key the caller sends; the caller's key is only recorded with the entry.
        A cancelled or refunded booking cannot be completed again.
        """
        if amount_pence <= 0:
            raise InvalidAmount("Booking amount must be greater than zero")
        key = booking_key(booking_id, user_id)

        def work(txn: StorageTransaction) -> EarnResult:
            existing = txn.get_booking(booking_id)
            if existing is not None and existing.status in FINAL_BOOKING_STATUSES:
                raise InvalidStateTransitionError(
                    f"Booking {booking_id} is {existing.status.value} and cannot be completed again"
                )
            replay = self._replay(txn, key, user_id)
            if replay:
                return replay

            now = self.ledger.clock()
            txn.save_booking(BookingRecord(
                booking_id=booking_id,
                user_id=user_id,
                status=BookingStatus.COMPLETED,
                amount_pence=amount_pence,
                updated_at=now,
            ))
            metadata = {"bookingId": booking_id, "amountPence": amount_pence}
            if idempotency_key and idempotency_key != key:
                metadata["requestKey"] = idempotency_key
            entry, balance = self.ledger.post(
                txn,
                user_id=user_id,
                delta_points=booking_points(amount_pence),
                reason=EntryReason.BOOKING_COMPLETED,
                metadata=metadata,
                idempotency_key=key,
            )
            self._earned(txn, entry, balance, booking_id)
            return EarnResult(entry=entry, balance=balance, message="Booking points granted")

        return self.ledger.transact(user_id, work)

    def earn_on_verified_review(
        self,
        user_id: str,
        review_id: str,
        idempotency_key: Optional[str] = None,
    ) -> EarnResult:
        key = idempotency_key or review_key(review_id, user_id)

        def work(txn: StorageTransaction) -> EarnResult:
            replay = self._replay(txn, key, user_id)
            if replay:
                return replay
            if txn.find_review_bonus(review_id) is not None:
                raise DuplicateBonus(f"Review {review_id} has already earned its bonus")

            entry, balance = self.ledger.post(
                txn,
                user_id=user_id,
                delta_points=REVIEW_BONUS_POINTS,
                reason=EntryReason.REVIEW_VERIFIED,
                metadata={"reviewId": review_id},
                idempotency_key=key,
            )
            self._earned(txn, entry, balance)
            return EarnResult(entry=entry, balance=balance, message="Review bonus granted")

        return self.ledger.transact(user_id, work)

    def earn_on_referral_completed(
        self,
        referrer_id: str,
        referee_id: str,
        booking_id: str,
        idempotency_key: Optional[str] = None,
    ) -> EarnResult:
        """Post the referrer's bonus as a held entry and open its confirmation window.

        The balance is only credited when the confirmation sweep finds the
        booking still completed 24 hours later.
        """
        key = idempotency_key or referral_key(booking_id, referrer_id)

        def work(txn: StorageTransaction) -> EarnResult:
            replay = self._replay(txn, key, referrer_id)
            if replay:
                return replay

            self.fraud_guard.check_booking(txn, referrer_id, referee_id)
            now = self.ledger.clock()
            referral = self.fraud_guard.claim_referral(txn, referrer_id, referee_id, booking_id, now)
            if txn.get_booking(booking_id) is None:
                txn.save_booking(BookingRecord(
                    booking_id=booking_id,
                    user_id=referee_id,
                    status=BookingStatus.COMPLETED,
                    updated_at=now,
                ))
            entry, balance = self.ledger.post(
                txn,
                user_id=referrer_id,
                delta_points=REFERRAL_BONUS_POINTS,
                reason=EntryReason.REFERRAL_COMPLETED,
                metadata={
                    "bookingId": booking_id,
                    "referralId": str(referral.id),
                    "refereeId": referee_id,
                },
                idempotency_key=key,
                status=EntryStatus.PENDING,
            )
            self.scheduler.open_window(txn, referral, entry, now)
            return EarnResult(entry=entry, balance=balance, message="Referral bonus pending confirmation")

        return self.ledger.transact(referrer_id, work)
