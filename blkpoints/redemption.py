from datetime import datetime
from typing import Optional

import structlog

from .constants import (
    MAX_BOOKING_SHARE_PERCENT,
    MIN_ORDER_MULTIPLIER,
    MIN_REDEEM_PENCE,
    MIN_REDEEM_POINTS,
    REDEEM_INCREMENT_POINTS,
    REDEMPTION_CAP_POINTS,
    REDEMPTION_CAP_WINDOW,
    pence_to_gbp,
    points_to_pence,
)
from .errors import (
    BelowMinimumRedemption,
    BookingBelowMinimum,
    InsufficientBalance,
    InvalidAmount,
    InvalidIncrement,
    InvalidStateTransitionError,
    PhoneNotVerified,
    RedemptionCapExceeded,
    RedemptionExceedsBookingCap,
)
from .events import PointsRedeemed
from .ledger import Ledger
from .models import FINAL_BOOKING_STATUSES, EntryReason, LedgerEntry, RedemptionCapStatus, RedemptionResult
from .storage.base import StorageTransaction

logger = structlog.get_logger(__name__)


def redeem_key(user_id: str, client_token: str) -> str:
    prefix = f"redeem-{user_id}-"
    return client_token if client_token.startswith(prefix) else prefix + client_token


def _result(entry: LedgerEntry, replayed: bool = False) -> RedemptionResult:
    points = -entry.delta_points
    value_pence = points_to_pence(points)
    return RedemptionResult(
        entry_id=entry.id,
        user_id=entry.user_id,
        points=points,
        value_pence=value_pence,
        value_gbp=pence_to_gbp(value_pence),
        balance_after=entry.metadata["balanceAfter"],
        replayed=replayed,
    )


class RedemptionEngine:
    """Validates and posts point debits at checkout.

    Rules are checked in a fixed order and the first failure wins:
    minimum, increment, phone verification, balance, rolling cap, then the
    booking-amount rules when a booking amount is supplied.
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def cap_status(self, txn: StorageTransaction, user_id: str, now: datetime) -> RedemptionCapStatus:
        # Redemptions given back on a cancelled booking no longer count.
        window = [
            e for e in txn.redeemed_since(user_id, now - REDEMPTION_CAP_WINDOW)
            if txn.find_reversal(e.id) is None
        ]
        redeemed = sum(-e.delta_points for e in window)
        reset_at = min(e.created_at for e in window) + REDEMPTION_CAP_WINDOW if window else None
        return RedemptionCapStatus(
            max=REDEMPTION_CAP_POINTS,
            redeemed=redeemed,
            remaining=max(REDEMPTION_CAP_POINTS - redeemed, 0),
            percentage=round(redeemed * 100 / REDEMPTION_CAP_POINTS, 2),
            reset_at=reset_at,
        )

    def _validate_points(self, points: int) -> None:
        if points < MIN_REDEEM_POINTS:
            raise BelowMinimumRedemption(
                f"Minimum redemption is {MIN_REDEEM_POINTS} points (£{pence_to_gbp(MIN_REDEEM_PENCE)})"
            )
        if points % REDEEM_INCREMENT_POINTS != 0:
            raise InvalidIncrement(
                f"Points must be redeemed in multiples of {REDEEM_INCREMENT_POINTS} "
                f"(£{pence_to_gbp(points_to_pence(REDEEM_INCREMENT_POINTS))})"
            )

    def _validate_booking(self, value_pence: int, booking_amount_pence: int) -> None:
        if booking_amount_pence <= 0:
            raise InvalidAmount("Booking amount must be greater than zero")
        min_order_pence = MIN_ORDER_MULTIPLIER * MIN_REDEEM_PENCE
        if booking_amount_pence < min_order_pence:
            raise BookingBelowMinimum(
                f"Booking must be at least £{pence_to_gbp(min_order_pence)} to use BlkPoints"
            )
        if value_pence * 100 > booking_amount_pence * MAX_BOOKING_SHARE_PERCENT:
            max_pence = booking_amount_pence * MAX_BOOKING_SHARE_PERCENT // 100
            raise RedemptionExceedsBookingCap(
                f"BlkPoints can cover at most {MAX_BOOKING_SHARE_PERCENT}% of a booking "
                f"(£{pence_to_gbp(max_pence)} here)"
            )

    def redeem(
        self,
        user_id: str,
        points: int,
        idempotency_key: str,
        booking_amount_pence: Optional[int] = None,
        phone_verified: Optional[bool] = None,
        booking_id: Optional[str] = None,
    ) -> RedemptionResult:
        key = redeem_key(user_id, idempotency_key)

        def work(txn: StorageTransaction) -> RedemptionResult:
            replay = self.ledger.replayed_entry(txn, key, user_id)
            if replay is not None:
                return _result(replay, replayed=True)

            self._validate_points(points)

            verified = phone_verified
            if verified is None:
                account = txn.get_account(user_id)
                verified = account is not None and account.phone_verified
            if not verified:
                raise PhoneNotVerified("Verify your mobile number to redeem BlkPoints")

            balance = self.ledger.balances.get_balance(txn, user_id)
            if balance < points:
                raise InsufficientBalance(
                    f"Insufficient BlkPoints balance: {balance} available, {points} required"
                )

            now = self.ledger.clock()
            cap = self.cap_status(txn, user_id, now)
            if cap.redeemed + points > REDEMPTION_CAP_POINTS:
                raise RedemptionCapExceeded(
                    f"Redemption limit reached: {cap.remaining} of {REDEMPTION_CAP_POINTS} points "
                    f"left in the current 30-day window"
                )

            value_pence = points_to_pence(points)
            if booking_amount_pence is not None:
                self._validate_booking(value_pence, booking_amount_pence)
            if booking_id is not None:
                booking = txn.get_booking(booking_id)
                if booking is not None and booking.status in FINAL_BOOKING_STATUSES:
                    raise InvalidStateTransitionError(
                        f"Booking {booking_id} is {booking.status.value} and cannot take a redemption"
                    )

            entry, balance_after = self.ledger.post(
                txn,
                user_id=user_id,
                delta_points=-points,
                reason=EntryReason.REDEEM,
                metadata={
                    "valuePence": value_pence,
                    "bookingId": booking_id,
                    "bookingAmountPence": booking_amount_pence,
                    "balanceAfter": balance - points,
                },
                idempotency_key=key,
            )
            txn.events.append(PointsRedeemed(
                user_id=user_id,
                occurred_at=now,
                entry_id=entry.id,
                points=points,
                value_pence=value_pence,
                balance=balance_after,
            ))
            logger.info(
                "points_redeemed",
                user_id=user_id,
                points=points,
                booking_id=booking_id,
                value_pence=value_pence,
                balance=balance_after,
            )
            return _result(entry)

        return self.ledger.transact(user_id, work)
