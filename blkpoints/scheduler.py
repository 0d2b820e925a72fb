from datetime import datetime
from typing import Optional

import structlog

from .constants import REFERRAL_CONFIRM_DELAY
from .errors import InvalidStateTransitionError
from .events import ReferralBonusConfirmed, ReferralBonusPending, ReferralBonusReleased
from .ledger import Ledger
from .models import (
    FINAL_BOOKING_STATUSES,
    BookingStatus,
    EntryStatus,
    LedgerEntry,
    ReferralRecord,
    ReferralStatus,
)
from .storage.base import StorageTransaction

logger = structlog.get_logger(__name__)


class PendingConfirmationScheduler:
    """Holds referral bonuses for 24 hours and settles them on a sweep.

    A referral only leaves ``pending_confirmation`` through a status
    compare-and-set, so when several sweeps race over the same record exactly
    one of them settles the entry and credits the balance.
    """

    def __init__(self, ledger: Ledger, batch_size: int = 200):
        self.ledger = ledger
        self.batch_size = batch_size

    def open_window(
        self, txn: StorageTransaction, referral: ReferralRecord, entry: LedgerEntry, now: datetime
    ) -> ReferralRecord:
        confirm_at = now + REFERRAL_CONFIRM_DELAY
        pending = txn.transition_referral(
            referral.id,
            ReferralStatus.COMPLETED,
            ReferralStatus.PENDING_CONFIRMATION,
            now,
            confirm_at=confirm_at,
        )
        if pending is None:
            raise InvalidStateTransitionError(
                f"Referral {referral.id} must be completed to open a confirmation window"
            )
        txn.events.append(ReferralBonusPending(
            user_id=referral.referrer_id,
            occurred_at=now,
            referral_id=referral.id,
            entry_id=entry.id,
            points=entry.delta_points,
            confirm_at=confirm_at,
        ))
        logger.info(
            "referral_bonus_pending",
            referrer_id=referral.referrer_id,
            referral_id=str(referral.id),
            confirm_at=confirm_at.isoformat(),
        )
        return pending

    def sweep(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Settle every due referral, one transaction per record.

        Due records are paged by ``(confirm_at, id)`` so records left
        unresolved never hide the ones behind them. A record whose
        settlement raises is counted as ``failed`` and retried next sweep.
        """
        now = now or self.ledger.clock()
        counts = {"examined": 0, "confirmed": 0, "cancelled": 0, "skipped": 0, "lost_race": 0, "failed": 0}
        after = None

        while True:
            due = self.ledger.read(lambda txn: txn.due_referrals(now, self.batch_size, after=after))
            for referral in due:
                counts["examined"] += 1
                try:
                    outcome = self.ledger.transact(
                        referral.referrer_id, lambda txn, r=referral: self._settle(txn, r, now)
                    )
                except Exception:
                    logger.exception("referral_settlement_failed", referral_id=str(referral.id))
                    outcome = "failed"
                counts[outcome] += 1
            if len(due) < self.batch_size:
                break
            after = (due[-1].confirm_at, due[-1].id)

        logger.info("confirmation_sweep_finished", **counts)
        return counts

    def _settle(self, txn: StorageTransaction, referral: ReferralRecord, now: datetime) -> str:
        current = txn.get_referral(referral.id)
        if current is None or not current.is_due(now):
            return "lost_race"

        booking = txn.get_booking(current.first_booking_id) if current.first_booking_id else None
        resolved = booking is not None and (
            booking.status == BookingStatus.COMPLETED or booking.status in FINAL_BOOKING_STATUSES
        )
        if not resolved:
            logger.warning(
                "referral_booking_unresolved",
                referral_id=str(current.id),
                booking_id=current.first_booking_id,
            )
            return "skipped"

        entry = txn.find_referral_bonus(current.referee_id)
        if entry is None:
            logger.error("referral_bonus_entry_missing", referral_id=str(current.id))
            return "skipped"

        if booking.status == BookingStatus.COMPLETED:
            if txn.transition_referral(
                current.id, ReferralStatus.PENDING_CONFIRMATION, ReferralStatus.CONFIRMED, now
            ) is None:
                return "lost_race"
            self.ledger.entries.settle(txn, entry.id, EntryStatus.CONFIRMED, now)
            balance = self.ledger.balances.apply_delta(txn, entry.user_id, entry.delta_points, now)
            txn.events.append(ReferralBonusConfirmed(
                user_id=entry.user_id,
                occurred_at=now,
                referral_id=current.id,
                entry_id=entry.id,
                points=entry.delta_points,
                balance=balance,
            ))
            logger.info(
                "referral_confirmed",
                referrer_id=entry.user_id,
                referral_id=str(current.id),
                points=entry.delta_points,
                balance=balance,
            )
            return "confirmed"

        if txn.transition_referral(
            current.id, ReferralStatus.PENDING_CONFIRMATION, ReferralStatus.CANCELLED, now
        ) is None:
            return "lost_race"
        self.ledger.entries.settle(txn, entry.id, EntryStatus.RELEASED, now)
        txn.events.append(ReferralBonusReleased(
            user_id=entry.user_id,
            occurred_at=now,
            referral_id=current.id,
            entry_id=entry.id,
            points=entry.delta_points,
            booking_status=booking.status.value,
        ))
        logger.info(
            "referral_released",
            referrer_id=entry.user_id,
            referral_id=str(current.id),
            booking_status=booking.status.value,
        )
        return "cancelled"
