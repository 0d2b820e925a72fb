"""Storage contract shared by the in-memory and SQL backends.

Everything the engines read or write goes through a ``StorageTransaction``
obtained from ``LoyaltyStorage.transaction(user_id)``. Whatever happens in
one transaction is committed together or discarded together. Transactions
opened for the same user are serialized.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from ..models import (
    Account,
    BalanceRecord,
    BookingRecord,
    EntryStatus,
    FraudAuditRecord,
    LedgerEntry,
    ReferralRecord,
    ReferralStatus,
)


class StorageTransaction(ABC):
    def __init__(self):
        # Events are published by the caller once the transaction commits.
        self.events: list = []

    # Ledger

    @abstractmethod
    def add_entry(self, entry: LedgerEntry) -> None:
        """Insert an entry; raise DuplicateIdempotencyKey on a repeated (user, key)."""

    @abstractmethod
    def get_entry(self, entry_id: UUID) -> Optional[LedgerEntry]: ...

    @abstractmethod
    def entries_for_user(self, user_id: str) -> list[LedgerEntry]:
        """All entries of a user in append order."""

    @abstractmethod
    def set_entry_status(
        self, entry_id: UUID, expected: EntryStatus, new: EntryStatus, at: datetime
    ) -> Optional[LedgerEntry]:
        """Compare-and-set the settlement status. None if ``expected`` no longer holds."""

    @abstractmethod
    def find_review_bonus(self, review_id: str) -> Optional[LedgerEntry]: ...

    @abstractmethod
    def find_referral_bonus(self, referee_id: str) -> Optional[LedgerEntry]: ...

    @abstractmethod
    def find_reversal(self, entry_id: UUID) -> Optional[LedgerEntry]: ...

    @abstractmethod
    def redeemed_since(self, user_id: str, since: datetime) -> list[LedgerEntry]:
        """REDEEM entries created at or after ``since``, oldest first."""

    @abstractmethod
    def redemptions_for_booking(self, booking_id: str) -> list[LedgerEntry]:
        """REDEEM entries that reached the balance and were made against ``booking_id``."""

    # Balance

    @abstractmethod
    def get_balance(self, user_id: str) -> Optional[BalanceRecord]:
        """Read the balance row, locking it for the rest of the transaction where supported."""

    @abstractmethod
    def save_balance(self, record: BalanceRecord, expected_version: int) -> None:
        """Write ``record`` if the stored version is still ``expected_version``.

        Raises ConcurrentUpdateError otherwise.
        """

    # Idempotency

    @abstractmethod
    def reserve_key(self, key: str, user_id: str, at: datetime) -> bool: ...

    @abstractmethod
    def bind_key(self, key: str, entry_id: UUID) -> None: ...

    @abstractmethod
    def lookup_key(self, key: str) -> Optional[UUID]: ...

    # Referrals

    @abstractmethod
    def add_referral(self, referral: ReferralRecord) -> None: ...

    @abstractmethod
    def get_referral(self, referral_id: UUID) -> Optional[ReferralRecord]: ...

    @abstractmethod
    def referral_for_referee(self, referee_id: str) -> Optional[ReferralRecord]: ...

    @abstractmethod
    def transition_referral(
        self,
        referral_id: UUID,
        expected: ReferralStatus,
        new: ReferralStatus,
        at: datetime,
        **changes: Any,
    ) -> Optional[ReferralRecord]:
        """Compare-and-set the referral status, applying ``changes`` with it.

        Returns the updated record, or None when the status was not ``expected``.
        """

    @abstractmethod
    def list_referrals(self) -> list[ReferralRecord]: ...

    @abstractmethod
    def due_referrals(
        self, now: datetime, limit: int, after: Optional[tuple[datetime, UUID]] = None
    ) -> list[ReferralRecord]:
        """Due ``pending_confirmation`` records ordered by ``(confirm_at, id)``, strictly after ``after``."""

    @abstractmethod
    def device_signed_up(self, device_fingerprint: str) -> bool:
        """Whether the device is already tied to a prior signup."""

    # Accounts

    @abstractmethod
    def get_account(self, user_id: str) -> Optional[Account]: ...

    @abstractmethod
    def save_account(self, account: Account) -> None: ...

    @abstractmethod
    def accounts_with_phone(self, phone_hash: str) -> list[Account]: ...

    @abstractmethod
    def accounts_with_payment(self, payment_hash: str) -> list[Account]: ...

    # Bookings

    @abstractmethod
    def get_booking(self, booking_id: str) -> Optional[BookingRecord]: ...

    @abstractmethod
    def save_booking(self, booking: BookingRecord) -> None: ...

    # Fraud audit trail

    @abstractmethod
    def add_fraud_audit(self, record: FraudAuditRecord) -> None: ...

    @abstractmethod
    def list_fraud_audit(self) -> list[FraudAuditRecord]: ...


class LoyaltyStorage(ABC):
    @abstractmethod
    def transaction(self, user_id: Optional[str] = None) -> AbstractContextManager[StorageTransaction]:
        """Open a unit of work, serialized per ``user_id`` when one is given."""
