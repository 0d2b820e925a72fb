import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import Any, Callable, Iterator, Optional
from uuid import UUID

from ..errors import ConcurrentUpdateError, DuplicateIdempotencyKey
from ..models import (
    Account,
    BalanceRecord,
    BookingRecord,
    EntryReason,
    EntryStatus,
    FraudAuditRecord,
    LedgerEntry,
    ReferralRecord,
    ReferralStatus,
)
from .base import LoyaltyStorage, StorageTransaction


class InMemoryStorage(LoyaltyStorage):
    """Process-local storage for tests and single-instance deployments.

    Transactions for one user hold that user's lock for their whole duration.
    Each write records an undo step; a transaction that raises replays them in
    reverse so nothing it touched survives.
    """

    def __init__(self):
        self.ledger_entries: dict[UUID, LedgerEntry] = {}
        self.entries_by_user: dict[str, list[UUID]] = {}
        self.entry_keys: set[tuple[str, str]] = set()
        self.balances: dict[str, BalanceRecord] = {}
        self.idempotency_index: dict[str, Optional[UUID]] = {}
        self.referrals: dict[UUID, ReferralRecord] = {}
        self.accounts: dict[str, Account] = {}
        self.bookings: dict[str, BookingRecord] = {}
        self.fraud_audit: list[FraudAuditRecord] = []
        self._mutex = threading.RLock()
        self._user_locks: dict[str, threading.Lock] = {}

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._mutex:
            return self._user_locks.setdefault(user_id, threading.Lock())

    @contextmanager
    def transaction(self, user_id: Optional[str] = None) -> Iterator["InMemoryTransaction"]:
        lock = self._lock_for(user_id) if user_id is not None else nullcontext()
        with lock:
            txn = InMemoryTransaction(self)
            try:
                yield txn
            except BaseException:
                txn.rollback()
                raise


class InMemoryTransaction(StorageTransaction):
    def __init__(self, store: InMemoryStorage):
        super().__init__()
        self.store = store
        self._undo: list[Callable[[], None]] = []

    def rollback(self) -> None:
        with self.store._mutex:
            while self._undo:
                self._undo.pop()()

    def _restore(self, mapping: dict, key: Any) -> None:
        previous = mapping.get(key)
        if previous is None:
            self._undo.append(lambda: mapping.pop(key, None))
        else:
            self._undo.append(lambda: mapping.__setitem__(key, previous))

    # Ledger

    def add_entry(self, entry: LedgerEntry) -> None:
        s = self.store
        with s._mutex:
            key = entry.idempotency_key
            if key is not None and (entry.user_id, key) in s.entry_keys:
                raise DuplicateIdempotencyKey(f"Idempotency key {key} already used for user {entry.user_id}")
            if entry.id in s.ledger_entries:
                raise ConcurrentUpdateError(f"Ledger entry {entry.id} already exists")

            s.ledger_entries[entry.id] = entry
            s.entries_by_user.setdefault(entry.user_id, []).append(entry.id)
            if key is not None:
                s.entry_keys.add((entry.user_id, key))

            def undo():
                s.ledger_entries.pop(entry.id, None)
                s.entries_by_user[entry.user_id].remove(entry.id)
                if key is not None:
                    s.entry_keys.discard((entry.user_id, key))
            self._undo.append(undo)

    def get_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        with self.store._mutex:
            return self.store.ledger_entries.get(entry_id)

    def entries_for_user(self, user_id: str) -> list[LedgerEntry]:
        s = self.store
        with s._mutex:
            return [s.ledger_entries[i] for i in s.entries_by_user.get(user_id, [])]

    def set_entry_status(self, entry_id, expected, new, at) -> Optional[LedgerEntry]:
        s = self.store
        with s._mutex:
            entry = s.ledger_entries.get(entry_id)
            if entry is None or entry.status != expected:
                return None
            self._restore(s.ledger_entries, entry_id)
            updated = entry.model_copy(update={"status": new, "settled_at": at})
            s.ledger_entries[entry_id] = updated
            return updated

    def _find(self, predicate) -> Optional[LedgerEntry]:
        with self.store._mutex:
            for entry in self.store.ledger_entries.values():
                if predicate(entry):
                    return entry
        return None

    def find_review_bonus(self, review_id: str) -> Optional[LedgerEntry]:
        return self._find(
            lambda e: e.reason == EntryReason.REVIEW_VERIFIED and e.metadata.get("reviewId") == review_id
        )

    def find_referral_bonus(self, referee_id: str) -> Optional[LedgerEntry]:
        return self._find(
            lambda e: e.reason == EntryReason.REFERRAL_COMPLETED and e.metadata.get("refereeId") == referee_id
        )

    def find_reversal(self, entry_id: UUID) -> Optional[LedgerEntry]:
        return self._find(
            lambda e: e.reason == EntryReason.REVERSAL and e.metadata.get("reversedEntryId") == str(entry_id)
        )

    def redeemed_since(self, user_id: str, since: datetime) -> list[LedgerEntry]:
        return [
            e for e in self.entries_for_user(user_id)
            if e.reason == EntryReason.REDEEM and e.created_at >= since and e.counts_toward_balance
        ]

    def redemptions_for_booking(self, booking_id: str) -> list[LedgerEntry]:
        with self.store._mutex:
            return [
                e for e in self.store.ledger_entries.values()
                if e.reason == EntryReason.REDEEM and e.metadata.get("bookingId") == booking_id
                and e.counts_toward_balance
            ]

    # Balance

    def get_balance(self, user_id: str) -> Optional[BalanceRecord]:
        with self.store._mutex:
            record = self.store.balances.get(user_id)
            return record.model_copy() if record else None

    def save_balance(self, record: BalanceRecord, expected_version: int) -> None:
        s = self.store
        with s._mutex:
            current = s.balances.get(record.user_id)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise ConcurrentUpdateError(
                    f"Balance for {record.user_id} moved from version {expected_version} to {current_version}"
                )
            self._restore(s.balances, record.user_id)
            s.balances[record.user_id] = record.model_copy()

    # Idempotency

    def reserve_key(self, key: str, user_id: str, at: datetime) -> bool:
        s = self.store
        with s._mutex:
            if key in s.idempotency_index:
                return False
            s.idempotency_index[key] = None
            self._undo.append(lambda: s.idempotency_index.pop(key, None))
            return True

    def bind_key(self, key: str, entry_id: UUID) -> None:
        s = self.store
        with s._mutex:
            self._restore(s.idempotency_index, key)
            s.idempotency_index[key] = entry_id

    def lookup_key(self, key: str) -> Optional[UUID]:
        with self.store._mutex:
            return self.store.idempotency_index.get(key)

    # Referrals

    def add_referral(self, referral: ReferralRecord) -> None:
        s = self.store
        with s._mutex:
            s.referrals[referral.id] = referral.model_copy()
            self._undo.append(lambda: s.referrals.pop(referral.id, None))

    def get_referral(self, referral_id: UUID) -> Optional[ReferralRecord]:
        with self.store._mutex:
            record = self.store.referrals.get(referral_id)
            return record.model_copy() if record else None

    def referral_for_referee(self, referee_id: str) -> Optional[ReferralRecord]:
        with self.store._mutex:
            for record in self.store.referrals.values():
                if record.referee_id == referee_id:
                    return record.model_copy()
        return None

    def transition_referral(self, referral_id, expected, new, at, **changes) -> Optional[ReferralRecord]:
        s = self.store
        with s._mutex:
            record = s.referrals.get(referral_id)
            if record is None or record.status != expected:
                return None
            self._restore(s.referrals, referral_id)
            updated = record.model_copy(update={**changes, "status": new, "updated_at": at})
            s.referrals[referral_id] = updated
            return updated.model_copy()

    def list_referrals(self) -> list[ReferralRecord]:
        with self.store._mutex:
            return [r.model_copy() for r in self.store.referrals.values()]

    def due_referrals(self, now: datetime, limit: int, after=None) -> list[ReferralRecord]:
        with self.store._mutex:
            due = [r for r in self.store.referrals.values() if r.is_due(now)]
        due.sort(key=lambda r: (r.confirm_at, str(r.id)))
        if after is not None:
            cursor = (after[0], str(after[1]))
            due = [r for r in due if (r.confirm_at, str(r.id)) > cursor]
        return [r.model_copy() for r in due[:limit]]

    def device_signed_up(self, device_fingerprint: str) -> bool:
        s = self.store
        with s._mutex:
            if any(a.device_fingerprint == device_fingerprint for a in s.accounts.values()):
                return True
            return any(
                r.device_fingerprint == device_fingerprint and r.status != ReferralStatus.CLICKED
                for r in s.referrals.values()
            )

    # Accounts

    def get_account(self, user_id: str) -> Optional[Account]:
        with self.store._mutex:
            account = self.store.accounts.get(user_id)
            return account.model_copy() if account else None

    def save_account(self, account: Account) -> None:
        s = self.store
        with s._mutex:
            self._restore(s.accounts, account.user_id)
            s.accounts[account.user_id] = account.model_copy()

    def accounts_with_phone(self, phone_hash: str) -> list[Account]:
        with self.store._mutex:
            return [a.model_copy() for a in self.store.accounts.values() if a.phone_hash == phone_hash]

    def accounts_with_payment(self, payment_hash: str) -> list[Account]:
        with self.store._mutex:
            return [a.model_copy() for a in self.store.accounts.values() if a.payment_hash == payment_hash]

    # Bookings

    def get_booking(self, booking_id: str) -> Optional[BookingRecord]:
        with self.store._mutex:
            booking = self.store.bookings.get(booking_id)
            return booking.model_copy() if booking else None

    def save_booking(self, booking: BookingRecord) -> None:
        s = self.store
        with s._mutex:
            self._restore(s.bookings, booking.booking_id)
            s.bookings[booking.booking_id] = booking.model_copy()

    # Fraud audit trail

    def add_fraud_audit(self, record: FraudAuditRecord) -> None:
        s = self.store
        with s._mutex:
            s.fraud_audit.append(record)
            self._undo.append(lambda: s.fraud_audit.remove(record))

    def list_fraud_audit(self) -> list[FraudAuditRecord]:
        with self.store._mutex:
            return list(self.store.fraud_audit)
