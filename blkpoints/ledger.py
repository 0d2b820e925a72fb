"""Append-only points ledger, its balance projection and idempotency keys.

Every mutating operation runs through ``Ledger.transact``: the entry append,
the balance delta and the idempotency reservation are committed together or
not at all.
"""

from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar
from uuid import UUID, uuid4

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random

from .errors import ConcurrentUpdateError, EntryNotFoundError, InsufficientBalance, InvalidStateTransitionError
from .events import EventBus
from .models import BalanceRecord, EntryReason, EntryStatus, LedgerEntry
from .storage.base import LoyaltyStorage, StorageTransaction

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerStore:
    def append(
        self,
        txn: StorageTransaction,
        *,
        user_id: str,
        delta_points: int,
        reason: EntryReason,
        metadata: dict,
        created_at: datetime,
        status: EntryStatus = EntryStatus.POSTED,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            id=uuid4(),
            user_id=user_id,
            delta_points=delta_points,
            reason=reason,
            status=status,
            metadata={k: v for k, v in metadata.items() if v is not None},
            created_at=created_at,
        )
        txn.add_entry(entry)
        return entry

    def get(self, txn: StorageTransaction, entry_id: UUID) -> LedgerEntry:
        entry = txn.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(f"Ledger entry {entry_id} not found")
        return entry

    def list_for_user(self, txn: StorageTransaction, user_id: str, after: int = 0) -> list[LedgerEntry]:
        """Entries in append order; pass ``after`` (a count already consumed) to resume."""
        return txn.entries_for_user(user_id)[after:]

    def settle(
        self, txn: StorageTransaction, entry_id: UUID, to: EntryStatus, at: datetime
    ) -> LedgerEntry:
        if to not in (EntryStatus.CONFIRMED, EntryStatus.RELEASED):
            raise InvalidStateTransitionError(f"Cannot settle an entry to {to}")
        settled = txn.set_entry_status(entry_id, EntryStatus.PENDING, to, at)
        if settled is None:
            entry = self.get(txn, entry_id)
            raise InvalidStateTransitionError(f"Cannot settle entry {entry_id} in {entry.status} state")
        return settled

    def recompute_balance(self, txn: StorageTransaction, user_id: str) -> int:
        return sum(e.delta_points for e in txn.entries_for_user(user_id) if e.counts_toward_balance)


class BalanceCache:
    def get_balance(self, txn: StorageTransaction, user_id: str) -> int:
        record = txn.get_balance(user_id)
        return record.points if record else 0

    def apply_delta(self, txn: StorageTransaction, user_id: str, delta: int, at: datetime) -> int:
        record = txn.get_balance(user_id) or BalanceRecord(user_id=user_id)
        new_points = record.points + delta
        if new_points < 0:
            raise InsufficientBalance(
                f"Insufficient BlkPoints balance: {record.points} available, {-delta} required"
            )
        txn.save_balance(
            BalanceRecord(user_id=user_id, points=new_points, version=record.version + 1, updated_at=at),
            expected_version=record.version,
        )
        return new_points


class IdempotencyGuard:
    def reserve(self, txn: StorageTransaction, key: str, user_id: str, at: datetime) -> bool:
        return txn.reserve_key(key, user_id, at)

    def bind(self, txn: StorageTransaction, key: str, entry_id: UUID) -> None:
        txn.bind_key(key, entry_id)

    def lookup(self, txn: StorageTransaction, key: str) -> Optional[UUID]:
        return txn.lookup_key(key)


class Ledger:
    def __init__(
        self,
        storage: LoyaltyStorage,
        bus: Optional[EventBus] = None,
        clock: Clock = utcnow,
        retries: int = 3,
    ):
        self.storage = storage
        self.bus = bus or EventBus()
        self.clock = clock
        self.retries = retries
        self.entries = LedgerStore()
        self.balances = BalanceCache()
        self.idempotency = IdempotencyGuard()

    def transact(self, user_id: Optional[str], work: Callable[[StorageTransaction], T]) -> T:
        """Run ``work`` in one storage transaction, retrying lost races.

        Events queued on the transaction are published after it commits.
        """
        for attempt in Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_random(0, 0.05),
            retry=retry_if_exception_type(ConcurrentUpdateError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("ledger_transaction_retry", user_id=user_id,
                                attempt=attempt.retry_state.attempt_number)
                with self.storage.transaction(user_id) as txn:
                    result = work(txn)
                events = list(txn.events)
        self.bus.publish_all(events)
        return result

    def read(self, work: Callable[[StorageTransaction], T]) -> T:
        with self.storage.transaction() as txn:
            return work(txn)

    def post(
        self,
        txn: StorageTransaction,
        *,
        user_id: str,
        delta_points: int,
        reason: EntryReason,
        metadata: dict,
        idempotency_key: Optional[str] = None,
        status: EntryStatus = EntryStatus.POSTED,
    ) -> tuple[LedgerEntry, int]:
        """Append an entry and, when it counts toward the balance, apply it.

        Returns the entry and the balance after it.
        """
        now = self.clock()
        entry = self.entries.append(
            txn,
            user_id=user_id,
            delta_points=delta_points,
            reason=reason,
            metadata={**metadata, "idempotencyKey": idempotency_key},
            created_at=now,
            status=status,
        )
        if entry.counts_toward_balance:
            balance = self.balances.apply_delta(txn, user_id, delta_points, now)
        else:
            balance = self.balances.get_balance(txn, user_id)
        if idempotency_key is not None:
            self.idempotency.bind(txn, idempotency_key, entry.id)
        return entry, balance

    def replayed_entry(self, txn: StorageTransaction, key: str, user_id: str) -> Optional[LedgerEntry]:
        """Reserve ``key``; if it was already used, return the entry it produced."""
        if self.idempotency.reserve(txn, key, user_id, self.clock()):
            return None
        entry_id = self.idempotency.lookup(txn, key)
        if entry_id is None:
            # Reserved by a transaction that has not committed yet.
            raise ConcurrentUpdateError(f"Idempotency key {key} is in flight")
        logger.info("idempotent_replay", user_id=user_id, idempotency_key=key, entry_id=str(entry_id))
        return self.entries.get(txn, entry_id)

    def get_balance(self, user_id: str) -> int:
        return self.read(lambda txn: self.balances.get_balance(txn, user_id))

    def history(self, user_id: str) -> list[LedgerEntry]:
        return self.read(lambda txn: self.entries.list_for_user(txn, user_id))

    def reconcile(self, user_id: str) -> tuple[int, int]:
        """Return (cached, recomputed) balances for ``user_id``."""
        def work(txn):
            return self.balances.get_balance(txn, user_id), self.entries.recompute_balance(txn, user_id)
        cached, computed = self.read(work)
        if cached != computed:
            logger.error("balance_cache_mismatch", user_id=user_id, cached=cached, computed=computed)
        return cached, computed
