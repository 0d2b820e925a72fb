from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    and_,
    create_engine,
    exists,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

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


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC datetimes on every backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class LedgerEntryRow(Base):
    __tablename__ = "blkpoints_ledger"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_blkpoints_ledger_user_key"),
        CheckConstraint(
            "status IN ('POSTED','PENDING','CONFIRMED','RELEASED')",
            name="ck_blkpoints_ledger_status",
        ),
        Index("idx_blkpoints_ledger_user_reason_created", "user_id", "reason", "created_at"),
        Index("idx_blkpoints_ledger_booking", "booking_id"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(Uuid, unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    delta_points: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    booking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Only set on the entry kinds they constrain, so NULLs never collide.
    review_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    referee_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    reversed_entry_id: Mapped[Optional[str]] = mapped_column(String(36), unique=True, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class BalanceRow(Base):
    __tablename__ = "blkpoints_balances"
    __table_args__ = (CheckConstraint("points >= 0", name="ck_blkpoints_balances_non_negative"),)

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class IdempotencyKeyRow(Base):
    __tablename__ = "blkpoints_idempotency_keys"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class ReferralRow(Base):
    __tablename__ = "blkpoints_referrals"
    __table_args__ = (
        CheckConstraint(
            "status IN ('clicked','signed_up','completed','pending_confirmation','confirmed','cancelled')",
            name="ck_blkpoints_referrals_status",
        ),
        CheckConstraint("referee_id IS NULL OR referrer_id <> referee_id", name="ck_blkpoints_referrals_no_self"),
        Index("idx_blkpoints_referrals_referrer", "referrer_id"),
        Index("idx_blkpoints_referrals_referee", "referee_id"),
        Index("idx_blkpoints_referrals_device", "device_fingerprint"),
        Index("idx_blkpoints_referrals_status_confirm", "status", "confirm_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    referrer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    phone_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    first_booking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    booking_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    confirm_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class AccountRow(Base):
    __tablename__ = "blkpoints_accounts"
    __table_args__ = (
        Index("idx_blkpoints_accounts_phone", "phone_hash"),
        Index("idx_blkpoints_accounts_payment", "payment_hash"),
        Index("idx_blkpoints_accounts_device", "device_fingerprint"),
    )

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    phone_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payment_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    referred_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class BookingRow(Base):
    __tablename__ = "blkpoints_bookings"

    booking_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_pence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class FraudAuditRow(Base):
    __tablename__ = "blkpoints_fraud_audit"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(16), nullable=False)
    referrer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    referee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


def _to_entry(row: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        user_id=row.user_id,
        delta_points=row.delta_points,
        reason=row.reason,
        status=row.status,
        metadata=dict(row.metadata_ or {}),
        created_at=row.created_at,
        settled_at=row.settled_at,
    )


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class SqlAlchemyStorage(LoyaltyStorage):
    """Relational storage; one database transaction per unit of work.

    Constraint violations raised while a transaction is open mean another
    writer got there first. They surface as ConcurrentUpdateError so the
    caller can retry against the committed state.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, create_schema: bool = True, **engine_kwargs) -> "SqlAlchemyStorage":
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        storage = cls(create_engine(database_url, **engine_kwargs))
        if create_schema:
            storage.create_schema()
        return storage

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, user_id: Optional[str] = None) -> Iterator["SqlTransaction"]:
        session = self._session_factory()
        try:
            txn = SqlTransaction(session)
            yield txn
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConcurrentUpdateError(str(exc.orig)) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()


class SqlTransaction(StorageTransaction):
    def __init__(self, session: Session):
        super().__init__()
        self.session = session

    # Ledger

    def add_entry(self, entry: LedgerEntry) -> None:
        key = entry.idempotency_key
        if key is not None:
            duplicate = self.session.scalar(
                select(LedgerEntryRow.seq).where(
                    LedgerEntryRow.user_id == entry.user_id,
                    LedgerEntryRow.idempotency_key == key,
                )
            )
            if duplicate is not None:
                raise DuplicateIdempotencyKey(f"Idempotency key {key} already used for user {entry.user_id}")

        meta = entry.metadata
        self.session.add(LedgerEntryRow(
            id=entry.id,
            user_id=entry.user_id,
            delta_points=entry.delta_points,
            reason=entry.reason.value,
            status=entry.status.value,
            idempotency_key=key,
            booking_id=meta.get("bookingId"),
            review_id=meta.get("reviewId") if entry.reason == EntryReason.REVIEW_VERIFIED else None,
            referee_id=meta.get("refereeId") if entry.reason == EntryReason.REFERRAL_COMPLETED else None,
            reversed_entry_id=meta.get("reversedEntryId") if entry.reason == EntryReason.REVERSAL else None,
            metadata_=dict(meta),
            created_at=entry.created_at,
            settled_at=entry.settled_at,
        ))
        self.session.flush()

    def _entry_row(self, entry_id: UUID) -> Optional[LedgerEntryRow]:
        return self.session.scalar(
            select(LedgerEntryRow)
            .where(LedgerEntryRow.id == entry_id)
            .execution_options(populate_existing=True)
        )

    def get_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        row = self._entry_row(entry_id)
        return _to_entry(row) if row else None

    def entries_for_user(self, user_id: str) -> list[LedgerEntry]:
        rows = self.session.scalars(
            select(LedgerEntryRow).where(LedgerEntryRow.user_id == user_id).order_by(LedgerEntryRow.seq)
        )
        return [_to_entry(row) for row in rows]

    def set_entry_status(self, entry_id, expected, new, at) -> Optional[LedgerEntry]:
        result = self.session.execute(
            update(LedgerEntryRow)
            .where(LedgerEntryRow.id == entry_id, LedgerEntryRow.status == expected.value)
            .values(status=new.value, settled_at=at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self.get_entry(entry_id)

    def _find_one(self, *criteria) -> Optional[LedgerEntry]:
        row = self.session.scalar(select(LedgerEntryRow).where(*criteria).order_by(LedgerEntryRow.seq).limit(1))
        return _to_entry(row) if row else None

    def find_review_bonus(self, review_id: str) -> Optional[LedgerEntry]:
        return self._find_one(LedgerEntryRow.review_id == review_id)

    def find_referral_bonus(self, referee_id: str) -> Optional[LedgerEntry]:
        return self._find_one(LedgerEntryRow.referee_id == referee_id)

    def find_reversal(self, entry_id: UUID) -> Optional[LedgerEntry]:
        return self._find_one(LedgerEntryRow.reversed_entry_id == str(entry_id))

    def redeemed_since(self, user_id: str, since: datetime) -> list[LedgerEntry]:
        rows = self.session.scalars(
            select(LedgerEntryRow)
            .where(
                LedgerEntryRow.user_id == user_id,
                LedgerEntryRow.reason == EntryReason.REDEEM.value,
                LedgerEntryRow.status.in_([EntryStatus.POSTED.value, EntryStatus.CONFIRMED.value]),
                LedgerEntryRow.created_at >= since,
            )
            .order_by(LedgerEntryRow.created_at)
        )
        return [_to_entry(row) for row in rows]

    def redemptions_for_booking(self, booking_id: str) -> list[LedgerEntry]:
        rows = self.session.scalars(
            select(LedgerEntryRow)
            .where(
                LedgerEntryRow.booking_id == booking_id,
                LedgerEntryRow.reason == EntryReason.REDEEM.value,
                LedgerEntryRow.status.in_([EntryStatus.POSTED.value, EntryStatus.CONFIRMED.value]),
            )
            .order_by(LedgerEntryRow.seq)
        )
        return [_to_entry(row) for row in rows]

    # Balance

    def get_balance(self, user_id: str) -> Optional[BalanceRecord]:
        row = self.session.scalar(
            select(BalanceRow)
            .where(BalanceRow.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return BalanceRecord.model_validate(row) if row else None

    def save_balance(self, record: BalanceRecord, expected_version: int) -> None:
        result = self.session.execute(
            update(BalanceRow)
            .where(BalanceRow.user_id == record.user_id, BalanceRow.version == expected_version)
            .values(points=record.points, version=record.version, updated_at=record.updated_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        if expected_version == 0 and self.session.get(BalanceRow, record.user_id) is None:
            self.session.add(BalanceRow(
                user_id=record.user_id,
                points=record.points,
                version=record.version,
                updated_at=record.updated_at,
            ))
            self.session.flush()
            return
        raise ConcurrentUpdateError(f"Balance for {record.user_id} changed since version {expected_version}")

    # Idempotency

    def reserve_key(self, key: str, user_id: str, at: datetime) -> bool:
        if self.session.get(IdempotencyKeyRow, key) is not None:
            return False
        self.session.add(IdempotencyKeyRow(key=key, user_id=user_id, created_at=at))
        self.session.flush()
        return True

    def bind_key(self, key: str, entry_id: UUID) -> None:
        self.session.execute(
            update(IdempotencyKeyRow)
            .where(IdempotencyKeyRow.key == key)
            .values(entry_id=entry_id)
            .execution_options(synchronize_session=False)
        )

    def lookup_key(self, key: str) -> Optional[UUID]:
        return self.session.scalar(select(IdempotencyKeyRow.entry_id).where(IdempotencyKeyRow.key == key))

    # Referrals

    def add_referral(self, referral: ReferralRecord) -> None:
        data = referral.model_dump()
        data["status"] = _enum_value(data["status"])
        self.session.add(ReferralRow(**data))
        self.session.flush()

    def get_referral(self, referral_id: UUID) -> Optional[ReferralRecord]:
        row = self.session.get(ReferralRow, referral_id, populate_existing=True)
        return ReferralRecord.model_validate(row) if row else None

    def referral_for_referee(self, referee_id: str) -> Optional[ReferralRecord]:
        row = self.session.scalar(
            select(ReferralRow).where(ReferralRow.referee_id == referee_id).order_by(ReferralRow.created_at).limit(1)
        )
        return ReferralRecord.model_validate(row) if row else None

    def transition_referral(self, referral_id, expected, new, at, **changes) -> Optional[ReferralRecord]:
        values = {k: _enum_value(v) for k, v in changes.items()}
        result = self.session.execute(
            update(ReferralRow)
            .where(ReferralRow.id == referral_id, ReferralRow.status == expected.value)
            .values(status=new.value, updated_at=at, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self.get_referral(referral_id)

    def list_referrals(self) -> list[ReferralRecord]:
        rows = self.session.scalars(select(ReferralRow).order_by(ReferralRow.created_at))
        return [ReferralRecord.model_validate(row) for row in rows]

    def due_referrals(self, now: datetime, limit: int, after=None) -> list[ReferralRecord]:
        query = select(ReferralRow).where(
            ReferralRow.status == ReferralStatus.PENDING_CONFIRMATION.value,
            ReferralRow.confirm_at <= now,
        )
        if after is not None:
            confirm_at, referral_id = after
            query = query.where(or_(
                ReferralRow.confirm_at > confirm_at,
                and_(ReferralRow.confirm_at == confirm_at, ReferralRow.id > referral_id),
            ))
        rows = self.session.scalars(query.order_by(ReferralRow.confirm_at, ReferralRow.id).limit(limit))
        return [ReferralRecord.model_validate(row) for row in rows]

    def device_signed_up(self, device_fingerprint: str) -> bool:
        in_accounts = exists().where(AccountRow.device_fingerprint == device_fingerprint)
        in_referrals = exists().where(
            ReferralRow.device_fingerprint == device_fingerprint,
            ReferralRow.status != ReferralStatus.CLICKED.value,
        )
        return bool(self.session.scalar(select(or_(in_accounts, in_referrals))))

    # Accounts

    def get_account(self, user_id: str) -> Optional[Account]:
        row = self.session.get(AccountRow, user_id, populate_existing=True)
        return Account.model_validate(row) if row else None

    def save_account(self, account: Account) -> None:
        self.session.merge(AccountRow(**account.model_dump()))
        self.session.flush()

    def accounts_with_phone(self, phone_hash: str) -> list[Account]:
        rows = self.session.scalars(select(AccountRow).where(AccountRow.phone_hash == phone_hash))
        return [Account.model_validate(row) for row in rows]

    def accounts_with_payment(self, payment_hash: str) -> list[Account]:
        rows = self.session.scalars(select(AccountRow).where(AccountRow.payment_hash == payment_hash))
        return [Account.model_validate(row) for row in rows]

    # Bookings

    def get_booking(self, booking_id: str) -> Optional[BookingRecord]:
        row = self.session.get(BookingRow, booking_id, populate_existing=True)
        return BookingRecord.model_validate(row) if row else None

    def save_booking(self, booking: BookingRecord) -> None:
        data = booking.model_dump()
        data["status"] = _enum_value(data["status"])
        self.session.merge(BookingRow(**data))
        self.session.flush()

    # Fraud audit trail

    def add_fraud_audit(self, record: FraudAuditRecord) -> None:
        self.session.add(FraudAuditRow(**record.model_dump()))
        self.session.flush()

    def list_fraud_audit(self) -> list[FraudAuditRecord]:
        rows = self.session.scalars(select(FraudAuditRow).order_by(FraudAuditRow.created_at))
        return [FraudAuditRecord.model_validate(row) for row in rows]
