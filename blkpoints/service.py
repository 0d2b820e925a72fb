from functools import lru_cache
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .config import Settings, get_settings
from .constants import (
    MIN_REDEEM_PENCE,
    MIN_REDEEM_POINTS,
    can_redeem,
    gbp_to_pence,
    pence_to_gbp,
    points_to_gbp,
)
from .earning import EarningEngine
from .errors import (
    AccountNotFoundError,
    BookingNotFoundError,
    FraudError,
    InvalidAmount,
    InvalidStateTransitionError,
)
from .events import EventBus, FraudBlocked, RedemptionReleased
from .ledger import Clock, Ledger, utcnow
from .models import (
    FINAL_BOOKING_STATUSES,
    Account,
    AdjustPointsRequest,
    BookingRecord,
    BookingStatusRequest,
    CompleteBookingRequest,
    EarnResult,
    EntryReason,
    EntryStatus,
    FraudAuditRecord,
    LedgerEntry,
    LedgerHistoryResponse,
    LoyaltyStatus,
    PhoneVerifiedRequest,
    RedeemRequest,
    RedemptionResult,
    ReferralClickRequest,
    ReferralRecord,
    ReferralStatus,
    ReverseEntryRequest,
    SignupRequest,
    SignupResult,
    SuspiciousReferrerReport,
    VerifiedReviewRequest,
)
from .redemption import RedemptionEngine
from .referrals import (
    ReferralFraudGuard,
    RiskPolicy,
    SignupDetails,
    hash_identifier,
    normalize_email,
    normalize_phone,
)
from .scheduler import PendingConfirmationScheduler
from .storage.base import LoyaltyStorage, StorageTransaction
from .storage.memory import InMemoryStorage
from .storage.sql import SqlAlchemyStorage

logger = structlog.get_logger(__name__)


def adjust_key(user_id: str, client_token: str) -> str:
    prefix = f"adjust-{user_id}-"
    return client_token if client_token.startswith(prefix) else prefix + client_token


def reverse_key(entry_id: UUID) -> str:
    return f"reverse-{entry_id}"


class LoyaltyService:
    """Entry point for everything outside the loyalty core.

    Built once per process around one storage backend; HTTP handlers,
    schedulers and tests all go through an instance of this class.
    """

    def __init__(
        self,
        storage: Optional[LoyaltyStorage] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        bus: Optional[EventBus] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.ledger = Ledger(self.storage, bus=bus, clock=clock, retries=self.settings.transaction_retries)
        self.fraud_guard = ReferralFraudGuard(RiskPolicy.from_settings(self.settings))
        self.scheduler = PendingConfirmationScheduler(self.ledger, batch_size=self.settings.sweep_batch_size)
        self.earning = EarningEngine(self.ledger, self.fraud_guard, self.scheduler)
        self.redemption = RedemptionEngine(self.ledger)

    @property
    def bus(self) -> EventBus:
        return self.ledger.bus

    @property
    def clock(self) -> Clock:
        return self.ledger.clock

    # Earning

    def complete_booking(self, request: CompleteBookingRequest) -> EarnResult:
        """Grant booking points and, for a referred user's first booking, the referrer's bonus.

        The referral outcome is never part of the response.
        """
        result = self.earning.earn_on_completed_booking(
            user_id=request.user_id,
            amount_pence=gbp_to_pence(request.amount_gbp),
            booking_id=request.booking_id,
            idempotency_key=request.idempotency_key,
        )

        referral = self.ledger.read(lambda txn: txn.referral_for_referee(request.user_id))
        if referral is not None and referral.status == ReferralStatus.SIGNED_UP:
            try:
                self.earning.earn_on_referral_completed(
                    referrer_id=referral.referrer_id,
                    referee_id=request.user_id,
                    booking_id=request.booking_id,
                )
            except FraudError as e:
                self._audit_fraud(e, "booking", referral.referrer_id, request.user_id)
        return result

    def update_booking_status(self, booking_id: str, request: BookingStatusRequest) -> BookingRecord:
        """Record a booking status change.

        Cancelled and refunded are final. Entering either gives back the
        points redeemed against the booking, in the same transaction.
        """
        booking = self.ledger.read(lambda txn: txn.get_booking(booking_id))
        if booking is None and request.user_id is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        owner = booking.user_id if booking else request.user_id

        def work(txn: StorageTransaction) -> BookingRecord:
            current = txn.get_booking(booking_id)
            if current is not None and current.status in FINAL_BOOKING_STATUSES and current.status != request.status:
                raise InvalidStateTransitionError(
                    f"Booking {booking_id} is {current.status.value} and cannot become {request.status.value}"
                )
            updated = BookingRecord(
                booking_id=booking_id,
                user_id=owner,
                status=request.status,
                amount_pence=current.amount_pence if current else None,
                updated_at=self.clock(),
            )
            txn.save_booking(updated)
            if updated.status in FINAL_BOOKING_STATUSES:
                self._release_redemptions(txn, updated)
            return updated

        updated = self.ledger.transact(owner, work)
        logger.info("booking_status_updated", booking_id=booking_id, user_id=owner, status=updated.status.value)
        return updated

    def _release_redemptions(self, txn: StorageTransaction, booking: BookingRecord) -> None:
        for entry in txn.redemptions_for_booking(booking.booking_id):
            if txn.find_reversal(entry.id) is not None:
                continue
            if entry.user_id != booking.user_id:
                logger.warning(
                    "redemption_owner_mismatch",
                    booking_id=booking.booking_id,
                    entry_id=str(entry.id),
                    user_id=entry.user_id,
                )
                continue
            reversal, balance = self._post_reversal(
                txn, entry, {"reason": f"Booking {booking.status.value}", "performedBy": "system"}
            )
            txn.events.append(RedemptionReleased(
                user_id=entry.user_id,
                occurred_at=reversal.created_at,
                entry_id=entry.id,
                reversal_id=reversal.id,
                points=reversal.delta_points,
                booking_id=booking.booking_id,
                balance=balance,
            ))
            logger.info(
                "redemption_released",
                user_id=entry.user_id,
                booking_id=booking.booking_id,
                points=reversal.delta_points,
                balance=balance,
            )

    def verify_review(self, request: VerifiedReviewRequest) -> EarnResult:
        return self.earning.earn_on_verified_review(
            user_id=request.user_id,
            review_id=request.review_id,
            idempotency_key=request.idempotency_key,
        )

    # Referrals and signup

    def record_click(self, request: ReferralClickRequest) -> ReferralRecord:
        return self.ledger.transact(
            request.referrer_id,
            lambda txn: self.fraud_guard.record_click(
                txn,
                request.referrer_id,
                self.clock(),
                device_fingerprint=request.device_fingerprint,
                ip_address=request.ip_address,
            ),
        )

    def signup(self, request: SignupRequest) -> SignupResult:
        """Create the account; attach a referral only when every fraud check passes.

        A failed check still creates the account. The failure goes to the
        audit trail and the result simply carries no referral.
        """
        pepper = self.settings.identifier_pepper
        details = SignupDetails(
            referee_id=request.user_id,
            email=normalize_email(request.email),
            phone_hash=hash_identifier(normalize_phone(request.mobile_number), pepper),
            device_fingerprint=request.device_fingerprint,
            payment_hash=hash_identifier(request.payment_fingerprint, pepper),
            ip_address=request.ip_address,
        )
        blocked: list[FraudError] = []

        def work(txn: StorageTransaction) -> SignupResult:
            blocked.clear()
            existing = txn.get_account(request.user_id)
            if existing is not None:
                return SignupResult(account=existing, referral=txn.referral_for_referee(request.user_id))

            now = self.clock()
            referral = None
            if request.referrer_id:
                referrer = txn.get_account(request.referrer_id)
                if referrer is None:
                    # Email and phone comparisons need the referrer's account.
                    logger.warning("signup_referrer_unknown", user_id=request.user_id, referrer_id=request.referrer_id)
                try:
                    self.fraud_guard.check_signup(txn, request.referrer_id, referrer, details)
                except FraudError as e:
                    blocked.append(e)
                else:
                    referral = self.fraud_guard.create_signup_referral(
                        txn, request.referrer_id, details, now, click_id=request.referral_id
                    )

            account = Account(
                user_id=request.user_id,
                email=details.email,
                phone_hash=details.phone_hash,
                device_fingerprint=details.device_fingerprint,
                payment_hash=details.payment_hash,
                referred_by=referral.referrer_id if referral else None,
                created_at=now,
            )
            txn.save_account(account)
            return SignupResult(account=account, referral=referral)

        result = self.ledger.transact(request.user_id, work)
        for error in blocked:
            self._audit_fraud(error, "signup", request.referrer_id, request.user_id)
        logger.info("account_created", user_id=request.user_id, referred=result.referral is not None)
        return result

    def set_phone_verified(self, user_id: str, request: PhoneVerifiedRequest) -> Account:
        def work(txn: StorageTransaction) -> Account:
            account = txn.get_account(user_id)
            if account is None:
                raise AccountNotFoundError(f"Account {user_id} not found")
            changes = {"phone_verified": request.verified}
            if request.mobile_number:
                changes["phone_hash"] = hash_identifier(
                    normalize_phone(request.mobile_number), self.settings.identifier_pepper
                )
            updated = account.model_copy(update=changes)
            txn.save_account(updated)
            return updated

        return self.ledger.transact(user_id, work)

    # Redemption and status

    def redeem(self, request: RedeemRequest) -> RedemptionResult:
        booking_amount_pence = None
        if request.booking_amount_gbp is not None:
            booking_amount_pence = gbp_to_pence(request.booking_amount_gbp)
        return self.redemption.redeem(
            user_id=request.user_id,
            points=request.points,
            idempotency_key=request.idempotency_key,
            booking_amount_pence=booking_amount_pence,
            booking_id=request.booking_id,
        )

    def status(self, user_id: str) -> LoyaltyStatus:
        def work(txn: StorageTransaction) -> LoyaltyStatus:
            points = self.ledger.balances.get_balance(txn, user_id)
            account = txn.get_account(user_id)
            return LoyaltyStatus(
                points=points,
                gbp_value=points_to_gbp(points),
                min_redeem_gbp=pence_to_gbp(MIN_REDEEM_PENCE),
                min_redeem_points=MIN_REDEEM_POINTS,
                can_redeem=can_redeem(points),
                is_verified=account is not None and account.phone_verified,
                redemption_cap=self.redemption.cap_status(txn, user_id, self.clock()),
            )

        return self.ledger.read(work)

    def history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        def work(txn: StorageTransaction):
            entries = self.ledger.entries.list_for_user(txn, user_id)
            return entries, self.ledger.balances.get_balance(txn, user_id)

        entries, balance = self.ledger.read(work)
        newest_first = list(reversed(entries))
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=newest_first[offset:offset + limit],
            total_count=len(entries),
            current_balance=balance,
        )

    # Admin

    def adjust_points(self, request: AdjustPointsRequest) -> EarnResult:
        if request.points == 0:
            raise InvalidAmount("Adjustment must change the balance")
        key = adjust_key(request.user_id, request.idempotency_key)

        def work(txn: StorageTransaction) -> EarnResult:
            replay = self.ledger.replayed_entry(txn, key, request.user_id)
            if replay is not None:
                return EarnResult(
                    entry=replay,
                    balance=self.ledger.balances.get_balance(txn, request.user_id),
                    replayed=True,
                    message="Adjustment already applied (idempotent return)",
                )
            entry, balance = self.ledger.post(
                txn,
                user_id=request.user_id,
                delta_points=request.points,
                reason=EntryReason.ADJUSTMENT,
                metadata={"note": request.note, "performedBy": request.performed_by},
                idempotency_key=key,
            )
            return EarnResult(entry=entry, balance=balance, message="Adjustment applied")

        result = self.ledger.transact(request.user_id, work)
        if not result.replayed:
            logger.info(
                "points_adjusted",
                user_id=request.user_id,
                points=request.points,
                performed_by=request.performed_by,
            )
        return result

    def reverse_entry(self, entry_id: UUID, request: ReverseEntryRequest) -> EarnResult:
        """Post a REVERSAL that cancels a balance-affecting entry."""
        original = self.ledger.read(lambda txn: self.ledger.entries.get(txn, entry_id))
        key = reverse_key(entry_id)

        def work(txn: StorageTransaction) -> EarnResult:
            replay = self.ledger.replayed_entry(txn, key, original.user_id)
            if replay is not None:
                return EarnResult(
                    entry=replay,
                    balance=self.ledger.balances.get_balance(txn, original.user_id),
                    replayed=True,
                    message="Entry already reversed (idempotent return)",
                )
            entry = self.ledger.entries.get(txn, entry_id)
            if entry.reason == EntryReason.REVERSAL:
                raise InvalidStateTransitionError("A reversal cannot itself be reversed")
            if entry.status == EntryStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Entry {entry_id} is pending confirmation and settles through the confirmation sweep"
                )
            if not entry.counts_toward_balance:
                raise InvalidStateTransitionError(f"Entry {entry_id} was released and never reached the balance")
            if txn.find_reversal(entry_id) is not None:
                raise InvalidStateTransitionError(f"Entry {entry_id} has already been reversed")

            reversal, balance = self._post_reversal(
                txn, entry, {"reason": request.reason, "performedBy": request.performed_by}
            )
            return EarnResult(entry=reversal, balance=balance, message="Entry reversed")

        result = self.ledger.transact(original.user_id, work)
        if not result.replayed:
            logger.info(
                "entry_reversed",
                user_id=original.user_id,
                entry_id=str(entry_id),
                points=result.entry.delta_points,
                performed_by=request.performed_by,
            )
        return result

    def _post_reversal(
        self, txn: StorageTransaction, entry: LedgerEntry, metadata: dict
    ) -> tuple[LedgerEntry, int]:
        return self.ledger.post(
            txn,
            user_id=entry.user_id,
            delta_points=-entry.delta_points,
            reason=EntryReason.REVERSAL,
            metadata={"reversedEntryId": str(entry.id), **metadata},
            idempotency_key=reverse_key(entry.id),
        )

    def suspicious_report(self) -> SuspiciousReferrerReport:
        return self.ledger.read(self.fraud_guard.suspicious_referrers)

    def fraud_audit(self) -> list[FraudAuditRecord]:
        return self.ledger.read(lambda txn: txn.list_fraud_audit())

    def run_sweep(self) -> dict[str, int]:
        return self.scheduler.sweep()

    def _audit_fraud(
        self, error: FraudError, stage: str, referrer_id: Optional[str], referee_id: Optional[str]
    ) -> None:
        now = self.clock()
        record = FraudAuditRecord(
            id=uuid4(),
            code=error.code,
            stage=stage,
            referrer_id=referrer_id,
            referee_id=referee_id,
            detail=str(error),
            created_at=now,
        )

        def work(txn: StorageTransaction) -> None:
            txn.add_fraud_audit(record)
            txn.events.append(FraudBlocked(
                user_id=referrer_id or referee_id,
                occurred_at=now,
                code=error.code,
                stage=stage,
                referee_id=referee_id,
                context={"detail": str(error)},
            ))

        self.ledger.transact(None, work)
        logger.warning(
            "fraud_check_failed",
            code=error.code,
            stage=stage,
            referrer_id=referrer_id,
            referee_id=referee_id,
        )


def build_service(settings: Optional[Settings] = None) -> LoyaltyService:
    settings = settings or get_settings()
    if settings.database_url:
        storage = SqlAlchemyStorage.from_url(settings.database_url)
    else:
        storage = InMemoryStorage()
    logger.info(
        "loyalty_service_built",
        storage=type(storage).__name__,
        app_env=settings.app_env,
    )
    return LoyaltyService(storage=storage, settings=settings)


@lru_cache(maxsize=1)
def get_service() -> LoyaltyService:
    """The process-wide service shared by the HTTP app and the Celery worker."""
    return build_service(get_settings())
