"""Referral fraud prevention.

Signup-time checks decide whether a referral may exist at all; the
booking-time re-check guards the bonus itself against races between
concurrent booking completions. The monitoring report is read-only.
"""

import hashlib
import hmac
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .errors import (
    DuplicateDevice,
    DuplicatePaymentMethod,
    DuplicatePhone,
    NotFirstBooking,
    ReferralNotFoundError,
    SelfReferral,
    SelfReferralBlocked,
)
from .models import (
    Account,
    ReferralRecord,
    ReferralStatus,
    SuspiciousReferrer,
    SuspiciousReferrerReport,
    SuspiciousReportSummary,
)
from .storage.base import StorageTransaction

logger = structlog.get_logger(__name__)

_NON_DIGITS = re.compile(r"[^\d+]")


def normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email else None


def normalize_phone(number: Optional[str]) -> Optional[str]:
    if not number:
        return None
    digits = _NON_DIGITS.sub("", number)
    if digits.startswith("07"):
        digits = "+44" + digits[1:]
    return digits or None


def hash_identifier(value: Optional[str], pepper: str) -> Optional[str]:
    if not value:
        return None
    return hmac.new(pepper.encode(), value.encode(), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class SignupDetails:
    referee_id: str
    email: Optional[str]
    phone_hash: Optional[str]
    device_fingerprint: Optional[str]
    payment_hash: Optional[str]
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class RiskPolicy:
    """How the suspicious-referrer report flags and scores referrers.

    ``worst`` scores a referrer by its least diverse signal,
    ``weighted`` blends both signals by the configured weights.
    """

    strategy: str = "worst"
    device_weight: float = 0.5
    phone_weight: float = 0.5
    min_referrals: int = 5
    ratio_threshold: float = 0.8

    @classmethod
    def from_settings(cls, settings) -> "RiskPolicy":
        return cls(
            strategy=settings.risk_strategy,
            device_weight=settings.risk_device_weight,
            phone_weight=settings.risk_phone_weight,
            min_referrals=settings.suspicious_min_referrals,
            ratio_threshold=settings.suspicious_ratio_threshold,
        )

    def is_suspicious(self, total_refs: int, device_ratio: float, phone_ratio: float) -> bool:
        if total_refs <= self.min_referrals:
            return False
        return device_ratio < self.ratio_threshold or phone_ratio < self.ratio_threshold

    def score(self, device_ratio: float, phone_ratio: float) -> int:
        if self.strategy == "weighted":
            total_weight = self.device_weight + self.phone_weight
            if total_weight <= 0:
                return 0
            repetition = (
                self.device_weight * (1 - device_ratio) + self.phone_weight * (1 - phone_ratio)
            ) / total_weight
        else:
            repetition = 1 - min(device_ratio, phone_ratio)
        return max(0, min(100, round(repetition * 100)))


class ReferralFraudGuard:
    def __init__(self, policy: Optional[RiskPolicy] = None):
        self.policy = policy or RiskPolicy()

    def record_click(
        self,
        txn: StorageTransaction,
        referrer_id: str,
        now: datetime,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ReferralRecord:
        referral = ReferralRecord(
            id=uuid4(),
            referrer_id=referrer_id,
            status=ReferralStatus.CLICKED,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            created_at=now,
            updated_at=now,
        )
        txn.add_referral(referral)
        return referral

    def check_signup(
        self,
        txn: StorageTransaction,
        referrer_id: str,
        referrer: Optional[Account],
        signup: SignupDetails,
    ) -> None:
        """Raise the first fraud error the signup trips, in a fixed order."""
        if referrer_id == signup.referee_id:
            raise SelfReferralBlocked("Referrer and referee are the same account")
        if referrer is not None:
            if referrer.email and referrer.email == normalize_email(signup.email):
                raise SelfReferralBlocked("Referrer and referee share an email address")
            if referrer.phone_hash and referrer.phone_hash == signup.phone_hash:
                raise SelfReferralBlocked("Referrer and referee share a mobile number")

        if signup.phone_hash:
            others = [a for a in txn.accounts_with_phone(signup.phone_hash) if a.user_id != signup.referee_id]
            if others:
                raise DuplicatePhone("Mobile number already registered to another account")

        if signup.device_fingerprint and txn.device_signed_up(signup.device_fingerprint):
            raise DuplicateDevice("Device already used for a previous signup")

        if signup.payment_hash:
            others = [a for a in txn.accounts_with_payment(signup.payment_hash) if a.user_id != signup.referee_id]
            if others:
                raise DuplicatePaymentMethod("Payment method already linked to another account")

    def create_signup_referral(
        self,
        txn: StorageTransaction,
        referrer_id: str,
        signup: SignupDetails,
        now: datetime,
        click_id: Optional[UUID] = None,
    ) -> ReferralRecord:
        fields = dict(
            referee_id=signup.referee_id,
            device_fingerprint=signup.device_fingerprint,
            phone_hash=signup.phone_hash,
            payment_hash=signup.payment_hash,
            ip_address=signup.ip_address,
        )
        if click_id is not None:
            click = txn.get_referral(click_id)
            if click is not None and click.referrer_id == referrer_id:
                fields["ip_address"] = signup.ip_address or click.ip_address
                fields["device_fingerprint"] = signup.device_fingerprint or click.device_fingerprint
                advanced = txn.transition_referral(
                    click_id, ReferralStatus.CLICKED, ReferralStatus.SIGNED_UP, now, **fields
                )
                if advanced is not None:
                    return advanced
            logger.warning("referral_click_not_usable", referral_id=str(click_id), referrer_id=referrer_id)

        referral = ReferralRecord(
            id=uuid4(),
            referrer_id=referrer_id,
            status=ReferralStatus.SIGNED_UP,
            created_at=now,
            updated_at=now,
            **fields,
        )
        txn.add_referral(referral)
        return referral

    def check_booking(self, txn: StorageTransaction, referrer_id: str, referee_id: str) -> None:
        if referrer_id == referee_id:
            raise SelfReferral("A user cannot earn a referral bonus for their own booking")
        if txn.find_referral_bonus(referee_id) is not None:
            raise NotFirstBooking(f"Referral bonus already issued for referee {referee_id}")

    def claim_referral(
        self,
        txn: StorageTransaction,
        referrer_id: str,
        referee_id: str,
        booking_id: str,
        now: datetime,
    ) -> ReferralRecord:
        """Move the referee's referral from signed_up to completed for ``booking_id``."""
        referral = txn.referral_for_referee(referee_id)
        if referral is None:
            logger.warning("referral_record_missing", referrer_id=referrer_id, referee_id=referee_id)
            referral = ReferralRecord(
                id=uuid4(),
                referrer_id=referrer_id,
                referee_id=referee_id,
                status=ReferralStatus.SIGNED_UP,
                created_at=now,
                updated_at=now,
            )
            txn.add_referral(referral)
        elif referral.referrer_id != referrer_id:
            raise ReferralNotFoundError(f"Referee {referee_id} was not referred by {referrer_id}")

        claimed = txn.transition_referral(
            referral.id,
            ReferralStatus.SIGNED_UP,
            ReferralStatus.COMPLETED,
            now,
            first_booking_id=booking_id,
            booking_completed_at=now,
        )
        if claimed is None:
            raise NotFirstBooking(
                f"Referral {referral.id} is {referral.status.value}; only the first booking earns a bonus"
            )
        return claimed

    def suspicious_referrers(self, txn: StorageTransaction) -> SuspiciousReferrerReport:
        grouped: dict[str, list[ReferralRecord]] = defaultdict(list)
        total_referrals = 0
        for referral in txn.list_referrals():
            if referral.referee_id is None:
                continue
            grouped[referral.referrer_id].append(referral)
            total_referrals += 1

        suspicious = []
        for referrer_id, referrals in grouped.items():
            total = len(referrals)
            devices = {r.device_fingerprint for r in referrals if r.device_fingerprint}
            ips = {r.ip_address for r in referrals if r.ip_address}
            phones = set()
            for r in referrals:
                phone = r.phone_hash
                if phone is None:
                    account = txn.get_account(r.referee_id)
                    phone = account.phone_hash if account else None
                if phone:
                    phones.add(phone)

            device_ratio = len(devices) / max(total, 1)
            phone_ratio = len(phones) / max(total, 1)
            if not self.policy.is_suspicious(total, device_ratio, phone_ratio):
                continue
            suspicious.append(SuspiciousReferrer(
                referrer_id=referrer_id,
                total_refs=total,
                unique_devices=len(devices),
                unique_phones=len(phones),
                unique_ips=len(ips),
                device_ratio=device_ratio,
                phone_ratio=phone_ratio,
                risk_score=self.policy.score(device_ratio, phone_ratio),
                referrals=referrals,
            ))

        suspicious.sort(key=lambda s: s.risk_score, reverse=True)
        return SuspiciousReferrerReport(
            suspicious=suspicious,
            summary=SuspiciousReportSummary(
                total_referrers=len(grouped),
                flagged=len(suspicious),
                total_referrals=total_referrals,
            ),
        )
