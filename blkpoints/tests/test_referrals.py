"""
Unit Tests for Referral Fraud Prevention

Tests cover:
1. Signup checks (self-referral, duplicate phone, device and payment method)
2. Silent handling of blocked referrals
3. Click tracking
4. Suspicious-referrer report and risk scoring
"""

from uuid import uuid4

import pytest

from blkpoints.events import FraudBlocked
from blkpoints.models import ReferralClickRequest, ReferralRecord, ReferralStatus, SignupRequest
from blkpoints.referrals import RiskPolicy, hash_identifier, normalize_phone


def signup_referee(service, user_id="referee", **overrides):
    fields = dict(
        user_id=user_id,
        email=f"{user_id}@example.com",
        mobile_number="07700900222",
        device_fingerprint=f"dev-{user_id}",
        payment_fingerprint=f"card-{user_id}",
        referrer_id="referrer",
    )
    fields.update(overrides)
    return service.signup(SignupRequest(**fields))


@pytest.fixture
def referrer(make_member):
    return make_member(
        "referrer",
        mobile_number="07700900111",
        device_fingerprint="dev-referrer",
        payment_fingerprint="card-referrer",
    )


class TestIdentifiers:
    """Tests for identifier normalization and hashing."""

    def test_uk_mobile_normalized(self):
        """Test that national and international formats normalize to the same value."""
        assert normalize_phone("07700 900111") == "+447700900111"
        assert normalize_phone("+44 7700-900111") == "+447700900111"
        assert normalize_phone("") is None

    def test_hash_depends_on_pepper(self):
        """Test that hashes are stable per pepper and never the raw value."""
        first = hash_identifier("+447700900111", "pepper-a")

        assert first == hash_identifier("+447700900111", "pepper-a")
        assert first != hash_identifier("+447700900111", "pepper-b")
        assert "447700900111" not in first
        assert hash_identifier(None, "pepper-a") is None


class TestSignupChecks:
    """Tests for the signup-time fraud checks."""

    def test_clean_signup_creates_referral(self, service, referrer):
        """Test that a signup passing every check gets a signed_up referral."""
        result = signup_referee(service)

        assert result.referral is not None
        assert result.referral.status == ReferralStatus.SIGNED_UP
        assert result.referral.referrer_id == referrer
        assert result.account.referred_by == referrer
        assert service.fraud_audit() == []

    def test_signup_advances_click(self, service, referrer):
        """Test that a signup carrying a click id advances that record."""
        click = service.record_click(ReferralClickRequest(referrer_id=referrer, ip_address="203.0.113.9"))
        assert click.status == ReferralStatus.CLICKED

        result = signup_referee(service, referral_id=click.id, ip_address=None)

        assert result.referral.id == click.id
        assert result.referral.status == ReferralStatus.SIGNED_UP
        assert result.referral.ip_address == "203.0.113.9"
        assert result.referral.referee_id == "referee"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"email": "Referrer@Example.com "},
            {"mobile_number": "+44 7700 900111"},
        ],
    )
    def test_self_referral_blocked(self, service, referrer, overrides):
        """Test that sharing the referrer's email or phone blocks the referral."""
        result = signup_referee(service, **overrides)

        assert result.referral is None
        assert result.account.user_id == "referee"
        assert [a.code for a in service.fraud_audit()] == ["self_referral_blocked"]

    def test_referring_yourself_blocked(self, service):
        """Test that a user naming themselves as referrer gets no referral."""
        result = signup_referee(service, user_id="loop", referrer_id="loop")

        assert result.referral is None
        assert [a.code for a in service.fraud_audit()] == ["self_referral_blocked"]

    def test_duplicate_phone(self, service, referrer, make_member):
        """Test that a phone already on another account blocks the referral."""
        make_member("existing", mobile_number="07700900222")

        result = signup_referee(service)

        assert result.referral is None
        assert [a.code for a in service.fraud_audit()] == ["duplicate_phone"]

    def test_duplicate_device(self, service, referrer, make_member):
        """Test that a device used for a previous signup blocks the referral."""
        make_member("existing", device_fingerprint="shared-device")

        result = signup_referee(service, device_fingerprint="shared-device")

        assert result.referral is None
        assert [a.code for a in service.fraud_audit()] == ["duplicate_device"]

    def test_duplicate_payment_method(self, service, referrer, make_member):
        """Test that a card linked to another account blocks the referral."""
        make_member("existing", payment_fingerprint="card-shared")

        result = signup_referee(service, payment_fingerprint="card-shared")

        assert result.referral is None
        assert [a.code for a in service.fraud_audit()] == ["duplicate_payment_method"]

    def test_block_publishes_fraud_event(self, service, referrer):
        """Test that a blocked referral is announced for monitoring."""
        received = []
        service.bus.subscribe(FraudBlocked, received.append)

        signup_referee(service, email="referrer@example.com")

        assert len(received) == 1
        assert received[0].code == "self_referral_blocked"
        assert received[0].stage == "signup"
        assert received[0].referee_id == "referee"

    def test_phone_never_stored_raw(self, service, referrer):
        """Test that only the hashed phone is kept on the account."""
        result = signup_referee(service)

        assert result.account.phone_hash is not None
        assert "7700900222" not in result.account.phone_hash

    def test_repeated_signup_is_idempotent(self, service, referrer):
        """Test that a retried signup returns the same account and referral."""
        first = signup_referee(service)
        second = signup_referee(service)

        assert second.account.user_id == first.account.user_id
        assert second.referral.id == first.referral.id
        assert len(service.ledger.read(lambda txn: txn.list_referrals())) == 1


def seed_referrals(service, clock, referrer_id, count, shared_device=None, shared_phone=None):
    def work(txn):
        for i in range(count):
            txn.add_referral(ReferralRecord(
                id=uuid4(),
                referrer_id=referrer_id,
                referee_id=f"{referrer_id}-ref-{i}",
                status=ReferralStatus.SIGNED_UP,
                device_fingerprint=shared_device or f"{referrer_id}-dev-{i}",
                phone_hash=shared_phone or f"{referrer_id}-phone-{i}",
                ip_address=f"198.51.100.{i}",
                created_at=clock(),
                updated_at=clock(),
            ))
    service.ledger.transact(referrer_id, work)


class TestSuspiciousReferrers:
    """Tests for the read-only monitoring report."""

    def test_shared_device_flagged(self, service, clock):
        """Test that six referrals on one device are flagged."""
        seed_referrals(service, clock, "farmer", 6, shared_device="one-phone-farm")

        report = service.suspicious_report()

        assert len(report.suspicious) == 1
        flagged = report.suspicious[0]
        assert flagged.referrer_id == "farmer"
        assert flagged.total_refs == 6
        assert flagged.unique_devices == 1
        assert flagged.unique_phones == 6
        assert flagged.unique_ips == 6
        assert flagged.device_ratio == pytest.approx(1 / 6)
        assert flagged.risk_score == 83
        assert len(flagged.referrals) == 6

    def test_five_referrals_not_considered(self, service, clock):
        """Test that referrers need more than five referrals to be flagged."""
        seed_referrals(service, clock, "small", 5, shared_device="same")

        assert service.suspicious_report().suspicious == []

    def test_diverse_referrer_not_flagged(self, service, clock):
        """Test that distinct devices and phones are not suspicious."""
        seed_referrals(service, clock, "honest", 8)

        report = service.suspicious_report()

        assert report.suspicious == []
        assert report.summary.total_referrers == 1
        assert report.summary.total_referrals == 8

    def test_sorted_by_risk_and_summarized(self, service, clock):
        """Test that the most repetitive referrer comes first."""
        seed_referrals(service, clock, "medium", 6, shared_phone="same-phone")
        seed_referrals(service, clock, "worst", 10, shared_device="dev", shared_phone="phone")
        seed_referrals(service, clock, "honest", 6)

        report = service.suspicious_report()

        assert [s.referrer_id for s in report.suspicious] == ["worst", "medium"]
        assert report.summary.flagged == 2
        assert report.summary.total_referrers == 3
        assert report.summary.total_referrals == 22

    def test_clicks_without_signup_excluded(self, service, clock):
        """Test that bare link clicks are not counted as referrals."""
        for _ in range(7):
            service.record_click(ReferralClickRequest(referrer_id="clicky", device_fingerprint="same"))

        report = service.suspicious_report()

        assert report.suspicious == []
        assert report.summary.total_referrals == 0

    def test_report_uses_camel_case(self, service, clock):
        """Test the dashboard JSON keys."""
        seed_referrals(service, clock, "farmer", 6, shared_device="farm")

        data = service.suspicious_report().model_dump(by_alias=True)

        assert set(data["summary"]) == {"totalReferrers", "flagged", "totalReferrals"}
        assert {"referrerId", "totalRefs", "uniqueDevices", "uniquePhones", "riskScore"} <= set(data["suspicious"][0])


class TestRiskPolicy:
    """Tests for the configurable risk score."""

    def test_worst_strategy_uses_least_diverse_signal(self):
        policy = RiskPolicy()

        assert policy.score(device_ratio=1 / 6, phone_ratio=1.0) == 83
        assert policy.score(device_ratio=1.0, phone_ratio=1.0) == 0

    def test_weighted_strategy_blends_signals(self):
        policy = RiskPolicy(strategy="weighted", device_weight=0.5, phone_weight=0.5)

        assert policy.score(device_ratio=1 / 6, phone_ratio=1.0) == 42
        assert policy.score(device_ratio=0.0, phone_ratio=0.0) == 100

    def test_threshold_is_strict(self):
        policy = RiskPolicy()

        assert policy.is_suspicious(6, device_ratio=0.8, phone_ratio=0.8) is False
        assert policy.is_suspicious(6, device_ratio=0.79, phone_ratio=1.0) is True
