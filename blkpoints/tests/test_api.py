"""
HTTP Tests for the BlkPoints API

Tests cover:
1. Earning and redemption endpoints
2. Error mapping to status codes
3. Status and admin surfaces (camelCase JSON)
4. Signup responses that never reveal fraud outcomes
"""

import pytest
from fastapi.testclient import TestClient

from blkpoints.api import app, get_service


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def fund(client, user_id, points):
    response = client.post("/admin/points/adjust", json={
        "idempotency_key": f"seed-{user_id}",
        "user_id": user_id,
        "points": points,
        "note": "Test seed",
    })
    assert response.status_code == 200
    return response.json()


def signup(client, user_id, **fields):
    body = {"user_id": user_id, "email": f"{user_id}@example.com", **fields}
    return client.post("/signups", json=body)


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "blkpoints"}


class TestEarningEndpoints:
    """Tests for the booking and review notifiers."""

    def test_complete_booking(self, client):
        """Test that a completed booking grants whole-pound points."""
        response = client.post("/bookings/complete", json={
            "user_id": "user-1", "booking_id": "bk-1", "amount_gbp": "42.50",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["balance"] == 42
        assert data["entry"]["reason"] == "BOOKING_COMPLETED"
        assert data["replayed"] is False

    def test_invalid_amount_is_400(self, client):
        """Test that a zero booking amount is a validation error."""
        response = client.post("/bookings/complete", json={
            "user_id": "user-1", "booking_id": "bk-0", "amount_gbp": "0",
        })

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_amount"

    def test_duplicate_review_is_409(self, client):
        """Test that a second bonus for one review conflicts."""
        body = {"user_id": "user-1", "review_id": "rev-1"}
        assert client.post("/reviews/verified", json=body).status_code == 200

        response = client.post("/reviews/verified", json={**body, "idempotency_key": "other"})

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "duplicate_bonus"

    def test_unknown_booking_status_is_404(self, client):
        """Test that a status update for an unknown booking needs an owner."""
        response = client.post("/bookings/bk-missing/status", json={"status": "cancelled"})

        assert response.status_code == 404


class TestRedemptionEndpoint:
    """Tests for checkout redemption over HTTP."""

    def test_unverified_phone_is_403_with_action(self, client):
        """Test that the client is told to verify the phone."""
        signup(client, "u-1", mobile_number="07700900010")
        fund(client, "u-1", 1000)

        response = client.post("/loyalty/redeem", json={
            "idempotency_key": "k1", "user_id": "u-1", "points": 500,
        })

        assert response.status_code == 403
        assert response.json()["detail"] == {
            "code": "phone_not_verified",
            "message": "Verify your mobile number to redeem BlkPoints",
            "action": "verify_phone",
        }

    def test_redeem_after_verification(self, client):
        """Test a successful redemption returns the GBP credit."""
        signup(client, "u-2", mobile_number="07700900011")
        client.post("/users/u-2/phone-verified", json={"verified": True})
        fund(client, "u-2", 1000)

        response = client.post("/loyalty/redeem", json={
            "idempotency_key": "k1", "user_id": "u-2", "points": 500, "booking_amount_gbp": "10.00",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["value_gbp"] == "5.00"
        assert data["points"] == 500
        assert data["balance_after"] == 500

    def test_booking_below_minimum_is_400(self, client):
        """Test that validation messages are surfaced verbatim."""
        signup(client, "u-3")
        client.post("/users/u-3/phone-verified", json={"verified": True})
        fund(client, "u-3", 1000)

        response = client.post("/loyalty/redeem", json={
            "idempotency_key": "k1", "user_id": "u-3", "points": 500, "booking_amount_gbp": "9.50",
        })

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "booking_below_minimum"
        assert "£10.00" in detail["message"]

    def test_phone_verification_for_unknown_user_is_404(self, client):
        response = client.post("/users/ghost/phone-verified", json={"verified": True})

        assert response.status_code == 404


class TestStatusAndHistory:
    """Tests for the dashboard surfaces."""

    def test_status_uses_camel_case(self, client):
        """Test the loyalty status shape."""
        fund(client, "u-4", 650)

        response = client.get("/users/u-4/loyalty/status")

        assert response.status_code == 200
        data = response.json()
        assert data["points"] == 650
        assert data["gbpValue"] == "6.50"
        assert data["minRedeemGbp"] == "5.00"
        assert data["minRedeemPoints"] == 500
        assert data["canRedeem"] is True
        assert data["isVerified"] is False
        assert data["redemptionCap"]["max"] == 5000
        assert data["redemptionCap"]["remaining"] == 5000

    def test_ledger_history_paginates_newest_first(self, client):
        """Test ledger history paging."""
        for i in range(3):
            client.post("/bookings/complete", json={
                "user_id": "u-5", "booking_id": f"bk-{i}", "amount_gbp": f"{(i + 1) * 10}.00",
            })

        response = client.get("/users/u-5/ledger", params={"limit": 2, "offset": 0})

        data = response.json()
        assert data["total_count"] == 3
        assert data["current_balance"] == 60
        assert [e["delta_points"] for e in data["entries"]] == [30, 20]


class TestSignupEndpoint:
    """Tests for the signup handler."""

    def test_blocked_referral_looks_like_clean_signup(self, client, service):
        """Test that the response for a blocked referral matches a clean one."""
        signup(client, "referrer", mobile_number="07700900100")

        clean = signup(client, "friend", mobile_number="07700900101", referrer_id="referrer")
        blocked = signup(client, "sneaky", mobile_number="07700900100", referrer_id="referrer")

        assert clean.status_code == blocked.status_code == 201
        assert set(clean.json()) == set(blocked.json()) == {"user_id", "message"}
        assert clean.json()["message"] == blocked.json()["message"]
        assert [a.code for a in service.fraud_audit()] == ["self_referral_blocked"]

    def test_click_then_signup(self, client):
        """Test that a click id returned by the click endpoint is accepted at signup."""
        signup(client, "referrer")
        click = client.post("/referrals/click", json={"referrer_id": "referrer", "ip_address": "203.0.113.1"})

        assert click.status_code == 201
        response = signup(client, "friend", referrer_id="referrer", referral_id=click.json()["id"])
        assert response.status_code == 201


class TestAdminEndpoints:
    """Tests for admin-only operations."""

    def test_reverse_entry(self, client):
        """Test that reversing a grant removes it from the balance."""
        granted = fund(client, "u-6", 300)

        response = client.post(
            f"/admin/entries/{granted['entry']['id']}/reverse",
            json={"reason": "Goodwill credit issued in error", "performed_by": "ops"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["entry"]["reason"] == "REVERSAL"
        assert data["entry"]["delta_points"] == -300
        assert data["balance"] == 0

    def test_reverse_unknown_entry_is_404(self, client):
        response = client.post(
            "/admin/entries/00000000-0000-0000-0000-000000000000/reverse",
            json={"reason": "test"},
        )

        assert response.status_code == 404

    def test_suspicious_report_and_sweep(self, client):
        """Test the monitoring report shape and a manual sweep."""
        report = client.get("/admin/referrals/suspicious")

        assert report.status_code == 200
        assert report.json() == {
            "suspicious": [],
            "summary": {"totalReferrers": 0, "flagged": 0, "totalReferrals": 0},
        }

        sweep = client.post("/admin/confirmation-sweep")
        assert sweep.status_code == 200
        assert sweep.json() == {
            "examined": 0, "confirmed": 0, "cancelled": 0, "skipped": 0, "lost_race": 0, "failed": 0,
        }
