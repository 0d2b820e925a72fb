"""
Unit Tests for the Referral Confirmation Window

Tests cover:
1. Confirmation after 24 hours when the booking stands
2. Release when the booking is cancelled or refunded
3. Unresolved bookings retried on the next sweep
4. Racing sweeps never double-credit
5. Paging past unresolved or failing records
"""

import threading
from decimal import Decimal

import pytest

from blkpoints.events import ReferralBonusConfirmed, ReferralBonusReleased
from blkpoints.errors import InvalidStateTransitionError
from blkpoints.models import (
    BookingStatus,
    BookingStatusRequest,
    CompleteBookingRequest,
    EntryReason,
    EntryStatus,
    ReferralStatus,
    ReverseEntryRequest,
    SignupRequest,
)
from blkpoints.service import LoyaltyService


@pytest.fixture
def held_bonus(service, make_member):
    """A referee's first booking has completed and the referrer's bonus is held."""
    make_member("referrer", mobile_number="07700900001", device_fingerprint="dev-referrer")
    service.signup(SignupRequest(
        user_id="referee",
        email="referee@example.com",
        mobile_number="07700900002",
        device_fingerprint="dev-referee",
        referrer_id="referrer",
    ))
    service.complete_booking(CompleteBookingRequest(
        user_id="referee", booking_id="bk-1", amount_gbp=Decimal("75.00"),
    ))
    return "referrer", "referee"


def referral_bonus(service, referrer_id):
    return next(e for e in service.ledger.history(referrer_id) if e.reason == EntryReason.REFERRAL_COMPLETED)


def referral_status(service, referee_id):
    return service.ledger.read(lambda txn: txn.referral_for_referee(referee_id)).status


class TestConfirmation:
    """Tests for bonuses whose booking still stands."""

    def test_nothing_due_before_window_ends(self, service, held_bonus, clock):
        """Test that a sweep inside the 24-hour window leaves the bonus held."""
        referrer, referee = held_bonus
        clock.advance(hours=23, minutes=59)

        counts = service.run_sweep()

        assert counts["examined"] == 0
        assert service.ledger.get_balance(referrer) == 0
        assert referral_status(service, referee) == ReferralStatus.PENDING_CONFIRMATION

    def test_confirmed_after_window(self, service, held_bonus, clock):
        """Test that the bonus is credited once 24 hours have passed."""
        referrer, referee = held_bonus
        confirmed = []
        service.bus.subscribe(ReferralBonusConfirmed, confirmed.append)
        clock.advance(hours=24)

        counts = service.run_sweep()

        assert counts == {"examined": 1, "confirmed": 1, "cancelled": 0, "skipped": 0, "lost_race": 0, "failed": 0}
        assert service.ledger.get_balance(referrer) == 100
        assert referral_bonus(service, referrer).status == EntryStatus.CONFIRMED
        assert referral_status(service, referee) == ReferralStatus.CONFIRMED
        assert confirmed[0].balance == 100
        assert service.ledger.reconcile(referrer) == (100, 100)

    def test_second_sweep_does_not_credit_again(self, service, held_bonus, clock):
        """Test that a confirmed referral is never picked up again."""
        referrer, _ = held_bonus
        clock.advance(hours=25)
        service.run_sweep()

        counts = service.run_sweep()

        assert counts["examined"] == 0
        assert service.ledger.get_balance(referrer) == 100


class TestRelease:
    """Tests for bonuses whose booking fell through."""

    @pytest.mark.parametrize("status", [BookingStatus.CANCELLED, BookingStatus.REFUNDED])
    def test_released_when_booking_undone(self, service, held_bonus, clock, status):
        """Test that a cancelled or refunded booking means no credit, ever."""
        referrer, referee = held_bonus
        released = []
        service.bus.subscribe(ReferralBonusReleased, released.append)
        clock.advance(hours=6)
        service.update_booking_status("bk-1", BookingStatusRequest(status=status))
        clock.advance(hours=18)

        counts = service.run_sweep()

        assert counts["cancelled"] == 1
        assert service.ledger.get_balance(referrer) == 0
        assert referral_bonus(service, referrer).status == EntryStatus.RELEASED
        assert referral_status(service, referee) == ReferralStatus.CANCELLED
        assert released[0].booking_status == status.value
        assert service.ledger.reconcile(referrer) == (0, 0)

    def test_released_entry_cannot_be_reversed(self, service, held_bonus, clock):
        """Test that an entry which never reached the balance has nothing to reverse."""
        referrer, _ = held_bonus
        service.update_booking_status("bk-1", BookingStatusRequest(status=BookingStatus.CANCELLED))
        clock.advance(hours=24)
        service.run_sweep()

        with pytest.raises(InvalidStateTransitionError):
            service.reverse_entry(referral_bonus(service, referrer).id, ReverseEntryRequest(reason="test"))

    def test_pending_entry_cannot_be_reversed(self, service, held_bonus):
        """Test that held entries settle only through the sweep."""
        referrer, _ = held_bonus

        with pytest.raises(InvalidStateTransitionError):
            service.reverse_entry(referral_bonus(service, referrer).id, ReverseEntryRequest(reason="test"))

    def test_cancelled_booking_cannot_complete_again(self, service, held_bonus):
        """Test that cancellation is final for a booking."""
        service.update_booking_status("bk-1", BookingStatusRequest(status=BookingStatus.CANCELLED))

        with pytest.raises(InvalidStateTransitionError):
            service.update_booking_status("bk-1", BookingStatusRequest(status=BookingStatus.COMPLETED))


    def test_completion_after_cancellation_is_refused(self, service, held_bonus, clock):
        """Test that a late completion notice cannot revive a cancelled booking's bonus."""
        referrer, _ = held_bonus
        service.update_booking_status("bk-1", BookingStatusRequest(status=BookingStatus.CANCELLED))

        with pytest.raises(InvalidStateTransitionError):
            service.complete_booking(CompleteBookingRequest(
                user_id="referee", booking_id="bk-1", amount_gbp=Decimal("75.00"), idempotency_key="retry-2",
            ))
        clock.advance(hours=25)
        counts = service.run_sweep()

        assert counts["cancelled"] == 1
        assert counts["confirmed"] == 0
        assert service.ledger.get_balance(referrer) == 0
        assert service.ledger.read(lambda txn: txn.get_booking("bk-1")).status == BookingStatus.CANCELLED


class TestUnresolvedBookings:
    """Tests for bookings whose outcome is not known at sweep time."""

    def test_skipped_then_confirmed(self, service, held_bonus, clock):
        """Test that an unresolved booking is retried on the next sweep."""
        referrer, referee = held_bonus
        service.update_booking_status("bk-1", BookingStatusRequest(status=BookingStatus.PENDING))
        clock.advance(hours=24)

        counts = service.run_sweep()

        assert counts["skipped"] == 1
        assert referral_status(service, referee) == ReferralStatus.PENDING_CONFIRMATION
        assert service.ledger.get_balance(referrer) == 0

        service.update_booking_status("bk-1", BookingStatusRequest(status=BookingStatus.COMPLETED))
        counts = service.run_sweep()

        assert counts["confirmed"] == 1
        assert service.ledger.get_balance(referrer) == 100


class TestRacingSweeps:
    """Tests for several sweeps running at once."""

    def test_parallel_sweeps_credit_once(self, service, held_bonus, clock):
        """Test that only the sweep winning the status change credits the balance."""
        referrer, _ = held_bonus
        clock.advance(hours=24)
        barrier = threading.Barrier(4)
        results = []
        lock = threading.Lock()

        def sweep():
            barrier.wait()
            counts = service.run_sweep()
            with lock:
                results.append(counts)

        threads = [threading.Thread(target=sweep) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(r["confirmed"] for r in results) == 1
        assert service.ledger.get_balance(referrer) == 100
        assert service.ledger.reconcile(referrer) == (100, 100)




@pytest.fixture
def paged_service(storage, settings, clock):
    return LoyaltyService(
        storage=storage,
        settings=settings.model_copy(update={"sweep_batch_size": 1}),
        clock=clock,
    )


def refer_and_book(service, referrer_id, referee_id, booking_id, referrer_phone, referee_phone):
    service.signup(SignupRequest(
        user_id=referrer_id, email=f"{referrer_id}@example.com", mobile_number=referrer_phone,
    ))
    service.signup(SignupRequest(
        user_id=referee_id,
        email=f"{referee_id}@example.com",
        mobile_number=referee_phone,
        device_fingerprint=f"dev-{referee_id}",
        referrer_id=referrer_id,
    ))
    service.complete_booking(CompleteBookingRequest(
        user_id=referee_id, booking_id=booking_id, amount_gbp=Decimal("30.00"),
    ))


class TestSweepPaging:
    """Tests for sweeps over more due records than one batch holds."""

    @pytest.fixture
    def two_held(self, paged_service, clock):
        refer_and_book(paged_service, "ref-a", "friend-a", "bk-a", "07700900301", "07700900302")
        clock.advance(minutes=1)
        refer_and_book(paged_service, "ref-b", "friend-b", "bk-b", "07700900303", "07700900304")
        return paged_service

    def test_unresolved_record_does_not_block_later_ones(self, two_held, clock):
        """Test that a skipped record at the head of the queue is paged past."""
        two_held.update_booking_status("bk-a", BookingStatusRequest(status=BookingStatus.PENDING))
        clock.advance(hours=24)

        for _ in range(2):
            counts = two_held.run_sweep()

        assert counts["examined"] == 1
        assert counts["skipped"] == 1
        assert two_held.ledger.get_balance("ref-b") == 100
        assert two_held.ledger.get_balance("ref-a") == 0

    def test_every_due_record_examined_in_one_sweep(self, two_held, clock):
        """Test that one sweep walks every page."""
        clock.advance(hours=24)

        counts = two_held.run_sweep()

        assert counts["examined"] == 2
        assert counts["confirmed"] == 2

    def test_failing_record_does_not_stop_the_sweep(self, two_held, clock, monkeypatch):
        """Test that an error settling one record leaves it for the next sweep."""
        clock.advance(hours=24)
        scheduler = two_held.scheduler
        settle = scheduler._settle

        def settle_or_fail(txn, referral, now):
            if referral.referrer_id == "ref-a":
                raise RuntimeError("storage unavailable")
            return settle(txn, referral, now)

        monkeypatch.setattr(scheduler, "_settle", settle_or_fail)
        counts = two_held.run_sweep()

        assert counts["failed"] == 1
        assert counts["confirmed"] == 1
        assert two_held.ledger.get_balance("ref-a") == 0
        assert two_held.ledger.get_balance("ref-b") == 100

        monkeypatch.undo()
        assert two_held.run_sweep()["confirmed"] == 1
        assert two_held.ledger.get_balance("ref-a") == 100
