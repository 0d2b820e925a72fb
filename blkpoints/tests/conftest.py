from datetime import datetime, timedelta, timezone

import pytest

from blkpoints.config import Settings
from blkpoints.models import AdjustPointsRequest, PhoneVerifiedRequest, SignupRequest
from blkpoints.service import LoyaltyService
from blkpoints.storage.memory import InMemoryStorage


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(_env_file=None, identifier_pepper="test-pepper", database_url="")


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage, settings, clock):
    return LoyaltyService(storage=storage, settings=settings, clock=clock)


@pytest.fixture
def make_member(service):
    """Sign up a user, optionally verify their phone and seed their balance."""

    def _make(user_id, points=0, verified=True, mobile_number=None, **signup_fields):
        service.signup(SignupRequest(
            user_id=user_id,
            email=f"{user_id}@example.com",
            mobile_number=mobile_number,
            **signup_fields,
        ))
        if verified:
            service.set_phone_verified(user_id, PhoneVerifiedRequest(verified=True))
        if points:
            service.adjust_points(AdjustPointsRequest(
                idempotency_key=f"seed-{user_id}",
                user_id=user_id,
                points=points,
                note="Test seed",
            ))
        return user_id

    return _make
