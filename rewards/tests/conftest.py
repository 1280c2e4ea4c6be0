from datetime import datetime, timedelta, timezone

import pytest

from rewards.config import RewardsSettings
from rewards.service import RewardsService
from rewards.storage import InMemoryStorage


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def make_service(clock):
    """Build a service on a fresh in-memory store with test-friendly settings."""

    def factory(storage=None, **overrides):
        options = dict(
            join_bonus=10,
            referral_bonus=5,
            min_withdraw=50,
            max_withdraw=500,
            withdraw_amount=50,
            daily_withdraw_limit=2,
            require_verified_device=False,
            admin_secret="s3cret-admin",
        )
        options.update(overrides)
        return RewardsService(
            settings=RewardsSettings(**options),
            storage=storage or InMemoryStorage(),
            clock=clock,
        )

    return factory


@pytest.fixture
def delivered():
    """Collects every event a service delivers to subscribers."""
    return []


@pytest.fixture
def service(make_service, delivered):
    svc = make_service()
    svc.events.subscribe(delivered.append)
    return svc
