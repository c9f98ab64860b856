from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from modules.orders.services import OrderLifecycleService


class FixedClock:
    """Deterministic clock; ``advance`` moves time forward explicitly."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 1) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now


@pytest.fixture(autouse=True)
def _use_db(db):
    """Automatically use the test database for all tests."""


@pytest.fixture()
def clock():
    return FixedClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def service(clock):
    """Lifecycle service on the Django unit of work with a fixed clock."""
    return OrderLifecycleService(clock=clock, loyalty_rate=Decimal("1"))


@pytest.fixture()
def initialized_order(service):
    """``ref-123`` paid in cash: 100 USD, order ``Initial``, payment ``Pending``."""
    return service.initialize("ref-123", "cash", Decimal("100"), "USD")
