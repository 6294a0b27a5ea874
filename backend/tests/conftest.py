"""
Shared fixtures for entitlement tests.

Profiles live in an in-memory motor-compatible database
(mongomock_motor), so conditional updates behave like MongoDB.
"""

import pytest
import pytest_asyncio
from datetime import datetime, timezone, timedelta
from mongomock_motor import AsyncMongoMockClient

from entitlements.services import EntitlementServices

T0 = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
ACCOUNT_ID = "acct_7f3a"


class FakeClock:
    """Settable clock passed to the meter and reconciler."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FlakyCollection:
    """Collection proxy that fails the next N calls of one method."""

    def __init__(self, inner, method: str, failures: int, error: Exception):
        self._inner = inner
        self._method = method
        self.failures = failures
        self._error = error
        self.calls = 0

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if name != self._method:
            return attr

        async def flaky(*args, **kwargs):
            self.calls += 1
            if self.failures > 0:
                self.failures -= 1
                raise self._error
            return await attr(*args, **kwargs)

        return flaky


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def db():
    return AsyncMongoMockClient()["mixmind_test"]


@pytest.fixture
def services(db, clock):
    return EntitlementServices(db, clock=clock)


@pytest_asyncio.fixture
async def profile(services):
    return await services.store.create_if_absent(ACCOUNT_ID, created_at=T0)
