import asyncio
import os
from datetime import datetime

import pytest
import pytest_asyncio
from tortoise import Tortoise

# Ensure we're in testing mode before the package reads its configuration
os.environ["TESTING"] = "True"

from tutorpay.config import UTC, LedgerSettings  # noqa: E402
from tutorpay.errors import PaymentRailError  # noqa: E402
from tutorpay.models import Lesson  # noqa: E402
from tutorpay.progression import register_teacher  # noqa: E402
from tutorpay.security import rate_limiter  # noqa: E402
from tutorpay.tiers import DEFAULT_TIERS, TierRegistry  # noqa: E402

# Monday 2 March 2026, 09:00 UTC
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeRail:
    """Payment rail double recording every transfer request."""

    def __init__(self, fail_for=None, error=None, delay=0):
        self.calls = []
        self.fail_for = fail_for
        self.error = error
        self.delay = delay

    async def create_transfer(self, amount, currency, destination_account, idempotency_key):
        self.calls.append({
            "amount": amount,
            "currency": currency,
            "destination_account": destination_account,
            "idempotency_key": idempotency_key,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None and (self.fail_for is None or destination_account == self.fail_for):
            raise self.error
        return f"tr_{idempotency_key}"

    async def close(self):
        pass


class FakeNotifier:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def notify(self, event_type, recipient_id, payload):
        if self.error is not None:
            raise self.error
        self.sent.append((event_type, recipient_id, payload))

    async def close(self):
        pass


@pytest_asyncio.fixture(autouse=True)
async def initialize_tests_db():
    """Fresh in-memory database for every test"""
    await Tortoise.init(
        db_url="sqlite://:memory:",
        modules={"models": ["tutorpay.models"]},
        use_tz=True,
        timezone="UTC",
    )
    await Tortoise.generate_schemas()

    yield

    await Tortoise.close_connections()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.ip_requests.clear()
    yield


@pytest.fixture
def registry():
    return TierRegistry(DEFAULT_TIERS)


@pytest.fixture
def settings():
    return LedgerSettings(transfer_timeout_seconds=0.5)


@pytest.fixture
def rail():
    return FakeRail()


@pytest.fixture
def declining_rail():
    return FakeRail(error=PaymentRailError("Destination account closed"))


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_teacher(registry):
    async def _make_teacher(name="Alice", tier=None, account="acct_alice", verified=True, telegram_id=None):
        return await register_teacher(
            name,
            telegram_id=telegram_id,
            payout_account_id=account,
            payout_account_verified=verified,
            tier=tier,
            registry=registry,
            actor="test",
            now=T0.replace(year=2025),
        )
    return _make_teacher


@pytest.fixture
def make_lesson():
    counter = {"n": 0}

    async def _make_lesson(teacher, scheduled_time=T0, duration_minutes=60, student_id=None, rating=None, lesson_id=None):
        counter["n"] += 1
        return await Lesson.create(
            lesson_id=lesson_id or f"lesson-{teacher.id}-{counter['n']}",
            teacher_id=teacher.id,
            student_id=student_id,
            duration_minutes=duration_minutes,
            scheduled_time=scheduled_time,
            student_rating=rating,
        )
    return _make_lesson


@pytest.fixture
def make_rail():
    return FakeRail
