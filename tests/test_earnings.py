import pytest
from datetime import timedelta
from decimal import Decimal

from tutorpay.config import LedgerSettings
from tutorpay.earnings import (
    clear_held_earnings, get_platform_revenue, get_teacher_earnings_summary,
    ingest_completed_lesson, parse_lesson_event, record_earning
)
from tutorpay.errors import NotFoundError, ValidationError
from tutorpay.models import EarningStatus, Lesson, Metric, MetricType, TeacherEarning, TeacherProfile
from tutorpay.progression import assign_tier

from conftest import T0


def lesson_event(teacher, lesson_id="L-1", **overrides):
    event = {
        "lesson_id": lesson_id,
        "teacher_id": teacher.id,
        "duration_minutes": 60,
        "scheduled_time": T0.isoformat(),
        "student_id": "student-1",
        "rating": 5,
    }
    event.update(overrides)
    return event


@pytest.mark.asyncio
async def test_skilled_lesson_is_held_for_seven_days(make_teacher, make_lesson, registry, settings):
    """A 60 minute lesson at £8/h earns 8.00 and is held until day 7"""
    teacher = await make_teacher(tier="skilled")
    lesson = await make_lesson(teacher)

    earning = await record_earning(lesson, registry, settings, now=T0 + timedelta(hours=1))

    assert earning.tier == "skilled"
    assert earning.teacher_hourly_rate == Decimal("8.00")
    assert earning.amount_earned == Decimal("8.00")
    assert earning.total_lesson_cost == Decimal("15.00")
    assert earning.platform_fee == Decimal("7.00")
    assert earning.status == EarningStatus.HELD
    assert earning.clear_at == T0 + timedelta(days=7)


@pytest.mark.asyncio
async def test_partial_hour_amounts(make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher(tier="skilled")
    lesson = await make_lesson(teacher, duration_minutes=45)

    earning = await record_earning(lesson, registry, settings, now=T0)

    assert earning.amount_earned == Decimal("6.00")
    assert earning.total_lesson_cost == Decimal("11.25")
    assert earning.platform_fee == Decimal("5.25")


@pytest.mark.asyncio
async def test_record_earning_is_idempotent(make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher()
    lesson = await make_lesson(teacher)

    first = await record_earning(lesson, registry, settings, now=T0)
    second = await record_earning(lesson, registry, settings, now=T0)

    assert first.id == second.id
    assert await TeacherEarning.filter(lesson_id=lesson.lesson_id).count() == 1
    assert await Metric.filter(metric_type=MetricType.EARNING_RECORDED).count() == 1


@pytest.mark.asyncio
async def test_old_lesson_is_recorded_cleared(make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher()
    lesson = await make_lesson(teacher)

    earning = await record_earning(lesson, registry, settings, now=T0 + timedelta(days=7))

    assert earning.status == EarningStatus.CLEARED
    assert earning.cleared_at is not None


@pytest.mark.asyncio
async def test_rerecord_advances_but_never_regresses(make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher()
    lesson = await make_lesson(teacher)

    earning = await record_earning(lesson, registry, settings, now=T0)
    assert earning.status == EarningStatus.HELD

    earning = await record_earning(lesson, registry, settings, now=T0 + timedelta(days=8))
    assert earning.status == EarningStatus.CLEARED

    # A longer hold period would put it back to held; status stays cleared
    earning = await record_earning(lesson, registry, LedgerSettings(hold_period_days=30), now=T0 + timedelta(days=8))
    assert earning.status == EarningStatus.CLEARED


@pytest.mark.asyncio
async def test_rerecord_of_paid_earning_is_a_noop(make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher()
    lesson = await make_lesson(teacher)
    earning = await record_earning(lesson, registry, settings, now=T0)
    await TeacherEarning.filter(id=earning.id).update(status=EarningStatus.PAID, paid_at=T0)

    await assign_tier(teacher.id, "master", "raise", registry=registry, now=T0 - timedelta(days=1))
    again = await record_earning(lesson, registry, settings, now=T0 + timedelta(days=10))

    assert again.status == EarningStatus.PAID
    assert again.amount_earned == Decimal("5.00")


@pytest.mark.asyncio
async def test_rate_comes_from_tier_at_lesson_time(make_teacher, make_lesson, registry, settings):
    """A promotion after the lesson does not change what the lesson earned"""
    teacher = await make_teacher()
    before = await make_lesson(teacher, scheduled_time=T0)
    after = await make_lesson(teacher, scheduled_time=T0 + timedelta(days=2))

    await assign_tier(teacher.id, "skilled", "promotion", registry=registry, now=T0 + timedelta(days=1))

    early = await record_earning(before, registry, settings, now=T0 + timedelta(days=3))
    late = await record_earning(after, registry, settings, now=T0 + timedelta(days=3))

    assert early.tier == "newcomer"
    assert early.amount_earned == Decimal("5.00")
    assert late.tier == "skilled"
    assert late.amount_earned == Decimal("8.00")


@pytest.mark.asyncio
async def test_clear_held_earnings_respects_hold_period(make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher()
    first = await record_earning(await make_lesson(teacher, scheduled_time=T0), registry, settings, now=T0)
    second = await record_earning(
        await make_lesson(teacher, scheduled_time=T0 + timedelta(days=1)), registry, settings, now=T0
    )

    assert await clear_held_earnings(now=T0 + timedelta(days=6)) == 0
    assert await clear_held_earnings(now=T0 + timedelta(days=7)) == 1

    first = await TeacherEarning.get(id=first.id)
    second = await TeacherEarning.get(id=second.id)
    assert first.status == EarningStatus.CLEARED
    assert second.status == EarningStatus.HELD


@pytest.mark.asyncio
async def test_ingest_records_lesson_and_earning(make_teacher, registry, settings):
    teacher = await make_teacher(tier="skilled")

    earning = await ingest_completed_lesson(
        lesson_event(teacher), registry, LedgerSettings(auto_demotion_enabled=False), now=T0 + timedelta(hours=1)
    )

    assert earning.amount_earned == Decimal("8.00")
    assert earning.status == EarningStatus.HELD

    lesson = await Lesson.get(lesson_id="L-1")
    assert lesson.student_id == "student-1"
    assert lesson.student_rating == 5

    teacher = await TeacherProfile.get(id=teacher.id)
    assert teacher.completed_lessons == 1
    assert teacher.hours_taught == 1
    assert teacher.average_rating == 5
    assert teacher.current_tier == "skilled"


@pytest.mark.asyncio
async def test_duplicate_delivery_returns_existing_earning(make_teacher, registry, settings):
    teacher = await make_teacher()

    first = await ingest_completed_lesson(lesson_event(teacher), registry, settings, now=T0)
    second = await ingest_completed_lesson(lesson_event(teacher), registry, settings, now=T0)

    assert first.id == second.id
    assert await Lesson.all().count() == 1
    assert (await TeacherProfile.get(id=teacher.id)).completed_lessons == 1


@pytest.mark.asyncio
async def test_ingest_rejects_lesson_of_another_teacher(make_teacher, registry, settings):
    alice = await make_teacher("Alice")
    bob = await make_teacher("Bob", account="acct_bob")
    await ingest_completed_lesson(lesson_event(alice), registry, settings, now=T0)

    with pytest.raises(ValidationError, match="another teacher"):
        await ingest_completed_lesson(lesson_event(bob), registry, settings, now=T0)


@pytest.mark.asyncio
async def test_ingest_unknown_teacher(registry, settings):
    event = {"lesson_id": "L-9", "teacher_id": 999, "duration_minutes": 60, "scheduled_time": T0.isoformat()}
    with pytest.raises(NotFoundError):
        await ingest_completed_lesson(event, registry, settings)
    assert await Lesson.all().count() == 0


def test_parse_lesson_event_validation():
    with pytest.raises(ValidationError, match="Missing lesson fields"):
        parse_lesson_event({"lesson_id": "L-1"})
    with pytest.raises(ValidationError, match="Invalid lesson duration"):
        parse_lesson_event({"lesson_id": "L-1", "teacher_id": 1, "duration_minutes": 0, "scheduled_time": T0.isoformat()})
    with pytest.raises(ValidationError, match="Invalid scheduled_time"):
        parse_lesson_event({"lesson_id": "L-1", "teacher_id": 1, "duration_minutes": 60, "scheduled_time": "yesterday"})
    with pytest.raises(ValidationError, match="Rating out of range"):
        parse_lesson_event({
            "lesson_id": "L-1", "teacher_id": 1, "duration_minutes": 60,
            "scheduled_time": T0.isoformat(), "rating": 7,
        })
    with pytest.raises(ValidationError):
        parse_lesson_event(["not", "an", "object"])


def test_parse_lesson_event_assumes_utc():
    event = parse_lesson_event({
        "lesson_id": 42, "teacher_id": "7", "duration_minutes": "30", "scheduled_time": "2026-03-02T09:00:00",
    })
    assert event["lesson_id"] == "42"
    assert event["teacher_id"] == 7
    assert event["duration_minutes"] == 30
    assert event["scheduled_time"] == T0
    assert event["student_id"] is None


@pytest.mark.asyncio
async def test_earnings_summary(make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher()
    await record_earning(await make_lesson(teacher, scheduled_time=T0), registry, settings, now=T0)
    await record_earning(await make_lesson(teacher, scheduled_time=T0 - timedelta(days=10)), registry, settings, now=T0)

    summary = await get_teacher_earnings_summary(teacher.id)

    assert summary["totals"]["held"] == Decimal("5.00")
    assert summary["totals"]["cleared"] == Decimal("5.00")
    assert summary["counts"]["paid"] == 0
    assert summary["unpaid_balance"] == Decimal("10.00")
    assert summary["next_clear_at"] == (T0 + timedelta(days=7)).isoformat()

    with pytest.raises(NotFoundError):
        await get_teacher_earnings_summary(999)


@pytest.mark.asyncio
async def test_platform_revenue(make_teacher, make_lesson, registry, settings):
    newcomer = await make_teacher("Alice")
    skilled = await make_teacher("Bob", tier="skilled", account="acct_bob")
    await record_earning(await make_lesson(newcomer), registry, settings, now=T0)
    await record_earning(await make_lesson(skilled), registry, settings, now=T0)
    await record_earning(await make_lesson(skilled, scheduled_time=T0 + timedelta(days=40)), registry, settings, now=T0)

    report = await get_platform_revenue(T0 - timedelta(days=1), T0 + timedelta(days=30))

    assert report["total_lessons"] == 2
    assert report["total_lesson_revenue"] == Decimal("30.00")
    assert report["total_teacher_earnings"] == Decimal("13.00")
    assert report["total_platform_fees"] == Decimal("17.00")
    assert report["unique_teachers"] == 2


@pytest.mark.asyncio
async def test_redelivery_corrects_lesson_details(make_teacher, registry):
    """A corrected duration on redelivery reprices the unpaid earning"""
    settings = LedgerSettings(auto_demotion_enabled=False)
    teacher = await make_teacher(tier="skilled")

    first = await ingest_completed_lesson(
        lesson_event(teacher, "L-9", duration_minutes=30, rating=3), registry, settings, now=T0
    )
    assert first.amount_earned == Decimal("4.00")

    second = await ingest_completed_lesson(
        lesson_event(teacher, "L-9", duration_minutes=60, student_id="student-2", rating=5), registry, settings, now=T0
    )

    assert second.id == first.id
    assert second.amount_earned == Decimal("8.00")
    assert second.total_lesson_cost == Decimal("15.00")

    lesson = await Lesson.get(lesson_id="L-9")
    assert lesson.duration_minutes == 60
    assert lesson.student_id == "student-2"
    assert lesson.student_rating == 5

    teacher = await TeacherProfile.get(id=teacher.id)
    assert teacher.completed_lessons == 1
    assert teacher.hours_taught == 1
    assert teacher.average_rating == 5
    assert await Metric.filter(metric_type=MetricType.LESSON_INGESTED).count() == 1


@pytest.mark.asyncio
async def test_redelivery_without_optional_fields_keeps_them(make_teacher, registry, settings):
    teacher = await make_teacher()
    await ingest_completed_lesson(lesson_event(teacher, "L-9"), registry, settings, now=T0)

    event = lesson_event(teacher, "L-9")
    del event["student_id"]
    del event["rating"]
    await ingest_completed_lesson(event, registry, settings, now=T0)

    lesson = await Lesson.get(lesson_id="L-9")
    assert lesson.student_id == "student-1"
    assert lesson.student_rating == 5


@pytest.mark.asyncio
async def test_redelivery_ignores_corrections_once_paid(make_teacher, registry):
    settings = LedgerSettings(auto_demotion_enabled=False)
    teacher = await make_teacher(tier="skilled")
    earning = await ingest_completed_lesson(lesson_event(teacher, "L-9"), registry, settings, now=T0)
    await TeacherEarning.filter(id=earning.id).update(status=EarningStatus.PAID, paid_at=T0 + timedelta(days=8))

    again = await ingest_completed_lesson(
        lesson_event(teacher, "L-9", duration_minutes=90), registry, settings, now=T0 + timedelta(days=9)
    )

    assert again.status == EarningStatus.PAID
    assert again.amount_earned == Decimal("8.00")
    assert (await Lesson.get(lesson_id="L-9")).duration_minutes == 60
    assert (await TeacherProfile.get(id=teacher.id)).hours_taught == 1
