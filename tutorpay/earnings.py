"""
Teacher earnings ledger.
Turns completed lessons into earnings, applies the hold period and reports balances.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from dateutil.parser import isoparse
from tortoise.exceptions import IntegrityError

from .bonuses import award_milestone_bonuses
from .config import UTC, LedgerSettings, get_current_time
from .errors import LedgerError, NotFoundError, ValidationError
from .metrics import track_metric
from .models import (
    EARNING_STATUS_ORDER, EarningStatus, Lesson, MetricType, PayoutBatch,
    PayoutStatus, TeacherBonus, TeacherEarning, TeacherProfile
)
from .progression import evaluate, refresh_teacher_stats, tier_in_effect_at
from .retention import calculate_retention
from .tiers import TierRegistry

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_lesson_event(event: Dict) -> Dict:
    """
    Validate a lesson-completed event from the booking service.

    Raises:
        ValidationError: when a field is missing or malformed
    """
    if not isinstance(event, dict):
        raise ValidationError("Lesson event must be an object")

    missing = [name for name in ("lesson_id", "teacher_id", "duration_minutes", "scheduled_time") if event.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing lesson fields: {', '.join(missing)}", details={"missing": missing})

    try:
        teacher_id = int(event["teacher_id"])
        duration_minutes = int(event["duration_minutes"])
    except (TypeError, ValueError):
        raise ValidationError("teacher_id and duration_minutes must be integers")
    if duration_minutes <= 0:
        raise ValidationError(f"Invalid lesson duration: {duration_minutes}")

    scheduled_time = event["scheduled_time"]
    if not isinstance(scheduled_time, datetime):
        try:
            scheduled_time = isoparse(str(scheduled_time))
        except ValueError:
            raise ValidationError(f"Invalid scheduled_time: {event['scheduled_time']}")
    if scheduled_time.tzinfo is None:
        scheduled_time = UTC.localize(scheduled_time)

    rating = event.get("rating")
    if rating is not None:
        try:
            rating = float(rating)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid rating: {rating}")
        if not 0 <= rating <= 5:
            raise ValidationError(f"Rating out of range: {rating}")

    student_id = event.get("student_id")
    return {
        "lesson_id": str(event["lesson_id"]),
        "teacher_id": teacher_id,
        "duration_minutes": duration_minutes,
        "scheduled_time": scheduled_time,
        "student_id": str(student_id) if student_id not in (None, "") else None,
        "student_rating": rating,
        "currency": str(event.get("currency") or "").lower() or None,
    }


async def record_earning(
    lesson: Lesson,
    registry: TierRegistry,
    settings: LedgerSettings,
    now: Optional[datetime] = None
) -> TeacherEarning:
    """
    Calculate and record the teacher's earning for a completed lesson.

    Idempotent on the lesson id. The rate is that of the tier the teacher
    held when the lesson took place, and is stored on the earning.

    Args:
        lesson: The completed lesson
        registry: Tier registry snapshot
        settings: Ledger settings (hold period, currency)
        now: Override for the current time

    Returns:
        The created or existing TeacherEarning
    """
    now = now or get_current_time()
    teacher = await TeacherProfile.get_or_none(id=lesson.teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {lesson.teacher_id} not found")

    tier = registry.get(await tier_in_effect_at(teacher, lesson.scheduled_time))

    hours = Decimal(lesson.duration_minutes) / Decimal(60)
    amount_earned = to_money(tier.teacher_hourly_rate * hours)
    total_lesson_cost = to_money(tier.student_hourly_price * hours)
    platform_fee = total_lesson_cost - amount_earned

    clear_at = lesson.scheduled_time + timedelta(days=settings.hold_period_days)
    status = EarningStatus.CLEARED if now >= clear_at else EarningStatus.HELD

    values = {
        "tier": tier.tier,
        "teacher_hourly_rate": tier.teacher_hourly_rate,
        "amount_earned": amount_earned,
        "platform_fee": platform_fee,
        "total_lesson_cost": total_lesson_cost,
        "lesson_completed_at": lesson.scheduled_time,
        "hold_period_days": settings.hold_period_days,
        "clear_at": clear_at,
    }

    existing = await TeacherEarning.get_or_none(lesson_id=lesson.lesson_id)
    if existing is None:
        try:
            earning = await TeacherEarning.create(
                lesson_id=lesson.lesson_id,
                teacher_id=teacher.id,
                currency=lesson.currency or settings.currency,
                status=status,
                cleared_at=now if status == EarningStatus.CLEARED else None,
                **values
            )
        except IntegrityError:
            # Concurrent delivery of the same lesson won the insert
            logger.info(f"Earning for lesson {lesson.lesson_id} was recorded concurrently")
            return await TeacherEarning.get(lesson_id=lesson.lesson_id)

        await track_metric(
            metric_type=MetricType.EARNING_RECORDED,
            entity_id=earning.id,
            teacher_id=teacher.id,
            value=float(amount_earned),
            metadata={
                "lesson_id": lesson.lesson_id,
                "tier": tier.tier,
                "amount_earned": float(amount_earned),
                "platform_fee": float(platform_fee),
                "status": status.value,
            }
        )
        logger.info(
            f"Recorded earning for lesson {lesson.lesson_id}: {amount_earned} {earning.currency} "
            f"(tier {tier.tier}, fee {platform_fee}, status {status.value})"
        )
        return earning

    return await _refresh_existing_earning(existing, values, status, now)


async def _settlement_lock(earning: TeacherEarning) -> Optional[str]:
    """Why the earning can no longer change, or None while it is still open."""
    if earning.status == EarningStatus.PAID or earning.payout_batch_id is not None:
        return f"already {earning.status.value}"
    in_flight = await PayoutBatch.filter(teacher_id=earning.teacher_id, status=PayoutStatus.PROCESSING)
    if any(earning.id in (batch.earning_ids or []) for batch in in_flight):
        return "in a payout in progress"
    return None


async def _refresh_existing_earning(
    existing: TeacherEarning, values: Dict, status: EarningStatus, now: datetime
) -> TeacherEarning:
    locked = await _settlement_lock(existing)
    if locked:
        logger.warning(
            f"Conflict: earning for lesson {existing.lesson_id} is {locked}, "
            f"ignoring re-record (would be {status.value})"
        )
        return existing

    if EARNING_STATUS_ORDER[status] < EARNING_STATUS_ORDER[existing.status]:
        logger.warning(
            f"Conflict: not moving earning for lesson {existing.lesson_id} back from "
            f"{existing.status.value} to {status.value}"
        )
        status = existing.status

    updates = dict(values, status=status, updated_at=now)
    if status == EarningStatus.CLEARED and existing.cleared_at is None:
        updates["cleared_at"] = now

    updated = await TeacherEarning.filter(
        id=existing.id, status=existing.status, payout_batch_id__isnull=True
    ).update(**updates)
    if updated == 0:
        logger.warning(f"Conflict: earning for lesson {existing.lesson_id} changed while re-recording, leaving it as is")
    else:
        logger.info(f"Updated earning for lesson {existing.lesson_id}: {values['amount_earned']} ({status.value})")

    await existing.refresh_from_db()
    return existing


async def _apply_lesson_corrections(lesson: Lesson, data: Dict) -> bool:
    """
    Update a redelivered lesson with corrected details.

    Student and rating are only overwritten when the event carries them.
    Nothing changes once the lesson's earning is paid or being paid.
    """
    changes = {
        name: data[name]
        for name in ("duration_minutes", "scheduled_time", "student_id", "student_rating")
        if data[name] is not None and getattr(lesson, name) != data[name]
    }
    if not changes:
        return False

    earning = await TeacherEarning.get_or_none(lesson_id=lesson.lesson_id)
    locked = await _settlement_lock(earning) if earning is not None else None
    if locked:
        logger.warning(f"Conflict: ignoring corrections to lesson {lesson.lesson_id}, its earning is {locked}")
        return False

    await lesson.update_from_dict(changes).save(update_fields=list(changes))
    logger.info(f"Corrected lesson {lesson.lesson_id}: {', '.join(sorted(changes))}")
    return True


async def ingest_completed_lesson(
    event: Dict,
    registry: TierRegistry,
    settings: LedgerSettings,
    now: Optional[datetime] = None
) -> TeacherEarning:
    """
    Consume a lesson-completed event: store the lesson, record its earning,
    then refresh the teacher's metrics and tier.

    Duplicate deliveries return the existing earning, updated with any
    corrected lesson details while it is not yet paid.

    Raises:
        ValidationError: malformed event or a lesson id reused for another teacher
        NotFoundError: unknown teacher
    """
    data = parse_lesson_event(event)
    now = now or get_current_time()

    teacher = await TeacherProfile.get_or_none(id=data["teacher_id"])
    if teacher is None:
        raise NotFoundError(f"Teacher {data['teacher_id']} not found")

    lesson = await Lesson.get_or_none(lesson_id=data["lesson_id"])
    is_new = lesson is None
    if is_new:
        try:
            lesson = await Lesson.create(
                lesson_id=data["lesson_id"],
                teacher_id=teacher.id,
                student_id=data["student_id"],
                duration_minutes=data["duration_minutes"],
                scheduled_time=data["scheduled_time"],
                student_rating=data["student_rating"],
                currency=data["currency"] or settings.currency,
            )
        except IntegrityError:
            lesson = await Lesson.get(lesson_id=data["lesson_id"])
            is_new = False
    if lesson.teacher_id != teacher.id:
        raise ValidationError(
            f"Lesson {data['lesson_id']} belongs to another teacher",
            details={"lesson_id": data["lesson_id"]},
        )
    corrected = False
    if not is_new:
        logger.info(f"Duplicate delivery for lesson {lesson.lesson_id}")
        corrected = await _apply_lesson_corrections(lesson, data)

    earning = await record_earning(lesson, registry, settings, now)

    if is_new:
        await track_metric(
            metric_type=MetricType.LESSON_INGESTED,
            entity_id=lesson.id,
            teacher_id=teacher.id,
            value=float(lesson.duration_minutes),
        )
    if is_new or corrected:
        try:
            await refresh_teacher_stats(teacher.id)
            await calculate_retention(teacher.id, settings)
            await award_milestone_bonuses(teacher.id, settings, now)
            await evaluate(teacher.id, registry, settings, now)
        except LedgerError as e:
            logger.error(f"Tier refresh failed for teacher {teacher.id} after lesson {lesson.lesson_id}: {e}")

    return earning


async def clear_held_earnings(now: Optional[datetime] = None) -> int:
    """
    Move held earnings whose hold period has elapsed to cleared.

    Returns:
        Number of earnings cleared
    """
    now = now or get_current_time()
    cleared = await TeacherEarning.filter(
        status=EarningStatus.HELD, clear_at__lte=now
    ).update(status=EarningStatus.CLEARED, cleared_at=now, updated_at=now)

    if cleared:
        logger.info(f"Cleared {cleared} held earnings")
        await track_metric(metric_type=MetricType.EARNINGS_CLEARED, value=float(cleared))
    else:
        logger.info("No held earnings ready to clear")
    return cleared


async def get_teacher_earnings_summary(teacher_id: int) -> Dict:
    """
    Get a teacher's earnings broken down by status.

    Args:
        teacher_id: The teacher

    Returns:
        Dictionary with totals and counts per status and the unpaid balance,
        plus the milestone bonuses owed
    """
    teacher = await TeacherProfile.get_or_none(id=teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {teacher_id} not found")

    earnings = await TeacherEarning.filter(teacher_id=teacher_id).order_by("lesson_completed_at")

    totals = {status.value: Decimal("0.00") for status in EarningStatus}
    counts = {status.value: 0 for status in EarningStatus}
    for earning in earnings:
        totals[earning.status.value] += earning.amount_earned
        counts[earning.status.value] += 1

    held = [e.clear_at for e in earnings if e.status == EarningStatus.HELD]
    bonuses = await TeacherBonus.filter(teacher_id=teacher_id)
    return {
        "teacher_id": teacher.id,
        "teacher_name": teacher.name,
        "tier": teacher.current_tier,
        "totals": totals,
        "counts": counts,
        "total_earned": sum(totals.values(), Decimal("0.00")),
        "unpaid_balance": totals[EarningStatus.HELD.value] + totals[EarningStatus.CLEARED.value],
        "next_clear_at": min(held).isoformat() if held else None,
        "bonuses_total": sum((b.amount for b in bonuses), Decimal("0.00")),
        "bonuses_count": len(bonuses),
    }


async def get_platform_revenue(start: datetime, end: datetime) -> Dict:
    """
    Get platform revenue for lessons completed in ``[start, end)``.

    Returns:
        Dictionary with lesson revenue, platform fees and teacher share
    """
    earnings = await TeacherEarning.filter(lesson_completed_at__gte=start, lesson_completed_at__lt=end)

    return {
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "total_lessons": len(earnings),
        "total_lesson_revenue": sum((e.total_lesson_cost for e in earnings), Decimal("0.00")),
        "total_platform_fees": sum((e.platform_fee for e in earnings), Decimal("0.00")),
        "total_teacher_earnings": sum((e.amount_earned for e in earnings), Decimal("0.00")),
        "unique_teachers": len({e.teacher_id for e in earnings}),
    }
