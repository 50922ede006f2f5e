"""
Milestone bonuses.

A teacher is owed a one-off bonus the first time they unlock a tier and
when their hours taught or completed lessons cross a milestone. Each bonus
is awarded at most once per teacher.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from tortoise.exceptions import IntegrityError

from .config import LedgerSettings, get_current_time
from .errors import NotFoundError
from .metrics import track_metric
from .models import BonusType, MetricType, TeacherBonus, TeacherProfile
from .notifications import enqueue_notification

logger = logging.getLogger(__name__)

TIER_UNLOCK_BONUSES = {
    "apprentice": Decimal("50.00"),
    "skilled": Decimal("100.00"),
    "expert": Decimal("200.00"),
    "master": Decimal("500.00"),
}
HOURS_MILESTONE_BONUSES = {
    100: Decimal("25.00"),
    500: Decimal("100.00"),
    1000: Decimal("250.00"),
}
LESSONS_MILESTONE_BONUSES = {
    100: Decimal("25.00"),
    500: Decimal("100.00"),
}


async def award_bonus(
    teacher_id: int,
    bonus_type: BonusType,
    milestone: str,
    amount: Decimal,
    description: str,
    currency: str,
    now: Optional[datetime] = None
) -> Optional[TeacherBonus]:
    """
    Record a bonus unless the teacher already has it.

    Returns:
        The new TeacherBonus, or None when it was awarded before
    """
    now = now or get_current_time()
    try:
        bonus = await TeacherBonus.create(
            teacher_id=teacher_id,
            bonus_type=bonus_type,
            milestone=milestone,
            amount=amount,
            currency=currency,
            description=description,
            created_at=now,
        )
    except IntegrityError:
        logger.debug(f"Teacher {teacher_id} already has the {bonus_type.value} bonus for {milestone}")
        return None

    logger.info(f"Awarded {bonus_type.value} bonus to teacher {teacher_id}: {amount} {currency} ({milestone})")
    await track_metric(
        metric_type=MetricType.BONUS_AWARDED,
        entity_id=bonus.id,
        teacher_id=teacher_id,
        value=float(amount),
        metadata={"bonus_type": bonus_type.value, "milestone": milestone}
    )
    await enqueue_notification(
        "bonus_awarded",
        teacher_id,
        {"amount": amount, "currency": currency.upper(), "description": description},
    )
    return bonus


async def award_tier_unlock_bonus(
    teacher_id: int, tier: str, tier_name: str, settings: LedgerSettings, now: Optional[datetime] = None
) -> Optional[TeacherBonus]:
    amount = TIER_UNLOCK_BONUSES.get(tier)
    if amount is None:
        return None
    return await award_bonus(
        teacher_id, BonusType.TIER_UNLOCK, tier, amount, f"{tier_name} tier unlock bonus", settings.currency, now
    )


async def award_milestone_bonuses(
    teacher_id: int, settings: LedgerSettings, now: Optional[datetime] = None
) -> List[TeacherBonus]:
    """Award every hours and lessons milestone the teacher has reached and not yet been paid for."""
    teacher = await TeacherProfile.get_or_none(id=teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {teacher_id} not found")

    awarded = []
    for threshold, amount in HOURS_MILESTONE_BONUSES.items():
        if teacher.hours_taught >= threshold:
            bonus = await award_bonus(
                teacher_id, BonusType.HOURS_MILESTONE, str(threshold), amount,
                f"{threshold} hours taught", settings.currency, now,
            )
            if bonus is not None:
                awarded.append(bonus)
    for threshold, amount in LESSONS_MILESTONE_BONUSES.items():
        if teacher.completed_lessons >= threshold:
            bonus = await award_bonus(
                teacher_id, BonusType.LESSONS_MILESTONE, str(threshold), amount,
                f"{threshold} lessons completed", settings.currency, now,
            )
            if bonus is not None:
                awarded.append(bonus)
    return awarded
