"""
Tier assignment engine.

Keeps every teacher's tier consistent with their metrics and the tier
registry. Automatic changes only move between auto-eligible tiers;
review-gated tiers are granted exclusively through ``assign_tier``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from tortoise.transactions import in_transaction

from .bonuses import award_tier_unlock_bonus
from .config import LedgerSettings, get_current_time
from .errors import ConflictError, NotFoundError, ValidationError
from .metrics import track_metric
from .models import (
    Lesson, MetricType, OPEN_APPLICATION_STATUSES, PromotionType, RetentionStatus,
    TeacherProfile, TierApplication, ApplicationStatus, TierHistoryEntry
)
from .notifications import enqueue_notification
from .tiers import Tier, TierRegistry, load_tier_registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    teacher_id: int
    previous_tier: str
    current_tier: str
    changed: bool
    review_tier: Optional[str] = None
    skipped_reason: Optional[str] = None


@dataclass(frozen=True)
class TierAssignment:
    teacher_id: int
    old_tier: str
    new_tier: str
    new_hourly_rate: Decimal
    new_student_price: Decimal
    manual_override: bool
    application_id: Optional[int] = None


def metrics_snapshot(teacher: TeacherProfile) -> Dict:
    return {
        "hours_taught": teacher.hours_taught,
        "completed_lessons": teacher.completed_lessons,
        "average_rating": teacher.average_rating,
        "retention_rate": teacher.retention_rate,
        "retention_sample_size": teacher.retention_sample_size,
    }


def meets_thresholds(teacher: TeacherProfile, tier: Tier) -> bool:
    """Check hours, rating and (when the sample supports it) retention against a tier."""
    if teacher.hours_taught < tier.min_hours_taught:
        return False
    if teacher.average_rating < tier.min_rating:
        return False
    retention_applies = (
        teacher.retention_status == RetentionStatus.VALID
        and teacher.retention_rate is not None
        and teacher.retention_sample_size >= tier.min_students_for_retention
    )
    if retention_applies and teacher.retention_rate < tier.min_retention_rate:
        return False
    return True


async def _record_tier_change(
    conn,
    teacher: TeacherProfile,
    to_tier: str,
    promotion_type: PromotionType,
    reason: str,
    actor: Optional[str],
    now: datetime,
    **profile_updates
) -> TierHistoryEntry:
    """Move the teacher to ``to_tier`` and append the history entry, inside ``conn``."""
    from_tier = teacher.current_tier
    updated = await TeacherProfile.filter(id=teacher.id, current_tier=from_tier).using_db(conn).update(
        current_tier=to_tier, updated_at=now, **profile_updates
    )
    if updated == 0:
        raise ConflictError(
            f"Tier of teacher {teacher.id} changed concurrently",
            details={"expected_tier": from_tier},
        )
    return await TierHistoryEntry.create(
        teacher_id=teacher.id,
        from_tier=from_tier,
        to_tier=to_tier,
        promotion_type=promotion_type,
        reason=reason,
        metrics_snapshot=metrics_snapshot(teacher),
        actor=actor,
        created_at=now,
        using_db=conn,
    )


async def register_teacher(
    name: str,
    telegram_id: Optional[int] = None,
    payout_account_id: Optional[str] = None,
    payout_account_verified: bool = False,
    tier: Optional[str] = None,
    registry: Optional[TierRegistry] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TeacherProfile:
    """
    Create a teacher profile together with its initial tier history entry.

    Args:
        name: Display name
        telegram_id: Optional Telegram chat used for notifications
        payout_account_id: Optional payment-rail destination account
        payout_account_verified: Whether the destination account is verified
        tier: Starting tier (defaults to the lowest tier)
        registry: Tier registry snapshot
        actor: Who registered the teacher
        now: Override for the current time

    Returns:
        The created TeacherProfile
    """
    if not name:
        raise ValidationError("Teacher name is required")
    registry = registry or await load_tier_registry()
    start = registry.get(tier) if tier else registry.lowest()
    now = now or get_current_time()

    async with in_transaction() as conn:
        teacher = await TeacherProfile.create(
            name=name,
            telegram_id=telegram_id,
            current_tier=start.tier,
            payout_account_id=payout_account_id,
            payout_account_verified=payout_account_verified,
            using_db=conn,
        )
        await TierHistoryEntry.create(
            teacher_id=teacher.id,
            from_tier=None,
            to_tier=start.tier,
            promotion_type=PromotionType.MANUAL if tier else PromotionType.AUTO,
            reason="Initial tier assignment",
            metrics_snapshot=metrics_snapshot(teacher),
            actor=actor,
            created_at=now,
            using_db=conn,
        )

    logger.info(f"Registered teacher {teacher.id} ({name}) at tier {start.tier}")
    return teacher


async def refresh_teacher_stats(teacher_id: int) -> TeacherProfile:
    """Recompute hours taught, completed lessons and average rating from lesson history."""
    teacher = await TeacherProfile.get_or_none(id=teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {teacher_id} not found")

    lessons = await Lesson.filter(teacher_id=teacher_id).values("duration_minutes", "student_rating")
    teacher.completed_lessons = len(lessons)
    teacher.hours_taught = round(sum(l["duration_minutes"] for l in lessons) / 60, 2)

    ratings = [l["student_rating"] for l in lessons if l["student_rating"] is not None]
    if ratings:
        teacher.average_rating = round(sum(ratings) / len(ratings), 2)

    await teacher.save(update_fields=["completed_lessons", "hours_taught", "average_rating", "updated_at"])
    logger.info(
        f"Teacher {teacher_id} stats: {teacher.hours_taught}h over {teacher.completed_lessons} lessons, "
        f"rating {teacher.average_rating}"
    )
    return teacher


async def tier_in_effect_at(teacher: TeacherProfile, moment: datetime) -> str:
    """
    Reconstruct which tier the teacher held at ``moment`` from tier history.

    Falls back to the tier of the earliest entry when ``moment`` predates the
    history, and to the current tier when there is no history at all.
    """
    before = await TierHistoryEntry.filter(teacher_id=teacher.id, created_at__lte=moment).order_by(
        "-created_at", "-id"
    ).first()
    if before is not None:
        return before.to_tier

    earliest = await TierHistoryEntry.filter(teacher_id=teacher.id).order_by("created_at", "id").first()
    if earliest is not None:
        return earliest.from_tier or earliest.to_tier
    return teacher.current_tier


async def evaluate(
    teacher_id: int,
    registry: TierRegistry,
    settings: Optional[LedgerSettings] = None,
    now: Optional[datetime] = None,
) -> EvaluationResult:
    """
    Re-evaluate a teacher's tier against the registry.

    Walks the tiers from highest to lowest and picks the highest
    auto-eligible tier whose thresholds are all met. Meeting a review-gated
    tier only flags the teacher as eligible to apply.

    Args:
        teacher_id: The teacher to evaluate
        registry: Tier registry snapshot
        settings: Ledger settings (auto demotion switch)
        now: Override for the current time

    Returns:
        EvaluationResult describing what happened
    """
    settings = settings or LedgerSettings()
    now = now or get_current_time()

    teacher = await TeacherProfile.get_or_none(id=teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {teacher_id} not found")

    previous = teacher.current_tier
    if teacher.manual_override:
        logger.info(f"Teacher {teacher_id} tier is manually locked, skipping evaluation")
        return EvaluationResult(teacher_id, previous, previous, False, skipped_reason="manual_override")

    current = registry.find(previous) or registry.lowest()

    best_auto = registry.lowest()
    review_tier = None
    for tier in registry.highest_first():
        if not meets_thresholds(teacher, tier):
            continue
        if tier.auto_eligible:
            best_auto = tier
            break
        if review_tier is None and tier.level > current.level:
            review_tier = tier

    if review_tier is not None and not teacher.tier_progression_eligible:
        teacher.tier_progression_eligible = True
        await teacher.save(update_fields=["tier_progression_eligible", "updated_at"])
        await enqueue_notification(
            "tier_eligible_for_review",
            teacher.id,
            {"tier": review_tier.display_name, "hours_taught": teacher.hours_taught,
             "average_rating": teacher.average_rating},
        )
    elif review_tier is None and teacher.tier_progression_eligible:
        teacher.tier_progression_eligible = False
        await teacher.save(update_fields=["tier_progression_eligible", "updated_at"])

    review_name = review_tier.tier if review_tier else None

    if not current.auto_eligible:
        # Review-gated tiers only change through assign_tier
        return EvaluationResult(teacher_id, previous, previous, False, review_name, "review_gated_tier")

    if best_auto.tier == current.tier:
        return EvaluationResult(teacher_id, previous, previous, False, review_name)

    demotion = best_auto.level < current.level
    if demotion and not settings.auto_demotion_enabled:
        return EvaluationResult(teacher_id, previous, previous, False, review_name, "auto_demotion_disabled")

    reason = (
        "No longer meets requirements for current tier" if demotion
        else "Met automatic progression requirements"
    )
    async with in_transaction() as conn:
        await _record_tier_change(conn, teacher, best_auto.tier, PromotionType.AUTO, reason, "system", now)

    logger.info(f"{'Demoted' if demotion else 'Promoted'} teacher {teacher_id}: {previous} -> {best_auto.tier}")

    await track_metric(
        metric_type=MetricType.TIER_CHANGED,
        entity_id=teacher.id,
        teacher_id=teacher.id,
        value=float(best_auto.level),
        metadata={"from_tier": previous, "to_tier": best_auto.tier, "promotion_type": PromotionType.AUTO.value}
    )
    await enqueue_notification(
        "tier_demoted" if demotion else "tier_promoted",
        teacher.id,
        {"from_tier": previous, "to_tier": best_auto.display_name, "hourly_rate": best_auto.teacher_hourly_rate},
    )
    if not demotion:
        await award_tier_unlock_bonus(teacher.id, best_auto.tier, best_auto.display_name, settings, now)
    return EvaluationResult(teacher_id, previous, best_auto.tier, True, review_name)


async def assign_tier(
    teacher_id: int,
    new_tier: str,
    reason: str,
    disable_auto_progression: bool = False,
    actor: Optional[str] = None,
    application_id: Optional[int] = None,
    registry: Optional[TierRegistry] = None,
    settings: Optional[LedgerSettings] = None,
    now: Optional[datetime] = None,
) -> TierAssignment:
    """
    Manually assign a tier, optionally closing a tier application.

    The profile update, history entry and application approval are written
    in one transaction; on any error nothing is applied.

    Raises:
        ValidationError: unknown tier, or no open application matching application_id
        NotFoundError: unknown teacher
    """
    registry = registry or await load_tier_registry()
    tier = registry.get(new_tier)
    settings = settings or LedgerSettings()
    now = now or get_current_time()
    reason = reason or "Manual tier assignment"

    async with in_transaction() as conn:
        teacher = await TeacherProfile.filter(id=teacher_id).using_db(conn).first()
        if teacher is None:
            raise NotFoundError(f"Teacher {teacher_id} not found")

        application = None
        if application_id is not None:
            application = await TierApplication.filter(
                id=application_id, teacher_id=teacher_id, status__in=list(OPEN_APPLICATION_STATUSES)
            ).using_db(conn).first()
            if application is None:
                raise ValidationError(
                    f"No pending application {application_id} for teacher {teacher_id}",
                    details={"application_id": application_id},
                )

        old_tier = teacher.current_tier
        manual_override = True if disable_auto_progression else teacher.manual_override
        await _record_tier_change(
            conn, teacher, tier.tier, PromotionType.MANUAL, reason, actor, now,
            manual_override=manual_override,
            tier_progression_eligible=False,
        )

        if application is not None:
            application.status = ApplicationStatus.APPROVED
            application.review_notes = reason
            application.granted_tier = tier.tier
            application.granted_rate = tier.teacher_hourly_rate
            application.reviewed_by = actor
            application.reviewed_at = now
            application.open_slot = None
            await application.save(using_db=conn)

    logger.info(f"Teacher {teacher_id} tier updated from {old_tier} to {tier.tier} by {actor or 'unknown'}")

    await track_metric(
        metric_type=MetricType.TIER_CHANGED,
        entity_id=teacher_id,
        teacher_id=teacher_id,
        value=float(tier.level),
        metadata={"from_tier": old_tier, "to_tier": tier.tier, "promotion_type": PromotionType.MANUAL.value}
    )
    await enqueue_notification(
        "tier_assigned",
        teacher_id,
        {"from_tier": old_tier, "to_tier": tier.display_name, "hourly_rate": tier.teacher_hourly_rate},
    )
    old = registry.find(old_tier)
    if old is None or tier.level > old.level:
        await award_tier_unlock_bonus(teacher_id, tier.tier, tier.display_name, settings, now)

    return TierAssignment(
        teacher_id=teacher_id,
        old_tier=old_tier,
        new_tier=tier.tier,
        new_hourly_rate=tier.teacher_hourly_rate,
        new_student_price=tier.student_hourly_price,
        manual_override=manual_override,
        application_id=application_id,
    )
