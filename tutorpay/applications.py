"""
Tier application workflow.

Teachers request review-gated tiers here. Submissions are pre-screened but
never approved automatically: approval always goes through ``assign_tier``.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from tortoise.exceptions import IntegrityError

from .config import get_current_time
from .errors import ConflictError, NotFoundError, ValidationError
from .metrics import track_metric
from .models import (
    ApplicationStatus, MetricType, OPEN_APPLICATION_STATUSES, RetentionStatus,
    TeacherProfile, TierApplication
)
from .notifications import REVIEWERS, enqueue_notification
from .progression import assign_tier
from .tiers import Tier, TierRegistry, load_tier_registry

logger = logging.getLogger(__name__)

DECISIONS = ("approve", "reject")


def prescreen(teacher: TeacherProfile, tier: Tier, evidence: Dict) -> Optional[str]:
    """Return the first unmet requirement for ``tier``, or None when all are met."""
    if teacher.hours_taught < tier.min_hours_taught:
        return f"Requires {tier.min_hours_taught:g} hours taught, currently {teacher.hours_taught:g}"
    if teacher.average_rating < tier.min_rating:
        return f"Requires an average rating of {tier.min_rating}, currently {teacher.average_rating}"
    if (
        teacher.retention_status == RetentionStatus.VALID
        and teacher.retention_rate is not None
        and teacher.retention_sample_size >= tier.min_students_for_retention
        and teacher.retention_rate < tier.min_retention_rate
    ):
        return f"Requires {tier.min_retention_rate:.0%} student retention, currently {teacher.retention_rate:.0%}"
    if tier.accepted_language_levels:
        proficiency = str(evidence.get("language_proficiency") or "").lower()
        if proficiency not in tier.accepted_language_levels:
            accepted = ", ".join(tier.accepted_language_levels)
            return f"Requires language proficiency of {accepted}, declared '{proficiency or 'none'}'"
    return None


async def submit_tier_application(
    teacher_id: int,
    requested_tier: str,
    evidence: Optional[Dict] = None,
    registry: Optional[TierRegistry] = None
) -> TierApplication:
    """
    Submit a request for a review-gated tier.

    Args:
        teacher_id: The applying teacher
        requested_tier: Tier name, must be review-gated and above the current tier
        evidence: Supporting evidence, e.g. ``{"language_proficiency": "native"}``
        registry: Tier registry snapshot

    Returns:
        The new application, ``under_review`` when pre-screening passed, else ``pending``

    Raises:
        NotFoundError: unknown teacher
        ValidationError: unknown tier, auto-assigned tier, or not above the current tier
        ConflictError: the teacher already has an open application
    """
    registry = registry or await load_tier_registry()
    evidence = evidence or {}
    if not isinstance(evidence, dict):
        raise ValidationError("Evidence must be an object")

    teacher = await TeacherProfile.get_or_none(id=teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {teacher_id} not found")

    tier = registry.get(requested_tier)
    if tier.auto_eligible:
        raise ValidationError(f"Tier {tier.tier} is assigned automatically and cannot be applied for")
    current = registry.find(teacher.current_tier)
    if current is not None and tier.level <= current.level:
        raise ValidationError(f"Tier {tier.tier} is not above current tier {current.tier}")

    unmet = prescreen(teacher, tier, evidence)
    status = ApplicationStatus.UNDER_REVIEW if unmet is None else ApplicationStatus.PENDING

    try:
        application = await TierApplication.create(
            teacher_id=teacher.id,
            requested_tier=tier.tier,
            evidence=evidence,
            status=status,
            review_notes=unmet,
            open_slot=teacher.id,
        )
    except IntegrityError:
        raise ConflictError(f"Teacher {teacher_id} already has an open tier application")

    logger.info(f"Teacher {teacher_id} applied for {tier.tier}: application {application.id} is {status.value}")

    await track_metric(
        metric_type=MetricType.APPLICATION_SUBMITTED,
        entity_id=application.id,
        teacher_id=teacher.id,
        metadata={"requested_tier": tier.tier, "status": status.value}
    )
    await enqueue_notification(
        "tier_application_received",
        REVIEWERS,
        {"requested_tier": tier.display_name, "application_id": application.id,
         "teacher_id": teacher.id, "status": status.value, "reason": unmet},
    )
    return application


async def review_application(
    application_id: int,
    decision: str,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
    registry: Optional[TierRegistry] = None,
    now: Optional[datetime] = None
) -> TierApplication:
    """
    Approve or reject an open tier application.

    Approval goes through ``assign_tier`` so the tier change, history entry
    and application update commit together.

    Raises:
        NotFoundError: unknown application
        ValidationError: unknown decision or the application is already closed
    """
    if decision not in DECISIONS:
        raise ValidationError(f"Unknown decision: {decision}", details={"allowed": list(DECISIONS)})
    now = now or get_current_time()

    application = await TierApplication.get_or_none(id=application_id)
    if application is None:
        raise NotFoundError(f"Tier application {application_id} not found")
    if application.status not in OPEN_APPLICATION_STATUSES:
        raise ValidationError(f"Tier application {application_id} is already {application.status.value}")

    if decision == "approve":
        await assign_tier(
            application.teacher_id,
            application.requested_tier,
            notes or f"Approved tier application #{application.id}",
            actor=actor,
            application_id=application.id,
            registry=registry,
            now=now,
        )
    else:
        updated = await TierApplication.filter(
            id=application.id, status__in=list(OPEN_APPLICATION_STATUSES)
        ).update(
            status=ApplicationStatus.REJECTED,
            review_notes=notes,
            reviewed_by=actor,
            reviewed_at=now,
            open_slot=None,
        )
        if updated == 0:
            raise ValidationError(f"Tier application {application_id} was closed by another reviewer")

    await application.refresh_from_db()
    logger.info(f"Tier application {application.id} {application.status.value} by {actor or 'unknown'}")

    await track_metric(
        metric_type=MetricType.APPLICATION_REVIEWED,
        entity_id=application.id,
        teacher_id=application.teacher_id,
        metadata={"decision": decision, "requested_tier": application.requested_tier}
    )
    await enqueue_notification(
        "tier_application_reviewed",
        application.teacher_id,
        {"requested_tier": application.requested_tier, "status": application.status.value, "notes": notes or ""},
    )
    return application
