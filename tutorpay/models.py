from enum import Enum

from tortoise import fields
from tortoise.models import Model


class RetentionStatus(str, Enum):
    VALID = "valid"
    INSUFFICIENT_SAMPLE = "insufficient_sample"


class PromotionType(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class BonusType(str, Enum):
    TIER_UNLOCK = "tier_unlock"
    HOURS_MILESTONE = "hours_milestone"
    LESSONS_MILESTONE = "lessons_milestone"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


OPEN_APPLICATION_STATUSES = (ApplicationStatus.PENDING, ApplicationStatus.UNDER_REVIEW)


class EarningStatus(str, Enum):
    HELD = "held"
    CLEARED = "cleared"
    PAID = "paid"


# Earnings only ever move forward through this order
EARNING_STATUS_ORDER = {
    EarningStatus.HELD: 0,
    EarningStatus.CLEARED: 1,
    EarningStatus.PAID: 2,
}


class PayoutStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class MetricType(str, Enum):
    LESSON_INGESTED = "lesson_ingested"
    EARNING_RECORDED = "earning_recorded"
    EARNINGS_CLEARED = "earnings_cleared"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    TIER_CHANGED = "tier_changed"
    APPLICATION_SUBMITTED = "application_submitted"
    APPLICATION_REVIEWED = "application_reviewed"
    BONUS_AWARDED = "bonus_awarded"


class TierDefinition(Model):
    """Rate tier with the thresholds a teacher must meet to hold it."""
    id = fields.IntField(pk=True)
    tier = fields.CharField(max_length=32, unique=True)
    level = fields.IntField(unique=True)
    display_name = fields.CharField(max_length=64)
    min_hours_taught = fields.FloatField(default=0)
    min_rating = fields.FloatField(default=0)
    min_retention_rate = fields.FloatField(default=0)  # Fraction, 0..1
    min_students_for_retention = fields.IntField(default=5)
    teacher_hourly_rate = fields.DecimalField(max_digits=10, decimal_places=2)
    student_hourly_price = fields.DecimalField(max_digits=10, decimal_places=2)
    auto_eligible = fields.BooleanField(default=True)
    accepted_language_levels = fields.JSONField(default=list)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "teacher_tiers"


class TeacherProfile(Model):
    """Teacher with cached performance metrics and current tier."""
    id = fields.IntField(pk=True)
    name = fields.CharField(max_length=255)
    telegram_id = fields.BigIntField(null=True)
    current_tier = fields.CharField(max_length=32)

    # Cached metrics, derived from lesson history
    hours_taught = fields.FloatField(default=0)
    completed_lessons = fields.IntField(default=0)
    average_rating = fields.FloatField(default=0)
    retention_rate = fields.FloatField(null=True)  # NULL while the sample is too small
    retention_status = fields.CharEnumField(RetentionStatus, default=RetentionStatus.INSUFFICIENT_SAMPLE)
    retention_sample_size = fields.IntField(default=0)

    manual_override = fields.BooleanField(default=False)
    tier_progression_eligible = fields.BooleanField(default=False)

    # Payment rail destination
    payout_account_id = fields.CharField(max_length=255, null=True)
    payout_account_verified = fields.BooleanField(default=False)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    # Relationships
    lessons = fields.ReverseRelation["Lesson"]
    earnings = fields.ReverseRelation["TeacherEarning"]
    tier_history = fields.ReverseRelation["TierHistoryEntry"]
    payout_batches = fields.ReverseRelation["PayoutBatch"]

    class Meta:
        table = "teacher_profiles"


class Lesson(Model):
    """Completed lesson as delivered by the booking service."""
    id = fields.IntField(pk=True)
    lesson_id = fields.CharField(max_length=64, unique=True)
    teacher = fields.ForeignKeyField("models.TeacherProfile", related_name="lessons")
    student_id = fields.CharField(max_length=64, null=True)
    duration_minutes = fields.IntField()
    scheduled_time = fields.DatetimeField()
    student_rating = fields.FloatField(null=True)
    currency = fields.CharField(max_length=3, default="gbp")
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "lessons"
        indexes = [("teacher_id", "student_id")]


class TierHistoryEntry(Model):
    """Append-only record of every tier change."""
    id = fields.IntField(pk=True)
    teacher = fields.ForeignKeyField("models.TeacherProfile", related_name="tier_history")
    from_tier = fields.CharField(max_length=32, null=True)  # NULL for the initial assignment
    to_tier = fields.CharField(max_length=32)
    promotion_type = fields.CharEnumField(PromotionType)
    reason = fields.TextField(null=True)
    metrics_snapshot = fields.JSONField(default=dict)
    actor = fields.CharField(max_length=255, null=True)
    created_at = fields.DatetimeField()

    class Meta:
        table = "teacher_tier_history"
        ordering = ["created_at", "id"]


class TierApplication(Model):
    """Request for a review-gated tier."""
    id = fields.IntField(pk=True)
    teacher = fields.ForeignKeyField("models.TeacherProfile", related_name="tier_applications")
    requested_tier = fields.CharField(max_length=32)
    evidence = fields.JSONField(default=dict)
    status = fields.CharEnumField(ApplicationStatus, default=ApplicationStatus.PENDING)
    review_notes = fields.TextField(null=True)
    granted_tier = fields.CharField(max_length=32, null=True)
    granted_rate = fields.DecimalField(max_digits=10, decimal_places=2, null=True)
    reviewed_by = fields.CharField(max_length=255, null=True)
    reviewed_at = fields.DatetimeField(null=True)
    # Teacher id while the application is open; unique so a teacher holds at most one
    open_slot = fields.IntField(null=True, unique=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "teacher_tier_applications"


class PayoutBatch(Model):
    """One transfer of a teacher's cleared earnings."""
    id = fields.IntField(pk=True)
    teacher = fields.ForeignKeyField("models.TeacherProfile", related_name="payout_batches")
    total_amount = fields.DecimalField(max_digits=12, decimal_places=2)
    currency = fields.CharField(max_length=3, default="gbp")
    earnings_count = fields.IntField()
    earning_ids = fields.JSONField(default=list)
    destination_account = fields.CharField(max_length=255)
    idempotency_key = fields.CharField(max_length=64, null=True, unique=True)
    transfer_id = fields.CharField(max_length=255, null=True)
    status = fields.CharEnumField(PayoutStatus, default=PayoutStatus.PROCESSING)
    failure_reason = fields.TextField(null=True)
    # Teacher id while processing; unique so a teacher has at most one batch in flight
    open_slot = fields.IntField(null=True, unique=True)
    created_at = fields.DatetimeField()
    completed_at = fields.DatetimeField(null=True)
    failed_at = fields.DatetimeField(null=True)

    earnings = fields.ReverseRelation["TeacherEarning"]

    class Meta:
        table = "payout_batches"
        indexes = [("teacher_id", "status")]


class TeacherEarning(Model):
    """Amount owed to a teacher for one completed lesson."""
    id = fields.IntField(pk=True)
    lesson_id = fields.CharField(max_length=64, unique=True)
    teacher = fields.ForeignKeyField("models.TeacherProfile", related_name="earnings")

    # Rate captured when the earning is recorded
    tier = fields.CharField(max_length=32)
    teacher_hourly_rate = fields.DecimalField(max_digits=10, decimal_places=2)

    # Financial details
    amount_earned = fields.DecimalField(max_digits=10, decimal_places=2)
    platform_fee = fields.DecimalField(max_digits=10, decimal_places=2)
    total_lesson_cost = fields.DecimalField(max_digits=10, decimal_places=2)
    currency = fields.CharField(max_length=3, default="gbp")

    # Lifecycle
    status = fields.CharEnumField(EarningStatus, default=EarningStatus.HELD)
    lesson_completed_at = fields.DatetimeField()
    hold_period_days = fields.IntField(default=7)
    clear_at = fields.DatetimeField()
    cleared_at = fields.DatetimeField(null=True)
    payout_batch = fields.ForeignKeyField("models.PayoutBatch", related_name="earnings", null=True)
    paid_at = fields.DatetimeField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "teacher_earnings"
        indexes = [
            ("teacher_id", "status"),
            ("status", "clear_at"),
        ]


class TeacherBonus(Model):
    """One-off bonus owed to a teacher for a tier unlock or a teaching milestone."""
    id = fields.IntField(pk=True)
    teacher = fields.ForeignKeyField("models.TeacherProfile", related_name="bonuses")
    bonus_type = fields.CharEnumField(BonusType)
    milestone = fields.CharField(max_length=32)  # Tier name, or the hours/lessons threshold
    amount = fields.DecimalField(max_digits=10, decimal_places=2)
    currency = fields.CharField(max_length=3, default="gbp")
    description = fields.CharField(max_length=255)
    created_at = fields.DatetimeField()

    class Meta:
        table = "teacher_bonus_payments"
        unique_together = (("teacher_id", "bonus_type", "milestone"),)


class Notification(Model):
    """Outbox of notifications waiting to be delivered."""
    id = fields.IntField(pk=True)
    event_type = fields.CharField(max_length=64)
    recipient_id = fields.CharField(max_length=64)  # Teacher id or "reviewers"
    payload = fields.JSONField(default=dict)
    status = fields.CharEnumField(NotificationStatus, default=NotificationStatus.PENDING)
    attempts = fields.IntField(default=0)
    last_error = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    sent_at = fields.DatetimeField(null=True)

    class Meta:
        table = "notification_outbox"
        indexes = [("status",)]


class Metric(Model):
    """Metrics model for tracking key performance indicators."""
    id = fields.IntField(pk=True)
    metric_type = fields.CharEnumField(MetricType)
    value = fields.FloatField(default=1.0)  # Default is 1.0 for count-based metrics
    entity_id = fields.IntField(null=True)  # Optional ID of related entity (earning, batch, etc.)
    teacher_id = fields.IntField(null=True)
    metadata = fields.JSONField(null=True)  # Additional contextual data
    timestamp = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "metrics"
