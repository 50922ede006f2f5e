from tortoise import BaseDBAsyncClient


async def upgrade(db: BaseDBAsyncClient) -> str:
    return """
        CREATE TABLE IF NOT EXISTS "teacher_tiers" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "tier" VARCHAR(32) NOT NULL UNIQUE,
    "level" INT NOT NULL UNIQUE,
    "display_name" VARCHAR(64) NOT NULL,
    "min_hours_taught" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "min_rating" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "min_retention_rate" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "min_students_for_retention" INT NOT NULL DEFAULT 5,
    "teacher_hourly_rate" DECIMAL(10,2) NOT NULL,
    "student_hourly_price" DECIMAL(10,2) NOT NULL,
    "auto_eligible" BOOL NOT NULL DEFAULT TRUE,
    "accepted_language_levels" JSONB NOT NULL,
    "updated_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);
COMMENT ON TABLE "teacher_tiers" IS 'Rate tier with the thresholds a teacher must meet to hold it.';
CREATE TABLE IF NOT EXISTS "teacher_profiles" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "name" VARCHAR(255) NOT NULL,
    "telegram_id" BIGINT,
    "current_tier" VARCHAR(32) NOT NULL,
    "hours_taught" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "completed_lessons" INT NOT NULL DEFAULT 0,
    "average_rating" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "retention_rate" DOUBLE PRECISION,
    "retention_status" VARCHAR(19) NOT NULL DEFAULT 'insufficient_sample',
    "retention_sample_size" INT NOT NULL DEFAULT 0,
    "manual_override" BOOL NOT NULL DEFAULT FALSE,
    "tier_progression_eligible" BOOL NOT NULL DEFAULT FALSE,
    "payout_account_id" VARCHAR(255),
    "payout_account_verified" BOOL NOT NULL DEFAULT FALSE,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updated_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);
COMMENT ON COLUMN "teacher_profiles"."retention_status" IS 'VALID: valid\nINSUFFICIENT_SAMPLE: insufficient_sample';
COMMENT ON TABLE "teacher_profiles" IS 'Teacher with cached performance metrics and current tier.';
CREATE TABLE IF NOT EXISTS "lessons" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "lesson_id" VARCHAR(64) NOT NULL UNIQUE,
    "student_id" VARCHAR(64),
    "duration_minutes" INT NOT NULL,
    "scheduled_time" TIMESTAMPTZ NOT NULL,
    "student_rating" DOUBLE PRECISION,
    "currency" VARCHAR(3) NOT NULL DEFAULT 'gbp',
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "teacher_id" INT NOT NULL REFERENCES "teacher_profiles" ("id") ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS "idx_lessons_teacher_8a1c2e" ON "lessons" ("teacher_id", "student_id");
COMMENT ON TABLE "lessons" IS 'Completed lesson as delivered by the booking service.';
CREATE TABLE IF NOT EXISTS "teacher_tier_history" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "from_tier" VARCHAR(32),
    "to_tier" VARCHAR(32) NOT NULL,
    "promotion_type" VARCHAR(6) NOT NULL,
    "reason" TEXT,
    "metrics_snapshot" JSONB NOT NULL,
    "actor" VARCHAR(255),
    "created_at" TIMESTAMPTZ NOT NULL,
    "teacher_id" INT NOT NULL REFERENCES "teacher_profiles" ("id") ON DELETE CASCADE
);
COMMENT ON COLUMN "teacher_tier_history"."promotion_type" IS 'AUTO: auto\nMANUAL: manual';
COMMENT ON TABLE "teacher_tier_history" IS 'Append-only record of every tier change.';
CREATE TABLE IF NOT EXISTS "teacher_tier_applications" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "requested_tier" VARCHAR(32) NOT NULL,
    "evidence" JSONB NOT NULL,
    "status" VARCHAR(12) NOT NULL DEFAULT 'pending',
    "review_notes" TEXT,
    "granted_tier" VARCHAR(32),
    "granted_rate" DECIMAL(10,2),
    "reviewed_by" VARCHAR(255),
    "reviewed_at" TIMESTAMPTZ,
    "open_slot" INT UNIQUE,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "teacher_id" INT NOT NULL REFERENCES "teacher_profiles" ("id") ON DELETE CASCADE
);
COMMENT ON COLUMN "teacher_tier_applications"."status" IS 'PENDING: pending\nUNDER_REVIEW: under_review\nAPPROVED: approved\nREJECTED: rejected';
COMMENT ON TABLE "teacher_tier_applications" IS 'Request for a review-gated tier.';
CREATE TABLE IF NOT EXISTS "payout_batches" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "total_amount" DECIMAL(12,2) NOT NULL,
    "currency" VARCHAR(3) NOT NULL DEFAULT 'gbp',
    "earnings_count" INT NOT NULL,
    "earning_ids" JSONB NOT NULL,
    "destination_account" VARCHAR(255) NOT NULL,
    "idempotency_key" VARCHAR(64) UNIQUE,
    "transfer_id" VARCHAR(255),
    "status" VARCHAR(10) NOT NULL DEFAULT 'processing',
    "failure_reason" TEXT,
    "open_slot" INT UNIQUE,
    "created_at" TIMESTAMPTZ NOT NULL,
    "completed_at" TIMESTAMPTZ,
    "failed_at" TIMESTAMPTZ,
    "teacher_id" INT NOT NULL REFERENCES "teacher_profiles" ("id") ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS "idx_payout_batc_teacher_5f0d3b" ON "payout_batches" ("teacher_id", "status");
COMMENT ON COLUMN "payout_batches"."status" IS 'PROCESSING: processing\nCOMPLETED: completed\nFAILED: failed';
COMMENT ON TABLE "payout_batches" IS 'One transfer of a teacher''s cleared earnings.';
CREATE TABLE IF NOT EXISTS "teacher_earnings" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "lesson_id" VARCHAR(64) NOT NULL UNIQUE,
    "tier" VARCHAR(32) NOT NULL,
    "teacher_hourly_rate" DECIMAL(10,2) NOT NULL,
    "amount_earned" DECIMAL(10,2) NOT NULL,
    "platform_fee" DECIMAL(10,2) NOT NULL,
    "total_lesson_cost" DECIMAL(10,2) NOT NULL,
    "currency" VARCHAR(3) NOT NULL DEFAULT 'gbp',
    "status" VARCHAR(7) NOT NULL DEFAULT 'held',
    "lesson_completed_at" TIMESTAMPTZ NOT NULL,
    "hold_period_days" INT NOT NULL DEFAULT 7,
    "clear_at" TIMESTAMPTZ NOT NULL,
    "cleared_at" TIMESTAMPTZ,
    "paid_at" TIMESTAMPTZ,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updated_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "payout_batch_id" INT REFERENCES "payout_batches" ("id") ON DELETE CASCADE,
    "teacher_id" INT NOT NULL REFERENCES "teacher_profiles" ("id") ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS "idx_teacher_ear_teacher_c41b7a" ON "teacher_earnings" ("teacher_id", "status");
CREATE INDEX IF NOT EXISTS "idx_teacher_ear_status_9e2d61" ON "teacher_earnings" ("status", "clear_at");
COMMENT ON COLUMN "teacher_earnings"."status" IS 'HELD: held\nCLEARED: cleared\nPAID: paid';
COMMENT ON TABLE "teacher_earnings" IS 'Amount owed to a teacher for one completed lesson.';
CREATE TABLE IF NOT EXISTS "teacher_bonus_payments" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "bonus_type" VARCHAR(17) NOT NULL,
    "milestone" VARCHAR(32) NOT NULL,
    "amount" DECIMAL(10,2) NOT NULL,
    "currency" VARCHAR(3) NOT NULL DEFAULT 'gbp',
    "description" VARCHAR(255) NOT NULL,
    "created_at" TIMESTAMPTZ NOT NULL,
    "teacher_id" INT NOT NULL REFERENCES "teacher_profiles" ("id") ON DELETE CASCADE,
    CONSTRAINT "uid_teacher_bon_teacher_7a4e12" UNIQUE ("teacher_id", "bonus_type", "milestone")
);
COMMENT ON COLUMN "teacher_bonus_payments"."bonus_type" IS 'TIER_UNLOCK: tier_unlock\nHOURS_MILESTONE: hours_milestone\nLESSONS_MILESTONE: lessons_milestone';
COMMENT ON TABLE "teacher_bonus_payments" IS 'One-off bonus owed to a teacher for a tier unlock or a teaching milestone.';
CREATE TABLE IF NOT EXISTS "notification_outbox" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "event_type" VARCHAR(64) NOT NULL,
    "recipient_id" VARCHAR(64) NOT NULL,
    "payload" JSONB NOT NULL,
    "status" VARCHAR(7) NOT NULL DEFAULT 'pending',
    "attempts" INT NOT NULL DEFAULT 0,
    "last_error" TEXT,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "sent_at" TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS "idx_notificatio_status_3b7f90" ON "notification_outbox" ("status");
COMMENT ON COLUMN "notification_outbox"."status" IS 'PENDING: pending\nSENT: sent\nFAILED: failed\nSKIPPED: skipped';
COMMENT ON TABLE "notification_outbox" IS 'Outbox of notifications waiting to be delivered.';
CREATE TABLE IF NOT EXISTS "metrics" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "metric_type" VARCHAR(21) NOT NULL,
    "value" DOUBLE PRECISION NOT NULL DEFAULT 1,
    "entity_id" INT,
    "teacher_id" INT,
    "metadata" JSONB,
    "timestamp" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);
COMMENT ON COLUMN "metrics"."metric_type" IS 'LESSON_INGESTED: lesson_ingested\nEARNING_RECORDED: earning_recorded\nEARNINGS_CLEARED: earnings_cleared\nPAYOUT_COMPLETED: payout_completed\nPAYOUT_FAILED: payout_failed\nTIER_CHANGED: tier_changed\nAPPLICATION_SUBMITTED: application_submitted\nAPPLICATION_REVIEWED: application_reviewed\nBONUS_AWARDED: bonus_awarded';
COMMENT ON TABLE "metrics" IS 'Metrics model for tracking key performance indicators.';
CREATE TABLE IF NOT EXISTS "aerich" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "version" VARCHAR(255) NOT NULL,
    "app" VARCHAR(100) NOT NULL,
    "content" JSONB NOT NULL
);"""


async def downgrade(db: BaseDBAsyncClient) -> str:
    return """
        """
