"""Student retention: how many of a teacher's students come back for another lesson."""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from .config import LedgerSettings
from .errors import NotFoundError
from .models import Lesson, RetentionStatus, TeacherProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionResult:
    teacher_id: int
    total_students: int
    returning_students: int
    retention_rate: Optional[float]
    status: RetentionStatus


async def calculate_retention(teacher_id: int, settings: LedgerSettings) -> RetentionResult:
    """
    Recompute a teacher's student retention from lesson history.

    Retention is the share of distinct students taught two or more times,
    rounded to two decimals. Below ``settings.min_students_for_retention``
    distinct students the rate is left unset and the teacher is marked as
    having an insufficient sample.

    Args:
        teacher_id: The teacher to recompute
        settings: Ledger settings carrying the minimum sample size

    Returns:
        RetentionResult with the values written to the profile
    """
    teacher = await TeacherProfile.get_or_none(id=teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {teacher_id} not found")

    student_ids = await Lesson.filter(teacher_id=teacher_id, student_id__isnull=False).values_list(
        "student_id", flat=True
    )
    lessons_per_student = Counter(student_ids)
    total = len(lessons_per_student)
    returning = sum(1 for count in lessons_per_student.values() if count >= 2)

    if total >= settings.min_students_for_retention:
        rate = round(returning / total, 2)
        status = RetentionStatus.VALID
    else:
        rate = None
        status = RetentionStatus.INSUFFICIENT_SAMPLE

    teacher.retention_rate = rate
    teacher.retention_status = status
    teacher.retention_sample_size = total
    await teacher.save(update_fields=["retention_rate", "retention_status", "retention_sample_size", "updated_at"])

    logger.info(
        f"Retention for teacher {teacher_id}: {returning}/{total} returning students, "
        f"rate={rate}, status={status.value}"
    )
    return RetentionResult(teacher_id, total, returning, rate, status)
