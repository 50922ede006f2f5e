import pytest

from tutorpay.errors import NotFoundError
from tutorpay.models import RetentionStatus, TeacherProfile
from tutorpay.retention import calculate_retention


@pytest.mark.asyncio
async def test_retention_with_sufficient_sample(make_teacher, make_lesson, settings):
    """9 of 12 students came back: retention 0.75"""
    teacher = await make_teacher()
    for n in range(12):
        await make_lesson(teacher, student_id=f"s{n}")
        if n < 9:
            await make_lesson(teacher, student_id=f"s{n}")

    result = await calculate_retention(teacher.id, settings)

    assert result.total_students == 12
    assert result.returning_students == 9
    assert result.retention_rate == 0.75
    assert result.status == RetentionStatus.VALID

    teacher = await TeacherProfile.get(id=teacher.id)
    assert teacher.retention_rate == 0.75
    assert teacher.retention_status == RetentionStatus.VALID
    assert teacher.retention_sample_size == 12


@pytest.mark.asyncio
async def test_retention_insufficient_sample(make_teacher, make_lesson, settings):
    teacher = await make_teacher()
    for student in ("a", "a", "b", "c"):
        await make_lesson(teacher, student_id=student)

    result = await calculate_retention(teacher.id, settings)

    assert result.retention_rate is None
    assert result.status == RetentionStatus.INSUFFICIENT_SAMPLE
    teacher = await TeacherProfile.get(id=teacher.id)
    assert teacher.retention_rate is None
    assert teacher.retention_sample_size == 3


@pytest.mark.asyncio
async def test_retention_ignores_lessons_without_student(make_teacher, make_lesson, settings):
    teacher = await make_teacher()
    for n in range(5):
        await make_lesson(teacher, student_id=f"s{n}")
    await make_lesson(teacher, student_id=None)
    await make_lesson(teacher, student_id=None)

    result = await calculate_retention(teacher.id, settings)

    assert result.total_students == 5
    assert result.returning_students == 0
    assert result.retention_rate == 0.0


@pytest.mark.asyncio
async def test_retention_rounds_to_two_decimals(make_teacher, make_lesson, settings):
    teacher = await make_teacher()
    for n in range(6):
        await make_lesson(teacher, student_id=f"s{n}")
    await make_lesson(teacher, student_id="s0")

    result = await calculate_retention(teacher.id, settings)
    assert result.retention_rate == 0.17


@pytest.mark.asyncio
async def test_retention_unknown_teacher(settings):
    with pytest.raises(NotFoundError):
        await calculate_retention(999, settings)
