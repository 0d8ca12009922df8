from datetime import datetime

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from gradebook.exceptions import NotFound
from gradebook.models.grades import SubjectGradeRecord, GradeHistory
from gradebook.services.gradebook import GradeBookService
from gradebook.services.subject_grades import SubjectGradeManager
from tests.factories import seed_program, add_class, add_graded_assessment, add_required_assessment

pytestmark = pytest.mark.anyio

STUDENT = 101
FIRST_PERIOD = datetime(2024, 1, 15)
SECOND_PERIOD = datetime(2024, 3, 15)


async def test_period_grade_is_weighted_by_assessment_category(db):
    seeded = await seed_program(db, config={"weightage": {"EXAM": 3}})
    subject_id = seeded.subject_ids[0]
    await add_graded_assessment(db, subject_id, STUDENT, 80, category="EXAM")
    await add_graded_assessment(db, subject_id, STUDENT, 40, category="ASSIGNMENT")

    grade = await SubjectGradeManager(db).calculate_period_grade(subject_id, seeded.period_ids[0], STUDENT)

    assert grade.percentage == pytest.approx(70.0)
    assert grade.obtained_marks == 120
    assert grade.total_marks == 200
    assert grade.is_passing is True
    assert grade.grade_points == 3.0


async def test_period_grade_ignores_ungraded_and_out_of_period_work(db):
    seeded = await seed_program(db, period_weights=(1.0, 1.0))
    subject_id = seeded.subject_ids[0]
    await add_graded_assessment(db, subject_id, STUDENT, 90)
    await add_graded_assessment(db, subject_id, STUDENT, 10, graded=False)
    await add_graded_assessment(db, subject_id, STUDENT, 20, created_at=SECOND_PERIOD)
    await add_graded_assessment(db, subject_id, STUDENT + 1, 5)

    grade = await SubjectGradeManager(db).calculate_period_grade(subject_id, seeded.period_ids[0], STUDENT)

    assert grade.percentage == pytest.approx(90.0)


async def test_period_without_submissions_is_zero_and_failing(db):
    seeded = await seed_program(db)

    grade = await SubjectGradeManager(db).calculate_period_grade(
        seeded.subject_ids[0], seeded.period_ids[0], STUDENT
    )

    assert grade.percentage == 0
    assert grade.is_passing is False


async def test_unknown_period_is_not_found(db):
    seeded = await seed_program(db)

    with pytest.raises(NotFound):
        await SubjectGradeManager(db).calculate_period_grade(seeded.subject_ids[0], 999, STUDENT)


async def test_missing_required_assessment_fails_complete_period(db):
    seeded = await seed_program(db)
    subject_id = seeded.subject_ids[0]
    await add_graded_assessment(db, subject_id, STUDENT, 80)
    await add_required_assessment(db, subject_id)
    manager = SubjectGradeManager(db)

    lenient = await manager.calculate_period_grade(subject_id, seeded.period_ids[0], STUDENT)
    strict = await manager.calculate_period_grade(
        subject_id, seeded.period_ids[0], STUDENT, require_complete=True
    )

    assert lenient.is_passing is True
    assert strict.is_passing is False
    assert strict.percentage == lenient.percentage


async def test_term_grade_is_weighted_by_period(db):
    seeded = await seed_program(db, period_weights=(1.0, 2.0))
    subject_id = seeded.subject_ids[0]
    await add_graded_assessment(db, subject_id, STUDENT, 30, created_at=FIRST_PERIOD)
    await add_graded_assessment(db, subject_id, STUDENT, 75, created_at=SECOND_PERIOD)

    grade = await SubjectGradeManager(db).calculate_subject_term_grade(subject_id, seeded.term_id, STUDENT)

    assert grade.final_grade == pytest.approx(60.0)
    assert grade.percentage == pytest.approx(60.0)
    assert grade.is_passing is True
    assert grade.credits == 3.0
    assert set(grade.period_grades) == {str(pid) for pid in seeded.period_ids}
    assert grade.period_grades[str(seeded.period_ids[1])].weight == 2.0


async def test_term_grade_with_zero_period_weights_is_zero(db):
    seeded = await seed_program(db, period_weights=(0.0, 0.0))
    subject_id = seeded.subject_ids[0]
    await add_graded_assessment(db, subject_id, STUDENT, 90, created_at=FIRST_PERIOD)

    grade = await SubjectGradeManager(db).calculate_subject_term_grade(subject_id, seeded.term_id, STUDENT)

    assert grade.final_grade == 0
    assert grade.is_passing is False


async def test_unknown_term_or_subject_is_not_found(db):
    seeded = await seed_program(db)
    manager = SubjectGradeManager(db)

    with pytest.raises(NotFound):
        await manager.calculate_subject_term_grade(seeded.subject_ids[0], 999, STUDENT)
    with pytest.raises(NotFound):
        await manager.calculate_subject_term_grade(999, seeded.term_id, STUDENT)


async def test_update_record_creates_student_record_from_template(db):
    seeded = await seed_program(db, period_weights=(1.0, 1.0))
    subject_id = seeded.subject_ids[0]
    class_id = await add_class(db, seeded.class_group_id)
    gradebook = await GradeBookService(db).initialize_gradebook(class_id)
    await add_graded_assessment(db, subject_id, STUDENT, 70, created_at=FIRST_PERIOD)

    manager = SubjectGradeManager(db)
    term_grade = await manager.update_subject_grade_record(gradebook.id, subject_id, seeded.term_id, STUDENT)
    await db.commit()

    result = await db.execute(
        select(SubjectGradeRecord).where(SubjectGradeRecord.gradebook_id == gradebook.id)
        .order_by(SubjectGradeRecord.id)
    )
    template, record = result.scalars().all()

    assert template.student_id is None
    assert template.term_grades[str(seeded.term_id)]["final_grade"] == 0
    assert record.student_id == STUDENT
    assert record.term_grades[str(seeded.term_id)]["final_grade"] == pytest.approx(term_grade.final_grade)
    assert record.assessment_period_grades[str(seeded.period_ids[0])]["percentage"] == pytest.approx(70.0)

    history_count = await db.execute(select(func.count(GradeHistory.id)))
    assert history_count.scalar() == 1


async def test_update_record_for_unknown_gradebook_is_not_found(db):
    seeded = await seed_program(db)

    with pytest.raises(NotFound):
        await SubjectGradeManager(db).update_subject_grade_record(999, seeded.subject_ids[0], seeded.term_id, STUDENT)
