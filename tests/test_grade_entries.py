from datetime import datetime

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from gradebook.exceptions import NotFound, InvalidState
from gradebook.models.grades import Submission, SubjectGradeRecord, TermResult
from gradebook.schemas.grades import GradeEntry
from gradebook.services.gradebook import GradeBookService, summary_cache_key
from gradebook.services.grade_entries import GradeEntryService
from tests.factories import seed_program, add_class, add_required_assessment

pytestmark = pytest.mark.anyio

STUDENT = 21

GPA_CONFIG = {
    "grade_points": [
        {"min_percentage": 70, "points": 3.0},
        {"min_percentage": 40, "points": 2.0},
        {"min_percentage": 0, "points": 0},
    ]
}


async def _count(db, column):
    result = await db.execute(select(func.count(column)))
    return result.scalar()


async def _seed_gradebook(db, cache=None):
    seeded = await seed_program(db, config=GPA_CONFIG)
    class_id = await add_class(db, seeded.class_group_id)
    gradebook = await GradeBookService(db, cache).initialize_gradebook(class_id)
    seeded.class_id = class_id
    seeded.gradebook_id = gradebook.id
    return seeded


async def test_record_grade_stores_submission_and_recomputes(db):
    seeded = await _seed_gradebook(db)
    assessment_id = await add_required_assessment(db, seeded.subject_ids[0])

    recorded = await GradeEntryService(db).record_grade(
        seeded.gradebook_id,
        GradeEntry(
            student_id=STUDENT,
            assessment_id=assessment_id,
            obtained_marks=80,
            total_marks=100,
            submission_date=datetime(2024, 1, 22, 9, 30),
            feedback="Well argued",
        ),
    )

    assert recorded.term_id == seeded.term_id
    assert recorded.cumulative.gpa == pytest.approx(3.0)
    assert recorded.cumulative.earned_credits == 3.0

    submission = await db.get(Submission, recorded.submission_id)
    assert submission.graded_at == datetime(2024, 1, 22, 9, 30)
    assert submission.obtained_marks == 80
    assert submission.feedback == "Well argued"

    result = await db.execute(
        select(SubjectGradeRecord).where(SubjectGradeRecord.student_id == STUDENT)
    )
    record = result.scalars().one()
    assert record.term_grades[str(seeded.term_id)]["percentage"] == pytest.approx(80.0)

    result = await db.execute(select(TermResult).where(TermResult.student_id == STUDENT))
    assert result.scalars().one().gpa == pytest.approx(3.0)


async def test_record_grade_with_utc_timestamp_is_stored_naive(db):
    seeded = await _seed_gradebook(db)
    assessment_id = await add_required_assessment(db, seeded.subject_ids[0])
    entry = GradeEntry.model_validate({
        "student_id": STUDENT,
        "assessment_id": assessment_id,
        "obtained_marks": 50,
        "total_marks": 100,
        "submission_date": "2024-01-22T10:00:00+01:00",
    })

    recorded = await GradeEntryService(db).record_grade(seeded.gradebook_id, entry)

    submission = await db.get(Submission, recorded.submission_id)
    assert submission.graded_at == datetime(2024, 1, 22, 9, 0)


async def test_invalid_entry_is_rejected_and_nothing_stored(db):
    seeded = await _seed_gradebook(db)
    assessment_id = await add_required_assessment(db, seeded.subject_ids[0])

    with pytest.raises(InvalidState) as excinfo:
        await GradeEntryService(db).record_grade(
            seeded.gradebook_id,
            GradeEntry(student_id=STUDENT, assessment_id=assessment_id, obtained_marks=120, total_marks=100),
        )

    assert "Obtained marks cannot exceed total marks" in str(excinfo.value)
    assert await _count(db, Submission.id) == 0
    assert await _count(db, TermResult.id) == 0


async def test_second_grade_for_same_assessment_is_rejected(db):
    seeded = await _seed_gradebook(db)
    assessment_id = await add_required_assessment(db, seeded.subject_ids[0])
    entry = GradeEntry(student_id=STUDENT, assessment_id=assessment_id, obtained_marks=60, total_marks=100)
    service = GradeEntryService(db)

    await service.record_grade(seeded.gradebook_id, entry)
    with pytest.raises(InvalidState):
        await service.record_grade(seeded.gradebook_id, entry)

    assert await _count(db, Submission.id) == 1


async def test_assessment_of_another_class_group_is_rejected(db):
    seeded = await _seed_gradebook(db)
    other = await seed_program(db, code="PRG-2")
    assessment_id = await add_required_assessment(db, other.subject_ids[0])

    with pytest.raises(InvalidState):
        await GradeEntryService(db).record_grade(
            seeded.gradebook_id,
            GradeEntry(student_id=STUDENT, assessment_id=assessment_id, obtained_marks=60, total_marks=100),
        )

    assert await _count(db, Submission.id) == 0


async def test_grade_for_unknown_gradebook_is_not_found(db):
    seeded = await seed_program(db)
    assessment_id = await add_required_assessment(db, seeded.subject_ids[0])

    with pytest.raises(NotFound):
        await GradeEntryService(db).record_grade(
            999,
            GradeEntry(student_id=STUDENT, assessment_id=assessment_id, obtained_marks=60, total_marks=100),
        )

    assert await _count(db, Submission.id) == 0


async def test_assessment_outside_every_period_is_stored_without_recompute(db):
    seeded = await _seed_gradebook(db)
    assessment_id = await add_required_assessment(db, seeded.subject_ids[0], created_at=datetime(2024, 8, 1))

    recorded = await GradeEntryService(db).record_grade(
        seeded.gradebook_id,
        GradeEntry(student_id=STUDENT, assessment_id=assessment_id, obtained_marks=60, total_marks=100),
    )

    assert recorded.term_id is None
    assert recorded.cumulative is None
    assert await _count(db, Submission.id) == 1
    assert await _count(db, TermResult.id) == 0


async def test_failed_recompute_rolls_back_submission(db, monkeypatch):
    seeded = await _seed_gradebook(db)
    assessment_id = await add_required_assessment(db, seeded.subject_ids[0])

    async def broken(self, gradebook, student_id, term_id, require_complete=False):
        raise RuntimeError("disk full")

    monkeypatch.setattr(GradeBookService, "compute_cumulative_grade", broken)

    with pytest.raises(RuntimeError):
        await GradeEntryService(db).record_grade(
            seeded.gradebook_id,
            GradeEntry(student_id=STUDENT, assessment_id=assessment_id, obtained_marks=60, total_marks=100),
        )

    assert await _count(db, Submission.id) == 0


async def test_recording_a_grade_invalidates_the_summary(db, cache):
    seeded = await _seed_gradebook(db, cache)
    assessment_id = await add_required_assessment(db, seeded.subject_ids[0])
    await GradeBookService(db, cache).get_gradebook_summary(seeded.class_id)
    assert cache.get(summary_cache_key(seeded.class_id)) is not None

    await GradeEntryService(db, cache).record_grade(
        seeded.gradebook_id,
        GradeEntry(student_id=STUDENT, assessment_id=assessment_id, obtained_marks=60, total_marks=100),
    )

    assert cache.get(summary_cache_key(seeded.class_id)) is None
