import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gradebook.database import run_in_transaction
from gradebook.exceptions import NotFound, InvalidState
from gradebook.models.classes import Subject
from gradebook.models.grades import Assessment, Submission
from gradebook.schemas.grades import GradeEntry, RecordedGrade
from gradebook.services.cache import GradeCache
from gradebook.services.gradebook import GradeBookService
from gradebook.services.validation import GradeValidationService

logger = logging.getLogger(__name__)


class GradeEntryService:
    """Records graded submissions and pushes them through period, term and cumulative recomputation."""

    def __init__(self, db: AsyncSession, cache: Optional[GradeCache] = None):
        self.db = db
        self.gradebook_service = GradeBookService(db, cache)
        self.validator = GradeValidationService(db, self.gradebook_service.resolver)

    async def record_grade(self, gradebook_id: int, entry: GradeEntry, require_complete: bool = False) -> RecordedGrade:
        """
        Store a graded submission and recompute the student's grades for the term it falls in.

        The entry is validated first. The submission, the student's subject
        records and the term result are written in one transaction. An
        assessment created outside every assessment period is stored without
        recomputation.
        """
        validation = await self.validator.validate_grade_entry(entry)
        if not validation.is_valid:
            raise InvalidState(f"Invalid grade entry: {'; '.join(validation.errors)}")

        async def _record(db: AsyncSession):
            gradebook = await self.gradebook_service.get_gradebook(gradebook_id)
            class_ = await self.gradebook_service._get_class(gradebook.class_id)

            result = await db.execute(
                select(Assessment, Subject)
                .join(Subject, Subject.id == Assessment.subject_id)
                .where(Assessment.id == entry.assessment_id)
            )
            row = result.first()
            if row is None:
                raise NotFound("Assessment", entry.assessment_id)
            assessment, subject = row
            if subject.class_group_id != class_.class_group_id:
                raise InvalidState(
                    f"Assessment {assessment.id} does not belong to the class group of gradebook {gradebook_id}"
                )

            submission = Submission(
                assessment_id=assessment.id,
                student_id=entry.student_id,
                obtained_marks=entry.obtained_marks,
                total_marks=entry.total_marks,
                rubric_scores=entry.rubric_scores,
                feedback=entry.feedback,
                graded_at=entry.submission_date or datetime.utcnow(),
            )
            db.add(submission)
            await db.flush()

            term_structure = await self.gradebook_service.resolver.resolve_term_structure(class_.class_group_id)
            term = term_structure.find_term_at(assessment.created_at)
            if term is None:
                logger.warning(
                    f"Assessment {assessment.id} is outside every assessment period, "
                    f"stored submission {submission.id} without recomputing grades"
                )
                return RecordedGrade(submission_id=submission.id), class_.id

            cumulative = await self.gradebook_service.compute_cumulative_grade(
                gradebook, entry.student_id, term.id, require_complete
            )
            return RecordedGrade(submission_id=submission.id, term_id=term.id, cumulative=cumulative), class_.id

        recorded, class_id = await run_in_transaction(self.db, _record)
        self.gradebook_service.invalidate_summary(class_id)

        logger.info(
            f"Recorded grade {entry.obtained_marks}/{entry.total_marks} for student {entry.student_id} "
            f"on assessment {entry.assessment_id} (submission {recorded.submission_id})"
        )
        return recorded
