import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gradebook.exceptions import NotFound
from gradebook.models.classes import Subject
from gradebook.models.grades import Assessment, Submission
from gradebook.schemas.grades import GradeEntry, ValidationResult
from gradebook.schemas.settings import AssessmentPeriodSchema, TermStructureSchema
from gradebook.services.settings_resolver import SettingsResolver

logger = logging.getLogger(__name__)


class GradeValidationService:
    """Checks run before a grade is recorded or a period grade is treated as complete."""

    def __init__(self, db: AsyncSession, resolver: Optional[SettingsResolver] = None):
        self.db = db
        self.resolver = resolver or SettingsResolver(db)

    async def validate_grade_entry(self, entry: GradeEntry) -> ValidationResult:
        errors: List[str] = []

        if entry.obtained_marks < 0:
            errors.append("Obtained marks cannot be negative")
        if entry.obtained_marks > entry.total_marks:
            errors.append("Obtained marks cannot exceed total marks")

        result = await self.db.execute(select(Assessment).where(Assessment.id == entry.assessment_id))
        assessment = result.scalars().first()
        if not assessment:
            errors.append("Assessment not found")
            return ValidationResult(is_valid=False, errors=errors)

        result = await self.db.execute(
            select(Submission).where(
                Submission.assessment_id == entry.assessment_id,
                Submission.student_id == entry.student_id,
                Submission.graded_at.isnot(None),
            )
        )
        if result.scalars().first():
            errors.append("Grade entry already exists for this assessment")

        return ValidationResult(is_valid=not errors, errors=errors)

    async def missing_required_assessments(
        self,
        subject_id: int,
        period: AssessmentPeriodSchema,
        student_id: int,
    ) -> List[Assessment]:
        """Required assessments of the subject inside the period that the student has no graded submission for."""
        query = select(Assessment).where(
            Assessment.subject_id == subject_id,
            Assessment.is_required.is_(True),
        )
        if period.start_date:
            query = query.where(Assessment.created_at >= period.start_date)
        if period.end_date:
            query = query.where(Assessment.created_at <= period.end_date)

        result = await self.db.execute(query.order_by(Assessment.id))
        assessments = result.scalars().all()
        if not assessments:
            return []

        graded_result = await self.db.execute(
            select(Submission.assessment_id).where(
                Submission.assessment_id.in_([a.id for a in assessments]),
                Submission.student_id == student_id,
                Submission.graded_at.isnot(None),
            )
        )
        graded_ids = set(graded_result.scalars().all())

        return [a for a in assessments if a.id not in graded_ids]

    async def validate_period_completion(
        self,
        subject_id: int,
        period: AssessmentPeriodSchema,
        student_id: int,
    ) -> ValidationResult:
        missing = await self.missing_required_assessments(subject_id, period, student_id)
        errors = [f"Missing submission for assessment: {a.title}" for a in missing]
        return ValidationResult(is_valid=not errors, errors=errors)

    async def _subject_term_structure(self, subject_id: int) -> TermStructureSchema:
        result = await self.db.execute(select(Subject).where(Subject.id == subject_id))
        subject = result.scalars().first()
        if not subject:
            raise NotFound("Subject", subject_id)
        return await self.resolver.resolve_term_structure(subject.class_group_id)

    async def validate_subject_period(self, subject_id: int, period_id: int, student_id: int) -> ValidationResult:
        """Period completion check for a period of the subject's effective term structure."""
        term_structure = await self._subject_term_structure(subject_id)
        period = term_structure.find_period(period_id)
        if period is None:
            raise NotFound("Assessment period", period_id)
        return await self.validate_period_completion(subject_id, period, student_id)

    async def validate_term_grade_calculation(self, subject_id: int, term_id: int, student_id: int) -> ValidationResult:
        """
        Run the period completion check for every period of the term.

        Errors of all periods are collected; the term is valid only when every
        period is.
        """
        term_structure = await self._subject_term_structure(subject_id)
        term = term_structure.find_term(term_id)
        if term is None:
            raise NotFound("Term", term_id)

        errors: List[str] = []
        for period in term.assessment_periods:
            period_result = await self.validate_period_completion(subject_id, period, student_id)
            errors.extend(period_result.errors)

        if errors:
            logger.info(
                f"Term {term_id} of subject {subject_id} is incomplete for student {student_id}: "
                f"{len(errors)} missing submission(s)"
            )
        return ValidationResult(is_valid=not errors, errors=errors)
