import logging
from typing import Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gradebook.exceptions import NotFound
from gradebook.models.classes import Subject
from gradebook.models.grades import Assessment, Submission, GradeBook, SubjectGradeRecord, GradeHistory
from gradebook.schemas.grades import PeriodGrade, TermGrade
from gradebook.schemas.settings import (
    AssessmentSystemConfig, AssessmentSystemSchema, AssessmentPeriodSchema, TermStructureSchema
)
from gradebook.services.scoring import (
    score_submission, calculate_gpa, assessment_weight, passing_threshold, letter_grade
)
from gradebook.services.settings_resolver import SettingsResolver
from gradebook.services.validation import GradeValidationService

logger = logging.getLogger(__name__)


class SubjectGradeManager:
    """
    Period and term aggregation for one subject and one student.

    Every calculation accepts an already-resolved assessment system and term
    structure; when they are omitted they are resolved through the subject's
    class group.
    """

    def __init__(self, db: AsyncSession, resolver: Optional[SettingsResolver] = None):
        self.db = db
        self.resolver = resolver or SettingsResolver(db)
        self.validator = GradeValidationService(db, self.resolver)

    async def _get_subject(self, subject_id: int) -> Optional[Subject]:
        result = await self.db.execute(select(Subject).where(Subject.id == subject_id))
        return result.scalars().first()

    async def _resolve(
        self,
        subject: Optional[Subject],
        subject_id: int,
        assessment_system: Optional[AssessmentSystemSchema],
        term_structure: Optional[TermStructureSchema],
    ) -> Tuple[AssessmentSystemSchema, TermStructureSchema]:
        if assessment_system is not None and term_structure is not None:
            return assessment_system, term_structure

        if subject is None:
            raise NotFound("Subject", subject_id)

        if assessment_system is None:
            assessment_system = await self.resolver.resolve_assessment_system(subject.class_group_id)
        if term_structure is None:
            term_structure = await self.resolver.resolve_term_structure(subject.class_group_id)
        return assessment_system, term_structure

    def _scoring_config(self, assessment: Assessment, system: AssessmentSystemSchema) -> AssessmentSystemConfig:
        if not assessment.scoring_config:
            return system.config
        try:
            return AssessmentSystemConfig.model_validate(assessment.scoring_config)
        except ValidationError as e:
            logger.warning(
                f"Assessment {assessment.id} has an invalid scoring config, "
                f"using the assessment system's: {str(e)}"
            )
            return system.config

    async def _grade_period(
        self,
        subject_id: int,
        period: AssessmentPeriodSchema,
        student_id: int,
        system: AssessmentSystemSchema,
        require_complete: bool = False,
    ) -> PeriodGrade:
        query = (
            select(Submission, Assessment)
            .join(Assessment, Assessment.id == Submission.assessment_id)
            .where(
                Assessment.subject_id == subject_id,
                Submission.student_id == student_id,
                Submission.graded_at.isnot(None),
            )
        )
        if period.start_date:
            query = query.where(Assessment.created_at >= period.start_date)
        if period.end_date:
            query = query.where(Assessment.created_at <= period.end_date)

        result = await self.db.execute(query.order_by(Submission.id))
        rows = result.all()

        total_weighted_score = 0.0
        total_weight = 0.0
        obtained_marks = 0.0
        total_marks = 0.0

        for submission, assessment in rows:
            scoring_type = assessment.scoring_type or system.type
            percentage = score_submission(
                submission,
                scoring_type,
                self._scoring_config(assessment, system),
                assessment.total_marks,
            )
            weight = assessment_weight(assessment.category, system)

            total_weighted_score += percentage * weight
            total_weight += weight
            obtained_marks += submission.obtained_marks or 0
            total_marks += submission.total_marks or assessment.total_marks or 0

        percentage = total_weighted_score / total_weight if total_weight > 0 else 0.0
        is_passing = percentage >= passing_threshold(system)

        if is_passing and require_complete:
            missing = await self.validator.missing_required_assessments(subject_id, period, student_id)
            if missing:
                logger.info(
                    f"Student {student_id} is missing {len(missing)} required assessment(s) "
                    f"in period {period.id} of subject {subject_id}"
                )
                is_passing = False

        return PeriodGrade(
            period_id=period.id,
            obtained_marks=obtained_marks,
            total_marks=total_marks,
            percentage=percentage,
            weight=period.weight,
            is_passing=is_passing,
            grade_points=calculate_gpa(percentage, system),
        )

    async def calculate_period_grade(
        self,
        subject_id: int,
        period_id: int,
        student_id: int,
        require_complete: bool = False,
        assessment_system: Optional[AssessmentSystemSchema] = None,
        term_structure: Optional[TermStructureSchema] = None,
    ) -> PeriodGrade:
        subject = await self._get_subject(subject_id)
        system, structure = await self._resolve(subject, subject_id, assessment_system, term_structure)

        period = structure.find_period(period_id)
        if period is None:
            raise NotFound("Assessment period", period_id)

        return await self._grade_period(subject_id, period, student_id, system, require_complete)

    async def calculate_subject_term_grade(
        self,
        subject_id: int,
        term_id: int,
        student_id: int,
        require_complete: bool = False,
        assessment_system: Optional[AssessmentSystemSchema] = None,
        term_structure: Optional[TermStructureSchema] = None,
    ) -> TermGrade:
        """
        Weighted mean of the term's period grades.

        A missing subject only costs its credits (0) when the assessment
        system and term structure are supplied by the caller; otherwise there
        is nothing to resolve them from and NotFound is raised.
        """
        subject = await self._get_subject(subject_id)
        system, structure = await self._resolve(subject, subject_id, assessment_system, term_structure)

        term = structure.find_term(term_id)
        if term is None:
            raise NotFound("Term", term_id)
        if not term.assessment_periods:
            raise NotFound("Assessment periods for term", term_id)

        period_grades = {}
        weighted_total = 0.0
        weight_sum = 0.0
        for period in term.assessment_periods:
            grade = await self._grade_period(subject_id, period, student_id, system, require_complete)
            period_grades[str(period.id)] = grade
            weighted_total += grade.percentage * grade.weight
            weight_sum += grade.weight

        final_percentage = weighted_total / weight_sum if weight_sum > 0 else 0.0
        total_marks = sum(grade.total_marks for grade in period_grades.values())

        if subject is None:
            logger.warning(f"Subject {subject_id} not found, counting it with 0 credits")
        credits = float(subject.credits) if subject is not None and subject.credits is not None else 0.0

        return TermGrade(
            term_id=term.id,
            period_grades=period_grades,
            final_grade=final_percentage,
            grade=letter_grade(final_percentage, system),
            total_marks=total_marks,
            percentage=final_percentage,
            is_passing=final_percentage >= passing_threshold(system),
            grade_points=calculate_gpa(final_percentage, system),
            credits=credits,
        )

    async def initialize_subject_grades(
        self,
        gradebook_id: int,
        subject_id: int,
        term_structure: TermStructureSchema,
    ) -> SubjectGradeRecord:
        """Create the class template record: zeroed term entries and one zeroed entry per period."""
        record = SubjectGradeRecord(
            gradebook_id=gradebook_id,
            subject_id=subject_id,
            student_id=None,
            term_grades={
                str(term.id): TermGrade(term_id=term.id).model_dump()
                for term in term_structure.terms
            },
            assessment_period_grades={
                str(period.id): PeriodGrade(period_id=period.id, weight=period.weight).model_dump()
                for period in term_structure.all_periods()
            },
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def _get_record(self, gradebook_id: int, subject_id: int, student_id: Optional[int]) -> Optional[SubjectGradeRecord]:
        query = select(SubjectGradeRecord).where(
            SubjectGradeRecord.gradebook_id == gradebook_id,
            SubjectGradeRecord.subject_id == subject_id,
        )
        if student_id is None:
            query = query.where(SubjectGradeRecord.student_id.is_(None))
        else:
            query = query.where(SubjectGradeRecord.student_id == student_id)
        result = await self.db.execute(query)
        return result.scalars().first()

    async def update_subject_grade_record(
        self,
        gradebook_id: int,
        subject_id: int,
        term_id: int,
        student_id: int,
        require_complete: bool = False,
        assessment_system: Optional[AssessmentSystemSchema] = None,
        term_structure: Optional[TermStructureSchema] = None,
    ) -> TermGrade:
        """
        Recompute a student's term grade and store it on their subject record.

        The student's record is created from the class template on first use.
        Only this term's entry and its periods' entries are replaced; entries of
        other terms are kept. Changes are flushed, not committed.
        """
        result = await self.db.execute(select(GradeBook).where(GradeBook.id == gradebook_id))
        if not result.scalars().first():
            raise NotFound("Gradebook", gradebook_id)

        term_grade = await self.calculate_subject_term_grade(
            subject_id,
            term_id,
            student_id,
            require_complete=require_complete,
            assessment_system=assessment_system,
            term_structure=term_structure,
        )

        record = await self._get_record(gradebook_id, subject_id, student_id)
        if record is None:
            template = await self._get_record(gradebook_id, subject_id, None)
            record = SubjectGradeRecord(
                gradebook_id=gradebook_id,
                subject_id=subject_id,
                student_id=student_id,
                term_grades=dict(template.term_grades) if template else {},
                assessment_period_grades=dict(template.assessment_period_grades) if template else {},
            )
            self.db.add(record)

        # Reassign rather than mutate so the JSON columns are marked dirty
        record.term_grades = {
            **(record.term_grades or {}),
            str(term_id): term_grade.model_dump(),
        }
        record.assessment_period_grades = {
            **(record.assessment_period_grades or {}),
            **{period_id: grade.model_dump() for period_id, grade in term_grade.period_grades.items()},
        }

        await self.record_grade_history(student_id, subject_id, term_grade)
        await self.db.flush()

        return term_grade

    async def record_grade_history(
        self,
        student_id: int,
        subject_id: int,
        term_grade: TermGrade,
        modified_by: str = "SYSTEM",
        reason: str = "Term grade calculation",
    ) -> None:
        self.db.add(GradeHistory(
            student_id=student_id,
            subject_id=subject_id,
            grade_value=term_grade.final_grade,
            modified_by=modified_by,
            reason=reason,
        ))
