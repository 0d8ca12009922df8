import asyncio
import logging
from typing import Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from gradebook.config import settings
from gradebook.database import run_in_transaction
from gradebook.exceptions import NotFound, AlreadyInitialized
from gradebook.models.classes import Class, Subject
from gradebook.models.grades import GradeBook, SubjectGradeRecord, TermResult
from gradebook.schemas.grades import CumulativeGrade, GradeBookInDB, GradeBookSummary, SubjectGradeRecordInDB
from gradebook.services.cache import GradeCache
from gradebook.services.settings_resolver import SettingsResolver
from gradebook.services.subject_grades import SubjectGradeManager

logger = logging.getLogger(__name__)


def summary_cache_key(class_id: int) -> str:
    return f"gradebook:class:{class_id}"


class GradeBookService:
    def __init__(self, db: AsyncSession, cache: Optional[GradeCache] = None):
        self.db = db
        self.cache = cache
        self.resolver = SettingsResolver(db)
        self.subject_grade_manager = SubjectGradeManager(db, self.resolver)

    async def _get_class(self, class_id: int) -> Class:
        result = await self.db.execute(select(Class).where(Class.id == class_id))
        class_ = result.scalars().first()
        if not class_:
            raise NotFound("Class", class_id)
        return class_

    async def _get_subjects(self, class_group_id: int):
        result = await self.db.execute(
            select(Subject).where(Subject.class_group_id == class_group_id).order_by(Subject.id)
        )
        return result.scalars().all()

    async def create_gradebook(self, class_: Class) -> GradeBook:
        """
        Create the gradebook of a class and seed one template record per subject.

        Flushes only; callers wrap this in a transaction so the gradebook never
        exists without its subject records.
        """
        result = await self.db.execute(select(GradeBook).where(GradeBook.class_id == class_.id))
        if result.scalars().first():
            raise AlreadyInitialized(class_.id)

        assessment_system = await self.resolver.resolve_assessment_system(class_.class_group_id)
        term_structure = await self.resolver.resolve_term_structure(class_.class_group_id)

        gradebook = GradeBook(
            class_id=class_.id,
            assessment_system_id=assessment_system.id,
            term_structure_id=term_structure.id,
        )
        self.db.add(gradebook)
        await self.db.flush()

        subjects = await self._get_subjects(class_.class_group_id)
        for subject in subjects:
            await self.subject_grade_manager.initialize_subject_grades(
                gradebook.id, subject.id, term_structure
            )

        logger.info(
            f"Initialized gradebook {gradebook.id} for class {class_.id} "
            f"with {len(subjects)} subject record(s)"
        )
        return gradebook

    async def initialize_gradebook(self, class_id: int) -> GradeBook:
        """One-shot gradebook setup for an existing class, committed atomically."""
        async def _initialize(db: AsyncSession) -> GradeBook:
            class_ = await self._get_class(class_id)
            return await self.create_gradebook(class_)

        gradebook = await run_in_transaction(self.db, _initialize)
        self.invalidate_summary(class_id)
        return gradebook

    async def _upsert_term_result(
        self,
        student_id: int,
        term_id: int,
        gpa: float,
        total_credits: float,
        earned_credits: float,
    ) -> TermResult:
        result = await self.db.execute(
            select(TermResult).where(
                TermResult.student_id == student_id,
                TermResult.term_id == term_id,
            )
        )
        term_result = result.scalars().first()

        if term_result is None:
            term_result = TermResult(student_id=student_id, term_id=term_id)
            self.db.add(term_result)

        term_result.gpa = gpa
        term_result.total_credits = total_credits
        term_result.earned_credits = earned_credits
        await self.db.flush()
        return term_result

    async def get_gradebook(self, gradebook_id: int) -> GradeBook:
        result = await self.db.execute(select(GradeBook).where(GradeBook.id == gradebook_id))
        gradebook = result.scalars().first()
        if not gradebook:
            raise NotFound("Gradebook", gradebook_id)
        return gradebook

    async def compute_cumulative_grade(
        self,
        gradebook: GradeBook,
        student_id: int,
        term_id: int,
        require_complete: bool = False,
    ) -> CumulativeGrade:
        """
        Recompute every subject record of the student for the term and the term result.

        Flushes only; callers own the transaction.
        """
        class_ = await self._get_class(gradebook.class_id)
        assessment_system = await self.resolver.resolve_assessment_system(class_.class_group_id)
        term_structure = await self.resolver.resolve_term_structure(class_.class_group_id)
        if term_structure.find_term(term_id) is None:
            raise NotFound("Term", term_id)

        cumulative = CumulativeGrade(student_id=student_id, term_id=term_id)
        total_grade_points = 0.0

        for subject in await self._get_subjects(class_.class_group_id):
            term_grade = await self.subject_grade_manager.update_subject_grade_record(
                gradebook.id,
                subject.id,
                term_id,
                student_id,
                require_complete=require_complete,
                assessment_system=assessment_system,
                term_structure=term_structure,
            )
            cumulative.subject_grades[str(subject.id)] = term_grade

            total_grade_points += term_grade.grade_points * term_grade.credits
            cumulative.total_credits += term_grade.credits
            if term_grade.is_passing:
                cumulative.earned_credits += term_grade.credits

        if cumulative.total_credits > 0:
            cumulative.gpa = total_grade_points / cumulative.total_credits

        await self._upsert_term_result(
            student_id,
            term_id,
            cumulative.gpa,
            cumulative.total_credits,
            cumulative.earned_credits,
        )
        return cumulative

    def invalidate_summary(self, class_id: int) -> None:
        if self.cache:
            self.cache.invalidate(summary_cache_key(class_id))

    async def calculate_cumulative_grade(
        self,
        gradebook_id: int,
        student_id: int,
        term_id: int,
        require_complete: bool = False,
    ) -> CumulativeGrade:
        """
        Credit-weighted GPA of one student over every subject of the class for a term.

        Each subject's term grade is stored on the student's subject record and
        the term result row for (student, term) is overwritten. All writes are
        committed together.
        """
        async def _calculate(db: AsyncSession):
            gradebook = await self.get_gradebook(gradebook_id)
            cumulative = await self.compute_cumulative_grade(gradebook, student_id, term_id, require_complete)
            return cumulative, gradebook.class_id

        cumulative, class_id = await run_in_transaction(self.db, _calculate)
        self.invalidate_summary(class_id)

        logger.info(
            f"Cumulative grade for student {student_id}, term {term_id}: "
            f"gpa={cumulative.gpa:.2f} credits={cumulative.earned_credits}/{cumulative.total_credits}"
        )
        return cumulative

    async def get_gradebook_summary(self, class_id: int) -> GradeBookSummary:
        """Gradebook of a class with all its subject records; served from the cache when fresh."""
        key = summary_cache_key(class_id)
        if self.cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        result = await self.db.execute(select(GradeBook).where(GradeBook.class_id == class_id))
        gradebook = result.scalars().first()
        if not gradebook:
            raise NotFound("Gradebook for class", class_id)

        records_result = await self.db.execute(
            select(SubjectGradeRecord)
            .where(SubjectGradeRecord.gradebook_id == gradebook.id)
            .order_by(SubjectGradeRecord.subject_id, SubjectGradeRecord.id)
        )
        summary = GradeBookSummary(
            gradebook=GradeBookInDB.model_validate(gradebook),
            records=[SubjectGradeRecordInDB.model_validate(r) for r in records_result.scalars().all()],
        )

        if self.cache:
            self.cache.set(key, summary)
        return summary


async def calculate_cumulative_grades_batch(
    session_factory: async_sessionmaker,
    gradebook_id: int,
    student_ids: Iterable[int],
    term_id: int,
    batch_size: Optional[int] = None,
    pause_seconds: Optional[float] = None,
    cache: Optional[GradeCache] = None,
) -> Dict[int, CumulativeGrade]:
    """
    Cumulative grades for many students.

    Students are processed in sequential chunks of ``batch_size``; the members
    of a chunk run concurrently, each in its own session. A student whose
    calculation fails is logged and left out of the result, and the rest of the
    batch carries on. Callers wanting to stop early must do so between chunks.
    """
    batch_size = batch_size or settings.GRADE_BATCH_SIZE
    pause_seconds = settings.GRADE_BATCH_PAUSE_SECONDS if pause_seconds is None else pause_seconds
    # Deduplicate so a student's term result is never written by two tasks at once
    student_ids = list(dict.fromkeys(student_ids))

    results: Dict[int, CumulativeGrade] = {}

    async def _calculate_one(student_id: int):
        try:
            async with session_factory() as session:
                service = GradeBookService(session, cache)
                return student_id, await service.calculate_cumulative_grade(gradebook_id, student_id, term_id)
        except Exception:
            logger.exception(f"Cumulative grade calculation failed for student {student_id}, term {term_id}")
            return student_id, None

    for start in range(0, len(student_ids), batch_size):
        chunk = student_ids[start:start + batch_size]
        for student_id, grade in await asyncio.gather(*(_calculate_one(sid) for sid in chunk)):
            if grade is not None:
                results[student_id] = grade

        if start + batch_size < len(student_ids) and pause_seconds > 0:
            await asyncio.sleep(pause_seconds)

    logger.info(
        f"Batch cumulative grades for gradebook {gradebook_id}, term {term_id}: "
        f"{len(results)}/{len(student_ids)} student(s) calculated"
    )
    return results
