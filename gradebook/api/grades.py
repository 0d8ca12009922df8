from fastapi import APIRouter, Depends, Request, status, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gradebook.database import get_db, AsyncSessionLocal
from gradebook.schemas.grades import (
    PeriodGrade, TermGrade, CumulativeGrade, CumulativeGradeRequest,
    BatchCumulativeGradeRequest, BatchCumulativeGradeResponse,
    GradeBookInDB, GradeBookSummary, GradeEntry, RecordedGrade, ValidationResult
)
from gradebook.schemas.settings import ClassCreate, ClassInDB
from gradebook.services.cache import GradeCache
from gradebook.services.classes import ClassService
from gradebook.services.grade_entries import GradeEntryService
from gradebook.services.gradebook import GradeBookService, calculate_cumulative_grades_batch
from gradebook.services.subject_grades import SubjectGradeManager
from gradebook.services.validation import GradeValidationService

router = APIRouter()

def get_grade_cache(request: Request) -> GradeCache:
    return request.app.state.grade_cache

def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal

# Subject grade endpoints
@router.get("/subjects/{subject_id}/periods/{period_id}/grades/{student_id}", response_model=PeriodGrade)
async def get_period_grade(
    subject_id: int = Path(..., gt=0),
    period_id: int = Path(..., gt=0),
    student_id: int = Path(..., gt=0),
    require_complete: bool = Query(False),
    db: AsyncSession = Depends(get_db)
):
    """
    Get a student's grade in one assessment period of a subject.
    """
    return await SubjectGradeManager(db).calculate_period_grade(
        subject_id, period_id, student_id, require_complete=require_complete
    )

@router.get("/subjects/{subject_id}/terms/{term_id}/grades/{student_id}", response_model=TermGrade)
async def get_term_grade(
    subject_id: int = Path(..., gt=0),
    term_id: int = Path(..., gt=0),
    student_id: int = Path(..., gt=0),
    require_complete: bool = Query(False),
    db: AsyncSession = Depends(get_db)
):
    """
    Get a student's term grade in a subject without storing it.
    """
    return await SubjectGradeManager(db).calculate_subject_term_grade(
        subject_id, term_id, student_id, require_complete=require_complete
    )

# Completion checks
@router.get("/subjects/{subject_id}/periods/{period_id}/completion/{student_id}", response_model=ValidationResult)
async def validate_period_completion(
    subject_id: int = Path(..., gt=0),
    period_id: int = Path(..., gt=0),
    student_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db)
):
    """
    List the required assessments of a period the student has no graded submission for.
    """
    return await GradeValidationService(db).validate_subject_period(subject_id, period_id, student_id)

@router.get("/subjects/{subject_id}/terms/{term_id}/completion/{student_id}", response_model=ValidationResult)
async def validate_term_completion(
    subject_id: int = Path(..., gt=0),
    term_id: int = Path(..., gt=0),
    student_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db)
):
    """
    Check every assessment period of a term for missing required submissions.
    """
    return await GradeValidationService(db).validate_term_grade_calculation(subject_id, term_id, student_id)

# Cumulative grade endpoints
@router.post("/gradebooks/{gradebook_id}/cumulative-grades", response_model=CumulativeGrade)
async def calculate_cumulative_grade(
    grade_request: CumulativeGradeRequest,
    gradebook_id: int = Path(..., gt=0),
    require_complete: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    cache: GradeCache = Depends(get_grade_cache)
):
    """
    Calculate and store a student's cumulative grade (GPA and credits) for a term.
    """
    service = GradeBookService(db, cache)
    return await service.calculate_cumulative_grade(
        gradebook_id, grade_request.student_id, grade_request.term_id, require_complete=require_complete
    )

@router.post("/gradebooks/{gradebook_id}/cumulative-grades/batch", response_model=BatchCumulativeGradeResponse)
async def calculate_cumulative_grades(
    batch_request: BatchCumulativeGradeRequest,
    gradebook_id: int = Path(..., gt=0),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    cache: GradeCache = Depends(get_grade_cache)
):
    """
    Calculate cumulative grades for many students. Students whose calculation
    fails are left out of the results.
    """
    results = await calculate_cumulative_grades_batch(
        session_factory,
        gradebook_id,
        batch_request.student_ids,
        batch_request.term_id,
        batch_size=batch_request.batch_size,
        cache=cache,
    )
    return BatchCumulativeGradeResponse(
        results={str(student_id): grade for student_id, grade in results.items()}
    )

# Class and gradebook lifecycle endpoints
@router.post("/classes", response_model=ClassInDB, status_code=status.HTTP_201_CREATED)
async def create_class(
    class_data: ClassCreate,
    db: AsyncSession = Depends(get_db),
    cache: GradeCache = Depends(get_grade_cache)
):
    """
    Create a class in a class group. The class inherits the group's term
    structure and calendar and gets an initialized gradebook.
    """
    return await ClassService(db, cache).create_class_with_inheritance(class_data)

@router.post("/classes/{class_id}/gradebook", response_model=GradeBookInDB, status_code=status.HTTP_201_CREATED)
async def initialize_gradebook(
    class_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db),
    cache: GradeCache = Depends(get_grade_cache)
):
    """
    Initialize the gradebook of an existing class.
    """
    return await GradeBookService(db, cache).initialize_gradebook(class_id)

@router.get("/classes/{class_id}/gradebook", response_model=GradeBookSummary)
async def get_gradebook(
    class_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db),
    cache: GradeCache = Depends(get_grade_cache)
):
    """
    Get the gradebook of a class with its subject grade records.
    """
    return await GradeBookService(db, cache).get_gradebook_summary(class_id)

# Grade entry endpoints
@router.post("/grade-entries/validate", response_model=ValidationResult)
async def validate_grade_entry(
    entry: GradeEntry,
    db: AsyncSession = Depends(get_db)
):
    """
    Check a grade entry before it is recorded.
    """
    return await GradeValidationService(db).validate_grade_entry(entry)

@router.post("/gradebooks/{gradebook_id}/grades", response_model=RecordedGrade, status_code=status.HTTP_201_CREATED)
async def record_grade(
    entry: GradeEntry,
    gradebook_id: int = Path(..., gt=0),
    require_complete: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    cache: GradeCache = Depends(get_grade_cache)
):
    """
    Record a graded submission and recompute the student's grades for the term it falls in.
    """
    return await GradeEntryService(db, cache).record_grade(gradebook_id, entry, require_complete=require_complete)
