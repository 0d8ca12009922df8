from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, field_validator

from gradebook.schemas.settings import naive_utc


# Grade computation results
class PeriodGrade(BaseModel):
    period_id: int
    obtained_marks: float = 0
    total_marks: float = 0
    percentage: float = 0
    weight: float = 0
    is_passing: bool = False
    grade_points: float = 0


class TermGrade(BaseModel):
    term_id: int
    period_grades: Dict[str, PeriodGrade] = {}
    final_grade: float = 0
    grade: Optional[str] = None
    total_marks: float = 0
    percentage: float = 0
    is_passing: bool = False
    grade_points: float = 0
    credits: float = 0


class CumulativeGrade(BaseModel):
    student_id: int
    term_id: int
    gpa: float = 0
    total_credits: float = 0
    earned_credits: float = 0
    subject_grades: Dict[str, TermGrade] = {}


class TermResultInDB(BaseModel):
    id: int
    student_id: int
    term_id: int
    gpa: float
    total_credits: float
    earned_credits: float

    class Config:
        from_attributes = True


# Gradebook schemas
class GradeBookInDB(BaseModel):
    id: int
    class_id: int
    assessment_system_id: int
    term_structure_id: int

    class Config:
        from_attributes = True


class SubjectGradeRecordInDB(BaseModel):
    id: int
    gradebook_id: int
    subject_id: int
    student_id: Optional[int] = None
    term_grades: Dict[str, dict] = {}
    assessment_period_grades: Dict[str, dict] = {}

    class Config:
        from_attributes = True


class GradeBookSummary(BaseModel):
    gradebook: GradeBookInDB
    records: List[SubjectGradeRecordInDB] = []


# Batch request/response
class CumulativeGradeRequest(BaseModel):
    student_id: int
    term_id: int


class BatchCumulativeGradeRequest(BaseModel):
    student_ids: List[int]
    term_id: int
    batch_size: Optional[int] = Field(None, gt=0)


class BatchCumulativeGradeResponse(BaseModel):
    results: Dict[str, CumulativeGrade] = {}


# Grade entry validation
class GradeEntry(BaseModel):
    student_id: int
    assessment_id: int
    obtained_marks: float
    total_marks: float
    submission_date: Optional[datetime] = None
    # criterion id -> awarded points, for rubric-scored assessments
    rubric_scores: Optional[Dict[str, float]] = None
    feedback: Optional[str] = None

    @field_validator('submission_date')
    @classmethod
    def submission_date_without_timezone(cls, v):
        return naive_utc(v)


class RecordedGrade(BaseModel):
    """A stored grade entry and the cumulative grade it led to (None when no term covers the assessment)."""
    submission_id: int
    term_id: Optional[int] = None
    cumulative: Optional[CumulativeGrade] = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = []
