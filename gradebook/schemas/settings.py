from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator

from gradebook.exceptions import InvalidState


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Date columns are stored without a timezone; aware input is converted to UTC first."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class AssessmentSystemType(str, Enum):
    MARKING_SCHEME = "MARKING_SCHEME"
    RUBRIC = "RUBRIC"
    CGPA = "CGPA"


# Assessment system payload schemas
class GradingScaleBand(BaseModel):
    grade: str
    min_percentage: float = Field(..., ge=0)
    max_percentage: float = Field(..., ge=0)


class GradePointBand(BaseModel):
    min_percentage: float = Field(..., ge=0)
    max_percentage: float = Field(100, ge=0)
    points: float = Field(..., ge=0)


class RubricLevel(BaseModel):
    name: str
    description: Optional[str] = None
    points: float = Field(..., ge=0)


class RubricCriterion(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    levels: List[RubricLevel] = []


class AssessmentSystemConfig(BaseModel):
    max_marks: Optional[float] = Field(None, ge=0)
    passing_marks: Optional[float] = Field(None, ge=0)
    grading_scale: List[GradingScaleBand] = []
    criteria: List[RubricCriterion] = []
    grade_points: List[GradePointBand] = []
    # assessment category -> relative weight inside a period
    weightage: Dict[str, float] = {}

    @field_validator('weightage')
    @classmethod
    def weights_not_negative(cls, v):
        for category, weight in v.items():
            if weight < 0:
                raise ValueError(f'weight for {category} must not be negative')
        return v


class AssessmentSystemSchema(BaseModel):
    id: Optional[int] = None
    name: str
    type: AssessmentSystemType = AssessmentSystemType.MARKING_SCHEME
    passing_threshold: Optional[float] = Field(None, ge=0)
    config: AssessmentSystemConfig = AssessmentSystemConfig()

    class Config:
        from_attributes = True


class AssessmentSettingsUpdate(BaseModel):
    """Class-group customization; omit ``custom_settings`` to fall back to the program default."""
    custom_settings: Optional[Dict[str, Any]] = None


# Term structure schemas
class AssessmentPeriodSchema(BaseModel):
    id: int
    name: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    weight: float = Field(1.0, ge=0)

    @field_validator('start_date', 'end_date')
    @classmethod
    def dates_without_timezone(cls, v):
        return naive_utc(v)

    class Config:
        from_attributes = True


class TermSchema(BaseModel):
    id: int
    name: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    assessment_periods: List[AssessmentPeriodSchema] = []

    @field_validator('start_date', 'end_date')
    @classmethod
    def dates_without_timezone(cls, v):
        return naive_utc(v)

    class Config:
        from_attributes = True


class TermStructureSchema(BaseModel):
    id: int
    program_id: int
    name: str
    terms: List[TermSchema] = []

    class Config:
        from_attributes = True

    def find_term(self, term_id: int) -> Optional[TermSchema]:
        for term in self.terms:
            if term.id == term_id:
                return term
        return None

    def find_period(self, period_id: int) -> Optional[AssessmentPeriodSchema]:
        for term in self.terms:
            for period in term.assessment_periods:
                if period.id == period_id:
                    return period
        return None

    def all_periods(self) -> List[AssessmentPeriodSchema]:
        return [period for term in self.terms for period in term.assessment_periods]

    def find_term_at(self, moment: datetime) -> Optional[TermSchema]:
        """Term owning the period whose range contains ``moment`` (bounds inclusive)."""
        moment = naive_utc(moment)
        for term in self.terms:
            for period in term.assessment_periods:
                if _contains(period.start_date, period.end_date, moment):
                    return term
        return None


def _contains(start_date: Optional[datetime], end_date: Optional[datetime], moment: datetime) -> bool:
    if start_date is not None and moment < start_date:
        return False
    if end_date is not None and moment > end_date:
        return False
    return True


class AssessmentPeriodCreate(BaseModel):
    name: str
    start_date: datetime
    end_date: datetime
    weight: float = Field(1.0, ge=0)

    @field_validator('start_date')
    @classmethod
    def start_date_without_timezone(cls, v):
        return naive_utc(v)

    @field_validator('end_date')
    @classmethod
    def end_date_after_start_date(cls, v, info):
        v = naive_utc(v)
        start_date = info.data.get('start_date')
        if start_date and v <= start_date:
            raise ValueError('end_date must be after start_date')
        return v


class TermCreate(BaseModel):
    name: str
    start_date: datetime
    end_date: datetime
    assessment_periods: List[AssessmentPeriodCreate] = []

    @field_validator('start_date')
    @classmethod
    def start_date_without_timezone(cls, v):
        return naive_utc(v)

    @field_validator('end_date')
    @classmethod
    def end_date_after_start_date(cls, v, info):
        v = naive_utc(v)
        start_date = info.data.get('start_date')
        if start_date and v <= start_date:
            raise ValueError('end_date must be after start_date')
        return v


class TermStructureCreate(BaseModel):
    name: str = "Default Term Structure"
    order: int = 1
    terms: List[TermCreate]


# Class-group term override payload
class TermOverride(BaseModel):
    term_id: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    # Replaces the term's period list wholesale when given
    assessment_periods: Optional[List[AssessmentPeriodSchema]] = None

    @field_validator('start_date', 'end_date')
    @classmethod
    def dates_without_timezone(cls, v):
        return naive_utc(v)


class TermSettingsOverride(BaseModel):
    terms: List[TermOverride] = []


# Two-layer resolved settings
class ResolvedAssessmentSystem(BaseModel):
    """Program default plus an optional class-group override."""
    base: AssessmentSystemSchema
    override: Optional[Dict[str, Any]] = None

    def resolve(self) -> AssessmentSystemSchema:
        if not self.override:
            return self.base

        merged = self.base.model_dump()
        for key, value in self.override.items():
            if key == "config" and isinstance(value, dict):
                # Field-level merge: each config key present in the override
                # replaces the base key wholesale (bands and criteria are never
                # merged element by element).
                merged["config"] = {**merged["config"], **value}
            elif key != "id":
                merged[key] = value
        return AssessmentSystemSchema.model_validate(merged)


class ResolvedTermStructure(BaseModel):
    """Program term structure plus an optional class-group term override."""
    base: TermStructureSchema
    override: Optional[TermSettingsOverride] = None

    def resolve(self) -> TermStructureSchema:
        if not self.override or not self.override.terms:
            return self.base

        overrides = {term.term_id: term for term in self.override.terms}
        terms = []
        for term in self.base.terms:
            custom = overrides.get(term.id)
            if custom is None:
                terms.append(term)
                continue

            update = {}
            if custom.start_date is not None:
                update["start_date"] = custom.start_date
            if custom.end_date is not None:
                update["end_date"] = custom.end_date
            if custom.assessment_periods is not None:
                update["assessment_periods"] = list(custom.assessment_periods)
            merged = term.model_copy(update=update)

            if merged.start_date and merged.end_date and merged.start_date >= merged.end_date:
                raise InvalidState(f"Term {term.id} override starts on or after its end date")
            terms.append(merged)

        return self.base.model_copy(update={"terms": terms})


# Class schemas
class ClassCreate(BaseModel):
    name: str
    class_group_id: int
    capacity: int = Field(0, ge=0)


class ClassInDB(BaseModel):
    id: int
    name: str
    class_group_id: int
    capacity: Optional[int] = None
    term_structure_id: Optional[int] = None
    status: Optional[str] = None

    class Config:
        from_attributes = True
