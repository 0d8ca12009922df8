"""
Submission scoring and grade-point mapping.

Scoring turns one graded submission into a 0-100 percentage; mapping that
percentage to grade points is a separate step (``calculate_gpa``). Both are
pure functions over already-fetched records.
"""
import logging
from typing import Any, Dict, Optional

from gradebook.config import settings
from gradebook.schemas.settings import AssessmentSystemConfig, AssessmentSystemSchema, AssessmentSystemType

logger = logging.getLogger(__name__)

# Used when the assessment system has no grade-point table of its own
DEFAULT_GRADE_POINTS = [
    (90, 4.0),
    (80, 3.5),
    (70, 3.0),
    (60, 2.5),
    (50, 2.0),
    (0, 0.0),
]


def _fixed_marks_percentage(obtained: Optional[float], total: Optional[float]) -> float:
    if obtained is None:
        return 0.0
    return float(obtained) / max(1.0, float(total or 0)) * 100


def _rubric_percentage(rubric_scores: Optional[Dict[str, Any]], config: AssessmentSystemConfig) -> float:
    if not rubric_scores or not config.criteria:
        return 0.0

    awarded = 0.0
    possible = 0.0
    for criterion in config.criteria:
        if criterion.levels:
            possible += max(level.points for level in criterion.levels)
        points = rubric_scores.get(criterion.id)
        if points is not None:
            awarded += float(points)

    return awarded / possible * 100 if possible > 0 else 0.0


def score_submission(submission, scoring_type, config: Optional[AssessmentSystemConfig], total_marks: Optional[float] = None) -> float:
    """
    Convert one graded submission into a percentage.

    Args:
        submission: Submission row (obtained_marks, total_marks, rubric_scores)
        scoring_type: AssessmentSystemType (or its string value) of the assessment
        config: Scoring payload of the assessment or of the effective assessment system
        total_marks: Assessment-level total used when the submission carries none

    Returns:
        Percentage in 0..100 for well-formed input. Absent or malformed input
        scores 0 instead of raising, so one bad submission cannot abort the
        aggregation of a whole period.
    """
    if submission is None:
        return 0.0

    config = config or AssessmentSystemConfig()
    try:
        scoring_type = AssessmentSystemType(scoring_type) if scoring_type else AssessmentSystemType.MARKING_SCHEME
    except ValueError:
        logger.warning(f"Unknown scoring type {scoring_type!r}, scoring as fixed marks")
        scoring_type = AssessmentSystemType.MARKING_SCHEME

    try:
        if scoring_type == AssessmentSystemType.RUBRIC:
            return _rubric_percentage(submission.rubric_scores, config)

        total = submission.total_marks or total_marks or config.max_marks
        return _fixed_marks_percentage(submission.obtained_marks, total)
    except (TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Could not score submission {getattr(submission, 'id', None)}: {str(e)}")
        return 0.0


def calculate_gpa(percentage: float, system: Optional[AssessmentSystemSchema]) -> float:
    """Map a percentage to grade points using the system's table (or the default 4-point table)."""
    bands = system.config.grade_points if system else []
    if bands:
        for band in sorted(bands, key=lambda b: b.min_percentage, reverse=True):
            if percentage >= band.min_percentage:
                return band.points
        return 0.0

    for minimum, points in DEFAULT_GRADE_POINTS:
        if percentage >= minimum:
            return points
    return 0.0


def assessment_weight(category: Optional[str], system: Optional[AssessmentSystemSchema]) -> float:
    """Weight of an assessment category inside a period; 1 when not configured."""
    if not system or not category:
        return 1.0
    weight = system.config.weightage.get(category)
    if weight is None:
        return 1.0
    return max(0.0, float(weight))


def passing_threshold(system: Optional[AssessmentSystemSchema]) -> float:
    if system is not None and system.passing_threshold is not None:
        return system.passing_threshold
    return settings.DEFAULT_PASSING_THRESHOLD


def letter_grade(percentage: float, system: Optional[AssessmentSystemSchema]) -> Optional[str]:
    if not system:
        return None
    for band in sorted(system.config.grading_scale, key=lambda b: b.min_percentage, reverse=True):
        if percentage >= band.min_percentage:
            return band.grade
    return None
