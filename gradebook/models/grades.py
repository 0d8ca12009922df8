from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Float, Boolean, JSON, Text, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from gradebook.database import Base

# Assessment (gradable activity) model
class Assessment(Base):
    __tablename__ = "assessments"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(Integer, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(200), nullable=False)
    category = Column(String(50), default="ASSIGNMENT")
    # Falls back to the effective assessment system when unset
    scoring_type = Column(String(20))
    scoring_config = Column(JSON)
    total_marks = Column(Float)
    is_required = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relationships
    subject = relationship("Subject", back_populates="assessments")
    submissions = relationship("Submission", back_populates="assessment")

# Student submission model
class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, index=True)
    assessment_id = Column(Integer, ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Integer, nullable=False, index=True)
    obtained_marks = Column(Float)
    total_marks = Column(Float)
    rubric_scores = Column(JSON)
    feedback = Column(Text)
    graded_at = Column(DateTime)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("obtained_marks IS NULL OR obtained_marks >= 0", name="check_obtained_marks_positive"),
    )

    # Relationships
    assessment = relationship("Assessment", back_populates="submissions")

# Grade Book model, one per class
class GradeBook(Base):
    __tablename__ = "gradebooks"

    id = Column(Integer, primary_key=True, index=True)
    class_id = Column(Integer, ForeignKey("classes.id", ondelete="CASCADE"), nullable=False, unique=True)
    assessment_system_id = Column(Integer, ForeignKey("assessment_systems.id"), nullable=False)
    term_structure_id = Column(Integer, ForeignKey("term_structures.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    class_ = relationship("Class", back_populates="gradebook")
    subject_records = relationship("SubjectGradeRecord", back_populates="gradebook")

# Per-subject grade record. student_id is NULL on the class template record.
class SubjectGradeRecord(Base):
    __tablename__ = "subject_grade_records"

    id = Column(Integer, primary_key=True, index=True)
    gradebook_id = Column(Integer, ForeignKey("gradebooks.id", ondelete="CASCADE"), nullable=False)
    subject_id = Column(Integer, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Integer, index=True)
    term_grades = Column(JSON, nullable=False, default=dict)
    assessment_period_grades = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("gradebook_id", "subject_id", "student_id", name="uq_subject_grade_record"),
    )

    # Relationships
    gradebook = relationship("GradeBook", back_populates="subject_records")

# Term result model, overwritten on every cumulative recompute
class TermResult(Base):
    __tablename__ = "term_results"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, nullable=False, index=True)
    term_id = Column(Integer, ForeignKey("terms.id", ondelete="CASCADE"), nullable=False)
    gpa = Column(Float, nullable=False, default=0)
    total_credits = Column(Float, nullable=False, default=0)
    earned_credits = Column(Float, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("student_id", "term_id", name="uq_term_result_student_term"),
    )

# Grade History (append-only audit) model
class GradeHistory(Base):
    __tablename__ = "grade_history"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, nullable=False, index=True)
    subject_id = Column(Integer, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False)
    grade_value = Column(Float, nullable=False)
    modified_by = Column(String(50), nullable=False)
    reason = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
