from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Float, JSON, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from gradebook.database import Base

# Assessment System model (fixed marks, rubric or CGPA table)
class AssessmentSystem(Base):
    __tablename__ = "assessment_systems"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False, default="MARKING_SCHEME")
    passing_threshold = Column(Float)
    # max_marks, passing_marks, grading_scale, criteria, grade_points, weightage
    config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    programs = relationship("Program", back_populates="assessment_system")

# Program model, root of the settings inheritance chain
class Program(Base):
    __tablename__ = "programs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    code = Column(String(50), unique=True)
    assessment_system_id = Column(Integer, ForeignKey("assessment_systems.id"))
    status = Column(String(20), default="ACTIVE")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    assessment_system = relationship("AssessmentSystem", back_populates="programs")
    term_structures = relationship("TermStructure", back_populates="program", order_by="TermStructure.order")
    class_groups = relationship("ClassGroup", back_populates="program")

# Term Structure model
class TermStructure(Base):
    __tablename__ = "term_structures"

    id = Column(Integer, primary_key=True, index=True)
    program_id = Column(Integer, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    order = Column(Integer, default=1, nullable=False)
    status = Column(String(20), default="ACTIVE")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    program = relationship("Program", back_populates="term_structures")
    terms = relationship("Term", back_populates="term_structure", order_by="Term.order")

# Term model
class Term(Base):
    __tablename__ = "terms"

    id = Column(Integer, primary_key=True, index=True)
    term_structure_id = Column(Integer, ForeignKey("term_structures.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(50), nullable=False)
    order = Column(Integer, default=1, nullable=False)
    start_date = Column(DateTime)
    end_date = Column(DateTime)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    term_structure = relationship("TermStructure", back_populates="terms")
    assessment_periods = relationship("AssessmentPeriod", back_populates="term", order_by="AssessmentPeriod.order")

# Assessment Period model
class AssessmentPeriod(Base):
    __tablename__ = "assessment_periods"

    id = Column(Integer, primary_key=True, index=True)
    term_id = Column(Integer, ForeignKey("terms.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(50), nullable=False)
    order = Column(Integer, default=1, nullable=False)
    start_date = Column(DateTime)
    end_date = Column(DateTime)
    weight = Column(Float, default=1.0, nullable=False)

    __table_args__ = (
        CheckConstraint("weight >= 0", name="check_period_weight_positive"),
    )

    # Relationships
    term = relationship("Term", back_populates="assessment_periods")
