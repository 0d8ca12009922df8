from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Float, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from gradebook.database import Base

# Class Group model
class ClassGroup(Base):
    __tablename__ = "class_groups"

    id = Column(Integer, primary_key=True, index=True)
    program_id = Column(Integer, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    status = Column(String(20), default="ACTIVE")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    program = relationship("Program", back_populates="class_groups")
    classes = relationship("Class", back_populates="class_group")
    subjects = relationship("Subject", back_populates="class_group")
    assessment_settings = relationship("ClassGroupAssessmentSettings", back_populates="class_group", uselist=False)
    term_settings = relationship("ClassGroupTermSettings", back_populates="class_group")

# Class model
class Class(Base):
    __tablename__ = "classes"

    id = Column(Integer, primary_key=True, index=True)
    class_group_id = Column(Integer, ForeignKey("class_groups.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    capacity = Column(Integer, default=0)
    term_structure_id = Column(Integer, ForeignKey("term_structures.id"))
    status = Column(String(20), default="ACTIVE")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    class_group = relationship("ClassGroup", back_populates="classes")
    gradebook = relationship("GradeBook", back_populates="class_", uselist=False)

# Subject model
class Subject(Base):
    __tablename__ = "subjects"

    id = Column(Integer, primary_key=True, index=True)
    class_group_id = Column(Integer, ForeignKey("class_groups.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    code = Column(String(20))
    credits = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    class_group = relationship("ClassGroup", back_populates="subjects")
    assessments = relationship("Assessment", back_populates="subject")

# Class-group level customization of the program's assessment system
class ClassGroupAssessmentSettings(Base):
    __tablename__ = "class_group_assessment_settings"

    id = Column(Integer, primary_key=True, index=True)
    class_group_id = Column(Integer, ForeignKey("class_groups.id", ondelete="CASCADE"), nullable=False, unique=True)
    assessment_system_id = Column(Integer, ForeignKey("assessment_systems.id"), nullable=False)
    is_customized = Column(Boolean, default=False, nullable=False)
    custom_settings = Column(JSON)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    class_group = relationship("ClassGroup", back_populates="assessment_settings")

# Class-group level customization of a program term structure
class ClassGroupTermSettings(Base):
    __tablename__ = "class_group_term_settings"

    id = Column(Integer, primary_key=True, index=True)
    class_group_id = Column(Integer, ForeignKey("class_groups.id", ondelete="CASCADE"), nullable=False)
    term_structure_id = Column(Integer, ForeignKey("term_structures.id", ondelete="CASCADE"), nullable=False)
    is_customized = Column(Boolean, default=False, nullable=False)
    custom_settings = Column(JSON)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("class_group_id", "term_structure_id", name="uq_class_group_term_structure"),
    )

    # Relationships
    class_group = relationship("ClassGroup", back_populates="term_settings")
