# Import all models to ensure they're registered with SQLAlchemy
from gradebook.database import Base
from gradebook.models.programs import AssessmentSystem, Program, TermStructure, Term, AssessmentPeriod
from gradebook.models.classes import ClassGroup, Class, Subject, ClassGroupAssessmentSettings, ClassGroupTermSettings
from gradebook.models.grades import Assessment, Submission, GradeBook, SubjectGradeRecord, TermResult, GradeHistory
from gradebook.models.calendar import CalendarEvent
