import logging
from typing import Dict, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gradebook.exceptions import NotFound, InvalidState
from gradebook.models.programs import AssessmentSystem, Program, TermStructure, Term, AssessmentPeriod
from gradebook.models.classes import ClassGroup, ClassGroupAssessmentSettings, ClassGroupTermSettings
from gradebook.schemas.settings import (
    AssessmentSystemSchema, TermStructureSchema, TermSchema, AssessmentPeriodSchema,
    TermSettingsOverride, ResolvedAssessmentSystem, ResolvedTermStructure
)

logger = logging.getLogger(__name__)


class SettingsResolver:
    """
    Resolves the effective assessment system and term structure of a class group.

    The program holds the defaults; a class group may carry a customized
    override for each. Results are memoised per resolver instance, so one
    resolver should not outlive the unit of work it was created for.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._assessment_systems: Dict[int, AssessmentSystemSchema] = {}
        self._term_structures: Dict[int, TermStructureSchema] = {}

    async def _get_class_group_program(self, class_group_id: int):
        result = await self.db.execute(select(ClassGroup).where(ClassGroup.id == class_group_id))
        class_group = result.scalars().first()
        if not class_group:
            raise NotFound("Class group", class_group_id)

        result = await self.db.execute(select(Program).where(Program.id == class_group.program_id))
        program = result.scalars().first()
        if not program:
            raise NotFound("Program", class_group.program_id)

        return class_group, program

    async def get_assessment_settings(self, class_group_id: int) -> ResolvedAssessmentSystem:
        """Return the program default and the class-group override without merging them."""
        class_group, program = await self._get_class_group_program(class_group_id)

        if program.assessment_system_id is None:
            raise NotFound("Assessment system for program", program.id)

        result = await self.db.execute(
            select(AssessmentSystem).where(AssessmentSystem.id == program.assessment_system_id)
        )
        system = result.scalars().first()
        if not system:
            raise NotFound("Assessment system", program.assessment_system_id)

        result = await self.db.execute(
            select(ClassGroupAssessmentSettings).where(
                ClassGroupAssessmentSettings.class_group_id == class_group.id
            )
        )
        custom = result.scalars().first()

        override = None
        if custom and custom.is_customized:
            if not custom.custom_settings:
                raise InvalidState(
                    f"Assessment settings of class group {class_group.id} are customized but empty"
                )
            override = custom.custom_settings

        try:
            base = AssessmentSystemSchema.model_validate(system)
        except ValidationError as e:
            raise InvalidState(f"Assessment system {system.id} has an invalid configuration: {str(e)}")

        return ResolvedAssessmentSystem(base=base, override=override)

    async def resolve_assessment_system(self, class_group_id: int) -> AssessmentSystemSchema:
        if class_group_id in self._assessment_systems:
            return self._assessment_systems[class_group_id]

        layers = await self.get_assessment_settings(class_group_id)
        try:
            resolved = layers.resolve()
        except ValidationError as e:
            raise InvalidState(
                f"Assessment settings of class group {class_group_id} are invalid: {str(e)}"
            )
        self._assessment_systems[class_group_id] = resolved
        return resolved

    async def load_term_structure(self, term_structure_id: int) -> TermStructureSchema:
        """Load a program term structure with its terms and periods, in order."""
        result = await self.db.execute(select(TermStructure).where(TermStructure.id == term_structure_id))
        structure = result.scalars().first()
        if not structure:
            raise NotFound("Term structure", term_structure_id)

        terms_result = await self.db.execute(
            select(Term)
            .where(Term.term_structure_id == structure.id)
            .order_by(Term.order, Term.id)
        )
        terms = terms_result.scalars().all()

        periods_by_term: Dict[int, list] = {term.id: [] for term in terms}
        if terms:
            periods_result = await self.db.execute(
                select(AssessmentPeriod)
                .where(AssessmentPeriod.term_id.in_(list(periods_by_term)))
                .order_by(AssessmentPeriod.order, AssessmentPeriod.id)
            )
            for period in periods_result.scalars().all():
                periods_by_term[period.term_id].append(AssessmentPeriodSchema.model_validate(period))

        return TermStructureSchema(
            id=structure.id,
            program_id=structure.program_id,
            name=structure.name,
            terms=[
                TermSchema(
                    id=term.id,
                    name=term.name,
                    start_date=term.start_date,
                    end_date=term.end_date,
                    assessment_periods=periods_by_term[term.id],
                )
                for term in terms
            ],
        )

    async def _default_term_structure_id(self, program_id: int) -> Optional[int]:
        result = await self.db.execute(
            select(TermStructure.id)
            .where(TermStructure.program_id == program_id, TermStructure.status == "ACTIVE")
            .order_by(TermStructure.order, TermStructure.id)
        )
        return result.scalars().first()

    async def get_term_settings(self, class_group_id: int) -> ResolvedTermStructure:
        """Return the program term structure and the class-group override without merging them."""
        class_group, program = await self._get_class_group_program(class_group_id)

        result = await self.db.execute(
            select(ClassGroupTermSettings)
            .join(TermStructure, TermStructure.id == ClassGroupTermSettings.term_structure_id)
            .where(
                ClassGroupTermSettings.class_group_id == class_group.id,
                TermStructure.program_id == program.id,
                TermStructure.status == "ACTIVE",
            )
            .order_by(TermStructure.order, TermStructure.id)
        )
        term_settings = result.scalars().first()

        if term_settings:
            term_structure_id = term_settings.term_structure_id
        else:
            term_structure_id = await self._default_term_structure_id(program.id)
        if term_structure_id is None:
            raise NotFound("Term structure for program", program.id)

        base = await self.load_term_structure(term_structure_id)

        override = None
        if term_settings and term_settings.is_customized:
            if not term_settings.custom_settings:
                raise InvalidState(
                    f"Term settings of class group {class_group.id} are customized but empty"
                )
            try:
                override = TermSettingsOverride.model_validate(term_settings.custom_settings)
            except ValidationError as e:
                raise InvalidState(
                    f"Term settings of class group {class_group.id} are invalid: {str(e)}"
                )

        return ResolvedTermStructure(base=base, override=override)

    async def resolve_term_structure(self, class_group_id: int) -> TermStructureSchema:
        if class_group_id in self._term_structures:
            return self._term_structures[class_group_id]

        resolved = (await self.get_term_settings(class_group_id)).resolve()
        self._term_structures[class_group_id] = resolved
        logger.debug(f"Resolved term structure {resolved.id} for class group {class_group_id}")
        return resolved
