import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gradebook.database import run_in_transaction
from gradebook.exceptions import NotFound, InvalidState
from gradebook.models.programs import Program, TermStructure, Term, AssessmentPeriod
from gradebook.models.classes import ClassGroup, ClassGroupAssessmentSettings, ClassGroupTermSettings
from gradebook.schemas.settings import (
    TermStructureCreate, TermCreate, TermStructureSchema, TermSettingsOverride,
    ResolvedAssessmentSystem, ResolvedTermStructure, AssessmentSystemSchema
)
from gradebook.services.settings_resolver import SettingsResolver

logger = logging.getLogger(__name__)


def _check_dates(data: TermStructureCreate) -> None:
    for term in data.terms:
        if term.start_date >= term.end_date:
            raise InvalidState(f"Term {term.name} starts on or after its end date")
        for period in term.assessment_periods:
            if period.start_date >= period.end_date:
                raise InvalidState(f"Assessment period {period.name} starts on or after its end date")


class TermManagementService:
    """Authoring of program term structures and of class-group setting overrides."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.resolver = SettingsResolver(db)

    async def _add_terms(self, db: AsyncSession, term_structure_id: int, terms: List[TermCreate]) -> None:
        for term_order, term_data in enumerate(terms, start=1):
            term = Term(
                term_structure_id=term_structure_id,
                name=term_data.name,
                order=term_order,
                start_date=term_data.start_date,
                end_date=term_data.end_date,
            )
            db.add(term)
            await db.flush()

            for period_order, period_data in enumerate(term_data.assessment_periods, start=1):
                db.add(AssessmentPeriod(
                    term_id=term.id,
                    name=period_data.name,
                    order=period_order,
                    start_date=period_data.start_date,
                    end_date=period_data.end_date,
                    weight=period_data.weight,
                ))
        await db.flush()

    async def create_program_terms(self, program_id: int, data: TermStructureCreate) -> TermStructureSchema:
        """
        Create a term structure for a program and attach it to every class group of the program.

        The structure, its terms and periods, and the (uncustomized) class-group
        term settings are written in one transaction.
        """
        _check_dates(data)

        async def _create(db: AsyncSession) -> int:
            result = await db.execute(select(Program).where(Program.id == program_id))
            if not result.scalars().first():
                raise NotFound("Program", program_id)

            structure = TermStructure(program_id=program_id, name=data.name, order=data.order, status="ACTIVE")
            db.add(structure)
            await db.flush()

            await self._add_terms(db, structure.id, data.terms)

            groups_result = await db.execute(select(ClassGroup).where(ClassGroup.program_id == program_id))
            class_groups = groups_result.scalars().all()
            for group in class_groups:
                db.add(ClassGroupTermSettings(
                    class_group_id=group.id,
                    term_structure_id=structure.id,
                    is_customized=False,
                ))

            await db.flush()
            logger.info(
                f"Created term structure {structure.id} for program {program_id} "
                f"with {len(data.terms)} term(s), attached to {len(class_groups)} class group(s)"
            )
            return structure.id

        structure_id = await run_in_transaction(self.db, _create)
        return await self.resolver.load_term_structure(structure_id)

    async def _propagate_term_structure(self, db: AsyncSession, program_id: int, term_structure_id: int) -> int:
        """
        Point every active, uncustomized class group of the program at the term structure.

        Class groups with a customized term settings row are left alone.
        Returns the number of class groups updated.
        """
        groups_result = await db.execute(
            select(ClassGroup).where(ClassGroup.program_id == program_id, ClassGroup.status == "ACTIVE")
        )
        class_groups = groups_result.scalars().all()

        structures_result = await db.execute(select(TermStructure.id).where(TermStructure.program_id == program_id))
        program_structure_ids = list(structures_result.scalars().all())

        updated = 0
        for group in class_groups:
            settings_result = await db.execute(
                select(ClassGroupTermSettings).where(
                    ClassGroupTermSettings.class_group_id == group.id,
                    ClassGroupTermSettings.term_structure_id.in_(program_structure_ids),
                )
            )
            term_settings = settings_result.scalars().all()
            if any(ts.is_customized for ts in term_settings):
                continue

            current = None
            for ts in term_settings:
                if ts.term_structure_id == term_structure_id and current is None:
                    current = ts
                else:
                    await db.delete(ts)
            if current is None:
                db.add(ClassGroupTermSettings(
                    class_group_id=group.id,
                    term_structure_id=term_structure_id,
                    is_customized=False,
                ))
            updated += 1

        await db.flush()
        return updated

    async def update_program_term_structure(
        self,
        program_id: int,
        data: TermStructureCreate,
        propagate: bool = False,
    ) -> TermStructureSchema:
        """
        Replace the terms and assessment periods of a program's active term structure.

        Existing terms and periods are deleted and recreated from ``data``; term
        results recorded against the deleted terms go with them. With
        ``propagate`` set, active class groups without customized term settings
        are pointed at the structure. Everything is written in one transaction.
        """
        _check_dates(data)

        async def _update(db: AsyncSession) -> int:
            result = await db.execute(select(Program).where(Program.id == program_id))
            if not result.scalars().first():
                raise NotFound("Program", program_id)

            structure_id = await self.resolver._default_term_structure_id(program_id)
            if structure_id is None:
                raise NotFound("Term structure for program", program_id)

            result = await db.execute(select(TermStructure).where(TermStructure.id == structure_id))
            structure = result.scalars().first()
            structure.name = data.name
            structure.order = data.order

            term_ids = select(Term.id).where(Term.term_structure_id == structure_id)
            await db.execute(
                delete(AssessmentPeriod)
                .where(AssessmentPeriod.term_id.in_(term_ids))
                .execution_options(synchronize_session="fetch")
            )
            await db.execute(
                delete(Term)
                .where(Term.term_structure_id == structure_id)
                .execution_options(synchronize_session="fetch")
            )
            await db.flush()

            await self._add_terms(db, structure_id, data.terms)

            updated = 0
            if propagate:
                updated = await self._propagate_term_structure(db, program_id, structure_id)

            logger.info(
                f"Replaced the terms of term structure {structure_id} for program {program_id} "
                f"with {len(data.terms)} term(s), propagated to {updated} class group(s)"
            )
            return structure_id

        structure_id = await run_in_transaction(self.db, _update)
        return await self.resolver.load_term_structure(structure_id)

    async def get_class_group_terms(self, class_group_id: int) -> TermStructureSchema:
        return await self.resolver.resolve_term_structure(class_group_id)

    async def _get_class_group(self, class_group_id: int) -> ClassGroup:
        result = await self.db.execute(select(ClassGroup).where(ClassGroup.id == class_group_id))
        class_group = result.scalars().first()
        if not class_group:
            raise NotFound("Class group", class_group_id)
        return class_group

    async def update_class_group_term_settings(
        self,
        class_group_id: int,
        custom_settings: Optional[TermSettingsOverride] = None,
    ) -> TermStructureSchema:
        """
        Customize (or, with no terms, reset) a class group's term dates and periods.

        Returns the resolved term structure after the change.
        """
        resolved = await self.resolver.get_term_settings(class_group_id)
        base = resolved.base

        has_override = bool(custom_settings and custom_settings.terms)
        if has_override:
            known_terms = {term.id for term in base.terms}
            for term in custom_settings.terms:
                if term.term_id not in known_terms:
                    raise InvalidState(f"Term {term.term_id} is not part of term structure {base.id}")
            # Raises InvalidState when an override inverts a term's dates
            ResolvedTermStructure(base=base, override=custom_settings).resolve()

        async def _update(db: AsyncSession):
            result = await db.execute(
                select(ClassGroupTermSettings).where(
                    ClassGroupTermSettings.class_group_id == class_group_id,
                    ClassGroupTermSettings.term_structure_id == base.id,
                )
            )
            term_settings = result.scalars().first()
            if term_settings is None:
                term_settings = ClassGroupTermSettings(class_group_id=class_group_id, term_structure_id=base.id)
                db.add(term_settings)

            term_settings.custom_settings = custom_settings.model_dump(mode="json") if has_override else None
            term_settings.is_customized = has_override
            await db.flush()

        await run_in_transaction(self.db, _update)
        logger.info(
            f"{'Customized' if has_override else 'Reset'} term settings of class group {class_group_id} "
            f"on term structure {base.id}"
        )

        return await SettingsResolver(self.db).resolve_term_structure(class_group_id)

    async def update_class_group_assessment_settings(
        self,
        class_group_id: int,
        custom_settings: Optional[Dict[str, Any]] = None,
    ) -> AssessmentSystemSchema:
        """Customize (or, with no payload, reset) a class group's assessment system."""
        class_group = await self._get_class_group(class_group_id)

        result = await self.db.execute(select(Program).where(Program.id == class_group.program_id))
        program = result.scalars().first()
        if not program or program.assessment_system_id is None:
            raise NotFound("Assessment system for program", class_group.program_id)

        if custom_settings:
            resolved = await self.resolver.get_assessment_settings(class_group_id)
            try:
                ResolvedAssessmentSystem(base=resolved.base, override=custom_settings).resolve()
            except ValidationError as e:
                raise InvalidState(f"Invalid assessment settings for class group {class_group_id}: {str(e)}")

        async def _update(db: AsyncSession):
            result = await db.execute(
                select(ClassGroupAssessmentSettings).where(
                    ClassGroupAssessmentSettings.class_group_id == class_group_id
                )
            )
            assessment_settings = result.scalars().first()
            if assessment_settings is None:
                assessment_settings = ClassGroupAssessmentSettings(
                    class_group_id=class_group_id,
                    assessment_system_id=program.assessment_system_id,
                )
                db.add(assessment_settings)

            assessment_settings.custom_settings = custom_settings or None
            assessment_settings.is_customized = bool(custom_settings)
            await db.flush()

        await run_in_transaction(self.db, _update)
        logger.info(
            f"{'Customized' if custom_settings else 'Reset'} assessment settings of class group {class_group_id}"
        )

        return await SettingsResolver(self.db).resolve_assessment_system(class_group_id)
