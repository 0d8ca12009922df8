import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gradebook.database import run_in_transaction
from gradebook.exceptions import NotFound
from gradebook.models.classes import Class, ClassGroup, ClassGroupTermSettings
from gradebook.schemas.settings import ClassCreate
from gradebook.services.cache import GradeCache
from gradebook.services.calendar import CalendarService
from gradebook.services.gradebook import GradeBookService

logger = logging.getLogger(__name__)


class ClassService:
    def __init__(self, db: AsyncSession, cache: Optional[GradeCache] = None):
        self.db = db
        self.gradebook_service = GradeBookService(db, cache)
        self.calendar_service = CalendarService(db)

    async def _ensure_term_settings(self, class_group_id: int, term_structure_id: int) -> ClassGroupTermSettings:
        result = await self.db.execute(
            select(ClassGroupTermSettings).where(
                ClassGroupTermSettings.class_group_id == class_group_id,
                ClassGroupTermSettings.term_structure_id == term_structure_id,
            )
        )
        term_settings = result.scalars().first()
        if term_settings is None:
            term_settings = ClassGroupTermSettings(
                class_group_id=class_group_id,
                term_structure_id=term_structure_id,
                is_customized=False,
            )
            self.db.add(term_settings)
            await self.db.flush()
        return term_settings

    async def create_class_with_inheritance(self, class_data: ClassCreate) -> Class:
        """
        Create a class together with everything it inherits.

        The class gets the class group's resolved term structure and calendar,
        and a gradebook seeded from the resolved assessment system with one
        template record per subject. Either all of it is committed or none of it.
        """
        async def _create(db: AsyncSession) -> Class:
            result = await db.execute(select(ClassGroup).where(ClassGroup.id == class_data.class_group_id))
            class_group = result.scalars().first()
            if not class_group:
                raise NotFound("Class group", class_data.class_group_id)

            resolver = self.gradebook_service.resolver
            term_structure = await resolver.resolve_term_structure(class_group.id)
            await resolver.resolve_assessment_system(class_group.id)

            new_class = Class(
                name=class_data.name,
                class_group_id=class_group.id,
                capacity=class_data.capacity,
                term_structure_id=term_structure.id,
                status="ACTIVE",
            )
            db.add(new_class)
            await db.flush()

            await self._ensure_term_settings(class_group.id, term_structure.id)
            await self.calendar_service.inherit_class_group_calendar(class_group.id, new_class.id)
            await self.gradebook_service.create_gradebook(new_class)

            return new_class

        new_class = await run_in_transaction(self.db, _create)
        logger.info(f"Created class {new_class.id} ({new_class.name}) in class group {new_class.class_group_id}")
        return new_class
