import logging
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gradebook.models.calendar import CalendarEvent

logger = logging.getLogger(__name__)


class CalendarService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def inherit_class_group_calendar(self, class_group_id: int, class_id: int) -> List[CalendarEvent]:
        """Copy the class group's active events onto a class, linked back to their source."""
        result = await self.db.execute(
            select(CalendarEvent)
            .where(
                CalendarEvent.class_group_id == class_group_id,
                CalendarEvent.status == "ACTIVE",
            )
            .order_by(CalendarEvent.start_date, CalendarEvent.id)
        )
        inherited = []
        for event in result.scalars().all():
            copy = CalendarEvent(
                title=event.title,
                description=event.description,
                start_date=event.start_date,
                end_date=event.end_date,
                class_id=class_id,
                inherited_from_id=event.id,
                status="ACTIVE",
            )
            self.db.add(copy)
            inherited.append(copy)

        await self.db.flush()
        logger.debug(f"Class {class_id} inherited {len(inherited)} calendar event(s) from class group {class_group_id}")
        return inherited
