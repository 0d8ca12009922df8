from fastapi import APIRouter, Depends, status, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gradebook.database import get_db
from gradebook.schemas.settings import (
    AssessmentSystemSchema, AssessmentSettingsUpdate,
    TermStructureSchema, TermStructureCreate, TermSettingsOverride
)
from gradebook.services.settings_resolver import SettingsResolver
from gradebook.services.terms import TermManagementService

router = APIRouter()

# Effective settings endpoints
@router.get("/class-groups/{class_group_id}/assessment-system", response_model=AssessmentSystemSchema)
async def get_class_group_assessment_system(
    class_group_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db)
):
    """
    Get the assessment system a class group grades with: the program default
    with the class group's customization applied.
    """
    return await SettingsResolver(db).resolve_assessment_system(class_group_id)

@router.get("/class-groups/{class_group_id}/term-structure", response_model=TermStructureSchema)
async def get_class_group_term_structure(
    class_group_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db)
):
    """
    Get the term structure of a class group with any customized term dates and periods applied.
    """
    return await TermManagementService(db).get_class_group_terms(class_group_id)

# Settings authoring endpoints
@router.put("/class-groups/{class_group_id}/assessment-settings", response_model=AssessmentSystemSchema)
async def update_class_group_assessment_settings(
    settings_data: AssessmentSettingsUpdate,
    class_group_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db)
):
    """
    Customize a class group's assessment system. An empty payload resets it to the program default.
    """
    service = TermManagementService(db)
    return await service.update_class_group_assessment_settings(class_group_id, settings_data.custom_settings)

@router.put("/class-groups/{class_group_id}/term-settings", response_model=TermStructureSchema)
async def update_class_group_term_settings(
    settings_data: TermSettingsOverride,
    class_group_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db)
):
    """
    Customize a class group's term dates and assessment periods. An empty term list resets them.
    """
    return await TermManagementService(db).update_class_group_term_settings(class_group_id, settings_data)

@router.post("/programs/{program_id}/term-structures", response_model=TermStructureSchema, status_code=status.HTTP_201_CREATED)
async def create_program_term_structure(
    structure_data: TermStructureCreate,
    program_id: int = Path(..., gt=0),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a term structure with its terms and assessment periods for a program.
    """
    return await TermManagementService(db).create_program_terms(program_id, structure_data)

@router.put("/programs/{program_id}/term-structure", response_model=TermStructureSchema)
async def update_program_term_structure(
    structure_data: TermStructureCreate,
    program_id: int = Path(..., gt=0),
    propagate: bool = Query(False),
    db: AsyncSession = Depends(get_db)
):
    """
    Replace the terms and assessment periods of a program's term structure. With
    ``propagate``, class groups that have not customized their terms are moved onto it.
    """
    return await TermManagementService(db).update_program_term_structure(
        program_id, structure_data, propagate=propagate
    )
