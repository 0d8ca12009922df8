from datetime import datetime

import pytest

from gradebook.exceptions import NotFound, InvalidState
from gradebook.models.classes import ClassGroupAssessmentSettings, ClassGroupTermSettings
from gradebook.models.programs import TermStructure
from gradebook.services.settings_resolver import SettingsResolver
from tests.factories import seed_program

pytestmark = pytest.mark.anyio


BASE_CONFIG = {
    "max_marks": 100,
    "grading_scale": [{"grade": "A", "min_percentage": 70, "max_percentage": 100}],
    "weightage": {"EXAM": 2},
}


async def test_program_default_without_override(db):
    seeded = await seed_program(db, config=BASE_CONFIG, passing_threshold=45)

    system = await SettingsResolver(db).resolve_assessment_system(seeded.class_group_id)

    assert system.id == seeded.system_id
    assert system.passing_threshold == 45
    assert system.config.weightage == {"EXAM": 2}


async def test_customized_override_wins_field_by_field(db):
    seeded = await seed_program(db, config=BASE_CONFIG, passing_threshold=45)
    db.add(ClassGroupAssessmentSettings(
        class_group_id=seeded.class_group_id,
        assessment_system_id=seeded.system_id,
        is_customized=True,
        custom_settings={"passing_threshold": 60, "config": {"weightage": {"QUIZ": 1}}},
    ))
    await db.commit()

    system = await SettingsResolver(db).resolve_assessment_system(seeded.class_group_id)

    assert system.passing_threshold == 60
    # Overridden keys are replaced wholesale, the rest come from the program
    assert system.config.weightage == {"QUIZ": 1}
    assert system.config.max_marks == 100
    assert system.config.grading_scale[0].grade == "A"


async def test_uncustomized_override_is_ignored(db):
    seeded = await seed_program(db, passing_threshold=45)
    db.add(ClassGroupAssessmentSettings(
        class_group_id=seeded.class_group_id,
        assessment_system_id=seeded.system_id,
        is_customized=False,
        custom_settings={"passing_threshold": 90},
    ))
    await db.commit()

    system = await SettingsResolver(db).resolve_assessment_system(seeded.class_group_id)

    assert system.passing_threshold == 45


async def test_customized_but_empty_assessment_override_is_invalid(db):
    seeded = await seed_program(db)
    db.add(ClassGroupAssessmentSettings(
        class_group_id=seeded.class_group_id,
        assessment_system_id=seeded.system_id,
        is_customized=True,
        custom_settings=None,
    ))
    await db.commit()

    with pytest.raises(InvalidState):
        await SettingsResolver(db).resolve_assessment_system(seeded.class_group_id)


async def test_unknown_class_group_is_not_found(db):
    with pytest.raises(NotFound):
        await SettingsResolver(db).resolve_assessment_system(999)
    with pytest.raises(NotFound):
        await SettingsResolver(db).resolve_term_structure(999)


async def test_term_structure_loaded_in_order(db):
    seeded = await seed_program(db, period_weights=(1.0, 2.0))

    structure = await SettingsResolver(db).resolve_term_structure(seeded.class_group_id)

    assert structure.id == seeded.term_structure_id
    assert [t.id for t in structure.terms] == [seeded.term_id]
    assert [p.id for p in structure.terms[0].assessment_periods] == seeded.period_ids
    assert [p.weight for p in structure.all_periods()] == [1.0, 2.0]


async def test_term_override_replaces_dates_and_periods(db):
    seeded = await seed_program(db, period_weights=(1.0, 2.0))
    db.add(ClassGroupTermSettings(
        class_group_id=seeded.class_group_id,
        term_structure_id=seeded.term_structure_id,
        is_customized=True,
        custom_settings={"terms": [{
            "term_id": seeded.term_id,
            "end_date": "2024-05-31T00:00:00",
            "assessment_periods": [{
                "id": seeded.period_ids[0],
                "name": "Whole term",
                "start_date": "2024-01-01T00:00:00",
                "end_date": "2024-05-31T00:00:00",
                "weight": 1.0,
            }],
        }]},
    ))
    await db.commit()

    structure = await SettingsResolver(db).resolve_term_structure(seeded.class_group_id)
    term = structure.terms[0]

    assert term.start_date == datetime(2024, 1, 1)
    assert term.end_date == datetime(2024, 5, 31)
    assert [p.name for p in term.assessment_periods] == ["Whole term"]


async def test_term_override_with_inverted_dates_is_invalid(db):
    seeded = await seed_program(db)
    db.add(ClassGroupTermSettings(
        class_group_id=seeded.class_group_id,
        term_structure_id=seeded.term_structure_id,
        is_customized=True,
        custom_settings={"terms": [{"term_id": seeded.term_id, "end_date": "2023-12-01T00:00:00"}]},
    ))
    await db.commit()

    with pytest.raises(InvalidState):
        await SettingsResolver(db).resolve_term_structure(seeded.class_group_id)


async def test_customized_but_empty_term_override_is_invalid(db):
    seeded = await seed_program(db)
    db.add(ClassGroupTermSettings(
        class_group_id=seeded.class_group_id,
        term_structure_id=seeded.term_structure_id,
        is_customized=True,
        custom_settings={},
    ))
    await db.commit()

    with pytest.raises(InvalidState):
        await SettingsResolver(db).resolve_term_structure(seeded.class_group_id)


async def test_program_without_active_structure_is_not_found(db):
    seeded = await seed_program(db)
    structure = await db.get(TermStructure, seeded.term_structure_id)
    structure.status = "ARCHIVED"
    await db.commit()

    with pytest.raises(NotFound):
        await SettingsResolver(db).resolve_term_structure(seeded.class_group_id)


async def test_malformed_assessment_override_is_invalid(db):
    seeded = await seed_program(db)
    db.add(ClassGroupAssessmentSettings(
        class_group_id=seeded.class_group_id,
        assessment_system_id=seeded.system_id,
        is_customized=True,
        custom_settings={"type": "NOPE"},
    ))
    await db.commit()

    with pytest.raises(InvalidState):
        await SettingsResolver(db).resolve_assessment_system(seeded.class_group_id)


async def test_malformed_term_override_is_invalid(db):
    seeded = await seed_program(db)
    db.add(ClassGroupTermSettings(
        class_group_id=seeded.class_group_id,
        term_structure_id=seeded.term_structure_id,
        is_customized=True,
        custom_settings={"terms": [{"term_id": "first", "end_date": "soon"}]},
    ))
    await db.commit()

    with pytest.raises(InvalidState):
        await SettingsResolver(db).resolve_term_structure(seeded.class_group_id)
