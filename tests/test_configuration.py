from decimal import Decimal

import pytest

from dues_service.core.errors import ConflictError, NotFoundError
from dues_service.models.models import AuditLog, DuesConfigurationVersion
from dues_service.services import dues_configuration


def test_default_configuration_is_seeded(db_session):
    version = dues_configuration.get_current_version(db_session)

    assert version.version == 1
    assert version.total_amount == Decimal("100.00")
    assert len(dues_configuration.active_concepts_for_version(version)) == 4


def test_seeding_twice_does_not_duplicate(db_session):
    dues_configuration.ensure_dues_configuration(db_session)

    assert db_session.query(DuesConfigurationVersion).count() == 1
    assert len(dues_configuration.list_concepts(db_session)) == 4


def test_updating_amounts_records_new_version(db_session):
    version = dues_configuration.update_concept_amounts(
        db_session, {"mantenimiento": Decimal("35.50")}, actor_user_id="admin-1"
    )

    assert version.version == 2
    assert version.total_amount == Decimal("105.50")
    assert dues_configuration.get_current_version(db_session).id == version.id
    audit = db_session.query(AuditLog).filter(AuditLog.action == "dues.configuration.update").one()
    assert audit.actor_user_id == "admin-1"


def test_updating_unknown_concept_fails(db_session):
    with pytest.raises(NotFoundError):
        dues_configuration.update_concept_amounts(db_session, {"piscina": Decimal("5")}, actor_user_id="admin-1")


def test_add_and_remove_concept(db_session):
    added = dues_configuration.add_concept(
        db_session, key="piscina", label="Pool", amount=Decimal("12.00"), actor_user_id="admin-1"
    )
    assert added.total_amount == Decimal("112.00")

    with pytest.raises(ConflictError):
        dues_configuration.add_concept(db_session, key="piscina", label="Pool", amount=Decimal("1.00"))

    removed = dues_configuration.deactivate_concept(db_session, "piscina", actor_user_id="admin-1")
    assert removed.total_amount == Decimal("100.00")
    assert all(concept["key"] != "piscina" for concept in dues_configuration.active_concepts_for_version(removed))

    with pytest.raises(NotFoundError):
        dues_configuration.deactivate_concept(db_session, "piscina", actor_user_id="admin-1")

    readded = dues_configuration.add_concept(
        db_session, key="piscina", label="Pool", amount=Decimal("8.00"), actor_user_id="admin-1"
    )
    assert readded.total_amount == Decimal("108.00")


def test_versions_are_listed_newest_first(db_session):
    dues_configuration.update_concept_amounts(db_session, {"limpieza": Decimal("11")}, actor_user_id="admin-1")
    dues_configuration.update_concept_amounts(db_session, {"limpieza": Decimal("12")}, actor_user_id="admin-1")

    versions = dues_configuration.list_versions(db_session)

    assert [version.version for version in versions] == [3, 2, 1]


def test_policy_defaults_and_update(db_session):
    policy = dues_configuration.load_penalty_policy(db_session)
    assert policy.due_day_of_month == 10
    assert policy.grace_period_days == 5
    assert policy.delinquency_threshold_days == 30

    dues_configuration.update_delinquency_policy(
        db_session,
        {"penalty_schedule_type": "stepped", "grace_period_days": 3, "unknown": "ignored"},
        actor_user_id="admin-1",
    )
    updated = dues_configuration.load_penalty_policy(db_session)

    assert updated.schedule_type == "stepped"
    assert updated.grace_period_days == 3
    assert [step.from_day for step in updated.steps] == [1, 11, 21, 31]
