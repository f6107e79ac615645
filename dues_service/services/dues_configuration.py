from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..constants import DEFAULT_DELINQUENCY_POLICY, DEFAULT_DUES_CONCEPTS
from ..core.errors import ConflictError, NotFoundError
from ..models.models import DelinquencyPolicy, DuesConcept, DuesConfigurationVersion
from .audit import audit_log
from .delinquency import PenaltyPolicy

logger = logging.getLogger(__name__)

DEFAULT_POLICY_NAME = "default"
POLICY_FIELDS = (
    "due_day_of_month",
    "grace_period_days",
    "delinquency_threshold_days",
    "penalty_schedule_type",
    "penalty_steps",
    "linear_rate_percent",
    "linear_interval_days",
    "max_penalty_percent",
    "penalty_requires_delinquency",
)


def _ensure_decimal(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def list_concepts(session: Session, include_inactive: bool = True) -> List[DuesConcept]:
    query = session.query(DuesConcept)
    if not include_inactive:
        query = query.filter(DuesConcept.active.is_(True))
    return query.order_by(DuesConcept.sort_order.asc(), DuesConcept.id.asc()).all()


def _concept_snapshot(concept: DuesConcept) -> Dict[str, Any]:
    return {
        "key": concept.key,
        "label": concept.label,
        "description": concept.description,
        "amount": str(_ensure_decimal(concept.amount).quantize(Decimal("0.01"))),
        "active": bool(concept.active),
        "sort_order": concept.sort_order,
    }


def active_total(concepts: List[Mapping[str, Any]]) -> Decimal:
    total = Decimal("0")
    for concept in concepts:
        if concept.get("active", True):
            total += _ensure_decimal(concept["amount"])
    return total.quantize(Decimal("0.01"))


def snapshot_configuration(
    session: Session,
    actor_user_id: Optional[str] = None,
    note: Optional[str] = None,
) -> DuesConfigurationVersion:
    concepts = [_concept_snapshot(concept) for concept in list_concepts(session)]
    latest_version = session.query(func.max(DuesConfigurationVersion.version)).scalar() or 0
    version = DuesConfigurationVersion(
        version=latest_version + 1,
        concepts=concepts,
        total_amount=active_total(concepts),
        created_by_user_id=actor_user_id,
        note=note,
    )
    session.add(version)
    session.flush()
    logger.info("Dues configuration version %s recorded (total %s)", version.version, version.total_amount)
    return version


def get_current_version(session: Session) -> DuesConfigurationVersion:
    version = (
        session.query(DuesConfigurationVersion)
        .order_by(DuesConfigurationVersion.version.desc())
        .first()
    )
    if version:
        return version
    if not session.query(DuesConcept).count():
        raise NotFoundError("Dues configuration has not been set up.")
    return snapshot_configuration(session, note="Initial snapshot")


def active_concepts_for_version(version: DuesConfigurationVersion) -> List[Dict[str, Any]]:
    concepts = [concept for concept in (version.concepts or []) if concept.get("active", True)]
    return sorted(concepts, key=lambda concept: (concept.get("sort_order") or 0, concept["key"]))


def update_concept_amounts(
    session: Session,
    amounts: Mapping[str, Decimal],
    actor_user_id: Optional[str],
) -> DuesConfigurationVersion:
    concepts_by_key = {concept.key: concept for concept in list_concepts(session)}
    unknown = sorted(set(amounts) - set(concepts_by_key))
    if unknown:
        raise NotFoundError(f"Unknown dues concepts: {', '.join(unknown)}", context={"keys": unknown})

    before = {key: str(concept.amount) for key, concept in concepts_by_key.items()}
    for key, amount in amounts.items():
        concepts_by_key[key].amount = _ensure_decimal(amount)
        session.add(concepts_by_key[key])
    session.flush()
    version = snapshot_configuration(session, actor_user_id, note="Concept amounts updated")
    audit_log(
        db_session=session,
        actor_user_id=actor_user_id,
        action="dues.configuration.update",
        target_entity_type="DuesConfigurationVersion",
        target_entity_id=str(version.version),
        before=before,
        after={key: str(amount) for key, amount in amounts.items()},
    )
    return version


def add_concept(
    session: Session,
    *,
    key: str,
    label: str,
    amount: Decimal,
    description: Optional[str] = None,
    active: bool = True,
    actor_user_id: Optional[str] = None,
) -> DuesConfigurationVersion:
    concept = session.query(DuesConcept).filter(DuesConcept.key == key).first()
    if concept and concept.active:
        raise ConflictError(f"A dues concept with key '{key}' already exists.")
    if not concept:
        next_order = (session.query(func.max(DuesConcept.sort_order)).scalar() or 0) + 1
        concept = DuesConcept(key=key, sort_order=next_order)
    concept.label = label
    concept.description = description
    concept.amount = _ensure_decimal(amount)
    concept.active = active
    session.add(concept)
    session.flush()
    version = snapshot_configuration(session, actor_user_id, note=f"Concept '{key}' added")
    audit_log(
        db_session=session,
        actor_user_id=actor_user_id,
        action="dues.configuration.concept.add",
        target_entity_type="DuesConcept",
        target_entity_id=key,
        after=_concept_snapshot(concept),
    )
    return version


def deactivate_concept(session: Session, key: str, actor_user_id: Optional[str]) -> DuesConfigurationVersion:
    concept = session.query(DuesConcept).filter(DuesConcept.key == key).first()
    if not concept or not concept.active:
        raise NotFoundError(f"Dues concept '{key}' not found.")
    concept.active = False
    session.add(concept)
    session.flush()
    version = snapshot_configuration(session, actor_user_id, note=f"Concept '{key}' removed")
    audit_log(
        db_session=session,
        actor_user_id=actor_user_id,
        action="dues.configuration.concept.remove",
        target_entity_type="DuesConcept",
        target_entity_id=key,
        before=_concept_snapshot(concept),
    )
    return version


def list_versions(session: Session, limit: int = 50) -> List[DuesConfigurationVersion]:
    return (
        session.query(DuesConfigurationVersion)
        .order_by(DuesConfigurationVersion.version.desc())
        .limit(limit)
        .all()
    )


def ensure_dues_configuration(session: Session) -> None:
    if session.query(DuesConcept).count():
        if not session.query(DuesConfigurationVersion).count():
            snapshot_configuration(session, note="Initial snapshot")
            session.commit()
        return
    for entry in DEFAULT_DUES_CONCEPTS:
        session.add(
            DuesConcept(
                key=entry["key"],
                label=entry["label"],
                description=entry.get("description"),
                amount=_ensure_decimal(entry["amount"]),
                active=True,
                sort_order=entry["sort_order"],
            )
        )
    session.flush()
    snapshot_configuration(session, note="Default configuration")
    session.commit()


def get_or_create_delinquency_policy(session: Session) -> DelinquencyPolicy:
    policy = session.query(DelinquencyPolicy).filter(DelinquencyPolicy.name == DEFAULT_POLICY_NAME).first()
    if policy:
        return policy

    defaults = DEFAULT_DELINQUENCY_POLICY
    policy = DelinquencyPolicy(name=DEFAULT_POLICY_NAME, **{field: defaults[field] for field in POLICY_FIELDS})
    session.add(policy)
    session.flush()
    return policy


def load_penalty_policy(session: Session) -> PenaltyPolicy:
    return PenaltyPolicy.from_model(get_or_create_delinquency_policy(session))


def update_delinquency_policy(
    session: Session,
    changes: Mapping[str, Any],
    actor_user_id: Optional[str],
) -> DelinquencyPolicy:
    policy = get_or_create_delinquency_policy(session)
    before = {field: getattr(policy, field) for field in POLICY_FIELDS}
    for field, value in changes.items():
        if field not in POLICY_FIELDS:
            continue
        setattr(policy, field, value)
    session.add(policy)
    session.flush()
    audit_log(
        db_session=session,
        actor_user_id=actor_user_id,
        action="dues.policy.update",
        target_entity_type="DelinquencyPolicy",
        target_entity_id=policy.name,
        before=before,
        after={field: getattr(policy, field) for field in POLICY_FIELDS},
    )
    return policy
