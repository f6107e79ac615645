from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import Principal, get_current_principal, require_operator
from ..models.models import DelinquencyPolicy, DuesConfigurationVersion
from ..schemas.schemas import (
    ConceptAmountsUpdate,
    ConceptCreate,
    ConfigurationVersionRead,
    DelinquencyPolicyRead,
    DelinquencyPolicyUpdate,
    DuesConceptRead,
    DuesConfigurationRead,
    PenaltyStepPayload,
)
from ..services import dues_configuration

router = APIRouter()


def _serialize_configuration(db: Session, version: DuesConfigurationVersion) -> DuesConfigurationRead:
    concepts = dues_configuration.list_concepts(db, include_inactive=False)
    return DuesConfigurationRead(
        version=version.version,
        total_amount=version.total_amount,
        concepts=[DuesConceptRead.model_validate(concept) for concept in concepts],
        updated_at=version.created_at,
    )


def _serialize_policy(policy: DelinquencyPolicy) -> DelinquencyPolicyRead:
    return DelinquencyPolicyRead(
        name=policy.name,
        due_day_of_month=policy.due_day_of_month,
        grace_period_days=policy.grace_period_days,
        delinquency_threshold_days=policy.delinquency_threshold_days,
        penalty_schedule_type=policy.penalty_schedule_type,
        penalty_steps=[
            PenaltyStepPayload(from_day=step["from_day"], percent=step["percent"])
            for step in sorted(policy.penalty_steps or [], key=lambda step: step["from_day"])
        ],
        linear_rate_percent=policy.linear_rate_percent,
        linear_interval_days=policy.linear_interval_days,
        max_penalty_percent=policy.max_penalty_percent,
        penalty_requires_delinquency=policy.penalty_requires_delinquency,
    )


@router.get("", response_model=DuesConfigurationRead)
def get_configuration(
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> DuesConfigurationRead:
    version = dues_configuration.get_current_version(db)
    db.commit()
    return _serialize_configuration(db, version)


@router.put("", response_model=DuesConfigurationRead)
def update_configuration(
    payload: ConceptAmountsUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_operator),
) -> DuesConfigurationRead:
    version = dues_configuration.update_concept_amounts(db, payload.amounts, principal.user_id)
    return _serialize_configuration(db, version)


@router.post("/concepts", response_model=DuesConfigurationRead, status_code=201)
def add_concept(
    payload: ConceptCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_operator),
) -> DuesConfigurationRead:
    version = dues_configuration.add_concept(
        db,
        key=payload.key,
        label=payload.label,
        amount=payload.amount,
        description=payload.description,
        active=payload.active,
        actor_user_id=principal.user_id,
    )
    return _serialize_configuration(db, version)


@router.delete("/concepts/{key}", response_model=DuesConfigurationRead)
def remove_concept(
    key: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_operator),
) -> DuesConfigurationRead:
    version = dues_configuration.deactivate_concept(db, key, principal.user_id)
    return _serialize_configuration(db, version)


@router.get("/versions", response_model=List[ConfigurationVersionRead])
def list_configuration_versions(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_operator),
) -> List[DuesConfigurationVersion]:
    return dues_configuration.list_versions(db, limit=limit)


@router.get("/policy", response_model=DelinquencyPolicyRead)
def get_delinquency_policy(
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> DelinquencyPolicyRead:
    policy = dues_configuration.get_or_create_delinquency_policy(db)
    db.commit()
    return _serialize_policy(policy)


@router.put("/policy", response_model=DelinquencyPolicyRead)
def update_delinquency_policy(
    payload: DelinquencyPolicyUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_operator),
) -> DelinquencyPolicyRead:
    # null clears the cap; for every other field it means "leave unchanged".
    changes = {
        field: value
        for field, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or field == "max_penalty_percent"
    }
    policy = dues_configuration.update_delinquency_policy(db, changes, principal.user_id)
    return _serialize_policy(policy)
