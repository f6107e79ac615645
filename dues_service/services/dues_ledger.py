"""Canonical record of monthly resident dues.

One due exists per resident and billing period. Derived amounts (penalty,
total, delinquent days) are recomputed every time a due is read while it is
unpaid; once paid, the amounts are frozen at what was charged.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from ..core.errors import AlreadyPaidError, InvalidResidentError, NotFoundError
from ..models.models import Due, DueState
from .audit import audit_log
from .delinquency import (
    BillingPeriod,
    DelinquencyAssessment,
    PenaltyPolicy,
    assess_due,
    compute_due_dates,
)
from .dues_configuration import get_current_version, load_penalty_policy
from .identity import Resident

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ZERO = Decimal("0.00")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_decimal(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _validate_resident(resident_id: str, resident_name: str, resident_email: str) -> None:
    problems: List[str] = []
    if not resident_id or not str(resident_id).strip():
        problems.append("resident_id is required")
    if not resident_name or not resident_name.strip():
        problems.append("resident_name is required")
    if not resident_email or not EMAIL_RE.match(resident_email.strip()):
        problems.append("resident_email must be a valid email address")
    if problems:
        raise InvalidResidentError("Invalid resident identity: " + "; ".join(problems), context={"resident_id": resident_id})


def _transition_stamps(due: Due, state: DueState, policy: PenaltyPolicy) -> Dict[str, date]:
    reference = due.grace_date or due.due_date
    rank = DueState.rank(state)
    stamps: Dict[str, date] = {}
    if rank >= DueState.rank(DueState.OVERDUE) and due.overdue_since is None:
        stamps["overdue_since"] = reference + timedelta(days=1)
    if rank >= DueState.rank(DueState.DELINQUENT) and due.delinquent_since is None:
        stamps["delinquent_since"] = reference + timedelta(days=max(1, policy.delinquency_threshold_days))
    return stamps


def _frozen_assessment(due: Due) -> DelinquencyAssessment:
    return DelinquencyAssessment(
        state=DueState.PAID,
        penalty_amount=_ensure_decimal(due.penalty_amount or 0),
        total_amount=_ensure_decimal(due.total_amount),
        delinquent_days=due.delinquent_days or 0,
        percentage=_ensure_decimal(due.penalty_percentage or 0),
    )


def apply_assessment(
    session: Session, due: Due, now: date | datetime, policy: PenaltyPolicy
) -> DelinquencyAssessment:
    """Bring a due's derived fields up to date with the wall clock.

    Paid dues keep the amounts they were settled for. For unpaid dues the
    stored state only ever moves forward along PENDING -> OVERDUE -> DELINQUENT.
    A due first seen past the threshold still gets ``overdue_since`` stamped,
    so the OVERDUE leg is on record even when no read happened during it.

    Changes are written with an UPDATE guarded on the row still being unpaid
    and are not left pending on the instance, so a read that started before a
    concurrent payment cannot write stale amounts over it. Callers commit.
    """
    if due.state == DueState.PAID:
        return _frozen_assessment(due)

    assessment = assess_due(due, now, policy)
    state = due.state or DueState.PENDING
    if DueState.rank(assessment.state) > DueState.rank(state):
        state = assessment.state
    values = {
        "state": state,
        "penalty_amount": assessment.penalty_amount,
        "total_amount": assessment.total_amount,
        "delinquent_days": assessment.delinquent_days,
        "penalty_percentage": float(assessment.percentage),
        **_transition_stamps(due, state, policy),
    }
    changes = {key: value for key, value in values.items() if getattr(due, key) != value}
    if not changes:
        return assessment

    updated = (
        session.query(Due)
        .filter(Due.id == due.id, Due.state != DueState.PAID)
        .update(changes, synchronize_session=False)
    )
    if not updated:
        # Settled by another session after this instance was loaded.
        session.refresh(due)
        return _frozen_assessment(due)
    for key, value in changes.items():
        set_committed_value(due, key, value)
    return assessment


def _find_due(session: Session, resident_id: str, period: BillingPeriod) -> Optional[Due]:
    return (
        session.query(Due)
        .filter(
            Due.resident_id == resident_id,
            Due.period_year == period.year,
            Due.period_month == period.month,
        )
        .first()
    )


def create_due(
    session: Session,
    *,
    resident_id: str,
    resident_name: str,
    resident_email: str,
    period: BillingPeriod,
    now: Optional[datetime] = None,
    actor_user_id: Optional[str] = None,
) -> Tuple[Due, bool]:
    """Return the resident's due for ``period``, creating it when missing.

    The boolean is True only for the caller whose insert actually landed.
    Concurrent callers race on the (resident, period) unique constraint; the
    losers roll back their savepoint and read the winner's row.
    """
    _validate_resident(resident_id, resident_name, resident_email)
    moment = now or _utcnow()
    policy = load_penalty_policy(session)

    existing = _find_due(session, resident_id, period)
    if existing:
        apply_assessment(session, existing, moment, policy)
        session.commit()
        return existing, False

    version = get_current_version(session)
    base_amount = _ensure_decimal(version.total_amount)
    due_date, grace_date = compute_due_dates(period, policy)
    due = Due(
        resident_id=resident_id,
        resident_name=resident_name.strip(),
        resident_email=resident_email.strip().lower(),
        period_year=period.year,
        period_month=period.month,
        base_amount=base_amount,
        penalty_amount=ZERO,
        penalty_percentage=0,
        total_amount=base_amount,
        delinquent_days=0,
        state=DueState.PENDING,
        due_date=due_date,
        grace_date=grace_date,
        configuration_version_id=version.id,
    )
    try:
        with session.begin_nested():
            session.add(due)
            session.flush()
    except IntegrityError:
        winner = _find_due(session, resident_id, period)
        if winner is None:
            raise
        logger.info("Due for resident %s period %s created concurrently; reusing #%s", resident_id, period, winner.id)
        apply_assessment(session, winner, moment, policy)
        session.commit()
        return winner, False

    apply_assessment(session, due, moment, policy)
    audit_log(
        db_session=session,
        actor_user_id=actor_user_id,
        action="dues.due.create",
        target_entity_type="Due",
        target_entity_id=str(due.id),
        after={
            "resident_id": resident_id,
            "period": period.label,
            "base_amount": str(base_amount),
            "due_date": due_date.isoformat(),
            "configuration_version": version.version,
        },
    )
    session.refresh(due)
    logger.info("Created due #%s for resident %s period %s (%s)", due.id, resident_id, period, base_amount)
    return due, True


def get_due(
    session: Session,
    resident_id: str,
    period: BillingPeriod,
    now: Optional[datetime] = None,
) -> Due:
    due = _find_due(session, resident_id, period)
    if not due:
        raise NotFoundError(f"No due for resident {resident_id} in {period}.")
    apply_assessment(session, due, now or _utcnow(), load_penalty_policy(session))
    session.commit()
    return due


def get_due_by_id(session: Session, due_id: int, now: Optional[datetime] = None) -> Due:
    due = session.get(Due, due_id)
    if not due:
        raise NotFoundError(f"Due #{due_id} not found.")
    apply_assessment(session, due, now or _utcnow(), load_penalty_policy(session))
    session.commit()
    return due


def _assess_all(session: Session, dues: Iterable[Due], now: Optional[datetime]) -> List[Due]:
    policy = load_penalty_policy(session)
    moment = now or _utcnow()
    dues = list(dues)
    for due in dues:
        apply_assessment(session, due, moment, policy)
    session.commit()
    return dues


def list_dues_for_resident(session: Session, resident_id: str, now: Optional[datetime] = None) -> List[Due]:
    dues = (
        session.query(Due)
        .filter(Due.resident_id == resident_id)
        .order_by(Due.period_year.desc(), Due.period_month.desc())
        .all()
    )
    return _assess_all(session, dues, now)


def list_dues_for_period(session: Session, period: BillingPeriod, now: Optional[datetime] = None) -> List[Due]:
    dues = (
        session.query(Due)
        .filter(Due.period_year == period.year, Due.period_month == period.month)
        .order_by(Due.resident_name.asc(), Due.id.asc())
        .all()
    )
    return _assess_all(session, dues, now)


@dataclass(frozen=True)
class ChargeTerms:
    """What a checkout session was opened for: the amount and the penalty behind it."""

    amount: Decimal
    penalty_percentage: Decimal
    delinquent_days: int

    @classmethod
    def for_due(cls, due: Due) -> "ChargeTerms":
        return cls(
            amount=_ensure_decimal(due.total_amount).quantize(Decimal("0.01")),
            penalty_percentage=_ensure_decimal(due.penalty_percentage or 0),
            delinquent_days=due.delinquent_days or 0,
        )

    @classmethod
    def from_metadata(cls, metadata: Dict[str, str]) -> Optional["ChargeTerms"]:
        try:
            return cls(
                amount=Decimal(metadata["amount"]),
                penalty_percentage=Decimal(metadata["penalty_percentage"]),
                delinquent_days=int(metadata["delinquent_days"]),
            )
        except (KeyError, ArithmeticError, ValueError):
            return None

    def as_metadata(self) -> Dict[str, str]:
        return {
            "amount": str(self.amount),
            "penalty_percentage": str(self.penalty_percentage),
            "delinquent_days": str(self.delinquent_days),
        }


def record_checkout_session(session: Session, due: Due, session_id: str, terms: ChargeTerms) -> Due:
    due.gateway_session_id = session_id
    due.checkout_amount = terms.amount
    due.checkout_penalty_percentage = float(terms.penalty_percentage)
    due.checkout_delinquent_days = terms.delinquent_days
    session.add(due)
    session.commit()
    session.refresh(due)
    return due


def recorded_terms(due: Due, session_id: str) -> Optional[ChargeTerms]:
    """Terms of the most recent checkout session, if ``session_id`` is that session."""
    if due.gateway_session_id != session_id or due.checkout_amount is None:
        return None
    return ChargeTerms(
        amount=_ensure_decimal(due.checkout_amount),
        penalty_percentage=_ensure_decimal(due.checkout_penalty_percentage or 0),
        delinquent_days=due.checkout_delinquent_days or 0,
    )


@dataclass(frozen=True)
class _Settlement:
    penalty_amount: Decimal
    total_amount: Decimal
    penalty_percentage: Decimal
    delinquent_days: int


def _settle(
    due: Due,
    amount_paid: Optional[Decimal],
    terms: Optional[ChargeTerms],
    assessment: DelinquencyAssessment,
) -> _Settlement:
    base = _ensure_decimal(due.base_amount)
    if amount_paid is not None:
        total = _ensure_decimal(amount_paid)
    elif terms is not None:
        total = terms.amount
    else:
        total = assessment.total_amount
    penalty = max(total - base, ZERO).quantize(Decimal("0.01"))

    # The stored percentage and day count must describe the penalty actually charged.
    if terms is not None and penalty == max(terms.amount - base, ZERO):
        percentage, days = terms.penalty_percentage, terms.delinquent_days
    elif penalty == assessment.penalty_amount:
        percentage, days = assessment.percentage, assessment.delinquent_days
    else:
        percentage = (penalty * Decimal("100") / base).quantize(Decimal("0.01")) if base > 0 else Decimal("0")
        days = terms.delinquent_days if terms is not None else assessment.delinquent_days
    return _Settlement(
        penalty_amount=penalty,
        total_amount=(base + penalty).quantize(Decimal("0.01")),
        penalty_percentage=percentage,
        delinquent_days=days,
    )


def mark_paid(
    session: Session,
    due_id: int,
    *,
    method: str,
    reference: Optional[str],
    session_id: str,
    amount_paid: Optional[Decimal] = None,
    terms: Optional[ChargeTerms] = None,
    now: Optional[datetime] = None,
    actor_user_id: Optional[str] = None,
) -> Tuple[Due, bool]:
    """Transition a due to PAID.

    Returns ``(due, transitioned)``. Repeating the call with the session id
    already on record is a no-op success; a different session id on a paid due
    raises ``AlreadyPaidError``. ``terms`` describes what the paying session
    was opened for; without it the recorded checkout for ``session_id`` is used.
    """
    moment = now or _utcnow()
    due = session.get(Due, due_id)
    if not due:
        raise NotFoundError(f"Due #{due_id} not found.")
    # The instance may predate a settlement committed elsewhere; reload it.
    session.expire(due)
    if due.state == DueState.PAID:
        if due.gateway_session_id == session_id:
            return due, False
        raise AlreadyPaidError(
            f"Due #{due_id} is already paid under a different checkout session.",
            context={"due_id": due_id},
        )

    assessment = assess_due(due, moment, load_penalty_policy(session))
    settlement = _settle(due, amount_paid, terms or recorded_terms(due, session_id), assessment)
    previous_state = due.state

    # Conditional update so concurrent confirmations converge on one transition.
    updated = (
        session.query(Due)
        .filter(Due.id == due_id, Due.state != DueState.PAID)
        .update(
            {
                Due.state: DueState.PAID,
                Due.paid_at: moment,
                Due.payment_method: method,
                Due.payment_reference: reference,
                Due.gateway_session_id: session_id,
                Due.penalty_amount: settlement.penalty_amount,
                Due.total_amount: settlement.total_amount,
                Due.delinquent_days: settlement.delinquent_days,
                Due.penalty_percentage: float(settlement.penalty_percentage),
                Due.updated_at: moment,
            },
            synchronize_session=False,
        )
    )
    session.commit()
    session.refresh(due)

    if not updated:
        if due.gateway_session_id == session_id:
            return due, False
        raise AlreadyPaidError(
            f"Due #{due_id} is already paid under a different checkout session.",
            context={"due_id": due_id},
        )

    audit_log(
        db_session=session,
        actor_user_id=actor_user_id,
        action="dues.due.paid",
        target_entity_type="Due",
        target_entity_id=str(due.id),
        before={"state": previous_state},
        after={
            "state": DueState.PAID,
            "total_amount": str(settlement.total_amount),
            "penalty_amount": str(settlement.penalty_amount),
            "penalty_percentage": str(settlement.penalty_percentage),
            "method": method,
            "reference": reference,
            "session_id": session_id,
        },
    )
    logger.info("Due #%s marked paid via %s (%s)", due.id, method, settlement.total_amount)
    return due, True


def record_invoice_issued(session: Session, due: Due, invoice_number: str, issued_at: datetime) -> Due:
    if due.invoice_number == invoice_number:
        return due
    due.invoice_number = invoice_number
    due.invoiced_at = issued_at
    session.add(due)
    session.commit()
    session.refresh(due)
    return due


def refresh_delinquency(
    session: Session,
    now: Optional[datetime] = None,
    actor_user_id: Optional[str] = None,
) -> List[int]:
    """Persist the current assessment of every unpaid due; returns the ids that changed."""
    moment = now or _utcnow()
    policy = load_penalty_policy(session)
    changed_ids: List[int] = []

    open_dues = (
        session.query(Due)
        .filter(Due.state.in_(DueState.unpaid()))
        .order_by(Due.due_date.asc(), Due.id.asc())
        .all()
    )
    for due in open_dues:
        before = (due.state, _ensure_decimal(due.penalty_amount or 0), due.delinquent_days)
        assessment = apply_assessment(session, due, moment, policy)
        after = (due.state, assessment.penalty_amount, assessment.delinquent_days)
        if due.state != DueState.PAID and before != after:
            changed_ids.append(due.id)

    if changed_ids:
        audit_log(
            db_session=session,
            actor_user_id=actor_user_id,
            action="dues.delinquency.sweep",
            target_entity_type="Due",
            after={"updated_due_ids": changed_ids, "as_of": moment.isoformat()},
        )
    else:
        session.commit()
    logger.info("Delinquency sweep checked %s dues, updated %s", len(open_dues), len(changed_ids))
    return changed_ids


@dataclass
class BulkGenerationResult:
    period: BillingPeriod
    total: int = 0
    created: int = 0
    existing: int = 0
    created_due_ids: List[int] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)


def bulk_generate(
    session: Session,
    period: BillingPeriod,
    roster: Iterable[Resident],
    now: Optional[datetime] = None,
    actor_user_id: Optional[str] = None,
) -> BulkGenerationResult:
    result = BulkGenerationResult(period=period)
    for resident in roster:
        result.total += 1
        try:
            due, created = create_due(
                session,
                resident_id=resident.id,
                resident_name=resident.full_name,
                resident_email=resident.email,
                period=period,
                now=now,
                actor_user_id=actor_user_id,
            )
        except InvalidResidentError as exc:
            logger.warning("Skipping resident %s during bulk generation: %s", resident.id, exc.message)
            result.skipped[resident.id] = exc.message
            continue
        if created:
            result.created += 1
            result.created_due_ids.append(due.id)
        else:
            result.existing += 1
    logger.info(
        "Bulk generation for %s: %s residents, %s created, %s existing, %s skipped",
        period,
        result.total,
        result.created,
        result.existing,
        len(result.skipped),
    )
    return result


@dataclass(frozen=True)
class ResidentDuesSummary:
    total: int
    pending: int
    overdue: int
    delinquent: int
    paid: int
    amount_outstanding: Decimal
    amount_paid: Decimal


def summarize_resident(dues: List[Due]) -> ResidentDuesSummary:
    counts = Counter(due.state for due in dues)
    outstanding = sum((_ensure_decimal(due.total_amount) for due in dues if not due.is_paid), ZERO)
    paid = sum((_ensure_decimal(due.total_amount) for due in dues if due.is_paid), ZERO)
    return ResidentDuesSummary(
        total=len(dues),
        pending=counts[DueState.PENDING],
        overdue=counts[DueState.OVERDUE],
        delinquent=counts[DueState.DELINQUENT],
        paid=counts[DueState.PAID],
        amount_outstanding=outstanding,
        amount_paid=paid,
    )


@dataclass(frozen=True)
class DelinquencySummary:
    total_delinquent: int
    total_penalty: Decimal
    total_outstanding: Decimal
    average_delinquent_days: float
    by_period: Dict[str, int]
    dues: List[Due]


def delinquency_summary(session: Session, now: Optional[datetime] = None) -> DelinquencySummary:
    open_dues = _assess_all(
        session,
        session.query(Due)
        .filter(Due.state.in_(DueState.unpaid()))
        .order_by(Due.period_year.asc(), Due.period_month.asc(), Due.id.asc())
        .all(),
        now,
    )
    delinquent = [due for due in open_dues if due.state == DueState.DELINQUENT]
    by_period: Dict[str, int] = {}
    for due in delinquent:
        label = BillingPeriod(due.period_year, due.period_month).label
        by_period[label] = by_period.get(label, 0) + 1
    average_days = (
        round(sum(due.delinquent_days for due in delinquent) / len(delinquent), 1) if delinquent else 0.0
    )
    return DelinquencySummary(
        total_delinquent=len(delinquent),
        total_penalty=sum((_ensure_decimal(due.penalty_amount) for due in delinquent), ZERO),
        total_outstanding=sum((_ensure_decimal(due.total_amount) for due in delinquent), ZERO),
        average_delinquent_days=average_days,
        by_period=by_period,
        dues=delinquent,
    )
