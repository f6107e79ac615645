"""Consolidated per-resident payment status for one billing period.

The roster lives in the identity service and the dues live in our ledger; a
reconciliation joins the two. It is a read-only projection and never creates
or mutates dues.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.errors import NotFoundError
from ..models.models import Due, DueState
from . import dues_ledger
from .delinquency import BillingPeriod
from .dues_configuration import get_current_version
from .identity import IdentityDirectory, Resident, ServiceCredentials, fetch_billable_roster

logger = logging.getLogger(__name__)

NO_DUE_YET = "NO_DUE_YET"
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class ResidentView:
    resident: Resident
    due: Optional[Due]
    computed_status: str
    amount_due: Decimal
    is_delinquent: bool
    delinquent_days: int

    @property
    def has_due(self) -> bool:
        return self.due is not None


@dataclass(frozen=True)
class ReconciliationStatistics:
    total: int
    with_due: int
    without_due: int
    paid: int
    pending: int
    overdue: int
    delinquent: int
    amount_collected: Decimal
    amount_outstanding: Decimal


@dataclass(frozen=True)
class Reconciliation:
    period: BillingPeriod
    statistics: ReconciliationStatistics
    residents: List[ResidentView]


def _view_for(resident: Resident, due: Optional[Due], configured_total: Decimal) -> ResidentView:
    if due is None:
        return ResidentView(
            resident=resident,
            due=None,
            computed_status=NO_DUE_YET,
            amount_due=configured_total,
            is_delinquent=False,
            delinquent_days=0,
        )
    return ResidentView(
        resident=resident,
        due=due,
        computed_status=due.state,
        amount_due=Decimal(due.total_amount).quantize(Decimal("0.01")),
        is_delinquent=due.state == DueState.DELINQUENT,
        delinquent_days=due.delinquent_days or 0,
    )


def _statistics(views: List[ResidentView]) -> ReconciliationStatistics:
    def count(status: str) -> int:
        return sum(1 for view in views if view.computed_status == status)

    collected = sum((view.amount_due for view in views if view.computed_status == DueState.PAID), ZERO)
    # Residents without a due are informational only and do not count as outstanding.
    outstanding = sum(
        (view.amount_due for view in views if view.has_due and view.computed_status != DueState.PAID),
        ZERO,
    )
    with_due = sum(1 for view in views if view.has_due)
    return ReconciliationStatistics(
        total=len(views),
        with_due=with_due,
        without_due=len(views) - with_due,
        paid=count(DueState.PAID),
        pending=count(DueState.PENDING),
        overdue=count(DueState.OVERDUE),
        delinquent=count(DueState.DELINQUENT),
        amount_collected=collected,
        amount_outstanding=outstanding,
    )


def join_roster(
    roster: List[Resident],
    dues: List[Due],
    configured_total: Decimal,
) -> List[ResidentView]:
    dues_by_resident: Dict[str, Due] = {due.resident_id: due for due in dues}
    return [_view_for(resident, dues_by_resident.get(resident.id), configured_total) for resident in roster]


def reconcile(
    session: Session,
    directory: IdentityDirectory,
    period: BillingPeriod,
    credentials: ServiceCredentials,
    now: Optional[datetime] = None,
) -> Reconciliation:
    moment = now or datetime.now(timezone.utc)
    # The roster fetch is network-bound and independent of the ledger read, so it
    # runs on a worker thread while this thread (which owns the session) reads dues.
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="roster") as executor:
        roster_future = executor.submit(fetch_billable_roster, directory, credentials)
        dues = dues_ledger.list_dues_for_period(session, period, moment)
        configured_total = Decimal(get_current_version(session).total_amount).quantize(Decimal("0.01"))
        roster = roster_future.result()

    views = join_roster(roster, dues, configured_total)
    statistics = _statistics(views)
    logger.info(
        "Reconciled %s: %s residents, %s with dues, %s delinquent",
        period,
        statistics.total,
        statistics.with_due,
        statistics.delinquent,
    )
    return Reconciliation(period=period, statistics=statistics, residents=views)


def get_resident_view(
    session: Session,
    directory: IdentityDirectory,
    resident_id: str,
    period: BillingPeriod,
    credentials: ServiceCredentials,
    now: Optional[datetime] = None,
) -> ResidentView:
    roster = fetch_billable_roster(directory, credentials)
    resident = next((entry for entry in roster if entry.id == resident_id), None)
    if resident is None:
        raise NotFoundError(f"Resident {resident_id} is not a billable resident.")
    try:
        due: Optional[Due] = dues_ledger.get_due(session, resident_id, period, now)
    except NotFoundError:
        due = None
    configured_total = Decimal(get_current_version(session).total_amount).quantize(Decimal("0.01"))
    return _view_for(resident, due, configured_total)


def bulk_generate(
    session: Session,
    directory: IdentityDirectory,
    period: BillingPeriod,
    credentials: ServiceCredentials,
    now: Optional[datetime] = None,
    actor_user_id: Optional[str] = None,
) -> dues_ledger.BulkGenerationResult:
    """Create this period's dues for every billable resident; safe to repeat."""
    roster = fetch_billable_roster(directory, credentials)
    return dues_ledger.bulk_generate(session, period, roster, now=now, actor_user_id=actor_user_id)
