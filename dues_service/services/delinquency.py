"""Late-payment penalty arithmetic for resident dues.

Everything here is a pure function of its arguments: no database access, no
clock reads. Callers pass ``now`` explicitly so the same inputs always produce
the same assessment, whether evaluated on a single read or during a sweep.
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Tuple

from ..models.models import DueState

CENT = Decimal("0.01")

SCHEDULE_LINEAR = "linear"
SCHEDULE_STEPPED = "stepped"


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass(frozen=True, order=True)
class BillingPeriod:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month {self.month}; expected 1-12.")
        if self.year < 2000 or self.year > 9999:
            raise ValueError(f"Invalid year {self.year}.")

    @property
    def label(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class PenaltyStep:
    from_day: int
    percent: Decimal


@dataclass(frozen=True)
class PenaltyPolicy:
    due_day_of_month: int = 10
    grace_period_days: int = 5
    delinquency_threshold_days: int = 30
    schedule_type: str = SCHEDULE_LINEAR
    steps: Tuple[PenaltyStep, ...] = field(default_factory=tuple)
    linear_rate_percent: Decimal = Decimal("5")
    linear_interval_days: int = 10
    max_penalty_percent: Optional[Decimal] = None
    penalty_requires_delinquency: bool = False

    @classmethod
    def from_model(cls, policy) -> "PenaltyPolicy":
        steps = tuple(
            sorted(
                (
                    PenaltyStep(from_day=int(step["from_day"]), percent=_as_decimal(step["percent"]))
                    for step in (policy.penalty_steps or [])
                ),
                key=lambda step: step.from_day,
            )
        )
        max_percent = policy.max_penalty_percent
        return cls(
            due_day_of_month=policy.due_day_of_month,
            grace_period_days=policy.grace_period_days,
            delinquency_threshold_days=policy.delinquency_threshold_days,
            schedule_type=policy.penalty_schedule_type,
            steps=steps,
            linear_rate_percent=_as_decimal(policy.linear_rate_percent),
            linear_interval_days=policy.linear_interval_days,
            max_penalty_percent=_as_decimal(max_percent) if max_percent is not None else None,
            penalty_requires_delinquency=bool(policy.penalty_requires_delinquency),
        )


@dataclass(frozen=True)
class DelinquencyAssessment:
    state: str
    penalty_amount: Decimal
    total_amount: Decimal
    delinquent_days: int
    percentage: Decimal

    @property
    def is_delinquent(self) -> bool:
        return self.state == DueState.DELINQUENT


def compute_due_dates(period: BillingPeriod, policy: PenaltyPolicy) -> Tuple[date, Optional[date]]:
    last_day = calendar.monthrange(period.year, period.month)[1]
    due_date = date(period.year, period.month, min(max(policy.due_day_of_month, 1), last_day))
    grace_date = None
    if policy.grace_period_days > 0:
        grace_date = due_date + timedelta(days=policy.grace_period_days)
    return due_date, grace_date


def penalty_percentage(delinquent_days: int, policy: PenaltyPolicy) -> Decimal:
    if delinquent_days <= 0:
        return Decimal("0")

    if policy.schedule_type == SCHEDULE_STEPPED:
        percentage = Decimal("0")
        for step in policy.steps:
            if delinquent_days < step.from_day:
                break
            # Running max keeps the schedule non-decreasing even if steps are misconfigured.
            percentage = max(percentage, step.percent)
    else:
        interval = max(policy.linear_interval_days, 1)
        periods = math.ceil(delinquent_days / interval)
        percentage = policy.linear_rate_percent * periods

    if policy.max_penalty_percent is not None:
        percentage = min(percentage, policy.max_penalty_percent)
    return max(percentage, Decimal("0"))


def compute_penalty(
    base_amount: Any,
    due_date: date,
    grace_date: Optional[date],
    now: date | datetime,
    policy: PenaltyPolicy,
) -> DelinquencyAssessment:
    base = _as_decimal(base_amount)
    today = _as_date(now)
    reference = grace_date or due_date
    delinquent_days = max(0, (today - reference).days)

    if today <= reference:
        state = DueState.PENDING
    elif delinquent_days < policy.delinquency_threshold_days:
        state = DueState.OVERDUE
    else:
        state = DueState.DELINQUENT

    accrues = state == DueState.DELINQUENT or (
        state == DueState.OVERDUE and not policy.penalty_requires_delinquency
    )
    percentage = penalty_percentage(delinquent_days, policy) if accrues else Decimal("0")
    penalty_amount = (base * percentage / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    return DelinquencyAssessment(
        state=state,
        penalty_amount=penalty_amount,
        total_amount=(base + penalty_amount).quantize(CENT, rounding=ROUND_HALF_UP),
        delinquent_days=delinquent_days,
        percentage=percentage,
    )


def assess_due(due, now: date | datetime, policy: PenaltyPolicy) -> DelinquencyAssessment:
    return compute_penalty(due.base_amount, due.due_date, due.grace_date, now, policy)
