from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

Money = Decimal


class PeriodPayload(BaseModel):
    year: int = Field(ge=2000, le=9999)
    month: int = Field(ge=1, le=12)


class DueCreate(PeriodPayload):
    resident_id: str = Field(min_length=1)
    resident_name: Optional[str] = None
    resident_email: Optional[EmailStr] = None


class DueRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resident_id: str
    resident_name: str
    resident_email: str
    period_year: int
    period_month: int
    base_amount: Money
    penalty_amount: Money
    penalty_percentage: float
    total_amount: Money
    delinquent_days: int
    state: str
    due_date: date
    grace_date: Optional[date]
    overdue_since: Optional[date]
    delinquent_since: Optional[date]
    configuration_version_id: Optional[int]
    gateway_session_id: Optional[str]
    paid_at: Optional[datetime]
    payment_method: Optional[str]
    payment_reference: Optional[str]
    invoice_number: Optional[str]
    created_at: datetime
    updated_at: datetime


class DueCreateRead(BaseModel):
    due: DueRead
    created: bool


class ResidentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    full_name: str
    email: str
    role: str


class ResidentViewRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    resident: ResidentRead
    due: Optional[DueRead]
    computed_status: str
    amount_due: Money
    is_delinquent: bool
    delinquent_days: int


class ReconciliationStatisticsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    with_due: int
    without_due: int
    paid: int
    pending: int
    overdue: int
    delinquent: int
    amount_collected: Money
    amount_outstanding: Money


class ReconciliationRead(BaseModel):
    period: str
    statistics: ReconciliationStatisticsRead
    residents: List[ResidentViewRead]


class ResidentDuesSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    pending: int
    overdue: int
    delinquent: int
    paid: int
    amount_outstanding: Money
    amount_paid: Money


class ResidentDuesRead(BaseModel):
    resident_id: str
    summary: ResidentDuesSummaryRead
    dues: List[DueRead]


class BulkGenerateRead(BaseModel):
    period: str
    total: int
    created: int
    existing: int
    created_due_ids: List[int]
    skipped: Dict[str, str] = {}


class DelinquencySweepRead(BaseModel):
    updated: int
    updated_due_ids: List[int]


class DelinquencySummaryRead(BaseModel):
    total_delinquent: int
    total_penalty: Money
    total_outstanding: Money
    average_delinquent_days: float
    by_period: Dict[str, int]
    dues: List[DueRead]


class CheckoutSessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    due_id: int
    session_id: str
    redirect_url: str
    amount: Money
    currency: str


class ConfirmPaymentRequest(BaseModel):
    session_id: str = Field(min_length=1)


class InvoiceLineItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    label: str
    amount: Money
    description: Optional[str] = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    invoice_number: str
    due_id: int
    issued_at: datetime
    resident_id: str
    resident_name: str
    resident_email: str
    period: str
    line_items: List[InvoiceLineItemRead]
    subtotal: Money
    penalty_amount: Money
    total: Money
    configuration_version: Optional[int]
    used_configuration_snapshot: bool
    payment_method: Optional[str]
    payment_reference: Optional[str]


class PaymentConfirmationRead(BaseModel):
    due: DueRead
    invoice: InvoiceRead
    already_confirmed: bool


class DuesConceptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    label: str
    description: Optional[str]
    amount: Money
    active: bool
    sort_order: int


class DuesConfigurationRead(BaseModel):
    version: int
    total_amount: Money
    concepts: List[DuesConceptRead]
    updated_at: datetime


class ConfigurationVersionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version: int
    total_amount: Money
    concepts: List[DuesConceptRead]
    created_by_user_id: Optional[str]
    note: Optional[str]
    created_at: datetime


class ConceptAmountsUpdate(BaseModel):
    amounts: Dict[str, Decimal]

    @field_validator("amounts")
    @classmethod
    def _non_negative(cls, value: Dict[str, Decimal]) -> Dict[str, Decimal]:
        if not value:
            raise ValueError("At least one concept amount is required.")
        for key, amount in value.items():
            if amount < 0:
                raise ValueError(f"Amount for '{key}' must not be negative.")
        return value


class ConceptCreate(BaseModel):
    key: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9_]+$")
    label: str = Field(min_length=1)
    description: Optional[str] = None
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    active: bool = True


class PenaltyStepPayload(BaseModel):
    from_day: int = Field(ge=1)
    percent: float = Field(ge=0, le=100)


class DelinquencyPolicyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    due_day_of_month: int
    grace_period_days: int
    delinquency_threshold_days: int
    penalty_schedule_type: str
    penalty_steps: List[PenaltyStepPayload]
    linear_rate_percent: float
    linear_interval_days: int
    max_penalty_percent: Optional[float]
    penalty_requires_delinquency: bool


class DelinquencyPolicyUpdate(BaseModel):
    due_day_of_month: Optional[int] = Field(default=None, ge=1, le=28)
    grace_period_days: Optional[int] = Field(default=None, ge=0, le=60)
    delinquency_threshold_days: Optional[int] = Field(default=None, ge=1)
    penalty_schedule_type: Optional[Literal["linear", "stepped"]] = None
    penalty_steps: Optional[List[PenaltyStepPayload]] = None
    linear_rate_percent: Optional[float] = Field(default=None, ge=0, le=100)
    linear_interval_days: Optional[int] = Field(default=None, ge=1)
    max_penalty_percent: Optional[float] = Field(default=None, ge=0)
    penalty_requires_delinquency: Optional[bool] = None

    @model_validator(mode="after")
    def _steps_for_stepped(self) -> "DelinquencyPolicyUpdate":
        if self.penalty_schedule_type == "stepped" and self.penalty_steps is not None and not self.penalty_steps:
            raise ValueError("A stepped schedule needs at least one step.")
        return self
