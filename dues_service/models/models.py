from datetime import datetime, timezone
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship as orm_relationship

from ..config import Base


def utcnow():
    return datetime.now(timezone.utc)


class DueState:
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    DELINQUENT = "DELINQUENT"
    PAID = "PAID"

    ORDER = (PENDING, OVERDUE, DELINQUENT, PAID)

    @classmethod
    def rank(cls, state: str) -> int:
        return cls.ORDER.index(state)

    @classmethod
    def unpaid(cls) -> tuple[str, str, str]:
        return (cls.PENDING, cls.OVERDUE, cls.DELINQUENT)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    actor_user_id = Column(String, nullable=True)
    action = Column(String, nullable=False)
    target_entity_type = Column(String, nullable=True)
    target_entity_id = Column(String, nullable=True)
    before = Column(Text, nullable=True)
    after = Column(Text, nullable=True)


class DuesConcept(Base):
    __tablename__ = "dues_concepts"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, nullable=False, unique=True, index=True)
    label = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class DuesConfigurationVersion(Base):
    """Append-only snapshot of the concept list, written on every change."""

    __tablename__ = "dues_configuration_versions"

    id = Column(Integer, primary_key=True, index=True)
    version = Column(Integer, nullable=False, unique=True)
    concepts = Column(JSON, nullable=False, default=list)
    total_amount = Column(Numeric(10, 2), nullable=False)
    created_by_user_id = Column(String, nullable=True)
    note = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    dues = orm_relationship("Due", back_populates="configuration_version")


class DelinquencyPolicy(Base):
    __tablename__ = "delinquency_policies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, unique=True)
    due_day_of_month = Column(Integer, nullable=False, default=10)
    grace_period_days = Column(Integer, nullable=False, default=5)
    delinquency_threshold_days = Column(Integer, nullable=False, default=30)
    penalty_schedule_type = Column(String, nullable=False, default="linear")  # linear|stepped
    penalty_steps = Column(JSON, nullable=False, default=list)
    linear_rate_percent = Column(Float, nullable=False, default=5)  # stored as percentage e.g. 5 = 5%
    linear_interval_days = Column(Integer, nullable=False, default=10)
    max_penalty_percent = Column(Float, nullable=True)
    penalty_requires_delinquency = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Due(Base):
    __tablename__ = "dues"
    __table_args__ = (
        UniqueConstraint("resident_id", "period_year", "period_month", name="uq_dues_resident_period"),
    )

    id = Column(Integer, primary_key=True, index=True)
    resident_id = Column(String, nullable=False, index=True)
    resident_name = Column(String, nullable=False)
    resident_email = Column(String, nullable=False)
    period_year = Column(Integer, nullable=False)
    period_month = Column(Integer, nullable=False)
    base_amount = Column(Numeric(10, 2), nullable=False)
    penalty_amount = Column(Numeric(10, 2), nullable=False, default=0)
    penalty_percentage = Column(Float, nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    delinquent_days = Column(Integer, nullable=False, default=0)
    state = Column(String, nullable=False, default=DueState.PENDING, index=True)
    due_date = Column(Date, nullable=False)
    grace_date = Column(Date, nullable=True)
    overdue_since = Column(Date, nullable=True)
    delinquent_since = Column(Date, nullable=True)
    configuration_version_id = Column(Integer, ForeignKey("dues_configuration_versions.id"), nullable=True)
    checkout_amount = Column(Numeric(10, 2), nullable=True)
    checkout_penalty_percentage = Column(Float, nullable=True)
    checkout_delinquent_days = Column(Integer, nullable=True)
    gateway_session_id = Column(String, nullable=True, index=True)
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    invoice_number = Column(String, nullable=True, unique=True)
    invoiced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    configuration_version = orm_relationship("DuesConfigurationVersion", back_populates="dues")

    @property
    def is_paid(self) -> bool:
        return self.state == DueState.PAID
