from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..constants import PENALTY_LINE_ITEM_KEY, PENALTY_LINE_ITEM_LABEL
from ..core.errors import InvalidStateError
from ..models.models import Due, DuesConfigurationVersion, DueState
from ..utils.pdf_utils import generate_dues_invoice_pdf
from .dues_configuration import active_concepts_for_version, get_current_version

CENT = Decimal("0.01")
ADJUSTMENT_LINE_ITEM_KEY = "ajuste_base"


@dataclass(frozen=True)
class InvoiceLineItem:
    key: str
    label: str
    amount: Decimal
    description: Optional[str] = None


@dataclass(frozen=True)
class DuesInvoice:
    invoice_number: str
    due_id: int
    issued_at: datetime
    resident_id: str
    resident_name: str
    resident_email: str
    period: str
    line_items: Tuple[InvoiceLineItem, ...]
    subtotal: Decimal
    penalty_amount: Decimal
    total: Decimal
    configuration_version: Optional[int]
    used_configuration_snapshot: bool
    payment_method: Optional[str]
    payment_reference: Optional[str]


def invoice_number_for(due: Due) -> str:
    return f"INV-{due.period_year}{due.period_month:02d}-{due.id:06d}"


def _resolve_configuration(session: Session, due: Due) -> Tuple[DuesConfigurationVersion, bool]:
    if due.configuration_version is not None:
        return due.configuration_version, True
    return get_current_version(session), False


def compose(session: Session, due: Due) -> DuesInvoice:
    """Build the receipt for a paid due; the same due always yields the same invoice."""
    if due.state != DueState.PAID:
        raise InvalidStateError(f"Due #{due.id} is not paid; no invoice is available.", context={"state": due.state})

    version, from_snapshot = _resolve_configuration(session, due)
    base_amount = Decimal(due.base_amount).quantize(CENT)
    penalty_amount = Decimal(due.penalty_amount or 0).quantize(CENT)

    line_items: List[InvoiceLineItem] = [
        InvoiceLineItem(
            key=concept["key"],
            label=concept["label"],
            amount=Decimal(str(concept["amount"])).quantize(CENT),
            description=concept.get("description"),
        )
        for concept in active_concepts_for_version(version)
    ]
    concepts_total = sum((item.amount for item in line_items), Decimal("0.00"))
    if concepts_total != base_amount:
        # Only reachable when falling back to a configuration other than the one the due was created under.
        line_items.append(
            InvoiceLineItem(
                key=ADJUSTMENT_LINE_ITEM_KEY,
                label="Base amount adjustment",
                amount=base_amount - concepts_total,
                description="Difference between the charged base amount and the current concept list",
            )
        )
    if penalty_amount > 0:
        line_items.append(
            InvoiceLineItem(
                key=PENALTY_LINE_ITEM_KEY,
                label=PENALTY_LINE_ITEM_LABEL,
                amount=penalty_amount,
                description=f"{due.delinquent_days} days past due at {due.penalty_percentage:g}%",
            )
        )

    return DuesInvoice(
        invoice_number=invoice_number_for(due),
        due_id=due.id,
        issued_at=due.paid_at,
        resident_id=due.resident_id,
        resident_name=due.resident_name,
        resident_email=due.resident_email,
        period=f"{due.period_year}-{due.period_month:02d}",
        line_items=tuple(line_items),
        subtotal=base_amount,
        penalty_amount=penalty_amount,
        total=(base_amount + penalty_amount).quantize(CENT),
        configuration_version=version.version,
        used_configuration_snapshot=from_snapshot,
        payment_method=due.payment_method,
        payment_reference=due.payment_reference,
    )


def render_pdf(invoice: DuesInvoice) -> str:
    return generate_dues_invoice_pdf(invoice)
