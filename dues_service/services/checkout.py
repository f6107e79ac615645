from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..core.errors import ConflictError, InvalidStateError, PaymentNotCompletedError
from ..models.models import Due, DueState
from . import dues_ledger
from .audit import audit_log
from .invoices import DuesInvoice, compose
from .payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSessionResult:
    due_id: int
    session_id: str
    redirect_url: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class PaymentConfirmation:
    due: Due
    invoice: DuesInvoice
    already_confirmed: bool


def _return_urls(due: Due) -> tuple[str, str]:
    base = settings.frontend_url.rstrip("/")
    success_url = f"{base}/mis-pagos?success=true&cuota_id={due.id}&session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{base}/mis-pagos?cancelled=true&cuota_id={due.id}"
    return success_url, cancel_url


def create_checkout_session(
    session: Session,
    gateway: PaymentGateway,
    due_id: int,
    now: Optional[datetime] = None,
    actor_user_id: Optional[str] = None,
) -> CheckoutSessionResult:
    moment = now or datetime.now(timezone.utc)
    due = dues_ledger.get_due_by_id(session, due_id, moment)
    if due.state == DueState.PAID:
        raise InvalidStateError(f"Due #{due_id} is already paid.", context={"due_id": due_id})

    # get_due_by_id has just recomputed the penalty, so these are the up-to-date terms.
    terms = dues_ledger.ChargeTerms.for_due(due)
    amount = terms.amount
    if amount <= 0:
        raise InvalidStateError(f"Due #{due_id} has nothing to charge.", context={"due_id": due_id})

    success_url, cancel_url = _return_urls(due)
    metadata = {
        "due_id": str(due.id),
        "resident_id": due.resident_id,
        "period": f"{due.period_year}-{due.period_month:02d}",
        **terms.as_metadata(),
    }
    checkout = gateway.create_session(
        amount,
        settings.dues_currency,
        metadata,
        description=f"Monthly dues {due.period_month:02d}/{due.period_year}",
        customer_email=due.resident_email,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    dues_ledger.record_checkout_session(session, due, checkout.session_id, terms)
    audit_log(
        db_session=session,
        actor_user_id=actor_user_id,
        action="dues.checkout.create",
        target_entity_type="Due",
        target_entity_id=str(due.id),
        after={"session_id": checkout.session_id, "amount": str(amount), "state": due.state},
    )
    logger.info("Opened checkout session %s for due #%s (%s)", checkout.session_id, due.id, amount)
    return CheckoutSessionResult(
        due_id=due.id,
        session_id=checkout.session_id,
        redirect_url=checkout.redirect_url,
        amount=amount,
        currency=settings.dues_currency,
    )


def _issue_invoice(session: Session, due: Due) -> DuesInvoice:
    invoice = compose(session, due)
    dues_ledger.record_invoice_issued(session, due, invoice.invoice_number, invoice.issued_at)
    return invoice


def confirm_payment(
    session: Session,
    gateway: PaymentGateway,
    due_id: int,
    session_id: str,
    now: Optional[datetime] = None,
    actor_user_id: Optional[str] = None,
) -> PaymentConfirmation:
    """Confirm a hosted checkout and settle the due.

    Safe under at-least-once delivery: a repeat confirmation for the session
    already on record returns the original result instead of failing. Any
    session opened for the due can settle it, including one superseded by a
    later checkout.
    """
    moment = now or datetime.now(timezone.utc)
    due = dues_ledger.get_due_by_id(session, due_id, moment)

    if due.state == DueState.PAID:
        if due.gateway_session_id != session_id:
            raise ConflictError(
                f"Due #{due_id} was paid under a different checkout session.",
                context={"due_id": due_id},
            )
        return PaymentConfirmation(due=due, invoice=_issue_invoice(session, due), already_confirmed=True)

    status = gateway.get_session_status(session_id)
    # Any session opened for this due may settle it, not only the latest one.
    session_due_id = status.metadata.get("due_id")
    if session_due_id is not None:
        belongs = session_due_id == str(due.id)
    else:
        belongs = session_id == due.gateway_session_id
    if not belongs:
        raise ConflictError(
            f"Checkout session does not belong to due #{due_id}.",
            context={"due_id": due_id},
        )
    if not status.paid:
        raise PaymentNotCompletedError(
            f"Checkout session for due #{due_id} has not been paid.",
            context={"due_id": due_id},
        )
    terms = dues_ledger.ChargeTerms.from_metadata(status.metadata) or dues_ledger.recorded_terms(due, session_id)
    expected = terms.amount if terms is not None else Decimal(due.total_amount)
    if status.amount_paid < expected.quantize(Decimal("0.01")):
        raise ConflictError(
            f"Checkout session paid {status.amount_paid} but was opened for {expected}.",
            context={"due_id": due_id, "amount_paid": str(status.amount_paid)},
        )

    due, transitioned = dues_ledger.mark_paid(
        session,
        due_id,
        method=status.payment_method,
        reference=status.payment_reference or session_id,
        session_id=session_id,
        amount_paid=status.amount_paid,
        terms=terms,
        now=moment,
        actor_user_id=actor_user_id,
    )
    invoice = _issue_invoice(session, due)
    if transitioned:
        logger.info("Payment confirmed for due #%s; invoice %s issued", due.id, invoice.invoice_number)
    return PaymentConfirmation(due=due, invoice=invoice, already_confirmed=not transitioned)
