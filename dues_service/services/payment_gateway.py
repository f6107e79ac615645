from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Optional, Protocol, Tuple

import stripe

from ..config import settings
from ..core.errors import NotFoundError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


class PaymentBackend(str, Enum):
    LOCAL = "local"
    STRIPE = "stripe"


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    paid: bool
    amount_paid: Decimal
    payment_reference: Optional[str] = None
    payment_method: str = "card"
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def create_session(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        *,
        description: str,
        customer_email: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession: ...

    def get_session_status(self, session_id: str) -> SessionStatus: ...


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(amount_cents: int) -> Decimal:
    return (Decimal(amount_cents) / Decimal("100")).quantize(Decimal("0.01"))


def _metadata_dict(metadata) -> Dict[str, str]:
    if not metadata:
        return {}
    return {key: str(metadata[key]) for key in metadata.keys()}


class StripeCheckoutGateway:
    """Hosted checkout through Stripe; the API key is passed per call, never set globally."""

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("A Stripe API key is required for the Stripe payment backend.")
        self._api_key = api_key

    def create_session(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        *,
        description: str,
        customer_email: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "unit_amount": to_cents(amount),
                            "product_data": {"name": description},
                        },
                        "quantity": 1,
                    }
                ],
                customer_email=customer_email,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed: %s", exc)
            raise UpstreamUnavailableError("Unable to create Stripe Checkout session.", upstream="stripe") from exc
        return CheckoutSession(session_id=session.id, redirect_url=session.url)

    def get_session_status(self, session_id: str) -> SessionStatus:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            raise NotFoundError(f"Checkout session {session_id} not found.") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe session lookup failed for %s: %s", session_id, exc)
            raise UpstreamUnavailableError("Unable to verify Stripe Checkout session.", upstream="stripe") from exc
        return SessionStatus(
            session_id=session.id,
            paid=session.payment_status == "paid",
            amount_paid=from_cents(session.amount_total or 0),
            payment_reference=session.payment_intent if isinstance(session.payment_intent, str) else None,
            payment_method="stripe",
            metadata=_metadata_dict(session.metadata),
        )


class LocalCheckoutGateway:
    """Development backend: sessions are considered paid as soon as they exist."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Tuple[Decimal, Dict[str, str]]] = {}
        self._lock = threading.Lock()

    def create_session(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        *,
        description: str,
        customer_email: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        session_id = f"cs_local_{uuid.uuid4().hex}"
        with self._lock:
            self._sessions[session_id] = (Decimal(amount).quantize(Decimal("0.01")), dict(metadata))
        return CheckoutSession(
            session_id=session_id,
            redirect_url=success_url.replace("{CHECKOUT_SESSION_ID}", session_id),
        )

    def get_session_status(self, session_id: str) -> SessionStatus:
        with self._lock:
            entry = self._sessions.get(session_id)
        if entry is None:
            raise NotFoundError(f"Checkout session {session_id} not found.")
        amount, metadata = entry
        return SessionStatus(
            session_id=session_id,
            paid=True,
            amount_paid=amount,
            payment_reference=f"LOCAL-{session_id[-12:]}",
            payment_method="local",
            metadata=metadata,
        )


local_gateway = LocalCheckoutGateway()


def build_payment_gateway() -> PaymentGateway:
    backend_name = (settings.payment_backend or "local").lower().strip()
    if backend_name == PaymentBackend.STRIPE.value:
        if not settings.stripe_api_key:
            raise UpstreamUnavailableError("Stripe is not configured.", upstream="stripe")
        return StripeCheckoutGateway(settings.stripe_api_key)
    return local_gateway
