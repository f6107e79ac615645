from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from ..api.dependencies import (
    ensure_can_access_due,
    ensure_can_access_resident,
    get_clock,
    get_db,
    get_identity_directory,
    get_payment_gateway,
    get_service_credentials,
)
from ..auth.jwt import Principal, get_current_principal, require_operator
from ..core.errors import NotFoundError
from ..schemas.schemas import (
    BulkGenerateRead,
    CheckoutSessionRead,
    ConfirmPaymentRequest,
    DelinquencySummaryRead,
    DelinquencySweepRead,
    DueCreate,
    DueCreateRead,
    DueRead,
    InvoiceRead,
    PaymentConfirmationRead,
    PeriodPayload,
    ReconciliationRead,
    ReconciliationStatisticsRead,
    ResidentDuesRead,
    ResidentDuesSummaryRead,
    ResidentViewRead,
)
from ..services import checkout, dues_ledger, invoices, reconciliation
from ..services.delinquency import BillingPeriod
from ..services.identity import IdentityDirectory, ServiceCredentials, fetch_billable_roster
from ..services.payment_gateway import PaymentGateway

router = APIRouter()


def _resident_history(db: Session, resident_id: str, now: datetime) -> ResidentDuesRead:
    dues = dues_ledger.list_dues_for_resident(db, resident_id, now)
    summary = dues_ledger.summarize_resident(dues)
    return ResidentDuesRead(
        resident_id=resident_id,
        summary=ResidentDuesSummaryRead.model_validate(summary),
        dues=[DueRead.model_validate(due) for due in dues],
    )


def _resolve_identity(
    payload: DueCreate,
    principal: Principal,
    directory: IdentityDirectory,
    credentials: ServiceCredentials,
) -> tuple[str, str]:
    if payload.resident_name and payload.resident_email:
        return payload.resident_name, str(payload.resident_email)
    if principal.user_id == payload.resident_id and principal.email:
        return payload.resident_name or principal.full_name, str(payload.resident_email or principal.email)
    roster = fetch_billable_roster(directory, credentials)
    resident = next((entry for entry in roster if entry.id == payload.resident_id), None)
    if resident is None:
        raise NotFoundError(f"Resident {payload.resident_id} is not a billable resident.")
    return payload.resident_name or resident.full_name, str(payload.resident_email or resident.email)


@router.post("", response_model=DueCreateRead)
def create_due(
    payload: DueCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    directory: IdentityDirectory = Depends(get_identity_directory),
    credentials: ServiceCredentials = Depends(get_service_credentials),
    now: datetime = Depends(get_clock),
) -> DueCreateRead:
    ensure_can_access_resident(principal, payload.resident_id)
    resident_name, resident_email = _resolve_identity(payload, principal, directory, credentials)
    due, created = dues_ledger.create_due(
        db,
        resident_id=payload.resident_id,
        resident_name=resident_name,
        resident_email=resident_email,
        period=BillingPeriod(payload.year, payload.month),
        now=now,
        actor_user_id=principal.user_id,
    )
    return DueCreateRead(due=DueRead.model_validate(due), created=created)


@router.get("/me", response_model=ResidentDuesRead)
def list_my_dues(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_clock),
) -> ResidentDuesRead:
    return _resident_history(db, principal.user_id, now)


@router.get("/residents/{resident_id}", response_model=ResidentDuesRead)
def list_resident_dues(
    resident_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_clock),
) -> ResidentDuesRead:
    ensure_can_access_resident(principal, resident_id)
    return _resident_history(db, resident_id, now)


@router.get("/residents/{resident_id}/{year}/{month}", response_model=ResidentViewRead)
def get_resident_view(
    resident_id: str,
    year: int = Path(..., ge=2000, le=9999),
    month: int = Path(..., ge=1, le=12),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    directory: IdentityDirectory = Depends(get_identity_directory),
    credentials: ServiceCredentials = Depends(get_service_credentials),
    now: datetime = Depends(get_clock),
) -> ResidentViewRead:
    ensure_can_access_resident(principal, resident_id)
    view = reconciliation.get_resident_view(
        db, directory, resident_id, BillingPeriod(year, month), credentials, now
    )
    return ResidentViewRead.model_validate(view)


@router.get("/reconcile/{year}/{month}", response_model=ReconciliationRead)
def reconcile_period(
    year: int = Path(..., ge=2000, le=9999),
    month: int = Path(..., ge=1, le=12),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_operator),
    directory: IdentityDirectory = Depends(get_identity_directory),
    credentials: ServiceCredentials = Depends(get_service_credentials),
    now: datetime = Depends(get_clock),
) -> ReconciliationRead:
    result = reconciliation.reconcile(db, directory, BillingPeriod(year, month), credentials, now)
    return ReconciliationRead(
        period=result.period.label,
        statistics=ReconciliationStatisticsRead.model_validate(result.statistics),
        residents=[ResidentViewRead.model_validate(view) for view in result.residents],
    )


@router.post("/bulk-generate", response_model=BulkGenerateRead)
def bulk_generate(
    payload: PeriodPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_operator),
    directory: IdentityDirectory = Depends(get_identity_directory),
    credentials: ServiceCredentials = Depends(get_service_credentials),
    now: datetime = Depends(get_clock),
) -> BulkGenerateRead:
    result = reconciliation.bulk_generate(
        db,
        directory,
        BillingPeriod(payload.year, payload.month),
        credentials,
        now=now,
        actor_user_id=principal.user_id,
    )
    return BulkGenerateRead(
        period=result.period.label,
        total=result.total,
        created=result.created,
        existing=result.existing,
        created_due_ids=result.created_due_ids,
        skipped=result.skipped,
    )


@router.post("/delinquency/sweep", response_model=DelinquencySweepRead)
def run_delinquency_sweep(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_operator),
    now: datetime = Depends(get_clock),
) -> DelinquencySweepRead:
    updated_ids = dues_ledger.refresh_delinquency(db, now=now, actor_user_id=principal.user_id)
    return DelinquencySweepRead(updated=len(updated_ids), updated_due_ids=updated_ids)


@router.get("/delinquency/summary", response_model=DelinquencySummaryRead)
def get_delinquency_summary(
    db: Session = Depends(get_db),
    _: Principal = Depends(require_operator),
    now: datetime = Depends(get_clock),
) -> DelinquencySummaryRead:
    summary = dues_ledger.delinquency_summary(db, now)
    return DelinquencySummaryRead(
        total_delinquent=summary.total_delinquent,
        total_penalty=summary.total_penalty,
        total_outstanding=summary.total_outstanding,
        average_delinquent_days=summary.average_delinquent_days,
        by_period=summary.by_period,
        dues=[DueRead.model_validate(due) for due in summary.dues],
    )


@router.post("/{due_id}/checkout-session", response_model=CheckoutSessionRead)
def create_checkout_session(
    due_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    now: datetime = Depends(get_clock),
) -> CheckoutSessionRead:
    due = dues_ledger.get_due_by_id(db, due_id, now)
    ensure_can_access_due(principal, due)
    result = checkout.create_checkout_session(db, gateway, due_id, now=now, actor_user_id=principal.user_id)
    return CheckoutSessionRead.model_validate(result)


@router.post("/{due_id}/confirm-payment", response_model=PaymentConfirmationRead)
def confirm_payment(
    due_id: int,
    payload: ConfirmPaymentRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    now: datetime = Depends(get_clock),
) -> PaymentConfirmationRead:
    due = dues_ledger.get_due_by_id(db, due_id, now)
    ensure_can_access_due(principal, due)
    confirmation = checkout.confirm_payment(
        db, gateway, due_id, payload.session_id, now=now, actor_user_id=principal.user_id
    )
    return PaymentConfirmationRead(
        due=DueRead.model_validate(confirmation.due),
        invoice=InvoiceRead.model_validate(confirmation.invoice),
        already_confirmed=confirmation.already_confirmed,
    )


@router.get("/{due_id}/invoice", response_model=InvoiceRead)
def get_invoice(
    due_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_clock),
) -> InvoiceRead:
    due = dues_ledger.get_due_by_id(db, due_id, now)
    ensure_can_access_due(principal, due)
    return InvoiceRead.model_validate(invoices.compose(db, due))


@router.get("/{due_id}/invoice.pdf")
def download_invoice_pdf(
    due_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_clock),
) -> FileResponse:
    due = dues_ledger.get_due_by_id(db, due_id, now)
    ensure_can_access_due(principal, due)
    invoice = invoices.compose(db, due)
    pdf_path: Optional[str] = invoices.render_pdf(invoice)
    if not pdf_path:
        raise HTTPException(status_code=500, detail="Unable to render invoice")
    return FileResponse(pdf_path, media_type="application/pdf", filename=f"{invoice.invoice_number}.pdf")
