from datetime import datetime, timezone
from typing import Generator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..auth.jwt import Principal, get_current_principal
from ..config import SessionLocal
from ..core.request_context import get_request_id
from ..models.models import Due
from ..services.identity import IdentityDirectory, IdentityServiceClient, ServiceCredentials
from ..services.payment_gateway import PaymentGateway, build_payment_gateway


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_identity_directory() -> IdentityDirectory:
    return IdentityServiceClient()


def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway()


def get_clock() -> datetime:
    return datetime.now(timezone.utc)


def get_service_credentials(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> ServiceCredentials:
    return ServiceCredentials(bearer_token=principal.token, request_id=get_request_id(request))


def ensure_can_access_due(principal: Principal, due: Due) -> None:
    if principal.is_operator:
        return
    if principal.is_resident and due.resident_id == principal.user_id:
        return
    raise HTTPException(status_code=403, detail="Not authorized for this due")


def ensure_can_access_resident(principal: Principal, resident_id: str) -> None:
    if principal.is_operator:
        return
    if principal.is_resident and resident_id == principal.user_id:
        return
    raise HTTPException(status_code=403, detail="Not authorized for this resident")
