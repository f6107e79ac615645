from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import require_operator
from ..config import settings
from ..core.version import get_version_info

router = APIRouter()


@router.get("/health")
def health(db: Session = Depends(get_db)) -> Dict[str, Any]:
    db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "ok"}


@router.get("/version")
def version() -> Dict[str, str]:
    return asdict(get_version_info())


@router.get("/runtime", dependencies=[Depends(require_operator)])
def get_runtime_diagnostics() -> Dict[str, Any]:
    """Expose non-sensitive runtime settings for debugging."""
    return {
        "payment_backend": settings.payment_backend,
        "stripe_configured": bool(settings.stripe_api_key),
        "dues_currency": settings.dues_currency,
        "identity_service_url": settings.identity_service_url,
        "identity_page_size": settings.identity_page_size,
        "billable_resident_role": settings.billable_resident_role,
        "log_format": settings.log_format,
    }
