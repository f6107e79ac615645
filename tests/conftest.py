import math
import sys
import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dues_service.config import Base  # noqa: E402
import dues_service.config as app_config  # noqa: E402
import dues_service.main as app_main  # noqa: E402
from dues_service.auth.jwt import Principal  # noqa: E402
# Import the full models module so all tables (including audit_logs) register with Base metadata.
from dues_service.models import models as _all_models  # noqa: E402,F401
from dues_service.models.models import Due  # noqa: E402
from dues_service.services import dues_ledger  # noqa: E402
from dues_service.services.delinquency import BillingPeriod  # noqa: E402
from dues_service.services.dues_configuration import (  # noqa: E402
    ensure_dues_configuration,
    get_or_create_delinquency_policy,
)
from dues_service.core.errors import NotFoundError, UpstreamUnavailableError  # noqa: E402
from dues_service.services.identity import Resident, RosterPage, ServiceCredentials  # noqa: E402
from dues_service.services.payment_gateway import CheckoutSession, SessionStatus  # noqa: E402

JANUARY_2025 = BillingPeriod(2025, 1)


class FakeIdentityDirectory:
    """In-memory stand-in for the identity service's paginated user listing."""

    def __init__(self, residents: List[Resident], fail_on_page: Optional[int] = None) -> None:
        self.residents = residents
        self.fail_on_page = fail_on_page
        self.calls: List[Tuple[int, int, Optional[str], ServiceCredentials]] = []

    def list_residents(self, page, page_size, role_filter, credentials) -> RosterPage:
        self.calls.append((page, page_size, role_filter, credentials))
        if self.fail_on_page is not None and page == self.fail_on_page:
            raise UpstreamUnavailableError("Identity service is unreachable.", upstream="identity")
        matching = [resident for resident in self.residents if not role_filter or resident.role == role_filter]
        start = (page - 1) * page_size
        total_pages = math.ceil(len(matching) / page_size) if matching else 0
        return RosterPage(items=matching[start : start + page_size], total_pages=total_pages)


class FakePaymentGateway:
    """Records sessions and reports them paid unless told otherwise."""

    def __init__(self, pay_immediately: bool = True) -> None:
        self.pay_immediately = pay_immediately
        self.sessions: Dict[str, Dict] = {}
        self.created: List[Dict] = []

    def create_session(self, amount, currency, metadata, *, description, customer_email, success_url, cancel_url):
        session_id = f"cs_test_{uuid.uuid4().hex[:12]}"
        self.sessions[session_id] = {
            "amount": Decimal(amount),
            "metadata": dict(metadata),
            "paid": self.pay_immediately,
            "amount_paid": Decimal(amount),
        }
        self.created.append({"session_id": session_id, "amount": Decimal(amount), "currency": currency})
        return CheckoutSession(session_id=session_id, redirect_url=f"https://checkout.test/{session_id}")

    def mark_paid(self, session_id: str, amount_paid: Optional[Decimal] = None) -> None:
        self.sessions[session_id]["paid"] = True
        if amount_paid is not None:
            self.sessions[session_id]["amount_paid"] = amount_paid

    def get_session_status(self, session_id: str) -> SessionStatus:
        entry = self.sessions.get(session_id)
        if entry is None:
            raise NotFoundError(f"Checkout session {session_id} not found.")
        return SessionStatus(
            session_id=session_id,
            paid=entry["paid"],
            amount_paid=entry["amount_paid"] if entry["paid"] else Decimal("0.00"),
            payment_reference=f"pi_{session_id[-8:]}",
            payment_method="card",
            metadata=entry["metadata"],
        )


def make_resident(index: int, role: str = "USER_CASUAL") -> Resident:
    return Resident(
        id=f"res-{index:03d}",
        first_name="Resident",
        last_name=f"{index:03d}",
        email=f"resident{index:03d}@example.com",
        role=role,
    )


def at(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def _configure_global_test_db(tmp_path_factory):
    """Configure the app-wide SessionLocal/engine so TestClient uses a DB with all tables."""
    db_dir = tmp_path_factory.mktemp("globaldb")
    db_path = db_dir / "app.db"
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    app_config.SessionLocal = SessionLocal
    app_config.engine = engine
    app_main.SessionLocal = SessionLocal
    app_main.engine = engine
    yield
    engine.dispose()


@pytest.fixture(autouse=True)
def _pdf_output_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(app_config.settings, "pdf_output_dir", str(tmp_path / "pdfs"))


@pytest.fixture
def db_session(tmp_path) -> Generator[Session, None, None]:
    """Provide a fresh SQLite database, seeded with the default dues configuration, for each test."""
    db_path = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    ensure_dues_configuration(session)
    get_or_create_delinquency_policy(session)
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def create_due(db_session: Session) -> Callable[..., Due]:
    def _create(
        resident: Optional[Resident] = None,
        period: BillingPeriod = JANUARY_2025,
        now: Optional[datetime] = None,
    ) -> Due:
        resident = resident or make_resident(1)
        due, _ = dues_ledger.create_due(
            db_session,
            resident_id=resident.id,
            resident_name=resident.full_name,
            resident_email=resident.email,
            period=period,
            now=now or at(period.year, period.month, 1),
        )
        return due

    return _create


@pytest.fixture
def roster() -> List[Resident]:
    return [make_resident(index) for index in range(1, 6)]


@pytest.fixture
def identity_directory(roster) -> FakeIdentityDirectory:
    return FakeIdentityDirectory(roster)


@pytest.fixture
def payment_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def credentials() -> ServiceCredentials:
    return ServiceCredentials(bearer_token="token-123", request_id="req-1")


@pytest.fixture
def operator() -> Principal:
    return Principal(user_id="admin-1", roles=["USER_ADMIN"], email="admin@example.com", token="token-123")


@pytest.fixture
def resident_principal() -> Principal:
    resident = make_resident(1)
    return Principal(
        user_id=resident.id,
        roles=["USER_CASUAL"],
        email=resident.email,
        first_name=resident.first_name,
        last_name=resident.last_name,
        token="token-456",
    )
