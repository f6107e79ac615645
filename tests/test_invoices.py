from decimal import Decimal
from pathlib import Path

import pytest

from conftest import at
from dues_service.constants import PENALTY_LINE_ITEM_KEY
from dues_service.core.errors import InvalidStateError
from dues_service.services import dues_ledger, invoices
from dues_service.services.dues_configuration import add_concept, update_concept_amounts


def _pay(db_session, due, when):
    paid, _ = dues_ledger.mark_paid(
        db_session, due.id, method="card", reference="pi_123", session_id="cs_123", now=when
    )
    return paid


def test_invoice_for_unpaid_due_is_rejected(db_session, create_due):
    due = create_due()

    with pytest.raises(InvalidStateError):
        invoices.compose(db_session, due)


def test_invoice_lists_concepts_and_totals(db_session, create_due):
    due = _pay(db_session, create_due(), at(2025, 1, 5))

    invoice = invoices.compose(db_session, due)

    assert invoice.invoice_number == f"INV-202501-{due.id:06d}"
    assert [item.key for item in invoice.line_items] == ["administracion", "mantenimiento", "seguridad", "limpieza"]
    assert invoice.subtotal == Decimal("100.00")
    assert invoice.penalty_amount == Decimal("0.00")
    assert invoice.total == Decimal("100.00")
    assert invoice.used_configuration_snapshot is True
    assert invoice.period == "2025-01"


def test_invoice_includes_penalty_line(db_session, create_due):
    due = _pay(db_session, create_due(), at(2025, 1, 20))

    invoice = invoices.compose(db_session, due)

    penalty_line = invoice.line_items[-1]
    assert penalty_line.key == PENALTY_LINE_ITEM_KEY
    assert penalty_line.amount == Decimal("5.00")
    assert invoice.total == Decimal("105.00")
    assert sum(item.amount for item in invoice.line_items) == invoice.total


def test_invoice_is_deterministic(db_session, create_due):
    due = _pay(db_session, create_due(), at(2025, 1, 20))

    assert invoices.compose(db_session, due) == invoices.compose(db_session, due)


def test_invoice_uses_snapshot_after_configuration_changes(db_session, create_due):
    due = _pay(db_session, create_due(), at(2025, 1, 5))
    before = invoices.compose(db_session, due)

    update_concept_amounts(db_session, {"seguridad": Decimal("45.00")}, actor_user_id="admin-1")
    add_concept(db_session, key="jardineria", label="Gardening", amount=Decimal("15.00"), actor_user_id="admin-1")
    after = invoices.compose(db_session, due)

    assert after == before
    assert all(item.key != "jardineria" for item in after.line_items)


def test_invoice_falls_back_to_current_configuration(db_session, create_due):
    due = _pay(db_session, create_due(), at(2025, 1, 5))
    update_concept_amounts(db_session, {"limpieza": Decimal("25.00")}, actor_user_id="admin-1")
    due.configuration_version_id = None
    db_session.commit()
    db_session.refresh(due)

    invoice = invoices.compose(db_session, due)

    assert invoice.used_configuration_snapshot is False
    adjustment = [item for item in invoice.line_items if item.key == invoices.ADJUSTMENT_LINE_ITEM_KEY]
    assert adjustment and adjustment[0].amount == Decimal("-15.00")
    assert invoice.total == Decimal("100.00")
    assert sum(item.amount for item in invoice.line_items) == invoice.total


def test_render_pdf_writes_file(db_session, create_due):
    due = _pay(db_session, create_due(), at(2025, 1, 20))

    pdf_path = invoices.render_pdf(invoices.compose(db_session, due))

    path = Path(pdf_path)
    assert path.exists()
    assert path.name == f"INV-202501-{due.id:06d}.pdf"
    assert path.read_bytes().startswith(b"%PDF")
