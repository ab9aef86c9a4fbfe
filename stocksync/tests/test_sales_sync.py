from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from stocksync.app.db.models.core_types import InvoiceStatus, InvoiceType, MovementType
from stocksync.app.schemas.raw import RawDetail, RawInvoice, parse_money, parse_portal_date, parse_quantity
from stocksync.services import inventory
from stocksync.services.errors import SyncAbortedError
from stocksync.services.sales import SalesInvoiceSync, normalize_invoice_status
from stocksync.tests.fakes import FakePortal


def _invoice(number, status="Completed", **extra):
    return {
        "invoiceNumber": number,
        "status": status,
        "invoiceDate": "02/20/2026",
        "customerName": "Corner Store",
        "enteredBy": "dispatch",
        "isComplete": True,
        "total": "$30.00",
        **extra,
    }


@pytest.fixture
def portal():
    return FakePortal(
        feeds={
            "pending": [_invoice("INV-1", status="Pending")],
            "closed": [_invoice("INV-2", status="")],
        },
        details={
            "INV-1": {"items": [{"sku": "SKU-A", "name": "Alpha Widget", "quantity": 1}]},
            "INV-2": {
                "items": [
                    {"sku": "SKU-A", "name": "Alpha Widget", "quantity": "15", "rate": "$4.00", "amount": "$60.00"},
                    {"sku": "SKU-B", "name": "Beta Gasket", "quantity": "2"},
                ],
                "subtotal": "$68.00",
                "tax": "$2.00",
                "total": "$70.00",
            },
        },
    )


@pytest.fixture
def sync(portal, clock):
    return SalesInvoiceSync(portal, clock=clock)


def test_both_feeds_are_listed(db_session, sync, portal):
    result = sync.sync_list(db_session, limit=10)

    assert (result.created, result.total) == (2, 2)
    assert [c[1] for c in portal.calls if c[0] == "fetch_list"] == ["pending", "closed"]

    pending = sync.get_record(db_session, "INV-1")
    closed = sync.get_record(db_session, "INV-2")
    assert (pending.invoice_type, pending.status) == (InvoiceType.pending, InvoiceStatus.pending)
    # flux "closed" sans statut affiché
    assert (closed.invoice_type, closed.status) == (InvoiceType.closed, InvoiceStatus.closed)
    assert closed.invoice_date == date(2026, 2, 20)
    assert closed.customer_name == "Corner Store"
    assert closed.is_complete is True
    assert closed.is_posted is False


def test_invoice_moves_from_pending_to_closed_feed(db_session, sync, portal):
    sync.sync_list(db_session)

    portal.feeds = {"pending": [], "closed": [_invoice("INV-1", status="Closed")]}
    result = sync.sync_list(db_session)

    assert result.updated == 1
    inv = sync.get_record(db_session, "INV-1")
    assert (inv.invoice_type, inv.status) == (InvoiceType.closed, InvoiceStatus.closed)


def test_closed_invoices_post_outbound_movements(db_session, sync, products):
    inventory.create_adjustment(db_session, sku="SKU-A", quantity=20, reason="inventaire", actor="alice")
    db_session.commit()

    result = sync.full_sync(db_session)

    # INV-1 reste en attente : seul INV-2 sort du stock
    assert result.stock.processed == 1
    assert result.stock.movements == 2

    inv = sync.get_record(db_session, "INV-2")
    assert inv.stock_processed is True
    assert (inv.subtotal, inv.tax, inv.total) == (Decimal("68.00"), Decimal("2.00"), Decimal("70.00"))
    assert sync.get_record(db_session, "INV-1").stock_processed is False

    moves = inventory.list_movements(db_session, "SKU-A")
    sale = next(m for m in moves if m.movement_type == MovementType.outbound)
    assert sale.quantity == 15
    assert sale.note == "Sale: Corner Store - INV-2"
    assert sale.source == "routestar"

    assert inventory.get_summary(db_session, "SKU-A").available_qty == 5
    assert inventory.get_summary(db_session, "SKU-B").available_qty == -2

    kinds = {(e.kind, e.sku) for e in result.events}
    assert ("low_stock", "SKU-A") in kinds
    assert ("negative_stock", "SKU-B") in kinds

    db_session.refresh(products["SKU-A"])
    assert products["SKU-A"].last_sale_price == Decimal("4.00")


def test_sales_are_replay_safe(db_session, sync, products):
    sync.full_sync(db_session)
    sync.requeue(db_session, "INV-2")
    sync.process_eligible(db_session)

    assert inventory.movement_totals(db_session, "SKU-A")["total_out"] == 15


def test_second_feed_unavailable_keeps_first_feed(db_session, sync, portal):
    portal.fail_on["fetch_list:closed"] = TimeoutError("closed invoices page timed out")

    with pytest.raises(SyncAbortedError) as excinfo:
        sync.sync_list(db_session)

    partial = excinfo.value.partial
    assert (partial.created, partial.total) == (1, 1)
    assert sync.get_record(db_session, "INV-1").invoice_number == "INV-1"


@pytest.mark.parametrize(
    "raw, default, expected",
    [
        ("Complete", InvoiceStatus.pending, InvoiceStatus.completed),
        ("closed", InvoiceStatus.pending, InvoiceStatus.closed),
        ("Canceled", InvoiceStatus.pending, InvoiceStatus.cancelled),
        ("", InvoiceStatus.closed, InvoiceStatus.closed),
        (None, InvoiceStatus.pending, InvoiceStatus.pending),
        ("Voided?", InvoiceStatus.closed, InvoiceStatus.pending),
    ],
)
def test_normalize_invoice_status(raw, default, expected):
    assert normalize_invoice_status(raw, default=default) == expected


# ---------- valeurs portail ----------
@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$1,234.50", Decimal("1234.50")),
        ("(12.00)", Decimal("-12.00")),
        ("", Decimal("0")),
        (None, Decimal("0")),
        (7, Decimal("7")),
        (2.5, Decimal("2.5")),
    ],
)
def test_parse_money(raw, expected):
    assert parse_money(raw) == expected


def test_parse_money_rejects_garbage():
    with pytest.raises(ValueError):
        parse_money("N/A")


def test_parse_portal_date():
    assert parse_portal_date("02/20/2026") == date(2026, 2, 20)
    assert parse_portal_date("2026-02-20") == date(2026, 2, 20)
    assert parse_portal_date("2026-02-20T10:30:00") == date(2026, 2, 20)
    assert parse_portal_date("someday") is None
    assert parse_portal_date("") is None


def test_parse_quantity():
    assert parse_quantity("1,200") == 1200
    assert parse_quantity("3.0") == 3
    assert parse_quantity(None) == 0
    with pytest.raises(ValueError):
        parse_quantity("2.5")


def test_raw_models_accept_both_casings():
    a = RawInvoice.model_validate({"invoice_number": "X1", "is_posted": None})
    b = RawInvoice.model_validate({"invoiceNumber": " X1 ", "isPosted": "true"})
    assert a.invoice_number == b.invoice_number == "X1"
    assert (a.is_posted, b.is_posted) == (False, True)

    detail = RawDetail.model_validate({"lineItems": [{"itemCode": "Q-1", "qty": 1}]})
    assert detail.line_items[0].code == "Q-1"
    # "qty" n'est pas un alias connu : quantité à 0, ignorée au passage en stock
    assert detail.line_items[0].quantity == 0

    with pytest.raises(ValidationError):
        RawDetail.model_validate({"items": [{"sku": "SKU-A", "quantity": "1.5"}]})
