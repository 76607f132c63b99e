from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from retailpos.app.checkout import CheckoutStep
from retailpos.app.commit import CommitEngine, CommitOutcome
from retailpos.app.deps import get_business_id
from retailpos.app.errors import (
    CheckoutValidationError,
    CommitInProgress,
    InsufficientStock,
    ReferenceNotFound,
    SessionNotFound,
)
from retailpos.app.flow import SessionRegistry
from retailpos.app.models import Customer, Product
from retailpos.app.routers import pos as pos_router
from retailpos.app.stores.memory import MemoryStore

BIZ = "biz-1"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    s = MemoryStore()
    s.put_product(BIZ, Product(id="rice", name="Rice", unit_price=Decimal("1000"), stock=3, low_stock_threshold=1))
    s.put_product(BIZ, Product(id="oil", name="Oil", unit_price=Decimal("500"), stock=10))
    s.put_customer(BIZ, Customer(id="c1", name="Ada"))
    return s


@pytest.fixture
def registry():
    return SessionRegistry(default_tax_rate=Decimal("7.5"))


def _open(registry):
    out = pos_router.open_session(business_id=BIZ, registry=registry)
    return registry.get(BIZ, out["session"]["id"])


def test_full_sale(store, registry):
    flow = _open(registry)
    out = pos_router.add_line(pos_router.LineIn(item_id="rice", quantity=2), flow=flow, store=store)
    assert out["notices"] == []
    pos_router.add_line(pos_router.LineIn(item_id="oil"), flow=flow, store=store)

    out = pos_router.enter_checkout_step(CheckoutStep.REVIEWING, flow=flow)
    assert out["decision"]["step"] == "payment"
    assert out["receipt_number"] is None

    pos_router.set_payment_method(pos_router.PaymentMethodSetIn(payment_method="card"), flow=flow)
    pos_router.set_customer(pos_router.CustomerSetIn(customer_id="c1"), flow=flow, store=store)
    pos_router.set_discount(pos_router.DiscountIn(amount=Decimal("200")), flow=flow)

    out = pos_router.enter_checkout_step(CheckoutStep.REVIEWING, flow=flow)
    assert out["decision"]["redirected"] is False
    held = out["receipt_number"]
    assert held.startswith("ZN-")

    engine = CommitEngine(store, clock=lambda: NOW)
    out = pos_router.commit_sale(flow=flow, engine=engine)
    assert out["ok"] is True
    assert out["receipt"]["receipt_number"] == held
    assert out["receipt"]["payment_method"] == "Card (External POS)"
    assert Decimal(out["receipt"]["total"]) == Decimal("2472.50")
    assert [p["id"] for p in out["low_stock"]] == ["rice"]
    assert out["session"]["step"] == "completed"
    assert out["session"]["cart"]["lines"] == []

    assert store.get_product(BIZ, "rice").stock == 1
    assert store.get_customer(BIZ, "c1").purchase_count == 1
    listed = pos_router.list_receipts(limit=10, business_id=BIZ, store=store)
    assert [r["receipt_number"] for r in listed["receipts"]] == [held]

    # The next change starts a new sale.
    pos_router.add_line(pos_router.LineIn(item_id="oil"), flow=flow, store=store)
    assert flow.step == CheckoutStep.SELECTING_PRODUCTS
    assert flow.last_receipt is None


def test_commit_not_ready_raises_validation_error(store, registry):
    flow = _open(registry)
    with pytest.raises(CheckoutValidationError) as ex:
        pos_router.commit_sale(flow=flow, engine=CommitEngine(store))
    assert ex.value.reason == "empty_cart"
    assert flow.step == CheckoutStep.SELECTING_PRODUCTS


def test_commit_failure_keeps_session_and_receipt_number(store, registry):
    flow = _open(registry)
    pos_router.add_line(pos_router.LineIn(item_id="rice", quantity=3), flow=flow, store=store)
    pos_router.set_payment_method(pos_router.PaymentMethodSetIn(payment_method="cash"), flow=flow)
    pos_router.enter_checkout_step(CheckoutStep.REVIEWING, flow=flow)
    held = flow.receipt_number

    store.put_product(BIZ, Product(id="rice", name="Rice", unit_price=Decimal("1000"), stock=1))
    with pytest.raises(InsufficientStock):
        pos_router.commit_sale(flow=flow, engine=CommitEngine(store))

    assert flow.session.quantity_of("rice") == 3
    assert flow.receipt_number == held
    assert flow.step == CheckoutStep.REVIEWING
    assert not flow.in_flight


def test_add_line_clamps_and_reports_notice(store, registry):
    flow = _open(registry)
    out = pos_router.add_line(pos_router.LineIn(item_id="rice", quantity=5), flow=flow, store=store)
    assert out["session"]["cart"]["lines"][0]["quantity"] == 3
    assert out["notices"][0]["kind"] == "stock_limit_reached"


def test_quantity_update_clamps_against_fresh_stock(store, registry):
    flow = _open(registry)
    pos_router.add_line(pos_router.LineIn(item_id="oil", quantity=2), flow=flow, store=store)
    store.put_product(BIZ, Product(id="oil", name="Oil", unit_price=Decimal("500"), stock=4))
    out = pos_router.update_line_quantity("oil", pos_router.QuantityIn(quantity=8), flow=flow, store=store)
    assert out["session"]["cart"]["lines"][0]["quantity"] == 4

    out = pos_router.update_line_quantity("oil", pos_router.QuantityIn(quantity=0), flow=flow, store=store)
    assert out["session"]["cart"]["lines"] == []


def test_unknown_product_and_customer(store, registry):
    flow = _open(registry)
    with pytest.raises(ReferenceNotFound):
        pos_router.add_line(pos_router.LineIn(item_id="ghost"), flow=flow, store=store)
    with pytest.raises(ReferenceNotFound):
        pos_router.set_customer(pos_router.CustomerSetIn(customer_id="ghost"), flow=flow, store=store)
    with pytest.raises(ReferenceNotFound):
        pos_router.get_receipt("nope", business_id=BIZ, store=store)


def test_sessions_are_scoped_by_business(registry):
    flow = _open(registry)
    with pytest.raises(SessionNotFound):
        registry.get("other-biz", flow.id)
    pos_router.cancel_session(flow.id, business_id=BIZ, registry=registry)
    assert len(registry) == 0


class _ReentrantEngine:
    """Tries to change the cart while its own commit is running."""

    def __init__(self, flow, store):
        self.flow = flow
        self.store = store
        self.seen = None

    def commit(self, business_id, session, receipt_number, cancel=None):
        try:
            pos_router.add_line(pos_router.LineIn(item_id="oil"), flow=self.flow, store=self.store)
        except CommitInProgress as ex:
            self.seen = ex
        return CommitOutcome(error=CheckoutValidationError("empty_cart"))


def test_mutations_refused_while_commit_in_flight(store, registry):
    flow = _open(registry)
    pos_router.add_line(pos_router.LineIn(item_id="rice"), flow=flow, store=store)
    pos_router.set_payment_method(pos_router.PaymentMethodSetIn(payment_method="cash"), flow=flow)
    engine = _ReentrantEngine(flow, store)

    with pytest.raises(CheckoutValidationError):
        pos_router.commit_sale(flow=flow, engine=engine)
    assert isinstance(engine.seen, CommitInProgress)
    assert flow.session.quantity_of("oil") == 0


def test_business_id_header_is_required():
    assert get_business_id(" biz-1 ") == "biz-1"
    with pytest.raises(HTTPException) as ex:
        get_business_id(None)
    assert ex.value.status_code == 400
