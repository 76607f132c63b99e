import asyncio
import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from retailpos.app.cart import POSSession
from retailpos.app.commit import CancelToken, CommitEngine
from retailpos.app.errors import (
    CheckoutValidationError,
    CommitCancelled,
    CommitFailed,
    InsufficientStock,
    PersistenceUnavailable,
    ReferenceNotFound,
)
from retailpos.app.models import Customer, CustomerRef, Product
from retailpos.app.stores.memory import MemoryStore
from retailpos.app.stores.simulation import LocalSimulationStore

BIZ = "biz-1"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _store(stock=10, threshold=2):
    store = MemoryStore()
    store.put_product(BIZ, Product(id="p1", name="Rice", unit_price=Decimal("1000"), stock=stock, low_stock_threshold=threshold))
    store.put_product(BIZ, Product(id="p2", name="Oil", unit_price=Decimal("500"), stock=stock, low_stock_threshold=threshold))
    store.put_customer(BIZ, Customer(id="c1", name="Ada", total_spent=Decimal("100.00"), purchase_count=4))
    return store


def _session(store, qty1=2, qty2=1, payment="cash", customer=None):
    s = POSSession(default_tax_rate=Decimal("7.5"))
    s.add_line(store.get_product(BIZ, "p1"), qty1)
    if qty2:
        s.add_line(store.get_product(BIZ, "p2"), qty2)
    if payment:
        s.set_payment_method(payment)
    if customer:
        s.set_customer(CustomerRef(customer, "Ada"))
    return s


def _engine(store, attempts=5):
    return CommitEngine(store, max_attempts=attempts, clock=lambda: NOW)


def test_commit_with_customer_updates_stock_customer_and_receipt():
    store = _store()
    s = _session(store, customer="c1")
    s.set_discount(Decimal("200"))
    total = s.total

    outcome = _engine(store).commit(BIZ, s, "ZN-20240501-AB12C")
    assert outcome.ok, outcome.error

    r = outcome.receipt
    assert r.total == total == Decimal("2472.50")
    assert r.subtotal == Decimal("2500")
    assert r.tax_amount == Decimal("172.50")
    assert r.receipt_number == "ZN-20240501-AB12C"
    assert r.payment_method == "Cash"
    assert r.customer_id == "c1"
    assert r.issued_at == NOW
    assert not r.simulated

    c = store.get_customer(BIZ, "c1")
    assert c.total_spent == Decimal("100.00") + total
    assert c.purchase_count == 5
    assert c.last_purchase_at == NOW

    assert store.get_product(BIZ, "p1").stock == 8
    assert store.get_product(BIZ, "p1").last_sale_at == NOW
    assert store.get_product(BIZ, "p2").stock == 9
    assert store.get_receipt(BIZ, r.id) == r
    assert store.list_receipts(BIZ) == [r]


def test_walk_in_commit_leaves_customers_alone():
    store = _store()
    outcome = _engine(store).commit(BIZ, _session(store), "ZN-1")
    assert outcome.ok
    assert outcome.receipt.customer_id is None
    assert store.get_customer(BIZ, "c1").purchase_count == 4


def test_insufficient_stock_aborts_without_partial_writes():
    store = _store(stock=3)
    s = _session(store, qty1=1, qty2=3)
    # Stock moves underneath the open cart.
    store.put_product(BIZ, Product(id="p2", name="Oil", unit_price=Decimal("500"), stock=2))

    outcome = _engine(store).commit(BIZ, s, "ZN-2")
    assert not outcome.ok
    assert isinstance(outcome.error, InsufficientStock)
    assert outcome.error.item_id == "p2"
    assert outcome.error.available == 2
    assert outcome.error.requested == 3

    assert store.get_product(BIZ, "p1").stock == 3
    assert store.get_product(BIZ, "p2").stock == 2
    assert store.list_receipts(BIZ) == []
    # The session is untouched so the cashier can fix the line.
    assert s.quantity_of("p2") == 3


def test_deleted_product_is_reported_as_insufficient_stock():
    store = _store()
    s = _session(store, qty2=0)
    other = MemoryStore()
    outcome = _engine(other).commit(BIZ, s, "ZN-3")
    assert isinstance(outcome.error, InsufficientStock)
    assert outcome.error.available == 0


def test_unknown_customer_is_rejected():
    store = _store()
    s = _session(store, customer="ghost")
    outcome = _engine(store).commit(BIZ, s, "ZN-4")
    assert isinstance(outcome.error, ReferenceNotFound)
    assert store.get_product(BIZ, "p1").stock == 10


def test_empty_cart_and_missing_payment_are_validation_errors():
    store = _store()
    outcome = _engine(store).commit(BIZ, POSSession(), "ZN-5")
    assert isinstance(outcome.error, CheckoutValidationError)
    assert outcome.error.reason == "empty_cart"

    outcome = _engine(store).commit(BIZ, _session(store, payment=None), "ZN-5")
    assert outcome.error.reason == "missing_payment_method"
    assert outcome.to_dict()["error"]["detail"] == "checkout_not_ready"


def test_cancelled_commit_writes_nothing():
    store = _store()
    token = CancelToken()
    token.cancel()
    outcome = _engine(store).commit(BIZ, _session(store), "ZN-6", cancel=token)
    assert isinstance(outcome.error, CommitCancelled)
    assert store.get_product(BIZ, "p1").stock == 10


class _AlwaysConflicting(MemoryStore):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    def _apply(self, tx):
        self.attempts += 1
        return False


def test_exhausted_retries_become_commit_failed():
    store = _AlwaysConflicting()
    store.put_product(BIZ, Product(id="p1", name="Rice", unit_price=Decimal("1000"), stock=10))
    s = POSSession()
    s.add_line(store.get_product(BIZ, "p1"), 1)
    s.set_payment_method("cash")

    outcome = _engine(store, attempts=3).commit(BIZ, s, "ZN-7")
    assert isinstance(outcome.error, CommitFailed)
    assert outcome.error.attempts == 3
    assert outcome.error.status_code == 503
    assert store.attempts == 3
    assert store.get_product(BIZ, "p1").stock == 10
    assert s.quantity_of("p1") == 1


class _RacingStore(MemoryStore):
    """Holds every thread's first apply until all of them have read their stock."""

    def __init__(self, parties):
        super().__init__()
        self._barrier = threading.Barrier(parties)
        self._local = threading.local()

    def _apply(self, tx):
        if not getattr(self._local, "waited", False):
            self._local.waited = True
            self._barrier.wait(timeout=5)
        return super()._apply(tx)


def test_concurrent_commits_never_oversell():
    store = _RacingStore(2)
    store.put_product(BIZ, Product(id="p1", name="Rice", unit_price=Decimal("1000"), stock=3))
    engine = _engine(store)
    outcomes = []

    def sell():
        s = POSSession()
        s.add_line(store.get_product(BIZ, "p1"), 2)
        s.set_payment_method("cash")
        outcomes.append(engine.commit(BIZ, s, "ZN-8"))

    threads = [threading.Thread(target=sell) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    ok = [o for o in outcomes if o.ok]
    failed = [o for o in outcomes if not o.ok]
    assert len(ok) == 1
    assert len(failed) == 1
    assert isinstance(failed[0].error, InsufficientStock)
    assert failed[0].error.available == 1
    assert store.get_product(BIZ, "p1").stock == 1
    assert len(store.list_receipts(BIZ)) == 1


def test_low_stock_products_are_reported():
    store = _store(stock=3, threshold=2)
    outcome = _engine(store).commit(BIZ, _session(store, qty1=2, qty2=0), "ZN-9")
    assert outcome.ok
    assert [(p.id, p.stock) for p in outcome.low_stock] == [("p1", 1)]
    assert outcome.to_dict()["low_stock"][0]["low_stock"] is True


def test_commit_async():
    store = _store()
    s = _session(store)
    outcome = asyncio.run(_engine(store).commit_async(BIZ, s, "ZN-10"))
    assert outcome.ok
    assert store.get_product(BIZ, "p1").stock == 8


def test_simulated_commit_is_flagged_and_persists_nothing():
    store = LocalSimulationStore("dev")
    s = POSSession()
    s.add_line(store.get_product(BIZ, "demo-tea-box"), 1)
    s.set_payment_method("cash")

    outcome = _engine(store).commit(BIZ, s, "ZN-11")
    assert outcome.ok
    assert outcome.receipt.simulated
    assert outcome.receipt.id.startswith("local-")
    assert outcome.to_dict()["simulated"] is True
    assert store.get_product(BIZ, "demo-tea-box").stock == 3
    assert store.list_receipts(BIZ) == []


@pytest.mark.parametrize("env", ["prod", "production"])
def test_simulation_store_refuses_production(env):
    with pytest.raises(PersistenceUnavailable):
        LocalSimulationStore(env)


def test_sold_out_products_are_reported_as_low_and_sold_out():
    store = _store(stock=2, threshold=0)
    outcome = _engine(store).commit(BIZ, _session(store, qty1=2, qty2=1), "ZN-12")
    assert outcome.ok
    assert [p.id for p in outcome.low_stock] == ["p1"]
    flagged = outcome.to_dict()["low_stock"][0]
    assert flagged["stock"] == 0
    assert flagged["low_stock"] is True
    assert flagged["sold_out"] is True
    assert all(p.is_low_stock for p in outcome.low_stock)
