"""
Local simulation store: the degraded mode used when no database is configured.

It serves a static catalog so a cashier can walk through checkout on a
development machine, but commits are fabricated: stock is never decremented,
customers are never updated and receipts are returned with `simulated=True`
without being stored. None of the atomicity guarantees of a real store apply.
It refuses to start in production.
"""
import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from ..errors import PersistenceUnavailable
from ..logs import json_log
from ..models import Customer, Product
from ..receipts import Receipt, ReceiptDraft

DEMO_CATALOG = [
    {"id": "demo-rice-5kg", "name": "Rice 5kg", "unit_price": "8500", "stock": 40, "low_stock_threshold": 5},
    {"id": "demo-veg-oil-1l", "name": "Vegetable Oil 1L", "unit_price": "2300", "stock": 25, "low_stock_threshold": 5},
    {"id": "demo-sugar-1kg", "name": "Sugar 1kg", "unit_price": "1200", "stock": 60, "low_stock_threshold": 10},
    {"id": "demo-tea-box", "name": "Tea (50 bags)", "unit_price": "950", "stock": 3, "low_stock_threshold": 5},
]


def load_catalog(path: Optional[str]) -> List[Product]:
    if not path:
        return [Product.from_row(r) for r in DEMO_CATALOG]
    with open(path, "r", encoding="utf-8") as f:
        rows = json.load(f)
    if not isinstance(rows, list):
        raise ValueError(f"catalog file {path} must contain a JSON list")
    return [Product.from_row(r) for r in rows]


class _SimulatedTransaction:
    def __init__(self, store: "LocalSimulationStore", business_id: str):
        self._store = store
        self.business_id = business_id

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._store.get_product(self.business_id, product_id)

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        # Customer records are not simulated; any reference is accepted as a walk-in style stub.
        return Customer(id=customer_id)

    def decrement_stock(self, product_id: str, quantity: int, sold_at: datetime) -> None:
        return None

    def record_customer_purchase(self, customer_id: str, amount: Decimal, purchased_at: datetime) -> None:
        return None

    def create_receipt(self, draft: ReceiptDraft) -> Receipt:
        return Receipt.from_draft(draft, f"local-{uuid.uuid4().hex}", simulated=True)


class LocalSimulationStore:
    name = "simulation"

    def __init__(self, env: str, catalog: Optional[List[Product]] = None):
        if env in {"prod", "production"}:
            raise PersistenceUnavailable("local simulation store is not allowed in production")
        self._catalog = {p.id: p for p in (catalog if catalog is not None else load_catalog(None))}
        json_log("warning", "store.simulation.enabled", env=env, products=len(self._catalog))

    def list_products(self, business_id: str) -> List[Product]:
        return sorted(self._catalog.values(), key=lambda p: p.name.lower())

    def get_product(self, business_id: str, product_id: str) -> Optional[Product]:
        return self._catalog.get(product_id)

    def list_customers(self, business_id: str) -> List[Customer]:
        return []

    def get_customer(self, business_id: str, customer_id: str) -> Optional[Customer]:
        return Customer(id=customer_id)

    def get_receipt(self, business_id: str, receipt_id: str) -> Optional[Receipt]:
        return None

    def list_receipts(self, business_id: str, limit: int = 50) -> List[Receipt]:
        return []

    def ping(self) -> None:
        return None

    def run_in_transaction(self, business_id: str, work: Callable, max_attempts: int):
        return work(_SimulatedTransaction(self, business_id))
