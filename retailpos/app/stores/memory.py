"""
In-process transactional store for tests and single-node development.

Every record carries a version. A transaction records the version of each
record it reads and buffers its writes; at commit time the read set is
re-checked under the store lock and the writes are applied only if nothing
changed in between. Otherwise the whole unit of work is re-run, up to
`max_attempts` times. Data lives only as long as the process.
"""
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import InsufficientStock, ReferenceNotFound, TransactionConflict
from ..logs import json_log
from ..models import Customer, Product
from ..receipts import Receipt, ReceiptDraft

PRODUCTS = "products"
CUSTOMERS = "customers"

Key = Tuple[str, str, str]  # (table, business_id, record_id)


@dataclass
class _Versioned:
    value: Any
    version: int


class _MemoryTransaction:
    def __init__(self, store: "MemoryStore", business_id: str):
        self._store = store
        self.business_id = business_id
        self.read_versions: Dict[Key, int] = {}
        self.pending: Dict[Key, Any] = {}
        self.receipts: List[Receipt] = []

    def _read(self, table: str, record_id: str):
        key = (table, self.business_id, record_id)
        if key in self.pending:
            return self.pending[key]
        value, version = self._store._read(key)
        self.read_versions.setdefault(key, version)
        return value

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._read(PRODUCTS, product_id)

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        return self._read(CUSTOMERS, customer_id)

    def decrement_stock(self, product_id: str, quantity: int, sold_at: datetime) -> None:
        p = self.get_product(product_id)
        if p is None:
            raise ReferenceNotFound("product", product_id)
        if p.stock < quantity:
            raise InsufficientStock(product_id, p.stock, quantity, p.name)
        self.pending[(PRODUCTS, self.business_id, product_id)] = replace(
            p, stock=p.stock - quantity, last_sale_at=sold_at
        )

    def record_customer_purchase(self, customer_id: str, amount: Decimal, purchased_at: datetime) -> None:
        c = self.get_customer(customer_id)
        if c is None:
            raise ReferenceNotFound("customer", customer_id)
        self.pending[(CUSTOMERS, self.business_id, customer_id)] = replace(
            c,
            total_spent=c.total_spent + amount,
            purchase_count=c.purchase_count + 1,
            last_purchase_at=purchased_at,
        )

    def create_receipt(self, draft: ReceiptDraft) -> Receipt:
        receipt = Receipt.from_draft(draft, uuid.uuid4().hex)
        self.receipts.append(receipt)
        return receipt


class MemoryStore:
    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[Key, _Versioned] = {}
        self._receipts: Dict[Tuple[str, str], Receipt] = {}

    # -- seeding (tests / dev bootstrap) -----------------------------------

    def put_product(self, business_id: str, product: Product) -> None:
        self._put((PRODUCTS, business_id, product.id), product)

    def put_customer(self, business_id: str, customer: Customer) -> None:
        self._put((CUSTOMERS, business_id, customer.id), customer)

    def _put(self, key: Key, value) -> None:
        with self._lock:
            cur = self._records.get(key)
            self._records[key] = _Versioned(value, (cur.version if cur else 0) + 1)

    def _read(self, key: Key):
        with self._lock:
            cur = self._records.get(key)
            if cur is None:
                return None, 0
            return cur.value, cur.version

    def _list(self, table: str, business_id: str) -> list:
        with self._lock:
            return [
                v.value
                for (t, b, _), v in self._records.items()
                if t == table and b == business_id
            ]

    # -- reads -------------------------------------------------------------

    def list_products(self, business_id: str) -> List[Product]:
        return sorted(self._list(PRODUCTS, business_id), key=lambda p: p.name.lower())

    def get_product(self, business_id: str, product_id: str) -> Optional[Product]:
        return self._read((PRODUCTS, business_id, product_id))[0]

    def list_customers(self, business_id: str) -> List[Customer]:
        return sorted(self._list(CUSTOMERS, business_id), key=lambda c: c.name.lower())

    def get_customer(self, business_id: str, customer_id: str) -> Optional[Customer]:
        return self._read((CUSTOMERS, business_id, customer_id))[0]

    def get_receipt(self, business_id: str, receipt_id: str) -> Optional[Receipt]:
        with self._lock:
            return self._receipts.get((business_id, receipt_id))

    def list_receipts(self, business_id: str, limit: int = 50) -> List[Receipt]:
        with self._lock:
            rows = [r for (b, _), r in self._receipts.items() if b == business_id]
        rows.sort(key=lambda r: r.issued_at, reverse=True)
        return rows[:limit]

    def ping(self) -> None:
        return None

    # -- transactions ------------------------------------------------------

    def run_in_transaction(self, business_id: str, work: Callable, max_attempts: int):
        for attempt in range(1, max_attempts + 1):
            tx = _MemoryTransaction(self, business_id)
            result = work(tx)
            if self._apply(tx):
                return result
            json_log("warning", "store.transaction.conflict", store=self.name, business_id=business_id, attempt=attempt)
        raise TransactionConflict(f"transaction conflicted {max_attempts} times")

    def _apply(self, tx: _MemoryTransaction) -> bool:
        with self._lock:
            for key, version in tx.read_versions.items():
                cur = self._records.get(key)
                if (cur.version if cur else 0) != version:
                    return False
            for key, value in tx.pending.items():
                cur = self._records.get(key)
                self._records[key] = _Versioned(value, (cur.version if cur else 0) + 1)
            for r in tx.receipts:
                self._receipts[(r.business_id, r.id)] = r
            return True
