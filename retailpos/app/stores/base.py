from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Protocol, TypeVar

from ..models import Customer, Product
from ..receipts import Receipt, ReceiptDraft

T = TypeVar("T")


class CheckoutTransaction(Protocol):
    """Reads and writes performed inside one store transaction.

    Reads observe the store's current state, writes become visible only if
    the whole transaction commits.
    """

    def get_product(self, product_id: str) -> Optional[Product]: ...

    def get_customer(self, customer_id: str) -> Optional[Customer]: ...

    def decrement_stock(self, product_id: str, quantity: int, sold_at: datetime) -> None: ...

    def record_customer_purchase(self, customer_id: str, amount: Decimal, purchased_at: datetime) -> None: ...

    def create_receipt(self, draft: ReceiptDraft) -> Receipt: ...


class CheckoutStore(Protocol):
    # Human-readable adapter name, reported by /health and the commit logs.
    name: str

    def list_products(self, business_id: str) -> List[Product]: ...

    def get_product(self, business_id: str, product_id: str) -> Optional[Product]: ...

    def list_customers(self, business_id: str) -> List[Customer]: ...

    def get_customer(self, business_id: str, customer_id: str) -> Optional[Customer]: ...

    def get_receipt(self, business_id: str, receipt_id: str) -> Optional[Receipt]: ...

    def list_receipts(self, business_id: str, limit: int = 50) -> List[Receipt]: ...

    def run_in_transaction(
        self,
        business_id: str,
        work: Callable[[CheckoutTransaction], T],
        max_attempts: int,
    ) -> T:
        """Run `work` atomically, retrying it on read-set conflicts.

        Exceptions raised by `work` abort the transaction and propagate
        untouched. Raises TransactionConflict once `max_attempts` are used up
        and CommitFailed when the store cannot be reached.
        """
        ...

    def ping(self) -> None: ...
