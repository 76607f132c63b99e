"""
Atomic sale commit.

`CommitEngine.commit` turns a finalized cart session into a persisted
receipt in a single store transaction:

1. read the current stock of every line inside the transaction,
2. abort with InsufficientStock if any line asks for more than is left,
3. decrement stock and stamp the last sale time,
4. add the sale to the customer's aggregates when one is attached,
5. write the receipt captured from the pre-commit snapshot.

Read-set conflicts are retried by the store; business failures are not.
The caller always gets a CommitOutcome back, never a checkout exception,
and a failed commit leaves both the store and the session untouched.
"""
import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .cart import POSSession, SessionSnapshot
from .errors import (
    CheckoutError,
    CheckoutValidationError,
    CommitCancelled,
    CommitFailed,
    InsufficientStock,
    ReferenceNotFound,
    TransactionConflict,
)
from .logs import json_log
from .models import Product
from .receipts import Receipt, ReceiptDraft
from .stores.base import CheckoutStore, CheckoutTransaction


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CommitCancelled("sale commit was cancelled")


@dataclass(frozen=True)
class CommitOutcome:
    receipt: Optional[Receipt] = None
    error: Optional[CheckoutError] = None
    # Products that reached their low-stock threshold with this sale.
    low_stock: Tuple[Product, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.receipt is not None and self.error is None

    def to_dict(self) -> dict:
        if not self.ok:
            return {"ok": False, "error": self.error.to_dict() if self.error else None}
        return {
            "ok": True,
            "receipt": self.receipt.model_dump(mode="json"),
            "simulated": self.receipt.simulated,
            "low_stock": [p.to_dict() for p in self.low_stock],
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def assert_ready(snapshot: SessionSnapshot) -> None:
    if not snapshot.lines:
        raise CheckoutValidationError("empty_cart")
    if snapshot.payment_method is None:
        raise CheckoutValidationError("missing_payment_method")


class CommitEngine:
    def __init__(
        self,
        store: CheckoutStore,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.max_attempts = max(1, int(max_attempts))
        self.clock = clock

    def commit(
        self,
        business_id: str,
        session: POSSession,
        receipt_number: str,
        cancel: Optional[CancelToken] = None,
    ) -> CommitOutcome:
        snapshot = session.snapshot()
        try:
            assert_ready(snapshot)
            if cancel is not None:
                cancel.raise_if_cancelled()
            draft = ReceiptDraft.from_snapshot(business_id, receipt_number, snapshot, self.clock())
            receipt, low_stock = self._run(business_id, snapshot, draft, cancel)
        except TransactionConflict as ex:
            err = CommitFailed("could not complete the sale, please retry", attempts=self.max_attempts)
            json_log(
                "error",
                "checkout.commit.failed",
                business_id=business_id,
                receipt_number=receipt_number,
                store=self.store.name,
                error=str(ex),
            )
            return CommitOutcome(error=err)
        except CommitFailed as ex:
            json_log(
                "error",
                "checkout.commit.failed",
                business_id=business_id,
                receipt_number=receipt_number,
                store=self.store.name,
                error=str(ex),
            )
            return CommitOutcome(error=ex)
        except CheckoutError as ex:
            json_log(
                "warning",
                "checkout.commit.rejected",
                business_id=business_id,
                receipt_number=receipt_number,
                store=self.store.name,
                code=ex.code,
                **ex.fields(),
            )
            return CommitOutcome(error=ex)

        json_log(
            "info",
            "checkout.commit.ok",
            business_id=business_id,
            receipt_id=receipt.id,
            receipt_number=receipt.receipt_number,
            total=receipt.total,
            lines=len(receipt.lines),
            store=self.store.name,
            simulated=receipt.simulated,
        )
        if receipt.simulated:
            json_log("warning", "checkout.commit.simulated", business_id=business_id, receipt_number=receipt.receipt_number)
        for p in low_stock:
            json_log("info", "inventory.low_stock", business_id=business_id, product_id=p.id, stock=p.stock)
        return CommitOutcome(receipt=receipt, low_stock=low_stock)

    async def commit_async(
        self,
        business_id: str,
        session: POSSession,
        receipt_number: str,
        cancel: Optional[CancelToken] = None,
    ) -> CommitOutcome:
        cancel = cancel or CancelToken()
        try:
            return await asyncio.to_thread(self.commit, business_id, session, receipt_number, cancel)
        except asyncio.CancelledError:
            # The worker thread keeps running; the token makes it stop before writing.
            cancel.cancel()
            raise

    def _run(
        self,
        business_id: str,
        snapshot: SessionSnapshot,
        draft: ReceiptDraft,
        cancel: Optional[CancelToken],
    ) -> Tuple[Receipt, Tuple[Product, ...]]:
        def work(tx: CheckoutTransaction):
            if cancel is not None:
                cancel.raise_if_cancelled()

            current: List[Product] = []
            for line in snapshot.lines:
                p = tx.get_product(line.item_id)
                available = p.stock if p is not None else 0
                if line.quantity > available:
                    raise InsufficientStock(line.item_id, available, line.quantity, line.item_name)
                current.append(p)

            if snapshot.customer is not None and tx.get_customer(snapshot.customer.id) is None:
                raise ReferenceNotFound("customer", snapshot.customer.id)

            if cancel is not None:
                cancel.raise_if_cancelled()

            now = draft.issued_at
            low: List[Product] = []
            for line, p in zip(snapshot.lines, current):
                tx.decrement_stock(line.item_id, line.quantity, now)
                after = Product(p.id, p.name, p.unit_price, p.stock - line.quantity, p.low_stock_threshold, now)
                if after.is_low_stock:
                    low.append(after)

            if snapshot.customer is not None:
                tx.record_customer_purchase(snapshot.customer.id, snapshot.totals.total, now)

            return tx.create_receipt(draft), tuple(low)

        return self.store.run_in_transaction(business_id, work, self.max_attempts)
