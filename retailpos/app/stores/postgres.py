import hashlib
import json
import time
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

import psycopg
from psycopg import errors as pg_errors

from ..db import get_conn, set_business_context
from ..errors import CommitFailed, InsufficientStock, ReferenceNotFound, TransactionConflict
from ..logs import json_log
from ..models import Customer, Product
from ..receipts import Receipt, ReceiptDraft

# Errors Postgres raises when a concurrent transaction invalidated our reads.
RETRYABLE_ERRORS = (pg_errors.SerializationFailure, pg_errors.DeadlockDetected)

_PRODUCT_COLUMNS = "id, name, unit_price, stock, low_stock_threshold, last_sale_at"
_CUSTOMER_COLUMNS = "id, name, email, total_spent, purchase_count, last_purchase_at"
_RECEIPT_COLUMNS = """
    id, business_id, receipt_number, issued_at, customer_id, customer_name, lines_json,
    subtotal, discount_amount, tax_rate_percent, tax_amount, total, payment_method, notes
"""


def retry_delay_seconds(attempt: int, key: str = "") -> float:
    delay = min(0.5, 0.02 * (2 ** max(attempt - 1, 0)))
    if key:
        # Deterministic jitter so concurrent retries of different sales spread out.
        digest = hashlib.sha1(f"{key}:{attempt}".encode("utf-8")).hexdigest()
        delay += (int(digest[:4], 16) % 20) / 1000.0
    return delay


def receipt_from_row(row: dict) -> Receipt:
    lines = row.get("lines_json") or []
    if isinstance(lines, str):
        lines = json.loads(lines)
    return Receipt(
        id=str(row["id"]),
        business_id=str(row["business_id"]),
        receipt_number=row["receipt_number"],
        issued_at=row["issued_at"],
        customer_id=(str(row["customer_id"]) if row.get("customer_id") else None),
        customer_name=row.get("customer_name"),
        lines=tuple(lines),
        subtotal=row["subtotal"],
        discount_amount=row["discount_amount"],
        tax_rate_percent=row["tax_rate_percent"],
        tax_amount=row["tax_amount"],
        total=row["total"],
        payment_method=row["payment_method"],
        notes=row.get("notes") or "",
    )


class _PgTransaction:
    def __init__(self, cur, business_id: str):
        self.cur = cur
        self.business_id = business_id

    def get_product(self, product_id: str) -> Optional[Product]:
        self.cur.execute(
            f"""
            SELECT {_PRODUCT_COLUMNS}
            FROM products
            WHERE business_id = %s AND id = %s
            """,
            (self.business_id, product_id),
        )
        row = self.cur.fetchone()
        return Product.from_row(row) if row else None

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        self.cur.execute(
            f"""
            SELECT {_CUSTOMER_COLUMNS}
            FROM customers
            WHERE business_id = %s AND id = %s
            """,
            (self.business_id, customer_id),
        )
        row = self.cur.fetchone()
        return Customer.from_row(row) if row else None

    def decrement_stock(self, product_id: str, quantity: int, sold_at: datetime) -> None:
        self.cur.execute(
            """
            UPDATE products
            SET stock = stock - %s,
                last_sale_at = %s,
                updated_at = now()
            WHERE business_id = %s AND id = %s AND stock >= %s
            RETURNING stock
            """,
            (quantity, sold_at, self.business_id, product_id, quantity),
        )
        if self.cur.fetchone():
            return
        p = self.get_product(product_id)
        if p is None:
            raise ReferenceNotFound("product", product_id)
        raise InsufficientStock(product_id, p.stock, quantity, p.name)

    def record_customer_purchase(self, customer_id: str, amount: Decimal, purchased_at: datetime) -> None:
        self.cur.execute(
            """
            UPDATE customers
            SET total_spent = total_spent + %s,
                purchase_count = purchase_count + 1,
                last_purchase_at = %s,
                updated_at = now()
            WHERE business_id = %s AND id = %s
            RETURNING id
            """,
            (amount, purchased_at, self.business_id, customer_id),
        )
        if not self.cur.fetchone():
            raise ReferenceNotFound("customer", customer_id)

    def create_receipt(self, draft: ReceiptDraft) -> Receipt:
        lines = [l.model_dump(mode="json") for l in draft.lines]
        self.cur.execute(
            """
            INSERT INTO receipts
              (id, business_id, receipt_number, issued_at, customer_id, customer_name, lines_json,
               subtotal, discount_amount, tax_rate_percent, tax_amount, total, payment_method, notes)
            VALUES
              (gen_random_uuid()::text, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                draft.business_id,
                draft.receipt_number,
                draft.issued_at,
                draft.customer_id,
                draft.customer_name,
                json.dumps(lines),
                draft.subtotal,
                draft.discount_amount,
                draft.tax_rate_percent,
                draft.tax_amount,
                draft.total,
                draft.payment_method,
                draft.notes,
            ),
        )
        row = self.cur.fetchone()
        return Receipt.from_draft(draft, str(row["id"]))


class PostgresStore:
    name = "postgres"

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    def _fetch(self, business_id: str, sql: str, params: tuple, many: bool):
        with get_conn() as conn:
            set_business_context(conn, business_id)
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchall() if many else cur.fetchone()

    def list_products(self, business_id: str) -> List[Product]:
        rows = self._fetch(
            business_id,
            f"""
            SELECT {_PRODUCT_COLUMNS}
            FROM products
            WHERE business_id = %s
            ORDER BY name
            """,
            (business_id,),
            many=True,
        )
        return [Product.from_row(r) for r in rows]

    def get_product(self, business_id: str, product_id: str) -> Optional[Product]:
        row = self._fetch(
            business_id,
            f"SELECT {_PRODUCT_COLUMNS} FROM products WHERE business_id = %s AND id = %s",
            (business_id, product_id),
            many=False,
        )
        return Product.from_row(row) if row else None

    def list_customers(self, business_id: str) -> List[Customer]:
        rows = self._fetch(
            business_id,
            f"""
            SELECT {_CUSTOMER_COLUMNS}
            FROM customers
            WHERE business_id = %s
            ORDER BY name
            """,
            (business_id,),
            many=True,
        )
        return [Customer.from_row(r) for r in rows]

    def get_customer(self, business_id: str, customer_id: str) -> Optional[Customer]:
        row = self._fetch(
            business_id,
            f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE business_id = %s AND id = %s",
            (business_id, customer_id),
            many=False,
        )
        return Customer.from_row(row) if row else None

    def get_receipt(self, business_id: str, receipt_id: str) -> Optional[Receipt]:
        row = self._fetch(
            business_id,
            f"SELECT {_RECEIPT_COLUMNS} FROM receipts WHERE business_id = %s AND id = %s",
            (business_id, receipt_id),
            many=False,
        )
        return receipt_from_row(row) if row else None

    def list_receipts(self, business_id: str, limit: int = 50) -> List[Receipt]:
        rows = self._fetch(
            business_id,
            f"""
            SELECT {_RECEIPT_COLUMNS}
            FROM receipts
            WHERE business_id = %s
            ORDER BY issued_at DESC
            LIMIT %s
            """,
            (business_id, limit),
            many=True,
        )
        return [receipt_from_row(r) for r in rows]

    def ping(self) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()

    def run_in_transaction(self, business_id: str, work: Callable, max_attempts: int):
        for attempt in range(1, max_attempts + 1):
            try:
                with get_conn() as conn:
                    with conn.transaction():
                        # Must be the first statement of the transaction.
                        conn.execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
                        set_business_context(conn, business_id)
                        with conn.cursor() as cur:
                            return work(_PgTransaction(cur, business_id))
            except RETRYABLE_ERRORS as ex:
                json_log(
                    "warning",
                    "store.transaction.conflict",
                    store=self.name,
                    business_id=business_id,
                    attempt=attempt,
                    error=str(ex),
                )
                if attempt < max_attempts:
                    self._sleep(retry_delay_seconds(attempt, business_id))
            except psycopg.OperationalError as ex:
                json_log("error", "store.transaction.unavailable", store=self.name, business_id=business_id, error=str(ex))
                raise CommitFailed("database unavailable", attempts=attempt) from ex
            except psycopg.Error as ex:
                # Rejected writes (overflow, constraint) roll back like any other failure.
                json_log("error", "store.transaction.rejected", store=self.name, business_id=business_id, error=str(ex))
                raise CommitFailed("the database rejected the sale", attempts=attempt) from ex
        raise TransactionConflict(f"transaction conflicted {max_attempts} times")
