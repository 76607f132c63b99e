import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .cart import SessionSnapshot

BASE36_ALPHABET = string.digits + string.ascii_uppercase
SUFFIX_LENGTH = 5


def generate_receipt_number(prefix: str = "ZN", when: Optional[datetime] = None, dated: bool = True) -> str:
    """
    Human-readable receipt reference: `<PREFIX>-<YYYYMMDD>-<XXXXX>` or, when
    `dated` is false, `<PREFIX>-<XXXXX>`. Display only; the stored receipt id
    is what makes a receipt unique.
    """
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(SUFFIX_LENGTH))
    if not dated:
        return f"{prefix}-{suffix}"
    when = when or datetime.now(timezone.utc)
    return f"{prefix}-{when:%Y%m%d}-{suffix}"


class ReceiptLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    item_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class ReceiptDraft(BaseModel):
    """Everything a store needs to write a receipt; captured before the transaction starts."""

    model_config = ConfigDict(frozen=True)

    business_id: str
    receipt_number: str
    issued_at: datetime
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    lines: Tuple[ReceiptLine, ...]
    subtotal: Decimal
    discount_amount: Decimal
    tax_rate_percent: Decimal
    tax_amount: Decimal
    total: Decimal
    payment_method: str
    notes: str = ""

    @classmethod
    def from_snapshot(
        cls,
        business_id: str,
        receipt_number: str,
        snapshot: SessionSnapshot,
        issued_at: datetime,
    ) -> "ReceiptDraft":
        t = snapshot.totals
        return cls(
            business_id=business_id,
            receipt_number=receipt_number,
            issued_at=issued_at,
            customer_id=snapshot.customer.id if snapshot.customer else None,
            customer_name=(snapshot.customer.name or None) if snapshot.customer else None,
            lines=tuple(
                ReceiptLine(
                    item_id=l.item_id,
                    item_name=l.item_name,
                    quantity=l.quantity,
                    unit_price=l.unit_price,
                    line_total=l.line_total,
                )
                for l in snapshot.lines
            ),
            subtotal=t.subtotal,
            discount_amount=t.discount_amount,
            tax_rate_percent=snapshot.tax_rate_percent,
            tax_amount=t.tax_amount,
            total=t.total,
            payment_method=snapshot.payment_method.value if snapshot.payment_method else "",
            notes=snapshot.notes,
        )


class Receipt(ReceiptDraft):
    id: str
    # True only for receipts fabricated by the local simulation store; nothing was persisted.
    simulated: bool = False

    @classmethod
    def from_draft(cls, draft: ReceiptDraft, receipt_id: str, simulated: bool = False) -> "Receipt":
        return cls(id=receipt_id, simulated=simulated, **draft.model_dump())
