"""
In-memory cart for one in-progress sale.

A POSSession never talks to the store. It snapshots name and unit price when
a product is added, keeps lines unique by item id and derives every total on
demand, so stored and displayed totals cannot drift apart. Mutators return a
list of CartNotice values for the caller to surface (clamped quantities,
reset discounts, removed lines); hard refusals raise CheckoutError subclasses.
"""
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Tuple

from .errors import CartValidationError, LineNotFound, OutOfStock, StockLimitReached
from .models import CustomerRef, Product
from .money import ZERO, q_money, to_decimal
from .validation import PAYMENT_METHOD_TAGS, PaymentMethod, normalize_payment_method

DEFAULT_TAX_RATE_PERCENT = Decimal("7.5")
MAX_TAX_RATE_PERCENT = Decimal("100")
# Receipts store the rate as numeric(7,4).
TAX_RATE_STEP = Decimal("0.0001")


class NoticeKind(str, Enum):
    STOCK_LIMIT_REACHED = "stock_limit_reached"
    OUT_OF_STOCK = "out_of_stock"
    LINE_REMOVED = "line_removed"
    DISCOUNT_CLAMPED = "discount_clamped"
    TAX_RATE_CLAMPED = "tax_rate_clamped"


@dataclass(frozen=True)
class CartNotice:
    kind: NoticeKind
    item_id: Optional[str] = None
    detail: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {"kind": self.kind.value, **self.detail}
        if self.item_id is not None:
            out["item_id"] = self.item_id
        return out


@dataclass(frozen=True)
class CartLine:
    item_id: str
    item_name: str
    unit_price: Decimal
    quantity: int
    # Stock seen when the line was last checked against a product.
    stock_hint: int = 0

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "item_name": self.item_name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "line_total": self.line_total,
        }


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount_amount: Decimal
    taxable_base: Decimal
    tax_amount: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "taxable_base": self.taxable_base,
            "tax_amount": self.tax_amount,
            "total": self.total,
        }


def compute_totals(lines, discount_amount: Decimal, tax_rate_percent: Decimal) -> Totals:
    # Discount is applied before tax: tax = (subtotal - discount) * rate / 100.
    subtotal = sum((l.line_total for l in lines), ZERO)
    taxable_base = subtotal - discount_amount
    tax_amount = q_money(taxable_base * tax_rate_percent / Decimal("100"))
    return Totals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        taxable_base=taxable_base,
        tax_amount=tax_amount,
        total=subtotal - discount_amount + tax_amount,
    )


@dataclass(frozen=True)
class SessionSnapshot:
    lines: Tuple[CartLine, ...]
    customer: Optional[CustomerRef]
    payment_method: Optional[PaymentMethod]
    discount_amount: Decimal
    tax_rate_percent: Decimal
    notes: str
    totals: Totals
    revision: int


def _as_quantity(v) -> int:
    if isinstance(v, bool):
        raise CartValidationError("quantity must be an integer")
    if isinstance(v, int):
        return v
    try:
        d = Decimal(str(v))
    except InvalidOperation:
        raise CartValidationError("quantity must be an integer") from None
    if d != d.to_integral_value():
        raise CartValidationError("quantity must be an integer")
    return int(d)


def _as_amount(v, what: str) -> Decimal:
    try:
        d = to_decimal(v)
    except InvalidOperation:
        raise CartValidationError(f"{what} must be a number") from None
    if not d.is_finite():
        raise CartValidationError(f"{what} must be a number")
    return d


def _clamp_tax_rate(rate: Decimal) -> Decimal:
    rate = min(max(ZERO, rate), MAX_TAX_RATE_PERCENT)
    if rate.as_tuple().exponent < TAX_RATE_STEP.as_tuple().exponent:
        rate = rate.quantize(TAX_RATE_STEP, rounding=ROUND_HALF_UP)
    return rate


class POSSession:
    def __init__(self, default_tax_rate: Decimal = DEFAULT_TAX_RATE_PERCENT):
        self.default_tax_rate = _clamp_tax_rate(to_decimal(default_tax_rate))
        self.revision = 0
        self._clear_state()

    def _clear_state(self) -> None:
        self._lines: List[CartLine] = []
        self.customer: Optional[CustomerRef] = None
        self.payment_method: Optional[PaymentMethod] = None
        self.discount_amount = ZERO
        self.tax_rate_percent = self.default_tax_rate
        self.notes = ""

    # -- reads -------------------------------------------------------------

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    @property
    def totals(self) -> Totals:
        return compute_totals(self._lines, self.discount_amount, self.tax_rate_percent)

    @property
    def subtotal(self) -> Decimal:
        return self.totals.subtotal

    @property
    def total(self) -> Decimal:
        return self.totals.total

    def line(self, item_id: str) -> Optional[CartLine]:
        for l in self._lines:
            if l.item_id == item_id:
                return l
        return None

    def quantity_of(self, item_id: str) -> int:
        l = self.line(item_id)
        return l.quantity if l else 0

    # -- line mutations ----------------------------------------------------

    def add_line(self, product: Product, quantity: int = 1) -> List[CartNotice]:
        quantity = _as_quantity(quantity)
        if quantity < 1:
            raise CartValidationError("quantity must be at least 1")
        if product.stock <= 0:
            raise OutOfStock(product.id, product.name)

        in_cart = self.quantity_of(product.id)
        if in_cart >= product.stock:
            raise StockLimitReached(product.id, product.stock)

        notices: List[CartNotice] = []
        wanted = in_cart + quantity
        if wanted > product.stock:
            notices.append(
                CartNotice(
                    NoticeKind.STOCK_LIMIT_REACHED,
                    product.id,
                    {"requested": wanted, "available": product.stock},
                )
            )
            wanted = product.stock

        existing = self.line(product.id)
        if existing is not None:
            # Merge keeps the price snapshot taken when the line was first added.
            self._replace(replace(existing, quantity=wanted, stock_hint=product.stock))
        else:
            self._lines.append(
                CartLine(
                    item_id=product.id,
                    item_name=product.name,
                    unit_price=product.unit_price,
                    quantity=wanted,
                    stock_hint=product.stock,
                )
            )
        return notices + self._changed()

    def set_quantity(self, item_id: str, quantity: int, product: Optional[Product] = None) -> List[CartNotice]:
        quantity = _as_quantity(quantity)
        existing = self.line(item_id)
        if existing is None:
            raise LineNotFound(item_id)
        stock = product.stock if product is not None else existing.stock_hint

        if quantity <= 0:
            self._remove(item_id)
            notices = [CartNotice(NoticeKind.LINE_REMOVED, item_id)]
        elif stock <= 0:
            self._remove(item_id)
            notices = [CartNotice(NoticeKind.OUT_OF_STOCK, item_id, {"available": 0})]
        elif quantity > stock:
            self._replace(replace(existing, quantity=stock, stock_hint=stock))
            notices = [
                CartNotice(
                    NoticeKind.STOCK_LIMIT_REACHED,
                    item_id,
                    {"requested": quantity, "available": stock},
                )
            ]
        else:
            self._replace(replace(existing, quantity=quantity, stock_hint=stock))
            notices = []
        return notices + self._changed()

    def remove_line(self, item_id: str) -> List[CartNotice]:
        self._remove(item_id)
        return self._changed()

    def clear(self) -> List[CartNotice]:
        self._lines = []
        return self._changed()

    # -- header fields -----------------------------------------------------

    def set_discount(self, amount) -> List[CartNotice]:
        amount = q_money(_as_amount(amount, "discount"))
        subtotal = self.subtotal
        if amount < 0 or amount > subtotal:
            self.discount_amount = ZERO
            self.revision += 1
            return [
                CartNotice(
                    NoticeKind.DISCOUNT_CLAMPED,
                    None,
                    {"requested": amount, "subtotal": subtotal},
                )
            ]
        self.discount_amount = amount
        return self._changed()

    def set_tax_rate(self, percent) -> List[CartNotice]:
        requested = _as_amount(percent, "tax rate")
        rate = _clamp_tax_rate(requested)
        self.tax_rate_percent = rate
        notices = []
        if rate != requested:
            notices.append(CartNotice(NoticeKind.TAX_RATE_CLAMPED, None, {"requested": requested, "applied": rate}))
        return notices + self._changed()

    def set_payment_method(self, method) -> List[CartNotice]:
        try:
            self.payment_method = normalize_payment_method(method)
        except ValueError as ex:
            raise CartValidationError(str(ex)) from None
        return self._changed()

    def set_customer(self, customer: Optional[CustomerRef]) -> List[CartNotice]:
        self.customer = customer
        return self._changed()

    def set_notes(self, text: Optional[str]) -> List[CartNotice]:
        self.notes = str(text or "")
        return self._changed()

    def reset(self) -> None:
        self._clear_state()
        self.revision += 1

    # -- snapshot / serialization -------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            lines=tuple(self._lines),
            customer=self.customer,
            payment_method=self.payment_method,
            discount_amount=self.discount_amount,
            tax_rate_percent=self.tax_rate_percent,
            notes=self.notes,
            totals=self.totals,
            revision=self.revision,
        )

    def to_dict(self) -> dict:
        return {
            "lines": [l.to_dict() for l in self._lines],
            "customer": (
                {"id": self.customer.id, "name": self.customer.name} if self.customer else None
            ),
            "payment_method": self.payment_method.value if self.payment_method else None,
            "payment_method_tag": PAYMENT_METHOD_TAGS.get(self.payment_method) if self.payment_method else None,
            "tax_rate_percent": self.tax_rate_percent,
            "notes": self.notes,
            "revision": self.revision,
            **self.totals.to_dict(),
        }

    # -- internals ---------------------------------------------------------

    def _replace(self, line: CartLine) -> None:
        self._lines = [line if l.item_id == line.item_id else l for l in self._lines]

    def _remove(self, item_id: str) -> None:
        self._lines = [l for l in self._lines if l.item_id != item_id]

    def _changed(self) -> List[CartNotice]:
        self.revision += 1
        subtotal = self.subtotal
        if self.discount_amount > subtotal:
            requested = self.discount_amount
            self.discount_amount = ZERO
            return [
                CartNotice(
                    NoticeKind.DISCOUNT_CLAMPED,
                    None,
                    {"requested": requested, "subtotal": subtotal},
                )
            ]
        return []
