from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..cart import CartNotice
from ..checkout import CheckoutStep
from ..commit import CommitEngine
from ..deps import get_business_id, get_engine, get_flow, get_registry, get_store
from ..errors import ReferenceNotFound
from ..flow import CheckoutFlow, SessionRegistry
from ..models import CustomerRef, Product
from ..stores.base import CheckoutStore
from ..validation import DocId, PaymentMethodIn

router = APIRouter(prefix="/pos", tags=["pos"])


class LineIn(BaseModel):
    item_id: DocId
    quantity: int = Field(default=1, ge=1)


class QuantityIn(BaseModel):
    # <= 0 removes the line.
    quantity: int


class PaymentMethodSetIn(BaseModel):
    payment_method: Optional[PaymentMethodIn] = None


class DiscountIn(BaseModel):
    amount: Decimal = Decimal("0")


class TaxRateIn(BaseModel):
    percent: Decimal


class CustomerSetIn(BaseModel):
    # None means walk-in.
    customer_id: Optional[DocId] = None


class NotesIn(BaseModel):
    notes: str = Field(default="", max_length=2000)


def _load_product(store: CheckoutStore, business_id: str, item_id: str) -> Product:
    p = store.get_product(business_id, item_id)
    if p is None:
        raise ReferenceNotFound("product", item_id)
    return p


def _session_out(flow: CheckoutFlow, notices: Optional[List[CartNotice]] = None) -> dict:
    return {"session": flow.to_dict(), "notices": [n.to_dict() for n in (notices or [])]}


# -- lookups ---------------------------------------------------------------


@router.get("/products")
def list_products(business_id: str = Depends(get_business_id), store: CheckoutStore = Depends(get_store)):
    return {"products": [p.to_dict() for p in store.list_products(business_id)]}


@router.get("/customers")
def list_customers(business_id: str = Depends(get_business_id), store: CheckoutStore = Depends(get_store)):
    return {"customers": [c.to_dict() for c in store.list_customers(business_id)]}


@router.get("/receipts")
def list_receipts(
    limit: int = Query(50, ge=1, le=500),
    business_id: str = Depends(get_business_id),
    store: CheckoutStore = Depends(get_store),
):
    return {"receipts": [r.model_dump(mode="json") for r in store.list_receipts(business_id, limit)]}


@router.get("/receipts/{receipt_id}")
def get_receipt(receipt_id: str, business_id: str = Depends(get_business_id), store: CheckoutStore = Depends(get_store)):
    r = store.get_receipt(business_id, receipt_id)
    if r is None:
        raise ReferenceNotFound("receipt", receipt_id)
    return {"receipt": r.model_dump(mode="json")}


# -- sale sessions ----------------------------------------------------------


@router.post("/sessions")
def open_session(business_id: str = Depends(get_business_id), registry: SessionRegistry = Depends(get_registry)):
    return _session_out(registry.open(business_id))


@router.get("/sessions/{session_id}")
def get_session(flow: CheckoutFlow = Depends(get_flow)):
    return _session_out(flow)


@router.delete("/sessions/{session_id}")
def cancel_session(
    session_id: str,
    business_id: str = Depends(get_business_id),
    registry: SessionRegistry = Depends(get_registry),
):
    registry.discard(business_id, session_id)
    return {"ok": True}


@router.post("/sessions/{session_id}/lines")
def add_line(data: LineIn, flow: CheckoutFlow = Depends(get_flow), store: CheckoutStore = Depends(get_store)):
    product = _load_product(store, flow.business_id, data.item_id)
    notices = flow.mutate(lambda s: s.add_line(product, data.quantity))
    return _session_out(flow, notices)


@router.patch("/sessions/{session_id}/lines/{item_id}")
def update_line_quantity(
    item_id: str,
    data: QuantityIn,
    flow: CheckoutFlow = Depends(get_flow),
    store: CheckoutStore = Depends(get_store),
):
    # Clamp against fresh stock when the product still exists; fall back to the stock seen at add time.
    product = store.get_product(flow.business_id, item_id)
    notices = flow.mutate(lambda s: s.set_quantity(item_id, data.quantity, product))
    return _session_out(flow, notices)


@router.delete("/sessions/{session_id}/lines/{item_id}")
def remove_line(item_id: str, flow: CheckoutFlow = Depends(get_flow)):
    notices = flow.mutate(lambda s: s.remove_line(item_id))
    return _session_out(flow, notices)


@router.delete("/sessions/{session_id}/lines")
def clear_lines(flow: CheckoutFlow = Depends(get_flow)):
    notices = flow.mutate(lambda s: s.clear())
    return _session_out(flow, notices)


@router.put("/sessions/{session_id}/payment-method")
def set_payment_method(data: PaymentMethodSetIn, flow: CheckoutFlow = Depends(get_flow)):
    notices = flow.mutate(lambda s: s.set_payment_method(data.payment_method))
    return _session_out(flow, notices)


@router.put("/sessions/{session_id}/discount")
def set_discount(data: DiscountIn, flow: CheckoutFlow = Depends(get_flow)):
    notices = flow.mutate(lambda s: s.set_discount(data.amount))
    return _session_out(flow, notices)


@router.put("/sessions/{session_id}/tax-rate")
def set_tax_rate(data: TaxRateIn, flow: CheckoutFlow = Depends(get_flow)):
    notices = flow.mutate(lambda s: s.set_tax_rate(data.percent))
    return _session_out(flow, notices)


@router.put("/sessions/{session_id}/customer")
def set_customer(data: CustomerSetIn, flow: CheckoutFlow = Depends(get_flow), store: CheckoutStore = Depends(get_store)):
    ref = None
    if data.customer_id:
        c = store.get_customer(flow.business_id, data.customer_id)
        if c is None:
            raise ReferenceNotFound("customer", data.customer_id)
        ref = CustomerRef(id=c.id, name=c.name)
    notices = flow.mutate(lambda s: s.set_customer(ref))
    return _session_out(flow, notices)


@router.put("/sessions/{session_id}/notes")
def set_notes(data: NotesIn, flow: CheckoutFlow = Depends(get_flow)):
    notices = flow.mutate(lambda s: s.set_notes(data.notes))
    return _session_out(flow, notices)


@router.get("/sessions/{session_id}/steps/{step}")
def enter_checkout_step(step: CheckoutStep, flow: CheckoutFlow = Depends(get_flow)):
    decision = flow.enter(step)
    return {
        "decision": decision.to_dict(),
        "receipt_number": flow.receipt_number if decision.step == CheckoutStep.REVIEWING else None,
        **_session_out(flow),
    }


@router.post("/sessions/{session_id}/commit")
def commit_sale(flow: CheckoutFlow = Depends(get_flow), engine: CommitEngine = Depends(get_engine)):
    outcome = flow.commit(engine)
    if not outcome.ok:
        # Session is left as it was; the client stays on review with an actionable error.
        raise outcome.error
    return {**outcome.to_dict(), **_session_out(flow)}
