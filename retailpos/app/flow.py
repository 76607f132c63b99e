import threading
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple, TypeVar

from .cart import POSSession
from .checkout import CheckoutStep, RedirectReason, StepDecision, enter_step
from .commit import CancelToken, CommitEngine, CommitOutcome
from .errors import CheckoutValidationError, CommitInProgress, SessionNotFound
from .logs import json_log
from .receipts import Receipt, generate_receipt_number

T = TypeVar("T")

_READY_REASONS = {
    RedirectReason.EMPTY_CART: "empty_cart",
    RedirectReason.MISSING_PAYMENT: "missing_payment_method",
}


class CheckoutFlow:
    """
    One open sale: the cart session, the step the cashier is on, the receipt
    number held for this sale and the last committed receipt.

    While a commit is in flight every mutation and step change is refused
    with CommitInProgress so a sale cannot be submitted twice.
    """

    def __init__(
        self,
        business_id: str,
        session_id: str,
        session: POSSession,
        receipt_prefix: str = "ZN",
        receipt_number_dated: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.business_id = business_id
        self.id = session_id
        self.session = session
        self.receipt_prefix = receipt_prefix
        self.receipt_number_dated = receipt_number_dated
        self.step = CheckoutStep.SELECTING_PRODUCTS
        self.receipt_number: Optional[str] = None
        self.last_receipt: Optional[Receipt] = None
        self.opened_at = datetime.now(timezone.utc)
        self._clock = clock
        self.last_activity = clock()
        self._lock = threading.Lock()
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def mutate(self, fn: Callable[[POSSession], T]) -> T:
        with self._lock:
            self._assert_idle()
            self.touch()
            if self.last_receipt is not None:
                # First change after a completed sale starts the next one.
                self.last_receipt = None
                self.step = CheckoutStep.SELECTING_PRODUCTS
            return fn(self.session)

    def enter(self, step: CheckoutStep) -> StepDecision:
        with self._lock:
            self._assert_idle()
            self.touch()
            decision = enter_step(step, self.session, committed=self.last_receipt is not None)
            self.step = decision.step
            if decision.step == CheckoutStep.REVIEWING:
                self._hold_receipt_number()
            return decision

    def commit(self, engine: CommitEngine, cancel: Optional[CancelToken] = None) -> CommitOutcome:
        with self._lock:
            self._assert_idle()
            decision = enter_step(CheckoutStep.REVIEWING, self.session)
            if decision.redirected:
                self.step = decision.step
                return CommitOutcome(error=CheckoutValidationError(_READY_REASONS[decision.reason]))
            receipt_number = self._hold_receipt_number()
            self._in_flight = True
            self.touch()

        try:
            outcome = engine.commit(self.business_id, self.session, receipt_number, cancel)
        finally:
            with self._lock:
                self._in_flight = False
                self.touch()

        if outcome.ok:
            with self._lock:
                self.last_receipt = outcome.receipt
                self.session.reset()
                self.receipt_number = None
                self.step = CheckoutStep.COMPLETED
        return outcome

    def cancel(self) -> None:
        with self._lock:
            self._assert_idle()
            self.session.reset()
            self.receipt_number = None
            self.last_receipt = None
            self.step = CheckoutStep.SELECTING_PRODUCTS

    def touch(self) -> None:
        self.last_activity = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self.last_activity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "step": self.step.value,
            "receipt_number": self.receipt_number,
            "in_flight": self._in_flight,
            "last_receipt_id": self.last_receipt.id if self.last_receipt else None,
            "opened_at": self.opened_at,
            "cart": self.session.to_dict(),
        }

    def _assert_idle(self) -> None:
        if self._in_flight:
            raise CommitInProgress("a commit is already in progress for this sale")

    def _hold_receipt_number(self) -> str:
        if self.receipt_number is None:
            self.receipt_number = generate_receipt_number(self.receipt_prefix, dated=self.receipt_number_dated)
        return self.receipt_number


class SessionRegistry:
    """The one place open sales live; keyed by business so tenants never see each other's carts."""

    def __init__(
        self,
        default_tax_rate: Decimal = Decimal("7.5"),
        receipt_prefix: str = "ZN",
        receipt_number_dated: bool = True,
        idle_ttl_seconds: float = 4 * 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_tax_rate = default_tax_rate
        self.receipt_prefix = receipt_prefix
        self.receipt_number_dated = receipt_number_dated
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._flows: Dict[Tuple[str, str], CheckoutFlow] = {}
        self._lock = threading.Lock()

    def open(self, business_id: str) -> CheckoutFlow:
        flow = CheckoutFlow(
            business_id,
            uuid.uuid4().hex,
            POSSession(self.default_tax_rate),
            receipt_prefix=self.receipt_prefix,
            receipt_number_dated=self.receipt_number_dated,
            clock=self._clock,
        )
        with self._lock:
            self._evict_idle()
            self._flows[(business_id, flow.id)] = flow
        return flow

    def get(self, business_id: str, session_id: str) -> CheckoutFlow:
        with self._lock:
            self._evict_idle()
            flow = self._flows.get((business_id, session_id))
        if flow is None:
            raise SessionNotFound(f"sale session {session_id} not found")
        flow.touch()
        return flow

    def discard(self, business_id: str, session_id: str) -> None:
        flow = self.get(business_id, session_id)
        flow.cancel()
        with self._lock:
            self._flows.pop((business_id, session_id), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._flows)

    def _evict_idle(self) -> None:
        # Caller holds self._lock. A flow with a commit in flight is never dropped.
        if self.idle_ttl_seconds <= 0:
            return
        stale = [
            key
            for key, flow in self._flows.items()
            if not flow.in_flight and flow.idle_for() > self.idle_ttl_seconds
        ]
        for key in stale:
            del self._flows[key]
        if stale:
            json_log("info", "pos.session.evicted", count=len(stale), ttl_seconds=self.idle_ttl_seconds)
