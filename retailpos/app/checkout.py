from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .cart import POSSession


class CheckoutStep(str, Enum):
    SELECTING_PRODUCTS = "select-products"
    SETTING_PAYMENT = "payment"
    SELECTING_CUSTOMER = "customer"
    REVIEWING = "review"
    COMPLETED = "completed"


class RedirectReason(str, Enum):
    EMPTY_CART = "empty_cart"
    MISSING_PAYMENT = "missing_payment"
    NOT_COMMITTED = "not_committed"


# Transient indicator shown while a redirect is in progress.
REDIRECT_INDICATORS = {
    RedirectReason.EMPTY_CART: "shopping-cart",
    RedirectReason.MISSING_PAYMENT: "credit-card",
    RedirectReason.NOT_COMMITTED: "loader",
}

_FORWARD = {
    CheckoutStep.SELECTING_PRODUCTS: CheckoutStep.SETTING_PAYMENT,
    CheckoutStep.SETTING_PAYMENT: CheckoutStep.SELECTING_CUSTOMER,
    CheckoutStep.SELECTING_CUSTOMER: CheckoutStep.REVIEWING,
    CheckoutStep.REVIEWING: CheckoutStep.COMPLETED,
}


@dataclass(frozen=True)
class StepDecision:
    requested: CheckoutStep
    step: CheckoutStep
    reason: Optional[RedirectReason] = None

    @property
    def redirected(self) -> bool:
        return self.step != self.requested

    @property
    def indicator(self) -> Optional[str]:
        return REDIRECT_INDICATORS.get(self.reason) if self.reason else None

    def to_dict(self) -> dict:
        return {
            "requested": self.requested.value,
            "step": self.step.value,
            "redirected": self.redirected,
            "reason": self.reason.value if self.reason else None,
            "indicator": self.indicator,
        }


def _violation(step: CheckoutStep, session: POSSession, committed: bool):
    """Return (redirect_to, reason) when `step` may not render, else None."""
    if step == CheckoutStep.SELECTING_PRODUCTS:
        return None
    if step == CheckoutStep.COMPLETED:
        if committed:
            return None
        return CheckoutStep.REVIEWING, RedirectReason.NOT_COMMITTED
    if session.is_empty:
        return CheckoutStep.SELECTING_PRODUCTS, RedirectReason.EMPTY_CART
    if step == CheckoutStep.REVIEWING and session.payment_method is None:
        return CheckoutStep.SETTING_PAYMENT, RedirectReason.MISSING_PAYMENT
    return None


def enter_step(step: CheckoutStep, session: POSSession, committed: bool = False) -> StepDecision:
    """
    Evaluate entry conditions for `step` against the current session.

    Runs on every entry, not only on forward transitions, since clients can
    land on any step directly. Redirects chain until a step accepts; the
    first redirect's reason is the one reported.
    """
    current = step
    first_reason: Optional[RedirectReason] = None
    # Each hop moves strictly backward, so this always terminates.
    for _ in range(len(CheckoutStep)):
        v = _violation(current, session, committed)
        if v is None:
            break
        current, reason = v
        if first_reason is None:
            first_reason = reason
    return StepDecision(requested=step, step=current, reason=first_reason)


def next_step(step: CheckoutStep) -> Optional[CheckoutStep]:
    # Skipping customer selection (walk-in) and picking one both lead to review.
    return _FORWARD.get(step)
