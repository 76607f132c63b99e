from decimal import Decimal

import pytest

from retailpos.app.cart import POSSession
from retailpos.app.checkout import CheckoutStep, RedirectReason, enter_step, next_step
from retailpos.app.models import Product


def _session(lines=True, payment=None):
    s = POSSession()
    if lines:
        s.add_line(Product(id="p1", name="Soap", unit_price=Decimal("300"), stock=5), 1)
    if payment:
        s.set_payment_method(payment)
    return s


def test_payment_step_with_empty_cart_goes_back_to_products():
    d = enter_step(CheckoutStep.SETTING_PAYMENT, _session(lines=False))
    assert d.redirected
    assert d.step == CheckoutStep.SELECTING_PRODUCTS
    assert d.reason == RedirectReason.EMPTY_CART
    assert d.indicator == "shopping-cart"


def test_review_without_payment_goes_back_to_payment():
    d = enter_step(CheckoutStep.REVIEWING, _session())
    assert d.step == CheckoutStep.SETTING_PAYMENT
    assert d.reason == RedirectReason.MISSING_PAYMENT
    assert d.indicator == "credit-card"


def test_review_with_empty_cart_reports_empty_cart_first():
    d = enter_step(CheckoutStep.REVIEWING, _session(lines=False, payment="cash"))
    assert d.step == CheckoutStep.SELECTING_PRODUCTS
    assert d.reason == RedirectReason.EMPTY_CART


def test_completed_is_unreachable_without_a_commit():
    d = enter_step(CheckoutStep.COMPLETED, _session(payment="cash"))
    assert d.step == CheckoutStep.REVIEWING
    assert d.reason == RedirectReason.NOT_COMMITTED

    # Redirects chain back until a step accepts; the first reason is kept.
    d = enter_step(CheckoutStep.COMPLETED, _session(lines=False))
    assert d.step == CheckoutStep.SELECTING_PRODUCTS
    assert d.reason == RedirectReason.NOT_COMMITTED
    assert d.indicator == "loader"


def test_completed_renders_after_commit():
    d = enter_step(CheckoutStep.COMPLETED, _session(lines=False), committed=True)
    assert not d.redirected
    assert d.reason is None
    assert d.indicator is None


@pytest.mark.parametrize(
    "step",
    [CheckoutStep.SELECTING_PRODUCTS, CheckoutStep.SETTING_PAYMENT, CheckoutStep.SELECTING_CUSTOMER],
)
def test_non_empty_cart_may_enter_early_steps(step):
    d = enter_step(step, _session())
    assert not d.redirected
    assert d.step == step


def test_walk_in_review_is_allowed_without_customer():
    s = _session(payment="card")
    assert s.customer is None
    d = enter_step(CheckoutStep.REVIEWING, s)
    assert d.step == CheckoutStep.REVIEWING


def test_products_step_always_renders():
    d = enter_step(CheckoutStep.SELECTING_PRODUCTS, _session(lines=False))
    assert not d.redirected


def test_guard_reruns_on_every_entry():
    s = _session(payment="cash")
    assert enter_step(CheckoutStep.REVIEWING, s).step == CheckoutStep.REVIEWING
    s.clear()
    assert enter_step(CheckoutStep.REVIEWING, s).step == CheckoutStep.SELECTING_PRODUCTS


def test_next_step_order():
    assert next_step(CheckoutStep.SELECTING_PRODUCTS) == CheckoutStep.SETTING_PAYMENT
    assert next_step(CheckoutStep.SETTING_PAYMENT) == CheckoutStep.SELECTING_CUSTOMER
    assert next_step(CheckoutStep.SELECTING_CUSTOMER) == CheckoutStep.REVIEWING
    assert next_step(CheckoutStep.REVIEWING) == CheckoutStep.COMPLETED
    assert next_step(CheckoutStep.COMPLETED) is None


def test_decision_to_dict():
    d = enter_step(CheckoutStep.REVIEWING, _session())
    assert d.to_dict() == {
        "requested": "review",
        "step": "payment",
        "redirected": True,
        "reason": "missing_payment",
        "indicator": "credit-card",
    }
