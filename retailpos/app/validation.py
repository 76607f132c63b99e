from __future__ import annotations

import re
from enum import Enum
from typing import Annotated

from pydantic import BeforeValidator, StringConstraints


class PaymentMethod(str, Enum):
    CASH = "Cash"
    CARD = "Card (External POS)"
    BANK_TRANSFER = "Bank Transfer"
    CHEQUE = "Cheque"
    OTHER = "Other"


# Display tag per method; clients map the tag to an icon.
PAYMENT_METHOD_TAGS = {
    PaymentMethod.CASH: "banknote",
    PaymentMethod.CARD: "credit-card",
    PaymentMethod.BANK_TRANSFER: "landmark",
    PaymentMethod.CHEQUE: "paperclip",
    PaymentMethod.OTHER: "message-square",
}

_PAYMENT_METHOD_ALIASES = {
    "cash": PaymentMethod.CASH,
    "card": PaymentMethod.CARD,
    "card_external_pos": PaymentMethod.CARD,
    "bank_transfer": PaymentMethod.BANK_TRANSFER,
    "transfer": PaymentMethod.BANK_TRANSFER,
    "cheque": PaymentMethod.CHEQUE,
    "check": PaymentMethod.CHEQUE,
    "other": PaymentMethod.OTHER,
}


def _slug(v: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", v.strip().lower()).strip("_")


def normalize_payment_method(v):
    if v is None or isinstance(v, PaymentMethod):
        return v
    raw = str(v).strip()
    for m in PaymentMethod:
        if raw.lower() == m.value.lower():
            return m
    found = _PAYMENT_METHOD_ALIASES.get(_slug(raw))
    if found is None:
        raise ValueError(f"unsupported payment method: {raw!r}")
    return found


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


PaymentMethodIn = Annotated[PaymentMethod, BeforeValidator(normalize_payment_method)]

# Opaque document ids: keep a tight, safe character set.
DocId = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$"),
]
