from typing import Optional


class CheckoutError(Exception):
    """Base for every outcome the checkout pipeline reports to its caller.

    `code` is a stable machine-readable tag and `status_code` the HTTP status
    the API answers with. `fields()` carries the structured detail clients use
    to render their own message.
    """

    code = "checkout_error"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)

    def fields(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {"detail": self.code, "message": str(self), **self.fields()}


class CartValidationError(CheckoutError):
    code = "invalid_cart_input"


class CheckoutValidationError(CheckoutError):
    """Empty cart or missing payment method when a commit is requested."""

    code = "checkout_not_ready"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"checkout not ready: {reason}")

    def fields(self) -> dict:
        return {"reason": self.reason}


class OutOfStock(CheckoutError):
    code = "out_of_stock"
    status_code = 409

    def __init__(self, item_id: str, item_name: str = ""):
        self.item_id = item_id
        self.item_name = item_name
        super().__init__(f"{item_name or item_id} is out of stock")

    def fields(self) -> dict:
        return {"item_id": self.item_id}


class StockLimitReached(CheckoutError):
    code = "stock_limit_reached"
    status_code = 409

    def __init__(self, item_id: str, available: int):
        self.item_id = item_id
        self.available = available
        super().__init__(f"only {available} units of {item_id} available")

    def fields(self) -> dict:
        return {"item_id": self.item_id, "available": self.available}


class LineNotFound(CheckoutError):
    code = "line_not_found"
    status_code = 404

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"item {item_id} is not in the cart")

    def fields(self) -> dict:
        return {"item_id": self.item_id}


class SessionNotFound(CheckoutError):
    code = "session_not_found"
    status_code = 404


class ReferenceNotFound(CheckoutError):
    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, ref_id: str):
        self.kind = kind
        self.ref_id = ref_id
        super().__init__(f"{kind} {ref_id} not found")

    def fields(self) -> dict:
        return {"kind": self.kind, "id": self.ref_id}


class InsufficientStock(CheckoutError):
    """Business rule violation found inside the commit transaction. Never retried."""

    code = "insufficient_stock"
    status_code = 409

    def __init__(self, item_id: str, available: int, requested: int, item_name: str = ""):
        self.item_id = item_id
        self.item_name = item_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"not enough stock for {item_name or item_id}: available {available}, requested {requested}"
        )

    def fields(self) -> dict:
        return {"item_id": self.item_id, "available": self.available, "requested": self.requested}


class CommitFailed(CheckoutError):
    """Transient store failure or exhausted transaction retries; the sale can be retried unchanged."""

    code = "commit_failed"
    status_code = 503

    def __init__(self, message: str = "could not complete the sale", attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)

    def fields(self) -> dict:
        return {"attempts": self.attempts}


class CommitCancelled(CheckoutError):
    code = "commit_cancelled"
    status_code = 409


class CommitInProgress(CheckoutError):
    code = "commit_in_progress"
    status_code = 409


class PersistenceUnavailable(CheckoutError):
    code = "persistence_unavailable"
    status_code = 503


class TransactionConflict(Exception):
    """Raised by a store when a transaction's read set changed before it could write."""
