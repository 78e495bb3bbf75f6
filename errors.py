"""Typed failures raised by the reconciliation core.

Service-level failures subclass ``ValueError`` so callers that only care about
"the input was rejected" can keep catching that. ``StoreError`` is a
``RuntimeError``: the request was fine but persistence failed, and retrying may
help.
"""

from decimal import Decimal


class LedgerError(Exception):
    pass


class ValidationError(LedgerError, ValueError):
    pass


class NotFoundError(LedgerError, ValueError):
    pass


class ConflictError(LedgerError, ValueError):
    pass


class _CapacityError(LedgerError, ValueError):
    side = ""

    def __init__(self, available: Decimal, requested: Decimal) -> None:
        self.available = available
        self.requested = requested
        super().__init__(
            f"Attribution of {requested} exceeds available {self.side} capacity of {available}"
        )


class CapacityExceededError(_CapacityError):
    side = "payment"


class IncomeCapacityExceededError(_CapacityError):
    side = "income"


class StoreError(LedgerError, RuntimeError):
    pass
