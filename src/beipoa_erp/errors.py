"""Error kinds raised by the BeiPoa business layer.

Validation and business-rule errors are recovered at the pipeline boundary and
turned into :class:`~beipoa_erp.core_logic.OperationResult` values.
:class:`StoreWriteFailure` is the exception to that rule: it always propagates
because the workbook may hold a half-applied commit.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class PipelineError(Exception):
    """Root of every domain error raised by this package."""

    kind = "PipelineError"
    retryable = False


class BusinessRuleViolation(PipelineError):
    """Raised when a requested operation violates a domain constraint."""

    kind = "BusinessRuleViolation"


class InvalidInput(BusinessRuleViolation, ValueError):
    """Raised when caller input is rejected before any lock is taken."""

    kind = "InvalidInput"


class MissingReferenceError(InvalidInput):
    """Raised when a referenced product, customer, or transaction is unknown."""

    kind = "MissingReference"


class InsufficientStock(BusinessRuleViolation):
    """Raised when the FIFO batches of an item cannot cover a request."""

    kind = "InsufficientStock"

    def __init__(self, item_id: str, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient stock for '{item_id}': requested {requested}, available {available}"
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class CreditLimitExceeded(BusinessRuleViolation):
    """Raised when a credit sale would push a customer over their limit."""

    kind = "CreditLimitExceeded"

    def __init__(
        self,
        customer_id: str,
        current_balance: Decimal,
        credit_limit: Decimal,
        amount: Decimal,
    ) -> None:
        super().__init__(
            f"Credit limit exceeded for '{customer_id}': balance {current_balance} "
            f"+ sale {amount} > limit {credit_limit}"
        )
        self.customer_id = customer_id
        self.current_balance = current_balance
        self.credit_limit = credit_limit
        self.amount = amount


class InvalidStatusTransition(BusinessRuleViolation):
    """Raised when a sale or quotation cannot move to the requested status."""

    kind = "InvalidStatusTransition"


class Busy(PipelineError):
    """Raised when the mutation lock is not acquired within the bounded wait.

    Nothing has been written when this is raised, so the caller may retry.
    """

    kind = "Busy"
    retryable = True


class StoreWriteFailure(PipelineError):
    """Raised when the commit step failed after it started.

    The workbook may contain part of the commit; reconcile from the store.
    """

    kind = "StoreWriteFailure"

    def __init__(self, message: str, *, transaction_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id


__all__ = [
    "PipelineError",
    "BusinessRuleViolation",
    "InvalidInput",
    "MissingReferenceError",
    "InsufficientStock",
    "CreditLimitExceeded",
    "InvalidStatusTransition",
    "Busy",
    "StoreWriteFailure",
]
