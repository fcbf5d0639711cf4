"""Custom exceptions for Split Ledger."""

from decimal import Decimal
from typing import Any


class SplitLedgerError(Exception):
    """Base exception for all Split Ledger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class NotFoundError(SplitLedgerError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: Any, message: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message or f"{entity} {entity_id} not found")


class ForbiddenError(SplitLedgerError):
    """Raised when an actor lacks the relationship an operation requires."""

    def __init__(self, user_id: Any, action: str, reason: str):
        self.user_id = user_id
        self.action = action
        self.reason = reason
        super().__init__(f"User {user_id} may not {action}: {reason}")


class InvalidArgumentError(SplitLedgerError):
    """Raised when strategy input or an amount is malformed."""

    def __init__(self, message: str, value: Any = None):
        self.value = value
        super().__init__(message)


class AmountMismatchError(SplitLedgerError):
    """Raised when exact split amounts don't add up to the expense total."""

    def __init__(self, expected: Decimal, actual: Decimal):
        self.expected = expected
        self.actual = actual
        self.difference = expected - actual
        super().__init__(
            f"Split amounts must equal the expense total: "
            f"expected {expected}, got {actual} (off by {abs(self.difference)})"
        )


class ConflictError(SplitLedgerError):
    """Raised when mutating an expense that is settled, deleted or stale."""

    def __init__(self, entity_id: Any, reason: str):
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Expense {entity_id}: {reason}")


class InvalidStateError(SplitLedgerError):
    """Raised on a settlement transition the current status does not allow."""

    def __init__(self, entity_id: Any, current: str, action: str):
        self.entity_id = entity_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} settlement {entity_id} while it is {current}")
