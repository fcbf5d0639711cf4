"""Split Ledger - Split shared expenses within groups and settle the debts."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .exceptions import (
    AmountMismatchError,
    ConfigurationError,
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    SplitLedgerError,
)
from .ledger import ExpenseLedger
from .models import (
    EqualSplit,
    ExactAmountSplit,
    PercentageSplit,
    SharesSplit,
)
from .money import Money
from .netting import BalanceNetting
from .service import LedgerService
from .settlement import SettlementStateMachine

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "AmountMismatchError",
    "ConfigurationError",
    "ConflictError",
    "ForbiddenError",
    "InvalidArgumentError",
    "InvalidStateError",
    "NotFoundError",
    "SplitLedgerError",
    "ExpenseLedger",
    "EqualSplit",
    "ExactAmountSplit",
    "PercentageSplit",
    "SharesSplit",
    "Money",
    "BalanceNetting",
    "LedgerService",
    "SettlementStateMachine",
]
