"""Fixed-point money arithmetic.

All amounts are Decimal with two fraction digits, rounded ROUND_HALF_UP at
the point of allocation. Binary floats are refused on the way in.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from .exceptions import InvalidArgumentError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Allowed drift between a split total and the expense amount
TOLERANCE = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """
    Convert user input to Decimal without passing through float.

    Args:
        value: Decimal, int or numeric string

    Returns:
        The value as Decimal

    Raises:
        InvalidArgumentError: If the value is a float, a bool or not numeric
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or isinstance(value, float):
        raise InvalidArgumentError(
            f"Amounts must be Decimal, int or str, not {type(value).__name__}",
            value=value,
        )
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise InvalidArgumentError(f"Not a number: {value!r}", value=value) from e
    else:
        raise InvalidArgumentError(f"Not a number: {value!r}", value=value)

    if not result.is_finite():
        raise InvalidArgumentError(f"Not a finite number: {value!r}", value=value)
    return result


def quantize(amount: Decimal) -> Decimal:
    """Round to two fraction digits, half-up."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def has_cent_precision(amount: Decimal) -> bool:
    """True if the amount carries no digits beyond the cent."""
    return amount == quantize(amount)


def to_cents(amount: Decimal) -> int:
    """
    Convert a Decimal amount to integer cents.
    Uses ROUND_HALF_UP for consistency.
    """
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a two-digit Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)


def normalize_currency(value: str) -> str:
    """Upper-case a three-letter ISO 4217 code, refusing anything else."""
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid ISO currency code: {value!r}")
    return code


class Money(BaseModel):
    """An amount with two fraction digits in an ISO 4217 currency."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str = "USD"

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal:
        return quantize(to_decimal(value))

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency(value)

    @classmethod
    def zero(cls, currency: str = "USD") -> "Money":
        return cls(amount=ZERO, currency=currency)

    @classmethod
    def of(cls, amount: Any, currency: str = "USD") -> "Money":
        """Build Money from any accepted amount type."""
        return cls(amount=to_decimal(amount), currency=currency)

    @property
    def cents(self) -> int:
        return to_cents(self.amount)

    def _check_currency(self, other: "Money") -> None:
        if other.currency != self.currency:
            raise InvalidArgumentError(
                f"Currency mismatch: {self.currency} vs {other.currency}",
                value=other.currency,
            )

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __neg__(self) -> "Money":
        return Money(amount=-self.amount, currency=self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def multiply(self, ratio: Decimal | int) -> "Money":
        """Multiply by a ratio, rounding the product half-up to the cent."""
        return Money(amount=self.amount * to_decimal(ratio), currency=self.currency)

    def divide(self, count: int) -> "Money":
        """Divide by a positive count, rounding half-up to the cent."""
        if count <= 0:
            raise InvalidArgumentError(
                f"Cannot divide money by {count}", value=count
            )
        return Money(amount=self.amount / Decimal(count), currency=self.currency)

    def is_positive(self) -> bool:
        return self.amount > 0

    def __str__(self) -> str:
        return f"{self.currency} {self.amount:.2f}"


def sum_money(values: list[Money], currency: str = "USD") -> Money:
    """Sum Money values, starting from zero in the given currency."""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total
