"""Pydantic domain models for Split Ledger."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import InvalidArgumentError
from .money import TOLERANCE, ZERO, Money, normalize_currency, to_decimal

ModelT = TypeVar("ModelT", bound=BaseModel)


def utc_now() -> datetime:
    """Default clock: the current time in UTC."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted to it."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def build_model(model_cls: type[ModelT], **fields: Any) -> ModelT:
    """
    Construct a model from caller input.

    Raises:
        InvalidArgumentError: A field fails validation
    """
    try:
        return model_cls(**fields)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or model_cls.__name__
        raise InvalidArgumentError(
            f"Invalid {field}: {error['msg']}", value=error.get("input")
        ) from e


def revalidated(model: ModelT) -> ModelT:
    """Re-check a model whose fields were assigned after construction."""
    return build_model(type(model), **model.model_dump())


# ============================================================================
# Enums
# ============================================================================


class ExpenseCategory(str, Enum):
    FOOD_DRINKS = "food_drinks"
    TRANSPORTATION = "transportation"
    ACCOMMODATION = "accommodation"
    ENTERTAINMENT = "entertainment"
    SHOPPING = "shopping"
    UTILITIES = "utilities"
    HEALTHCARE = "healthcare"
    EDUCATION = "education"
    TRAVEL = "travel"
    GROCERIES = "groceries"
    RESTAURANTS = "restaurants"
    GAS = "gas"
    PARKING = "parking"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return _CATEGORY_NAMES[self]


_CATEGORY_NAMES = {
    ExpenseCategory.FOOD_DRINKS: "Food & Drinks",
    ExpenseCategory.TRANSPORTATION: "Transportation",
    ExpenseCategory.ACCOMMODATION: "Accommodation",
    ExpenseCategory.ENTERTAINMENT: "Entertainment",
    ExpenseCategory.SHOPPING: "Shopping",
    ExpenseCategory.UTILITIES: "Utilities",
    ExpenseCategory.HEALTHCARE: "Healthcare",
    ExpenseCategory.EDUCATION: "Education",
    ExpenseCategory.TRAVEL: "Travel",
    ExpenseCategory.GROCERIES: "Groceries",
    ExpenseCategory.RESTAURANTS: "Restaurants",
    ExpenseCategory.GAS: "Gas/Fuel",
    ExpenseCategory.PARKING: "Parking",
    ExpenseCategory.OTHER: "Other",
}


class ExpenseStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    DELETED = "deleted"


class SplitType(str, Enum):
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    EXACT_AMOUNT = "exact_amount"
    SHARES = "shares"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class ActivityAction(str, Enum):
    EXPENSE_CREATED = "expense_created"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_DELETED = "expense_deleted"
    SPLIT_SETTLED = "split_settled"
    SPLIT_UNSETTLED = "split_unsettled"
    SETTLEMENT_CREATED = "settlement_created"
    SETTLEMENT_IN_PROGRESS = "settlement_in_progress"
    SETTLEMENT_CONFIRMED = "settlement_confirmed"
    SETTLEMENT_REJECTED = "settlement_rejected"
    SETTLEMENT_CANCELLED = "settlement_cancelled"
    SETTLEMENT_REMINDER = "settlement_reminder"


class EntityType(str, Enum):
    EXPENSE = "expense"
    EXPENSE_SPLIT = "expense_split"
    SETTLEMENT = "settlement"


# ============================================================================
# Identity Models
# ============================================================================


class User(BaseModel):
    """A person who can pay for and owe on expenses."""

    id: int | None = None
    name: str
    email: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class Group(BaseModel):
    """A set of users sharing expenses.

    Members and admins are held as id sets; admins are always members.
    """

    id: int | None = None
    name: str
    default_currency: str = "USD"
    created_by: int | None = None
    member_ids: set[int] = Field(default_factory=set)
    admin_ids: set[int] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("default_currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency(value)

    def is_member(self, user_id: int) -> bool:
        return user_id in self.member_ids

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids


# ============================================================================
# Split Strategies
# ============================================================================


def _decimal_map(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: to_decimal(amount) for key, amount in value.items()}
    return value


class EqualSplit(BaseModel):
    """Split the total evenly; the last participant takes the remainder."""

    kind: Literal["equal"] = "equal"
    participants: list[int]


class ExactAmountSplit(BaseModel):
    """Caller-supplied amount per user."""

    kind: Literal["exact_amount"] = "exact_amount"
    amounts: dict[int, Decimal]

    @field_validator("amounts", mode="before")
    @classmethod
    def _coerce_amounts(cls, value: Any) -> Any:
        return _decimal_map(value)


class PercentageSplit(BaseModel):
    """Percent of the total per user; percentages must sum to 100."""

    kind: Literal["percentage"] = "percentage"
    percentages: dict[int, Decimal]

    @field_validator("percentages", mode="before")
    @classmethod
    def _coerce_percentages(cls, value: Any) -> Any:
        return _decimal_map(value)


class SharesSplit(BaseModel):
    """Weighted split by share units."""

    kind: Literal["shares"] = "shares"
    shares: dict[int, Decimal]

    @field_validator("shares", mode="before")
    @classmethod
    def _coerce_shares(cls, value: Any) -> Any:
        return _decimal_map(value)


SplitStrategy = Annotated[
    EqualSplit | ExactAmountSplit | PercentageSplit | SharesSplit,
    Field(discriminator="kind"),
]


class Allocation(BaseModel):
    """One participant's share as produced by the allocator."""

    user_id: int
    amount: Money
    split_type: SplitType
    percentage: Decimal | None = None
    shares: Decimal | None = None


# ============================================================================
# Ledger Models
# ============================================================================


class Expense(BaseModel):
    """A shared cost paid by one user for a group."""

    id: int | None = None
    group_id: int
    description: str = Field(min_length=1, max_length=500)
    amount: Decimal
    currency: str = "USD"
    paid_by: int
    category: ExpenseCategory = ExpenseCategory.OTHER
    status: ExpenseStatus = ExpenseStatus.CONFIRMED
    notes: str | None = None
    expense_date: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    created_by: int | None = None
    updated_by: int | None = None
    version: int = 0

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency(value)

    @field_validator("expense_date")
    @classmethod
    def _expense_date_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def total(self) -> Money:
        return Money(amount=self.amount, currency=self.currency)

    @property
    def is_deleted(self) -> bool:
        return self.status == ExpenseStatus.DELETED


class ExpenseSplit(BaseModel):
    """One participant's share of one expense. The creditor is the payer."""

    id: int | None = None
    expense_id: int | None = None
    user_id: int
    share_amount: Decimal = Field(gt=0)
    split_type: SplitType = SplitType.EQUAL
    percentage: Decimal | None = Field(default=None, ge=0, le=100)
    shares: Decimal | None = None
    settled: bool = False
    settled_at: datetime | None = None
    settled_by: int | None = None
    settlement_note: str | None = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utc_now)

    def mark_settled(self, user_id: int, note: str | None, at: datetime) -> None:
        self.settled = True
        self.settled_at = at
        self.settled_by = user_id
        self.settlement_note = note

    def mark_unsettled(self) -> None:
        self.settled = False
        self.settled_at = None
        self.settled_by = None
        self.settlement_note = None


class LedgerEntry(BaseModel):
    """An expense together with its splits, handled as one unit."""

    expense: Expense
    splits: list[ExpenseSplit]

    @property
    def total_split_amount(self) -> Decimal:
        return sum((split.share_amount for split in self.splits), ZERO)

    @property
    def unsettled_amount(self) -> Decimal:
        return sum(
            (split.share_amount for split in self.splits if not split.settled), ZERO
        )

    @property
    def is_fully_settled(self) -> bool:
        return all(split.settled for split in self.splits)

    @property
    def is_split_amount_valid(self) -> bool:
        """Splits add up to the expense amount within a cent."""
        return abs(self.expense.amount - self.total_split_amount) <= TOLERANCE

    @property
    def participant_ids(self) -> list[int]:
        return [split.user_id for split in self.splits]

    def involves_user(self, user_id: int) -> bool:
        return self.expense.paid_by == user_id or user_id in self.participant_ids


class UnsettledShare(BaseModel):
    """A flattened unsettled split: debtor owes creditor the amount."""

    split_id: int
    expense_id: int
    group_id: int
    creditor_id: int
    debtor_id: int
    amount: Decimal


class ExpenseStats(BaseModel):
    total_expenses: int
    total_amount: Decimal
    settled_amount: Decimal
    average_expense_amount: Decimal


# ============================================================================
# Settlement Models
# ============================================================================


class SettleUp(BaseModel):
    """A request from payer to pay payee a fixed amount within a group."""

    id: int | None = None
    group_id: int
    payer_id: int
    payee_id: int
    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    status: SettlementStatus = SettlementStatus.PENDING
    payment_method: PaymentMethod | None = None
    notes: str | None = Field(default=None, max_length=500)
    initiated_by: int
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    confirmed_at: datetime | None = None
    confirmed_by: int | None = None
    rejected_at: datetime | None = None
    rejected_by: int | None = None
    rejection_reason: str | None = Field(default=None, max_length=500)
    cancelled_at: datetime | None = None
    cancelled_by: int | None = None
    external_transaction_id: str | None = Field(default=None, max_length=100)
    version: int = 0

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency(value)

    @property
    def money(self) -> Money:
        return Money(amount=self.amount, currency=self.currency)

    def describe(self) -> str:
        return f"User {self.payer_id} pays user {self.payee_id} {self.money}"


# ============================================================================
# Balance Models
# ============================================================================


class MemberBalance(BaseModel):
    """What a member is owed and owes across the rest of the group."""

    user_id: int
    owed_to_user: Decimal
    owed_by_user: Decimal

    @property
    def net(self) -> Decimal:
        """Positive: the group owes this member. Negative: member owes."""
        return self.owed_to_user - self.owed_by_user


class SuggestedTransfer(BaseModel):
    from_user: int
    to_user: int
    amount: Decimal


# ============================================================================
# Activity Models
# ============================================================================


class ActivityEvent(BaseModel):
    """A state change reported to the activity sink."""

    id: int | None = None
    action: ActivityAction
    entity_type: EntityType
    entity_id: int
    group_id: int
    actor_id: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)
