"""Expense ledger: an expense and its splits kept consistent as one unit."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .activity import ActivitySink, publish
from .allocator import absorb_remainder, allocate, allocate_equal, strategy_participants
from .db import Database
from .exceptions import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from .locking import KeyedLocks
from .models import (
    ActivityAction,
    ActivityEvent,
    Allocation,
    EntityType,
    Expense,
    ExpenseCategory,
    ExpenseSplit,
    ExpenseStats,
    ExpenseStatus,
    Group,
    LedgerEntry,
    SplitStrategy,
    SplitType,
    build_model,
    revalidated,
    utc_now,
)
from .money import TOLERANCE, ZERO, Money, has_cent_precision, quantize, to_decimal

logger = logging.getLogger(__name__)

_strategy_adapter: TypeAdapter[SplitStrategy] = TypeAdapter(SplitStrategy)


def to_money(amount: Any, currency: str) -> Money:
    """
    Build Money from caller input, refusing sub-cent amounts.

    Raises:
        InvalidArgumentError: Float input, sub-cent precision or non-positive
    """
    if isinstance(amount, Money):
        if amount.currency != currency:
            raise InvalidArgumentError(
                f"Expected an amount in {currency}, got {amount.currency}",
                value=amount.currency,
            )
        value = amount.amount
    else:
        value = to_decimal(amount)
    if not has_cent_precision(value):
        raise InvalidArgumentError(
            f"Amount {value} has more than two fraction digits", value=value
        )
    if value <= 0:
        raise InvalidArgumentError(f"Amount must be positive, got {value}", value=value)
    return build_model(Money, amount=value, currency=currency)


def parse_category(category: ExpenseCategory | str) -> ExpenseCategory:
    try:
        return ExpenseCategory(category)
    except ValueError as e:
        raise InvalidArgumentError(
            f"Unknown expense category: {category!r}", value=category
        ) from e


def parse_strategy(strategy: SplitStrategy | dict[str, Any]) -> SplitStrategy:
    """Accept a strategy model or its dict form keyed by "kind"."""
    if not isinstance(strategy, dict):
        return strategy
    try:
        return _strategy_adapter.validate_python(strategy)
    except ValidationError as e:
        raise InvalidArgumentError(f"Invalid split strategy: {e}", value=strategy) from e


def split_from_allocation(allocation: Allocation, created_at: datetime) -> ExpenseSplit:
    return ExpenseSplit(
        user_id=allocation.user_id,
        share_amount=allocation.amount.amount,
        split_type=allocation.split_type,
        percentage=allocation.percentage,
        shares=allocation.shares,
        created_at=created_at,
    )


def recalculate_splits(
    old_total: Money,
    new_total: Money,
    splits: list[ExpenseSplit],
    now: datetime,
) -> tuple[list[ExpenseSplit], bool]:
    """
    Redistribute splits after the expense amount changes.

    Equal splits are re-derived over the same participants. Anything else is
    rescaled by new_total / old_total so each participant keeps their
    relative share; the last split absorbs the rounding remainder.

    Args:
        old_total: Amount the splits were computed for
        new_total: The new expense amount
        splits: Current splits in creation order
        now: Timestamp for freshly created splits

    Returns:
        (splits, replaced): replaced is True when the splits are new rows
    """
    if not splits:
        raise InvalidArgumentError("Expense has no splits to recalculate", value=splits)

    if all(split.split_type == SplitType.EQUAL for split in splits):
        allocations = allocate_equal(new_total, [split.user_id for split in splits])
        return [split_from_allocation(a, now) for a in allocations], True

    raw = [split.share_amount * new_total.amount / old_total.amount for split in splits]
    amounts = absorb_remainder(new_total, [split.user_id for split in splits], raw)

    rescaled = []
    for split, amount in zip(splits, amounts):
        if not amount.is_positive():
            raise InvalidArgumentError(
                f"Rescaling would leave user {split.user_id} with {amount}",
                value=amount.amount,
            )
        rescaled.append(split.model_copy(update={"share_amount": amount.amount}))
    return rescaled, False


def validate_split_amounts(splits: list[ExpenseSplit], total: Decimal) -> bool:
    """Check that splits add up to the total within one cent."""
    split_total = sum((split.share_amount for split in splits), ZERO)
    return abs(split_total - total) <= TOLERANCE


class ExpenseLedger:
    """Creates, edits and settles expenses and their splits."""

    def __init__(
        self,
        database: Database,
        sink: ActivitySink | None = None,
        clock: Callable[[], datetime] = utc_now,
        locks: KeyedLocks | None = None,
        overdue_threshold_days: int = 30,
    ):
        """Initialize the ledger."""
        self.db = database
        self.sink = sink
        self.clock = clock
        self.locks = locks if locks is not None else KeyedLocks()
        self.overdue_threshold_days = overdue_threshold_days

    # ========================================================================
    # Lookups and guards
    # ========================================================================

    def _require_group(self, group_id: int) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)
        return group

    def _require_user(self, user_id: int) -> None:
        if self.db.get_user(user_id) is None:
            raise NotFoundError("User", user_id)

    def _require_member(self, group: Group, user_id: int, action: str) -> None:
        self._require_user(user_id)
        if not group.is_member(user_id):
            raise ForbiddenError(
                user_id, action, f"not a member of group {group.id}"
            )

    def _load(self, expense_id: int) -> LedgerEntry:
        entry = self.db.get_ledger(expense_id)
        if entry is None:
            raise NotFoundError("Expense", expense_id)
        return entry

    def _require_mutable(self, entry: LedgerEntry) -> None:
        if entry.expense.is_deleted:
            raise ConflictError(entry.expense.id, "expense has been deleted")
        if entry.expense.status == ExpenseStatus.CONFIRMED and entry.is_fully_settled:
            raise ConflictError(entry.expense.id, "expense is fully settled")

    def _emit(
        self,
        action: ActivityAction,
        entity_type: EntityType,
        entity_id: int,
        group_id: int,
        actor_id: int | None,
        details: dict[str, Any],
        at: datetime,
    ) -> None:
        publish(
            self.sink,
            ActivityEvent(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                group_id=group_id,
                actor_id=actor_id,
                details=details,
                occurred_at=at,
            ),
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def create(
        self,
        group_id: int,
        payer_id: int,
        description: str,
        amount: Any,
        category: ExpenseCategory | str,
        strategy: SplitStrategy | dict[str, Any],
        *,
        notes: str | None = None,
        currency: str | None = None,
        created_by: int | None = None,
        expense_date: datetime | None = None,
    ) -> LedgerEntry:
        """
        Create a confirmed expense and allocate it with the given strategy.

        The expense and its splits are stored in a single transaction.

        Args:
            group_id: Group the expense belongs to
            payer_id: User who paid (creditor of every split)
            description: What the money was spent on
            amount: Total amount (Decimal, int or str)
            category: Expense category
            strategy: EqualSplit, ExactAmountSplit, PercentageSplit or
                SharesSplit (or its dict form with a "kind" key)
            notes: Optional memo
            currency: ISO code; defaults to the group's currency
            created_by: Creator; defaults to the payer
            expense_date: When the expense happened; defaults to now. A naive
                datetime is taken as UTC

        Returns:
            The stored ledger entry

        Raises:
            NotFoundError: Group, payer or participant missing
            ForbiddenError: Payer, creator or participant outside the group
            InvalidArgumentError: Malformed amount or strategy input
            AmountMismatchError: Exact amounts miss the total
        """
        strategy = parse_strategy(strategy)
        category = parse_category(category)
        if not description or not description.strip():
            raise InvalidArgumentError("Description is required", value=description)

        group = self._require_group(group_id)
        self._require_member(group, payer_id, "pay for a group expense")
        creator = created_by if created_by is not None else payer_id
        if creator != payer_id:
            self._require_member(group, creator, "create a group expense")
        for user_id in strategy_participants(strategy):
            self._require_member(group, user_id, "take part in a group expense")

        total = to_money(amount, (currency or group.default_currency).upper())
        allocations = allocate(total, strategy)

        now = self.clock()
        expense = build_model(
            Expense,
            group_id=group_id,
            description=description.strip(),
            amount=total.amount,
            currency=total.currency,
            paid_by=payer_id,
            category=category,
            status=ExpenseStatus.CONFIRMED,
            notes=notes,
            expense_date=expense_date or now,
            created_at=now,
            updated_at=now,
            created_by=creator,
            updated_by=creator,
        )
        splits = [split_from_allocation(a, now) for a in allocations]

        entry = self.db.insert_ledger(expense, splits)
        expense_id = entry.expense.id
        assert expense_id is not None

        logger.info(
            f"Created expense {expense_id} '{expense.description}' for {total} "
            f"split {strategy.kind} across {len(splits)} participants"
        )
        self._emit(
            ActivityAction.EXPENSE_CREATED,
            EntityType.EXPENSE,
            expense_id,
            group_id,
            creator,
            {
                "amount": str(total.amount),
                "currency": total.currency,
                "split_type": strategy.kind,
                "participants": entry.participant_ids,
            },
            now,
        )
        return entry

    def update(
        self,
        expense_id: int,
        actor_id: int,
        *,
        description: str | None = None,
        amount: Any = None,
        category: ExpenseCategory | str | None = None,
        notes: str | None = None,
    ) -> LedgerEntry:
        """
        Edit an expense; a changed amount recalculates its splits.

        Fields left as None keep their stored value. An update that changes
        nothing is not saved and emits no activity.

        Raises:
            NotFoundError: Expense or actor missing
            ForbiddenError: Actor outside the group
            ConflictError: Expense fully settled, deleted, or changed by a
                concurrent writer
            InvalidArgumentError: Malformed new amount or description
        """
        with self.locks.hold(("expense", expense_id)):
            entry = self._load(expense_id)
            group = self._require_group(entry.expense.group_id)
            self._require_member(group, actor_id, "edit this expense")
            self._require_mutable(entry)

            now = self.clock()
            expense = entry.expense.model_copy()
            splits = [split.model_copy() for split in entry.splits]
            changes: dict[str, Any] = {}

            if description is not None:
                if not description.strip():
                    raise InvalidArgumentError(
                        "Description is required", value=description
                    )
                if description.strip() != expense.description:
                    changes["description"] = description.strip()
                    expense.description = description.strip()
            if category is not None and parse_category(category) != expense.category:
                expense.category = parse_category(category)
                changes["category"] = expense.category.value
            if notes is not None and notes != expense.notes:
                changes["notes"] = notes
                expense.notes = notes

            replace_splits = False
            if amount is not None:
                new_total = to_money(amount, expense.currency)
                if new_total.amount != expense.amount:
                    splits, replace_splits = recalculate_splits(
                        expense.total, new_total, splits, now
                    )
                    changes["amount"] = {
                        "old": str(expense.amount),
                        "new": str(new_total.amount),
                    }
                    expense.amount = new_total.amount
                    logger.info(
                        f"Recalculated {len(splits)} splits of expense {expense_id} "
                        f"({'re-derived' if replace_splits else 'rescaled'}) "
                        f"for new amount {new_total}"
                    )

            if not changes:
                logger.debug(f"Update of expense {expense_id} changed nothing")
                return entry

            expense.updated_at = now
            expense.updated_by = actor_id
            expense = revalidated(expense)

            saved = self.db.save_ledger(
                LedgerEntry(expense=expense, splits=splits),
                expected_version=entry.expense.version,
                replace_splits=replace_splits,
            )
            if saved is None:
                raise ConflictError(
                    expense_id, "expense was modified concurrently; reload and retry"
                )

        logger.info(f"Updated expense {expense_id}: {sorted(changes)}")
        self._emit(
            ActivityAction.EXPENSE_UPDATED,
            EntityType.EXPENSE,
            expense_id,
            expense.group_id,
            actor_id,
            {"changes": changes},
            now,
        )
        return saved

    def delete(self, expense_id: int, actor_id: int) -> LedgerEntry:
        """
        Soft-delete an expense. Its splits are kept for history.

        Raises:
            NotFoundError: Expense or actor missing
            ForbiddenError: Actor outside the group
            ConflictError: Expense fully settled, already deleted, or
                changed by a concurrent writer
        """
        with self.locks.hold(("expense", expense_id)):
            entry = self._load(expense_id)
            group = self._require_group(entry.expense.group_id)
            self._require_member(group, actor_id, "delete this expense")
            self._require_mutable(entry)

            now = self.clock()
            expense = entry.expense.model_copy(
                update={
                    "status": ExpenseStatus.DELETED,
                    "updated_at": now,
                    "updated_by": actor_id,
                }
            )
            saved = self.db.save_ledger(
                LedgerEntry(expense=expense, splits=entry.splits),
                expected_version=entry.expense.version,
            )
            if saved is None:
                raise ConflictError(
                    expense_id, "expense was modified concurrently; reload and retry"
                )

        logger.info(f"Deleted expense {expense_id}")
        self._emit(
            ActivityAction.EXPENSE_DELETED,
            EntityType.EXPENSE,
            expense_id,
            expense.group_id,
            actor_id,
            {"amount": str(expense.amount), "currency": expense.currency},
            now,
        )
        return saved

    # ========================================================================
    # Settlement status
    # ========================================================================

    def is_fully_settled(self, expense_id: int) -> bool:
        """True iff every split of the expense is settled."""
        return self._load(expense_id).is_fully_settled

    def unsettled_amount(self, expense_id: int) -> Money:
        """Sum of the expense's unsettled shares."""
        entry = self._load(expense_id)
        return Money(amount=entry.unsettled_amount, currency=entry.expense.currency)

    def _set_settled(
        self,
        split_ids: list[int],
        actor_id: int,
        settled: bool,
        note: str | None,
    ) -> list[ExpenseSplit]:
        if not split_ids:
            raise InvalidArgumentError("No splits given", value=split_ids)

        by_expense: dict[int, list[int]] = {}
        for split_id in split_ids:
            split = self.db.get_split(split_id)
            if split is None:
                raise NotFoundError("Expense split", split_id)
            assert split.expense_id is not None
            by_expense.setdefault(split.expense_id, []).append(split_id)

        with self.locks.hold_many([("expense", eid) for eid in by_expense]):
            now = self.clock()
            to_save = []
            changed: list[tuple[LedgerEntry, ExpenseSplit]] = []
            result = []
            for expense_id, ids in by_expense.items():
                entry = self._load(expense_id)
                group = self._require_group(entry.expense.group_id)
                self._require_member(group, actor_id, "settle expense splits")
                if entry.expense.is_deleted:
                    raise ConflictError(expense_id, "expense has been deleted")

                splits = []
                for split in entry.splits:
                    if split.id in ids and split.settled != settled:
                        split = split.model_copy()
                        if settled:
                            split.mark_settled(actor_id, note, now)
                        else:
                            split.mark_unsettled()
                        split = revalidated(split)
                        changed.append((entry, split))
                    if split.id in ids:
                        result.append(split)
                    splits.append(split)
                to_save.append(
                    (LedgerEntry(expense=entry.expense, splits=splits), entry.expense.version)
                )

            if changed and self.db.save_ledgers(to_save) is None:
                raise ConflictError(
                    ", ".join(str(eid) for eid in by_expense),
                    "expense was modified concurrently; reload and retry",
                )

        action = ActivityAction.SPLIT_SETTLED if settled else ActivityAction.SPLIT_UNSETTLED
        for entry, split in changed:
            assert split.id is not None
            logger.info(
                f"Split {split.id} of expense {entry.expense.id} "
                f"{'settled' if settled else 'unsettled'} by user {actor_id}"
            )
            self._emit(
                action,
                EntityType.EXPENSE_SPLIT,
                split.id,
                entry.expense.group_id,
                actor_id,
                {
                    "expense_id": entry.expense.id,
                    "debtor_id": split.user_id,
                    "creditor_id": entry.expense.paid_by,
                    "amount": str(split.share_amount),
                    "note": note,
                },
                now,
            )
        return result

    def settle_split(
        self, split_id: int, actor_id: int, note: str | None = None
    ) -> ExpenseSplit:
        """
        Mark one split as settled, stamping who settled it and when.

        Settling an already settled split changes nothing.
        """
        return self._set_settled([split_id], actor_id, True, note)[0]

    def unsettle_split(self, split_id: int, actor_id: int) -> ExpenseSplit:
        """Mark one split as unsettled, clearing its settlement stamp."""
        return self._set_settled([split_id], actor_id, False, None)[0]

    def bulk_settle_splits(
        self, split_ids: list[int], actor_id: int, note: str | None = None
    ) -> list[ExpenseSplit]:
        """Settle several splits at once; either all are stored or none."""
        return self._set_settled(split_ids, actor_id, True, note)

    # ========================================================================
    # Queries
    # ========================================================================

    def get(self, expense_id: int) -> LedgerEntry:
        """Get an expense with its splits."""
        return self._load(expense_id)

    def group_expenses(
        self, group_id: int, include_deleted: bool = False
    ) -> list[Expense]:
        """List a group's expenses, newest first."""
        self._require_group(group_id)
        return self.db.get_group_expenses(group_id, include_deleted=include_deleted)

    def is_overdue(self, split_id: int, threshold_days: int | None = None) -> bool:
        """True if the split is unsettled and its expense is older than the threshold."""
        split = self.db.get_split(split_id)
        if split is None:
            raise NotFoundError("Expense split", split_id)
        if split.settled:
            return False
        assert split.expense_id is not None
        entry = self._load(split.expense_id)
        days = threshold_days if threshold_days is not None else self.overdue_threshold_days
        return entry.expense.expense_date < self.clock() - timedelta(days=days)

    def overdue_splits(
        self, user_id: int, threshold_days: int | None = None
    ) -> list[ExpenseSplit]:
        """A user's unsettled splits on expenses older than the threshold."""
        self._require_user(user_id)
        days = threshold_days if threshold_days is not None else self.overdue_threshold_days
        cutoff = self.clock() - timedelta(days=days)
        return self.db.get_unsettled_splits_before(user_id, cutoff)

    def group_stats(self, group_id: int) -> ExpenseStats:
        """Count, total, fully-settled total and average of a group's expenses."""
        expenses = self.group_expenses(group_id)
        total = sum((expense.amount for expense in expenses), ZERO)
        settled = ZERO
        for expense in expenses:
            assert expense.id is not None
            if self._load(expense.id).is_fully_settled:
                settled += expense.amount
        average = quantize(total / len(expenses)) if expenses else ZERO
        return ExpenseStats(
            total_expenses=len(expenses),
            total_amount=total,
            settled_amount=settled,
            average_expense_amount=average,
        )
