"""Split allocation: partition an expense total across participants.

Every strategy computes each share independently with ROUND_HALF_UP and
then hands the rounding residual to the last entry, so the allocations add
up to the total exactly. The last entry is the last participant in the
list, or the last key of the mapping in iteration order. Callers that need
reproducible results should order their mappings by user id.
"""

import logging
from collections.abc import Collection, Mapping, Sequence
from decimal import Decimal

from .exceptions import AmountMismatchError, InvalidArgumentError
from .models import (
    Allocation,
    EqualSplit,
    ExactAmountSplit,
    PercentageSplit,
    SharesSplit,
    SplitStrategy,
    SplitType,
)
from .money import (
    TOLERANCE,
    ZERO,
    Money,
    has_cent_precision,
    quantize,
    to_decimal,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def _require_positive_total(total: Money) -> None:
    if not total.is_positive():
        raise InvalidArgumentError(
            f"Expense total must be positive, got {total}", value=total.amount
        )


def _require_entries(entries: Collection, label: str) -> None:
    if not entries:
        raise InvalidArgumentError(f"At least one {label} is required", value=entries)


def _decimal_values(mapping: Mapping[int, Decimal]) -> dict[int, Decimal]:
    return {user_id: to_decimal(value) for user_id, value in mapping.items()}


def _require_members(user_ids: Sequence[int], members: Collection[int] | None) -> None:
    if members is None:
        return
    outsiders = [user_id for user_id in user_ids if user_id not in members]
    if outsiders:
        raise InvalidArgumentError(
            f"Participants {outsiders} are not members of the expense's group",
            value=outsiders,
        )


def _require_positive_shares(allocations: list[Allocation]) -> list[Allocation]:
    for allocation in allocations:
        if not allocation.amount.is_positive():
            raise InvalidArgumentError(
                f"Allocation for user {allocation.user_id} would be "
                f"{allocation.amount}; every share must be positive",
                value=allocation.amount.amount,
            )
    return allocations


def absorb_remainder(
    total: Money,
    user_ids: Sequence[int],
    raw_amounts: Sequence[Decimal],
) -> list[Money]:
    """
    Round each amount, then give the last one whatever is left of the total.

    Args:
        total: The amount being split
        user_ids: Users in allocation order
        raw_amounts: Unrounded share per user, same order

    Returns:
        Rounded amounts summing exactly to total
    """
    amounts = [quantize(raw) for raw in raw_amounts[:-1]]
    assigned = sum(amounts, ZERO)
    amounts.append(total.amount - assigned)

    residual = amounts[-1] - quantize(raw_amounts[-1])
    if residual != 0:
        logger.debug(
            f"Assigned rounding remainder {residual} to user {user_ids[-1]}"
        )

    assert sum(amounts, ZERO) == total.amount, "Remainder assignment failed"
    return [Money(amount=amount, currency=total.currency) for amount in amounts]


def allocate_equal(
    total: Money,
    participants: Sequence[int],
    members: Collection[int] | None = None,
) -> list[Allocation]:
    """
    Split the total evenly across participants.

    Each participant gets total / N rounded half-up; the last participant
    absorbs the remainder.

    Args:
        total: Amount to split
        participants: User ids in allocation order
        members: Optional group member ids to validate participants against

    Returns:
        One allocation per participant

    Raises:
        InvalidArgumentError: Empty or duplicated participants, non-members,
            or a total too small to give everyone a positive share
    """
    _require_positive_total(total)
    _require_entries(participants, "participant")
    if len(set(participants)) != len(participants):
        raise InvalidArgumentError(
            f"Participants must be unique: {list(participants)}",
            value=list(participants),
        )
    _require_members(participants, members)

    share = total.amount / Decimal(len(participants))
    amounts = absorb_remainder(total, participants, [share] * len(participants))

    return _require_positive_shares(
        [
            Allocation(user_id=user_id, amount=amount, split_type=SplitType.EQUAL)
            for user_id, amount in zip(participants, amounts)
        ]
    )


def allocate_exact_amounts(
    total: Money,
    user_amounts: Mapping[int, Decimal],
    members: Collection[int] | None = None,
) -> list[Allocation]:
    """
    Take caller-supplied amounts verbatim.

    The amounts may differ from the total by at most one cent.

    Raises:
        InvalidArgumentError: Empty mapping, non-members, non-positive
            amounts or amounts finer than a cent
        AmountMismatchError: Amounts miss the total by more than a cent
    """
    _require_positive_total(total)
    _require_entries(user_amounts, "split amount")
    user_amounts = _decimal_values(user_amounts)
    _require_members(list(user_amounts), members)

    for user_id, amount in user_amounts.items():
        if amount <= 0:
            raise InvalidArgumentError(
                f"Split amount for user {user_id} must be positive, got {amount}",
                value=amount,
            )
        if not has_cent_precision(amount):
            raise InvalidArgumentError(
                f"Split amount for user {user_id} has sub-cent precision: {amount}",
                value=amount,
            )

    split_total = sum(user_amounts.values(), ZERO)
    if abs(total.amount - split_total) > TOLERANCE:
        raise AmountMismatchError(expected=total.amount, actual=split_total)

    return [
        Allocation(
            user_id=user_id,
            amount=Money(amount=amount, currency=total.currency),
            split_type=SplitType.EXACT_AMOUNT,
        )
        for user_id, amount in user_amounts.items()
    ]


def allocate_percentages(
    total: Money,
    user_percentages: Mapping[int, Decimal],
    members: Collection[int] | None = None,
) -> list[Allocation]:
    """
    Split the total by percentage.

    Each entry gets total * pct / 100 rounded half-up; the last entry
    absorbs the remainder.

    Raises:
        InvalidArgumentError: Empty mapping, non-members, a percentage
            outside 0..100, or percentages that don't sum to 100 (+/- 0.01)
    """
    _require_positive_total(total)
    _require_entries(user_percentages, "percentage")
    user_percentages = _decimal_values(user_percentages)
    _require_members(list(user_percentages), members)

    for user_id, percentage in user_percentages.items():
        if percentage < 0 or percentage > HUNDRED:
            raise InvalidArgumentError(
                f"Percentage for user {user_id} must be between 0 and 100, "
                f"got {percentage}",
                value=percentage,
            )

    percentage_total = sum(user_percentages.values(), ZERO)
    if abs(percentage_total - HUNDRED) > TOLERANCE:
        raise InvalidArgumentError(
            f"Split percentages must sum to 100, got {percentage_total}",
            value=percentage_total,
        )

    user_ids = list(user_percentages)
    raw = [total.amount * pct / HUNDRED for pct in user_percentages.values()]
    amounts = absorb_remainder(total, user_ids, raw)

    return _require_positive_shares(
        [
            Allocation(
                user_id=user_id,
                amount=amount,
                split_type=SplitType.PERCENTAGE,
                percentage=user_percentages[user_id],
            )
            for user_id, amount in zip(user_ids, amounts)
        ]
    )


def allocate_shares(
    total: Money,
    user_shares: Mapping[int, Decimal],
    members: Collection[int] | None = None,
) -> list[Allocation]:
    """
    Split the total by share units.

    Each entry gets total * shares / sum(shares) rounded half-up; the last
    entry absorbs the remainder.

    Raises:
        InvalidArgumentError: Empty mapping, non-members, negative shares,
            or a non-positive share total
    """
    _require_positive_total(total)
    _require_entries(user_shares, "share entry")
    user_shares = _decimal_values(user_shares)
    _require_members(list(user_shares), members)

    for user_id, units in user_shares.items():
        if units < 0:
            raise InvalidArgumentError(
                f"Shares for user {user_id} cannot be negative, got {units}",
                value=units,
            )

    share_total = sum(user_shares.values(), Decimal(0))
    if share_total <= 0:
        raise InvalidArgumentError(
            f"Total shares must be greater than zero, got {share_total}",
            value=share_total,
        )

    user_ids = list(user_shares)
    raw = [total.amount * units / share_total for units in user_shares.values()]
    amounts = absorb_remainder(total, user_ids, raw)

    return _require_positive_shares(
        [
            Allocation(
                user_id=user_id,
                amount=amount,
                split_type=SplitType.SHARES,
                shares=user_shares[user_id],
            )
            for user_id, amount in zip(user_ids, amounts)
        ]
    )


def strategy_participants(strategy: SplitStrategy) -> list[int]:
    """User ids named by a strategy, in allocation order."""
    if isinstance(strategy, EqualSplit):
        return list(strategy.participants)
    if isinstance(strategy, ExactAmountSplit):
        return list(strategy.amounts)
    if isinstance(strategy, PercentageSplit):
        return list(strategy.percentages)
    if isinstance(strategy, SharesSplit):
        return list(strategy.shares)
    raise InvalidArgumentError(f"Unknown split strategy: {strategy!r}", value=strategy)


def allocate(
    total: Money,
    strategy: SplitStrategy,
    members: Collection[int] | None = None,
) -> list[Allocation]:
    """Allocate the total with whichever strategy was chosen."""
    if isinstance(strategy, EqualSplit):
        return allocate_equal(total, strategy.participants, members)
    if isinstance(strategy, ExactAmountSplit):
        return allocate_exact_amounts(total, strategy.amounts, members)
    if isinstance(strategy, PercentageSplit):
        return allocate_percentages(total, strategy.percentages, members)
    if isinstance(strategy, SharesSplit):
        return allocate_shares(total, strategy.shares, members)
    raise InvalidArgumentError(f"Unknown split strategy: {strategy!r}", value=strategy)
