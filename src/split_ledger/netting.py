"""Balance netting over unsettled expense splits."""

import logging
from collections import defaultdict, deque
from decimal import Decimal

from .db import Database
from .exceptions import NotFoundError
from .models import Group, MemberBalance, SuggestedTransfer, UnsettledShare
from .money import TOLERANCE, ZERO, quantize

logger = logging.getLogger(__name__)


def simplify_debts(net_positions: dict[int, Decimal]) -> list[SuggestedTransfer]:
    """
    Greedy settle-up plan: the largest debtor pays the largest creditor.

    Args:
        net_positions: user id -> net balance (positive means owed money)

    Returns:
        Transfers that bring every position to zero
    """
    creditors = [
        (user_id, balance)
        for user_id, balance in net_positions.items()
        if balance >= TOLERANCE
    ]
    debtors = [
        (user_id, -balance)
        for user_id, balance in net_positions.items()
        if balance <= -TOLERANCE
    ]

    # Ties broken by user id so the plan is reproducible
    creditors.sort(key=lambda entry: (-entry[1], entry[0]))
    debtors.sort(key=lambda entry: (-entry[1], entry[0]))

    creditor_queue = deque(creditors)
    debtor_queue = deque(debtors)
    transfers: list[SuggestedTransfer] = []

    while creditor_queue and debtor_queue:
        creditor_id, credit = creditor_queue.popleft()
        debtor_id, debt = debtor_queue.popleft()

        amount = quantize(min(credit, debt))
        if amount > 0:
            transfers.append(
                SuggestedTransfer(from_user=debtor_id, to_user=creditor_id, amount=amount)
            )

        credit = quantize(credit - amount)
        debt = quantize(debt - amount)
        if credit > 0:
            creditor_queue.appendleft((creditor_id, credit))
        if debt > 0:
            debtor_queue.appendleft((debtor_id, debt))

    return transfers


class BalanceNetting:
    """Answers who owes whom within a group.

    Only unsettled splits of active expenses count. Settlement requests are
    a separate ledger and never move these balances.
    """

    def __init__(self, database: Database):
        self.db = database

    def _shares(self, group_id: int) -> tuple[Group, list[UnsettledShare]]:
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)
        return group, self.db.get_unsettled_shares(group_id)

    def total_owed_by_user_in_group(self, user_id: int, group_id: int) -> Decimal:
        """Sum of the user's unsettled splits in the group."""
        _, shares = self._shares(group_id)
        return sum((s.amount for s in shares if s.debtor_id == user_id), ZERO)

    def net_balance_between_users(
        self, user_a: int, user_b: int, group_id: int
    ) -> Decimal:
        """
        Net debt between two users in a group.

        Returns:
            Positive if user_b owes user_a, negative if user_a owes user_b
        """
        _, shares = self._shares(group_id)
        balance = ZERO
        if user_a == user_b:
            return balance
        for share in shares:
            if share.creditor_id == user_a and share.debtor_id == user_b:
                balance += share.amount
            elif share.creditor_id == user_b and share.debtor_id == user_a:
                balance -= share.amount
        return balance

    def group_balances(self, group_id: int) -> list[MemberBalance]:
        """What each member is owed and owes, ordered by user id."""
        group, shares = self._shares(group_id)
        owed_to: dict[int, Decimal] = defaultdict(lambda: ZERO)
        owed_by: dict[int, Decimal] = defaultdict(lambda: ZERO)

        for share in shares:
            if share.creditor_id == share.debtor_id:
                continue
            owed_to[share.creditor_id] += share.amount
            owed_by[share.debtor_id] += share.amount

        user_ids = set(group.member_ids) | set(owed_to) | set(owed_by)
        return [
            MemberBalance(
                user_id=user_id,
                owed_to_user=owed_to[user_id],
                owed_by_user=owed_by[user_id],
            )
            for user_id in sorted(user_ids)
        ]

    def suggest_settlements(self, group_id: int) -> list[SuggestedTransfer]:
        """A short list of transfers that would clear the group's balances."""
        balances = self.group_balances(group_id)
        transfers = simplify_debts({b.user_id: b.net for b in balances})
        logger.debug(
            f"Suggested {len(transfers)} transfers for group {group_id} "
            f"across {len(balances)} members"
        )
        return transfers
