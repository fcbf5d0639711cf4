"""Settlement requests and the pending/in-progress/terminal state machine.

Settlements are a separate ledger from expense splits: completing one
records that money changed hands but never touches split balances.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from .activity import ActivitySink, publish
from .db import Database
from .exceptions import (
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
)
from .locking import KeyedLocks
from .models import (
    ActivityAction,
    ActivityEvent,
    EntityType,
    Group,
    PaymentMethod,
    SettlementStatus,
    SettleUp,
    build_model,
    revalidated,
    utc_now,
)
from .money import ZERO, has_cent_precision, to_decimal

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[SettlementStatus, frozenset[SettlementStatus]] = {
    SettlementStatus.PENDING: frozenset(
        {
            SettlementStatus.IN_PROGRESS,
            SettlementStatus.COMPLETED,
            SettlementStatus.REJECTED,
            SettlementStatus.CANCELLED,
        }
    ),
    SettlementStatus.IN_PROGRESS: frozenset({SettlementStatus.COMPLETED}),
    SettlementStatus.COMPLETED: frozenset(),
    SettlementStatus.REJECTED: frozenset(),
    SettlementStatus.CANCELLED: frozenset(),
}

_ACTIONS = {
    SettlementStatus.IN_PROGRESS: ActivityAction.SETTLEMENT_IN_PROGRESS,
    SettlementStatus.COMPLETED: ActivityAction.SETTLEMENT_CONFIRMED,
    SettlementStatus.REJECTED: ActivityAction.SETTLEMENT_REJECTED,
    SettlementStatus.CANCELLED: ActivityAction.SETTLEMENT_CANCELLED,
}


def can_transition(current: SettlementStatus, target: SettlementStatus) -> bool:
    return target in _TRANSITIONS[current]


def is_terminal(status: SettlementStatus) -> bool:
    return not _TRANSITIONS[status]


class SettlementStateMachine:
    """Creates settlement requests and moves them between states."""

    def __init__(
        self,
        database: Database,
        sink: ActivitySink | None = None,
        clock: Callable[[], datetime] = utc_now,
        locks: KeyedLocks | None = None,
        reminder_after_days: int = 7,
    ):
        self.db = database
        self.sink = sink
        self.clock = clock
        self.locks = locks if locks is not None else KeyedLocks()
        self.reminder_after_days = reminder_after_days

    def _require_group(self, group_id: int) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)
        return group

    def _require_user(self, user_id: int) -> None:
        if self.db.get_user(user_id) is None:
            raise NotFoundError("User", user_id)

    def _load(self, settlement_id: int) -> SettleUp:
        settlement = self.db.get_settlement(settlement_id)
        if settlement is None:
            raise NotFoundError("Settlement", settlement_id)
        return settlement

    def _emit(
        self,
        action: ActivityAction,
        settlement: SettleUp,
        actor_id: int | None,
        details: dict[str, Any],
        at: datetime,
    ) -> None:
        assert settlement.id is not None
        publish(
            self.sink,
            ActivityEvent(
                action=action,
                entity_type=EntityType.SETTLEMENT,
                entity_id=settlement.id,
                group_id=settlement.group_id,
                actor_id=actor_id,
                details=details,
                occurred_at=at,
            ),
        )

    # ========================================================================
    # Creation
    # ========================================================================

    def create(
        self,
        group_id: int,
        payer_id: int,
        payee_id: int,
        amount: Any,
        method: PaymentMethod | str | None,
        notes: str | None,
        initiator_id: int,
        currency: str | None = None,
    ) -> SettleUp:
        """
        Open a pending settlement request from payer to payee.

        Args:
            group_id: Group the debt belongs to
            payer_id: User paying the money
            payee_id: User receiving the money
            amount: Positive amount (Decimal, int or str)
            method: Payment method, if known
            notes: Optional memo
            initiator_id: User creating the request
            currency: ISO code; defaults to the group's currency

        Returns:
            The stored pending settlement

        Raises:
            InvalidArgumentError: Payer and payee are the same user, the
                amount is not a positive whole-cent value, or the currency
                or notes are malformed
            NotFoundError: Group or a user missing
            ForbiddenError: Payer, payee or initiator outside the group
        """
        if payer_id == payee_id:
            raise InvalidArgumentError(
                "Payer and payee must be different users", value=payer_id
            )
        value = to_decimal(amount)
        if value <= 0:
            raise InvalidArgumentError(
                f"Settlement amount must be positive, got {value}", value=value
            )
        if not has_cent_precision(value):
            raise InvalidArgumentError(
                f"Settlement amount {value} has more than two fraction digits",
                value=value,
            )
        try:
            payment_method = PaymentMethod(method) if method is not None else None
        except ValueError as e:
            raise InvalidArgumentError(
                f"Unknown payment method: {method!r}", value=method
            ) from e

        group = self._require_group(group_id)
        for user_id, role in (
            (payer_id, "pay"),
            (payee_id, "be paid"),
            (initiator_id, "request"),
        ):
            self._require_user(user_id)
            if not group.is_member(user_id):
                raise ForbiddenError(
                    user_id,
                    f"{role} in a settlement",
                    f"not a member of group {group_id}",
                )

        now = self.clock()
        settlement = self.db.insert_settlement(
            build_model(
                SettleUp,
                group_id=group_id,
                payer_id=payer_id,
                payee_id=payee_id,
                amount=value,
                currency=(currency or group.default_currency).upper(),
                payment_method=payment_method,
                notes=notes,
                initiated_by=initiator_id,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(f"Created settlement {settlement.id}: {settlement.describe()}")
        self._emit(
            ActivityAction.SETTLEMENT_CREATED,
            settlement,
            initiator_id,
            {
                "payer_id": payer_id,
                "payee_id": payee_id,
                "amount": str(settlement.amount),
                "currency": settlement.currency,
            },
            now,
        )
        return settlement

    # ========================================================================
    # Transitions
    # ========================================================================

    def _transition(
        self,
        settlement_id: int,
        user_id: int,
        target: SettlementStatus,
        verb: str,
        authorize: Callable[[SettleUp, Group], str | None],
        apply: Callable[[SettleUp, datetime], dict[str, Any]],
    ) -> SettleUp:
        """
        Move a settlement to target under its lock.

        The status check runs before the actor check, so a settlement that
        cannot move answers InvalidStateError to everyone.

        Args:
            settlement_id: Settlement to move
            user_id: Acting user
            target: Status to move to
            verb: Action name used in errors and logs
            authorize: Returns a refusal reason, or None if the actor may act
            apply: Stamps the transition fields; returns event details

        Raises:
            NotFoundError: Settlement or user missing
            InvalidStateError: Transition not allowed from the current status,
                or another writer moved the settlement first
            ForbiddenError: Actor not allowed to perform the transition
            InvalidArgumentError: A stamped field such as the rejection
                reason is too long
        """
        with self.locks.hold(("settlement", settlement_id)):
            settlement = self._load(settlement_id)
            if not can_transition(settlement.status, target):
                raise InvalidStateError(settlement_id, settlement.status.value, verb)

            self._require_user(user_id)
            group = self._require_group(settlement.group_id)
            refusal = authorize(settlement, group)
            if refusal is not None:
                logger.warning(
                    f"User {user_id} refused to {verb} settlement {settlement_id}: "
                    f"{refusal}"
                )
                raise ForbiddenError(user_id, f"{verb} settlement {settlement_id}", refusal)

            now = self.clock()
            updated = settlement.model_copy()
            details = apply(updated, now)
            updated.status = target
            updated.updated_at = now
            updated = revalidated(updated)

            saved = self.db.save_settlement(updated, expected_version=settlement.version)
            if saved is None:
                current = self._load(settlement_id)
                raise InvalidStateError(settlement_id, current.status.value, verb)

        logger.info(
            f"Settlement {settlement_id} {settlement.status.value} -> {target.value} "
            f"by user {user_id}"
        )
        self._emit(_ACTIONS[target], saved, user_id, details, now)
        return saved

    def confirm(
        self, settlement_id: int, user_id: int, external_txn_id: str | None = None
    ) -> SettleUp:
        """Mark a settlement completed; only the payee or a group admin may."""

        def authorize(settlement: SettleUp, group: Group) -> str | None:
            if user_id == settlement.payee_id or group.is_admin(user_id):
                return None
            return "only the payee or a group admin can confirm"

        def apply(settlement: SettleUp, now: datetime) -> dict[str, Any]:
            settlement.confirmed_at = now
            settlement.confirmed_by = user_id
            if external_txn_id is not None:
                settlement.external_transaction_id = external_txn_id
            return {
                "amount": str(settlement.amount),
                "external_transaction_id": external_txn_id,
            }

        return self._transition(
            settlement_id, user_id, SettlementStatus.COMPLETED, "confirm", authorize, apply
        )

    def reject(self, settlement_id: int, user_id: int, reason: str) -> SettleUp:
        """Reject a pending settlement; only the payer or payee may."""

        def authorize(settlement: SettleUp, group: Group) -> str | None:
            if user_id in (settlement.payer_id, settlement.payee_id):
                return None
            return "only the payer or payee can reject"

        def apply(settlement: SettleUp, now: datetime) -> dict[str, Any]:
            settlement.rejected_at = now
            settlement.rejected_by = user_id
            settlement.rejection_reason = reason
            return {"reason": reason}

        return self._transition(
            settlement_id, user_id, SettlementStatus.REJECTED, "reject", authorize, apply
        )

    def mark_in_progress(self, settlement_id: int, user_id: int) -> SettleUp:
        """Flag a pending settlement as being paid; any group member may."""

        def authorize(settlement: SettleUp, group: Group) -> str | None:
            if group.is_member(user_id):
                return None
            return f"not a member of group {group.id}"

        def apply(settlement: SettleUp, now: datetime) -> dict[str, Any]:
            return {}

        return self._transition(
            settlement_id,
            user_id,
            SettlementStatus.IN_PROGRESS,
            "mark in progress",
            authorize,
            apply,
        )

    def cancel(self, settlement_id: int, user_id: int) -> SettleUp:
        """Cancel a pending settlement; only its initiator or a group admin may."""

        def authorize(settlement: SettleUp, group: Group) -> str | None:
            if user_id == settlement.initiated_by or group.is_admin(user_id):
                return None
            return "only the initiator or a group admin can cancel"

        def apply(settlement: SettleUp, now: datetime) -> dict[str, Any]:
            settlement.cancelled_at = now
            settlement.cancelled_by = user_id
            return {}

        return self._transition(
            settlement_id, user_id, SettlementStatus.CANCELLED, "cancel", authorize, apply
        )

    # ========================================================================
    # Queries
    # ========================================================================

    def get(self, settlement_id: int) -> SettleUp:
        return self._load(settlement_id)

    def pending_for_user(self, user_id: int) -> list[SettleUp]:
        """Pending settlements where the user is payer or payee."""
        return self.db.find_settlements(user_id=user_id, status=SettlementStatus.PENDING)

    def group_settlements(
        self, group_id: int, status: SettlementStatus | None = None
    ) -> list[SettleUp]:
        self._require_group(group_id)
        return self.db.find_settlements(group_id=group_id, status=status)

    def settlements_between(
        self, group_id: int, user_a: int, user_b: int
    ) -> list[SettleUp]:
        """Settlements between two users in either direction."""
        self._require_group(group_id)
        return self.db.find_settlements(group_id=group_id, between=(user_a, user_b))

    def total_settled_by_user(self, user_id: int, group_id: int | None = None) -> Decimal:
        """Sum of completed settlements the user paid."""
        settlements = self.db.find_settlements(
            group_id=group_id, payer_id=user_id, status=SettlementStatus.COMPLETED
        )
        return sum((s.amount for s in settlements), ZERO)

    def pending_amount_by_user(self, user_id: int, group_id: int | None = None) -> Decimal:
        """Sum of pending settlements the user is due to pay."""
        settlements = self.db.find_settlements(
            group_id=group_id, payer_id=user_id, status=SettlementStatus.PENDING
        )
        return sum((s.amount for s in settlements), ZERO)

    def recent_settlements(self, group_id: int, limit: int = 10) -> list[SettleUp]:
        self._require_group(group_id)
        return self.db.find_settlements(group_id=group_id, limit=limit)

    # ========================================================================
    # Reminders
    # ========================================================================

    def settlements_needing_reminder(
        self, older_than_days: int | None = None
    ) -> list[SettleUp]:
        """Pending settlements created more than older_than_days ago."""
        days = older_than_days if older_than_days is not None else self.reminder_after_days
        cutoff = self.clock() - timedelta(days=days)
        return self.db.find_settlements(
            status=SettlementStatus.PENDING, created_before=cutoff
        )

    def send_reminders(self, older_than_days: int | None = None) -> int:
        """
        Emit a reminder event for every stale pending settlement.

        Reminders go through the activity sink only; no settlement changes.

        Returns:
            Number of reminders sent
        """
        stale = self.settlements_needing_reminder(older_than_days)
        now = self.clock()
        for settlement in stale:
            age_days = (now - settlement.created_at).days
            self._emit(
                ActivityAction.SETTLEMENT_REMINDER,
                settlement,
                None,
                {
                    "payer_id": settlement.payer_id,
                    "payee_id": settlement.payee_id,
                    "amount": str(settlement.amount),
                    "age_days": age_days,
                },
                now,
            )
        if stale:
            logger.info(f"Sent {len(stale)} settlement reminders")
        return len(stale)
