"""Service layer that wires the ledger, settlement and netting components.

The CLI talks to this class only; each component can also be built
directly around a Database for tests and embedding.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from .activity import (
    ActivitySink,
    CompositeActivitySink,
    DatabaseActivitySink,
    LoggingActivitySink,
)
from .config import Settings
from .db import Database
from .exceptions import ForbiddenError, InvalidArgumentError, NotFoundError
from .ledger import ExpenseLedger
from .locking import KeyedLocks
from .models import ActivityEvent, Group, User, build_model, utc_now
from .netting import BalanceNetting
from .settlement import SettlementStateMachine

logger = logging.getLogger(__name__)


def build_activity_sink(settings: Settings, database: Database) -> ActivitySink:
    """Store activity in the database, and log it too if configured."""
    sinks: list[ActivitySink] = [DatabaseActivitySink(database)]
    if settings.log_activity:
        sinks.append(LoggingActivitySink())
    return CompositeActivitySink(sinks)


class LedgerService:
    """Entry point for users, groups, expenses, balances and settlements."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        sink: ActivitySink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the service and its components."""
        self.settings = settings
        self.db = database
        self.sink = sink if sink is not None else build_activity_sink(settings, database)
        self.clock = clock

        locks = KeyedLocks()
        self.expenses = ExpenseLedger(
            database,
            sink=self.sink,
            clock=clock,
            locks=locks,
            overdue_threshold_days=settings.overdue_threshold_days,
        )
        self.settlements = SettlementStateMachine(
            database,
            sink=self.sink,
            clock=clock,
            locks=locks,
            reminder_after_days=settings.reminder_after_days,
        )
        self.balances = BalanceNetting(database)

    # ========================================================================
    # Users and groups
    # ========================================================================

    def add_user(self, name: str, email: str | None = None) -> User:
        if not name.strip():
            raise InvalidArgumentError("User name is required", value=name)
        user = self.db.add_user(
            build_model(User, name=name.strip(), email=email, created_at=self.clock())
        )
        logger.info(f"Added user {user.id} ({user.name})")
        return user

    def list_users(self) -> list[User]:
        return self.db.get_all_users()

    def create_group(
        self,
        name: str,
        creator_id: int,
        member_ids: list[int] | None = None,
        currency: str | None = None,
    ) -> Group:
        """
        Create a group; the creator becomes its first admin.

        Raises:
            NotFoundError: Creator or a member doesn't exist
            InvalidArgumentError: Empty name or malformed currency
        """
        if not name.strip():
            raise InvalidArgumentError("Group name is required", value=name)
        for user_id in [creator_id, *(member_ids or [])]:
            if self.db.get_user(user_id) is None:
                raise NotFoundError("User", user_id)

        group = self.db.create_group(
            build_model(
                Group,
                name=name.strip(),
                default_currency=currency or self.settings.default_currency,
                created_by=creator_id,
                member_ids=set(member_ids or []),
                created_at=self.clock(),
            )
        )
        logger.info(
            f"Created group {group.id} '{group.name}' with {len(group.member_ids)} members"
        )
        return group

    def get_group(self, group_id: int) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)
        return group

    def list_groups(self) -> list[Group]:
        return self.db.get_all_groups()

    def add_member(
        self, group_id: int, user_id: int, actor_id: int, admin: bool = False
    ) -> Group:
        """Add a user to a group. Only group admins may add members."""
        group = self.get_group(group_id)
        if self.db.get_user(user_id) is None:
            raise NotFoundError("User", user_id)
        if not group.is_admin(actor_id):
            raise ForbiddenError(actor_id, "add members", f"not an admin of group {group_id}")
        self.db.add_member(group_id, user_id, admin=admin)
        logger.info(f"User {actor_id} added user {user_id} to group {group_id}")
        return self.get_group(group_id)

    def activity(self, group_id: int, limit: int = 50) -> list[ActivityEvent]:
        self.get_group(group_id)
        return self.db.get_group_activity(group_id, limit=limit)
