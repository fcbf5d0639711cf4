"""SQLite database operations for Split Ledger.

Money is stored as integer cents and percentages/shares as decimal text, so
nothing round-trips through float.
"""

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from .models import (
    ActivityEvent,
    Expense,
    ExpenseSplit,
    ExpenseStatus,
    Group,
    LedgerEntry,
    SettlementStatus,
    SettleUp,
    UnsettledShare,
    User,
    utc_now,
)
from .money import from_cents, to_cents

# Expenses in these states no longer contribute to balances
_INACTIVE_STATUSES = (ExpenseStatus.DELETED.value, ExpenseStatus.CANCELLED.value)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


class _StaleWrite(Exception):
    """A version check failed inside a write transaction."""


class Database:
    """SQLite database manager.

    Also answers the identity and membership lookups the core needs.
    A single connection is shared across threads behind a re-entrant lock.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT UNIQUE,
                    created_at TIMESTAMP NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    default_currency TEXT NOT NULL DEFAULT 'USD',
                    created_by INTEGER REFERENCES users(id),
                    created_at TIMESTAMP NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS group_members (
                    group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    is_admin INTEGER NOT NULL DEFAULT 0,
                    joined_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (group_id, user_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS expenses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id INTEGER NOT NULL REFERENCES groups(id),
                    description TEXT NOT NULL,
                    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                    currency TEXT NOT NULL,
                    paid_by INTEGER NOT NULL REFERENCES users(id),
                    category TEXT NOT NULL,
                    status TEXT NOT NULL,
                    notes TEXT,
                    expense_date TIMESTAMP NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    created_by INTEGER REFERENCES users(id),
                    updated_by INTEGER REFERENCES users(id),
                    version INTEGER NOT NULL DEFAULT 0
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS expense_splits (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    expense_id INTEGER NOT NULL
                        REFERENCES expenses(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    share_cents INTEGER NOT NULL CHECK (share_cents > 0),
                    split_type TEXT NOT NULL,
                    percentage TEXT,
                    shares TEXT,
                    settled INTEGER NOT NULL DEFAULT 0,
                    settled_at TIMESTAMP,
                    settled_by INTEGER REFERENCES users(id),
                    settlement_note TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS settle_ups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id INTEGER NOT NULL REFERENCES groups(id),
                    payer_id INTEGER NOT NULL REFERENCES users(id),
                    payee_id INTEGER NOT NULL REFERENCES users(id),
                    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payment_method TEXT,
                    notes TEXT,
                    initiated_by INTEGER NOT NULL REFERENCES users(id),
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    confirmed_at TIMESTAMP,
                    confirmed_by INTEGER REFERENCES users(id),
                    rejected_at TIMESTAMP,
                    rejected_by INTEGER REFERENCES users(id),
                    rejection_reason TEXT,
                    cancelled_at TIMESTAMP,
                    cancelled_by INTEGER REFERENCES users(id),
                    external_transaction_id TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    CHECK (payer_id != payee_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS activity_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    action TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id INTEGER NOT NULL,
                    group_id INTEGER NOT NULL,
                    actor_id INTEGER,
                    details TEXT NOT NULL,
                    occurred_at TIMESTAMP NOT NULL
                )
            """
            )

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_expenses_group ON expenses(group_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_splits_expense "
                "ON expense_splits(expense_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_splits_user ON expense_splits(user_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_settle_ups_group_status "
                "ON settle_ups(group_id, status)"
            )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run a block as one transaction; roll back on any exception."""
        with self._lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def close(self):
        """Close database connection."""
        self.conn.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    # ========================================================================
    # Identity and membership
    # ========================================================================

    def add_user(self, user: User) -> User:
        """Insert a user and return it with its id."""
        with self._transaction() as cursor:
            cursor.execute(
                "INSERT INTO users (name, email, created_at) VALUES (?, ?, ?)",
                (user.name, user.email, _ts(user.created_at)),
            )
            user_id = cursor.lastrowid
        if user_id is None:
            raise RuntimeError("Failed to insert user")
        return user.model_copy(update={"id": user_id})

    def get_user(self, user_id: int) -> User | None:
        """Get a user by id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT id, name, email, created_at FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_all_users(self) -> list[User]:
        """Get all users ordered by id."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, name, email, created_at FROM users ORDER BY id"
            ).fetchall()
        return [
            User(
                id=row["id"],
                name=row["name"],
                email=row["email"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def create_group(self, group: Group) -> Group:
        """Insert a group; its creator becomes an admin member."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO groups (name, default_currency, created_by, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    group.name,
                    group.default_currency,
                    group.created_by,
                    _ts(group.created_at),
                ),
            )
            group_id = cursor.lastrowid
            if group_id is None:
                raise RuntimeError("Failed to insert group")

            member_ids = set(group.member_ids) | set(group.admin_ids)
            admin_ids = set(group.admin_ids)
            if group.created_by is not None:
                member_ids.add(group.created_by)
                admin_ids.add(group.created_by)
            for user_id in sorted(member_ids):
                cursor.execute(
                    """
                    INSERT INTO group_members (group_id, user_id, is_admin, joined_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (group_id, user_id, int(user_id in admin_ids), _ts(group.created_at)),
                )

        return group.model_copy(
            update={"id": group_id, "member_ids": member_ids, "admin_ids": admin_ids}
        )

    def add_member(self, group_id: int, user_id: int, admin: bool = False):
        """Add a user to a group, or update their admin flag."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO group_members (group_id, user_id, is_admin, joined_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(group_id, user_id) DO UPDATE SET
                    is_admin = excluded.is_admin
                """,
                (group_id, user_id, int(admin), utc_now().isoformat()),
            )

    def remove_member(self, group_id: int, user_id: int):
        """Remove a user from a group."""
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            )

    def get_group(self, group_id: int) -> Group | None:
        """Get a group with its member and admin ids."""
        with self._lock:
            row = self.conn.execute(
                """
                SELECT id, name, default_currency, created_by, created_at
                FROM groups WHERE id = ?
                """,
                (group_id,),
            ).fetchone()
            if not row:
                return None
            members = self.conn.execute(
                "SELECT user_id, is_admin FROM group_members WHERE group_id = ?",
                (group_id,),
            ).fetchall()

        return Group(
            id=row["id"],
            name=row["name"],
            default_currency=row["default_currency"],
            created_by=row["created_by"],
            member_ids={m["user_id"] for m in members},
            admin_ids={m["user_id"] for m in members if m["is_admin"]},
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_all_groups(self) -> list[Group]:
        """Get all groups ordered by id."""
        with self._lock:
            ids = [
                row["id"]
                for row in self.conn.execute("SELECT id FROM groups ORDER BY id")
            ]
        groups = [self.get_group(group_id) for group_id in ids]
        return [group for group in groups if group is not None]

    def is_member(self, group_id: int, user_id: int) -> bool:
        """Check if a user belongs to a group."""
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            ).fetchone()
        return row is not None

    def is_admin(self, group_id: int, user_id: int) -> bool:
        """Check if a user administers a group."""
        with self._lock:
            row = self.conn.execute(
                """
                SELECT 1 FROM group_members
                WHERE group_id = ? AND user_id = ? AND is_admin = 1
                """,
                (group_id, user_id),
            ).fetchone()
        return row is not None

    # ========================================================================
    # Expense ledger operations
    # ========================================================================

    def _insert_splits(
        self, cursor: sqlite3.Cursor, expense_id: int, splits: list[ExpenseSplit]
    ) -> list[ExpenseSplit]:
        saved = []
        for split in splits:
            cursor.execute(
                """
                INSERT INTO expense_splits (
                    expense_id, user_id, share_cents, split_type, percentage,
                    shares, settled, settled_at, settled_by, settlement_note,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    expense_id,
                    split.user_id,
                    to_cents(split.share_amount),
                    split.split_type.value,
                    str(split.percentage) if split.percentage is not None else None,
                    str(split.shares) if split.shares is not None else None,
                    int(split.settled),
                    _ts(split.settled_at),
                    split.settled_by,
                    split.settlement_note,
                    _ts(split.created_at),
                ),
            )
            saved.append(
                split.model_copy(update={"id": cursor.lastrowid, "expense_id": expense_id})
            )
        return saved

    def _update_split(self, cursor: sqlite3.Cursor, split: ExpenseSplit):
        cursor.execute(
            """
            UPDATE expense_splits SET
                share_cents = ?, percentage = ?, shares = ?, settled = ?,
                settled_at = ?, settled_by = ?, settlement_note = ?
            WHERE id = ?
            """,
            (
                to_cents(split.share_amount),
                str(split.percentage) if split.percentage is not None else None,
                str(split.shares) if split.shares is not None else None,
                int(split.settled),
                _ts(split.settled_at),
                split.settled_by,
                split.settlement_note,
                split.id,
            ),
        )

    def insert_ledger(self, expense: Expense, splits: list[ExpenseSplit]) -> LedgerEntry:
        """
        Save a new expense and its splits in one transaction.

        Returns:
            The stored entry with ids assigned
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO expenses (
                    group_id, description, amount_cents, currency, paid_by,
                    category, status, notes, expense_date, created_at,
                    updated_at, created_by, updated_by, version
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    expense.group_id,
                    expense.description,
                    to_cents(expense.amount),
                    expense.currency,
                    expense.paid_by,
                    expense.category.value,
                    expense.status.value,
                    expense.notes,
                    _ts(expense.expense_date),
                    _ts(expense.created_at),
                    _ts(expense.updated_at),
                    expense.created_by,
                    expense.updated_by,
                    expense.version,
                ),
            )
            expense_id = cursor.lastrowid
            if expense_id is None:
                raise RuntimeError("Failed to insert expense")
            saved_splits = self._insert_splits(cursor, expense_id, splits)

        return LedgerEntry(
            expense=expense.model_copy(update={"id": expense_id}),
            splits=saved_splits,
        )

    def save_ledger(
        self, entry: LedgerEntry, expected_version: int, replace_splits: bool = False
    ) -> LedgerEntry | None:
        """
        Write back an edited expense and its splits in one transaction.

        The write only happens if the stored version still equals
        expected_version; the version is then bumped.

        Args:
            entry: The edited entry
            expected_version: Version the edit was based on
            replace_splits: Drop existing splits and insert entry.splits fresh

        Returns:
            The stored entry, or None if another writer got there first
        """
        saved = self.save_ledgers([(entry, expected_version)], replace_splits)
        return saved[0] if saved else None

    def save_ledgers(
        self, entries: list[tuple[LedgerEntry, int]], replace_splits: bool = False
    ) -> list[LedgerEntry] | None:
        """
        Write back several edited entries, all or none.

        Args:
            entries: (entry, expected_version) pairs
            replace_splits: Drop existing splits and insert entry.splits fresh

        Returns:
            The stored entries, or None if any version check failed (in which
            case nothing was written)
        """
        saved = []
        try:
            with self._transaction() as cursor:
                for entry, expected_version in entries:
                    saved.append(
                        self._write_ledger(cursor, entry, expected_version, replace_splits)
                    )
        except _StaleWrite:
            return None
        return saved

    def _write_ledger(
        self,
        cursor: sqlite3.Cursor,
        entry: LedgerEntry,
        expected_version: int,
        replace_splits: bool,
    ) -> LedgerEntry:
        expense = entry.expense
        cursor.execute(
            """
            UPDATE expenses SET
                description = ?, amount_cents = ?, category = ?, status = ?,
                notes = ?, updated_at = ?, updated_by = ?, version = version + 1
            WHERE id = ? AND version = ?
            """,
            (
                expense.description,
                to_cents(expense.amount),
                expense.category.value,
                expense.status.value,
                expense.notes,
                _ts(expense.updated_at),
                expense.updated_by,
                expense.id,
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            raise _StaleWrite(expense.id)

        if replace_splits:
            cursor.execute(
                "DELETE FROM expense_splits WHERE expense_id = ?", (expense.id,)
            )
            splits = self._insert_splits(cursor, expense.id, entry.splits)
        else:
            for split in entry.splits:
                self._update_split(cursor, split)
            splits = entry.splits

        return LedgerEntry(
            expense=expense.model_copy(update={"version": expected_version + 1}),
            splits=splits,
        )

    def _row_to_expense(self, row: sqlite3.Row) -> Expense:
        return Expense(
            id=row["id"],
            group_id=row["group_id"],
            description=row["description"],
            amount=from_cents(row["amount_cents"]),
            currency=row["currency"],
            paid_by=row["paid_by"],
            category=row["category"],
            status=row["status"],
            notes=row["notes"],
            expense_date=datetime.fromisoformat(row["expense_date"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            created_by=row["created_by"],
            updated_by=row["updated_by"],
            version=row["version"],
        )

    def _row_to_split(self, row: sqlite3.Row) -> ExpenseSplit:
        return ExpenseSplit(
            id=row["id"],
            expense_id=row["expense_id"],
            user_id=row["user_id"],
            share_amount=from_cents(row["share_cents"]),
            split_type=row["split_type"],
            percentage=_dec(row["percentage"]),
            shares=_dec(row["shares"]),
            settled=bool(row["settled"]),
            settled_at=_parse_ts(row["settled_at"]),
            settled_by=row["settled_by"],
            settlement_note=row["settlement_note"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_ledger(self, expense_id: int) -> LedgerEntry | None:
        """Get an expense with its splits in creation order."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM expenses WHERE id = ?", (expense_id,)
            ).fetchone()
            if not row:
                return None
            split_rows = self.conn.execute(
                "SELECT * FROM expense_splits WHERE expense_id = ? ORDER BY id",
                (expense_id,),
            ).fetchall()
        return LedgerEntry(
            expense=self._row_to_expense(row),
            splits=[self._row_to_split(split_row) for split_row in split_rows],
        )

    def get_split(self, split_id: int) -> ExpenseSplit | None:
        """Get a single split by id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM expense_splits WHERE id = ?", (split_id,)
            ).fetchone()
        return self._row_to_split(row) if row else None

    def get_group_expenses(
        self, group_id: int, include_deleted: bool = False
    ) -> list[Expense]:
        """Get a group's expenses, newest first."""
        query = "SELECT * FROM expenses WHERE group_id = ?"
        params: tuple = (group_id,)
        if not include_deleted:
            query += " AND status != ?"
            params = (group_id, ExpenseStatus.DELETED.value)
        query += " ORDER BY expense_date DESC, id DESC"

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_expense(row) for row in rows]

    def get_unsettled_shares(self, group_id: int) -> list[UnsettledShare]:
        """Get every unsettled split of the group's active expenses."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT s.id AS split_id, s.expense_id, e.group_id,
                       e.paid_by AS creditor_id, s.user_id AS debtor_id,
                       s.share_cents
                FROM expense_splits s
                JOIN expenses e ON e.id = s.expense_id
                WHERE e.group_id = ? AND s.settled = 0
                  AND e.status NOT IN (?, ?)
                ORDER BY s.id
                """,
                (group_id, *_INACTIVE_STATUSES),
            ).fetchall()
        return [
            UnsettledShare(
                split_id=row["split_id"],
                expense_id=row["expense_id"],
                group_id=row["group_id"],
                creditor_id=row["creditor_id"],
                debtor_id=row["debtor_id"],
                amount=from_cents(row["share_cents"]),
            )
            for row in rows
        ]

    def get_unsettled_splits_before(
        self, user_id: int, cutoff: datetime
    ) -> list[ExpenseSplit]:
        """Get a user's unsettled splits on active expenses dated before cutoff."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT s.* FROM expense_splits s
                JOIN expenses e ON e.id = s.expense_id
                WHERE s.user_id = ? AND s.settled = 0
                  AND e.status NOT IN (?, ?) AND e.expense_date < ?
                ORDER BY e.expense_date, s.id
                """,
                (user_id, *_INACTIVE_STATUSES, cutoff.isoformat()),
            ).fetchall()
        return [self._row_to_split(row) for row in rows]

    # ========================================================================
    # Settlement operations
    # ========================================================================

    def insert_settlement(self, settlement: SettleUp) -> SettleUp:
        """Insert a settlement and return it with its id."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO settle_ups (
                    group_id, payer_id, payee_id, amount_cents, currency, status,
                    payment_method, notes, initiated_by, created_at, updated_at,
                    external_transaction_id, version
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    settlement.group_id,
                    settlement.payer_id,
                    settlement.payee_id,
                    to_cents(settlement.amount),
                    settlement.currency,
                    settlement.status.value,
                    settlement.payment_method.value
                    if settlement.payment_method
                    else None,
                    settlement.notes,
                    settlement.initiated_by,
                    _ts(settlement.created_at),
                    _ts(settlement.updated_at),
                    settlement.external_transaction_id,
                    settlement.version,
                ),
            )
            settlement_id = cursor.lastrowid
        if settlement_id is None:
            raise RuntimeError("Failed to insert settlement")
        return settlement.model_copy(update={"id": settlement_id})

    def save_settlement(
        self, settlement: SettleUp, expected_version: int
    ) -> SettleUp | None:
        """
        Write back a settlement if its stored version is still expected_version.

        Returns:
            The stored settlement with its bumped version, or None if another
            writer changed it first
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE settle_ups SET
                    status = ?, notes = ?, updated_at = ?,
                    confirmed_at = ?, confirmed_by = ?,
                    rejected_at = ?, rejected_by = ?, rejection_reason = ?,
                    cancelled_at = ?, cancelled_by = ?,
                    external_transaction_id = ?, version = version + 1
                WHERE id = ? AND version = ?
                """,
                (
                    settlement.status.value,
                    settlement.notes,
                    _ts(settlement.updated_at),
                    _ts(settlement.confirmed_at),
                    settlement.confirmed_by,
                    _ts(settlement.rejected_at),
                    settlement.rejected_by,
                    settlement.rejection_reason,
                    _ts(settlement.cancelled_at),
                    settlement.cancelled_by,
                    settlement.external_transaction_id,
                    settlement.id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                return None
        return settlement.model_copy(update={"version": expected_version + 1})

    def _row_to_settlement(self, row: sqlite3.Row) -> SettleUp:
        return SettleUp(
            id=row["id"],
            group_id=row["group_id"],
            payer_id=row["payer_id"],
            payee_id=row["payee_id"],
            amount=from_cents(row["amount_cents"]),
            currency=row["currency"],
            status=row["status"],
            payment_method=row["payment_method"],
            notes=row["notes"],
            initiated_by=row["initiated_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            confirmed_at=_parse_ts(row["confirmed_at"]),
            confirmed_by=row["confirmed_by"],
            rejected_at=_parse_ts(row["rejected_at"]),
            rejected_by=row["rejected_by"],
            rejection_reason=row["rejection_reason"],
            cancelled_at=_parse_ts(row["cancelled_at"]),
            cancelled_by=row["cancelled_by"],
            external_transaction_id=row["external_transaction_id"],
            version=row["version"],
        )

    def get_settlement(self, settlement_id: int) -> SettleUp | None:
        """Get a settlement by id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM settle_ups WHERE id = ?", (settlement_id,)
            ).fetchone()
        return self._row_to_settlement(row) if row else None

    def find_settlements(
        self,
        group_id: int | None = None,
        user_id: int | None = None,
        payer_id: int | None = None,
        status: SettlementStatus | None = None,
        between: tuple[int, int] | None = None,
        created_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[SettleUp]:
        """
        Query settlements, newest first.

        Args:
            group_id: Only this group
            user_id: Only settlements where the user is payer or payee
            payer_id: Only settlements paid by this user
            status: Only this status
            between: Only settlements between these two users, either direction
            created_before: Only settlements created before this time
            limit: Maximum number of rows
        """
        clauses = []
        params: list = []
        if group_id is not None:
            clauses.append("group_id = ?")
            params.append(group_id)
        if user_id is not None:
            clauses.append("(payer_id = ? OR payee_id = ?)")
            params.extend([user_id, user_id])
        if payer_id is not None:
            clauses.append("payer_id = ?")
            params.append(payer_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if between is not None:
            first, second = between
            clauses.append(
                "((payer_id = ? AND payee_id = ?) OR (payer_id = ? AND payee_id = ?))"
            )
            params.extend([first, second, second, first])
        if created_before is not None:
            clauses.append("created_at < ?")
            params.append(created_before.isoformat())

        query = "SELECT * FROM settle_ups"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_settlement(row) for row in rows]

    # ========================================================================
    # Activity log operations
    # ========================================================================

    def record_activity(self, event: ActivityEvent) -> int:
        """Append an activity event."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO activity_log (
                    action, entity_type, entity_id, group_id, actor_id,
                    details, occurred_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.action.value,
                    event.entity_type.value,
                    event.entity_id,
                    event.group_id,
                    event.actor_id,
                    json.dumps(event.details, default=str),
                    _ts(event.occurred_at),
                ),
            )
            row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert activity event")
        return row_id

    def get_group_activity(self, group_id: int, limit: int = 50) -> list[ActivityEvent]:
        """Get a group's most recent activity events."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM activity_log WHERE group_id = ?
                ORDER BY occurred_at DESC, id DESC LIMIT ?
                """,
                (group_id, limit),
            ).fetchall()
        return [
            ActivityEvent(
                id=row["id"],
                action=row["action"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                group_id=row["group_id"],
                actor_id=row["actor_id"],
                details=json.loads(row["details"]),
                occurred_at=datetime.fromisoformat(row["occurred_at"]),
            )
            for row in rows
        ]
