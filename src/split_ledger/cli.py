"""CLI for Split Ledger using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .db import Database
from .exceptions import InvalidArgumentError, SplitLedgerError
from .models import (
    EqualSplit,
    ExactAmountSplit,
    ExpenseCategory,
    PercentageSplit,
    SettlementStatus,
    SettleUp,
    SharesSplit,
    SplitStrategy,
)
from .service import LedgerService
from .ui import select_category_interactive

app = typer.Typer(
    name="split-ledger",
    help="Track shared expenses in groups and settle up",
)
users_app = typer.Typer(help="Manage users")
groups_app = typer.Typer(help="Manage groups and membership")
expenses_app = typer.Typer(help="Record, edit and settle expenses")
balances_app = typer.Typer(help="See who owes whom")
settlements_app = typer.Typer(help="Request and confirm settle-up payments")

app.add_typer(users_app, name="users")
app.add_typer(groups_app, name="groups")
app.add_typer(expenses_app, name="expenses")
app.add_typer(balances_app, name="balances")
app.add_typer(settlements_app, name="settlements")

console = Console()

_state: dict = {"verbose": False, "db": None}


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@app.callback()
def main(
    db: Path | None = typer.Option(
        None, "--db", help="Database file (default: SPLIT_LEDGER_DATABASE_PATH)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Split Ledger: shared expenses, balances and settlements."""
    _state["verbose"] = verbose
    _state["db"] = db
    setup_logging(verbose)


@contextmanager
def open_service() -> Iterator[LedgerService]:
    """Yield a service; report domain errors and exit 1."""
    db = None
    try:
        overrides = {"database_path": _state["db"]} if _state["db"] else {}
        settings = load_settings(**overrides)
        db = Database(settings.database_path)
        yield LedgerService(settings, db)
    except SplitLedgerError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if _state["verbose"]:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


def format_money(amount: Decimal, currency: str = "", use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (85.02)
    Positive amounts have spaces:      85.02
    The spaces ensure decimal points align in tables.
    """
    prefix = f"{currency} " if currency else ""
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            return f"({prefix}[red]{abs_amount:,.2f}[/red])"
        return f"({prefix}{abs_amount:,.2f})"
    if use_color:
        return f" {prefix}[green]{abs_amount:,.2f}[/green] "
    return f" {prefix}{abs_amount:,.2f} "


def parse_entries(entries: list[str]) -> dict[int, str]:
    """Parse USER_ID=VALUE pairs, keeping their order."""
    parsed: dict[int, str] = {}
    for entry in entries:
        user_part, sep, value = entry.partition("=")
        if not sep or not user_part.strip().isdigit() or not value.strip():
            raise InvalidArgumentError(
                f"Expected USER_ID=VALUE, got {entry!r}", value=entry
            )
        parsed[int(user_part)] = value.strip()
    return parsed


def build_strategy(
    split: str, participants: list[int], entries: list[str]
) -> SplitStrategy:
    if split == "equal":
        return EqualSplit(participants=participants)
    values = parse_entries(entries)
    if split == "exact":
        return ExactAmountSplit(amounts=values)
    if split == "percentage":
        return PercentageSplit(percentages=values)
    if split == "shares":
        return SharesSplit(shares=values)
    raise InvalidArgumentError(
        f"Unknown split type {split!r}; use equal, exact, percentage or shares",
        value=split,
    )


def display_settlements(settlements: list[SettleUp], title: str):
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", width=6)
    table.add_column("Payer", justify="right")
    table.add_column("Payee", justify="right")
    table.add_column("Amount", justify="right", width=16)
    table.add_column("Status", style="yellow")
    table.add_column("Method")
    table.add_column("Created", style="dim")
    for s in settlements:
        table.add_row(
            str(s.id),
            str(s.payer_id),
            str(s.payee_id),
            format_money(s.amount, s.currency),
            s.status.value,
            s.payment_method.value if s.payment_method else "",
            str(s.created_at.date()),
        )
    console.print(table)


# ============================================================================
# Users
# ============================================================================


@users_app.command("add")
def users_add(
    name: str = typer.Argument(..., help="Display name"),
    email: str | None = typer.Option(None, "--email", help="Email address"),
):
    """Add a user."""
    with open_service() as service:
        user = service.add_user(name, email)
        console.print(f"[green]✓ Added user {user.id}: {user.name}[/green]")


@users_app.command("list")
def users_list():
    """List all users."""
    with open_service() as service:
        table = Table(title="Users", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim", width=6)
        table.add_column("Name", style="cyan")
        table.add_column("Email")
        for user in service.list_users():
            table.add_row(str(user.id), user.name, user.email or "")
        console.print(table)


# ============================================================================
# Groups
# ============================================================================


@groups_app.command("create")
def groups_create(
    name: str = typer.Argument(..., help="Group name"),
    creator: int = typer.Option(..., "--creator", help="User id of the creator"),
    member: list[int] = typer.Option([], "--member", "-m", help="Member user id"),
    currency: str | None = typer.Option(None, "--currency", help="Default currency"),
):
    """Create a group."""
    with open_service() as service:
        group = service.create_group(name, creator, member, currency)
        console.print(
            f"[green]✓ Created group {group.id}: {group.name} "
            f"({len(group.member_ids)} members, {group.default_currency})[/green]"
        )


@groups_app.command("list")
def groups_list():
    """List all groups."""
    with open_service() as service:
        table = Table(title="Groups", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim", width=6)
        table.add_column("Name", style="cyan")
        table.add_column("Currency")
        table.add_column("Members", justify="right")
        for group in service.list_groups():
            table.add_row(
                str(group.id),
                group.name,
                group.default_currency,
                str(len(group.member_ids)),
            )
        console.print(table)


@groups_app.command("add-member")
def groups_add_member(
    group_id: int = typer.Argument(...),
    user_id: int = typer.Argument(...),
    actor: int = typer.Option(..., "--actor", help="Admin adding the member"),
    admin: bool = typer.Option(False, "--admin", help="Make the member an admin"),
):
    """Add a user to a group."""
    with open_service() as service:
        group = service.add_member(group_id, user_id, actor, admin)
        console.print(
            f"[green]✓ User {user_id} is now a member of {group.name}[/green]"
        )


@groups_app.command("activity")
def groups_activity(
    group_id: int = typer.Argument(...),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Show a group's recent activity."""
    with open_service() as service:
        table = Table(title="Activity", show_header=True, header_style="bold magenta")
        table.add_column("When", style="dim")
        table.add_column("Action", style="cyan")
        table.add_column("Entity")
        table.add_column("Actor", justify="right")
        for event in service.activity(group_id, limit):
            table.add_row(
                event.occurred_at.strftime("%Y-%m-%d %H:%M"),
                event.action.value,
                f"{event.entity_type.value} {event.entity_id}",
                str(event.actor_id) if event.actor_id is not None else "",
            )
        console.print(table)


# ============================================================================
# Expenses
# ============================================================================


@expenses_app.command("add")
def expenses_add(
    group_id: int = typer.Argument(...),
    payer: int = typer.Option(..., "--payer", help="User id who paid"),
    amount: str = typer.Option(..., "--amount", help="Total, e.g. 100.00"),
    description: str = typer.Option(..., "--description", "-d"),
    category: str | None = typer.Option(None, "--category", "-c"),
    split: str = typer.Option(
        "equal", "--split", help="equal, exact, percentage or shares"
    ),
    participant: list[int] = typer.Option(
        [], "--participant", "-p", help="Participant for an equal split"
    ),
    entry: list[str] = typer.Option(
        [], "--entry", "-e", help="USER_ID=VALUE for exact/percentage/shares"
    ),
    notes: str | None = typer.Option(None, "--notes"),
    currency: str | None = typer.Option(None, "--currency"),
):
    """
    Record an expense and split it.

    Equal splits default to every group member when no --participant is given.
    """
    with open_service() as service:
        if split == "equal" and not participant:
            participant = sorted(service.get_group(group_id).member_ids)
        strategy = build_strategy(split, participant, entry)

        chosen: ExpenseCategory | str
        if category is not None:
            chosen = category
        elif sys.stdin.isatty():
            chosen = select_category_interactive(description)
        else:
            chosen = ExpenseCategory.OTHER

        entry_ = service.expenses.create(
            group_id,
            payer,
            description,
            amount,
            chosen,
            strategy,
            notes=notes,
            currency=currency,
        )
        console.print(
            f"[green]✓ Created expense {entry_.expense.id}: {entry_.expense.description} "
            f"{format_money(entry_.expense.amount, entry_.expense.currency)}[/green]"
        )
        show_splits(entry_.expense.id, service)


def show_splits(expense_id: int | None, service: LedgerService):
    assert expense_id is not None
    entry = service.expenses.get(expense_id)
    table = Table(
        title=f"Expense {expense_id}: {entry.expense.description}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Split", style="dim", width=6)
    table.add_column("User", justify="right")
    table.add_column("Share", justify="right", width=14)
    table.add_column("Type")
    table.add_column("Settled", justify="center")
    for split in entry.splits:
        table.add_row(
            str(split.id),
            str(split.user_id),
            format_money(split.share_amount),
            split.split_type.value,
            "✓" if split.settled else "",
        )
    console.print(table)


@expenses_app.command("list")
def expenses_list(
    group_id: int = typer.Argument(...),
    include_deleted: bool = typer.Option(False, "--all", help="Include deleted"),
):
    """List a group's expenses."""
    with open_service() as service:
        table = Table(title="Expenses", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim", width=6)
        table.add_column("Date", style="dim")
        table.add_column("Description", style="cyan", width=40)
        table.add_column("Amount", justify="right", width=16)
        table.add_column("Paid by", justify="right")
        table.add_column("Category", style="yellow")
        table.add_column("Status")
        for expense in service.expenses.group_expenses(group_id, include_deleted):
            desc = expense.description
            table.add_row(
                str(expense.id),
                str(expense.expense_date.date()),
                desc[:40] + "..." if len(desc) > 40 else desc,
                format_money(expense.amount, expense.currency),
                str(expense.paid_by),
                expense.category.display_name,
                expense.status.value,
            )
        console.print(table)


@expenses_app.command("show")
def expenses_show(expense_id: int = typer.Argument(...)):
    """Show an expense and its splits."""
    with open_service() as service:
        show_splits(expense_id, service)


@expenses_app.command("update")
def expenses_update(
    expense_id: int = typer.Argument(...),
    actor: int = typer.Option(..., "--actor", help="User making the change"),
    amount: str | None = typer.Option(None, "--amount"),
    description: str | None = typer.Option(None, "--description", "-d"),
    category: str | None = typer.Option(None, "--category", "-c"),
    notes: str | None = typer.Option(None, "--notes"),
):
    """Edit an expense. A new amount recalculates its splits."""
    with open_service() as service:
        service.expenses.update(
            expense_id,
            actor,
            description=description,
            amount=amount,
            category=category,
            notes=notes,
        )
        console.print(f"[green]✓ Updated expense {expense_id}[/green]")
        show_splits(expense_id, service)


@expenses_app.command("delete")
def expenses_delete(
    expense_id: int = typer.Argument(...),
    actor: int = typer.Option(..., "--actor"),
):
    """Delete an expense."""
    with open_service() as service:
        service.expenses.delete(expense_id, actor)
        console.print(f"[green]✓ Deleted expense {expense_id}[/green]")


@expenses_app.command("settle")
def expenses_settle(
    split_ids: list[int] = typer.Argument(..., help="Split ids to settle"),
    actor: int = typer.Option(..., "--actor"),
    note: str | None = typer.Option(None, "--note"),
):
    """Mark one or more splits as settled."""
    with open_service() as service:
        splits = service.expenses.bulk_settle_splits(split_ids, actor, note)
        console.print(f"[green]✓ Settled {len(splits)} splits[/green]")


@expenses_app.command("unsettle")
def expenses_unsettle(
    split_id: int = typer.Argument(...),
    actor: int = typer.Option(..., "--actor"),
):
    """Mark a split as unsettled again."""
    with open_service() as service:
        service.expenses.unsettle_split(split_id, actor)
        console.print(f"[green]✓ Split {split_id} is unsettled[/green]")


@expenses_app.command("overdue")
def expenses_overdue(
    user_id: int = typer.Argument(...),
    days: int | None = typer.Option(None, "--days", help="Overdue threshold"),
):
    """List a user's overdue unsettled splits."""
    with open_service() as service:
        splits = service.expenses.overdue_splits(user_id, days)
        if not splits:
            console.print("[green]Nothing overdue.[/green]")
            return
        table = Table(title="Overdue Splits", show_header=True, header_style="bold magenta")
        table.add_column("Split", style="dim", width=6)
        table.add_column("Expense", justify="right")
        table.add_column("Share", justify="right", width=14)
        for split in splits:
            table.add_row(
                str(split.id), str(split.expense_id), format_money(split.share_amount)
            )
        console.print(table)


@expenses_app.command("stats")
def expenses_stats(group_id: int = typer.Argument(...)):
    """Show expense totals for a group."""
    with open_service() as service:
        stats = service.expenses.group_stats(group_id)
        console.print(f"\n[bold]Group {group_id}:[/bold]")
        console.print(f"  Expenses: {stats.total_expenses}")
        console.print(f"  Total:    {format_money(stats.total_amount)}")
        console.print(f"  Settled:  {format_money(stats.settled_amount)}")
        console.print(f"  Average:  {format_money(stats.average_expense_amount)}")


# ============================================================================
# Balances
# ============================================================================


@balances_app.command("show")
def balances_show(group_id: int = typer.Argument(...)):
    """Show what each member is owed and owes."""
    with open_service() as service:
        group = service.get_group(group_id)
        table = Table(
            title=f"Balances: {group.name}", show_header=True, header_style="bold magenta"
        )
        table.add_column("User", justify="right")
        table.add_column("Owed to them", justify="right", width=14)
        table.add_column("Owed by them", justify="right", width=14)
        table.add_column("Net", justify="right", width=14)
        for balance in service.balances.group_balances(group_id):
            table.add_row(
                str(balance.user_id),
                format_money(balance.owed_to_user, use_color=False),
                format_money(balance.owed_by_user, use_color=False),
                format_money(balance.net),
            )
        console.print(table)


@balances_app.command("between")
def balances_between(
    group_id: int = typer.Argument(...),
    user_a: int = typer.Argument(...),
    user_b: int = typer.Argument(...),
):
    """Show the net balance between two users."""
    with open_service() as service:
        net = service.balances.net_balance_between_users(user_a, user_b, group_id)
        if net > 0:
            console.print(f"User {user_b} owes user {user_a} {format_money(net)}")
        elif net < 0:
            console.print(f"User {user_a} owes user {user_b} {format_money(-net)}")
        else:
            console.print(f"Users {user_a} and {user_b} are settled up")


@balances_app.command("suggest")
def balances_suggest(group_id: int = typer.Argument(...)):
    """Suggest the transfers that would settle the group."""
    with open_service() as service:
        transfers = service.balances.suggest_settlements(group_id)
        if not transfers:
            console.print("[green]Everyone is settled up.[/green]")
            return
        table = Table(
            title="Suggested Transfers", show_header=True, header_style="bold magenta"
        )
        table.add_column("From", justify="right")
        table.add_column("To", justify="right")
        table.add_column("Amount", justify="right", width=14)
        for transfer in transfers:
            table.add_row(
                str(transfer.from_user), str(transfer.to_user), format_money(transfer.amount)
            )
        console.print(table)


# ============================================================================
# Settlements
# ============================================================================


@settlements_app.command("create")
def settlements_create(
    group_id: int = typer.Argument(...),
    payer: int = typer.Option(..., "--payer"),
    payee: int = typer.Option(..., "--payee"),
    amount: str = typer.Option(..., "--amount"),
    initiator: int | None = typer.Option(
        None, "--initiator", help="Defaults to the payer"
    ),
    method: str | None = typer.Option(
        None, "--method", help="cash, upi, bank_transfer or other"
    ),
    notes: str | None = typer.Option(None, "--notes"),
):
    """Request a settle-up payment."""
    with open_service() as service:
        settlement = service.settlements.create(
            group_id,
            payer,
            payee,
            amount,
            method,
            notes,
            initiator if initiator is not None else payer,
        )
        console.print(
            f"[green]✓ Settlement {settlement.id} pending: {settlement.describe()}[/green]"
        )


@settlements_app.command("confirm")
def settlements_confirm(
    settlement_id: int = typer.Argument(...),
    user: int = typer.Option(..., "--user"),
    txn: str | None = typer.Option(None, "--txn", help="External transaction id"),
):
    """Confirm a settlement was paid."""
    with open_service() as service:
        service.settlements.confirm(settlement_id, user, txn)
        console.print(f"[green]✓ Settlement {settlement_id} completed[/green]")


@settlements_app.command("reject")
def settlements_reject(
    settlement_id: int = typer.Argument(...),
    user: int = typer.Option(..., "--user"),
    reason: str = typer.Option(..., "--reason"),
):
    """Reject a pending settlement."""
    with open_service() as service:
        service.settlements.reject(settlement_id, user, reason)
        console.print(f"[yellow]Settlement {settlement_id} rejected[/yellow]")


@settlements_app.command("progress")
def settlements_progress(
    settlement_id: int = typer.Argument(...),
    user: int = typer.Option(..., "--user"),
):
    """Mark a settlement as in progress."""
    with open_service() as service:
        service.settlements.mark_in_progress(settlement_id, user)
        console.print(f"[green]✓ Settlement {settlement_id} in progress[/green]")


@settlements_app.command("cancel")
def settlements_cancel(
    settlement_id: int = typer.Argument(...),
    user: int = typer.Option(..., "--user"),
):
    """Cancel a pending settlement."""
    with open_service() as service:
        service.settlements.cancel(settlement_id, user)
        console.print(f"[yellow]Settlement {settlement_id} cancelled[/yellow]")


@settlements_app.command("list")
def settlements_list(
    group_id: int = typer.Argument(...),
    status: SettlementStatus | None = typer.Option(None, "--status"),
):
    """List a group's settlements."""
    with open_service() as service:
        display_settlements(
            service.settlements.group_settlements(group_id, status), "Settlements"
        )


@settlements_app.command("pending")
def settlements_pending(user_id: int = typer.Argument(...)):
    """List pending settlements involving a user."""
    with open_service() as service:
        display_settlements(
            service.settlements.pending_for_user(user_id), "Pending Settlements"
        )


@settlements_app.command("remind")
def settlements_remind(
    days: int | None = typer.Option(None, "--days", help="Minimum age in days"),
):
    """Send reminders for stale pending settlements."""
    with open_service() as service:
        sent = service.settlements.send_reminders(days)
        console.print(f"Sent {sent} reminders")


if __name__ == "__main__":
    app()
