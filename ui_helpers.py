import os
import json
from typing import List, Any, Dict, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def _print_rows(title: str, columns: Sequence[Tuple[str, str]], rows: List[Dict[str, Any]],
                plain_line, empty_message: str) -> None:
    """Shared renderer: ``columns`` is a list of (key, header) pairs."""
    mode = get_output_mode()

    if not rows:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([{key: row.get(key) for key, _ in columns} for row in rows],
                         ensure_ascii=False, default=_fmt))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for _, header in columns:
            table.add_column(header)
        for row in rows:
            table.add_row(*(_fmt(row.get(key)) for key, _ in columns))
        _console.print(table)
    else:
        for row in rows:
            print(plain_line(row))


def print_list_result(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'ID. Title (ISBN) - N copies, status' lines, or 'No books in library.'
    - json: array of id, title, isbn, quantity, status
    - rich: table
    """
    _print_rows(
        "📚 Books",
        [("book_id", "ID"), ("title", "Title"), ("isbn", "ISBN"), ("quantity", "Copies"), ("status", "Status")],
        [b.to_dict() for b in books],
        lambda b: f"{b['book_id']}. {b['title']} ({b['isbn']}) - {b['quantity']} copies, {b['status']}",
        "No books in library.",
    )


def print_transactions_result(transactions: List[Any], empty_message: str = "No transactions found.") -> None:
    def line(t: Dict[str, Any]) -> str:
        state = f"returned {_fmt(t['return_date'])}" if t["return_date"] else "open"
        return (f"#{t['transaction_id']} {t['username']} - {t['title'] or t['book_id']} "
                f"due {_fmt(t['due_date'])} ({state})")

    _print_rows(
        "🔁 Transactions",
        [("transaction_id", "ID"), ("username", "User"), ("title", "Book"), ("issue_date", "Issued"),
         ("due_date", "Due"), ("return_date", "Returned")],
        [t.to_dict() for t in transactions],
        line,
        empty_message,
    )


def print_fines_result(fines: List[Any]) -> None:
    _print_rows(
        "💰 Fines",
        [("fine_id", "ID"), ("username", "User"), ("borrowed_book", "Book"), ("fine_amount", "Amount"),
         ("fine_status", "Status"), ("paid_date", "Paid")],
        [f.to_dict() for f in fines],
        lambda f: f"#{f['fine_id']} {f['username']} - {f['fine_amount']} ({f['fine_status']})",
        "No fines found.",
    )


def print_notifications_result(notifications: List[Any]) -> None:
    _print_rows(
        "🔔 Notifications",
        [("notification_id", "ID"), ("username", "User"), ("reminder_date", "Remind on"), ("message", "Message")],
        [n.to_dict() for n in notifications],
        lambda n: f"#{n['notification_id']} {n['username']} on {_fmt(n['reminder_date'])}: {n['message']}",
        "No notifications found.",
    )


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "available_copies": "Available Copies",
        "unique_authors": "Unique Authors",
        "total_users": "Users",
        "open_loans": "Open Loans",
        "unpaid_fines": "Unpaid Fines",
    }

    if mode == "json":
        print(json.dumps({key: stats.get(key, 0) for key in labels}, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")
