import logging
import os
import subprocess
import sys
import webbrowser
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import typer
from rich.console import Console

from circulation import Circulation
from config import settings
from database import Database
from errors import LibraryError
from library import Library
from ui_helpers import (
    print_fines_result,
    print_list_result,
    print_notifications_result,
    print_stats_result,
    print_transactions_result,
    set_output_mode,
)

APP_NAME = "Library CLI"

console = Console()

# Database file chosen by the global --db option
_state = {"db_file": None}


def _db_file() -> str:
    return _state["db_file"] or settings.database_file


@contextmanager
def open_library() -> Iterator[Tuple[Library, Circulation]]:
    """Open the database for the duration of one command."""
    with Database(_db_file()) as db:
        yield Library(db), Circulation.from_settings(db, settings)


def _fail(error: LibraryError) -> None:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
):
    """Global options (output mode, database file)."""
    logging.basicConfig(level=settings.log_level.upper())
    if output:
        set_output_mode(output)
    _state["db_file"] = db


@app.command("init-db")
def cli_init_db():
    """Create the schema in the database file."""
    with open_library():
        pass
    print(f"Database ready at {_db_file()}")


@app.command("books")
def cli_books(available: bool = typer.Option(False, "--available", help="Only titles with copies left")):
    """List the catalog."""
    with open_library() as (lib, _):
        print_list_result(lib.list_books(only_available=available))


@app.command("search")
def cli_search(query: str = typer.Argument(..., help="Title, publisher, year, author or genre")):
    """Search the catalog."""
    with open_library() as (lib, _):
        books = lib.search_books(query)
    if not books:
        print("No books matched the search.")
        return
    print_list_result(books)


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    with open_library() as (lib, _):
        print_stats_result(lib.get_statistics())


@app.command("borrow")
def cli_borrow(username: str, book_id: int):
    """Borrow a copy of a book for a user."""
    with open_library() as (_, circulation):
        try:
            result = circulation.borrow_book(username, book_id)
        except LibraryError as e:
            _fail(e)
    print(f"Borrowed: transaction #{result.transaction.transaction_id}, "
          f"due {result.transaction.due_date:%Y-%m-%d}")
    print(result.notification.message)


@app.command("return")
def cli_return(username: str, book_id: int):
    """Return a borrowed book."""
    with open_library() as (_, circulation):
        try:
            transaction = circulation.return_book(username, book_id)
        except LibraryError as e:
            _fail(e)
    print(f"Returned: transaction #{transaction.transaction_id}")


@app.command("force-return")
def cli_force_return(transaction_id: int):
    """Close a transaction by id (administrative return)."""
    with open_library() as (_, circulation):
        try:
            circulation.force_return(transaction_id)
        except LibraryError as e:
            _fail(e)
    print(f"Transaction #{transaction_id} closed.")


@app.command("transactions")
def cli_transactions(username: Optional[str] = typer.Option(None, "--username", "-u",
                                                            help="Only open loans of this user")):
    """List borrowing transactions."""
    with open_library() as (_, circulation):
        if username:
            print_transactions_result(circulation.transactions.open_transactions_for(username),
                                      f"No open transactions for {username}.")
        else:
            print_transactions_result(circulation.transactions.list_transactions())


@app.command("overdue")
def cli_overdue():
    """List open loans past their due date."""
    with open_library() as (_, circulation):
        print_transactions_result(circulation.transactions.list_overdue(), "No overdue loans.")


@app.command("notifications")
def cli_notifications(username: Optional[str] = typer.Option(None, "--username", "-u")):
    """List reminder notifications."""
    with open_library() as (_, circulation):
        if username:
            print_notifications_result(circulation.issuer.notifications_for(username))
        else:
            print_notifications_result(circulation.issuer.list_notifications())


@app.command("create-fine")
def cli_create_fine(transaction_id: int):
    """Issue a fine against a transaction."""
    with open_library() as (_, circulation):
        try:
            fine = circulation.issuer.create_fine(transaction_id)
        except LibraryError as e:
            _fail(e)
    print(f"Fine #{fine.fine_id} of {fine.fine_amount} issued to {fine.username}.")


@app.command("pay-fine")
def cli_pay_fine(fine_id: int):
    """Mark a fine as paid."""
    with open_library() as (_, circulation):
        try:
            circulation.issuer.pay_fine(fine_id)
        except LibraryError as e:
            _fail(e)
    print(f"Fine #{fine_id} paid.")


@app.command("fines")
def cli_fines():
    """List fines."""
    with open_library() as (_, circulation):
        print_fines_result(circulation.issuer.list_fines())


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before exiting (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting web UI on {url}")
    try:
        webbrowser.open(url)
    except Exception:
        pass

    env = dict(os.environ)
    env["LIBRARY_DB_FILE"] = _db_file()
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        if timeout and timeout > 0:
            # No reloader when running with a timeout so terminate() reaches the server
            start_new_session = os.name != "nt"
            proc = subprocess.Popen(args, env=env, start_new_session=start_new_session)
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=3)
        else:
            args.append("--reload")
            subprocess.run(args, env=env)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
