import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from database import Database
from library import Library
from main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # --output writes the mode to the environment; keep it from leaking between tests
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")


@pytest.fixture
def db_file(tmp_path, request):
    return str(tmp_path / f"cli_{request.node.name}.db")


@pytest.fixture
def seeded(db_file):
    with Database(db_file) as db:
        lib = Library(db)
        lib.create_user("alice", "Alice", "Smith", "alice@example.com", "secret")
        book = lib.create_book("Dune", "9780441172719", quantity=1)
    return book.book_id


def invoke(db_file, *args):
    return runner.invoke(app, ["--db", db_file, *args])


def test_init_db(db_file):
    result = invoke(db_file, "init-db")
    assert result.exit_code == 0
    assert f"Database ready at {db_file}" in result.stdout


def test_list_no_books(db_file):
    result = invoke(db_file, "books")
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_list_books_plain_and_json(db_file, seeded):
    result = invoke(db_file, "books")
    assert result.exit_code == 0
    assert f"{seeded}. Dune (9780441172719) - 1 copies, available" in result.stdout

    result = runner.invoke(app, ["--output", "json", "--db", db_file, "books"])
    assert result.exit_code == 0
    [line] = [line for line in result.stdout.splitlines() if line.startswith("[")]
    payload = json.loads(line)
    assert payload[0]["title"] == "Dune"
    assert payload[0]["quantity"] == 1


def test_borrow_and_return(db_file, seeded):
    result = invoke(db_file, "borrow", "alice", str(seeded))
    assert result.exit_code == 0
    assert "Borrowed: transaction #1" in result.stdout
    assert 'Don\'t forget to return "Dune"' in result.stdout

    listing = invoke(db_file, "transactions", "--username", "alice")
    assert "#1 alice - Dune" in listing.stdout
    assert "(open)" in listing.stdout

    result = invoke(db_file, "return", "alice", str(seeded))
    assert result.exit_code == 0
    assert "Returned: transaction #1" in result.stdout

    listing = invoke(db_file, "transactions", "--username", "alice")
    assert "No open transactions for alice." in listing.stdout


def test_borrow_failure_exits_with_code_1(db_file, seeded):
    result = invoke(db_file, "borrow", "ghost", str(seeded))
    assert result.exit_code == 1
    assert 'Error: User "ghost" does not exist.' in result.stdout

    result = invoke(db_file, "return", "alice", str(seeded))
    assert result.exit_code == 1
    assert "No active borrowing record found" in result.stdout


def test_fines(db_file, seeded):
    invoke(db_file, "borrow", "alice", str(seeded))

    result = invoke(db_file, "create-fine", "1")
    assert result.exit_code == 0
    assert "Fine #1 of 40 issued to alice." in result.stdout

    assert "#1 alice - 40 (unpaid)" in invoke(db_file, "fines").stdout
    assert invoke(db_file, "pay-fine", "1").exit_code == 0
    assert "#1 alice - 40 (paid)" in invoke(db_file, "fines").stdout

    again = invoke(db_file, "pay-fine", "1")
    assert again.exit_code == 1
    assert "Fine was already paid." in again.stdout


def test_force_return_and_notifications(db_file, seeded):
    invoke(db_file, "borrow", "alice", str(seeded))
    assert "alice on" in invoke(db_file, "notifications", "--username", "alice").stdout

    assert invoke(db_file, "force-return", "1").exit_code == 0
    assert "1 copies" in invoke(db_file, "books").stdout
    assert invoke(db_file, "force-return", "1").exit_code == 1


def test_overdue_empty(db_file, seeded):
    result = invoke(db_file, "overdue")
    assert result.exit_code == 0
    assert "No overdue loans." in result.stdout


def test_search_and_stats(db_file, seeded):
    assert "Dune" in invoke(db_file, "search", "dun").stdout
    assert "No books matched the search." in invoke(db_file, "search", "cookbook").stdout

    stats = invoke(db_file, "stats")
    assert "Total Books: 1" in stats.stdout
    assert "Users: 1" in stats.stdout


@patch("subprocess.run")
@patch("webbrowser.open")
def test_serve_command(mock_webbrowser_open, mock_subprocess_run, db_file):
    result = invoke(db_file, "serve")
    assert result.exit_code == 0
    assert "Starting web UI on" in result.stdout
    mock_webbrowser_open.assert_called_once()
    args, kwargs = mock_subprocess_run.call_args
    assert "api:app" in args[0]
    assert kwargs["env"]["LIBRARY_DB_FILE"] == db_file
