from datetime import datetime, timedelta

import pytest

from circulation import Circulation
from database import Database
from library import Library


class FakeClock:
    """Deterministic clock; tests move it forward with ``advance``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 15, 10, 30, 0))


@pytest.fixture
def db(tmp_path, request):
    # Each test gets its own database file
    database = Database(str(tmp_path / f"test_{request.node.name}.db")).open()
    yield database
    database.close()


@pytest.fixture
def lib(db, clock):
    return Library(db, clock=clock)


@pytest.fixture
def circulation(db, clock):
    return Circulation(db, clock=clock)


@pytest.fixture
def member(lib):
    return lib.create_user("alice", "Alice", "Smith", "alice@example.com", "secret")


@pytest.fixture
def dune(lib):
    author = lib.create_author("Frank", "Herbert")
    return lib.create_book("Dune", "9780441172719", quantity=2, author_id=author.author_id,
                           publisher="Chilton", published_year=1965)
