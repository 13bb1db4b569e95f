import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from errors import InternalError

logger = logging.getLogger(__name__)

# Timestamps are stored as text so the schema stays portable.
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS user (
        username TEXT PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        email TEXT NOT NULL,
        phone_number TEXT,
        address TEXT,
        role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('administrator', 'user')),
        registration_date TEXT NOT NULL,
        password TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS author (
        author_id INTEGER PRIMARY KEY AUTOINCREMENT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        UNIQUE (first_name, last_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS genre (
        genre_id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT UNIQUE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS images (
        image_id INTEGER PRIMARY KEY AUTOINCREMENT,
        image_type TEXT NOT NULL,
        image_data BLOB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book (
        book_id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT UNIQUE NOT NULL,
        isbn TEXT UNIQUE NOT NULL,
        publisher TEXT,
        published_year INTEGER,
        status TEXT NOT NULL DEFAULT 'available',
        description TEXT,
        quantity INTEGER NOT NULL DEFAULT 0 CHECK(quantity >= 0),
        rate REAL,
        author_id INTEGER REFERENCES author(author_id) ON DELETE SET NULL,
        image_id INTEGER REFERENCES images(image_id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bookgenres (
        book_id INTEGER NOT NULL REFERENCES book(book_id) ON DELETE CASCADE,
        genre_id INTEGER NOT NULL REFERENCES genre(genre_id) ON DELETE CASCADE,
        PRIMARY KEY (book_id, genre_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comment (
        comment_id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL REFERENCES book(book_id) ON DELETE CASCADE,
        username TEXT NOT NULL REFERENCES user(username) ON DELETE CASCADE,
        rating INTEGER NOT NULL CHECK(rating >= 1 AND rating <= 5),
        comment_date TEXT NOT NULL,
        comment_description TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS borrowing_transaction (
        transaction_id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL REFERENCES user(username) ON DELETE CASCADE,
        book_id INTEGER NOT NULL REFERENCES book(book_id) ON DELETE CASCADE,
        issue_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        return_date TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fine (
        fine_id INTEGER PRIMARY KEY AUTOINCREMENT,
        transaction_id INTEGER NOT NULL
            REFERENCES borrowing_transaction(transaction_id) ON DELETE CASCADE,
        username TEXT NOT NULL,
        fine_amount INTEGER NOT NULL,
        fine_status TEXT NOT NULL DEFAULT 'unpaid' CHECK(fine_status IN ('unpaid', 'paid')),
        paid_date TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification (
        notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL,
        book_id INTEGER REFERENCES book(book_id) ON DELETE CASCADE,
        transaction_id INTEGER
            REFERENCES borrowing_transaction(transaction_id) ON DELETE SET NULL,
        fine_id INTEGER REFERENCES fine(fine_id) ON DELETE SET NULL,
        reminder_date TEXT NOT NULL,
        message TEXT NOT NULL
    )
    """,
    # Lookups of the open loan for a (username, book) pair
    "CREATE INDEX IF NOT EXISTS idx_transaction_open ON borrowing_transaction(username, book_id, return_date)",
    "CREATE INDEX IF NOT EXISTS idx_notification_user ON notification(username)",
    "CREATE INDEX IF NOT EXISTS idx_fine_transaction ON fine(transaction_id)",
    "CREATE INDEX IF NOT EXISTS idx_comment_book ON comment(book_id)",
)


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the schema if it does not exist yet."""
    for statement in SCHEMA:
        conn.execute(statement)


class Database:
    """Owns the SQLite connection used by the catalog and the circulation core.

    The process entry point (FastAPI lifespan, CLI command, test fixture) calls
    ``open()`` once and ``close()`` at shutdown. All statements go through one
    connection guarded by a re-entrant lock, so request threads never interleave
    inside a transaction.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0

    # ------------------------- Lifecycle ------------------------- #
    def open(self) -> "Database":
        if self._conn is not None:
            return self
        conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        if self.path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        create_tables(conn)
        self._conn = conn
        logger.info("Database opened at %s", self.path)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            logger.info("Database closed at %s", self.path)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise InternalError("Database is not open.", entity="database", key=self.path)
        return self._conn

    # ------------------------- Transactions ------------------------- #
    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically.

        Nested use joins the outermost transaction; only the outermost block
        commits or rolls back.
        """
        with self._lock:
            conn = self.connection
            if self._depth:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._depth = 0

    # ------------------------- Statements ------------------------- #
    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.connection.execute(sql, params)

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, params).fetchall()

    def ping(self) -> bool:
        try:
            self.fetch_one("SELECT 1")
            return True
        except (sqlite3.Error, InternalError):
            return False
