"""Borrowing lifecycle: inventory counts, the transaction log, reminders and fines.

Three collaborators share one :class:`database.Database`:

``InventoryLedger``
    the book's ``quantity``/``status`` columns, authoritative for availability checks.
``TransactionLog``
    borrow events; at most one open (unreturned) row per (username, book_id).
``ReminderFineIssuer``
    reminder notifications created at borrow time and manually issued fines.

:class:`Circulation` composes them into the borrow/return flows and runs each flow
inside a single database transaction, so the copy count and the transaction log
never drift apart when a step fails half way.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from book import UNAVAILABLE
from database import Database
from errors import (
    AlreadyBorrowed,
    AlreadyCompleted,
    AlreadyPaid,
    BookNotFound,
    FineNotFound,
    NoActiveBorrow,
    NoAvailableCopies,
    TransactionNotFound,
    UserNotFound,
)
from records import (
    FINE_PAID,
    FINE_UNPAID,
    Fine,
    Notification,
    Transaction,
    to_db_timestamp,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

REMINDER_TEMPLATE = 'Don\'t forget to return "{title}" before {due_date}'

_TRANSACTION_SELECT = """
    SELECT bt.transaction_id, bt.username, bt.book_id, b.title,
           bt.issue_date, bt.due_date, bt.return_date
    FROM borrowing_transaction bt
    LEFT JOIN book b ON b.book_id = bt.book_id
"""

_FINE_SELECT = """
    SELECT f.fine_id, f.username, f.transaction_id, b.title AS borrowed_book,
           f.fine_amount, f.fine_status, f.paid_date
    FROM fine f
    LEFT JOIN borrowing_transaction bt ON bt.transaction_id = f.transaction_id
    LEFT JOIN book b ON b.book_id = bt.book_id
"""


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _now_seconds(clock: Clock) -> datetime:
    # storage keeps second precision; trim here so returned records match stored rows
    return clock().replace(microsecond=0)


class InventoryLedger:
    """Copy counts and availability labels stored on the ``book`` row."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def check_available(self, book_id: int) -> bool:
        row = self.db.fetch_one("SELECT quantity FROM book WHERE book_id = ?", (book_id,))
        return row is not None and row["quantity"] > 0

    def decrement(self, book_id: int) -> None:
        """Take one copy out of circulation.

        The quantity guard lives in the UPDATE itself so two borrowers racing for the
        last copy cannot both succeed.
        """
        cursor = self.db.execute(
            """
            UPDATE book
               SET quantity = quantity - 1,
                   status = CASE WHEN quantity - 1 = 0 THEN ? ELSE status END
             WHERE book_id = ? AND quantity > 0
            """,
            (UNAVAILABLE, book_id),
        )
        if cursor.rowcount == 0:
            if self.db.fetch_one("SELECT book_id FROM book WHERE book_id = ?", (book_id,)) is None:
                raise BookNotFound(book_id)
            raise NoAvailableCopies(book_id)

    def increment(self, book_id: int) -> None:
        # The status label is left alone; availability is decided by quantity.
        cursor = self.db.execute("UPDATE book SET quantity = quantity + 1 WHERE book_id = ?", (book_id,))
        if cursor.rowcount == 0:
            raise BookNotFound(book_id)


class TransactionLog:
    """Append-mostly record of borrow events."""

    def __init__(self, db: Database, *, clock: Clock = datetime.now, loan_period_months: int = 1) -> None:
        self.db = db
        self.clock = clock
        self.loan_period_months = loan_period_months

    def create_transaction(self, username: str, book_id: int) -> Transaction:
        """Open a loan. Preconditions are checked in a fixed order:
        book exists, copies available, user exists, no open loan for the pair.
        """
        book = self.db.fetch_one("SELECT book_id, title, quantity FROM book WHERE book_id = ?", (book_id,))
        if book is None:
            raise BookNotFound(book_id)
        if book["quantity"] <= 0:
            raise NoAvailableCopies(book_id)
        if self.db.fetch_one("SELECT username FROM user WHERE username = ?", (username,)) is None:
            raise UserNotFound(username)
        if self.find_open(username, book_id) is not None:
            raise AlreadyBorrowed(username, book_id)

        issue_date = _now_seconds(self.clock)
        due_date = add_months(issue_date, self.loan_period_months)
        cursor = self.db.execute(
            "INSERT INTO borrowing_transaction (username, book_id, issue_date, due_date, return_date) "
            "VALUES (?, ?, ?, ?, NULL)",
            (username, book_id, to_db_timestamp(issue_date), to_db_timestamp(due_date)),
        )
        logger.info("Transaction %s opened: %s borrowed book %s", cursor.lastrowid, username, book_id)
        return Transaction(
            transaction_id=cursor.lastrowid,
            username=username,
            book_id=book_id,
            issue_date=issue_date,
            due_date=due_date,
            return_date=None,
            title=book["title"],
        )

    def return_transaction(self, username: str, book_id: int) -> Transaction:
        """Close the open loan for (username, book_id)."""
        open_loan = self.find_open(username, book_id)
        if open_loan is None:
            raise NoActiveBorrow(username, book_id)
        return self._close(open_loan)

    def update_transaction(self, transaction_id: int) -> Transaction:
        """Administrative force return: sets ``return_date`` only."""
        existing = self.get_transaction(transaction_id)
        if existing is None:
            raise TransactionNotFound(transaction_id)
        if existing.return_date is not None:
            raise AlreadyCompleted(transaction_id)
        return self._close(existing)

    def delete_transaction(self, transaction_id: int) -> bool:
        cursor = self.db.execute(
            "DELETE FROM borrowing_transaction WHERE transaction_id = ?", (transaction_id,)
        )
        return cursor.rowcount > 0

    # ------------------------- Queries ------------------------- #
    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        row = self.db.fetch_one(_TRANSACTION_SELECT + " WHERE bt.transaction_id = ?", (transaction_id,))
        return Transaction.from_row(row) if row else None

    def list_transactions(self) -> List[Transaction]:
        rows = self.db.fetch_all(_TRANSACTION_SELECT + " ORDER BY bt.transaction_id")
        return [Transaction.from_row(row) for row in rows]

    def find_open(self, username: str, book_id: int) -> Optional[Transaction]:
        row = self.db.fetch_one(
            _TRANSACTION_SELECT
            + " WHERE bt.username = ? AND bt.book_id = ? AND bt.return_date IS NULL",
            (username, book_id),
        )
        return Transaction.from_row(row) if row else None

    def open_transactions_for(self, username: str) -> List[Transaction]:
        rows = self.db.fetch_all(
            _TRANSACTION_SELECT
            + " WHERE bt.username = ? AND bt.return_date IS NULL ORDER BY bt.due_date",
            (username,),
        )
        return [Transaction.from_row(row) for row in rows]

    def is_borrowed(self, username: str, book_id: int) -> bool:
        return self.find_open(username, book_id) is not None

    def list_overdue(self, now: Optional[datetime] = None) -> List[Transaction]:
        now = now or self.clock()
        rows = self.db.fetch_all(
            _TRANSACTION_SELECT
            + " WHERE bt.return_date IS NULL AND bt.due_date < ? ORDER BY bt.due_date",
            (to_db_timestamp(now),),
        )
        return [Transaction.from_row(row) for row in rows]

    def _close(self, loan: Transaction) -> Transaction:
        returned_at = _now_seconds(self.clock)
        self.db.execute(
            "UPDATE borrowing_transaction SET return_date = ? WHERE transaction_id = ?",
            (to_db_timestamp(returned_at), loan.transaction_id),
        )
        loan.return_date = returned_at
        logger.info("Transaction %s closed", loan.transaction_id)
        return loan


class ReminderFineIssuer:
    """Reminder notifications and manually issued fines."""

    def __init__(self, db: Database, *, clock: Clock = datetime.now,
                 reminder_offset_days: int = 14, fine_amount: int = 40) -> None:
        self.db = db
        self.clock = clock
        self.reminder_offset = timedelta(days=reminder_offset_days)
        self.fine_amount = fine_amount

    # ------------------------- Reminders ------------------------- #
    def issue_reminder(self, transaction_id: int) -> Notification:
        row = self.db.fetch_one(
            "SELECT bt.username, bt.book_id, bt.issue_date, bt.due_date, b.title "
            "FROM borrowing_transaction bt LEFT JOIN book b ON b.book_id = bt.book_id "
            "WHERE bt.transaction_id = ?",
            (transaction_id,),
        )
        if row is None:
            raise TransactionNotFound(transaction_id)

        loan = Transaction.from_row({**dict(row), "transaction_id": transaction_id, "return_date": None})
        reminder_date = loan.issue_date + self.reminder_offset
        message = REMINDER_TEMPLATE.format(title=row["title"], due_date=to_db_timestamp(loan.due_date))
        cursor = self.db.execute(
            "INSERT INTO notification (username, book_id, transaction_id, fine_id, reminder_date, message) "
            "VALUES (?, ?, ?, NULL, ?, ?)",
            (loan.username, loan.book_id, transaction_id, to_db_timestamp(reminder_date), message),
        )
        return Notification(
            notification_id=cursor.lastrowid,
            username=loan.username,
            book_id=loan.book_id,
            reminder_date=reminder_date,
            message=message,
            fine_id=None,
            transaction_id=transaction_id,
        )

    def get_notification(self, notification_id: int) -> Optional[Notification]:
        row = self.db.fetch_one("SELECT * FROM notification WHERE notification_id = ?", (notification_id,))
        return Notification.from_row(row) if row else None

    def list_notifications(self) -> List[Notification]:
        rows = self.db.fetch_all("SELECT * FROM notification ORDER BY notification_id")
        return [Notification.from_row(row) for row in rows]

    def notifications_for(self, username: str) -> List[Notification]:
        rows = self.db.fetch_all(
            "SELECT * FROM notification WHERE username = ? ORDER BY reminder_date", (username,)
        )
        return [Notification.from_row(row) for row in rows]

    def delete_notification(self, notification_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM notification WHERE notification_id = ?", (notification_id,))
        return cursor.rowcount > 0

    # ------------------------- Fines ------------------------- #
    def create_fine(self, transaction_id: int) -> Fine:
        row = self.db.fetch_one(
            "SELECT username FROM borrowing_transaction WHERE transaction_id = ?", (transaction_id,)
        )
        if row is None:
            raise TransactionNotFound(transaction_id)
        cursor = self.db.execute(
            "INSERT INTO fine (transaction_id, username, fine_amount, fine_status) VALUES (?, ?, ?, ?)",
            (transaction_id, row["username"], self.fine_amount, FINE_UNPAID),
        )
        logger.info("Fine %s of %s issued to %s", cursor.lastrowid, self.fine_amount, row["username"])
        return self.get_fine(cursor.lastrowid)

    def pay_fine(self, fine_id: int) -> Fine:
        with self.db.transaction():
            current = self.db.fetch_one("SELECT fine_status FROM fine WHERE fine_id = ?", (fine_id,))
            if current is None:
                raise FineNotFound(fine_id)
            cursor = self.db.execute(
                "UPDATE fine SET fine_status = ?, paid_date = ? WHERE fine_id = ? AND fine_status = ?",
                (FINE_PAID, to_db_timestamp(_now_seconds(self.clock)), fine_id, FINE_UNPAID),
            )
            if cursor.rowcount == 0:
                raise AlreadyPaid(fine_id)
        logger.info("Fine %s paid", fine_id)
        return self.get_fine(fine_id)

    def get_fine(self, fine_id: int) -> Optional[Fine]:
        row = self.db.fetch_one(_FINE_SELECT + " WHERE f.fine_id = ?", (fine_id,))
        return Fine.from_row(row) if row else None

    def list_fines(self) -> List[Fine]:
        rows = self.db.fetch_all(_FINE_SELECT + " ORDER BY f.fine_id")
        return [Fine.from_row(row) for row in rows]

    def delete_fine(self, fine_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM fine WHERE fine_id = ?", (fine_id,))
        return cursor.rowcount > 0


@dataclass
class BorrowResult:
    transaction: Transaction
    notification: Notification


class Circulation:
    """Borrow and return flows composed from the three collaborators."""

    def __init__(self, db: Database, *, clock: Clock = datetime.now, loan_period_months: int = 1,
                 reminder_offset_days: int = 14, fine_amount: int = 40) -> None:
        self.db = db
        self.inventory = InventoryLedger(db)
        self.transactions = TransactionLog(db, clock=clock, loan_period_months=loan_period_months)
        self.issuer = ReminderFineIssuer(
            db, clock=clock, reminder_offset_days=reminder_offset_days, fine_amount=fine_amount
        )

    @classmethod
    def from_settings(cls, db: Database, settings, clock: Clock = datetime.now) -> "Circulation":
        return cls(
            db,
            clock=clock,
            loan_period_months=settings.loan_period_months,
            reminder_offset_days=settings.reminder_offset_days,
            fine_amount=settings.fine_amount,
        )

    def borrow_book(self, username: str, book_id: int) -> BorrowResult:
        """Availability check, open the loan, take a copy, schedule the reminder."""
        with self.db.transaction():
            if not self.inventory.check_available(book_id):
                if self.db.fetch_one("SELECT book_id FROM book WHERE book_id = ?", (book_id,)) is None:
                    raise BookNotFound(book_id)
                raise NoAvailableCopies(book_id)
            transaction = self.transactions.create_transaction(username, book_id)
            self.inventory.decrement(book_id)
            notification = self.issuer.issue_reminder(transaction.transaction_id)
        return BorrowResult(transaction, notification)

    def return_book(self, username: str, book_id: int) -> Transaction:
        with self.db.transaction():
            transaction = self.transactions.return_transaction(username, book_id)
            self.inventory.increment(book_id)
        return transaction

    def force_return(self, transaction_id: int) -> Transaction:
        """Administrative return by transaction id; also restores the copy count."""
        with self.db.transaction():
            transaction = self.transactions.update_transaction(transaction_id)
            self.inventory.increment(transaction.book_id)
        return transaction
