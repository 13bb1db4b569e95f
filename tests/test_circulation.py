import threading
from datetime import datetime, timedelta

import pytest

from book import AVAILABLE, UNAVAILABLE
from circulation import REMINDER_TEMPLATE, Circulation, add_months
from errors import (
    AlreadyBorrowed,
    AlreadyCompleted,
    AlreadyPaid,
    BookNotFound,
    ConflictError,
    FineNotFound,
    NoActiveBorrow,
    NoAvailableCopies,
    NotFoundError,
    TransactionNotFound,
    UserNotFound,
)
from records import FINE_PAID, FINE_UNPAID


@pytest.fixture
def single_copy(lib):
    return lib.create_book("Clean Code", "9780132350884", quantity=1)


@pytest.fixture
def bob(lib):
    return lib.create_user("bob", "Bob", "Jones", "bob@example.com", "hunter2")


def quantity_of(lib, book_id):
    return lib.get_book(book_id).quantity


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2024, 1, 31, 9, 0), 1) == datetime(2024, 2, 29, 9, 0)
    assert add_months(datetime(2023, 12, 15), 1) == datetime(2024, 1, 15)
    assert add_months(datetime(2024, 3, 31), 13) == datetime(2025, 4, 30)


def test_borrow_decrements_and_schedules_reminder(lib, circulation, member, dune, clock):
    result = circulation.borrow_book("alice", dune.book_id)

    assert quantity_of(lib, dune.book_id) == 1
    assert lib.get_book(dune.book_id).status == AVAILABLE

    transaction = result.transaction
    assert transaction.return_date is None
    assert transaction.issue_date == clock.now
    assert transaction.due_date == datetime(2024, 2, 15, 10, 30, 0)

    notification = result.notification
    assert notification.username == "alice"
    assert notification.transaction_id == transaction.transaction_id
    assert notification.reminder_date == transaction.issue_date + timedelta(days=14)
    assert notification.message == REMINDER_TEMPLATE.format(title="Dune", due_date="2024-02-15 10:30:00")


def test_borrow_last_copy_marks_unavailable(lib, circulation, member, single_copy):
    circulation.borrow_book("alice", single_copy.book_id)
    book = lib.get_book(single_copy.book_id)
    assert book.quantity == 0
    assert book.status == UNAVAILABLE


def test_borrow_twice_conflicts_until_returned(lib, circulation, member, dune):
    circulation.borrow_book("alice", dune.book_id)
    with pytest.raises(AlreadyBorrowed):
        circulation.borrow_book("alice", dune.book_id)
    assert quantity_of(lib, dune.book_id) == 1

    circulation.return_book("alice", dune.book_id)
    circulation.borrow_book("alice", dune.book_id)
    assert len(circulation.transactions.list_transactions()) == 2


def test_borrow_precondition_order(lib, circulation, member, single_copy):
    # unknown book wins over unknown user
    with pytest.raises(BookNotFound):
        circulation.borrow_book("nobody", 999)
    with pytest.raises(UserNotFound):
        circulation.borrow_book("nobody", single_copy.book_id)

    circulation.borrow_book("alice", single_copy.book_id)
    # no copies is reported before the duplicate-loan check
    with pytest.raises(NoAvailableCopies):
        circulation.borrow_book("alice", single_copy.book_id)


def test_errors_belong_to_taxonomy():
    assert issubclass(NoAvailableCopies, ConflictError)
    assert issubclass(AlreadyBorrowed, ConflictError)
    assert issubclass(NoActiveBorrow, NotFoundError)
    assert issubclass(BookNotFound, LookupError)


def test_return_without_open_loan(circulation, member, dune):
    with pytest.raises(NoActiveBorrow):
        circulation.return_book("alice", dune.book_id)


def test_return_increments_and_keeps_label(lib, circulation, member, single_copy, clock):
    circulation.borrow_book("alice", single_copy.book_id)
    clock.advance(days=3)

    transaction = circulation.return_book("alice", single_copy.book_id)

    assert transaction.return_date == clock.now
    book = lib.get_book(single_copy.book_id)
    assert book.quantity == 1
    assert book.status == UNAVAILABLE
    # availability follows quantity, not the label
    assert circulation.inventory.check_available(single_copy.book_id)


def test_quantity_never_negative(lib, circulation, member, bob, dune):
    for username in ("alice", "bob"):
        circulation.borrow_book(username, dune.book_id)
    lib.create_user("carol", "Carol", "White", "carol@example.com", "pw")
    with pytest.raises(NoAvailableCopies):
        circulation.borrow_book("carol", dune.book_id)
    assert quantity_of(lib, dune.book_id) == 0

    for username in ("alice", "bob"):
        circulation.return_book(username, dune.book_id)
    assert quantity_of(lib, dune.book_id) == 2


def test_decrement_guard(lib, circulation, single_copy):
    circulation.inventory.decrement(single_copy.book_id)
    with pytest.raises(NoAvailableCopies):
        circulation.inventory.decrement(single_copy.book_id)
    with pytest.raises(BookNotFound):
        circulation.inventory.decrement(12345)
    assert quantity_of(lib, single_copy.book_id) == 0


def test_concurrent_borrows_of_last_copy(lib, circulation, member, bob, single_copy):
    outcomes = []

    def borrow(username):
        try:
            circulation.borrow_book(username, single_copy.book_id)
            outcomes.append("ok")
        except NoAvailableCopies:
            outcomes.append("none left")

    threads = [threading.Thread(target=borrow, args=(name,)) for name in ("alice", "bob")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["none left", "ok"]
    assert quantity_of(lib, single_copy.book_id) == 0


def test_failed_borrow_rolls_back(lib, circulation, member, dune, monkeypatch):
    def broken(transaction_id):
        raise RuntimeError("notification table unavailable")

    monkeypatch.setattr(circulation.issuer, "issue_reminder", broken)

    with pytest.raises(RuntimeError):
        circulation.borrow_book("alice", dune.book_id)

    assert quantity_of(lib, dune.book_id) == 2
    assert circulation.transactions.list_transactions() == []
    assert circulation.issuer.list_notifications() == []


def test_failed_return_rolls_back(lib, circulation, member, dune, monkeypatch):
    circulation.borrow_book("alice", dune.book_id)

    def broken(book_id):
        raise RuntimeError("disk full")

    monkeypatch.setattr(circulation.inventory, "increment", broken)
    with pytest.raises(RuntimeError):
        circulation.return_book("alice", dune.book_id)

    assert circulation.transactions.is_borrowed("alice", dune.book_id)
    assert quantity_of(lib, dune.book_id) == 1


def test_force_return_restores_copy(lib, circulation, member, single_copy):
    result = circulation.borrow_book("alice", single_copy.book_id)

    closed = circulation.force_return(result.transaction.transaction_id)

    assert closed.return_date is not None
    assert quantity_of(lib, single_copy.book_id) == 1
    with pytest.raises(AlreadyCompleted):
        circulation.force_return(result.transaction.transaction_id)
    with pytest.raises(TransactionNotFound):
        circulation.force_return(404)
    assert quantity_of(lib, single_copy.book_id) == 1


def test_update_transaction_only_sets_return_date(lib, circulation, member, dune):
    result = circulation.borrow_book("alice", dune.book_id)
    circulation.transactions.update_transaction(result.transaction.transaction_id)
    assert quantity_of(lib, dune.book_id) == 1


def test_open_transactions_and_overdue(circulation, member, dune, single_copy, clock):
    circulation.borrow_book("alice", dune.book_id)
    circulation.borrow_book("alice", single_copy.book_id)
    circulation.return_book("alice", dune.book_id)

    open_loans = circulation.transactions.open_transactions_for("alice")
    assert [t.title for t in open_loans] == ["Clean Code"]
    assert circulation.transactions.list_overdue() == []

    clock.advance(days=40)
    overdue = circulation.transactions.list_overdue()
    assert [t.book_id for t in overdue] == [single_copy.book_id]
    assert overdue[0].is_overdue(clock.now)


def test_deleting_transaction_cascades_to_fines(circulation, member, dune):
    result = circulation.borrow_book("alice", dune.book_id)
    fine = circulation.issuer.create_fine(result.transaction.transaction_id)

    assert circulation.transactions.delete_transaction(result.transaction.transaction_id) is True
    assert circulation.transactions.delete_transaction(result.transaction.transaction_id) is False
    assert circulation.issuer.get_fine(fine.fine_id) is None
    # the reminder stays but loses its link
    assert circulation.issuer.list_notifications()[0].transaction_id is None


def test_fine_lifecycle(circulation, member, dune, clock):
    result = circulation.borrow_book("alice", dune.book_id)

    fine = circulation.issuer.create_fine(result.transaction.transaction_id)
    assert fine.fine_amount == 40
    assert fine.fine_status == FINE_UNPAID
    assert fine.username == "alice"
    assert fine.borrowed_book == "Dune"
    assert fine.paid_date is None

    clock.advance(days=1)
    paid = circulation.issuer.pay_fine(fine.fine_id)
    assert paid.fine_status == FINE_PAID
    assert paid.paid_date == clock.now

    with pytest.raises(AlreadyPaid):
        circulation.issuer.pay_fine(fine.fine_id)
    with pytest.raises(FineNotFound):
        circulation.issuer.pay_fine(999)
    with pytest.raises(TransactionNotFound):
        circulation.issuer.create_fine(999)


def test_concurrent_payments_of_one_fine(circulation, member, dune, clock):
    result = circulation.borrow_book("alice", dune.book_id)
    fine = circulation.issuer.create_fine(result.transaction.transaction_id)
    outcomes = []

    def pay():
        try:
            circulation.issuer.pay_fine(fine.fine_id)
            outcomes.append("ok")
        except AlreadyPaid:
            outcomes.append("already paid")

    threads = [threading.Thread(target=pay) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["already paid", "ok"]
    stored = circulation.issuer.get_fine(fine.fine_id)
    assert stored.fine_status == FINE_PAID
    assert stored.paid_date == clock.now
    rows = circulation.db.fetch_all("SELECT paid_date FROM fine WHERE paid_date IS NOT NULL")
    assert len(rows) == 1


def test_issue_reminder_for_unknown_transaction(circulation):
    with pytest.raises(TransactionNotFound):
        circulation.issuer.issue_reminder(1)


def test_lifecycle_scenario(lib, circulation, member, bob, single_copy, clock):
    book_id = single_copy.book_id
    assert single_copy.status == AVAILABLE

    first = circulation.borrow_book("alice", book_id)
    book = lib.get_book(book_id)
    assert (book.quantity, book.status) == (0, UNAVAILABLE)
    assert first.transaction.return_date is None
    assert first.notification.reminder_date == first.transaction.issue_date + timedelta(days=14)

    with pytest.raises(NoAvailableCopies):
        circulation.borrow_book("bob", book_id)

    clock.advance(days=10)
    returned = circulation.return_book("alice", book_id)
    assert returned.return_date == clock.now
    book = lib.get_book(book_id)
    assert (book.quantity, book.status) == (1, UNAVAILABLE)

    fine = circulation.issuer.create_fine(first.transaction.transaction_id)
    assert (fine.fine_status, fine.fine_amount) == ("unpaid", 40)

    paid = circulation.issuer.pay_fine(fine.fine_id)
    assert paid.fine_status == "paid"
    assert paid.paid_date == clock.now

    with pytest.raises(AlreadyPaid):
        circulation.issuer.pay_fine(fine.fine_id)


def test_custom_rules(db, lib, clock, member, dune):
    circulation = Circulation(db, clock=clock, loan_period_months=2, reminder_offset_days=7, fine_amount=15)
    result = circulation.borrow_book("alice", dune.book_id)
    assert result.transaction.due_date == datetime(2024, 3, 15, 10, 30, 0)
    assert result.notification.reminder_date == datetime(2024, 1, 22, 10, 30, 0)
    assert circulation.issuer.create_fine(result.transaction.transaction_id).fine_amount == 15
