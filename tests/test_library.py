import pytest

from book import AVAILABLE, UNAVAILABLE
from database import Database
from errors import ConflictError, Duplicate, InvalidInputError, NotFoundError, UserNotFound
from library import Library


def test_add_list_and_find(lib):
    assert lib.list_books() == []

    book = lib.create_book("Ulysses", "978-0-590-35342-7", quantity=3)

    assert book.isbn == "9780590353427"
    assert book.status == AVAILABLE
    assert lib.get_book(book.book_id).title == "Ulysses"
    assert [b.title for b in lib.list_books()] == ["Ulysses"]


def test_add_duplicate_title_and_isbn(lib, dune):
    with pytest.raises(Duplicate, match="title already exists"):
        lib.create_book("Dune", "9780132350884")
    with pytest.raises(Duplicate, match="ISBN already exists"):
        lib.create_book("Dune Messiah", "9780441172719")
    assert len(lib.list_books()) == 1


def test_invalid_isbn_and_quantity(lib):
    with pytest.raises(InvalidInputError, match="Invalid ISBN format."):
        lib.create_book("Short", "123")
    with pytest.raises(InvalidInputError):
        lib.create_book("Negative", "9780132350884", quantity=-1)
    # ISBN-10 with a check character
    assert lib.create_book("Ten", "080442957X").isbn == "080442957X"


def test_zero_quantity_is_unavailable(lib):
    book = lib.create_book("Out of print", "9780132350884", quantity=0)
    assert book.status == UNAVAILABLE
    assert lib.list_books(only_available=True) == []


def test_persistence(tmp_path):
    path = str(tmp_path / "persist.db")
    with Database(path) as db:
        Library(db).create_book("Sapiens", "9780099590088", quantity=1)

    with Database(path) as db:
        books = Library(db).list_books()
    assert [b.title for b in books] == ["Sapiens"]


def test_update_book(lib, dune):
    updated = lib.update_book(dune.book_id, description="Spice", quantity=0)
    assert updated.description == "Spice"
    assert updated.quantity == 0
    assert updated.status == UNAVAILABLE

    restocked = lib.update_book(dune.book_id, quantity=4, status=AVAILABLE)
    assert (restocked.quantity, restocked.status) == (4, AVAILABLE)

    with pytest.raises(InvalidInputError, match="Nothing to update"):
        lib.update_book(dune.book_id)
    with pytest.raises(NotFoundError):
        lib.update_book(999, title="Missing")


def test_status_follows_zero_quantity(lib):
    book = lib.create_book("Clean Code", "9780132350884", quantity=0)
    assert book.status == UNAVAILABLE

    relabeled = lib.update_book(book.book_id, status=AVAILABLE)
    assert (relabeled.quantity, relabeled.status) == (0, UNAVAILABLE)
    assert lib.get_book(book.book_id).status == UNAVAILABLE

    restocked = lib.update_book(book.book_id, quantity=1, status=AVAILABLE)
    assert (restocked.quantity, restocked.status) == (1, AVAILABLE)


def test_remove(lib, dune):
    assert lib.delete_book(dune.book_id) is True
    assert lib.delete_book(dune.book_id) is False
    assert lib.get_book(dune.book_id) is None


def test_genres_and_search(lib, dune):
    scifi = lib.create_genre("Science Fiction")
    lib.update_book(dune.book_id, genre_ids=[scifi.genre_id])

    assert lib.get_book(dune.book_id).genres == ["Science Fiction"]
    assert [b.title for b in lib.books_by_genre(scifi.genre_id)] == ["Dune"]

    assert [b.title for b in lib.search_books("herbert")] == ["Dune"]
    assert [b.title for b in lib.search_books("1965")] == ["Dune"]
    assert [b.title for b in lib.search_books("fiction")] == ["Dune"]
    assert lib.search_books("cookbook") == []

    with pytest.raises(Duplicate):
        lib.create_genre("Science Fiction")
    with pytest.raises(NotFoundError, match="Genre not found."):
        lib.update_book(dune.book_id, genre_ids=[999])


def test_authors(lib, dune):
    assert dune.author_name == "Frank Herbert"
    with pytest.raises(Duplicate):
        lib.create_author("Frank", "Herbert")

    author = lib.update_author(dune.author_id, "Franklin", "Herbert")
    assert author.full_name == "Franklin Herbert"
    assert lib.get_book(dune.book_id).author_name == "Franklin Herbert"

    assert lib.delete_author(dune.author_id) is True
    assert lib.get_book(dune.book_id).author_id is None


def test_users_and_sign_in(lib, member):
    assert member.role == "user"
    assert member.registration_date is not None
    assert "password" not in member.to_dict()

    assert lib.sign_in("alice", "secret").username == "alice"
    assert lib.sign_in("alice", "wrong") is None
    assert lib.sign_in("ghost", "secret") is None

    with pytest.raises(Duplicate):
        lib.create_user("alice", "A", "S", "a@example.com", "x")
    with pytest.raises(InvalidInputError):
        lib.create_user("eve", "Eve", "X", "eve@example.com", "pw", role="librarian")

    lib.update_user("alice", password="new-secret", phone_number="555-0100")
    assert lib.sign_in("alice", "new-secret").phone_number == "555-0100"
    with pytest.raises(UserNotFound):
        lib.update_user("ghost", first_name="Casper")


def test_images(lib):
    image = lib.create_image("image/png", b"\x89PNG\r\n")
    assert lib.get_image(image.image_id).image_data == b"\x89PNG\r\n"
    with pytest.raises(InvalidInputError, match="No image file uploaded"):
        lib.create_image("image/png", b"")
    assert lib.delete_image(image.image_id) is True


def test_comments(lib, member, dune):
    comment = lib.create_comment(dune.book_id, "alice", 5, "<b>Loved</b> it")
    assert comment.comment_description == "Loved it"
    assert [c.comment_id for c in lib.comments_for_book(dune.book_id)] == [comment.comment_id]

    with pytest.raises(ConflictError, match="No changes made"):
        lib.update_comment(comment.comment_id, 5, "Loved it")
    assert lib.update_comment(comment.comment_id, 4, "Still good").rating == 4

    with pytest.raises(InvalidInputError):
        lib.create_comment(dune.book_id, "alice", 6)
    with pytest.raises(UserNotFound):
        lib.create_comment(dune.book_id, "ghost", 3)

    assert lib.delete_comment(comment.comment_id) is True
    assert lib.list_comments() == []


def test_statistics(lib, member, dune):
    stats = lib.get_statistics()
    assert stats == {
        "total_books": 1,
        "available_copies": 2,
        "unique_authors": 1,
        "total_users": 1,
        "open_loans": 0,
        "unpaid_fines": 0,
    }
