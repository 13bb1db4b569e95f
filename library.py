import hashlib
import hmac
import logging
import os
import re
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from book import AVAILABLE, UNAVAILABLE, Book
from database import Database
from errors import (
    BookNotFound,
    ConflictError,
    Duplicate,
    InvalidInputError,
    NotFoundError,
    UserNotFound,
)
from records import (
    ROLE_ADMIN,
    ROLE_USER,
    Author,
    Comment,
    Genre,
    Image,
    User,
    to_db_timestamp,
)

logger = logging.getLogger(__name__)

_BOOK_SELECT = """
    SELECT b.book_id, b.title, b.isbn, b.publisher, b.published_year, b.status,
           b.quantity, b.description, b.rate, b.author_id, b.image_id,
           a.first_name, a.last_name,
           (SELECT GROUP_CONCAT(g.type)
              FROM bookgenres bg JOIN genre g ON g.genre_id = bg.genre_id
             WHERE bg.book_id = b.book_id) AS genres
    FROM book b
    LEFT JOIN author a ON a.author_id = b.author_id
"""

_BOOK_COLUMNS = (
    "title", "isbn", "publisher", "published_year", "status",
    "description", "quantity", "rate", "author_id", "image_id",
)

_USER_COLUMNS = ("first_name", "last_name", "email", "phone_number", "address", "role")

_PBKDF2_ROUNDS = 120_000


class Library:
    """Catalog management: users, authors, genres, cover images, books and comments.

    Borrowing state lives in :mod:`circulation`; this class only owns the plain CRUD
    surface around it.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.now) -> None:
        self.db = db
        self.clock = clock

    # ------------------------- Users ------------------------- #
    def create_user(self, username: str, first_name: str, last_name: str, email: str,
                    password: str, *, role: str = ROLE_USER, phone_number: Optional[str] = None,
                    address: Optional[str] = None) -> User:
        username = (username or "").strip()
        if not username:
            raise InvalidInputError("Username is required.", entity="user")
        if not password:
            raise InvalidInputError("Password is required.", entity="user", key=username)
        self._check_role(role)
        if self.user_exists(username):
            raise Duplicate("user", username, "Username already exists")

        now = self.clock()
        try:
            self.db.execute(
                "INSERT INTO user (username, first_name, last_name, email, phone_number, address, "
                "role, registration_date, password) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (username, first_name, last_name, email, phone_number, address, role,
                 to_db_timestamp(now), self._hash_password(password)),
            )
        except sqlite3.IntegrityError as e:
            raise Duplicate("user", username, "Username already exists") from e
        logger.info("User %s registered", username)
        return self.get_user(username)

    def get_user(self, username: str) -> Optional[User]:
        row = self.db.fetch_one("SELECT * FROM user WHERE username = ?", (username,))
        return User.from_row(row) if row else None

    def list_users(self) -> List[User]:
        rows = self.db.fetch_all("SELECT * FROM user ORDER BY username")
        return [User.from_row(row) for row in rows]

    def user_exists(self, username: str) -> bool:
        row = self.db.fetch_one("SELECT username FROM user WHERE username = ?", (username,))
        return row is not None

    def update_user(self, username: str, *, password: Optional[str] = None, **fields: Any) -> User:
        if not self.user_exists(username):
            raise UserNotFound(username)
        updates = {k: v for k, v in fields.items() if k in _USER_COLUMNS and v is not None}
        if "role" in updates:
            self._check_role(updates["role"])
        if password:
            updates["password"] = self._hash_password(password)
        if updates:
            set_clause = ", ".join(f"{column} = ?" for column in updates)
            self.db.execute(
                f"UPDATE user SET {set_clause} WHERE username = ?",
                list(updates.values()) + [username],
            )
        return self.get_user(username)

    def delete_user(self, username: str) -> bool:
        cursor = self.db.execute("DELETE FROM user WHERE username = ?", (username,))
        return cursor.rowcount > 0

    def sign_in(self, username: str, password: str) -> Optional[User]:
        """Return the user when the password matches, otherwise None."""
        row = self.db.fetch_one("SELECT * FROM user WHERE username = ?", (username,))
        if not row or not self._verify_password(password or "", row["password"]):
            logger.warning("Failed sign-in for %s", username)
            return None
        return User.from_row(row)

    # ------------------------- Authors ------------------------- #
    def create_author(self, first_name: str, last_name: str) -> Author:
        first_name, last_name = first_name.strip(), last_name.strip()
        if not first_name or not last_name:
            raise InvalidInputError("First name and last name are required.", entity="author")
        exists = self.db.fetch_one(
            "SELECT author_id FROM author WHERE first_name = ? AND last_name = ?",
            (first_name, last_name),
        )
        if exists:
            raise Duplicate("author", f"{first_name} {last_name}",
                            f'Author "{first_name} {last_name}" already exists.')
        cursor = self.db.execute(
            "INSERT INTO author (first_name, last_name) VALUES (?, ?)", (first_name, last_name)
        )
        return Author(cursor.lastrowid, first_name, last_name)

    def get_author(self, author_id: int) -> Optional[Author]:
        row = self.db.fetch_one("SELECT * FROM author WHERE author_id = ?", (author_id,))
        return Author.from_row(row) if row else None

    def list_authors(self) -> List[Author]:
        rows = self.db.fetch_all("SELECT * FROM author ORDER BY last_name, first_name")
        return [Author.from_row(row) for row in rows]

    def update_author(self, author_id: int, first_name: str, last_name: str) -> Author:
        if not self.get_author(author_id):
            raise NotFoundError("Author not found.", entity="author", key=author_id)
        try:
            self.db.execute(
                "UPDATE author SET first_name = ?, last_name = ? WHERE author_id = ?",
                (first_name.strip(), last_name.strip(), author_id),
            )
        except sqlite3.IntegrityError as e:
            raise Duplicate("author", f"{first_name} {last_name}") from e
        return self.get_author(author_id)

    def delete_author(self, author_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM author WHERE author_id = ?", (author_id,))
        return cursor.rowcount > 0

    # ------------------------- Genres ------------------------- #
    def create_genre(self, genre_type: str) -> Genre:
        genre_type = (genre_type or "").strip()
        if not genre_type:
            raise InvalidInputError("Genre type is required.", entity="genre")
        try:
            cursor = self.db.execute("INSERT INTO genre (type) VALUES (?)", (genre_type,))
        except sqlite3.IntegrityError as e:
            raise Duplicate("genre", genre_type, f'Genre "{genre_type}" already exists.') from e
        return Genre(cursor.lastrowid, genre_type)

    def get_genre(self, genre_id: int) -> Optional[Genre]:
        row = self.db.fetch_one("SELECT * FROM genre WHERE genre_id = ?", (genre_id,))
        return Genre.from_row(row) if row else None

    def list_genres(self) -> List[Genre]:
        return [Genre.from_row(row) for row in self.db.fetch_all("SELECT * FROM genre ORDER BY type")]

    def update_genre(self, genre_id: int, genre_type: str) -> Genre:
        if not self.get_genre(genre_id):
            raise NotFoundError("Genre not found.", entity="genre", key=genre_id)
        try:
            self.db.execute("UPDATE genre SET type = ? WHERE genre_id = ?", (genre_type.strip(), genre_id))
        except sqlite3.IntegrityError as e:
            raise Duplicate("genre", genre_type) from e
        return self.get_genre(genre_id)

    def delete_genre(self, genre_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM genre WHERE genre_id = ?", (genre_id,))
        return cursor.rowcount > 0

    def books_by_genre(self, genre_id: int) -> List[Book]:
        rows = self.db.fetch_all(
            _BOOK_SELECT
            + " WHERE b.book_id IN (SELECT book_id FROM bookgenres WHERE genre_id = ?) ORDER BY b.title",
            (genre_id,),
        )
        return [Book.from_dict(dict(row)) for row in rows]

    # ------------------------- Images ------------------------- #
    def create_image(self, image_type: str, data: bytes) -> Image:
        if not data:
            raise InvalidInputError("No image file uploaded", entity="image")
        cursor = self.db.execute(
            "INSERT INTO images (image_type, image_data) VALUES (?, ?)",
            (image_type, sqlite3.Binary(data)),
        )
        return Image(cursor.lastrowid, image_type, bytes(data))

    def get_image(self, image_id: int) -> Optional[Image]:
        row = self.db.fetch_one("SELECT * FROM images WHERE image_id = ?", (image_id,))
        return Image.from_row(row) if row else None

    def delete_image(self, image_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM images WHERE image_id = ?", (image_id,))
        return cursor.rowcount > 0

    # ------------------------- Books ------------------------- #
    def create_book(self, title: str, isbn: str, *, quantity: int = 1,
                    publisher: Optional[str] = None, published_year: Optional[int] = None,
                    status: Optional[str] = None, description: Optional[str] = None,
                    rate: Optional[float] = None, author_id: Optional[int] = None,
                    image_id: Optional[int] = None,
                    genre_ids: Optional[Iterable[int]] = None) -> Book:
        """Add a title to the catalog. Title and ISBN must both be unique."""
        title = (title or "").strip()
        if not title:
            raise InvalidInputError("Title is required.", entity="book")
        isbn = self._normalize_isbn(isbn)
        if not self._is_valid_isbn(isbn):
            raise InvalidInputError("Invalid ISBN format.", entity="book", key=isbn)
        if quantity is None or quantity < 0:
            raise InvalidInputError("Quantity must be zero or more.", entity="book", key=isbn)

        if self.db.fetch_one("SELECT book_id FROM book WHERE title = ?", (title,)):
            raise Duplicate("book", title, "A book with this title already exists.")
        if self.db.fetch_one("SELECT book_id FROM book WHERE isbn = ?", (isbn,)):
            raise Duplicate("book", isbn, "A book with this ISBN already exists.")
        self._check_references(author_id=author_id, image_id=image_id, genre_ids=genre_ids)

        with self.db.transaction():
            try:
                cursor = self.db.execute(
                    "INSERT INTO book (title, isbn, publisher, published_year, status, description, "
                    "quantity, rate, author_id, image_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (title, isbn, publisher, published_year, self._status_for(quantity, status),
                     description, quantity, rate, author_id, image_id),
                )
            except sqlite3.IntegrityError as e:
                raise Duplicate("book", isbn, f"Book with ISBN {isbn} already exists.") from e
            book_id = cursor.lastrowid
            self._link_genres(book_id, genre_ids or [])

        logger.info("Book %s (%s) added with %d copies", book_id, title, quantity)
        return self.get_book(book_id)

    def get_book(self, book_id: int) -> Optional[Book]:
        row = self.db.fetch_one(_BOOK_SELECT + " WHERE b.book_id = ?", (book_id,))
        return Book.from_dict(dict(row)) if row else None

    def require_book(self, book_id: int) -> Book:
        book = self.get_book(book_id)
        if book is None:
            raise BookNotFound(book_id)
        return book

    def list_books(self, *, only_available: bool = False) -> List[Book]:
        where = " WHERE b.quantity > 0" if only_available else ""
        rows = self.db.fetch_all(_BOOK_SELECT + where + " ORDER BY b.title")
        return [Book.from_dict(dict(row)) for row in rows]

    def search_books(self, term: str) -> List[Book]:
        """Match the term against title, publisher, year, author names and genres."""
        keyword = f"%{(term or '').strip()}%"
        rows = self.db.fetch_all(
            _BOOK_SELECT
            + """
            WHERE b.title LIKE ?
               OR b.publisher LIKE ?
               OR CAST(b.published_year AS TEXT) LIKE ?
               OR a.first_name LIKE ?
               OR a.last_name LIKE ?
               OR EXISTS (SELECT 1 FROM bookgenres bg JOIN genre g ON g.genre_id = bg.genre_id
                           WHERE bg.book_id = b.book_id AND g.type LIKE ?)
            ORDER BY b.title
            """,
            (keyword,) * 6,
        )
        return [Book.from_dict(dict(row)) for row in rows]

    def update_book(self, book_id: int, *, genre_ids: Optional[Iterable[int]] = None,
                    **fields: Any) -> Book:
        """Update any subset of a book's columns. Returns the refreshed book."""
        existing = self.require_book(book_id)
        updates = {k: v for k, v in fields.items() if k in _BOOK_COLUMNS and v is not None}
        if "isbn" in updates:
            updates["isbn"] = self._normalize_isbn(updates["isbn"])
            if not self._is_valid_isbn(updates["isbn"]):
                raise InvalidInputError("Invalid ISBN format.", entity="book", key=updates["isbn"])
        if "quantity" in updates and updates["quantity"] < 0:
            raise InvalidInputError("Quantity must be zero or more.", entity="book", key=book_id)
        if "quantity" in updates or "status" in updates:
            # a book with no copies on hand is always unavailable
            quantity = updates.get("quantity", existing.quantity)
            updates["status"] = self._status_for(quantity, updates.get("status", existing.status))
        self._check_references(author_id=updates.get("author_id"), image_id=updates.get("image_id"),
                               genre_ids=genre_ids)
        if not updates and genre_ids is None:
            raise InvalidInputError("Nothing to update.", entity="book", key=book_id)

        with self.db.transaction():
            if updates:
                set_clause = ", ".join(f"{column} = ?" for column in updates)
                try:
                    self.db.execute(
                        f"UPDATE book SET {set_clause} WHERE book_id = ?",
                        list(updates.values()) + [book_id],
                    )
                except sqlite3.IntegrityError as e:
                    raise Duplicate("book", updates.get("isbn") or updates.get("title")) from e
            if genre_ids is not None:
                self.db.execute("DELETE FROM bookgenres WHERE book_id = ?", (book_id,))
                self._link_genres(book_id, genre_ids)
        return self.get_book(book_id)

    def delete_book(self, book_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM book WHERE book_id = ?", (book_id,))
        if cursor.rowcount > 0:
            logger.info("Book %s deleted", book_id)
            return True
        return False

    def get_statistics(self) -> Dict[str, Any]:
        """Get library statistics."""
        row = self.db.fetch_one(
            """
            SELECT
                (SELECT COUNT(*) FROM book) AS total_books,
                (SELECT IFNULL(SUM(quantity), 0) FROM book) AS available_copies,
                (SELECT COUNT(*) FROM author) AS unique_authors,
                (SELECT COUNT(*) FROM user) AS total_users,
                (SELECT COUNT(*) FROM borrowing_transaction WHERE return_date IS NULL) AS open_loans,
                (SELECT COUNT(*) FROM fine WHERE fine_status = 'unpaid') AS unpaid_fines
            """
        )
        return dict(row)

    # ------------------------- Comments ------------------------- #
    def create_comment(self, book_id: int, username: str, rating: int,
                       description: Optional[str] = None) -> Comment:
        if not self.get_book(book_id):
            raise BookNotFound(book_id)
        if not self.user_exists(username):
            raise UserNotFound(username)
        self._check_rating(rating)
        now = self.clock()
        cursor = self.db.execute(
            "INSERT INTO comment (book_id, username, rating, comment_date, comment_description) "
            "VALUES (?, ?, ?, ?, ?)",
            (book_id, username, rating, to_db_timestamp(now), self._sanitize_text(description)),
        )
        return self.get_comment(cursor.lastrowid)

    def get_comment(self, comment_id: int) -> Optional[Comment]:
        row = self.db.fetch_one("SELECT * FROM comment WHERE comment_id = ?", (comment_id,))
        return Comment.from_row(row) if row else None

    def list_comments(self) -> List[Comment]:
        rows = self.db.fetch_all("SELECT * FROM comment ORDER BY comment_date DESC, comment_id DESC")
        return [Comment.from_row(row) for row in rows]

    def comments_for_book(self, book_id: int) -> List[Comment]:
        rows = self.db.fetch_all(
            "SELECT * FROM comment WHERE book_id = ? ORDER BY comment_date DESC, comment_id DESC",
            (book_id,),
        )
        return [Comment.from_row(row) for row in rows]

    def update_comment(self, comment_id: int, rating: int, description: Optional[str]) -> Comment:
        current = self.get_comment(comment_id)
        if current is None:
            raise NotFoundError("Comment not found.", entity="comment", key=comment_id)
        self._check_rating(rating)
        description = self._sanitize_text(description)
        if current.rating == rating and current.comment_description == description:
            raise ConflictError(
                "No changes made; Comment is already set to this value.",
                entity="comment", key=comment_id,
            )
        self.db.execute(
            "UPDATE comment SET comment_date = ?, comment_description = ?, rating = ? WHERE comment_id = ?",
            (to_db_timestamp(self.clock()), description, rating, comment_id),
        )
        return self.get_comment(comment_id)

    def delete_comment(self, comment_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM comment WHERE comment_id = ?", (comment_id,))
        return cursor.rowcount > 0

    # ------------------------- Utilities ------------------------- #
    def _check_references(self, *, author_id: Optional[int] = None, image_id: Optional[int] = None,
                          genre_ids: Optional[Iterable[int]] = None) -> None:
        if author_id is not None and not self.get_author(author_id):
            raise NotFoundError("Author not found.", entity="author", key=author_id)
        if image_id is not None and not self.db.fetch_one(
                "SELECT image_id FROM images WHERE image_id = ?", (image_id,)):
            raise NotFoundError("Image not found.", entity="image", key=image_id)
        for genre_id in genre_ids or []:
            if not self.get_genre(genre_id):
                raise NotFoundError("Genre not found.", entity="genre", key=genre_id)

    def _link_genres(self, book_id: int, genre_ids: Iterable[int]) -> None:
        for genre_id in set(genre_ids):
            self.db.execute(
                "INSERT OR IGNORE INTO bookgenres (book_id, genre_id) VALUES (?, ?)", (book_id, genre_id)
            )

    @staticmethod
    def _status_for(quantity: int, status: Optional[str]) -> str:
        if quantity == 0:
            return UNAVAILABLE
        return status or AVAILABLE

    @staticmethod
    def _check_role(role: str) -> None:
        if role not in (ROLE_ADMIN, ROLE_USER):
            raise InvalidInputError('Role must be either "administrator" or "user"', entity="user", key=role)

    @staticmethod
    def _check_rating(rating: int) -> None:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidInputError("Rating must be between 1 and 5.", entity="comment", key=rating)

    @staticmethod
    def _hash_password(password: str) -> str:
        salt = os.urandom(16)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ROUNDS)
        return f"{salt.hex()}${digest.hex()}"

    @staticmethod
    def _verify_password(password: str, stored: str) -> bool:
        try:
            salt_hex, digest_hex = stored.split("$", 1)
        except ValueError:
            return False
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), _PBKDF2_ROUNDS)
        return hmac.compare_digest(digest.hex(), digest_hex)

    @staticmethod
    def _sanitize_text(text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        # strip markup; comments are shown verbatim
        return re.sub(r"<[^>]*>", "", text).strip()

    @staticmethod
    def _normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        cleaned = "".join(ch for ch in raw if ch.isalnum())
        return cleaned.upper()

    @staticmethod
    def _is_valid_isbn(isbn: str) -> bool:
        """Lenient ISBN validation.
        - ISBN-10: 9 digits followed by a digit or 'X'
        - ISBN-13: 13 digits
        """
        s = isbn.replace('-', '').replace(' ', '').upper()
        if len(s) == 10:
            return s[:9].isdigit() and (s[9].isdigit() or s[9] == 'X')
        if len(s) == 13:
            return s.isdigit()
        return False
