"""Row types for everything in the library except the book itself."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from database import TIMESTAMP_FORMAT

FINE_UNPAID = "unpaid"
FINE_PAID = "paid"

ROLE_ADMIN = "administrator"
ROLE_USER = "user"


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.strptime(str(value), TIMESTAMP_FORMAT)


@dataclass
class User:
    username: str
    first_name: str
    last_name: str
    email: str
    role: str = ROLE_USER
    phone_number: Optional[str] = None
    address: Optional[str] = None
    registration_date: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        return User(
            username=row["username"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            role=row["role"],
            phone_number=row["phone_number"],
            address=row["address"],
            registration_date=from_db_timestamp(row["registration_date"]),
        )

    def to_dict(self) -> dict:
        # The password hash never leaves the storage layer.
        return asdict(self)


@dataclass
class Author:
    author_id: int
    first_name: str
    last_name: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Author":
        return Author(row["author_id"], row["first_name"], row["last_name"])

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Genre:
    genre_id: int
    type: str

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Genre":
        return Genre(row["genre_id"], row["type"])

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Image:
    image_id: int
    image_type: str
    image_data: bytes = field(repr=False, default=b"")

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Image":
        return Image(row["image_id"], row["image_type"], bytes(row["image_data"]))


@dataclass
class Comment:
    comment_id: int
    book_id: int
    username: str
    rating: int
    comment_date: Optional[datetime]
    comment_description: Optional[str] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Comment":
        return Comment(
            comment_id=row["comment_id"],
            book_id=row["book_id"],
            username=row["username"],
            rating=row["rating"],
            comment_date=from_db_timestamp(row["comment_date"]),
            comment_description=row["comment_description"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Transaction:
    """A borrow event. ``return_date`` is None while the loan is open."""

    transaction_id: int
    username: str
    book_id: int
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    title: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.return_date is None

    def is_overdue(self, now: datetime) -> bool:
        return self.is_open and now > self.due_date

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Transaction":
        keys = row.keys()
        return Transaction(
            transaction_id=row["transaction_id"],
            username=row["username"],
            book_id=row["book_id"],
            issue_date=from_db_timestamp(row["issue_date"]),
            due_date=from_db_timestamp(row["due_date"]),
            return_date=from_db_timestamp(row["return_date"]),
            title=row["title"] if "title" in keys else None,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Notification:
    notification_id: int
    username: str
    book_id: Optional[int]
    reminder_date: datetime
    message: str
    fine_id: Optional[int] = None
    transaction_id: Optional[int] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Notification":
        return Notification(
            notification_id=row["notification_id"],
            username=row["username"],
            book_id=row["book_id"],
            reminder_date=from_db_timestamp(row["reminder_date"]),
            message=row["message"],
            fine_id=row["fine_id"],
            transaction_id=row["transaction_id"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Fine:
    fine_id: int
    username: str
    transaction_id: int
    fine_amount: int
    fine_status: str = FINE_UNPAID
    paid_date: Optional[datetime] = None
    borrowed_book: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.fine_status == FINE_PAID

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Fine":
        keys = row.keys()
        return Fine(
            fine_id=row["fine_id"],
            username=row["username"],
            transaction_id=row["transaction_id"],
            fine_amount=row["fine_amount"],
            fine_status=row["fine_status"],
            paid_date=from_db_timestamp(row["paid_date"]),
            borrowed_book=row["borrowed_book"] if "borrowed_book" in keys else None,
        )

    def to_dict(self) -> dict:
        return asdict(self)
