from __future__ import annotations

from typing import List, Optional

AVAILABLE = "available"
UNAVAILABLE = "unavailable"


class Book:
    """Represents a single title in the catalog together with its copy count."""

    def __init__(self, title: str, isbn: str, book_id: int | None = None,
                 publisher: str | None = None, published_year: int | None = None,
                 status: str = AVAILABLE, quantity: int = 0, description: str | None = None,
                 rate: float | None = None,
                 # Related rows
                 author_id: int | None = None, author_name: str | None = None,
                 image_id: int | None = None, genres: List[str] | None = None) -> None:
        self.book_id = book_id
        self.title = title.strip()
        self.isbn = isbn.strip()
        self.publisher = publisher
        self.published_year = published_year
        self.status = status
        self.quantity = quantity
        self.description = description
        self.rate = rate

        self.author_id = author_id
        self.author_name = author_name
        self.image_id = image_id
        self.genres = genres or []

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} (ISBN: {self.isbn}) x{self.quantity} [{self.status}]"

    @property
    def is_available(self) -> bool:
        return self.quantity > 0

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "published_year": self.published_year,
            "status": self.status,
            "quantity": self.quantity,
            "description": self.description,
            "rate": self.rate,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "image_id": self.image_id,
            "genres": self.genres,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # GROUP_CONCAT hands genres back as one comma separated string
        genres = data.get("genres")
        if isinstance(genres, str):
            genres = [g for g in genres.split(",") if g]

        author_name: Optional[str] = data.get("author_name")
        if author_name is None and (data.get("first_name") or data.get("last_name")):
            author_name = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()

        return Book(
            title=data["title"],
            isbn=data["isbn"],
            book_id=data.get("book_id"),
            publisher=data.get("publisher"),
            published_year=data.get("published_year"),
            status=data.get("status") or AVAILABLE,
            quantity=data.get("quantity") or 0,
            description=data.get("description"),
            rate=data.get("rate"),
            author_id=data.get("author_id"),
            author_name=author_name,
            image_id=data.get("image_id"),
            genres=genres,
        )
