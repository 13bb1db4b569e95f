"""Error taxonomy shared by the catalog, the circulation core and the HTTP boundary.

Every business-rule violation is raised as one of four families:

- ``NotFoundError``     an entity id/key is absent
- ``ConflictError``     duplicate or already-in-state (already borrowed, already paid...)
- ``InvalidInputError`` missing or malformed input that slipped past request validation
- ``InternalError``     unexpected storage or logic failure

The reason-specific subclasses let callers pick a user-facing message or status code
by type instead of by inspecting the message text.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LibraryError(Exception):
    """Base class for all library errors."""

    status_code: int = 500
    reason: str = "internal"

    def __init__(
        self,
        message: str,
        *,
        entity: Optional[str] = None,
        key: Any = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.key = key
        if reason is not None:
            self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "entity": self.entity,
            "key": self.key,
            "reason": self.reason,
        }


class NotFoundError(LibraryError, LookupError):
    status_code = 404
    reason = "not_found"


class ConflictError(LibraryError, ValueError):
    status_code = 409
    reason = "conflict"


class InvalidInputError(LibraryError, ValueError):
    status_code = 400
    reason = "invalid_input"


class InternalError(LibraryError):
    status_code = 500
    reason = "internal"


# ------------------------- Not found ------------------------- #
class BookNotFound(NotFoundError):
    def __init__(self, book_id: Any) -> None:
        super().__init__(
            f'Book ID "{book_id}" does not exist.',
            entity="book", key=book_id, reason="book_not_found",
        )


class UserNotFound(NotFoundError):
    def __init__(self, username: Any) -> None:
        super().__init__(
            f'User "{username}" does not exist.',
            entity="user", key=username, reason="user_not_found",
        )


class TransactionNotFound(NotFoundError):
    def __init__(self, transaction_id: Any) -> None:
        super().__init__(
            f'Transaction ID "{transaction_id}" does not exist.',
            entity="borrowing_transaction", key=transaction_id, reason="transaction_not_found",
        )


class NoActiveBorrow(NotFoundError):
    def __init__(self, username: Any, book_id: Any) -> None:
        super().__init__(
            "No active borrowing record found for this user and book.",
            entity="borrowing_transaction", key=(username, book_id), reason="no_active_borrow",
        )


class FineNotFound(NotFoundError):
    def __init__(self, fine_id: Any) -> None:
        super().__init__(
            "Fine not found.", entity="fine", key=fine_id, reason="fine_not_found",
        )


# ------------------------- Conflicts ------------------------- #
class NoAvailableCopies(ConflictError):
    def __init__(self, book_id: Any) -> None:
        super().__init__(
            f'No available copies of "{book_id}" to borrow.',
            entity="book", key=book_id, reason="no_available_copies",
        )


class AlreadyBorrowed(ConflictError):
    def __init__(self, username: Any, book_id: Any) -> None:
        super().__init__(
            "Book is already borrowed by this user.",
            entity="borrowing_transaction", key=(username, book_id), reason="already_borrowed",
        )


class AlreadyCompleted(ConflictError):
    def __init__(self, transaction_id: Any) -> None:
        super().__init__(
            f'Transaction with ID "{transaction_id}" has already been completed (book returned).',
            entity="borrowing_transaction", key=transaction_id, reason="already_completed",
        )


class AlreadyPaid(ConflictError):
    def __init__(self, fine_id: Any) -> None:
        super().__init__(
            "Fine was already paid.", entity="fine", key=fine_id, reason="already_paid",
        )


class Duplicate(ConflictError):
    def __init__(self, entity: str, key: Any, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"{entity.capitalize()} {key!r} already exists.",
            entity=entity, key=key, reason="duplicate",
        )
