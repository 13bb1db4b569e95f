import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, List, Optional
from urllib.parse import urlencode

from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, Request,
    Security, UploadFile,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation import Circulation
from config import Settings, settings as default_settings
from database import Database
from errors import (
    AlreadyBorrowed,
    AlreadyCompleted,
    AlreadyPaid,
    BookNotFound,
    FineNotFound,
    LibraryError,
    NoActiveBorrow,
    NoAvailableCopies,
    NotFoundError,
    TransactionNotFound,
    UserNotFound,
)
from library import Library
from notifier import Notifier, build_notifier, dispatch, make_event

logger = logging.getLogger(__name__)


# --- Models ---
class UserCreateModel(BaseModel):
    username: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=1)
    role: str = "user"
    phone_number: Optional[str] = None
    address: Optional[str] = None


class UserUpdateModel(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: Optional[str] = None
    role: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None


class UserModel(BaseModel):
    username: str
    first_name: str
    last_name: str
    email: str
    role: str
    phone_number: Optional[str] = None
    address: Optional[str] = None
    registration_date: Optional[datetime] = None


class SignInModel(BaseModel):
    username: str
    password: str


class AuthorInModel(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)


class AuthorModel(BaseModel):
    author_id: int
    first_name: str
    last_name: str


class GenreInModel(BaseModel):
    type: str = Field(min_length=1)


class GenreModel(BaseModel):
    genre_id: int
    type: str


class ImageModel(BaseModel):
    image_id: int
    image_type: str
    size: int


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=0)
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    status: Optional[str] = None
    description: Optional[str] = None
    rate: Optional[float] = Field(default=None, ge=0, le=5)
    author_id: Optional[int] = None
    image_id: Optional[int] = None
    genre_ids: List[int] = Field(default_factory=list)


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    isbn: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    status: Optional[str] = None
    description: Optional[str] = None
    rate: Optional[float] = Field(default=None, ge=0, le=5)
    author_id: Optional[int] = None
    image_id: Optional[int] = None
    genre_ids: Optional[List[int]] = None


class BookModel(BaseModel):
    book_id: int
    title: str
    isbn: str
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    status: str
    quantity: int
    description: Optional[str] = None
    rate: Optional[float] = None
    author_id: Optional[int] = None
    author_name: Optional[str] = None
    image_id: Optional[int] = None
    genres: List[str] = Field(default_factory=list)


class CommentCreateModel(BaseModel):
    book_id: int
    username: str = Field(min_length=1)
    rating: int = Field(ge=1, le=5)
    comment_description: Optional[str] = None


class CommentUpdateModel(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment_description: Optional[str] = None


class CommentModel(BaseModel):
    comment_id: int
    book_id: int
    username: str
    rating: int
    comment_date: Optional[datetime] = None
    comment_description: Optional[str] = None


class BorrowRequestModel(BaseModel):
    username: str = Field(min_length=1)
    book_id: int


class BookViewModel(BaseModel):
    """What the book details page shows after a borrow or return."""
    book: BookModel
    comments: List[CommentModel]
    username: str
    isBorrowed: bool


class TransactionModel(BaseModel):
    transaction_id: int
    username: str
    book_id: int
    title: Optional[str] = None
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None


class TransactionListModel(BaseModel):
    transactions: List[TransactionModel]
    notice: Optional[str] = None


class FineCreateModel(BaseModel):
    transaction_id: Optional[int] = None


class FineModel(BaseModel):
    fine_id: int
    username: str
    transaction_id: int
    borrowed_book: Optional[str] = None
    fine_amount: int
    fine_status: str
    paid_date: Optional[datetime] = None


class FineListModel(BaseModel):
    fines: List[FineModel]
    notice: Optional[str] = None


class NotificationCreateModel(BaseModel):
    transaction_id: Optional[int] = None


class NotificationModel(BaseModel):
    notification_id: int
    username: str
    book_id: Optional[int] = None
    transaction_id: Optional[int] = None
    fine_id: Optional[int] = None
    reminder_date: datetime
    message: str


class NotificationListModel(BaseModel):
    notifications: List[NotificationModel]
    notice: Optional[str] = None


class StatsModel(BaseModel):
    total_books: int
    available_copies: int
    unique_authors: int
    total_users: int
    open_loans: int
    unpaid_fines: int


# --- Dependencies ---
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_library(request: Request) -> Library:
    return request.app.state.library


def get_circulation(request: Request) -> Circulation:
    return request.app.state.circulation


class Signal:
    """Queues side-channel events to run after the response is sent."""

    def __init__(self, notifier: Notifier, settings: Settings, background_tasks: BackgroundTasks) -> None:
        self.notifier = notifier
        self.settings = settings
        self.background_tasks = background_tasks

    def __call__(self, title: str, message: str) -> None:
        self.background_tasks.add_task(dispatch, self.notifier, make_event(self.settings, title, message))


def get_signal(request: Request, background_tasks: BackgroundTasks) -> Signal:
    return Signal(request.app.state.notifier, request.app.state.settings, background_tasks)


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)):
    """Dependency that checks the administrative API key."""
    if api_key and api_key == request.app.state.settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Helpers ---
def error_response(exc: LibraryError, status_code: Optional[int] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code or exc.status_code, content={"message": exc.message})


def redirect_to(path: str, notice: Optional[str] = None) -> RedirectResponse:
    url = f"{path}?{urlencode({'notice': notice})}" if notice else path
    return RedirectResponse(url=url, status_code=303)


def _book_view(library: Library, circulation: Circulation, book_id: int, username: str) -> BookViewModel:
    book = library.require_book(book_id)
    return BookViewModel(
        book=BookModel(**book.to_dict()),
        comments=[CommentModel(**c.to_dict()) for c in library.comments_for_book(book_id)],
        username=username,
        isBorrowed=circulation.transactions.is_borrowed(username, book_id),
    )


# --- Books & borrowing ---
books_router = APIRouter(prefix="/api/books", tags=["books"])


@books_router.get("", response_model=List[BookModel])
def list_books(available: bool = Query(False, description="Only titles with copies on the shelf"),
               library: Library = Depends(get_library)):
    return [BookModel(**b.to_dict()) for b in library.list_books(only_available=available)]


@books_router.get("/searchView", response_model=List[BookModel])
def search_books(q: str = Query(..., min_length=1, description="Search term"),
                 library: Library = Depends(get_library)):
    books = library.search_books(q)
    if not books:
        raise HTTPException(status_code=404, detail="Books not found")
    return [BookModel(**b.to_dict()) for b in books]


@books_router.post("/borrowBook", response_model=BookViewModel)
def borrow_book(payload: BorrowRequestModel, library: Library = Depends(get_library),
                circulation: Circulation = Depends(get_circulation),
                signal: Signal = Depends(get_signal)):
    try:
        circulation.borrow_book(payload.username, payload.book_id)
    except BookNotFound as e:
        signal("BORROWING", e.message)
        return error_response(e, 409)
    except UserNotFound as e:
        signal("BORROWING", e.message)
        return error_response(e, 404)
    except AlreadyBorrowed as e:
        signal("BORROWING", "Book is already borrowed by this user")
        return error_response(e, 400)
    except NoAvailableCopies as e:
        signal("BORROWING", e.message)
        return error_response(e, 409)

    signal("BORROWING", "Book was borrowed successfully")
    return _book_view(library, circulation, payload.book_id, payload.username)


@books_router.post("/returnBook", response_model=BookViewModel)
def return_book(payload: BorrowRequestModel, library: Library = Depends(get_library),
                circulation: Circulation = Depends(get_circulation),
                signal: Signal = Depends(get_signal)):
    try:
        circulation.return_book(payload.username, payload.book_id)
    except NoActiveBorrow as e:
        return error_response(e, 400)

    signal("RETURNING", "Book was returned successfully")
    return _book_view(library, circulation, payload.book_id, payload.username)


@books_router.post("/create-book", response_model=BookModel, status_code=201,
                   dependencies=[Depends(get_api_key)])
def create_book(payload: BookCreateModel, library: Library = Depends(get_library),
                signal: Signal = Depends(get_signal)):
    book = library.create_book(
        payload.title,
        payload.isbn,
        quantity=payload.quantity,
        publisher=payload.publisher,
        published_year=payload.published_year,
        status=payload.status,
        description=payload.description,
        rate=payload.rate,
        author_id=payload.author_id,
        image_id=payload.image_id,
        genre_ids=payload.genre_ids,
    )
    signal("Book Management", "Book created successfully")
    return BookModel(**book.to_dict())


@books_router.get("/delete/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int, library: Library = Depends(get_library),
                signal: Signal = Depends(get_signal)):
    if not library.delete_book(book_id):
        raise HTTPException(status_code=400, detail="Book not found.")
    signal("Book Management", "Book deleted successfully")
    return redirect_to("/api/books")


@books_router.get("/{book_id}", response_model=BookModel)
def get_book(book_id: int, library: Library = Depends(get_library)):
    return BookModel(**library.require_book(book_id).to_dict())


@books_router.get("/{book_id}/isBorrowed", response_model=BookViewModel)
def check_if_borrowed(book_id: int, username: str = Query(..., min_length=1),
                      library: Library = Depends(get_library),
                      circulation: Circulation = Depends(get_circulation)):
    return _book_view(library, circulation, book_id, username)


@books_router.put("/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: int, payload: BookUpdateModel, library: Library = Depends(get_library)):
    fields = payload.model_dump(exclude_unset=True)
    genre_ids = fields.pop("genre_ids", None)
    book = library.update_book(book_id, genre_ids=genre_ids, **fields)
    return BookModel(**book.to_dict())


# --- Transactions ---
transactions_router = APIRouter(prefix="/api/transactions", tags=["transactions"])
TRANSACTIONS_URL = "/api/transactions"


@transactions_router.get("", response_model=TransactionListModel)
def list_transactions(notice: Optional[str] = None, circulation: Circulation = Depends(get_circulation)):
    return TransactionListModel(
        transactions=[TransactionModel(**t.to_dict()) for t in circulation.transactions.list_transactions()],
        notice=notice,
    )


@transactions_router.get("/byUsernameTransaction/{username}", response_model=List[TransactionModel])
def transactions_by_username(username: str, circulation: Circulation = Depends(get_circulation)):
    return [TransactionModel(**t.to_dict()) for t in circulation.transactions.open_transactions_for(username)]


@transactions_router.post("/create-transaction", dependencies=[Depends(get_api_key)])
def create_transaction(payload: BorrowRequestModel, circulation: Circulation = Depends(get_circulation),
                       signal: Signal = Depends(get_signal)):
    try:
        circulation.borrow_book(payload.username, payload.book_id)
    except (BookNotFound, UserNotFound, NoAvailableCopies, AlreadyBorrowed) as e:
        logger.warning("Transaction not created: %s", e.message)
        signal("Transaction Management", e.message)
        return redirect_to(TRANSACTIONS_URL, e.message)

    signal("Transaction Management", "Transaction created successfully")
    return redirect_to(TRANSACTIONS_URL)


@transactions_router.post("/update/{transaction_id}", dependencies=[Depends(get_api_key)])
def update_transaction(transaction_id: int, circulation: Circulation = Depends(get_circulation),
                       signal: Signal = Depends(get_signal)):
    try:
        circulation.force_return(transaction_id)
    except TransactionNotFound:
        signal("Transaction Management", "Transaction not found, unable to update transaction.")
        return JSONResponse(status_code=404, content={"message": "Transaction not found"})
    except AlreadyCompleted:
        message = "Book already returned, unable to update transaction."
        signal("Transaction Management", message)
        return redirect_to(TRANSACTIONS_URL, message)

    signal("Transaction Management", "Transaction successfully updated!")
    return redirect_to(TRANSACTIONS_URL)


@transactions_router.get("/delete/{transaction_id}", dependencies=[Depends(get_api_key)])
def delete_transaction(transaction_id: int, circulation: Circulation = Depends(get_circulation),
                       signal: Signal = Depends(get_signal)):
    if circulation.transactions.delete_transaction(transaction_id):
        signal("Transaction Management", "Transaction deleted successfully")
    else:
        logger.warning("Delete requested for unknown transaction %s", transaction_id)
    return redirect_to(TRANSACTIONS_URL)


@transactions_router.get("/{transaction_id}", response_model=TransactionModel)
def get_transaction(transaction_id: int, circulation: Circulation = Depends(get_circulation)):
    transaction = circulation.transactions.get_transaction(transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return TransactionModel(**transaction.to_dict())


# --- Fines ---
fines_router = APIRouter(prefix="/api/fines", tags=["fines"])
FINES_URL = "/api/fines"


@fines_router.get("", response_model=FineListModel)
def list_fines(notice: Optional[str] = None, circulation: Circulation = Depends(get_circulation)):
    return FineListModel(fines=[FineModel(**f.to_dict()) for f in circulation.issuer.list_fines()], notice=notice)


@fines_router.post("/create-fine", dependencies=[Depends(get_api_key)])
def create_fine(payload: FineCreateModel, circulation: Circulation = Depends(get_circulation),
                signal: Signal = Depends(get_signal)):
    if payload.transaction_id is None:
        return JSONResponse(status_code=400, content={"message": "TransactionID is required"})
    try:
        circulation.issuer.create_fine(payload.transaction_id)
    except TransactionNotFound as e:
        return error_response(e, 400)

    signal("Fine Management", "Fine created successfully")
    return redirect_to(FINES_URL)


@fines_router.post("/update/{fine_id}", dependencies=[Depends(get_api_key)])
def pay_fine(fine_id: int, circulation: Circulation = Depends(get_circulation),
             signal: Signal = Depends(get_signal)):
    try:
        circulation.issuer.pay_fine(fine_id)
    except FineNotFound:
        return JSONResponse(status_code=409, content={"message": "Fine not found."})
    except AlreadyPaid as e:
        signal("Fine Management", e.message)
        return redirect_to(FINES_URL, e.message)

    signal("Fine Management", "Fine paid successfully")
    return redirect_to(FINES_URL)


@fines_router.get("/delete/{fine_id}", dependencies=[Depends(get_api_key)])
def delete_fine(fine_id: int, circulation: Circulation = Depends(get_circulation),
                signal: Signal = Depends(get_signal)):
    if circulation.issuer.delete_fine(fine_id):
        signal("Fine Management", "Fine deleted successfully")
    return redirect_to(FINES_URL)


@fines_router.get("/{fine_id}", response_model=FineModel)
def get_fine(fine_id: int, circulation: Circulation = Depends(get_circulation)):
    fine = circulation.issuer.get_fine(fine_id)
    if fine is None:
        raise HTTPException(status_code=404, detail="Fine not found")
    return FineModel(**fine.to_dict())


# --- Notifications ---
notifications_router = APIRouter(prefix="/api/notifications", tags=["notifications"])
NOTIFICATIONS_URL = "/api/notifications"


@notifications_router.get("", response_model=NotificationListModel)
def list_notifications(notice: Optional[str] = None, circulation: Circulation = Depends(get_circulation)):
    return NotificationListModel(
        notifications=[NotificationModel(**n.to_dict()) for n in circulation.issuer.list_notifications()],
        notice=notice,
    )


@notifications_router.get("/byUser/{username}", response_model=List[NotificationModel])
def notifications_by_user(username: str, circulation: Circulation = Depends(get_circulation)):
    return [NotificationModel(**n.to_dict()) for n in circulation.issuer.notifications_for(username)]


@notifications_router.post("/create-notification", dependencies=[Depends(get_api_key)])
def create_notification(payload: NotificationCreateModel, circulation: Circulation = Depends(get_circulation),
                        signal: Signal = Depends(get_signal)):
    if payload.transaction_id is None:
        return JSONResponse(status_code=400, content={"message": "TransactionID is required"})
    try:
        circulation.issuer.issue_reminder(payload.transaction_id)
    except TransactionNotFound as e:
        signal("Notification Management", e.message)
        return redirect_to(NOTIFICATIONS_URL, e.message)

    signal("Notification Management", "Notification created successfully")
    return redirect_to(NOTIFICATIONS_URL)


@notifications_router.get("/delete/{notification_id}", dependencies=[Depends(get_api_key)])
def delete_notification(notification_id: int, circulation: Circulation = Depends(get_circulation),
                        signal: Signal = Depends(get_signal)):
    if circulation.issuer.delete_notification(notification_id):
        signal("Notification Management", "Notification deleted successfully")
    return redirect_to(NOTIFICATIONS_URL)


@notifications_router.get("/{notification_id}", response_model=NotificationModel)
def get_notification(notification_id: int, circulation: Circulation = Depends(get_circulation)):
    notification = circulation.issuer.get_notification(notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return NotificationModel(**notification.to_dict())


# --- Users ---
users_router = APIRouter(prefix="/api/users", tags=["users"])


@users_router.get("", response_model=List[UserModel])
def list_users(library: Library = Depends(get_library)):
    return [UserModel(**u.to_dict()) for u in library.list_users()]


@users_router.post("", response_model=UserModel, status_code=201)
def create_user(payload: UserCreateModel, library: Library = Depends(get_library)):
    user = library.create_user(
        payload.username, payload.first_name, payload.last_name, payload.email, payload.password,
        role=payload.role, phone_number=payload.phone_number, address=payload.address,
    )
    return UserModel(**user.to_dict())


@users_router.post("/signIn", response_model=UserModel)
def sign_in(payload: SignInModel, library: Library = Depends(get_library)):
    user = library.sign_in(payload.username, payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return UserModel(**user.to_dict())


@users_router.get("/delete/{username}", dependencies=[Depends(get_api_key)])
def delete_user(username: str, library: Library = Depends(get_library)):
    library.delete_user(username)
    return redirect_to("/api/users")


@users_router.get("/{username}", response_model=UserModel)
def get_user(username: str, library: Library = Depends(get_library)):
    user = library.get_user(username)
    if user is None:
        raise UserNotFound(username)
    return UserModel(**user.to_dict())


@users_router.put("/{username}", response_model=UserModel, dependencies=[Depends(get_api_key)])
def update_user(username: str, payload: UserUpdateModel, library: Library = Depends(get_library)):
    user = library.update_user(username, **payload.model_dump(exclude_unset=True))
    return UserModel(**user.to_dict())


# --- Authors ---
authors_router = APIRouter(prefix="/api/authors", tags=["authors"])


@authors_router.get("", response_model=List[AuthorModel])
def list_authors(library: Library = Depends(get_library)):
    return [AuthorModel(**a.to_dict()) for a in library.list_authors()]


@authors_router.post("", response_model=AuthorModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_author(payload: AuthorInModel, library: Library = Depends(get_library)):
    return AuthorModel(**library.create_author(payload.first_name, payload.last_name).to_dict())


@authors_router.get("/delete/{author_id}", dependencies=[Depends(get_api_key)])
def delete_author(author_id: int, library: Library = Depends(get_library)):
    library.delete_author(author_id)
    return redirect_to("/api/authors")


@authors_router.get("/{author_id}", response_model=AuthorModel)
def get_author(author_id: int, library: Library = Depends(get_library)):
    author = library.get_author(author_id)
    if author is None:
        raise NotFoundError("Author not found.", entity="author", key=author_id)
    return AuthorModel(**author.to_dict())


@authors_router.put("/{author_id}", response_model=AuthorModel, dependencies=[Depends(get_api_key)])
def update_author(author_id: int, payload: AuthorInModel, library: Library = Depends(get_library)):
    return AuthorModel(**library.update_author(author_id, payload.first_name, payload.last_name).to_dict())


# --- Genres ---
genres_router = APIRouter(prefix="/api/genres", tags=["genres"])


@genres_router.get("", response_model=List[GenreModel])
def list_genres(library: Library = Depends(get_library)):
    return [GenreModel(**g.to_dict()) for g in library.list_genres()]


@genres_router.post("", response_model=GenreModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_genre(payload: GenreInModel, library: Library = Depends(get_library)):
    return GenreModel(**library.create_genre(payload.type).to_dict())


@genres_router.get("/delete/{genre_id}", dependencies=[Depends(get_api_key)])
def delete_genre(genre_id: int, library: Library = Depends(get_library)):
    library.delete_genre(genre_id)
    return redirect_to("/api/genres")


@genres_router.get("/{genre_id}", response_model=GenreModel)
def get_genre(genre_id: int, library: Library = Depends(get_library)):
    genre = library.get_genre(genre_id)
    if genre is None:
        raise NotFoundError("Genre not found.", entity="genre", key=genre_id)
    return GenreModel(**genre.to_dict())


@genres_router.get("/{genre_id}/books", response_model=List[BookModel])
def books_by_genre(genre_id: int, library: Library = Depends(get_library)):
    return [BookModel(**b.to_dict()) for b in library.books_by_genre(genre_id)]


@genres_router.put("/{genre_id}", response_model=GenreModel, dependencies=[Depends(get_api_key)])
def update_genre(genre_id: int, payload: GenreInModel, library: Library = Depends(get_library)):
    return GenreModel(**library.update_genre(genre_id, payload.type).to_dict())


# --- Comments ---
comments_router = APIRouter(prefix="/api/comments", tags=["comments"])


@comments_router.get("", response_model=List[CommentModel])
def list_comments(library: Library = Depends(get_library)):
    return [CommentModel(**c.to_dict()) for c in library.list_comments()]


@comments_router.get("/byBook/{book_id}", response_model=List[CommentModel])
def comments_by_book(book_id: int, library: Library = Depends(get_library)):
    return [CommentModel(**c.to_dict()) for c in library.comments_for_book(book_id)]


@comments_router.post("", response_model=CommentModel, status_code=201)
def create_comment(payload: CommentCreateModel, library: Library = Depends(get_library)):
    comment = library.create_comment(
        payload.book_id, payload.username, payload.rating, payload.comment_description
    )
    return CommentModel(**comment.to_dict())


@comments_router.get("/delete/{comment_id}", dependencies=[Depends(get_api_key)])
def delete_comment(comment_id: int, library: Library = Depends(get_library)):
    library.delete_comment(comment_id)
    return redirect_to("/api/comments")


@comments_router.get("/{comment_id}", response_model=CommentModel)
def get_comment(comment_id: int, library: Library = Depends(get_library)):
    comment = library.get_comment(comment_id)
    if comment is None:
        raise NotFoundError("Comment not found.", entity="comment", key=comment_id)
    return CommentModel(**comment.to_dict())


@comments_router.put("/{comment_id}", response_model=CommentModel)
def update_comment(comment_id: int, payload: CommentUpdateModel, library: Library = Depends(get_library)):
    comment = library.update_comment(comment_id, payload.rating, payload.comment_description)
    return CommentModel(**comment.to_dict())


# --- Images ---
images_router = APIRouter(prefix="/api/images", tags=["images"])


@images_router.post("", response_model=ImageModel, status_code=201, dependencies=[Depends(get_api_key)])
def upload_image(image_data: UploadFile = File(...), library: Library = Depends(get_library),
                 settings: Settings = Depends(get_settings)):
    if image_data.content_type not in settings.allowed_image_types:
        raise HTTPException(status_code=400, detail=f"Unsupported image type: {image_data.content_type}")
    content = image_data.file.read()
    if len(content) > settings.max_upload_size:
        raise HTTPException(status_code=413, detail="Image is too large")
    image = library.create_image(image_data.content_type, content)
    return ImageModel(image_id=image.image_id, image_type=image.image_type, size=len(content))


@images_router.get("/delete/{image_id}", dependencies=[Depends(get_api_key)])
def delete_image(image_id: int, library: Library = Depends(get_library)):
    library.delete_image(image_id)
    return Response(status_code=204)


@images_router.get("/{image_id}")
def get_image(image_id: int, library: Library = Depends(get_library)):
    image = library.get_image(image_id)
    if image is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return Response(
        content=image.image_data,
        media_type=image.image_type,
        headers={"Cache-Control": "public, max-age=86400"},
    )


# --- Application ---
def create_app(app_settings: Optional[Settings] = None, *, notifier: Optional[Notifier] = None,
               clock: Callable[[], datetime] = datetime.now) -> FastAPI:
    """Build the application. The database is opened and closed by the lifespan."""
    app_settings = app_settings or default_settings
    logging.basicConfig(level=app_settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = Database(app_settings.database_file).open()
        app.state.db = db
        app.state.library = Library(db, clock=clock)
        app.state.circulation = Circulation.from_settings(db, app_settings, clock=clock)
        try:
            yield
        finally:
            db.close()

    app = FastAPI(title=app_settings.app_name, version=app_settings.app_version, lifespan=lifespan)
    app.state.settings = app_settings
    app.state.notifier = notifier or build_notifier(app_settings)

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"errors": errors})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"message": "Internal server error"})

    @app.get("/health")
    def health(request: Request):
        """Lightweight health endpoint for container checks."""
        db: Database = request.app.state.db
        db_ok = db.ping()
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "db": db_ok,
            "total_books": request.app.state.library.get_statistics()["total_books"] if db_ok else None,
        }

    @app.get("/stats", response_model=StatsModel)
    def get_library_stats(library: Library = Depends(get_library)):
        """Basic statistics about the library."""
        return StatsModel(**library.get_statistics())

    for router in (
        books_router, transactions_router, fines_router, notifications_router,
        users_router, authors_router, genres_router, comments_router, images_router,
    ):
        app.include_router(router)

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE"], include_in_schema=False)
    def endpoint_not_found(path: str) -> Any:
        return JSONResponse(status_code=404, content={"message": "Endpoint not found"})

    return app


app = create_app()
