"""HTTP transport for the circulation service.

Every named procedure is one endpoint whose OpenAPI ``operation_id`` is the
procedure name (``loanBook``, ``returnBook``, ...). Failed results are turned
into HTTP errors whose body names the error kind so clients can branch on it.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from auth import Identity
from config import configure_logging, settings
from errors import ErrorKind, Result
from library import Library
from reporting import ReportRunner

configure_logging()

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_LOANED: 409,
    ErrorKind.NOT_ON_LOAN: 409,
    ErrorKind.QUOTA_EXCEEDED: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_BORROWER: 403,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INVALID: 422,
    ErrorKind.STORE_UNAVAILABLE: 503,
}

# Global library instance, created on first use
_library: Optional[Library] = None


def get_library() -> Library:
    global _library
    if _library is None:
        _library = Library()
    return _library


@asynccontextmanager
async def lifespan(app: FastAPI):
    runner = None
    if settings.enable_reports:
        lib = get_library()
        runner = ReportRunner(lambda: lib.build_report().unwrap())
        runner.start()
    try:
        yield
    finally:
        if runner:
            runner.stop(wait=False)


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _unwrap(result: Result):
    """Return the value of a successful result or raise the matching HTTP error."""
    if result.ok:
        return result.value
    headers = {"WWW-Authenticate": "Bearer"} if result.kind is ErrorKind.UNAUTHORIZED else None
    raise HTTPException(status_code=STATUS_BY_KIND[result.kind], detail=result.error.to_dict(), headers=headers)


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    lib: Library = Depends(get_library),
) -> Identity:
    """Dependency resolving the bearer token to the calling user."""
    credential = f"{credentials.scheme} {credentials.credentials}" if credentials else None
    return _unwrap(lib.guard.resolve(credential))


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author_id: int
    author_name: str | None = None
    on_loan: bool
    borrower_id: int | None = None
    loan_date: str | None = None
    created_at: str | None = None


class BookCreateModel(BaseModel):
    title: str
    author_id: int


class BookUpdateModel(BaseModel):
    title: str | None = None
    author_id: int | None = None


class AuthorModel(BaseModel):
    id: int
    name: str
    created_at: str | None = None


class AuthorCreateModel(BaseModel):
    name: str


class AuthorDetailModel(AuthorModel):
    books: List[BookModel] = []


class UserModel(BaseModel):
    id: int
    full_name: str
    email: str
    created_at: str | None = None
    loaned_books: List[int] = []


class UserCreateModel(BaseModel):
    full_name: str
    email: str
    password: str


class TokenRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoanResponse(BaseModel):
    success: bool
    book: BookModel


class ReturnResponse(BaseModel):
    book_id: int
    fine_payable: bool
    message: str
    days_on_loan: float


class OnLoanResponse(BaseModel):
    book_id: int
    on_loan: bool


class StatsModel(BaseModel):
    total_books: int
    unique_authors: int
    on_loan: int
    available: int


def _books_out(lib: Library, books) -> List[BookModel]:
    """Render books with their author's name attached."""
    names = {a.id: a.name for a in _unwrap(lib.list_authors())}
    return [BookModel(**b.to_dict(), author_name=names.get(b.author_id)) for b in books]


def _book_out(lib: Library, book) -> BookModel:
    return _books_out(lib, [book])[0]


# --- Health ---
@app.get("/health")
def health(lib: Library = Depends(get_library)):
    """Lightweight health check with a quick store round trip."""
    db_ok = True
    try:
        lib.store.ping()
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


@app.get("/stats", response_model=StatsModel)
def get_library_stats(lib: Library = Depends(get_library)):
    return StatsModel(**_unwrap(lib.get_statistics()))


# --- Authors & users ---
@app.post("/authors", response_model=AuthorModel, operation_id="createAuthor")
def create_author(payload: AuthorCreateModel, lib: Library = Depends(get_library),
                  identity: Identity = Depends(get_identity)):
    return AuthorModel(**_unwrap(lib.create_author(payload.name)).to_dict())


@app.get("/authors/{author_id}", response_model=AuthorDetailModel, operation_id="getAuthorById")
def get_author_by_id(author_id: int, lib: Library = Depends(get_library)):
    """An author together with the books they wrote."""
    author = _unwrap(lib.get_author(author_id))
    books = _unwrap(lib.books_by_author(author_id))
    return AuthorDetailModel(**author.to_dict(), books=_books_out(lib, books))


@app.post("/users", response_model=UserModel, operation_id="registerUser")
def register_user(payload: UserCreateModel, lib: Library = Depends(get_library)):
    user = _unwrap(lib.register_user(payload.full_name, payload.email, payload.password))
    return UserModel(**user.to_dict())


@app.post("/auth/token", response_model=TokenResponse, operation_id="login")
def login(payload: TokenRequest, lib: Library = Depends(get_library)):
    return TokenResponse(access_token=_unwrap(lib.issue_token(payload.email, payload.password)))


# --- Books ---
@app.post("/books", response_model=BookModel, operation_id="createBook")
def create_book(payload: BookCreateModel, lib: Library = Depends(get_library),
                identity: Identity = Depends(get_identity)):
    """Add a book to the catalog for an existing author."""
    return _book_out(lib, _unwrap(lib.create_book(payload.title, payload.author_id)))


@app.get("/books", response_model=List[BookModel], operation_id="getAllBooks")
def get_all_books(lib: Library = Depends(get_library), identity: Identity = Depends(get_identity)):
    return _books_out(lib, _unwrap(lib.list_books()))


@app.get("/books/available", response_model=List[BookModel], operation_id="getAllAvailableBooks")
def get_all_available_books(lib: Library = Depends(get_library), identity: Identity = Depends(get_identity)):
    return _books_out(lib, _unwrap(lib.list_available_books()))


@app.get("/books/{book_id}", response_model=BookModel, operation_id="getBookById")
def get_book_by_id(book_id: int, lib: Library = Depends(get_library)):
    return _book_out(lib, _unwrap(lib.get_book(book_id)))


@app.put("/books/{book_id}", response_model=BookModel, operation_id="updateBookById")
def update_book_by_id(book_id: int, update: BookUpdateModel, lib: Library = Depends(get_library)):
    """Change the title and/or author of a book."""
    book = _unwrap(lib.update_book(book_id, title=update.title, author_id=update.author_id))
    return _book_out(lib, book)


@app.delete("/books/{book_id}", operation_id="deleteBook")
def delete_book(book_id: int, lib: Library = Depends(get_library)):
    return {"success": _unwrap(lib.delete_book(book_id))}


@app.get("/books/{book_id}/on-loan", response_model=OnLoanResponse, operation_id="isOnLoan")
def is_on_loan(book_id: int, lib: Library = Depends(get_library)):
    return OnLoanResponse(book_id=book_id, on_loan=_unwrap(lib.is_on_loan(book_id)))


# --- Circulation ---
@app.post("/books/{book_id}/loan", response_model=LoanResponse, operation_id="loanBook")
def loan_book(book_id: int, lib: Library = Depends(get_library), identity: Identity = Depends(get_identity)):
    """Lend the book to the calling user."""
    book = _unwrap(lib.loan_book(book_id, identity.user_id))
    return LoanResponse(success=True, book=_book_out(lib, book))


@app.post("/books/{book_id}/return", response_model=ReturnResponse, operation_id="returnBook")
def return_book(book_id: int, lib: Library = Depends(get_library), identity: Identity = Depends(get_identity)):
    """Return a book held by the calling user and report whether a fine applies."""
    receipt = _unwrap(lib.return_book(book_id, identity.user_id))
    return ReturnResponse(**receipt.to_dict())


@app.get("/me/loans", response_model=List[BookModel], operation_id="getMyLoans")
def get_my_loans(lib: Library = Depends(get_library), identity: Identity = Depends(get_identity)):
    return _books_out(lib, _unwrap(lib.loans_for(identity.user_id)))
