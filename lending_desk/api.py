import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import reports
from .book import Book
from .borrow import LoanView
from .config import configure_logging, settings
from .errors import LibraryError, StorageError
from .library import Library
from .user import Role, User

logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("%s %s starting (%s store)", settings.app_name, settings.app_version, settings.store_backend)
    try:
        yield
    finally:
        library.close()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    expose_headers=["Content-Length"],
    max_age=600,
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Errors ---
# Every failure leaves the API as {"error": "..."}
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if isinstance(exc, StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())[1:])
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return JSONResponse(status_code=422, content={"error": "; ".join(problems) or "Invalid request"})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Dependency guarding admin mutations."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Models ---
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class BookModel(CamelModel):
    id: str
    title: str
    author: str
    category: str = ""
    isbn: str = ""
    quantity: int
    available: int
    publisher: str = ""
    year: int = 0
    description: str | None = None
    cover_url: str | None = None

class BookCreateModel(CamelModel):
    title: str
    author: str
    category: str = ""
    isbn: str = ""
    quantity: int = Field(default=1, ge=0)
    publisher: str = ""
    year: int = Field(default=0, ge=0)
    description: str | None = None
    cover_url: str | None = None

class BookUpdateModel(CamelModel):
    title: str | None = None
    author: str | None = None
    category: str | None = None
    isbn: str | None = None
    quantity: int | None = Field(default=None, ge=0)
    publisher: str | None = None
    year: int | None = Field(default=None, ge=0)
    description: str | None = None
    cover_url: str | None = None

class UserModel(CamelModel):
    id: str
    username: str
    role: Role
    email: str | None = None
    created_at: str

class UserCreateModel(CamelModel):
    username: str
    password: str
    role: Role = Role.STUDENT
    email: str | None = None

class UserUpdateModel(CamelModel):
    username: str | None = None
    password: str | None = None
    role: Role | None = None
    email: str | None = None

class LoginModel(CamelModel):
    username: str
    password: str

class BorrowCreateModel(CamelModel):
    book_id: str
    user_id: str

class ReturnModel(CamelModel):
    fine: float | None = Field(default=None, ge=0)

class BorrowModel(CamelModel):
    id: str
    book_id: str
    user_id: str
    borrow_date: date
    due_date: date
    return_date: date | None = None
    fine: float | None = None
    book: BookModel | None = None
    user: UserModel | None = None

class OverdueModel(BorrowModel):
    days_overdue: int
    accrued_fine: float

class PopularBookModel(CamelModel):
    book: BookModel
    borrow_count: int

class SettingsModel(CamelModel):
    low_stock_threshold: int = Field(ge=0)
    borrowing_period_days: int = Field(ge=1)
    fine_per_day: float = Field(ge=0)

class SettingsUpdateModel(CamelModel):
    low_stock_threshold: int | None = Field(default=None, ge=0)
    borrowing_period_days: int | None = Field(default=None, ge=1)
    fine_per_day: float | None = Field(default=None, ge=0)

class StatsModel(CamelModel):
    total_books: int
    available_books: int
    active_borrows: int
    overdue_count: int
    low_stock_count: int
    total_fines: float
    student_count: int


# --- Helper functions ---
def _book_model(book: Book) -> BookModel:
    return BookModel.model_validate(book.to_dict())

def _user_model(user: User) -> UserModel:
    return UserModel.model_validate(user.to_public_dict())

def _borrow_model(loan: LoanView) -> BorrowModel:
    return BorrowModel.model_validate(loan.to_dict())

def _settings_model() -> SettingsModel:
    return SettingsModel.model_validate(library.get_settings().to_dict())


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check: store reachability and catalog size."""
    store_ok = True
    total_titles = 0
    try:
        total_titles = len(library.store.keys("book:"))
    except StorageError:
        store_ok = False
    return {
        "status": "healthy" if store_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": settings.store_backend,
        "storeOk": store_ok,
        "totalTitles": total_titles,
    }


# --- Auth ---
@app.post("/auth/login", response_model=UserModel)
def login(payload: LoginModel):
    return _user_model(library.authenticate(payload.username, payload.password))


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    q: Optional[str] = Query(None, description="Search title, author or ISBN"),
    category: Optional[str] = Query(None, description="Exact category"),
):
    return [_book_model(b) for b in library.list_books(q=q, category=category)]

@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    return _book_model(library.get_book(book_id))

@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    book = Book(**payload.model_dump())
    return _book_model(library.add_book(book))

@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: str, update: BookUpdateModel):
    return _book_model(library.update_book(book_id, **update.model_dump(exclude_unset=True)))

@app.delete("/books/{book_id}", status_code=204, dependencies=[Depends(get_api_key)])
def delete_book(book_id: str):
    library.remove_book(book_id)
    return Response(status_code=204)


# --- Users ---
@app.get("/users", response_model=List[UserModel])
def get_users(role: Optional[Role] = Query(None)):
    return [_user_model(u) for u in library.list_users(role)]

@app.get("/users/{user_id}", response_model=UserModel)
def get_user(user_id: str):
    return _user_model(library.get_user(user_id))

@app.post("/users", response_model=UserModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_user(payload: UserCreateModel):
    return _user_model(library.add_user(payload.username, payload.password, payload.role, payload.email))

@app.post("/auth/signup", response_model=UserModel, status_code=201)
def signup(payload: LoginModel):
    """Self-service registration always creates a Student account."""
    return _user_model(library.add_user(payload.username, payload.password, Role.STUDENT))

@app.put("/users/{user_id}", response_model=UserModel, dependencies=[Depends(get_api_key)])
def update_user(user_id: str, update: UserUpdateModel):
    return _user_model(library.update_user(user_id, **update.model_dump(exclude_unset=True)))

@app.delete("/users/{user_id}", status_code=204, dependencies=[Depends(get_api_key)])
def delete_user(user_id: str):
    library.remove_user(user_id)
    return Response(status_code=204)


# --- Borrows ---
@app.get("/borrows", response_model=List[BorrowModel])
def get_borrows(
    active: bool = Query(False, description="Only loans not yet returned"),
    user_id: Optional[str] = Query(None, alias="userId"),
):
    return [_borrow_model(loan) for loan in library.list_borrows(active_only=active, user_id=user_id)]

@app.get("/borrows/{borrow_id}", response_model=BorrowModel)
def get_borrow(borrow_id: str):
    return _borrow_model(library.get_borrow(borrow_id))

@app.post("/borrows", response_model=BorrowModel, status_code=201)
def borrow_book(payload: BorrowCreateModel):
    record = library.borrow(payload.book_id, payload.user_id)
    return _borrow_model(library.get_borrow(record.id))

@app.put("/borrows/{borrow_id}/return", response_model=BorrowModel)
def return_book(borrow_id: str, payload: Optional[ReturnModel] = None):
    fine = payload.fine if payload is not None else None
    record = library.return_book(borrow_id, fine=fine)
    return _borrow_model(library.get_borrow(record.id))


# --- Settings ---
@app.get("/settings", response_model=SettingsModel)
def get_settings():
    return _settings_model()

@app.put("/settings", response_model=SettingsModel, dependencies=[Depends(get_api_key)])
def update_settings(update: SettingsUpdateModel):
    library.update_settings(**update.model_dump(exclude_unset=True))
    return _settings_model()


# --- Analytics ---
@app.get("/analytics/stats", response_model=StatsModel)
def get_stats():
    stats = library.dashboard_stats()
    return StatsModel(**{**stats, "total_fines": float(stats["total_fines"])})

@app.get("/analytics/overdue", response_model=List[OverdueModel])
def get_overdue():
    today = library.clock()
    lending = library.get_settings()
    return [
        OverdueModel.model_validate({
            **loan.to_dict(),
            "daysOverdue": loan.record.days_overdue(today),
            "accruedFine": float(library.outstanding_fine(loan.record, today, lending)),
        })
        for loan in library.list_overdue(today)
    ]

@app.get("/analytics/low-stock", response_model=List[BookModel])
def get_low_stock():
    return [_book_model(b) for b in library.list_low_stock()]

@app.get("/analytics/popular", response_model=List[PopularBookModel])
def get_popular(limit: int = Query(settings.default_popular_limit, ge=0, le=100)):
    return [PopularBookModel(book=_book_model(b), borrow_count=n) for b, n in library.rank_popular(limit)]


# --- Reports ---
@app.get("/reports/{report_type}.csv")
def export_report(report_type: str, limit: int = Query(settings.default_popular_limit, ge=0, le=100)):
    """CSV download of the overdue, low-stock or popular report."""
    if report_type == "overdue":
        today = library.clock()
        content = reports.overdue_csv(library.list_overdue(today), today)
    elif report_type == "low-stock":
        content = reports.low_stock_csv(library.list_low_stock())
    elif report_type == "popular":
        content = reports.popular_csv(library.rank_popular(limit))
    else:
        raise HTTPException(status_code=404, detail=f"Unknown report: {report_type}")
    filename = f"{report_type.replace('-', '_')}_books.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
