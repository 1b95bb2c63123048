import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import settings
from database import now_iso
from errors import Conflict, InvalidArgument, LibraryError, NotFound, StorageFailure
from library import Library

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# Status codes for caller-facing errors; anything else is a server fault
ERROR_STATUS = {
    InvalidArgument: 400,
    NotFound: 404,
    Conflict: 409,
}


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    category: str | None = None
    copies_total: int
    copies_available: int
    created_at: str

# Request bodies take any JSON value; Library validates them and reports
# bad values as InvalidArgument (400). Only a body that is not a JSON object
# is rejected by FastAPI itself with 422.
class BookCreateModel(BaseModel):
    title: Any = None
    author: Any = None
    category: Any = None
    copies_total: Any = Field(default=None, description="Defaults to 1 when not a positive number")

class UpdateBookModel(BaseModel):
    title: Any = None
    author: Any = None
    category: Any = None
    copies_total: Any = None

class LoanModel(BaseModel):
    id: int
    book_id: int
    borrower_name: str
    borrower_email: str | None = None
    status: str
    loaned_at: str
    due_date: str | None = None
    returned_at: str | None = None
    book_title: str | None = None
    book_author: str | None = None

class BorrowModel(BaseModel):
    book_id: Any = None
    borrower_name: Any = None
    borrower_email: Any = None
    due_date: Any = Field(default=None, description="ISO-8601 date or datetime")


def get_library(request: Request) -> Library:
    return request.app.state.library


def create_app(data_file: Optional[str] = None) -> FastAPI:
    """Build the HTTP app. The library is opened at startup and closed at shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # A corrupt snapshot raises here and the server refuses to start
        app.state.library = Library(data_file)
        try:
            yield
        finally:
            app.state.library.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        for error_type, status in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                return JSONResponse(status_code=status, content={"detail": exc.message})
        if isinstance(exc, StorageFailure):
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.error("%s %s failed with unmapped error: %r", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Storage failure; the change was not saved."})

    @app.get("/api/health")
    def health():
        return {"status": "ok", "time": now_iso()}

    # --- Books ---
    @app.get("/api/books", response_model=List[BookModel])
    def list_books(search: Optional[str] = Query(default=None), library: Library = Depends(get_library)):
        return [BookModel(**b.to_dict()) for b in library.list_books(search)]

    @app.get("/api/books/{book_id}", response_model=BookModel)
    def get_book(book_id: str, library: Library = Depends(get_library)):
        return BookModel(**library.get_book(book_id).to_dict())

    @app.post("/api/books", response_model=BookModel, status_code=201)
    def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
        book = library.create_book(payload.title, payload.author, payload.category, payload.copies_total)
        return BookModel(**book.to_dict())

    @app.put("/api/books/{book_id}", response_model=BookModel)
    def update_book(book_id: str, update: UpdateBookModel, library: Library = Depends(get_library)):
        book = library.update_book(book_id, **update.model_dump(exclude_unset=True))
        return BookModel(**book.to_dict())

    @app.delete("/api/books/{book_id}", status_code=204)
    def delete_book(book_id: str, library: Library = Depends(get_library)):
        library.delete_book(book_id)
        return Response(status_code=204)

    # --- Loans ---
    @app.get("/api/loans", response_model=List[LoanModel])
    def list_loans(status: Optional[str] = Query(default=None), library: Library = Depends(get_library)):
        return [LoanModel(**l.to_dict()) for l in library.list_loans(status)]

    @app.post("/api/loans", response_model=LoanModel, status_code=201)
    def borrow(payload: BorrowModel, library: Library = Depends(get_library)):
        loan = library.borrow(payload.book_id, payload.borrower_name, payload.borrower_email, payload.due_date)
        return LoanModel(**loan.to_dict())

    @app.post("/api/loans/{loan_id}/return", response_model=LoanModel)
    def return_loan(loan_id: str, library: Library = Depends(get_library)):
        return LoanModel(**library.return_loan(loan_id).to_dict())

    return app


app = create_app()
