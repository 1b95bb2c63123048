import logging
import threading
from typing import Any, List, Optional

from book import Book
from catalog import Catalog
from config import settings
from database import Database
from errors import Conflict, NotFound
from ledger import LoanLedger
from loan import Loan, LoanStatus
from utils.validators import DateValidator, NumberValidator, TextValidator

logger = logging.getLogger(__name__)


class Library:
    """Keeps the book inventory and the loans consistent with each other.

    Every operation, reads included, runs under one lock, and every mutation
    runs inside a single store transaction that is snapshotted to disk before
    it is committed. A failed snapshot leaves both memory and disk as they
    were before the call.
    """

    def __init__(self, db_file: Optional[str] = None, database: Optional[Database] = None) -> None:
        if database is None:
            database = Database(db_file or settings.data_file, snapshot_timeout=settings.snapshot_timeout)
        self.db = database
        self._lock = threading.RLock()
        self.catalog = Catalog(self.db)
        self.ledger = LoanLedger(self.db)

        with self._lock:
            self.db.load()
        for problem in self.verify_invariants():
            logger.warning("Inconsistent inventory after load: %s", problem)

    def close(self) -> None:
        with self._lock:
            self.db.close()

    def __enter__(self) -> "Library":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @staticmethod
    def _id_or_not_found(value: Any, message: str) -> int:
        n = NumberValidator.whole_number(value)
        if n is None:
            raise NotFound(message)
        return n

    # ------------------------- Books ------------------------- #
    def list_books(self, search: Optional[str] = None) -> List[Book]:
        with self._lock:
            return self.catalog.list(search)

    def get_book(self, book_id: Any) -> Book:
        book_id = self._id_or_not_found(book_id, "Book not found")
        with self._lock:
            return self.catalog.get(book_id)

    def create_book(self, title: Any, author: Any, category: Any = None, copies_total: Any = None) -> Book:
        with self._lock, self.db.transaction():
            book = self.catalog.create(title, author, category, copies_total)
        logger.info("Book %s created: %s (%d copies)", book.id, book.title, book.copies_total)
        return book

    def update_book(self, book_id: Any, **fields: Any) -> Book:
        book_id = self._id_or_not_found(book_id, "Book not found")
        with self._lock, self.db.transaction():
            book = self.catalog.update(book_id, fields)
        logger.info("Book %s updated: %s", book.id, ", ".join(sorted(fields)))
        return book

    def delete_book(self, book_id: Any) -> None:
        """Delete a book and its returned loans; refused while a copy is out."""
        book_id = self._id_or_not_found(book_id, "Book not found")
        with self._lock, self.db.transaction():
            self.catalog.get(book_id)
            if self.ledger.count_active(book_id) > 0:
                raise Conflict("Cannot delete book with active loans")
            removed = self.ledger.delete_for_book(book_id)
            self.catalog.remove(book_id)
        logger.info("Book %s deleted along with %d returned loans", book_id, removed)

    # ------------------------- Loans ------------------------- #
    def list_loans(self, status: Optional[str] = None) -> List[Loan]:
        with self._lock:
            return self.ledger.list(status)

    def get_loan(self, loan_id: Any) -> Loan:
        loan_id = self._id_or_not_found(loan_id, "Loan not found")
        with self._lock:
            return self.ledger.get(loan_id)

    def borrow(self, book_id: Any, borrower_name: Any, borrower_email: Any = None, due_date: Any = None) -> Loan:
        """Lend one available copy of a book.

        The availability check and the decrement happen under the same lock
        and in the same transaction, so two borrowers can never both take
        the last copy.
        """
        book_id = NumberValidator.identifier(book_id, "book_id")
        name = TextValidator.require(borrower_name, "borrower_name")
        email = TextValidator.optional(borrower_email)
        due = DateValidator.optional_timestamp(due_date, "due_date")

        with self._lock, self.db.transaction():
            book = self.catalog.get(book_id)
            if book.copies_available <= 0:
                raise Conflict("No available copies to loan")
            loan = self.ledger.insert(book.id, name, email, due)
            self.catalog.adjust_available(book.id, -1)
        logger.info("Loan %s: book %s lent to %s", loan.id, book_id, name)
        return loan

    def return_loan(self, loan_id: Any) -> Loan:
        loan_id = self._id_or_not_found(loan_id, "Loan not found")
        with self._lock, self.db.transaction():
            loan = self.ledger.get(loan_id)
            if loan.status is not LoanStatus.BORROWED:
                raise Conflict("Loan already returned")
            try:
                self.catalog.get(loan.book_id)
            except NotFound:
                raise NotFound("Book missing for this loan") from None
            loan = self.ledger.mark_returned(loan_id)
            self.catalog.adjust_available(loan.book_id, 1)
        logger.info("Loan %s returned", loan_id)
        return loan

    # ------------------------- Consistency ------------------------- #
    def verify_invariants(self) -> List[str]:
        """Describe every book whose counts disagree with its loans."""
        problems: List[str] = []
        with self._lock:
            active = self.ledger.active_counts()
            books = self.catalog.list()
        known = set()
        for book in books:
            known.add(book.id)
            if not 0 <= book.copies_available <= book.copies_total:
                problems.append(
                    f"book {book.id}: {book.copies_available} available out of {book.copies_total}"
                )
            on_loan = active.get(book.id, 0)
            if book.copies_on_loan != on_loan:
                problems.append(
                    f"book {book.id}: {book.copies_on_loan} copies missing but {on_loan} active loans"
                )
        for book_id in sorted(set(active) - known):
            problems.append(f"{active[book_id]} active loans reference missing book {book_id}")
        return problems
