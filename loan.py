from __future__ import annotations

from enum import Enum


class LoanStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"


class Loan:
    """A single copy lent to a borrower.

    ``book_title`` and ``book_author`` are filled in when the loan is read
    together with its book; they are not stored on the loan row.
    """

    def __init__(self, id: int, book_id: int, borrower_name: str,
                 borrower_email: str | None = None, status: str = LoanStatus.BORROWED.value,
                 loaned_at: str | None = None, due_date: str | None = None,
                 returned_at: str | None = None, book_title: str | None = None,
                 book_author: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.borrower_name = borrower_name
        self.borrower_email = borrower_email
        self.status = LoanStatus(status)
        self.loaned_at = loaned_at
        self.due_date = due_date
        self.returned_at = returned_at
        self.book_title = book_title
        self.book_author = book_author

    def __str__(self) -> str:  # pragma: no cover
        return f"Loan #{self.id}: book {self.book_id} to {self.borrower_name} ({self.status.value})"

    @property
    def is_active(self) -> bool:
        return self.status is LoanStatus.BORROWED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "borrower_name": self.borrower_name,
            "borrower_email": self.borrower_email,
            "status": self.status.value,
            "loaned_at": self.loaned_at,
            "due_date": self.due_date,
            "returned_at": self.returned_at,
            "book_title": self.book_title,
            "book_author": self.book_author,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        data = dict(data)
        return Loan(
            id=data["id"],
            book_id=data["book_id"],
            borrower_name=data["borrower_name"],
            borrower_email=data.get("borrower_email"),
            status=data.get("status") or LoanStatus.BORROWED.value,
            loaned_at=data.get("loaned_at"),
            due_date=data.get("due_date"),
            returned_at=data.get("returned_at"),
            book_title=data.get("book_title"),
            book_author=data.get("book_author"),
        )
