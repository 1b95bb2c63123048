from __future__ import annotations

from typing import List, Optional

from database import Database, now_iso
from errors import NotFound
from loan import Loan, LoanStatus

_SELECT_ENRICHED = """
    SELECT loans.*, books.title AS book_title, books.author AS book_author
    FROM loans LEFT JOIN books ON loans.book_id = books.id
"""


class LoanLedger:
    """Loan rows and the borrowed -> returned transition.

    Like the catalog, the ledger works on the store connection and leaves
    transactions to its caller.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, loan_id: int) -> Loan:
        row = self.db.connection.execute(_SELECT_ENRICHED + " WHERE loans.id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFound("Loan not found")
        return Loan.from_dict(row)

    def list(self, status: Optional[str] = None) -> List[Loan]:
        """Loans with their book's title and author, most recent first."""
        query = _SELECT_ENRICHED
        params: tuple = ()
        if status:
            query += " WHERE loans.status = ?"
            params = (status,)
        query += " ORDER BY loans.loaned_at DESC, loans.id DESC"
        return [Loan.from_dict(r) for r in self.db.connection.execute(query, params)]

    def insert(self, book_id: int, borrower_name: str, borrower_email: Optional[str] = None,
               due_date: Optional[str] = None) -> Loan:
        cursor = self.db.connection.execute(
            "INSERT INTO loans (book_id, borrower_name, borrower_email, status, loaned_at, due_date) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (book_id, borrower_name, borrower_email, LoanStatus.BORROWED.value, now_iso(), due_date),
        )
        return self.get(cursor.lastrowid)

    def mark_returned(self, loan_id: int) -> Loan:
        # the status guard keeps a second return from overwriting returned_at
        self.db.connection.execute(
            "UPDATE loans SET status = ?, returned_at = ? WHERE id = ? AND status = ?",
            (LoanStatus.RETURNED.value, now_iso(), loan_id, LoanStatus.BORROWED.value),
        )
        return self.get(loan_id)

    def count_active(self, book_id: int) -> int:
        row = self.db.connection.execute(
            "SELECT COUNT(1) AS count FROM loans WHERE book_id = ? AND status = ?",
            (book_id, LoanStatus.BORROWED.value),
        ).fetchone()
        return row["count"]

    def active_counts(self) -> dict:
        rows = self.db.connection.execute(
            "SELECT book_id, COUNT(1) AS count FROM loans WHERE status = ? GROUP BY book_id",
            (LoanStatus.BORROWED.value,),
        )
        return {r["book_id"]: r["count"] for r in rows}

    def delete_for_book(self, book_id: int) -> int:
        cursor = self.db.connection.execute("DELETE FROM loans WHERE book_id = ?", (book_id,))
        return cursor.rowcount
