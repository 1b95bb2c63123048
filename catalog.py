"""Book records and the copy-count rules that apply to a single book.

The catalog reads and writes through the store connection it is given; it
never opens transactions itself. ``Library`` wraps every mutation in
``Database.transaction()`` so the change and its snapshot go together.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from book import Book
from database import Database, now_iso
from errors import InvalidArgument, NotFound
from utils.validators import NumberValidator, TextValidator

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "author", "category", "copies_total")


class Catalog:
    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, book_id: int) -> Book:
        row = self.db.connection.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound("Book not found")
        return Book.from_dict(row)

    def list(self, search: Optional[str] = None) -> List[Book]:
        """All books, newest first, optionally filtered by a case-insensitive substring."""
        rows = self.db.connection.execute("SELECT * FROM books ORDER BY created_at DESC, id DESC").fetchall()
        books = [Book.from_dict(r) for r in rows]
        term = (search or "").strip().casefold()
        if not term:
            return books

        def matches(b: Book) -> bool:
            return (
                term in b.title.casefold()
                or term in b.author.casefold()
                or term in (b.category or "").casefold()
            )

        return [b for b in books if matches(b)]

    def create(self, title: Any, author: Any, category: Any = None, copies_total: Any = None) -> Book:
        title = TextValidator.require(title, "title")
        author = TextValidator.require(author, "author")
        category = TextValidator.optional(category)
        total = NumberValidator.whole_number(copies_total)
        if total is None or total <= 0:
            total = 1

        cursor = self.db.connection.execute(
            "INSERT INTO books (title, author, category, copies_total, copies_available, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (title, author, category, total, total, now_iso()),
        )
        return self.get(cursor.lastrowid)

    def update(self, book_id: int, fields: Dict[str, Any]) -> Book:
        """Apply a partial update.

        A change of ``copies_total`` by ``d`` moves ``copies_available`` by the
        same ``d`` and clamps it to ``[0, copies_total]``. Shrinking below the
        number of copies on loan therefore leaves availability at zero rather
        than rejecting the edit.
        """
        existing = self.get(book_id)
        updates = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        if not updates:
            raise InvalidArgument("No fields to update")

        title = TextValidator.require(updates["title"], "title") if "title" in updates else existing.title
        author = TextValidator.require(updates["author"], "author") if "author" in updates else existing.author
        category = TextValidator.optional(updates["category"]) if "category" in updates else existing.category

        new_total = existing.copies_total
        if "copies_total" in updates:
            new_total = NumberValidator.whole_number(updates["copies_total"])
            if new_total is None or new_total < 0:
                raise InvalidArgument("copies_total must be a non-negative whole number")

        delta = new_total - existing.copies_total
        available = min(new_total, max(0, existing.copies_available + delta))
        if delta and available != existing.copies_available + delta:
            logger.warning("Book %s resized to %d copies with %d on loan; availability clamped to %d",
                           book_id, new_total, existing.copies_on_loan, available)

        self.db.connection.execute(
            "UPDATE books SET title = ?, author = ?, category = ?, copies_total = ?, copies_available = ? "
            "WHERE id = ?",
            (title, author, category, new_total, available, book_id),
        )
        return self.get(book_id)

    def remove(self, book_id: int) -> None:
        cursor = self.db.connection.execute("DELETE FROM books WHERE id = ?", (book_id,))
        if cursor.rowcount == 0:
            raise NotFound("Book not found")

    def adjust_available(self, book_id: int, delta: int) -> Book:
        """Move ``copies_available`` by ``delta`` within ``[0, copies_total]``."""
        self.db.connection.execute(
            "UPDATE books SET copies_available = max(0, min(copies_total, copies_available + ?)) WHERE id = ?",
            (delta, book_id),
        )
        return self.get(book_id)
