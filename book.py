from __future__ import annotations


class Book:
    """Represents one title in the inventory and the counts of its copies."""

    def __init__(self, id: int, title: str, author: str, category: str | None = None,
                 copies_total: int = 1, copies_available: int | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.category = category
        self.copies_total = copies_total
        self.copies_available = copies_total if copies_available is None else copies_available
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.copies_available}/{self.copies_total} available)"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, title={self.title!r})"

    @property
    def copies_on_loan(self) -> int:
        return self.copies_total - self.copies_available

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "copies_total": self.copies_total,
            "copies_available": self.copies_available,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # Accepts sqlite3.Row as well as plain dicts
        data = dict(data)
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            category=data.get("category"),
            copies_total=data["copies_total"],
            copies_available=data["copies_available"],
            created_at=data.get("created_at"),
        )
