import os
import json
from typing import List
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from book import Book
from loan import Loan

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def print_books(books: List[Book]) -> None:
    """Print books in the current output mode.
    - plain: '#id Title by Author [available/total]' lines, or 'No books in library.'
    - json: JSON array of book objects
    - rich: Rich table
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
        return

    if not books:
        print("No books in library.")
        return

    if mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="dim")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, b.category or "",
                          f"{b.copies_available}/{b.copies_total}")
        _console.print(table)
    else:
        for b in books:
            print(f"#{b.id} {b.title} by {b.author} [{b.copies_available}/{b.copies_total}]")

def print_book(book: Book, heading: str) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(book.to_dict(), ensure_ascii=False))
    elif mode == "rich":
        content = (f"[bold]Title:[/] {book.title}\n[bold]Author:[/] {book.author}\n"
                   f"[bold]Available:[/] {book.copies_available}/{book.copies_total}")
        _console.print(Panel.fit(content, title=f"{heading} #{book.id}", border_style="green"))
    else:
        print(f"{heading}: #{book.id} {book.title} by {book.author} [{book.copies_available}/{book.copies_total}]")

def print_loans(loans: List[Loan]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps([l.to_dict() for l in loans], ensure_ascii=False))
        return

    if not loans:
        print("No loans.")
        return

    if mode == "rich":
        table = Table(title="🔖 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Borrower", style="white")
        table.add_column("Status")
        table.add_column("Due", style="dim")
        for l in loans:
            table.add_row(str(l.id), l.book_title or f"#{l.book_id}", l.borrower_name,
                          l.status.value, l.due_date or "")
        _console.print(table)
    else:
        for l in loans:
            print(f"#{l.id} {l.book_title or l.book_id} -> {l.borrower_name} ({l.status.value})")

def print_loan(loan: Loan, heading: str) -> None:
    if get_output_mode() == "json":
        print(json.dumps(loan.to_dict(), ensure_ascii=False))
    else:
        print(f"{heading}: loan #{loan.id} {loan.book_title or loan.book_id} -> {loan.borrower_name} ({loan.status.value})")
