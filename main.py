import logging
import os
import subprocess
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.markup import escape

from config import settings
from errors import LibraryError
from library import Library
from utils.ui_helpers import print_book, print_books, print_loan, print_loans, set_output_mode

APP_NAME = "Library CLI"

console = Console()

app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    data_file: Optional[str] = typer.Option(
        None,
        "--data-file",
        envvar="LIBRARY_DATA_FILE",
        help="Snapshot file holding the library",
    ),
):
    """Global CLI options (output mode, data file)."""
    logging.basicConfig(level=settings.log_level)
    set_output_mode(output or "plain")
    ctx.obj = {"data_file": data_file or settings.data_file}


@contextmanager
def _open_library(ctx: typer.Context) -> Iterator[Library]:
    """Open the library for one command; domain errors end the command with exit code 1."""
    try:
        lib = Library(ctx.obj["data_file"])
    except LibraryError as e:
        console.print(f"[bold red]Could not open library:[/] {escape(e.message)}")
        raise typer.Exit(code=1)
    try:
        yield lib
    except LibraryError as e:
        console.print(f"[bold red]Error:[/] {escape(e.message)}")
        raise typer.Exit(code=1)
    finally:
        lib.close()


@app.command("list")
def cli_list(ctx: typer.Context, search: Optional[str] = typer.Option(None, "--search", "-s", help="Filter by title, author or category")):
    """List books, newest first."""
    with _open_library(ctx) as lib:
        print_books(lib.list_books(search))


@app.command("add")
def cli_add(
    ctx: typer.Context,
    title: str,
    author: str,
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    copies: int = typer.Option(1, "--copies", "-n", help="Number of copies owned"),
):
    """Add a book to the inventory."""
    with _open_library(ctx) as lib:
        print_book(lib.create_book(title, author, category, copies), "Added")


@app.command("update")
def cli_update(
    ctx: typer.Context,
    book_id: int,
    title: Optional[str] = typer.Option(None, "--title"),
    author: Optional[str] = typer.Option(None, "--author"),
    category: Optional[str] = typer.Option(None, "--category"),
    copies: Optional[int] = typer.Option(None, "--copies", help="New total number of copies"),
):
    """Edit a book; changing --copies moves availability by the same amount."""
    fields = {"title": title, "author": author, "category": category, "copies_total": copies}
    with _open_library(ctx) as lib:
        book = lib.update_book(book_id, **{k: v for k, v in fields.items() if v is not None})
        print_book(book, "Updated")


@app.command("remove")
def cli_remove(ctx: typer.Context, book_id: int):
    """Delete a book that has no copies out on loan."""
    with _open_library(ctx) as lib:
        lib.delete_book(book_id)
        print(f"Book {book_id} has been removed.")


@app.command("loans")
def cli_loans(ctx: typer.Context, status: Optional[str] = typer.Option(None, "--status", help="borrowed | returned")):
    """List loans, most recent first."""
    with _open_library(ctx) as lib:
        print_loans(lib.list_loans(status))


@app.command("borrow")
def cli_borrow(
    ctx: typer.Context,
    book_id: int,
    borrower_name: str,
    email: Optional[str] = typer.Option(None, "--email"),
    due: Optional[str] = typer.Option(None, "--due", help="Due date, YYYY-MM-DD"),
):
    """Lend one copy of a book."""
    with _open_library(ctx) as lib:
        print_loan(lib.borrow(book_id, borrower_name, email, due), "Borrowed")


@app.command("return")
def cli_return(ctx: typer.Context, loan_id: int):
    """Return a borrowed copy."""
    with _open_library(ctx) as lib:
        print_loan(lib.return_loan(loan_id), "Returned")


@app.command("check")
def cli_check(ctx: typer.Context):
    """Compare copy counts with active loans."""
    with _open_library(ctx) as lib:
        problems = lib.verify_invariants()
    if not problems:
        print("Inventory is consistent.")
        return
    for problem in problems:
        print(problem)
    raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(ctx: typer.Context, reload: bool = typer.Option(False, "--reload")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    env = dict(os.environ, LIBRARY_DATA_FILE=ctx.obj["data_file"])
    try:
        subprocess.run(args, env=env, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not start uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
