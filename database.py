"""In-memory relational store with whole-state JSON snapshots.

The live data sits in a private in-memory SQLite database. Every committed
mutation is preceded by a snapshot: the complete state (books, loans and id
sequences) is serialized to JSON and written over the durable file through a
temporary file and ``os.replace``. A failed or timed-out write rolls the
transaction back, so memory never gets ahead of disk.

At startup the durable file is loaded wholesale. A missing file means an
empty library; an unreadable or malformed one raises ``StorageFailure``
instead of silently starting from scratch. Rows written by an older version
of the schema get their missing columns filled in with defaults, and columns
this version does not know about are added to the table so they survive the
next snapshot.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from errors import StorageFailure

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

SCHEMA = """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        category TEXT,
        copies_total INTEGER NOT NULL DEFAULT 1 CHECK (copies_total >= 0),
        copies_available INTEGER NOT NULL DEFAULT 1
            CHECK (copies_available >= 0 AND copies_available <= copies_total),
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS loans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL,
        borrower_name TEXT NOT NULL,
        borrower_email TEXT,
        status TEXT NOT NULL DEFAULT 'borrowed' CHECK (status IN ('borrowed', 'returned')),
        loaned_at TEXT NOT NULL,
        due_date TEXT,
        returned_at TEXT,
        FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_loans_book_status ON loans(book_id, status);
    CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at);
    CREATE INDEX IF NOT EXISTS idx_loans_loaned_at ON loans(loaned_at);
"""

BOOK_COLUMNS = ("id", "title", "author", "category", "copies_total", "copies_available", "created_at")
LOAN_COLUMNS = ("id", "book_id", "borrower_name", "borrower_email", "status",
                "loaned_at", "due_date", "returned_at")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SCALARS = (str, int, float, bool, type(None))

class SnapshotTicket:
    """Cancellation flag for one snapshot write.

    The flag check and the final rename happen under the same lock as
    ``cancel()``, so exactly one of them wins: either the file is replaced
    and the caller must treat the snapshot as written, or the rename never
    happens.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self.landed = False

    def is_set(self) -> bool:
        with self._lock:
            return self._cancelled

    def cancel(self) -> bool:
        """Stop a pending rename. Returns False when the file was already replaced."""
        with self._lock:
            if self.landed:
                return False
            self._cancelled = True
            return True

    def publish(self, tmp_path: str, path: str) -> bool:
        """Move ``tmp_path`` over ``path`` unless the write was cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            os.replace(tmp_path, path)
            self.landed = True
            return True


SnapshotWriter = Callable[[str, str, SnapshotTicket], None]


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string; sorts chronologically as text."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class StoreState:
    """The full dataset as plain rows, i.e. the content of one snapshot."""

    books: List[Dict[str, Any]] = field(default_factory=list)
    loans: List[Dict[str, Any]] = field(default_factory=list)
    sequences: Dict[str, int] = field(default_factory=dict)
    version: int = SNAPSHOT_VERSION

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "books": self.books,
                "loans": self.loans,
                "sequences": self.sequences,
            },
            ensure_ascii=False,
            indent=2,
        )

    @staticmethod
    def from_json(text: str) -> "StoreState":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise StorageFailure(f"Snapshot is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise StorageFailure("Snapshot must be a JSON object.")

        version = data.get("version", SNAPSHOT_VERSION)
        if not isinstance(version, int) or version > SNAPSHOT_VERSION:
            raise StorageFailure(f"Unsupported snapshot version: {version!r}")

        books = data.get("books", [])
        loans = data.get("loans", [])
        sequences = data.get("sequences", {})
        if not isinstance(books, list) or not all(isinstance(b, dict) for b in books):
            raise StorageFailure("Snapshot 'books' must be a list of objects.")
        if not isinstance(loans, list) or not all(isinstance(l, dict) for l in loans):
            raise StorageFailure("Snapshot 'loans' must be a list of objects.")
        if not isinstance(sequences, dict) or not all(
            isinstance(v, int) and not isinstance(v, bool) for v in sequences.values()
        ):
            raise StorageFailure("Snapshot 'sequences' must map table names to integers.")
        return StoreState(books=books, loans=loans, sequences=sequences, version=version)


def read_state(path: str) -> StoreState:
    """Read and parse a snapshot file. Raises ``StorageFailure`` on any problem."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise StorageFailure(f"Could not read snapshot {path}: {e}") from e
    return StoreState.from_json(text)


def write_snapshot_file(path: str, text: str, ticket: SnapshotTicket) -> None:
    """Write ``text`` to ``path`` through a temporary file in the same directory.

    The rename is skipped when ``ticket`` was cancelled by then, which happens
    when the caller gave up waiting and rolled the change back.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".library-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        ticket.publish(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


class Database:
    """Owns the in-memory store and its durable snapshot file.

    ``path=None`` keeps everything in memory; snapshots are still serialized
    (so a non-serializable state fails the same way) but never written.
    The object is not thread-safe on its own; callers serialize access.
    """

    def __init__(self, path: Optional[str] = None, snapshot_timeout: float = 5.0,
                 writer: Optional[SnapshotWriter] = None) -> None:
        self.path = path
        self.snapshot_timeout = snapshot_timeout
        self.writer: SnapshotWriter = writer or write_snapshot_file
        self._conn: Optional[sqlite3.Connection] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------- Lifecycle ------------------------- #
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.executescript(SCHEMA)
        return conn

    def load(self) -> StoreState:
        """Rebuild the in-memory store from the durable file and return its state."""
        fresh = self.path is None or not os.path.exists(self.path)
        state = StoreState() if fresh else read_state(self.path)

        if self._conn is not None:
            self._conn.close()
        self._conn = self._connect()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot")

        try:
            self._apply_state(state)
        except StorageFailure:
            logger.error("Refusing to start from snapshot %s", self.path)
            self.close()
            raise

        if fresh and self.path is not None:
            logger.info("No snapshot at %s, starting with an empty library", self.path)
            self.snapshot()
        else:
            logger.info("Loaded %d books and %d loans from %s",
                        len(state.books), len(state.loans), self.path or "memory")
        return self.state()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageFailure("Database is not loaded.")
        return self._conn

    # ------------------------- Loading ------------------------- #
    def _apply_state(self, state: StoreState) -> None:
        conn = self.connection
        now = now_iso()
        loans = [self._normalize_loan(row, now) for row in state.loans]
        active: Dict[Any, int] = {}
        for loan in loans:
            if loan["status"] == "borrowed":
                active[loan["book_id"]] = active.get(loan["book_id"], 0) + 1
        books = [self._normalize_book(row, now, active) for row in state.books]

        conn.execute("BEGIN")
        try:
            self._add_unknown_columns("books", BOOK_COLUMNS, books)
            self._add_unknown_columns("loans", LOAN_COLUMNS, loans)
            for row in books:
                self._insert_row("books", row)
            for row in loans:
                self._insert_row("loans", row)
            self._restore_sequences(state.sequences)
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise StorageFailure(f"Snapshot {self.path} holds inconsistent data: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    @staticmethod
    def _require(row: Dict[str, Any], table: str, columns: tuple) -> None:
        missing = [c for c in columns if row.get(c) in (None, "")]
        if missing:
            raise StorageFailure(f"Stored {table} row {row.get('id')!r} is missing {', '.join(missing)}")

    def _normalize_book(self, row: Dict[str, Any], now: str, active: Dict[Any, int]) -> Dict[str, Any]:
        self._require(row, "books", ("id", "title", "author"))
        row = dict(row)
        row.setdefault("category", None)
        if row.get("copies_total") is None:
            row["copies_total"] = 1
        if row.get("copies_available") is None:
            total = row["copies_total"]
            if isinstance(total, int):
                row["copies_available"] = max(0, min(total, total - active.get(row["id"], 0)))
            else:
                row["copies_available"] = total
        if not row.get("created_at"):
            row["created_at"] = now
        return row

    def _normalize_loan(self, row: Dict[str, Any], now: str) -> Dict[str, Any]:
        self._require(row, "loans", ("id", "book_id", "borrower_name"))
        row = dict(row)
        row.setdefault("borrower_email", None)
        row.setdefault("due_date", None)
        row.setdefault("returned_at", None)
        if not row.get("status"):
            row["status"] = "borrowed"
        if not row.get("loaned_at"):
            row["loaned_at"] = now
        return row

    def _add_unknown_columns(self, table: str, known: tuple, rows: List[Dict[str, Any]]) -> None:
        existing = {r["name"] for r in self.connection.execute(f"PRAGMA table_info({table})")}
        extra = []
        for row in rows:
            for key in row:
                if key not in known and key not in existing and key not in extra:
                    extra.append(key)
        for column in extra:
            if not _IDENTIFIER.match(column):
                raise StorageFailure(f"Stored {table} column name {column!r} is not usable.")
            logger.warning("Keeping unknown column %s.%s found in snapshot", table, column)
            self.connection.execute(f'ALTER TABLE {table} ADD COLUMN "{column}"')

    def _insert_row(self, table: str, row: Dict[str, Any]) -> None:
        for key, value in row.items():
            if not isinstance(value, _SCALARS):
                raise StorageFailure(f"Stored {table} row {row.get('id')!r} has a non-scalar {key!r}.")
        columns = list(row)
        names = ", ".join(f'"{c}"' for c in columns)
        marks = ", ".join("?" for _ in columns)
        self.connection.execute(
            f"INSERT INTO {table} ({names}) VALUES ({marks})", [row[c] for c in columns]
        )

    def _restore_sequences(self, sequences: Dict[str, int]) -> None:
        conn = self.connection
        for table, seq in sequences.items():
            if table not in ("books", "loans"):
                continue
            current = conn.execute("SELECT seq FROM sqlite_sequence WHERE name = ?", (table,)).fetchone()
            if current is None:
                conn.execute("INSERT INTO sqlite_sequence (name, seq) VALUES (?, ?)", (table, seq))
            elif current["seq"] < seq:
                conn.execute("UPDATE sqlite_sequence SET seq = ? WHERE name = ?", (seq, table))

    # ------------------------- Snapshots ------------------------- #
    def state(self) -> StoreState:
        """Export the current state, including rows of an open transaction."""
        conn = self.connection
        books = [dict(r) for r in conn.execute("SELECT * FROM books ORDER BY id")]
        loans = [dict(r) for r in conn.execute("SELECT * FROM loans ORDER BY id")]
        sequences = {r["name"]: r["seq"] for r in conn.execute("SELECT name, seq FROM sqlite_sequence")}
        return StoreState(books=books, loans=loans, sequences=sequences)

    def snapshot(self) -> None:
        """Serialize the whole state and overwrite the durable file."""
        payload = self.state().to_json()
        if self.path is None:
            return
        if self._executor is None:
            raise StorageFailure("Database is not loaded.")

        ticket = SnapshotTicket()
        future = self._executor.submit(self.writer, self.path, payload, ticket)
        try:
            future.result(timeout=self.snapshot_timeout)
        except FutureTimeoutError as e:
            if not ticket.cancel():
                # the rename landed while we gave up waiting; disk has the change
                logger.warning("Snapshot write to %s finished after the %.1fs timeout", self.path, self.snapshot_timeout)
                return
            logger.error("Snapshot write to %s timed out after %.1fs", self.path, self.snapshot_timeout)
            raise StorageFailure(f"Timed out writing snapshot to {self.path}") from e
        except Exception as e:
            if not ticket.cancel():
                logger.warning("Snapshot writer for %s failed after replacing the file: %s", self.path, e)
                return
            logger.exception("Snapshot write to %s failed", self.path)
            raise StorageFailure(f"Could not write snapshot to {self.path}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a unit of work that is snapshotted before it is committed.

        Any exception inside the block, or from the snapshot, rolls the
        in-memory change back and propagates.
        """
        conn = self.connection
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            self.snapshot()
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            logger.exception("Store rejected a write")
            raise StorageFailure(f"Store rejected the change: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
