import json
import os
import threading
import time

import pytest

import database
from database import Database, SnapshotTicket, StoreState, read_state, write_snapshot_file
from errors import StorageFailure
from library import Library


def _write(path, payload):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f)


def test_missing_file_starts_empty_and_writes_initial_snapshot(tmp_path):
    path = str(tmp_path / "nested" / "library.json")
    db = Database(path)
    state = db.load()
    try:
        assert state.books == [] and state.loans == []
        assert os.path.exists(path)
        assert read_state(path).books == []
    finally:
        db.close()


def test_snapshot_contains_full_state(lib, data_file):
    book = lib.create_book("Dune", "Frank Herbert", "Sci-Fi", 2)
    loan = lib.borrow(book.id, "Alice", due_date="2026-12-01")

    with open(data_file, encoding="utf-8") as f:
        data = json.load(f)

    assert data["version"] == 1
    assert data["books"] == [lib.get_book(book.id).to_dict()]
    assert data["loans"][0]["id"] == loan.id
    assert data["loans"][0]["status"] == "borrowed"
    assert data["loans"][0]["due_date"] == "2026-12-01"
    assert "book_title" not in data["loans"][0]
    assert data["sequences"] == {"books": book.id, "loans": loan.id}


@pytest.mark.parametrize("content", ["{not json", "[]", '{"books": {}}', '{"version": 99}', ""])
def test_corrupt_snapshot_fails_fast(data_file, content):
    with open(data_file, "w", encoding="utf-8") as f:
        f.write(content)

    with pytest.raises(StorageFailure):
        Library(data_file)

    # the broken file is left alone for inspection
    with open(data_file, encoding="utf-8") as f:
        assert f.read() == content


def test_rows_missing_required_columns_fail_fast(data_file):
    _write(data_file, {"books": [{"id": 1, "author": "No Title"}]})
    with pytest.raises(StorageFailure, match="title"):
        Library(data_file)


def test_rows_violating_the_schema_fail_fast(data_file):
    _write(data_file, {"books": [{"id": 1, "title": "T", "author": "A", "copies_total": 1, "copies_available": 5}]})
    with pytest.raises(StorageFailure):
        Library(data_file)


def test_loan_for_unknown_book_fails_fast(data_file):
    _write(data_file, {"books": [], "loans": [{"id": 1, "book_id": 9, "borrower_name": "R"}]})
    with pytest.raises(StorageFailure):
        Library(data_file)


def test_old_rows_get_defaults_for_missing_columns(data_file):
    _write(data_file, {
        "books": [
            {"id": 1, "title": "Old Book", "author": "Someone", "copies_total": 3},
            {"id": 2, "title": "Older Book", "author": "Someone Else"},
        ],
        "loans": [
            {"id": 1, "book_id": 1, "borrower_name": "Reader"},
            {"id": 2, "book_id": 1, "borrower_name": "Past Reader", "status": "returned"},
        ],
    })

    with Library(data_file) as lib:
        old = lib.get_book(1)
        assert old.category is None
        assert old.copies_available == 2
        assert old.created_at is not None
        older = lib.get_book(2)
        assert older.copies_total == 1
        assert older.copies_available == 1

        loan = lib.get_loan(1)
        assert loan.status.value == "borrowed"
        assert loan.loaned_at is not None
        assert loan.borrower_email is None
        assert lib.verify_invariants() == []


def test_unknown_columns_survive_a_round_trip(data_file):
    _write(data_file, {
        "books": [{"id": 1, "title": "T", "author": "A", "copies_total": 1,
                   "copies_available": 1, "created_at": "2024-01-01T00:00:00+00:00", "isbn": "9780441172719"}],
    })

    with Library(data_file) as lib:
        lib.update_book(1, title="Renamed")

    data = read_state(data_file)
    assert data.books[0]["title"] == "Renamed"
    assert data.books[0]["isbn"] == "9780441172719"


def test_unusable_unknown_column_fails_fast(data_file):
    _write(data_file, {"books": [{"id": 1, "title": "T", "author": "A", "bad name; --": 1}]})
    with pytest.raises(StorageFailure):
        Library(data_file)


def test_failed_snapshot_rolls_back(data_file):
    fail = threading.Event()

    def flaky_writer(path, text, ticket):
        if fail.is_set():
            raise OSError("disk full")
        write_snapshot_file(path, text, ticket)

    lib = Library(database=Database(data_file, writer=flaky_writer))
    try:
        book = lib.create_book("Title", "Author", copies_total=1)
        before = read_state(data_file)

        fail.set()
        with pytest.raises(StorageFailure, match="disk full"):
            lib.borrow(book.id, "Reader")
        with pytest.raises(StorageFailure):
            lib.create_book("Another", "Author")

        assert lib.get_book(book.id).copies_available == 1
        assert lib.list_loans() == []
        assert len(lib.list_books()) == 1
        assert read_state(data_file) == before

        fail.clear()
        loan = lib.borrow(book.id, "Reader")
        assert lib.get_loan(loan.id).book_id == book.id
        assert lib.get_book(book.id).copies_available == 0
    finally:
        lib.close()


def test_snapshot_timeout_rolls_back_and_skips_late_write(data_file):
    release = threading.Event()
    slow = threading.Event()

    def stalling_writer(path, text, ticket):
        if slow.is_set():
            release.wait(5)
        write_snapshot_file(path, text, ticket)

    lib = Library(database=Database(data_file, snapshot_timeout=0.5, writer=stalling_writer))
    try:
        book = lib.create_book("Title", "Author")
        slow.set()
        with pytest.raises(StorageFailure, match="Timed out"):
            lib.update_book(book.id, title="Never Saved")
        slow.clear()
        release.set()

        assert lib.get_book(book.id).title == "Title"
        # a later write goes through and the late one was discarded
        lib.update_book(book.id, category="Kept")
    finally:
        lib.close()

    assert read_state(data_file).books[0]["title"] == "Title"
    assert read_state(data_file).books[0]["category"] == "Kept"


def test_memory_only_database_never_touches_disk(tmp_path):
    calls = []

    def writer(path, text, ticket):
        calls.append(path)

    with Library(database=Database(None, writer=writer)) as lib:
        book = lib.create_book("Title", "Author")
        lib.borrow(book.id, "Reader")
    assert calls == []
    assert os.listdir(tmp_path) == []


def test_state_round_trips_through_json():
    state = StoreState(books=[{"id": 1, "title": "T"}], loans=[], sequences={"books": 1})
    assert StoreState.from_json(state.to_json()) == state


def test_write_snapshot_file_leaves_no_temp_files(tmp_path):
    path = str(tmp_path / "library.json")
    write_snapshot_file(path, "{}", SnapshotTicket())
    ticket = SnapshotTicket()
    ticket.cancel()
    write_snapshot_file(path, '{"skipped": true}', ticket)

    assert os.listdir(tmp_path) == ["library.json"]
    with open(path, encoding="utf-8") as f:
        assert f.read() == "{}"


def test_ticket_lets_either_the_rename_or_the_cancel_win(tmp_path):
    src = tmp_path / "new.json"
    dst = tmp_path / "library.json"
    src.write_text("new", encoding="utf-8")

    published = SnapshotTicket()
    assert published.publish(str(src), str(dst))
    assert published.cancel() is False
    assert dst.read_text(encoding="utf-8") == "new"

    cancelled = SnapshotTicket()
    assert cancelled.cancel()
    src.write_text("late", encoding="utf-8")
    assert cancelled.publish(str(src), str(dst)) is False
    assert dst.read_text(encoding="utf-8") == "new"


def test_rename_finishing_after_the_timeout_counts_as_written(data_file, monkeypatch):
    real_replace = os.replace

    def slow_replace(src, dst):
        time.sleep(0.8)
        real_replace(src, dst)

    lib = Library(database=Database(data_file, snapshot_timeout=0.3))
    try:
        monkeypatch.setattr(database.os, "replace", slow_replace)
        book = lib.create_book("Late", "Author")
        monkeypatch.setattr(database.os, "replace", real_replace)

        assert lib.get_book(book.id).title == "Late"
        assert [b["title"] for b in read_state(data_file).books] == ["Late"]
    finally:
        lib.close()

    with Library(data_file) as reopened:
        assert [b.title for b in reopened.list_books()] == ["Late"]


def test_writer_failing_after_the_rename_keeps_the_change(data_file):
    def writer(path, text, ticket):
        write_snapshot_file(path, text, ticket)
        raise OSError("fsync of directory failed")

    lib = Library(database=Database(data_file, writer=writer))
    try:
        lib.create_book("Title", "Author")
        assert len(lib.list_books()) == 1
    finally:
        lib.close()
    assert [b["title"] for b in read_state(data_file).books] == ["Title"]


def test_operations_before_load_fail():
    db = Database(None)
    with pytest.raises(StorageFailure):
        db.state()
