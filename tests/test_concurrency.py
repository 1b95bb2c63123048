import threading
import time

from database import Database, write_snapshot_file
from errors import Conflict
from library import Library


def _race(lib, calls):
    """Start every call at the same moment and collect results and errors."""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []

    def worker(call):
        barrier.wait()
        try:
            results.append(call())
        except Conflict as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(c,)) for c in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results, errors


def test_two_borrowers_race_for_the_last_copy(lib):
    book = lib.create_book("Title", "Author", copies_total=1)

    results, errors = _race(lib, [lambda: lib.borrow(book.id, "One"), lambda: lib.borrow(book.id, "Two")])

    assert len(results) == 1
    assert len(errors) == 1
    assert lib.get_book(book.id).copies_available == 0
    assert len(lib.list_loans("borrowed")) == 1


def test_slow_snapshot_does_not_let_a_second_borrow_slip_through(data_file):
    def slow_writer(path, text, ticket):
        time.sleep(0.05)
        write_snapshot_file(path, text, ticket)

    lib = Library(database=Database(data_file, writer=slow_writer))
    try:
        book = lib.create_book("Title", "Author", copies_total=2)
        calls = [lambda i=i: lib.borrow(book.id, f"Reader {i}") for i in range(6)]

        results, errors = _race(lib, calls)

        assert len(results) == 2
        assert len(errors) == 4
        assert lib.get_book(book.id).copies_available == 0
        assert lib.verify_invariants() == []
    finally:
        lib.close()


def test_concurrent_returns_restore_every_copy(lib):
    book = lib.create_book("Title", "Author", copies_total=5)
    loans = [lib.borrow(book.id, f"Reader {i}") for i in range(5)]

    results, errors = _race(lib, [lambda l=l: lib.return_loan(l.id) for l in loans])

    assert len(results) == 5
    assert errors == []
    assert lib.get_book(book.id).copies_available == 5
    assert lib.verify_invariants() == []
