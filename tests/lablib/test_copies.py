import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from lablib.copies import (
    available_count,
    book_lock_query,
    copy_count,
    create_copies,
    list_copies,
    resize_copies,
    serial_prefix,
)
from lablib.crud import create_book
from lablib.exceptions import ConflictError, NotFoundError
from lablib.loans import borrow, check_copy_invariant, return_copy
from lablib.models import Book, BorrowRecord
from lablib.schemas import BookCreate


def test_create_copies_serials(db_session, test_book):
    copies = list_copies(db_session, test_book.id)
    assert len(copies) == 2
    prefix = serial_prefix(test_book.id)
    serials = {c.serial_number for c in copies}
    assert len(serials) == 2
    assert all(s.startswith(prefix + "-") for s in serials)
    assert all(c.barcode == "LAB-0001" for c in copies)


def test_create_copies_adds_to_pool(db_session, test_book):
    book = db_session.get(Book, test_book.id)
    created = create_copies(db_session, book, 3)
    db_session.commit()
    assert len(created) == 3
    assert copy_count(db_session, test_book.id) == 5


def test_resize_up(db_session, test_book):
    result = resize_copies(db_session, test_book.id, 5)
    assert result.previous_count == 2
    assert result.total_copies == 5
    assert len(result.created) == 3
    assert result.removed == []
    assert copy_count(db_session, test_book.id) == 5
    assert db_session.get(Book, test_book.id).total_copies == 5


def test_resize_same_count_is_noop(db_session, test_book):
    result = resize_copies(db_session, test_book.id, 2)
    assert result.created == []
    assert result.removed == []
    assert copy_count(db_session, test_book.id) == 2


def test_resize_removes_newest_copy_first(db_session, test_book):
    first_batch = {c.id for c in list_copies(db_session, test_book.id)}
    grown = resize_copies(db_session, test_book.id, 3)
    newest = grown.created[0]

    shrunk = resize_copies(db_session, test_book.id, 2)
    assert shrunk.removed == [newest]
    assert {c.id for c in list_copies(db_session, test_book.id)} == first_batch


def test_resize_breaks_ties_by_highest_serial(db_session):
    book = create_book(db_session, BookCreate(title="Tied", author="Batch", total_copies=3))
    copies = sorted(list_copies(db_session, book.id), key=lambda c: c.serial_number)

    result = resize_copies(db_session, book.id, 1)
    assert set(result.removed) == {copies[1].id, copies[2].id}
    remaining = list_copies(db_session, book.id)
    assert [c.id for c in remaining] == [copies[0].id]


def test_resize_down_skips_copies_on_loan(db_session, test_book, test_user):
    loan = borrow(db_session, "9780000000001", test_user.id)
    result = resize_copies(db_session, test_book.id, 1)

    assert loan.book_copy_id not in result.removed
    remaining = list_copies(db_session, test_book.id)
    assert [c.id for c in remaining] == [loan.book_copy_id]
    assert check_copy_invariant(db_session, test_book.id) == []


def test_resize_down_conflict_changes_nothing(db_session, test_book, test_user, other_user):
    copies = list_copies(db_session, test_book.id)
    borrow(db_session, copies[0].serial_number, test_user.id)
    borrow(db_session, copies[1].serial_number, other_user.id)

    with pytest.raises(ConflictError):
        resize_copies(db_session, test_book.id, 1)

    assert copy_count(db_session, test_book.id) == 2
    assert db_session.get(Book, test_book.id).total_copies == 2
    assert available_count(db_session, test_book.id) == 0


def test_resize_purges_closed_history_of_removed_copy(db_session, test_book, test_user):
    copies = list_copies(db_session, test_book.id)
    borrow(db_session, copies[0].serial_number, test_user.id)
    return_copy(db_session, copies[0].serial_number, test_user.id)

    resize_copies(db_session, test_book.id, 0)
    assert copy_count(db_session, test_book.id) == 0
    assert db_session.scalars(select(BorrowRecord)).all() == []


def test_resize_unknown_book(db_session):
    with pytest.raises(NotFoundError):
        resize_copies(db_session, uuid.uuid4(), 3)


def test_list_copies_unknown_book(db_session):
    with pytest.raises(NotFoundError):
        list_copies(db_session, uuid.uuid4())


def test_book_lock_leaves_key_share_free():
    sql = str(book_lock_query(uuid.uuid4()).compile(dialect=postgresql.dialect()))
    assert "FOR NO KEY UPDATE" in sql
