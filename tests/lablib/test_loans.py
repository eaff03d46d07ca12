import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from lablib import loans
from lablib.barcodes import resolve
from lablib.copies import available_count, list_copies, resize_copies
from lablib.crud import create_book, update_book
from lablib.exceptions import (
    ConflictError,
    NoOpenLoanError,
    NotAvailableError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from lablib.loans import (
    LOAN_PERIOD,
    borrow,
    check_copy_invariant,
    has_open_loans,
    return_copy,
)
from lablib.models import Book, BookCopy, BorrowRecord
from lablib.rankings import borrow_count, month_key
from lablib.schemas import BookCreate, BookUpdate

NOW = datetime(2024, 5, 10, 9, 30, tzinfo=timezone.utc)


def as_utc(value):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def test_borrow_sets_due_date_and_flips_copy(db_session, test_book, test_user):
    copy = list_copies(db_session, test_book.id)[0]
    result = borrow(db_session, copy.serial_number, test_user.id, now=NOW)

    assert result.book_copy_id == copy.id
    assert result.book_id == test_book.id
    assert result.due_date == NOW + LOAN_PERIOD
    assert db_session.get(BookCopy, copy.id).is_available is False
    assert has_open_loans(db_session, test_book.id)
    assert check_copy_invariant(db_session) == []


def test_borrow_by_copy_id(db_session, test_book, test_user):
    copy = list_copies(db_session, test_book.id)[1]
    result = borrow(db_session, str(copy.id), test_user.id)
    assert result.book_copy_id == copy.id


def test_borrow_by_book_key_takes_any_available_copy(db_session, test_book, test_user, other_user):
    first = borrow(db_session, "LAB-0001", test_user.id)
    second = borrow(db_session, "LAB-0001", other_user.id)
    assert first.book_copy_id != second.book_copy_id
    assert available_count(db_session, test_book.id) == 0

    with pytest.raises(NotAvailableError):
        borrow(db_session, "LAB-0001", test_user.id)
    assert check_copy_invariant(db_session) == []


def test_borrow_copy_already_on_loan(db_session, test_book, test_user, other_user):
    copy = list_copies(db_session, test_book.id)[0]
    borrow(db_session, copy.serial_number, test_user.id)
    with pytest.raises(NotAvailableError):
        borrow(db_session, copy.serial_number, other_user.id)

    records = db_session.scalars(select(BorrowRecord)).all()
    assert len(records) == 1


def test_borrow_errors(db_session, test_book, test_user):
    with pytest.raises(NotFoundError):
        borrow(db_session, "NO-SUCH-COPY", test_user.id)
    with pytest.raises(NotFoundError):
        borrow(db_session, "LAB-0001", uuid.uuid4())
    with pytest.raises(ValidationError):
        borrow(db_session, "", test_user.id)
    assert available_count(db_session, test_book.id) == 2


def test_return_closes_loan(db_session, test_book, test_user):
    copy = list_copies(db_session, test_book.id)[0]
    loan = borrow(db_session, copy.serial_number, test_user.id, now=NOW)
    returned = return_copy(db_session, copy.serial_number, test_user.id)

    assert returned.record_id == loan.record_id
    record = db_session.get(BorrowRecord, loan.record_id)
    assert record.status == "returned"
    assert record.returned_at is not None
    assert db_session.get(BookCopy, copy.id).is_available is True
    assert not has_open_loans(db_session, test_book.id)
    assert check_copy_invariant(db_session) == []


def test_return_never_borrowed(db_session, test_book, test_user):
    copy = list_copies(db_session, test_book.id)[0]
    with pytest.raises(NoOpenLoanError):
        return_copy(db_session, copy.serial_number, test_user.id)


def test_return_by_other_user(db_session, test_book, test_user, other_user):
    copy = list_copies(db_session, test_book.id)[0]
    borrow(db_session, copy.serial_number, test_user.id)
    with pytest.raises(NoOpenLoanError):
        return_copy(db_session, copy.serial_number, other_user.id)
    assert db_session.get(BookCopy, copy.id).is_available is False


def test_return_twice(db_session, test_book, test_user):
    copy = list_copies(db_session, test_book.id)[0]
    borrow(db_session, copy.serial_number, test_user.id)
    return_copy(db_session, copy.serial_number, test_user.id)
    with pytest.raises(NoOpenLoanError):
        return_copy(db_session, copy.serial_number, test_user.id)


def test_return_unknown_key(db_session, test_book, test_user):
    with pytest.raises(NotFoundError):
        return_copy(db_session, "NO-SUCH-COPY", test_user.id)


def test_return_by_book_key_closes_oldest_loan(db_session, test_book, test_user):
    first = borrow(db_session, "LAB-0001", test_user.id, now=NOW)
    borrow(db_session, "LAB-0001", test_user.id, now=NOW.replace(day=11))

    returned = return_copy(db_session, "LAB-0001", test_user.id)
    assert returned.record_id == first.record_id
    assert returned.book_copy_id == first.book_copy_id
    assert check_copy_invariant(db_session) == []


def test_borrow_return_borrow_produces_two_records(db_session, test_book, test_user):
    copy = list_copies(db_session, test_book.id)[0]
    first = borrow(db_session, copy.serial_number, test_user.id)
    return_copy(db_session, copy.serial_number, test_user.id)
    second = borrow(db_session, copy.serial_number, test_user.id)

    assert first.record_id != second.record_id
    records = {
        r.id: r
        for r in db_session.scalars(
            select(BorrowRecord).where(BorrowRecord.book_copy_id == copy.id)
        )
    }
    assert len(records) == 2
    assert records[first.record_id].status == "returned"
    assert records[second.record_id].status == "borrowed"
    assert records[second.record_id].returned_at is None
    assert check_copy_invariant(db_session) == []


def test_two_copies_scenario(db_session, test_book, test_user, other_user):
    copy1, copy2 = sorted(
        list_copies(db_session, test_book.id), key=lambda c: c.serial_number
    )
    month = month_key(NOW)

    loan = borrow(db_session, copy1.serial_number, test_user.id, now=NOW)
    assert as_utc(loan.due_date) == NOW + LOAN_PERIOD
    assert db_session.get(BookCopy, copy1.id).is_available is False
    assert borrow_count(db_session, month, test_book.id) == 1

    borrow(db_session, copy2.serial_number, other_user.id, now=NOW)
    assert borrow_count(db_session, month, test_book.id) == 2
    assert check_copy_invariant(db_session) == []

    with pytest.raises(ConflictError):
        resize_copies(db_session, test_book.id, 1)
    assert len(list_copies(db_session, test_book.id)) == 2

    return_copy(db_session, copy1.serial_number, test_user.id)
    assert db_session.get(BookCopy, copy1.id).is_available is True
    assert check_copy_invariant(db_session) == []

    # copy2 is still on loan, so the only available copy goes.
    result = resize_copies(db_session, test_book.id, 1)
    assert result.removed == [copy1.id]
    assert [c.id for c in list_copies(db_session, test_book.id)] == [copy2.id]
    assert borrow_count(db_session, month, test_book.id) == 2
    assert check_copy_invariant(db_session) == []


def test_failed_ranking_rolls_back_borrow(db_session, test_book, test_user, monkeypatch):
    def failing_record_borrow(db, month, book_id):
        raise IntegrityError("INSERT INTO monthly_rankings", {}, Exception("constraint failed"))

    monkeypatch.setattr(loans, "record_borrow", failing_record_borrow)
    copy = list_copies(db_session, test_book.id)[0]

    with pytest.raises(StoreError):
        borrow(db_session, copy.serial_number, test_user.id, now=NOW)

    assert available_count(db_session, test_book.id) == 2
    assert db_session.get(BookCopy, copy.id).is_available is True
    assert db_session.scalars(select(BorrowRecord)).all() == []
    assert borrow_count(db_session, month_key(NOW), test_book.id) == 0
    assert check_copy_invariant(db_session) == []


def test_borrow_by_updated_book_barcode(db_session, test_book, test_user):
    update_book(db_session, test_book.id, BookUpdate(barcode="LAB-NEW"))

    assert resolve(db_session, "LAB-NEW").id == test_book.id
    assert {c.barcode for c in list_copies(db_session, test_book.id)} == {"LAB-NEW"}

    result = borrow(db_session, "LAB-NEW", test_user.id)
    assert result.book_id == test_book.id
    returned = return_copy(db_session, "LAB-NEW", test_user.id)
    assert returned.record_id == result.record_id

    with pytest.raises(NotFoundError):
        borrow(db_session, "LAB-0001", test_user.id)


def test_relabel_keeps_individually_labelled_copies(db_session, test_book):
    first, second = sorted(
        list_copies(db_session, test_book.id), key=lambda c: c.serial_number
    )
    db_session.execute(
        update(BookCopy).where(BookCopy.id == first.id).values(barcode="COPY-X")
    )
    db_session.commit()

    update_book(db_session, test_book.id, BookUpdate(barcode="LAB-NEW"))
    labels = {c.id: c.barcode for c in list_copies(db_session, test_book.id)}
    assert labels == {first.id: "COPY-X", second.id: "LAB-NEW"}


def test_borrow_by_book_barcode_alone(db_session, test_user):
    book = create_book(db_session, BookCreate(title="Unlabelled", author="Nobody", total_copies=1))
    db_session.execute(update(Book).where(Book.id == book.id).values(barcode="SHELF-9"))
    db_session.commit()

    result = borrow(db_session, "SHELF-9", test_user.id)
    assert result.book_id == book.id
