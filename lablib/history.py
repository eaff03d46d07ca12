from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lablib.copies import available_count
from lablib.exceptions import NotFoundError, StoreError
from lablib.loans import has_open_loans
from lablib.models import Book, BookCopy, BorrowRecord, BorrowStatus, User
from lablib.schemas import (
    AvailabilitySchema,
    BookDetailSchema,
    BookSchema,
    Identity,
    LoanRecordSchema,
)


def _loan_query():
    return (
        select(
            BorrowRecord.id,
            BorrowRecord.user_id,
            User.name.label("user_name"),
            BorrowRecord.book_copy_id,
            BookCopy.serial_number,
            Book.id.label("book_id"),
            Book.title.label("book_title"),
            Book.author.label("book_author"),
            Book.type.label("book_type"),
            BorrowRecord.borrowed_at,
            BorrowRecord.due_date,
            BorrowRecord.returned_at,
            BorrowRecord.status,
        )
        .join(BookCopy, BorrowRecord.book_copy_id == BookCopy.id)
        .join(Book, BookCopy.book_id == Book.id)
        .join(User, BorrowRecord.user_id == User.id)
        .order_by(BorrowRecord.borrowed_at.desc())
    )


def _records(db: Session, stmt) -> List[LoanRecordSchema]:
    return [LoanRecordSchema(**row._mapping) for row in db.execute(stmt).all()]


def availability(db: Session, book_id) -> AvailabilitySchema:
    try:
        total = db.scalar(select(Book.total_copies).where(Book.id == book_id))
        if total is None:
            raise NotFoundError("Book", book_id)
        return AvailabilitySchema(
            book_id=book_id,
            total_copies=total,
            available_count=available_count(db, book_id),
            has_open_loans=has_open_loans(db, book_id),
        )
    except SQLAlchemyError as e:
        raise StoreError("availability", str(e))


def history(
    db: Session, identity: Identity, user_id=None
) -> List[LoanRecordSchema]:
    """Loan history, most recent first.

    Admins see everything, or one user's loans when ``user_id`` is given.
    Anyone else only ever sees their own loans.
    """
    if not identity.is_admin:
        user_id = identity.user_id
    stmt = _loan_query()
    if user_id is not None:
        stmt = stmt.where(BorrowRecord.user_id == user_id)
    try:
        return _records(db, stmt)
    except SQLAlchemyError as e:
        raise StoreError("history", str(e))


def loan_detail(db: Session, record_id, identity: Identity) -> LoanRecordSchema:
    try:
        row = db.execute(_loan_query().where(BorrowRecord.id == record_id)).first()
    except SQLAlchemyError as e:
        raise StoreError("fetch", str(e))
    # Other people's loans look the same as missing ones.
    if row is None or (not identity.is_admin and row.user_id != identity.user_id):
        raise NotFoundError("Borrow record", record_id)
    return LoanRecordSchema(**row._mapping)


def book_detail(db: Session, book_id) -> BookDetailSchema:
    try:
        book = db.get(Book, book_id, populate_existing=True)
        if book is None:
            raise NotFoundError("Book", book_id)
        stats = availability(db, book.id)
        borrow_history = _records(db, _loan_query().where(Book.id == book.id))
    except SQLAlchemyError as e:
        raise StoreError("fetch", str(e))

    current_loan: Optional[LoanRecordSchema] = next(
        (r for r in borrow_history if r.status == BorrowStatus.BORROWED.value), None
    )
    book_data = BookSchema.model_validate(book).model_copy(
        update={"available_copies": stats.available_count}
    )
    return BookDetailSchema(
        book=book_data,
        availability=stats,
        current_loan=current_loan,
        borrow_history=borrow_history,
    )
