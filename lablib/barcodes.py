import uuid
from typing import Literal, Optional

from pydantic import BaseModel
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from lablib.exceptions import NotFoundError, ValidationError
from lablib.models import Book, BookCopy


class Resolution(BaseModel):
    kind: Literal["copy", "book"]
    id: uuid.UUID


def ean13_check_digit(code12: str) -> int:
    if len(code12) != 12 or not code12.isdigit():
        raise ValueError("EAN-13 body must be 12 digits")
    odd = sum(int(d) for d in code12[0::2])
    even = sum(int(d) for d in code12[1::2])
    return (10 - (odd + even * 3) % 10) % 10


def is_valid_ean13(code: str) -> bool:
    if len(code) != 13 or not code.isdigit():
        return False
    return ean13_check_digit(code[:12]) == int(code[12])


def _as_uuid(code: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(code)
    except ValueError:
        return None


def normalize_key(code) -> str:
    if code is None or not str(code).strip():
        raise ValidationError("a copy key or barcode is required")
    return str(code).strip()


def resolve(db: Session, code: str) -> Resolution:
    """Map a scanned or typed code to a copy or a book.

    Lookup order: copy id, copy serial number, a barcode carried by exactly
    one copy, book id, then book identifiers (ISBN, JAN, EAN-13, barcode).
    A barcode shared by several copies resolves to their book.
    """
    code = normalize_key(code)
    as_id = _as_uuid(code)

    if as_id is not None:
        copy = db.get(BookCopy, as_id)
        if copy is not None:
            return Resolution(kind="copy", id=copy.id)

    copy_id = db.scalars(
        select(BookCopy.id).where(BookCopy.serial_number == code)
    ).first()
    if copy_id is not None:
        return Resolution(kind="copy", id=copy_id)

    by_barcode = db.execute(
        select(BookCopy.id, BookCopy.book_id).where(BookCopy.barcode == code)
    ).all()
    if len(by_barcode) == 1:
        return Resolution(kind="copy", id=by_barcode[0].id)
    if by_barcode:
        return Resolution(kind="book", id=by_barcode[0].book_id)

    if as_id is not None:
        book = db.get(Book, as_id)
        if book is not None:
            return Resolution(kind="book", id=book.id)

    book_id = db.scalars(
        select(Book.id)
        .where(
            or_(
                Book.isbn == code,
                Book.jan == code,
                Book.ean13 == code,
                Book.barcode == code,
            )
        )
        .order_by(Book.created_at)
    ).first()
    if book_id is not None:
        return Resolution(kind="book", id=book_id)

    raise NotFoundError("Code", code)


def candidate_copies(code: str):
    """Criteria selecting every copy a borrow or return key may refer to.

    Unlike ``resolve`` this is a single WHERE clause so callers can combine
    it with availability filters and locking reads.
    """
    code = normalize_key(code)
    as_id = _as_uuid(code)
    books_by_code = select(Book.id).where(
        or_(
            Book.isbn == code,
            Book.jan == code,
            Book.ean13 == code,
            Book.barcode == code,
        )
    )
    clauses = [
        BookCopy.serial_number == code,
        BookCopy.barcode == code,
        BookCopy.book_id.in_(books_by_code),
    ]
    if as_id is not None:
        clauses.extend([BookCopy.id == as_id, BookCopy.book_id == as_id])
    return or_(*clauses)
