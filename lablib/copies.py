import logging
import uuid
from typing import List

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from lablib.exceptions import ConflictError, NotFoundError, ValidationError
from lablib.models import Book, BookCopy, BorrowRecord, BorrowStatus, utcnow
from lablib.schemas import ResizeResult
from lablib.storage import transaction

logger = logging.getLogger(__name__)

SERIAL_SUFFIX_LENGTH = 4


def serial_prefix(book_id) -> str:
    return str(book_id)[:8]


def _new_serial(prefix: str, taken: set) -> str:
    while True:
        serial = f"{prefix}-{uuid.uuid4().hex[:SERIAL_SUFFIX_LENGTH]}"
        if serial not in taken:
            return serial


def book_lock_query(book_id):
    # NO KEY UPDATE: borrows still insert rankings that reference the book.
    return (
        select(Book)
        .where(Book.id == book_id)
        .with_for_update(key_share=True)
        .execution_options(populate_existing=True)
    )


def lock_book(db: Session, book_id) -> Book:
    book = db.scalars(book_lock_query(book_id)).first()
    if book is None:
        raise NotFoundError("Book", book_id)
    return book


def create_copies(db: Session, book: Book, n: int) -> List[BookCopy]:
    """Add ``n`` available copies to ``book`` inside the caller's transaction."""
    if n < 0:
        raise ValidationError("copy count cannot be negative")

    prefix = serial_prefix(book.id)
    taken = set(
        db.scalars(
            select(BookCopy.serial_number).where(
                BookCopy.serial_number.like(f"{prefix}-%")
            )
        )
    )
    now = utcnow()
    created = []
    for _ in range(n):
        serial = _new_serial(prefix, taken)
        taken.add(serial)
        copy = BookCopy(
            id=uuid.uuid4(),
            book_id=book.id,
            serial_number=serial,
            barcode=book.barcode,
            is_available=True,
            created_at=now,
            updated_at=now,
        )
        db.add(copy)
        created.append(copy)
    db.flush()
    return created


def copy_count(db: Session, book_id) -> int:
    return db.scalar(
        select(func.count()).select_from(BookCopy).where(BookCopy.book_id == book_id)
    )


def available_count(db: Session, book_id) -> int:
    return db.scalar(
        select(func.count())
        .select_from(BookCopy)
        .where(BookCopy.book_id == book_id, BookCopy.is_available.is_(True))
    )


def resize(db: Session, book_id, new_count: int) -> ResizeResult:
    """Grow or shrink the pool to ``new_count`` inside the caller's transaction.

    Shrinking removes available copies only, newest first (latest
    ``created_at``, ties broken by the highest serial number). If there are
    not enough available copies the whole resize is refused.

    The book row and every available copy that might be removed are read
    with row locks, so a borrow claiming one of them either finishes first
    (and the copy drops out of the available set) or waits until we commit.
    """
    if new_count < 0:
        raise ValidationError("total_copies cannot be negative")

    book = lock_book(db, book_id)
    current = copy_count(db, book.id)
    result = ResizeResult(book_id=book.id, previous_count=current, total_copies=new_count)

    if new_count > current:
        created = create_copies(db, book, new_count - current)
        result.created = [c.id for c in created]
    elif new_count < current:
        deficit = current - new_count
        available = db.scalars(
            select(BookCopy)
            .where(BookCopy.book_id == book.id, BookCopy.is_available.is_(True))
            .order_by(BookCopy.created_at.desc(), BookCopy.serial_number.desc())
            .with_for_update()
            .execution_options(populate_existing=True)
        ).all()
        if deficit > len(available):
            raise ConflictError(
                f"{current - len(available)} copies of book {book.id} are on loan; "
                f"cannot reduce from {current} to {new_count}"
            )

        doomed = [c.id for c in available[:deficit]]
        # Closed history of a removed copy goes with it.
        db.execute(
            delete(BorrowRecord).where(
                BorrowRecord.book_copy_id.in_(doomed),
                BorrowRecord.status == BorrowStatus.RETURNED.value,
            )
        )
        removed = db.execute(
            delete(BookCopy).where(
                BookCopy.id.in_(doomed), BookCopy.is_available.is_(True)
            )
        ).rowcount
        if removed != deficit:
            raise ConflictError(f"copy pool of book {book.id} changed during resize")
        result.removed = doomed

    book.total_copies = new_count
    book.updated_at = utcnow()
    db.flush()
    return result


def resize_copies(db: Session, book_id, new_count: int) -> ResizeResult:
    with transaction(db, "resize"):
        result = resize(db, book_id, new_count)
    logger.info(
        f"Resized book {book_id}: {result.previous_count} -> {result.total_copies} "
        f"(+{len(result.created)}/-{len(result.removed)})"
    )
    return result


def list_copies(db: Session, book_id) -> List[BookCopy]:
    if db.get(Book, book_id) is None:
        raise NotFoundError("Book", book_id)
    return db.scalars(
        select(BookCopy)
        .where(BookCopy.book_id == book_id)
        .order_by(BookCopy.created_at, BookCopy.serial_number)
    ).all()
