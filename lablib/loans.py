import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.orm import Session

from lablib.barcodes import candidate_copies, normalize_key
from lablib.exceptions import (
    NoOpenLoanError,
    NotAvailableError,
    NotFoundError,
)
from lablib.models import BookCopy, BorrowRecord, BorrowStatus, User, utcnow
from lablib.rankings import month_key, record_borrow
from lablib.schemas import BorrowResult, ReturnResult
from lablib.storage import transaction

logger = logging.getLogger(__name__)

LOAN_PERIOD = timedelta(days=14)

_OPEN = and_(
    BorrowRecord.status == BorrowStatus.BORROWED.value,
    BorrowRecord.returned_at.is_(None),
)


def _require_user(db: Session, user_id) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


def _open_loans_on(db: Session, copy_id) -> int:
    return db.scalar(
        select(func.count())
        .select_from(BorrowRecord)
        .where(BorrowRecord.book_copy_id == copy_id, _OPEN)
    )


def _lock_candidate(db: Session, key: str) -> BookCopy:
    candidate_ids = db.scalars(select(BookCopy.id).where(candidate_copies(key))).all()
    if not candidate_ids:
        raise NotFoundError("Copy", key)

    if len(candidate_ids) == 1:
        # A key naming one copy waits for whoever holds it, then re-checks.
        copy = db.scalars(
            select(BookCopy)
            .where(BookCopy.id == candidate_ids[0])
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if copy is None or not copy.is_available:
            raise NotAvailableError(key)
        return copy

    # Several interchangeable copies: take the first one nobody else holds.
    copy = db.scalars(
        select(BookCopy)
        .where(BookCopy.id.in_(candidate_ids), BookCopy.is_available.is_(True))
        .order_by(BookCopy.serial_number)
        .limit(1)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    ).first()
    if copy is None:
        raise NotAvailableError(key)
    return copy


def borrow(db: Session, key, user_id, now: Optional[datetime] = None) -> BorrowResult:
    """Lend one available copy matching ``key`` to ``user_id``.

    Returns the new loan with its due date (``borrowed_at`` + 14 days).
    Raises NotFoundError for an unknown user or key and NotAvailableError
    when every matching copy is already on loan.
    """
    key = normalize_key(key)
    with transaction(db, "borrow"):
        _require_user(db, user_id)
        copy = _lock_candidate(db, key)
        if _open_loans_on(db, copy.id):
            raise NotAvailableError(key)

        now = now or utcnow()
        claimed = db.execute(
            update(BookCopy)
            .where(BookCopy.id == copy.id, BookCopy.is_available.is_(True))
            .values(is_available=False, updated_at=now)
        ).rowcount
        if claimed != 1:
            raise NotAvailableError(key)

        record = BorrowRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            book_copy_id=copy.id,
            borrowed_at=now,
            due_date=now + LOAN_PERIOD,
            status=BorrowStatus.BORROWED.value,
        )
        db.add(record)
        db.flush()
        record_borrow(db, month_key(now), copy.book_id)

        result = BorrowResult(
            record_id=record.id,
            user_id=record.user_id,
            book_id=copy.book_id,
            book_copy_id=copy.id,
            serial_number=copy.serial_number,
            borrowed_at=record.borrowed_at,
            due_date=record.due_date,
        )

    logger.info(
        f"Copy {result.serial_number} lent to user {result.user_id}, due {result.due_date}"
    )
    return result


def return_copy(db: Session, key, user_id, now: Optional[datetime] = None) -> ReturnResult:
    """Close ``user_id``'s open loan on the copy matching ``key``.

    Only the borrower's own open loan is closed. When the key matches several
    copies the user holds, the oldest loan is returned first.
    """
    key = normalize_key(key)
    with transaction(db, "return"):
        copy_ids = db.scalars(select(BookCopy.id).where(candidate_copies(key))).all()
        if not copy_ids:
            raise NotFoundError("Copy", key)

        open_loan = (
            select(BorrowRecord)
            .where(
                BorrowRecord.book_copy_id.in_(copy_ids),
                BorrowRecord.user_id == user_id,
                _OPEN,
            )
            .order_by(BorrowRecord.borrowed_at)
        )
        record = db.scalars(open_loan.limit(1)).first()
        if record is None:
            raise NoOpenLoanError(key, user_id)

        # Lock order is copy, then record, same as borrow.
        copy = db.scalars(
            select(BookCopy)
            .where(BookCopy.id == record.book_copy_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one()
        record = db.scalars(
            select(BorrowRecord)
            .where(BorrowRecord.id == record.id, _OPEN)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if record is None:
            raise NoOpenLoanError(key, user_id)

        now = now or utcnow()
        record.returned_at = now
        record.status = BorrowStatus.RETURNED.value
        copy.is_available = True
        copy.updated_at = now
        db.flush()

        result = ReturnResult(
            record_id=record.id,
            user_id=record.user_id,
            book_copy_id=copy.id,
            returned_at=now,
        )

    logger.info(f"Copy {copy.serial_number} returned by user {user_id}")
    return result


def has_open_loans(db: Session, book_id) -> bool:
    return db.scalar(
        select(
            exists().where(
                BorrowRecord.book_copy_id == BookCopy.id,
                BookCopy.book_id == book_id,
                _OPEN,
            )
        )
    )


def check_copy_invariant(db: Session, book_id=None) -> List[uuid.UUID]:
    """Copies whose availability disagrees with their open loans.

    A copy is consistent when it is available with no open loan, or on loan
    with exactly one.
    """
    open_count = (
        select(func.count())
        .select_from(BorrowRecord)
        .where(BorrowRecord.book_copy_id == BookCopy.id, _OPEN)
        .scalar_subquery()
    )
    stmt = select(BookCopy.id).where(
        or_(
            and_(BookCopy.is_available.is_(True), open_count != 0),
            and_(BookCopy.is_available.is_(False), open_count != 1),
        )
    )
    if book_id is not None:
        stmt = stmt.where(BookCopy.book_id == book_id)
    return list(db.scalars(stmt).all())
