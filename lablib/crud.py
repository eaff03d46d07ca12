import logging
import os
import uuid
from typing import List, Optional

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lablib import schemas
from lablib.copies import create_copies, lock_book, resize
from lablib.exceptions import ConflictError, NotFoundError, StoreError, ValidationError
from lablib.loans import has_open_loans
from lablib.models import (
    Book,
    BookCopy,
    BorrowRecord,
    BorrowStatus,
    MonthlyRanking,
    User,
    utcnow,
)
from lablib.storage import transaction

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_DIR = "./public/images/books"


def create_user_record(db: Session, user: schemas.UserCreate) -> User:
    with transaction(db, "create user"):
        taken = db.scalar(select(User.id).where(User.student_id == user.student_id))
        if taken is not None:
            raise ConflictError(f"Student id {user.student_id} is already registered")
        db_user = User(
            id=uuid.uuid4(),
            student_id=user.student_id,
            name=user.name,
            role=user.role.value,
        )
        db.add(db_user)
    logger.info(f"Registered user {db_user.student_id}")
    return db_user


def get_user_by_id(db: Session, user_id) -> User:
    try:
        user = db.get(User, user_id)
    except SQLAlchemyError as e:
        raise StoreError("fetch", str(e))
    if user is None:
        raise NotFoundError("User", user_id)
    return user


def get_users(db: Session, skip: int = 0, limit: int = 100) -> List[User]:
    try:
        return db.scalars(
            select(User).order_by(User.student_id).offset(skip).limit(limit)
        ).all()
    except SQLAlchemyError as e:
        raise StoreError("fetch", str(e))


def delete_user(db: Session, user_id) -> None:
    """Remove a user and their closed loans; refused while they hold a copy."""
    with transaction(db, "delete user"):
        user = db.scalars(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if user is None:
            raise NotFoundError("User", user_id)
        holding = db.scalar(
            select(
                exists().where(
                    BorrowRecord.user_id == user.id,
                    BorrowRecord.status == BorrowStatus.BORROWED.value,
                    BorrowRecord.returned_at.is_(None),
                )
            )
        )
        if holding:
            raise ConflictError(f"User {user_id} has copies on loan and cannot be deleted")
        db.execute(delete(BorrowRecord).where(BorrowRecord.user_id == user.id))
        db.execute(delete(User).where(User.id == user.id))
    logger.info(f"User deleted successfully: {user_id}")


def create_book(db: Session, item: schemas.BookCreate) -> Book:
    """Catalogue a book together with its ``total_copies`` physical copies."""
    with transaction(db, "create book"):
        now = utcnow()
        data = item.model_dump(exclude={"total_copies"})
        db_book = Book(id=uuid.uuid4(), total_copies=item.total_copies, created_at=now, updated_at=now, **data)
        db.add(db_book)
        db.flush()
        create_copies(db, db_book, item.total_copies)
    logger.info(f"Created book {db_book.id} ({db_book.title}) with {db_book.total_copies} copies")
    return db_book


def get_book(db: Session, book_id) -> Book:
    try:
        book = db.get(Book, book_id, populate_existing=True)
    except SQLAlchemyError as e:
        raise StoreError("fetch", str(e))
    if book is None:
        raise NotFoundError("Book", book_id)
    return book


def filter_books(db: Session, query: Optional[str] = None) -> List[schemas.BookSchema]:
    available = (
        select(func.count())
        .select_from(BookCopy)
        .where(BookCopy.book_id == Book.id, BookCopy.is_available.is_(True))
        .scalar_subquery()
    )
    stmt = select(Book, available.label("available_copies")).order_by(Book.title)
    if query:
        pattern = f"%{query}%"
        stmt = stmt.where(
            or_(
                Book.title.ilike(pattern),
                Book.author.ilike(pattern),
                Book.isbn.ilike(pattern),
                Book.jan.ilike(pattern),
                Book.ean13.ilike(pattern),
            )
        )
    try:
        rows = db.execute(stmt).all()
    except SQLAlchemyError as e:
        raise StoreError("filter", str(e))
    return [
        schemas.BookSchema.model_validate(book).model_copy(
            update={"available_copies": count}
        )
        for book, count in rows
    ]


def update_book(db: Session, book_id, item: schemas.BookUpdate) -> Book:
    """Apply metadata changes and resize the copy pool in one transaction."""
    changes = item.model_dump(exclude_unset=True, exclude={"total_copies"})
    for field in ("title", "author", "type"):
        if field in changes and not changes[field]:
            raise ValidationError(f"{field} cannot be empty")
    with transaction(db, "update book"):
        book = lock_book(db, book_id)
        old_barcode = book.barcode
        for field, value in changes.items():
            setattr(book, field, value)
        book.updated_at = utcnow()
        # resize() re-reads the book row, so pending changes go out first.
        db.flush()
        if "barcode" in changes and changes["barcode"] != old_barcode:
            # Copies still carrying the book's old label get the new one.
            stamped = (
                BookCopy.barcode.is_(None)
                if old_barcode is None
                else BookCopy.barcode == old_barcode
            )
            db.execute(
                update(BookCopy)
                .where(BookCopy.book_id == book.id, stamped)
                .values(barcode=changes["barcode"], updated_at=book.updated_at)
            )
        if item.total_copies is not None and item.total_copies != book.total_copies:
            resize(db, book.id, item.total_copies)
    logger.info(f"Updated book {book_id}")
    return book


def delete_book(db: Session, book_id, image_dir: Optional[str] = None) -> None:
    """Remove a book, its copies, closed loans and rankings.

    Refused while any copy is on loan. The cover image is removed after the
    commit on a best-effort basis.
    """
    with transaction(db, "delete book"):
        book = lock_book(db, book_id)
        copy_ids = select(BookCopy.id).where(BookCopy.book_id == book.id)
        # Lock order is book, then copies; a borrow holding a copy finishes first.
        db.scalars(copy_ids.with_for_update()).all()
        if has_open_loans(db, book.id):
            raise ConflictError(f"Book {book_id} has copies on loan and cannot be deleted")
        image_path = book.image_path

        db.execute(
            delete(BorrowRecord).where(
                BorrowRecord.book_copy_id.in_(copy_ids),
                BorrowRecord.status == BorrowStatus.RETURNED.value,
            )
        )
        db.execute(delete(MonthlyRanking).where(MonthlyRanking.book_id == book.id))
        db.execute(delete(BookCopy).where(BookCopy.book_id == book.id))
        db.execute(delete(Book).where(Book.id == book.id))

    logger.info(f"Book deleted successfully: {book_id}")
    if image_path:
        _remove_image(image_path, image_dir)


def _remove_image(image_path: str, image_dir: Optional[str] = None):
    image_dir = image_dir or os.getenv("LABLIB_IMAGE_DIR", DEFAULT_IMAGE_DIR)
    full_path = os.path.join(image_dir, os.path.basename(image_path))
    try:
        os.remove(full_path)
    except OSError as e:
        logger.warning(f"Image deletion warning: {e}")
