import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BorrowStatus(str, enum.Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"


class Role(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(String(32), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    role = Column(String(16), nullable=False, default=Role.USER.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Book(Base):
    __tablename__ = "books"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(300), nullable=False, index=True)
    author = Column(String(300), nullable=False)
    isbn = Column(String(32), nullable=True, index=True)
    jan = Column(String(32), nullable=True)
    ean13 = Column(String(13), nullable=True)
    type = Column(String(16), nullable=False, default="book")
    # Kept equal to the number of book_copies rows by the copy pool.
    total_copies = Column(Integer, nullable=False, default=0)
    barcode = Column(String(64), nullable=True)
    location = Column(String(200), nullable=True)
    image_path = Column(String(300), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    copies = relationship("BookCopy", back_populates="book", passive_deletes=True)


class BookCopy(Base):
    __tablename__ = "book_copies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True
    )
    serial_number = Column(String(32), unique=True, nullable=False)
    barcode = Column(String(64), nullable=True, index=True)
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    book = relationship("Book", back_populates="copies")
    borrow_records = relationship("BorrowRecord", back_populates="book_copy")


class BorrowRecord(Base):
    __tablename__ = "borrow_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    book_copy_id = Column(
        Uuid, ForeignKey("book_copies.id"), nullable=False, index=True
    )
    borrowed_at = Column(DateTime(timezone=True), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    returned_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(16), nullable=False, default=BorrowStatus.BORROWED.value)

    user = relationship("User")
    book_copy = relationship("BookCopy", back_populates="borrow_records")


class MonthlyRanking(Base):
    __tablename__ = "monthly_rankings"
    __table_args__ = (UniqueConstraint("month", "book_id", name="uq_ranking_month_book"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    month = Column(String(7), nullable=False, index=True)
    book_id = Column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False
    )
    borrow_count = Column(Integer, nullable=False, default=0)

    book = relationship("Book")
