from datetime import datetime, timezone
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, computed_field, field_validator

from lablib.barcodes import is_valid_ean13
from lablib.models import Role


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Identity(BaseModel):
    """Caller identity as asserted by the upstream auth layer."""

    user_id: UUID
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class UserBase(BaseModel):
    student_id: str = Field(..., min_length=1, max_length=32)
    name: str = Field(..., min_length=1, max_length=200)


class UserCreate(UserBase):
    role: Role = Role.USER


class UserSchema(UserBase):
    id: UUID
    role: Role
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BookBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    author: str = Field(..., min_length=1, max_length=300)
    isbn: Optional[str] = None
    jan: Optional[str] = None
    ean13: Optional[str] = None
    type: Literal["book", "thesis"] = "book"
    barcode: Optional[str] = None
    location: Optional[str] = None
    image_path: Optional[str] = None

    @field_validator("ean13")
    @classmethod
    def check_ean13(cls, value):
        if value and not is_valid_ean13(value):
            raise ValueError("ean13 must be 13 digits with a valid check digit")
        return value or None


class BookCreate(BookBase):
    total_copies: int = Field(1, ge=0, le=1000)


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    author: Optional[str] = Field(None, min_length=1, max_length=300)
    isbn: Optional[str] = None
    jan: Optional[str] = None
    ean13: Optional[str] = None
    type: Optional[Literal["book", "thesis"]] = None
    barcode: Optional[str] = None
    location: Optional[str] = None
    image_path: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=1, le=1000)

    @field_validator("ean13")
    @classmethod
    def check_ean13(cls, value):
        if value and not is_valid_ean13(value):
            raise ValueError("ean13 must be 13 digits with a valid check digit")
        return value or None


class BookSchema(BookBase):
    id: UUID
    total_copies: int
    available_copies: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CopySchema(BaseModel):
    id: UUID
    book_id: UUID
    serial_number: str
    barcode: Optional[str] = None
    is_available: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AvailabilitySchema(BaseModel):
    book_id: UUID
    total_copies: int
    available_count: int
    has_open_loans: bool


class ResizeResult(BaseModel):
    book_id: UUID
    previous_count: int
    total_copies: int
    created: List[UUID] = []
    removed: List[UUID] = []


class CirculationRequest(BaseModel):
    key: str = Field(..., min_length=1, description="Copy id, serial number or barcode")
    user_id: Optional[UUID] = None


class BorrowResult(BaseModel):
    record_id: UUID
    user_id: UUID
    book_id: UUID
    book_copy_id: UUID
    serial_number: str
    borrowed_at: datetime
    due_date: datetime


class ReturnResult(BaseModel):
    record_id: UUID
    user_id: UUID
    book_copy_id: UUID
    returned_at: datetime


class LoanRecordSchema(BaseModel):
    id: UUID
    user_id: UUID
    user_name: Optional[str] = None
    book_copy_id: UUID
    serial_number: Optional[str] = None
    book_id: Optional[UUID] = None
    book_title: Optional[str] = None
    book_author: Optional[str] = None
    book_type: Optional[str] = None
    borrowed_at: datetime
    due_date: datetime
    returned_at: Optional[datetime] = None
    status: str

    @field_validator("borrowed_at", "due_date", "returned_at")
    @classmethod
    def normalize_tz(cls, value):
        return as_utc(value)

    @computed_field
    @property
    def is_overdue(self) -> bool:
        return self.returned_at is None and self.due_date < datetime.now(timezone.utc)


class BookDetailSchema(BaseModel):
    book: BookSchema
    availability: AvailabilitySchema
    current_loan: Optional[LoanRecordSchema] = None
    borrow_history: List[LoanRecordSchema] = []


class RankingSchema(BaseModel):
    rank: int
    month: str
    book_id: UUID
    borrow_count: int
    title: str
    author: str
    type: str
