import re
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lablib.exceptions import StoreError, ValidationError
from lablib.models import Book, MonthlyRanking, utcnow
from lablib.schemas import RankingSchema

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
DEFAULT_LIMIT = 10
MAX_LIMIT = 100

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def month_key(moment: Optional[datetime] = None) -> str:
    return (moment or utcnow()).strftime("%Y-%m")


def record_borrow(db: Session, month: str, book_id) -> None:
    """Credit one borrow of ``book_id`` in ``month``.

    Runs inside the borrow's transaction and never commits on its own.
    """
    insert = _UPSERT_INSERTS.get(db.get_bind().dialect.name)
    if insert is not None:
        stmt = insert(MonthlyRanking).values(
            id=uuid.uuid4(), month=month, book_id=book_id, borrow_count=1
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[MonthlyRanking.month, MonthlyRanking.book_id],
            set_={"borrow_count": MonthlyRanking.borrow_count + 1},
        )
        db.execute(stmt)
        return

    ranking = db.scalars(
        select(MonthlyRanking)
        .where(MonthlyRanking.month == month, MonthlyRanking.book_id == book_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if ranking is None:
        db.add(MonthlyRanking(month=month, book_id=book_id, borrow_count=1))
    else:
        ranking.borrow_count = MonthlyRanking.borrow_count + 1
    db.flush()


def top(db: Session, month: Optional[str] = None, limit: int = DEFAULT_LIMIT) -> List[RankingSchema]:
    month = month or month_key()
    if not MONTH_PATTERN.match(month):
        raise ValidationError(f"month must look like YYYY-MM, got {month!r}")
    if not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")

    try:
        rows = db.execute(
            select(
                MonthlyRanking.month,
                MonthlyRanking.book_id,
                MonthlyRanking.borrow_count,
                Book.title,
                Book.author,
                Book.type,
            )
            .join(Book, MonthlyRanking.book_id == Book.id)
            .where(MonthlyRanking.month == month)
            .order_by(MonthlyRanking.borrow_count.desc(), Book.title)
            .limit(limit)
        ).all()
    except SQLAlchemyError as e:
        raise StoreError("rankings", str(e))

    return [
        RankingSchema(rank=position, **row._mapping)
        for position, row in enumerate(rows, start=1)
    ]


def borrow_count(db: Session, month: str, book_id) -> int:
    count = db.scalar(
        select(MonthlyRanking.borrow_count).where(
            MonthlyRanking.month == month, MonthlyRanking.book_id == book_id
        )
    )
    return count or 0
