import os
from contextlib import asynccontextmanager
import logging
from uuid import UUID
from fastapi import FastAPI, HTTPException, Depends, Header, Request, status
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from lablib import crud, history, loans, rankings
from lablib.barcodes import Resolution, resolve
from lablib.copies import list_copies
from lablib.exceptions import add_exception_handlers
from lablib.models import Role
from lablib.schemas import (
    AvailabilitySchema,
    BookCreate,
    BookDetailSchema,
    BookSchema,
    BookUpdate,
    BorrowResult,
    CirculationRequest,
    CopySchema,
    Identity,
    LoanRecordSchema,
    RankingSchema,
    ReturnResult,
    UserCreate,
    UserSchema,
)
from lablib.storage import Store

from typing import List, Optional

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        app.state.store = Store()
        app.state.store.create_all()
    yield
    if not app.state.testing:
        app.state.store.dispose()


app = FastAPI(
    title="Lab Library API",
    lifespan=lifespan,
    description="Catalogue, circulation and rankings for the lab library",
    version="1.0.0",
)

add_exception_handlers(app)


def get_db(request: Request):
    db = request.app.state.store.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Identity:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Malformed X-User-Id header")
    try:
        role = Role(x_user_role or Role.USER.value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown X-User-Role header")
    return Identity(user_id=user_id, role=role)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return identity


def _acting_user(identity: Identity, request: CirculationRequest) -> UUID:
    # Only admins may lend or take back on someone else's behalf.
    if request.user_id is None or request.user_id == identity.user_id:
        return identity.user_id
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot act for another user")
    return request.user_id


# Users
@app.post("/users/", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
def create_user(
    user: UserCreate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_admin),
):
    return crud.create_user_record(db, user)


@app.get("/users/", response_model=List[UserSchema])
def list_users(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_admin),
):
    return crud.get_users(db, skip=skip, limit=limit)


@app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: UUID,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_admin),
):
    crud.delete_user(db, user_id)


# Catalogue
@app.post("/books/", response_model=BookSchema, status_code=status.HTTP_201_CREATED)
def create_book(
    item: BookCreate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_admin),
):
    book = crud.create_book(db, item)
    return BookSchema.model_validate(book).model_copy(
        update={"available_copies": book.total_copies}
    )


@app.get("/books/", response_model=List[BookSchema])
def list_books(
    query: Optional[str] = None,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    return crud.filter_books(db, query)


@app.get("/books/{book_id}", response_model=BookDetailSchema)
def fetch_single_book(
    book_id: UUID,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    return history.book_detail(db, book_id)


@app.put("/books/{book_id}", response_model=BookSchema)
def update_book(
    book_id: UUID,
    item: BookUpdate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_admin),
):
    book = crud.update_book(db, book_id, item)
    stats = history.availability(db, book.id)
    return BookSchema.model_validate(book).model_copy(
        update={"available_copies": stats.available_count}
    )


@app.delete("/books/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_book(
    book_id: UUID,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_admin),
):
    crud.delete_book(db, book_id)


@app.get("/books/{book_id}/availability", response_model=AvailabilitySchema)
def book_availability(
    book_id: UUID,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    return history.availability(db, book_id)


@app.get("/books/{book_id}/copies", response_model=List[CopySchema])
def book_copies(
    book_id: UUID,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    return list_copies(db, book_id)


# Circulation
@app.post("/borrow/", response_model=BorrowResult, status_code=status.HTTP_201_CREATED)
def borrow_copy(
    borrow_request: CirculationRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    user_id = _acting_user(identity, borrow_request)
    return loans.borrow(db, borrow_request.key, user_id)


@app.post("/return/", response_model=ReturnResult)
def return_copy(
    return_request: CirculationRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    user_id = _acting_user(identity, return_request)
    return loans.return_copy(db, return_request.key, user_id)


# Queries
@app.get("/history/", response_model=List[LoanRecordSchema])
def loan_history(
    user_id: Optional[UUID] = None,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    return history.history(db, identity, user_id)


@app.get("/history/{record_id}", response_model=LoanRecordSchema)
def loan_detail(
    record_id: UUID,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    return history.loan_detail(db, record_id, identity)


@app.get("/rankings/", response_model=List[RankingSchema])
def monthly_rankings(
    month: Optional[str] = None,
    limit: int = rankings.DEFAULT_LIMIT,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    return rankings.top(db, month, limit)


@app.get("/resolve/{code}", response_model=Resolution)
def resolve_code(
    code: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    return resolve(db, code)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("LABLIB_PORT", "8000"))
    logger.info(f"Starting lab library server on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
