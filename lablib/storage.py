import os
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from dotenv import load_dotenv

from lablib.exceptions import StoreError
from lablib.models import Base

load_dotenv()
logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./lablib.db"


def create_store_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(
        url, connect_args={"check_same_thread": False, "timeout": 30}
    )

    # SQLite has no row locks: every transaction takes the write lock up front
    # so concurrent check-then-flip sequences run one after another.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@contextmanager
def transaction(db: Session, operation: str):
    """Run the enclosed statements as one unit of work.

    Commits when the block finishes; on any error rolls back everything the
    block did. Driver errors surface as ``StoreError``, domain errors as-is.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Rolled back {operation}: {e}")
        raise StoreError(operation, str(e)) from e
    except BaseException:
        db.rollback()
        raise


class Store:
    """Process-owned database handle.

    Holds the engine and the session factory. Components never open their
    own connections; they are handed a ``Session`` made from this store.
    """

    def __init__(self, url: str | None = None):
        self.url = url or os.getenv("SQLALCHEMY_DATABASE_URL", DEFAULT_DATABASE_URL)
        self.engine = create_store_engine(self.url)
        self.session_factory = sessionmaker(
            autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_all(self):
        logger.info("Creating tables")
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()
