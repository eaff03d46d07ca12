import pytest
from fastapi.testclient import TestClient
from lablib.main import app, get_db
from lablib.crud import create_user_record, create_book
from lablib.models import Role
from lablib.schemas import UserCreate, BookCreate
from lablib.storage import Store


# File-backed SQLite so several threads can share the database
@pytest.fixture(scope="session")
def store(tmp_path_factory):
    db_file = tmp_path_factory.mktemp("db") / "test.db"
    store = Store(f"sqlite:///{db_file}")
    yield store
    store.dispose()


@pytest.fixture(scope="function")
def db_session(store):
    store.create_all()
    session = store.session_factory()
    try:
        yield session
    finally:
        session.close()
        store.drop_all()


@pytest.fixture(scope="module")
def client(store):
    app.state.testing = True
    app.state.store = store

    def override_get_db():
        try:
            db = store.session_factory()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False


@pytest.fixture(scope="function")
def test_user(db_session):
    user_data = UserCreate(student_id="s1001", name="Test User")
    return create_user_record(db_session, user_data)


@pytest.fixture(scope="function")
def other_user(db_session):
    user_data = UserCreate(student_id="s1002", name="Other User")
    return create_user_record(db_session, user_data)


@pytest.fixture(scope="function")
def admin_user(db_session):
    user_data = UserCreate(student_id="staff01", name="Desk Admin", role=Role.ADMIN)
    return create_user_record(db_session, user_data)


@pytest.fixture(scope="function")
def test_book(db_session):
    book_data = BookCreate(
        title="Test Book",
        author="Test Author",
        isbn="9780000000001",
        barcode="LAB-0001",
        location="Shelf A",
        total_copies=2,
    )
    return create_book(db_session, book_data)


@pytest.fixture
def auth():
    def headers(user):
        return {"X-User-Id": str(user.id), "X-User-Role": user.role}

    return headers
