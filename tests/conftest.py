"""
Shared test fixtures.

Sets up an isolated test database so tests never touch
the real database. Tables are created before each test and
dropped after it, so no test data persists.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from roommate_ledger.main import app
from roommate_ledger.models.base import Base, get_store
from roommate_ledger.models.store import DocumentStore
from roommate_ledger.schemas.apartment import ApartmentCreate
from roommate_ledger.services.apartment_directory import ApartmentDirectory


# SQLite file database: separate sessions see each other's
# commits, which the conflict tests rely on.
TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)

TestSessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)


@pytest.fixture(autouse=True)
def setup_database():
    """
    Create all tables before each test, drop them after.

    autouse=True means every test gets this automatically.
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store():
    """Provide a document store on the test database."""
    return DocumentStore(TestSessionLocal)


@pytest.fixture
def apartment(store):
    """An apartment with members A, B and C."""
    return ApartmentDirectory(store).register(ApartmentCreate(
        id="apt-1", name="Test Apartment", members=["A", "B", "C"],
    ))


@pytest.fixture
def client(store):
    """
    Provide a test client with the test database.

    We override the get_store dependency so the FastAPI app
    uses our test store instead of the real database.
    """
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
