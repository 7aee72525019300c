import os

# Configure before the application modules read their settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("START_SCAN_WORKER", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from netinventory.main import app
from netinventory.db.session import get_db
from netinventory.db import models
from netinventory.services.probe_engine import DiscoveredServiceResult

# Use in-memory SQLite for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session")
def test_engine():
    """Create test database engine."""
    models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_connection(test_engine):
    """One connection per test, rolled back afterwards."""
    connection = test_engine.connect()
    transaction = connection.begin()

    yield connection

    transaction.rollback()
    connection.close()


@pytest.fixture
def db_session(db_connection):
    """Create a fresh database session for each test."""
    session = TestingSessionLocal(bind=db_connection)

    yield session

    session.close()


@pytest.fixture
def session_factory():
    """
    Session factory on a private in-memory database.

    For code that opens, commits and rolls back its own sessions (the scan
    worker), which cannot share the rolled-back test transaction.
    """
    isolated_engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=isolated_engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=isolated_engine)

    isolated_engine.dispose()


@pytest.fixture
def client(db_session):
    """Create test client with database dependency override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def make_result():
    """Build probe results without touching the network."""
    def _make(host="192.168.1.10", port=80, service_type="HTTP", banner=None, response_time_ms=1.5, host_name=None):
        return DiscoveredServiceResult(
            host_address=host,
            host_name=host_name or host,
            port=port,
            is_reachable=True,
            response_time_ms=response_time_ms,
            service_type=service_type,
            banner=banner,
        )
    return _make


@pytest.fixture
def home_subnet(db_session):
    """A /24 with a gateway and a DHCP pool."""
    subnet = models.Subnet(
        network="192.168.1.0/24",
        gateway="192.168.1.1",
        dhcp_start="192.168.1.100",
        dhcp_end="192.168.1.199",
        description="Home LAN",
    )
    db_session.add(subnet)
    db_session.commit()
    db_session.refresh(subnet)
    return subnet
