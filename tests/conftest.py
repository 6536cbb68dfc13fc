# ABOUTME: Pytest fixtures and configuration
# ABOUTME: Provides the test database with sample tables, per-test settings, pipeline and client fixtures

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import MetaData, create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tablegate.config import Settings
from tablegate.dependencies import get_pipeline
from tablegate.main import app
from tablegate.models.database import Base
from tablegate.services.pipeline import build_pipeline


# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

ADMIN_KEY = "test-admin-key"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

SAMPLE_TABLES = [
    """
    CREATE TABLE users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT,
        status TEXT DEFAULT 'active',
        age INTEGER,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE posts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER,
        title TEXT NOT NULL,
        views INTEGER CHECK (views IS NULL OR typeof(views) = 'integer')
    )
    """,
]


def insert_users(rows):
    """Insert user rows (dicts) into the sample users table."""
    with engine.begin() as conn:
        for row in rows:
            columns = ", ".join(row)
            placeholders = ", ".join(f":{c}" for c in row)
            conn.execute(text(f"INSERT INTO users ({columns}) VALUES ({placeholders})"), row)


def make_settings(tmp_path, **overrides):
    """
    Settings isolated to tmp_path.

    Auth uses a static admin API key, the cache lives in memory and the rate
    limit is high enough not to interfere unless a test lowers it.
    """
    values = {
        "database_url": TEST_DATABASE_URL,
        "auth": {
            "enabled": True,
            "method": "apikey",
            "api_keys": [ADMIN_KEY],
            "api_key_role": "admin",
        },
        "rate_limit": {"max_requests": 1000, "window_seconds": 60, "storage_dir": str(tmp_path / "rate_limits")},
        "cache": {"driver": "memory", "file_path": str(tmp_path / "cache")},
        "logging": {"log_dir": str(tmp_path / "logs")},
        "monitoring": {"metrics_dir": str(tmp_path / "metrics"), "alerts_dir": str(tmp_path / "alerts")},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(values.get(key), dict):
            values[key] = {**values[key], **value}
        else:
            values[key] = value
    return Settings(_env_file=None, **values)


@pytest.fixture(scope="function", autouse=True)
def setup_database():
    """Create tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        for ddl in SAMPLE_TABLES:
            conn.execute(text(ddl))

    yield
    # Drop all tables including the sample ones
    metadata = MetaData()
    metadata.reflect(bind=engine)
    metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Provides a database session for tests."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def pipeline(settings):
    """Pipeline wired to the test database."""
    return build_pipeline(settings, engine)


@pytest.fixture
def client(pipeline):
    """Provides a FastAPI test client using the test pipeline."""
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def db_engine():
    """The shared in-memory test engine."""
    return engine


@pytest.fixture
def seed_users():
    """Returns a helper inserting user rows into the sample users table."""
    return insert_users


@pytest.fixture
def settings_factory(tmp_path):
    """Returns a helper building isolated Settings with section overrides."""
    def factory(**overrides):
        return make_settings(tmp_path, **overrides)
    return factory


@pytest.fixture
def client_factory(settings_factory):
    """Returns a helper yielding a TestClient for a pipeline built from overrides."""
    def factory(hooks=None, **overrides):
        pipeline = build_pipeline(settings_factory(**overrides), engine, hooks=hooks)
        app.dependency_overrides[get_pipeline] = lambda: pipeline
        return TestClient(app)

    yield factory
    app.dependency_overrides.clear()
