# ABOUTME: Tests for the api_users model and table creation
# ABOUTME: Validates table setup, column defaults and uniqueness constraints

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import IntegrityError

from tablegate.models.database import ApiUser, Base


def make_user(**overrides):
    values = {
        "username": "ann",
        "email": "ann@example.com",
        "password_hash": "hash",
        "api_key": "key-ann",
    }
    values.update(overrides)
    return ApiUser(**values)


def test_create_all_builds_api_users_table():
    """Base metadata creates the api_users table with its columns."""
    test_engine = create_engine("sqlite:///:memory:")

    Base.metadata.create_all(bind=test_engine)

    inspector = inspect(test_engine)
    assert "api_users" in inspector.get_table_names()
    columns = {c["name"] for c in inspector.get_columns("api_users")}
    assert {"username", "email", "password_hash", "role", "api_key", "active", "last_login"} <= columns


def test_api_user_defaults(db_session):
    """New users are active readonly accounts with timestamps."""
    db_session.add(make_user())
    db_session.commit()

    user = db_session.query(ApiUser).filter_by(username="ann").first()
    assert user.role == "readonly"
    assert user.active is True
    assert user.created_at is not None
    assert user.last_login is None


@pytest.mark.parametrize("duplicate", [
    {"username": "ann", "email": "other@example.com", "api_key": "key-2"},
    {"username": "bob", "email": "ann@example.com", "api_key": "key-2"},
    {"username": "bob", "email": "bob@example.com", "api_key": "key-ann"},
])
def test_unique_constraints(db_session, duplicate):
    """Usernames, emails and API keys are unique."""
    db_session.add(make_user())
    db_session.commit()

    db_session.add(make_user(**duplicate))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()
