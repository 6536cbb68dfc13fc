# ABOUTME: Tests for the tablegate-manage CLI
# ABOUTME: Validates database init, user creation, secret generation and storage cleanup commands

import os
import time

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker

from tablegate.cli.manage import cleanup_storage, create_user, generate_secret, init_database, main
from tablegate.config import get_settings
from tablegate.models.database import ApiUser
from tablegate.services.auth import verify_password


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'manage.db'}"


@pytest.fixture
def cli_env(monkeypatch, database_url):
    """Point get_settings at a temporary database for main()."""
    monkeypatch.setenv("DATABASE_URL", database_url)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_init_database_creates_api_users(database_url):
    init_database(database_url)

    assert "api_users" in inspect(create_engine(database_url)).get_table_names()


def test_create_user_hashes_password_and_returns_key(database_url):
    """The stored user has a bcrypt hash and the returned API key."""
    init_database(database_url)

    api_key = create_user(database_url, "ann", "ann@example.com", "s3cret", role="editor")

    assert len(api_key) == 64
    session = sessionmaker(bind=create_engine(database_url))()
    try:
        user = session.query(ApiUser).filter_by(username="ann").first()
        assert user.role == "editor"
        assert user.api_key == api_key
        assert user.password_hash != "s3cret"
        assert verify_password("s3cret", user.password_hash)
    finally:
        session.close()


def test_create_user_rejects_duplicates(database_url):
    init_database(database_url)
    create_user(database_url, "ann", "ann@example.com", "pw")

    with pytest.raises(ValueError, match="already exists"):
        create_user(database_url, "ann", "ann2@example.com", "pw")


def test_generate_secret():
    first = generate_secret()

    assert len(first) == 64
    assert first != generate_secret()
    assert len(generate_secret(16)) == 32


def test_cleanup_storage_reports_removed_files(settings_factory, tmp_path):
    """Stale rate-limit records are removed and counted per store."""
    settings = settings_factory()
    rl_dir = tmp_path / "rate_limits"
    rl_dir.mkdir(parents=True, exist_ok=True)
    stale = rl_dir / "ratelimit_deadbeef.json"
    stale.write_text("[]")
    old = time.time() - 7200
    os.utime(stale, (old, old))

    removed = cleanup_storage(settings, rate_limit_age=3600)

    assert removed == {"rate_limits": 1, "monitor_files": 0, "log_files": 0}
    assert not stale.exists()


def test_main_init_db_and_create_user(cli_env, database_url, capsys):
    """The CLI initialises the database and prints the new API key."""
    main(["init-db"])
    main(["create-user", "ops", "ops@example.com", "pw", "--role", "admin"])

    output = capsys.readouterr().out
    assert "Database initialized." in output
    assert "Created user 'ops' with role 'admin'" in output
    assert "API key: " in output


def test_main_duplicate_user_exits_with_error(cli_env, capsys):
    main(["init-db"])
    main(["create-user", "ops", "ops@example.com", "pw"])

    with pytest.raises(SystemExit) as exc_info:
        main(["create-user", "ops", "ops@example.com", "pw"])

    assert exc_info.value.code == 1
    assert "Error: User 'ops'" in capsys.readouterr().out


def test_main_generate_secret(capsys):
    main(["generate-secret", "--bytes", "8"])

    assert len(capsys.readouterr().out.strip()) == 16


def test_main_rejects_unknown_role():
    with pytest.raises(SystemExit):
        main(["create-user", "x", "x@example.com", "pw", "--role", "superuser"])
