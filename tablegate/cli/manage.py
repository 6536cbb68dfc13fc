# ABOUTME: Management CLI for database setup, API users, secrets and storage cleanup
# ABOUTME: Exposed as the tablegate-manage console script

import argparse
import secrets
import sys
from typing import Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from tablegate.config import Settings, get_settings
from tablegate.models.database import ApiUser, Base
from tablegate.services.auth import hash_password
from tablegate.services.monitor import Monitor
from tablegate.services.rate_limiter import RateLimiter
from tablegate.services.request_logger import RequestLogger

ROLES = ("admin", "editor", "readonly")


def init_database(database_url: str) -> None:
    """Create the api_users table if it does not exist."""
    engine = create_engine(database_url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()


def create_user(database_url: str, username: str, email: str, password: str, role: str = "readonly") -> str:
    """
    Create an API user with a bcrypt password hash and a fresh API key.

    Returns:
        The generated API key

    Raises:
        ValueError: If the username or email is already taken
    """
    engine = create_engine(database_url)
    Session = sessionmaker(bind=engine)
    api_key = secrets.token_hex(32)

    try:
        with Session() as session:
            session.add(ApiUser(
                username=username,
                email=email,
                password_hash=hash_password(password),
                role=role,
                api_key=api_key,
                active=True,
            ))
            session.commit()
    except IntegrityError as exc:
        raise ValueError(f"User '{username}' or email '{email}' already exists") from exc
    finally:
        engine.dispose()
    return api_key


def generate_secret(num_bytes: int = 32) -> str:
    """Random hex string suitable for AUTH__JWT_SECRET."""
    return secrets.token_hex(num_bytes)


def cleanup_storage(settings: Settings, rate_limit_age: int = 3600) -> Dict[str, int]:
    """
    Remove stale rate-limit records, expired monitor files and surplus log files.

    Returns:
        Number of files removed per store
    """
    return {
        "rate_limits": RateLimiter(settings.rate_limit).cleanup(rate_limit_age),
        "monitor_files": Monitor(settings.monitoring).cleanup(),
        "log_files": RequestLogger(settings.logging).cleanup(),
    }


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(description="tablegate management commands")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the api_users table")

    user_parser = subparsers.add_parser("create-user", help="Create an API user")
    user_parser.add_argument("username")
    user_parser.add_argument("email")
    user_parser.add_argument("password")
    user_parser.add_argument("--role", choices=ROLES, default="readonly", help="RBAC role (default: readonly)")

    secret_parser = subparsers.add_parser("generate-secret", help="Print a random JWT secret")
    secret_parser.add_argument("--bytes", type=int, default=32, help="Entropy in bytes (default: 32)")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete stale rate-limit, metric and log files")
    cleanup_parser.add_argument("--rate-limit-age", type=int, default=3600,
                                help="Remove rate-limit records untouched for this many seconds")

    args = parser.parse_args(argv)
    settings = get_settings()

    if args.command == "init-db":
        init_database(settings.database_url)
        print("Database initialized.")

    elif args.command == "create-user":
        try:
            api_key = create_user(settings.database_url, args.username, args.email, args.password, args.role)
        except ValueError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(f"Created user '{args.username}' with role '{args.role}'")
        print(f"API key: {api_key}")

    elif args.command == "generate-secret":
        print(generate_secret(args.bytes))

    elif args.command == "cleanup":
        removed = cleanup_storage(settings, args.rate_limit_age)
        for store, count in removed.items():
            print(f"{store}: removed {count}")


if __name__ == "__main__":
    main()
