# ABOUTME: Tests for request authentication and JWT login
# ABOUTME: Validates API keys, Basic and Bearer auth, database users, identifiers and token handling

import base64
from datetime import timedelta

import pytest
from freezegun import freeze_time
from sqlalchemy.orm import sessionmaker

from tablegate.config import AuthConfig
from tablegate.models.database import ApiUser
from tablegate.models.errors import ApiError
from tablegate.models.requests import ApiRequest
from tablegate.services.auth import (
    Authenticator,
    LoginHandler,
    client_ip,
    hash_api_key,
    hash_password,
    verify_password,
)


def make_request(headers=None, params=None, body=None, ip="127.0.0.1"):
    return ApiRequest.build("GET", params or {}, headers or {}, body=body, client_ip=ip)


def basic_header(username, password):
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False)


@pytest.fixture
def db_user(db_session):
    """An active database user with a bcrypt password and API key."""
    user = ApiUser(
        username="dbuser",
        email="dbuser@example.com",
        password_hash=hash_password("correct-horse"),
        role="editor",
        api_key="db-user-api-key",
        active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


def test_password_hashing():
    hashed = hash_password("s3cret")

    assert hashed != "s3cret"
    assert verify_password("s3cret", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("s3cret", "not-a-hash")


def test_static_api_key(session_factory):
    """Configured keys authenticate with the configured role."""
    auth = Authenticator(AuthConfig(method="apikey", api_keys=["k1", "k2"], api_key_role="editor"), session_factory)

    result = auth.authenticate(make_request(headers={"X-API-Key": "k2"}))

    assert result.ok
    assert result.role == "editor"
    assert auth.authenticate(make_request(params={"api_key": "k1"})).ok


def test_api_key_failures(session_factory):
    auth = Authenticator(AuthConfig(method="apikey", api_keys=["k1"]), session_factory)

    assert auth.authenticate(make_request()).reason == "Missing API key"
    assert auth.authenticate(make_request(headers={"X-API-Key": "nope"})).reason == "Invalid API key"


def test_database_api_key(session_factory, db_user):
    """API keys stored on api_users authenticate as that user."""
    auth = Authenticator(AuthConfig(method="apikey"), session_factory)

    result = auth.authenticate(make_request(headers={"X-API-Key": "db-user-api-key"}))

    assert result.ok
    assert result.user == "dbuser"
    assert result.role == "editor"


def test_basic_auth_with_database_user(session_factory, db_user, db_session):
    """Database users authenticate with their bcrypt password and get last_login set."""
    auth = Authenticator(AuthConfig(method="basic"), session_factory)

    result = auth.authenticate(make_request(headers=basic_header("dbuser", "correct-horse")))

    assert result.ok
    assert result.user == "dbuser"
    assert result.role == "editor"
    db_session.expire_all()
    assert db_session.query(ApiUser).filter_by(username="dbuser").first().last_login is not None


def test_basic_auth_inactive_user_rejected(session_factory, db_user, db_session):
    db_user.active = False
    db_session.commit()
    auth = Authenticator(AuthConfig(method="basic"), session_factory)

    result = auth.authenticate(make_request(headers=basic_header("dbuser", "correct-horse")))

    assert not result.ok
    assert result.reason == "Invalid credentials"


def test_basic_auth_config_fallback():
    """Config users work without a database and take roles from user_roles."""
    auth = Authenticator(AuthConfig(
        method="basic",
        basic_users={"ops": "pw"},
        user_roles={"ops": "admin"},
        use_database_auth=False,
    ))

    result = auth.authenticate(make_request(headers=basic_header("ops", "pw")))
    assert result.ok
    assert result.role == "admin"

    assert auth.authenticate(make_request(headers=basic_header("ops", "bad"))).reason == "Invalid credentials"
    assert auth.authenticate(make_request()).reason == "Missing credentials"
    assert auth.authenticate(make_request(headers={"Authorization": "Basic !!!"})).reason == "Missing credentials"


def test_jwt_round_trip():
    """Tokens carry sub and role claims and verify with the configured secret."""
    auth = Authenticator(AuthConfig(method="jwt", jwt_secret="test-secret"))
    token = auth.create_jwt({"sub": "ann", "role": "editor"})

    result = auth.authenticate(make_request(headers={"Authorization": f"Bearer {token}"}))

    assert result.ok
    assert result.user == "ann"
    assert result.role == "editor"


def test_jwt_role_falls_back_to_user_roles():
    auth = Authenticator(AuthConfig(method="jwt", jwt_secret="s", user_roles={"ann": "admin"}))
    token = auth.create_jwt({"sub": "ann"})

    assert auth.authenticate(make_request(headers={"Authorization": f"Bearer {token}"})).role == "admin"


def test_jwt_rejections():
    """Missing, tampered, foreign and expired tokens are rejected."""
    auth = Authenticator(AuthConfig(method="jwt", jwt_secret="right", jwt_expiration=60))
    other = Authenticator(AuthConfig(method="jwt", jwt_secret="wrong"))

    assert auth.authenticate(make_request()).reason == "Missing bearer token"
    foreign = other.create_jwt({"sub": "ann"})
    assert auth.authenticate(make_request(headers={"Authorization": f"Bearer {foreign}"})).reason == "Invalid or expired token"

    with freeze_time("2024-05-01 12:00:00") as frozen:
        token = auth.create_jwt({"sub": "ann"})
        assert auth.decode_jwt(token)["sub"] == "ann"
        frozen.tick(timedelta(seconds=120))
        assert auth.decode_jwt(token) is None


def test_jwt_issuer_and_audience():
    """Configured iss/aud claims are set and enforced."""
    auth = Authenticator(AuthConfig(method="jwt", jwt_secret="s", jwt_issuer="tablegate", jwt_audience="clients"))
    plain = Authenticator(AuthConfig(method="jwt", jwt_secret="s"))

    claims = auth.decode_jwt(auth.create_jwt({"sub": "ann"}))
    assert claims["iss"] == "tablegate"
    assert claims["aud"] == "clients"
    assert auth.decode_jwt(plain.create_jwt({"sub": "ann"})) is None


def test_login_issues_token():
    """Valid credentials yield a token, expiry and role."""
    auth = Authenticator(AuthConfig(
        method="jwt", jwt_secret="s", basic_users={"ann": "pw"}, use_database_auth=False,
    ))
    handler = LoginHandler(auth)

    result = handler.login(make_request(body={"username": "ann", "password": "pw"}))

    assert result["user"] == "ann"
    assert result["role"] == "readonly"
    assert auth.decode_jwt(result["token"])["exp"] == result["expires_at"]


def test_login_rejects_bad_credentials():
    handler = LoginHandler(Authenticator(AuthConfig(method="jwt", basic_users={"ann": "pw"}, use_database_auth=False)))

    result = handler.login(make_request(body={"username": "ann", "password": "nope"}))

    assert isinstance(result, ApiError)
    assert result.status == 401
    assert result.message == "Invalid credentials"
    assert isinstance(handler.login(make_request(body="not a dict")), ApiError)


def test_identify_prefers_user_then_api_key_then_ip():
    """Rate-limit identifiers never contain a raw API key."""
    jwt_auth = Authenticator(AuthConfig(method="jwt", jwt_secret="s"))
    token = jwt_auth.create_jwt({"sub": "ann"})
    assert jwt_auth.identify(make_request(headers={"Authorization": f"Bearer {token}"})) == "user:ann"

    key_auth = Authenticator(AuthConfig(method="apikey"))
    assert key_auth.identify(make_request(headers={"X-API-Key": "abc"})) == f"apikey:{hash_api_key('abc')}"
    assert key_auth.identify(make_request(ip="10.1.1.1")) == "ip:10.1.1.1"


def test_client_ip_resolution():
    """X-Forwarded-For wins, then X-Real-IP, then the socket address."""
    assert client_ip(make_request(headers={"X-Forwarded-For": "1.1.1.1, 2.2.2.2"})) == "1.1.1.1"
    assert client_ip(make_request(headers={"X-Real-IP": "3.3.3.3"})) == "3.3.3.3"
    assert client_ip(make_request(ip="4.4.4.4")) == "4.4.4.4"
    assert client_ip(make_request(ip=None)) == "unknown"


def test_disabled_auth_allows_everything():
    auth = Authenticator(AuthConfig(enabled=False))

    assert auth.authenticate(make_request()).ok


def test_identify_does_not_trust_basic_usernames():
    """Basic credentials are unverified at rate-limit time, so the address is used."""
    basic_auth = Authenticator(AuthConfig(method="basic", basic_users={"ann": "pw"}))

    identifier = basic_auth.identify(make_request(headers=basic_header("ann", "wrong"), ip="10.0.0.1"))

    assert identifier == "ip:10.0.0.1"
    assert basic_auth.current_user(make_request(headers=basic_header("ann", "pw"))) is None
