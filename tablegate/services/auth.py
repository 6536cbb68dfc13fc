# ABOUTME: Authentication for API requests and the JWT login action
# ABOUTME: Supports API keys, HTTP Basic and Bearer JWTs with database-backed users and config fallback

import base64
import binascii
import hashlib
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Union

import structlog
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tablegate.config import AuthConfig
from tablegate.models.database import ApiUser
from tablegate.models.errors import ApiError, ErrorKind
from tablegate.models.requests import ApiRequest

logger = structlog.get_logger()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

DEFAULT_LOGIN_ROLE = "readonly"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        return False


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def client_ip(request: ApiRequest) -> str:
    """First X-Forwarded-For entry, then X-Real-IP, then the socket peer."""
    forwarded = request.header("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.header("x-real-ip") or request.client_ip or "unknown"


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    method: str
    user: Optional[str] = None
    role: Optional[str] = None
    reason: Optional[str] = None


class Authenticator:
    """
    Checks request credentials against the configured auth method.

    Database lookups go through ``session_factory``; when the database is
    unavailable or ``use_database_auth`` is off, the config-file users are
    used instead.
    """

    def __init__(self, config: AuthConfig, session_factory: Optional[Callable[[], Session]] = None):
        self.config = config
        self.session_factory = session_factory

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @staticmethod
    def bearer_token(request: ApiRequest) -> Optional[str]:
        header = request.header("authorization") or ""
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    @staticmethod
    def basic_credentials(request: ApiRequest) -> Optional[Tuple[str, str]]:
        header = request.header("authorization") or ""
        scheme, _, encoded = header.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return None
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        username, sep, password = decoded.partition(":")
        if not sep:
            return None
        return username, password

    def authenticate(self, request: ApiRequest) -> AuthResult:
        """
        Authenticate a request with the configured method.

        Returns:
            AuthResult with the user and role on success, or ok=False with a reason
        """
        method = self.config.method
        if not self.config.enabled:
            return AuthResult(True, "none")

        if method == "apikey":
            return self._authenticate_api_key(request)

        if method == "basic":
            credentials = self.basic_credentials(request)
            if credentials is None:
                return AuthResult(False, method, reason="Missing credentials")
            account = self.verify_credentials(*credentials)
            if account is None:
                return AuthResult(False, method, user=credentials[0], reason="Invalid credentials")
            return AuthResult(True, method, user=account["user"], role=account["role"])

        token = self.bearer_token(request)
        if token is None:
            return AuthResult(False, method, reason="Missing bearer token")
        claims = self.decode_jwt(token)
        if claims is None:
            return AuthResult(False, method, reason="Invalid or expired token")
        user = claims.get("sub")
        role = claims.get("role") or self.config.user_roles.get(user or "")
        return AuthResult(True, method, user=user, role=role)

    def _authenticate_api_key(self, request: ApiRequest) -> AuthResult:
        key = request.api_key
        if not key:
            return AuthResult(False, "apikey", reason="Missing API key")
        if any(secrets.compare_digest(key, candidate) for candidate in self.config.api_keys):
            return AuthResult(True, "apikey", role=self.config.api_key_role)

        if self.config.use_database_auth and self.session_factory is not None:
            try:
                with self.session_factory() as db:
                    user = db.query(ApiUser).filter(ApiUser.api_key == key, ApiUser.active.is_(True)).first()
                    if user is not None:
                        return AuthResult(True, "apikey", user=user.username, role=user.role)
            except SQLAlchemyError as exc:
                logger.warning("auth.database_unavailable", error=str(exc))
        return AuthResult(False, "apikey", reason="Invalid API key")

    def current_user(self, request: ApiRequest) -> Optional[str]:
        """
        User proven by a signed JWT, or None.

        Basic credentials are not checked until the authentication stage,
        so a Basic username is never trusted here.
        """
        if self.config.method != "jwt":
            return None
        token = self.bearer_token(request)
        claims = self.decode_jwt(token) if token else None
        return claims.get("sub") if claims else None

    def identify(self, request: ApiRequest) -> str:
        """
        Rate-limit identifier for a request.

        Authenticated user first, then a hash of the API key, then client IP.
        """
        user = self.current_user(request) if self.config.enabled else None
        if user:
            return f"user:{user}"
        if request.api_key:
            return f"apikey:{hash_api_key(request.api_key)}"
        return f"ip:{client_ip(request)}"

    def create_jwt(self, payload: Dict[str, Any], ttl: Optional[int] = None) -> str:
        now = int(time.time())
        claims: Dict[str, Any] = {"iat": now, "exp": now + (ttl or self.config.jwt_expiration)}
        if self.config.jwt_issuer:
            claims["iss"] = self.config.jwt_issuer
        if self.config.jwt_audience:
            claims["aud"] = self.config.jwt_audience
        claims.update(payload)
        return jwt.encode(claims, self.config.jwt_secret, algorithm=self.config.jwt_algorithm)

    def decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            return jwt.decode(
                token,
                self.config.jwt_secret,
                algorithms=[self.config.jwt_algorithm],
                audience=self.config.jwt_audience or None,
                issuer=self.config.jwt_issuer or None,
            )
        except JWTError:
            return None

    def verify_credentials(self, username: str, password: str) -> Optional[Dict[str, Optional[str]]]:
        """
        Check a username/password pair.

        The api_users table is tried first (bcrypt hash, active users only,
        updating last_login on success); the config ``basic_users`` map is
        the fallback.

        Returns:
            {"user": ..., "role": ...} or None if the credentials are invalid
        """
        if not username:
            return None

        if self.config.use_database_auth and self.session_factory is not None:
            try:
                with self.session_factory() as db:
                    user = db.query(ApiUser).filter(ApiUser.username == username, ApiUser.active.is_(True)).first()
                    if user is not None and verify_password(password, user.password_hash):
                        user.last_login = datetime.utcnow()
                        db.commit()
                        return {"user": user.username, "role": user.role}
            except SQLAlchemyError as exc:
                logger.warning("auth.database_unavailable", error=str(exc))

        expected = self.config.basic_users.get(username)
        if expected is not None and secrets.compare_digest(expected, password):
            return {"user": username, "role": self.config.user_roles.get(username)}
        return None


class LoginHandler:
    """Exchanges a username and password for a signed JWT."""

    def __init__(self, authenticator: Authenticator):
        self.authenticator = authenticator

    @staticmethod
    def credentials(request: ApiRequest) -> Tuple[str, str]:
        body = request.body if isinstance(request.body, dict) else {}
        return str(body.get("username") or ""), str(body.get("password") or "")

    def login(self, request: ApiRequest) -> Union[Dict[str, Any], ApiError]:
        username, password = self.credentials(request)
        account = self.authenticator.verify_credentials(username, password)
        if account is None:
            return ApiError(ErrorKind.AUTHENTICATION, "Invalid credentials")

        role = account["role"] or DEFAULT_LOGIN_ROLE
        token = self.authenticator.create_jwt({"sub": account["user"], "role": role})
        claims = self.authenticator.decode_jwt(token) or {}
        return {
            "token": token,
            "expires_at": claims.get("exp"),
            "user": account["user"],
            "role": role,
        }
