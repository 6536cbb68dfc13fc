# ABOUTME: Error outcomes and response values passed between pipeline stages
# ABOUTME: Stages return ApiError instead of raising; the orchestrator maps kinds to HTTP status

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    RATE_LIMITED = "rate_limited"
    UNHANDLED = "unhandled"


STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.METHOD_NOT_ALLOWED: 405,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.UNHANDLED: 500,
}


@dataclass(frozen=True)
class ApiError:
    """A terminal, handled failure of one pipeline stage."""
    kind: ErrorKind
    message: str
    extra: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def payload(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


@dataclass
class ApiResponse:
    """Final result of a request: JSON payload, status code and extra headers."""
    payload: Any
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: ApiError) -> "ApiResponse":
        return cls(error.payload(), error.status, dict(error.headers))

    @property
    def is_error(self) -> bool:
        return self.status >= 400


def validation_error(message: str) -> ApiError:
    return ApiError(ErrorKind.VALIDATION, message)


def not_found(message: str = "Record not found") -> ApiError:
    return ApiError(ErrorKind.NOT_FOUND, message)


def forbidden(message: str) -> ApiError:
    return ApiError(ErrorKind.AUTHORIZATION, message)
