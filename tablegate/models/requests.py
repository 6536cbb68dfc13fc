# ABOUTME: Immutable request value objects threaded through the pipeline
# ABOUTME: Defines ApiRequest, QueryOptions and the action name constants

from typing import Any, ClassVar, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class Action:
    """Action names accepted by the API endpoint."""
    TABLES = "tables"
    COLUMNS = "columns"
    LIST = "list"
    COUNT = "count"
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BULK_CREATE = "bulk_create"
    BULK_DELETE = "bulk_delete"
    OPENAPI = "openapi"
    LOGIN = "login"


class ApiRequest(BaseModel):
    """
    Everything the pipeline needs to know about one inbound request.

    Built once at the HTTP boundary. Header names are stored lower-cased.
    """
    model_config = ConfigDict(frozen=True)

    method: str = "GET"
    params: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    client_ip: Optional[str] = None

    @classmethod
    def build(
        cls,
        method: str,
        params: Mapping[str, str],
        headers: Mapping[str, str],
        body: Any = None,
        client_ip: Optional[str] = None,
    ) -> "ApiRequest":
        return cls(
            method=method.upper(),
            params=dict(params),
            headers={k.lower(): v for k, v in headers.items()},
            body=body,
            client_ip=client_ip,
        )

    @property
    def action(self) -> str:
        return self.params.get("action", "")

    @property
    def table(self) -> Optional[str]:
        return self.params.get("table") or None

    def param(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.params.get(name, default)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    @property
    def api_key(self) -> Optional[str]:
        """API key from the X-API-Key header or the api_key query parameter."""
        return self.header("x-api-key") or self.param("api_key")


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


class QueryOptions(BaseModel):
    """Validated list/count options derived from untrusted query parameters."""
    model_config = ConfigDict(frozen=True)

    fields: Optional[str] = None
    filter: Optional[str] = None
    sort: Optional[str] = None
    page: int = 1
    page_size: int = 20

    DEFAULT_PAGE_SIZE: ClassVar[int] = 20
    MAX_PAGE_SIZE: ClassVar[int] = 100

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "QueryOptions":
        return cls(
            fields=params.get("fields") or None,
            filter=params.get("filter") or None,
            sort=params.get("sort") or None,
            page=clamp_page(params.get("page")),
            page_size=clamp_page_size(params.get("page_size")),
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def field_list(self) -> List[str]:
        if not self.fields:
            return []
        return [f.strip() for f in self.fields.split(",") if f.strip()]

    def cache_params(self) -> Dict[str, Any]:
        """Options as a plain mapping, used for cache-key derivation."""
        return self.model_dump()


def clamp_page(value: Any) -> int:
    """Page numbers below 1 or non-numeric input fall back to 1."""
    page = _to_int(value)
    return page if page is not None and page > 0 else 1


def clamp_page_size(value: Any) -> int:
    """Missing or non-numeric sizes use the default; others are clamped into [1, 100]."""
    size = _to_int(value)
    if size is None:
        return QueryOptions.DEFAULT_PAGE_SIZE
    return max(1, min(QueryOptions.MAX_PAGE_SIZE, size))
