# ABOUTME: Request pipeline orchestrating rate limiting, auth, RBAC, caching and query execution
# ABOUTME: Every stage returns None or an ApiError; only this module maps outcomes to HTTP responses

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import structlog
from fastapi.encoders import jsonable_encoder
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from tablegate.config import Settings
from tablegate.models.errors import ApiError, ApiResponse, ErrorKind, not_found, validation_error
from tablegate.models.requests import Action, ApiRequest, QueryOptions
from tablegate.services.auth import AuthResult, Authenticator, LoginHandler, client_ip
from tablegate.services.cache import CacheManager
from tablegate.services.error_responder import ErrorResponder
from tablegate.services.filters import is_safe_identifier, parse_sort
from tablegate.services.hooks import HookRegistry
from tablegate.services.monitor import Monitor
from tablegate.services.openapi import generate_openapi
from tablegate.services.query_executor import QueryExecutor
from tablegate.services.rate_limiter import RateLimiter
from tablegate.services.rbac import Rbac, RbacGuard
from tablegate.services.request_logger import RequestLogger
from tablegate.services.schema_inspector import SchemaInspector

logger = structlog.get_logger()

# Action -> RBAC permission checked for table-scoped actions
TABLE_PERMISSIONS = {
    Action.COLUMNS: "read",
    Action.LIST: "list",
    Action.COUNT: "list",
    Action.READ: "read",
    Action.CREATE: "create",
    Action.UPDATE: "update",
    Action.DELETE: "delete",
    Action.BULK_CREATE: "create",
    Action.BULK_DELETE: "delete",
}

WRITE_METHODS = {
    Action.CREATE: {"POST"},
    Action.UPDATE: {"POST", "PUT", "PATCH"},
    Action.DELETE: {"POST", "DELETE"},
    Action.BULK_CREATE: {"POST"},
    Action.BULK_DELETE: {"POST", "DELETE"},
}

UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def coerce_id(value: Optional[str]) -> Optional[Union[int, str]]:
    """Integer or UUID record id, or None when the value is neither."""
    if value is None:
        return None
    value = str(value).strip()
    if value.isdigit():
        return int(value)
    if UUID_RE.match(value):
        return value
    return None


def to_response(result: Any, status: int = 200) -> ApiResponse:
    if isinstance(result, ApiResponse):
        return result
    if isinstance(result, ApiError):
        return ApiResponse.from_error(result)
    return ApiResponse(result, status)


@dataclass
class RequestContext:
    """Per-request state the stages share: the request, its rate-limit identifier and auth result."""
    request: ApiRequest
    identifier: str
    auth: Optional[AuthResult] = None

    @property
    def user(self) -> Optional[str]:
        return self.auth.user if self.auth else None

    @property
    def role(self) -> Optional[str]:
        return self.auth.role if self.auth else None


class Pipeline:
    """
    Runs one API request through every stage in a fixed order:

    rate limit -> login (JWT only) -> authentication -> before hooks ->
    action (table validation, RBAC, cache, query) -> after hooks ->
    request log and metrics.

    The first stage that produces an error ends the request.
    """

    def __init__(
        self,
        settings: Settings,
        inspector: SchemaInspector,
        executor: QueryExecutor,
        rate_limiter: RateLimiter,
        authenticator: Authenticator,
        rbac_guard: RbacGuard,
        cache: CacheManager,
        request_logger: RequestLogger,
        monitor: Monitor,
        error_responder: ErrorResponder,
        hooks: Optional[HookRegistry] = None,
    ):
        self.settings = settings
        self.inspector = inspector
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.authenticator = authenticator
        self.login_handler = LoginHandler(authenticator)
        self.rbac_guard = rbac_guard
        self.cache = cache
        self.request_logger = request_logger
        self.monitor = monitor
        self.error_responder = error_responder
        self.hooks = hooks or HookRegistry()

        self._actions: Dict[str, Callable[[RequestContext], ApiResponse]] = {
            Action.TABLES: self._tables,
            Action.COLUMNS: self._columns,
            Action.LIST: self._list,
            Action.COUNT: self._count,
            Action.READ: self._read,
            Action.CREATE: self._create,
            Action.UPDATE: self._update,
            Action.DELETE: self._delete,
            Action.BULK_CREATE: self._bulk_create,
            Action.BULK_DELETE: self._bulk_delete,
            Action.OPENAPI: self._openapi,
        }

    def handle(self, request: ApiRequest) -> ApiResponse:
        """
        Process a request and return the response to send.

        Never raises: unexpected exceptions become 500 responses through
        the error responder.
        """
        started = time.perf_counter()
        ctx = RequestContext(request, self.authenticator.identify(request))

        try:
            response = self._process(ctx)
        except Exception as exc:
            response = self.error_responder.from_exception(exc, {
                "action": request.action,
                "table": request.table,
                "method": request.method,
                "user": ctx.user,
                "params": request.params,
            })

        if response.status != 429:
            response.headers.update(self.rate_limiter.get_headers(ctx.identifier))
        self._record(ctx, response, time.perf_counter() - started)
        return response

    def _process(self, ctx: RequestContext) -> ApiResponse:
        request = ctx.request

        error = self._check_rate_limit(ctx)
        if error is not None:
            return ApiResponse.from_error(error)

        if request.action == Action.LOGIN and self.settings.auth.method == "jwt":
            return self._login(ctx)

        error = self._authenticate(ctx)
        if error is not None:
            return ApiResponse.from_error(error)

        response = self.hooks.run_before(request.action, request, ctx.auth)
        if response is None:
            response = self._dispatch(ctx)
        return self.hooks.run_after(request.action, request, ctx.auth, response)

    def _check_rate_limit(self, ctx: RequestContext) -> Optional[ApiError]:
        if self.rate_limiter.check_limit(ctx.identifier):
            return None

        count = self.rate_limiter.get_request_count(ctx.identifier)
        self.request_logger.log_rate_limit(ctx.identifier, count, self.rate_limiter.max_requests)
        self.monitor.record_security_event("rate_limit_hit", {
            "identifier": ctx.identifier,
            "ip": client_ip(ctx.request),
            "count": count,
            "limit": self.rate_limiter.max_requests,
        })

        payload = self.rate_limiter.exceeded_payload(ctx.identifier)
        headers = self.rate_limiter.get_headers(ctx.identifier)
        headers["Retry-After"] = str(payload["retry_after"])
        extra = {k: v for k, v in payload.items() if k != "error"}
        return ApiError(ErrorKind.RATE_LIMITED, str(payload["error"]), extra=extra, headers=headers)

    def _login(self, ctx: RequestContext) -> ApiResponse:
        username, _ = self.login_handler.credentials(ctx.request)
        outcome = self.login_handler.login(ctx.request)

        if isinstance(outcome, ApiError):
            self.request_logger.log_auth("jwt", False, username, outcome.message)
            self.monitor.record_security_event("auth_failure", {
                "method": "jwt",
                "reason": outcome.message,
                "ip": client_ip(ctx.request),
            })
            return ApiResponse.from_error(outcome)

        ctx.auth = AuthResult(True, "jwt", user=outcome["user"], role=outcome["role"])
        self.request_logger.log_auth("jwt", True, username)
        self.monitor.record_security_event("auth_success", {"method": "jwt", "user": username})
        return ApiResponse(outcome)

    def _authenticate(self, ctx: RequestContext) -> Optional[ApiError]:
        if not self.authenticator.enabled:
            ctx.auth = AuthResult(True, "none")
            return None

        method = self.settings.auth.method
        result = self.authenticator.authenticate(ctx.request)
        ctx.auth = result

        if not result.ok:
            self.request_logger.log_auth(method, False, ctx.identifier, result.reason)
            self.monitor.record_security_event("auth_failure", {
                "method": method,
                "reason": result.reason,
                "ip": client_ip(ctx.request),
            })
            headers = {"WWW-Authenticate": 'Basic realm="API"'} if method == "basic" else {}
            return ApiError(ErrorKind.AUTHENTICATION, "Unauthorized", headers=headers)

        self.request_logger.log_auth(method, True, result.user or ctx.identifier)
        self.monitor.record_security_event("auth_success", {"method": method, "user": result.user or ctx.identifier})
        return None

    def _dispatch(self, ctx: RequestContext) -> ApiResponse:
        action = ctx.request.action

        allowed = WRITE_METHODS.get(action)
        if allowed is not None and ctx.request.method not in allowed:
            return ApiResponse.from_error(ApiError(ErrorKind.METHOD_NOT_ALLOWED, "Method Not Allowed"))

        handler = self._actions.get(action)
        if handler is not None:
            if action in TABLE_PERMISSIONS:
                error = self._gate_table(ctx, action)
                if error is not None:
                    return ApiResponse.from_error(error)
            return handler(ctx)

        custom = self.hooks.get_action(action)
        if custom is not None:
            return to_response(custom(ctx.request, ctx.auth))
        return ApiResponse.from_error(validation_error("Invalid action"))

    def _gate_table(self, ctx: RequestContext, action: str) -> Optional[ApiError]:
        """Reject unknown or unsafe table names, then apply RBAC."""
        table = ctx.request.table
        if not table or not is_safe_identifier(table) or not self.inspector.has_table(table):
            return validation_error("Invalid table name")
        return self.rbac_guard.guard(self.settings.auth.enabled, ctx.role, table, TABLE_PERMISSIONS[action])

    # Action handlers. Table-scoped handlers run after _gate_table.

    def _tables(self, ctx: RequestContext) -> ApiResponse:
        return ApiResponse(self.inspector.get_tables())

    def _columns(self, ctx: RequestContext) -> ApiResponse:
        return ApiResponse(self.inspector.get_columns(ctx.request.table))

    def _openapi(self, ctx: RequestContext) -> ApiResponse:
        return ApiResponse(generate_openapi(self.inspector))

    def _list(self, ctx: RequestContext) -> ApiResponse:
        table = ctx.request.table
        opts = QueryOptions.from_params(ctx.request.params)
        if opts.sort and parse_sort(self.inspector.column_names(table), opts.sort) is None:
            return ApiResponse.from_error(validation_error("Invalid sort parameter"))

        if not self.cache.should_cache(table):
            return ApiResponse(self.executor.list(table, opts))

        key = self.cache.generate_key(table, opts.cache_params(), api_key=ctx.request.api_key, user_id=ctx.user)
        ttl = str(self.cache.get_ttl(table))
        cached = self.cache.get(key)
        if cached is not None:
            return ApiResponse(cached, 200, {"X-Cache-Hit": "true", "X-Cache-TTL": ttl})

        result = jsonable_encoder(self.executor.list(table, opts))
        stored = self.cache.set(key, result, table)
        return ApiResponse(result, 200, {
            "X-Cache-Hit": "false",
            "X-Cache-Stored": "true" if stored else "false",
            "X-Cache-TTL": ttl,
        })

    def _count(self, ctx: RequestContext) -> ApiResponse:
        return ApiResponse(self.executor.count(ctx.request.table, QueryOptions.from_params(ctx.request.params)))

    def _read(self, ctx: RequestContext) -> ApiResponse:
        record_id = coerce_id(ctx.request.param("id"))
        if record_id is None:
            return ApiResponse.from_error(validation_error("Invalid id parameter"))
        row = self.executor.read(ctx.request.table, record_id)
        if row is None:
            return ApiResponse.from_error(not_found())
        return ApiResponse(row)

    def _create(self, ctx: RequestContext) -> ApiResponse:
        table = ctx.request.table
        if not isinstance(ctx.request.body, dict):
            return ApiResponse.from_error(validation_error("Request body must be a JSON object"))
        result = self.executor.create(table, ctx.request.body)
        self.cache.invalidate_table(table)
        return to_response(result, 201)

    def _update(self, ctx: RequestContext) -> ApiResponse:
        table = ctx.request.table
        record_id = coerce_id(ctx.request.param("id"))
        if record_id is None:
            return ApiResponse.from_error(validation_error("Invalid or missing id parameter"))
        if not isinstance(ctx.request.body, dict):
            return ApiResponse.from_error(validation_error("Request body must be a JSON object"))
        result = self.executor.update(table, record_id, ctx.request.body)
        self.cache.invalidate_table(table)
        return to_response(result)

    def _delete(self, ctx: RequestContext) -> ApiResponse:
        table = ctx.request.table
        record_id = coerce_id(ctx.request.param("id"))
        if record_id is None:
            return ApiResponse.from_error(validation_error("Invalid id parameter"))
        result = self.executor.delete(table, record_id)
        self.cache.invalidate_table(table)
        return to_response(result)

    def _bulk_create(self, ctx: RequestContext) -> ApiResponse:
        table = ctx.request.table
        rows = ctx.request.body
        if not isinstance(rows, list) or not rows:
            return ApiResponse.from_error(validation_error("Invalid or empty JSON array"))
        result = self.executor.bulk_create(table, rows)
        self.cache.invalidate_table(table)
        return to_response(result, 201)

    def _bulk_delete(self, ctx: RequestContext) -> ApiResponse:
        table = ctx.request.table
        body = ctx.request.body if isinstance(ctx.request.body, dict) else {}
        ids = body.get("ids")
        if not isinstance(ids, list) or not ids or any(isinstance(i, (dict, list)) for i in ids):
            return ApiResponse.from_error(validation_error('Invalid or empty ids array. Send JSON with "ids" field.'))
        result = self.executor.bulk_delete(table, ids)
        self.cache.invalidate_table(table)
        return to_response(result)

    def _record(self, ctx: RequestContext, response: ApiResponse, elapsed: float) -> None:
        request = ctx.request
        size = len(json.dumps(response.payload, default=str))
        info = {
            "method": request.method,
            "action": request.action or "unknown",
            "table": request.table,
            "user": ctx.user,
            "ip": client_ip(request),
            "headers": request.headers,
            "body": request.body,
        }
        self.request_logger.log_request(info, {"status_code": response.status, "size": size}, elapsed)
        self.monitor.record_request(info)
        self.monitor.record_response(response.status, elapsed * 1000, size)
        logger.info(
            "pipeline.request_completed",
            action=info["action"],
            table=request.table,
            status=response.status,
            duration_ms=round(elapsed * 1000, 2),
        )


def build_pipeline(settings: Settings, engine: Engine, hooks: Optional[HookRegistry] = None) -> Pipeline:
    """Wire every pipeline component from settings."""
    inspector = SchemaInspector(engine, hidden_tables=settings.hidden_tables)
    request_logger = RequestLogger(settings.logging)
    monitor = Monitor(settings.monitoring)
    return Pipeline(
        settings=settings,
        inspector=inspector,
        executor=QueryExecutor(engine, inspector),
        rate_limiter=RateLimiter(settings.rate_limit),
        authenticator=Authenticator(settings.auth, sessionmaker(bind=engine, autoflush=False)),
        rbac_guard=RbacGuard(Rbac(settings.rbac)),
        cache=CacheManager(settings.cache),
        request_logger=request_logger,
        monitor=monitor,
        error_responder=ErrorResponder(request_logger, monitor, settings.expose_error_details),
        hooks=hooks,
    )
