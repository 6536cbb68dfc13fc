# ABOUTME: Audit log of API requests, auth attempts, errors and rate-limit hits
# ABOUTME: A dedicated structlog pipeline renders redacted JSON lines into a per-day file with locked appends

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

from tablegate.config import LoggingConfig
from tablegate.utils.files import append_line, read_json_lines

logger = structlog.get_logger()

REDACTED = "***REDACTED***"


def redact(value: Any, sensitive_keys: Iterable[str]) -> Any:
    """
    Replace values stored under sensitive keys, recursing into dicts and lists.

    A key is sensitive when it contains any of ``sensitive_keys`` as a
    case-insensitive substring, so ``X-API-Key`` and ``new_password`` match.
    """
    needles = [k.lower() for k in sensitive_keys]

    def _walk(item: Any) -> Any:
        if isinstance(item, Mapping):
            return {
                key: REDACTED if any(n in str(key).lower() for n in needles) else _walk(val)
                for key, val in item.items()
            }
        if isinstance(item, (list, tuple)):
            return [_walk(v) for v in item]
        return item

    return _walk(value)


class RedactSensitive:
    """structlog processor applying ``redact`` to the whole event."""

    def __init__(self, sensitive_keys: Iterable[str]):
        self.sensitive_keys = list(sensitive_keys)

    def __call__(self, _logger, _method_name, event_dict):
        return redact(event_dict, self.sensitive_keys)


class TruncateBody:
    """structlog processor that caps the serialized size of a logged request body."""

    def __init__(self, max_length: int):
        self.max_length = max_length

    def __call__(self, _logger, _method_name, event_dict):
        if "body" in event_dict and self.max_length > 0:
            encoded = json.dumps(event_dict["body"], default=str)
            if len(encoded) > self.max_length:
                event_dict["body"] = encoded[: self.max_length] + "..."
        return event_dict


class DailyFileWriter:
    """
    structlog logger that appends rendered lines to ``api_YYYY-mm-dd.log``.

    Appends hold an exclusive flock so concurrent workers never interleave
    lines. The active file is renamed once it grows past ``rotation_size``.
    """

    def __init__(self, log_dir: Path, rotation_size: int = 0):
        self.log_dir = log_dir
        self.rotation_size = rotation_size

    def current_file(self) -> Path:
        return self.log_dir / f"api_{datetime.now().strftime('%Y-%m-%d')}.log"

    def msg(self, line: str) -> bool:
        path = self.current_file()
        try:
            append_line(path, line)
        except OSError as exc:
            logger.warning("request_logger.write_failed", path=str(path), error=str(exc))
            return False
        self._maybe_rotate(path)
        return True

    debug = info = warning = error = critical = msg

    def _maybe_rotate(self, path: Path) -> None:
        if self.rotation_size <= 0:
            return
        try:
            if path.stat().st_size > self.rotation_size:
                path.rename(self._rotated_name())
        except OSError as exc:
            logger.warning("request_logger.rotation_failed", path=str(path), error=str(exc))

    def _rotated_name(self) -> Path:
        """First free ``api_YYYY-mm-dd_HHMMSS_ffffff[_n].log`` name."""
        stem = f"api_{datetime.now().strftime('%Y-%m-%d_%H%M%S_%f')}"
        rotated = self.log_dir / f"{stem}.log"
        counter = 1
        while rotated.exists():
            rotated = self.log_dir / f"{stem}_{counter}.log"
            counter += 1
        return rotated


def level_for_status(status: int) -> str:
    if status >= 500:
        return "error"
    if status >= 400:
        return "warning"
    return "info"


class RequestLogger:
    """
    Writes one JSON object per line for each request, auth attempt, error
    and rate-limit event. Every event carries ``timestamp``, ``type`` and
    ``level``; sensitive keys are redacted before rendering.
    """

    def __init__(self, config: LoggingConfig):
        self.config = config
        self.enabled = config.enabled
        self.log_dir = Path(config.log_dir)
        if self.enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self.writer = DailyFileWriter(self.log_dir, config.rotation_size)
        self._audit = structlog.wrap_logger(
            self.writer,
            processors=[
                RedactSensitive(config.sensitive_keys),
                TruncateBody(config.max_body_length),
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
                structlog.processors.EventRenamer("type"),
                structlog.processors.JSONRenderer(default=str),
            ],
            wrapper_class=structlog.BoundLogger,
            context_class=dict,
            cache_logger_on_first_use=False,
        )

    def _emit(self, level: str, event_type: str, **fields: Any) -> bool:
        if not self.enabled:
            return False
        return bool(getattr(self._audit, level)(event_type, **fields))

    def log_request(self, request: Mapping[str, Any], response: Mapping[str, Any], execution_time: float) -> bool:
        """
        Log a completed request.

        Args:
            request: method, action, table, user, ip and optionally headers/body
            response: status_code and size in bytes
            execution_time: Seconds spent handling the request

        Returns:
            True if the line was written
        """
        status = int(response.get("status_code", 0))
        fields: Dict[str, Any] = {
            "method": request.get("method", "GET"),
            "action": request.get("action", ""),
            "table": request.get("table") or "",
            "user": request.get("user") or "",
            "ip": request.get("ip") or "",
            "status": status,
            "time_ms": round(execution_time * 1000),
            "size": int(response.get("size", 0)),
        }
        if self.config.log_headers and request.get("headers"):
            fields["headers"] = dict(request["headers"])
        if self.config.log_body and request.get("body"):
            fields["body"] = request["body"]
        return self._emit(level_for_status(status), "request", **fields)

    def log_auth(self, method: str, success: bool, identifier: Any, reason: Optional[str] = None) -> bool:
        fields: Dict[str, Any] = {"method": method, "success": success, "identifier": str(identifier or "")}
        if reason:
            fields["reason"] = reason
        return self._emit("info" if success else "warning", "auth", **fields)

    def log_error(self, message: str, context: Optional[Mapping[str, Any]] = None) -> bool:
        return self._emit("error", "error", message=message, context=dict(context or {}))

    def log_rate_limit(self, identifier: str, count: int, limit: int) -> bool:
        return self._emit("warning", "ratelimit", identifier=identifier, count=count, limit=limit)

    def get_stats(self) -> Dict[str, int]:
        """Counts for today's log file."""
        stats = {"total_requests": 0, "errors": 0, "warnings": 0, "auth_failures": 0, "rate_limits": 0}
        for event in read_json_lines(self.writer.current_file()):
            event_type = event.get("type")
            if event_type == "request":
                stats["total_requests"] += 1
            elif event_type == "auth" and not event.get("success"):
                stats["auth_failures"] += 1
            elif event_type == "ratelimit":
                stats["rate_limits"] += 1
            if event.get("level") == "error":
                stats["errors"] += 1
            elif event.get("level") == "warning":
                stats["warnings"] += 1
        return stats

    def cleanup(self) -> int:
        """Delete the oldest log files beyond ``max_files``."""
        if self.config.max_files <= 0 or not self.log_dir.exists():
            return 0
        files = sorted(self.log_dir.glob("api_*.log"), key=lambda p: p.stat().st_mtime)
        deleted = 0
        for path in files[: max(0, len(files) - self.config.max_files)]:
            try:
                path.unlink()
                deleted += 1
            except OSError as exc:
                logger.warning("request_logger.cleanup_failed", path=str(path), error=str(exc))
        return deleted
