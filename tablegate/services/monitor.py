# ABOUTME: Request metrics, threshold alerts and health scoring
# ABOUTME: Appends metrics/alerts as JSON lines per day and exports stats as JSON or Prometheus text

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog
from prometheus_client import CollectorRegistry, Gauge, generate_latest

from tablegate.config import MonitoringConfig
from tablegate.utils.files import append_line, read_json_lines

logger = structlog.get_logger()

METRIC_REQUEST = "request"
METRIC_RESPONSE = "response"
METRIC_ERROR = "error"
METRIC_SECURITY = "security"

ALERT_INFO = "info"
ALERT_WARNING = "warning"
ALERT_CRITICAL = "critical"

AlertHandler = Callable[[Dict[str, Any]], Any]


def _empty_stats(minutes: int) -> Dict[str, Any]:
    return {
        "total_requests": 0,
        "total_errors": 0,
        "error_rate": 0.0,
        "avg_response_time": 0.0,
        "min_response_time": 0.0,
        "max_response_time": 0.0,
        "auth_failures": 0,
        "rate_limit_hits": 0,
        "status_code_distribution": {},
        "time_window": minutes,
    }


class Monitor:
    """
    Collects request/response/security metrics and raises alerts.

    Metrics and alerts are appended to ``metrics_<date>.log`` and
    ``alerts_<date>.log``; statistics are recomputed from today's file, so
    every worker process sees the same numbers.
    """

    def __init__(self, config: MonitoringConfig, handlers: Optional[List[AlertHandler]] = None):
        self.config = config
        self.enabled = config.enabled
        self.thresholds = config.thresholds
        self.metrics_dir = Path(config.metrics_dir)
        self.alerts_dir = Path(config.alerts_dir)
        self.handlers: List[AlertHandler] = list(handlers or [])
        if self.enabled:
            self.metrics_dir.mkdir(parents=True, exist_ok=True)
            self.alerts_dir.mkdir(parents=True, exist_ok=True)

    def register_handler(self, handler: AlertHandler) -> None:
        """Add a callback invoked with every triggered alert."""
        self.handlers.append(handler)

    def _metrics_file(self) -> Path:
        return self.metrics_dir / f"metrics_{datetime.now().strftime('%Y-%m-%d')}.log"

    def _alerts_file(self) -> Path:
        return self.alerts_dir / f"alerts_{datetime.now().strftime('%Y-%m-%d')}.log"

    def _append(self, path: Path, record: Mapping[str, Any]) -> bool:
        try:
            append_line(path, json.dumps(record, default=str))
        except OSError as exc:
            logger.warning("monitor.write_failed", path=str(path), error=str(exc))
            return False
        return True

    def record_metric(self, metric_type: str, data: Mapping[str, Any]) -> bool:
        if not self.enabled:
            return False
        metric = {
            "type": metric_type,
            "timestamp": time.time(),
            "datetime": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            "data": dict(data),
        }
        return self._append(self._metrics_file(), metric)

    def record_request(self, request: Mapping[str, Any]) -> bool:
        return self.record_metric(METRIC_REQUEST, {
            "method": request.get("method", "UNKNOWN"),
            "action": request.get("action"),
            "table": request.get("table"),
            "ip": request.get("ip"),
            "user": request.get("user"),
        })

    def record_response(self, status_code: int, response_time: float, response_size: int = 0) -> bool:
        """
        Record a finished response.

        Args:
            status_code: HTTP status code
            response_time: Milliseconds spent on the request
            response_size: Body size in bytes
        """
        if response_time > self.thresholds.response_time:
            self.trigger_alert(ALERT_WARNING, "Slow response detected", {
                "response_time": response_time,
                "threshold": self.thresholds.response_time,
            })
        return self.record_metric(METRIC_RESPONSE, {
            "status_code": status_code,
            "response_time": response_time,
            "response_size": response_size,
            "is_error": status_code >= 400,
            "is_server_error": status_code >= 500,
        })

    def record_error(self, message: str, context: Optional[Mapping[str, Any]] = None) -> bool:
        context = dict(context or {})
        self.trigger_alert(ALERT_CRITICAL, f"Error occurred: {message}", context)
        return self.record_metric(METRIC_ERROR, {"message": message, "context": context})

    def record_security_event(self, event: str, data: Optional[Mapping[str, Any]] = None) -> bool:
        """
        Record an auth failure, rate-limit hit or other security event.

        A burst of auth failures within the last minute raises a critical
        alert; every rate-limit hit raises a warning.
        """
        payload = {**(data or {}), "event": event}
        recorded = self.record_metric(METRIC_SECURITY, payload)

        if event == "auth_failure":
            failures = self._recent_auth_failures()
            if failures >= self.thresholds.auth_failures:
                self.trigger_alert(ALERT_CRITICAL, "High authentication failure rate", {
                    "failures": failures,
                    "threshold": self.thresholds.auth_failures,
                    "ip": payload.get("ip", "unknown"),
                })
        elif event == "rate_limit_hit":
            self.trigger_alert(ALERT_WARNING, "Rate limit exceeded", payload)

        return recorded

    def trigger_alert(self, level: str, message: str, context: Optional[Mapping[str, Any]] = None) -> bool:
        """
        Persist an alert and hand it to every registered handler.

        A failing handler is logged and skipped; it never breaks the caller.
        """
        if not self.enabled:
            return False
        alert = {
            "level": level,
            "message": message,
            "context": dict(context or {}),
            "timestamp": time.time(),
            "datetime": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        }
        self._append(self._alerts_file(), alert)

        for handler in self.handlers:
            try:
                handler(alert)
            except Exception as exc:
                logger.warning("monitor.alert_handler_failed", handler=repr(handler), error=str(exc))
        return True

    def _recent_metrics(self, minutes: int):
        cutoff = time.time() - minutes * 60
        for metric in read_json_lines(self._metrics_file()):
            if metric.get("timestamp", 0) >= cutoff:
                yield metric

    def _recent_auth_failures(self, minutes: int = 1) -> int:
        return sum(
            1 for m in self._recent_metrics(minutes)
            if m.get("type") == METRIC_SECURITY and m.get("data", {}).get("event") == "auth_failure"
        )

    def get_stats(self, minutes: int = 60) -> Dict[str, Any]:
        """Aggregate today's metrics over the trailing window."""
        if not self._metrics_file().exists():
            return _empty_stats(minutes)

        stats = _empty_stats(minutes)
        response_times: List[float] = []
        distribution: Dict[str, int] = {}

        for metric in self._recent_metrics(minutes):
            data = metric.get("data", {})
            metric_type = metric.get("type")
            if metric_type == METRIC_REQUEST:
                stats["total_requests"] += 1
            elif metric_type == METRIC_RESPONSE:
                response_times.append(float(data.get("response_time", 0)))
                code = str(data.get("status_code"))
                distribution[code] = distribution.get(code, 0) + 1
                if data.get("is_error"):
                    stats["total_errors"] += 1
            elif metric_type == METRIC_SECURITY:
                if data.get("event") == "auth_failure":
                    stats["auth_failures"] += 1
                elif data.get("event") == "rate_limit_hit":
                    stats["rate_limit_hits"] += 1

        if response_times:
            stats["avg_response_time"] = round(sum(response_times) / len(response_times), 2)
            stats["min_response_time"] = round(min(response_times), 2)
            stats["max_response_time"] = round(max(response_times), 2)
        if stats["total_requests"]:
            stats["error_rate"] = round(stats["total_errors"] / stats["total_requests"] * 100, 2)
        stats["status_code_distribution"] = distribution
        return stats

    def get_recent_alerts(self, minutes: int = 60) -> List[Dict[str, Any]]:
        cutoff = time.time() - minutes * 60
        return [a for a in read_json_lines(self._alerts_file()) if a.get("timestamp", 0) >= cutoff]

    def get_health_status(self) -> Dict[str, Any]:
        """
        Score the API from 0 to 100.

        Starts at 100 and subtracts 30 for a high error rate, 20 for a slow
        average response time and 25 for any critical alert in the last five
        minutes. Scores of 80+ are healthy, 50+ degraded, anything lower is
        critical.
        """
        stats = self.get_stats()
        score = 100
        issues = []

        if stats["error_rate"] > self.thresholds.error_rate:
            score -= 30
            issues.append(f"High error rate: {stats['error_rate']}%")
        if stats["avg_response_time"] > self.thresholds.response_time:
            score -= 20
            issues.append(f"Slow response time: {stats['avg_response_time']}ms")

        recent_alerts = self.get_recent_alerts(5)
        critical = [a for a in recent_alerts if a.get("level") == ALERT_CRITICAL]
        if critical:
            score -= 25
            issues.append(f"{len(critical)} critical alert(s) in last 5 minutes")

        if score >= 80:
            status = "healthy"
        elif score >= 50:
            status = "degraded"
        else:
            status = "critical"

        return {
            "status": status,
            "health_score": max(0, score),
            "timestamp": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            "statistics": stats,
            "issues": issues,
            "recent_alerts": recent_alerts,
        }

    def cleanup(self) -> int:
        """Delete metric and alert files older than the retention period."""
        cutoff = time.time() - self.config.retention_days * 86400
        deleted = 0
        for pattern_dir, pattern in ((self.metrics_dir, "metrics_*.log"), (self.alerts_dir, "alerts_*.log")):
            if not pattern_dir.exists():
                continue
            for path in pattern_dir.glob(pattern):
                try:
                    if path.stat().st_mtime < cutoff:
                        path.unlink()
                        deleted += 1
                except OSError as exc:
                    logger.warning("monitor.cleanup_failed", path=str(path), error=str(exc))
        return deleted

    def export_metrics(self, fmt: str = "json") -> str:
        """Current health and stats as a JSON document or Prometheus text exposition."""
        health = self.get_health_status()
        stats = health["statistics"]
        if fmt == "prometheus":
            return self._export_prometheus(stats, health)
        return json.dumps({"health": health, "stats": stats}, indent=2, default=str)

    def _export_prometheus(self, stats: Mapping[str, Any], health: Mapping[str, Any]) -> str:
        registry = CollectorRegistry()
        Gauge("api_health_score", "API health score (0-100)", registry=registry).set(health["health_score"])
        Gauge("api_requests_total", "Total number of API requests", registry=registry).set(stats["total_requests"])
        Gauge("api_errors_total", "Total number of errors", registry=registry).set(stats["total_errors"])
        Gauge("api_error_rate", "Error rate percentage", registry=registry).set(stats["error_rate"])

        response_time = Gauge(
            "api_response_time_ms", "Response time in milliseconds", ["type"], registry=registry
        )
        response_time.labels(type="avg").set(stats["avg_response_time"])
        response_time.labels(type="min").set(stats["min_response_time"])
        response_time.labels(type="max").set(stats["max_response_time"])

        Gauge("api_auth_failures_total", "Total authentication failures", registry=registry).set(stats["auth_failures"])
        Gauge("api_rate_limit_hits_total", "Total rate limit hits", registry=registry).set(stats["rate_limit_hits"])
        return generate_latest(registry).decode("utf-8")
