# ABOUTME: Converts unhandled exceptions into 500 responses
# ABOUTME: Logs the traceback to the audit log, raises a critical alert and hides details when configured

import traceback
from typing import Any, Mapping, Optional

import structlog

from tablegate.models.errors import ApiResponse
from tablegate.services.monitor import Monitor
from tablegate.services.request_logger import RequestLogger

logger = structlog.get_logger()

GENERIC_MESSAGE = "Internal Server Error"


class ErrorResponder:
    def __init__(self, request_logger: RequestLogger, monitor: Optional[Monitor] = None, expose_details: bool = True):
        self.request_logger = request_logger
        self.monitor = monitor
        self.expose_details = expose_details

    def from_exception(self, exc: BaseException, context: Optional[Mapping[str, Any]] = None) -> ApiResponse:
        """
        Record an exception and build the client-facing error response.

        Args:
            exc: The exception that escaped a pipeline stage
            context: Request context (action, table, method, user)

        Returns:
            500 response with the exception message, or a generic message
            when details are not exposed
        """
        context = dict(context or {})
        message = str(exc) or exc.__class__.__name__

        logger.error("pipeline.unhandled_exception", exc_info=exc, **context)
        self.request_logger.log_error(message, {
            "exception": exc.__class__.__name__,
            "trace": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            "context": context,
        })
        if self.monitor is not None:
            self.monitor.record_error(message, {
                "exception": exc.__class__.__name__,
                "action": context.get("action"),
                "table": context.get("table"),
            })

        return ApiResponse({"error": message if self.expose_details else GENERIC_MESSAGE}, 500)
