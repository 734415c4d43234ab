"""Logging middleware for VPS MCP server using FastMCP Middleware base class."""

import time

from fastmcp.server.middleware import Middleware, MiddlewareContext

from ..core.logging_config import get_middleware_logger
from .redaction import sanitize_message


class LoggingMiddleware(Middleware):
    """FastMCP middleware for request/response logging.

    Logs every MCP message to the console and middleware.log with sanitized
    parameters, completion status and duration. Host passwords, key
    passphrases and password-type template variables are redacted.
    """

    def __init__(self, include_payloads: bool = True, max_payload_length: int = 1000):
        """Initialize logging middleware.

        Args:
            include_payloads: Whether to include request payloads in logs
            max_payload_length: Maximum length for payload strings before truncation
        """
        self.logger = get_middleware_logger()
        self.include_payloads = include_payloads
        self.max_payload_length = max_payload_length

    async def on_message(self, context: MiddlewareContext, call_next):
        """Log all MCP messages."""
        start_time = time.perf_counter()

        log_data = {
            "method": context.method,
            "source": context.source,
            "message_type": context.type,
        }
        if self.include_payloads and hasattr(context.message, "__dict__"):
            log_data["params"] = sanitize_message(context.message, self.max_payload_length)

        self.logger.info("MCP request started", **log_data)

        try:
            result = await call_next(context)
        except Exception as e:
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            self.logger.error(
                "MCP request failed",
                method=context.method,
                success=False,
                duration_ms=duration_ms,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        self.logger.info(
            "MCP request completed",
            method=context.method,
            success=True,
            duration_ms=duration_ms,
        )
        return result
