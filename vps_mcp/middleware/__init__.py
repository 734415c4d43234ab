"""FastMCP middleware for VPS MCP server.

- LoggingMiddleware: structured request logging with credential redaction
- ErrorHandlingMiddleware: error tracking and categorised logging
"""

from .error_handling import ErrorHandlingMiddleware
from .logging import LoggingMiddleware

__all__ = [
    "LoggingMiddleware",
    "ErrorHandlingMiddleware",
]
