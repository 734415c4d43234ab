"""RFC 7807 compliant error response helpers.

Tool handlers return plain dictionaries; failures use the Problem Details
layout (type, title, detail, instance) so clients can branch on ``type``.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from .exceptions import (
    AuthenticationError,
    CommandError,
    CommandTimeoutError,
    ConfigurationError,
    ConnectionTimeoutError,
    DeploymentValidationError,
    HostNotFoundError,
    InvalidTaskStateError,
    PlanGenerationError,
    PoolExhaustedError,
    SSHConnectionError,
    TaskNotFoundError,
    TemplateNotFoundError,
)


class ErrorDetail(BaseModel):
    """RFC 7807 error detail structure."""

    success: bool = Field(default=False, description="Always False for errors")
    error: str = Field(description="Human-readable error message")
    type: str | None = Field(default=None, description="Problem type URI")
    title: str | None = Field(default=None, description="Problem type summary")
    detail: str | None = Field(default=None, description="Specific problem details")
    instance: str | None = Field(default=None, description="Problem occurrence URI")
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


class VPSMCPErrorResponse:
    """Factory for standardized VPS MCP error responses."""

    PROBLEM_TYPES: dict[str, dict[str, str]] = {
        "host-not-found": {"type": "/problems/host-not-found", "title": "Host Not Found"},
        "template-not-found": {
            "type": "/problems/template-not-found",
            "title": "Template Not Found",
        },
        "task-not-found": {"type": "/problems/task-not-found", "title": "Task Not Found"},
        "invalid-task-state": {
            "type": "/problems/invalid-task-state",
            "title": "Operation Not Allowed In Task State",
        },
        "validation-error": {
            "type": "/problems/validation-error",
            "title": "Input Validation Failed",
        },
        "connection-error": {
            "type": "/problems/connection-error",
            "title": "SSH Connection Failed",
        },
        "authentication-error": {
            "type": "/problems/authentication-error",
            "title": "SSH Authentication Failed",
        },
        "pool-exhausted": {
            "type": "/problems/pool-exhausted",
            "title": "Connection Pool Exhausted",
        },
        "command-error": {"type": "/problems/command-error", "title": "Remote Command Failed"},
        "timeout-error": {"type": "/problems/timeout-error", "title": "Operation Timed Out"},
        "plan-generation-error": {
            "type": "/problems/plan-generation-error",
            "title": "Plan Generation Failed",
        },
        "configuration-error": {
            "type": "/problems/configuration-error",
            "title": "Configuration Error",
        },
    }

    # Most specific classes first
    _EXCEPTION_TYPES: tuple[tuple[type[Exception], str], ...] = (
        (HostNotFoundError, "host-not-found"),
        (TemplateNotFoundError, "template-not-found"),
        (TaskNotFoundError, "task-not-found"),
        (InvalidTaskStateError, "invalid-task-state"),
        (DeploymentValidationError, "validation-error"),
        (ConnectionTimeoutError, "timeout-error"),
        (CommandTimeoutError, "timeout-error"),
        (AuthenticationError, "authentication-error"),
        (PoolExhaustedError, "pool-exhausted"),
        (SSHConnectionError, "connection-error"),
        (CommandError, "command-error"),
        (PlanGenerationError, "plan-generation-error"),
        (ConfigurationError, "configuration-error"),
        (ValueError, "validation-error"),
    )

    @classmethod
    def create_error(
        cls,
        error_message: str,
        problem_type: str | None = None,
        detail: str | None = None,
        instance: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a standardized error response.

        Args:
            error_message: Primary error message
            problem_type: Standard problem type key or custom type URI
            detail: Additional problem-specific details
            instance: Identifier for this specific occurrence
            context: Additional context fields (host_id, task_id, etc.)

        Returns:
            RFC 7807 compliant error response dictionary
        """
        error_detail = ErrorDetail(error=error_message, detail=detail, instance=instance)

        if problem_type and problem_type in cls.PROBLEM_TYPES:
            problem_info = cls.PROBLEM_TYPES[problem_type]
            error_detail.type = problem_info["type"]
            error_detail.title = problem_info["title"]
        elif problem_type:
            error_detail.type = problem_type

        response = error_detail.model_dump(exclude_none=True)

        if context:
            reserved_fields = set(ErrorDetail.model_fields)
            response.update({k: v for k, v in context.items() if k not in reserved_fields})

        return response

    @classmethod
    def from_exception(
        cls,
        error: Exception,
        instance: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Map a raised exception onto its problem type."""
        problem_type = next(
            (key for exc_type, key in cls._EXCEPTION_TYPES if isinstance(error, exc_type)),
            None,
        )
        context = dict(context or {})
        if isinstance(error, DeploymentValidationError):
            context.setdefault("validation_errors", error.errors)
        if isinstance(error, CommandError):
            context.setdefault("command", error.command)
            context.setdefault("exit_status", error.exit_status)
        return cls.create_error(
            error_message=str(error),
            problem_type=problem_type,
            instance=instance,
            context=context,
        )

    @classmethod
    def host_not_found(
        cls, host_id: str, available_hosts: list[str] | None = None
    ) -> dict[str, Any]:
        """Standard host not found error."""
        context: dict[str, Any] = {"host_id": host_id}
        if available_hosts:
            context["available_hosts"] = available_hosts

        return cls.create_error(
            error_message=f"Host '{host_id}' not found in configuration",
            problem_type="host-not-found",
            detail=f"The host '{host_id}' is not configured. Add it with the vps_hosts tool.",
            instance=f"/hosts/{host_id}",
            context=context,
        )

    @classmethod
    def validation_error(cls, field: str, value: Any, reason: str) -> dict[str, Any]:
        """Standard validation error."""
        return cls.create_error(
            error_message=f"Validation failed for '{field}': {reason}",
            problem_type="validation-error",
            detail=f"The value '{value}' for field '{field}' is invalid: {reason}",
            instance=f"/validation/{field}",
            context={"field": field, "value": str(value), "reason": reason},
        )
