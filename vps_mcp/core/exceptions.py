"""Core exceptions for VPS MCP operations."""


class VPSMCPError(Exception):
    """Base exception for VPS MCP operations."""


class ConfigurationError(VPSMCPError):
    """Configuration validation or loading failed."""


class DeploymentValidationError(VPSMCPError):
    """Template variables failed validation."""

    def __init__(self, errors: list[str] | str):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors) or "Variable validation failed")


class SSHConnectionError(VPSMCPError):
    """SSH connection could not be established or was lost."""


class ConnectionTimeoutError(SSHConnectionError):
    """SSH connection establishment exceeded its timeout."""


class AuthenticationError(SSHConnectionError):
    """SSH server rejected the supplied credentials."""


class PoolExhaustedError(SSHConnectionError):
    """No pooled connection became available within the allowed time."""


class CommandError(VPSMCPError):
    """Remote command returned a non-zero exit status or could not run."""

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_status: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    """Remote command exceeded its timeout."""


class DeploymentCancelledError(VPSMCPError):
    """Deployment was cancelled between steps."""


class PlanGenerationError(VPSMCPError):
    """Plan provider could not produce a deployment plan."""


class HostNotFoundError(VPSMCPError):
    """Host is not registered."""


class TemplateNotFoundError(VPSMCPError):
    """Deployment template does not exist."""


class TaskNotFoundError(VPSMCPError):
    """Deployment task does not exist."""


class InvalidTaskStateError(VPSMCPError):
    """Operation is not allowed in the task's current state."""
