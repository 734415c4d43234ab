"""Redaction of credentials in logged tool payloads."""

from typing import Any

REDACTED = "[REDACTED]"
TRUNCATED = "... [TRUNCATED]"

SENSITIVE_KEYWORDS = (
    "password",
    "passwd",
    "passphrase",
    "pwd",
    "token",
    "secret",
    "private_key",
    "api_key",
    "ssh_key",
    "credential",
    "authorization",
)


def is_sensitive_field(field_name: str) -> bool:
    """Check if a field name looks like it holds a credential."""
    field_lower = field_name.lower()
    return any(keyword in field_lower for keyword in SENSITIVE_KEYWORDS)


def sanitize(value: Any, max_length: int = 1000) -> Any:
    """Copy ``value`` with sensitive mapping entries redacted and long strings cut.

    Nested dicts and lists are walked, so template variables such as
    ``{"password": ...}`` inside tool arguments are redacted too.
    """
    if isinstance(value, dict):
        return {
            key: REDACTED if is_sensitive_field(str(key)) and item else sanitize(item, max_length)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize(item, max_length) for item in value]
    if isinstance(value, str) and len(value) > max_length:
        return value[:max_length] + TRUNCATED
    return value


def sanitize_message(message: Any, max_length: int = 1000) -> dict[str, Any]:
    """Public attributes of an MCP message object, sanitized for logging."""
    if not hasattr(message, "__dict__"):
        return {"message": str(message)[:max_length]}
    public = {key: value for key, value in vars(message).items() if not key.startswith("_")}
    return sanitize(public, max_length)
