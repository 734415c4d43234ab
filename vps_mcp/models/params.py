"""Parameter models for FastMCP tool validation."""

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .enums import DeployAction, HostAction, PoolAction


class MCPModel(BaseModel):
    """Base model with common MCP settings."""

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Convert to dict with exclude_none by default."""
        kwargs.setdefault("exclude_none", True)
        return super().model_dump(**kwargs)


def _validate_enum_action(value: Any, enum_class: type) -> Any:
    """Generic validator for enum action fields."""
    if isinstance(value, str):
        # Handle "EnumClass.VALUE" format
        enum_value = value.split(".")[-1].lower().strip()
        for action in enum_class:
            if action.value == enum_value or action.name.lower() == enum_value:
                return action
    elif isinstance(value, enum_class):
        return value

    # Let Pydantic handle the error if no match
    return value


class VPSHostsParams(MCPModel):
    """Parameters for the vps_hosts consolidated tool."""

    action: HostAction = Field(default=HostAction.LIST, description="Action to perform")
    host_id: str = Field(default="", description="Host identifier")
    name: str | None = Field(default=None, description="Display name")
    address: str = Field(default="", description="Hostname or IP address")
    port: int = Field(default=22, ge=1, le=65535, description="SSH port number")
    username: str = Field(default="", description="SSH username")
    password: str | None = Field(default=None, description="SSH password")
    private_key_path: str | None = Field(default=None, description="Path to SSH private key")
    passphrase: str | None = Field(default=None, description="Private key passphrase")
    description: str | None = Field(default=None, description="Host description")
    tags: list[str] | None = Field(default=None, description="Host tags")

    @field_validator("action", mode="before")
    @classmethod
    def validate_action(cls, v):
        """Validate action field to handle various enum input formats."""
        return _validate_enum_action(v, HostAction)

    @model_validator(mode="after")
    def _require_host_id(self) -> "VPSHostsParams":
        if self.action is not HostAction.LIST and not self.host_id:
            raise ValueError(f"host_id is required for action '{self.action.value}'")
        return self


class VPSDeployParams(MCPModel):
    """Parameters for the vps_deploy consolidated tool."""

    action: DeployAction = Field(default=DeployAction.LIST, description="Action to perform")
    host_id: str = Field(default="", description="Target host identifier")
    template_id: str = Field(default="", description="Deployment template identifier")
    task_id: str = Field(default="", description="Deployment task identifier")
    variables: dict[str, str] | None = Field(default=None, description="Template variable values")
    description: str = Field(default="", description="Natural-language deployment request")
    background: bool = Field(default=True, description="Run execution in the background")
    wait_timeout: float | None = Field(
        default=None, ge=0, description="Seconds to wait for a background task to finish"
    )
    category: str | None = Field(default=None, description="Template category filter")

    @field_validator("action", mode="before")
    @classmethod
    def validate_action(cls, v):
        """Validate action field to handle various enum input formats."""
        return _validate_enum_action(v, DeployAction)

    @field_validator("variables", mode="before")
    @classmethod
    def stringify_variables(cls, v):
        """Tool clients may send numbers and booleans; templates work on strings."""
        if not isinstance(v, dict):
            return v
        normalized = {}
        for key, value in v.items():
            if value is None:
                continue
            if isinstance(value, bool):
                normalized[key] = "true" if value else "false"
            else:
                normalized[key] = str(value)
        return normalized

    @model_validator(mode="after")
    def _require_identifiers(self) -> "VPSDeployParams":
        required: dict[DeployAction, tuple[str, ...]] = {
            DeployAction.PREVIEW: ("template_id",),
            DeployAction.CREATE: ("host_id", "template_id"),
            DeployAction.CREATE_FROM_DESCRIPTION: ("host_id", "description"),
            DeployAction.EXECUTE: ("task_id",),
            DeployAction.START: ("task_id",),
            DeployAction.STATUS: ("task_id",),
            DeployAction.CANCEL: ("task_id",),
            DeployAction.RETRY: ("task_id",),
            DeployAction.DELETE: ("task_id",),
        }
        missing = [name for name in required.get(self.action, ()) if not getattr(self, name)]
        if missing:
            raise ValueError(f"{', '.join(missing)} required for action '{self.action.value}'")
        return self


class VPSPoolParams(MCPModel):
    """Parameters for the vps_pool consolidated tool."""

    action: PoolAction = Field(default=PoolAction.STATS, description="Action to perform")
    host_id: str = Field(default="", description="Host identifier (evict only)")

    @field_validator("action", mode="before")
    @classmethod
    def validate_action(cls, v):
        """Validate action field to handle various enum input formats."""
        return _validate_enum_action(v, PoolAction)
