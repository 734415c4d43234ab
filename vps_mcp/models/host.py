"""Host-related data models."""

import ipaddress
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_HOSTNAME_LABEL = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")

SECRET_FIELDS = frozenset({"password", "passphrase"})


def is_valid_address(address: str) -> bool:
    """Return True for an IP address or a well-formed DNS name."""
    try:
        ipaddress.ip_address(address)
        return True
    except ValueError:
        pass
    if not address or len(address) > 253:
        return False
    labels = address.rstrip(".").split(".")
    # An all-numeric dotted name is a malformed IPv4 address, not a hostname
    if all(label.isdigit() for label in labels):
        return False
    return all(_HOSTNAME_LABEL.match(label) for label in labels)


class VPSHost(BaseModel):
    """A managed remote machine and the credentials used to reach it.

    Identity fields are immutable; credentials change only through
    :meth:`with_credentials`, which returns a new validated instance.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    name: str = ""
    address: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str = Field(min_length=1, max_length=32)
    password: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None
    description: str = ""
    tags: list[str] = Field(default_factory=list)

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        value = value.strip()
        if not is_valid_address(value):
            raise ValueError(f"Invalid host address: {value!r}")
        return value

    @model_validator(mode="after")
    def _validate_credentials(self) -> "VPSHost":
        if bool(self.password) == bool(self.private_key_path):
            raise ValueError("Exactly one of password or private_key_path is required")
        if self.passphrase and not self.private_key_path:
            raise ValueError("passphrase is only valid together with private_key_path")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def endpoint(self) -> str:
        return f"{self.username}@{self.address}:{self.port}"

    @property
    def auth_method(self) -> str:
        return "key" if self.private_key_path else "password"

    def with_credentials(
        self,
        password: str | None = None,
        private_key_path: str | None = None,
        passphrase: str | None = None,
    ) -> "VPSHost":
        """Return a copy of this host with replaced credentials."""
        data = self.model_dump()
        data.update(password=password, private_key_path=private_key_path, passphrase=passphrase)
        return VPSHost.model_validate(data)

    def with_metadata(self, **changes: Any) -> "VPSHost":
        """Return a copy with updated name, description or tags."""
        allowed = {"name", "description", "tags"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot change immutable host fields: {sorted(unknown)}")
        data = self.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None})
        return VPSHost.model_validate(data)

    def identity_changed(self, other: "VPSHost") -> bool:
        """True when ``other`` points at a different endpoint or uses other credentials."""
        return (
            self.address != other.address
            or self.port != other.port
            or self.username != other.username
            or self.password != other.password
            or self.private_key_path != other.private_key_path
            or self.passphrase != other.passphrase
        )

    def public_dict(self) -> dict[str, Any]:
        """Host information safe to return to clients and write to logs."""
        data = self.model_dump(exclude=set(SECRET_FIELDS))
        data["auth_method"] = self.auth_method
        return data
