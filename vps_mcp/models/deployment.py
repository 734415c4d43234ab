"""Deployment template, plan and task models."""

import uuid
from collections.abc import Mapping
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .connection import CommandResult
from .enums import DeploymentStatus, ErrorKind, LogLevel, TaskEventKind, VariableType


def _utcnow() -> datetime:
    return datetime.now(UTC)


class VisibilityCondition(BaseModel):
    """One predicate over the current variable map.

    A hidden or unset variable is seen as absent, so ``equals`` and
    ``one_of`` never match it while ``not_equals`` always does.
    """

    variable: str
    equals: str | None = None
    not_equals: str | None = None
    one_of: list[str] | None = None

    @model_validator(mode="after")
    def _require_operator(self) -> "VisibilityCondition":
        if self.equals is None and self.not_equals is None and self.one_of is None:
            raise ValueError(
                f"Condition on '{self.variable}' needs equals, not_equals or one_of"
            )
        return self

    def matches(self, values: Mapping[str, str]) -> bool:
        value = values.get(self.variable)
        if self.equals is not None and value != self.equals:
            return False
        if self.not_equals is not None and value == self.not_equals:
            return False
        if self.one_of is not None and value not in self.one_of:
            return False
        return True


class VisibilityRule(BaseModel):
    """Declarative visibility predicate for a template variable."""

    all_of: list[VisibilityCondition] = Field(default_factory=list)
    any_of: list[VisibilityCondition] = Field(default_factory=list)

    def is_visible(self, values: Mapping[str, str]) -> bool:
        if self.all_of and not all(c.matches(values) for c in self.all_of):
            return False
        if self.any_of and not any(c.matches(values) for c in self.any_of):
            return False
        return True

    @property
    def referenced_variables(self) -> set[str]:
        return {c.variable for c in (*self.all_of, *self.any_of)}


class TemplateVariable(BaseModel):
    """A user-supplied input of a deployment template."""

    name: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    description: str = ""
    type: VariableType = VariableType.TEXT
    required: bool = False
    default_value: str | None = None
    options: list[str] = Field(default_factory=list)
    visible_when: VisibilityRule | None = None

    @model_validator(mode="after")
    def _check_options(self) -> "TemplateVariable":
        if self.type is VariableType.SELECT and not self.options:
            raise ValueError(f"Select variable '{self.name}' needs options")
        return self


class DeploymentTemplate(BaseModel):
    """A reusable, parameterised list of deployment commands."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    name: str
    description: str = ""
    service_type: str = "custom"
    category: str = "custom"
    commands: list[str] = Field(default_factory=list)
    config_template: str = ""
    config_path: str | None = None
    post_commands: list[str] = Field(default_factory=list)
    variables: list[TemplateVariable] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    is_builtin: bool = False

    @model_validator(mode="after")
    def _check_variables(self) -> "DeploymentTemplate":
        names = [v.name for v in self.variables]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate template variables: {duplicates}")
        return self

    def get_variable(self, name: str) -> TemplateVariable | None:
        return next((v for v in self.variables if v.name == name), None)


class ConfigFile(BaseModel):
    """A rendered file uploaded to the host as a deployment step."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str


class DeploymentPlan(BaseModel):
    """Concrete, ordered commands ready for execution."""

    model_config = ConfigDict(frozen=True)

    commands: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    description: str | None = None
    notes: list[str] = Field(default_factory=list)
    estimated_time: str | None = None
    requirements: list[str] = Field(default_factory=list)
    config_file: ConfigFile | None = None
    post_commands: list[str] = Field(default_factory=list)


class DeploymentLog(BaseModel):
    """One append-only log line of a deployment task."""

    timestamp: datetime = Field(default_factory=_utcnow)
    level: LogLevel = LogLevel.INFO
    message: str
    epoch: int = 1
    command: str | None = None
    output: str | None = None


class DeploymentTask(BaseModel):
    """One deployment request and the history of its execution epochs."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    host_id: str
    template_id: str | None = None
    description: str | None = None
    variables: dict[str, str] = Field(default_factory=dict)
    plan: DeploymentPlan | None = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    logs: list[DeploymentLog] = Field(default_factory=list)
    error: str | None = None
    error_kind: ErrorKind | None = None
    last_command_result: CommandResult | None = None
    epoch: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> "DeploymentTask":
        return self.model_copy(deep=True)

    def summary(self) -> dict[str, object]:
        """Compact view without logs or plan."""
        return {
            "id": self.id,
            "host_id": self.host_id,
            "template_id": self.template_id,
            "description": self.description,
            "status": self.status.value,
            "progress": round(self.progress, 4),
            "epoch": self.epoch,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class TaskEvent(BaseModel):
    """A task update delivered to subscribers."""

    task_id: str
    kind: TaskEventKind
    status: DeploymentStatus
    progress: float
    epoch: int
    log: DeploymentLog | None = None
