"""Template rendering: variables in, concrete deployment plan out.

Rendering is pure and deterministic. The same template and variable map
always produce byte-identical commands and config text, so previews can be
shown without touching a host.
"""

import math
import re
from collections.abc import Mapping
from typing import Any

from ..models.deployment import ConfigFile, DeploymentPlan, DeploymentTemplate
from ..models.enums import VariableType
from .exceptions import DeploymentValidationError

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

_TRUE_VALUES = {"true", "yes", "on", "1"}
_FALSE_VALUES = {"false", "no", "off", "0"}


def normalize_value(value: Any) -> str | None:
    """Coerce a caller-supplied value to the string form templates use."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def normalize_variables(variables: Mapping[str, Any] | None) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for name, value in (variables or {}).items():
        text = normalize_value(value)
        if text is not None:
            normalized[str(name)] = text
    return normalized


class TemplateResolver:
    """Applies defaults, visibility rules and validation, then substitutes placeholders."""

    def resolve(
        self, template: DeploymentTemplate, variables: Mapping[str, Any] | None = None
    ) -> DeploymentPlan:
        """Render ``template`` against ``variables``.

        Raises:
            DeploymentValidationError: A visible variable is missing or has the wrong type
        """
        values = self.apply_defaults(template, variables)
        visible = self.visible_variables(template, values)
        normalized, errors = self._validate(template, values, visible)
        if errors:
            raise DeploymentValidationError(errors)

        declared = {v.name for v in template.variables}
        hidden = declared - visible
        rendered_values = {
            name: value
            for name, value in sorted(normalized.items())
            if name not in hidden
        }

        commands = self._render_commands(template.commands, rendered_values, hidden)
        post_commands = self._render_commands(template.post_commands, rendered_values, hidden)

        config_file = None
        if template.config_path and template.config_template:
            path = self.render_text(template.config_path, rendered_values, hidden).strip()
            content = self.render_text(template.config_template, rendered_values, hidden)
            if path:
                config_file = ConfigFile(path=path, content=content)

        return DeploymentPlan(
            commands=commands,
            variables=rendered_values,
            description=template.description or template.name,
            config_file=config_file,
            post_commands=post_commands,
        )

    def apply_defaults(
        self, template: DeploymentTemplate, variables: Mapping[str, Any] | None
    ) -> dict[str, str]:
        """Copy defaults for unset or empty variables; the template is never mutated."""
        values = {
            v.name: v.default_value for v in template.variables if v.default_value is not None
        }
        for name, value in normalize_variables(variables).items():
            if value == "" and name in values:
                continue
            values[name] = value
        # Visibility rules compare against the canonical boolean spelling
        for var in template.variables:
            if var.type is VariableType.BOOLEAN and var.name in values:
                lowered = values[var.name].strip().lower()
                if lowered in _TRUE_VALUES:
                    values[var.name] = "true"
                elif lowered in _FALSE_VALUES:
                    values[var.name] = "false"
        return values

    def visible_variables(
        self, template: DeploymentTemplate, values: Mapping[str, str]
    ) -> set[str]:
        """Names of declared variables whose visibility rule holds.

        Rules are evaluated to a fixed point: a rule that refers to a hidden
        variable sees that variable as unset.
        """
        declared = {v.name: v for v in template.variables}
        visible = set(declared)
        for _ in range(len(declared) + 1):
            view = {k: v for k, v in values.items() if k not in declared or k in visible}
            updated = {
                name
                for name, var in declared.items()
                if var.visible_when is None or var.visible_when.is_visible(view)
            }
            if updated == visible:
                return visible
            visible = updated
        raise DeploymentValidationError(
            f"Visibility rules of template '{template.id}' do not settle"
        )

    def _validate(
        self,
        template: DeploymentTemplate,
        values: Mapping[str, str],
        visible: set[str],
    ) -> tuple[dict[str, str], list[str]]:
        normalized = dict(values)
        errors: list[str] = []
        for var in template.variables:
            if var.name not in visible:
                continue
            value = values.get(var.name, "")
            if value.strip() == "":
                if var.required:
                    errors.append(f"Missing required variable '{var.name}'")
                continue

            if var.type is VariableType.NUMBER:
                try:
                    number = float(value)
                except ValueError:
                    number = math.nan
                if not math.isfinite(number):
                    errors.append(f"Variable '{var.name}' must be a number, got {value!r}")
            elif var.type is VariableType.BOOLEAN:
                lowered = value.strip().lower()
                if lowered in _TRUE_VALUES:
                    normalized[var.name] = "true"
                elif lowered in _FALSE_VALUES:
                    normalized[var.name] = "false"
                else:
                    errors.append(f"Variable '{var.name}' must be true or false, got {value!r}")
            elif var.type is VariableType.SELECT and value not in var.options:
                errors.append(
                    f"Variable '{var.name}' must be one of {var.options}, got {value!r}"
                )
        return normalized, errors

    def render_text(self, text: str, values: Mapping[str, str], hidden: set[str]) -> str:
        """Substitute ``{{name}}`` placeholders.

        Hidden variables render as an empty string; unknown placeholders are
        left untouched so shell constructs that look similar survive.
        """

        def _replace(match: re.Match) -> str:
            name = match.group(1)
            if name in hidden:
                return ""
            if name in values:
                return values[name]
            return match.group(0)

        return PLACEHOLDER.sub(_replace, text)

    def _render_commands(
        self, commands: list[str], values: Mapping[str, str], hidden: set[str]
    ) -> list[str]:
        rendered = []
        for command in commands:
            text = self.render_text(command, values, hidden)
            if text.strip():
                rendered.append(text)
        return rendered

    def preview_commands(
        self, template: DeploymentTemplate, variables: Mapping[str, Any] | None = None
    ) -> list[str]:
        plan = self.resolve(template, variables)
        return [*plan.commands, *plan.post_commands]

    def preview_config(
        self, template: DeploymentTemplate, variables: Mapping[str, Any] | None = None
    ) -> str:
        plan = self.resolve(template, variables)
        return plan.config_file.content if plan.config_file else ""
