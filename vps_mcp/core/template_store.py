"""Built-in and user-defined deployment templates."""

import asyncio
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from ..models.deployment import DeploymentTemplate
from .builtin_templates import BUILTIN_TEMPLATES
from .exceptions import ConfigurationError, TemplateNotFoundError

logger = structlog.get_logger()


class TemplateStore:
    """Template catalogue backed by a YAML file of custom templates.

    Built-in templates are always present and cannot be replaced or deleted.
    Custom templates live under a top-level ``templates`` mapping keyed by id.
    """

    def __init__(self, templates_file: Path | None = None):
        self.templates_file = templates_file
        self._custom: dict[str, DeploymentTemplate] = {}
        self._lock = asyncio.Lock()

    async def load(self) -> int:
        """Read custom templates from disk. Returns how many were loaded.

        Invalid entries are logged and skipped so one bad template does not
        hide the rest.
        """
        if self.templates_file is None or not self.templates_file.exists():
            return 0
        try:
            content = await asyncio.to_thread(self.templates_file.read_text)
            loaded = yaml.safe_load(content)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to load templates from {self.templates_file}: {e}"
            ) from e

        raw = loaded.get("templates") if isinstance(loaded, dict) else None
        custom: dict[str, DeploymentTemplate] = {}
        for template_id, data in (raw or {}).items():
            if template_id in BUILTIN_TEMPLATES:
                logger.warning("Custom template shadows a built-in; ignored", template_id=template_id)
                continue
            try:
                custom[template_id] = DeploymentTemplate(
                    **{**(data or {}), "id": template_id, "is_builtin": False}
                )
            except (ValidationError, TypeError) as e:
                logger.warning("Skipping invalid template", template_id=template_id, error=str(e))

        self._custom = custom
        logger.info("Loaded custom templates", count=len(custom), path=str(self.templates_file))
        return len(custom)

    def get(self, template_id: str) -> DeploymentTemplate:
        template = BUILTIN_TEMPLATES.get(template_id) or self._custom.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{template_id}' not found")
        return template

    def list_templates(self, category: str | None = None) -> list[DeploymentTemplate]:
        templates = [*BUILTIN_TEMPLATES.values(), *self._custom.values()]
        if category:
            templates = [t for t in templates if t.category == category]
        return sorted(templates, key=lambda t: (not t.is_builtin, t.id))

    async def save_template(self, template: DeploymentTemplate) -> DeploymentTemplate:
        """Add or replace a custom template and write the file."""
        if template.id in BUILTIN_TEMPLATES:
            raise ConfigurationError(f"Cannot overwrite built-in template '{template.id}'")
        async with self._lock:
            stored = template.model_copy(update={"is_builtin": False})
            self._custom[template.id] = stored
            await self._write()
        logger.info("Saved custom template", template_id=template.id)
        return stored

    async def delete_template(self, template_id: str) -> None:
        if template_id in BUILTIN_TEMPLATES:
            raise ConfigurationError(f"Cannot delete built-in template '{template_id}'")
        async with self._lock:
            if template_id not in self._custom:
                raise TemplateNotFoundError(f"Template '{template_id}' not found")
            del self._custom[template_id]
            await self._write()
        logger.info("Deleted custom template", template_id=template_id)

    async def _write(self) -> None:
        if self.templates_file is None:
            return
        data: dict[str, Any] = {
            "templates": {
                template_id: template.model_dump(
                    mode="json", exclude={"id", "is_builtin"}, exclude_defaults=True
                )
                for template_id, template in sorted(self._custom.items())
            }
        }
        path = self.templates_file

        def _dump() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                yaml.safe_dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8"
            )

        await asyncio.to_thread(_dump)
