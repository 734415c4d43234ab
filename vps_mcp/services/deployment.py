"""
Deployment Service

Tool-facing operations over templates and deployment tasks.
"""

from typing import Any

import structlog

from ..core.error_response import VPSMCPErrorResponse
from ..core.exceptions import DeploymentValidationError, VPSMCPError
from ..core.orchestrator import DeploymentOrchestrator
from ..core.template_store import TemplateStore
from ..core.templates import TemplateResolver
from ..models.deployment import DeploymentTask, DeploymentTemplate
from ..models.enums import DeployAction, DeploymentStatus, VariableType

MASK = "********"


class DeploymentService:
    """Service for template browsing and deployment task operations."""

    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        templates: TemplateStore,
        resolver: TemplateResolver | None = None,
    ):
        self.orchestrator = orchestrator
        self.templates = templates
        self.resolver = resolver or TemplateResolver()
        self.logger = structlog.get_logger()

    # -- templates --------------------------------------------------------

    def list_templates(self, category: str | None = None) -> dict[str, Any]:
        templates = [self._template_view(t) for t in self.templates.list_templates(category)]
        return {"success": True, "templates": templates, "count": len(templates)}

    def preview(self, template_id: str, variables: dict[str, str] | None = None) -> dict[str, Any]:
        """Render a template without creating a task."""
        template = self.templates.get(template_id)
        plan = self.resolver.resolve(template, variables)
        return {
            "success": True,
            "template_id": template.id,
            "commands": plan.commands,
            "config_file": plan.config_file.model_dump() if plan.config_file else None,
            "post_commands": plan.post_commands,
            "variables": self._masked_variables(template, plan.variables),
        }

    def _template_view(self, template: DeploymentTemplate) -> dict[str, Any]:
        return {
            "id": template.id,
            "name": template.name,
            "description": template.description,
            "category": template.category,
            "service_type": template.service_type,
            "tags": template.tags,
            "is_builtin": template.is_builtin,
            "variables": [
                v.model_dump(mode="json", exclude_none=True) for v in template.variables
            ],
        }

    def _masked_variables(
        self, template: DeploymentTemplate | None, values: dict[str, str]
    ) -> dict[str, str]:
        if template is None:
            return dict(values)
        secret = {v.name for v in template.variables if v.type is VariableType.PASSWORD}
        return {k: (MASK if k in secret and v else v) for k, v in values.items()}

    # -- tasks ------------------------------------------------------------

    def _task_view(self, task: DeploymentTask, include_logs: bool = False) -> dict[str, Any]:
        view = task.summary()
        template = None
        if task.template_id:
            try:
                template = self.templates.get(task.template_id)
            except VPSMCPError:
                template = None
        view["variables"] = self._masked_variables(template, task.variables)
        if task.plan is not None:
            view["steps"] = {
                "commands": len(task.plan.commands),
                "config_file": task.plan.config_file.path if task.plan.config_file else None,
                "post_commands": len(task.plan.post_commands),
            }
            view["estimated_time"] = task.plan.estimated_time
            view["notes"] = task.plan.notes
        if include_logs:
            view["logs"] = [log.model_dump(mode="json", exclude_none=True) for log in task.logs]
            if task.last_command_result is not None:
                view["last_command_result"] = task.last_command_result.model_dump()
        return view

    def _task_result(self, task: DeploymentTask, include_logs: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": task.status is not DeploymentStatus.FAILED,
            "task": self._task_view(task, include_logs),
        }
        if task.status is DeploymentStatus.FAILED:
            result["error"] = task.error
            result["error_kind"] = task.error_kind.value if task.error_kind else None
        return result

    async def create(
        self, host_id: str, template_id: str, variables: dict[str, str] | None = None
    ) -> dict[str, Any]:
        task = await self.orchestrator.create_from_template(host_id, template_id, variables)
        return self._task_result(task, include_logs=task.status is DeploymentStatus.FAILED)

    async def create_from_description(self, host_id: str, description: str) -> dict[str, Any]:
        task = await self.orchestrator.create_from_description(host_id, description)
        result = self._task_result(task)
        if task.plan is not None:
            result["commands"] = task.plan.commands
            result["requirements"] = task.plan.requirements
        return result

    async def execute(self, task_id: str) -> dict[str, Any]:
        task = await self.orchestrator.execute(task_id)
        return self._task_result(task, include_logs=True)

    async def start(self, task_id: str, wait_timeout: float | None = None) -> dict[str, Any]:
        """Start a task in the background, optionally waiting for it to finish."""
        task = await self.orchestrator.start(task_id)
        if wait_timeout:
            task, timed_out = await self._wait(task_id, wait_timeout)
            result = self._task_result(task, include_logs=task.is_terminal)
            result["timed_out"] = timed_out
            return result
        return self._task_result(task)

    async def _wait(self, task_id: str, timeout: float) -> tuple[DeploymentTask, bool]:
        try:
            return await self.orchestrator.wait(task_id, timeout), False
        except TimeoutError:
            return self.orchestrator.get_task(task_id), True

    def status(self, task_id: str) -> dict[str, Any]:
        task = self.orchestrator.get_task(task_id)
        return {"success": True, "task": self._task_view(task, include_logs=True)}

    def list_tasks(self, host_id: str | None = None) -> dict[str, Any]:
        tasks = [t.summary() for t in self.orchestrator.list_tasks(host_id or None)]
        return {"success": True, "tasks": tasks, "count": len(tasks)}

    async def cancel(self, task_id: str) -> dict[str, Any]:
        task = await self.orchestrator.cancel(task_id)
        return {
            "success": True,
            "message": "Cancellation requested; the task stops after its current step",
            "task": self._task_view(task),
        }

    async def retry(
        self,
        task_id: str,
        variables: dict[str, str] | None = None,
        background: bool = True,
        wait_timeout: float | None = None,
    ) -> dict[str, Any]:
        task = await self.orchestrator.retry(task_id, variables, background=background)
        if background and wait_timeout:
            task, timed_out = await self._wait(task_id, wait_timeout)
            result = self._task_result(task, include_logs=task.is_terminal)
            result["timed_out"] = timed_out
            return result
        return self._task_result(task, include_logs=not background)

    async def delete(self, task_id: str) -> dict[str, Any]:
        await self.orchestrator.delete_task(task_id)
        return {"success": True, "message": f"Task '{task_id}' deleted", "task_id": task_id}

    # -- dispatch ---------------------------------------------------------

    async def handle_action(self, action, **params) -> dict[str, Any]:
        """Unified action handler for all deployment operations."""
        if isinstance(action, str):
            try:
                action = DeployAction(action.lower().strip())
            except ValueError:
                return {
                    "success": False,
                    "error": f"Unknown action: {action}",
                    "valid_actions": [a.value for a in DeployAction],
                }

        handler = self._get_action_handlers().get(action)
        if handler is None:
            return {
                "success": False,
                "error": f"Unknown action: {action}",
                "valid_actions": [a.value for a in DeployAction],
            }

        try:
            return await handler(**params)
        except DeploymentValidationError as e:
            return VPSMCPErrorResponse.from_exception(
                e, context={"template_id": params.get("template_id") or None}
            )
        except VPSMCPError as e:
            self.logger.warning("deployment action failed", action=action.value, error=str(e))
            task_id = params.get("task_id") or None
            return VPSMCPErrorResponse.from_exception(
                e,
                instance=f"/deployments/{task_id}" if task_id else None,
                context={"task_id": task_id, "host_id": params.get("host_id") or None},
            )

    def _get_action_handlers(self) -> dict:
        """Get mapping of actions to handler methods."""
        return {
            DeployAction.TEMPLATES: self._handle_templates_action,
            DeployAction.PREVIEW: self._handle_preview_action,
            DeployAction.CREATE: self._handle_create_action,
            DeployAction.CREATE_FROM_DESCRIPTION: self._handle_create_from_description_action,
            DeployAction.EXECUTE: self._handle_execute_action,
            DeployAction.START: self._handle_start_action,
            DeployAction.STATUS: self._handle_status_action,
            DeployAction.LIST: self._handle_list_action,
            DeployAction.CANCEL: self._handle_cancel_action,
            DeployAction.RETRY: self._handle_retry_action,
            DeployAction.DELETE: self._handle_delete_action,
        }

    async def _handle_templates_action(self, **params) -> dict[str, Any]:
        return self.list_templates(params.get("category"))

    async def _handle_preview_action(self, **params) -> dict[str, Any]:
        return self.preview(params["template_id"], params.get("variables"))

    async def _handle_create_action(self, **params) -> dict[str, Any]:
        return await self.create(params["host_id"], params["template_id"], params.get("variables"))

    async def _handle_create_from_description_action(self, **params) -> dict[str, Any]:
        return await self.create_from_description(params["host_id"], params["description"])

    async def _handle_execute_action(self, **params) -> dict[str, Any]:
        return await self.execute(params["task_id"])

    async def _handle_start_action(self, **params) -> dict[str, Any]:
        return await self.start(params["task_id"], params.get("wait_timeout"))

    async def _handle_status_action(self, **params) -> dict[str, Any]:
        return self.status(params["task_id"])

    async def _handle_list_action(self, **params) -> dict[str, Any]:
        return self.list_tasks(params.get("host_id"))

    async def _handle_cancel_action(self, **params) -> dict[str, Any]:
        return await self.cancel(params["task_id"])

    async def _handle_retry_action(self, **params) -> dict[str, Any]:
        return await self.retry(
            params["task_id"],
            params.get("variables"),
            background=params.get("background", True),
            wait_timeout=params.get("wait_timeout"),
        )

    async def _handle_delete_action(self, **params) -> dict[str, Any]:
        return await self.delete(params["task_id"])
