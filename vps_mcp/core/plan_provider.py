"""Deployment plan providers.

A plan provider turns either a template plus variables or a free-form
description into a :class:`DeploymentPlan`. The webhook provider asks an
external AI workflow; the keyword provider is deterministic and doubles as
its fallback and as the provider used in tests.
"""

import json
import re
import shlex
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import aiohttp
import structlog

from ..models.deployment import DeploymentPlan, DeploymentTemplate
from ..models.host import VPSHost
from .exceptions import PlanGenerationError
from .templates import TemplateResolver

logger = structlog.get_logger()

_COMMAND_KEYS = ("commands", "command", "steps")
_VARIABLE_KEYS = ("variables", "params")
_COMMAND_PREFIXES = (
    "sudo ",
    "apt ",
    "apt-get ",
    "yum ",
    "dnf ",
    "wget ",
    "curl ",
    "echo ",
    "mkdir ",
    "tar ",
    "systemctl ",
    "ufw ",
    "docker ",
    "npm ",
)
_FENCE = re.compile(r"^```[A-Za-z]*\s*|\s*```$")


class PlanProvider(ABC):
    """Source of deployment plans."""

    def __init__(self, resolver: TemplateResolver | None = None):
        self.resolver = resolver or TemplateResolver()

    def resolve_template(
        self, template: DeploymentTemplate, variables: Mapping[str, Any] | None = None
    ) -> DeploymentPlan:
        """Render a template; raises DeploymentValidationError on bad variables."""
        return self.resolver.resolve(template, variables)

    @abstractmethod
    async def generate_from_description(self, description: str, host: VPSHost) -> DeploymentPlan:
        """Build a plan from free-form text.

        Raises:
            PlanGenerationError: No usable plan could be produced
        """


class KeywordPlanProvider(PlanProvider):
    """Keyword-matched plans for common services."""

    _RULES: tuple[tuple[str, re.Pattern], ...] = (
        ("wordpress", re.compile(r"\bwordpress\b|\bblog\b")),
        ("docker", re.compile(r"\bdocker\b|\bcontainers?\b")),
        ("nginx", re.compile(r"\bnginx\b|\bweb ?server\b|\bwebsite\b")),
        ("node", re.compile(r"\bnode(\.?js)?\b|\bnpm\b")),
    )

    def match(self, description: str) -> str:
        lowered = description.lower()
        for name, pattern in self._RULES:
            if pattern.search(lowered):
                return name
        return "generic"

    async def generate_from_description(self, description: str, host: VPSHost) -> DeploymentPlan:
        if not description or not description.strip():
            raise PlanGenerationError("Deployment description is empty")
        kind = self.match(description)
        builder = getattr(self, f"_{kind}_plan")
        plan = builder(description.strip())
        logger.debug("Generated keyword plan", kind=kind, host_id=host.id)
        return plan

    def _nginx_plan(self, description: str) -> DeploymentPlan:
        return DeploymentPlan(
            commands=[
                "sudo apt-get update -y",
                "sudo apt-get install -y nginx",
                "sudo systemctl enable nginx",
                "sudo systemctl start nginx",
                "sudo ufw allow 'Nginx Full' || true",
            ],
            description="Install the nginx web server",
            estimated_time="2-3 minutes",
            requirements=["root or sudo access", "outbound network access", "ports 80 and 443 open"],
            notes=["Site configuration lives in /etc/nginx/sites-available"],
        )

    def _docker_plan(self, description: str) -> DeploymentPlan:
        return DeploymentPlan(
            commands=[
                "sudo apt-get update -y",
                "sudo apt-get install -y ca-certificates curl",
                "curl -fsSL https://get.docker.com -o /tmp/get-docker.sh",
                "sudo sh /tmp/get-docker.sh",
                "sudo systemctl enable --now docker",
                "docker --version",
            ],
            description="Install Docker Engine",
            estimated_time="5-8 minutes",
            requirements=["root or sudo access", "outbound network access"],
            notes=["Users added to the docker group must log in again"],
        )

    def _wordpress_plan(self, description: str) -> DeploymentPlan:
        return DeploymentPlan(
            commands=[
                "sudo apt-get update -y",
                "sudo apt-get install -y nginx mariadb-server php-fpm php-mysql",
                "sudo systemctl enable --now nginx mariadb",
                "curl -fsSL https://wordpress.org/latest.tar.gz -o /tmp/wordpress.tar.gz",
                "sudo tar -xzf /tmp/wordpress.tar.gz -C /var/www/html",
                "sudo chown -R www-data:www-data /var/www/html/wordpress",
            ],
            variables={"db_name": "wordpress", "db_user": "wp_user"},
            description="Install WordPress with nginx, MariaDB and PHP",
            estimated_time="10-15 minutes",
            requirements=["root or sudo access", "outbound network access", "ports 80 and 443 open"],
            notes=["Create the database user before running the web installer"],
        )

    def _node_plan(self, description: str) -> DeploymentPlan:
        return DeploymentPlan(
            commands=[
                "curl -fsSL https://deb.nodesource.com/setup_lts.x | sudo -E bash -",
                "sudo apt-get install -y nodejs",
                "node --version",
                "npm --version",
            ],
            description="Install the Node.js LTS runtime",
            estimated_time="3-5 minutes",
            requirements=["root or sudo access", "outbound network access"],
        )

    def _generic_plan(self, description: str) -> DeploymentPlan:
        return DeploymentPlan(
            commands=[
                f"echo {shlex.quote('Starting deployment: ' + description)}",
                "sudo apt-get update -y",
            ],
            description="Basic system preparation",
            estimated_time="1-2 minutes",
            requirements=["root or sudo access"],
            notes=["No specific service was recognised; extend this plan by hand"],
        )


@dataclass
class CachedPlan:
    plan: DeploymentPlan
    expires_at: float

    @property
    def is_expired(self) -> bool:
        return time.monotonic() > self.expires_at


class WebhookPlanProvider(PlanProvider):
    """Plans generated by an HTTP AI workflow.

    The webhook receives ``{"chatInput": prompt}`` and answers with a JSON
    plan, usually wrapped as ``{"output": "<json>"}``. Answers without any
    commands, HTTP errors and timeouts fall back to the keyword provider
    when one is configured.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 120.0,
        cache_ttl: float = 300.0,
        fallback: PlanProvider | None = None,
        session: aiohttp.ClientSession | None = None,
        resolver: TemplateResolver | None = None,
    ):
        super().__init__(resolver)
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.fallback = fallback
        self._session = session
        self._cache: dict[tuple[str, str, str], CachedPlan] = {}

    async def generate_from_description(self, description: str, host: VPSHost) -> DeploymentPlan:
        if not description or not description.strip():
            raise PlanGenerationError("Deployment description is empty")

        key = self._cache_key(description, host)
        cached = self._cache.get(key)
        if cached is not None:
            if not cached.is_expired:
                logger.debug("Using cached deployment plan", host_id=host.id)
                return cached.plan
            del self._cache[key]

        try:
            plan = await self._request_plan(self.build_prompt(description, host))
        except (aiohttp.ClientError, TimeoutError, PlanGenerationError) as e:
            if self.fallback is None:
                if isinstance(e, PlanGenerationError):
                    raise
                raise PlanGenerationError(f"Plan webhook request failed: {e}") from e
            logger.warning(
                "Plan webhook failed; using fallback plan",
                host_id=host.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            plan = await self.fallback.generate_from_description(description, host)

        if self.cache_ttl > 0:
            self._cache[key] = CachedPlan(plan=plan, expires_at=time.monotonic() + self.cache_ttl)
        return plan

    def _cache_key(self, description: str, host: VPSHost) -> tuple[str, str, str]:
        return (description.strip().lower(), host.id, f"{host.address}:{host.port}")

    def clear_cache(self) -> None:
        self._cache.clear()

    def build_prompt(self, description: str, host: VPSHost) -> str:
        """Prompt sent to the workflow. Carries no credentials."""
        lines = [
            "## Request",
            description.strip(),
            "",
            "## Server",
            f"- Name: {host.display_name}",
            f"- SSH user: {host.username}",
        ]
        if host.tags:
            lines.append(f"- Tags: {', '.join(host.tags)}")
        if host.description:
            lines.append(f"- Notes: {host.description}")
        lines += [
            "",
            "Answer with JSON: commands (list of shell commands), variables, description, "
            "estimatedTime, requirements, notes.",
        ]
        return "\n".join(lines)

    async def _request_plan(self, prompt: str) -> DeploymentPlan:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        if self._session is not None:
            return await self._post(self._session, prompt, timeout)
        async with aiohttp.ClientSession() as session:
            return await self._post(session, prompt, timeout)

    async def _post(
        self, session: aiohttp.ClientSession, prompt: str, timeout: aiohttp.ClientTimeout
    ) -> DeploymentPlan:
        async with session.post(
            self.webhook_url, json={"chatInput": prompt}, timeout=timeout
        ) as response:
            if response.status != 200:
                raise PlanGenerationError(f"Plan webhook returned HTTP {response.status}")
            body = await response.text()
        return self.parse_response(body)

    @classmethod
    def parse_response(cls, body: str) -> DeploymentPlan:
        """Turn a webhook response body into a plan.

        Raises:
            PlanGenerationError: The body holds no commands
        """
        try:
            data: Any = json.loads(body)
        except ValueError:
            return cls._plan_from_text(body)

        if isinstance(data, list) and data and isinstance(data[0], dict):
            data = data[0]
        if isinstance(data, dict) and isinstance(data.get("output"), str):
            output = _FENCE.sub("", data["output"].strip()).strip()
            try:
                data = json.loads(output)
            except ValueError:
                return cls._plan_from_text(output)
        if not isinstance(data, dict):
            raise PlanGenerationError("Plan webhook returned an unexpected payload")
        return cls._plan_from_dict(data)

    @staticmethod
    def _plan_from_dict(data: dict[str, Any]) -> DeploymentPlan:
        commands: list[str] = []
        for key in _COMMAND_KEYS:
            value = data.get(key)
            if isinstance(value, list):
                commands = [str(c) for c in value if isinstance(c, str) and c.strip()]
                break
            if isinstance(value, str) and value.strip():
                commands = [value]
                break
        if not commands:
            raise PlanGenerationError("Plan webhook returned no commands")

        variables: dict[str, str] = {}
        for key in _VARIABLE_KEYS:
            value = data.get(key)
            if isinstance(value, dict):
                variables = {str(k): str(v) for k, v in value.items() if v is not None}
                break

        def _string_list(value: Any) -> list[str]:
            if isinstance(value, list):
                return [str(v) for v in value]
            return [str(value)] if value else []

        estimated = data.get("estimatedTime", data.get("estimated_time"))
        return DeploymentPlan(
            commands=commands,
            variables=variables,
            description=data.get("description") if isinstance(data.get("description"), str) else None,
            estimated_time=str(estimated) if estimated else None,
            requirements=_string_list(data.get("requirements")),
            notes=_string_list(data.get("notes")),
        )

    @staticmethod
    def _plan_from_text(text: str) -> DeploymentPlan:
        commands = []
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith(("#", "//", "```")):
                continue
            if stripped.startswith(_COMMAND_PREFIXES) or "&&" in stripped or " | " in stripped:
                commands.append(stripped)
        if not commands:
            raise PlanGenerationError("Plan webhook response contained no commands")
        return DeploymentPlan(
            commands=commands,
            description="Plan extracted from a text response",
            notes=["Commands were extracted from free text; review them before running"],
        )
