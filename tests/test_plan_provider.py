"""Tests for keyword and webhook plan providers."""

import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from vps_mcp.core.builtin_templates import NGINX_TEMPLATE
from vps_mcp.core.exceptions import DeploymentValidationError, PlanGenerationError
from vps_mcp.core.plan_provider import KeywordPlanProvider, WebhookPlanProvider

PLAN_JSON = {
    "commands": ["sudo apt-get update -y", "sudo apt-get install -y redis-server"],
    "variables": {"port": 6379},
    "description": "Install Redis",
    "estimatedTime": "2 minutes",
    "requirements": ["sudo"],
    "notes": "Bind to localhost only",
}


class Webhook:
    """Scripted plan webhook."""

    def __init__(self):
        self.url = ""
        self.requests: list[dict] = []
        self.status = 200
        self.body = json.dumps({"output": json.dumps(PLAN_JSON)})

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(await request.json())
        return web.Response(status=self.status, text=self.body, content_type="application/json")


@pytest.fixture
async def webhook():
    hook = Webhook()
    app = web.Application()
    app.router.add_post("/plan", hook.handle)
    server = TestServer(app)
    await server.start_server()
    hook.url = str(server.make_url("/plan"))
    yield hook
    await server.close()


class TestKeywordPlanProvider:
    @pytest.mark.parametrize(
        "description,kind",
        [
            ("Install WordPress blog", "wordpress"),
            ("I need docker containers", "docker"),
            ("set up a web server", "nginx"),
            ("deploy my Node.js app", "node"),
            ("tune the kernel", "generic"),
        ],
    )
    def test_match(self, description, kind):
        assert KeywordPlanProvider().match(description) == kind

    async def test_generic_plan_quotes_description(self, host):
        plan = await KeywordPlanProvider().generate_from_description("it's custom", host)

        assert plan.commands[0] == "echo 'Starting deployment: it'\"'\"'s custom'"
        assert plan.notes

    async def test_empty_description(self, host):
        with pytest.raises(PlanGenerationError):
            await KeywordPlanProvider().generate_from_description("", host)

    def test_resolve_template_validates(self):
        with pytest.raises(DeploymentValidationError):
            KeywordPlanProvider().resolve_template(NGINX_TEMPLATE, {})


class TestWebhookPlanProvider:
    async def test_plan_from_wrapped_json(self, webhook, host):
        provider = WebhookPlanProvider(webhook.url, timeout=5)

        plan = await provider.generate_from_description("Install Redis", host)

        assert plan.commands == PLAN_JSON["commands"]
        assert plan.variables == {"port": "6379"}
        assert plan.estimated_time == "2 minutes"
        assert plan.notes == ["Bind to localhost only"]
        prompt = webhook.requests[0]["chatInput"]
        assert "Install Redis" in prompt
        assert host.password not in prompt

    async def test_plans_are_cached_per_host(self, webhook, host, second_host):
        provider = WebhookPlanProvider(webhook.url, timeout=5)

        await provider.generate_from_description("Install Redis", host)
        await provider.generate_from_description("  install redis ", host)
        assert len(webhook.requests) == 1

        await provider.generate_from_description("Install Redis", second_host)
        assert len(webhook.requests) == 2

        provider.clear_cache()
        await provider.generate_from_description("Install Redis", host)
        assert len(webhook.requests) == 3

    async def test_http_error_without_fallback(self, webhook, host):
        webhook.status = 500
        provider = WebhookPlanProvider(webhook.url, timeout=5)

        with pytest.raises(PlanGenerationError, match="HTTP 500"):
            await provider.generate_from_description("Install Redis", host)

    async def test_empty_answer_uses_fallback(self, webhook, host):
        webhook.body = json.dumps({"output": "{\"commands\": []}"})
        provider = WebhookPlanProvider(webhook.url, timeout=5, fallback=KeywordPlanProvider())

        plan = await provider.generate_from_description("install nginx", host)

        assert "sudo apt-get install -y nginx" in plan.commands

    async def test_unreachable_webhook_uses_fallback(self, host):
        provider = WebhookPlanProvider(
            "http://127.0.0.1:9/plan", timeout=2, fallback=KeywordPlanProvider()
        )

        plan = await provider.generate_from_description("install docker", host)

        assert "docker --version" in plan.commands


class TestParseResponse:
    def test_fenced_output(self):
        body = json.dumps([{"output": "```json\n" + json.dumps(PLAN_JSON) + "\n```"}])
        plan = WebhookPlanProvider.parse_response(body)
        assert plan.description == "Install Redis"

    def test_single_command_string(self):
        plan = WebhookPlanProvider.parse_response(json.dumps({"command": "uptime"}))
        assert plan.commands == ["uptime"]

    def test_free_text_answer(self):
        body = "Run these:\n```\nsudo apt-get update\ncurl -s https://example.com | sh\n```\nDone."
        plan = WebhookPlanProvider.parse_response(body)
        assert plan.commands == ["sudo apt-get update", "curl -s https://example.com | sh"]

    @pytest.mark.parametrize("body", ["just words", json.dumps({"commands": []}), "[1, 2]"])
    def test_no_commands(self, body):
        with pytest.raises(PlanGenerationError):
            WebhookPlanProvider.parse_response(body)
