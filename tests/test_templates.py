"""Tests for template variable resolution and rendering."""

import pytest

from vps_mcp.core.builtin_templates import NGINX_TEMPLATE, SING_BOX_TEMPLATE
from vps_mcp.core.exceptions import DeploymentValidationError
from vps_mcp.core.templates import TemplateResolver, normalize_value, normalize_variables
from vps_mcp.models.deployment import (
    DeploymentTemplate,
    TemplateVariable,
    VisibilityCondition,
    VisibilityRule,
)
from vps_mcp.models.enums import VariableType


@pytest.fixture
def resolver() -> TemplateResolver:
    return TemplateResolver()


def _template(variables, commands=None, **kwargs) -> DeploymentTemplate:
    return DeploymentTemplate(
        id="custom",
        name="Custom",
        commands=commands or ["echo {{value}}"],
        variables=variables,
        **kwargs,
    )


class TestNormalization:
    def test_values_become_strings(self):
        assert normalize_value(True) == "true"
        assert normalize_value(False) == "false"
        assert normalize_value(8080) == "8080"
        assert normalize_value(None) is None

    def test_none_values_are_dropped(self):
        assert normalize_variables({"a": 1, "b": None, "c": "x"}) == {"a": "1", "c": "x"}
        assert normalize_variables(None) == {}


class TestDefaultsAndValidation:
    def test_defaults_fill_unset_and_empty_values(self, resolver):
        plan = resolver.resolve(NGINX_TEMPLATE, {"domain": "example.com", "port": ""})

        assert plan.variables == {
            "domain": "example.com",
            "port": "80",
            "web_root": "/var/www/html",
        }
        assert "sudo mkdir -p /var/www/html" in plan.commands

    def test_template_is_not_mutated(self, resolver):
        before = NGINX_TEMPLATE.model_dump()
        resolver.resolve(NGINX_TEMPLATE, {"domain": "example.com", "port": "8080"})
        assert NGINX_TEMPLATE.model_dump() == before

    def test_missing_required_variable(self, resolver):
        with pytest.raises(DeploymentValidationError) as exc_info:
            resolver.resolve(NGINX_TEMPLATE, {"domain": "   "})
        assert exc_info.value.errors == ["Missing required variable 'domain'"]

    def test_all_errors_are_reported_together(self, resolver):
        with pytest.raises(DeploymentValidationError) as exc_info:
            resolver.resolve(NGINX_TEMPLATE, {"port": "eighty"})

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert any("domain" in e for e in errors)
        assert any("port" in e and "number" in e for e in errors)

    @pytest.mark.parametrize("value", ["abc", "inf", "nan"])
    def test_number_must_be_finite(self, resolver, value):
        with pytest.raises(DeploymentValidationError):
            resolver.resolve(NGINX_TEMPLATE, {"domain": "example.com", "port": value})

    def test_number_accepts_integer_input(self, resolver):
        plan = resolver.resolve(NGINX_TEMPLATE, {"domain": "example.com", "port": 8080})
        assert "listen 8080;" in plan.config_file.content

    @pytest.mark.parametrize(
        "value,expected", [("yes", "true"), ("ON", "true"), (False, "false"), ("0", "false")]
    )
    def test_boolean_spellings_are_canonicalised(self, resolver, value, expected):
        template = _template([TemplateVariable(name="value", type=VariableType.BOOLEAN)])

        plan = resolver.resolve(template, {"value": value})

        assert plan.commands == [f"echo {expected}"]

    def test_invalid_boolean(self, resolver):
        template = _template([TemplateVariable(name="value", type=VariableType.BOOLEAN)])
        with pytest.raises(DeploymentValidationError):
            resolver.resolve(template, {"value": "maybe"})

    def test_select_must_be_an_option(self, resolver):
        with pytest.raises(DeploymentValidationError) as exc_info:
            resolver.resolve(SING_BOX_TEMPLATE, {"protocol": "wireguard"})
        assert "protocol" in exc_info.value.errors[0]


class TestVisibility:
    def test_hidden_variables_are_not_required(self, resolver):
        plan = resolver.resolve(SING_BOX_TEMPLATE, {"uuid": "0b7a6c1e"})

        assert plan.variables == {
            "port": "443",
            "protocol": "vless",
            "reality_enabled": "false",
            "tls_enabled": "false",
            "uuid": "0b7a6c1e",
        }
        assert "SS_METHOD=\n" in plan.config_file.content
        assert "PASSWORD=\n" in plan.config_file.content
        assert "UUID=0b7a6c1e\n" in plan.config_file.content

    def test_protocol_switches_required_fields(self, resolver):
        with pytest.raises(DeploymentValidationError) as exc_info:
            resolver.resolve(SING_BOX_TEMPLATE, {"protocol": "shadowsocks"})

        assert exc_info.value.errors == ["Missing required variable 'password'"]

    def test_chained_visibility(self, resolver):
        variables = {"uuid": "0b7a6c1e", "tls_enabled": "yes", "tls_acme_enabled": True}

        with pytest.raises(DeploymentValidationError) as exc_info:
            resolver.resolve(SING_BOX_TEMPLATE, variables)
        assert sorted(exc_info.value.errors) == [
            "Missing required variable 'acme_email'",
            "Missing required variable 'tls_server_name'",
        ]

        plan = resolver.resolve(
            SING_BOX_TEMPLATE,
            {**variables, "tls_server_name": "proxy.example.com", "acme_email": "ops@example.com"},
        )
        assert "TLS_ENABLED=true\n" in plan.config_file.content
        assert "ACME_EMAIL=ops@example.com\n" in plan.config_file.content

    def test_variable_hidden_by_a_hidden_variable(self, resolver):
        # tls_enabled is hidden for shadowsocks, so its dependants are hidden too
        plan = resolver.resolve(
            SING_BOX_TEMPLATE,
            {"protocol": "shadowsocks", "password": "pw", "tls_enabled": "true"},
        )

        assert "tls_enabled" not in plan.variables
        assert "tls_server_name" not in plan.variables
        assert "TLS_ENABLED=\n" in plan.config_file.content

    def test_any_of_rule(self, resolver):
        rule = VisibilityRule(
            any_of=[
                VisibilityCondition(variable="mode", equals="a"),
                VisibilityCondition(variable="mode", equals="b"),
            ]
        )
        template = _template(
            [
                TemplateVariable(name="mode", default_value="c"),
                TemplateVariable(name="value", required=True, visible_when=rule),
            ]
        )

        assert resolver.visible_variables(template, {"mode": "b"}) == {"mode", "value"}
        assert resolver.visible_variables(template, {"mode": "c"}) == {"mode"}

    def test_hidden_placeholder_drops_blank_command(self, resolver):
        template = _template(
            [
                TemplateVariable(name="flag", type=VariableType.BOOLEAN, default_value="false"),
                TemplateVariable(
                    name="extra",
                    default_value="apt-get install -y extra",
                    visible_when=VisibilityRule(
                        all_of=[VisibilityCondition(variable="flag", equals="true")]
                    ),
                ),
            ],
            commands=["{{extra}}", "echo {{flag}}"],
        )

        assert resolver.resolve(template).commands == ["echo false"]
        assert resolver.resolve(template, {"flag": True}).commands == [
            "apt-get install -y extra",
            "echo true",
        ]

    def test_rules_that_never_settle_are_rejected(self, resolver):
        template = _template(
            [
                TemplateVariable(
                    name="a",
                    visible_when=VisibilityRule(
                        all_of=[VisibilityCondition(variable="b", not_equals="1")]
                    ),
                ),
                TemplateVariable(
                    name="b",
                    visible_when=VisibilityRule(
                        all_of=[VisibilityCondition(variable="a", equals="1")]
                    ),
                ),
            ]
        )

        with pytest.raises(DeploymentValidationError, match="do not settle"):
            resolver.resolve(template, {"a": "1", "b": "1"})


class TestRendering:
    def test_unknown_placeholders_and_shell_syntax_survive(self, resolver):
        template = _template(
            [TemplateVariable(name="value")],
            commands=["echo {{ value }} ${HOME} {{unknown}} {literal}"],
        )

        plan = resolver.resolve(template, {"value": "x"})

        assert plan.commands == ["echo x ${HOME} {{unknown}} {literal}"]

    def test_undeclared_variables_are_substituted(self, resolver):
        template = _template([], commands=["echo {{value}}"])
        assert resolver.resolve(template, {"value": "hi"}).commands == ["echo hi"]

    def test_rendering_is_deterministic(self, resolver):
        variables = {"uuid": "0b7a6c1e", "port": "8443"}
        first = resolver.resolve(SING_BOX_TEMPLATE, variables)
        second = resolver.resolve(SING_BOX_TEMPLATE, dict(reversed(variables.items())))
        assert first == second

    def test_config_requires_path_and_template(self, resolver):
        template = _template([TemplateVariable(name="value")], config_template="x={{value}}")
        assert resolver.resolve(template, {"value": "1"}).config_file is None

    def test_previews(self, resolver):
        variables = {"domain": "example.com"}

        commands = resolver.preview_commands(NGINX_TEMPLATE, variables)
        config = resolver.preview_config(NGINX_TEMPLATE, variables)

        assert commands[0] == "sudo apt-get update -y"
        assert commands[-1] == "sudo systemctl reload nginx"
        assert len(commands) == 6
        assert config.startswith("server {\n    listen 80;")
