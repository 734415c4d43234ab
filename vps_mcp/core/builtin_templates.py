"""Deployment templates shipped with the server."""

from ..models.deployment import (
    DeploymentTemplate,
    TemplateVariable,
    VisibilityCondition,
    VisibilityRule,
)
from ..models.enums import VariableType


def _when(variable: str, **operator) -> VisibilityRule:
    return VisibilityRule(all_of=[VisibilityCondition(variable=variable, **operator)])


NGINX_TEMPLATE = DeploymentTemplate(
    id="nginx",
    name="Nginx Web Server",
    description="Install nginx and serve a site for one domain",
    service_type="web",
    category="web",
    commands=[
        "sudo apt-get update -y",
        "sudo apt-get install -y nginx",
        "sudo mkdir -p {{web_root}}",
    ],
    config_path="/etc/nginx/sites-available/{{domain}}.conf",
    config_template=(
        "server {\n"
        "    listen {{port}};\n"
        "    server_name {{domain}};\n"
        "    root {{web_root}};\n"
        "    index index.html;\n"
        "}\n"
    ),
    post_commands=[
        "sudo ln -sf /etc/nginx/sites-available/{{domain}}.conf /etc/nginx/sites-enabled/",
        "sudo nginx -t",
        "sudo systemctl reload nginx",
    ],
    variables=[
        TemplateVariable(name="domain", description="Server name", required=True),
        TemplateVariable(
            name="port", description="Listen port", type=VariableType.NUMBER, default_value="80"
        ),
        TemplateVariable(
            name="web_root", description="Document root", default_value="/var/www/html"
        ),
    ],
    tags=["web", "nginx"],
    is_builtin=True,
)

DOCKER_TEMPLATE = DeploymentTemplate(
    id="docker",
    name="Docker Engine",
    description="Install Docker Engine from the official convenience script",
    service_type="container",
    category="infrastructure",
    commands=[
        "curl -fsSL https://get.docker.com -o /tmp/get-docker.sh",
        "sudo sh /tmp/get-docker.sh",
        "sudo systemctl enable --now docker",
        "sudo usermod -aG docker {{docker_user}}",
    ],
    post_commands=["docker --version"],
    variables=[
        TemplateVariable(
            name="docker_user",
            description="User added to the docker group",
            required=True,
            default_value="root",
        ),
    ],
    tags=["docker", "containers"],
    is_builtin=True,
)

SING_BOX_TEMPLATE = DeploymentTemplate(
    id="sing-box",
    name="sing-box Proxy",
    description="Install sing-box and configure one inbound protocol",
    service_type="proxy",
    category="proxy",
    commands=[
        "bash -c \"$(curl -fsSL https://sing-box.app/deb-install.sh)\"",
        "sudo mkdir -p /etc/sing-box",
    ],
    config_path="/etc/sing-box/deploy.env",
    config_template=(
        "PROTOCOL={{protocol}}\n"
        "LISTEN_PORT={{port}}\n"
        "SS_METHOD={{ss_method}}\n"
        "UUID={{uuid}}\n"
        "PASSWORD={{password}}\n"
        "TLS_ENABLED={{tls_enabled}}\n"
        "TLS_SERVER_NAME={{tls_server_name}}\n"
        "TLS_ACME={{tls_acme_enabled}}\n"
        "ACME_EMAIL={{acme_email}}\n"
        "REALITY_ENABLED={{reality_enabled}}\n"
        "REALITY_HANDSHAKE_SERVER={{reality_handshake_server}}\n"
        "REALITY_PRIVATE_KEY={{reality_private_key}}\n"
    ),
    post_commands=[
        "sudo systemctl enable sing-box",
        "sudo systemctl restart sing-box",
        "systemctl is-active sing-box",
    ],
    variables=[
        TemplateVariable(
            name="protocol",
            description="Inbound protocol",
            type=VariableType.SELECT,
            required=True,
            default_value="vless",
            options=["shadowsocks", "vmess", "vless", "trojan", "hysteria2"],
        ),
        TemplateVariable(
            name="port",
            description="Listen port",
            type=VariableType.NUMBER,
            required=True,
            default_value="443",
        ),
        TemplateVariable(
            name="ss_method",
            description="Shadowsocks cipher",
            type=VariableType.SELECT,
            required=True,
            default_value="2022-blake3-aes-128-gcm",
            options=["2022-blake3-aes-128-gcm", "aes-256-gcm", "chacha20-ietf-poly1305"],
            visible_when=_when("protocol", equals="shadowsocks"),
        ),
        TemplateVariable(
            name="uuid",
            description="Client UUID",
            required=True,
            visible_when=_when("protocol", one_of=["vmess", "vless"]),
        ),
        TemplateVariable(
            name="password",
            description="Client password",
            type=VariableType.PASSWORD,
            required=True,
            visible_when=_when("protocol", one_of=["shadowsocks", "trojan", "hysteria2"]),
        ),
        TemplateVariable(
            name="tls_enabled",
            description="Terminate TLS on the inbound",
            type=VariableType.BOOLEAN,
            default_value="false",
            visible_when=_when("protocol", one_of=["vmess", "vless", "trojan"]),
        ),
        TemplateVariable(
            name="tls_server_name",
            description="TLS server name",
            required=True,
            visible_when=_when("tls_enabled", equals="true"),
        ),
        TemplateVariable(
            name="tls_acme_enabled",
            description="Obtain the certificate through ACME",
            type=VariableType.BOOLEAN,
            default_value="false",
            visible_when=_when("tls_enabled", equals="true"),
        ),
        TemplateVariable(
            name="acme_email",
            description="ACME account email",
            required=True,
            visible_when=_when("tls_acme_enabled", equals="true"),
        ),
        TemplateVariable(
            name="reality_enabled",
            description="Use REALITY instead of a certificate",
            type=VariableType.BOOLEAN,
            default_value="false",
            visible_when=_when("protocol", equals="vless"),
        ),
        TemplateVariable(
            name="reality_handshake_server",
            description="REALITY handshake server",
            required=True,
            default_value="www.apple.com",
            visible_when=_when("reality_enabled", equals="true"),
        ),
        TemplateVariable(
            name="reality_private_key",
            description="REALITY private key",
            type=VariableType.PASSWORD,
            required=True,
            visible_when=_when("reality_enabled", equals="true"),
        ),
    ],
    tags=["proxy", "sing-box"],
    is_builtin=True,
)

BUILTIN_TEMPLATES: dict[str, DeploymentTemplate] = {
    template.id: template for template in (NGINX_TEMPLATE, DOCKER_TEMPLATE, SING_BOX_TEMPLATE)
}
