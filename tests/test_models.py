"""Tests for host, connection and tool parameter models."""

import pytest
from pydantic import ValidationError

from vps_mcp.models.connection import ConnectionMetrics
from vps_mcp.models.deployment import (
    DeploymentTemplate,
    TemplateVariable,
    VisibilityCondition,
)
from vps_mcp.models.enums import DeployAction, HostAction, PoolAction, VariableType
from vps_mcp.models.host import VPSHost, is_valid_address
from vps_mcp.models.params import VPSDeployParams, VPSHostsParams, VPSPoolParams
from vps_mcp.models.system import SystemInfo


class TestVPSHost:
    @pytest.mark.parametrize(
        "address", ["203.0.113.10", "2001:db8::1", "web1.example.com", "localhost"]
    )
    def test_valid_addresses(self, address):
        assert is_valid_address(address)

    @pytest.mark.parametrize("address", ["", "999.1.1.1", "bad host", "-lead.example.com"])
    def test_invalid_addresses(self, address):
        assert not is_valid_address(address)

    def test_exactly_one_credential(self):
        with pytest.raises(ValidationError):
            VPSHost(id="a", address="10.0.0.1", username="u")
        with pytest.raises(ValidationError):
            VPSHost(id="a", address="10.0.0.1", username="u", password="p", private_key_path="/k")

    def test_passphrase_needs_key(self):
        with pytest.raises(ValidationError):
            VPSHost(id="a", address="10.0.0.1", username="u", password="p", passphrase="pp")

    def test_port_range(self):
        with pytest.raises(ValidationError):
            VPSHost(id="a", address="10.0.0.1", port=70000, username="u", password="p")

    def test_hosts_are_immutable(self, host):
        with pytest.raises(ValidationError):
            host.address = "10.0.0.2"

    def test_with_credentials(self, host):
        keyed = host.with_credentials(private_key_path="/keys/id", passphrase="pp")

        assert keyed.auth_method == "key"
        assert keyed.password is None
        assert keyed.endpoint == host.endpoint
        assert host.password == "s3cret"
        assert host.identity_changed(keyed)

    def test_with_metadata_rejects_identity_fields(self, host):
        with pytest.raises(ValueError):
            host.with_metadata(address="10.0.0.2")
        assert not host.identity_changed(host.with_metadata(name="Primary"))

    def test_public_dict(self, host):
        data = host.public_dict()

        assert "password" not in data
        assert "passphrase" not in data
        assert data["auth_method"] == "password"
        assert data["address"] == "203.0.113.10"


class TestConnectionMetrics:
    def test_success_rate_and_average(self):
        metrics = ConnectionMetrics()
        assert metrics.success_rate == 0.0

        for elapsed in (10.0, 30.0):
            metrics.record_attempt()
            metrics.record_success(elapsed)
        metrics.record_attempt()
        metrics.record_failure("refused")
        metrics.record_response_time(4.0)

        assert metrics.success_rate == pytest.approx(200 / 3)
        assert metrics.average_connect_time_ms == pytest.approx(20.0)
        assert metrics.average_response_time_ms == pytest.approx(4.0)
        data = metrics.model_dump()
        assert data["last_error"] == "refused"
        assert "response_samples" not in data
        assert "connect_samples" not in data


class TestSystemInfo:
    def test_usage_percentages(self):
        info = SystemInfo(
            host_id="web1",
            memory_total=8_000,
            memory_available=2_000,
            disk_total=1_000,
            disk_available=999,
        )

        assert info.memory_usage == 75.0
        assert info.disk_usage == 0.1
        assert info.model_dump()["memory_usage"] == 75.0

    def test_unknown_totals(self):
        info = SystemInfo(host_id="web1")
        assert info.memory_usage == info.disk_usage == 0.0


class TestTemplateModels:
    def test_select_needs_options(self):
        with pytest.raises(ValidationError):
            TemplateVariable(name="mode", type=VariableType.SELECT)

    def test_duplicate_variables(self):
        with pytest.raises(ValidationError):
            DeploymentTemplate(
                id="x", name="X", variables=[TemplateVariable(name="a"), TemplateVariable(name="a")]
            )

    def test_condition_needs_operator(self):
        with pytest.raises(ValidationError):
            VisibilityCondition(variable="protocol")

    def test_absent_values(self):
        assert not VisibilityCondition(variable="v", equals="x").matches({})
        assert VisibilityCondition(variable="v", not_equals="x").matches({})


class TestParams:
    @pytest.mark.parametrize("action", ["add", "ADD", "HostAction.ADD", HostAction.ADD])
    def test_action_formats(self, action):
        params = VPSHostsParams(action=action, host_id="web1")
        assert params.action is HostAction.ADD

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            VPSHostsParams(action="reboot")

    def test_host_id_required(self):
        assert VPSHostsParams().action is HostAction.LIST
        with pytest.raises(ValidationError, match="host_id is required"):
            VPSHostsParams(action="remove")

    def test_model_dump_drops_none(self):
        assert "password" not in VPSHostsParams().model_dump()

    def test_variables_are_stringified(self):
        params = VPSDeployParams(
            action="preview",
            template_id="sing-box",
            variables={"port": 8443, "tls_enabled": True, "reality_enabled": False, "uuid": None},
        )

        assert params.variables == {"port": "8443", "tls_enabled": "true", "reality_enabled": "false"}

    @pytest.mark.parametrize(
        "action,fields",
        [
            ("create", {"host_id": "web1"}),
            ("create_from_description", {"host_id": "web1"}),
            ("execute", {}),
            ("preview", {}),
        ],
    )
    def test_required_identifiers(self, action, fields):
        with pytest.raises(ValidationError, match="required for action"):
            VPSDeployParams(action=action, **fields)

    def test_deploy_defaults(self):
        params = VPSDeployParams()
        assert params.action is DeployAction.LIST
        assert params.background is True

    def test_negative_wait_timeout(self):
        with pytest.raises(ValidationError):
            VPSDeployParams(action="start", task_id="t", wait_timeout=-1)

    def test_pool_params(self):
        assert VPSPoolParams(action="health_check").action is PoolAction.HEALTH_CHECK
