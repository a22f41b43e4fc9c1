"""
Tests for the command-line interface.
"""

import json

import httpx
import pytest
from click.testing import CliRunner
from conftest import (
    STS_IDENTITY_XML,
    STS_INVALID_CLIENT_XML,
    RecordingTransport,
    json_response,
    route_by_host,
)

from cloudbridge import __version__
from cloudbridge.config.settings import CONFIG_DIR, CloudBridgeConfig, build_settings
from cloudbridge.main import cli
from cloudbridge.providers.base import RetryPolicy
from cloudbridge.services.cost_service import CloudCostService
from cloudbridge.utils.credentials import MemoryCredentialStore


@pytest.fixture
def config(tmp_path):
    local = tmp_path / "config.local.yaml"
    local.write_text("cache:\n  backend: memory\n")
    return CloudBridgeConfig(build_settings([str(CONFIG_DIR / "config.yaml"), str(local)]))


@pytest.fixture
def handlers(ce_summary_response, ce_trend_response, aliyun_overviews):
    def cost_explorer(request):
        if b'"DAILY"' in request.content:
            return json_response(ce_trend_response)
        return json_response(ce_summary_response)

    return {
        "ce": cost_explorer,
        "sts": lambda request: httpx.Response(200, text=STS_IDENTITY_XML),
        "business": lambda request: json_response(
            aliyun_overviews[request.url.params["BillingCycle"]]
        ),
    }


@pytest.fixture
def invoke(config, handlers, clock, aws_account, aliyun_account, aws_credentials, aliyun_credentials):
    """Run a CLI command against a service wired to the mock transport."""

    def factory(cfg):
        transport = RecordingTransport(route_by_host(**handlers))
        service = CloudCostService(
            credential_store=MemoryCredentialStore(
                {"prod-aws": aws_credentials, "cn-main": aliyun_credentials}
            ),
            http_client=transport.http_client(),
            retry_policy=RetryPolicy(max_attempts=2, base_delay=0, max_delay=0),
            clock=clock,
        )
        service.add_account(aws_account)
        service.add_account(aliyun_account)
        return service

    def run(*args):
        return CliRunner().invoke(
            cli, list(args), obj={"config": config, "service_factory": factory}
        )

    return run


class TestInfoCommands:
    """Test cases for commands that need no provider calls."""

    def test_version(self, invoke):
        result = invoke("version")
        assert result.exit_code == 0
        assert f"CloudBridge v{__version__}" in result.output

    def test_accounts(self, invoke):
        result = invoke("accounts")

        assert result.exit_code == 0
        assert "prod-aws: Production AWS [AWS]" in result.output
        assert "cn-main: Alibaba Cloud China [Aliyun]" in result.output

    def test_config_info(self, invoke):
        result = invoke("config-info")

        assert result.exit_code == 0
        assert "Cache: memory" in result.output
        assert "TTL: 6 hours" in result.output
        assert "Retry: 3 attempts" in result.output

    def test_cli_overrides_config(self, invoke, config):
        result = invoke("--cache-ttl", "12", "config-info")

        assert result.exit_code == 0
        assert "TTL: 12 hours" in result.output

    def test_cache_info_and_clear(self, invoke):
        info = invoke("cache-info")
        assert info.exit_code == 0
        assert "entries: 0" in info.output

        cleared = invoke("cache-clear", "--account", "prod-aws")
        assert cleared.exit_code == 0
        assert "Removed 0 cache entries for prod-aws" in cleared.output


class TestCostCommands:
    """Test cases for summary, trend and validate."""

    def test_summary_table(self, invoke):
        result = invoke("summary")

        assert result.exit_code == 0, result.output
        assert "Production AWS [AWS]: 75.00 USD" in result.output
        assert "Alibaba Cloud China [Aliyun]: 100.00 CNY" in result.output
        assert "USD: 75.00" in result.output
        assert "CNY: 100.00" in result.output

    def test_summary_json(self, invoke):
        result = invoke("summary", "--format", "json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert set(data["totals"]) == {"USD", "CNY"}
        assert data["totals"]["CNY"]["last_month_cost"] == pytest.approx(155.0)
        assert {s["account_id"] for s in data["summaries"]} == {"prod-aws", "cn-main"}

    def test_summary_single_account(self, invoke):
        result = invoke("summary", "--account", "cn-main", "--format", "json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert list(data["totals"]) == ["CNY"]

    def test_summary_reports_failed_account(self, invoke, handlers):
        handlers["business"] = lambda request: json_response(
            {"Code": "InvalidAccessKeyId.NotFound", "Message": "not found"}, status_code=404
        )

        result = invoke("summary")

        assert result.exit_code == 0
        assert "cn-main: The provider rejected the credentials" in result.output

    def test_unknown_account_exits_nonzero(self, invoke):
        result = invoke("trend", "nope")

        assert result.exit_code == 1
        assert "Unknown account 'nope'" in result.output

    def test_trend(self, invoke):
        result = invoke("trend", "prod-aws")

        assert result.exit_code == 0, result.output
        assert "2024-04-15 to 2024-05-14" in result.output
        assert "Total: 154.00 USD" in result.output

    def test_validate(self, invoke):
        result = invoke("validate", "prod-aws")

        assert result.exit_code == 0
        assert "prod-aws: credentials valid" in result.output

    def test_validate_rejected(self, invoke, handlers):
        handlers["sts"] = lambda request: httpx.Response(403, text=STS_INVALID_CLIENT_XML)

        result = invoke("validate", "prod-aws")

        assert result.exit_code == 1
        assert "prod-aws: credentials rejected" in result.output
