"""
Pytest configuration and shared fixtures for CloudBridge tests.

Provides fixed clocks, accounts, credentials, canned provider payloads and
an httpx mock transport so no test touches the network.
"""

import json
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from pydantic import SecretStr

from cloudbridge.providers.base import CloudAccount, CloudProvider, Credentials, RetryPolicy
from cloudbridge.utils.http_client import HTTPClient

FIXED_NOW = datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)
TODAY = FIXED_NOW.date()


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingTransport:
    """httpx.MockTransport wrapper that records every request it answers."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def http_client(self, timeout: float = 5) -> HTTPClient:
        return HTTPClient(timeout=timeout, client=httpx.AsyncClient(transport=self.transport))


async def no_sleep(delay: float) -> None:
    return None


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "aws: mark test as AWS-specific")
    config.addinivalue_line("markers", "aliyun: mark test as Alibaba Cloud-specific")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy with no backoff delay."""
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


# Account fixtures
@pytest.fixture
def aws_account() -> CloudAccount:
    return CloudAccount(
        id="prod-aws",
        name="Production AWS",
        provider=CloudProvider.AWS,
        created_at=FIXED_NOW - timedelta(days=30),
    )


@pytest.fixture
def aliyun_account() -> CloudAccount:
    return CloudAccount(
        id="cn-main",
        name="Alibaba Cloud China",
        provider=CloudProvider.ALIYUN,
        created_at=FIXED_NOW - timedelta(days=20),
    )


@pytest.fixture
def aws_credentials() -> Credentials:
    return Credentials(
        access_key_id="AKIDEXAMPLE",
        secret_access_key=SecretStr("wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"),  # pragma: allowlist secret
    )


@pytest.fixture
def aliyun_credentials() -> Credentials:
    return Credentials(
        access_key_id="testid",
        secret_access_key=SecretStr("testsecret"),  # pragma: allowlist secret
    )


# AWS Cost Explorer payloads
def ce_group(service: str | None, amount: str, unit: str = "USD") -> dict[str, Any]:
    group: dict[str, Any] = {"Metrics": {"UnblendedCost": {"Amount": amount, "Unit": unit}}}
    group["Keys"] = [service] if service is not None else []
    return group


@pytest.fixture
def ce_summary_response() -> dict[str, Any]:
    """MONTHLY GetCostAndUsage grouped by SERVICE for April and May 1-15, 2024."""
    return {
        "GroupDefinitions": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        "ResultsByTime": [
            {
                "TimePeriod": {"Start": "2024-04-01", "End": "2024-05-01"},
                "Total": {},
                "Groups": [
                    ce_group("Amazon Elastic Compute Cloud - Compute", "120.50"),
                    ce_group("Amazon Simple Storage Service", "30.25"),
                    ce_group("AWS Lambda", "0"),
                ],
                "Estimated": False,
            },
            {
                "TimePeriod": {"Start": "2024-05-01", "End": "2024-05-15"},
                "Total": {},
                "Groups": [
                    ce_group("Amazon Elastic Compute Cloud - Compute", "60.10"),
                    ce_group("Amazon Simple Storage Service", "14.90"),
                    ce_group("AWS Lambda", "0.0000012"),
                ],
                "Estimated": True,
            },
        ],
        "DimensionValueAttributes": [],
    }


@pytest.fixture
def ce_trend_response() -> dict[str, Any]:
    """DAILY ungrouped GetCostAndUsage for 2024-04-15 to 2024-05-15 with two days missing."""
    results = []
    day = date(2024, 4, 15)
    while day < date(2024, 5, 15):
        if day not in (date(2024, 4, 20), date(2024, 5, 1)):
            results.append(
                {
                    "TimePeriod": {
                        "Start": day.isoformat(),
                        "End": (day + timedelta(days=1)).isoformat(),
                    },
                    "Total": {"UnblendedCost": {"Amount": "5.5", "Unit": "USD"}},
                    "Groups": [],
                    "Estimated": False,
                }
            )
        day += timedelta(days=1)
    return {"ResultsByTime": results, "DimensionValueAttributes": []}


STS_IDENTITY_XML = """<GetCallerIdentityResponse xmlns="https://sts.amazonaws.com/doc/2011-06-15/">
  <GetCallerIdentityResult>
    <Arn>arn:aws:iam::123456789012:user/cost-reader</Arn>
    <UserId>AIDAEXAMPLE</UserId>
    <Account>123456789012</Account>
  </GetCallerIdentityResult>
  <ResponseMetadata>
    <RequestId>01234567-89ab-cdef-0123-456789abcdef</RequestId>
  </ResponseMetadata>
</GetCallerIdentityResponse>"""

STS_INVALID_CLIENT_XML = """<ErrorResponse xmlns="https://sts.amazonaws.com/doc/2011-06-15/">
  <Error>
    <Type>Sender</Type>
    <Code>SignatureDoesNotMatch</Code>
    <Message>The request signature we calculated does not match the signature you provided.</Message>
  </Error>
  <RequestId>01234567-89ab-cdef-0123-456789abcdef</RequestId>
</ErrorResponse>"""


# Alibaba Cloud BSS payloads
def bill_overview(cycle: str, items: list[tuple[str | None, float]], currency: str = "CNY"):
    return {
        "Code": "Success",
        "Message": "Successful!",
        "RequestId": "A6D1A9A4-1B2C-4D5E-8F90-1234567890AB",
        "Success": True,
        "Data": {
            "BillingCycle": cycle,
            "AccountID": "1234567890",
            "AccountName": "cn-main",
            "Items": {
                "Item": [
                    {
                        "ProductName": name,
                        "ProductCode": (name or "other").lower(),
                        "PretaxAmount": amount,
                        "Currency": currency,
                    }
                    for name, amount in items
                ]
            },
        },
    }


@pytest.fixture
def aliyun_overviews() -> dict[str, dict[str, Any]]:
    return {
        "2024-05": bill_overview("2024-05", [("Elastic Compute Service", 88.8), ("Object Storage Service", 11.2)]),
        "2024-04": bill_overview("2024-04", [("Elastic Compute Service", 150.0), (None, 5.0)]),
    }


def account_bill_page(cycle: str, days: list[tuple[str, float]], total_count: int, page_num: int = 1):
    return {
        "Code": "Success",
        "Message": "Successful!",
        "Success": True,
        "Data": {
            "BillingCycle": cycle,
            "TotalCount": total_count,
            "PageNum": page_num,
            "PageSize": 300,
            "Items": {
                "Item": [
                    {"BillingDate": day, "PretaxAmount": amount, "Currency": "CNY"}
                    for day, amount in days
                ]
            },
        },
    }


def json_response(payload: Any, status_code: int = 200, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json", **(headers or {})},
    )


def route_by_host(**handlers: Callable[[httpx.Request], httpx.Response]):
    """Dispatch on the first host label: ce, sts (AWS) or business (Alibaba Cloud)."""

    def handler(request: httpx.Request) -> httpx.Response:
        label = request.url.host.split(".")[0]
        if label not in handlers:
            raise AssertionError(f"Unexpected request to {request.url.host}")
        return handlers[label](request)

    return handler
