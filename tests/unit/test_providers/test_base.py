"""
Tests for base provider functionality.

Tests the CloudCostProvider retry loop, the provider factory and the shared
HTTP client error mapping.
"""

from datetime import timedelta

import httpx
import pytest
from conftest import FIXED_NOW, RecordingTransport, json_response

from cloudbridge.providers import aliyun, aws  # noqa: F401
from cloudbridge.providers.base import (
    AuthError,
    CloudCostProvider,
    CloudProvider,
    ConfigurationError,
    MalformedResponseError,
    ProviderFactory,
    RateLimitError,
    RetryPolicy,
    TransportError,
)
from cloudbridge.utils.auth import AWSSigV4Signer, RequestDescriptor, SignedRequest
from cloudbridge.utils.http_client import HTTPClient


class TickingClock:
    """Clock that moves forward one second per reading."""

    def __init__(self):
        self.now = FIXED_NOW

    def __call__(self):
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


class MockCostProvider(CloudCostProvider):
    """Minimal provider exercising the shared send loop."""

    def _get_provider_name(self) -> CloudProvider:
        return CloudProvider.AWS

    def _create_signer(self) -> AWSSigV4Signer:
        return AWSSigV4Signer()

    def _check_response(self, response: httpx.Response) -> None:
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "slow down", retry_after=float(retry_after) if retry_after else None
            )
        if response.status_code == 403:
            raise AuthError("denied", status_code=403)
        if response.status_code >= 500:
            raise TransportError(f"HTTP {response.status_code}")

    async def validate_credentials(self, account, credentials):
        raise NotImplementedError

    async def get_cost_summary(self, account, credentials, query):
        raise NotImplementedError

    async def get_cost_trend(self, account, credentials, query):
        raise NotImplementedError


def ping_request() -> RequestDescriptor:
    return RequestDescriptor(
        method="GET",
        host="ce.us-east-1.amazonaws.com",
        path="/",
        region="us-east-1",
        service="ce",
    )


def scripted(*responses: httpx.Response):
    """Handler replaying the given responses, repeating the last one."""
    remaining = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return handler


@pytest.fixture
def sleeps():
    return []


def make_provider(transport: RecordingTransport, sleeps: list, policy: RetryPolicy | None = None):
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return MockCostProvider(
        http_client=transport.http_client(),
        retry_policy=policy or RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0),
        clock=TickingClock(),
        sleep=record_sleep,
    )


class TestRetryPolicy:
    """Test cases for the backoff schedule."""

    def test_exponential_backoff(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert policy.delay_for(10) == 30.0

    def test_retry_after_honoured_within_cap(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert policy.delay_for(1, retry_after=7) == 7
        assert policy.delay_for(1, retry_after=120) == 30.0

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestSendLoop:
    """Test cases for signing, sending and retrying provider calls."""

    async def test_success_on_first_attempt(self, aws_credentials, sleeps):
        transport = RecordingTransport(scripted(json_response({"ok": True})))
        provider = make_provider(transport, sleeps)

        response = await provider._send(ping_request, aws_credentials)

        assert response.status_code == 200
        assert transport.call_count == 1
        assert sleeps == []
        assert transport.requests[0].headers["authorization"].startswith("AWS4-HMAC-SHA256")

    async def test_transport_errors_retried_and_resigned(self, aws_credentials, sleeps):
        """Test 5xx responses are retried with backoff and each attempt is signed afresh."""
        transport = RecordingTransport(
            scripted(
                json_response({}, status_code=503),
                json_response({}, status_code=503),
                json_response({"ok": True}),
            )
        )
        provider = make_provider(transport, sleeps)

        response = await provider._send(ping_request, aws_credentials)

        assert response.status_code == 200
        assert transport.call_count == 3
        assert sleeps == [1.0, 2.0]
        dates = {r.headers["x-amz-date"] for r in transport.requests}
        signatures = {r.headers["authorization"] for r in transport.requests}
        assert len(dates) == 3
        assert len(signatures) == 3

    async def test_gives_up_after_max_attempts(self, aws_credentials, sleeps):
        transport = RecordingTransport(scripted(json_response({}, status_code=502)))
        provider = make_provider(transport, sleeps)

        with pytest.raises(TransportError):
            await provider._send(ping_request, aws_credentials)

        assert transport.call_count == 3
        assert len(sleeps) == 2

    async def test_rate_limit_honours_retry_after(self, aws_credentials, sleeps):
        transport = RecordingTransport(
            scripted(
                json_response({}, status_code=429, headers={"Retry-After": "7"}),
                json_response({"ok": True}),
            )
        )
        provider = make_provider(transport, sleeps)

        await provider._send(ping_request, aws_credentials)

        assert sleeps == [7.0]

    async def test_auth_error_not_retried(self, aws_credentials, sleeps):
        transport = RecordingTransport(scripted(json_response({}, status_code=403)))
        provider = make_provider(transport, sleeps)

        with pytest.raises(AuthError):
            await provider._send(ping_request, aws_credentials)

        assert transport.call_count == 1
        assert sleeps == []

    async def test_network_failure_retried(self, aws_credentials, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return json_response({"ok": True})

        provider = make_provider(RecordingTransport(handler), sleeps)

        response = await provider._send(ping_request, aws_credentials)

        assert response.status_code == 200
        assert len(calls) == 2

    def test_parse_json_rejects_non_object(self, sleeps):
        provider = make_provider(RecordingTransport(scripted(json_response({}))), sleeps)

        with pytest.raises(MalformedResponseError):
            provider._parse_json(httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(MalformedResponseError):
            provider._parse_json(json_response([1, 2, 3]))
        assert provider._parse_json(json_response({"a": 1})) == {"a": 1}


class TestProviderFactory:
    """Test cases for ProviderFactory."""

    def test_available_providers(self):
        available = ProviderFactory.get_available_providers()
        assert CloudProvider.AWS in available
        assert CloudProvider.ALIYUN in available

    def test_create_provider(self):
        provider = ProviderFactory.create_provider("aws", config={"region": "eu-west-1"})
        assert isinstance(provider, aws.AWSCostProvider)
        assert provider.region == "eu-west-1"

        provider = ProviderFactory.create_provider(CloudProvider.ALIYUN)
        assert isinstance(provider, aliyun.AliyunCostProvider)
        assert provider.billing_currency == "CNY"

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unknown provider"):
            ProviderFactory.create_provider("oracle")

    def test_unsupported_provider(self):
        with pytest.raises(ConfigurationError, match="No client available"):
            ProviderFactory.create_provider(CloudProvider.GCP)


class TestHTTPClient:
    """Test cases for the httpx wrapper."""

    def signed(self) -> SignedRequest:
        return SignedRequest(method="GET", url="https://example.com/", signature="sig")

    async def test_timeout_mapped(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = HTTPClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(TransportError, match="timed out"):
            await client.send(self.signed())

    async def test_error_status_returned(self):
        client = HTTPClient(
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(500))
            )
        )
        response = await client.send(self.signed())
        assert response.status_code == 500
        await client.aclose()
