"""
AWS Cost Explorer provider implementation.

Talks to Cost Explorer (JSON 1.1 protocol) and STS (query protocol) directly
over httpx, signing every request with Signature Version 4.
"""

import json
import logging
import xml.etree.ElementTree as ET
from typing import Any

import httpx

from ..utils.auth import AWSSigV4Signer, RequestDescriptor
from ..utils.data_normalizer import AWS_COST_METRIC, normalize_aws_summary, normalize_aws_trend
from .base import (
    SUM_TOLERANCE,
    APIError,
    AuthError,
    CloudAccount,
    CloudCostProvider,
    CloudProvider,
    CostQuery,
    CostSummary,
    CostTrend,
    Credentials,
    MalformedResponseError,
    ProviderFactory,
    RateLimitError,
    SigningError,
    TimeGranularity,
    TransportError,
)

logger = logging.getLogger(__name__)

# Cost Explorer only exists in us-east-1
COST_EXPLORER_REGION = "us-east-1"
COST_EXPLORER_HOST = "ce.us-east-1.amazonaws.com"
COST_EXPLORER_TARGET = "AWSInsightsIndexService.GetCostAndUsage"
STS_VERSION = "2011-06-15"
STS_NAMESPACE = "{https://sts.amazonaws.com/doc/2011-06-15/}"

# Bounds pagination against a provider that keeps returning the same token
MAX_PAGES = 50

AUTH_ERROR_CODES = {
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "SignatureDoesNotMatch",
    "AccessDeniedException",
    "AccessDenied",
    "ExpiredTokenException",
    "ExpiredToken",
    "InvalidClientTokenId",
    "IncompleteSignature",
    "MissingAuthenticationToken",
}

THROTTLING_ERROR_CODES = {
    "ThrottlingException",
    "Throttling",
    "LimitExceededException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
}


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_details(response: httpx.Response) -> tuple[str, str]:
    """Extract (code, message) from a JSON 1.1 or XML query-protocol error body."""
    text = response.text or ""
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        code = str(payload.get("__type") or payload.get("code") or "")
        # "com.amazonaws...#ThrottlingException" style types
        code = code.rsplit("#", 1)[-1]
        message = str(payload.get("message") or payload.get("Message") or "")
        return code, message

    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return "", text[:200]

    code = message = ""
    for element in root.iter():
        tag = element.tag.rsplit("}", 1)[-1]
        if tag == "Code" and not code:
            code = (element.text or "").strip()
        elif tag == "Message" and not message:
            message = (element.text or "").strip()
    return code, message


class AWSCostProvider(CloudCostProvider):
    """AWS Cost Explorer provider implementation."""

    billing_currency = "USD"

    def __init__(self, config: dict[str, Any] | None = None, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.region = self.config.get("region", COST_EXPLORER_REGION)
        self.sum_tolerance = float(self.config.get("sum_tolerance", SUM_TOLERANCE))

    def _get_provider_name(self) -> CloudProvider:
        return CloudProvider.AWS

    def _create_signer(self) -> AWSSigV4Signer:
        return AWSSigV4Signer(sign_content_sha256=True)

    def _check_response(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        code, message = _error_details(response)
        detail = f"{code}: {message}" if code else (message or f"HTTP {status}")

        if status == 429 or code in THROTTLING_ERROR_CODES:
            raise RateLimitError(
                f"AWS throttled the request ({detail})",
                retry_after=_retry_after(response),
                provider=self.provider_name,
                status_code=status,
            )
        if status in (401, 403) or code in AUTH_ERROR_CODES:
            raise AuthError(
                f"AWS rejected the credentials ({detail})",
                status_code=status,
                provider=self.provider_name,
            )
        if status >= 500:
            raise TransportError(f"AWS service error HTTP {status} ({detail})")
        raise APIError(
            f"AWS request failed ({detail})", status_code=status, provider=self.provider_name
        )

    def _sts_request(self, account: CloudAccount) -> RequestDescriptor:
        region = account.region or self.region
        return RequestDescriptor(
            method="GET",
            host=f"sts.{region}.amazonaws.com",
            path="/",
            query={"Action": "GetCallerIdentity", "Version": STS_VERSION},
            region=region,
            service="sts",
        )

    def _cost_explorer_request(self, body: dict[str, Any]) -> RequestDescriptor:
        return RequestDescriptor(
            method="POST",
            host=COST_EXPLORER_HOST,
            path="/",
            headers={
                "Content-Type": "application/x-amz-json-1.1",
                "X-Amz-Target": COST_EXPLORER_TARGET,
            },
            body=json.dumps(body),
            region=COST_EXPLORER_REGION,
            service="ce",
        )

    def _build_cost_request_body(
        self, query: CostQuery, group_by_service: bool, next_page_token: str | None = None
    ) -> dict[str, Any]:
        granularity = "DAILY" if query.granularity == TimeGranularity.DAILY else "MONTHLY"
        # Cost Explorer has nothing past today
        end = min(query.end, self._clock().date())
        if end <= query.start:
            end = query.end
        body: dict[str, Any] = {
            "TimePeriod": {
                "Start": query.start.isoformat(),
                "End": end.isoformat(),
            },
            "Granularity": granularity,
            "Metrics": [AWS_COST_METRIC],
        }
        if group_by_service:
            body["GroupBy"] = [{"Type": "DIMENSION", "Key": "SERVICE"}]
        if next_page_token:
            body["NextPageToken"] = next_page_token
        return body

    def _parse_caller_identity(self, response: httpx.Response) -> dict[str, str]:
        try:
            root = ET.fromstring(response.text)
        except ET.ParseError as e:
            raise MalformedResponseError(
                f"AWS STS returned unparseable XML: {e}",
                status_code=response.status_code,
                provider=self.provider_name,
                raw=response.text,
            ) from e

        identity = {}
        for field in ("Account", "Arn", "UserId"):
            element = root.find(f".//{STS_NAMESPACE}{field}")
            if element is None:
                element = root.find(f".//{field}")
            if element is not None and element.text:
                identity[field] = element.text.strip()

        if "Account" not in identity:
            raise MalformedResponseError(
                "AWS STS response has no Account",
                status_code=response.status_code,
                provider=self.provider_name,
                raw=response.text,
            )
        return identity

    async def validate_credentials(self, account: CloudAccount, credentials: Credentials) -> bool:
        try:
            response = await self._send(lambda: self._sts_request(account), credentials)
            identity = self._parse_caller_identity(response)
        except (AuthError, SigningError) as e:
            logger.warning(f"🔵 AWS: Credentials for {account.id} rejected: {e}")
            return False

        logger.info(f"🔵 AWS: Credentials for {account.id} valid (account {identity['Account']})")
        return True

    async def _get_cost_and_usage(
        self, credentials: Credentials, query: CostQuery, group_by_service: bool
    ) -> list[dict[str, Any]]:
        """Run GetCostAndUsage, following NextPageToken until exhausted."""
        pages: list[dict[str, Any]] = []
        token: str | None = None

        while True:
            body = self._build_cost_request_body(query, group_by_service, token)
            response = await self._send(lambda: self._cost_explorer_request(body), credentials)
            page = self._parse_json(response)
            pages.append(page)

            token = page.get("NextPageToken")
            if not token:
                break
            if len(pages) >= MAX_PAGES:
                raise MalformedResponseError(
                    f"AWS Cost Explorer kept paginating past {MAX_PAGES} pages",
                    status_code=response.status_code,
                    provider=self.provider_name,
                )
            logger.debug(f"🔵 AWS: Fetching Cost Explorer page {len(pages) + 1}")

        return pages

    async def get_cost_summary(
        self, account: CloudAccount, credentials: Credentials, query: CostQuery
    ) -> CostSummary:
        logger.info(
            f"🔵 AWS: Fetching cost summary for {account.id} ({query.start} to {query.end})"
        )
        pages = await self._get_cost_and_usage(credentials, query, group_by_service=True)
        summary = normalize_aws_summary(
            account,
            query,
            pages,
            currency=self.billing_currency,
            tolerance=self.sum_tolerance,
        )
        logger.info(
            f"🔵 AWS: {account.id} month to date {summary.current_month_cost:.2f} "
            f"{summary.currency} across {len(summary.current_month_details)} services"
        )
        return summary

    async def get_cost_trend(
        self, account: CloudAccount, credentials: Credentials, query: CostQuery
    ) -> CostTrend:
        logger.info(f"🔵 AWS: Fetching {query.days}-day cost trend for {account.id}")
        pages = await self._get_cost_and_usage(credentials, query, group_by_service=False)
        return normalize_aws_trend(account, query, pages, currency=self.billing_currency)


# Register the AWS provider
ProviderFactory.register_provider(CloudProvider.AWS, AWSCostProvider)
