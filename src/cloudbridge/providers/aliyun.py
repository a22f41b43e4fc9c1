"""
Alibaba Cloud BSS OpenAPI provider implementation.

Uses the RPC-style billing API at business.aliyuncs.com, signed with the
HMAC-SHA1 signature version 1.0 scheme. Amounts are reported in CNY.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

import httpx

from ..utils.auth import AliyunRPCSigner, RequestDescriptor
from ..utils.data_normalizer import normalize_aliyun_summary, normalize_aliyun_trend
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
    TransportError,
)

logger = logging.getLogger(__name__)

BSS_HOST = "business.aliyuncs.com"
BSS_VERSION = "2017-12-14"
DEFAULT_PAGE_SIZE = 300
MAX_PAGES = 100
DEFAULT_MAX_CONCURRENCY = 5

AUTH_ERROR_PREFIXES = (
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "IncompleteSignature",
    "InvalidSecurityToken",
    "Forbidden",
    "NotAuthorized",
    "NoPermission",
)


def billing_cycle(day: date) -> str:
    """BSS billing cycle string (YYYY-MM) containing the given day."""
    return day.strftime("%Y-%m")


def billing_cycles(start: date, end: date) -> list[str]:
    """Billing cycles touched by the half-open range [start, end)."""
    cycles: list[str] = []
    day = start.replace(day=1)
    last = end - timedelta(days=1)
    while day <= last:
        cycles.append(billing_cycle(day))
        day = (day + timedelta(days=32)).replace(day=1)
    return cycles


class AliyunCostProvider(CloudCostProvider):
    """Alibaba Cloud BSS OpenAPI provider implementation."""

    billing_currency = "CNY"

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        nonce_factory: Callable[[], str] | None = None,
        **kwargs: Any,
    ):
        self._nonce_factory = nonce_factory
        super().__init__(config, **kwargs)
        self.endpoint = self.config.get("endpoint", BSS_HOST)
        self.page_size = int(self.config.get("page_size", DEFAULT_PAGE_SIZE))
        self.max_concurrency = max(int(self.config.get("max_concurrency", DEFAULT_MAX_CONCURRENCY)), 1)
        self.sum_tolerance = float(self.config.get("sum_tolerance", SUM_TOLERANCE))

    def _get_provider_name(self) -> CloudProvider:
        return CloudProvider.ALIYUN

    def _create_signer(self) -> AliyunRPCSigner:
        return AliyunRPCSigner(nonce_factory=self._nonce_factory)

    def _raise_for_code(self, code: str, message: str, status: int) -> None:
        detail = f"{code}: {message}" if message else code

        if code.startswith("Throttling"):
            raise RateLimitError(
                f"Alibaba Cloud throttled the request ({detail})",
                provider=self.provider_name,
                status_code=status,
            )
        if code.startswith(AUTH_ERROR_PREFIXES):
            raise AuthError(
                f"Alibaba Cloud rejected the credentials ({detail})",
                status_code=status,
                provider=self.provider_name,
            )
        if status >= 500:
            raise TransportError(f"Alibaba Cloud service error HTTP {status} ({detail})")
        raise APIError(
            f"Alibaba Cloud request failed ({detail})",
            status_code=status,
            provider=self.provider_name,
        )

    def _check_response(self, response: httpx.Response) -> None:
        status = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if status >= 400:
            if isinstance(payload, dict) and payload.get("Code"):
                self._raise_for_code(str(payload["Code"]), str(payload.get("Message") or ""), status)
            if status == 429:
                raise RateLimitError(
                    "Alibaba Cloud throttled the request",
                    provider=self.provider_name,
                    status_code=status,
                )
            if status >= 500:
                raise TransportError(f"Alibaba Cloud service error HTTP {status}")
            if status in (401, 403):
                raise AuthError(
                    f"Alibaba Cloud rejected the request (HTTP {status})",
                    status_code=status,
                    provider=self.provider_name,
                )
            raise APIError(
                f"Alibaba Cloud request failed (HTTP {status})",
                status_code=status,
                provider=self.provider_name,
            )

        # Business errors arrive with HTTP 200
        if isinstance(payload, dict):
            code = str(payload.get("Code") or "")
            failed = payload.get("Success") is False
            if (code and code != "Success") or failed:
                self._raise_for_code(code or "UnknownError", str(payload.get("Message") or ""), status)

    def _bss_request(self, action: str, params: dict[str, str]) -> RequestDescriptor:
        return RequestDescriptor(
            method="GET",
            host=self.endpoint,
            path="/",
            query=params,
            action=action,
            version=BSS_VERSION,
        )

    async def _call(self, credentials: Credentials, action: str, **params: Any) -> dict[str, Any]:
        query = {key: str(value) for key, value in params.items()}
        response = await self._send(lambda: self._bss_request(action, query), credentials)
        return self._parse_json(response)

    async def _query_bill_overview(self, credentials: Credentials, cycle: str) -> dict[str, Any]:
        logger.debug(f"🟠 Aliyun: QueryBillOverview for {cycle}")
        return await self._call(credentials, "QueryBillOverview", BillingCycle=cycle)

    async def _query_daily_bills(self, credentials: Credentials, day: date) -> list[dict[str, Any]]:
        """All pages of QueryAccountBill at daily granularity for one billing date."""
        cycle = billing_cycle(day)
        billing_date = day.isoformat()
        pages: list[dict[str, Any]] = []
        seen = 0
        page_num = 1

        while True:
            page = await self._call(
                credentials,
                "QueryAccountBill",
                BillingCycle=cycle,
                BillingDate=billing_date,
                Granularity="DAILY",
                PageNum=page_num,
                PageSize=self.page_size,
            )
            pages.append(page)

            data = page.get("Data")
            if not isinstance(data, dict):
                raise MalformedResponseError(
                    f"Alibaba Cloud QueryAccountBill for {billing_date} returned no Data object",
                    provider=self.provider_name,
                )
            items = data.get("Items") or {}
            if isinstance(items, dict):
                items = items.get("Item") or []
            # Rows of a per-date query belong to that date even when it is not echoed
            for item in items:
                if isinstance(item, dict):
                    item.setdefault("BillingDate", billing_date)
            seen += len(items)

            try:
                total_count = int(data.get("TotalCount", 0))
            except (TypeError, ValueError) as e:
                raise MalformedResponseError(
                    f"Alibaba Cloud returned a non-numeric TotalCount {data.get('TotalCount')!r}",
                    provider=self.provider_name,
                ) from e

            if not items or seen >= total_count:
                break
            if page_num >= MAX_PAGES:
                raise MalformedResponseError(
                    f"Alibaba Cloud kept paginating past {MAX_PAGES} pages for {billing_date}",
                    provider=self.provider_name,
                )
            page_num += 1

        logger.debug(f"🟠 Aliyun: {billing_date} returned {seen} bill rows in {len(pages)} pages")
        return pages

    async def validate_credentials(self, account: CloudAccount, credentials: Credentials) -> bool:
        cycle = billing_cycle(self._clock().date())
        try:
            await self._query_bill_overview(credentials, cycle)
        except (AuthError, SigningError) as e:
            logger.warning(f"🟠 Aliyun: Credentials for {account.id} rejected: {e}")
            return False

        logger.info(f"🟠 Aliyun: Credentials for {account.id} valid")
        return True

    async def get_cost_summary(
        self, account: CloudAccount, credentials: Credentials, query: CostQuery
    ) -> CostSummary:
        current_cycle = billing_cycle(query.end - timedelta(days=1))
        prior_cycle = billing_cycle(query.start)
        logger.info(
            f"🟠 Aliyun: Fetching cost summary for {account.id} ({prior_cycle}, {current_cycle})"
        )

        responses = await asyncio.gather(
            self._query_bill_overview(credentials, current_cycle),
            self._query_bill_overview(credentials, prior_cycle),
        )
        summary = normalize_aliyun_summary(
            account,
            query,
            responses,
            currency=self.billing_currency,
            tolerance=self.sum_tolerance,
        )
        logger.info(
            f"🟠 Aliyun: {account.id} month to date {summary.current_month_cost:.2f} "
            f"{summary.currency} across {len(summary.current_month_details)} products"
        )
        return summary

    async def get_cost_trend(
        self, account: CloudAccount, credentials: Credentials, query: CostQuery
    ) -> CostTrend:
        days = [query.start + timedelta(days=offset) for offset in range(query.days)]
        logger.info(
            f"🟠 Aliyun: Fetching {query.days}-day cost trend for {account.id} "
            f"across {', '.join(billing_cycles(query.start, query.end))}"
        )

        # Daily granularity takes one BillingDate per call
        limit = asyncio.Semaphore(self.max_concurrency)

        async def fetch_day(day: date) -> list[dict[str, Any]]:
            async with limit:
                return await self._query_daily_bills(credentials, day)

        results = await asyncio.gather(*(fetch_day(day) for day in days))
        pages = [page for day_pages in results for page in day_pages]
        return normalize_aliyun_trend(account, query, pages, currency=self.billing_currency)


# Register the Alibaba Cloud provider
ProviderFactory.register_provider(CloudProvider.ALIYUN, AliyunCostProvider)
