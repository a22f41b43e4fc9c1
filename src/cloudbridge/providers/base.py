"""
Abstract base provider class and shared cost model for CloudBridge.

Defines the capability contract every cloud billing client implements, the
normalized cost model those clients produce, and the error taxonomy shared by
the signer, the clients, the cache and the service facade.
"""

import asyncio
import hashlib
import json
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

import httpx
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    computed_field,
    field_validator,
    model_validator,
)

if TYPE_CHECKING:
    from ..utils.auth import RequestDescriptor, RequestSigner
    from ..utils.http_client import HTTPClient

logger = logging.getLogger(__name__)

# Absolute tolerance when checking that a service breakdown sums to its total
SUM_TOLERANCE = 1e-6

DEFAULT_TREND_DAYS = 30


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class CloudProvider(Enum):
    """Provider tag carried by every account."""

    AWS = "aws"
    ALIYUN = "aliyun"
    AZURE = "azure"
    GCP = "gcp"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.lower().strip()
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def display_name(self) -> str:
        return {
            CloudProvider.AWS: "Amazon Web Services",
            CloudProvider.ALIYUN: "Alibaba Cloud",
            CloudProvider.AZURE: "Microsoft Azure",
            CloudProvider.GCP: "Google Cloud Platform",
        }[self]

    @property
    def short_name(self) -> str:
        return {
            CloudProvider.AWS: "AWS",
            CloudProvider.ALIYUN: "Aliyun",
            CloudProvider.AZURE: "Azure",
            CloudProvider.GCP: "GCP",
        }[self]


class TimeGranularity(Enum):
    """Supported time granularities for cost queries."""

    DAILY = "daily"
    MONTHLY = "monthly"


class QueryKind(Enum):
    """Shape of a cost query."""

    SUMMARY = "summary"
    TREND = "trend"


class CloudAccount(BaseModel):
    """A configured cloud account. The identifier never changes once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable account identifier")
    name: str = Field(..., min_length=1, description="User-facing display name")
    provider: CloudProvider
    credential_ref: str = Field(
        "", description="Opaque reference into the external credential store"
    )
    region: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    enabled: bool = True

    @model_validator(mode="before")
    @classmethod
    def default_credential_ref(cls, data: Any) -> Any:
        """Accounts without an explicit credential reference use their own id."""
        if isinstance(data, dict) and not data.get("credential_ref"):
            data = {**data, "credential_ref": data.get("id", "")}
        return data

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Account name cannot be blank")
        return stripped


class Credentials(BaseModel):
    """Decrypted provider secret material, handed out per request and never retained."""

    access_key_id: str
    secret_access_key: SecretStr
    session_token: SecretStr | None = None


class CostQuery(BaseModel):
    """Structural cache key: one account, one query shape, one time range."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    kind: QueryKind
    start: date
    end: date
    granularity: TimeGranularity

    @model_validator(mode="after")
    def validate_range(self):
        if self.start >= self.end:
            raise ValueError(f"Query start {self.start} must be before end {self.end}")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    @property
    def cache_key(self) -> str:
        """Deterministic string key for persistent stores."""
        key_data = {
            "account_id": self.account_id,
            "kind": self.kind.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "granularity": self.granularity.value,
        }
        key_str = json.dumps(key_data, sort_keys=True)
        return hashlib.sha256(key_str.encode()).hexdigest()[:32]

    @classmethod
    def for_summary(cls, account_id: str, today: date) -> "CostQuery":
        """
        The prior month plus the current month, end exclusive.

        Keyed on the month rather than the day so a fresh summary survives midnight;
        providers clip the request to today.
        """
        current_start = today.replace(day=1)
        prior_start = (current_start - timedelta(days=1)).replace(day=1)
        next_start = (current_start + timedelta(days=32)).replace(day=1)
        return cls(
            account_id=account_id,
            kind=QueryKind.SUMMARY,
            start=prior_start,
            end=next_start,
            granularity=TimeGranularity.MONTHLY,
        )

    @classmethod
    def for_trend(
        cls, account_id: str, today: date, days: int = DEFAULT_TREND_DAYS
    ) -> "CostQuery":
        """Trailing window of `days` full days ending yesterday."""
        return cls(
            account_id=account_id,
            kind=QueryKind.TREND,
            start=today - timedelta(days=days),
            end=today,
            granularity=TimeGranularity.DAILY,
        )


class ServiceCost(BaseModel):
    """Cost of one service over one period."""

    service: str
    amount: float
    currency: str

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Currency must be specified")
        return v.upper().strip()


def _sums_match(details: list[ServiceCost], total: float) -> bool:
    calculated = math.fsum(item.amount for item in details)
    return math.isclose(calculated, total, rel_tol=1e-9, abs_tol=SUM_TOLERANCE)


class CostSummary(BaseModel):
    """Month-to-date versus prior month cost for a single account."""

    kind: Literal["summary"] = "summary"
    account_id: str
    account_name: str
    provider: CloudProvider
    currency: str
    current_period_start: date
    prior_period_start: date
    current_month_cost: float
    last_month_cost: float
    current_month_details: list[ServiceCost] = Field(default_factory=list)
    last_month_details: list[ServiceCost] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Currency must be specified")
        return v.upper().strip()

    @model_validator(mode="after")
    def validate_breakdown_totals(self):
        if not _sums_match(self.current_month_details, self.current_month_cost):
            raise ValueError(
                f"Current month breakdown doesn't sum to total {self.current_month_cost}"
            )
        if not _sums_match(self.last_month_details, self.last_month_cost):
            raise ValueError(f"Last month breakdown doesn't sum to total {self.last_month_cost}")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def month_over_month_delta(self) -> float:
        return self.current_month_cost - self.last_month_cost

    @computed_field  # type: ignore[prop-decorator]
    @property
    def month_over_month_change(self) -> float:
        """Percentage change versus the prior month."""
        if self.last_month_cost > 0:
            return (self.month_over_month_delta / self.last_month_cost) * 100.0
        if self.current_month_cost > 0:
            return 100.0
        return 0.0

    @property
    def service_breakdown(self) -> dict[str, float]:
        return {item.service: item.amount for item in self.current_month_details}


class DailyCost(BaseModel):
    date: date
    amount: float


class CostTrend(BaseModel):
    """Gap-free daily cost series for a trailing window."""

    kind: Literal["trend"] = "trend"
    account_id: str
    currency: str
    daily_costs: list[DailyCost]

    @model_validator(mode="after")
    def validate_contiguous_days(self):
        for previous, current in zip(self.daily_costs, self.daily_costs[1:]):
            if current.date - previous.date != timedelta(days=1):
                raise ValueError(
                    f"Daily costs must be consecutive days, got {previous.date} then {current.date}"
                )
        return self

    @property
    def start_date(self) -> date | None:
        return self.daily_costs[0].date if self.daily_costs else None

    @property
    def end_date(self) -> date | None:
        return self.daily_costs[-1].date if self.daily_costs else None

    @property
    def total_cost(self) -> float:
        return math.fsum(day.amount for day in self.daily_costs)


class CurrencyTotal(BaseModel):
    currency: str
    current_month_cost: float = 0.0
    last_month_cost: float = 0.0
    account_count: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def month_over_month_change(self) -> float:
        if self.last_month_cost > 0:
            return ((self.current_month_cost - self.last_month_cost) / self.last_month_cost) * 100.0
        if self.current_month_cost > 0:
            return 100.0
        return 0.0


class CostRollup(BaseModel):
    """Dashboard-level totals across accounts, kept per currency."""

    totals: dict[str, CurrencyTotal] = Field(default_factory=dict)
    summaries: list[CostSummary] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)

    @property
    def account_count(self) -> int:
        return len(self.summaries)


class CloudProviderError(Exception):
    """Base exception for cloud provider errors."""

    retryable = False


class SigningError(CloudProviderError):
    """Request could not be signed: bad credentials or incomplete request descriptor."""

    pass


class ConfigurationError(CloudProviderError):
    """Configuration-related errors."""

    pass


class TransportError(CloudProviderError):
    """Network failure, timeout or provider-side 5xx."""

    retryable = True


class CredentialError(CloudProviderError):
    """Credential store failures."""

    pass


class CredentialNotFound(CredentialError):
    pass


class DecryptionError(CredentialError):
    pass


class CacheMiss(CloudProviderError):
    """Internal signal that a query has no servable cache entry."""

    pass


class APIError(CloudProviderError):
    """API-related errors."""

    def __init__(self, message: str, status_code: int | None = None, provider: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class AuthError(APIError):
    """Provider rejected the signature or the credentials."""

    pass


class RateLimitError(APIError):
    """Rate limiting errors."""

    retryable = True

    def __init__(
        self, message: str, retry_after: float | None = None, provider: str | None = None,
        status_code: int | None = 429,
    ):
        super().__init__(message, status_code=status_code, provider=provider)
        self.retry_after = retry_after


class MalformedResponseError(APIError):
    """Provider response could not be parsed into the cost model."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        raw: str | None = None,
    ):
        super().__init__(message, status_code=status_code, provider=provider)
        self.raw = raw[:2000] if raw else raw


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for retryable provider errors."""

    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(30.0, ge=0)

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        if retry_after is not None and retry_after >= 0:
            return min(retry_after, self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


class CloudCostProvider(ABC):
    """Abstract base class for cloud cost providers."""

    billing_currency = "USD"

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        http_client: "HTTPClient | None" = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """
        Initialize the cloud provider.

        Args:
            config: Provider-specific configuration dictionary
            http_client: Shared HTTP client; a private one is created when omitted
            retry_policy: Backoff schedule for retryable errors
            clock: Source of signing timestamps and of the current date
            sleep: Awaitable used between retries
        """
        from ..utils.http_client import HTTPClient

        self.config = dict(config or {})
        self.provider = self._get_provider_name()
        self.provider_name = self.provider.value
        self.http_client = http_client or HTTPClient(timeout=self.config.get("timeout", 30))
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or utcnow
        self._sleep = sleep or asyncio.sleep
        self.billing_currency = self.config.get("currency", self.billing_currency)
        self.signer = self._create_signer()

    @abstractmethod
    def _get_provider_name(self) -> CloudProvider:
        """Return the provider tag this client serves."""
        pass

    @abstractmethod
    def _create_signer(self) -> "RequestSigner":
        """Return the request signer for this provider."""
        pass

    @abstractmethod
    def _check_response(self, response: httpx.Response) -> None:
        """
        Raise the matching error for a failed provider response.

        Raises:
            AuthError, RateLimitError, TransportError, MalformedResponseError, APIError
        """
        pass

    @abstractmethod
    async def validate_credentials(self, account: CloudAccount, credentials: Credentials) -> bool:
        """
        Issue a minimal read call with the given credentials.

        Returns:
            True if the provider accepted the credentials, False if it rejected them

        Raises:
            TransportError, RateLimitError: the check itself could not be completed
        """
        pass

    @abstractmethod
    async def get_cost_summary(
        self, account: CloudAccount, credentials: Credentials, query: CostQuery
    ) -> CostSummary:
        """Fetch and normalize current versus prior month costs."""
        pass

    @abstractmethod
    async def get_cost_trend(
        self, account: CloudAccount, credentials: Credentials, query: CostQuery
    ) -> CostTrend:
        """Fetch and normalize the daily cost series for the query window."""
        pass

    async def _send(
        self, build_request: Callable[[], "RequestDescriptor"], credentials: Credentials
    ) -> httpx.Response:
        """
        Sign and send a request, retrying transport failures and throttling.

        Every attempt is signed afresh so timestamps and nonces never repeat.
        """
        attempt = 0
        while True:
            attempt += 1
            descriptor = build_request()
            signed = self.signer.sign(descriptor, credentials, self._clock())
            try:
                response = await self.http_client.send(signed)
                self._check_response(response)
                return response
            except (TransportError, RateLimitError) as e:
                if attempt >= self.retry_policy.max_attempts:
                    logger.error(
                        f"{self.provider.short_name}: giving up on {descriptor.label} "
                        f"after {attempt} attempts: {e}"
                    )
                    raise
                delay = self.retry_policy.delay_for(attempt, getattr(e, "retry_after", None))
                logger.warning(
                    f"{self.provider.short_name}: {descriptor.label} failed ({e}), "
                    f"retrying in {delay:.1f}s (attempt {attempt}/{self.retry_policy.max_attempts})"
                )
                await self._sleep(delay)

    def _parse_json(self, response: httpx.Response) -> dict[str, Any]:
        """Decode a JSON object body or raise MalformedResponseError."""
        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.provider.short_name} returned a non-JSON body: {e}",
                status_code=response.status_code,
                provider=self.provider_name,
                raw=response.text,
            ) from e
        if not isinstance(payload, dict):
            raise MalformedResponseError(
                f"{self.provider.short_name} returned a non-object JSON body",
                status_code=response.status_code,
                provider=self.provider_name,
                raw=response.text,
            )
        return payload

    async def aclose(self) -> None:
        await self.http_client.aclose()


class ProviderFactory:
    """Registry mapping provider tags to client classes."""

    _providers: dict[CloudProvider, type[CloudCostProvider]] = {}

    @classmethod
    def register_provider(cls, name: CloudProvider | str, provider_class: type):
        """Register a provider class with the factory."""
        cls._providers[CloudProvider(name)] = provider_class

    @classmethod
    def create_provider(cls, name: CloudProvider | str, **kwargs: Any) -> CloudCostProvider:
        """
        Create a provider instance.

        Args:
            name: Provider tag
            **kwargs: Passed through to the provider constructor

        Returns:
            Provider instance

        Raises:
            ConfigurationError: If no client is registered for the tag
        """
        try:
            provider = CloudProvider(name)
        except ValueError as e:
            raise ConfigurationError(f"Unknown provider '{name}'") from e

        if provider not in cls._providers:
            available = ", ".join(p.value for p in cls._providers)
            raise ConfigurationError(
                f"No client available for provider '{provider.value}'. Available providers: {available}"
            )

        return cls._providers[provider](**kwargs)

    @classmethod
    def get_available_providers(cls) -> list[CloudProvider]:
        """Get list of providers with a registered client."""
        return list(cls._providers.keys())
