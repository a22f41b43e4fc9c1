"""
Cloud cost service facade.

The one entry point the presentation layer talks to: account management,
cached summary and trend retrieval, credential validation and dashboard
rollups. Requests are routed to a provider client by the account's provider
tag; results go through the cache manager.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from pydantic import ValidationError

# Import provider implementations to register them
from ..providers import aliyun, aws  # noqa: F401
from ..providers.base import (
    DEFAULT_TREND_DAYS,
    APIError,
    AuthError,
    CloudAccount,
    CloudCostProvider,
    CloudProvider,
    CloudProviderError,
    ConfigurationError,
    CostQuery,
    CostRollup,
    CostSummary,
    CostTrend,
    CredentialError,
    CredentialNotFound,
    DecryptionError,
    MalformedResponseError,
    ProviderFactory,
    QueryKind,
    RateLimitError,
    RetryPolicy,
    SigningError,
    TransportError,
    utcnow,
)
from ..storage import ACCOUNT_KIND, DiskCacheRecordStore, DuckDBRecordStore, RecordStore, StoredRecord
from ..utils.cache import CacheEntry, CacheManager
from ..utils.credentials import CredentialStore, SettingsCredentialStore
from ..utils.data_normalizer import rollup_summaries
from ..utils.http_client import HTTPClient

logger = logging.getLogger(__name__)

ERROR_MESSAGES: list[tuple[type[BaseException], str]] = [
    (AuthError, "The provider rejected the credentials. Check the access key and secret."),
    (SigningError, "The stored credentials are malformed and cannot be used to sign requests."),
    (CredentialNotFound, "No credentials are stored for this account."),
    (DecryptionError, "The stored credentials could not be decrypted."),
    (RateLimitError, "The provider is throttling requests. Try again in a few minutes."),
    (TransportError, "The provider could not be reached. Check the network connection and retry."),
    (MalformedResponseError, "The provider returned billing data in an unexpected format."),
]


def create_record_store(config) -> RecordStore | None:
    """Record store for the configured cache backend; None keeps everything in memory."""
    backend = config.cache_backend
    if backend == "duckdb":
        return DuckDBRecordStore(config.cache_database)
    if backend == "disk":
        return DiskCacheRecordStore(config.cache_directory)
    return None


class CloudCostService:
    """Facade over accounts, provider clients and the cost cache."""

    def __init__(
        self,
        credential_store: CredentialStore,
        cache: CacheManager | None = None,
        record_store: RecordStore | None = None,
        provider_configs: dict[str, dict[str, Any]] | None = None,
        providers: dict[CloudProvider, CloudCostProvider] | None = None,
        http_client: HTTPClient | None = None,
        retry_policy: RetryPolicy | None = None,
        http_timeout: float = 30,
        trend_days: int = DEFAULT_TREND_DAYS,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Args:
            credential_store: Source of decrypted credentials, queried per fetch
            cache: Cache manager; a memory-only one is created when omitted
            record_store: Persistence for account records
            provider_configs: Per provider tag configuration passed to clients
            providers: Pre-built provider clients, keyed by provider tag
            http_client: HTTP client shared by lazily created provider clients
            retry_policy: Backoff schedule for lazily created provider clients
            http_timeout: Timeout for the shared HTTP client when one is created
            trend_days: Length of the trailing trend window
            clock: Source of the current time
        """
        self.credential_store = credential_store
        self.record_store = record_store
        self._clock = clock or utcnow
        self.cache = cache or CacheManager(store=record_store, clock=self._clock)
        self.provider_configs = provider_configs or {}
        self.retry_policy = retry_policy or RetryPolicy()
        self.trend_days = trend_days
        self.http_client = http_client or HTTPClient(timeout=http_timeout)

        self._providers: dict[CloudProvider, CloudCostProvider] = dict(providers or {})
        self._accounts: dict[str, CloudAccount] = {}

    @classmethod
    def from_config(
        cls,
        config=None,
        credential_store: CredentialStore | None = None,
        on_refresh_needed: Callable[[CostQuery], Any] | None = None,
    ) -> "CloudCostService":
        """Build a service from the dynaconf settings, including configured accounts."""
        if config is None:
            from ..config.settings import get_config

            config = get_config()

        record_store = create_record_store(config)
        cache = CacheManager(
            ttl=config.cache_ttl, store=record_store, on_refresh_needed=on_refresh_needed
        )
        service = cls(
            credential_store=credential_store or SettingsCredentialStore(config),
            cache=cache,
            record_store=record_store,
            provider_configs={
                provider.value: config.get_provider_config(provider.value)
                for provider in ProviderFactory.get_available_providers()
            },
            retry_policy=config.retry_policy,
            http_timeout=config.http_timeout,
            trend_days=config.trend_days,
        )
        for account in config.accounts:
            service.add_account(account, persist=False)
        return service

    async def __aenter__(self) -> "CloudCostService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _today(self) -> date:
        return self._clock().date()

    def _get_provider(self, provider: CloudProvider) -> CloudCostProvider:
        if provider not in self._providers:
            self._providers[provider] = ProviderFactory.create_provider(
                provider,
                config=self.provider_configs.get(provider.value, {}),
                http_client=self.http_client,
                retry_policy=self.retry_policy,
                clock=self._clock,
            )
            logger.debug(f"Created {provider.short_name} client")
        return self._providers[provider]

    def _resolve(self, account: CloudAccount | str) -> CloudAccount:
        account_id = account if isinstance(account, str) else account.id
        try:
            return self._accounts[account_id]
        except KeyError:
            if isinstance(account, CloudAccount):
                return account
            raise ConfigurationError(f"Unknown account '{account_id}'") from None

    # Accounts

    def add_account(self, account: CloudAccount, persist: bool = True) -> CloudAccount:
        """Register an account; re-adding an id updates its mutable fields."""
        existing = self._accounts.get(account.id)
        if existing is not None and existing.provider != account.provider:
            raise ConfigurationError(
                f"Account '{account.id}' already exists for {existing.provider.short_name}"
            )
        if existing is not None:
            account = account.model_copy(update={"created_at": existing.created_at})

        self._accounts[account.id] = account
        if persist and self.record_store is not None:
            try:
                self.record_store.upsert(
                    StoredRecord(
                        id=f"{ACCOUNT_KIND}:{account.id}",
                        kind=ACCOUNT_KIND,
                        account_id=account.id,
                        body=account.model_dump_json(),
                        updated_at=self._clock(),
                    )
                )
            except Exception as e:
                logger.error(f"Failed to persist account {account.id}: {e}")

        logger.info(f"Account {account.id} ({account.provider.short_name}) registered")
        return account

    def remove_account(self, account: CloudAccount | str) -> bool:
        """Forget an account along with every cached result and stored record it owns."""
        account_id = account if isinstance(account, str) else account.id
        existed = self._accounts.pop(account_id, None) is not None

        self.cache.invalidate_account(account_id)
        if self.record_store is not None:
            try:
                self.record_store.delete_account(account_id)
            except Exception as e:
                logger.error(f"Failed to delete stored records for {account_id}: {e}")

        if existed:
            logger.info(f"Account {account_id} removed")
        return existed

    def get_account(self, account_id: str) -> CloudAccount:
        return self._resolve(account_id)

    def list_accounts(self) -> list[CloudAccount]:
        return sorted(self._accounts.values(), key=lambda a: (a.created_at, a.name))

    # Cost data

    async def get_cost_summary(
        self, account: CloudAccount | str, force_refresh: bool = False
    ) -> CostSummary:
        """Month-to-date versus prior month, served from cache while fresh."""
        account = self._resolve(account)
        query = CostQuery.for_summary(account.id, self._today())

        async def fetch() -> CostSummary:
            credentials = self.credential_store.get_decrypted_credentials(account.credential_ref)
            provider = self._get_provider(account.provider)
            return await provider.get_cost_summary(account, credentials, query)

        return await self.cache.get_or_fetch(query, fetch, force_refresh=force_refresh)

    async def get_cost_trend(
        self, account: CloudAccount | str, force_refresh: bool = False
    ) -> CostTrend:
        """Trailing daily cost series, served from cache while fresh."""
        account = self._resolve(account)
        query = CostQuery.for_trend(account.id, self._today(), days=self.trend_days)

        async def fetch() -> CostTrend:
            credentials = self.credential_store.get_decrypted_credentials(account.credential_ref)
            provider = self._get_provider(account.provider)
            return await provider.get_cost_trend(account, credentials, query)

        return await self.cache.get_or_fetch(query, fetch, force_refresh=force_refresh)

    async def validate(self, account: CloudAccount | str) -> bool:
        """
        Check an account's credentials with a minimal provider call.

        Returns False when the credentials are missing, unusable or rejected;
        transport and throttling failures propagate.
        """
        account = self._resolve(account)
        try:
            credentials = self.credential_store.get_decrypted_credentials(account.credential_ref)
        except CredentialError as e:
            logger.warning(f"Cannot validate {account.id}: {e}")
            return False

        provider = self._get_provider(account.provider)
        return await provider.validate_credentials(account, credentials)

    async def get_dashboard_summary(self, force_refresh: bool = False) -> CostRollup:
        """Per-currency totals across every enabled account; failures are reported, not raised."""
        accounts = [a for a in self.list_accounts() if a.enabled]
        results = await asyncio.gather(
            *(self.get_cost_summary(account, force_refresh) for account in accounts),
            return_exceptions=True,
        )

        summaries: list[CostSummary] = []
        failures: dict[str, str] = {}
        for account, result in zip(accounts, results):
            if isinstance(result, CostSummary):
                summaries.append(result)
            elif isinstance(result, Exception):
                logger.warning(f"Cost summary for {account.id} failed: {result}")
                failures[account.id] = self.describe_error(result)
            else:
                raise result

        return rollup_summaries(summaries, failures)

    def _last_known(self, account: CloudAccount | str, kind: QueryKind) -> CacheEntry | None:
        account_id = account if isinstance(account, str) else account.id
        if kind == QueryKind.SUMMARY:
            query = CostQuery.for_summary(account_id, self._today())
        else:
            query = CostQuery.for_trend(account_id, self._today(), days=self.trend_days)

        entry = self.cache.peek(query)
        if entry is None:
            entry = self.cache.latest(account_id, kind)
        return entry

    def last_known_summary(self, account: CloudAccount | str) -> CostSummary | None:
        """Most recent summary regardless of age, for display with a staleness warning."""
        entry = self._last_known(account, QueryKind.SUMMARY)
        return entry.payload if entry is not None else None

    def last_known_trend(self, account: CloudAccount | str) -> CostTrend | None:
        entry = self._last_known(account, QueryKind.TREND)
        return entry.payload if entry is not None else None

    @staticmethod
    def describe_error(error: BaseException) -> str:
        """One user-facing message per error kind."""
        for error_type, message in ERROR_MESSAGES:
            if isinstance(error, error_type):
                return message
        if isinstance(error, ConfigurationError):
            return f"Configuration problem: {error}"
        if isinstance(error, APIError):
            return f"The provider rejected the request: {error}"
        if isinstance(error, CloudProviderError):
            return str(error)
        return f"Unexpected error: {error}"

    # Lifecycle

    async def start(self) -> int:
        """Load persisted accounts and cache entries; returns the number of accounts loaded."""
        loaded = 0
        if self.record_store is not None:
            for record in self.record_store.query(kind=ACCOUNT_KIND):
                try:
                    account = CloudAccount.model_validate_json(record.body)
                except ValidationError as e:
                    logger.warning(f"Skipping unreadable account record {record.id}: {e}")
                    continue
                if account.id not in self._accounts:
                    self._accounts[account.id] = account
                    loaded += 1

        self.cache.rehydrate()
        logger.info(f"Service started with {len(self._accounts)} accounts ({loaded} restored)")
        return loaded

    def cache_info(self) -> dict[str, Any]:
        return self.cache.stats()

    def clear_cache(self, account: CloudAccount | str | None = None) -> int:
        if account is None:
            return self.cache.clear()
        account_id = account if isinstance(account, str) else account.id
        return self.cache.invalidate_account(account_id)

    async def aclose(self) -> None:
        """Cancel in-flight fetches and release network and storage resources."""
        await self.cache.aclose()
        for provider in self._providers.values():
            if provider.http_client is not self.http_client:
                await provider.aclose()
        await self.http_client.aclose()
        if self.record_store is not None:
            self.record_store.close()
