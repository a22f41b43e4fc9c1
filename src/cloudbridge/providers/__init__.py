"""Cloud billing provider clients and the shared cost model."""

from .base import (
    APIError,
    AuthError,
    CacheMiss,
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
    Credentials,
    CurrencyTotal,
    DailyCost,
    DecryptionError,
    MalformedResponseError,
    ProviderFactory,
    QueryKind,
    RateLimitError,
    RetryPolicy,
    ServiceCost,
    SigningError,
    TimeGranularity,
    TransportError,
)

__all__ = [
    "APIError",
    "AuthError",
    "CacheMiss",
    "CloudAccount",
    "CloudCostProvider",
    "CloudProvider",
    "CloudProviderError",
    "ConfigurationError",
    "CostQuery",
    "CostRollup",
    "CostSummary",
    "CostTrend",
    "CredentialError",
    "CredentialNotFound",
    "Credentials",
    "CurrencyTotal",
    "DailyCost",
    "DecryptionError",
    "MalformedResponseError",
    "ProviderFactory",
    "QueryKind",
    "RateLimitError",
    "RetryPolicy",
    "ServiceCost",
    "SigningError",
    "TimeGranularity",
    "TransportError",
]
