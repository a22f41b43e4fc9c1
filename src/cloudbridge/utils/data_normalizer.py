"""
Cost data normalization utilities.

Converts raw Cost Explorer and BSS OpenAPI responses into the common cost
model. Every function here is pure: it reads decoded JSON and returns a model,
raising MalformedResponseError when the response shape has drifted.
"""

import logging
import math
from collections.abc import Callable, Iterable, Sequence
from datetime import date, timedelta
from typing import Any

from ..providers.base import (
    SUM_TOLERANCE,
    CloudAccount,
    CloudProvider,
    CostQuery,
    CostRollup,
    CostSummary,
    CostTrend,
    CurrencyTotal,
    DailyCost,
    MalformedResponseError,
    QueryKind,
    ServiceCost,
)

logger = logging.getLogger(__name__)

OTHER_SERVICE = "Other"

DEFAULT_CURRENCIES = {
    CloudProvider.AWS: "USD",
    CloudProvider.ALIYUN: "CNY",
}

AWS_COST_METRIC = "UnblendedCost"


def _malformed(provider: CloudProvider, message: str) -> MalformedResponseError:
    return MalformedResponseError(
        f"{provider.short_name} response malformed: {message}", provider=provider.value
    )


def _parse_amount(provider: CloudProvider, value: Any, where: str) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError) as e:
        raise _malformed(provider, f"non-numeric amount {value!r} in {where}") from e
    if not math.isfinite(amount):
        raise _malformed(provider, f"non-finite amount {value!r} in {where}")
    return amount


def _parse_date(provider: CloudProvider, value: Any, where: str) -> date:
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise _malformed(provider, f"invalid date {value!r} in {where}") from e


def _service_name(raw: Any) -> str:
    name = str(raw).strip() if raw is not None else ""
    return name or OTHER_SERVICE


def _resolve_currency(provider: CloudProvider, currencies: set[str], fallback: str) -> str:
    """Pick the single currency of a response, or the provider's billing currency."""
    found = {c.strip().upper() for c in currencies if c and c.strip()}
    if len(found) > 1:
        raise _malformed(provider, f"mixed currencies {sorted(found)} in one response")
    return found.pop() if found else fallback


def _to_details(amounts: dict[str, float], currency: str) -> list[ServiceCost]:
    """Service breakdown sorted by amount descending, then by name."""
    ordered = sorted(amounts.items(), key=lambda item: (-item[1], item[0]))
    return [ServiceCost(service=name, amount=amount, currency=currency) for name, amount in ordered]


def _check_total(
    provider: CloudProvider,
    amounts: dict[str, float],
    reported_total: float,
    tolerance: float,
    label: str,
) -> None:
    calculated = math.fsum(amounts.values())
    if abs(calculated - reported_total) > tolerance:
        raise _malformed(
            provider,
            f"{label} breakdown sums to {calculated:.6f} but total is {reported_total:.6f}",
        )


def fill_daily_window(amounts: dict[date, float], start: date, days: int) -> list[DailyCost]:
    """
    Build exactly `days` consecutive daily entries starting at `start`.

    Days absent from `amounts` are zero-filled; days outside the window are ignored.
    """
    window = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        window.append(DailyCost(date=day, amount=amounts.get(day, 0.0)))

    dropped = [d for d in amounts if d < start or d >= start + timedelta(days=days)]
    if dropped:
        logger.debug(f"Ignoring {len(dropped)} daily amounts outside {start} +{days}d")
    return window


def _summary_periods(query: CostQuery) -> tuple[date, date]:
    """Return (prior period start, current period start) for a summary query."""
    current_start = (query.end - timedelta(days=1)).replace(day=1)
    if current_start <= query.start:
        current_start = query.start
    return query.start, current_start


# AWS Cost Explorer


def _aws_results(responses: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    results = []
    for page in responses:
        page_results = page.get("ResultsByTime")
        if not isinstance(page_results, list):
            raise _malformed(CloudProvider.AWS, "missing ResultsByTime")
        results.extend(page_results)
    return results


def _aws_metric(result_part: dict[str, Any], where: str) -> tuple[float, str | None] | None:
    metrics = result_part.get(AWS_COST_METRIC) if isinstance(result_part, dict) else None
    if not metrics:
        return None
    if not isinstance(metrics, dict):
        raise _malformed(CloudProvider.AWS, f"{AWS_COST_METRIC} is not an object in {where}")
    amount = _parse_amount(CloudProvider.AWS, metrics.get("Amount"), where)
    return amount, metrics.get("Unit")


def normalize_aws_summary(
    account: CloudAccount,
    query: CostQuery,
    responses: Sequence[dict[str, Any]],
    currency: str | None = None,
    tolerance: float = SUM_TOLERANCE,
) -> CostSummary:
    """
    Normalize MONTHLY GetCostAndUsage pages grouped by SERVICE.

    Results for the same month spread over several pages are merged.
    """
    provider = CloudProvider.AWS
    prior_start, current_start = _summary_periods(query)
    periods: dict[str, dict[str, float]] = {"current": {}, "last": {}}
    reported: dict[str, float] = {}
    units: set[str] = set()

    for result in _aws_results(responses):
        try:
            period_start = _parse_date(provider, result["TimePeriod"]["Start"], "TimePeriod")
        except (KeyError, TypeError) as e:
            raise _malformed(provider, "result without TimePeriod.Start") from e

        if period_start < prior_start or period_start >= query.end:
            logger.debug(f"AWS: skipping result outside summary window: {period_start}")
            continue
        label = "current" if period_start >= current_start else "last"
        bucket = periods[label]

        groups = result.get("Groups") or []
        if not isinstance(groups, list):
            raise _malformed(provider, "Groups is not a list")
        for group in groups:
            keys = group.get("Keys") or []
            service = _service_name(keys[0] if keys else None)
            metric = _aws_metric(group.get("Metrics") or {}, f"group {service}")
            if metric is None:
                raise _malformed(provider, f"group {service} has no {AWS_COST_METRIC}")
            amount, unit = metric
            bucket[service] = bucket.get(service, 0.0) + amount
            if unit:
                units.add(unit)

        total = _aws_metric(result.get("Total") or {}, f"{label} total")
        if total is not None:
            reported[label] = reported.get(label, 0.0) + total[0]
            if total[1]:
                units.add(total[1])

    for label, total in reported.items():
        _check_total(provider, periods[label], total, tolerance, f"{label} month")

    resolved = _resolve_currency(provider, units, currency or DEFAULT_CURRENCIES[provider])
    return CostSummary(
        account_id=account.id,
        account_name=account.name,
        provider=provider,
        currency=resolved,
        current_period_start=current_start,
        prior_period_start=prior_start,
        current_month_cost=math.fsum(periods["current"].values()),
        last_month_cost=math.fsum(periods["last"].values()),
        current_month_details=_to_details(periods["current"], resolved),
        last_month_details=_to_details(periods["last"], resolved),
    )


def normalize_aws_trend(
    account: CloudAccount,
    query: CostQuery,
    responses: Sequence[dict[str, Any]],
    currency: str | None = None,
) -> CostTrend:
    """Normalize ungrouped DAILY GetCostAndUsage pages, reading Total.UnblendedCost."""
    provider = CloudProvider.AWS
    amounts: dict[date, float] = {}
    units: set[str] = set()

    for result in _aws_results(responses):
        try:
            day = _parse_date(provider, result["TimePeriod"]["Start"], "TimePeriod")
        except (KeyError, TypeError) as e:
            raise _malformed(provider, "result without TimePeriod.Start") from e

        metric = _aws_metric(result.get("Total") or {}, f"total for {day}")
        if metric is None:
            # Days without usage come back with an empty Total
            continue
        amount, unit = metric
        amounts[day] = amounts.get(day, 0.0) + amount
        if unit:
            units.add(unit)

    resolved = _resolve_currency(provider, units, currency or DEFAULT_CURRENCIES[provider])
    return CostTrend(
        account_id=account.id,
        currency=resolved,
        daily_costs=fill_daily_window(amounts, query.start, query.days),
    )


# Alibaba Cloud BSS OpenAPI


def _aliyun_data(response: dict[str, Any]) -> dict[str, Any]:
    data = response.get("Data")
    if not isinstance(data, dict):
        raise _malformed(CloudProvider.ALIYUN, "missing Data object")
    return data


def _aliyun_items(data: dict[str, Any]) -> list[dict[str, Any]]:
    items = data.get("Items") or {}
    if isinstance(items, dict):
        items = items.get("Item") or []
    if not isinstance(items, list):
        raise _malformed(CloudProvider.ALIYUN, "Items.Item is not a list")
    return items


def normalize_aliyun_summary(
    account: CloudAccount,
    query: CostQuery,
    responses: Sequence[dict[str, Any]],
    currency: str | None = None,
    tolerance: float = SUM_TOLERANCE,
) -> CostSummary:
    """
    Normalize QueryBillOverview responses, one per billing cycle.

    Each response is matched to a period by its Data.BillingCycle (YYYY-MM).
    """
    provider = CloudProvider.ALIYUN
    prior_start, current_start = _summary_periods(query)
    cycles = {
        current_start.strftime("%Y-%m"): "current",
        prior_start.strftime("%Y-%m"): "last",
    }
    periods: dict[str, dict[str, float]] = {"current": {}, "last": {}}
    units: set[str] = set()

    for response in responses:
        data = _aliyun_data(response)
        cycle = data.get("BillingCycle")
        label = cycles.get(str(cycle))
        if label is None:
            raise _malformed(provider, f"unexpected billing cycle {cycle!r}")
        bucket = periods[label]

        for item in _aliyun_items(data):
            service = _service_name(item.get("ProductName"))
            amount = _parse_amount(provider, item.get("PretaxAmount", 0), f"product {service}")
            bucket[service] = bucket.get(service, 0.0) + amount
            if item.get("Currency"):
                units.add(item["Currency"])

        if "PretaxAmount" in data:
            reported = _parse_amount(provider, data["PretaxAmount"], f"cycle {cycle}")
            _check_total(provider, bucket, reported, tolerance, f"cycle {cycle}")

    resolved = _resolve_currency(provider, units, currency or DEFAULT_CURRENCIES[provider])
    return CostSummary(
        account_id=account.id,
        account_name=account.name,
        provider=provider,
        currency=resolved,
        current_period_start=current_start,
        prior_period_start=prior_start,
        current_month_cost=math.fsum(periods["current"].values()),
        last_month_cost=math.fsum(periods["last"].values()),
        current_month_details=_to_details(periods["current"], resolved),
        last_month_details=_to_details(periods["last"], resolved),
    )


def normalize_aliyun_trend(
    account: CloudAccount,
    query: CostQuery,
    responses: Sequence[dict[str, Any]],
    currency: str | None = None,
) -> CostTrend:
    """Normalize daily QueryAccountBill pages, summing all rows of the same BillingDate."""
    provider = CloudProvider.ALIYUN
    amounts: dict[date, float] = {}
    units: set[str] = set()

    for response in responses:
        for item in _aliyun_items(_aliyun_data(response)):
            if not item.get("BillingDate"):
                raise _malformed(provider, "daily bill row without BillingDate")
            day = _parse_date(provider, item["BillingDate"], "BillingDate")
            amount = _parse_amount(provider, item.get("PretaxAmount", 0), f"bill for {day}")
            amounts[day] = amounts.get(day, 0.0) + amount
            if item.get("Currency"):
                units.add(item["Currency"])

    resolved = _resolve_currency(provider, units, currency or DEFAULT_CURRENCIES[provider])
    return CostTrend(
        account_id=account.id,
        currency=resolved,
        daily_costs=fill_daily_window(amounts, query.start, query.days),
    )


NORMALIZERS: dict[tuple[CloudProvider, QueryKind], Callable[..., CostSummary | CostTrend]] = {
    (CloudProvider.AWS, QueryKind.SUMMARY): normalize_aws_summary,
    (CloudProvider.AWS, QueryKind.TREND): normalize_aws_trend,
    (CloudProvider.ALIYUN, QueryKind.SUMMARY): normalize_aliyun_summary,
    (CloudProvider.ALIYUN, QueryKind.TREND): normalize_aliyun_trend,
}


def normalize(
    account: CloudAccount,
    query: CostQuery,
    responses: Sequence[dict[str, Any]],
    currency: str | None = None,
    tolerance: float = SUM_TOLERANCE,
) -> CostSummary | CostTrend:
    """Dispatch to the normalizer registered for the account's provider and query kind."""
    normalizer = NORMALIZERS.get((account.provider, query.kind))
    if normalizer is None:
        raise _malformed(account.provider, f"no normalizer for {query.kind.value} responses")
    if query.kind == QueryKind.SUMMARY:
        return normalizer(account, query, responses, currency=currency, tolerance=tolerance)
    return normalizer(account, query, responses, currency=currency)


def rollup_summaries(
    summaries: Iterable[CostSummary], failures: dict[str, str] | None = None
) -> CostRollup:
    """Sum normalized summaries per currency; amounts in different currencies are never mixed."""
    rollup = CostRollup(failures=dict(failures or {}))
    for summary in summaries:
        total = rollup.totals.setdefault(summary.currency, CurrencyTotal(currency=summary.currency))
        total.current_month_cost += summary.current_month_cost
        total.last_month_cost += summary.last_month_cost
        total.account_count += 1
        rollup.summaries.append(summary)

    logger.debug(
        f"Rolled up {rollup.account_count} accounts into {len(rollup.totals)} currencies, "
        f"{len(rollup.failures)} failed"
    )
    return rollup
