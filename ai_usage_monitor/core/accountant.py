"""
Cost accounting from local activity logs.

Aggregates scanner output into daily cost and token snapshots, priced with
the pricing catalog. Owns the catalog's freshness: remote refresh, on-disk
cache and fallback to embedded defaults.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import replace
from datetime import date, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ai_usage_monitor.scanners.base import LogScanner

from .cache import UsageCache
from .models import (
    AccountId,
    CostScanResult,
    CostSnapshot,
    DailyCost,
    DailyTokenUsage,
    TokenUsageSummary,
)
from .pricing import (
    MODELS_DEV_URL,
    PricingCatalog,
    PricingFetchError,
    default_cache_path,
    fetch_remote,
    normalize_model_name,
)
from .token_counter import TokenUsage, TokenUsageEvent

logger = logging.getLogger(__name__)

SCAN_INTERVAL = timedelta(minutes=5)
PRICING_RETRY_INTERVAL = timedelta(minutes=5)
LOOKBACK_DAYS = 30

# Flat USD per million (input + output) tokens when a model has no price.
FALLBACK_RATE_PER_MILLION: Dict[AccountId, float] = {
    AccountId.CLAUDE: 3.0,
    AccountId.CODEX: 2.5,
}

_COST_EPSILON = 0.005

AggregateKey = Tuple[date, str]


class PricingRefreshResult(Enum):
    """Outcome of a pricing refresh attempt."""
    REFRESHED = "refreshed"
    SKIPPED = "skipped"
    FAILED = "failed"


def normalize_cost(value: float) -> float:
    """Zero out floating-point noise below half a cent."""
    if abs(value) < _COST_EPSILON:
        return 0.0
    return value


def scan_window(today: date) -> Tuple[date, date, date]:
    """Scan window for a cycle.

    Returns:
        (since, month_start, today) where since is 30 days before the first
        of the current month
    """
    month_start = today.replace(day=1)
    return month_start - timedelta(days=LOOKBACK_DAYS), month_start, today


def aggregate_events(events: Iterable[TokenUsageEvent]) -> Dict[AggregateKey, TokenUsage]:
    """Sum token usage per (date, normalized model)."""
    aggregates: Dict[AggregateKey, TokenUsage] = defaultdict(TokenUsage)
    for event in events:
        key = (event.date, normalize_model_name(event.model))
        aggregates[key] = aggregates[key] + event.usage
    return dict(aggregates)


def price_aggregates(
    aggregates: Mapping[AggregateKey, TokenUsage],
    catalog: PricingCatalog,
    account: AccountId,
) -> Tuple[List[DailyCost], bool]:
    """Price each (date, model) aggregate.

    Models without a catalog price are charged a flat per-token estimate.

    Args:
        aggregates: Token usage per (date, model)
        catalog: Pricing snapshot to price against
        account: Account whose fallback rate applies

    Returns:
        (costs sorted by date then model, True if any cost was estimated)
    """
    estimated = False
    costs = []
    fallback_rate = FALLBACK_RATE_PER_MILLION[account]

    for (day, model), usage in aggregates.items():
        pricing = catalog.lookup(model)
        if pricing is not None:
            cost = pricing.calculate_cost(usage)
        else:
            logger.debug("No pricing found for %s, estimating", model)
            estimated = True
            cost = (usage.input_tokens + usage.output_tokens) * fallback_rate / 1_000_000
        costs.append(DailyCost(date=day, model=model, cost=cost))

    costs.sort(key=lambda c: (c.date, c.model))
    return costs, estimated


def daily_token_usage(
    aggregates: Mapping[AggregateKey, TokenUsage],
    costs: Iterable[DailyCost],
) -> List[DailyTokenUsage]:
    """Collapse per-model aggregates into one entry per day."""
    cost_by_key = {(c.date, c.model): c.cost for c in costs}
    tokens_by_day: Dict[date, int] = defaultdict(int)
    cost_by_day: Dict[date, float] = defaultdict(float)
    models_by_day: Dict[date, set] = defaultdict(set)

    for (day, model), usage in aggregates.items():
        tokens_by_day[day] += usage.total_tokens
        cost_by_day[day] += cost_by_key.get((day, model), 0.0)
        models_by_day[day].add(model)

    return [
        DailyTokenUsage(
            date=day,
            total_tokens=tokens_by_day[day],
            cost_usd=normalize_cost(cost_by_day[day]),
            models=tuple(sorted(models_by_day[day])),
        )
        for day in sorted(tokens_by_day)
    ]


def build_cost_snapshot(
    costs: Iterable[DailyCost], today: date, is_estimate: bool
) -> CostSnapshot:
    """Derive today and trailing-30-day totals from per-day costs.

    Args:
        costs: Per (date, model) costs
        today: Local date of the scan
        is_estimate: Whether any price was estimated

    Returns:
        CostSnapshot whose breakdown covers the trailing 30 days
    """
    cutoff = today - timedelta(days=LOOKBACK_DAYS - 1)
    in_window = sorted(
        (c for c in costs if cutoff <= c.date <= today),
        key=lambda c: (c.date, c.model),
    )
    today_cost = sum(c.cost for c in in_window if c.date == today)
    monthly_cost = sum(c.cost for c in in_window)

    return CostSnapshot(
        today_cost=normalize_cost(today_cost),
        monthly_cost=normalize_cost(monthly_cost),
        currency="USD",
        daily_breakdown=tuple(
            DailyCost(date=c.date, model=c.model, cost=normalize_cost(c.cost))
            for c in in_window
        ),
        is_estimate=is_estimate,
        had_scan_error=False,
    )


def build_token_summary(daily: Iterable[DailyTokenUsage], today: date) -> TokenUsageSummary:
    """Session totals (today, else the latest day) plus trailing-30-day sums."""
    cutoff = today - timedelta(days=LOOKBACK_DAYS - 1)
    in_window = sorted(
        (d for d in daily if cutoff <= d.date <= today), key=lambda d: d.date
    )

    current = in_window[-1] if in_window else None

    total_tokens = sum(d.total_tokens for d in in_window)
    total_cost = sum(d.cost_usd for d in in_window)

    return TokenUsageSummary(
        session_tokens=current.total_tokens if current else None,
        session_cost_usd=current.cost_usd if current else None,
        last_30_days_tokens=total_tokens if total_tokens > 0 else None,
        last_30_days_cost_usd=normalize_cost(total_cost) if total_cost > 0 else None,
        daily=tuple(in_window),
    )


class CostAccountant:
    """Turns local activity logs into cost snapshots.

    Single owner of the pricing catalog. Refreshes replace the catalog
    reference after merging into a copy, so a scan running in a worker
    thread always prices against one consistent table.
    """

    def __init__(
        self,
        scanners: Mapping[AccountId, LogScanner],
        catalog: Optional[PricingCatalog] = None,
        pricing_cache_path: Optional[Path] = None,
        pricing_url: str = MODELS_DEV_URL,
    ):
        """Initialize the accountant.

        Args:
            scanners: Log scanner per account
            catalog: Starting catalog; loaded from the cache file when omitted
            pricing_cache_path: On-disk pricing cache location
            pricing_url: Remote pricing catalog endpoint
        """
        self.scanners: Dict[AccountId, LogScanner] = dict(scanners)
        self.pricing_cache_path = Path(pricing_cache_path or default_cache_path())
        self.pricing_url = pricing_url
        self._catalog = catalog if catalog is not None else PricingCatalog.load(self.pricing_cache_path)
        self._pricing_ok = self._catalog.last_fetch is not None
        self._cached_costs: Dict[AccountId, CostSnapshot] = {}
        self._cached_tokens: Dict[AccountId, TokenUsageSummary] = {}

    @property
    def catalog(self) -> PricingCatalog:
        return self._catalog

    @property
    def pricing_failed(self) -> bool:
        """True until pricing has been fetched successfully at least once."""
        return not self._pricing_ok

    def get_cached(self, account: AccountId) -> Optional[CostSnapshot]:
        return self._cached_costs.get(account)

    def get_cached_tokens(self, account: AccountId) -> Optional[TokenUsageSummary]:
        return self._cached_tokens.get(account)

    # ── Pricing lifecycle ────────────────────────────────────────

    async def refresh_pricing(self, force: bool = False) -> PricingRefreshResult:
        """Refresh prices from the remote catalog when due.

        Args:
            force: Refresh even if the catalog is fresh

        Returns:
            SKIPPED when not due (no I/O), REFRESHED on success, FAILED when
            the fetch failed and the existing table was kept
        """
        if not force and not self._catalog.needs_refresh():
            logger.debug("Pricing cache is fresh, skipping refresh")
            return PricingRefreshResult.SKIPPED

        try:
            fresh = await fetch_remote(self.pricing_url)
        except PricingFetchError as e:
            logger.warning("Failed to refresh pricing, using cached/default: %s", e)
            return PricingRefreshResult.FAILED

        updated = self._catalog.snapshot()
        updated.merge(fresh)
        self._catalog = updated
        self._pricing_ok = True

        try:
            updated.save(self.pricing_cache_path)
        except OSError as e:
            logger.warning("Could not persist pricing cache %s: %s", self.pricing_cache_path, e)

        logger.info("Refreshed pricing (%d models)", len(updated))
        return PricingRefreshResult.REFRESHED

    # ── Scanning ─────────────────────────────────────────────────

    def scan_account(self, account: AccountId, today: Optional[date] = None) -> CostScanResult:
        """Scan one account's logs and rebuild its snapshots.

        Never raises: a failed scan falls back to the previous snapshot
        flagged with had_scan_error.

        Args:
            account: Account to scan
            today: Local date of the scan (defaults to today)

        Returns:
            CostScanResult for the account
        """
        today = today or date.today()
        since, _month_start, until = scan_window(today)
        catalog = self._catalog
        pricing_failed = self.pricing_failed

        try:
            scanner = self.scanners[account]
            events = scanner.scan(since, until)
        except Exception as e:
            logger.warning("Failed to scan %s costs: %s", account.value, e)
            return self._fallback(account, pricing_failed)

        aggregates = aggregate_events(events)
        costs, estimated = price_aggregates(aggregates, catalog, account)
        cost_snapshot = build_cost_snapshot(costs, today, estimated or pricing_failed)
        token_summary = build_token_summary(daily_token_usage(aggregates, costs), today)

        self._cached_costs[account] = cost_snapshot
        self._cached_tokens[account] = token_summary
        return CostScanResult(cost=cost_snapshot, tokens=token_summary)

    def _fallback(self, account: AccountId, pricing_failed: bool) -> CostScanResult:
        previous = self._cached_costs.get(account)
        if previous is None:
            cost_snapshot = CostSnapshot(is_estimate=pricing_failed, had_scan_error=True)
        else:
            cost_snapshot = replace(
                previous,
                had_scan_error=True,
                is_estimate=previous.is_estimate or pricing_failed,
            )
        token_summary = self._cached_tokens.get(account) or TokenUsageSummary()

        self._cached_costs[account] = cost_snapshot
        self._cached_tokens[account] = token_summary
        return CostScanResult(cost=cost_snapshot, tokens=token_summary)

    def scan_all(self, today: Optional[date] = None) -> Dict[AccountId, CostScanResult]:
        """Scan every configured account."""
        today = today or date.today()
        return {account: self.scan_account(account, today) for account in self.scanners}

    # ── Background loop ──────────────────────────────────────────

    async def run_cycle(self, cache: UsageCache) -> Dict[AccountId, CostScanResult]:
        """One pricing check plus a full scan, published to the cache."""
        await self.refresh_pricing()
        # Log scanning is blocking file I/O; keep it off the event loop.
        results = await asyncio.to_thread(self.scan_all)
        for account, result in results.items():
            cache.update_cost(account, result.cost)
        return results

    async def run(
        self,
        cache: UsageCache,
        stop_event: asyncio.Event,
        scan_interval: timedelta = SCAN_INTERVAL,
        pricing_retry_interval: timedelta = PRICING_RETRY_INTERVAL,
    ) -> None:
        """Scan on a fixed cadence until stop_event is set.

        A failed pricing refresh is retried on the shorter pricing retry
        interval; scans continue with the stale or default table meanwhile.
        """
        logger.info("Cost accounting started (interval: %ss)", scan_interval.total_seconds())
        while not stop_event.is_set():
            try:
                await self.run_cycle(cache)
            except Exception:
                logger.exception("Cost scan cycle failed")

            interval = scan_interval
            if self._catalog.needs_refresh():
                interval = min(scan_interval, pricing_retry_interval)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval.total_seconds())
            except asyncio.TimeoutError:
                pass
        logger.info("Cost accounting stopped")
