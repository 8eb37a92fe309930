"""
Unit tests for cost accounting.

Tests aggregation, pricing fallbacks, snapshot derivation, scan-error
fallback and the pricing refresh lifecycle.
"""

import asyncio
import json
import tempfile
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock, PropertyMock, patch

from ai_usage_monitor.core.accountant import (
    CostAccountant,
    PricingRefreshResult,
    aggregate_events,
    build_cost_snapshot,
    build_token_summary,
    daily_token_usage,
    price_aggregates,
    scan_window,
)
from ai_usage_monitor.core.cache import CacheEventKind, UsageCache
from ai_usage_monitor.core.models import AccountId, DailyCost
from ai_usage_monitor.core.pricing import ModelPricing, PricingCatalog, PricingFetchError
from ai_usage_monitor.core.token_counter import TokenUsageEvent
from ai_usage_monitor.scanners import ClaudeLogScanner, LogScanner, ScanError

TODAY = date(2026, 1, 20)


def _fresh_catalog() -> PricingCatalog:
    return PricingCatalog(last_fetch=datetime.now(timezone.utc))


class StubScanner(LogScanner):
    """Scanner returning canned events, or raising when told to."""

    account = AccountId.CLAUDE

    def __init__(self, events: List[TokenUsageEvent]):
        super().__init__([])
        self.events = events
        self.fail = False

    def scan(self, since, until):
        if self.fail:
            raise ScanError("permission denied")
        return list(self.events)


class TestAggregation:
    """Test the pure aggregation helpers."""

    def test_scan_window(self):
        """Test the window starts 30 days before the first of the month."""
        since, month_start, until = scan_window(date(2026, 3, 15))
        assert month_start == date(2026, 3, 1)
        assert since == date(2026, 1, 30)
        assert until == date(2026, 3, 15)

    def test_aggregate_by_date_and_model(self):
        """Test that events sum per (date, normalized model)."""
        events = [
            TokenUsageEvent(TODAY, "Claude-3-5-Sonnet-20241022", input_tokens=10, output_tokens=1),
            TokenUsageEvent(TODAY, "claude-3-5-sonnet-20241022", input_tokens=5, cache_read_tokens=2),
            TokenUsageEvent(TODAY - timedelta(days=1), "claude-3-5-sonnet-20241022", input_tokens=7),
        ]
        aggregates = aggregate_events(events)

        assert len(aggregates) == 2
        usage = aggregates[(TODAY, "claude-3-5-sonnet-20241022")]
        assert (usage.input_tokens, usage.output_tokens, usage.cache_read_tokens) == (15, 1, 2)

    def test_unknown_model_uses_fallback_rate(self):
        """Test the flat estimate for unpriced models."""
        aggregates = aggregate_events([
            TokenUsageEvent(TODAY, "mystery-model", input_tokens=1_000_000, output_tokens=1_000_000),
        ])
        costs, estimated = price_aggregates(aggregates, PricingCatalog(), AccountId.CLAUDE)
        assert estimated
        assert abs(costs[0].cost - 6.0) < 1e-9

        costs, _ = price_aggregates(aggregates, PricingCatalog(), AccountId.CODEX)
        assert abs(costs[0].cost - 5.0) < 1e-9

    def test_known_model_is_not_estimate(self):
        """Test that priced models do not flag an estimate."""
        aggregates = aggregate_events([
            TokenUsageEvent(TODAY, "gpt-4o", input_tokens=1_000_000),
        ])
        costs, estimated = price_aggregates(aggregates, PricingCatalog(), AccountId.CODEX)
        assert not estimated
        assert abs(costs[0].cost - 2.5) < 1e-9

    def test_breakdown_sorted_and_windowed(self):
        """Test breakdown order and the trailing 30-day window."""
        costs = [
            DailyCost(TODAY, "b-model", 1.0),
            DailyCost(TODAY, "a-model", 2.0),
            DailyCost(TODAY - timedelta(days=5), "z-model", 3.0),
            DailyCost(TODAY - timedelta(days=30), "old-model", 100.0),
        ]
        snapshot = build_cost_snapshot(costs, TODAY, is_estimate=False)

        assert [(c.date, c.model) for c in snapshot.daily_breakdown] == [
            (TODAY - timedelta(days=5), "z-model"),
            (TODAY, "a-model"),
            (TODAY, "b-model"),
        ]
        assert snapshot.today_cost == 3.0
        assert snapshot.monthly_cost == 6.0

    def test_cost_noise_is_zeroed(self):
        """Test that sub-half-cent totals round to zero."""
        snapshot = build_cost_snapshot([DailyCost(TODAY, "m", 0.001)], TODAY, is_estimate=False)
        assert snapshot.today_cost == 0.0

    def test_token_summary(self):
        """Test session and 30-day token totals."""
        aggregates = aggregate_events([
            TokenUsageEvent(TODAY - timedelta(days=2), "gpt-4o", input_tokens=100),
            TokenUsageEvent(TODAY, "gpt-4o", input_tokens=40, output_tokens=10),
            TokenUsageEvent(TODAY, "o3", input_tokens=50),
        ])
        costs, _ = price_aggregates(aggregates, PricingCatalog(), AccountId.CODEX)
        daily = daily_token_usage(aggregates, costs)
        summary = build_token_summary(daily, TODAY)

        assert [d.date for d in daily] == [TODAY - timedelta(days=2), TODAY]
        assert daily[-1].models == ("gpt-4o", "o3")
        assert summary.session_tokens == 100
        assert summary.last_30_days_tokens == 200

    def test_empty_token_summary(self):
        """Test that no usage leaves totals unset."""
        summary = build_token_summary([], TODAY)
        assert summary.session_tokens is None
        assert summary.last_30_days_tokens is None


class TestCostAccountant:
    """Test scanning, fallback and pricing refresh."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.cache_path = Path(self.temp_dir) / "cache" / "pricing.json"

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_transcript(self, root: Path, name: str, timestamp: str, input_tokens: int, message_id: str):
        path = root / "project" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "type": "assistant",
            "timestamp": timestamp,
            "requestId": f"req-{message_id}",
            "message": {
                "id": message_id,
                "model": "claude-3-5-sonnet-20241022",
                "usage": {"input_tokens": input_tokens, "output_tokens": 0},
            },
        }
        with open(path, "w", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")

    def test_end_to_end_two_days(self):
        """Test today's cost and the 30-day total from two log files."""
        root = Path(self.temp_dir) / "projects"
        self._write_transcript(root, "today.jsonl", "2026-01-20T10:00:00", 1_000_000, "m1")
        self._write_transcript(root, "earlier.jsonl", "2026-01-17T09:00:00", 2_000_000, "m2")

        accountant = CostAccountant(
            {AccountId.CLAUDE: ClaudeLogScanner(roots=[root])},
            catalog=_fresh_catalog(),
            pricing_cache_path=self.cache_path,
        )
        result = accountant.scan_account(AccountId.CLAUDE, today=TODAY)
        cost = result.cost

        assert abs(cost.today_cost - 3.0) < 1e-9
        assert abs(cost.monthly_cost - 9.0) < 1e-9
        assert len(cost.daily_breakdown) == 2
        assert [c.date for c in cost.daily_breakdown] == [date(2026, 1, 17), TODAY]
        assert not cost.is_estimate
        assert not cost.had_scan_error
        assert result.tokens.session_tokens == 1_000_000
        assert result.tokens.last_30_days_tokens == 3_000_000
        assert accountant.get_cached(AccountId.CLAUDE) == cost

    def test_scan_error_keeps_previous_snapshot(self):
        """Test that a failing scan returns the prior snapshot flagged with had_scan_error."""
        scanner = StubScanner([
            TokenUsageEvent(TODAY, "gpt-4o", input_tokens=1_000_000),
        ])
        accountant = CostAccountant(
            {AccountId.CLAUDE: scanner},
            catalog=_fresh_catalog(),
            pricing_cache_path=self.cache_path,
        )
        before = accountant.scan_account(AccountId.CLAUDE, today=TODAY).cost

        scanner.fail = True
        after = accountant.scan_account(AccountId.CLAUDE, today=TODAY).cost

        assert after.had_scan_error
        assert after.today_cost == before.today_cost
        assert after.monthly_cost == before.monthly_cost
        assert after.daily_breakdown == before.daily_breakdown
        assert after.is_estimate == before.is_estimate

    def test_scan_error_reflects_current_pricing_state(self):
        """Test that the fallback snapshot is an estimate when pricing is unavailable."""
        scanner = StubScanner([
            TokenUsageEvent(TODAY, "gpt-4o", input_tokens=1_000_000),
        ])
        accountant = CostAccountant(
            {AccountId.CLAUDE: scanner},
            catalog=_fresh_catalog(),
            pricing_cache_path=self.cache_path,
        )
        before = accountant.scan_account(AccountId.CLAUDE, today=TODAY).cost
        assert not before.is_estimate

        scanner.fail = True
        with patch.object(
            CostAccountant, "pricing_failed", new_callable=PropertyMock, return_value=True
        ):
            after = accountant.scan_account(AccountId.CLAUDE, today=TODAY).cost

        assert after.had_scan_error
        assert after.is_estimate
        assert after.today_cost == before.today_cost

    def test_scan_error_without_history(self):
        """Test the fallback when nothing was cached yet."""
        scanner = StubScanner([])
        scanner.fail = True
        accountant = CostAccountant({AccountId.CLAUDE: scanner}, catalog=PricingCatalog(),
                                    pricing_cache_path=self.cache_path)
        cost = accountant.scan_account(AccountId.CLAUDE, today=TODAY).cost

        assert cost.had_scan_error
        assert cost.today_cost == 0.0
        assert cost.is_estimate

    def test_never_fetched_pricing_marks_estimate(self):
        """Test that default-only pricing is reported as an estimate."""
        scanner = StubScanner([TokenUsageEvent(TODAY, "gpt-4o", input_tokens=10)])
        accountant = CostAccountant({AccountId.CLAUDE: scanner}, catalog=PricingCatalog(),
                                    pricing_cache_path=self.cache_path)
        assert accountant.pricing_failed
        assert accountant.scan_account(AccountId.CLAUDE, today=TODAY).cost.is_estimate

    def test_loads_catalog_from_cache_file(self):
        """Test that the accountant starts from the on-disk cache."""
        cached = PricingCatalog(last_fetch=datetime.now(timezone.utc))
        cached.set_price("cached-model", ModelPricing(1.0, 2.0))
        cached.save(self.cache_path)

        accountant = CostAccountant({}, pricing_cache_path=self.cache_path)
        assert "cached-model" in accountant.catalog
        assert not accountant.pricing_failed

    def test_refresh_skipped_when_fresh(self):
        """Test that a fresh catalog is not refetched."""
        accountant = CostAccountant({}, catalog=_fresh_catalog(), pricing_cache_path=self.cache_path)
        with patch("ai_usage_monitor.core.accountant.fetch_remote", new=AsyncMock()) as fetch:
            result = asyncio.run(accountant.refresh_pricing())
        assert result == PricingRefreshResult.SKIPPED
        fetch.assert_not_called()

    def test_refresh_failure_keeps_table(self):
        """Test that a failed fetch leaves prices untouched."""
        accountant = CostAccountant({}, catalog=PricingCatalog(), pricing_cache_path=self.cache_path)
        before = accountant.catalog.prices
        failing = AsyncMock(side_effect=PricingFetchError("offline"))
        with patch("ai_usage_monitor.core.accountant.fetch_remote", new=failing):
            result = asyncio.run(accountant.refresh_pricing())

        assert result == PricingRefreshResult.FAILED
        assert accountant.catalog.prices == before
        assert accountant.pricing_failed
        assert not self.cache_path.exists()

    def test_refresh_merges_and_persists(self):
        """Test that a successful fetch is merged and written to disk."""
        accountant = CostAccountant({}, catalog=PricingCatalog(), pricing_cache_path=self.cache_path)
        remote = PricingCatalog(
            {"brand-new-model": ModelPricing(1.0, 2.0)},
            last_fetch=datetime.now(timezone.utc),
        )
        with patch("ai_usage_monitor.core.accountant.fetch_remote", new=AsyncMock(return_value=remote)):
            result = asyncio.run(accountant.refresh_pricing(force=True))

        assert result == PricingRefreshResult.REFRESHED
        assert "brand-new-model" in accountant.catalog
        assert "gpt-4o" in accountant.catalog
        assert not accountant.pricing_failed
        assert "brand-new-model" in PricingCatalog.load(self.cache_path)

    def test_run_cycle_publishes_costs(self):
        """Test that a cycle stores costs in the usage cache."""
        scanner = StubScanner([TokenUsageEvent(date.today(), "gpt-4o", input_tokens=1_000_000)])
        accountant = CostAccountant({AccountId.CLAUDE: scanner}, catalog=_fresh_catalog(),
                                    pricing_cache_path=self.cache_path)
        cache = UsageCache()
        subscription = cache.subscribe()

        asyncio.run(accountant.run_cycle(cache))

        assert abs(cache.get_cost(AccountId.CLAUDE).today_cost - 2.5) < 1e-9
        assert [e.kind for e in subscription.drain()] == [CacheEventKind.COST_UPDATED]

    def test_run_stops_on_event(self):
        """Test that the background loop exits once stopped."""
        accountant = CostAccountant({AccountId.CLAUDE: StubScanner([])}, catalog=_fresh_catalog(),
                                    pricing_cache_path=self.cache_path)
        cache = UsageCache()

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(
                accountant.run(cache, stop, scan_interval=timedelta(seconds=60))
            )
            await asyncio.sleep(0.1)
            stop.set()
            await asyncio.wait_for(task, timeout=2.0)

        asyncio.run(scenario())
        assert cache.get_cost(AccountId.CLAUDE) is not None
