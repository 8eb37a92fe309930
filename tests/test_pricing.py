"""
Unit tests for pricing calculations.

Tests tiered and cache pricing, model-name normalization, lookup fallbacks,
the on-disk cache and remote catalog parsing.
"""

import asyncio
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from ai_usage_monitor.core.pricing import (
    DEFAULT_PRICES,
    ModelPricing,
    PricingCatalog,
    PricingFetchError,
    fetch_remote,
    normalize_model_name,
    parse_remote_catalog,
)
from ai_usage_monitor.core.token_counter import TokenUsage


class TestModelPricing:
    """Test per-model cost calculation."""

    def test_tiered_input_pricing(self):
        """Test that tokens above the threshold use the higher rate."""
        pricing = ModelPricing(
            input_price_per_million=3.0,
            output_price_per_million=15.0,
            threshold_tokens=200_000,
            input_price_above_threshold=6.0,
            output_price_above_threshold=22.5,
        )
        cost = pricing.calculate_cost(TokenUsage(input_tokens=300_000))
        assert abs(cost - 1.2) < 1e-6

    def test_below_threshold_uses_base_rate(self):
        """Test that usage under the threshold is billed at the base rate."""
        pricing = ModelPricing(
            input_price_per_million=3.0,
            output_price_per_million=15.0,
            threshold_tokens=200_000,
            input_price_above_threshold=6.0,
        )
        cost = pricing.calculate_cost(TokenUsage(input_tokens=100_000))
        assert abs(cost - 0.3) < 1e-9

    def test_cache_pricing(self):
        """Test combined input, output, cache-write and cache-read pricing."""
        pricing = ModelPricing(
            input_price_per_million=3.0,
            output_price_per_million=15.0,
            cache_write_price_per_million=3.75,
            cache_read_price_per_million=0.3,
        )
        usage = TokenUsage(
            input_tokens=1_000_000,
            output_tokens=100_000,
            cache_write_tokens=50_000,
            cache_read_tokens=200_000,
        )
        assert abs(pricing.calculate_cost(usage) - 4.7475) < 1e-3

    def test_missing_cache_prices_are_free(self):
        """Test that categories without a price contribute nothing."""
        pricing = ModelPricing(input_price_per_million=1.0, output_price_per_million=2.0)
        usage = TokenUsage(cache_write_tokens=1_000_000, cache_read_tokens=1_000_000)
        assert pricing.calculate_cost(usage) == 0.0

    def test_from_dict_requires_prices(self):
        """Test that cache entries without numeric prices are rejected."""
        with pytest.raises(ValueError, match="input_price_per_million"):
            ModelPricing.from_dict({"output_price_per_million": 1.0})

    def test_from_dict_ignores_unknown_keys(self):
        """Test forward-compatible cache entries."""
        pricing = ModelPricing.from_dict(
            {"input_price_per_million": 1.0, "output_price_per_million": 2.0, "extra": 5}
        )
        assert pricing.output_price_per_million == 2.0


class TestNormalization:
    """Test model-name normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("anthropic.claude-3-5-sonnet", "claude-3-5-sonnet"),
        ("openai/gpt-4o-codex", "gpt-4o"),
        ("claude-sonnet-4-v1:0", "claude-sonnet-4"),
        ("  Claude-Opus-4  ", "claude-opus-4"),
        ("gpt-5-codex-v1:0", "gpt-5"),
    ])
    def test_normalizes_vendor_names(self, raw, expected):
        """Test prefix, suffix and case normalization."""
        assert normalize_model_name(raw) == expected

    @pytest.mark.parametrize("raw", [
        "anthropic.claude-3-5-sonnet",
        "openai/gpt-4o-codex",
        "claude-sonnet-4-v1:0",
        "anthropic.openai/x-codex-v1:2",
    ])
    def test_idempotent(self, raw):
        """Test that normalizing twice changes nothing."""
        once = normalize_model_name(raw)
        assert normalize_model_name(once) == once


class TestPricingCatalog:
    """Test catalog lookup and persistence."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.cache_path = Path(self.temp_dir) / "pricing.json"

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults_loaded(self):
        """Test that a new catalog holds the embedded table."""
        catalog = PricingCatalog()
        assert len(catalog) == len(DEFAULT_PRICES)
        assert "gpt-4o" in catalog

    def test_exact_lookup(self):
        """Test exact key match."""
        catalog = PricingCatalog()
        assert catalog.lookup("gpt-4o-mini") == DEFAULT_PRICES["gpt-4o-mini"]

    def test_dated_variant_lookup(self):
        """Test that an undated name finds its dated key."""
        catalog = PricingCatalog()
        assert catalog.lookup("claude-sonnet-4") == DEFAULT_PRICES["claude-sonnet-4-20250514"]
        assert catalog.lookup("anthropic.claude-sonnet-4-v1:0") == DEFAULT_PRICES["claude-sonnet-4-20250514"]

    def test_trailing_date_lookup_prefers_base(self):
        """Test that a dated name falls back to its undated base."""
        catalog = PricingCatalog()
        assert catalog.lookup("gpt-4o-2024-08-06") == DEFAULT_PRICES["gpt-4o"]

    def test_substring_lookup(self):
        """Test that a decorated name matches the key it contains."""
        catalog = PricingCatalog({"gpt-5": DEFAULT_PRICES["gpt-5"]})
        assert catalog.lookup("my-gpt-5-preview") == DEFAULT_PRICES["gpt-5"]

    def test_unknown_model(self):
        """Test that unknown models return None."""
        catalog = PricingCatalog()
        assert catalog.lookup("llama-3") is None
        assert catalog.lookup("") is None

    def test_needs_refresh(self):
        """Test refresh due-ness after 24 hours."""
        catalog = PricingCatalog()
        assert catalog.needs_refresh()

        now = datetime(2026, 1, 2, tzinfo=timezone.utc)
        catalog.last_fetch = now - timedelta(hours=1)
        assert not catalog.needs_refresh(now)
        catalog.last_fetch = now - timedelta(hours=25)
        assert catalog.needs_refresh(now)

    def test_merge_upserts(self):
        """Test that merging overrides existing prices and adds new ones."""
        catalog = PricingCatalog()
        fetched = datetime(2026, 1, 1, tzinfo=timezone.utc)
        other = PricingCatalog(
            {
                "gpt-4o": ModelPricing(input_price_per_million=1.0, output_price_per_million=1.0),
                "new-model": ModelPricing(input_price_per_million=2.0, output_price_per_million=2.0),
            },
            last_fetch=fetched,
        )
        catalog.merge(other)

        assert catalog.lookup("gpt-4o").input_price_per_million == 1.0
        assert "new-model" in catalog
        assert "o3" in catalog
        assert catalog.last_fetch == fetched

    def test_snapshot_is_independent(self):
        """Test that a snapshot is unaffected by later writes."""
        catalog = PricingCatalog()
        snapshot = catalog.snapshot()
        catalog.set_price("new-model", ModelPricing(1.0, 1.0))
        assert "new-model" not in snapshot

    def test_save_and_load(self):
        """Test the on-disk cache document."""
        fetched = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        catalog = PricingCatalog(last_fetch=fetched)
        catalog.set_price("custom-model", ModelPricing(4.0, 8.0, cache_read_price_per_million=0.4))
        catalog.save(self.cache_path)

        with open(self.cache_path, "r", encoding="utf-8") as f:
            document = json.load(f)
        assert document["last_fetch"] == int(fetched.timestamp())
        assert "custom-model" in document["prices"]

        loaded = PricingCatalog.load(self.cache_path)
        assert loaded.last_fetch == fetched
        assert loaded.lookup("custom-model") == ModelPricing(4.0, 8.0, cache_read_price_per_million=0.4)

    def test_load_missing_file_uses_defaults(self):
        """Test that a missing cache falls back to the embedded table."""
        catalog = PricingCatalog.load(self.cache_path)
        assert len(catalog) == len(DEFAULT_PRICES)
        assert catalog.last_fetch is None

    def test_load_corrupt_file_uses_defaults(self):
        """Test that a corrupt cache is ignored."""
        with open(self.cache_path, "w", encoding="utf-8") as f:
            f.write("{not json")
        catalog = PricingCatalog.load(self.cache_path)
        assert len(catalog) == len(DEFAULT_PRICES)
        assert catalog.last_fetch is None

    def test_save_leaves_no_temp_files(self):
        """Test atomic replacement of the cache file."""
        PricingCatalog().save(self.cache_path)
        PricingCatalog().save(self.cache_path)
        assert os.listdir(self.temp_dir) == ["pricing.json"]


class TestRemoteCatalog:
    """Test remote catalog parsing and fetching."""

    def test_parse_list_form(self):
        """Test per-token prices are converted to per-million."""
        payload = [
            {"id": "model-a", "pricing": {"input": 0.000003, "output": 0.000015,
                                          "cache_write": 0.00000375, "cache_read": 0.0000003}},
            {"id": "model-b", "pricing": {"input": 0.000001}},
            {"pricing": {"input": 1, "output": 1}},
        ]
        prices = parse_remote_catalog(payload)

        assert set(prices) == {"model-a"}
        assert abs(prices["model-a"].input_price_per_million - 3.0) < 1e-9
        assert abs(prices["model-a"].cache_read_price_per_million - 0.3) < 1e-9

    def test_parse_provider_form(self):
        """Test the provider-keyed per-million form."""
        payload = {
            "anthropic": {"models": {"claude-x": {"cost": {"input": 3, "output": 15, "cache_read": 0.3}}}},
            "broken": "nope",
        }
        prices = parse_remote_catalog(payload)

        assert prices["claude-x"].input_price_per_million == 3.0
        assert prices["claude-x"].cache_read_price_per_million == 0.3
        assert prices["claude-x"].cache_write_price_per_million is None

    def test_parse_rejects_other_shapes(self):
        """Test that unknown payloads raise."""
        with pytest.raises(PricingFetchError):
            parse_remote_catalog("nope")

    def test_fetch_remote_success(self):
        """Test fetching through an injected client."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[
                {"id": "anthropic.claude-new", "pricing": {"input": 0.000002, "output": 0.00001}},
            ])

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await fetch_remote("https://example.test/models", client=client)

        catalog = asyncio.run(scenario())
        assert "claude-new" in catalog
        assert catalog.last_fetch is not None
        assert "gpt-4o" in catalog

    def test_fetch_remote_http_error(self):
        """Test that error statuses raise PricingFetchError."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await fetch_remote("https://example.test/models", client=client)

        with pytest.raises(PricingFetchError, match="503"):
            asyncio.run(scenario())

    def test_fetch_remote_empty_catalog(self):
        """Test that a catalog without usable prices is a failure."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[])

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await fetch_remote("https://example.test/models", client=client)

        with pytest.raises(PricingFetchError):
            asyncio.run(scenario())
