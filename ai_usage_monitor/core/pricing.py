"""
Pricing calculations and rate management.

Per-model price tables with tiered pricing, model-name normalization, an
on-disk cache and a remote refresh from the models.dev catalog.
"""

import json
import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

MODELS_DEV_URL = "https://models.dev/api/models"
REFRESH_INTERVAL = timedelta(hours=24)
FETCH_TIMEOUT_SECONDS = 30.0

_PER_MILLION = 1_000_000.0
_TRAILING_VERSION = re.compile(r"[-\d]+$")


class PricingFetchError(Exception):
    """Raised when the remote pricing catalog cannot be fetched or decoded."""


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for a specific model.

    Tiering applies to a category only when threshold_tokens and that
    category's above-threshold price are both set. A missing cache price
    means the category is not billed.
    """
    input_price_per_million: float
    output_price_per_million: float
    cache_write_price_per_million: Optional[float] = None
    cache_read_price_per_million: Optional[float] = None
    threshold_tokens: Optional[int] = None
    input_price_above_threshold: Optional[float] = None
    output_price_above_threshold: Optional[float] = None
    cache_write_price_above_threshold: Optional[float] = None
    cache_read_price_above_threshold: Optional[float] = None

    def _tiered_cost(self, tokens: int, base_price: float, above_price: Optional[float]) -> float:
        if (
            self.threshold_tokens is not None
            and above_price is not None
            and tokens > self.threshold_tokens
        ):
            below = self.threshold_tokens * base_price / _PER_MILLION
            over = (tokens - self.threshold_tokens) * above_price / _PER_MILLION
            return below + over
        return tokens * base_price / _PER_MILLION

    def _optional_tiered_cost(
        self, tokens: int, price: Optional[float], above_price: Optional[float]
    ) -> float:
        if price is None:
            return 0.0
        return self._tiered_cost(tokens, price, above_price)

    def calculate_cost(self, usage: TokenUsage) -> float:
        """Calculate the cost of a token usage tuple in USD.

        Args:
            usage: Aggregated token usage

        Returns:
            Total cost across input, output, cache-write and cache-read tokens
        """
        input_cost = self._tiered_cost(
            usage.input_tokens,
            self.input_price_per_million,
            self.input_price_above_threshold,
        )
        output_cost = self._tiered_cost(
            usage.output_tokens,
            self.output_price_per_million,
            self.output_price_above_threshold,
        )
        cache_write_cost = self._optional_tiered_cost(
            usage.cache_write_tokens,
            self.cache_write_price_per_million,
            self.cache_write_price_above_threshold,
        )
        cache_read_cost = self._optional_tiered_cost(
            usage.cache_read_tokens,
            self.cache_read_price_per_million,
            self.cache_read_price_above_threshold,
        )
        return input_cost + output_cost + cache_write_cost + cache_read_cost

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelPricing":
        """Build pricing from a cache-file entry, ignoring unknown keys.

        Raises:
            ValueError: If required prices are missing or not numeric
        """
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        for required in ("input_price_per_million", "output_price_per_million"):
            if not isinstance(values.get(required), (int, float)):
                raise ValueError(f"'{required}' must be a number")
        return cls(**values)


def normalize_model_name(model: str) -> str:
    """Normalize a vendor model name to a pricing key.

    Lower-cases, strips the "anthropic." and "openai/" prefixes, the
    "-codex" suffix and Vertex-style "-v1:N" version suffixes. Idempotent.

    Args:
        model: Raw model name as it appears in logs or catalogs

    Returns:
        Normalized model key
    """
    name = model.strip().lower()
    while True:
        previous = name
        for prefix in ("anthropic.", "openai/"):
            if name.startswith(prefix):
                name = name[len(prefix):]
        version_at = name.find("-v1:")
        if version_at != -1:
            name = name[:version_at]
        if name.endswith("-codex"):
            name = name[: -len("-codex")]
        if name == previous:
            return name


def _common_prefix_length(a: str, b: str) -> int:
    length = 0
    for left, right in zip(a, b):
        if left != right:
            break
        length += 1
    return length


DEFAULT_PRICES: Dict[str, ModelPricing] = {
    "claude-opus-4-5-20251101": ModelPricing(
        input_price_per_million=5.0,
        output_price_per_million=25.0,
        cache_write_price_per_million=6.25,
        cache_read_price_per_million=0.5,
    ),
    # Long-context requests above 200k tokens are billed at the higher tier.
    "claude-sonnet-4-20250514": ModelPricing(
        input_price_per_million=3.0,
        output_price_per_million=15.0,
        cache_write_price_per_million=3.75,
        cache_read_price_per_million=0.3,
        threshold_tokens=200_000,
        input_price_above_threshold=6.0,
        output_price_above_threshold=22.5,
        cache_write_price_above_threshold=7.5,
        cache_read_price_above_threshold=0.6,
    ),
    "claude-3-5-sonnet-20241022": ModelPricing(
        input_price_per_million=3.0,
        output_price_per_million=15.0,
        cache_write_price_per_million=3.75,
        cache_read_price_per_million=0.3,
    ),
    "claude-3-5-haiku-20241022": ModelPricing(
        input_price_per_million=0.80,
        output_price_per_million=4.0,
        cache_write_price_per_million=1.0,
        cache_read_price_per_million=0.08,
    ),
    "claude-3-opus-20240229": ModelPricing(
        input_price_per_million=15.0,
        output_price_per_million=75.0,
        cache_write_price_per_million=18.75,
        cache_read_price_per_million=1.5,
    ),
    "claude-opus-4-20250514": ModelPricing(
        input_price_per_million=15.0,
        output_price_per_million=75.0,
        cache_write_price_per_million=18.75,
        cache_read_price_per_million=1.5,
    ),
    "gpt-5": ModelPricing(
        input_price_per_million=1.25,
        output_price_per_million=10.0,
        cache_read_price_per_million=0.125,
    ),
    "gpt-4o": ModelPricing(
        input_price_per_million=2.50,
        output_price_per_million=10.0,
        cache_read_price_per_million=1.25,
    ),
    "gpt-4o-mini": ModelPricing(
        input_price_per_million=0.15,
        output_price_per_million=0.60,
        cache_read_price_per_million=0.075,
    ),
    "o1": ModelPricing(
        input_price_per_million=15.0,
        output_price_per_million=60.0,
        cache_read_price_per_million=7.5,
    ),
    "o3": ModelPricing(
        input_price_per_million=10.0,
        output_price_per_million=40.0,
        cache_read_price_per_million=2.5,
    ),
    "o3-mini": ModelPricing(
        input_price_per_million=1.10,
        output_price_per_million=4.40,
        cache_read_price_per_million=0.55,
    ),
}


class PricingCatalog:
    """Price table keyed by normalized model name.

    Owned by the cost accountant. Readers take a snapshot() before pricing a
    batch so a concurrent refresh never produces a torn read.
    """

    def __init__(
        self,
        prices: Optional[Dict[str, ModelPricing]] = None,
        last_fetch: Optional[datetime] = None,
    ):
        """Initialize the catalog.

        Args:
            prices: Price table; defaults to the embedded DEFAULT_PRICES
            last_fetch: When prices were last fetched remotely (UTC)
        """
        source = DEFAULT_PRICES if prices is None else prices
        self._prices: Dict[str, ModelPricing] = {
            normalize_model_name(key): value for key, value in source.items()
        }
        self.last_fetch = last_fetch

    @property
    def prices(self) -> Dict[str, ModelPricing]:
        return dict(self._prices)

    def __len__(self) -> int:
        return len(self._prices)

    def __contains__(self, model: str) -> bool:
        return normalize_model_name(model) in self._prices

    def snapshot(self) -> "PricingCatalog":
        """Independent copy of the current table."""
        return PricingCatalog(dict(self._prices), self.last_fetch)

    def set_price(self, model: str, pricing: ModelPricing) -> None:
        self._prices[normalize_model_name(model)] = pricing

    def lookup(self, model: str) -> Optional[ModelPricing]:
        """Find pricing for a model, tolerating vendor naming drift.

        Tries, in order: exact match, a dated variant of the same name,
        prefix match after stripping a trailing date/numeric suffix, then a
        substring match in either direction.

        Args:
            model: Raw or normalized model name

        Returns:
            ModelPricing, or None if nothing matches
        """
        normalized = normalize_model_name(model)
        if not normalized:
            return None

        exact = self._prices.get(normalized)
        if exact is not None:
            return exact

        keys = sorted(self._prices)

        dated = [key for key in keys if key.startswith(normalized + "-")]
        if dated:
            return self._prices[min(dated, key=len)]

        base = _TRAILING_VERSION.sub("", normalized)
        if base and base != normalized:
            if base in self._prices:
                return self._prices[base]
            candidates = [key for key in keys if key.startswith(base)]
            if candidates:
                best = max(
                    candidates,
                    key=lambda key: (_common_prefix_length(key, normalized), -len(key)),
                )
                return self._prices[best]

        partial = [key for key in keys if key in normalized or normalized in key]
        if partial:
            return self._prices[max(partial, key=len)]

        return None

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        """True if never fetched or the last fetch is older than 24 hours."""
        if self.last_fetch is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - self.last_fetch > REFRESH_INTERVAL

    def merge(self, other: "PricingCatalog") -> None:
        """Upsert every price from another catalog into this one."""
        for key, value in other._prices.items():
            self._prices[key] = value
        if other.last_fetch is not None:
            self.last_fetch = other.last_fetch

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prices": {key: value.to_dict() for key, value in sorted(self._prices.items())},
            "last_fetch": int(self.last_fetch.timestamp()) if self.last_fetch else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingCatalog":
        """Build a catalog from a cache document.

        Cached prices are layered over the embedded defaults.

        Raises:
            ValueError: If the document structure is invalid
        """
        if not isinstance(data, dict):
            raise ValueError("Pricing cache must be a JSON object")

        raw_prices = data.get("prices")
        if not isinstance(raw_prices, dict):
            raise ValueError("'prices' must be an object")

        catalog = cls()
        for key, entry in raw_prices.items():
            if not isinstance(entry, dict):
                raise ValueError(f"Price entry '{key}' must be an object")
            catalog.set_price(key, ModelPricing.from_dict(entry))

        raw_last_fetch = data.get("last_fetch")
        if raw_last_fetch is not None:
            if not isinstance(raw_last_fetch, (int, float)):
                raise ValueError("'last_fetch' must be unix seconds or null")
            catalog.last_fetch = datetime.fromtimestamp(raw_last_fetch, tz=timezone.utc)
        return catalog

    @classmethod
    def load(cls, path: Path) -> "PricingCatalog":
        """Load the catalog from the on-disk cache.

        A missing or corrupt file is not an error; the embedded defaults
        are returned instead.

        Args:
            path: Cache file location

        Returns:
            PricingCatalog from cache, or defaults
        """
        path = Path(path)
        if not path.exists():
            logger.debug("No pricing cache at %s, using embedded defaults", path)
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            catalog = cls.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable pricing cache %s: %s", path, e)
            return cls()

        logger.debug("Loaded %d prices from %s", len(catalog), path)
        return catalog

    def save(self, path: Path) -> None:
        """Write the catalog to disk, replacing the previous file atomically.

        Raises:
            OSError: If the file cannot be written
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=".pricing-", suffix=".json", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
            os.replace(tmp_name, path)
        except Exception:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        logger.debug("Saved pricing cache to %s", path)


def default_cache_path() -> Path:
    """Location of the pricing cache file under the user cache directory."""
    cache_home = os.environ.get("XDG_CACHE_HOME")
    base = Path(cache_home) if cache_home else Path.home() / ".cache"
    return base / "ai-usage-monitor" / "pricing.json"


def _price_from_per_token(pricing: Dict[str, Any]) -> Optional[ModelPricing]:
    """models.dev list form: USD per single token."""
    input_price = pricing.get("input")
    output_price = pricing.get("output")
    if not isinstance(input_price, (int, float)) or not isinstance(output_price, (int, float)):
        return None

    cache_write = pricing.get("cache_write")
    cache_read = pricing.get("cache_read")
    has_cache = isinstance(cache_write, (int, float)) and isinstance(cache_read, (int, float))
    return ModelPricing(
        input_price_per_million=input_price * _PER_MILLION,
        output_price_per_million=output_price * _PER_MILLION,
        cache_write_price_per_million=cache_write * _PER_MILLION if has_cache else None,
        cache_read_price_per_million=cache_read * _PER_MILLION if has_cache else None,
    )


def _price_from_per_million(cost: Dict[str, Any]) -> Optional[ModelPricing]:
    """models.dev provider-keyed form: USD per million tokens."""
    input_price = cost.get("input")
    output_price = cost.get("output")
    if not isinstance(input_price, (int, float)) or not isinstance(output_price, (int, float)):
        return None

    cache_write = cost.get("cache_write")
    cache_read = cost.get("cache_read")
    return ModelPricing(
        input_price_per_million=float(input_price),
        output_price_per_million=float(output_price),
        cache_write_price_per_million=float(cache_write) if isinstance(cache_write, (int, float)) else None,
        cache_read_price_per_million=float(cache_read) if isinstance(cache_read, (int, float)) else None,
    )


def parse_remote_catalog(payload: Any) -> Dict[str, ModelPricing]:
    """Extract prices from a models.dev response.

    Accepts both the flat list form ({id, pricing}) and the provider-keyed
    mapping form ({provider: {models: {id: {cost}}}}).

    Args:
        payload: Decoded JSON response

    Returns:
        Mapping of raw model id to pricing; models without input/output
        prices are skipped

    Raises:
        PricingFetchError: If the payload has neither shape
    """
    prices: Dict[str, ModelPricing] = {}

    if isinstance(payload, list):
        for model in payload:
            if not isinstance(model, dict) or not isinstance(model.get("id"), str):
                continue
            pricing = model.get("pricing")
            if isinstance(pricing, dict):
                parsed = _price_from_per_token(pricing)
                if parsed is not None:
                    prices[model["id"]] = parsed
        return prices

    if isinstance(payload, dict):
        for provider in payload.values():
            models = provider.get("models") if isinstance(provider, dict) else None
            if not isinstance(models, dict):
                continue
            for model_id, model in models.items():
                cost = model.get("cost") if isinstance(model, dict) else None
                if isinstance(cost, dict):
                    parsed = _price_from_per_million(cost)
                    if parsed is not None:
                        prices[model_id] = parsed
        return prices

    raise PricingFetchError("Unexpected pricing catalog format")


async def fetch_remote(
    url: str = MODELS_DEV_URL,
    timeout: float = FETCH_TIMEOUT_SECONDS,
    client: Optional[httpx.AsyncClient] = None,
) -> PricingCatalog:
    """Fetch the remote pricing catalog.

    Args:
        url: Catalog endpoint
        timeout: Request timeout in seconds
        client: Optional shared HTTP client (used as-is, not closed)

    Returns:
        Embedded defaults merged with the remote prices, stamped with the
        fetch time

    Raises:
        PricingFetchError: On network, HTTP status or decoding failure
    """
    logger.info("Fetching pricing from %s", url)

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout)
    try:
        response = await http.get(url, headers={"Accept": "application/json"}, timeout=timeout)
        if response.status_code >= 400:
            raise PricingFetchError(
                f"Pricing catalog returned status {response.status_code}: {response.text[:200]}"
            )
        payload = response.json()
    except httpx.HTTPError as e:
        raise PricingFetchError(f"Failed to fetch pricing catalog: {e}") from e
    except ValueError as e:
        raise PricingFetchError(f"Failed to parse pricing catalog: {e}") from e
    finally:
        if owns_client:
            await http.aclose()

    remote = parse_remote_catalog(payload)
    if not remote:
        raise PricingFetchError("Pricing catalog contained no usable prices")

    catalog = PricingCatalog()
    for model_id, pricing in remote.items():
        catalog.set_price(model_id, pricing)
    catalog.last_fetch = datetime.now(timezone.utc)
    logger.debug("Fetched %d remote prices", len(remote))
    return catalog
