"""
Data models for usage and cost snapshots.

Defines the immutable records held by the usage cache and read by UI consumers.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, Tuple


class AccountId(Enum):
    """Monitored accounts, one per assistant family."""
    CLAUDE = "claude"
    CODEX = "codex"

    @property
    def display_name(self) -> str:
        return {
            AccountId.CLAUDE: "Claude Code",
            AccountId.CODEX: "Codex",
        }[self]

    @property
    def dashboard_url(self) -> str:
        return {
            AccountId.CLAUDE: "https://console.anthropic.com/settings/billing",
            AccountId.CODEX: "https://chatgpt.com/",
        }[self]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateWindow:
    """Usage of a single quota window.

    used_fraction is in the range 0.0..1.0; the window is replaced wholesale
    on every refresh.
    """
    used_fraction: float
    window_minutes: Optional[int] = None
    resets_at: Optional[datetime] = None
    description: Optional[str] = None

    def __post_init__(self):
        """Validate the usage fraction is in range."""
        if not 0.0 <= self.used_fraction <= 1.0:
            raise ValueError(
                f"used_fraction must be between 0.0 and 1.0, got {self.used_fraction}"
            )

    @property
    def remaining_fraction(self) -> float:
        return 1.0 - self.used_fraction

    def is_high_usage(self, threshold: float) -> bool:
        return self.used_fraction >= threshold


@dataclass(frozen=True)
class ModelWindow:
    """A named, model-specific carve-out quota."""
    label: str
    window: RateWindow


@dataclass(frozen=True)
class ProviderCost:
    """Spend against a provider-side limit (e.g. extra usage credits)."""
    used: float
    limit: float
    currency_code: str = "USD"
    period: Optional[str] = None
    resets_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ProviderIdentity:
    """Who the credentials belong to, as far as the provider tells us."""
    email: Optional[str] = None
    organization: Optional[str] = None
    plan: Optional[str] = None


@dataclass(frozen=True)
class UsageSnapshot:
    """Latest quota state for one account.

    Fully replaced on each successful fetch; there is no partial merge.
    """
    primary: Optional[RateWindow] = None
    secondary: Optional[RateWindow] = None
    tertiary: Optional[RateWindow] = None
    carveouts: Tuple[ModelWindow, ...] = ()
    provider_cost: Optional[ProviderCost] = None
    identity: ProviderIdentity = field(default_factory=ProviderIdentity)
    updated_at: datetime = field(default_factory=utc_now)

    def max_usage(self) -> float:
        """Highest used fraction across every window and carve-out."""
        windows = [self.primary, self.secondary, self.tertiary]
        windows.extend(carveout.window for carveout in self.carveouts)
        fractions = [w.used_fraction for w in windows if w is not None]
        return max(fractions, default=0.0)


@dataclass(frozen=True)
class DailyCost:
    """Cost attributed to one model on one day."""
    date: date
    model: str
    cost: float


@dataclass(frozen=True)
class CostSnapshot:
    """Cost totals derived from local activity logs.

    Rebuilt from scratch on every scan cycle.
    """
    today_cost: float = 0.0
    monthly_cost: float = 0.0
    currency: str = "USD"
    daily_breakdown: Tuple[DailyCost, ...] = ()
    is_estimate: bool = False
    had_scan_error: bool = False


@dataclass(frozen=True)
class DailyTokenUsage:
    """Token and cost totals for one day across all models."""
    date: date
    total_tokens: int
    cost_usd: float
    models: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TokenUsageSummary:
    """Token usage by day with session and trailing-30-day totals."""
    session_tokens: Optional[int] = None
    session_cost_usd: Optional[float] = None
    last_30_days_tokens: Optional[int] = None
    last_30_days_cost_usd: Optional[float] = None
    daily: Tuple[DailyTokenUsage, ...] = ()
    updated_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CostScanResult:
    """Result of one scan cycle for a single account."""
    cost: CostSnapshot
    tokens: TokenUsageSummary
