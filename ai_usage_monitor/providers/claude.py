"""
Claude Code quota provider.

Reads the OAuth token Claude Code stores in ~/.claude/.credentials.json and
queries the OAuth usage endpoint for session, weekly and per-model windows.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from ai_usage_monitor.core.models import (
    AccountId,
    ModelWindow,
    ProviderCost,
    ProviderIdentity,
    RateWindow,
    UsageSnapshot,
    utc_now,
)

from .base import (
    REQUEST_TIMEOUT_SECONDS,
    CredentialError,
    UsageProvider,
    as_number,
    clamp_fraction,
)

logger = logging.getLogger(__name__)

USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
OAUTH_BETA = "oauth-2025-04-20"

SESSION_WINDOW_MINUTES = 300
WEEKLY_WINDOW_MINUTES = 10080

# Tokens this close to expiry are treated as already expired.
EXPIRY_MARGIN = timedelta(seconds=60)

EXTRA_USAGE_RESCALE_LIMIT = 1000.0


def default_credentials_path() -> Path:
    return Path.home() / ".claude" / ".credentials.json"


@dataclass(frozen=True)
class ClaudeCredentials:
    """The fields of the OAuth credential block this provider needs."""
    access_token: str
    expires_at: Optional[datetime] = None
    rate_limit_tier: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utc_now()
        return now >= self.expires_at - EXPIRY_MARGIN


def parse_reset_time(raw: Any) -> Optional[datetime]:
    """Parse an RFC 3339 reset timestamp, or None."""
    if not isinstance(raw, str) or not raw:
        return None
    text = raw[:-1] + "+00:00" if raw.endswith(("Z", "z")) else raw
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Failed to parse reset time '%s'", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def window_from_payload(data: Any, window_minutes: int, description: str) -> Optional[RateWindow]:
    """Map a {utilization, resets_at} block; utilization is a percentage."""
    if not isinstance(data, dict):
        return None
    utilization = as_number(data.get("utilization"))
    if utilization is None:
        return None
    return RateWindow(
        used_fraction=clamp_fraction(utilization / 100.0),
        window_minutes=window_minutes,
        resets_at=parse_reset_time(data.get("resets_at")),
        description=description,
    )


def infer_plan_from_tier(tier: Optional[str]) -> Optional[str]:
    """Human plan name from the credential's rate-limit tier."""
    tier = (tier or "").lower()
    if "max" in tier:
        return "Claude Max"
    if "enterprise" in tier:
        return "Claude Enterprise"
    if "team" in tier:
        return "Claude Team"
    if "pro" in tier:
        return "Claude Pro"
    return None


def map_extra_usage(data: Any, plan: Optional[str]) -> Optional[ProviderCost]:
    """Map the extra-usage block to a ProviderCost in currency units.

    Amounts arrive in cents. Non-enterprise accounts sometimes report a
    further factor of 100, detectable by an implausibly large limit.
    """
    if not isinstance(data, dict) or data.get("is_enabled") is not True:
        return None
    used = as_number(data.get("used_credits"))
    limit = as_number(data.get("monthly_limit"))
    if used is None or limit is None:
        return None

    currency = data.get("currency")
    currency_code = currency.strip() if isinstance(currency, str) and currency.strip() else "USD"

    used, limit = used / 100.0, limit / 100.0
    if "enterprise" not in (plan or "").lower() and limit >= EXTRA_USAGE_RESCALE_LIMIT:
        used, limit = used / 100.0, limit / 100.0

    return ProviderCost(
        used=used,
        limit=limit,
        currency_code=currency_code,
        period="Monthly",
    )


class ClaudeProvider(UsageProvider):
    """Quota windows for a Claude Code subscription."""

    account = AccountId.CLAUDE
    name = "Claude"
    credential_hint = "Run `claude` to authenticate"

    def __init__(
        self,
        credentials_path: Optional[Path] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        usage_url: str = USAGE_URL,
    ):
        super().__init__(credentials_path or default_credentials_path(), timeout, client)
        self.usage_url = usage_url

    def load_credentials(self) -> ClaudeCredentials:
        data = self._read_credentials_file()
        oauth = data.get("claudeAiOauth")
        if not isinstance(oauth, dict):
            raise CredentialError(f"Claude credentials are malformed. {self.credential_hint}.")

        token = oauth.get("accessToken")
        if not isinstance(token, str) or not token:
            raise CredentialError(f"Claude access token is empty. {self.credential_hint}.")

        expires_at = None
        expires_ms = as_number(oauth.get("expiresAt"))
        if expires_ms is not None:
            try:
                expires_at = datetime.fromtimestamp(expires_ms / 1000.0, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                logger.warning("Ignoring invalid Claude token expiry: %s", expires_ms)

        tier = oauth.get("rateLimitTier")
        credentials = ClaudeCredentials(
            access_token=token,
            expires_at=expires_at,
            rate_limit_tier=tier if isinstance(tier, str) else None,
        )
        if credentials.is_expired():
            raise CredentialError(
                "Claude token expired. Waiting for Claude Code to refresh credentials."
            )
        return credentials

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            raise CredentialError(
                "Claude authentication failed. Run `claude` to refresh credentials."
            )
        if response.status_code == 403:
            raise CredentialError(
                "Claude access forbidden. Credentials may be missing required scope (user:profile)."
            )

    async def fetch_usage(self) -> UsageSnapshot:
        credentials = self.load_credentials()

        payload = await self._get_json(
            self.usage_url,
            {
                "Authorization": f"Bearer {credentials.access_token}",
                "Content-Type": "application/json",
                "anthropic-beta": OAUTH_BETA,
            },
        )
        return self.parse_usage(payload, credentials)

    def parse_usage(self, payload: Dict[str, Any], credentials: ClaudeCredentials) -> UsageSnapshot:
        """Build a snapshot from a usage response body."""
        sonnet = payload.get("seven_day_sonnet")
        opus = payload.get("seven_day_opus")
        model_weekly = sonnet if isinstance(sonnet, dict) else opus

        carveouts: List[ModelWindow] = []
        for label, data in (("Sonnet Weekly", sonnet), ("Opus Weekly", opus)):
            window = window_from_payload(data, WEEKLY_WINDOW_MINUTES, label.replace("Weekly", "weekly"))
            if window is not None:
                carveouts.append(ModelWindow(label=label, window=window))

        plan = infer_plan_from_tier(credentials.rate_limit_tier)

        return UsageSnapshot(
            primary=window_from_payload(
                payload.get("five_hour"), SESSION_WINDOW_MINUTES, "5-hour session"
            ),
            secondary=window_from_payload(
                payload.get("seven_day"), WEEKLY_WINDOW_MINUTES, "Weekly quota"
            ),
            tertiary=window_from_payload(model_weekly, WEEKLY_WINDOW_MINUTES, "Model weekly"),
            carveouts=tuple(carveouts),
            provider_cost=map_extra_usage(payload.get("extra_usage"), plan),
            identity=ProviderIdentity(plan=plan),
        )
