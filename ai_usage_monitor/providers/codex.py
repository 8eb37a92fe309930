"""
Codex quota provider.

Uses the ChatGPT token the Codex CLI keeps in auth.json to read session and
weekly rate-limit windows.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from ai_usage_monitor.core.models import AccountId, ProviderIdentity, RateWindow, UsageSnapshot

from .base import (
    REQUEST_TIMEOUT_SECONDS,
    CredentialError,
    UsageProvider,
    as_number,
    clamp_fraction,
)

logger = logging.getLogger(__name__)

USAGE_URL = "https://chatgpt.com/backend-api/wham/usage"

PLAN_NAMES = {
    "plus": "ChatGPT Plus",
    "pro": "ChatGPT Pro",
    "team": "ChatGPT Team",
    "enterprise": "ChatGPT Enterprise",
    "free": "ChatGPT Free",
}


def default_credentials_path() -> Path:
    """$CODEX_HOME/auth.json, or ~/.codex/auth.json."""
    codex_home = os.environ.get("CODEX_HOME")
    if codex_home:
        return Path(codex_home) / "auth.json"
    return Path.home() / ".codex" / "auth.json"


@dataclass(frozen=True)
class CodexCredentials:
    access_token: str
    account_id: Optional[str] = None


def parse_reset_timestamp(raw: Any) -> Optional[datetime]:
    """Unix-seconds reset time, or None."""
    seconds = as_number(raw)
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning("Failed to parse Codex reset timestamp: %s", raw)
        return None


def window_from_payload(data: Any, description: str) -> Optional[RateWindow]:
    if not isinstance(data, dict):
        return None
    used_percent = as_number(data.get("used_percent"))
    if used_percent is None:
        return None

    window_minutes = None
    window_seconds = as_number(data.get("limit_window_seconds"))
    if window_seconds is not None:
        window_minutes = int(window_seconds // 60)

    return RateWindow(
        used_fraction=clamp_fraction(used_percent / 100.0),
        window_minutes=window_minutes,
        resets_at=parse_reset_timestamp(data.get("reset_at")),
        description=description,
    )


def format_plan_type(plan_type: Any) -> Optional[str]:
    if not isinstance(plan_type, str) or not plan_type:
        return None
    return PLAN_NAMES.get(plan_type.lower(), f"ChatGPT {plan_type}")


class CodexProvider(UsageProvider):
    """Rate-limit windows for a ChatGPT plan used through Codex."""

    account = AccountId.CODEX
    name = "Codex"
    credential_hint = "Run `codex` to authenticate"

    def __init__(
        self,
        credentials_path: Optional[Path] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        usage_url: str = USAGE_URL,
    ):
        super().__init__(credentials_path or default_credentials_path(), timeout, client)
        self.usage_url = usage_url

    def load_credentials(self) -> CodexCredentials:
        data = self._read_credentials_file()
        tokens = data.get("tokens")
        if not isinstance(tokens, dict):
            raise CredentialError(f"Codex credentials are malformed. {self.credential_hint}.")

        token = tokens.get("access_token")
        if not isinstance(token, str) or not token:
            raise CredentialError(f"Codex access token is empty. {self.credential_hint}.")

        account_id = tokens.get("account_id")
        return CodexCredentials(
            access_token=token,
            account_id=account_id if isinstance(account_id, str) and account_id else None,
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code in (401, 403):
            raise CredentialError(
                "Codex authentication failed. Run `codex` to refresh credentials."
            )

    async def fetch_usage(self) -> UsageSnapshot:
        credentials = self.load_credentials()

        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        if credentials.account_id:
            headers["ChatGPT-Account-Id"] = credentials.account_id

        payload = await self._get_json(self.usage_url, headers)
        return self.parse_usage(payload)

    def parse_usage(self, payload: Dict[str, Any]) -> UsageSnapshot:
        """Build a snapshot from a usage response body."""
        rate_limit = payload.get("rate_limit")
        if not isinstance(rate_limit, dict):
            rate_limit = {}

        return UsageSnapshot(
            primary=window_from_payload(rate_limit.get("primary_window"), "Session limit"),
            secondary=window_from_payload(rate_limit.get("secondary_window"), "Weekly limit"),
            identity=ProviderIdentity(plan=format_plan_type(payload.get("plan_type"))),
        )
