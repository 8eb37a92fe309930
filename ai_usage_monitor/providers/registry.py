"""
Provider registry.

Resolves each enabled AccountId to its provider and log scanner once, at
construction time.
"""

from pathlib import Path
from typing import Dict, List, Optional, Type

import httpx

from ai_usage_monitor.config.loader import MonitorConfig
from ai_usage_monitor.core.models import AccountId
from ai_usage_monitor.scanners import ClaudeLogScanner, CodexLogScanner, LogScanner

from .base import UsageProvider
from .claude import ClaudeProvider
from .codex import CodexProvider

PROVIDER_TYPES: Dict[AccountId, Type[UsageProvider]] = {
    AccountId.CLAUDE: ClaudeProvider,
    AccountId.CODEX: CodexProvider,
}

SCANNER_TYPES: Dict[AccountId, Type[LogScanner]] = {
    AccountId.CLAUDE: ClaudeLogScanner,
    AccountId.CODEX: CodexLogScanner,
}


class ProviderRegistry:
    """Enabled providers keyed by account."""

    def __init__(
        self,
        config: MonitorConfig,
        client: Optional[httpx.AsyncClient] = None,
        providers: Optional[Dict[AccountId, UsageProvider]] = None,
    ):
        """Build providers for every enabled account.

        Args:
            config: Monitor configuration
            client: Optional shared HTTP client passed to every provider
            providers: Prebuilt providers, used instead of the configured ones
        """
        if providers is not None:
            self._providers = dict(providers)
            return

        self._providers: Dict[AccountId, UsageProvider] = {}
        for account in config.enabled_accounts():
            account_config = config.get_account_config(account)
            self._providers[account] = PROVIDER_TYPES[account](
                credentials_path=account_config.credentials_path,
                timeout=config.polling.fetch_timeout_seconds,
                client=client,
            )

    def get(self, account: AccountId) -> Optional[UsageProvider]:
        return self._providers.get(account)

    def accounts(self) -> List[AccountId]:
        return [account for account in AccountId if account in self._providers]

    def credential_paths(self) -> Dict[AccountId, Path]:
        return {account: provider.credentials_path for account, provider in self._providers.items()}


def build_scanners(config: MonitorConfig) -> Dict[AccountId, LogScanner]:
    """Log scanners for every enabled account, honoring configured roots."""
    scanners: Dict[AccountId, LogScanner] = {}
    for account in config.enabled_accounts():
        roots = config.get_account_config(account).log_roots
        scanners[account] = SCANNER_TYPES[account](roots=list(roots) if roots is not None else None)
    return scanners
