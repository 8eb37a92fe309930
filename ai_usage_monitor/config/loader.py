"""
Configuration management and loading.

Handles account selection, notification, polling and cost-scan settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ai_usage_monitor.core.models import AccountId
from ai_usage_monitor.core.pricing import MODELS_DEV_URL

DEFAULT_CONFIG_PATH = Path("~/.config/ai-usage-monitor/config.yaml")


@dataclass(frozen=True)
class AccountConfig:
    """Per-account settings."""
    enabled: bool = True
    credentials_path: Optional[Path] = None
    log_roots: Optional[Tuple[Path, ...]] = None


@dataclass(frozen=True)
class NotificationConfig:
    """High-usage notification settings."""
    enabled: bool = True
    threshold: float = 0.9

    def __post_init__(self):
        """Validate threshold is a fraction."""
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError("notifications.threshold must be between 0 and 1")


@dataclass(frozen=True)
class PollingConfig:
    """Quota polling cadence and backoff bounds."""
    tick_seconds: float = 1.0
    fetch_timeout_seconds: float = 30.0
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 600.0

    def __post_init__(self):
        """Validate durations are positive and the backoff bounds are ordered."""
        for name in ("tick_seconds", "fetch_timeout_seconds", "base_delay_seconds", "max_delay_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"polling.{name} must be > 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("polling.max_delay_seconds must be >= base_delay_seconds")


@dataclass(frozen=True)
class CostConfig:
    """Log scanning and pricing refresh settings."""
    scan_interval_seconds: float = 300.0
    pricing_retry_seconds: float = 300.0
    pricing_cache_path: Optional[Path] = None
    pricing_url: str = MODELS_DEV_URL

    def __post_init__(self):
        """Validate intervals are positive."""
        if self.scan_interval_seconds <= 0:
            raise ValueError("cost.scan_interval_seconds must be > 0")
        if self.pricing_retry_seconds <= 0:
            raise ValueError("cost.pricing_retry_seconds must be > 0")
        if not self.pricing_url:
            raise ValueError("cost.pricing_url cannot be empty")


@dataclass(frozen=True)
class MonitorConfig:
    """Complete monitor configuration."""
    accounts: Dict[AccountId, AccountConfig] = field(
        default_factory=lambda: {account: AccountConfig() for account in AccountId}
    )
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    cost: CostConfig = field(default_factory=CostConfig)

    def get_account_config(self, account: AccountId) -> AccountConfig:
        """Get configuration for an account, using defaults if not specified."""
        return self.accounts.get(account, AccountConfig())

    def enabled_accounts(self) -> List[AccountId]:
        return [account for account in AccountId if self.get_account_config(account).enabled]


def default_config() -> MonitorConfig:
    """Configuration used when no file is present: both accounts, stock settings."""
    return MonitorConfig()


def load_monitor_config(path: str) -> MonitorConfig:
    """Load and validate monitor configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MonitorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Monitor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _check_keys(raw_config, {'accounts', 'notifications', 'polling', 'cost'}, "configuration")

    accounts = _parse_accounts(_section(raw_config, 'accounts'))

    notifications_data = _section(raw_config, 'notifications')
    _check_keys(notifications_data, {'enabled', 'threshold'}, "notifications")
    notifications = NotificationConfig(
        enabled=_bool(notifications_data, 'enabled', "notifications", True),
        threshold=_number(notifications_data, 'threshold', "notifications", 0.9),
    )

    polling_data = _section(raw_config, 'polling')
    _check_keys(
        polling_data,
        {'tick_seconds', 'fetch_timeout_seconds', 'base_delay_seconds', 'max_delay_seconds'},
        "polling",
    )
    polling = PollingConfig(
        tick_seconds=_number(polling_data, 'tick_seconds', "polling", 1.0),
        fetch_timeout_seconds=_number(polling_data, 'fetch_timeout_seconds', "polling", 30.0),
        base_delay_seconds=_number(polling_data, 'base_delay_seconds', "polling", 60.0),
        max_delay_seconds=_number(polling_data, 'max_delay_seconds', "polling", 600.0),
    )

    cost_data = _section(raw_config, 'cost')
    _check_keys(
        cost_data,
        {'scan_interval_seconds', 'pricing_retry_seconds', 'pricing_cache_path', 'pricing_url'},
        "cost",
    )
    pricing_url = cost_data.get('pricing_url', MODELS_DEV_URL)
    if not isinstance(pricing_url, str):
        raise ValueError("'pricing_url' in cost must be a string")
    cost = CostConfig(
        scan_interval_seconds=_number(cost_data, 'scan_interval_seconds', "cost", 300.0),
        pricing_retry_seconds=_number(cost_data, 'pricing_retry_seconds', "cost", 300.0),
        pricing_cache_path=_path(cost_data, 'pricing_cache_path', "cost"),
        pricing_url=pricing_url,
    )

    return MonitorConfig(
        accounts=accounts,
        notifications=notifications,
        polling=polling,
        cost=cost,
    )


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _number(data: Dict, key: str, path: str, default: float) -> float:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _bool(data: Dict, key: str, path: str, default: bool) -> bool:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _path(data: Dict, key: str, path: str) -> Optional[Path]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return Path(value).expanduser()


def _parse_accounts(data: Dict[str, Any]) -> Dict[AccountId, AccountConfig]:
    """Parse the accounts section.

    Accounts that are not mentioned keep their defaults (enabled).

    Raises:
        ValueError: If an account name or setting is invalid
    """
    accounts = {account: AccountConfig() for account in AccountId}

    for name, account_data in data.items():
        try:
            account = AccountId(str(name).lower())
        except ValueError:
            valid_accounts = [account.value for account in AccountId]
            raise ValueError(f"Unknown account '{name}', must be one of: {valid_accounts}")

        path = f"accounts.{name}"
        if account_data is None:
            account_data = {}
        if not isinstance(account_data, dict):
            raise ValueError(f"Account '{name}' must be a dictionary")
        _check_keys(account_data, {'enabled', 'credentials_path', 'log_roots'}, path)

        log_roots = None
        if account_data.get('log_roots') is not None:
            raw_roots = account_data['log_roots']
            if not isinstance(raw_roots, list) or not all(
                isinstance(root, str) and root.strip() for root in raw_roots
            ):
                raise ValueError(f"'log_roots' in {path} must be a list of paths")
            log_roots = tuple(Path(root).expanduser() for root in raw_roots)

        accounts[account] = AccountConfig(
            enabled=_bool(account_data, 'enabled', path, True),
            credentials_path=_path(account_data, 'credentials_path', path),
            log_roots=log_roots,
        )

    return accounts
